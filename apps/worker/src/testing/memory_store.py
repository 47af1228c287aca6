"""
In-memory IssueStore for tests and local runs.

Mirrors the Postgres store's semantics: content-hash invalidation of the
embedding triple, ascending-number bucket listing, nearest clusters by cosine
distance with creation order breaking ties, and representative refresh.

Usage:
    store = MemoryIssueStore()
    result = await sync_issues(store, github, embedder, request, settings=settings)
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from itertools import count
from typing import Any, Sequence
from uuid import UUID, uuid4

from constants import BODY_SNIPPET_MAX_CHARS
from src.core.hashing import content_hash, embedding_input_hash
from src.core.vector import cosine_distance, parse_vector, to_vector_literal
from src.ingestion.schemas import GitHubIssue
from src.ingestion.templates import extract_issue_type
from src.services.types import (
    BucketIssue,
    ClusterCandidate,
    PendingIssue,
    ReusableEmbedding,
    SyncState,
    UpsertResult,
)


@dataclass
class StoredCluster:
    cluster_id: UUID
    repo: str
    target_version: str
    product_label: str
    threshold_used: float
    topk_used: int
    centroid: list[float]
    size: int
    popularity: float
    representative_issue_number: int | None
    sequence: int
    created_at: datetime
    updated_at: datetime


@dataclass
class StoredMapping:
    cluster_id: UUID
    similarity: float
    assigned_at: datetime


@dataclass
class StoredRelease:
    tag: str | None
    name: str | None
    url: str | None
    version: str | None
    published_at: datetime | None
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def _now() -> datetime:
    return datetime.now(timezone.utc)


class MemoryIssueStore:
    """
    Attributes:
        issues: Issue rows keyed by (repo, issue_number).
        products: Product label lists keyed by (repo, issue_number).
        sync_states: Checkpoints keyed by repo.
        releases: Latest release per repo.
        clusters: Cluster rows keyed by cluster_id.
        mappings: Cluster membership keyed by (repo, issue_number, target_version, product_label).
    """

    def __init__(self) -> None:
        self.issues: dict[tuple[str, int], dict[str, Any]] = {}
        self.products: dict[tuple[str, int], list[str]] = {}
        self.sync_states: dict[str, SyncState] = {}
        self.releases: dict[str, StoredRelease] = {}
        self.clusters: dict[UUID, StoredCluster] = {}
        self.mappings: dict[tuple[str, int, str, str], StoredMapping] = {}
        self.saved_embeddings = 0
        self._sequence = count()

    # Issues

    async def upsert_issue(
        self,
        repo_full_name: str,
        issue: GitHubIssue,
        target_version: str | None,
        milestone_title: str | None,
        expected_embedding_model: str | None = None,
    ) -> UpsertResult:
        label_names = issue.label_names
        body = issue.body
        new_hash = content_hash(issue.title, body, label_names, milestone_title, target_version)
        input_hash = embedding_input_hash(issue.title, body)

        key = (repo_full_name, issue.number)
        existing = self.issues.get(key)

        embedding = None
        embedding_model = None
        stored_input_hash = None
        if existing is not None:
            stale = existing["content_hash"] != new_hash
            if expected_embedding_model and existing["embedding_model"] is not None:
                stale = stale or existing["embedding_model"] != expected_embedding_model
            if not stale:
                embedding = existing["embedding"]
                embedding_model = existing["embedding_model"]
                stored_input_hash = existing["embedding_input_hash"]

        self.issues[key] = {
            "repo": repo_full_name,
            "issue_number": issue.number,
            "gh_id": issue.id,
            "title": issue.title,
            "body": body,
            "body_snip": body[:BODY_SNIPPET_MAX_CHARS] if body else None,
            "labels": [label.model_dump() for label in issue.labels],
            "milestone_title": milestone_title,
            "target_version": target_version,
            "issue_type": extract_issue_type(label_names),
            "state": issue.state,
            "created_at": issue.created_at,
            "updated_at": issue.updated_at,
            "closed_at": issue.closed_at,
            "comments_count": issue.comments,
            "reactions_total_count": issue.reactions_total,
            "content_hash": new_hash,
            "embedding": embedding,
            "embedding_model": embedding_model,
            "embedding_input_hash": stored_input_hash,
            "fetched_at": _now(),
        }

        return UpsertResult(
            needs_embedding=embedding is None,
            embedding_input_hash=input_hash,
            content_hash=new_hash,
        )

    async def replace_issue_products(
        self,
        repo_full_name: str,
        issue_number: int,
        product_labels: Sequence[str],
    ) -> None:
        self.products[(repo_full_name, issue_number)] = [
            label for label in dict.fromkeys(product_labels) if label
        ]

    async def find_reusable_embedding(
        self,
        repo_full_name: str,
        issue_number: int,
        embedding_input_hash: str,
        model_id: str,
    ) -> ReusableEmbedding | None:
        for (repo, number), row in self.issues.items():
            if repo != repo_full_name or number == issue_number:
                continue
            if (
                row["embedding"] is not None
                and row["embedding_model"] == model_id
                and row["embedding_input_hash"] == embedding_input_hash
            ):
                return ReusableEmbedding(
                    vector_literal=to_vector_literal(row["embedding"]),
                    model_id=row["embedding_model"],
                )
        return None

    async def save_embedding(
        self,
        repo_full_name: str,
        issue_number: int,
        vector_literal: str,
        model_id: str,
        embedding_input_hash: str,
    ) -> None:
        row = self.issues.get((repo_full_name, issue_number))
        if row is None:
            return
        row["embedding"] = parse_vector(vector_literal)
        row["embedding_model"] = model_id
        row["embedding_input_hash"] = embedding_input_hash
        row["fetched_at"] = _now()
        self.saved_embeddings += 1

    async def count_issues(self, repo_full_name: str) -> int:
        return sum(1 for repo, _ in self.issues if repo == repo_full_name)

    async def list_issues_pending_embedding(self, repo_full_name: str, limit: int) -> list[PendingIssue]:
        pending = [
            row
            for row in self.issues.values()
            if row["repo"] == repo_full_name and row["state"] == "open" and row["embedding"] is None
        ]
        pending.sort(key=lambda row: row["updated_at"])
        return [
            PendingIssue(issue_number=row["issue_number"], title=row["title"], body=row["body"])
            for row in pending[:limit]
        ]

    # Sync state

    async def get_issue_sync_state(self, repo_full_name: str) -> SyncState:
        state = self.sync_states.get(repo_full_name)
        if state is None:
            return SyncState()
        return SyncState(
            last_synced_at=state.last_synced_at,
            last_synced_issue_number=state.last_synced_issue_number,
            estimated_total_issues=state.estimated_total_issues,
            is_syncing=state.is_syncing,
            updated_at=state.updated_at,
        )

    async def set_issue_sync_state(
        self,
        repo_full_name: str,
        last_synced_at: datetime | None,
        last_synced_issue_number: int | None,
    ) -> None:
        state = self.sync_states.setdefault(repo_full_name, SyncState())
        state.last_synced_at = last_synced_at
        state.last_synced_issue_number = last_synced_issue_number
        state.updated_at = _now()

    async def set_sync_status(
        self,
        repo_full_name: str,
        is_syncing: bool,
        estimated_total_issues: int | None = None,
    ) -> None:
        state = self.sync_states.setdefault(repo_full_name, SyncState())
        state.is_syncing = is_syncing
        if estimated_total_issues is not None:
            state.estimated_total_issues = estimated_total_issues
        state.updated_at = _now()

    async def claim_sync(self, repo_full_name: str, lease_minutes: int) -> bool:
        state = self.sync_states.setdefault(repo_full_name, SyncState())
        now = _now()
        if state.is_syncing and state.updated_at is not None:
            if state.updated_at >= now - timedelta(minutes=lease_minutes):
                return False
        state.is_syncing = True
        state.updated_at = now
        return True

    async def upsert_repo_latest_release(
        self,
        repo_full_name: str,
        tag: str | None,
        name: str | None,
        url: str | None,
        version: str | None,
        published_at: datetime | None,
    ) -> None:
        self.releases[repo_full_name] = StoredRelease(
            tag=tag, name=name, url=url, version=version, published_at=published_at
        )

    # Clusters

    async def delete_bucket(self, repo_full_name: str, product_label: str) -> None:
        for key in [k for k in self.mappings if k[0] == repo_full_name and k[3] == product_label]:
            del self.mappings[key]
        for cluster_id in [
            c.cluster_id
            for c in self.clusters.values()
            if c.repo == repo_full_name and c.product_label == product_label
        ]:
            del self.clusters[cluster_id]

    async def list_bucket_issues(self, repo_full_name: str, product_label: str) -> list[BucketIssue]:
        rows = [
            row
            for (repo, number), row in self.issues.items()
            if repo == repo_full_name
            and row["state"] == "open"
            and row["embedding"] is not None
            and product_label in self.products.get((repo, number), [])
        ]
        rows.sort(key=lambda row: row["issue_number"])
        return [
            BucketIssue(
                issue_number=row["issue_number"],
                embedding=list(row["embedding"]),
                comments_count=row["comments_count"] or 0,
                reactions_total_count=row["reactions_total_count"] or 0,
                updated_at=row["updated_at"],
            )
            for row in rows
        ]

    def _bucket_clusters(self, repo_full_name: str, product_label: str) -> list[StoredCluster]:
        return [
            c
            for c in self.clusters.values()
            if c.repo == repo_full_name and c.product_label == product_label
        ]

    async def nearest_clusters(
        self,
        repo_full_name: str,
        product_label: str,
        embedding: Sequence[float],
        top_k: int,
    ) -> list[ClusterCandidate]:
        scored = [
            (cosine_distance(c.centroid, embedding), c.sequence, c)
            for c in self._bucket_clusters(repo_full_name, product_label)
        ]
        scored.sort(key=lambda item: (item[0], item[1]))
        return [
            ClusterCandidate(
                cluster_id=c.cluster_id,
                centroid=list(c.centroid),
                size=c.size,
                cosine_distance=distance,
            )
            for distance, _, c in scored[:top_k]
        ]

    async def create_cluster(
        self,
        repo_full_name: str,
        target_version: str,
        product_label: str,
        threshold: float,
        top_k: int,
        issue_number: int,
        embedding: Sequence[float],
        popularity: float,
    ) -> UUID:
        now = _now()
        cluster_id = uuid4()
        self.clusters[cluster_id] = StoredCluster(
            cluster_id=cluster_id,
            repo=repo_full_name,
            target_version=target_version,
            product_label=product_label,
            threshold_used=threshold,
            topk_used=top_k,
            centroid=list(embedding),
            size=1,
            popularity=popularity,
            representative_issue_number=issue_number,
            sequence=next(self._sequence),
            created_at=now,
            updated_at=now,
        )
        self.mappings[(repo_full_name, issue_number, target_version, product_label)] = StoredMapping(
            cluster_id=cluster_id, similarity=1.0, assigned_at=now
        )
        return cluster_id

    async def add_to_cluster(
        self,
        repo_full_name: str,
        target_version: str,
        product_label: str,
        cluster_id: UUID,
        issue_number: int,
        similarity: float,
        centroid: Sequence[float],
        popularity: float,
    ) -> None:
        now = _now()
        self.mappings[(repo_full_name, issue_number, target_version, product_label)] = StoredMapping(
            cluster_id=cluster_id, similarity=similarity, assigned_at=now
        )
        cluster = self.clusters[cluster_id]
        cluster.centroid = list(centroid)
        cluster.size += 1
        cluster.popularity += popularity
        cluster.updated_at = now

    async def refresh_representatives(self, repo_full_name: str, product_label: str) -> None:
        for cluster in self._bucket_clusters(repo_full_name, product_label):
            members = []
            for (repo, number, _, _), mapping in self.mappings.items():
                if mapping.cluster_id != cluster.cluster_id:
                    continue
                row = self.issues.get((repo, number))
                if row is None or row["embedding"] is None:
                    continue
                members.append((cosine_distance(cluster.centroid, row["embedding"]), number))
            if members:
                cluster.representative_issue_number = min(members)[1]

    async def count_clusters(self, repo_full_name: str, product_label: str) -> int:
        return len(self._bucket_clusters(repo_full_name, product_label))

    def members_of(self, cluster_id: UUID) -> list[int]:
        """Issue numbers mapped to a cluster, ascending."""
        return sorted(
            number for (_, number, _, _), m in self.mappings.items() if m.cluster_id == cluster_id
        )
