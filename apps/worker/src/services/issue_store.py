"""
Postgres-backed issue store.

Sole writer of issues, product labels, sync checkpoints, release state and
clusters. Every write commits before returning, so a killed run keeps
everything written up to its last completed call.
"""
import logging
from datetime import datetime, timedelta
from typing import Sequence
from uuid import UUID, uuid4

import sqlalchemy as sa
from sqlalchemy import delete, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from constants import BODY_SNIPPET_MAX_CHARS
from models import Cluster, Issue, IssueClusterMap, IssueProduct, IssueSyncState, RepoReleaseState
from src.core.hashing import content_hash, embedding_input_hash
from src.core.vector import parse_vector, to_vector_literal
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


logger = logging.getLogger(__name__)


class IssueStore:
    def __init__(self, db: AsyncSession):
        self.db = db

    # A failed statement aborts the transaction until rollback

    async def _exec(self, statement):
        try:
            return await self.db.exec(statement)
        except Exception:
            await self.db.rollback()
            raise

    async def _commit(self) -> None:
        try:
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

    # Issues

    async def upsert_issue(
        self,
        repo_full_name: str,
        issue: GitHubIssue,
        target_version: str | None,
        milestone_title: str | None,
        expected_embedding_model: str | None = None,
    ) -> UpsertResult:
        """
        Inserts or updates one issue keyed by (repo, issue_number).

        When the stored content hash differs from the new one, or an expected
        model is given and the stored vector came from another model, the
        embedding triple is nulled in the same statement.
        """
        label_names = issue.label_names
        body = issue.body
        new_hash = content_hash(issue.title, body, label_names, milestone_title, target_version)
        input_hash = embedding_input_hash(issue.title, body)

        table = Issue.__table__
        statement = pg_insert(table).values(
            repo=repo_full_name,
            issue_number=issue.number,
            gh_id=issue.id,
            title=issue.title,
            body=body,
            body_snip=body[:BODY_SNIPPET_MAX_CHARS] if body else None,
            labels=[label.model_dump() for label in issue.labels],
            milestone_title=milestone_title,
            target_version=target_version,
            issue_type=extract_issue_type(label_names),
            state=issue.state,
            created_at=issue.created_at,
            updated_at=issue.updated_at,
            closed_at=issue.closed_at,
            comments_count=issue.comments,
            reactions_total_count=issue.reactions_total,
            content_hash=new_hash,
            fetched_at=sa.func.now(),
        )
        excluded = statement.excluded

        stale = table.c.content_hash != excluded.content_hash
        if expected_embedding_model:
            stale = sa.or_(stale, table.c.embedding_model != expected_embedding_model)

        def keep_unless_stale(column):
            return sa.case((stale, sa.null()), else_=column)

        statement = statement.on_conflict_do_update(
            index_elements=[table.c.repo, table.c.issue_number],
            set_={
                "gh_id": excluded.gh_id,
                "title": excluded.title,
                "body": excluded.body,
                "body_snip": excluded.body_snip,
                "labels": excluded.labels,
                "milestone_title": excluded.milestone_title,
                "target_version": excluded.target_version,
                "issue_type": excluded.issue_type,
                "state": excluded.state,
                "created_at": excluded.created_at,
                "updated_at": excluded.updated_at,
                "closed_at": excluded.closed_at,
                "comments_count": excluded.comments_count,
                "reactions_total_count": excluded.reactions_total_count,
                "content_hash": excluded.content_hash,
                "embedding": keep_unless_stale(table.c.embedding),
                "embedding_model": keep_unless_stale(table.c.embedding_model),
                "embedding_input_hash": keep_unless_stale(table.c.embedding_input_hash),
                "fetched_at": sa.func.now(),
            },
        ).returning(table.c.embedding.is_(None))

        result = await self._exec(statement)
        needs_embedding = bool(result.scalar_one())
        await self._commit()

        return UpsertResult(
            needs_embedding=needs_embedding,
            embedding_input_hash=input_hash,
            content_hash=new_hash,
        )

    async def replace_issue_products(
        self,
        repo_full_name: str,
        issue_number: int,
        product_labels: Sequence[str],
    ) -> None:
        """Delete-then-insert; an empty label list leaves the issue with none."""
        await self._exec(
            delete(IssueProduct).where(
                IssueProduct.repo == repo_full_name,
                IssueProduct.issue_number == issue_number,
            )
        )

        labels = [label for label in dict.fromkeys(product_labels) if label]
        if labels:
            await self._exec(
                pg_insert(IssueProduct.__table__)
                .values(
                    [
                        {"repo": repo_full_name, "issue_number": issue_number, "product_label": label}
                        for label in labels
                    ]
                )
                .on_conflict_do_nothing()
            )
        await self._commit()

    async def find_reusable_embedding(
        self,
        repo_full_name: str,
        issue_number: int,
        embedding_input_hash: str,
        model_id: str,
    ) -> ReusableEmbedding | None:
        """Another issue in the repo already embedded from byte-identical input by the same model."""
        statement = (
            select(Issue.embedding, Issue.embedding_model)
            .where(
                Issue.repo == repo_full_name,
                Issue.issue_number != issue_number,
                Issue.embedding_model == model_id,
                Issue.embedding_input_hash == embedding_input_hash,
                Issue.embedding.is_not(None),
            )
            .limit(1)
        )
        result = await self._exec(statement)
        row = result.first()
        if row is None:
            return None

        embedding, model = row
        return ReusableEmbedding(vector_literal=to_vector_literal(parse_vector(embedding)), model_id=model)

    async def save_embedding(
        self,
        repo_full_name: str,
        issue_number: int,
        vector_literal: str,
        model_id: str,
        embedding_input_hash: str,
    ) -> None:
        """Writes the embedding triple together."""
        await self._exec(
            update(Issue)
            .where(Issue.repo == repo_full_name, Issue.issue_number == issue_number)
            .values(
                embedding=parse_vector(vector_literal),
                embedding_model=model_id,
                embedding_input_hash=embedding_input_hash,
                fetched_at=sa.func.now(),
            )
        )
        await self._commit()

    async def count_issues(self, repo_full_name: str) -> int:
        result = await self._exec(
            select(sa.func.count()).select_from(Issue).where(Issue.repo == repo_full_name)
        )
        return int(result.one())

    async def list_issues_pending_embedding(self, repo_full_name: str, limit: int) -> list[PendingIssue]:
        statement = (
            select(Issue.issue_number, Issue.title, Issue.body)
            .where(
                Issue.repo == repo_full_name,
                Issue.state == "open",
                Issue.embedding.is_(None),
            )
            .order_by(Issue.updated_at.asc())
            .limit(limit)
        )
        result = await self._exec(statement)
        return [PendingIssue(issue_number=n, title=t, body=b) for n, t, b in result.all()]

    # Sync state

    async def get_issue_sync_state(self, repo_full_name: str) -> SyncState:
        try:
            row = await self.db.get(IssueSyncState, repo_full_name)
        except Exception:
            await self.db.rollback()
            raise
        if row is None:
            return SyncState()
        return SyncState(
            last_synced_at=row.last_synced_at,
            last_synced_issue_number=row.last_synced_issue_number,
            estimated_total_issues=row.estimated_total_issues,
            is_syncing=row.is_syncing,
            updated_at=row.updated_at,
        )

    async def set_issue_sync_state(
        self,
        repo_full_name: str,
        last_synced_at: datetime | None,
        last_synced_issue_number: int | None,
    ) -> None:
        """Upserts the checkpoint; callers only ever advance the issue-number watermark."""
        statement = pg_insert(IssueSyncState.__table__).values(
            repo=repo_full_name,
            last_synced_at=last_synced_at,
            last_synced_issue_number=last_synced_issue_number,
            updated_at=sa.func.now(),
        )
        statement = statement.on_conflict_do_update(
            index_elements=["repo"],
            set_={
                "last_synced_at": statement.excluded.last_synced_at,
                "last_synced_issue_number": statement.excluded.last_synced_issue_number,
                "updated_at": sa.func.now(),
            },
        )
        await self._exec(statement)
        await self._commit()

    async def set_sync_status(
        self,
        repo_full_name: str,
        is_syncing: bool,
        estimated_total_issues: int | None = None,
    ) -> None:
        """Flags a running sync; a None estimate keeps the stored one."""
        table = IssueSyncState.__table__
        statement = pg_insert(table).values(
            repo=repo_full_name,
            is_syncing=is_syncing,
            estimated_total_issues=estimated_total_issues,
            updated_at=sa.func.now(),
        )
        statement = statement.on_conflict_do_update(
            index_elements=["repo"],
            set_={
                "is_syncing": statement.excluded.is_syncing,
                "estimated_total_issues": sa.func.coalesce(
                    statement.excluded.estimated_total_issues,
                    table.c.estimated_total_issues,
                ),
                "updated_at": sa.func.now(),
            },
        )
        await self._exec(statement)
        await self._commit()

    async def claim_sync(self, repo_full_name: str, lease_minutes: int) -> bool:
        """
        Atomically sets is_syncing unless another run holds it. A flag not
        touched for lease_minutes belongs to a dead run and can be taken over;
        live full syncs touch it with every page checkpoint.
        """
        table = IssueSyncState.__table__
        statement = pg_insert(table).values(
            repo=repo_full_name,
            is_syncing=True,
            updated_at=sa.func.now(),
        )
        lease_expired = table.c.updated_at < sa.func.now() - timedelta(minutes=lease_minutes)
        statement = statement.on_conflict_do_update(
            index_elements=["repo"],
            set_={"is_syncing": True, "updated_at": sa.func.now()},
            where=sa.or_(table.c.is_syncing.is_(False), lease_expired),
        ).returning(table.c.repo)

        result = await self._exec(statement)
        claimed = result.first() is not None
        await self._commit()
        return claimed

    async def upsert_repo_latest_release(
        self,
        repo_full_name: str,
        tag: str | None,
        name: str | None,
        url: str | None,
        version: str | None,
        published_at: datetime | None,
    ) -> None:
        statement = pg_insert(RepoReleaseState.__table__).values(
            repo=repo_full_name,
            latest_release_tag=tag,
            latest_release_name=name,
            latest_release_url=url,
            latest_release_version=version,
            latest_release_published_at=published_at,
            updated_at=sa.func.now(),
        )
        excluded = statement.excluded
        statement = statement.on_conflict_do_update(
            index_elements=["repo"],
            set_={
                "latest_release_tag": excluded.latest_release_tag,
                "latest_release_name": excluded.latest_release_name,
                "latest_release_url": excluded.latest_release_url,
                "latest_release_version": excluded.latest_release_version,
                "latest_release_published_at": excluded.latest_release_published_at,
                "updated_at": sa.func.now(),
            },
        )
        await self._exec(statement)
        await self._commit()

    # Clusters

    async def delete_bucket(self, repo_full_name: str, product_label: str) -> None:
        """Drops every mapping and cluster for (repo, product_label), all target versions."""
        await self._exec(
            delete(IssueClusterMap).where(
                IssueClusterMap.repo == repo_full_name,
                IssueClusterMap.product_label == product_label,
            )
        )
        await self._exec(
            delete(Cluster).where(
                Cluster.repo == repo_full_name,
                Cluster.product_label == product_label,
            )
        )
        await self._commit()

    async def list_bucket_issues(self, repo_full_name: str, product_label: str) -> list[BucketIssue]:
        """Open, embedded issues carrying the product label, ascending by number."""
        statement = (
            select(
                Issue.issue_number,
                Issue.embedding,
                Issue.comments_count,
                Issue.reactions_total_count,
                Issue.updated_at,
            )
            .join(
                IssueProduct,
                sa.and_(
                    IssueProduct.repo == Issue.repo,
                    IssueProduct.issue_number == Issue.issue_number,
                ),
            )
            .where(
                Issue.repo == repo_full_name,
                Issue.state == "open",
                Issue.embedding.is_not(None),
                IssueProduct.product_label == product_label,
            )
            .order_by(Issue.issue_number.asc())
        )
        result = await self._exec(statement)
        return [
            BucketIssue(
                issue_number=number,
                embedding=parse_vector(embedding),
                comments_count=comments or 0,
                reactions_total_count=reactions or 0,
                updated_at=updated_at,
            )
            for number, embedding, comments, reactions, updated_at in result.all()
        ]

    async def nearest_clusters(
        self,
        repo_full_name: str,
        product_label: str,
        embedding: Sequence[float],
        top_k: int,
    ) -> list[ClusterCandidate]:
        """Up to top_k clusters in the bucket by ascending cosine distance; older clusters first on ties."""
        distance = Cluster.centroid.cosine_distance(list(embedding))
        statement = (
            select(Cluster.cluster_id, Cluster.centroid, Cluster.size, distance)
            .where(
                Cluster.repo == repo_full_name,
                Cluster.product_label == product_label,
            )
            .order_by(distance.asc(), Cluster.created_at.asc())
            .limit(top_k)
        )
        result = await self._exec(statement)
        return [
            ClusterCandidate(
                cluster_id=cluster_id,
                centroid=parse_vector(centroid),
                size=int(size),
                cosine_distance=float(cosine_distance),
            )
            for cluster_id, centroid, size, cosine_distance in result.all()
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
        """New singleton cluster seeded by one issue, plus its mapping row."""
        cluster_id = uuid4()
        await self._exec(
            sa.insert(Cluster.__table__).values(
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
                # clock_timestamp differs between clusters created in one transaction
                created_at=sa.func.clock_timestamp(),
                updated_at=sa.func.now(),
            )
        )
        await self._exec(
            sa.insert(IssueClusterMap.__table__).values(
                repo=repo_full_name,
                issue_number=issue_number,
                target_version=target_version,
                product_label=product_label,
                cluster_id=cluster_id,
                similarity=1.0,
                assigned_at=sa.func.now(),
            )
        )
        await self._commit()
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
        """Maps the issue and folds it into the cluster's centroid, size and popularity."""
        await self._exec(
            sa.insert(IssueClusterMap.__table__).values(
                repo=repo_full_name,
                issue_number=issue_number,
                target_version=target_version,
                product_label=product_label,
                cluster_id=cluster_id,
                similarity=similarity,
                assigned_at=sa.func.now(),
            )
        )
        table = Cluster.__table__
        await self._exec(
            sa.update(table)
            .where(table.c.cluster_id == cluster_id)
            .values(
                centroid=list(centroid),
                size=table.c.size + 1,
                popularity=table.c.popularity + popularity,
                updated_at=sa.func.now(),
            )
        )
        await self._commit()

    async def refresh_representatives(self, repo_full_name: str, product_label: str) -> None:
        """Sets each cluster's representative to the member nearest its final centroid."""
        clusters = Cluster.__table__
        cluster_map = IssueClusterMap.__table__
        issues = Issue.__table__

        nearest_member = (
            sa.select(cluster_map.c.issue_number)
            .join(
                issues,
                sa.and_(
                    issues.c.repo == cluster_map.c.repo,
                    issues.c.issue_number == cluster_map.c.issue_number,
                ),
            )
            .where(
                cluster_map.c.cluster_id == clusters.c.cluster_id,
                issues.c.embedding.is_not(None),
            )
            .order_by(
                clusters.c.centroid.cosine_distance(issues.c.embedding).asc(),
                cluster_map.c.issue_number.asc(),
            )
            .limit(1)
            .scalar_subquery()
        )

        await self._exec(
            sa.update(clusters)
            .where(
                clusters.c.repo == repo_full_name,
                clusters.c.product_label == product_label,
            )
            .values(representative_issue_number=nearest_member)
        )
        await self._commit()

    async def count_clusters(self, repo_full_name: str, product_label: str) -> int:
        result = await self._exec(
            select(sa.func.count())
            .select_from(Cluster)
            .where(Cluster.repo == repo_full_name, Cluster.product_label == product_label)
        )
        return int(result.one())
