"""
Value types exchanged with the issue store, and the store interface the
sync and recluster services are written against.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol, Sequence
from uuid import UUID

from src.ingestion.schemas import GitHubIssue


@dataclass
class UpsertResult:
    needs_embedding: bool
    embedding_input_hash: str
    content_hash: str


@dataclass
class ReusableEmbedding:
    vector_literal: str
    model_id: str


@dataclass
class SyncState:
    last_synced_at: Optional[datetime] = None
    last_synced_issue_number: Optional[int] = None
    estimated_total_issues: Optional[int] = None
    is_syncing: bool = False
    updated_at: Optional[datetime] = None


@dataclass
class PendingIssue:
    issue_number: int
    title: str
    body: Optional[str]


@dataclass
class BucketIssue:
    issue_number: int
    embedding: list[float]
    comments_count: int
    reactions_total_count: int
    updated_at: datetime


@dataclass
class ClusterCandidate:
    cluster_id: UUID
    centroid: list[float]
    size: int
    cosine_distance: float

    @property
    def similarity(self) -> float:
        # pgvector cosine distance is 1 - cosine similarity
        return 1.0 - self.cosine_distance


class IssueStoreProtocol(Protocol):
    """Sole writer of issues, product labels, sync state and clusters."""

    async def upsert_issue(
        self,
        repo_full_name: str,
        issue: GitHubIssue,
        target_version: str | None,
        milestone_title: str | None,
        expected_embedding_model: str | None = None,
    ) -> UpsertResult: ...

    async def replace_issue_products(
        self, repo_full_name: str, issue_number: int, product_labels: Sequence[str]
    ) -> None: ...

    async def find_reusable_embedding(
        self, repo_full_name: str, issue_number: int, embedding_input_hash: str, model_id: str
    ) -> ReusableEmbedding | None: ...

    async def save_embedding(
        self,
        repo_full_name: str,
        issue_number: int,
        vector_literal: str,
        model_id: str,
        embedding_input_hash: str,
    ) -> None: ...

    async def get_issue_sync_state(self, repo_full_name: str) -> SyncState: ...

    async def set_issue_sync_state(
        self,
        repo_full_name: str,
        last_synced_at: datetime | None,
        last_synced_issue_number: int | None,
    ) -> None: ...

    async def claim_sync(self, repo_full_name: str, lease_minutes: int) -> bool: ...

    async def set_sync_status(
        self, repo_full_name: str, is_syncing: bool, estimated_total_issues: int | None = None
    ) -> None: ...

    async def count_issues(self, repo_full_name: str) -> int: ...

    async def upsert_repo_latest_release(
        self,
        repo_full_name: str,
        tag: str | None,
        name: str | None,
        url: str | None,
        version: str | None,
        published_at: datetime | None,
    ) -> None: ...

    async def list_issues_pending_embedding(self, repo_full_name: str, limit: int) -> list[PendingIssue]: ...

    async def delete_bucket(self, repo_full_name: str, product_label: str) -> None: ...

    async def list_bucket_issues(self, repo_full_name: str, product_label: str) -> list[BucketIssue]: ...

    async def nearest_clusters(
        self, repo_full_name: str, product_label: str, embedding: Sequence[float], top_k: int
    ) -> list[ClusterCandidate]: ...

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
    ) -> UUID: ...

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
    ) -> None: ...

    async def refresh_representatives(self, repo_full_name: str, product_label: str) -> None: ...

    async def count_clusters(self, repo_full_name: str, product_label: str) -> int: ...
