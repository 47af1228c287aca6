"""
Online clustering of one (repository, product label) bucket.

The bucket is rebuilt from scratch on every run: existing clusters are
dropped, then open embedded issues are assigned one at a time in ascending
issue-number order. Each assignment depends on centroids moved by the
previous ones, so the loop stays sequential.
"""
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone

from constants import (
    ALL_VERSIONS_PLACEHOLDER,
    POPULARITY_COMMENTS_WEIGHT,
    POPULARITY_REACTIONS_WEIGHT,
    RECENCY_FULL_DAYS,
    RECENCY_ZERO_DAYS,
)
from src.core.vector import mean_vector
from src.services.requests import IssueReclusterRequest
from src.services.types import ClusterCandidate, IssueStoreProtocol


logger = logging.getLogger(__name__)


@dataclass
class ReclusterResult:
    repo_full_name: str
    product_label: str
    target_version: str
    clusters: int
    mapped: int


def recency_score(updated_at: datetime, now: datetime) -> float:
    """1.0 up to one day old, falling linearly to 0.0 at thirty days."""
    if updated_at.tzinfo is None:
        updated_at = updated_at.replace(tzinfo=timezone.utc)
    days = max(0.0, (now - updated_at).total_seconds() / 86400)
    if days <= RECENCY_FULL_DAYS:
        return 1.0
    if days >= RECENCY_ZERO_DAYS:
        return 0.0
    return (RECENCY_ZERO_DAYS - days) / (RECENCY_ZERO_DAYS - RECENCY_FULL_DAYS)


def issue_popularity(comments: int, reactions: int, updated_at: datetime, now: datetime | None = None) -> float:
    now = now or datetime.now(timezone.utc)
    return (
        POPULARITY_COMMENTS_WEIGHT * math.log1p(max(0, comments))
        + POPULARITY_REACTIONS_WEIGHT * math.log1p(max(0, reactions))
        + recency_score(updated_at, now)
    )


def choose_cluster(candidates: list[ClusterCandidate]) -> ClusterCandidate | None:
    """Highest similarity wins; on equal similarity the earlier candidate stays."""
    chosen = None
    for candidate in candidates:
        if chosen is None or candidate.similarity > chosen.similarity:
            chosen = candidate
    return chosen


async def recluster_bucket(
    store: IssueStoreProtocol,
    request: IssueReclusterRequest,
    *,
    now: datetime | None = None,
) -> ReclusterResult:
    """
    Rebuilds the clusters of one bucket.

    An issue joins its most similar nearby cluster when the similarity is at
    least the threshold, otherwise it seeds a new cluster. Representatives
    are recomputed against the final centroids at the end.
    """
    repo = request.repo_full_name
    product_label = request.product_label
    target_version = request.target_version or ALL_VERSIONS_PLACEHOLDER
    threshold = request.threshold
    top_k = request.top_k
    now = now or datetime.now(timezone.utc)

    logger.info(
        "Reclustering bucket",
        extra={"repo": repo, "product_label": product_label, "threshold": threshold, "top_k": top_k},
    )

    await store.delete_bucket(repo, product_label)
    issues = await store.list_bucket_issues(repo, product_label)

    mapped = 0
    for issue in issues:
        popularity = issue_popularity(
            issue.comments_count, issue.reactions_total_count, issue.updated_at, now
        )
        candidates = await store.nearest_clusters(repo, product_label, issue.embedding, top_k)
        chosen = choose_cluster(candidates)

        if chosen is None or chosen.similarity < threshold:
            cluster_id = await store.create_cluster(
                repo,
                target_version=target_version,
                product_label=product_label,
                threshold=threshold,
                top_k=top_k,
                issue_number=issue.issue_number,
                embedding=issue.embedding,
                popularity=popularity,
            )
            logger.debug(
                "Created cluster",
                extra={"repo": repo, "issue_number": issue.issue_number, "cluster_id": str(cluster_id)},
            )
        else:
            centroid = mean_vector(chosen.centroid, chosen.size, issue.embedding)
            await store.add_to_cluster(
                repo,
                target_version=target_version,
                product_label=product_label,
                cluster_id=chosen.cluster_id,
                issue_number=issue.issue_number,
                similarity=chosen.similarity,
                centroid=centroid,
                popularity=popularity,
            )
        mapped += 1

    await store.refresh_representatives(repo, product_label)
    clusters = await store.count_clusters(repo, product_label)

    logger.info(
        "Recluster complete",
        extra={"repo": repo, "product_label": product_label, "clusters": clusters, "mapped": mapped},
    )
    return ReclusterResult(
        repo_full_name=repo,
        product_label=product_label,
        target_version=target_version,
        clusters=clusters,
        mapped=mapped,
    )
