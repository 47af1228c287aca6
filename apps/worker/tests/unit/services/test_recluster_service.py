"""Recluster engine tests against the in-memory store."""
import math
from datetime import timedelta

import pytest


REPO = "owner/repo"
LABEL = "Product-FancyZones"


@pytest.fixture
def store():
    from src.testing.memory_store import MemoryIssueStore
    return MemoryIssueStore()


@pytest.fixture
def seed(store, make_issue):
    """Stores open issues with the given embeddings under LABEL."""
    from src.core.vector import to_vector_literal

    async def add(vectors: dict[int, list[float]], label: str = LABEL, state: str = "open", **overrides):
        for number, vector in vectors.items():
            issue = make_issue(number, state=state, **overrides)
            result = await store.upsert_issue(REPO, issue, target_version=None, milestone_title=None)
            await store.replace_issue_products(REPO, number, [label])
            if vector is not None:
                await store.save_embedding(REPO, number, to_vector_literal(vector), "m", result.embedding_input_hash)

    return add


def _request(threshold: float, top_k: int = 5, target_version=None):
    from src.services.requests import IssueReclusterRequest
    return IssueReclusterRequest(
        repo_full_name=REPO,
        product_label=LABEL,
        threshold=threshold,
        top_k=top_k,
        target_version=target_version,
    )


def _partition(store) -> set[frozenset[int]]:
    return {frozenset(store.members_of(cid)) for cid in store.clusters}


class TestPopularity:
    def test_fresh_issue_without_activity(self, fixed_now):
        from src.services.recluster_service import issue_popularity

        assert issue_popularity(0, 0, fixed_now, fixed_now) == pytest.approx(1.0)

    def test_weights(self, fixed_now):
        from src.services.recluster_service import issue_popularity

        stale = fixed_now - timedelta(days=40)
        assert issue_popularity(1, 1, stale, fixed_now) == pytest.approx(3 * math.log(2))

    @pytest.mark.parametrize("days,expected", [
        (0, 1.0),
        (1, 1.0),
        (15.5, 0.5),
        (30, 0.0),
        (90, 0.0),
    ])
    def test_recency(self, fixed_now, days, expected):
        from src.services.recluster_service import recency_score

        assert recency_score(fixed_now - timedelta(days=days), fixed_now) == pytest.approx(expected)

    def test_negative_counts_ignored(self, fixed_now):
        from src.services.recluster_service import issue_popularity

        assert issue_popularity(-5, -1, fixed_now, fixed_now) == pytest.approx(1.0)


class TestReclusterBucket:
    async def test_three_issue_scenario(self, store, seed):
        from src.services.recluster_service import recluster_bucket

        await seed({1: [1.0, 0.0], 2: [0.99, 0.01], 3: [0.0, 1.0]})

        result = await recluster_bucket(store, _request(threshold=0.9))

        assert result.clusters == 2
        assert result.mapped == 3
        assert _partition(store) == {frozenset({1, 2}), frozenset({3})}

        pair = next(c for c in store.clusters.values() if c.size == 2)
        assert pair.centroid == pytest.approx([0.995, 0.005])

    async def test_cluster_size_matches_mapping_rows(self, store, seed):
        from src.services.recluster_service import recluster_bucket

        await seed({1: [1.0, 0.0], 2: [0.99, 0.01], 3: [0.0, 1.0], 4: [0.05, 1.0]})

        await recluster_bucket(store, _request(threshold=0.9))

        for cluster in store.clusters.values():
            assert cluster.size == len(store.members_of(cluster.cluster_id))

    async def test_threshold_is_inclusive(self, store, seed):
        from src.services.recluster_service import recluster_bucket

        await seed({1: [1.0, 0.0], 2: [1.0, 0.0]})

        result = await recluster_bucket(store, _request(threshold=1.0))

        assert result.clusters == 1

    async def test_orthogonal_joins_at_zero_threshold(self, store, seed):
        from src.services.recluster_service import recluster_bucket

        await seed({1: [1.0, 0.0], 2: [0.0, 1.0]})

        result = await recluster_bucket(store, _request(threshold=0.0))

        assert result.clusters == 1

    async def test_deterministic_across_runs(self, store, seed):
        from src.services.recluster_service import recluster_bucket

        await seed({
            1: [1.0, 0.0, 0.0],
            2: [0.9, 0.1, 0.0],
            3: [0.0, 1.0, 0.0],
            4: [0.1, 0.9, 0.1],
            5: [0.0, 0.0, 1.0],
            6: [0.5, 0.5, 0.0],
        })

        await recluster_bucket(store, _request(threshold=0.8, top_k=2))
        first = _partition(store)
        first_reps = sorted(c.representative_issue_number for c in store.clusters.values())

        await recluster_bucket(store, _request(threshold=0.8, top_k=2))

        assert _partition(store) == first
        assert sorted(c.representative_issue_number for c in store.clusters.values()) == first_reps
        assert len(store.clusters) == len(first)

    async def test_representative_nearest_final_centroid(self, store, seed):
        from src.services.recluster_service import recluster_bucket

        await seed({1: [1.0, 0.0], 2: [0.6, 0.8], 3: [0.8, 0.4]})

        await recluster_bucket(store, _request(threshold=0.5))

        (cluster,) = store.clusters.values()
        assert cluster.size == 3
        assert cluster.representative_issue_number == 3

    async def test_only_open_embedded_members_of_label(self, store, seed):
        from src.services.recluster_service import recluster_bucket

        await seed({1: [1.0, 0.0]})
        await seed({2: [1.0, 0.0]}, state="closed")
        await seed({3: None})
        await seed({4: [1.0, 0.0]}, label="Product-Awake")

        result = await recluster_bucket(store, _request(threshold=0.9))

        assert result.mapped == 1
        assert _partition(store) == {frozenset({1})}

    async def test_unscoped_version_uses_placeholder(self, store, seed):
        from constants import ALL_VERSIONS_PLACEHOLDER
        from src.services.recluster_service import recluster_bucket

        await seed({1: [1.0, 0.0]})

        result = await recluster_bucket(store, _request(threshold=0.9))

        assert result.target_version == ALL_VERSIONS_PLACEHOLDER
        (cluster,) = store.clusters.values()
        assert cluster.target_version == ALL_VERSIONS_PLACEHOLDER

    async def test_popularity_accumulates(self, store, seed, fixed_now):
        from src.services.recluster_service import issue_popularity, recluster_bucket

        await seed({1: [1.0, 0.0], 2: [1.0, 0.0]}, comments=3, updated_at="2024-06-01T12:00:00Z")

        await recluster_bucket(store, _request(threshold=0.9), now=fixed_now)

        (cluster,) = store.clusters.values()
        assert cluster.popularity == pytest.approx(2 * issue_popularity(3, 0, fixed_now, fixed_now))

    async def test_empty_bucket(self, store):
        from src.services.recluster_service import recluster_bucket

        result = await recluster_bucket(store, _request(threshold=0.9))

        assert result.clusters == 0
        assert result.mapped == 0


class TestChooseCluster:
    def test_strictly_greater_wins(self):
        from uuid import uuid4

        from src.services.recluster_service import choose_cluster
        from src.services.types import ClusterCandidate

        first = ClusterCandidate(cluster_id=uuid4(), centroid=[1.0], size=1, cosine_distance=0.1)
        tie = ClusterCandidate(cluster_id=uuid4(), centroid=[1.0], size=1, cosine_distance=0.1)

        assert choose_cluster([first, tie]) is first
        assert choose_cluster([]) is None
