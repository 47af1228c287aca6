"""
Integration tests for the job routes.

The Postgres store is swapped for the in-memory one and outbound clients are
mocked, so no database or network is touched.
"""
import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from fastapi.testclient import TestClient


@pytest.fixture
def store():
    from src.testing.memory_store import MemoryIssueStore
    return MemoryIssueStore()


@pytest.fixture
def client(store):
    from src.api.dependencies import (
        get_embedder,
        get_github_client,
        get_http_client,
        get_issue_store,
        get_session_factory,
    )
    from src.main import app

    app.dependency_overrides[get_issue_store] = lambda: store
    app.dependency_overrides[get_http_client] = lambda: MagicMock()
    app.dependency_overrides[get_session_factory] = lambda: MagicMock()
    app.dependency_overrides[get_github_client] = lambda: MagicMock()
    app.dependency_overrides[get_embedder] = lambda: MagicMock()
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_lifespan_builds_and_closes_clients():
    from src.main import app

    with TestClient(app) as client:
        http_client = app.state.http_client
        assert isinstance(http_client, httpx.AsyncClient)
        assert app.state.session_factory is not None
        assert client.get("/health").status_code == 200

    assert http_client.is_closed


def test_run_serves_app_with_configured_address():
    from src.core.config import get_settings
    from src.main import app, run

    settings = get_settings()
    with patch("src.main.uvicorn.run") as serve:
        run()

    serve.assert_called_once()
    assert serve.call_args.args[0] is app
    assert serve.call_args.kwargs["host"] == settings.host
    assert serve.call_args.kwargs["port"] == settings.port


class TestIssueSyncRoute:
    def test_accepts_and_schedules_sync(self, client):
        with patch("src.api.routes.jobs._run_sync_in_background", new=AsyncMock()) as background:
            response = client.post("/jobs/issue-sync", json={"repoFullName": "owner/repo", "fullSync": True})

        assert response.status_code == 202
        assert response.json() == {"status": "accepted", "repo_full_name": "owner/repo", "full_sync": True}
        background.assert_awaited_once()
        request = background.await_args.args[0]
        assert request.repo_full_name == "owner/repo"
        assert request.full_sync is True

    def test_second_request_refused_before_first_run_starts(self, client, store):
        with patch("src.api.routes.jobs._run_sync_in_background", new=AsyncMock()) as background:
            first = client.post("/jobs/issue-sync", json={"repoFullName": "owner/repo"})
            second = client.post("/jobs/issue-sync", json={"repoFullName": "owner/repo"})

        assert first.status_code == 202
        assert second.status_code == 409
        assert background.await_count == 1
        assert asyncio.run(store.get_issue_sync_state("owner/repo")).is_syncing is True

    def test_other_repos_not_blocked(self, client):
        with patch("src.api.routes.jobs._run_sync_in_background", new=AsyncMock()):
            first = client.post("/jobs/issue-sync", json={"repoFullName": "owner/repo"})
            other = client.post("/jobs/issue-sync", json={"repoFullName": "owner/other"})

        assert first.status_code == 202
        assert other.status_code == 202

    async def test_background_run_holds_claim(self):
        from src.api.routes.jobs import _run_sync_in_background
        from src.services.requests import IssueSyncRequest

        request = IssueSyncRequest(repo_full_name="owner/repo")
        client, factory = MagicMock(), MagicMock()

        with patch("src.api.routes.jobs.run_issue_sync_job", new=AsyncMock()) as job:
            await _run_sync_in_background(request, client, factory)

        job.assert_awaited_once_with(request, claimed=True, http_client=client, session_factory=factory)

    def test_snake_case_body_accepted(self, client):
        with patch("src.api.routes.jobs._run_sync_in_background", new=AsyncMock()):
            response = client.post("/jobs/issue-sync", json={"repo_full_name": "owner/repo"})

        assert response.status_code == 202
        assert response.json()["full_sync"] is False

    def test_conflict_while_syncing(self, client, store):
        asyncio.run(store.set_sync_status("owner/repo", True))

        with patch("src.api.routes.jobs._run_sync_in_background", new=AsyncMock()) as background:
            response = client.post("/jobs/issue-sync", json={"repoFullName": "owner/repo"})

        assert response.status_code == 409
        assert "owner/repo" in response.json()["detail"]
        background.assert_not_awaited()

    @pytest.mark.parametrize("repo", ["owner", "owner/repo/extra", "owner/ repo", ""])
    def test_rejects_bad_repo_name(self, client, repo):
        response = client.post("/jobs/issue-sync", json={"repoFullName": repo})

        assert response.status_code == 422

    def test_missing_configuration_is_503(self, client):
        from src.api.dependencies import get_github_client
        from src.core.errors import MissingConfigurationError
        from src.main import app

        def missing():
            raise MissingConfigurationError("github_token")

        app.dependency_overrides[get_github_client] = missing

        response = client.post("/jobs/issue-sync", json={"repoFullName": "owner/repo"})

        assert response.status_code == 503
        assert response.json() == {"detail": "Missing GITHUB_TOKEN"}

    def test_status(self, client, store, make_issue):
        from datetime import datetime, timezone

        async def seed():
            await store.upsert_issue("owner/repo", make_issue(1), target_version=None, milestone_title=None)
            await store.upsert_issue("owner/repo", make_issue(2), target_version=None, milestone_title=None)
            await store.set_issue_sync_state("owner/repo", datetime(2024, 6, 1, tzinfo=timezone.utc), 2)
            await store.set_sync_status("owner/repo", False, 40)

        asyncio.run(seed())

        response = client.get("/jobs/issue-sync/owner/repo")

        assert response.status_code == 200
        body = response.json()
        assert body["repo_full_name"] == "owner/repo"
        assert body["is_syncing"] is False
        assert body["last_synced_issue_number"] == 2
        assert body["estimated_total_issues"] == 40
        assert body["issue_count"] == 2


class TestReclusterRoute:
    def test_reclusters_bucket(self, client, store, make_issue):
        async def seed():
            for number, vector in [(1, "[1.0,0.0]"), (2, "[0.99,0.01]"), (3, "[0.0,1.0]")]:
                upsert = await store.upsert_issue("owner/repo", make_issue(number), None, None)
                await store.replace_issue_products("owner/repo", number, ["Product-A"])
                await store.save_embedding("owner/repo", number, vector, "m", upsert.embedding_input_hash)

        asyncio.run(seed())

        response = client.post(
            "/jobs/issue-recluster",
            json={"repoFullName": "owner/repo", "productLabel": "Product-A", "threshold": 0.9, "topK": 5},
        )

        assert response.status_code == 200
        assert response.json() == {
            "repo_full_name": "owner/repo",
            "product_label": "Product-A",
            "target_version": "__all__",
            "clusters": 2,
            "mapped": 3,
        }

    @pytest.mark.parametrize("overrides", [{"threshold": 1.5}, {"topK": 0}, {"productLabel": ""}])
    def test_rejects_invalid_parameters(self, client, overrides):
        body = {"repoFullName": "owner/repo", "productLabel": "Product-A", "threshold": 0.8, "topK": 5}
        body.update(overrides)

        response = client.post("/jobs/issue-recluster", json=body)

        assert response.status_code == 422
