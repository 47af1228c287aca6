import logging

import httpx
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlmodel.ext.asyncio.session import AsyncSession

from src.core.config import Settings, get_settings
from src.core.errors import SyncInProgressError
from src.ingestion.embeddings import AzureOpenAIEmbedder
from src.ingestion.github_client import GitHubIssuesClient
from src.jobs.runtime import job_resources
from src.services.issue_store import IssueStore
from src.services.requests import IssueSyncRequest
from src.services.sync_service import SyncResult, sync_issues


logger = logging.getLogger(__name__)


async def run_issue_sync_job(
    request: IssueSyncRequest,
    *,
    claimed: bool = False,
    settings: Settings | None = None,
    http_client: httpx.AsyncClient | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> SyncResult:
    """
    Entry point for one sync job message; clients live for the run only unless
    passed in. `claimed` means the caller already holds the repository's sync flag.
    """
    settings = settings or get_settings()

    async with job_resources(settings, http_client, session_factory) as (client, sessions):
        github = GitHubIssuesClient.from_settings(client, settings)
        embedder = AzureOpenAIEmbedder.from_settings(client, settings)

        async with sessions() as session:
            store = IssueStore(session)
            try:
                return await sync_issues(
                    store, github, embedder, request, settings=settings, claimed=claimed
                )
            except SyncInProgressError:
                raise
            except Exception:
                logger.exception("Issue sync job failed", extra={"repo": request.repo_full_name})
                raise
