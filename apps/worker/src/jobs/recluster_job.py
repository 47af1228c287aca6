import logging

from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlmodel.ext.asyncio.session import AsyncSession

from src.core.config import Settings, get_settings
from src.jobs.runtime import job_resources
from src.services.issue_store import IssueStore
from src.services.recluster_service import ReclusterResult, recluster_bucket
from src.services.requests import IssueReclusterRequest


logger = logging.getLogger(__name__)


async def run_recluster_job(
    request: IssueReclusterRequest,
    *,
    settings: Settings | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> ReclusterResult:
    """Entry point for one recluster job message."""
    settings = settings or get_settings()

    async with job_resources(settings, session_factory=session_factory) as (_, sessions):
        async with sessions() as session:
            try:
                return await recluster_bucket(IssueStore(session), request)
            except Exception:
                logger.exception(
                    "Recluster job failed",
                    extra={"repo": request.repo_full_name, "product_label": request.product_label},
                )
                raise
