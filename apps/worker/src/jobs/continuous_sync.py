"""
Keeps configured repositories fresh: incremental sync of each repository in
turn, then sleep, forever. A repository that is already syncing, or whose sync
fails, is skipped until the next round.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Sequence

from src.core.errors import SyncInProgressError
from src.services.requests import IssueSyncRequest
from src.services.sync_service import SyncResult


logger = logging.getLogger(__name__)

SyncJob = Callable[[IssueSyncRequest], Awaitable[SyncResult]]


async def run_continuous_sync(
    repos: Sequence[str],
    sync_job: SyncJob,
    sleep_minutes: float,
    rounds: int | None = None,
) -> None:
    """Runs `rounds` rounds, or until cancelled when rounds is None."""
    completed = 0
    while rounds is None or completed < rounds:
        for repo in repos:
            try:
                result = await sync_job(IssueSyncRequest(repo_full_name=repo))
                logger.info(
                    "Auto sync finished",
                    extra={"repo": repo, "fetched": result.fetched, "embedded": result.embedded},
                )
            except SyncInProgressError:
                logger.info("Auto sync skipped; repository is already syncing", extra={"repo": repo})
            except Exception:
                logger.exception("Auto sync failed", extra={"repo": repo})

        completed += 1
        if rounds is not None and completed >= rounds:
            break
        await asyncio.sleep(max(0.0, sleep_minutes) * 60)
