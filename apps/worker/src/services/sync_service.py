"""
Issue sync orchestrator.

One run: refresh the latest release (best-effort), pick full or incremental
mode from the stored checkpoint, upsert every listed issue with its derived
target version and product labels, embed what changed, and advance the
checkpoint. Full runs checkpoint after every page so a crash loses at most
the page in flight.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Literal

import httpx

from src.core.config import Settings
from src.core.errors import EmbeddingProviderError, SyncInProgressError
from src.core.hashing import build_embedding_text
from src.core.vector import to_vector_literal
from src.ingestion.embeddings import Embedder
from src.ingestion.github_client import GitHubIssuesClient, ReleaseLookup
from src.ingestion.schemas import GitHubIssue
from src.ingestion.templates import derive_product_labels, derive_target_version, normalize_version
from src.services.requests import IssueSyncRequest
from src.services.types import IssueStoreProtocol, ReusableEmbedding


logger = logging.getLogger(__name__)

SyncMode = Literal["full", "incremental"]

# Provider answers that mean the deployment itself is misconfigured
_FATAL_PROVIDER_STATUSES = {401, 403, 404}


@dataclass
class SyncResult:
    repo_full_name: str
    mode: SyncMode
    fetched: int
    embedded: int
    reused: int
    embedding_failures: int
    last_synced_at: datetime
    last_synced_issue_number: int | None
    release: ReleaseLookup = field(default_factory=lambda: ReleaseLookup(status="failed"))


class EmbeddingReuseCache:
    """Per-run map of (model, input hash) to an already computed vector."""

    def __init__(self) -> None:
        self._entries: dict[str, ReusableEmbedding] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def key(model_id: str, input_hash: str) -> str:
        return f"{model_id}:{input_hash}"

    async def get(self, model_id: str, input_hash: str) -> ReusableEmbedding | None:
        async with self._lock:
            return self._entries.get(self.key(model_id, input_hash))

    async def put(self, model_id: str, input_hash: str, entry: ReusableEmbedding) -> None:
        async with self._lock:
            self._entries[self.key(model_id, input_hash)] = entry

    def __len__(self) -> int:
        return len(self._entries)


async def refresh_latest_release(
    store: IssueStoreProtocol,
    github: GitHubIssuesClient,
    repo_full_name: str,
) -> ReleaseLookup:
    """
    Persists the latest release (or its absence). Never raises; a failed
    lookup comes back as status "failed" with the error text.
    """
    try:
        lookup = await github.get_latest_release(repo_full_name)
        release = lookup.release
        version = None
        if release is not None:
            version = normalize_version(release.tag_name) or normalize_version(release.name)

        await store.upsert_repo_latest_release(
            repo_full_name,
            tag=release.tag_name if release else None,
            name=release.name if release else None,
            url=release.html_url if release else None,
            version=version,
            published_at=release.published_at if release else None,
        )
        return lookup
    except Exception as e:
        logger.warning(
            "Failed to refresh latest release metadata",
            extra={"repo": repo_full_name, "error": str(e)},
        )
        return ReleaseLookup(status="failed", error=str(e))


class IssueSyncRun:
    """Per-run state: counters, the issue-number watermark and the reuse cache."""

    def __init__(
        self,
        store: IssueStoreProtocol,
        embedder: Embedder,
        repo_full_name: str,
        settings: Settings,
        start_issue_number: int | None,
    ):
        self.store = store
        self.embedder = embedder
        self.repo_full_name = repo_full_name
        self.settings = settings
        self.cache = EmbeddingReuseCache()

        self.max_issue_number = start_issue_number
        self.processed = 0
        self.embedded = 0
        self.reused = 0
        self.embedding_failures = 0

    async def process_issue(self, issue: GitHubIssue) -> None:
        milestone_title = issue.milestone_title
        target_version = derive_target_version(
            issue.body, milestone_title, heading=self.settings.issue_version_field
        )

        upsert = await self.store.upsert_issue(
            self.repo_full_name,
            issue,
            target_version=target_version,
            milestone_title=milestone_title,
            expected_embedding_model=self.embedder.model_id or None,
        )

        product_labels = derive_product_labels(
            issue.body, issue.label_names, heading=self.settings.issue_area_field
        )
        await self.store.replace_issue_products(self.repo_full_name, issue.number, product_labels)

        if upsert.needs_embedding:
            await self._embed(issue, upsert.embedding_input_hash)

        if self.max_issue_number is None or issue.number > self.max_issue_number:
            self.max_issue_number = issue.number
        self.processed += 1

    async def _embed(self, issue: GitHubIssue, input_hash: str) -> None:
        model_id = self.embedder.model_id
        try:
            entry = await self.cache.get(model_id, input_hash)
            if entry is None:
                entry = await self.store.find_reusable_embedding(
                    self.repo_full_name, issue.number, input_hash, model_id
                )

            if entry is not None:
                await self.store.save_embedding(
                    self.repo_full_name, issue.number, entry.vector_literal, entry.model_id, input_hash
                )
                self.reused += 1
            else:
                result = await self.embedder.embed(build_embedding_text(issue.title, issue.body))
                entry = ReusableEmbedding(
                    vector_literal=to_vector_literal(result.embedding),
                    model_id=result.model,
                )
                await self.store.save_embedding(
                    self.repo_full_name, issue.number, entry.vector_literal, entry.model_id, input_hash
                )

            await self.cache.put(model_id, input_hash, entry)
            self.embedded += 1
        except EmbeddingProviderError as e:
            if e.status_code in _FATAL_PROVIDER_STATUSES:
                raise
            self._embedding_failed(issue, e)
        except (httpx.HTTPError, OSError) as e:
            self._embedding_failed(issue, e)

    def _embedding_failed(self, issue: GitHubIssue, error: Exception) -> None:
        self.embedding_failures += 1
        logger.warning(
            "Embedding failed during sync",
            extra={"repo": self.repo_full_name, "issue_number": issue.number, "error": str(error)},
        )


async def _run_full(
    run: IssueSyncRun,
    github: GitHubIssuesClient,
    resume_from: int | None,
    started_at: datetime,
) -> None:
    store = run.store
    repo = run.repo_full_name
    logger.info("Starting full sync", extra={"repo": repo, "resume_from_issue": resume_from})

    stream = github.stream_issues_by_created(
        repo, state="all", direction="asc", since_issue_number=resume_from
    )
    estimate_recorded = False
    async for page in stream:
        if not estimate_recorded and page.estimated_total_issues is not None:
            await store.set_sync_status(repo, True, page.estimated_total_issues)
            estimate_recorded = True

        logger.info(
            "Processing batch",
            extra={"repo": repo, "page": page.page, "batch_size": len(page.issues), "processed": run.processed},
        )
        for issue in page.issues:
            await run.process_issue(issue)

        await store.set_issue_sync_state(repo, started_at, run.max_issue_number)
        logger.debug(
            "Checkpoint saved",
            extra={"repo": repo, "last_synced_issue_number": run.max_issue_number},
        )


async def _run_incremental(
    run: IssueSyncRun,
    github: GitHubIssuesClient,
    since: datetime | None,
    last_issue_number: int,
) -> None:
    repo = run.repo_full_name
    updated = await github.list_issues_updated_since(repo, since.isoformat() if since else None)
    newer = await github.list_issues_newer_than_number(repo, last_issue_number)

    merged: dict[int, GitHubIssue] = {}
    for issue in [*updated, *newer]:
        merged[issue.number] = issue

    logger.info(
        "Fetched issues from GitHub (incremental)",
        extra={"repo": repo, "updated": len(updated), "new": len(newer), "count": len(merged)},
    )
    for number in sorted(merged):
        await run.process_issue(merged[number])


async def sync_issues(
    store: IssueStoreProtocol,
    github: GitHubIssuesClient,
    embedder: Embedder,
    request: IssueSyncRequest,
    *,
    settings: Settings,
    claimed: bool = False,
) -> SyncResult:
    """
    Runs one sync for request.repo_full_name.

    Claims the repository's sync flag first (raising SyncInProgressError when
    another run holds it) unless the caller already claimed it. Listing and
    configuration failures propagate and leave the checkpoint at its last
    persisted value; the flag is cleared either way.
    """
    repo = request.repo_full_name
    started_at = datetime.now(timezone.utc)

    if not claimed and not await store.claim_sync(repo, settings.issue_sync_lease_minutes):
        raise SyncInProgressError(repo)

    try:
        state = await store.get_issue_sync_state(repo)

        last_issue_number = state.last_synced_issue_number
        mode: SyncMode = "full" if request.full_sync or last_issue_number is None else "incremental"
        logger.info(
            "Syncing issues",
            extra={
                "repo": repo,
                "mode": mode,
                "since": state.last_synced_at,
                "last_issue_number": last_issue_number,
            },
        )

        run = IssueSyncRun(store, embedder, repo, settings, start_issue_number=last_issue_number)
        release = await refresh_latest_release(store, github, repo)

        if mode == "full":
            await _run_full(run, github, last_issue_number, started_at)
        else:
            await _run_incremental(run, github, state.last_synced_at, last_issue_number)

        finished_at = datetime.now(timezone.utc)
        await store.set_issue_sync_state(repo, finished_at, run.max_issue_number)
    finally:
        await store.set_sync_status(repo, False)

    logger.info(
        "Issue sync complete",
        extra={
            "repo": repo,
            "mode": mode,
            "processed": run.processed,
            "embedded": run.embedded,
            "reused": run.reused,
            "embedding_failures": run.embedding_failures,
            "last_synced_issue_number": run.max_issue_number,
        },
    )
    return SyncResult(
        repo_full_name=repo,
        mode=mode,
        fetched=run.processed,
        embedded=run.embedded,
        reused=run.reused,
        embedding_failures=run.embedding_failures,
        last_synced_at=finished_at,
        last_synced_issue_number=run.max_issue_number,
        release=release,
    )
