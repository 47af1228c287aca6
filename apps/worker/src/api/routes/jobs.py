"""Job intake routes. Syncs run in the background; reclusters run inline."""
from datetime import datetime
from typing import Optional

import httpx
from fastapi import APIRouter, BackgroundTasks, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlmodel.ext.asyncio.session import AsyncSession

from src.api.dependencies import (
    get_embedder,
    get_github_client,
    get_http_client,
    get_issue_store,
    get_session_factory,
)
from src.core.config import get_settings
from src.core.errors import SyncInProgressError
from src.ingestion.embeddings import AzureOpenAIEmbedder
from src.ingestion.github_client import GitHubIssuesClient
from src.jobs.issue_sync_job import run_issue_sync_job
from src.services.issue_store import IssueStore
from src.services.recluster_service import recluster_bucket
from src.services.requests import IssueReclusterRequest, IssueSyncRequest


router = APIRouter()


class SyncAcceptedResponse(BaseModel):
    status: str
    repo_full_name: str
    full_sync: bool


class SyncStatusResponse(BaseModel):
    repo_full_name: str
    is_syncing: bool
    last_synced_at: Optional[datetime]
    last_synced_issue_number: Optional[int]
    estimated_total_issues: Optional[int]
    issue_count: int


class ReclusterResponse(BaseModel):
    repo_full_name: str
    product_label: str
    target_version: str
    clusters: int
    mapped: int


async def _run_sync_in_background(
    request: IssueSyncRequest,
    client: httpx.AsyncClient,
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    await run_issue_sync_job(request, claimed=True, http_client=client, session_factory=session_factory)


@router.post("/issue-sync", status_code=202, response_model=SyncAcceptedResponse)
async def start_issue_sync(
    request: IssueSyncRequest,
    background_tasks: BackgroundTasks,
    store: IssueStore = Depends(get_issue_store),
    client: httpx.AsyncClient = Depends(get_http_client),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    # Resolved here so missing credentials fail the request instead of the background run
    _github: GitHubIssuesClient = Depends(get_github_client),
    _embedder: AzureOpenAIEmbedder = Depends(get_embedder),
) -> SyncAcceptedResponse:
    lease_minutes = get_settings().issue_sync_lease_minutes
    if not await store.claim_sync(request.repo_full_name, lease_minutes):
        raise SyncInProgressError(request.repo_full_name)

    background_tasks.add_task(_run_sync_in_background, request, client, session_factory)
    return SyncAcceptedResponse(
        status="accepted",
        repo_full_name=request.repo_full_name,
        full_sync=request.full_sync,
    )


@router.get("/issue-sync/{owner}/{repo}", response_model=SyncStatusResponse)
async def get_issue_sync_status(
    owner: str,
    repo: str,
    store: IssueStore = Depends(get_issue_store),
) -> SyncStatusResponse:
    repo_full_name = f"{owner}/{repo}"
    state = await store.get_issue_sync_state(repo_full_name)
    return SyncStatusResponse(
        repo_full_name=repo_full_name,
        is_syncing=state.is_syncing,
        last_synced_at=state.last_synced_at,
        last_synced_issue_number=state.last_synced_issue_number,
        estimated_total_issues=state.estimated_total_issues,
        issue_count=await store.count_issues(repo_full_name),
    )


@router.post("/issue-recluster", response_model=ReclusterResponse)
async def issue_recluster(
    request: IssueReclusterRequest,
    store: IssueStore = Depends(get_issue_store),
) -> ReclusterResponse:
    result = await recluster_bucket(store, request)
    return ReclusterResponse(
        repo_full_name=result.repo_full_name,
        product_label=result.product_label,
        target_version=result.target_version,
        clusters=result.clusters,
        mapped=result.mapped,
    )
