import asyncio
import logging
from contextlib import asynccontextmanager
from functools import partial

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from src.core.config import get_settings
from src.core.errors import MissingConfigurationError, SyncInProgressError
from src.core.logging import configure_logging
from src.core.session import create_engine, create_session_factory, init_models
from src.jobs.continuous_sync import run_continuous_sync
from src.jobs.issue_sync_job import run_issue_sync_job
from src.jobs.runtime import HTTP_TIMEOUT_SECONDS

settings = get_settings()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.log_level)

    engine = create_engine(settings)
    app.state.http_client = httpx.AsyncClient(timeout=HTTP_TIMEOUT_SECONDS)
    app.state.session_factory = create_session_factory(engine)
    if settings.auto_create_schema:
        await init_models(engine)

    auto_sync = None
    if settings.auto_sync_repos:
        logger.info("Starting continuous sync", extra={"repos": settings.auto_sync_repos})
        sync_job = partial(
            run_issue_sync_job,
            http_client=app.state.http_client,
            session_factory=app.state.session_factory,
        )
        auto_sync = asyncio.create_task(
            run_continuous_sync(
                settings.auto_sync_repos,
                sync_job,
                sleep_minutes=settings.issue_sync_sleep_minutes,
            )
        )

    yield

    if auto_sync is not None:
        auto_sync.cancel()
        try:
            await auto_sync
        except asyncio.CancelledError:
            pass
    await app.state.http_client.aclose()
    await engine.dispose()


app = FastAPI(
    title="IssueCluster Worker",
    description="GitHub issue ingestion, embedding and clustering jobs",
    version="0.1.0",
    lifespan=lifespan,
)


@app.exception_handler(SyncInProgressError)
async def sync_in_progress_handler(request: Request, exc: SyncInProgressError) -> JSONResponse:
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(MissingConfigurationError)
async def missing_configuration_handler(request: Request, exc: MissingConfigurationError) -> JSONResponse:
    return JSONResponse(status_code=503, content={"detail": str(exc)})


@app.get("/health")
async def health_check():
    return {"status": "ok"}


from src.api.routes import jobs

app.include_router(jobs.router, prefix="/jobs", tags=["jobs"])


def run() -> None:
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())
