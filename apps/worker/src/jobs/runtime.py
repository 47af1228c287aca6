"""Per-run resources for job entry points that are not handed shared ones."""
from contextlib import AsyncExitStack, asynccontextmanager
from typing import AsyncIterator

import httpx
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlmodel.ext.asyncio.session import AsyncSession

from src.core.config import Settings
from src.core.session import create_engine, create_session_factory

HTTP_TIMEOUT_SECONDS = 60.0


@asynccontextmanager
async def job_resources(
    settings: Settings,
    http_client: httpx.AsyncClient | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> AsyncIterator[tuple[httpx.AsyncClient, async_sessionmaker[AsyncSession]]]:
    """
    Yields an HTTP client and a session factory. Whatever was not passed in is
    created here and closed on exit; passed-in resources stay open.
    """
    async with AsyncExitStack() as stack:
        if http_client is None:
            http_client = await stack.enter_async_context(httpx.AsyncClient(timeout=HTTP_TIMEOUT_SECONDS))

        if session_factory is None:
            engine = create_engine(settings)
            stack.push_async_callback(engine.dispose)
            session_factory = create_session_factory(engine)

        yield http_client, session_factory
