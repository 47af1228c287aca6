"""
Async engine and session factory construction.

Nothing here is created at import time: the FastAPI lifespan and the job
entry points build an engine, hand sessions to the services, and dispose of
the engine on shutdown.
"""
import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

from src.core.config import Settings
from src.core.errors import MissingConfigurationError

import models  # noqa: F401  registers tables on SQLModel.metadata


def create_engine(settings: Settings) -> AsyncEngine:
    if not settings.database_url:
        raise MissingConfigurationError("database_url")

    return create_async_engine(
        settings.database_url,
        pool_size=settings.db_pool_max,
        pool_pre_ping=True,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_models(engine: AsyncEngine) -> None:
    """Creates the vector extension, schemas and tables; used for local setups."""
    async with engine.begin() as conn:
        await conn.execute(sa.text("create extension if not exists vector"))
        await conn.execute(sa.text("create schema if not exists ingestion"))
        await conn.execute(sa.text("create schema if not exists clustering"))
        await conn.run_sync(SQLModel.metadata.create_all)
