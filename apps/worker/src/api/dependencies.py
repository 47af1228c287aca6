"""
Route dependencies.

The HTTP client, engine and session factory are built by the FastAPI
lifespan and kept on app.state; the routes only read them from there.
"""
from typing import AsyncIterator

import httpx
from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlmodel.ext.asyncio.session import AsyncSession

from src.core.config import get_settings
from src.ingestion.embeddings import AzureOpenAIEmbedder
from src.ingestion.github_client import GitHubIssuesClient
from src.services.issue_store import IssueStore


def get_http_client(request: Request) -> httpx.AsyncClient:
    return request.app.state.http_client


def get_session_factory(request: Request) -> async_sessionmaker[AsyncSession]:
    return request.app.state.session_factory


async def get_db(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> AsyncIterator[AsyncSession]:
    async with session_factory() as session:
        yield session


async def get_issue_store(db: AsyncSession = Depends(get_db)) -> IssueStore:
    return IssueStore(db)


async def get_github_client(client: httpx.AsyncClient = Depends(get_http_client)) -> GitHubIssuesClient:
    return GitHubIssuesClient.from_settings(client, get_settings())


async def get_embedder(client: httpx.AsyncClient = Depends(get_http_client)) -> AzureOpenAIEmbedder:
    return AzureOpenAIEmbedder.from_settings(client, get_settings())
