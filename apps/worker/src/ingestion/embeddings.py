"""
Embedding provider client (Azure OpenAI compatible).

POST {model, input} -> {data: [{embedding: [...]}]}. Non-2xx responses and
malformed payloads raise EmbeddingProviderError; the retry engine only
retries the 429/5xx/network subset of those.
"""
import logging
from dataclasses import dataclass
from typing import Protocol
from urllib.parse import quote

import httpx
from pydantic import ValidationError

from src.core.config import Settings
from src.core.errors import EmbeddingProviderError, MissingConfigurationError
from src.core.retry import DEFAULT_RETRY_CONFIG, RetryConfig, with_retry
from src.ingestion.schemas import EmbeddingResponse


logger = logging.getLogger(__name__)


@dataclass
class EmbeddingResult:
    model: str
    embedding: list[float]


class Embedder(Protocol):
    model_id: str

    async def embed(self, text: str) -> EmbeddingResult:
        ...


class AzureOpenAIEmbedder:
    """
    Calls an Azure OpenAI deployment, or the v1 endpoint when no api_version is set.
    The httpx.AsyncClient is owned by the caller.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        endpoint: str,
        api_key: str,
        model_id: str,
        api_version: str | None = None,
        retry_config: RetryConfig = DEFAULT_RETRY_CONFIG,
    ):
        if not endpoint:
            raise MissingConfigurationError("azure_openai_endpoint")
        if not api_key:
            raise MissingConfigurationError("azure_openai_api_key")
        if not model_id:
            raise MissingConfigurationError("issue_embedding_model_id")

        self._client = client
        self._api_key = api_key
        self.endpoint = endpoint.rstrip("/") + "/"
        self.model_id = model_id
        self.api_version = api_version or None
        self.retry_config = retry_config

    @classmethod
    def from_settings(cls, client: httpx.AsyncClient, settings: Settings) -> "AzureOpenAIEmbedder":
        return cls(
            client,
            endpoint=settings.azure_openai_endpoint,
            api_key=settings.azure_openai_api_key,
            model_id=settings.issue_embedding_model_id,
            api_version=settings.azure_openai_api_version,
        )

    @property
    def url(self) -> str:
        if self.api_version:
            return (
                f"{self.endpoint}openai/deployments/{quote(self.model_id, safe='')}"
                f"/embeddings?api-version={quote(self.api_version, safe='')}"
            )
        return f"{self.endpoint}openai/v1/embeddings"

    def _payload(self, text: str) -> dict:
        # Deployment URLs already pin the model
        if self.api_version:
            return {"input": text}
        return {"model": self.model_id, "input": text}

    async def _embed_once(self, text: str) -> EmbeddingResult:
        response = await self._client.post(
            self.url,
            json=self._payload(text),
            headers={"api-key": self._api_key, "content-type": "application/json"},
        )

        if not response.is_success:
            logger.error(
                "Embedding provider error",
                extra={"status": response.status_code, "body": response.text[:500]},
            )
            raise EmbeddingProviderError(
                f"Embeddings error {response.status_code}: {response.text[:500]}",
                status_code=response.status_code,
            )

        try:
            parsed = EmbeddingResponse.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            logger.error("Unexpected embeddings response", extra={"body": response.text[:500]})
            raise EmbeddingProviderError("Invalid embeddings response", status_code=response.status_code) from e

        return EmbeddingResult(model=self.model_id, embedding=parsed.data[0].embedding)

    async def embed(self, text: str) -> EmbeddingResult:
        return await with_retry(
            lambda: self._embed_once(text),
            config=self.retry_config,
            operation="embeddings",
        )
