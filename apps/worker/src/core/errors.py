"""Shared error types for the ingestion and clustering pipeline."""
from typing import Mapping


class MissingConfigurationError(Exception):
    """Raised when a required setting is empty; never retried."""

    def __init__(self, setting: str):
        self.setting = setting
        super().__init__(f"Missing {setting.upper()}")


class RateLimitError(Exception):
    """
    Explicit rate-limit signal from an upstream API.
    Carries the response headers so the retry engine can honour
    Retry-After / reset hints.
    """

    def __init__(self, message: str, headers: Mapping[str, str] | None = None):
        self.headers = dict(headers or {})
        super().__init__(message)


class VectorFormatError(ValueError):
    """Raised when a stored vector literal cannot be parsed."""
    pass


class VectorDimensionError(ValueError):
    """
    Raised when two vectors of different length are combined.
    All vectors share one configured model, so this signals corrupt data.
    """

    def __init__(self, left: int, right: int):
        self.left = left
        self.right = right
        super().__init__(f"Vector dimension mismatch: {left} vs {right}")


class EmbeddingProviderError(Exception):
    """Raised on non-2xx or malformed responses from the embedding API."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class SyncInProgressError(Exception):
    """Raised when a sync is requested for a repository that is already syncing."""

    def __init__(self, repo_full_name: str):
        self.repo_full_name = repo_full_name
        super().__init__(f"Issue sync already running for {repo_full_name}")
