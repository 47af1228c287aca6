# Core module exports
from .config import Settings, get_settings
from .errors import (
    EmbeddingProviderError,
    MissingConfigurationError,
    RateLimitError,
    SyncInProgressError,
    VectorDimensionError,
    VectorFormatError,
)

__all__ = [
    "Settings",
    "get_settings",
    "EmbeddingProviderError",
    "MissingConfigurationError",
    "RateLimitError",
    "SyncInProgressError",
    "VectorDimensionError",
    "VectorFormatError",
]
