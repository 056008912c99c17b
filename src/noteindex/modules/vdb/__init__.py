"""Vector database module: providers, index lifecycle and embedding."""

from __future__ import annotations

from typing import TYPE_CHECKING

from .embedding import EmbedOutcome, EmbeddingService, chunk_text
from .errors import (
    VdbProviderConfigurationError,
    VdbProviderDimMismatchError,
    VdbProviderError,
    VdbProviderRateLimitError,
    VdbProviderRequestError,
    VdbProviderRetryableError,
    VectorIndexConfigurationError,
    VectorIndexError,
    VectorIndexNotFoundError,
)
from .manager import KNOWN_MODEL_DIMENSIONS, VectorIndexManager, resolve_dimension
from .models import ScoredNote, SearchResult, VectorMatch, VectorStore
from .providers import (
    EmbedRequestOptions,
    EmbeddingsProvider,
    ProviderRegistry,
    create_default_provider_registry,
)

if TYPE_CHECKING:  # pragma: no cover - type checker imports only
    from .store import FaissVectorStore

__all__ = [
    "EmbedOutcome",
    "EmbedRequestOptions",
    "EmbeddingService",
    "EmbeddingsProvider",
    "FaissVectorStore",
    "KNOWN_MODEL_DIMENSIONS",
    "ProviderRegistry",
    "ScoredNote",
    "SearchResult",
    "VdbProviderConfigurationError",
    "VdbProviderDimMismatchError",
    "VdbProviderError",
    "VdbProviderRateLimitError",
    "VdbProviderRequestError",
    "VdbProviderRetryableError",
    "VectorIndexConfigurationError",
    "VectorIndexError",
    "VectorIndexManager",
    "VectorIndexNotFoundError",
    "VectorMatch",
    "VectorStore",
    "chunk_text",
    "create_default_provider_registry",
    "resolve_dimension",
]


def __getattr__(name: str) -> object:
    # FAISS ships in the optional ``vdb`` extra.
    if name == "FaissVectorStore":
        from .store import FaissVectorStore

        return FaissVectorStore
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
