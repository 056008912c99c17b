"""Typed error hierarchy for embedding providers and the vector index."""

from __future__ import annotations

from dataclasses import dataclass

__all__ = [
    "VdbProviderError",
    "VdbProviderConfigurationError",
    "VdbProviderRequestError",
    "VdbProviderRetryableError",
    "VdbProviderRateLimitError",
    "VdbProviderDimMismatchError",
    "VectorIndexError",
    "VectorIndexConfigurationError",
    "VectorIndexNotFoundError",
]


@dataclass(slots=True)
class VdbProviderError(RuntimeError):
    """Base error raised by embedding providers."""

    message: str
    provider: str
    model: str
    request_id: str | None = None
    status_code: int | None = None

    def __post_init__(self) -> None:
        RuntimeError.__init__(self, self.message)


@dataclass(slots=True)
class VdbProviderConfigurationError(VdbProviderError):
    """Raised when the provider cannot be constructed (missing key, model)."""


@dataclass(slots=True)
class VdbProviderRequestError(VdbProviderError):
    """Raised when the provider rejects a request."""


@dataclass(slots=True)
class VdbProviderRetryableError(VdbProviderRequestError):
    """Raised for transport failures and 5xx responses."""


@dataclass(slots=True)
class VdbProviderRateLimitError(VdbProviderRetryableError):
    """Raised when the provider answers with a rate limit response."""


@dataclass(slots=True)
class VdbProviderDimMismatchError(VdbProviderError):
    """Raised when returned vectors do not match the index dimension."""

    expected: int | None = None
    actual: int | None = None


class VectorIndexError(RuntimeError):
    """Base error for vector index lifecycle and query failures."""


class VectorIndexConfigurationError(VectorIndexError):
    """Raised when no model is configured or its dimension is unknown."""

    def __init__(self, message: str, *, model: str | None = None) -> None:
        super().__init__(message)
        self.model = model


class VectorIndexNotFoundError(VectorIndexError):
    """Raised when an index or the vectors for a source id do not exist."""

    def __init__(
        self,
        message: str,
        *,
        index_name: str,
        source_id: int | None = None,
    ) -> None:
        super().__init__(message)
        self.index_name = index_name
        self.source_id = source_id
