"""Embedding provider abstractions and registry."""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import (
    TYPE_CHECKING,
    Callable,
    Mapping,
    Protocol,
    Sequence,
    runtime_checkable,
)

from noteindex.core.logging import Logger

__all__ = [
    "EmbeddingVector",
    "EmbeddingMatrix",
    "EmbedRequestOptions",
    "EmbeddingsProvider",
    "ProviderFactory",
    "ProviderInitContext",
    "ProviderRegistry",
    "ProviderRegistryError",
    "ProviderNotRegisteredError",
    "OpenAIEmbeddingsProvider",
    "openai_provider_factory",
    "create_default_provider_registry",
]

EmbeddingVector = tuple[float, ...]
EmbeddingMatrix = tuple[EmbeddingVector, ...]


@dataclass(frozen=True, slots=True)
class EmbedRequestOptions:
    """Per-call tuning shared across providers."""

    max_batch_size: int
    timeout: float | None = None

    def __post_init__(self) -> None:
        if self.max_batch_size < 1:
            raise ValueError("max_batch_size must be >= 1")
        if self.timeout is not None and self.timeout <= 0:
            raise ValueError("timeout must be positive when provided")


@runtime_checkable
class EmbeddingsProvider(Protocol):
    """Boundary contract: turn texts into vectors, one per input."""

    def embed_texts(
        self,
        texts: Sequence[str],
        *,
        model: str,
        options: EmbedRequestOptions,
    ) -> EmbeddingMatrix:
        """Embed ``texts`` with ``model`` in input order."""


@dataclass(frozen=True, slots=True)
class ProviderInitContext:
    """Construction context supplied to provider factories."""

    logger: Logger
    config: Mapping[str, object] | None = None

    def __post_init__(self) -> None:
        object.__setattr__(
            self,
            "config",
            MappingProxyType(dict(self.config or {})),
        )


ProviderFactory = Callable[[ProviderInitContext], EmbeddingsProvider]


class ProviderRegistryError(RuntimeError):
    """Base error type raised when interacting with the provider registry."""


class ProviderNotRegisteredError(ProviderRegistryError):
    """Raised when a provider lookup fails for the requested key."""


class ProviderRegistry:
    """Mutable registry mapping provider keys to factory callables."""

    def __init__(
        self,
        factories: Mapping[str, ProviderFactory] | None = None,
    ) -> None:
        self._factories: dict[str, ProviderFactory] = {}
        for key, factory in (factories or {}).items():
            self.register(key, factory)

    @staticmethod
    def _normalize_key(key: str) -> str:
        normalized = key.strip().lower()
        if not normalized:
            raise ValueError("provider key cannot be empty")
        return normalized

    def register(self, key: str, factory: ProviderFactory) -> None:
        normalized = self._normalize_key(key)
        if normalized in self._factories:
            raise ProviderRegistryError(
                f"Provider {normalized!r} already registered",
            )
        self._factories[normalized] = factory

    def create(
        self,
        key: str,
        *,
        logger: Logger,
        config: Mapping[str, object] | None = None,
    ) -> EmbeddingsProvider:
        """Instantiate the provider registered under ``key``."""

        normalized = self._normalize_key(key)
        try:
            factory = self._factories[normalized]
        except KeyError as exc:
            raise ProviderNotRegisteredError(
                f"No provider registered under key {normalized!r}",
            ) from exc
        return factory(ProviderInitContext(logger=logger, config=config))

    def keys(self) -> tuple[str, ...]:
        return tuple(sorted(self._factories))


if TYPE_CHECKING:  # pragma: no cover - type checker imports only
    from .openai import OpenAIEmbeddingsProvider, openai_provider_factory


def __getattr__(name: str) -> object:
    # The OpenAI client is imported lazily so that fakes can be used in
    # environments without credentials.
    if name in {"OpenAIEmbeddingsProvider", "openai_provider_factory"}:
        from . import openai as _openai

        return getattr(_openai, name)

    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


def create_default_provider_registry() -> ProviderRegistry:
    """Return a registry with the built-in ``openai`` provider."""

    from .openai import openai_provider_factory

    return ProviderRegistry({"openai": openai_provider_factory})
