"""OpenAI embeddings provider implementation."""

from __future__ import annotations

import os
import time
from dataclasses import dataclass
from typing import Callable, Mapping, Sequence

import httpx
import tiktoken
from openai import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    OpenAI,
    RateLimitError,
)

from noteindex.core.logging import Logger
from noteindex.modules.vdb.errors import (
    VdbProviderConfigurationError,
    VdbProviderError,
    VdbProviderRateLimitError,
    VdbProviderRequestError,
    VdbProviderRetryableError,
)

from . import (
    EmbedRequestOptions,
    EmbeddingMatrix,
    EmbeddingsProvider,
    ProviderInitContext,
)

__all__ = [
    "OpenAIEmbeddingsProvider",
    "openai_provider_factory",
]

_PROVIDER = "openai"
_DEFAULT_TIMEOUT = 30.0
_MAX_REQUEST_TOKENS = 8_191
_MAX_BATCH_SIZE = 128
_TOKEN_PAD = 8


@dataclass(frozen=True, slots=True)
class _Batch:
    texts: tuple[str, ...]
    tokens: int


def _resolve_timeout(config: Mapping[str, object]) -> float:
    raw = os.environ.get("OPENAI_TIMEOUT_SECONDS") or config.get("timeout")
    if raw is None:
        return _DEFAULT_TIMEOUT
    try:
        parsed = float(raw)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise ValueError(
            "OPENAI_TIMEOUT_SECONDS must be a number when provided.",
        ) from exc
    if parsed <= 0:
        raise ValueError("OPENAI_TIMEOUT_SECONDS must be positive.")
    return parsed


class OpenAIEmbeddingsProvider(EmbeddingsProvider):
    """Embed texts via the OpenAI (or any compatible) embeddings API.

    Each request is attempted once; retries belong to the rebuild job's
    per-item envelope so that backoff is applied in a single place.
    """

    def __init__(
        self,
        *,
        logger: Logger,
        config: Mapping[str, object] | None = None,
        client: OpenAI | None = None,
        now: Callable[[], float] = time.perf_counter,
    ) -> None:
        self.logger = logger
        self._config = dict(config or {})
        self._now = now
        self._encodings: dict[str, tiktoken.Encoding] = {}
        self._client = client or self._build_client()

    def embed_texts(
        self,
        texts: Sequence[str],
        *,
        model: str,
        options: EmbedRequestOptions,
    ) -> EmbeddingMatrix:
        if not texts:
            return ()

        name = model.strip()
        if not name:
            raise VdbProviderConfigurationError(
                "No embedding model configured.",
                provider=_PROVIDER,
                model="*",
            )

        normalized = [self._normalize_text(text) for text in texts]
        counts = [self._count_tokens(model=name, text=text) for text in normalized]
        batches = self._chunk_batches(
            normalized,
            counts,
            limit=min(options.max_batch_size, _MAX_BATCH_SIZE),
            model=name,
        )

        vectors: list[tuple[float, ...]] = []
        for batch in batches:
            data = self._invoke(model=name, batch=batch)
            if len(data) != len(batch.texts):
                raise VdbProviderRequestError(
                    (
                        "OpenAI returned "
                        f"{len(data)} embeddings for {len(batch.texts)} inputs."
                    ),
                    provider=_PROVIDER,
                    model=name,
                )
            vectors.extend(tuple(float(v) for v in vector) for vector in data)
        return tuple(vectors)

    def _build_client(self) -> OpenAI:
        api_key = os.environ.get("OPENAI_API_KEY")
        if not api_key:
            raise VdbProviderConfigurationError(
                "OPENAI_API_KEY must be set to use the OpenAI provider.",
                provider=_PROVIDER,
                model="*",
            )
        base_url = os.environ.get("OPENAI_BASE_URL") or self._config.get(
            "base_url"
        )
        return OpenAI(
            api_key=api_key,
            base_url=base_url,  # type: ignore[arg-type]
            timeout=_resolve_timeout(self._config),
        )

    def _chunk_batches(
        self,
        texts: Sequence[str],
        token_counts: Sequence[int],
        *,
        limit: int,
        model: str,
    ) -> tuple[_Batch, ...]:
        batches: list[_Batch] = []
        current: list[str] = []
        current_tokens = 0

        for text, tokens in zip(texts, token_counts):
            if tokens > _MAX_REQUEST_TOKENS:
                raise VdbProviderRequestError(
                    (
                        "Input text exceeds OpenAI token limit "
                        f"({tokens} > {_MAX_REQUEST_TOKENS})."
                    ),
                    provider=_PROVIDER,
                    model=model,
                )
            full = len(current) >= limit
            over = current_tokens + tokens > _MAX_REQUEST_TOKENS
            if current and (full or over):
                batches.append(_Batch(tuple(current), current_tokens))
                current, current_tokens = [], 0
            current.append(text)
            current_tokens += tokens

        if current:
            batches.append(_Batch(tuple(current), current_tokens))
        return tuple(batches)

    def _count_tokens(self, *, model: str, text: str) -> int:
        encoding = self._encodings.get(model)
        if encoding is None:
            try:
                encoding = tiktoken.encoding_for_model(model)
            except KeyError:
                encoding = tiktoken.get_encoding("cl100k_base")
            self._encodings[model] = encoding
        return _TOKEN_PAD + len(encoding.encode(text, disallowed_special=()))

    @staticmethod
    def _normalize_text(text: str) -> str:
        return text.replace("\r\n", "\n").replace("\r", "\n").strip()

    def _invoke(self, *, model: str, batch: _Batch) -> list[list[float]]:
        kwargs: dict[str, object] = {"model": model, "input": list(batch.texts)}
        dimensions = self._config.get("dimensions")
        if isinstance(dimensions, int) and dimensions > 0:
            kwargs["dimensions"] = dimensions

        start = self._now()
        try:
            response = self._client.embeddings.create(**kwargs)
        except Exception as exc:
            error = self._translate_exception(exc, model=model)
            self.logger.warning(
                "openai-embed-failed",
                provider=_PROVIDER,
                model=model,
                batch_size=len(batch.texts),
                error_type=exc.__class__.__name__,
                status_code=error.status_code,
                request_id=error.request_id,
            )
            raise error from exc

        self.logger.debug(
            "openai-embed-request",
            provider=_PROVIDER,
            model=model,
            batch_size=len(batch.texts),
            token_count=batch.tokens,
            latency=self._now() - start,
        )
        return [list(item.embedding) for item in response.data]

    @staticmethod
    def _extract_context(exc: Exception) -> tuple[int | None, str | None]:
        status: int | None = None
        value = getattr(exc, "status_code", None)
        if isinstance(value, int):
            status = value
        request_id = getattr(exc, "request_id", None)
        if not isinstance(request_id, str):
            request_id = None
        return status, request_id

    @classmethod
    def _translate_exception(
        cls,
        exc: Exception,
        *,
        model: str,
    ) -> VdbProviderError:
        status, request_id = cls._extract_context(exc)
        message = str(exc) or exc.__class__.__name__
        context = {
            "provider": _PROVIDER,
            "model": model,
            "status_code": status,
            "request_id": request_id,
        }
        if isinstance(exc, RateLimitError):
            return VdbProviderRateLimitError(message, **context)
        if isinstance(
            exc,
            (APITimeoutError, APIConnectionError, httpx.HTTPError),
        ):
            return VdbProviderRetryableError(message, **context)
        if isinstance(exc, APIStatusError) and status and status >= 500:
            return VdbProviderRetryableError(message, **context)
        return VdbProviderRequestError(message, **context)


def openai_provider_factory(
    context: ProviderInitContext,
) -> OpenAIEmbeddingsProvider:
    """Factory registered with the provider registry."""

    return OpenAIEmbeddingsProvider(
        logger=context.logger,
        config=context.config,
    )
