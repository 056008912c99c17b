"""Test doubles shared across the noteindex test suite."""

from __future__ import annotations

import math
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Sequence

from noteindex.modules.vdb import (
    EmbedRequestOptions,
    VdbProviderRetryableError,
    VectorIndexError,
    VectorIndexNotFoundError,
    VectorMatch,
)

__all__ = ["FIXED_NOW", "FakeProvider", "FakeVectorStore", "MutableClock"]

FIXED_NOW = datetime(2026, 3, 14, 9, 30, tzinfo=timezone.utc)


class MutableClock:
    """Callable clock whose time tests can move forward."""

    def __init__(self, start: datetime = FIXED_NOW) -> None:
        self.value = start

    def __call__(self) -> datetime:
        return self.value

    def advance(self, **delta: float) -> None:
        self.value = self.value + timedelta(**delta)


class FakeProvider:
    """Deterministic embeddings; texts containing a ``fail_on`` marker raise."""

    def __init__(
        self,
        *,
        dimension: int = 4,
        fail_on: Sequence[str] = (),
        hook: Callable[[str], None] | None = None,
    ) -> None:
        self.dimension = dimension
        self.fail_on = list(fail_on)
        self.hook = hook
        self.calls: list[tuple[str, ...]] = []

    def embed_texts(
        self,
        texts: Sequence[str],
        *,
        model: str,
        options: EmbedRequestOptions,
    ) -> tuple[tuple[float, ...], ...]:
        self.calls.append(tuple(texts))
        vectors = []
        for text in texts:
            if self.hook is not None:
                self.hook(text)
            for marker in self.fail_on:
                if marker in text:
                    raise VdbProviderRetryableError(
                        f"upstream unavailable for {marker!r}",
                        provider="fake",
                        model=model,
                    )
            vectors.append(self.vector_for(text))
        return tuple(vectors)

    def vector_for(self, text: str) -> tuple[float, ...]:
        weights = [0.0] * self.dimension
        for token in text.lower().split():
            weights[sum(map(ord, token)) % self.dimension] += 1.0
        if not any(weights):
            weights[0] = 1.0
        return tuple(weights)


@dataclass
class _FakeIndex:
    dimension: int
    metric: str
    rows: dict[int, tuple[tuple[float, ...], dict[str, Any]]] = field(
        default_factory=dict
    )
    next_id: int = 1


class FakeVectorStore:
    """In-memory :class:`VectorStore` using cosine similarity."""

    def __init__(self) -> None:
        self.indexes: dict[str, _FakeIndex] = {}
        self.operations: list[tuple[str, str]] = []

    def has_index(self, name: str) -> bool:
        return name in self.indexes

    def create_index(self, name: str, *, dimension: int, metric: str) -> None:
        self.operations.append(("create", name))
        existing = self.indexes.get(name)
        if existing is not None:
            if existing.dimension != dimension:
                raise VectorIndexError("dimension mismatch")
            return
        self.indexes[name] = _FakeIndex(dimension=dimension, metric=metric)

    def truncate_index(self, name: str) -> None:
        self.operations.append(("truncate", name))
        self._require(name).rows.clear()

    def delete_index(self, name: str) -> bool:
        self.operations.append(("delete", name))
        return self.indexes.pop(name, None) is not None

    def upsert(
        self,
        name: str,
        vectors: Sequence[Sequence[float]],
        metadata: Sequence[Mapping[str, Any]],
    ) -> tuple[int, ...]:
        index = self._require(name)
        ids = []
        for vector, item in zip(vectors, metadata):
            if len(vector) != index.dimension:
                raise VectorIndexError("vector dimension mismatch")
            index.rows[index.next_id] = (tuple(vector), dict(item))
            ids.append(index.next_id)
            index.next_id += 1
        return tuple(ids)

    def query(
        self,
        name: str,
        vector: Sequence[float],
        *,
        top_k: int,
    ) -> list[VectorMatch]:
        index = self._require(name)
        scored = [
            VectorMatch(vector_id=vector_id, score=_cosine(vector, stored), metadata=meta)
            for vector_id, (stored, meta) in index.rows.items()
        ]
        scored.sort(key=lambda match: match.score, reverse=True)
        return scored[:top_k]

    def delete_by_source_id(self, name: str, source_id: int) -> int:
        index = self.indexes.get(name)
        if index is None:
            return 0
        doomed = [
            vector_id
            for vector_id, (_, meta) in index.rows.items()
            if meta.get("id") == source_id
        ]
        for vector_id in doomed:
            del index.rows[vector_id]
        return len(doomed)

    def sources(self, name: str) -> list[int]:
        return sorted({meta["id"] for _, meta in self._require(name).rows.values()})

    def _require(self, name: str) -> _FakeIndex:
        try:
            return self.indexes[name]
        except KeyError:
            raise VectorIndexNotFoundError(
                f"Vector index {name!r} does not exist",
                index_name=name,
            ) from None


def _cosine(left: Sequence[float], right: Sequence[float]) -> float:
    dot = sum(a * b for a, b in zip(left, right))
    norm = math.sqrt(sum(a * a for a in left)) * math.sqrt(sum(b * b for b in right))
    return dot / norm if norm else 0.0

