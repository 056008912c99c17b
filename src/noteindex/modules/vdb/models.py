"""Vector store contract and the records it exchanges."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol, Sequence, runtime_checkable

from noteindex.modules.notes import Note

__all__ = ["ScoredNote", "SearchResult", "VectorMatch", "VectorStore"]


@dataclass(frozen=True, slots=True)
class VectorMatch:
    """One nearest-neighbour hit: similarity plus stored metadata."""

    vector_id: int
    score: float
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @property
    def source_id(self) -> int | None:
        value = self.metadata.get("id")
        try:
            return int(value) if value is not None else None
        except (TypeError, ValueError):
            return None


@dataclass(frozen=True, slots=True)
class ScoredNote:
    """Note returned by semantic search with its match score."""

    note: Note
    score: float


@dataclass(frozen=True, slots=True)
class SearchResult:
    """Hydrated semantic search answer for one account."""

    notes: tuple[ScoredNote, ...]
    ai_context: str


@runtime_checkable
class VectorStore(Protocol):
    """Storage engine behind :class:`VectorIndexManager`."""

    def has_index(self, name: str) -> bool:
        """Return whether index ``name`` exists."""

    def create_index(self, name: str, *, dimension: int, metric: str) -> None:
        """Create ``name``; a no-op when it already exists with ``dimension``."""

    def truncate_index(self, name: str) -> None:
        """Remove every vector while keeping the index definition."""

    def delete_index(self, name: str) -> bool:
        """Drop ``name``; returns ``False`` when it did not exist."""

    def upsert(
        self,
        name: str,
        vectors: Sequence[Sequence[float]],
        metadata: Sequence[Mapping[str, Any]],
    ) -> tuple[int, ...]:
        """Store vectors with their metadata and return the assigned ids."""

    def query(
        self,
        name: str,
        vector: Sequence[float],
        *,
        top_k: int,
    ) -> list[VectorMatch]:
        """Return up to ``top_k`` matches, most similar first."""

    def delete_by_source_id(self, name: str, source_id: int) -> int:
        """Delete vectors whose metadata ``id`` is ``source_id``."""
