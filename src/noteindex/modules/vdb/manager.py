"""Vector index lifecycle, dimension resolution and semantic search."""

from __future__ import annotations

from typing import Any, Mapping, Sequence

from noteindex.core.config import EmbeddingSettings, VectorSettings
from noteindex.core.logging import Logger, get_logger
from noteindex.modules.notes import NoteStore

from .errors import (
    VectorIndexConfigurationError,
    VectorIndexError,
    VectorIndexNotFoundError,
)
from .models import ScoredNote, SearchResult, VectorMatch, VectorStore
from .providers import EmbeddingsProvider, EmbedRequestOptions

__all__ = [
    "KNOWN_MODEL_DIMENSIONS",
    "VectorIndexManager",
    "resolve_dimension",
]

# Checked in order against the lower-cased model key; first substring wins.
# Specific keys sit ahead of the family prefixes that would shadow them
# ("voyage-3-lite" before "voyage"). "bge-large-en" has no row of its own:
# "bge-large" already maps it to the same dimension.
KNOWN_MODEL_DIMENSIONS: tuple[tuple[tuple[str, ...], int], ...] = (
    (("text-embedding-3-small",), 1536),
    (("text-embedding-3-large",), 3072),
    (("voyage-3-lite",), 512),
    (("cohere/embed-english-v3", "bge-m3", "voyage", "bge-large"), 1024),
    (("cohere",), 4096),
    (("bge", "bert", "bce-embedding-base"), 768),
    (("all-minilm",), 384),
    (("mxbai-embed-large",), 1024),
    (("nomic-embed-text",), 768),
)


def resolve_dimension(model_key: str | None, user_override: int | None = None) -> int:
    """Return the vector dimension for ``model_key``.

    A positive ``user_override`` always wins. Otherwise the key is matched
    against :data:`KNOWN_MODEL_DIMENSIONS`.

    Raises:
        VectorIndexConfigurationError: No model is configured, or the model is
            unknown and no override was supplied.

    Example:
        >>> resolve_dimension("text-embedding-3-large")
        3072
        >>> resolve_dimension("my-custom-model", 256)
        256
    """

    if user_override is not None and user_override > 0:
        return int(user_override)

    model = (model_key or "").strip().lower()
    if not model:
        raise VectorIndexConfigurationError("No embedding model configured")

    for needles, dimension in KNOWN_MODEL_DIMENSIONS:
        if any(needle in model for needle in needles):
            return dimension

    raise VectorIndexConfigurationError(
        (
            f"Must set the embedding dimension for model {model_key!r} "
            "(embedding.dimensions in noteindex.toml)"
        ),
        model=model_key,
    )


class VectorIndexManager:
    """Owns the note vector index on top of a :class:`VectorStore`."""

    def __init__(
        self,
        *,
        store: VectorStore,
        provider: EmbeddingsProvider | None,
        embedding: EmbeddingSettings,
        vector: VectorSettings,
        notes: NoteStore | None = None,
        logger: Logger | None = None,
    ) -> None:
        self._store = store
        self._provider = provider
        self._embedding = embedding
        self._vector = vector
        self._notes = notes
        self._logger = logger or get_logger(__name__, component="vector-index")

    @property
    def index_name(self) -> str:
        return self._vector.index_name

    @property
    def store(self) -> VectorStore:
        return self._store

    def resolve_dimension(
        self,
        model_key: str | None = None,
        user_override: int | None = None,
    ) -> int:
        model = self._embedding.model if model_key is None else model_key
        override = (
            self._embedding.dimension_override
            if user_override is None
            else user_override
        )
        return resolve_dimension(model, override)

    def create_index(
        self,
        dimension: int,
        *,
        name: str | None = None,
        metric: str | None = None,
    ) -> None:
        self._store.create_index(
            name or self.index_name,
            dimension=dimension,
            metric=metric or self._vector.metric,
        )

    def truncate_index(self, name: str | None = None) -> None:
        self._store.truncate_index(name or self.index_name)

    def delete_index(self, name: str | None = None) -> bool:
        return self._store.delete_index(name or self.index_name)

    def rebuild_vector_index(self, *, is_delete: bool = False) -> int:
        """Recreate the note index for the configured model.

        The provider and dimension are checked before anything is touched, so
        a missing provider or an unknown model leaves the existing index
        intact.

        Returns:
            The dimension of the (re)created index.

        Raises:
            VectorIndexConfigurationError: No provider is wired, or the
                dimension cannot be resolved.
        """

        self.require_provider()
        dimension = self.resolve_dimension()
        name = self.index_name
        if is_delete:
            try:
                self._store.delete_index(name)
            except VectorIndexError as exc:
                self._logger.warning(
                    "vector-index-delete-failed",
                    index_name=name,
                    error=str(exc),
                )
        self.create_index(dimension)
        self._logger.info(
            "vector-index-rebuilt",
            index_name=name,
            model=self._embedding.model,
            dimension=dimension,
            metric=self._vector.metric,
            deleted=is_delete,
        )
        return dimension

    def ensure_index(self) -> None:
        """Create the index if it is missing (incremental runs reuse it)."""

        self.require_provider()
        if not self._store.has_index(self.index_name):
            self.create_index(self.resolve_dimension())

    def upsert(
        self,
        vectors: Sequence[Sequence[float]],
        metadata: Sequence[Mapping[str, Any]],
    ) -> tuple[int, ...]:
        return self._store.upsert(self.index_name, vectors, metadata)

    def query(
        self,
        vector: Sequence[float],
        *,
        top_k: int | None = None,
    ) -> list[VectorMatch]:
        return self._store.query(
            self.index_name,
            vector,
            top_k=top_k or self._embedding.top_k,
        )

    def query_and_delete_by_id(self, source_id: int) -> int:
        """Delete every vector stored for ``source_id``.

        Raises:
            VectorIndexNotFoundError: Nothing is stored for ``source_id``.
        """

        removed = self._store.delete_by_source_id(self.index_name, source_id)
        if removed == 0:
            raise VectorIndexNotFoundError(
                f"id {source_id} is not found",
                index_name=self.index_name,
                source_id=source_id,
            )
        return removed

    def discard_vectors(self, source_id: int) -> bool:
        """Best-effort variant of :meth:`query_and_delete_by_id`."""

        try:
            self.query_and_delete_by_id(source_id)
        except VectorIndexError as exc:
            self._logger.debug(
                "vector-delete-missing",
                index_name=self.index_name,
                source_id=source_id,
                reason=str(exc),
            )
            return False
        return True

    def require_provider(self) -> EmbeddingsProvider:
        if self._provider is None:
            raise VectorIndexConfigurationError(
                "No embedding provider configured",
                model=self._embedding.model,
            )
        return self._provider

    def embed_texts(self, texts: Sequence[str]) -> tuple[tuple[float, ...], ...]:
        return self.require_provider().embed_texts(
            texts,
            model=self._embedding.model,
            options=EmbedRequestOptions(
                max_batch_size=self._embedding.batch_size,
                timeout=self._embedding.timeout,
            ),
        )

    def search_notes(
        self,
        query: str,
        account_id: int,
        *,
        top_k: int | None = None,
        min_score: float | None = None,
    ) -> SearchResult:
        """Embed ``query``, keep matches above the score floor, hydrate notes."""

        if self._notes is None:
            raise VectorIndexConfigurationError("No note store configured")
        threshold = self._embedding.min_score if min_score is None else min_score

        (vector,) = self.embed_texts([query])
        matches = [
            match
            for match in self.query(vector, top_k=top_k)
            if match.score >= threshold
        ]

        best: dict[int, float] = {}
        for match in matches:
            source_id = match.source_id
            if not source_id:
                continue
            best[source_id] = max(match.score, best.get(source_id, match.score))

        notes = self._notes.find_for_account(account_id, best.keys())
        scored = tuple(
            ScoredNote(note=note, score=best.get(note.id, 0.0)) for note in notes
        )
        self._logger.info(
            "vector-search",
            index_name=self.index_name,
            account_id=account_id,
            matches=len(matches),
            notes=len(scored),
            min_score=threshold,
        )
        return SearchResult(
            notes=scored,
            ai_context="".join(f"{item.note.content}\n" for item in scored),
        )
