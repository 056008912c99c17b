"""Tests for :mod:`noteindex.modules.vdb.manager`."""

from __future__ import annotations

import pytest

from noteindex.core.config import EmbeddingSettings, VectorSettings
from noteindex.modules.vdb import (
    VectorIndexConfigurationError,
    VectorIndexManager,
    VectorIndexNotFoundError,
    resolve_dimension,
)

from support import FakeProvider, FakeVectorStore


@pytest.mark.parametrize(
    ("model", "expected"),
    [
        ("text-embedding-3-small", 1536),
        ("text-embedding-3-large", 3072),
        ("Cohere/embed-english-v3.0", 1024),
        ("cohere-large", 4096),
        ("BAAI/bge-m3", 1024),
        ("voyage-3-lite", 512),
        ("voyage-3", 1024),
        ("BAAI/bge-large-en-v1.5", 1024),
        ("bge-base-zh", 768),
        ("all-minilm-l6", 384),
        ("mxbai-embed-large", 1024),
        ("nomic-embed-text", 768),
    ],
)
def test_known_model_dimensions(model: str, expected: int) -> None:
    assert resolve_dimension(model) == expected


def test_override_wins_over_model_table() -> None:
    assert resolve_dimension("text-embedding-3-small", 256) == 256
    assert resolve_dimension("unknown-model", 42) == 42
    assert resolve_dimension("text-embedding-3-small", 0) == 1536


@pytest.mark.parametrize("model", [None, "", "   "])
def test_missing_model_is_a_configuration_error(model) -> None:
    with pytest.raises(VectorIndexConfigurationError, match="No embedding model"):
        resolve_dimension(model)


def test_unknown_model_requires_dimension() -> None:
    with pytest.raises(VectorIndexConfigurationError) as excinfo:
        resolve_dimension("mystery-model")

    assert excinfo.value.model == "mystery-model"
    assert "Must set the embedding dimension" in str(excinfo.value)


def _manager(note_store=None, **embedding) -> tuple[VectorIndexManager, FakeVectorStore]:
    vectors = FakeVectorStore()
    settings = EmbeddingSettings(
        model=embedding.pop("model", "test-embedding"),
        dimensions=embedding.pop("dimensions", 4),
        **embedding,
    )
    manager = VectorIndexManager(
        store=vectors,
        provider=FakeProvider(),
        embedding=settings,
        vector=VectorSettings(),
        notes=note_store,
    )
    return manager, vectors


def test_rebuild_deletes_then_recreates() -> None:
    manager, vectors = _manager()
    manager.create_index(4)

    assert manager.rebuild_vector_index(is_delete=True) == 4
    assert vectors.operations == [
        ("create", "notes"),
        ("delete", "notes"),
        ("create", "notes"),
    ]


def test_rebuild_with_unknown_model_leaves_index_alone() -> None:
    manager, vectors = _manager(model="mystery-model", dimensions=0)
    vectors.create_index("notes", dimension=8, metric="cosine")

    with pytest.raises(VectorIndexConfigurationError):
        manager.rebuild_vector_index(is_delete=True)

    assert vectors.has_index("notes")
    assert vectors.operations == [("create", "notes")]


def test_ensure_index_only_creates_when_missing() -> None:
    manager, vectors = _manager()

    manager.ensure_index()
    manager.ensure_index()

    assert vectors.operations == [("create", "notes")]


def test_query_and_delete_by_id() -> None:
    manager, vectors = _manager()
    manager.create_index(4)
    manager.upsert(
        [(1.0, 0.0, 0.0, 0.0), (0.0, 1.0, 0.0, 0.0), (0.0, 0.0, 1.0, 0.0)],
        [{"id": 5}, {"id": 5}, {"id": 6}],
    )

    assert manager.query_and_delete_by_id(5) == 2
    assert vectors.sources("notes") == [6]

    with pytest.raises(VectorIndexNotFoundError, match="id 5 is not found") as excinfo:
        manager.query_and_delete_by_id(5)
    assert excinfo.value.source_id == 5
    assert manager.discard_vectors(5) is False
    assert manager.discard_vectors(6) is True


def test_index_setup_and_embedding_require_provider() -> None:
    vectors = FakeVectorStore()
    vectors.create_index("notes", dimension=4, metric="cosine")
    manager = VectorIndexManager(
        store=vectors,
        provider=None,
        embedding=EmbeddingSettings(model="test-embedding", dimensions=4),
        vector=VectorSettings(),
    )

    with pytest.raises(VectorIndexConfigurationError, match="No embedding provider"):
        manager.embed_texts(["hello"])
    with pytest.raises(VectorIndexConfigurationError, match="No embedding provider"):
        manager.rebuild_vector_index(is_delete=True)
    vectors.delete_index("notes")
    with pytest.raises(VectorIndexConfigurationError, match="No embedding provider"):
        manager.ensure_index()

    assert vectors.operations == [("create", "notes"), ("delete", "notes")]


def test_search_notes_filters_by_score_and_account(note_store) -> None:
    manager, _ = _manager(note_store, min_score=0.9)
    provider = FakeProvider()
    manager.create_index(4)
    tomatoes = note_store.add_note("tomatoes need sun")
    other_account = note_store.add_note("tomatoes need sun", account_id=2)
    unrelated = note_store.add_note("quarterly tax forms")
    manager.upsert(
        [provider.vector_for(note.content) for note in (tomatoes, other_account, unrelated)],
        [{"id": note.id} for note in (tomatoes, other_account, unrelated)],
    )

    result = manager.search_notes("tomatoes need sun", 1, top_k=3)

    assert [item.note.id for item in result.notes] == [tomatoes.id]
    assert result.notes[0].score == pytest.approx(1.0)
    assert result.ai_context == "tomatoes need sun\n"


def test_search_notes_with_no_matches_is_empty(note_store) -> None:
    manager, _ = _manager(note_store)
    manager.create_index(4)

    result = manager.search_notes("anything", 1)

    assert result.notes == ()
    assert result.ai_context == ""


def test_search_notes_requires_note_store() -> None:
    manager, _ = _manager()

    with pytest.raises(VectorIndexConfigurationError, match="No note store"):
        manager.search_notes("query", 1)
