"""Shared pytest fixtures for noteindex tests."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import pytest

from noteindex.core.config import EmbeddingSettings, RebuildSettings, VectorSettings
from noteindex.core.paths import WorkspacePaths
from noteindex.modules.db import Database
from noteindex.modules.notes import (
    FileAttachmentStore,
    SqliteNoteStore,
    SqliteNotificationSink,
)
from noteindex.modules.rebuild import BatchProcessor, ProgressStore, RebuildCoordinator
from noteindex.modules.vdb import EmbeddingService, VectorIndexManager

from support import FakeProvider, FakeVectorStore, MutableClock


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock()


@pytest.fixture
def workspace_paths(tmp_path: Path) -> WorkspacePaths:
    paths = WorkspacePaths.for_root(tmp_path / "workspace")
    paths.ensure_directories()
    return paths


@pytest.fixture
def database(workspace_paths: WorkspacePaths) -> Database:
    return Database(workspace_paths.database_path).ensure()


@pytest.fixture
def note_store(database: Database) -> SqliteNoteStore:
    return SqliteNoteStore(database)


@pytest.fixture
def embedding_settings() -> EmbeddingSettings:
    return EmbeddingSettings(model="test-embedding", dimensions=4, min_score=0.1)


@pytest.fixture
def fake_vector_store() -> FakeVectorStore:
    return FakeVectorStore()


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()


@dataclass
class RebuildHarness:
    """Coordinator wired against SQLite plus in-memory index and provider."""

    coordinator: RebuildCoordinator
    store: ProgressStore
    notes: SqliteNoteStore
    provider: FakeProvider
    vectors: FakeVectorStore
    manager: VectorIndexManager
    notifications: SqliteNotificationSink
    settings: RebuildSettings
    sleeps: list[float]

    def add_notes(self, count: int, *, start: int = 1) -> None:
        for number in range(start, start + count):
            self.notes.add_note(f"note {number} about gardening")

    def run(self):
        return self.coordinator.run_task()


@pytest.fixture
def make_harness(
    database: Database,
    workspace_paths: WorkspacePaths,
    note_store: SqliteNoteStore,
    embedding_settings: EmbeddingSettings,
) -> Iterator[Callable[..., RebuildHarness]]:
    """Factory building a :class:`RebuildHarness` with overridable settings."""

    def _make(
        *,
        provider: FakeProvider | None = None,
        embedding: EmbeddingSettings | None = None,
        vectors: FakeVectorStore | None = None,
        without_provider: bool = False,
        **rebuild_overrides: Any,
    ) -> RebuildHarness:
        settings = RebuildSettings(
            stop_settle_seconds=0.0,
            **rebuild_overrides,
        )
        provider = provider or FakeProvider()
        vectors = vectors or FakeVectorStore()
        embedding = embedding or embedding_settings
        store = ProgressStore(database, lease_seconds=settings.lease_seconds)
        manager = VectorIndexManager(
            store=vectors,
            provider=None if without_provider else provider,
            embedding=embedding,
            vector=VectorSettings(),
            notes=note_store,
        )
        service = EmbeddingService(
            manager=manager,
            notes=note_store,
            attachments=FileAttachmentStore(workspace_paths.attachments_dir),
            settings=embedding,
        )
        sleeps: list[float] = []
        processor = BatchProcessor(
            embedder=service,
            store=store,
            max_retries=settings.max_retries,
            backoff_seconds=settings.retry_backoff_seconds,
            results_limit=settings.results_limit,
            image_extensions=settings.image_extensions,
            sleep=sleeps.append,
        )
        notifications = SqliteNotificationSink(database)
        coordinator = RebuildCoordinator(
            store=store,
            notes=note_store,
            index=manager,
            processor=processor,
            notifications=notifications,
            settings=settings,
            sleep=lambda _: None,
        )
        # Tests drive run_task() themselves.
        coordinator.set_trigger(lambda: None)
        return RebuildHarness(
            coordinator=coordinator,
            store=store,
            notes=note_store,
            provider=provider,
            vectors=vectors,
            manager=manager,
            notifications=notifications,
            settings=settings,
            sleeps=sleeps,
        )

    yield _make
