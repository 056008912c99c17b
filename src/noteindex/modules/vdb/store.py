"""FAISS-backed :class:`VectorStore` with metadata kept in SQLite."""

from __future__ import annotations

import json
import shutil
import sqlite3
import threading
from pathlib import Path
from typing import Any, Mapping, Sequence

from noteindex.core.logging import Logger, get_logger
from noteindex.core.paths import WorkspacePaths
from noteindex.modules.db import Database, utc_now

from .errors import VectorIndexError, VectorIndexNotFoundError
from .faiss_index import (
    FaissIndex,
    index_writer_lock,
    load_index_artifacts,
    persist_index_artifacts,
    remove_index_artifacts,
)
from .models import VectorMatch

__all__ = ["FaissVectorStore"]


class FaissVectorStore:
    """One FAISS file per index under ``<workspace>/indexes/<name>/``.

    The ``vector_entries`` table maps FAISS ids to metadata, which is what
    makes delete-by-source-id possible without scanning vectors. Every write
    reloads the index from disk under the writer lock, so several processes
    can share a workspace.
    """

    def __init__(
        self,
        *,
        database: Database,
        paths: WorkspacePaths,
        index_type: str = "IDMap,Flat",
        lock_timeout: float = 30.0,
        logger: Logger | None = None,
    ) -> None:
        self._database = database
        self._paths = paths
        self._index_type = index_type
        self._lock_timeout = lock_timeout
        self._logger = logger or get_logger(__name__, component="vector-store")
        self._guard = threading.RLock()
        self._cache: dict[str, tuple[int, FaissIndex]] = {}

    def has_index(self, name: str) -> bool:
        return self._paths.index_path(name).exists()

    def dimension(self, name: str) -> int | None:
        if not self.has_index(name):
            return None
        return self._read(name).dim

    def count(self, name: str) -> int:
        if not self.has_index(name):
            return 0
        return self._read(name).size

    def create_index(self, name: str, *, dimension: int, metric: str) -> None:
        path = self._paths.index_path(name)
        with self._guard, index_writer_lock(path, timeout=self._lock_timeout):
            if path.exists():
                existing, _ = load_index_artifacts(path)
                if existing.dim != dimension:
                    raise VectorIndexError(
                        f"Index {name!r} exists with dimension {existing.dim}, "
                        f"requested {dimension}"
                    )
                return
            index = FaissIndex.create(
                dim=dimension,
                metric=metric,
                index_type=self._index_type,
            )
            self._persist(name, index)
        self._logger.info(
            "vector-index-created",
            index_name=name,
            dimension=dimension,
            metric=metric,
            index_type=self._index_type,
        )

    def truncate_index(self, name: str) -> None:
        path = self._paths.index_path(name)
        with self._guard, index_writer_lock(path, timeout=self._lock_timeout):
            current = self._load_for_write(name)
            empty = FaissIndex.create(
                dim=current.dim,
                metric=current.metric.name,
                index_type=self._index_type,
            )
            with self._database.connect() as connection:
                connection.execute(
                    "DELETE FROM vector_entries WHERE index_name = ?",
                    (name,),
                )
                self._persist(name, empty)
        self._logger.info("vector-index-truncated", index_name=name)

    def delete_index(self, name: str) -> bool:
        path = self._paths.index_path(name)
        with self._guard, index_writer_lock(path, timeout=self._lock_timeout):
            with self._database.connect() as connection:
                connection.execute(
                    "DELETE FROM vector_entries WHERE index_name = ?",
                    (name,),
                )
            existed = remove_index_artifacts(path)
            self._cache.pop(name, None)
        # The lock file lives in the directory, so it goes last.
        shutil.rmtree(self._paths.index_dir(name), ignore_errors=True)
        self._logger.info(
            "vector-index-deleted",
            index_name=name,
            existed=existed,
        )
        return existed

    def upsert(
        self,
        name: str,
        vectors: Sequence[Sequence[float]],
        metadata: Sequence[Mapping[str, Any]],
    ) -> tuple[int, ...]:
        if len(vectors) != len(metadata):
            raise ValueError("vectors and metadata must have matching lengths")
        if not vectors:
            return ()

        path = self._paths.index_path(name)
        with self._guard, index_writer_lock(path, timeout=self._lock_timeout):
            index = self._load_for_write(name)
            with self._database.connect() as connection:
                start = self._next_vector_id(connection, name)
                ids = tuple(range(start, start + len(vectors)))
                connection.executemany(
                    (
                        "INSERT INTO vector_entries (index_name, vector_id, "
                        "note_id, is_attachment, metadata) "
                        "VALUES (?, ?, ?, ?, ?)"
                    ),
                    [
                        (
                            name,
                            vector_id,
                            int(item.get("noteId", item.get("id", 0)) or 0),
                            1 if item.get("isAttachment") else 0,
                            json.dumps(dict(item), default=str, sort_keys=True),
                        )
                        for vector_id, item in zip(ids, metadata)
                    ],
                )
                index.add(ids, vectors)
                # Rows commit only once the FAISS file is on disk.
                self._persist(name, index)
        return ids

    def query(
        self,
        name: str,
        vector: Sequence[float],
        *,
        top_k: int,
    ) -> list[VectorMatch]:
        hits = self._read(name).search(vector, k=top_k)
        if not hits:
            return []
        ids = [vector_id for vector_id, _ in hits]
        placeholders = ", ".join("?" for _ in ids)
        with self._database.connect() as connection:
            rows = connection.execute(
                (
                    "SELECT vector_id, metadata FROM vector_entries "
                    f"WHERE index_name = ? AND vector_id IN ({placeholders})"
                ),
                [name, *ids],
            ).fetchall()
        by_id = {
            int(row["vector_id"]): json.loads(row["metadata"]) for row in rows
        }
        return [
            VectorMatch(
                vector_id=vector_id,
                score=score,
                metadata=by_id.get(vector_id, {}),
            )
            for vector_id, score in hits
        ]

    def delete_by_source_id(self, name: str, source_id: int) -> int:
        path = self._paths.index_path(name)
        if not path.exists():
            return 0
        with self._guard, index_writer_lock(path, timeout=self._lock_timeout):
            index = self._load_for_write(name)
            with self._database.connect() as connection:
                rows = connection.execute(
                    (
                        "SELECT vector_id FROM vector_entries "
                        "WHERE index_name = ? AND note_id = ?"
                    ),
                    (name, source_id),
                ).fetchall()
                ids = [int(row["vector_id"]) for row in rows]
                if not ids:
                    return 0
                connection.execute(
                    (
                        "DELETE FROM vector_entries "
                        "WHERE index_name = ? AND note_id = ?"
                    ),
                    (name, source_id),
                )
                index.remove(ids)
                self._persist(name, index)
        return len(ids)

    def _next_vector_id(self, connection: sqlite3.Connection, name: str) -> int:
        row = connection.execute(
            (
                "SELECT COALESCE(MAX(vector_id), 0) AS last_id "
                "FROM vector_entries WHERE index_name = ?"
            ),
            (name,),
        ).fetchone()
        return int(row["last_id"]) + 1

    def _index_path(self, name: str) -> Path:
        return self._paths.index_path(name)

    def _load_for_write(self, name: str) -> FaissIndex:
        path = self._index_path(name)
        if not path.exists():
            raise VectorIndexNotFoundError(
                f"Vector index {name!r} does not exist",
                index_name=name,
            )
        index, _ = load_index_artifacts(path)
        return index

    def _read(self, name: str) -> FaissIndex:
        path = self._index_path(name)
        try:
            stamp = path.stat().st_mtime_ns
        except FileNotFoundError:
            raise VectorIndexNotFoundError(
                f"Vector index {name!r} does not exist",
                index_name=name,
            ) from None
        with self._guard:
            cached = self._cache.get(name)
            if cached is not None and cached[0] == stamp:
                return cached[1]
            index, _ = load_index_artifacts(path)
            self._cache[name] = (stamp, index)
            return index

    def _persist(self, name: str, index: FaissIndex) -> None:
        path = self._index_path(name)
        persist_index_artifacts(
            index,
            index_path=path,
            index_name=name,
            index_type=self._index_type,
            built_at=utc_now(),
        )
        self._cache[name] = (path.stat().st_mtime_ns, index)
