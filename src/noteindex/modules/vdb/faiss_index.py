"""FAISS index adapter: IDMap setup, cosine normalization and persistence."""

from __future__ import annotations

import hashlib
import json
import os
import tempfile
from collections.abc import Iterable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Mapping

import numpy as np

try:  # pragma: no cover - import guard exercised in tests via functionality
    import faiss
except ImportError as exc:  # pragma: no cover - bubble missing optional extra
    raise ImportError(
        "faiss is required for vector index operations; install the 'vdb' extra"
    ) from exc

from noteindex.core.locks import (
    FileLock,
    FileLockError,
    FileLockTimeoutError,
    lock_path_for,
)
from noteindex.modules.db import isoformat, parse_timestamp

__all__ = [
    "FaissIndex",
    "FaissIndexError",
    "FaissIndexLoadError",
    "FaissIndexLockError",
    "FaissIndexMetric",
    "FaissIndexPersistenceError",
    "FaissIndexSidecar",
    "index_writer_lock",
    "load_index_artifacts",
    "persist_index_artifacts",
    "remove_index_artifacts",
    "sidecar_path_for_index",
]

SIDECAR_VERSION = 1


class FaissIndexError(RuntimeError):
    """Base error raised for FAISS adapter failures."""


class FaissIndexPersistenceError(FaissIndexError):
    """Raised when index artifacts cannot be written or removed."""


class FaissIndexLockError(FaissIndexError):
    """Raised when the index writer lock cannot be acquired or released."""

    def __init__(self, *, index_path: Path, message: str) -> None:
        super().__init__(message)
        self.index_path = index_path


class FaissIndexLoadError(FaissIndexError):
    """Raised when index artifacts on disk are missing or inconsistent."""

    def __init__(self, *, index_path: Path, message: str) -> None:
        super().__init__(message)
        self.index_path = index_path


@dataclass(frozen=True, slots=True)
class FaissIndexMetric:
    """Human-readable metric name mapped onto a FAISS metric id."""

    name: str
    faiss_metric: int

    @property
    def normalizes(self) -> bool:
        return self.name == "cosine"

    @classmethod
    def from_name(cls, name: str) -> "FaissIndexMetric":
        normalized = name.strip().lower()
        if normalized in {"l2", "euclidean"}:
            return cls(name="l2", faiss_metric=faiss.METRIC_L2)
        if normalized in {"ip", "inner_product"}:
            return cls(name="ip", faiss_metric=faiss.METRIC_INNER_PRODUCT)
        if normalized == "cosine":
            # Cosine is inner product over unit vectors.
            return cls(name="cosine", faiss_metric=faiss.METRIC_INNER_PRODUCT)
        raise ValueError(f"Unsupported FAISS metric: {name!r}")


class FaissIndex:
    """Wrapper around ``faiss.IndexIDMap`` keyed by caller-assigned ids."""

    def __init__(self, *, index: faiss.Index, metric: FaissIndexMetric) -> None:
        if not isinstance(index, faiss.IndexIDMap):
            raise TypeError("index must be an instance of faiss.IndexIDMap")
        self._index = index
        self._metric = metric

    @property
    def dim(self) -> int:
        return self._index.d

    @property
    def metric(self) -> FaissIndexMetric:
        return self._metric

    @property
    def size(self) -> int:
        return self._index.ntotal

    @classmethod
    def create(cls, *, dim: int, metric: str, index_type: str) -> "FaissIndex":
        if dim < 1:
            raise ValueError("dim must be >= 1")
        descriptor = FaissIndexMetric.from_name(metric)
        base = index_type.replace(" ", "")
        if base.lower().startswith("idmap,"):
            base = base[len("idmap,") :]
        if not base:
            raise ValueError("index_type must name a base index after IDMap,")
        inner = faiss.index_factory(dim, base, descriptor.faiss_metric)
        return cls(index=faiss.IndexIDMap(inner), metric=descriptor)

    @classmethod
    def from_bytes(cls, data: bytes, *, metric: str) -> "FaissIndex":
        raw = faiss.deserialize_index(np.frombuffer(data, dtype="uint8"))
        if not isinstance(raw, faiss.IndexIDMap):
            raise FaissIndexError("Serialized index must wrap an IDMap")
        return cls(index=raw, metric=FaissIndexMetric.from_name(metric))

    def to_bytes(self) -> bytes:
        return faiss.serialize_index(self._index).tobytes()

    def add(
        self,
        ids: Sequence[int],
        vectors: Sequence[Sequence[float]],
    ) -> None:
        id_array = np.asarray(list(ids), dtype="int64").reshape(-1)
        if id_array.size == 0:
            return
        vector_array = self._prepare(vectors)
        if len(id_array) != len(vector_array):
            raise ValueError("ids and vectors must have matching lengths")
        self._index.add_with_ids(vector_array, id_array)

    def remove(self, ids: Iterable[int]) -> int:
        """Remove ``ids``; returns how many were actually present."""

        id_array = np.asarray(list(ids), dtype="int64").reshape(-1)
        if id_array.size == 0:
            return 0
        return int(self._index.remove_ids(faiss.IDSelectorBatch(id_array)))

    def search(
        self,
        vector: Sequence[float],
        *,
        k: int,
    ) -> list[tuple[int, float]]:
        """Return up to ``k`` ``(id, score)`` pairs, best first."""

        if k <= 0:
            raise ValueError("k must be positive")
        if self.size == 0:
            return []
        query = self._prepare([vector])
        distances, ids = self._index.search(query, min(k, self.size))
        return [
            (int(identifier), float(score))
            for identifier, score in zip(ids[0], distances[0])
            if identifier != -1
        ]

    def _prepare(self, vectors: Sequence[Sequence[float]]) -> np.ndarray:
        array = np.array(vectors, dtype="float32", copy=True)
        if array.ndim != 2 or array.shape[1] != self.dim:
            raise ValueError(
                "Vector dimensionality mismatch: expected "
                f"{self.dim}, got {array.shape[-1] if array.ndim else 0}"
            )
        if self._metric.normalizes:
            faiss.normalize_L2(array)
        return array


@dataclass(frozen=True, slots=True)
class FaissIndexSidecar:
    """Metadata persisted next to ``index.faiss``."""

    version: int
    index_name: str
    dim: int
    metric: str
    index_type: str
    vector_count: int
    built_at: datetime
    checksum: str

    def to_json(self) -> str:
        payload = {
            "version": self.version,
            "index_name": self.index_name,
            "dim": self.dim,
            "metric": self.metric,
            "index_type": self.index_type,
            "vector_count": self.vector_count,
            "built_at": isoformat(self.built_at),
            "checksum": self.checksum,
        }
        return json.dumps(payload, ensure_ascii=False, indent=2) + "\n"

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "FaissIndexSidecar":
        try:
            return cls(
                version=int(payload["version"]),
                index_name=str(payload["index_name"]),
                dim=int(payload["dim"]),
                metric=FaissIndexMetric.from_name(str(payload["metric"])).name,
                index_type=str(payload["index_type"]),
                vector_count=int(payload["vector_count"]),
                built_at=parse_timestamp(str(payload["built_at"])),
                checksum=str(payload["checksum"]),
            )
        except KeyError as exc:
            raise ValueError(f"sidecar field missing: {exc.args[0]}") from exc


def sidecar_path_for_index(index_path: Path) -> Path:
    return index_path.with_name(f"{index_path.name}.meta.json")


@contextmanager
def index_writer_lock(
    index_path: Path,
    *,
    timeout: float = 30.0,
) -> Iterator[FileLock]:
    """Serialize writers of the FAISS artifacts at ``index_path``."""

    lock = FileLock(path=lock_path_for(index_path), timeout=timeout)
    try:
        lock.acquire()
    except FileLockTimeoutError as exc:
        raise FaissIndexLockError(
            index_path=index_path,
            message=f"Timed out acquiring index lock at {lock.path}",
        ) from exc
    except FileLockError as exc:
        raise FaissIndexLockError(
            index_path=index_path,
            message=f"Failed acquiring index lock at {lock.path}: {exc}",
        ) from exc
    try:
        yield lock
    finally:
        lock.release()


def persist_index_artifacts(
    index: FaissIndex,
    *,
    index_path: Path,
    index_name: str,
    index_type: str,
    built_at: datetime,
) -> FaissIndexSidecar:
    """Write the index and its sidecar atomically; caller holds the lock."""

    data = index.to_bytes()
    sidecar = FaissIndexSidecar(
        version=SIDECAR_VERSION,
        index_name=index_name,
        dim=index.dim,
        metric=index.metric.name,
        index_type=index_type,
        vector_count=index.size,
        built_at=built_at,
        checksum=hashlib.sha256(data).hexdigest(),
    )
    index_path.parent.mkdir(parents=True, exist_ok=True)
    try:
        _atomic_write(index_path, data)
        _atomic_write(
            sidecar_path_for_index(index_path),
            sidecar.to_json().encode("utf-8"),
        )
    except OSError as exc:
        index_path.unlink(missing_ok=True)
        raise FaissIndexPersistenceError(
            f"Failed to persist FAISS index under {index_path.parent}: {exc}"
        ) from exc
    return sidecar


def load_index_artifacts(
    index_path: Path,
) -> tuple[FaissIndex, FaissIndexSidecar]:
    """Load and validate the index written by :func:`persist_index_artifacts`."""

    sidecar_path = sidecar_path_for_index(index_path)
    if not index_path.exists() or not sidecar_path.exists():
        raise FaissIndexLoadError(
            index_path=index_path,
            message=f"FAISS index artifacts not found at {index_path}",
        )
    try:
        data = index_path.read_bytes()
        sidecar = FaissIndexSidecar.from_mapping(
            json.loads(sidecar_path.read_text(encoding="utf-8"))
        )
    except (OSError, ValueError) as exc:
        raise FaissIndexLoadError(
            index_path=index_path,
            message=f"Failed reading FAISS index artifacts: {exc}",
        ) from exc

    digest = hashlib.sha256(data).hexdigest()
    if digest != sidecar.checksum:
        raise FaissIndexLoadError(
            index_path=index_path,
            message=f"Checksum mismatch for FAISS index at {index_path}",
        )
    index = FaissIndex.from_bytes(data, metric=sidecar.metric)
    if index.dim != sidecar.dim or index.size != sidecar.vector_count:
        raise FaissIndexLoadError(
            index_path=index_path,
            message=f"FAISS index at {index_path} disagrees with its sidecar",
        )
    return index, sidecar


def remove_index_artifacts(index_path: Path) -> bool:
    """Delete index and sidecar files; returns whether anything existed."""

    existed = False
    for path in (index_path, sidecar_path_for_index(index_path)):
        try:
            path.unlink()
            existed = True
        except FileNotFoundError:
            continue
        except OSError as exc:
            raise FaissIndexPersistenceError(
                f"Failed removing {path}: {exc}"
            ) from exc
    return existed


def _atomic_write(path: Path, data: bytes) -> None:
    temp_path: Path | None = None
    try:
        with tempfile.NamedTemporaryFile(
            mode="wb",
            dir=path.parent,
            prefix=".faiss-",
            suffix=".tmp",
            delete=False,
        ) as handle:
            handle.write(data)
            temp_path = Path(handle.name)
        os.replace(temp_path, path)
    except OSError:
        if temp_path is not None:
            temp_path.unlink(missing_ok=True)
        raise
