"""Filesystem lock used to serialize vector index writes."""

from __future__ import annotations

import os
import time
from dataclasses import dataclass, field
from pathlib import Path

__all__ = [
    "FileLockError",
    "FileLockTimeoutError",
    "FileLock",
    "lock_path_for",
]


class FileLockError(RuntimeError):
    """Base error type for lock file failures."""


class FileLockTimeoutError(FileLockError):
    """Raised when acquiring a lock file times out."""


@dataclass(slots=True)
class FileLock:
    """``O_EXCL`` lock file with timeout semantics.

    The holder's pid is written into the file so operators can see who owns a
    lock left behind by a crashed process.
    """

    path: Path
    timeout: float = 30.0
    poll_interval: float = 0.1
    _handle: int | None = field(init=False, default=None, repr=False)

    @property
    def held(self) -> bool:
        return self._handle is not None

    def acquire(self) -> None:
        """Acquire the lock, waiting up to ``timeout`` seconds."""

        if self._handle is not None:
            return

        deadline = time.monotonic() + max(self.timeout, 0.0)
        self.path.parent.mkdir(parents=True, exist_ok=True)

        while True:
            try:
                handle = os.open(
                    self.path,
                    os.O_CREAT | os.O_EXCL | os.O_WRONLY,
                )
            except FileExistsError:
                if time.monotonic() >= deadline:
                    raise FileLockTimeoutError(
                        f"Timed out acquiring lock at {self.path}"
                    ) from None
                time.sleep(self.poll_interval)
                continue
            except OSError as exc:  # pragma: no cover - surfaced at runtime
                raise FileLockError(
                    f"Failed acquiring lock at {self.path}: {exc}"
                ) from exc
            os.write(handle, str(os.getpid()).encode("ascii"))
            self._handle = handle
            return

    def release(self) -> None:
        """Release the lock if held."""

        handle = self._handle
        if handle is None:
            return

        try:
            os.close(handle)
        finally:
            self._handle = None
            try:
                self.path.unlink()
            except FileNotFoundError:  # pragma: no cover - best effort cleanup
                pass
            except OSError as exc:  # pragma: no cover - surfaced at runtime
                raise FileLockError(
                    f"Failed removing lock at {self.path}: {exc}"
                ) from exc

    def __enter__(self) -> "FileLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


def lock_path_for(path: Path, *, suffix: str = ".lock") -> Path:
    """Return the lock file path guarding ``path``."""

    return path.with_name(f"{path.name}{suffix}")
