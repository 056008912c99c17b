"""Connection factory and schema bootstrap for the workspace database."""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

from noteindex.resources import get_resource

__all__ = [
    "Database",
    "DatabaseError",
    "isoformat",
    "parse_timestamp",
    "utc_now",
]

SCHEMA_RESOURCE_NAME = "schema.sql"


class DatabaseError(RuntimeError):
    """Raised when the workspace database cannot be opened or migrated."""


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(value: datetime) -> str:
    """Render ``value`` as an ISO-8601 UTC string with a ``Z`` suffix."""

    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    else:
        value = value.astimezone(timezone.utc)
    return value.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: str | datetime) -> datetime:
    """Parse ISO-8601 text (``Z`` suffix allowed) into an aware datetime."""

    if isinstance(value, datetime):
        parsed = value
    else:
        text = value.strip()
        if text.endswith("Z"):
            text = f"{text[:-1]}+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(slots=True)
class Database:
    """Open short-lived connections against the workspace SQLite file.

    Every call to :meth:`connect` yields a fresh connection, so instances are
    safe to share between the scheduler thread and request handlers.
    """

    path: Path
    timeout: float = 30.0
    _initialized: bool = field(init=False, default=False, repr=False)

    def ensure(self) -> "Database":
        """Create the database file and apply the packaged schema."""

        if self._initialized:
            return self
        self.path.parent.mkdir(parents=True, exist_ok=True)
        schema = get_resource(SCHEMA_RESOURCE_NAME).read_text(encoding="utf-8")
        try:
            connection = self._open()
            try:
                connection.executescript(schema)
            finally:
                connection.close()
        except sqlite3.DatabaseError as exc:
            raise DatabaseError(
                f"Failed to initialize database at {self.path}: {exc}"
            ) from exc
        self._initialized = True
        return self

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        """Yield a connection wrapped in a transaction.

        Commits on success, rolls back when the block raises, and always
        closes the connection.
        """

        self.ensure()
        connection = self._open()
        try:
            with connection:
                yield connection
        finally:
            connection.close()

    def _open(self) -> sqlite3.Connection:
        connection = sqlite3.connect(self.path, timeout=self.timeout)
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys = ON")
        connection.execute("PRAGMA journal_mode = WAL")
        return connection
