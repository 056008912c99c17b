"""SQLite database helpers shared by the notes, vdb and rebuild modules."""

from __future__ import annotations

from .database import Database, DatabaseError, utc_now, isoformat, parse_timestamp

__all__ = [
    "Database",
    "DatabaseError",
    "isoformat",
    "parse_timestamp",
    "utc_now",
]
