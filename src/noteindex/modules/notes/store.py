"""SQLite-backed note store, file attachment loader and notification sink."""

from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Collection, Iterable, Mapping, Sequence

from noteindex.core.logging import Logger, get_logger
from noteindex.modules.db import Database, isoformat, parse_timestamp, utc_now

from .models import Attachment, Note

__all__ = [
    "AttachmentLoadError",
    "FileAttachmentStore",
    "SqliteNoteStore",
    "SqliteNotificationSink",
]

_TEXT_SUFFIXES = frozenset(
    {".txt", ".md", ".markdown", ".csv", ".json", ".html", ".htm", ".xml",
     ".yaml", ".yml", ".log", ".rst"}
)


class AttachmentLoadError(RuntimeError):
    """Raised when an attachment cannot be turned into text."""


def _placeholders(count: int) -> str:
    return ", ".join("?" for _ in range(count))


@dataclass(slots=True)
class SqliteNoteStore:
    """:class:`~noteindex.modules.notes.NoteStore` over the workspace DB."""

    database: Database

    def find_eligible(
        self,
        *,
        exclude_ids: Collection[int] | None = None,
    ) -> Sequence[Note]:
        query = "SELECT * FROM notes WHERE is_recycle = 0"
        params: list[Any] = []
        if exclude_ids:
            excluded = sorted({int(value) for value in exclude_ids})
            query += f" AND id NOT IN ({_placeholders(len(excluded))})"
            params.extend(excluded)
        query += " ORDER BY id ASC"
        with self.database.connect() as connection:
            rows = connection.execute(query, params).fetchall()
            return self._hydrate(connection, rows)

    def find_for_account(
        self,
        account_id: int,
        note_ids: Collection[int],
    ) -> Sequence[Note]:
        ids = sorted({int(value) for value in note_ids})
        if not ids:
            return ()
        query = (
            "SELECT * FROM notes WHERE account_id = ? "
            f"AND id IN ({_placeholders(len(ids))}) ORDER BY id ASC"
        )
        with self.database.connect() as connection:
            rows = connection.execute(query, [account_id, *ids]).fetchall()
            return self._hydrate(connection, rows)

    def mark_indexed(self, note_id: int, *, attachments: bool = False) -> None:
        with self.database.connect() as connection:
            row = connection.execute(
                "SELECT metadata FROM notes WHERE id = ?",
                (note_id,),
            ).fetchone()
            if row is None:
                return
            metadata = json.loads(row["metadata"] or "{}")
            metadata["isIndexed"] = True
            if attachments:
                metadata["isAttachmentsIndexed"] = True
            connection.execute(
                "UPDATE notes SET metadata = ? WHERE id = ?",
                (json.dumps(metadata, sort_keys=True), note_id),
            )

    def add_note(
        self,
        content: str,
        *,
        attachments: Iterable[str] = (),
        account_id: int = 1,
        now: datetime | None = None,
    ) -> Note:
        """Insert a note (and attachment paths) and return the stored record."""

        stamp = isoformat(now or utc_now())
        with self.database.connect() as connection:
            cursor = connection.execute(
                (
                    "INSERT INTO notes (account_id, content, created_at, "
                    "updated_at) VALUES (?, ?, ?, ?)"
                ),
                (account_id, content, stamp, stamp),
            )
            note_id = int(cursor.lastrowid)
            connection.executemany(
                (
                    "INSERT INTO attachments (note_id, path, sort_order) "
                    "VALUES (?, ?, ?)"
                ),
                [
                    (note_id, path, order)
                    for order, path in enumerate(attachments)
                ],
            )
            row = connection.execute(
                "SELECT * FROM notes WHERE id = ?",
                (note_id,),
            ).fetchone()
            return self._hydrate(connection, [row])[0]

    def recycle(self, note_id: int) -> None:
        with self.database.connect() as connection:
            connection.execute(
                "UPDATE notes SET is_recycle = 1 WHERE id = ?",
                (note_id,),
            )

    def _hydrate(
        self,
        connection: sqlite3.Connection,
        rows: Sequence[sqlite3.Row],
    ) -> tuple[Note, ...]:
        if not rows:
            return ()
        ids = [int(row["id"]) for row in rows]
        attachment_rows = connection.execute(
            (
                "SELECT id, note_id, path, sort_order FROM attachments "
                f"WHERE note_id IN ({_placeholders(len(ids))}) "
                "ORDER BY sort_order ASC, id ASC"
            ),
            ids,
        ).fetchall()
        by_note: dict[int, list[Attachment]] = {}
        for row in attachment_rows:
            by_note.setdefault(int(row["note_id"]), []).append(
                Attachment(
                    id=int(row["id"]),
                    note_id=int(row["note_id"]),
                    path=str(row["path"]),
                    sort_order=int(row["sort_order"]),
                )
            )
        return tuple(
            Note(
                id=int(row["id"]),
                content=str(row["content"] or ""),
                created_at=parse_timestamp(row["created_at"]),
                updated_at=parse_timestamp(row["updated_at"]),
                account_id=int(row["account_id"]),
                is_recycle=bool(row["is_recycle"]),
                attachments=tuple(by_note.get(int(row["id"]), ())),
                metadata=json.loads(row["metadata"] or "{}"),
            )
            for row in rows
        )


@dataclass(slots=True)
class FileAttachmentStore:
    """Read text-like attachments from a directory on disk."""

    root: Path
    encoding: str = "utf-8"

    def load_text(self, attachment: Attachment) -> str:
        relative = attachment.display_path.lstrip("/")
        path = (self.root / relative).resolve(strict=False)
        root = self.root.resolve(strict=False)
        if root not in path.parents and path != root:
            raise AttachmentLoadError(
                f"Attachment path escapes the attachment root: {relative}"
            )
        if attachment.suffix not in _TEXT_SUFFIXES:
            raise AttachmentLoadError(
                f"Unsupported attachment type {attachment.suffix or '?'!r}: "
                f"{relative}"
            )
        try:
            return path.read_text(encoding=self.encoding)
        except (OSError, UnicodeDecodeError) as exc:
            raise AttachmentLoadError(
                f"can not load file: {relative}: {exc}"
            ) from exc


@dataclass(slots=True)
class SqliteNotificationSink:
    """Persist notifications in the workspace DB and log them."""

    database: Database
    logger: Logger | None = None

    def __post_init__(self) -> None:
        if self.logger is None:
            self.logger = get_logger(__name__, component="notifications")

    def notify(self, kind: str, payload: Mapping[str, Any]) -> None:
        with self.database.connect() as connection:
            connection.execute(
                (
                    "INSERT INTO notifications (kind, payload, created_at) "
                    "VALUES (?, ?, ?)"
                ),
                (kind, json.dumps(dict(payload), sort_keys=True), isoformat(utc_now())),
            )
        self.logger.info("notification-sent", kind=kind)

    def list_kinds(self) -> tuple[str, ...]:
        with self.database.connect() as connection:
            rows = connection.execute(
                "SELECT kind FROM notifications ORDER BY id ASC"
            ).fetchall()
        return tuple(str(row["kind"]) for row in rows)
