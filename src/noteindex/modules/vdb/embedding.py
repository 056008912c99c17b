"""Embed one note or attachment and load it into the vector index."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime

from noteindex.core.config import EmbeddingSettings
from noteindex.core.logging import Logger, get_logger
from noteindex.modules.db import isoformat
from noteindex.modules.notes import Attachment, AttachmentStore, Note, NoteStore

from .manager import VectorIndexManager

__all__ = ["EmbedOutcome", "EmbeddingService", "chunk_text"]

_PARAGRAPH_BREAK = re.compile(r"\n\s*\n")


@dataclass(frozen=True, slots=True)
class EmbedOutcome:
    ok: bool
    error: str | None = None
    chunks: int = 0


def chunk_text(content: str, chunk_size: int) -> list[str]:
    """Split ``content`` into chunks of at most ``chunk_size`` characters.

    Paragraphs are packed together while they fit; a paragraph longer than
    ``chunk_size`` is cut into fixed-size pieces.

    Example:
        >>> chunk_text("alpha\\n\\nbeta", 64)
        ['alpha\\n\\nbeta']
    """

    if chunk_size < 1:
        raise ValueError("chunk_size must be >= 1")

    chunks: list[str] = []
    current = ""
    for paragraph in _PARAGRAPH_BREAK.split(content.strip()):
        paragraph = paragraph.strip()
        if not paragraph:
            continue
        candidate = f"{current}\n\n{paragraph}" if current else paragraph
        if len(candidate) <= chunk_size:
            current = candidate
            continue
        if current:
            chunks.append(current)
            current = ""
        while len(paragraph) > chunk_size:
            chunks.append(paragraph[:chunk_size])
            paragraph = paragraph[chunk_size:]
        current = paragraph
    if current:
        chunks.append(current)
    return chunks


def _timestamp_suffix(created_at: datetime, updated_at: datetime) -> str:
    return f" Create At: {isoformat(created_at)} Update At: {isoformat(updated_at)}"


class EmbeddingService:
    """Chunk, embed and upsert a single item.

    Provider and store failures propagate; refusals (excluded tag, nothing to
    embed) come back as ``EmbedOutcome(ok=False)``.
    """

    def __init__(
        self,
        *,
        manager: VectorIndexManager,
        notes: NoteStore,
        attachments: AttachmentStore,
        settings: EmbeddingSettings,
        logger: Logger | None = None,
    ) -> None:
        self._manager = manager
        self._notes = notes
        self._attachments = attachments
        self._settings = settings
        self._logger = logger or get_logger(__name__, component="embedding")

    def is_excluded(self, content: str) -> bool:
        tag = self._settings.exclude_tag
        return bool(tag) and f"#{tag}" in content

    def embed_note(self, note: Note, *, replace: bool = True) -> EmbedOutcome:
        if self.is_excluded(note.content):
            self._logger.warning(
                "embedding-note-excluded",
                note_id=note.id,
                tag=self._settings.exclude_tag,
            )
            return EmbedOutcome(ok=False, error="tag is not allowed to be embedded")

        chunks = chunk_text(note.content, self._settings.chunk_size)
        if not chunks:
            return EmbedOutcome(ok=False, error="note has no text to embed")

        if replace:
            self._manager.discard_vectors(note.id)

        suffix = _timestamp_suffix(note.created_at, note.updated_at)
        vectors = self._manager.embed_texts([chunk + suffix for chunk in chunks])
        self._manager.upsert(
            vectors,
            [
                {
                    "text": chunk,
                    "id": note.id,
                    "noteId": note.id,
                    "createTime": isoformat(note.created_at),
                    "updatedAt": isoformat(note.updated_at),
                }
                for chunk in chunks
            ],
        )
        self._notes.mark_indexed(note.id)
        self._logger.debug("embedding-note-indexed", note_id=note.id, chunks=len(chunks))
        return EmbedOutcome(ok=True, chunks=len(chunks))

    def embed_attachment(self, note: Note, attachment: Attachment) -> EmbedOutcome:
        content = self._attachments.load_text(attachment)
        chunks = chunk_text(content, self._settings.chunk_size)
        if not chunks:
            return EmbedOutcome(ok=False, error="attachment has no text to embed")

        suffix = _timestamp_suffix(note.updated_at, note.updated_at)
        vectors = self._manager.embed_texts([chunk + suffix for chunk in chunks])
        self._manager.upsert(
            vectors,
            [
                {
                    "text": chunk,
                    "id": note.id,
                    "noteId": note.id,
                    "isAttachment": True,
                    "path": attachment.display_path,
                    "updatedAt": isoformat(note.updated_at),
                }
                for chunk in chunks
            ],
        )
        self._notes.mark_indexed(note.id, attachments=True)
        self._logger.debug(
            "embedding-attachment-indexed",
            note_id=note.id,
            path=attachment.display_path,
            chunks=len(chunks),
        )
        return EmbedOutcome(ok=True, chunks=len(chunks))

    def delete_note(self, note_id: int) -> bool:
        """Drop every vector stored for ``note_id``; missing ones are fine."""

        return self._manager.discard_vectors(note_id)
