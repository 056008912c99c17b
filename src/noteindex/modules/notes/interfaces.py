"""Boundary contracts for the collaborators the pipeline depends on."""

from __future__ import annotations

from typing import Any, Collection, Mapping, Protocol, Sequence, runtime_checkable

from .models import Attachment, Note

__all__ = [
    "AttachmentStore",
    "NoteStore",
    "NotificationSink",
    "REBUILD_COMPLETE_NOTIFICATION",
]

REBUILD_COMPLETE_NOTIFICATION = "embedding-rebuild-complete"


@runtime_checkable
class NoteStore(Protocol):
    """Read access to notes plus the ``isIndexed`` marker."""

    def find_eligible(
        self,
        *,
        exclude_ids: Collection[int] | None = None,
    ) -> Sequence[Note]:
        """Return non-recycled notes in ascending id order."""

    def find_for_account(
        self,
        account_id: int,
        note_ids: Collection[int],
    ) -> Sequence[Note]:
        """Return the account's notes among ``note_ids``."""

    def mark_indexed(self, note_id: int, *, attachments: bool = False) -> None:
        """Flag the note's metadata as present in the vector index."""


@runtime_checkable
class AttachmentStore(Protocol):
    """Turns an attachment into text that can be embedded."""

    def load_text(self, attachment: Attachment) -> str:
        """Return the attachment's text content or raise."""


@runtime_checkable
class NotificationSink(Protocol):
    """Receives user-facing notifications emitted by background jobs."""

    def notify(self, kind: str, payload: Mapping[str, Any]) -> None:
        """Deliver one notification."""
