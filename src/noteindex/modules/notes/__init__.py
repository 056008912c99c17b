"""Notes, attachments and notification collaborators."""

from __future__ import annotations

from .interfaces import (
    REBUILD_COMPLETE_NOTIFICATION,
    AttachmentStore,
    NoteStore,
    NotificationSink,
)
from .models import Attachment, Note
from .store import (
    AttachmentLoadError,
    FileAttachmentStore,
    SqliteNoteStore,
    SqliteNotificationSink,
)

__all__ = [
    "REBUILD_COMPLETE_NOTIFICATION",
    "Attachment",
    "AttachmentLoadError",
    "AttachmentStore",
    "FileAttachmentStore",
    "Note",
    "NoteStore",
    "NotificationSink",
    "SqliteNoteStore",
    "SqliteNotificationSink",
]
