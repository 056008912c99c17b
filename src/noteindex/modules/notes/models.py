"""Note and attachment records read by the embedding pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import PurePosixPath
from typing import Any, Mapping
from urllib.parse import unquote

__all__ = ["Attachment", "Note"]


@dataclass(frozen=True, slots=True)
class Attachment:
    """File attached to a note; ``path`` may be URL-encoded."""

    id: int
    note_id: int
    path: str
    sort_order: int = 0

    @property
    def display_path(self) -> str:
        return unquote(self.path)

    @property
    def suffix(self) -> str:
        return PurePosixPath(self.display_path.lower()).suffix


@dataclass(frozen=True, slots=True)
class Note:
    """Note as seen by the pipeline: text, timestamps and attachments."""

    id: int
    content: str
    created_at: datetime
    updated_at: datetime
    account_id: int = 1
    is_recycle: bool = False
    attachments: tuple[Attachment, ...] = ()
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @property
    def has_content(self) -> bool:
        return bool(self.content and self.content.strip())

    def preview(self, length: int = 30) -> str:
        """Return the leading ``length`` characters used in result logs."""

        return self.content[:length]
