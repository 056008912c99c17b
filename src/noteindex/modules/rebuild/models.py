"""Typed checkpoint records persisted by the rebuild job."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel

from noteindex.modules.db import utc_now

__all__ = [
    "PROGRESS_SCHEMA_VERSION",
    "RebuildProgress",
    "ResultRecord",
    "ResultType",
    "ScheduledTask",
    "compute_percentage",
]

PROGRESS_SCHEMA_VERSION = 1


def compute_percentage(current: int, total: int) -> int:
    """Return ``floor(current / total * 100)``; ``0`` while total is unknown."""

    if total <= 0:
        return 0
    return min(100, math.floor(current / total * 100))


class ResultType(str, Enum):
    SUCCESS = "success"
    SKIP = "skip"
    ERROR = "error"


class ResultRecord(BaseModel):
    """One line of the bounded per-run result log."""

    type: ResultType
    content: str
    error: str | None = None
    timestamp: datetime = Field(default_factory=utc_now)

    model_config = {
        "alias_generator": to_camel,
        "populate_by_name": True,
    }


class RebuildProgress(BaseModel):
    """Checkpoint stored as the ``output`` of the rebuild task row.

    Serialized with camelCase keys (``processedNoteIds``, ``isRunning``...)
    and tagged with ``schemaVersion`` so older rows keep loading.
    """

    schema_version: int = Field(default=PROGRESS_SCHEMA_VERSION, ge=1)
    current: int = Field(default=0, ge=0)
    total: int = Field(default=0, ge=0)
    percentage: int = Field(default=0, ge=0, le=100)
    is_running: bool = False
    is_incremental: bool = False
    results: list[ResultRecord] = Field(default_factory=list)
    processed_note_ids: list[int] = Field(default_factory=list)
    failed_note_ids: list[int] = Field(default_factory=list)
    skipped_note_ids: list[int] = Field(default_factory=list)
    last_processed_id: int | None = None
    retry_count: int = Field(default=0, ge=0)
    start_time: datetime = Field(default_factory=utc_now)
    last_update: datetime = Field(default_factory=utc_now)

    model_config = {
        "alias_generator": to_camel,
        "populate_by_name": True,
        "extra": "ignore",
    }

    @classmethod
    def fresh(cls, *, now: datetime | None = None) -> "RebuildProgress":
        """Seed for a full rebuild."""

        stamp = now or utc_now()
        return cls(is_running=True, start_time=stamp, last_update=stamp)

    def resumed(self, *, now: datetime | None = None) -> "RebuildProgress":
        """Seed for an incremental run that keeps processed/failed ids."""

        return self.model_copy(
            update={
                "is_running": True,
                "is_incremental": True,
                "retry_count": self.retry_count + 1,
                "last_update": now or utc_now(),
            },
            deep=True,
        )

    def trimmed(self, limit: int) -> "RebuildProgress":
        """Return a copy whose result log keeps only the newest ``limit``."""

        if len(self.results) <= limit:
            return self
        return self.model_copy(update={"results": self.results[-limit:]})

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_json(cls, payload: str) -> "RebuildProgress":
        return cls.model_validate_json(payload)


@dataclass(frozen=True, slots=True)
class ScheduledTask:
    """Row of ``scheduled_tasks``: the checkpoint plus run bookkeeping."""

    name: str
    is_running: bool
    is_success: bool
    schedule: str
    last_run: datetime
    output: RebuildProgress | None = None
    run_id: str | None = None
    heartbeat_at: datetime | None = None
