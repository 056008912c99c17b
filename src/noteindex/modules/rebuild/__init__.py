"""Resumable embedding rebuild: checkpoints, retries, control and scheduling."""

from __future__ import annotations

from .coordinator import RebuildCoordinator
from .models import (
    PROGRESS_SCHEMA_VERSION,
    RebuildProgress,
    ResultRecord,
    ResultType,
    ScheduledTask,
    compute_percentage,
)
from .processor import BatchProcessor, ItemEmbedder, ItemResult
from .scheduler import BootAction, JobScheduler, SchedulerError
from .store import ProgressStore, ProgressStoreError, TaskAlreadyRunningError

__all__ = [
    "PROGRESS_SCHEMA_VERSION",
    "BatchProcessor",
    "BootAction",
    "ItemEmbedder",
    "ItemResult",
    "JobScheduler",
    "ProgressStore",
    "ProgressStoreError",
    "RebuildCoordinator",
    "RebuildProgress",
    "ResultRecord",
    "ResultType",
    "ScheduledTask",
    "SchedulerError",
    "TaskAlreadyRunningError",
    "compute_percentage",
]
