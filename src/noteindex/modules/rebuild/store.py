"""Durable checkpoint storage on the ``scheduled_tasks`` table."""

from __future__ import annotations

import sqlite3
from datetime import datetime, timedelta
from typing import Callable

from pydantic import ValidationError

from noteindex.core.logging import Logger, get_logger
from noteindex.modules.db import Database, isoformat, parse_timestamp, utc_now

from .models import RebuildProgress, ScheduledTask

__all__ = [
    "ProgressStore",
    "ProgressStoreError",
    "TaskAlreadyRunningError",
]


class ProgressStoreError(RuntimeError):
    """Raised when the checkpoint row cannot be read or written."""


class TaskAlreadyRunningError(ProgressStoreError):
    """Raised when another live run holds the claim on a task row."""

    def __init__(self, name: str, *, holder: str | None) -> None:
        super().__init__(f"Task {name!r} is already running (run {holder})")
        self.name = name
        self.holder = holder


class ProgressStore:
    """Read and write one checkpoint row per task name.

    Writers that belong to a run pass its ``run_id``; those writes only land
    while the row is still claimed by that run, which is how a stop or a
    restart issued from another process wins over a worker mid-item.
    """

    def __init__(
        self,
        database: Database,
        *,
        lease_seconds: float = 600.0,
        now: Callable[[], datetime] = utc_now,
        logger: Logger | None = None,
    ) -> None:
        self._database = database
        self._lease = timedelta(seconds=lease_seconds)
        self._now = now
        self._logger = logger or get_logger(__name__, component="progress-store")

    # ------------------------------------------------------------------#
    # Reads
    # ------------------------------------------------------------------#
    def get(self, name: str) -> ScheduledTask | None:
        try:
            with self._database.connect() as connection:
                row = connection.execute(
                    "SELECT * FROM scheduled_tasks WHERE name = ?",
                    (name,),
                ).fetchone()
        except sqlite3.Error as exc:
            raise ProgressStoreError(f"Failed reading task {name!r}: {exc}") from exc
        if row is None:
            return None
        return self._to_task(row)

    def get_progress(self, name: str) -> RebuildProgress | None:
        task = self.get(name)
        return task.output if task else None

    # ------------------------------------------------------------------#
    # Unconditional writes (control operations)
    # ------------------------------------------------------------------#
    def seed(
        self,
        name: str,
        progress: RebuildProgress,
        *,
        schedule: str,
    ) -> None:
        """Start a new run generation, revoking any existing claim."""

        now = isoformat(self._now())
        self._execute(
            (
                "INSERT INTO scheduled_tasks (name, is_running, is_success, "
                "output, schedule, last_run, run_id, heartbeat_at) "
                "VALUES (?, ?, 0, ?, ?, ?, NULL, NULL) "
                "ON CONFLICT(name) DO UPDATE SET "
                "is_running = excluded.is_running, is_success = 0, "
                "output = excluded.output, last_run = excluded.last_run, "
                "run_id = NULL, heartbeat_at = NULL"
            ),
            (name, int(progress.is_running), progress.to_json(), schedule, now),
            action="seed",
            name=name,
        )

    def write_output(
        self,
        name: str,
        progress: RebuildProgress,
        *,
        revoke_claim: bool = False,
    ) -> bool:
        """Replace the checkpoint; ``False`` when the row does not exist."""

        query = "UPDATE scheduled_tasks SET is_running = ?, output = ?"
        if revoke_claim:
            query += ", run_id = NULL, heartbeat_at = NULL"
        query += " WHERE name = ?"
        return self._execute(
            query,
            (int(progress.is_running), progress.to_json(), name),
            action="write-output",
            name=name,
        )

    def set_running(self, name: str, is_running: bool) -> bool:
        """Flip the running flag in both the column and the checkpoint."""

        try:
            with self._database.connect() as connection:
                row = connection.execute(
                    "SELECT output FROM scheduled_tasks WHERE name = ?",
                    (name,),
                ).fetchone()
                if row is None:
                    return False
                output = row["output"]
                if output:
                    progress = self._parse_output(name, output)
                    if progress is not None:
                        output = progress.model_copy(
                            update={
                                "is_running": is_running,
                                "last_update": self._now(),
                            }
                        ).to_json()
                connection.execute(
                    (
                        "UPDATE scheduled_tasks SET is_running = ?, output = ? "
                        "WHERE name = ?"
                    ),
                    (int(is_running), output, name),
                )
        except sqlite3.Error as exc:
            raise ProgressStoreError(
                f"Failed updating running flag of {name!r}: {exc}"
            ) from exc
        return True

    def update_schedule(self, name: str, schedule: str) -> bool:
        return self._execute(
            "UPDATE scheduled_tasks SET schedule = ? WHERE name = ?",
            (schedule, name),
            action="update-schedule",
            name=name,
        )

    # ------------------------------------------------------------------#
    # Claimed writes (the active run)
    # ------------------------------------------------------------------#
    def claim(self, name: str, run_id: str) -> None:
        """Take the row for ``run_id`` or raise :class:`TaskAlreadyRunningError`.

        The claim succeeds when nobody holds it, when ``run_id`` already holds
        it, or when the holder has not written for longer than the lease.
        """

        now = self._now()
        claimed = self._execute(
            (
                "UPDATE scheduled_tasks SET run_id = ?, heartbeat_at = ? "
                "WHERE name = ? AND (run_id IS NULL OR run_id = ? "
                "OR heartbeat_at IS NULL OR heartbeat_at < ?)"
            ),
            (
                run_id,
                isoformat(now),
                name,
                run_id,
                isoformat(now - self._lease),
            ),
            action="claim",
            name=name,
        )
        if not claimed:
            task = self.get(name)
            raise TaskAlreadyRunningError(name, holder=task.run_id if task else None)

    def save_checkpoint(
        self,
        name: str,
        progress: RebuildProgress,
        *,
        run_id: str,
    ) -> bool:
        """Persist mid-run progress and refresh the heartbeat.

        Returns ``False`` when the run was stopped or its claim revoked; the
        caller must treat that as a stop signal.
        """

        return self._execute(
            (
                "UPDATE scheduled_tasks SET output = ?, heartbeat_at = ? "
                "WHERE name = ? AND run_id = ? AND is_running = 1"
            ),
            (progress.to_json(), isoformat(self._now()), name, run_id),
            action="checkpoint",
            name=name,
        )

    def finish(
        self,
        name: str,
        progress: RebuildProgress,
        *,
        run_id: str,
        is_success: bool | None = None,
    ) -> bool:
        """Write a terminal checkpoint and release the claim.

        ``is_success=None`` leaves the previous outcome untouched (used for
        stops). Returns ``False`` when ``run_id`` no longer holds the row.
        """

        assignments = [
            "is_running = ?",
            "output = ?",
            "run_id = NULL",
            "heartbeat_at = NULL",
        ]
        params: list[object] = [int(progress.is_running), progress.to_json()]
        if is_success is not None:
            assignments.append("is_success = ?")
            params.append(int(is_success))
        params.extend([name, run_id])
        return self._execute(
            (
                f"UPDATE scheduled_tasks SET {', '.join(assignments)} "
                "WHERE name = ? AND run_id = ?"
            ),
            params,
            action="finish",
            name=name,
        )

    def release(self, name: str, run_id: str) -> bool:
        return self._execute(
            (
                "UPDATE scheduled_tasks SET run_id = NULL, heartbeat_at = NULL "
                "WHERE name = ? AND run_id = ?"
            ),
            (name, run_id),
            action="release",
            name=name,
        )

    # ------------------------------------------------------------------#
    # Helpers
    # ------------------------------------------------------------------#
    def _execute(
        self,
        query: str,
        params: tuple[object, ...] | list[object],
        *,
        action: str,
        name: str,
    ) -> bool:
        try:
            with self._database.connect() as connection:
                cursor = connection.execute(query, params)
                return cursor.rowcount > 0
        except sqlite3.Error as exc:
            raise ProgressStoreError(
                f"Failed to {action} task {name!r}: {exc}"
            ) from exc

    def _parse_output(self, name: str, payload: str) -> RebuildProgress | None:
        try:
            return RebuildProgress.from_json(payload)
        except ValidationError as exc:
            self._logger.warning(
                "progress-output-invalid",
                task=name,
                errors=exc.error_count(),
            )
            return None

    def _to_task(self, row: sqlite3.Row) -> ScheduledTask:
        name = str(row["name"])
        is_running = bool(row["is_running"])
        output = None
        if row["output"]:
            output = self._parse_output(name, row["output"])
        if output is not None and output.is_running != is_running:
            # The column is authoritative.
            output = output.model_copy(update={"is_running": is_running})
        heartbeat = row["heartbeat_at"]
        return ScheduledTask(
            name=name,
            is_running=is_running,
            is_success=bool(row["is_success"]),
            schedule=str(row["schedule"]),
            last_run=parse_timestamp(row["last_run"]),
            output=output,
            run_id=row["run_id"],
            heartbeat_at=parse_timestamp(heartbeat) if heartbeat else None,
        )
