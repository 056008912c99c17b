"""State machine driving the resumable embedding rebuild."""

from __future__ import annotations

import queue
import threading
import time
import uuid
from collections import deque
from datetime import datetime
from typing import Callable

from noteindex.core.config import RebuildSettings
from noteindex.core.logging import Logger, bound_run_context, get_logger
from noteindex.modules.db import DatabaseError, utc_now
from noteindex.modules.notes import (
    REBUILD_COMPLETE_NOTIFICATION,
    Note,
    NoteStore,
    NotificationSink,
)
from noteindex.modules.vdb import VectorIndexManager

from .models import RebuildProgress, ResultRecord, ResultType, compute_percentage
from .processor import BatchProcessor
from .store import ProgressStore, ProgressStoreError, TaskAlreadyRunningError

__all__ = ["RebuildCoordinator"]

_PREVIEW_LENGTH = 30


class _RunState:
    """Mutable bookkeeping for one :meth:`RebuildCoordinator.run_task` call."""

    def __init__(
        self,
        seed: RebuildProgress,
        *,
        total: int,
        current: int,
        limit: int,
    ) -> None:
        self.seed = seed
        self.total = total
        self.current = current
        self.processed: set[int] = set(seed.processed_note_ids)
        self.failed: set[int] = set(seed.failed_note_ids)
        self.skipped: set[int] = set(seed.skipped_note_ids)
        self.results: deque[ResultRecord] = deque(seed.results, maxlen=limit)
        self.last_processed_id = seed.last_processed_id

    def record(
        self,
        kind: ResultType,
        content: str,
        error: str | None = None,
    ) -> None:
        self.results.append(ResultRecord(type=kind, content=content, error=error))

    def snapshot(self, *, is_running: bool) -> RebuildProgress:
        return self.seed.model_copy(
            update={
                "current": self.current,
                "total": self.total,
                "percentage": compute_percentage(self.current, self.total),
                "is_running": is_running,
                "results": list(self.results),
                "processed_note_ids": sorted(self.processed),
                "failed_note_ids": sorted(self.failed),
                "skipped_note_ids": sorted(self.skipped),
                "last_processed_id": self.last_processed_id,
                "last_update": utc_now(),
            }
        )


class RebuildCoordinator:
    """Owns the rebuild job: control operations plus the main loop.

    Two stop signals are honoured: an in-process :class:`threading.Event`
    (fast path) and the persisted ``isRunning`` flag (cross-process). Only one
    :meth:`run_task` executes at a time in a process.
    """

    def __init__(
        self,
        *,
        store: ProgressStore,
        notes: NoteStore,
        index: VectorIndexManager,
        processor: BatchProcessor,
        notifications: NotificationSink,
        settings: RebuildSettings,
        sleep: Callable[[float], None] = time.sleep,
        now: Callable[[], datetime] = utc_now,
        logger: Logger | None = None,
    ) -> None:
        self._store = store
        self._notes = notes
        self._index = index
        self._processor = processor
        self._notifications = notifications
        self._settings = settings
        self._sleep = sleep
        self._now = now
        self._logger = logger or get_logger(__name__, component="rebuild")
        self._run_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._cancel: threading.Event | None = None
        self._subscribers: list[queue.Queue[RebuildProgress]] = []
        self._trigger: Callable[[], None] = self._spawn_run

    @property
    def task_name(self) -> str:
        return self._settings.task_name

    @property
    def is_active(self) -> bool:
        """Whether a run is executing in this process right now."""

        return self._run_lock.locked()

    def set_trigger(self, trigger: Callable[[], None]) -> None:
        """Route "fire the job" requests, normally to the scheduler."""

        self._trigger = trigger

    def fire(self) -> None:
        self._trigger()

    # ------------------------------------------------------------------#
    # Progress stream
    # ------------------------------------------------------------------#
    def subscribe(self) -> "queue.Queue[RebuildProgress]":
        """Return a queue receiving every checkpoint this process persists."""

        channel: queue.Queue[RebuildProgress] = queue.Queue()
        with self._state_lock:
            self._subscribers.append(channel)
        return channel

    def unsubscribe(self, channel: "queue.Queue[RebuildProgress]") -> None:
        with self._state_lock:
            if channel in self._subscribers:
                self._subscribers.remove(channel)

    def _publish(self, progress: RebuildProgress) -> None:
        with self._state_lock:
            subscribers = tuple(self._subscribers)
        for channel in subscribers:
            channel.put_nowait(progress)

    # ------------------------------------------------------------------#
    # Control operations
    # ------------------------------------------------------------------#
    def force_rebuild(self, force: bool = True, incremental: bool = False) -> bool:
        """Seed a full or incremental run and fire it.

        Returns ``False`` only when the checkpoint cannot be persisted.
        """

        name = self.task_name
        try:
            task = self._store.get(name)
            if task is not None and task.is_running and force:
                self._logger.info("rebuild-force-stop", task=name)
                self.stop_rebuild()
                self._sleep(self._settings.stop_settle_seconds)
                task = self._store.get(name)

            existing = task.output if task is not None else None
            if incremental and existing is not None:
                progress = existing.resumed(now=self._now())
            else:
                progress = RebuildProgress.fresh(now=self._now())

            schedule = task.schedule if task is not None else self._settings.schedule
            self._store.seed(name, progress, schedule=schedule)
        except (ProgressStoreError, DatabaseError) as exc:
            self._logger.error("rebuild-force-failed", task=name, error=str(exc))
            return False

        self._logger.info(
            "rebuild-requested",
            task=name,
            incremental=progress.is_incremental,
            retry_count=progress.retry_count,
        )
        self._publish(progress)
        self.fire()
        return True

    def resume_rebuild(self) -> bool:
        return self.force_rebuild(force=True, incremental=True)

    def stop_rebuild(self) -> bool:
        """Signal the active run to stop and persist ``isRunning=false``."""

        with self._state_lock:
            if self._cancel is not None:
                self._cancel.set()
        try:
            self._store.set_running(self.task_name, False)
        except (ProgressStoreError, DatabaseError) as exc:
            self._logger.error("rebuild-stop-failed", task=self.task_name, error=str(exc))
            return False
        self._logger.info("rebuild-stop-requested", task=self.task_name)
        return True

    def get_progress(self) -> RebuildProgress | None:
        return self._store.get_progress(self.task_name)

    def get_failed_notes(self) -> list[int]:
        progress = self.get_progress()
        return list(progress.failed_note_ids) if progress else []

    def retry_failed_notes(self) -> bool:
        """Move failed ids back into the candidate set and fire a run."""

        name = self.task_name
        try:
            progress = self._store.get_progress(name)
            if progress is None:
                return False
            failed = set(progress.failed_note_ids)
            updated = progress.model_copy(
                update={
                    "processed_note_ids": [
                        note_id
                        for note_id in progress.processed_note_ids
                        if note_id not in failed
                    ],
                    "failed_note_ids": [],
                    "is_running": True,
                    "is_incremental": True,
                    "last_update": self._now(),
                }
            )
            self._store.write_output(name, updated, revoke_claim=True)
        except (ProgressStoreError, DatabaseError) as exc:
            self._logger.error("rebuild-retry-failed-error", task=name, error=str(exc))
            return False

        self._logger.info("rebuild-retry-failed", task=name, notes=len(failed))
        self._publish(updated)
        self.fire()
        return True

    # ------------------------------------------------------------------#
    # Main loop
    # ------------------------------------------------------------------#
    def run_task(self) -> RebuildProgress | None:
        """Execute the seeded run until completion, stop or failure.

        A no-op when the checkpoint is missing or not marked running, so a
        stale trigger never resurrects a finished run.
        """

        with self._run_lock:
            task = self._store.get(self.task_name)
            if task is None or task.output is None:
                self._logger.info("rebuild-skip-missing", task=self.task_name)
                return None
            if not task.is_running:
                return task.output

            run_id = uuid.uuid4().hex
            try:
                self._store.claim(self.task_name, run_id)
            except TaskAlreadyRunningError as exc:
                self._logger.warning(
                    "rebuild-claim-refused",
                    task=self.task_name,
                    holder=exc.holder,
                )
                return None

            cancel = threading.Event()
            with self._state_lock:
                self._cancel = cancel
            try:
                with bound_run_context(task=self.task_name, run_id=run_id):
                    return self._execute(task.output, run_id=run_id, cancel=cancel)
            finally:
                with self._state_lock:
                    self._cancel = None

    def _execute(
        self,
        seed: RebuildProgress,
        *,
        run_id: str,
        cancel: threading.Event,
    ) -> RebuildProgress:
        name = self.task_name
        limit = self._settings.results_limit
        state = _RunState(
            seed,
            total=seed.total,
            current=seed.current,
            limit=limit,
        )

        try:
            if seed.is_incremental:
                self._index.ensure_index()
                candidates = self._notes.find_eligible(exclude_ids=state.processed)
                state.current = len(state.processed)
                state.total = len(state.processed) + len(candidates)
            else:
                self._index.rebuild_vector_index(is_delete=True)
                candidates = self._notes.find_eligible()
                state.processed.clear()
                state.failed.clear()
                state.skipped.clear()
                state.current = 0
                state.total = len(candidates)

            self._logger.info(
                "rebuild-start",
                candidates=len(candidates),
                total=state.total,
                current=state.current,
                incremental=seed.is_incremental,
            )

            batch_size = self._settings.batch_size
            for offset in range(0, len(candidates), batch_size):
                if self._should_stop(cancel, run_id):
                    return self._stop(state, run_id)

                for note in candidates[offset : offset + batch_size]:
                    if self._should_stop(cancel, run_id):
                        return self._stop(state, run_id)
                    if note.id in state.processed:
                        continue

                    self._process_note(note, state)
                    checkpoint = state.snapshot(is_running=True)
                    if not self._store.save_checkpoint(name, checkpoint, run_id=run_id):
                        # Stopped or superseded while this note was in flight.
                        return self._stop(state, run_id)
                    self._publish(checkpoint)

            if candidates:
                state.last_processed_id = candidates[-1].id
            final = state.snapshot(is_running=False).model_copy(
                update={"percentage": 100}
            )
            self._store.finish(name, final, run_id=run_id, is_success=True)
            self._publish(final)
            self._notifications.notify(
                REBUILD_COMPLETE_NOTIFICATION,
                {
                    "title": REBUILD_COMPLETE_NOTIFICATION,
                    "content": REBUILD_COMPLETE_NOTIFICATION,
                    "current": final.current,
                    "total": final.total,
                    "failed": len(final.failed_note_ids),
                },
            )
            self._logger.info(
                "rebuild-complete",
                current=final.current,
                total=final.total,
                failed=len(final.failed_note_ids),
            )
            return final
        except Exception as exc:
            state.record(ResultType.ERROR, "Task failed with error", str(exc))
            failed = state.snapshot(is_running=False)
            try:
                self._store.finish(name, failed, run_id=run_id, is_success=False)
            except ProgressStoreError as store_exc:
                self._logger.error("rebuild-failure-unpersisted", error=str(store_exc))
            self._publish(failed)
            self._logger.error(
                "rebuild-failed",
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            raise

    def _process_note(self, note: Note, state: _RunState) -> None:
        preview = note.preview(_PREVIEW_LENGTH)
        succeeded = False
        attempted = False

        if note.has_content:
            attempted = True
            result = self._processor.process_note(note)
            if result.success:
                succeeded = True
                state.record(ResultType.SUCCESS, preview)
            else:
                state.record(ResultType.ERROR, preview, result.error)

        for attachment in note.attachments:
            path = attachment.display_path
            if self._processor.is_image(path):
                state.record(ResultType.SKIP, path, "image is not supported")
                continue
            attempted = True
            result = self._processor.process_attachment(note, attachment)
            if result.success:
                succeeded = True
                state.record(ResultType.SUCCESS, path)
            else:
                state.record(ResultType.ERROR, path, result.error)

        state.last_processed_id = note.id
        if succeeded:
            state.processed.add(note.id)
            state.failed.discard(note.id)
            state.current += 1
        elif attempted:
            state.failed.add(note.id)
        else:
            state.skipped.add(note.id)
            state.record(ResultType.SKIP, preview, "nothing to embed")

        self._logger.info(
            "rebuild-note-processed",
            note_id=note.id,
            success=succeeded,
            current=state.current,
            total=state.total,
        )

    def _should_stop(self, cancel: threading.Event, run_id: str) -> bool:
        if cancel.is_set():
            return True
        task = self._store.get(self.task_name)
        return task is None or not task.is_running or task.run_id != run_id

    def _stop(self, state: _RunState, run_id: str) -> RebuildProgress:
        snapshot = state.snapshot(is_running=False)
        stopped = self._processor.create_stopped_progress(
            self.task_name,
            snapshot,
            run_id=run_id,
        )
        self._publish(stopped)
        return stopped

    def _spawn_run(self) -> None:
        thread = threading.Thread(
            target=self._run_in_background,
            name=f"{self.task_name}-run",
            daemon=True,
        )
        thread.start()

    def _run_in_background(self) -> None:
        try:
            self.run_task()
        except Exception:
            self._logger.exception("rebuild-job-error", task=self.task_name)
