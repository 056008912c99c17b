"""Cron-driven trigger for the rebuild job plus boot-time recovery."""

from __future__ import annotations

import threading
import time
from datetime import datetime
from enum import Enum
from typing import Any, Callable

from croniter import croniter

from noteindex.core.logging import Logger, get_logger
from noteindex.modules.db import utc_now

from .store import ProgressStore

__all__ = ["BootAction", "JobScheduler", "SchedulerError"]


class SchedulerError(ValueError):
    """Raised for unusable cron expressions."""


class BootAction(str, Enum):
    RESUMED = "resumed"
    FIRED = "fired"
    WAITING = "waiting"


class JobScheduler:
    """Run ``job`` on a cron schedule in a background thread.

    Example:
        >>> scheduler = JobScheduler(lambda: None, store=store, task_name="t")
        >>> scheduler.start("0 0 * * *")  # doctest: +SKIP
    """

    def __init__(
        self,
        job: Callable[[], Any],
        *,
        store: ProgressStore,
        task_name: str,
        default_schedule: str = "0 0 * * *",
        boot_delay_seconds: float = 1.0,
        resume_delay_seconds: float = 0.5,
        now: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
        logger: Logger | None = None,
    ) -> None:
        self._job = job
        self._store = store
        self._task_name = task_name
        self._default_schedule = self.validate(default_schedule)
        self._boot_delay = boot_delay_seconds
        self._resume_delay = resume_delay_seconds
        self._now = now
        self._sleep = sleep
        self._logger = logger or get_logger(__name__, component="scheduler")
        self._schedule: str | None = None
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @staticmethod
    def validate(schedule: str) -> str:
        if not croniter.is_valid(schedule):
            raise SchedulerError(f"Invalid cron expression: {schedule!r}")
        return schedule

    @property
    def schedule(self) -> str | None:
        return self._schedule

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def next_dates(self, count: int = 1, *, start: datetime | None = None) -> list[datetime]:
        """Return the next ``count`` fire times of the active schedule."""

        schedule = self._schedule or self._default_schedule
        iterator = croniter(schedule, start or self._now())
        return [iterator.get_next(datetime) for _ in range(count)]

    def start(self, schedule: str | None = None) -> None:
        """Arm the timer, replacing any previous schedule."""

        expression = self.validate(schedule or self._schedule or self._default_schedule)
        self.stop()
        self._schedule = expression
        self._stop_event = threading.Event()
        self._thread = threading.Thread(
            target=self._loop,
            args=(expression, self._stop_event),
            name=f"{self._task_name}-scheduler",
            daemon=True,
        )
        self._thread.start()
        self._logger.info(
            "scheduler-started",
            task=self._task_name,
            schedule=expression,
            next_run=self.next_dates(1)[0].isoformat(),
        )

    def stop(self) -> None:
        """Disarm the timer; a run already in progress is not interrupted."""

        thread = self._thread
        if thread is None:
            return
        self._stop_event.set()
        if thread is not threading.current_thread():
            thread.join(timeout=5.0)
        self._thread = None
        self._logger.info("scheduler-stopped", task=self._task_name)

    def fire_now(self) -> threading.Thread:
        """Run the job once, outside the schedule, on a worker thread."""

        thread = threading.Thread(
            target=self._run_job,
            name=f"{self._task_name}-run",
            daemon=True,
        )
        thread.start()
        return thread

    def initialize_on_boot(self) -> BootAction:
        """Arm the stored schedule and recover a run left by a dead process.

        * ``isRunning`` with ``0 < current < total``: the run was interrupted;
          it is flipped to an incremental resume and fired.
        * ``isRunning`` otherwise: fired once if more than one schedule
          interval has passed since ``lastRun``.
        """

        self._sleep(self._boot_delay)
        task = self._store.get(self._task_name)
        if task is None:
            self.start(self._default_schedule)
            return BootAction.WAITING

        self.start(task.schedule)
        progress = task.output
        if not task.is_running or progress is None:
            return BootAction.WAITING

        if 0 < progress.current < progress.total:
            self._logger.info(
                "scheduler-resume-interrupted",
                task=self._task_name,
                current=progress.current,
                total=progress.total,
            )
            resumed = progress.model_copy(
                update={
                    "is_running": True,
                    "is_incremental": True,
                    "last_update": self._now(),
                }
            )
            # The previous holder is gone; drop its claim.
            self._store.write_output(self._task_name, resumed, revoke_claim=True)
            self._sleep(self._resume_delay)
            self.fire_now()
            return BootAction.RESUMED

        next_run, following = self.next_dates(2)
        interval = following - next_run
        if self._now() - task.last_run > interval:
            self._logger.info(
                "scheduler-fire-overdue",
                task=self._task_name,
                last_run=task.last_run.isoformat(),
            )
            self._store.write_output(self._task_name, progress, revoke_claim=True)
            self.fire_now()
            return BootAction.FIRED
        return BootAction.WAITING

    def _loop(self, schedule: str, stop: threading.Event) -> None:
        while not stop.is_set():
            now = self._now()
            upcoming = croniter(schedule, now).get_next(datetime)
            if stop.wait(max(0.0, (upcoming - now).total_seconds())):
                return
            self._logger.info("scheduler-tick", task=self._task_name)
            self.fire_now()

    def _run_job(self) -> None:
        try:
            self._job()
        except Exception:
            self._logger.exception("scheduler-job-failed", task=self._task_name)
