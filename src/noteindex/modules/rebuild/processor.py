"""Per-item retry envelope and the stopped-checkpoint helper."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Iterable, Protocol

from noteindex.core.logging import Logger, get_logger
from noteindex.modules.db import utc_now
from noteindex.modules.notes import Attachment, Note
from noteindex.modules.vdb import EmbedOutcome

from .models import RebuildProgress, compute_percentage
from .store import ProgressStore

__all__ = ["BatchProcessor", "ItemEmbedder", "ItemResult"]


class ItemEmbedder(Protocol):
    """What the processor needs from :class:`EmbeddingService`."""

    def embed_note(self, note: Note, *, replace: bool = True) -> EmbedOutcome: ...

    def embed_attachment(
        self,
        note: Note,
        attachment: Attachment,
    ) -> EmbedOutcome: ...


@dataclass(frozen=True, slots=True)
class ItemResult:
    success: bool
    error: str | None = None
    attempts: int = 0


class BatchProcessor:
    """Run one embed-and-upsert call with bounded linear-backoff retries.

    Nothing raised by the wrapped call escapes :meth:`process_with_retry`;
    a failing item is reported as ``ItemResult(success=False)``.
    """

    def __init__(
        self,
        *,
        embedder: ItemEmbedder,
        store: ProgressStore,
        max_retries: int = 3,
        backoff_seconds: float = 1.0,
        results_limit: int = 50,
        image_extensions: Iterable[str] = (),
        sleep: Callable[[float], None] = time.sleep,
        logger: Logger | None = None,
    ) -> None:
        if max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        self._embedder = embedder
        self._store = store
        self._max_retries = max_retries
        self._backoff = backoff_seconds
        self._results_limit = results_limit
        self._image_extensions = tuple(ext.lower() for ext in image_extensions)
        self._sleep = sleep
        self._logger = logger or get_logger(__name__, component="rebuild")

    def process_with_retry(
        self,
        operation: Callable[[], EmbedOutcome],
        *,
        label: str,
        max_retries: int | None = None,
    ) -> ItemResult:
        attempts = max_retries or self._max_retries
        error = "Max retries exceeded"
        for attempt in range(1, attempts + 1):
            try:
                outcome = operation()
            except Exception as exc:  # noqa: BLE001 - isolate one item
                error = str(exc) or exc.__class__.__name__
            else:
                if outcome.ok:
                    return ItemResult(success=True, attempts=attempt)
                error = outcome.error or "Unknown error"

            if attempt == attempts:
                break
            delay = self._backoff * attempt
            self._logger.warning(
                "rebuild-item-retry",
                item=label,
                attempt=attempt,
                max_attempts=attempts,
                retry_delay=delay,
                error=error,
            )
            self._sleep(delay)

        self._logger.error(
            "rebuild-item-failed",
            item=label,
            attempts=attempts,
            error=error,
        )
        return ItemResult(success=False, error=error, attempts=attempts)

    def process_note(self, note: Note) -> ItemResult:
        return self.process_with_retry(
            lambda: self._embedder.embed_note(note, replace=True),
            label=f"note:{note.id}",
        )

    def process_attachment(self, note: Note, attachment: Attachment) -> ItemResult:
        return self.process_with_retry(
            lambda: self._embedder.embed_attachment(note, attachment),
            label=f"attachment:{attachment.display_path}",
        )

    def is_image(self, path: str) -> bool:
        return bool(path) and path.lower().endswith(self._image_extensions)

    def create_stopped_progress(
        self,
        task_name: str,
        progress: RebuildProgress,
        *,
        run_id: str,
    ) -> RebuildProgress:
        """Persist ``progress`` as a stopped, resumable checkpoint.

        The snapshot is marked incremental so the next trigger resumes from
        ``processedNoteIds`` instead of starting over.
        """

        stopped = progress.model_copy(
            update={
                "is_running": False,
                "is_incremental": True,
                "percentage": compute_percentage(progress.current, progress.total),
                "last_update": utc_now(),
            }
        ).trimmed(self._results_limit)
        written = self._store.finish(task_name, stopped, run_id=run_id)
        self._logger.info(
            "rebuild-stopped",
            task=task_name,
            current=stopped.current,
            total=stopped.total,
            persisted=written,
        )
        return stopped
