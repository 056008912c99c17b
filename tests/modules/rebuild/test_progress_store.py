"""Tests for :mod:`noteindex.modules.rebuild.store`."""

from __future__ import annotations

import json

import pytest

from noteindex.modules.rebuild import (
    ProgressStore,
    RebuildProgress,
    TaskAlreadyRunningError,
)

from support import FIXED_NOW

TASK = "rebuildEmbedding"
SCHEDULE = "0 0 * * *"


@pytest.fixture
def store(database, clock) -> ProgressStore:
    return ProgressStore(database, lease_seconds=600, now=clock)


def _raw_row(database) -> dict:
    with database.connect() as connection:
        row = connection.execute(
            "SELECT * FROM scheduled_tasks WHERE name = ?",
            (TASK,),
        ).fetchone()
    return dict(row)


def test_seed_persists_camel_case_checkpoint(store, database) -> None:
    progress = RebuildProgress.fresh(now=FIXED_NOW)

    store.seed(TASK, progress, schedule=SCHEDULE)

    row = _raw_row(database)
    payload = json.loads(row["output"])
    assert row["is_running"] == 1
    assert row["schedule"] == SCHEDULE
    assert payload["isRunning"] is True
    assert payload["processedNoteIds"] == []
    assert payload["schemaVersion"] == 1

    task = store.get(TASK)
    assert task.output == progress
    assert task.last_run == FIXED_NOW


def test_get_missing_task_returns_none(store) -> None:
    assert store.get(TASK) is None
    assert store.get_progress(TASK) is None


def test_claim_is_exclusive_until_the_lease_expires(store, clock) -> None:
    store.seed(TASK, RebuildProgress.fresh(now=FIXED_NOW), schedule=SCHEDULE)
    store.claim(TASK, "run-a")
    store.claim(TASK, "run-a")

    with pytest.raises(TaskAlreadyRunningError) as excinfo:
        store.claim(TASK, "run-b")
    assert excinfo.value.holder == "run-a"

    clock.advance(seconds=601)
    store.claim(TASK, "run-b")
    assert store.get(TASK).run_id == "run-b"


def test_checkpoint_refreshes_heartbeat_and_requires_claim(store, clock) -> None:
    store.seed(TASK, RebuildProgress.fresh(now=FIXED_NOW), schedule=SCHEDULE)
    store.claim(TASK, "run-a")
    clock.advance(seconds=30)

    progress = store.get_progress(TASK).model_copy(update={"current": 3, "total": 7})
    assert store.save_checkpoint(TASK, progress, run_id="run-a") is True
    task = store.get(TASK)
    assert task.output.current == 3
    assert task.heartbeat_at == clock()

    assert store.save_checkpoint(TASK, progress, run_id="run-b") is False


def test_stop_blocks_later_checkpoints(store) -> None:
    store.seed(TASK, RebuildProgress.fresh(now=FIXED_NOW), schedule=SCHEDULE)
    store.claim(TASK, "run-a")

    assert store.set_running(TASK, False) is True
    late = RebuildProgress.fresh(now=FIXED_NOW).model_copy(update={"current": 5})

    assert store.save_checkpoint(TASK, late, run_id="run-a") is False
    task = store.get(TASK)
    assert task.is_running is False
    assert task.output.is_running is False
    assert task.output.current == 0


def test_reseed_revokes_previous_claim(store) -> None:
    store.seed(TASK, RebuildProgress.fresh(now=FIXED_NOW), schedule=SCHEDULE)
    store.claim(TASK, "run-a")

    store.seed(TASK, RebuildProgress.fresh(now=FIXED_NOW), schedule=SCHEDULE)

    assert store.get(TASK).run_id is None
    progress = RebuildProgress.fresh(now=FIXED_NOW)
    assert store.save_checkpoint(TASK, progress, run_id="run-a") is False
    assert store.finish(TASK, progress, run_id="run-a", is_success=True) is False


def test_finish_releases_claim_and_records_outcome(store) -> None:
    store.seed(TASK, RebuildProgress.fresh(now=FIXED_NOW), schedule=SCHEDULE)
    store.claim(TASK, "run-a")
    done = store.get_progress(TASK).model_copy(update={"is_running": False})

    assert store.finish(TASK, done, run_id="run-a", is_success=True) is True

    task = store.get(TASK)
    assert task.is_running is False
    assert task.is_success is True
    assert task.run_id is None
    assert task.heartbeat_at is None


def test_finish_without_outcome_keeps_previous_success(store) -> None:
    store.seed(TASK, RebuildProgress.fresh(now=FIXED_NOW), schedule=SCHEDULE)
    store.claim(TASK, "run-a")
    done = store.get_progress(TASK).model_copy(update={"is_running": False})
    store.finish(TASK, done, run_id="run-a", is_success=True)

    store.write_output(TASK, done.model_copy(update={"is_running": True}))
    store.claim(TASK, "run-b")
    store.finish(TASK, done, run_id="run-b")

    assert store.get(TASK).is_success is True


def test_write_output_can_revoke_claim(store) -> None:
    store.seed(TASK, RebuildProgress.fresh(now=FIXED_NOW), schedule=SCHEDULE)
    store.claim(TASK, "run-a")
    progress = store.get_progress(TASK)

    assert store.write_output(TASK, progress) is True
    assert store.get(TASK).run_id == "run-a"

    assert store.write_output(TASK, progress, revoke_claim=True) is True
    assert store.get(TASK).run_id is None
    assert store.write_output("missing", progress) is False


def test_running_column_is_authoritative(store, database) -> None:
    store.seed(TASK, RebuildProgress.fresh(now=FIXED_NOW), schedule=SCHEDULE)
    with database.connect() as connection:
        connection.execute(
            "UPDATE scheduled_tasks SET is_running = 0 WHERE name = ?",
            (TASK,),
        )

    task = store.get(TASK)
    assert task.is_running is False
    assert task.output.is_running is False


def test_invalid_output_is_reported_as_missing(store, database) -> None:
    store.seed(TASK, RebuildProgress.fresh(now=FIXED_NOW), schedule=SCHEDULE)
    with database.connect() as connection:
        connection.execute(
            "UPDATE scheduled_tasks SET output = ? WHERE name = ?",
            ('{"current": -4}', TASK),
        )

    assert store.get(TASK).output is None


def test_update_schedule(store) -> None:
    store.seed(TASK, RebuildProgress.fresh(now=FIXED_NOW), schedule=SCHEDULE)

    assert store.update_schedule(TASK, "*/5 * * * *") is True
    assert store.get(TASK).schedule == "*/5 * * * *"
