"""Tests for :mod:`noteindex.modules.rebuild.coordinator`."""

from __future__ import annotations

import queue

import pytest

from noteindex.core.config import EmbeddingSettings
from noteindex.modules.notes import REBUILD_COMPLETE_NOTIFICATION
from noteindex.modules.rebuild import RebuildProgress, ResultRecord, ResultType
from noteindex.modules.rebuild.coordinator import _RunState
from noteindex.modules.vdb import VectorIndexConfigurationError

from support import FakeProvider, FakeVectorStore

TASK = "rebuildEmbedding"


def _drain(channel: "queue.Queue[RebuildProgress]") -> list[RebuildProgress]:
    items = []
    while True:
        try:
            items.append(channel.get_nowait())
        except queue.Empty:
            return items


def test_full_rebuild_processes_every_note(make_harness) -> None:
    harness = make_harness()
    harness.add_notes(7)

    assert harness.coordinator.force_rebuild() is True
    final = harness.run()

    assert final is not None
    assert (final.current, final.total, final.percentage) == (7, 7, 100)
    assert final.is_running is False
    assert final.processed_note_ids == [1, 2, 3, 4, 5, 6, 7]
    assert final.failed_note_ids == []
    assert final.last_processed_id == 7

    task = harness.store.get(TASK)
    assert task is not None
    assert task.is_running is False
    assert task.is_success is True
    assert task.run_id is None
    assert harness.vectors.sources("notes") == [1, 2, 3, 4, 5, 6, 7]
    assert harness.notifications.list_kinds() == (REBUILD_COMPLETE_NOTIFICATION,)


def test_failing_note_is_isolated_and_retried(make_harness) -> None:
    harness = make_harness(provider=FakeProvider(fail_on=["note 4"]))
    harness.add_notes(7)

    harness.coordinator.force_rebuild()
    final = harness.run()

    assert final.failed_note_ids == [4]
    assert final.current == 6
    assert final.total == 7
    assert final.percentage == 100
    assert harness.store.get(TASK).is_success is True
    # Three attempts with linear backoff and no sleep after the last one.
    assert harness.sleeps == [1.0, 2.0]
    errors = [record for record in final.results if record.type is ResultType.ERROR]
    assert len(errors) == 1
    assert errors[0].content.startswith("note 4")
    assert "upstream unavailable" in (errors[0].error or "")
    assert harness.coordinator.get_failed_notes() == [4]


def test_stop_mid_run_persists_checkpoint_and_resume_finishes(make_harness) -> None:
    provider = FakeProvider()
    harness = make_harness(provider=provider)
    harness.add_notes(7)

    def stop_on_fourth(text: str) -> None:
        if "note 4" in text:
            harness.coordinator.stop_rebuild()

    provider.hook = stop_on_fourth
    harness.coordinator.force_rebuild()
    stopped = harness.run()

    assert stopped.is_running is False
    assert stopped.is_incremental is True
    assert stopped.current == 4
    assert stopped.total == 7
    assert stopped.percentage == 57

    persisted = harness.store.get(TASK)
    assert persisted.is_running is False
    assert persisted.output.current == 4
    assert persisted.output.processed_note_ids == [1, 2, 3, 4]
    assert persisted.run_id is None

    provider.hook = None
    assert harness.coordinator.resume_rebuild() is True
    final = harness.run()

    assert (final.current, final.total, final.percentage) == (7, 7, 100)
    assert final.retry_count == 1
    assert harness.vectors.sources("notes") == [1, 2, 3, 4, 5, 6, 7]
    embedded = [text for call in provider.calls for text in call]
    assert sum("note 1 " in text for text in embedded) == 1


def test_incremental_run_only_embeds_new_notes(make_harness) -> None:
    harness = make_harness()
    harness.add_notes(7)
    harness.coordinator.force_rebuild()
    harness.run()
    calls_after_full = len(harness.provider.calls)

    harness.add_notes(2, start=8)
    harness.coordinator.force_rebuild(incremental=True)
    final = harness.run()

    assert final.total == 9
    assert final.current == 9
    assert len(harness.provider.calls) - calls_after_full == 2
    assert harness.vectors.sources("notes") == list(range(1, 10))


def test_retry_failed_notes_reprocesses_only_failures(make_harness) -> None:
    provider = FakeProvider(fail_on=["note 4"])
    harness = make_harness(provider=provider)
    harness.add_notes(7)
    harness.coordinator.force_rebuild()
    harness.run()

    provider.fail_on.clear()
    provider.calls.clear()
    assert harness.coordinator.retry_failed_notes() is True
    final = harness.run()

    assert final.failed_note_ids == []
    assert final.current == 7
    assert final.total == 7
    assert len(provider.calls) == 1
    assert "note 4" in provider.calls[0][0]


def test_retry_failed_without_record_returns_false(make_harness) -> None:
    harness = make_harness()

    assert harness.coordinator.retry_failed_notes() is False


def test_unknown_model_fails_before_touching_index(make_harness) -> None:
    vectors = FakeVectorStore()
    vectors.create_index("notes", dimension=4, metric="cosine")
    harness = make_harness(
        embedding=EmbeddingSettings(model="mystery-model"),
        vectors=vectors,
    )
    harness.add_notes(2)

    harness.coordinator.force_rebuild()
    with pytest.raises(VectorIndexConfigurationError):
        harness.run()

    assert vectors.has_index("notes")
    assert vectors.operations == [("create", "notes")]
    task = harness.store.get(TASK)
    assert task.is_running is False
    assert task.is_success is False
    assert task.run_id is None
    last = task.output.results[-1]
    assert last.type is ResultType.ERROR
    assert last.content == "Task failed with error"
    assert "mystery-model" in (last.error or "")


def test_results_are_bounded(make_harness) -> None:
    harness = make_harness()
    harness.add_notes(60)

    harness.coordinator.force_rebuild()
    final = harness.run()

    assert len(final.results) == 50
    assert final.results[-1].content == "note 60 about gardening"
    assert len(harness.store.get_progress(TASK).results) == 50


def test_run_state_result_log_is_bounded_in_memory() -> None:
    seed = RebuildProgress.fresh().model_copy(
        update={
            "results": [
                ResultRecord(type=ResultType.SUCCESS, content=f"old {number}")
                for number in range(80)
            ]
        }
    )
    state = _RunState(seed, total=0, current=0, limit=50)
    assert len(state.results) == 50

    for number in range(5000):
        state.record(ResultType.SUCCESS, f"note {number}")

    assert len(state.results) == 50
    assert state.results[0].content == "note 4950"
    assert state.results[-1].content == "note 4999"
    assert len(state.snapshot(is_running=True).results) == 50


@pytest.mark.parametrize("incremental", [False, True])
def test_missing_provider_fails_without_touching_index(
    make_harness,
    incremental: bool,
) -> None:
    vectors = FakeVectorStore()
    vectors.create_index("notes", dimension=4, metric="cosine")
    harness = make_harness(vectors=vectors, without_provider=True)
    harness.add_notes(3)
    previous = [1] if incremental else []
    if incremental:
        stopped = RebuildProgress.fresh().model_copy(
            update={"is_running": False, "processed_note_ids": previous}
        )
        harness.store.seed(TASK, stopped, schedule="0 0 * * *")

    harness.coordinator.force_rebuild(incremental=incremental)
    assert harness.store.get_progress(TASK).is_incremental is incremental
    with pytest.raises(VectorIndexConfigurationError, match="No embedding provider"):
        harness.run()

    assert vectors.operations == [("create", "notes")]
    assert harness.sleeps == []
    task = harness.store.get(TASK)
    assert task.is_running is False
    assert task.is_success is False
    assert task.output.processed_note_ids == previous
    assert task.output.failed_note_ids == []
    assert task.output.results[-1].content == "Task failed with error"


def test_resume_is_idempotent_while_not_running(make_harness) -> None:
    harness = make_harness()
    harness.add_notes(3)
    harness.coordinator.force_rebuild()
    harness.run()

    harness.coordinator.resume_rebuild()
    harness.coordinator.resume_rebuild()
    progress = harness.coordinator.get_progress()

    assert progress.is_running is True
    assert progress.is_incremental is True
    assert progress.processed_note_ids == [1, 2, 3]
    assert progress.retry_count == 2

    final = harness.run()
    assert (final.current, final.total) == (3, 3)


def test_run_task_is_noop_without_running_record(make_harness) -> None:
    harness = make_harness()
    harness.add_notes(2)

    assert harness.run() is None

    harness.coordinator.force_rebuild()
    harness.run()
    before = harness.store.get(TASK)
    after = harness.run()

    assert after == before.output
    assert harness.store.get(TASK).output == before.output


def test_claim_held_elsewhere_blocks_run(make_harness) -> None:
    harness = make_harness()
    harness.add_notes(2)
    harness.coordinator.force_rebuild()
    harness.store.claim(TASK, "other-process")

    assert harness.run() is None
    assert harness.provider.calls == []
    task = harness.store.get(TASK)
    assert task.run_id == "other-process"
    assert task.output.current == 0


def test_progress_stream_receives_every_checkpoint(make_harness) -> None:
    harness = make_harness()
    harness.add_notes(7)
    channel = harness.coordinator.subscribe()

    harness.coordinator.force_rebuild()
    harness.run()
    updates = _drain(channel)

    assert len(updates) == 9
    assert updates[0].current == 0 and updates[0].is_running is True
    assert [update.current for update in updates[1:-1]] == [1, 2, 3, 4, 5, 6, 7]
    assert updates[-1].percentage == 100
    assert updates[-1].is_running is False

    harness.coordinator.unsubscribe(channel)
    harness.coordinator.force_rebuild()
    assert channel.empty()


def test_attachments_and_empty_notes_are_recorded(make_harness, workspace_paths) -> None:
    docs = workspace_paths.attachments_dir / "docs"
    docs.mkdir(parents=True)
    (docs / "readme.txt").write_text("planting schedule for tomatoes", encoding="utf-8")

    harness = make_harness()
    with_files = harness.notes.add_note(
        "note with files",
        attachments=["docs/readme.txt", "photos/plot%201.png"],
    )
    empty = harness.notes.add_note("")

    harness.coordinator.force_rebuild()
    final = harness.run()

    by_content = {record.content: record for record in final.results}
    assert by_content["docs/readme.txt"].type is ResultType.SUCCESS
    assert by_content["photos/plot 1.png"].type is ResultType.SKIP
    assert by_content["photos/plot 1.png"].error == "image is not supported"
    assert final.processed_note_ids == [with_files.id]
    assert final.skipped_note_ids == [empty.id]
    assert final.failed_note_ids == []

    attachment_rows = [
        meta
        for _, meta in harness.vectors.indexes["notes"].rows.values()
        if meta.get("isAttachment")
    ]
    assert attachment_rows and attachment_rows[0]["path"] == "docs/readme.txt"
    (stored,) = harness.notes.find_for_account(1, [with_files.id])
    assert stored.metadata["isIndexed"] is True
    assert stored.metadata["isAttachmentsIndexed"] is True


def test_force_rebuild_stops_running_record_first(make_harness) -> None:
    harness = make_harness()
    harness.add_notes(2)
    harness.coordinator.force_rebuild()
    assert harness.store.get(TASK).is_running is True

    assert harness.coordinator.force_rebuild(force=True) is True
    progress = harness.coordinator.get_progress()

    assert progress.is_running is True
    assert progress.is_incremental is False
    assert progress.current == 0
