"""Tests for :mod:`noteindex.modules.notes.store`."""

from __future__ import annotations

from pathlib import Path

import pytest

from noteindex.modules.notes import (
    Attachment,
    AttachmentLoadError,
    FileAttachmentStore,
    SqliteNotificationSink,
)

from support import FIXED_NOW


def test_add_note_round_trips_attachments(note_store) -> None:
    note = note_store.add_note(
        "grocery list",
        attachments=["docs/a%20b.md", "photos/x.png"],
        account_id=2,
        now=FIXED_NOW,
    )

    assert note.account_id == 2
    assert note.created_at == FIXED_NOW
    assert [item.path for item in note.attachments] == ["docs/a%20b.md", "photos/x.png"]
    assert note.attachments[0].display_path == "docs/a b.md"
    assert note.attachments[1].suffix == ".png"
    assert note.metadata == {}


def test_find_eligible_skips_recycled_and_excluded(note_store) -> None:
    first = note_store.add_note("one")
    second = note_store.add_note("two")
    third = note_store.add_note("three")
    note_store.recycle(second.id)

    assert [note.id for note in note_store.find_eligible()] == [first.id, third.id]
    assert [note.id for note in note_store.find_eligible(exclude_ids=[first.id])] == [
        third.id
    ]


def test_find_for_account_filters_owner(note_store) -> None:
    mine = note_store.add_note("mine", account_id=1)
    theirs = note_store.add_note("theirs", account_id=2)

    found = note_store.find_for_account(1, [mine.id, theirs.id, 999])

    assert [note.id for note in found] == [mine.id]
    assert note_store.find_for_account(1, []) == ()


def test_mark_indexed_updates_metadata(note_store) -> None:
    note = note_store.add_note("indexed")

    note_store.mark_indexed(note.id)
    note_store.mark_indexed(note.id, attachments=True)
    note_store.mark_indexed(12345)

    (stored,) = note_store.find_for_account(1, [note.id])
    assert stored.metadata == {"isIndexed": True, "isAttachmentsIndexed": True}


def test_note_preview_and_content_flags(note_store) -> None:
    note = note_store.add_note("x" * 40)

    assert note.preview() == "x" * 30
    assert note.has_content is True
    assert note_store.add_note("   \n").has_content is False


def _attachment(path: str) -> Attachment:
    return Attachment(id=1, note_id=1, path=path)


def test_attachment_store_reads_text(tmp_path: Path) -> None:
    (tmp_path / "docs").mkdir()
    (tmp_path / "docs" / "a b.md").write_text("# heading", encoding="utf-8")

    store = FileAttachmentStore(tmp_path)

    assert store.load_text(_attachment("docs/a%20b.md")) == "# heading"


@pytest.mark.parametrize(
    ("path", "message"),
    [
        ("../secrets.txt", "escapes"),
        ("docs/report.pdf", "Unsupported attachment type"),
        ("docs/missing.txt", "can not load file"),
    ],
)
def test_attachment_store_errors(tmp_path: Path, path: str, message: str) -> None:
    (tmp_path / "docs").mkdir()

    with pytest.raises(AttachmentLoadError, match=message):
        FileAttachmentStore(tmp_path).load_text(_attachment(path))


def test_notification_sink_persists_kinds(database) -> None:
    sink = SqliteNotificationSink(database)

    sink.notify("embedding-rebuild-complete", {"current": 3})
    sink.notify("other", {})

    assert sink.list_kinds() == ("embedding-rebuild-complete", "other")
