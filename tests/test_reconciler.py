"""Tests for the reconciliation pass."""

import pytest

from noteindex.core.index_queue import QueueStatus
from noteindex.core.reconciler import Reconciler
from noteindex.core.storage import VectorRecord
from noteindex.providers.notes import Attachment, NoteContent


@pytest.fixture
def reconciler(db, queue, index):
    return Reconciler(db, queue, index)


def note(note_id, text="some text", enriched=True, attachments=()):
    return NoteContent(note_id=note_id, text=text, enriched=enriched, attachments=tuple(attachments))


def test_queues_notes_without_vectors(reconciler, queue):
    """Notes with no vectors get queued."""
    result = reconciler.reconcile([note("A"), note("B")])

    assert result.checked == 2
    assert result.queued_notes == 2
    assert result.queued_items == 2
    assert queue.pending_note_ids() == {"A", "B"}


def test_second_run_queues_nothing(reconciler):
    """Test reconciling twice."""
    notes = [note("A"), note("B"), note("C")]
    first = reconciler.reconcile(notes)
    second = reconciler.reconcile(notes)

    assert first.queued_notes == 3
    assert second.queued_notes == 0
    assert second.queued_items == 0


def test_skips_embedded_pending_and_ineligible(reconciler, db, queue):
    """Embedded, pending and ineligible notes are left alone."""
    db.replace_note_vectors("embedded", [VectorRecord("embedded", 0, [1.0] * 64, "x")])
    queue.enqueue_text("pending", "in flight")

    result = reconciler.reconcile(
        [
            note("embedded"),
            note("pending"),
            note("not-enriched", enriched=False),
            note("empty", text="   "),
            note("missing"),
        ]
    )

    assert result.checked == 3
    assert result.queued_notes == 1
    assert queue.note_items("missing")[0].text == "some text"
    assert len(queue.note_items("pending")) == 1


def test_stale_terminal_rows_are_replaced(reconciler, queue):
    """Old failed/completed rows are removed before re-queueing."""
    queue.max_retries = 1
    failed = queue.enqueue_text("A", "old text")
    queue.record_failure(queue.get(failed), "boom")
    done = queue.enqueue_text("A", "older text")
    queue.mark_completed([queue.get(done)])

    result = reconciler.reconcile([note("A", "current text")])

    assert result.purged_rows == 2
    items = queue.note_items("A")
    assert len(items) == 1
    assert items[0].status == QueueStatus.PENDING_EMBEDDING
    assert items[0].text == "current text"


def test_attachments_only_when_requested(reconciler, queue):
    """Test include_attachments."""
    n = note("B", text="", attachments=[Attachment(b"img", "image/png")])

    assert reconciler.reconcile([n]).queued_notes == 0

    result = reconciler.reconcile([n], include_attachments=True)
    assert result.queued_items == 1
    assert queue.note_items("B")[0].status == QueueStatus.PENDING_EXTRACTION


def test_prune_orphans(reconciler, db, queue, index):
    """Test removal of notes the store no longer has."""
    from noteindex.core.vector_index import IndexEntry

    db.replace_note_vectors("gone", [VectorRecord("gone", 0, [0.125] * 64, "x")])
    index.insert(IndexEntry("gone", 0, [0.125] * 64, "x"))
    queue.enqueue_text("gone-too", "y")
    db.replace_note_vectors("kept", [VectorRecord("kept", 0, [0.125] * 64, "z")])

    result = reconciler.reconcile([note("kept")], prune_orphans=True)

    assert result.orphans_removed == 2
    assert db.note_ids_with_vectors() == {"kept"}
    assert queue.note_ids() == set()
    assert index.note_ids() == set()


def test_to_dict(reconciler):
    """Test result serialization."""
    assert reconciler.reconcile([]).to_dict() == {
        "checked": 0,
        "queued_notes": 0,
        "queued_items": 0,
        "purged_rows": 0,
        "orphans_removed": 0,
    }
