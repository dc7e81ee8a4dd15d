"""Audit pass that re-queues notes with no vectors and no pending work."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Iterable

from noteindex.core.index_queue import IndexQueue
from noteindex.core.storage import DB
from noteindex.core.vector_index import VectorIndex
from noteindex.providers.notes import NoteContent

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    checked: int = 0
    queued_notes: int = 0
    queued_items: int = 0
    purged_rows: int = 0
    orphans_removed: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


class Reconciler:
    """Detects notes missing from the vector store and queues them exactly once.

    A note is re-queued when it is eligible (enrichment done and something to
    embed), has zero stored vectors and has no pending queue item. Running
    it twice without changes in between queues nothing the second time,
    because the first run leaves pending items behind.
    """

    def __init__(self, db: DB, queue: IndexQueue, index: VectorIndex | None = None):
        self.db = db
        self.queue = queue
        self.index = index

    @staticmethod
    def _eligible(note: NoteContent, include_attachments: bool) -> bool:
        if not note.enriched:
            return False
        return note.has_text or (include_attachments and bool(note.attachments))

    def reconcile(
        self,
        notes: Iterable[NoteContent],
        include_attachments: bool = False,
        prune_orphans: bool = False,
    ) -> ReconcileResult:
        """Run one reconciliation pass.

        Args:
            notes: Every note currently held by the note store
            include_attachments: Also re-queue attachment extraction
            prune_orphans: Drop vectors and queue rows of notes not in ``notes``

        Returns:
            ReconcileResult with counts
        """
        result = ReconcileResult()
        notes = list(notes)

        embedded = self.db.note_ids_with_vectors()
        pending = self.queue.pending_note_ids()

        for note in notes:
            if not self._eligible(note, include_attachments):
                continue
            result.checked += 1

            if note.note_id in embedded or note.note_id in pending:
                continue

            result.purged_rows += self.queue.delete_terminal_rows(note.note_id)

            ids = []
            if note.has_text:
                ids.append(self.queue.enqueue_text(note.note_id, note.text))
            if include_attachments:
                for attachment in note.attachments:
                    item_id = self.queue.enqueue_attachment(note.note_id, attachment.data, attachment.mime_type)
                    if item_id is not None:
                        ids.append(item_id)

            if ids:
                result.queued_notes += 1
                result.queued_items += len(ids)

        if prune_orphans:
            result.orphans_removed = self._prune_orphans({n.note_id for n in notes})

        logger.info(
            f"Reconcile: checked={result.checked} queued_notes={result.queued_notes} "
            f"queued_items={result.queued_items} purged_rows={result.purged_rows} "
            f"orphans_removed={result.orphans_removed}"
        )
        return result

    def _prune_orphans(self, known: set[str]) -> int:
        """Remove vectors and queue rows of notes the store no longer has."""
        orphans = (self.db.note_ids_with_vectors() | self.queue.note_ids()) - known
        for note_id in orphans:
            self.db.delete_note_vectors(note_id)
            self.queue.delete_note_rows(note_id)
            if self.index is not None:
                self.index.remove_note(note_id)
        if orphans:
            logger.info(f"Removed {len(orphans)} orphaned note(s)")
        return len(orphans)
