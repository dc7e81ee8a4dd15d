"""Durable indexing queue: work items, payload variants, state machine, retry policy.

Each note produces one ``text`` item for its body plus one item per supported
attachment. Attachment items start in ``pending_extraction`` carrying the raw
bytes; once extracted they narrow to a ``text`` item carrying the extracted
string and wait in ``pending_embedding`` like any text item.

Every mutating statement is guarded by the status it expects, so a row
that the host deleted or changed in the meantime turns an update into a
logged no-op instead of resurrecting it.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING, Union

from noteindex.core.extractor import kind_for_mime
from noteindex.core.settings import Settings

if TYPE_CHECKING:
    from noteindex.providers.notes import NoteContent

logger = logging.getLogger(__name__)


class QueueStatus(str, Enum):
    """Status of a queue item."""

    PENDING_EXTRACTION = "pending_extraction"
    PENDING_EMBEDDING = "pending_embedding"
    FAILED = "failed"
    COMPLETED = "completed"


class ItemKind(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    DOCUMENT = "document"


@dataclass(frozen=True)
class ExtractionPending:
    """Raw attachment bytes still waiting for extraction."""

    blob: bytes
    mime_type: str | None = None


@dataclass(frozen=True)
class EmbeddingPending:
    """Text ready to be embedded."""

    text: str


Payload = Union[ExtractionPending, EmbeddingPending]


class InvalidTransitionError(Exception):
    """Raised when an invalid state transition is attempted.

    Attributes:
        current: The current item status.
        target: The attempted target status.
        item_id: The queue item that failed to transition.
    """

    def __init__(self, current: QueueStatus, target: QueueStatus, item_id: int | None = None):
        self.current = current
        self.target = target
        self.item_id = item_id
        msg = f"Invalid transition from {current.value} to {target.value}"
        if item_id is not None:
            msg += f" for queue item {item_id}"
        super().__init__(msg)


VALID_TRANSITIONS: dict[QueueStatus, set[QueueStatus]] = {
    QueueStatus.PENDING_EXTRACTION: {QueueStatus.PENDING_EMBEDDING, QueueStatus.FAILED},
    QueueStatus.PENDING_EMBEDDING: {QueueStatus.COMPLETED, QueueStatus.FAILED},
    QueueStatus.FAILED: {QueueStatus.PENDING_EXTRACTION, QueueStatus.PENDING_EMBEDDING},
    QueueStatus.COMPLETED: set(),
}


def validate_transition(current: QueueStatus, target: QueueStatus) -> bool:
    return target in VALID_TRANSITIONS.get(current, set())


def _ts(dt: datetime | None = None) -> str:
    # Fixed-width UTC format so TEXT comparison orders correctly
    return (dt or datetime.now(timezone.utc)).astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


@dataclass
class QueueItem:
    """One unit of indexing work."""

    id: int
    note_id: str
    kind: ItemKind
    payload: Payload
    status: QueueStatus
    retry_count: int = 0
    last_error: str | None = None
    enqueued_at: str | None = None
    retry_after: str | None = None

    @property
    def text(self) -> str | None:
        if isinstance(self.payload, EmbeddingPending):
            return self.payload.text
        return None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> QueueItem:
        """Create QueueItem from database row."""
        payload: Payload
        if row["payload_blob"] is not None:
            payload = ExtractionPending(blob=bytes(row["payload_blob"]), mime_type=row["mime_type"])
        else:
            payload = EmbeddingPending(text=row["payload_text"] or "")
        return cls(
            id=row["id"],
            note_id=row["note_id"],
            kind=ItemKind(row["kind"]),
            payload=payload,
            status=QueueStatus(row["status"]),
            retry_count=row["retry_count"],
            last_error=row["last_error"],
            enqueued_at=row["enqueued_at"],
            retry_after=row["retry_after"],
        )


@dataclass(frozen=True)
class QueueStats:
    """Snapshot published after every worker cycle."""

    pending: int
    failed: int
    completed: int

    def to_dict(self) -> dict[str, int]:
        return {"pending": self.pending, "failed": self.failed, "completed": self.completed}


_ITEM_COLUMNS = """
    id, note_id, kind, payload_text, payload_blob, mime_type, status,
    retry_count, last_error, retry_after, enqueued_at
"""

_PENDING = (QueueStatus.PENDING_EXTRACTION.value, QueueStatus.PENDING_EMBEDDING.value)


class IndexQueue:
    """Queue operations on the ``processing_queue`` table."""

    def __init__(self, conn: sqlite3.Connection, settings: Settings | None = None) -> None:
        self._conn = conn
        s = settings or Settings()
        self.max_retries = s.max_retries
        self.retry_backoff_seconds = s.retry_backoff_seconds
        self.max_retry_backoff_seconds = s.max_retry_backoff_seconds

    # ==================== Producer side ====================

    def _insert(
        self,
        note_id: str,
        kind: ItemKind,
        status: QueueStatus,
        text: str | None = None,
        blob: bytes | None = None,
        mime_type: str | None = None,
    ) -> int:
        now = _ts()
        cur = self._conn.execute(
            """
            INSERT INTO processing_queue
                (note_id, kind, payload_text, payload_blob, mime_type, status, enqueued_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (note_id, kind.value, text, blob, mime_type, status.value, now, now),
        )
        return cur.lastrowid

    def enqueue_text(self, note_id: str, text: str) -> int:
        """Add a text item; it needs no extraction."""
        item_id = self._insert(note_id, ItemKind.TEXT, QueueStatus.PENDING_EMBEDDING, text=text)
        self._conn.commit()
        return item_id

    def enqueue_attachment(self, note_id: str, blob: bytes, mime_type: str) -> int | None:
        """Add an attachment item, or return None if its MIME type is unsupported."""
        kind = kind_for_mime(mime_type)
        if kind is None:
            logger.info(f"Skipping attachment of note {note_id} with unsupported type {mime_type}")
            return None
        item_id = self._insert(
            note_id,
            ItemKind(kind),
            QueueStatus.PENDING_EXTRACTION,
            blob=blob,
            mime_type=mime_type,
        )
        self._conn.commit()
        return item_id

    def enqueue_note(self, note: NoteContent, include_attachments: bool = True) -> list[int]:
        """Queue a note version, superseding every row of its previous version.

        Returns:
            Ids of the new queue items (may be empty)
        """
        self.delete_note_rows(note.note_id)

        ids: list[int] = []
        if note.has_text:
            ids.append(self.enqueue_text(note.note_id, note.text))
        if include_attachments:
            for attachment in note.attachments:
                item_id = self.enqueue_attachment(note.note_id, attachment.data, attachment.mime_type)
                if item_id is not None:
                    ids.append(item_id)

        logger.debug(f"Queued note {note.note_id}: {len(ids)} item(s)")
        return ids

    def delete_note_rows(self, note_id: str) -> int:
        """Purge every queue row of a note. Returns number of rows deleted."""
        cur = self._conn.execute("DELETE FROM processing_queue WHERE note_id = ?", (note_id,))
        self._conn.commit()
        return cur.rowcount

    def delete_terminal_rows(self, note_id: str) -> int:
        """Delete failed and completed rows of a note."""
        cur = self._conn.execute(
            "DELETE FROM processing_queue WHERE note_id = ? AND status IN (?, ?)",
            (note_id, QueueStatus.FAILED.value, QueueStatus.COMPLETED.value),
        )
        self._conn.commit()
        return cur.rowcount

    def prune_completed(self, older_than: datetime | None = None) -> int:
        """Housekeeping: drop completed rows of notes with no unfinished row left.

        Args:
            older_than: Only prune rows last updated before this time

        Returns:
            Number of rows deleted
        """
        sql = """
            DELETE FROM processing_queue
            WHERE status = ?
              AND note_id NOT IN (
                SELECT note_id FROM processing_queue WHERE status IN (?, ?, ?)
              )
        """
        params: list = [
            QueueStatus.COMPLETED.value,
            QueueStatus.PENDING_EXTRACTION.value,
            QueueStatus.PENDING_EMBEDDING.value,
            QueueStatus.FAILED.value,
        ]
        if older_than is not None:
            sql += " AND updated_at < ?"
            params.append(_ts(older_than))

        cur = self._conn.execute(sql, params)
        self._conn.commit()
        return cur.rowcount

    # ==================== Reads ====================

    def get(self, item_id: int) -> QueueItem | None:
        cur = self._conn.execute(
            f"SELECT {_ITEM_COLUMNS} FROM processing_queue WHERE id = ?",
            (item_id,),
        )
        row = cur.fetchone()
        return QueueItem.from_row(row) if row else None

    def next_eligible(self, now: datetime | None = None) -> QueueItem | None:
        """Oldest eligible item by (enqueued_at, id).

        Text waits while any sibling of the same note is still being
        extracted, so the note is embedded once with all of its parts.
        """
        cur = self._conn.execute(
            f"""
            SELECT {_ITEM_COLUMNS}
            FROM processing_queue AS q
            WHERE (q.retry_after IS NULL OR q.retry_after <= ?)
              AND (
                q.status = ?
                OR (
                  q.status = ?
                  AND NOT EXISTS (
                    SELECT 1 FROM processing_queue AS s
                    WHERE s.note_id = q.note_id AND s.status = ?
                  )
                )
              )
            ORDER BY q.enqueued_at, q.id
            LIMIT 1
            """,
            (
                _ts(now),
                QueueStatus.PENDING_EXTRACTION.value,
                QueueStatus.PENDING_EMBEDDING.value,
                QueueStatus.PENDING_EXTRACTION.value,
            ),
        )
        row = cur.fetchone()
        return QueueItem.from_row(row) if row else None

    def note_items(self, note_id: str, statuses: tuple[QueueStatus, ...] | None = None) -> list[QueueItem]:
        """Items of a note ordered by id, optionally filtered by status."""
        sql = f"SELECT {_ITEM_COLUMNS} FROM processing_queue WHERE note_id = ?"
        params: list = [note_id]
        if statuses:
            sql += f" AND status IN ({','.join('?' * len(statuses))})"
            params.extend(s.value for s in statuses)
        sql += " ORDER BY id"
        cur = self._conn.execute(sql, params)
        return [QueueItem.from_row(row) for row in cur.fetchall()]

    def has_pending(self, note_id: str) -> bool:
        cur = self._conn.execute(
            "SELECT 1 FROM processing_queue WHERE note_id = ? AND status IN (?, ?) LIMIT 1",
            (note_id, *_PENDING),
        )
        return cur.fetchone() is not None

    def pending_note_ids(self) -> set[str]:
        cur = self._conn.execute(
            "SELECT DISTINCT note_id FROM processing_queue WHERE status IN (?, ?)",
            _PENDING,
        )
        return {row[0] for row in cur.fetchall()}

    def note_ids(self) -> set[str]:
        cur = self._conn.execute("SELECT DISTINCT note_id FROM processing_queue")
        return {row[0] for row in cur.fetchall()}

    # ==================== Transitions ====================

    def _check(self, item: QueueItem, target: QueueStatus) -> None:
        if not validate_transition(item.status, target):
            raise InvalidTransitionError(item.status, target, item.id)

    def mark_extracted(self, item: QueueItem, text: str) -> bool:
        """Narrow an attachment item to a text item carrying the extracted text.

        Returns:
            False if the row was deleted or changed concurrently
        """
        self._check(item, QueueStatus.PENDING_EMBEDDING)
        cur = self._conn.execute(
            """
            UPDATE processing_queue
            SET status = ?, kind = ?, payload_text = ?, payload_blob = NULL,
                retry_after = NULL, updated_at = ?
            WHERE id = ? AND status = ?
            """,
            (
                QueueStatus.PENDING_EMBEDDING.value,
                ItemKind.TEXT.value,
                text,
                _ts(),
                item.id,
                item.status.value,
            ),
        )
        self._conn.commit()
        if cur.rowcount == 0:
            logger.info(f"Queue item {item.id} changed during extraction, result dropped")
            return False
        return True

    def mark_completed(self, items: list[QueueItem]) -> int:
        """Complete embedded items. Returns number of rows actually updated."""
        for item in items:
            self._check(item, QueueStatus.COMPLETED)
        if not items:
            return 0

        now = _ts()
        updated = 0
        for item in items:
            cur = self._conn.execute(
                """
                UPDATE processing_queue
                SET status = ?, last_error = NULL, retry_after = NULL, updated_at = ?
                WHERE id = ? AND status = ?
                """,
                (QueueStatus.COMPLETED.value, now, item.id, item.status.value),
            )
            updated += cur.rowcount
        self._conn.commit()

        if updated < len(items):
            logger.info(f"{len(items) - updated} queue item(s) changed while embedding, not completed")
        return updated

    def backoff_seconds(self, retry_count: int) -> float:
        """Delay before the next attempt after ``retry_count`` failures."""
        if retry_count <= 0 or self.retry_backoff_seconds <= 0:
            return 0.0
        return min(self.retry_backoff_seconds * 2 ** (retry_count - 1), self.max_retry_backoff_seconds)

    def record_failure(self, item: QueueItem, error: str) -> QueueStatus | None:
        """Count a failed attempt; park the item in ``failed`` once retries run out.

        Returns:
            The item's new status, or None if the row changed concurrently
        """
        # Only pending items can fail
        self._check(item, QueueStatus.FAILED)
        retry_count = item.retry_count + 1
        now = datetime.now(timezone.utc)

        if retry_count >= self.max_retries:
            new_status = QueueStatus.FAILED
            retry_after = None
        else:
            new_status = item.status
            delay = self.backoff_seconds(retry_count)
            retry_after = _ts(now + timedelta(seconds=delay)) if delay > 0 else None

        cur = self._conn.execute(
            """
            UPDATE processing_queue
            SET status = ?, retry_count = ?, last_error = ?, retry_after = ?, updated_at = ?
            WHERE id = ? AND status = ?
            """,
            (new_status.value, retry_count, error, retry_after, _ts(now), item.id, item.status.value),
        )
        self._conn.commit()

        if cur.rowcount == 0:
            logger.info(f"Queue item {item.id} changed concurrently, failure not recorded")
            return None

        if new_status == QueueStatus.FAILED:
            logger.warning(f"Queue item {item.id} (note {item.note_id}) failed after {retry_count} attempts: {error}")
        else:
            logger.warning(f"Queue item {item.id} attempt {retry_count}/{self.max_retries} failed: {error}")
        return new_status

    def retry_failed(self) -> int:
        """Move every failed item back to the stage its payload needs.

        Items still holding raw bytes go back to extraction, items holding
        text go back to embedding. Retry counts and backoff are reset.
        """
        cur = self._conn.execute(
            """
            UPDATE processing_queue
            SET status = CASE WHEN payload_blob IS NOT NULL THEN ? ELSE ? END,
                retry_count = 0, retry_after = NULL, updated_at = ?
            WHERE status = ?
            """,
            (
                QueueStatus.PENDING_EXTRACTION.value,
                QueueStatus.PENDING_EMBEDDING.value,
                _ts(),
                QueueStatus.FAILED.value,
            ),
        )
        self._conn.commit()
        if cur.rowcount:
            logger.info(f"Requeued {cur.rowcount} failed item(s)")
        return cur.rowcount

    # ==================== Counts ====================

    def _count(self, *statuses: QueueStatus) -> int:
        cur = self._conn.execute(
            f"SELECT COUNT(*) FROM processing_queue WHERE status IN ({','.join('?' * len(statuses))})",
            [s.value for s in statuses],
        )
        return cur.fetchone()[0]

    def pending_count(self) -> int:
        return self._count(QueueStatus.PENDING_EXTRACTION, QueueStatus.PENDING_EMBEDDING)

    def failed_count(self) -> int:
        return self._count(QueueStatus.FAILED)

    def completed_count(self) -> int:
        return self._count(QueueStatus.COMPLETED)

    def stats(self) -> dict[str, int]:
        """Row counts per status."""
        cur = self._conn.execute("SELECT status, COUNT(*) FROM processing_queue GROUP BY status")
        counts = {s.value: 0 for s in QueueStatus}
        for row in cur.fetchall():
            counts[row[0]] = row[1]
        return counts


# Global queue instance (set during init_db)
_index_queue: IndexQueue | None = None


def init_index_queue(conn: sqlite3.Connection, settings: Settings | None = None) -> IndexQueue:
    """Initialize the global index queue."""
    global _index_queue
    _index_queue = IndexQueue(conn, settings)
    return _index_queue


def get_index_queue() -> IndexQueue:
    """Get the global index queue. Must call init_index_queue first."""
    if _index_queue is None:
        raise RuntimeError("IndexQueue not initialized. Call init_index_queue first.")
    return _index_queue
