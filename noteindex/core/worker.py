"""Indexing worker: drives queue items through extraction and embedding.

One item per cycle, oldest eligible first. Extraction narrows an attachment
item to text; embedding works on the whole note, so every already-extracted
part of the note lands in one contiguous chunk set.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Callable

from noteindex.core.chunking import chunk_text, join_note_parts
from noteindex.core.embedder import Embedder, ModelLoadError
from noteindex.core.embedding_providers import EmbeddingError
from noteindex.core.extractor import ExtractionError, Extractor
from noteindex.core.index_queue import (
    ExtractionPending,
    IndexQueue,
    InvalidTransitionError,
    QueueItem,
    QueueStats,
    QueueStatus,
)
from noteindex.core.settings import Settings
from noteindex.core.storage import DB, VectorRecord
from noteindex.core.vector_index import IndexEntry, VectorIndex

logger = logging.getLogger(__name__)

StatsListener = Callable[[QueueStats], None]


class WorkerState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"


class IndexingWorker:
    """Single scheduling component for the processing queue.

    ``start()`` launches the polling loop, ``stop()`` ends it; nothing else
    changes the worker state. ``run_cycle()`` can also be driven directly.
    """

    def __init__(
        self,
        db: DB,
        queue: IndexQueue,
        embedder: Embedder,
        index: VectorIndex,
        extractor: Extractor | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.db = db
        self.queue = queue
        self.embedder = embedder
        self.index = index
        self.settings = settings or Settings()
        self.extractor = extractor or Extractor(ocr_language=self.settings.ocr_language)

        self.state = WorkerState.IDLE
        self._cycle_lock = asyncio.Lock()
        self._wake = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._listeners: list[StatsListener] = []

    # ==================== Lifecycle ====================

    def start(self) -> None:
        """Start the polling loop (no-op if already running)."""
        if self.state == WorkerState.RUNNING:
            self.wake()
            return
        self.state = WorkerState.RUNNING
        self._wake.clear()
        self._task = asyncio.create_task(self._run())
        logger.info("Indexing worker started")

    async def stop(self) -> None:
        """Stop the loop after the cycle in flight, if any."""
        if self.state == WorkerState.STOPPED:
            return
        self.state = WorkerState.STOPPED
        self._wake.set()
        if self._task is not None:
            await self._task
            self._task = None
        logger.info("Indexing worker stopped")

    def wake(self) -> None:
        """Cut the current poll wait short."""
        self._wake.set()

    async def _sleep(self, delay: float) -> None:
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass
        self._wake.clear()

    async def _run(self) -> None:
        while self.state == WorkerState.RUNNING:
            try:
                processed = await self.run_cycle()
            except Exception:
                logger.exception("Indexing cycle failed")
                processed = False

            if self.state != WorkerState.RUNNING:
                break
            await self._sleep(self.settings.busy_poll_seconds if processed else self.settings.idle_poll_seconds)

    # ==================== Stats ====================

    def add_stats_listener(self, listener: StatsListener) -> None:
        self._listeners.append(listener)

    def remove_stats_listener(self, listener: StatsListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def snapshot(self) -> QueueStats:
        return QueueStats(
            pending=self.queue.pending_count(),
            failed=self.queue.failed_count(),
            completed=self.db.count_embedded_notes(),
        )

    def _publish(self) -> None:
        if not self._listeners:
            return
        stats = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(stats)
            except Exception:
                logger.exception("Stats listener failed")

    # ==================== Cycles ====================

    async def run_cycle(self) -> bool:
        """Process at most one eligible item.

        Returns:
            True if an item was handled (successfully or not), False if there
            was nothing to do, the model is unavailable, or a cycle is
            already in flight.
        """
        if self._cycle_lock.locked():
            return False

        async with self._cycle_lock:
            item = self.queue.next_eligible()
            processed = await self._process(item) if item is not None else False

        self._publish()
        return processed

    async def drain(self, max_cycles: int | None = None) -> int:
        """Run cycles until no eligible work is left. Returns items handled."""
        handled = 0
        while max_cycles is None or handled < max_cycles:
            if not await self.run_cycle():
                break
            handled += 1
        return handled

    async def _process(self, item: QueueItem) -> bool:
        try:
            if isinstance(item.payload, ExtractionPending):
                await self._extract(item)
            else:
                await self._embed_note(item.note_id)

        except ModelLoadError as e:
            # Not the item's fault; leave it as is
            logger.warning(f"Embedding model unavailable, item {item.id} left pending: {e}")
            return False

        except InvalidTransitionError:
            raise

        except (ExtractionError, EmbeddingError) as e:
            self.queue.record_failure(item, str(e))

        except Exception as e:
            logger.exception(f"Unexpected error processing queue item {item.id}")
            self.queue.record_failure(item, f"Unexpected error: {e}")

        return True

    async def _extract(self, item: QueueItem) -> None:
        payload = item.payload
        assert isinstance(payload, ExtractionPending)

        text = await self.extractor.extract(item.kind.value, payload.blob, payload.mime_type)
        if self.queue.mark_extracted(item, text):
            logger.info(f"Extracted {len(text)} chars from {item.kind.value} item {item.id} (note {item.note_id})")

    async def _embed_note(self, note_id: str) -> None:
        """Re-embed a note from all of its extracted parts.

        Stored vectors of the note are replaced as a whole, then mirrored into
        the in-memory index, then the contributing items are completed. The
        durable write decides success; a failed mirror only invalidates the
        index.
        """
        items = self.queue.note_items(note_id, (QueueStatus.PENDING_EMBEDDING, QueueStatus.COMPLETED))
        pending = [i for i in items if i.status == QueueStatus.PENDING_EMBEDDING]
        if not pending:
            return

        chunks = chunk_text(join_note_parts([i.text or "" for i in items]), self.settings.chunk_size)
        vectors = await self.embedder.embed_many([c.text for c in chunks])

        # The host may have deleted or superseded the note while we embedded
        current = {i.id for i in self.queue.note_items(note_id, (QueueStatus.PENDING_EMBEDDING,))}
        pending = [i for i in pending if i.id in current]
        if not pending:
            logger.info(f"Note {note_id} changed while embedding, result dropped")
            return

        records = [
            VectorRecord(note_id=note_id, chunk_index=c.index, vector=v, text=c.text)
            for c, v in zip(chunks, vectors)
        ]
        self.db.replace_note_vectors(note_id, records)

        try:
            self.index.remove_note(note_id)
            for r in records:
                self.index.upsert(
                    IndexEntry(note_id=r.note_id, chunk_index=r.chunk_index, vector=r.vector, text=r.text)
                )
        except Exception:
            # Durable write already committed; reload the index from it on next search
            logger.exception(f"In-memory index update failed for note {note_id}, index marked for rebuild")
            self.index.invalidate()

        self.queue.mark_completed(pending)
        logger.info(f"Embedded note {note_id}: {len(records)} chunk(s)")
