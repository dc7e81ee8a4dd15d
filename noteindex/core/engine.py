"""Engine boundary: request dispatch, correlated responses, host-side client.

The host never calls into the engine directly. It puts request messages on
an ``EngineChannel`` inbox and reads response messages from its outbox.
``EngineClient`` wraps that exchange with correlation ids and timeouts.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import uuid
from dataclasses import dataclass, field
from typing import AsyncIterator

from noteindex.core.embedder import Embedder
from noteindex.core.index_queue import IndexQueue, QueueStats
from noteindex.core.messages import (
    CheckModelStatus,
    CloseDb,
    DbClosed,
    DeleteNote,
    GetStats,
    MessageError,
    ModelStatus,
    Request,
    Response,
    RetryFailed,
    Search,
    SearchError,
    SearchResults,
    StartProcessing,
    StatsUpdate,
    correlation_id_of,
)
from noteindex.core.settings import Settings
from noteindex.core.storage import DB
from noteindex.core.vector_index import VectorIndex
from noteindex.core.worker import IndexingWorker, WorkerState

logger = logging.getLogger(__name__)


@dataclass
class EngineChannel:
    """Two one-way message queues between host and engine."""

    inbox: asyncio.Queue = field(default_factory=asyncio.Queue)
    outbox: asyncio.Queue = field(default_factory=asyncio.Queue)


class IndexEngine:
    """Serves requests against the queue, stores and model."""

    def __init__(
        self,
        db: DB,
        queue: IndexQueue,
        embedder: Embedder,
        index: VectorIndex | None = None,
        worker: IndexingWorker | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.db = db
        self.queue = queue
        self.embedder = embedder
        self.settings = settings or Settings()
        self.index = index or VectorIndex(embedder.dimensions)
        self.worker = worker or IndexingWorker(db, queue, embedder, self.index, settings=self.settings)
        self.closed = False
        self._outbox: asyncio.Queue | None = None
        self._tasks: set[asyncio.Task] = set()

    # ==================== Outgoing ====================

    def attach(self, channel: EngineChannel) -> None:
        """Route model and queue events to the channel outbox."""
        self._outbox = channel.outbox
        self.embedder.add_listener(self._send)
        self.worker.add_stats_listener(self._on_stats)

    def _send(self, message: Response) -> None:
        if self._outbox is not None:
            self._outbox.put_nowait(message)

    def _on_stats(self, stats: QueueStats) -> None:
        self._send(StatsUpdate(pending=stats.pending, failed=stats.failed, completed=stats.completed))

    # ==================== Serving ====================

    async def serve(self, channel: EngineChannel) -> None:
        """Handle requests from the channel until CloseDb.

        Every request runs in its own task, so searches and stats requests
        interleave with processing cycles.
        """
        self.attach(channel)
        while True:
            request = await channel.inbox.get()
            task = asyncio.create_task(self.handle(request))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            if isinstance(request, CloseDb):
                await task
                break

    async def handle(self, request: Request) -> Response | None:
        """Dispatch one request; the response (if any) also goes to the outbox."""
        if self.closed and not isinstance(request, CloseDb):
            logger.warning(f"Engine closed, ignoring {request.type}")
            if isinstance(request, Search):
                response: Response | None = SearchError(error="Database closed", correlation_id=request.correlation_id)
                self._send(response)
                return response
            return None

        match request:
            case StartProcessing():
                self.worker.start()
                response = None

            case Search():
                response = await self._search(request)

            case CheckModelStatus():
                if self.embedder.is_ready:
                    response = ModelStatus(status="ready")
                else:
                    # Status events reach the outbox through the embedder listener
                    self.embedder.start_loading()
                    response = None

            case RetryFailed():
                self.queue.retry_failed()
                self.worker.wake()
                response = self.stats()

            case GetStats(correlation_id=correlation_id):
                response = self.stats(correlation_id)

            case DeleteNote(note_id=note_id):
                self.delete_note(note_id)
                response = self.stats()

            case CloseDb():
                await self.close()
                response = DbClosed()

            case _:
                raise MessageError(f"Unsupported request: {request!r}")

        if response is not None:
            self._send(response)
        return response

    async def _search(self, request: Search) -> SearchResults | SearchError:
        if not request.query.strip():
            return SearchResults(hits=[], correlation_id=request.correlation_id)

        try:
            await self.embedder.ensure_loaded()
            self.index.ensure_built(self.db)
            vector = await self.embedder.embed(request.query)
            hits = self.index.hybrid_search(
                request.query,
                vector,
                limit=request.limit,
                threshold=request.threshold,
                text_weight=self.settings.hybrid_text_weight,
            )
        except Exception as e:
            logger.warning(f"Search failed: {e}")
            return SearchError(error=str(e), correlation_id=request.correlation_id)

        return SearchResults(hits=hits, correlation_id=request.correlation_id)

    def stats(self, correlation_id: str | None = None) -> StatsUpdate:
        """Queue depth and embedded note count; never touches the model."""
        return StatsUpdate(
            pending=self.queue.pending_count(),
            failed=self.queue.failed_count(),
            completed=self.db.count_embedded_notes(),
            correlation_id=correlation_id,
        )

    def delete_note(self, note_id: str) -> None:
        """Purge stored vectors, index entries and queue rows of a note."""
        vectors = self.db.delete_note_vectors(note_id)
        entries = self.index.remove_note(note_id)
        rows = self.queue.delete_note_rows(note_id)
        logger.info(f"Deleted note {note_id}: {vectors} vector(s), {entries} index entries, {rows} queue row(s)")

    async def close(self) -> None:
        if self.closed:
            return
        if self.worker.state == WorkerState.RUNNING:
            await self.worker.stop()
        self.embedder.remove_listener(self._send)
        self.worker.remove_stats_listener(self._on_stats)
        self.index.close()
        self.db.close()
        self.closed = True
        logger.info("Engine closed")


class EngineClient:
    """Host-side handle on an engine channel.

    Responses carrying a correlation id resolve the matching pending call;
    everything else is fanned out to subscribers.
    """

    def __init__(self, channel: EngineChannel, timeout: float = 30.0) -> None:
        self.channel = channel
        self.timeout = timeout
        self._pending: dict[str, asyncio.Future] = {}
        self._subscribers: list[asyncio.Queue] = []
        self._pump_task: asyncio.Task | None = None

    def start(self) -> None:
        if self._pump_task is None:
            self._pump_task = asyncio.create_task(self._pump())

    async def close(self) -> None:
        if self._pump_task is not None:
            self._pump_task.cancel()
            try:
                await self._pump_task
            except asyncio.CancelledError:
                pass
            self._pump_task = None
        for future in self._pending.values():
            if not future.done():
                future.cancel()
        self._pending.clear()

    async def _pump(self) -> None:
        while True:
            message = await self.channel.outbox.get()
            self.dispatch(message)

    def dispatch(self, message: Response) -> None:
        correlation_id = correlation_id_of(message)
        future = self._pending.pop(correlation_id, None) if correlation_id else None
        if future is not None and not future.done():
            future.set_result(message)
            return
        for queue in list(self._subscribers):
            queue.put_nowait(message)

    def send(self, request: Request) -> None:
        """Fire-and-forget request."""
        self.channel.inbox.put_nowait(request)

    async def request(self, message: Request, timeout: float | None = None) -> Response:
        """Send a correlated request and wait for its response.

        Raises:
            MessageError: The request type carries no correlation id
            asyncio.TimeoutError: No response within the timeout
        """
        if not any(f.name == "correlation_id" for f in dataclasses.fields(message)):
            raise MessageError(f"{message.type} does not expect a response")

        correlation_id = correlation_id_of(message) or str(uuid.uuid4())
        message = dataclasses.replace(message, correlation_id=correlation_id)

        future = asyncio.get_running_loop().create_future()
        self._pending[correlation_id] = future
        self.send(message)
        try:
            return await asyncio.wait_for(future, timeout or self.timeout)
        finally:
            self._pending.pop(correlation_id, None)

    async def search(
        self,
        query: str,
        limit: int = 10,
        threshold: float = 0.3,
        timeout: float | None = None,
    ) -> SearchResults | SearchError:
        return await self.request(Search(query=query, limit=limit, threshold=threshold), timeout)

    async def get_stats(self, timeout: float | None = None) -> StatsUpdate:
        return await self.request(GetStats(), timeout)

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    async def events(self) -> AsyncIterator[Response]:
        """Uncorrelated engine messages, for as long as the caller iterates."""
        queue = self.subscribe()
        try:
            while True:
                yield await queue.get()
        finally:
            self.unsubscribe(queue)
