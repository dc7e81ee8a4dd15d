"""Tests for the engine request loop and the correlated host client."""

import asyncio
from contextlib import asynccontextmanager

import pytest
from conftest import HashingProvider

from noteindex.core.embedder import Embedder
from noteindex.core.engine import EngineChannel, EngineClient, IndexEngine
from noteindex.core.messages import (
    CheckModelStatus,
    CloseDb,
    DbClosed,
    DeleteNote,
    MessageError,
    ModelDownloadProgress,
    ModelStatus,
    RetryFailed,
    Search,
    SearchError,
    SearchResults,
    StartProcessing,
    StatsUpdate,
)
from noteindex.core.storage import VectorRecord
from noteindex.core.worker import WorkerState


@pytest.fixture
def engine(db, queue, embedder, index, worker, settings):
    return IndexEngine(db, queue, embedder, index=index, worker=worker, settings=settings)


@asynccontextmanager
async def serving(engine, timeout=2.0):
    channel = EngineChannel()
    client = EngineClient(channel, timeout=timeout)
    client.start()
    task = asyncio.create_task(engine.serve(channel))
    try:
        yield client
    finally:
        if not task.done():
            client.send(CloseDb())
            await task
        await client.close()


async def next_of(events, cls, timeout=2.0):
    """Read events until one of the given type arrives."""
    while True:
        message = await asyncio.wait_for(events.get(), timeout)
        if isinstance(message, cls):
            return message


async def seed(queue, worker):
    queue.enqueue_text("A", "The quick brown fox jumps")
    queue.enqueue_text("B", "Quarterly taxes")
    await worker.drain()


@pytest.mark.asyncio
class TestSearch:
    async def test_search_returns_correlated_hits(self, engine, queue, worker):
        """Search answers carry the request's correlation id."""
        await seed(queue, worker)

        async with serving(engine) as client:
            response = await client.search("fox", limit=5, threshold=0.3)

        assert isinstance(response, SearchResults)
        assert response.correlation_id is not None
        fox = [h for h in response.hits if h.note_id == "A"]
        assert fox[0].chunk_index == 0
        assert fox[0].text == "The quick brown fox jumps"

    async def test_threshold_above_one_is_empty(self, engine, queue, worker):
        """A threshold above 1 returns no hits and no error."""
        await seed(queue, worker)

        async with serving(engine) as client:
            response = await client.search("fox", threshold=1.01)

        assert isinstance(response, SearchResults)
        assert response.hits == []

    async def test_blank_query(self, engine):
        """Test a whitespace query."""
        async with serving(engine) as client:
            response = await client.search("   ")
        assert response.hits == []

    async def test_search_error_when_model_fails(self, db, queue, index, settings):
        """Model failure turns into SearchError."""
        engine = IndexEngine(db, queue, Embedder(HashingProvider(fail_load=5)), index=index, settings=settings)

        async with serving(engine) as client:
            response = await client.search("fox")

        assert isinstance(response, SearchError)
        assert "model download failed" in response.error

    async def test_old_model_vectors_purged_on_first_search(self, db, queue, settings):
        """Vectors from a model of another size are purged on first search."""
        db.replace_note_vectors("old", [VectorRecord("old", 0, [0.05] * 384, "from a smaller model")])
        engine = IndexEngine(db, queue, Embedder(HashingProvider(dimensions=768)), settings=settings)

        async with serving(engine) as client:
            assert (await client.get_stats()).completed == 1
            response = await client.search("smaller model")
            stats = await client.get_stats()

        assert response.hits == []
        assert stats.completed == 0


@pytest.mark.asyncio
class TestRequests:
    async def test_delete_then_stats(self, engine, queue, worker, db):
        """Stats after DeleteNote no longer count the note."""
        await seed(queue, worker)

        async with serving(engine) as client:
            before = await client.get_stats()
            client.send(DeleteNote(note_id="A"))
            after = await client.get_stats()
            response = await client.search("fox", threshold=-1.0)

        assert before.completed == 2
        assert after == StatsUpdate(pending=0, failed=0, completed=1, correlation_id=after.correlation_id)
        assert "A" not in {h.note_id for h in response.hits}

    async def test_check_model_status_streams_progress(self, engine):
        """Test model status events on the outbox."""
        async with serving(engine) as client:
            events = client.subscribe()
            client.send(CheckModelStatus())

            assert await next_of(events, ModelStatus) == ModelStatus(status="downloading")
            progress = await next_of(events, ModelDownloadProgress)
            assert progress.progress == 50.0
            assert await next_of(events, ModelStatus) == ModelStatus(status="ready")

            client.send(CheckModelStatus())
            assert await next_of(events, ModelStatus) == ModelStatus(status="ready")

    async def test_retry_failed(self, engine, queue, worker, provider):
        """RetryFailed re-queues and reports stats."""
        provider.fail_embed = True
        queue.enqueue_text("A", "text")
        await worker.drain()
        assert queue.failed_count() == 1

        provider.fail_embed = False
        async with serving(engine) as client:
            events = client.subscribe()
            client.send(RetryFailed())
            stats = await next_of(events, StatsUpdate)

        assert (stats.pending, stats.failed) == (1, 0)

    async def test_start_processing_runs_worker(self, engine, queue, db):
        """Test StartProcessing starts the worker loop."""
        queue.enqueue_text("A", "The quick brown fox")

        async with serving(engine) as client:
            events = client.subscribe()
            client.send(StartProcessing())
            stats = await next_of(events, StatsUpdate)
            assert engine.worker.state == WorkerState.RUNNING

        assert stats.completed == 1
        assert engine.worker.state == WorkerState.STOPPED

    async def test_close_db(self, engine):
        """After CloseDb, searches fail and other requests are ignored."""
        async with serving(engine) as client:
            events = client.subscribe()
            client.send(CloseDb())
            assert isinstance(await next_of(events, DbClosed), DbClosed)

        assert engine.closed is True
        response = await engine.handle(Search(query="fox", correlation_id="late"))
        assert response == SearchError(error="Database closed", correlation_id="late")
        assert await engine.handle(RetryFailed()) is None


@pytest.mark.asyncio
class TestEngineClient:
    async def test_timeout_without_engine(self):
        """A request with nobody serving times out."""
        client = EngineClient(EngineChannel(), timeout=0.05)
        client.start()
        with pytest.raises(asyncio.TimeoutError):
            await client.get_stats()
        await client.close()

    async def test_request_needs_correlation_field(self):
        """Only correlated request types can be awaited."""
        client = EngineClient(EngineChannel())
        with pytest.raises(MessageError):
            await client.request(RetryFailed())

    async def test_uncorrelated_messages_reach_events(self):
        """Test events() fan-out."""
        channel = EngineChannel()
        client = EngineClient(channel)
        client.start()

        received = []

        async def consume():
            async for message in client.events():
                received.append(message)
                if len(received) == 2:
                    break

        consumer = asyncio.create_task(consume())
        await asyncio.sleep(0)
        channel.outbox.put_nowait(ModelStatus(status="ready"))
        channel.outbox.put_nowait(StatsUpdate(pending=0, failed=0, completed=3))
        await asyncio.wait_for(consumer, 1.0)

        assert received == [ModelStatus(status="ready"), StatsUpdate(pending=0, failed=0, completed=3)]
        await client.close()
