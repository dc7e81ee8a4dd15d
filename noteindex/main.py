from __future__ import annotations

import asyncio
import base64
import binascii
import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Body, FastAPI, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from noteindex.core.chunking import get_chunking_info
from noteindex.core.embedder import init_embedder
from noteindex.core.embedding_providers import get_provider
from noteindex.core.engine import EngineChannel, EngineClient, IndexEngine
from noteindex.core.index_queue import get_index_queue
from noteindex.core.messages import (
    CloseDb,
    DeleteNote,
    MessageError,
    SearchError,
    StartProcessing,
    decode_request,
    encode_message,
    to_sse,
)
from noteindex.core.reconciler import Reconciler
from noteindex.core.settings import Settings
from noteindex.core.storage import init_db
from noteindex.providers.notes import Attachment, NoteContent

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    s = Settings.from_env()
    logging.basicConfig(
        level=s.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    db = init_db(s)
    queue = get_index_queue()
    provider = get_provider(
        s.embedding_provider,
        s.embedding_model,
        base_url=s.ollama_base_url,
        cache_dir=s.model_cache_dir,
    )
    embedder = init_embedder(provider)
    engine = IndexEngine(db, queue, embedder, settings=s)

    channel = EngineChannel()
    client = EngineClient(channel, timeout=s.request_timeout_seconds)
    client.start()
    serve_task = asyncio.create_task(engine.serve(channel))

    app.state.settings = s
    app.state.engine = engine
    app.state.client = client
    app.state.queue = queue

    logger.info(
        f"Engine up ({s.app_env}): provider={provider.name} model={provider.model_id} dims={provider.dimensions}"
    )
    if s.auto_start_worker:
        client.send(StartProcessing())

    yield

    if not serve_task.done():
        client.send(CloseDb())
        await serve_task
    await client.close()


app = FastAPI(title="noteindex", lifespan=lifespan)


class AttachmentIn(BaseModel):
    mime_type: str
    data: str  # base64


class NoteIn(BaseModel):
    text: str = ""
    enriched: bool = True
    attachments: list[AttachmentIn] = Field(default_factory=list)


class ReconcileNote(NoteIn):
    note_id: str


class ReconcileIn(BaseModel):
    notes: list[ReconcileNote] = Field(default_factory=list)
    include_attachments: bool = False
    prune_orphans: bool = False


def _note_content(note_id: str, note: NoteIn) -> NoteContent:
    attachments = []
    for a in note.attachments:
        try:
            data = base64.b64decode(a.data, validate=True)
        except (binascii.Error, ValueError) as e:
            raise HTTPException(status_code=422, detail=f"Attachment data is not valid base64: {e}") from e
        attachments.append(Attachment(data=data, mime_type=a.mime_type))
    return NoteContent(note_id=note_id, text=note.text, attachments=tuple(attachments), enriched=note.enriched)


def _engine(request: Request) -> IndexEngine:
    engine: IndexEngine = request.app.state.engine
    if engine.closed:
        raise HTTPException(status_code=503, detail="Engine is closed")
    return engine


@app.post("/notes/{note_id}")
async def api_index_note(note_id: str, note: NoteIn, request: Request):
    """Queue a created or updated note for indexing.

    Previous queue rows of the note are superseded. Notes whose upstream
    enrichment has not finished are not queued yet.
    """
    _engine(request)
    content = _note_content(note_id, note)

    if not content.enriched:
        return {"note_id": note_id, "queued_items": [], "message": "Note not enriched yet"}

    ids = request.app.state.queue.enqueue_note(content)
    request.app.state.client.send(StartProcessing())
    return {"note_id": note_id, "queued_items": ids}


@app.delete("/notes/{note_id}")
async def api_delete_note(note_id: str, request: Request):
    """Remove a permanently deleted note from the queue and both vector stores."""
    _engine(request)
    request.app.state.client.send(DeleteNote(note_id=note_id))
    return {"accepted": True, "note_id": note_id}


@app.post("/reconcile")
async def api_reconcile(body: ReconcileIn, request: Request):
    """Re-queue notes that have no vectors and no pending work."""
    engine = _engine(request)
    notes = [_note_content(n.note_id, n) for n in body.notes]

    reconciler = Reconciler(engine.db, engine.queue, engine.index)
    result = reconciler.reconcile(
        notes,
        include_attachments=body.include_attachments,
        prune_orphans=body.prune_orphans,
    )
    if result.queued_items:
        request.app.state.client.send(StartProcessing())
    return result.to_dict()


@app.get("/search")
async def api_search(
    request: Request,
    q: str = "",
    limit: int | None = None,
    threshold: float | None = None,
):
    """Semantic + lexical search over note chunks.

    Args:
        q: Search query
        limit: Max hits (default SEARCH_LIMIT)
        threshold: Minimum vector similarity (default SEARCH_THRESHOLD);
            reported scores are blended and can be lower
    """
    _engine(request)
    s: Settings = request.app.state.settings
    client: EngineClient = request.app.state.client

    try:
        response = await client.search(
            q,
            limit=limit or s.search_limit,
            threshold=s.search_threshold if threshold is None else threshold,
        )
    except asyncio.TimeoutError as e:
        raise HTTPException(status_code=504, detail="Search timed out") from e

    if isinstance(response, SearchError):
        raise HTTPException(status_code=502, detail=response.error)

    return {
        "query": q,
        "hits": [h.to_dict() for h in response.hits],
        "count": len(response.hits),
    }


@app.get("/stats")
async def api_stats(request: Request):
    """Pending and failed queue items, and the number of embedded notes."""
    _engine(request)
    try:
        stats = await request.app.state.client.get_stats()
    except asyncio.TimeoutError as e:
        raise HTTPException(status_code=504, detail="Stats request timed out") from e
    return {"pending": stats.pending, "failed": stats.failed, "completed": stats.completed}


@app.post("/engine/messages")
async def api_engine_message(request: Request, payload: dict[str, Any] = Body(...)):
    """Send any request message in wire form.

    Requests that expect a response (SEARCH, GET_STATS) return it; all
    others are accepted and answered on the event stream.
    """
    try:
        message = decode_request(payload)
    except MessageError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e

    client: EngineClient = request.app.state.client
    if hasattr(message, "correlation_id"):
        _engine(request)
        try:
            response = await client.request(message)
        except asyncio.TimeoutError as e:
            raise HTTPException(status_code=504, detail=f"{message.type} timed out") from e
        return encode_message(response)

    client.send(message)
    return {"accepted": True, "type": message.type}


@app.get("/engine/events")
async def api_engine_events(request: Request):
    """SSE stream of engine messages not tied to a request.

    Model status, download progress and queue stats after every cycle.
    """
    client: EngineClient = request.app.state.client

    async def event_generator():
        async for message in client.events():
            if await request.is_disconnected():
                break
            yield to_sse(message)

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@app.get("/health")
async def api_health(request: Request):
    """Provider health, model and worker state, vector store summary."""
    engine: IndexEngine = request.app.state.engine
    health = await engine.embedder.provider.health_check()

    result: dict[str, Any] = {
        "env": engine.settings.app_env,
        "provider": health.provider,
        "model": health.model,
        "healthy": health.healthy,
        "message": health.message,
        "latency_ms": health.latency_ms,
        "details": health.details,
        "model_state": engine.embedder.state.value,
        "worker_state": engine.worker.state.value,
        "chunking": get_chunking_info(engine.settings.chunk_size),
    }
    if not engine.closed:
        result["vectors"] = engine.db.get_vector_stats()
    return result
