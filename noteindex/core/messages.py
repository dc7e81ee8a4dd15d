"""Messages crossing the engine boundary.

Requests and responses are frozen dataclasses tagged by a ``type`` class
attribute. On the wire they are plain dicts ``{"type": "SEARCH", ...fields}``
(JSON bodies, or Server-Sent Events for the outgoing stream).
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field, fields
from typing import Any, ClassVar, Union

from noteindex.core.vector_index import SearchHit


class MessageError(ValueError):
    """Malformed or unknown wire message."""


# ==================== Requests (host -> engine) ====================


@dataclass(frozen=True)
class StartProcessing:
    type: ClassVar[str] = "START_PROCESSING"


@dataclass(frozen=True)
class Search:
    """Hybrid search. ``threshold`` is a minimum vector similarity; hit scores
    are the blended vector and lexical value and may fall below it.
    """

    query: str
    limit: int = 10
    threshold: float = 0.3
    correlation_id: str | None = None
    type: ClassVar[str] = "SEARCH"


@dataclass(frozen=True)
class CheckModelStatus:
    type: ClassVar[str] = "CHECK_MODEL_STATUS"


@dataclass(frozen=True)
class RetryFailed:
    type: ClassVar[str] = "RETRY_FAILED"


@dataclass(frozen=True)
class GetStats:
    correlation_id: str | None = None
    type: ClassVar[str] = "GET_STATS"


@dataclass(frozen=True)
class DeleteNote:
    note_id: str
    type: ClassVar[str] = "DELETE_NOTE"


@dataclass(frozen=True)
class CloseDb:
    type: ClassVar[str] = "CLOSE_DB"


Request = Union[StartProcessing, Search, CheckModelStatus, RetryFailed, GetStats, DeleteNote, CloseDb]


# ==================== Responses (engine -> host) ====================


@dataclass(frozen=True)
class ModelStatus:
    status: str  # downloading, ready, error
    error: str | None = None
    type: ClassVar[str] = "MODEL_STATUS"


@dataclass(frozen=True)
class ModelDownloadProgress:
    status: str
    completed: int | None = None
    total: int | None = None
    progress: float | None = None
    type: ClassVar[str] = "MODEL_DOWNLOAD_PROGRESS"


@dataclass(frozen=True)
class SearchResults:
    hits: list[SearchHit] = field(default_factory=list)
    correlation_id: str | None = None
    type: ClassVar[str] = "SEARCH_RESULTS"


@dataclass(frozen=True)
class SearchError:
    error: str
    correlation_id: str | None = None
    type: ClassVar[str] = "SEARCH_ERROR"


@dataclass(frozen=True)
class StatsUpdate:
    pending: int
    failed: int
    completed: int
    correlation_id: str | None = None
    type: ClassVar[str] = "STATS_UPDATE"


@dataclass(frozen=True)
class DbClosed:
    type: ClassVar[str] = "DB_CLOSED"


Response = Union[ModelStatus, ModelDownloadProgress, SearchResults, SearchError, StatsUpdate, DbClosed]

REQUEST_TYPES: dict[str, type] = {
    cls.type: cls
    for cls in (StartProcessing, Search, CheckModelStatus, RetryFailed, GetStats, DeleteNote, CloseDb)
}

RESPONSE_TYPES: dict[str, type] = {
    cls.type: cls
    for cls in (ModelStatus, ModelDownloadProgress, SearchResults, SearchError, StatsUpdate, DbClosed)
}


def correlation_id_of(message: Request | Response) -> str | None:
    return getattr(message, "correlation_id", None)


def encode_message(message: Request | Response) -> dict[str, Any]:
    """Wire form of a message."""
    return {"type": message.type, **asdict(message)}


def _build(registry: dict[str, type], data: Any) -> Any:
    if not isinstance(data, dict):
        raise MessageError(f"Message must be an object, got {type(data).__name__}")

    msg_type = data.get("type")
    cls = registry.get(msg_type)
    if cls is None:
        raise MessageError(f"Unknown message type: {msg_type!r}")

    known = {f.name for f in fields(cls)}
    kwargs = {k: v for k, v in data.items() if k in known}
    if cls is SearchResults:
        kwargs["hits"] = [h if isinstance(h, SearchHit) else SearchHit(**h) for h in kwargs.get("hits", [])]

    try:
        return cls(**kwargs)
    except TypeError as e:
        raise MessageError(f"Invalid {msg_type} message: {e}") from e


def decode_request(data: Any) -> Request:
    """Parse a wire dict into a request.

    Raises:
        MessageError: Unknown type, missing fields or bad field values
    """
    message = _build(REQUEST_TYPES, data)

    match message:
        case Search(query=query, limit=limit, threshold=threshold):
            if not isinstance(query, str):
                raise MessageError("SEARCH query must be a string")
            if not isinstance(limit, int) or isinstance(limit, bool) or limit < 1:
                raise MessageError("SEARCH limit must be a positive integer")
            if not isinstance(threshold, (int, float)) or isinstance(threshold, bool):
                raise MessageError("SEARCH threshold must be a number")
        case DeleteNote(note_id=note_id):
            if not isinstance(note_id, str) or not note_id:
                raise MessageError("DELETE_NOTE note_id must be a non-empty string")
        case _:
            pass

    return message


def decode_response(data: Any) -> Response:
    """Parse a wire dict into a response."""
    return _build(RESPONSE_TYPES, data)


def to_sse(message: Request | Response) -> str:
    """Format as Server-Sent Event."""
    return f"event: {message.type}\ndata: {json.dumps(encode_message(message))}\n\n"
