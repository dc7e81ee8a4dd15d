"""Shared fixtures: in-memory database, queue, and a deterministic embedding provider."""

import re
import zlib

import pytest

from noteindex.core.embedder import Embedder
from noteindex.core.embedding_providers import (
    DownloadProgress,
    EmbeddingError,
    EmbeddingProvider,
)
from noteindex.core.index_queue import IndexQueue
from noteindex.core.settings import Settings
from noteindex.core.storage import DB, connect
from noteindex.core.vector_index import VectorIndex
from noteindex.core.worker import IndexingWorker


class HashingProvider(EmbeddingProvider):
    """Bag-of-words vectors: each token bumps one bucket chosen by crc32.

    Texts sharing words get similar vectors, which is all the tests need.
    """

    def __init__(self, dimensions: int = 64, fail_load: int = 0, fail_embed: bool = False):
        self._dimensions = dimensions
        self.fail_load = fail_load  # number of load attempts that fail
        self.fail_embed = fail_embed
        self.load_calls = 0
        self.embed_calls = 0

    @property
    def name(self) -> str:
        return "hashing"

    @property
    def model_id(self) -> str:
        return f"hash-{self._dimensions}"

    @property
    def dimensions(self) -> int:
        return self._dimensions

    async def load(self, on_progress=None) -> None:
        self.load_calls += 1
        if on_progress:
            on_progress(DownloadProgress(status="pulling", completed=50, total=100))
        if self.load_calls <= self.fail_load:
            raise EmbeddingError("model download failed", provider=self.name, retriable=True)
        if on_progress:
            on_progress(DownloadProgress(status="success", completed=100, total=100))

    async def embed(self, texts: list[str]) -> list[list[float]]:
        self.embed_calls += 1
        if self.fail_embed:
            raise EmbeddingError("embedding backend crashed", provider=self.name, retriable=True)
        return [self.vector(t) for t in texts]

    def vector(self, text: str) -> list[float]:
        vec = [0.0] * self._dimensions
        for token in re.findall(r"\w+", text.lower()):
            vec[zlib.crc32(token.encode("utf-8")) % self._dimensions] += 1.0
        return vec


@pytest.fixture
def settings():
    return Settings(
        db_path=":memory:",
        retry_backoff_seconds=0.0,
        busy_poll_seconds=0.01,
        idle_poll_seconds=0.05,
        auto_start_worker=False,
    )


@pytest.fixture
def db():
    """Create an in-memory database for testing."""
    database = DB(conn=connect(":memory:"))
    database.init()
    yield database
    database.close()


@pytest.fixture
def queue(db, settings):
    return IndexQueue(db.conn, settings)


@pytest.fixture
def provider():
    return HashingProvider(dimensions=64)


@pytest.fixture
def embedder(provider):
    return Embedder(provider)


@pytest.fixture
def index(provider):
    idx = VectorIndex(provider.dimensions)
    yield idx
    idx.close()


@pytest.fixture
def worker(db, queue, embedder, index, settings):
    return IndexingWorker(db, queue, embedder, index, settings=settings)
