"""Process-wide embedder: one provider, loaded once, normalised output."""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Callable, Union

from noteindex.core.embedding_providers import (
    DownloadProgress,
    EmbeddingError,
    EmbeddingProvider,
    l2_normalize,
)
from noteindex.core.messages import ModelDownloadProgress, ModelStatus

logger = logging.getLogger(__name__)

ModelEvent = Union[ModelStatus, ModelDownloadProgress]
ModelListener = Callable[[ModelEvent], None]


class ModelState(str, Enum):
    """Lifecycle of the embedding model."""

    IDLE = "idle"
    DOWNLOADING = "downloading"
    READY = "ready"
    ERROR = "error"


class ModelLoadError(Exception):
    """The embedding model could not be acquired."""

    def __init__(self, message: str, provider: str):
        super().__init__(message)
        self.provider = provider


class Embedder:
    """Lazily loaded text-to-vector pipeline over a single provider.

    The first ``ensure_loaded()`` starts one load task; every concurrent
    caller awaits that same task. A failed load leaves the state at
    ``error`` and the next call starts a fresh attempt.
    """

    def __init__(self, provider: EmbeddingProvider):
        self.provider = provider
        self.state = ModelState.IDLE
        self.error: str | None = None
        self._load_task: asyncio.Task | None = None
        self._listeners: list[ModelListener] = []

    @property
    def dimensions(self) -> int:
        return self.provider.dimensions

    @property
    def is_ready(self) -> bool:
        return self.state == ModelState.READY

    def add_listener(self, listener: ModelListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: ModelListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _emit(self, event: ModelEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Model listener failed")

    def _set_state(self, state: ModelState, error: str | None = None) -> None:
        self.state = state
        self.error = error
        if state != ModelState.IDLE:
            self._emit(ModelStatus(status=state.value, error=error))

    def _on_progress(self, progress: DownloadProgress) -> None:
        self._emit(
            ModelDownloadProgress(
                status=progress.status,
                completed=progress.completed,
                total=progress.total,
                progress=progress.progress,
            )
        )

    async def _load(self) -> None:
        self._set_state(ModelState.DOWNLOADING)
        logger.info(f"Loading embedding model {self.provider.name}/{self.provider.model_id}")
        try:
            await self.provider.load(on_progress=self._on_progress)
        except Exception as e:
            # Allow a later call to retry acquisition
            self._load_task = None
            self._set_state(ModelState.ERROR, str(e))
            logger.warning(f"Embedding model failed to load: {e}")
            raise ModelLoadError(str(e), provider=self.provider.name) from e

        self._set_state(ModelState.READY)
        logger.info(f"Embedding model ready ({self.dimensions} dims)")

    @staticmethod
    def _retrieve(task: asyncio.Task) -> None:
        # Background loads may have no awaiter
        if not task.cancelled():
            task.exception()

    def start_loading(self) -> asyncio.Task | None:
        """Start the load in the background unless loaded or already loading."""
        if self.state == ModelState.READY:
            return None
        if self._load_task is None:
            self._load_task = asyncio.create_task(self._load())
            self._load_task.add_done_callback(self._retrieve)
        return self._load_task

    async def ensure_loaded(self) -> None:
        """Wait until the model is ready.

        Raises:
            ModelLoadError: The load attempt failed
        """
        task = self.start_loading()
        if task is None:
            return
        await asyncio.shield(task)

    async def embed_many(self, texts: list[str]) -> list[list[float]]:
        """Embed texts into unit-length vectors.

        Raises:
            ModelLoadError: The model could not be loaded
            EmbeddingError: The provider failed or returned bad vectors
        """
        await self.ensure_loaded()
        if not texts:
            return []

        vectors = await self.provider.embed(texts)
        if len(vectors) != len(texts):
            raise EmbeddingError(
                f"Provider returned {len(vectors)} vectors for {len(texts)} texts",
                provider=self.provider.name,
            )

        result = []
        for vector in vectors:
            if len(vector) != self.dimensions:
                raise EmbeddingError(
                    f"Provider returned {len(vector)} dims, expected {self.dimensions}",
                    provider=self.provider.name,
                )
            result.append(l2_normalize(vector))
        return result

    async def embed(self, text: str) -> list[float]:
        vectors = await self.embed_many([text])
        return vectors[0]


# Global embedder instance (set at startup)
_embedder: Embedder | None = None


def init_embedder(provider: EmbeddingProvider) -> Embedder:
    """Initialize the global embedder."""
    global _embedder
    _embedder = Embedder(provider)
    return _embedder


def get_embedder() -> Embedder:
    """Get the global embedder. Must call init_embedder first."""
    if _embedder is None:
        raise RuntimeError("Embedder not initialized. Call init_embedder first.")
    return _embedder
