"""Embedding Provider Abstraction for local model backends (Ollama, fastembed)."""

from __future__ import annotations

import asyncio
import json
import logging
import math
import os
import struct
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable

import httpx

logger = logging.getLogger(__name__)


def serialize_f32(vector: list[float]) -> bytes:
    """Serialize a list of floats into bytes for SQLite / sqlite-vec."""
    return struct.pack(f"{len(vector)}f", *vector)


def deserialize_f32(blob: bytes) -> list[float]:
    """Inverse of serialize_f32. Each float32 is 4 bytes."""
    return list(struct.unpack(f"{len(blob) // 4}f", blob))


def l2_normalize(vector: list[float]) -> list[float]:
    """Scale a vector to unit length so cosine similarity is a dot product."""
    norm = math.sqrt(sum(x * x for x in vector))
    if norm == 0:
        return [float(x) for x in vector]
    return [x / norm for x in vector]


@dataclass(frozen=True)
class ModelInfo:
    """Information about an embedding model."""

    model_id: str
    dimensions: int
    max_tokens: int  # Max input tokens
    description: str


OLLAMA_MODELS: dict[str, ModelInfo] = {
    "nomic-embed-text": ModelInfo(
        model_id="nomic-embed-text",
        dimensions=768,
        max_tokens=8192,
        description="Good quality, compact (275MB). Runs locally.",
    ),
    "mxbai-embed-large": ModelInfo(
        model_id="mxbai-embed-large",
        dimensions=1024,
        max_tokens=512,
        description="Higher quality, larger (~670MB).",
    ),
    "all-minilm": ModelInfo(
        model_id="all-minilm",
        dimensions=384,
        max_tokens=256,
        description="Smallest and fastest (~46MB), English only.",
    ),
}

FASTEMBED_MODELS: dict[str, ModelInfo] = {
    "BAAI/bge-small-en-v1.5": ModelInfo(
        model_id="BAAI/bge-small-en-v1.5",
        dimensions=384,
        max_tokens=512,
        description="In-process ONNX model (~33MB). No server needed.",
    ),
    "BAAI/bge-base-en-v1.5": ModelInfo(
        model_id="BAAI/bge-base-en-v1.5",
        dimensions=768,
        max_tokens=512,
        description="In-process ONNX model (~210MB), better recall.",
    ),
}


@dataclass
class DownloadProgress:
    """Progress of a model download, as reported by the backend."""

    status: str
    completed: int | None = None
    total: int | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def progress(self) -> float | None:
        """Percent complete, if the backend reports sizes."""
        if not self.total:
            return None
        return round((self.completed or 0) / self.total * 100, 1)


ProgressCallback = Callable[[DownloadProgress], None]


@dataclass
class HealthCheckResult:
    """Result of a provider health check."""

    healthy: bool
    provider: str
    model: str
    message: str
    latency_ms: int | None = None
    details: dict[str, Any] | None = None


class EmbeddingError(Exception):
    """Error during embedding generation."""

    def __init__(self, message: str, provider: str, retriable: bool = False):
        super().__init__(message)
        self.provider = provider
        self.retriable = retriable


class EmbeddingProvider(ABC):
    """Abstract base class for embedding providers."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable provider name (e.g., 'Ollama')."""
        ...

    @property
    @abstractmethod
    def model_id(self) -> str:
        """The model identifier being used."""
        ...

    @property
    @abstractmethod
    def dimensions(self) -> int:
        """Embedding vector dimensions."""
        ...

    @abstractmethod
    async def load(self, on_progress: ProgressCallback | None = None) -> None:
        """Make the model available locally (download if needed).

        Args:
            on_progress: Optional callback for download progress.

        Raises:
            EmbeddingError: If the model cannot be acquired.
        """
        ...

    @abstractmethod
    async def embed(self, texts: list[str]) -> list[list[float]]:
        """Generate embeddings for a list of texts.

        Args:
            texts: List of texts to embed.

        Returns:
            List of embedding vectors in the same order as input.

        Raises:
            EmbeddingError: If embedding generation fails.
        """
        ...

    async def embed_single(self, text: str) -> list[float]:
        """Generate embedding for a single text."""
        result = await self.embed([text])
        return result[0]

    async def health_check(self) -> HealthCheckResult:
        """Check if the provider can embed right now."""
        start = time.monotonic()
        try:
            vector = await self.embed_single("test")
            latency_ms = int((time.monotonic() - start) * 1000)
            return HealthCheckResult(
                healthy=True,
                provider=self.name,
                model=self.model_id,
                message="Ready",
                latency_ms=latency_ms,
                details={"dimensions": len(vector)},
            )

        except EmbeddingError as e:
            return HealthCheckResult(
                healthy=False,
                provider=self.name,
                model=self.model_id,
                message=str(e),
                details={"retriable": e.retriable},
            )

        except Exception as e:
            return HealthCheckResult(
                healthy=False,
                provider=self.name,
                model=self.model_id,
                message=f"Unexpected error: {e}",
            )


class OllamaProvider(EmbeddingProvider):
    """Ollama embedding provider for local models."""

    def __init__(
        self,
        model: str = "nomic-embed-text",
        base_url: str | None = None,
    ):
        """Initialize Ollama provider.

        Args:
            model: Model ID (see OLLAMA_MODELS).
            base_url: Ollama server URL. Falls back to OLLAMA_BASE_URL env var or localhost.
        """
        if model not in OLLAMA_MODELS:
            raise ValueError(f"Unknown Ollama model: {model}. Available: {list(OLLAMA_MODELS.keys())}")

        self._model = model
        self._model_info = OLLAMA_MODELS[model]
        self._base_url = (base_url or os.getenv("OLLAMA_BASE_URL", "http://localhost:11434")).rstrip("/")

    @property
    def name(self) -> str:
        return "Ollama"

    @property
    def model_id(self) -> str:
        return self._model

    @property
    def dimensions(self) -> int:
        return self._model_info.dimensions

    async def load(self, on_progress: ProgressCallback | None = None) -> None:
        """Pull the model through the Ollama server, streaming progress.

        Ollama answers /api/pull with one JSON object per line; layers being
        downloaded carry 'total' and 'completed' byte counts.
        """
        try:
            async with httpx.AsyncClient(timeout=None) as client:
                async with client.stream(
                    "POST",
                    f"{self._base_url}/api/pull",
                    json={"model": self._model, "stream": True},
                ) as response:
                    response.raise_for_status()
                    async for line in response.aiter_lines():
                        if not line.strip():
                            continue
                        data = json.loads(line)
                        if "error" in data:
                            raise EmbeddingError(
                                f"Ollama pull failed: {data['error']}",
                                provider=self.name,
                                retriable=False,
                            )
                        if on_progress:
                            on_progress(
                                DownloadProgress(
                                    status=data.get("status", ""),
                                    completed=data.get("completed"),
                                    total=data.get("total"),
                                    details={"digest": data["digest"]} if "digest" in data else {},
                                )
                            )

        except httpx.ConnectError as e:
            raise EmbeddingError(
                f"Ollama not reachable at {self._base_url}. Is Ollama running?",
                provider=self.name,
                retriable=True,
            ) from e

        except httpx.HTTPStatusError as e:
            raise EmbeddingError(
                f"Ollama error while pulling '{self._model}': {e.response.status_code}",
                provider=self.name,
                retriable=e.response.status_code >= 500,
            ) from e

        logger.info(f"Ollama model {self._model} is available")

    async def embed(self, texts: list[str]) -> list[list[float]]:
        """Get embeddings for multiple texts.

        Note: /api/embeddings takes one prompt per call, so we call one by one.
        This is still fast because it's local.
        """
        if not texts:
            return []

        results = []
        async with httpx.AsyncClient(timeout=30.0) as client:
            for text in texts:
                try:
                    response = await client.post(
                        f"{self._base_url}/api/embeddings",
                        json={
                            "model": self._model,
                            "prompt": text,
                        },
                    )
                    response.raise_for_status()
                    data = response.json()
                    results.append(data["embedding"])

                except httpx.ConnectError as e:
                    raise EmbeddingError(
                        f"Ollama not reachable at {self._base_url}. Is Ollama running?",
                        provider=self.name,
                        retriable=True,
                    ) from e

                except httpx.TimeoutException as e:
                    raise EmbeddingError(
                        "Ollama timed out while embedding",
                        provider=self.name,
                        retriable=True,
                    ) from e

                except httpx.HTTPStatusError as e:
                    if e.response.status_code == 404:
                        raise EmbeddingError(
                            f"Model '{self._model}' not found. Run 'ollama pull {self._model}'.",
                            provider=self.name,
                            retriable=False,
                        ) from e
                    raise EmbeddingError(
                        f"Ollama error: {e.response.status_code} - {e.response.text}",
                        provider=self.name,
                        retriable=e.response.status_code >= 500,
                    ) from e

        return results


class FastEmbedProvider(EmbeddingProvider):
    """In-process ONNX embedding provider using fastembed."""

    def __init__(self, model: str = "BAAI/bge-small-en-v1.5", cache_dir: str | None = None):
        if model not in FASTEMBED_MODELS:
            raise ValueError(f"Unknown fastembed model: {model}. Available: {list(FASTEMBED_MODELS.keys())}")

        self._model = model
        self._model_info = FASTEMBED_MODELS[model]
        self._cache_dir = cache_dir or os.getenv("MODEL_CACHE_DIR")
        self._engine: Any = None

    @property
    def name(self) -> str:
        return "fastembed"

    @property
    def model_id(self) -> str:
        return self._model

    @property
    def dimensions(self) -> int:
        return self._model_info.dimensions

    async def load(self, on_progress: ProgressCallback | None = None) -> None:
        """Download (first run) and open the ONNX model.

        fastembed does not report byte progress, so only start and end
        are signalled.
        """
        from fastembed import TextEmbedding

        if self._engine is not None:
            return

        if on_progress:
            on_progress(DownloadProgress(status="initiate", details={"model": self._model}))

        try:
            # Model download + ONNX session creation are blocking
            self._engine = await asyncio.get_running_loop().run_in_executor(
                None,
                lambda: TextEmbedding(model_name=self._model, cache_dir=self._cache_dir),
            )
        except Exception as e:
            raise EmbeddingError(
                f"Could not load fastembed model '{self._model}': {e}",
                provider=self.name,
                retriable=True,
            ) from e

        if on_progress:
            on_progress(DownloadProgress(status="done", completed=1, total=1))

    async def embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []

        if self._engine is None:
            raise EmbeddingError(
                f"fastembed model '{self._model}' is not loaded",
                provider=self.name,
                retriable=True,
            )

        engine = self._engine
        try:
            vectors = await asyncio.get_running_loop().run_in_executor(
                None,
                lambda: list(engine.embed(texts)),
            )
        except Exception as e:
            raise EmbeddingError(
                f"fastembed failed: {e}",
                provider=self.name,
                retriable=True,
            ) from e

        return [[float(x) for x in vec] for vec in vectors]


def get_provider(
    provider_name: str = "ollama",
    model: str | None = None,
    **kwargs: Any,
) -> EmbeddingProvider:
    """Factory function to get an embedding provider.

    Args:
        provider_name: 'ollama' or 'fastembed'
        model: Optional model ID. Uses default if not specified.
        **kwargs: Passed to the provider (base_url, cache_dir).

    Returns:
        Configured EmbeddingProvider instance.

    Raises:
        ValueError: If provider or model is unknown.
    """
    provider_name = provider_name.lower()

    if provider_name == "ollama":
        model = model or os.getenv("OLLAMA_EMBEDDING_MODEL", "nomic-embed-text")
        return OllamaProvider(model=model, base_url=kwargs.get("base_url"))

    elif provider_name == "fastembed":
        model = model or "BAAI/bge-small-en-v1.5"
        return FastEmbedProvider(model=model, cache_dir=kwargs.get("cache_dir"))

    else:
        raise ValueError(f"Unknown provider: {provider_name}. Available: ollama, fastembed")


def get_all_models() -> dict[str, dict[str, ModelInfo]]:
    """Get all available models grouped by provider."""
    return {
        "ollama": OLLAMA_MODELS,
        "fastembed": FASTEMBED_MODELS,
    }
