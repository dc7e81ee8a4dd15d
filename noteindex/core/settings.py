from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    app_env: str = "dev"
    db_path: str = "/app/_local/data/noteindex.db"
    log_level: str = "INFO"
    embedding_provider: str = "ollama"
    embedding_model: str | None = None
    ollama_base_url: str = "http://localhost:11434"
    model_cache_dir: str = "/app/_local/models"
    ocr_language: str = "eng"
    chunk_size: int = 1000
    max_retries: int = 3
    retry_backoff_seconds: float = 1.0
    max_retry_backoff_seconds: float = 30.0
    busy_poll_seconds: float = 0.1
    idle_poll_seconds: float = 5.0
    search_limit: int = 10
    search_threshold: float = 0.3
    hybrid_text_weight: float = 0.3
    request_timeout_seconds: float = 30.0
    auto_start_worker: bool = True

    @staticmethod
    def from_env() -> "Settings":
        def _b(name: str, default: str) -> bool:
            return os.getenv(name, default).strip() in ("1", "true", "True", "yes", "YES")

        def _i(name: str, default: str) -> int:
            return int(os.getenv(name, default).strip())

        def _f(name: str, default: str) -> float:
            return float(os.getenv(name, default).strip())

        return Settings(
            app_env=os.getenv("APP_ENV", "dev").strip(),
            db_path=os.getenv("DB_PATH", "/app/_local/data/noteindex.db").strip(),
            log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper(),
            embedding_provider=os.getenv("EMBEDDING_PROVIDER", "ollama").strip(),
            embedding_model=os.getenv("EMBEDDING_MODEL", "").strip() or None,
            ollama_base_url=os.getenv("OLLAMA_BASE_URL", "http://localhost:11434").strip(),
            model_cache_dir=os.getenv("MODEL_CACHE_DIR", "/app/_local/models").strip(),
            ocr_language=os.getenv("OCR_LANGUAGE", "eng").strip(),
            chunk_size=_i("CHUNK_SIZE", "1000"),
            max_retries=_i("MAX_RETRIES", "3"),
            retry_backoff_seconds=_f("RETRY_BACKOFF_SECONDS", "1.0"),
            max_retry_backoff_seconds=_f("MAX_RETRY_BACKOFF_SECONDS", "30.0"),
            busy_poll_seconds=_f("BUSY_POLL_SECONDS", "0.1"),
            idle_poll_seconds=_f("IDLE_POLL_SECONDS", "5.0"),
            search_limit=_i("SEARCH_LIMIT", "10"),
            search_threshold=_f("SEARCH_THRESHOLD", "0.3"),
            hybrid_text_weight=_f("HYBRID_TEXT_WEIGHT", "0.3"),
            request_timeout_seconds=_f("REQUEST_TIMEOUT_SECONDS", "30.0"),
            auto_start_worker=_b("AUTO_START_WORKER", "1"),
        )
