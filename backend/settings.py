"""Centralized configuration — every tunable in one place.

Environment variables override defaults. Import anywhere:

    from settings import settings

All values are frozen at startup. To change, update .env and restart.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root (one level above backend/)
_project_root = Path(__file__).resolve().parent.parent
load_dotenv(_project_root / ".env")


# ── Helpers ───────────────────────────────────────────────────────────────

def _env(key: str, default: str = "") -> str:
    return os.getenv(key, default)


def _env_int(key: str, default: int = 0) -> int:
    return int(os.getenv(key, str(default)))


def _env_float(key: str, default: float = 0.0) -> float:
    return float(os.getenv(key, str(default)))


def _env_bool(key: str, default: bool = False) -> bool:
    return os.getenv(key, str(default)).lower() in ("true", "1", "yes")


# ── Settings ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Settings:
    """Application settings.  Immutable after creation."""

    # ── Inference (local model server) ────────────────────────────
    # Supported: ollama, openai (any OpenAI-compatible server)
    LLM_PROVIDER: str = _env("LLM_PROVIDER", "ollama")
    LLM_BASE_URL: str = _env("LLM_BASE_URL", "http://localhost:11434")
    LLM_API_KEY: str = _env("LLM_API_KEY")
    # Model the CLI uses when --model is not given.  HTTP clients always
    # name the model per request.
    DEFAULT_MODEL: str = _env("DEFAULT_MODEL", "llama3.2")
    # Read timeout covers the gap between two streamed fragments, not the
    # whole generation.
    INFERENCE_TIMEOUT: float = _env_float("INFERENCE_TIMEOUT", 300.0)
    INFERENCE_CONNECT_TIMEOUT: float = _env_float("INFERENCE_CONNECT_TIMEOUT", 10.0)
    TITLE_FALLBACK: str = _env("TITLE_FALLBACK", "New Conversation")

    # ── Embeddings ────────────────────────────────────────────────
    # openai: hosted text-embedding-3-small, shortened to EMBEDDING_DIMENSION.
    # local:  sentence-transformers model, truncated to EMBEDDING_DIMENSION.
    EMBEDDING_PROVIDER: str = _env("EMBEDDING_PROVIDER", "openai")
    EMBEDDING_MODEL: str = _env("EMBEDDING_MODEL", "text-embedding-3-small")
    EMBEDDING_DIMENSION: int = _env_int("EMBEDDING_DIMENSION", 512)
    EMBEDDING_API_KEY: str = _env("EMBEDDING_API_KEY", _env("OPENAI_API_KEY"))
    EMBEDDING_BASE_URL: str = _env("EMBEDDING_BASE_URL")
    EMBEDDING_MAX_RETRIES: int = _env_int("EMBEDDING_MAX_RETRIES", 3)
    EMBEDDING_RETRY_BACKOFF: float = _env_float("EMBEDDING_RETRY_BACKOFF", 0.5)

    # ── Retrieval ─────────────────────────────────────────────────
    RETRIEVAL_K: int = _env_int("RETRIEVAL_K", 5)
    RETRIEVAL_MIN_SIMILARITY: float = _env_float("RETRIEVAL_MIN_SIMILARITY", 0.75)
    # Off by default: results are ranked and limited, never filtered.
    RETRIEVAL_ENFORCE_MIN_SIMILARITY: bool = _env_bool("RETRIEVAL_ENFORCE_MIN_SIMILARITY", False)
    CONVERSATION_AFFINITY_BOOST: float = _env_float("CONVERSATION_AFFINITY_BOOST", 1.5)

    # ── Streaming ─────────────────────────────────────────────────
    STREAM_QUEUE_SIZE: int = _env_int("STREAM_QUEUE_SIZE", 64)
    # Concurrent turns.  A turn holds its thread until the client has read
    # the whole stream; extra chats get their headers and wait for a slot.
    # Keep at or below DB_POOL_MAX.
    STREAM_WORKERS: int = _env_int("STREAM_WORKERS", 8)

    # ── Database (PostgreSQL + pgvector) ──────────────────────────
    DATABASE_URL: str = _env("DATABASE_URL", _env("POSTGRES_URL"))
    POSTGRES_HOST: str = _env("POSTGRES_HOST", "localhost")
    POSTGRES_PORT: int = _env_int("POSTGRES_PORT", 5432)
    POSTGRES_DB: str = _env("POSTGRES_DB", "chatapp")
    POSTGRES_USER: str = _env("POSTGRES_USER", "postgres")
    POSTGRES_PASSWORD: str = _env("POSTGRES_PASSWORD", "password")
    DB_POOL_MIN: int = _env_int("DB_POOL_MIN", 1)
    DB_POOL_MAX: int = _env_int("DB_POOL_MAX", 10)

    # ── Security ────────────────────────────────────────────────
    # Comma-separated origins allowed by CORS middleware.
    # "*" suits local use; list explicit origins when exposed on a network.
    ALLOWED_ORIGINS: str = _env("ALLOWED_ORIGINS", "*")

    # ── Server ────────────────────────────────────────────────────
    HOST: str = _env("HOST", "0.0.0.0")
    PORT: int = _env_int("PORT", 8000)
    LOG_LEVEL: str = _env("LOG_LEVEL", "INFO")


settings = Settings()
