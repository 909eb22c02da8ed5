"""
RAGChat - Centralized Configuration
====================================
Uses ``pydantic-settings`` (``BaseSettings``) to load *all* configuration
from environment variables and the project-level ``.env`` file.

Security
--------
- ``GOOGLE_API_KEY`` and ``MONGO_URI`` are typed as ``SecretStr``.  They are
  optional here because every client can also be injected directly; the
  component that needs one raises ``ConfigurationError`` at construction
  when neither an injected client nor the setting is available.
- The raw values are never exposed in repr, logs, or tracebacks.

Chat defaults
-------------
The ``DEFAULT_*`` fields feed ``ChatDefaults``, which is handed to the
``RAGChat`` constructor.  Per-call ``ChatOptions`` override them.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application-wide settings.

    Every field is loaded from environment variables (or ``.env``).

    Attributes
    ----------
    ENV : Literal["dev", "prod"]
        Environment mode controlling logging verbosity.
    LOG_LEVEL : str | None
        Explicit log level; overrides the level derived from ``ENV``.
    MONGO_URI : SecretStr | None
        MongoDB connection string backing chat history and rate limiting.
    GOOGLE_API_KEY : SecretStr | None
        API key for the default Gemini embedder and chat model.
    CHUNK_SIZE / CHUNK_OVERLAP : int
        Character window used when splitting file-backed context.
    RATELIMIT_MAX_REQUESTS / RATELIMIT_WINDOW_SECONDS : int
        Fixed-window budget for ``MongoRateLimiter``.
    """

    # ── Resolved Absolute Paths ────────────────────────────────────────
    BASE_DIR: Path = Path(__file__).resolve().parent.parent
    LANCEDB_PATH: Path = BASE_DIR / "data" / "lancedb"

    # ── Environment Mode ───────────────────────────────────────────────
    ENV: Literal["dev", "prod"] = "dev"
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] | None = None

    # ── API Keys ───────────────────────────────────────────────────────
    GOOGLE_API_KEY: SecretStr | None = None

    # ── MongoDB ────────────────────────────────────────────────────────
    MONGO_URI: SecretStr | None = None
    MONGO_DB_NAME: str = "ragchat"
    MONGO_HISTORY_COLLECTION: str = "chat_history"
    MONGO_RATELIMIT_COLLECTION: str = "ratelimit"
    MONGO_TIMEOUT_MS: int = 5000

    # ── LanceDB ────────────────────────────────────────────────────────
    LANCEDB_TABLE_NAME: str = "ragchat_context"

    # ── Model Configuration ────────────────────────────────────────────
    EMBEDDING_MODEL: str = "models/gemini-embedding-001"
    LLM_MODEL: str = "gemini-2.0-flash"
    LLM_TEMPERATURE: float = 0.0

    # ── Ingestion Parameters ───────────────────────────────────────────
    CHUNK_SIZE: int = 1000
    CHUNK_OVERLAP: int = 200

    # ── Chat Defaults ──────────────────────────────────────────────────
    DEFAULT_SESSION_ID: str = "upstash-rag-chat-session"
    DEFAULT_RATELIMIT_SESSION_ID: str = "upstash-rag-chat-ratelimit-session"
    DEFAULT_HISTORY_LENGTH: int = 5
    DEFAULT_HISTORY_TTL: int = 86_400
    DEFAULT_SIMILARITY_THRESHOLD: float = 0.5
    DEFAULT_TOP_K: int = 5
    DEFAULT_METADATA_KEY: str = "text"

    # ── Rate Limiting ──────────────────────────────────────────────────
    RATELIMIT_MAX_REQUESTS: int = 10
    RATELIMIT_WINDOW_SECONDS: int = 86_400

    # ── Validators ─────────────────────────────────────────────────────

    @field_validator("CHUNK_SIZE")
    @classmethod
    def _chunk_size_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError(f"CHUNK_SIZE must be > 0, got {v}")
        return v


    @field_validator("DEFAULT_SIMILARITY_THRESHOLD")
    @classmethod
    def _threshold_range(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError(f"DEFAULT_SIMILARITY_THRESHOLD must be 0–1, got {v}")
        return v


    @model_validator(mode="after")
    def _overlap_below_size(self) -> "Settings":
        if not 0 <= self.CHUNK_OVERLAP < self.CHUNK_SIZE:
            raise ValueError(f"CHUNK_OVERLAP must be in [0, CHUNK_SIZE), got {self.CHUNK_OVERLAP}")
        return self

    # ── Pydantic Settings Configuration ────────────────────────────────
    model_config = SettingsConfigDict(env_file=Path(__file__).resolve().parent.parent / ".env", env_file_encoding="utf-8", extra="ignore")


# ── Singleton Instance ─────────────────────────────────────────────────
# Import this throughout the project:
#     from ragchat.config.settings import settings
settings = Settings()
