"""
RAGChat - Data Models
======================
Pydantic models shared by the context, history and chat layers.

``ContextPayload`` is a tagged union discriminated on ``data_type``;
unknown tags fail validation before any store is touched.
"""

from __future__ import annotations

import time
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from ragchat.config.settings import Settings

Metadata = dict[str, Any]
AddStatus = Literal["OK", "NOT-OK"]

# Caller-facing option models: snake_case or camelCase keys, nothing else
_OPTIONS_CONFIG = ConfigDict(extra="forbid", alias_generator=to_camel, populate_by_name=True)


# ── Messages ──────────────────────────────────────────────────────────


class Message(BaseModel):
    """A single chat message; immutable once built."""

    model_config = ConfigDict(frozen=True)

    role: Literal["user", "assistant"]
    content: str
    metadata: Metadata | None = None
    id: str | None = None


# ── Vector store records ──────────────────────────────────────────────


class ContextRecord(BaseModel):
    """One chunk of ingested content, carrying either a vector or raw text."""

    id: str = Field(min_length=1)
    vector: list[float] | None = None
    data: str | None = None
    metadata: Metadata = Field(default_factory=dict)
    namespace: str = ""

    @model_validator(mode="after")
    def _vector_xor_data(self) -> "ContextRecord":
        if (self.vector is None) == (self.data is None):
            raise ValueError("ContextRecord needs exactly one of 'vector' or 'data'")
        return self


class QueryMatch(BaseModel):
    id: str
    score: float
    metadata: Metadata = Field(default_factory=dict)


class SaveStatus(str, Enum):
    SUCCESS = "Success"
    FAIL = "Fail"


# ── Ingestion payloads ────────────────────────────────────────────────


class TextPayload(BaseModel):
    data_type: Literal["text"] = "text"
    data: str = Field(min_length=1)
    id: str | None = None


class EmbeddingPayload(BaseModel):
    data_type: Literal["embedding"] = "embedding"
    data: list[float] = Field(min_length=1)
    id: str | None = None
    text: str | None = None


class PDFPayload(BaseModel):
    data_type: Literal["pdf"] = "pdf"
    file_source: Path


class CSVPayload(BaseModel):
    data_type: Literal["csv"] = "csv"
    file_source: Path
    delimiter: str = Field(default=",", min_length=1, max_length=1)


ContextPayload = Annotated[Union[TextPayload, EmbeddingPayload, PDFPayload, CSVPayload], Field(discriminator="data_type")]


class AddContextOptions(BaseModel):
    """Options for ``ContextService.add``; chunk sizes fall back to settings."""

    model_config = _OPTIONS_CONFIG

    metadata_key: str = "text"
    namespace: str = ""
    metadata: Metadata = Field(default_factory=dict)
    chunk_size: int | None = Field(default=None, gt=0)
    chunk_overlap: int | None = Field(default=None, ge=0)

    @model_validator(mode="after")
    def _overlap_below_size(self) -> "AddContextOptions":
        if self.chunk_size is not None and self.chunk_overlap is not None and self.chunk_overlap >= self.chunk_size:
            raise ValueError("chunk_overlap must be smaller than chunk_size")
        return self


class ResetOptions(BaseModel):
    model_config = _OPTIONS_CONFIG

    namespace: str | None = None


# ── Chat options ──────────────────────────────────────────────────────


class ChatDefaults(BaseModel):
    """
    Fully-resolved chat options.

    One instance is handed to the ``RAGChat`` constructor; per-call
    ``ChatOptions`` are merged on top of it.
    """

    session_id: str = "upstash-rag-chat-session"
    history_length: int = Field(default=5, ge=0)
    history_ttl: int = Field(default=86_400, gt=0)
    similarity_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    ratelimit_session_id: str = "upstash-rag-chat-ratelimit-session"
    top_k: int = Field(default=5, gt=0)
    metadata_key: str = "text"
    namespace: str = ""
    metadata: Metadata = Field(default_factory=dict)

    @classmethod
    def from_settings(cls, settings: Settings) -> "ChatDefaults":
        return cls(
            session_id=settings.DEFAULT_SESSION_ID,
            history_length=settings.DEFAULT_HISTORY_LENGTH,
            history_ttl=settings.DEFAULT_HISTORY_TTL,
            similarity_threshold=settings.DEFAULT_SIMILARITY_THRESHOLD,
            ratelimit_session_id=settings.DEFAULT_RATELIMIT_SESSION_ID,
            top_k=settings.DEFAULT_TOP_K,
            metadata_key=settings.DEFAULT_METADATA_KEY,
        )


class ChatOptions(BaseModel):
    """Per-call options.  ``streaming`` is required; ``None`` means "use the default"."""

    model_config = _OPTIONS_CONFIG

    streaming: bool
    session_id: str | None = None
    history_length: int | None = Field(default=None, ge=0)
    history_ttl: int | None = Field(default=None, gt=0, alias="historyTTL")
    similarity_threshold: float | None = Field(default=None, ge=0.0, le=1.0)
    ratelimit_session_id: str | None = None
    top_k: int | None = Field(default=None, gt=0)
    metadata_key: str | None = None
    namespace: str | None = None
    metadata: Metadata | None = None

    def resolve(self, defaults: ChatDefaults) -> ChatDefaults:
        overrides = self.model_dump(exclude_none=True, exclude={"streaming"})
        return defaults.model_copy(update=overrides)


# ── Rate limiting ─────────────────────────────────────────────────────


class RateLimitResult(BaseModel):
    """Outcome of one limiter check; ``reset`` is epoch milliseconds."""

    success: bool
    limit: int
    remaining: int
    reset: int

    @property
    def retry_after(self) -> float:
        """Seconds until the window resets (0 if already past)."""
        return max(0.0, self.reset / 1000 - time.time())


# ── Chat responses ────────────────────────────────────────────────────


class ChatStatus(str, Enum):
    OK = "ok"
    DENIED = "denied"


@dataclass
class ChatResponse:
    """
    Result of ``RAGChat.chat``.

    Non-streaming calls fill ``output``; streaming calls fill ``stream``,
    an async iterator that persists the exchange once fully consumed.
    Denied calls carry ``retry_after`` and the raw limiter result.
    """

    status: ChatStatus
    output: str = ""
    stream: AsyncIterator[str] | None = None
    context: str = ""
    history: list[Message] = field(default_factory=list)
    retry_after: float | None = None
    ratelimit: RateLimitResult | None = None

    @property
    def denied(self) -> bool:
        return self.status is ChatStatus.DENIED
