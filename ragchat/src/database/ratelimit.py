"""
RAGChat - Rate Limiting
========================
Request-throughput limiting keyed by a rate-limit session id (distinct from
the chat session id).

``RateLimiter`` is the structural contract the chat pipeline depends on.
``MongoRateLimiter`` implements a fixed window: each ``(key, window)`` pair
is one document whose counter is incremented with a single atomic
``find_one_and_update`` upsert, so concurrent callers across processes share
one budget without any in-process state.
"""

from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Protocol, runtime_checkable

import motor.motor_asyncio
from pymongo import ReturnDocument

from ragchat.config.settings import settings
from ragchat.src.core.exceptions import ConfigurationError
from ragchat.src.core.models import RateLimitResult
from ragchat.src.database.mongo import resolve_database, translate_errors
from ragchat.src.utils.logger import get_logger

logger = get_logger(__name__)


@runtime_checkable
class RateLimiter(Protocol):
    """Anything that can atomically check-and-count one request for *key*."""

    async def limit(self, key: str) -> RateLimitResult: ...


class MongoRateLimiter:
    """
    Fixed-window limiter backed by MongoDB.

    Parameters
    ----------
    max_requests
        Requests allowed per window.  Defaults to ``settings.RATELIMIT_MAX_REQUESTS``.
    window_seconds
        Window length.  Defaults to ``settings.RATELIMIT_WINDOW_SECONDS``.
    client / uri / db_name / collection_name
        Same resolution rules as ``MongoListStore``.
    """

    __slots__ = ("_collection", "_max_requests", "_window_ms", "_indexes_ready")

    def __init__(self, max_requests: int | None = None, window_seconds: int | None = None, client: motor.motor_asyncio.AsyncIOMotorClient | None = None, uri: str | None = None, db_name: str | None = None, collection_name: str | None = None) -> None:
        self._max_requests = max_requests or settings.RATELIMIT_MAX_REQUESTS
        window_seconds = window_seconds or settings.RATELIMIT_WINDOW_SECONDS
        if self._max_requests <= 0 or window_seconds <= 0:
            raise ConfigurationError("Rate limiter needs a positive request budget and window.", f"max_requests={self._max_requests}, window_seconds={window_seconds}")
        self._window_ms = window_seconds * 1000

        db = resolve_database(client, uri, db_name)
        self._collection = db[collection_name or settings.MONGO_RATELIMIT_COLLECTION]
        self._indexes_ready = False


    async def _ensure_indexes(self) -> None:
        if not self._indexes_ready:
            await self._collection.create_index("expires_at", expireAfterSeconds=0)
            self._indexes_ready = True


    def _window(self, now_ms: int) -> tuple[int, int]:
        """Return ``(window_start_ms, reset_ms)`` for the window containing *now_ms*."""
        start = now_ms - now_ms % self._window_ms
        return start, start + self._window_ms


    @translate_errors("ratelimit")
    async def limit(self, key: str) -> RateLimitResult:
        """Count one request for *key* and report whether it fits the budget."""
        await self._ensure_indexes()
        window_start, reset = self._window(int(time.time() * 1000))

        doc = await self._collection.find_one_and_update(
            {"_id": f"{key}:{window_start}"},
            {"$inc": {"count": 1}, "$setOnInsert": {"key": key, "expires_at": datetime.fromtimestamp(reset / 1000, tz=timezone.utc)}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        count = int(doc["count"])

        result = RateLimitResult(success=count <= self._max_requests, limit=self._max_requests, remaining=max(self._max_requests - count, 0), reset=reset)
        if not result.success:
            logger.warning("[RATELIMIT] '%s' over budget (%d/%d); resets in %.0fs.", key, count, self._max_requests, result.retry_after)
        return result
