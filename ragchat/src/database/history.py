"""
RAGChat - Chat History
=======================
Session-keyed, most-recent-first message log with TTL and windowed reads.

Architecture
------------
``ListStore``
    Structural type for the backing list store: multi-value push-to-front
    (Redis ``LPUSH`` order), inclusive ranged read, expiry in seconds, and
    full delete.  Index semantics follow Redis ``LRANGE`` (negative indices
    count from the tail).

``MongoListStore``
    Async ``ListStore`` backed by ``motor``.  One document per key::

        {
            "_id": str,                      # session id
            "items": [str, ...],             # JSON messages, newest first
            "expires_at": datetime | absent, # TTL index, expireAfterSeconds=0
            "created_at": datetime,
            "updated_at": datetime
        }

    MongoDB's TTL monitor deletes expired documents in the background; reads
    and appends also treat a past ``expires_at`` as "already gone" so expiry
    is exact from the caller's point of view.

``HistoryStore``
    The public contract used by the chat pipeline: ``add_message``,
    ``get_messages``, ``clear``, plus ``add_messages`` for a batch written
    in one store call.  Storage order is most-recent-first, so a
    window of the last N messages is the prefix ``[0, N-1]``.

Failure semantics: backing-store errors surface as ``StoreFailure`` on both
reads and writes.  An unreachable store never yields an empty window.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from datetime import datetime, timedelta, timezone
from typing import Protocol, runtime_checkable

import motor.motor_asyncio
from pydantic import ValidationError as PydanticValidationError

from ragchat.config.settings import settings
from ragchat.src.core.exceptions import StoreFailure, ValidationError
from ragchat.src.core.models import Message
from ragchat.src.database.mongo import resolve_database, translate_errors
from ragchat.src.utils.logger import get_logger

logger = get_logger(__name__)

HistoryWindow = int | Sequence[int]


# ══════════════════════════════════════════════════════════════════════
#  BACKING LIST STORE
# ══════════════════════════════════════════════════════════════════════


@runtime_checkable
class ListStore(Protocol):
    """Anything that can act as a keyed, list-like store with expiry."""

    async def push_front(self, key: str, *values: str) -> None: ...

    async def range(self, key: str, start: int, end: int) -> list[str]: ...

    async def expire(self, key: str, seconds: int) -> None: ...

    async def delete(self, key: str) -> None: ...


def slice_inclusive(items: list[str], start: int, end: int) -> list[str]:
    """Apply ``LRANGE``-style inclusive indices (negatives count from the tail)."""
    length = len(items)
    if start < 0:
        start = max(length + start, 0)
    if end < 0:
        end = length + end
    if start > end:
        return []
    return items[start : end + 1]


class MongoListStore:
    """
    ``ListStore`` over a MongoDB collection via ``motor``.

    Parameters
    ----------
    client
        Pre-configured ``AsyncIOMotorClient``.  Takes precedence over *uri*.
    uri
        Connection string.  Defaults to ``settings.MONGO_URI``.
    db_name / collection_name
        Override the database and collection.  Default to the settings.
    """

    __slots__ = ("_collection", "_indexes_ready")

    def __init__(self, client: motor.motor_asyncio.AsyncIOMotorClient | None = None, uri: str | None = None, db_name: str | None = None, collection_name: str | None = None) -> None:
        db = resolve_database(client, uri, db_name)
        self._collection = db[collection_name or settings.MONGO_HISTORY_COLLECTION]
        self._indexes_ready = False


    async def _ensure_indexes(self) -> None:
        if not self._indexes_ready:
            await self._collection.create_index("expires_at", expireAfterSeconds=0)
            self._indexes_ready = True


    @staticmethod
    def _live(key: str, now: datetime) -> dict[str, object]:
        """Filter matching *key* only while it has not expired."""
        return {"_id": key, "expires_at": {"$not": {"$lte": now}}}


    @translate_errors("history")
    async def push_front(self, key: str, *values: str) -> None:
        """Prepend *values*, last one ending up first (upsert on first write).  An expired list starts over."""
        await self._ensure_indexes()
        now = datetime.now(timezone.utc)
        await self._collection.delete_one({"_id": key, "expires_at": {"$lte": now}})
        await self._collection.update_one({"_id": key}, {"$push": {"items": {"$each": list(reversed(values)), "$position": 0}}, "$set": {"updated_at": now}, "$setOnInsert": {"created_at": now}}, upsert=True)


    @translate_errors("history")
    async def range(self, key: str, start: int, end: int) -> list[str]:
        """Return items ``start..end`` (inclusive) of the newest-first list."""
        now = datetime.now(timezone.utc)

        if start >= 0 and end >= 0:
            if end < start:
                return []
            projection = {"items": {"$slice": [start, end - start + 1]}}
            doc = await self._collection.find_one(self._live(key, now), projection)
            return list(doc.get("items", [])) if doc else []

        doc = await self._collection.find_one(self._live(key, now), {"items": 1})
        return slice_inclusive(list(doc.get("items", [])), start, end) if doc else []


    @translate_errors("history")
    async def expire(self, key: str, seconds: int) -> None:
        """(Re)set the list's expiry to *seconds* from now."""
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=seconds)
        await self._collection.update_one({"_id": key}, {"$set": {"expires_at": expires_at}})


    @translate_errors("history")
    async def delete(self, key: str) -> None:
        await self._collection.delete_one({"_id": key})


# ══════════════════════════════════════════════════════════════════════
#  HISTORY STORE
# ══════════════════════════════════════════════════════════════════════


class HistoryStore:
    """
    Session-keyed chat history with TTL and windowed reads.

    Parameters
    ----------
    store
        Any ``ListStore``.  Defaults to a ``MongoListStore`` built from
        settings (raises ``ConfigurationError`` if ``MONGO_URI`` is unset).
    default_session_id
        Session used when a call omits ``session_id``.
    default_history_length
        Window used when ``get_messages`` omits ``amount``.
    """

    __slots__ = ("_store", "_default_session_id", "_default_length")

    def __init__(self, store: ListStore | None = None, default_session_id: str | None = None, default_history_length: int | None = None) -> None:
        self._store: ListStore = store if store is not None else MongoListStore()
        self._default_session_id = default_session_id or settings.DEFAULT_SESSION_ID
        self._default_length = default_history_length if default_history_length is not None else settings.DEFAULT_HISTORY_LENGTH


    async def add_message(self, message: Message | Mapping[str, object], session_id: str | None = None, session_ttl: int | None = None) -> None:
        """
        Prepend *message* to the session's history.

        When *session_ttl* is given, the session's expiry is reset to that
        many seconds from now, after the append.  Without it the session
        persists until cleared.
        """
        await self.add_messages([message], session_id=session_id, session_ttl=session_ttl)


    async def add_messages(self, messages: Sequence[Message | Mapping[str, object]], session_id: str | None = None, session_ttl: int | None = None) -> None:
        """Prepend *messages* (oldest first) with a single store write, then apply *session_ttl*."""
        coerced = [self._coerce(m) for m in messages]
        if not coerced:
            return
        session_id = session_id or self._default_session_id

        await self._store.push_front(session_id, *(m.model_dump_json(exclude_none=True) for m in coerced))
        if session_ttl:
            await self._store.expire(session_id, session_ttl)

        logger.debug("[HISTORY] %d message(s) appended to '%s' (ttl=%s).", len(coerced), session_id, session_ttl)


    async def get_messages(self, session_id: str | None = None, amount: HistoryWindow | None = None) -> list[Message]:
        """
        Read a window of the session's history, newest first.

        ``amount`` is either an integer N (the most recent N messages) or an
        inclusive ``[start, end]`` pair into the newest-first list.
        """
        session_id = session_id or self._default_session_id
        start, end = self._window(self._default_length if amount is None else amount)
        if end is None:
            return []

        raw = await self._store.range(session_id, start, end)
        try:
            messages = [Message.model_validate_json(item) for item in raw]
        except PydanticValidationError as exc:
            raise StoreFailure("history", exc, f"Corrupt message in session '{session_id}'") from exc

        logger.debug("[HISTORY] %d message(s) read from '%s' (window=%d..%d).", len(messages), session_id, start, end)
        return messages


    async def clear(self, session_id: str | None = None) -> None:
        """Remove every message of the session immediately, regardless of TTL."""
        session_id = session_id or self._default_session_id
        await self._store.delete(session_id)
        logger.info("[HISTORY] Session '%s' cleared.", session_id)


    @staticmethod
    def _coerce(message: Message | Mapping[str, object]) -> Message:
        if isinstance(message, Message):
            return message
        try:
            return Message.model_validate(message)
        except PydanticValidationError as exc:
            raise ValidationError("Invalid chat message", str(exc)) from exc


    @staticmethod
    def _window(amount: HistoryWindow) -> tuple[int, int | None]:
        """Translate *amount* into inclusive ``(start, end)``; ``end=None`` means empty."""
        if isinstance(amount, bool):
            raise ValidationError("History amount must be an int or a [start, end] pair", repr(amount))
        if isinstance(amount, int):
            return (0, amount - 1) if amount > 0 else (0, None)
        if isinstance(amount, Sequence) and not isinstance(amount, str) and len(amount) == 2 and all(isinstance(i, int) and not isinstance(i, bool) for i in amount):
            return int(amount[0]), int(amount[1])
        raise ValidationError("History amount must be an int or a [start, end] pair", repr(amount))
