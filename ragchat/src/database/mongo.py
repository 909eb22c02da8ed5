"""
RAGChat - MongoDB Client Helpers
=================================
Shared plumbing for the motor-backed stores (chat history, rate limiting).

- **Singleton clients**: one ``AsyncIOMotorClient`` per URI, cached at
  module level so warm processes reuse the connection pool.
- **Client resolution**: an injected client wins; otherwise ``MONGO_URI``
  is required and its absence raises ``ConfigurationError``.
- **Error translation**: ``PyMongoError`` raised inside a store method is
  re-raised as ``StoreFailure`` tagged with the store name.
"""

from __future__ import annotations

import functools
from collections.abc import Awaitable, Callable
from typing import Any

import motor.motor_asyncio
from pymongo.errors import PyMongoError

from ragchat.config.settings import settings
from ragchat.src.core.exceptions import ConfigurationError, StoreFailure
from ragchat.src.utils.logger import get_logger

logger = get_logger(__name__)

_mongo_clients: dict[str, motor.motor_asyncio.AsyncIOMotorClient] = {}


def _get_mongo_client(uri: str) -> motor.motor_asyncio.AsyncIOMotorClient:
    """Return (or create) the module-level async MongoDB client for *uri*."""
    if uri not in _mongo_clients:
        _mongo_clients[uri] = motor.motor_asyncio.AsyncIOMotorClient(uri, serverSelectionTimeoutMS=settings.MONGO_TIMEOUT_MS)
        logger.info("MongoDB async client created (singleton).")
    return _mongo_clients[uri]


def resolve_database(client: motor.motor_asyncio.AsyncIOMotorClient | None, uri: str | None, db_name: str | None) -> motor.motor_asyncio.AsyncIOMotorDatabase:
    """
    Pick the database handle for a Mongo-backed store.

    Raises
    ------
    ConfigurationError
        If no client is injected and neither *uri* nor ``settings.MONGO_URI``
        is set.
    """
    if client is None:
        uri = uri or (settings.MONGO_URI.get_secret_value() if settings.MONGO_URI else None)
        if not uri:
            raise ConfigurationError("MongoDB-backed stores require either a pre-configured client or a MONGO_URI.")
        client = _get_mongo_client(uri)
    return client[db_name or settings.MONGO_DB_NAME]


def translate_errors(store: str) -> Callable[[Callable[..., Awaitable[Any]]], Callable[..., Awaitable[Any]]]:
    """Decorator: re-raise ``PyMongoError`` from an async method as ``StoreFailure``."""

    def decorator(func: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            try:
                return await func(*args, **kwargs)
            except PyMongoError as exc:
                logger.error("[%s] %s failed: %s", store.upper(), func.__name__, exc)
                raise StoreFailure(store, exc) from exc

        return wrapper

    return decorator
