"""
RAGChat - Context Service
==========================
Ingestion / deletion / reset façade over the vector store.

``add`` normalises heterogeneous payloads (raw text, embeddings, PDF and
CSV files) into ``ContextRecord`` objects through ``ContextIngestor`` and
reports ``"OK"`` / ``"NOT-OK"``.  Ingestion failures are expected and
recoverable, so store and file errors are logged and mapped to
``"NOT-OK"``; malformed payloads are rejected with ``ValidationError``
before anything is read or written.

LanceDB and file parsing are synchronous; every call runs them in a
worker thread so the event loop stays free.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Mapping, Sequence
from typing import Any

from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from ragchat.src.core.exceptions import StoreFailure, ValidationError
from ragchat.src.core.ingestor import ContextIngestor
from ragchat.src.core.models import AddContextOptions, AddStatus, ContextPayload, ResetOptions, SaveStatus
from ragchat.src.database.vector_store import VectorStore
from ragchat.src.utils.logger import get_logger

logger = get_logger(__name__)

_PAYLOAD_ADAPTER: TypeAdapter[ContextPayload] = TypeAdapter(ContextPayload)


def _parse(model: Any, value: Any, what: str) -> Any:
    """Validate *value* into *model*, re-raising pydantic errors as ``ValidationError``."""
    try:
        if isinstance(model, TypeAdapter):
            return model.validate_python(value)
        return value if isinstance(value, model) else model.model_validate(value or {})
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid {what}", str(exc)) from exc


def _normalize_ids(ids: str | Sequence[str]) -> list[str]:
    """A single id becomes a one-element list; every id must be a non-empty string."""
    if isinstance(ids, str):
        ids = [ids]
    if not isinstance(ids, Sequence) or not ids or not all(isinstance(i, str) and i for i in ids):
        raise ValidationError("Context ids must be a non-empty string or a non-empty list of non-empty strings", repr(ids))
    return list(ids)


class ContextService:
    """
    Add, delete and reset context in the vector store.

    Parameters
    ----------
    vector_store
        The ``VectorStore`` (or any object with the same
        ``save`` / ``delete`` / ``reset`` methods).
    ingestor
        Optional custom ``ContextIngestor``.
    """

    __slots__ = ("_store", "_ingestor")

    def __init__(self, vector_store: VectorStore, ingestor: ContextIngestor | None = None) -> None:
        self._store = vector_store
        self._ingestor = ingestor or ContextIngestor()


    async def add(self, payload: ContextPayload | Mapping[str, Any], options: AddContextOptions | Mapping[str, Any] | None = None) -> AddStatus:
        """
        Add *payload* to the vector store.

        Returns ``"OK"`` iff the store reports success.  Every other outcome,
        including an unreadable file or a store failure, is ``"NOT-OK"``.

        Raises
        ------
        ValidationError
            If the payload or options are malformed (before any I/O).
        """
        payload = _parse(_PAYLOAD_ADAPTER, payload, "context payload")
        options = _parse(AddContextOptions, options, "context options")
        t_start = time.perf_counter()

        try:
            records = await asyncio.to_thread(self._ingestor.build_records, payload, options)
        except (OSError, ValueError) as exc:
            logger.error("[CONTEXT] Could not load %s payload: %s", payload.data_type, exc)
            return "NOT-OK"

        if not records:
            logger.warning("[CONTEXT] %s payload produced no records.", payload.data_type)
            return "NOT-OK"

        try:
            status = await asyncio.to_thread(self._store.save, records)
        except StoreFailure as exc:
            logger.error("[CONTEXT] Save failed for %d record(s): %s", len(records), exc)
            return "NOT-OK"

        elapsed_ms = (time.perf_counter() - t_start) * 1000
        logger.info("[CONTEXT] %s payload → %d record(s) in namespace '%s': %s (%.1fms)", payload.data_type, len(records), options.namespace, status.value, elapsed_ms)
        return "OK" if status is SaveStatus.SUCCESS else "NOT-OK"


    async def reset(self, options: ResetOptions | Mapping[str, Any] | None = None) -> None:
        """Clear one namespace, or the default partition when none is given."""
        options = _parse(ResetOptions, options, "reset options")
        await asyncio.to_thread(self._store.reset, options.namespace or None)


    async def delete(self, ids: str | Sequence[str], namespace: str = "") -> None:
        """Delete one id or a list of ids.  Unknown ids are a no-op."""
        await asyncio.to_thread(self._store.delete, _normalize_ids(ids), namespace)
