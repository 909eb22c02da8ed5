"""
RAGChat - VectorStore
======================
OOP wrapper around LanceDB implementing the save / query / delete / reset
contract of the context layer.

Design decisions:
  • **Singleton DB connection**: ``_get_connection()`` caches the
    ``lancedb.DBConnection`` per path to avoid file-lock issues.
  • **Dependency Injection**: the embedder is injected, never
    hard-coded, making the store testable with fake embedders.
  • **Lazy table**: the table is created on the first save, once the
    vector dimension is known.
  • **Namespaces**: a ``namespace`` column partitions the single table;
    every read, delete and reset is scoped to exactly one namespace.
  • **Upserts**: ``merge_insert`` on ``(id, namespace)`` makes re-adding
    an id overwrite instead of duplicate.
  • **Scores**: cosine distance ``d`` is reported as similarity
    ``1 - d / 2`` in ``[0, 1]``, higher is closer.

Usage:
    from langchain_google_genai import GoogleGenerativeAIEmbeddings
    from ragchat.src.database.vector_store import VectorStore

    store = VectorStore(GoogleGenerativeAIEmbeddings(model=..., google_api_key=...))
    store.save([ContextRecord(id="paris", data="Paris is ...", metadata={"text": "Paris is ..."})])
    matches = store.query("capital of France?", top_k=3)
"""

from __future__ import annotations

import json
import threading
from collections.abc import Iterable, Sequence
from typing import Protocol, runtime_checkable

import lancedb
import pyarrow as pa

from ragchat.config.settings import settings
from ragchat.src.core.exceptions import ConfigurationError, StoreFailure
from ragchat.src.core.models import ContextRecord, QueryMatch, SaveStatus
from ragchat.src.utils.logger import get_logger

logger = get_logger(__name__)


# ── Embedder Protocol ─────────────────────────────────────────────────

@runtime_checkable
class Embedder(Protocol):
    """Structural type for any LangChain-compatible embedding model."""

    def embed_documents(self, texts: list[str]) -> list[list[float]]: ...

    def embed_query(self, text: str) -> list[float]: ...


# ── Constants ──────────────────────────────────────────────────────────
_EMBED_BATCH_SIZE = 64
_MERGE_KEYS = ["id", "namespace"]
_DB_LOCK = threading.Lock()
_db_connection_cache: dict[str, lancedb.DBConnection] = {}


def _get_connection(db_path: str) -> lancedb.DBConnection:
    """
    Return a **singleton** ``lancedb.DBConnection`` for *db_path*.

    Thread-safe via ``_DB_LOCK``.
    """
    if db_path not in _db_connection_cache:
        with _DB_LOCK:
            if db_path not in _db_connection_cache:
                logger.info("Opening new LanceDB connection: %s", db_path)
                _db_connection_cache[db_path] = lancedb.connect(db_path)
    return _db_connection_cache[db_path]


def _schema(dimension: int) -> pa.Schema:
    return pa.schema([
        pa.field("id", pa.utf8()),
        pa.field("namespace", pa.utf8()),
        pa.field("vector", pa.list_(pa.float32(), dimension)),
        pa.field("metadata", pa.utf8()),
    ])


def _quote(value: str) -> str:
    """SQL string literal for LanceDB filters."""
    return "'" + value.replace("'", "''") + "'"


def _default_embedder() -> Embedder:
    """Build the Gemini embedder from settings."""
    if settings.GOOGLE_API_KEY is None:
        raise ConfigurationError("VectorStore requires either an embedder or GOOGLE_API_KEY.")
    from langchain_google_genai import GoogleGenerativeAIEmbeddings

    return GoogleGenerativeAIEmbeddings(model=settings.EMBEDDING_MODEL, google_api_key=settings.GOOGLE_API_KEY.get_secret_value())


class VectorStore:
    """
    Namespaced vector store over a single LanceDB table.

    Parameters
    ----------
    embedder
        Any object satisfying the ``Embedder`` protocol.  Defaults to the
        Gemini embedder configured in settings.
    db_path
        Override the database directory.  Defaults to ``settings.LANCEDB_PATH``.
    table_name
        Override the table name.  Defaults to ``settings.LANCEDB_TABLE_NAME``.
    """

    __slots__ = ("embedder", "_db_path", "_table_name", "db", "_table")

    def __init__(self, embedder: Embedder | None = None, db_path: str | None = None, table_name: str | None = None) -> None:
        self.embedder: Embedder = embedder if embedder is not None else _default_embedder()
        self._db_path: str = str(db_path or settings.LANCEDB_PATH)
        self._table_name: str = table_name or settings.LANCEDB_TABLE_NAME
        self.db: lancedb.DBConnection = _get_connection(self._db_path)
        self._table: lancedb.table.Table | None = None


    def _open_table(self) -> lancedb.table.Table | None:
        """Lazily open the table if it exists, cache the handle."""
        if self._table is None and self._table_name in self.db.table_names():
            self._table = self.db.open_table(self._table_name)
        return self._table


    def _embed(self, texts: list[str]) -> list[list[float]]:
        """Embed *texts* in batches of ``_EMBED_BATCH_SIZE``."""
        vectors: list[list[float]] = []
        for i in range(0, len(texts), _EMBED_BATCH_SIZE):
            batch = texts[i : i + _EMBED_BATCH_SIZE]
            try:
                vectors.extend(self.embedder.embed_documents(batch))
            except Exception as exc:
                logger.error("Embedding batch %d–%d failed: %s", i, i + len(batch) - 1, exc)
                raise StoreFailure("vector", exc, "Embedding failed") from exc
        if len(vectors) != len(texts):
            logger.error("Embedder returned %d vector(s) for %d text(s).", len(vectors), len(texts))
            raise StoreFailure("vector", message=f"Embedder returned {len(vectors)} vectors for {len(texts)} texts")
        return vectors


    def save(self, records: Sequence[ContextRecord]) -> SaveStatus:
        """
        Upsert *records*, embedding the ones that carry raw text.

        Returns
        -------
        SaveStatus
            ``SUCCESS`` once every record is written; ``FAIL`` when the
            batch is empty or its vector dimensions are inconsistent.

        Raises
        ------
        StoreFailure
            If embedding or the LanceDB write fails.
        """
        if not records:
            logger.warning("save() called with no records.")
            return SaveStatus.FAIL

        texts = [r.data or "" for r in records if r.vector is None]
        embedded = self._embed(texts) if texts else []
        position = 0

        # Last write wins for duplicate keys inside one batch
        rows: dict[tuple[str, str], dict[str, object]] = {}
        for record in records:
            vector = record.vector
            if vector is None:
                vector = embedded[position]
                position += 1
            rows[(record.id, record.namespace)] = {"id": record.id, "namespace": record.namespace, "vector": [float(v) for v in vector], "metadata": json.dumps(record.metadata, ensure_ascii=False, default=str)}

        dimensions = {len(row["vector"]) for row in rows.values()}  # type: ignore[arg-type]
        if len(dimensions) != 1:
            logger.error("Inconsistent vector dimensions in one batch: %s", sorted(dimensions))
            return SaveStatus.FAIL
        dimension = dimensions.pop()

        try:
            table = self._open_table()
            if table is None:
                table = self._table = self.db.create_table(self._table_name, schema=_schema(dimension))
                logger.info("Created new table '%s' (dim=%d).", self._table_name, dimension)

            table_dimension = table.schema.field("vector").type.list_size
            if table_dimension != dimension:
                logger.error("Vector dimension %d does not match table dimension %d.", dimension, table_dimension)
                return SaveStatus.FAIL

            data = pa.Table.from_pylist(list(rows.values()), schema=table.schema)
            table.merge_insert(_MERGE_KEYS).when_matched_update_all().when_not_matched_insert_all().execute(data)
        except (OSError, ValueError, RuntimeError) as exc:
            logger.error("Failed to write records to LanceDB: %s", exc)
            raise StoreFailure("vector", exc) from exc

        logger.info("Upserted %d record(s) into '%s'.", len(rows), self._table_name)
        return SaveStatus.SUCCESS


    def query(self, query: str | Sequence[float], top_k: int = 5, namespace: str = "", filter: str | None = None) -> list[QueryMatch]:
        """
        Similarity search within one namespace.

        Parameters
        ----------
        query
            Natural-language text (embedded with ``embed_query``) or a vector.
        top_k
            Maximum matches to return.
        namespace
            Partition to search.  ``""`` is the default partition.
        filter
            Optional extra LanceDB ``WHERE`` clause, AND-ed with the namespace.

        Returns
        -------
        list[QueryMatch]
            Ordered by descending score.
        """
        table = self._open_table()
        if table is None or table.count_rows() == 0:
            logger.info("Query against empty table '%s' — no matches.", self._table_name)
            return []

        try:
            vector = self.embedder.embed_query(query) if isinstance(query, str) else [float(v) for v in query]
        except Exception as exc:
            logger.error("Failed to embed query: %s", exc)
            raise StoreFailure("vector", exc, "Query embedding failed") from exc

        where = f"namespace = {_quote(namespace)}"
        if filter:
            where = f"{where} AND ({filter})"

        try:
            rows = table.search(vector, vector_column_name="vector").distance_type("cosine").where(where, prefilter=True).limit(top_k).to_list()
        except (OSError, ValueError, RuntimeError) as exc:
            logger.error("LanceDB search failed: %s", exc)
            raise StoreFailure("vector", exc) from exc

        matches = [QueryMatch(id=row["id"], score=min(max(1.0 - float(row["_distance"]) / 2, 0.0), 1.0), metadata=json.loads(row["metadata"] or "{}")) for row in rows]
        logger.info("Search in namespace '%s' returned %d match(es).", namespace, len(matches))
        return matches


    def delete(self, ids: Iterable[str], namespace: str = "") -> None:
        """Delete *ids* from *namespace*.  Unknown ids are ignored."""
        ids = list(ids)
        table = self._open_table()
        if table is None or not ids:
            return
        try:
            table.delete(f"namespace = {_quote(namespace)} AND id IN ({', '.join(_quote(i) for i in ids)})")
        except (OSError, ValueError, RuntimeError) as exc:
            logger.error("LanceDB delete failed: %s", exc)
            raise StoreFailure("vector", exc) from exc
        logger.info("Deleted up to %d record(s) from namespace '%s'.", len(ids), namespace)


    def reset(self, namespace: str | None = None) -> None:
        """Remove every record of *namespace* (the default partition when omitted)."""
        namespace = namespace or ""
        table = self._open_table()
        if table is None:
            return
        try:
            table.delete(f"namespace = {_quote(namespace)}")
        except (OSError, ValueError, RuntimeError) as exc:
            logger.error("LanceDB reset failed: %s", exc)
            raise StoreFailure("vector", exc) from exc
        logger.warning("Namespace '%s' reset.", namespace)


    def count(self, namespace: str | None = None) -> int:
        """Return the number of rows, optionally restricted to one namespace."""
        table = self._open_table()
        if table is None:
            return 0
        if namespace is None:
            return table.count_rows()
        return table.count_rows(f"namespace = {_quote(namespace)}")


    def drop_table(self) -> None:
        """Drop the whole table, every namespace included."""
        if self._table_name not in self.db.table_names():
            logger.warning("Table '%s' does not exist — nothing to drop.", self._table_name)
            return
        self.db.drop_table(self._table_name)
        self._table = None
        logger.info("Dropped table '%s'.", self._table_name)


    def __repr__(self) -> str:
        return f"VectorStore(db='{self._db_path}', table='{self._table_name}', rows={self.count()})"
