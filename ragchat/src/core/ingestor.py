"""
RAGChat - ContextIngestor
==========================
Turns a validated ``ContextPayload`` into ``ContextRecord`` objects ready
for the vector store.

Key design decisions:
    • **Strategy per variant** – each ``data_type`` tag maps to one
      record builder; no runtime type inspection of the payload.
    • **Inline data is not split** – ``text`` and ``embedding`` payloads
      become exactly one record.
    • **File data is split** – ``pdf`` pages (PyMuPDF) and ``csv`` rows are
      cleaned, then split with ``RecursiveCharacterTextSplitter`` using the
      caller's ``chunk_size`` / ``chunk_overlap``.
    • **Deterministic ids** – MD5 of source, position and chunk text, so
      re-ingesting an unchanged file upserts the same ids.

Usage:
    from ragchat.src.core.ingestor import ContextIngestor
    records = ContextIngestor().build_records(PDFPayload(file_source="oz.pdf"), AddContextOptions(chunk_size=500))
"""

from __future__ import annotations

import csv
import time
from collections.abc import Callable
from pathlib import Path

import fitz
from langchain_text_splitters import RecursiveCharacterTextSplitter

from ragchat.config.settings import settings
from ragchat.src.core.models import AddContextOptions, ContextPayload, ContextRecord, CSVPayload, EmbeddingPayload, PDFPayload, TextPayload
from ragchat.src.utils.logger import get_logger
from ragchat.src.utils.text_utils import clean_text, content_id, render_row

logger = get_logger(__name__)


class ContextIngestor:
    """
    Payload → records, one strategy per ``data_type``.

    Parameters
    ----------
    chunk_size / chunk_overlap
        Defaults used when ``AddContextOptions`` leaves them unset.
        Fall back to ``settings.CHUNK_SIZE`` / ``settings.CHUNK_OVERLAP``.
    """

    def __init__(self, chunk_size: int | None = None, chunk_overlap: int | None = None) -> None:
        self._chunk_size = chunk_size or settings.CHUNK_SIZE
        self._chunk_overlap = chunk_overlap if chunk_overlap is not None else settings.CHUNK_OVERLAP
        self._strategies: dict[str, Callable[..., list[ContextRecord]]] = {
            "text": self._text_records,
            "embedding": self._embedding_records,
            "pdf": self._pdf_records,
            "csv": self._csv_records,
        }

    # ══════════════════════════════════════════════════════════════════
    #  PUBLIC ENTRY POINT
    # ══════════════════════════════════════════════════════════════════

    def build_records(self, payload: ContextPayload, options: AddContextOptions) -> list[ContextRecord]:
        """
        Build the records for *payload*.

        Raises
        ------
        FileNotFoundError
            If a file-backed payload points at a missing file.
        ValueError
            If a file cannot be decoded or parsed.
        """
        t_start = time.perf_counter()
        records = self._strategies[payload.data_type](payload, options)
        logger.info("[INGEST] %s payload → %d record(s) in %.1fms.", payload.data_type, len(records), (time.perf_counter() - t_start) * 1000)
        return records

    # ══════════════════════════════════════════════════════════════════
    #  INLINE STRATEGIES
    # ══════════════════════════════════════════════════════════════════

    @staticmethod
    def _text_records(payload: TextPayload, options: AddContextOptions) -> list[ContextRecord]:
        record_id = payload.id or content_id("text", payload.data)
        return [ContextRecord(id=record_id, data=payload.data, metadata={**options.metadata, options.metadata_key: payload.data}, namespace=options.namespace)]


    @staticmethod
    def _embedding_records(payload: EmbeddingPayload, options: AddContextOptions) -> list[ContextRecord]:
        metadata = dict(options.metadata)
        if payload.text:
            metadata[options.metadata_key] = payload.text
        record_id = payload.id or content_id("embedding", *payload.data)
        return [ContextRecord(id=record_id, vector=payload.data, metadata=metadata, namespace=options.namespace)]

    # ══════════════════════════════════════════════════════════════════
    #  FILE STRATEGIES
    # ══════════════════════════════════════════════════════════════════

    def _pdf_records(self, payload: PDFPayload, options: AddContextOptions) -> list[ContextRecord]:
        path = self._require_file(payload.file_source)
        splitter = self._splitter(options)
        records: list[ContextRecord] = []

        try:
            with fitz.open(path) as doc:
                pages = [(number, clean_text(page.get_text())) for number, page in enumerate(doc, start=1)]
        except RuntimeError as exc:
            raise ValueError(f"Cannot read PDF {path.name}: {exc}") from exc

        for page_number, text in pages:
            if not text:
                continue
            for index, chunk in enumerate(splitter.split_text(text)):
                metadata = {**options.metadata, options.metadata_key: chunk, "source": path.name, "page": page_number}
                records.append(ContextRecord(id=content_id(path.name, page_number, index, chunk), data=chunk, metadata=metadata, namespace=options.namespace))

        logger.debug("[INGEST] PDF '%s': %d page(s) → %d chunk(s).", path.name, len(pages), len(records))
        return records


    def _csv_records(self, payload: CSVPayload, options: AddContextOptions) -> list[ContextRecord]:
        path = self._require_file(payload.file_source)
        splitter = self._splitter(options)
        records: list[ContextRecord] = []

        try:
            with open(path, newline="", encoding="utf-8") as f:
                rows = [render_row(row) for row in csv.DictReader(f, delimiter=payload.delimiter)]
        except csv.Error as exc:
            raise ValueError(f"Cannot parse CSV {path.name}: {exc}") from exc

        for row_number, text in enumerate(rows, start=1):
            text = clean_text(text)
            if not text:
                continue
            for index, chunk in enumerate(splitter.split_text(text)):
                metadata = {**options.metadata, options.metadata_key: chunk, "source": path.name, "row": row_number}
                records.append(ContextRecord(id=content_id(path.name, row_number, index, chunk), data=chunk, metadata=metadata, namespace=options.namespace))

        logger.debug("[INGEST] CSV '%s': %d row(s) → %d chunk(s).", path.name, len(rows), len(records))
        return records

    # ══════════════════════════════════════════════════════════════════
    #  HELPERS
    # ══════════════════════════════════════════════════════════════════

    def _splitter(self, options: AddContextOptions) -> RecursiveCharacterTextSplitter:
        chunk_size = options.chunk_size or self._chunk_size
        chunk_overlap = options.chunk_overlap if options.chunk_overlap is not None else self._chunk_overlap
        # Keep overlap valid when only chunk_size was overridden
        chunk_overlap = min(chunk_overlap, chunk_size - 1)
        return RecursiveCharacterTextSplitter(chunk_size=chunk_size, chunk_overlap=chunk_overlap)


    @staticmethod
    def _require_file(source: Path) -> Path:
        path = Path(source)
        if not path.is_file():
            raise FileNotFoundError(f"Context file not found: {path}")
        return path
