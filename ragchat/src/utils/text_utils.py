"""
RAGChat - Text Utilities
=========================
Helper functions for text cleaning, content hashing and CSV row
rendering.

These utilities are consumed by the ingestion layer and should remain
stateless and side-effect-free.
"""

from __future__ import annotations

import hashlib
import re
import unicodedata
from collections.abc import Mapping

# Control characters (C0/C1) except \n, \r, \t, plus BOM, zero-width
# chars, soft hyphens and directional marks.
_NON_PRINTABLE_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f-\x9f\ufeff\u200b\u200c\u200d\u200e\u200f\u00ad\u2060\ufffe]")


def clean_text(text: str) -> str:
    """
    Sanitise raw document text for embedding.

    Steps:
        1. Unicode NFC normalisation.
        2. Strip non-printable / zero-width characters.
        3. Collapse runs of horizontal whitespace into a single space,
           *preserving* newlines.
        4. Strip leading / trailing whitespace from every line.
        5. Collapse 3+ consecutive blank lines to 2.

    Args:
        text: Raw text extracted from a source file.

    Returns:
        Cleaned, normalised text ready for chunking.
    """
    text = unicodedata.normalize("NFC", text)
    text = _NON_PRINTABLE_RE.sub("", text)
    text = re.sub(r"[^\S\n]+", " ", text)
    lines = [line.strip() for line in text.splitlines()]
    text = "\n".join(lines)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def content_id(*parts: object) -> str:
    """
    Deterministic record id: MD5 hex digest of the ``:``-joined *parts*.

    Re-ingesting identical content yields the same id, so the vector
    store upserts instead of duplicating.
    """
    hasher = hashlib.md5()
    hasher.update(":".join(str(p) for p in parts).encode("utf-8"))
    return hasher.hexdigest()


def render_row(row: Mapping[str, str | None]) -> str:
    """Render a CSV row as ``column: value`` lines, skipping blank columns."""
    lines = []
    for column, value in row.items():
        if column is None:
            continue
        value = (value or "").strip()
        if value:
            lines.append(f"{column.strip()}: {value}")
    return "\n".join(lines)
