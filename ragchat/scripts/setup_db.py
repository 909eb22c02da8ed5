"""
RAGChat - Context Ingestion Script
===================================
CLI entry point around ``ContextService``:
    1. Validate that ``GOOGLE_API_KEY`` is set (fail-fast).
    2. Initialise the ``VectorStore``.
    3. Reset a namespace, delete ids, or add one source (text, PDF or CSV).
    4. Print a structured execution summary with timing breakdown.

Flags:
    --type          Payload type of SOURCE: text, pdf or csv (default: text).
    --namespace     Target namespace (default partition when omitted).
    --chunk-size    Override ``CHUNK_SIZE`` for file sources.
    --chunk-overlap Override ``CHUNK_OVERLAP`` for file sources.
    --reset         Clear the namespace before adding (or alone, and exit).
    --delete ID...  Delete the given record ids from the namespace and exit.

Usage:
    python -m ragchat.scripts.setup_db notes.txt                    # Add a text file as one record
    echo "Paris is the capital of France." | python -m ragchat.scripts.setup_db -
    python -m ragchat.scripts.setup_db oz.pdf --type pdf --chunk-size 500
    python -m ragchat.scripts.setup_db rows.csv --type csv --namespace products --reset
    python -m ragchat.scripts.setup_db --reset --namespace products
    python -m ragchat.scripts.setup_db --delete id-1 id-2
"""

from __future__ import annotations

import argparse
import asyncio
import sys
import time
from pathlib import Path
from typing import Any

# ── Ensure project root is importable when run directly ────────────────
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
if str(_PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(_PROJECT_ROOT))


# ── CLI Argument Parsing ───────────────────────────────────────────────

def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="setup_db", description="RAGChat — Add, reset or delete context in the vector store.")
    parser.add_argument("source", nargs="?", help="File to ingest, or '-' to read text from stdin.")
    parser.add_argument("--type", dest="data_type", choices=("text", "pdf", "csv"), default="text", help="Payload type of SOURCE.")
    parser.add_argument("--namespace", default="", help="Target namespace (default partition when omitted).")
    parser.add_argument("--chunk-size", type=int, default=None, help="Chunk size for file sources.")
    parser.add_argument("--chunk-overlap", type=int, default=None, help="Chunk overlap for file sources.")
    parser.add_argument("--reset", action="store_true", default=False, help="Clear the namespace first.")
    parser.add_argument("--delete", nargs="+", metavar="ID", default=None, help="Delete these record ids and exit.")
    args = parser.parse_args(argv)

    if args.source is None and not args.reset and not args.delete:
        parser.error("nothing to do: give a SOURCE, --reset or --delete")
    if args.delete and args.source is not None:
        parser.error("--delete cannot be combined with a SOURCE")
    return args


def build_payload(source: str, data_type: str) -> dict[str, Any]:
    """Turn the SOURCE argument into a context payload mapping."""
    if data_type == "text":
        text = sys.stdin.read() if source == "-" else Path(source).read_text(encoding="utf-8")
        return {"data_type": "text", "data": text.strip()}
    if source == "-":
        raise ValueError(f"--type {data_type} needs a file path, not stdin")
    return {"data_type": data_type, "file_source": source}


# ── Main Orchestration ─────────────────────────────────────────────────

async def _run(args: argparse.Namespace) -> dict[str, Any]:
    from ragchat.config.settings import settings
    from ragchat.src.core.context import ContextService
    from ragchat.src.database.vector_store import VectorStore
    from ragchat.src.utils.logger import get_logger

    logger = get_logger(__name__)

    t_lancedb = time.perf_counter()
    logger.info("Connecting to LanceDB at: %s", settings.LANCEDB_PATH)
    store = VectorStore()
    service = ContextService(store)
    lancedb_ms = (time.perf_counter() - t_lancedb) * 1000

    summary: dict[str, Any] = {"namespace": args.namespace, "lancedb_ms": lancedb_ms, "rows_before": store.count(args.namespace), "status": None}

    if args.delete:
        await service.delete(args.delete, namespace=args.namespace)
        summary["status"] = f"deleted {len(args.delete)} id(s)"
    else:
        if args.reset:
            logger.warning("Resetting namespace '%s' as requested.", args.namespace)
            await service.reset({"namespace": args.namespace or None})
            summary["status"] = "reset"
        if args.source is not None:
            options = {"namespace": args.namespace, "chunk_size": args.chunk_size, "chunk_overlap": args.chunk_overlap}
            summary["status"] = await service.add(build_payload(args.source, args.data_type), options)

    summary["rows_after"] = store.count(args.namespace)
    return summary


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    t_start = time.perf_counter()

    # ── 0. Load settings + .env (timed) ────────────────────────────────
    t_settings = time.perf_counter()
    try:
        from ragchat.config.settings import settings
    except Exception as exc:
        print("\n[FATAL] Configuration error — check your .env file:\n")
        print(f"  {exc}")
        print()
        return 1
    settings_ms = (time.perf_counter() - t_settings) * 1000

    if settings.GOOGLE_API_KEY is None:
        print("\n[FATAL] GOOGLE_API_KEY is not set — the embedder cannot be initialised.\n")
        return 1

    from ragchat.src.core.exceptions import RAGChatError

    _print_header(settings, args)

    try:
        summary = asyncio.run(_run(args))
    except (RAGChatError, OSError, ValueError) as exc:
        print(f"\n[ERROR] {exc}\n")
        return 1

    _print_footer(summary, settings_ms, time.perf_counter() - t_start)
    return 0 if summary["status"] != "NOT-OK" else 2


# ── Pretty-print helpers ──────────────────────────────────────────────

def _print_header(settings: object, args: argparse.Namespace) -> None:
    api_key_val = settings.GOOGLE_API_KEY.get_secret_value()  # type: ignore[attr-defined]
    masked = f"****{api_key_val[-4:]}" if len(api_key_val) > 4 else "****"

    print()
    print("=" * 60)
    print("  RAGCHAT — Context Setup")
    print("=" * 60)
    print(f"  Environment  : {settings.ENV}")                   # type: ignore[attr-defined]
    print(f"  Embedding    : {settings.EMBEDDING_MODEL}")       # type: ignore[attr-defined]
    print(f"  LanceDB path : {settings.LANCEDB_PATH}")          # type: ignore[attr-defined]
    print(f"  Table        : {settings.LANCEDB_TABLE_NAME}")    # type: ignore[attr-defined]
    print(f"  Namespace    : '{args.namespace}'")
    print(f"  Source       : {args.source or '-'} ({args.data_type})")
    print(f"  API Key      : {masked}")
    print("=" * 60)
    print()


def _print_footer(summary: dict[str, Any], settings_ms: float, elapsed: float) -> None:
    print()
    print("=" * 60)
    print("  EXECUTION SUMMARY")
    print("-" * 60)
    print(f"  Namespace            : '{summary['namespace']}'")
    print(f"  Result               : {summary['status']}")
    print(f"  Rows before          : {summary['rows_before']}")
    print(f"  Rows after           : {summary['rows_after']}")
    print("-" * 60)
    print("  TIMING BREAKDOWN")
    print("-" * 60)
    print(f"  Settings + .env load : {settings_ms:>8.1f}ms")
    print(f"  LanceDB connection   : {summary['lancedb_ms']:>8.1f}ms")
    print(f"  Total elapsed        : {elapsed:>8.2f}s")
    print("=" * 60)
    print()


# ── Entry point ────────────────────────────────────────────────────────

if __name__ == "__main__":
    sys.exit(main())
