"""Admin CLI: file ingestion, pool rebuilds and index statistics."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Sequence

from replyrag.config import get_settings
from replyrag.metrics.observability import configure_logging
from replyrag.models import SOURCE_TYPES, OperationResult
from replyrag.services.engine import RetrievalEngine, build_engine


def _load_payloads(path: Path) -> list[Any]:
    data = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(data, dict):
        data = data.get("items", [data])
    if not isinstance(data, list):
        raise ValueError(f"{path} must contain a JSON list or an object with 'items'")
    return data


def run_ingest(engine: RetrievalEngine, args: argparse.Namespace) -> OperationResult:
    try:
        payloads = _load_payloads(args.file)
    except (OSError, ValueError) as exc:
        return OperationResult.fail("validation", f"Cannot read {args.file}: {exc}")
    return engine.ingest_documents(
        args.source_type,
        payloads,
        overwrite=args.overwrite,
        batch_size=args.batch_size,
        pause_seconds=args.pause,
    )


def run_build_pools(engine: RetrievalEngine, args: argparse.Namespace) -> OperationResult:
    options: dict[str, Any] = {"overwrite": args.overwrite}
    if args.max_pool_size is not None:
        options["max_pool_size"] = args.max_pool_size
    if args.min_relevance is not None:
        options["min_relevance_score"] = args.min_relevance
    if args.content_item:
        return engine.build_pool(args.content_item, options)
    return engine.build_all_pools(options)


def run_stats(engine: RetrievalEngine, args: argparse.Namespace) -> OperationResult:
    return engine.stats()


def parse_args(argv: Sequence[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="replyrag-admin", description="Administer the replyrag index.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    ingest = subparsers.add_parser("ingest", help="Ingest a JSON file of sources")
    ingest.add_argument("--source-type", choices=SOURCE_TYPES, required=True)
    ingest.add_argument("--file", type=Path, required=True, help="JSON list of source payloads")
    ingest.add_argument("--overwrite", action="store_true", help="Replace documents that already exist")
    ingest.add_argument("--batch-size", type=int, default=None)
    ingest.add_argument("--pause", type=float, default=None, help="Seconds to wait between batches")
    ingest.set_defaults(handler=run_ingest)

    pools = subparsers.add_parser("build-pools", help="Rebuild candidate pools")
    pools.add_argument("--content-item", default=None, help="Only rebuild this content item")
    pools.add_argument("--overwrite", action="store_true", help="Replace instead of merging with the current pool")
    pools.add_argument("--max-pool-size", type=int, default=None)
    pools.add_argument("--min-relevance", type=float, default=None)
    pools.set_defaults(handler=run_build_pools)

    stats = subparsers.add_parser("stats", help="Print index statistics")
    stats.set_defaults(handler=run_stats)
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None, *, engine: RetrievalEngine | None = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)
    configure_logging()
    engine = engine or build_engine(get_settings())
    result = args.handler(engine, args)
    print(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))
    # Bulk commands succeed as a whole but may report per-item failures.
    partial_failure = result.success and getattr(result.data, "failed", 0)
    return 0 if result.success and not partial_failure else 1


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    sys.exit(main())
