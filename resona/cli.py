"""
Command-line interface.

Usage:
    resona embed items.jsonl            # one JSON item per line ("-" for stdin)
    resona search "quarterly planning" -k 5
    resona stats
    resona diagnose
    resona maintain --skip-cleanup

Results are printed as JSON Lines, progress and logs go to stderr.
"""

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any, Iterator, List, Optional, TextIO

from .config import FlushFailurePolicy, ResonaConfig, set_config
from .embedders import PROVIDERS
from .errors import ResonaError
from .models import BatchOptions, BatchProgress, Item, MaintenanceOptions
from .service import EmbeddingService


logger = logging.getLogger(__name__)


def read_items(stream: TextIO) -> Iterator[Item]:
    """Parse JSON Lines into items; blank lines are ignored."""
    for line_number, line in enumerate(stream, start=1):
        line = line.strip()
        if not line:
            continue
        try:
            yield Item.from_dict(json.loads(line))
        except (json.JSONDecodeError, KeyError) as e:
            raise ResonaError(f"Invalid item on line {line_number}: {e}") from e


def emit(value: Any, out: TextIO = sys.stdout) -> None:
    print(json.dumps(value, default=str), file=out)


def print_progress(progress: BatchProgress) -> None:
    print(
        f"  {progress.processed + progress.skipped + progress.errors}/{progress.total} "
        f"(embedded {progress.processed}, stored {progress.stored}, "
        f"skipped {progress.skipped}, errors {progress.errors}, "
        f"{progress.rate:.1f} items/s)",
        file=sys.stderr,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="resona", description="Embedding sync and vector search")
    parser.add_argument("--db", type=Path, help="LanceDB directory")
    parser.add_argument("--table", help="Table name")
    parser.add_argument("--provider", choices=PROVIDERS, help="Embedding provider")
    parser.add_argument("--model", help="Embedding model")
    parser.add_argument("--dimensions", type=int, help="Explicit embedding dimensions")
    parser.add_argument("--endpoint", help="Custom provider endpoint")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")

    commands = parser.add_subparsers(dest="command", required=True)

    embed = commands.add_parser("embed", help="Embed items from a JSON Lines file")
    embed.add_argument("input", nargs="?", default="-", help="JSON Lines file, '-' for stdin")
    embed.add_argument("--force", action="store_true", help="Re-embed unchanged items")
    embed.add_argument("--batch-size", type=int, help="Records buffered before a flush")
    embed.add_argument("--chunk-size", type=int, help="Characters per chunk")
    embed.add_argument("--chunk-overlap", type=int, help="Characters shared between chunks")
    embed.add_argument("--flush-policy", choices=[p.value for p in FlushFailurePolicy])
    embed.add_argument("--prune", action="store_true", help="Delete stored items missing from the input")

    search = commands.add_parser("search", help="Search the corpus")
    search.add_argument("query")
    search.add_argument("-k", type=int, default=10, help="Number of results")

    commands.add_parser("stats", help="Show embedding statistics")
    commands.add_parser("diagnose", help="Show row count, version and index health")

    maintain = commands.add_parser("maintain", help="Compact, rebuild the index and prune versions")
    maintain.add_argument("--skip-compaction", action="store_true")
    maintain.add_argument("--skip-index", action="store_true")
    maintain.add_argument("--skip-cleanup", action="store_true")
    maintain.add_argument("--retention-days", type=int)
    maintain.add_argument("--threshold", type=float, help="Unindexed fraction that triggers a rebuild")

    return parser


def build_config(args: argparse.Namespace) -> ResonaConfig:
    config = ResonaConfig.from_env()
    if args.db:
        config.db_path = args.db
    if args.table:
        config.table_name = args.table
    if args.provider:
        config.provider = args.provider
    if args.model:
        config.model = args.model
    if args.dimensions:
        config.dimensions = args.dimensions
    if args.endpoint:
        config.endpoint = args.endpoint
    if args.verbose:
        config.verbose = True
    if getattr(args, "flush_policy", None):
        config.flush_failure_policy = args.flush_policy
    config.__post_init__()
    return config


async def run_embed(service: EmbeddingService, args: argparse.Namespace) -> None:
    if args.input == "-":
        items = list(read_items(sys.stdin))
    else:
        with open(args.input, encoding="utf-8") as f:
            items = list(read_items(f))

    config = service.config
    options = BatchOptions(
        on_progress=print_progress,
        progress_interval=config.progress_interval,
        force_all=args.force,
        store_batch_size=args.batch_size or config.store_batch_size,
        chunk_size=args.chunk_size or config.chunk_size,
        chunk_overlap=args.chunk_overlap if args.chunk_overlap is not None else config.chunk_overlap,
    )
    result = await service.embed_batch(items, options)
    print(result, file=sys.stderr)

    summary = asdict(result)
    if args.prune:
        summary["removed"] = await service.cleanup(item.id for item in items if item.id)
    emit(summary)


async def run_command(args: argparse.Namespace, config: ResonaConfig) -> int:
    service = EmbeddingService(config)
    try:
        if args.command == "embed":
            await run_embed(service, args)
        elif args.command == "search":
            for result in await service.search(args.query, args.k):
                emit(asdict(result))
        elif args.command == "stats":
            emit(asdict(await service.get_stats()))
        elif args.command == "diagnose":
            emit(asdict(await service.diagnose()))
        elif args.command == "maintain":
            options = service.planner.default_options()
            options.skip_compaction = args.skip_compaction
            options.skip_index = args.skip_index
            options.skip_cleanup = args.skip_cleanup
            if args.retention_days is not None:
                options.retention_days = args.retention_days
            if args.threshold is not None:
                options.index_stale_threshold = args.threshold
            options.on_progress = lambda step, details: logger.info(f"{step}: {details}")
            emit(asdict(await service.maintain(options)))
    finally:
        service.close()
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point."""
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="[%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )

    try:
        config = build_config(args)
        set_config(config)
        return asyncio.run(run_command(args, config))
    except ResonaError as e:
        logger.error(str(e))
        return 1
    except KeyboardInterrupt:
        print("\nStopped.", file=sys.stderr)
        return 130


if __name__ == "__main__":
    sys.exit(main())
