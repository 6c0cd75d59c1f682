"""CLI entry point for cast-index.

Index terminal recordings, search them and serve the query API.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

from cast_index.config import ConfigError, ConfigManager, IndexerConfig
from cast_index.search import QueryEngine, QueryError, SearchOptions
from cast_index.store import DB_FILENAME, IndexStore

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Default Configuration
# ---------------------------------------------------------------------------

DEFAULT_CONFIG_PATH = Path("cast-index.yaml")
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8080


# ---------------------------------------------------------------------------
# Helper Functions
# ---------------------------------------------------------------------------


def setup_logging(level: str) -> None:
    """Configure logging.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
    """
    logging.basicConfig(
        level=getattr(logging, level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _format_size(size_bytes: int) -> str:
    """Format byte size as human-readable string."""
    if size_bytes < 1024:
        return f"{size_bytes} B"
    elif size_bytes < 1024 * 1024:
        return f"{size_bytes / 1024:.1f} KB"
    else:
        return f"{size_bytes / 1024 / 1024:.1f} MB"


def _format_offset(seconds: float) -> str:
    """Format an offset into a recording as m:ss."""
    minutes, secs = divmod(int(seconds), 60)
    return f"{minutes}:{secs:02d}"


def _load_config(args: argparse.Namespace) -> IndexerConfig:
    """Load configuration and apply command line path overrides."""
    config = ConfigManager(args.config).load()
    if args.casts_dir is not None:
        config.paths.casts_dir = args.casts_dir
    if args.zip_dir is not None:
        config.paths.zip_dir = args.zip_dir
    if args.state_dir is not None:
        config.paths.state_dir = args.state_dir
    return config


# ---------------------------------------------------------------------------
# Command Implementations
# ---------------------------------------------------------------------------


async def _index(config: IndexerConfig) -> int:
    """Run one reindex pass."""
    from cast_index.indexer import CastIndexer

    async with IndexStore(config.paths.state_dir) as store:
        indexer = CastIndexer(store, config)
        report = await indexer.run_all()

    print(f"Recordings found: {report.discovered}")
    if report.skipped_latest:
        print(f"Skipped (latest): {report.skipped_latest}")
    print(f"Indexed: {report.indexed}")
    print(f"Up to date: {report.up_to_date}")
    print(f"Fragments written: {report.fragments_written}")
    if report.failed:
        print(f"Failed: {len(report.failed)}", file=sys.stderr)
        for failure in report.failed:
            print(f"  {failure.filename} ({failure.strategy_id}): {failure.error}", file=sys.stderr)
        return 1
    return 0


async def _search(config: IndexerConfig, query: str, options: SearchOptions) -> int:
    """Search the index and print matching fragments."""
    async with IndexStore(config.paths.state_dir) as store:
        page = await QueryEngine(store).search(query, options)

    if not page.results:
        print(f'No results found for "{query}"')
        return 0

    print(f'Search results for "{query}" ({page.total} matches)')
    print()
    for i, hit in enumerate(page.results, options.offset + 1):
        text = hit.text.strip().replace("\n", " ")
        if len(text) > 70:
            text = text[:67] + "..."
        tags = f" [{', '.join(hit.tags)}]" if hit.tags else ""
        print(f"{i}. {hit.date} {hit.time} +{_format_offset(hit.time_offset_seconds)}{tags}")
        print(f"   {text}")
        print(f"   {hit.artifact_filename}")
    return 0


async def _stats(config: IndexerConfig) -> int:
    """Show index statistics."""
    state_dir = config.paths.state_dir
    async with IndexStore(state_dir) as store:
        stats = await QueryEngine(store).get_index_stats()
        fts = store.fts_available

    db_path = state_dir / DB_FILENAME
    print("Index Statistics")
    print("=" * 50)
    print(f"Recordings: {stats.total_artifacts}")
    print(f"Indexed: {stats.completed_artifacts}")
    print(f"Indexer version: {stats.indexer_version}")
    print(f"Schema version: {stats.schema_version}")
    print(f"FTS5 available: {'Yes' if fts else 'No'}")
    if db_path.exists():
        print(f"Database size: {_format_size(db_path.stat().st_size)}")
    if stats.strategies:
        print("Strategies:")
        for strategy_id, info in sorted(stats.strategies.items()):
            print(f"  {strategy_id} {info['version']}: {info['count']} recordings")
    return 0


async def _verify(config: IndexerConfig) -> int:
    """Verify database integrity."""
    async with IndexStore(config.paths.state_dir) as store:
        print("Verifying database integrity...")
        if await store.verify_integrity():
            print("Database integrity check passed")
            await store.checkpoint()
            return 0
    print("Database integrity check FAILED", file=sys.stderr)
    return 1


async def _serve(
    config: IndexerConfig,
    host: str,
    port: int,
    index_on_start: bool,
    shutdown_event: asyncio.Event,
) -> int:
    """Serve the query API until shutdown is requested."""
    from aiohttp import web

    from cast_index.api import IndexAPI
    from cast_index.indexer import CastIndexer

    async with IndexStore(config.paths.state_dir) as store:
        indexer = CastIndexer(store, config)
        api = IndexAPI(query_engine=QueryEngine(store), indexer=indexer)

        runner = web.AppRunner(api.create_app())
        await runner.setup()
        site = web.TCPSite(runner, host, port)
        await site.start()
        logger.info(f"Listening on http://{host}:{port}")

        try:
            if index_on_start:
                api.last_report = await indexer.run_all()
            await shutdown_event.wait()
        finally:
            await api.cancel_refresh()
            await runner.cleanup()
    return 0


def _run_serve(config: IndexerConfig, args: argparse.Namespace) -> int:
    shutdown_event = asyncio.Event()

    def signal_handler(signum: int, frame: object) -> None:
        sig_name = signal.Signals(signum).name
        logger.info(f"Received {sig_name}, initiating shutdown...")
        shutdown_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    return asyncio.run(
        _serve(config, args.host, args.port, not args.no_initial_index, shutdown_event)
    )


# ---------------------------------------------------------------------------
# CLI Argument Parsing
# ---------------------------------------------------------------------------


def _create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="cast-index",
        description="Index and search terminal session recordings.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG_PATH,
        help=f"Path to config file (default: ./{DEFAULT_CONFIG_PATH})",
    )
    parser.add_argument(
        "--casts-dir",
        type=Path,
        default=None,
        help="Directory with .cast recordings (overrides config)",
    )
    parser.add_argument(
        "--zip-dir",
        type=Path,
        default=None,
        help="Directory with .cast.gz recordings (overrides config)",
    )
    parser.add_argument(
        "--state-dir",
        type=Path,
        default=None,
        help="State directory holding the index database (overrides config)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Log level (default: WARNING)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    subparsers.add_parser("index", help="Bring the index up to date with recordings on disk")

    search_parser = subparsers.add_parser("search", help="Search recorded terminal output")
    search_parser.add_argument("query", type=str, help="Search query")
    search_parser.add_argument(
        "-t",
        "--tag",
        dest="tags",
        action="append",
        default=[],
        help="Only recordings with this tag (repeatable, any may match)",
    )
    search_parser.add_argument("--from", dest="date_from", default=None, help="Start date YYYY-MM-DD")
    search_parser.add_argument("--to", dest="date_to", default=None, help="End date YYYY-MM-DD")
    search_parser.add_argument(
        "-l",
        "--limit",
        type=int,
        default=10,
        help="Results per page (default: 10)",
    )
    search_parser.add_argument(
        "-p",
        "--page",
        type=int,
        default=1,
        help="Page number, 1-based (default: 1)",
    )
    search_parser.add_argument(
        "-w",
        "--window",
        type=int,
        default=10,
        help="Deduplication window in minutes, 0 disables (default: 10)",
    )

    subparsers.add_parser("stats", help="Show index statistics")
    subparsers.add_parser("verify", help="Verify database integrity")

    serve_parser = subparsers.add_parser("serve", help="Serve the query API")
    serve_parser.add_argument(
        "--host",
        type=str,
        default=DEFAULT_HOST,
        help=f"Host to bind to (default: {DEFAULT_HOST})",
    )
    serve_parser.add_argument(
        "--port",
        type=int,
        default=DEFAULT_PORT,
        help=f"Port to bind to (default: {DEFAULT_PORT})",
    )
    serve_parser.add_argument(
        "--no-initial-index",
        action="store_true",
        help="Don't run an index pass on startup",
    )

    return parser


# ---------------------------------------------------------------------------
# Main Entry Point
# ---------------------------------------------------------------------------


def main(argv: list[str] | None = None) -> int:
    """Run the cast-index CLI.

    Args:
        argv: Command line arguments (defaults to sys.argv[1:]).

    Returns:
        Exit code (0 for success, 1 for error).
    """
    parser = _create_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1

    setup_logging(args.log_level)

    try:
        config = _load_config(args)
    except ConfigError as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        return 1

    try:
        if args.command == "index":
            return asyncio.run(_index(config))
        elif args.command == "search":
            limit = max(1, args.limit)
            options = SearchOptions(
                tags=args.tags,
                date_from=args.date_from,
                date_to=args.date_to,
                limit=limit,
                offset=(max(1, args.page) - 1) * limit,
                time_window_minutes=args.window,
            )
            return asyncio.run(_search(config, args.query, options))
        elif args.command == "stats":
            return asyncio.run(_stats(config))
        elif args.command == "verify":
            return asyncio.run(_verify(config))
        elif args.command == "serve":
            return _run_serve(config, args)
    except QueryError as e:
        print(f"Invalid query: {e}", file=sys.stderr)
        return 1
    except Exception as e:
        print(f"Error running {args.command}: {e}", file=sys.stderr)
        return 1

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
