#!/usr/bin/env python
"""Command line entry point for Super Bookmarks."""
import argparse
import asyncio
import atexit
import json
import logging
import os
import sys
from pathlib import Path

from super_bookmarks import __version__
from super_bookmarks.config import config
from super_bookmarks.exceptions import BookmarksError
from super_bookmarks.models.db_models import init_db
from super_bookmarks.observability import configure_logging, metrics
from super_bookmarks.server.mcp_server import BookmarksMcpServer, format_results

logger = logging.getLogger(__name__)


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="super-bookmarks", description="Super Bookmarks: notes with local semantic search"
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--database-path",
        help="SQLite database file path",
        type=str,
        default=os.environ.get("SUPER_BOOKMARKS_DATABASE_PATH"),
    )
    parser.add_argument(
        "--log-level",
        help="Logging level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=os.environ.get("SUPER_BOOKMARKS_LOG_LEVEL", "INFO"),
    )
    parser.add_argument(
        "--no-embeddings",
        help="Disable the embedding model (keyword search only)",
        action="store_true",
    )

    sub = parser.add_subparsers(dest="command")
    sub.add_parser("serve", help="Run the MCP server (default)")

    add = sub.add_parser("add", help="Save a note")
    add.add_argument("content", nargs="?", default="", help="Note text ('-' reads stdin)")
    add.add_argument("--title", default="")
    add.add_argument("--url")
    add.add_argument("--tags", help="Comma-separated tags")

    search = sub.add_parser("search", help="Search notes ('tag: x' for tags only)")
    search.add_argument("query")
    search.add_argument("--limit", type=int, default=None)
    search.add_argument("--json", action="store_true", help="Print JSON")

    similar = sub.add_parser("similar", help="Find notes similar to a note")
    similar.add_argument("note_id")
    similar.add_argument("--limit", type=int, default=5)

    reindex = sub.add_parser("reindex", help="Generate missing or outdated embeddings")
    reindex.add_argument("--force", action="store_true", help="Re-embed every note")

    sub.add_parser("stats", help="Show note, cache and metric counts")
    return parser.parse_args(argv)


def update_config(args):
    """Update the global config with command line arguments."""
    if args.database_path:
        config.database_path = Path(args.database_path)
    if args.no_embeddings:
        config.embeddings_enabled = False


def _save_metrics_on_exit():
    """Save metrics to disk on shutdown."""
    if metrics.save_metrics():
        logger.info("Metrics saved to disk on shutdown")


def _print_progress(event):
    if event.get("status") == "batch":
        print(f"\r{event.get('message', '')}", end="", file=sys.stderr, flush=True)
    elif event.get("message"):
        print(event["message"], file=sys.stderr)


async def _run_command(args, server) -> int:
    notes = server.note_service
    search = server.search_service

    if args.command == "add":
        content = sys.stdin.read() if args.content == "-" else args.content
        tags = [t.strip() for t in (args.tags or "").split(",") if t.strip()]
        await server.embeddings.load_model(progress_callback=_print_progress)
        note = await notes.save_note(
            title=args.title, content=content, url=args.url, tags=tags
        )
        print(note.id)
        return 0

    if args.command == "search":
        response = await search.query(args.query, limit=args.limit)
        if args.json:
            print(json.dumps(response.to_dict(), indent=2))
        else:
            if response.notice:
                print(response.notice, file=sys.stderr)
            print(format_results(response.results) or "No results.")
        return 1 if response.failed else 0

    if args.command == "similar":
        results = await search.find_similar(args.note_id, limit=args.limit)
        print(format_results(results) or "No similar notes.")
        return 0

    if args.command == "reindex":
        if not await server.embeddings.load_model(progress_callback=_print_progress):
            print("Embedding model unavailable; nothing was reindexed.", file=sys.stderr)
            return 1
        counts = await notes.reindex(force=args.force, progress_callback=_print_progress)
        print(file=sys.stderr)
        print(json.dumps(counts, indent=2))
        return 0

    if args.command == "stats":
        await search.warm_up()
        stats = {
            "notes": await server.store.get_notes_count(),
            "tags": len(await notes.list_tags()),
            "cache": search.get_cache_stats(),
            "model_loaded": (await server.embeddings.ping())["loaded"],
        }
        print(json.dumps(stats, indent=2))
        return 0

    raise ValueError(f"Unknown command: {args.command}")


def main(argv=None):
    """Run the Super Bookmarks CLI."""
    args = parse_args(argv)
    update_config(args)
    command = args.command or "serve"

    # Configure logging (console + persistent file logging with rotation).
    # The MCP stdio transport owns stdout, so the console handler goes to stderr.
    log_level = getattr(logging, args.log_level.upper(), logging.INFO)
    try:
        log_dir = configure_logging(
            level=log_level if command == "serve" else max(log_level, logging.WARNING),
            console=True,
        )
    except OSError as e:
        # Fall back to basic console logging if file logging fails
        logging.basicConfig(level=log_level)
        logger.warning(f"Failed to configure file logging: {e}")
        log_dir = None
    if log_dir:
        logger.info(f"Persistent logging enabled: {log_dir}")

    atexit.register(_save_metrics_on_exit)

    try:
        logger.info(f"Using SQLite database: {config.get_db_url()}")
        engine = init_db()
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        sys.exit(1)

    server = BookmarksMcpServer(engine=engine)

    if command == "serve":
        try:
            logger.info("Starting Super Bookmarks MCP server")
            server.run()
        except Exception as e:
            logger.error(f"Error running server: {e}")
            sys.exit(1)
        return

    try:
        exit_code = asyncio.run(_run_command(args, server))
    except BookmarksError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        exit_code = 1
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
