# madlan_crawler/cli.py
"""Frontier maintenance CLI: ``madlan-frontier`` / ``python -m madlan_crawler.cli``.

    status [city]          frontier counters and recent crawl sessions for a city
    clear [city]           drop a city's frontier entries
    clear-all              drop every frontier entry
    list [city] [page]     frontier entries, optionally for one search page
    delete-property ID     remove a property and all its child rows
    prune-orphans          remove child rows whose property is gone

Exit status is 0 on success, 1 on failure and 2 on usage errors.
"""
import argparse
import asyncio
import sys

from .config import BACKENDS, load_config
from .context import CrawlContext
from .errors import ConfigError, CrawlerError
from .utils import logger

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2
RECENT_SESSIONS = 5


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="madlan-frontier", description="Inspect and maintain the crawl frontier")
    p.add_argument("--backend", choices=BACKENDS, help="storage backend (overrides DB_BACKEND)")
    sub = p.add_subparsers(dest="command", required=True)

    status = sub.add_parser("status", help="show frontier counters")
    status.add_argument("city", nargs="?")

    clear = sub.add_parser("clear", help="remove a city's frontier entries")
    clear.add_argument("city", nargs="?")

    sub.add_parser("clear-all", help="remove every frontier entry")

    lst = sub.add_parser("list", help="list frontier entries")
    lst.add_argument("city", nargs="?")
    lst.add_argument("page", nargs="?", type=int)

    delete = sub.add_parser("delete-property", help="delete a property and its child rows")
    delete.add_argument("property_id")

    sub.add_parser("prune-orphans", help="delete child rows without a property")
    return p


async def _status(ctx, city, out):
    s = await ctx.frontier.get_stats(city)
    print(f"Frontier status for {city}", file=out)
    print(f"  total:       {s.total}", file=out)
    print(f"  last page:   {s.last_page}", file=out)
    print(f"  processed:   {s.processed}", file=out)
    print(f"  unprocessed: {s.unprocessed}", file=out)
    print(f"  successful:  {s.successful}", file=out)
    print(f"  failed:      {s.failed}", file=out)

    sessions = await ctx.repos.sessions.recent(city, limit=RECENT_SESSIONS)
    print("Recent crawl sessions", file=out)
    if not sessions:
        print("  none", file=out)
    for r in sessions:
        started = r.start_time.strftime("%Y-%m-%d %H:%M") if r.start_time else "?"
        print(f"  {r.session_id[:8]} {started} {r.status} ({r.stop_reason or '-'}): "
              f"found {r.properties_found}, new {r.properties_new}, "
              f"updated {r.properties_updated}, failed {r.properties_failed}", file=out)
        errors = await ctx.repos.sessions.error_stats(r.session_id)
        if errors:
            print("    errors: " + ", ".join(f"{k}={n}" for k, n in errors.items()), file=out)
    return EXIT_OK


async def _list(ctx, city, page, out):
    entries = await ctx.frontier.urls_by_page(city, page)
    current = None
    for e in entries:
        if e.search_page != current:
            current = e.search_page
            print(f"page {current}:", file=out)
        line = f"  [{e.outcome.value}] {e.url}"
        if e.error_message:
            line += f"  ({e.error_message})"
        print(line, file=out)
    print(f"{len(entries)} entries", file=out)
    return EXIT_OK


async def _dispatch(args, config, out) -> int:
    city = getattr(args, "city", None) or config.city
    async with CrawlContext(config) as ctx:
        if args.command == "status":
            return await _status(ctx, city, out)
        if args.command == "clear":
            removed = await ctx.frontier.clear(city)
            print(f"Removed {removed} entries for {city}", file=out)
            return EXIT_OK
        if args.command == "clear-all":
            removed = await ctx.frontier.clear_all()
            print(f"Removed {removed} entries", file=out)
            return EXIT_OK
        if args.command == "list":
            return await _list(ctx, city, args.page, out)
        if args.command == "delete-property":
            if not await ctx.repos.properties.delete(args.property_id):
                print(f"No property {args.property_id}", file=sys.stderr)
                return EXIT_FAILURE
            print(f"Deleted property {args.property_id}", file=out)
            return EXIT_OK
        if args.command == "prune-orphans":
            removed = await ctx.repos.properties.prune_orphans()
            for table, n in removed.items():
                print(f"  {table}: {n}", file=out)
            print(f"Removed {sum(removed.values())} orphaned rows", file=out)
            return EXIT_OK
    return EXIT_USAGE


def main(argv=None, out=None) -> int:
    out = out or sys.stdout
    try:
        args = build_parser().parse_args(argv)
    except SystemExit as e:
        return e.code if isinstance(e.code, int) else EXIT_USAGE
    try:
        config = load_config(db_backend=args.backend)
    except ConfigError as e:
        print(e, file=sys.stderr)
        return EXIT_USAGE
    try:
        return asyncio.run(_dispatch(args, config, out))
    except CrawlerError as e:
        logger.error("%s failed: %s", args.command, e)
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
