#!/usr/bin/env python3
"""
Rivulet command line.

Wires the store, fetcher, normalizer and background scraper together and
exposes the day-to-day operations:

    add URL             subscribe to a feed and fetch it once
    remove URL          unsubscribe (entries and read state are deleted)
    list                show feeds with unread counts
    items               show stored entries, newest first
    read / star ID      change an entry's read or starred flag
    update              fetch every feed once and enrich new entries
    daemon start|stop|status
"""

import argparse
import asyncio
import sys
from typing import List, Optional, Sequence

from config import config, get_logger
from domain import Entry, Source
from errors import ConfigError, RivuletError, SourceNotFoundError
from fetcher import FetchReport, Fetcher, HttpFetcher, ParallelFetcher
from models import DatabaseQueue
from normalizer import FeedNormalizer
from scheduler import Daemon, DaemonConfig, daemon_status, stop_daemon
from scraper import BackgroundScraperHandle, ScraperConfig, ScraperFactory, spawn_background_scraper
from telemetry import init_telemetry, trace_span
from utils import validate_url

logger = get_logger("main")

EXIT_ERROR = 1
EXIT_CONFIG_ERROR = 2


class AppContext:
    """Owns the long-lived collaborators of one process."""

    def __init__(self, db_path: Optional[str] = None, fetcher: Optional[Fetcher] = None,
                 normalizer=None, scraper_config: Optional[ScraperConfig] = None,
                 scraper_factory: Optional[ScraperFactory] = None,
                 max_concurrency: Optional[int] = None) -> None:
        self.store = DatabaseQueue(db_path or config.DATABASE_PATH)
        self.fetcher = ParallelFetcher(fetcher or HttpFetcher(), max_concurrency)
        self.normalizer = normalizer or FeedNormalizer()
        self.scraper_config = scraper_config or ScraperConfig.from_settings(config.SCRAPER_SETTINGS)
        self.scraper_factory = scraper_factory
        self.scraper: Optional[BackgroundScraperHandle] = None

    async def start(self) -> None:
        await self.store.start()
        if self.scraper_config.enabled:
            self.scraper = spawn_background_scraper(self.scraper_config, self.store, self.scraper_factory)

    async def __aenter__(self) -> "AppContext":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @trace_span("refresh", tracer_name="orchestrator")
    async def refresh(self, sources: Optional[Sequence[Source]] = None) -> List[FetchReport]:
        """Fetch all (or the given) sources, then queue the newly inserted entries for scraping."""
        if sources is None:
            sources = await self.store.execute('list_sources')
        reports = await self.fetcher.fetch_all(sources, self.store, self.normalizer)
        for report in reports:
            if report.ok:
                await self.enqueue(report.entries)
        return reports

    async def enqueue(self, entries: Sequence[Entry]) -> None:
        """Hand newly inserted entries to the scrape queue, if it is running."""
        if self.scraper is not None and entries:
            await self.scraper.queue(entries)

    async def shutdown_scraper(self) -> None:
        """Let the scrape queue drain, then stop it."""
        if self.scraper is not None:
            await self.scraper.shutdown()
            await self.scraper.wait_closed()
            self.scraper = None

    async def close(self) -> None:
        try:
            await self.shutdown_scraper()
        finally:
            await self.fetcher.close()
            await self.store.stop()


async def add_feed(ctx: AppContext, url: str) -> None:
    if not validate_url(url):
        raise ConfigError(f"Not a valid feed URL: {url}")
    if await ctx.store.execute('get_source_by_url', url=url) is not None:
        print(f"Feed already exists: {url}")
        return

    source_id = await ctx.store.execute('add_source', url=url)
    print(f"Added feed: {url}")

    source = await ctx.store.execute('get_source', source_id=source_id)
    inserted = await ctx.fetcher.fetch_source(source, ctx.store, ctx.normalizer)
    await ctx.enqueue(inserted)
    source = await ctx.store.execute('get_source', source_id=source_id)
    if source.title:
        print(f"Feed title: {source.title}")
    print(f"Fetched {len(inserted)} items")


async def remove_feed(ctx: AppContext, url: str) -> None:
    source = await ctx.store.execute('get_source_by_url', url=url)
    if source is None:
        raise SourceNotFoundError(f"Feed not found: {url}")
    await ctx.store.execute('delete_source', source_id=source.id)
    print(f"Removed feed: {url}")


async def list_feeds(ctx: AppContext) -> None:
    sources = await ctx.store.execute('list_sources')
    if not sources:
        print("No feeds")
        return
    for source in sources:
        unread = await ctx.store.execute('unread_count', source_id=source.id)
        print(f"{source.display_title()} ({unread} unread)\n  {source.url}")


async def list_items(ctx: AppContext) -> None:
    entries = await ctx.store.execute('get_entries')
    if not entries:
        print("No items")
        return
    for entry in entries:
        state = await ctx.store.execute('get_read_state', entry_id=entry.id)
        marker = " " if state.is_read else "*"
        star = "+" if state.is_starred else " "
        date = entry.published_at.strftime("%Y-%m-%d") if entry.published_at else " " * 10
        print(f"{marker}{star} {date} {entry.id[:12]} {entry.display_title()}")


async def _resolve_entry(ctx: AppContext, entry_id: str):
    entry = await ctx.store.execute('get_entry', entry_id=entry_id)
    if entry is None and len(entry_id) >= 6:
        entry = await ctx.store.execute('find_entry', id_prefix=entry_id)
    if entry is None:
        raise RivuletError(f"Entry not found: {entry_id}")
    return entry


async def mark_read(ctx: AppContext, entry_id: str, is_read: bool) -> None:
    entry = await _resolve_entry(ctx, entry_id)
    await ctx.store.execute('set_read', entry_id=entry.id, is_read=is_read)
    print(f"Marked {'read' if is_read else 'unread'}: {entry.display_title()}")


async def mark_starred(ctx: AppContext, entry_id: str, is_starred: bool) -> None:
    entry = await _resolve_entry(ctx, entry_id)
    await ctx.store.execute('set_starred', entry_id=entry.id, is_starred=is_starred)
    print(f"{'Starred' if is_starred else 'Unstarred'}: {entry.display_title()}")


async def update_feeds(ctx: AppContext) -> int:
    """Fetch every feed once; return the number of failed feeds."""
    sources = await ctx.store.execute('list_sources')
    if not sources:
        print("No feeds to update")
        return 0

    print(f"Updating {len(sources)} feeds...")
    by_id = {source.id: source for source in sources}
    reports = await ctx.refresh(sources)

    total_new = 0
    errors = 0
    for report in reports:
        source = by_id[report.source_id]
        if report.ok:
            total_new += report.new_entries
            if report.new_entries:
                print(f"  {report.new_entries} new items from {source.display_title()}")
        else:
            errors += 1
            print(f"  Error updating {source.display_title()}: {report.error}", file=sys.stderr)

    if ctx.scraper is not None:
        print("Waiting for content enrichment to finish...")
        await ctx.shutdown_scraper()
    print(f"Update complete: {total_new} new items, {errors} errors")
    return errors


async def run_daemon(ctx: AppContext, interval: Optional[str], log_file: Optional[str]) -> None:
    daemon = Daemon(ctx, DaemonConfig.from_config(interval=interval, log_file=log_file))
    await daemon.run()


async def run_command(args: argparse.Namespace) -> int:
    async with AppContext() as ctx:
        if args.command == 'add':
            await add_feed(ctx, args.url)
        elif args.command == 'remove':
            await remove_feed(ctx, args.url)
        elif args.command == 'list':
            await list_feeds(ctx)
        elif args.command == 'items':
            await list_items(ctx)
        elif args.command == 'read':
            await mark_read(ctx, args.entry_id, not args.unread)
        elif args.command == 'star':
            await mark_starred(ctx, args.entry_id, not args.unstar)
        elif args.command == 'update':
            return EXIT_ERROR if await update_feeds(ctx) else 0
        elif args.command == 'daemon':
            await run_daemon(ctx, args.interval, args.log)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='rivulet', description='Feed ingestion and enrichment')
    sub = parser.add_subparsers(dest='command', required=True)

    add = sub.add_parser('add', help='Subscribe to a feed')
    add.add_argument('url')
    remove = sub.add_parser('remove', help='Unsubscribe from a feed')
    remove.add_argument('url')
    sub.add_parser('list', help='List feeds with unread counts')
    sub.add_parser('items', help='List stored entries')

    read = sub.add_parser('read', help='Mark an entry as read')
    read.add_argument('entry_id')
    read.add_argument('--unread', action='store_true', help='Mark as unread instead')
    star = sub.add_parser('star', help='Star an entry')
    star.add_argument('entry_id')
    star.add_argument('--unstar', action='store_true', help='Remove the star instead')

    sub.add_parser('update', help='Fetch all feeds once')

    daemon = sub.add_parser('daemon', help='Run or control the background updater')
    daemon_sub = daemon.add_subparsers(dest='action', required=True)
    start = daemon_sub.add_parser('start', help='Run the updater in the foreground')
    start.add_argument('--interval', help="Update interval, e.g. '30m', '1h', '1d'")
    start.add_argument('--log', help='Also write log lines to this file')
    daemon_sub.add_parser('stop', help='Stop a running daemon')
    daemon_sub.add_parser('status', help='Report whether a daemon is running')
    return parser


def main(argv: Optional[Sequence[str]] = None) -> None:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    init_telemetry("rivulet")

    try:
        if args.command == 'daemon' and args.action == 'stop':
            print(stop_daemon())
            sys.exit(0)
        if args.command == 'daemon' and args.action == 'status':
            print(daemon_status())
            sys.exit(0)
        if args.command == 'daemon':
            # Validate before opening the database
            DaemonConfig.from_config(interval=args.interval)
        sys.exit(asyncio.run(run_command(args)))
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(EXIT_CONFIG_ERROR)
    except RivuletError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(EXIT_ERROR)
    except KeyboardInterrupt:
        logger.info("Interrupted")
        sys.exit(130)


if __name__ == "__main__":
    main()
