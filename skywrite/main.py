#!/usr/bin/env python3
import argparse
import asyncio
import logging
import os
import signal
import sys
from dataclasses import dataclass, field
from datetime import timedelta
from typing import List, Optional, Sequence
from urllib.parse import urlparse

import aiohttp
from dotenv import load_dotenv

from skywrite.models.content import FeedSource
from skywrite.services.bluesky_publisher import BlueskyPublisher
from skywrite.services.dedup_store import DedupStore
from skywrite.services.feed_fetcher import FeedFetcher
from skywrite.services.feed_scheduler import FeedScheduler, Publisher
from skywrite.services.page_metadata import PageMetadataResolver
from skywrite.utils.error_monitoring import ConfigurationError, ErrorHandler, SkywriteError
from skywrite.utils.logging_config import setup_logging


@dataclass
class BotConfig:
    """Bot configuration"""
    # Account
    service: str = "https://bsky.social"
    identifier: str = ""
    password: str = ""

    # Feeds
    feed_urls: List[str] = field(default_factory=list)
    backfill_hours: float = 3
    interval_seconds: float = 300
    languages: List[str] = field(default_factory=lambda: ["en"])
    disable_comments: bool = True

    # Paths
    database_path: str = "data/skywrite.db"
    session_path: str = "data/session.txt"
    log_dir: str = "logs"

    # Runtime
    log_level: str = "INFO"
    log_json: bool = False
    http_timeout_seconds: float = 30
    once: bool = False

    @property
    def backfill(self) -> timedelta:
        return timedelta(hours=self.backfill_hours)


def split_list(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


def parse_bool(value: Optional[str], default: bool) -> bool:
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def validate_feed_urls(urls: Sequence[str]) -> List[str]:
    validated = []
    for url in urls:
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ConfigurationError(f"Unable to parse feed url: {url!r}")
        validated.append(url)
    return validated


def load_config(args: Optional[argparse.Namespace] = None) -> BotConfig:
    """Load configuration from environment, with command line overrides"""
    def pick(name: str, env: str, default: Optional[str] = None) -> Optional[str]:
        value = getattr(args, name, None) if args is not None else None
        return value if value is not None else os.getenv(env, default)

    # Feed URLs only matter to the running bot, not to db maintenance
    command = getattr(args, "command", None) or "start"

    try:
        feed_urls = split_list(pick("feed_urls", "RSS_FEED_URLS", ""))
        if command == "start":
            feed_urls = validate_feed_urls(feed_urls)
        config = BotConfig(
            service=pick("service", "APP_SERVICE", "https://bsky.social"),
            identifier=pick("identifier", "APP_IDENTIFIER", ""),
            password=pick("password", "APP_PASSWORD", ""),
            feed_urls=feed_urls,
            backfill_hours=float(pick("backfill_hours", "RSS_FEED_BACKDATE_HOURS", "3")),
            interval_seconds=float(pick("interval_seconds", "RERUN_INTERVAL_SECONDS", "300")),
            languages=split_list(pick("languages", "POST_LANGUAGES", "en")),
            disable_comments=parse_bool(os.getenv("DISABLE_POST_COMMENTS"), True),
            database_path=pick("database_path", "DATABASE_PATH", "data/skywrite.db"),
            session_path=pick("session_path", "AGENT_SESSION_PATH", "data/session.txt"),
            log_dir=os.getenv("LOG_DIR", "logs"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_json=parse_bool(os.getenv("LOG_JSON"), False),
            http_timeout_seconds=float(os.getenv("HTTP_TIMEOUT_SECONDS", "30")),
            once=bool(getattr(args, "once", False)),
        )
    except ValueError as e:
        raise ConfigurationError(f"Invalid numeric setting: {e}") from e

    if args is not None and getattr(args, "allow_comments", False):
        config.disable_comments = False
    if config.backfill_hours < 0:
        raise ConfigurationError("RSS_FEED_BACKDATE_HOURS must not be negative")
    if config.interval_seconds <= 0:
        raise ConfigurationError("RERUN_INTERVAL_SECONDS must be positive")
    return config


class SkywriteBot:
    """
    Composition root: one feed loop task per configured feed.
    """

    def __init__(
        self,
        feed_urls: Sequence[str],
        backfill: timedelta,
        interval_seconds: float,
        languages: Sequence[str],
        store: DedupStore,
        session: aiohttp.ClientSession,
        publisher: Optional[Publisher] = None,
        once: bool = False,
    ):
        if not feed_urls:
            raise ConfigurationError("At least one feed URL is required (RSS_FEED_URLS)")
        self.feed_urls = list(feed_urls)
        self.backfill = backfill
        self.once = once
        self.store = store
        self.fetcher = FeedFetcher(session)
        self.publisher = publisher
        self.error_handler = ErrorHandler()
        self.shutdown_event = asyncio.Event()
        self.scheduler = FeedScheduler(
            store=store,
            fetcher=self.fetcher,
            resolver=PageMetadataResolver(self.fetcher),
            publisher=publisher,
            languages=languages,
            interval_seconds=interval_seconds,
            error_handler=self.error_handler,
            shutdown_event=self.shutdown_event,
        )
        self.logger = logging.getLogger(__name__)

    def _handle_shutdown(self) -> None:
        self.logger.info("Shutdown requested")
        self.shutdown_event.set()

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._handle_shutdown)
            except (NotImplementedError, RuntimeError):
                pass

    async def run(self) -> None:
        """
        Run every feed loop until shutdown.

        Storage failures in any feed stop the whole bot; other failures stay
        inside the feed that raised them. A shutdown request cancels feed
        cycles that are still fetching or publishing.
        """
        if self.publisher is None:
            raise ConfigurationError("No publisher configured")
        await self.store.initialize_db()
        self._install_signal_handlers()

        tasks = [
            asyncio.create_task(
                self.scheduler.run_forever(FeedSource(url=url, backfill=self.backfill), once=self.once),
                name=f"feed-{idx}",
            )
            for idx, url in enumerate(self.feed_urls)
        ]
        shutdown_task = asyncio.create_task(self.shutdown_event.wait(), name="shutdown")
        self.logger.info(f"Scheduled {len(tasks)} feed loop(s)")

        pending = set(tasks)
        try:
            while pending:
                done, pending = await asyncio.wait(
                    pending | {shutdown_task}, return_when=asyncio.FIRST_COMPLETED
                )
                pending.discard(shutdown_task)
                for task in done:
                    if task is not shutdown_task and not task.cancelled() and task.exception() is not None:
                        raise task.exception()
                if shutdown_task in done:
                    self.logger.info(f"Cancelling {len(pending)} running feed loop(s)")
                    break
        finally:
            for task in (*tasks, shutdown_task):
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, shutdown_task, return_exceptions=True)
            self.logger.info(f"Error statistics: {self.error_handler.get_error_statistics()}")


async def start(config: BotConfig) -> None:
    if not config.identifier or not config.password:
        raise ConfigurationError("Missing APP_IDENTIFIER or APP_PASSWORD")

    store = DedupStore(db_path=config.database_path)
    timeout = aiohttp.ClientTimeout(total=config.http_timeout_seconds)
    async with aiohttp.ClientSession(timeout=timeout) as session:
        publisher = BlueskyPublisher(
            fetcher=FeedFetcher(session),
            service=config.service,
            session_path=config.session_path,
            disable_comments=config.disable_comments,
        )
        await publisher.login(config.identifier, config.password)
        bot = SkywriteBot(
            feed_urls=config.feed_urls,
            backfill=config.backfill,
            interval_seconds=config.interval_seconds,
            languages=config.languages,
            store=store,
            session=session,
            publisher=publisher,
            once=config.once,
        )
        await bot.run()


async def insert_posts(store: DedupStore, urls: Sequence[str]) -> List[str]:
    """Mark URLs as already posted without publishing. Returns newly marked URLs."""
    await store.initialize_db()
    marked = []
    for url in urls:
        if await store.exists(url):
            print(f"{url} is already marked as posted")
            continue
        await store.insert(url)
        marked.append(url)
        print(f"Marking {url} as already posted")
    return marked


async def remove_posts(store: DedupStore, urls: Sequence[str]) -> List[str]:
    """Forget URLs so they may be posted again. Returns removed URLs."""
    await store.initialize_db()
    removed = []
    for url in urls:
        if await store.remove(url):
            removed.append(url)
            print(f"Removing {url} from already posted list")
        else:
            print(f"{url} is not marked as posted")
    return removed


async def show_stats(store: DedupStore, limit: int = 10) -> None:
    await store.initialize_db()
    print("Posted URL statistics")
    print("=" * 50)
    print(f"Total stored URLs: {await store.count()}")
    recent = await store.recent(limit)
    if recent:
        print(f"\nMost recent {len(recent)}:")
        for url in recent:
            print(f"  {url}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="skywrite",
        description="Post new RSS/Atom feed entries to Bluesky",
    )
    parser.add_argument("--database-path", dest="database_path", help="SQLite database file (DATABASE_PATH)")
    sub = parser.add_subparsers(dest="command", required=True)

    start_cmd = sub.add_parser("start", help="Start the bot and check feeds on an interval")
    start_cmd.add_argument("--app-service", dest="service", help="Service base URL (APP_SERVICE)")
    start_cmd.add_argument("--app-identifier", dest="identifier", help="Account handle or email (APP_IDENTIFIER)")
    start_cmd.add_argument("--app-password", dest="password", help="App password (APP_PASSWORD)")
    start_cmd.add_argument("--rss-feed-urls", dest="feed_urls", help="Comma-separated feed URLs (RSS_FEED_URLS)")
    start_cmd.add_argument("--feed-backdate-hours", dest="backfill_hours", help="Backfill window in hours (RSS_FEED_BACKDATE_HOURS)")
    start_cmd.add_argument("--rerun-interval-seconds", dest="interval_seconds", help="Seconds between checks (RERUN_INTERVAL_SECONDS)")
    start_cmd.add_argument("--post-languages", dest="languages", help="Comma-separated ISO-639-1 tags (POST_LANGUAGES)")
    start_cmd.add_argument("--agent-session-path", dest="session_path", help="Persisted session file (AGENT_SESSION_PATH)")
    start_cmd.add_argument("--allow-comments", action="store_true", help="Do not attach a reply gate to posts")
    start_cmd.add_argument("--once", action="store_true", help="Run a single cycle per feed and exit")

    db_cmd = sub.add_parser("db", help="Maintain the posted URL database")
    db_sub = db_cmd.add_subparsers(dest="db_command", required=True)
    insert_cmd = db_sub.add_parser("insert-post", help="Mark URLs as already posted (does not create posts)")
    insert_cmd.add_argument("posts", help="Comma-separated URLs")
    remove_cmd = db_sub.add_parser("remove-post", help="Forget posted URLs so they may be reposted")
    remove_cmd.add_argument("posts", help="Comma-separated URLs")
    stats_cmd = db_sub.add_parser("stats", help="Show stored URL statistics")
    stats_cmd.add_argument("--limit", type=int, default=10, help="Number of recent URLs to list")

    return parser


async def run_command(args: argparse.Namespace, config: BotConfig) -> None:
    if args.command == "start":
        await start(config)
        return

    store = DedupStore(db_path=config.database_path)
    if args.db_command == "insert-post":
        await insert_posts(store, split_list(args.posts))
    elif args.db_command == "remove-post":
        await remove_posts(store, split_list(args.posts))
    elif args.db_command == "stats":
        await show_stats(store, limit=args.limit)


def main(argv: Optional[Sequence[str]] = None) -> None:
    """Main entry point"""
    load_dotenv()
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(2)

    setup_logging(
        log_level=config.log_level,
        log_dir=config.log_dir,
        enable_file_logging=args.command == "start",
        enable_structured_logging=config.log_json,
    )

    try:
        asyncio.run(run_command(args, config))
    except KeyboardInterrupt:
        print("\nShutting down gracefully...")
    except SkywriteError as e:
        logging.exception("Fatal error in main")
        print(f"Fatal error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
