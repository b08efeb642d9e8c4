import asyncio
import logging
from datetime import datetime
from typing import Optional, Protocol, Sequence

from skywrite.models.content import CandidateEntry, CycleReport, FeedSource, PostPayload
from skywrite.services.dedup_store import DEFAULT_MAX_ROWS, DedupStore
from skywrite.services.entry_filter import filter_unposted
from skywrite.services.feed_fetcher import FeedFetcher
from skywrite.services.page_metadata import PageMetadataResolver
from skywrite.services.post_assembler import assemble_post
from skywrite.utils.error_monitoring import (
    ErrorHandler,
    FeedParseError,
    StorageError,
    TransportError,
    UpstreamStatusError,
)
from skywrite.utils.logging_config import PerformanceTracker, log_pipeline_metrics


class Publisher(Protocol):
    async def publish(self, post: PostPayload) -> str: ...


class FeedScheduler:
    """
    Drives the fetch -> filter -> publish -> record -> trim loop for feeds.

    One scheduler is shared by all feed tasks; per-feed state lives in the
    FeedSource handed to each call. Entries within a cycle are processed
    sequentially and in feed order.
    """

    def __init__(
        self,
        store: DedupStore,
        fetcher: FeedFetcher,
        resolver: PageMetadataResolver,
        publisher: Publisher,
        languages: Sequence[str],
        interval_seconds: float = 300,
        max_rows: int = DEFAULT_MAX_ROWS,
        error_handler: Optional[ErrorHandler] = None,
        shutdown_event: Optional[asyncio.Event] = None,
    ):
        self.store = store
        self.fetcher = fetcher
        self.resolver = resolver
        self.publisher = publisher
        self.languages = list(languages)
        self.interval_seconds = interval_seconds
        self.max_rows = max_rows
        self.error_handler = error_handler or ErrorHandler()
        self.shutdown_event = shutdown_event or asyncio.Event()
        self.logger = logging.getLogger(__name__)

    async def run_forever(self, source: FeedSource, once: bool = False) -> None:
        """
        Run cycles for one feed until shutdown.

        StorageError stops the task and propagates; any other failure is
        recorded and the feed waits for its next cycle.
        """
        self.logger.info(f"Starting feed loop for {source.url} (watermark {source.watermark.isoformat()})")
        while not self.shutdown_event.is_set():
            try:
                report = await self.run_cycle(source)
            except Exception as e:  # noqa: BLE001
                self.error_handler.handle_error(e, source.url, "cycle")
                if self.error_handler.is_fatal(e):
                    raise
            else:
                if not report.fetch_failed:
                    self.logger.info(
                        f"[{source.url}] Cycle done: {report.fetched} fetched, {report.candidates} new, "
                        f"{len(report.published)} posted, {len(report.failed)} failed"
                    )

            for pattern in self.error_handler.detect_error_patterns():
                if source.url in pattern:
                    self.logger.warning(pattern)

            if once:
                break
            self.logger.info(f"[{source.url}] Now waiting for {self.interval_seconds} seconds before re-running")
            await self._sleep()
        self.logger.info(f"Feed loop for {source.url} stopped")

    async def _sleep(self) -> None:
        try:
            await asyncio.wait_for(self.shutdown_event.wait(), timeout=self.interval_seconds)
        except asyncio.TimeoutError:
            pass

    async def run_cycle(self, source: FeedSource, now: Optional[datetime] = None) -> CycleReport:
        report = CycleReport(feed_url=source.url)

        with PerformanceTracker(f"cycle {source.url}", self.logger):
            self.logger.info(f"Checking for unposted entries for feed: {source.url}")
            try:
                entries = await self.fetcher.fetch_feed(source.url)
            except (TransportError, UpstreamStatusError, FeedParseError) as e:
                self.error_handler.handle_error(e, source.url, "fetch_feed")
                report.fetch_failed = True
                return report
            report.fetched = len(entries)

            start = asyncio.get_running_loop().time()
            candidates = await filter_unposted(entries, source, self.store, now=now)
            report.candidates = len(candidates)
            log_pipeline_metrics(
                self.logger,
                "filter",
                len(entries),
                len(candidates),
                (asyncio.get_running_loop().time() - start) * 1000,
                feed=source.url,
            )

            for candidate in candidates:
                if await self._process_entry(source, candidate):
                    report.published.append(candidate.link)
                else:
                    report.failed.append(candidate.link)

            await self.store.trim(self.max_rows)

        return report

    async def _process_entry(self, source: FeedSource, candidate: CandidateEntry) -> bool:
        """Resolve, assemble, publish and record one entry. False if skipped."""
        link = candidate.link
        self.logger.info(f"[{source.url}] Running for entry '{link}'")
        try:
            metadata = await self.resolver.resolve(candidate.entry, link)
            post = assemble_post(candidate.entry, link, metadata, self.languages)
            post_id = await self.publisher.publish(post)
        except StorageError:
            raise
        except Exception as e:  # noqa: BLE001
            self.error_handler.handle_error(e, source.url, "process_entry", {"link": link})
            return False

        # Record straight after publishing to keep the duplicate window small
        await self.store.insert(link)
        self.logger.info(f"[{source.url}] Posted {link} as {post_id}")
        return True
