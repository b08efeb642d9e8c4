import asyncio
import logging
from datetime import datetime, timezone
from typing import List, Optional

import aiohttp
import feedparser

from skywrite.models.content import FeedEntry, FeedLink
from skywrite.utils.error_monitoring import (
    FeedParseError,
    TransportError,
    UpstreamStatusError,
)


USER_AGENT = "skywrite/1.0 (+https://github.com/skywrite/skywrite)"

FEED_ACCEPT = "application/rss+xml,application/atom+xml,application/xml;q=0.9,*/*;q=0.8"
PAGE_ACCEPT = "text/html,application/xhtml+xml;q=0.9,*/*;q=0.8"

# Media attachments, never the article itself
IGNORED_LINK_RELS = {"enclosure"}


class FeedFetcher:
    """
    HTTP access for feeds and linked pages.

    Wraps a shared aiohttp session. A single attempt is made per call;
    retrying is left to the next scheduled cycle.
    """

    def __init__(self, session: aiohttp.ClientSession):
        self.session = session
        self.logger = logging.getLogger(__name__)

    async def fetch(self, url: str, accept: str = FEED_ACCEPT) -> bytes:
        """Fetch raw bytes, raising on transport failure or non-2xx status."""
        headers = {
            "User-Agent": USER_AGENT,
            "Accept": accept,
        }
        try:
            async with self.session.get(url, headers=headers) as resp:
                if not 200 <= resp.status < 300:
                    raise UpstreamStatusError(url, resp.status)
                return await resp.read()
        except UpstreamStatusError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransportError(url, repr(e)) from e

    async def fetch_page(self, url: str) -> bytes:
        """Fetch a linked page for metadata scraping.

        Bytes are returned undecoded so the parser can honour the page's
        declared charset.
        """
        return await self.fetch(url, accept=PAGE_ACCEPT)

    async def fetch_feed(self, feed_url: str) -> List[FeedEntry]:
        content = await self.fetch(feed_url)
        entries = parse_feed(content, feed_url)
        self.logger.debug(f"Parsed {len(entries)} entries from {feed_url}")
        return entries


def parse_feed(content: bytes, feed_url: str = "") -> List[FeedEntry]:
    """Parse RSS/Atom feed content into entries, in document order."""
    parsed = feedparser.parse(content)
    if parsed.bozo and not parsed.entries:
        raise FeedParseError(f"Unable to parse feed {feed_url}: {parsed.get('bozo_exception')!r}")

    entries: List[FeedEntry] = []
    for entry in parsed.entries:
        links = [
            FeedLink(href=link["href"].strip(), rel=link.get("rel"))
            for link in entry.get("links", [])
            if link.get("href") and link.get("rel") not in IGNORED_LINK_RELS
        ]
        entries.append(
            FeedEntry(
                published=_struct_to_datetime(entry.get("published_parsed")),
                title=(entry.get("title") or "").strip() or None,
                summary=entry.get("summary") or None,
                links=links,
            )
        )
    return entries


def _struct_to_datetime(value) -> Optional[datetime]:
    """feedparser normalizes parsed dates to UTC struct_time."""
    if not value:
        return None
    try:
        return datetime(*value[:6], tzinfo=timezone.utc)
    except (TypeError, ValueError):
        return None
