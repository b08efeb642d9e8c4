import logging
from datetime import datetime
from typing import List, Optional, Sequence

from skywrite.models.content import CandidateEntry, FeedEntry, FeedSource
from skywrite.services.dedup_store import DedupStore
from skywrite.services.link_selector import select_canonical_link


logger = logging.getLogger(__name__)


async def filter_unposted(
    entries: Sequence[FeedEntry],
    source: FeedSource,
    store: DedupStore,
    now: Optional[datetime] = None,
) -> List[CandidateEntry]:
    """
    Reduce a parsed feed to the entries worth publishing this cycle.

    An entry is kept when it has a published time strictly after the
    source's watermark, a canonical link, and that link is not in the store.
    Original order is preserved. The watermark then slides to
    ``now - backfill`` whatever the outcome.
    """
    watermark = source.watermark
    kept: List[CandidateEntry] = []

    for entry in entries:
        if entry.published is None:
            continue
        if entry.published <= watermark:
            continue

        link = select_canonical_link(entry.links, source.url)
        if link is None:
            logger.debug(f"[{source.url}] Skipping entry without links: {entry.title!r}")
            continue

        if await store.exists(link):
            continue

        kept.append(CandidateEntry(entry=entry, link=link))

    source.advance_watermark(now)
    logger.debug(f"[{source.url}] Watermark moved from {watermark.isoformat()} to {source.watermark.isoformat()}")
    return kept
