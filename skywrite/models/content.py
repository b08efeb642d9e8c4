"""
Content models for the feed syndication pipeline.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional


EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class FeedLink:
    """A candidate link attached to a feed entry."""

    href: str
    rel: Optional[str] = None


@dataclass(frozen=True)
class FeedEntry:
    """Represents one parsed feed entry for a single fetch cycle."""

    published: Optional[datetime] = None
    title: Optional[str] = None
    summary: Optional[str] = None
    links: List[FeedLink] = field(default_factory=list)


@dataclass
class FeedSource:
    """
    A configured feed and its fetch-after watermark.

    The watermark is owned by the scheduler task driving this feed and is
    never persisted; a fresh process starts from ``now - backfill``.
    """

    url: str
    backfill: timedelta
    watermark: datetime = None

    def __post_init__(self):
        if self.watermark is None:
            self.watermark = datetime.now(timezone.utc) - self.backfill

    def advance_watermark(self, now: Optional[datetime] = None) -> datetime:
        """Slide the watermark to ``now - backfill``."""
        now = now or datetime.now(timezone.utc)
        self.watermark = now - self.backfill
        return self.watermark


@dataclass(frozen=True)
class CandidateEntry:
    """An entry that survived filtering, paired with its canonical link."""

    entry: FeedEntry
    link: str


@dataclass(frozen=True)
class PageMetadata:
    title: str
    description: str
    thumbnail_url: Optional[str] = None


@dataclass(frozen=True)
class PostEmbed:
    """External link card attached to a post."""

    title: str
    description: str
    uri: str
    thumbnail_url: Optional[str] = None


@dataclass(frozen=True)
class PostPayload:
    """A fully assembled post, ready for the publisher."""

    text: str
    created_at: datetime
    languages: List[str]
    embed: Optional[PostEmbed] = None


@dataclass
class CycleReport:
    """Outcome of one feed cycle."""

    feed_url: str
    fetched: int = 0
    candidates: int = 0
    published: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    fetch_failed: bool = False
