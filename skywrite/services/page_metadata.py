"""
Resolves link card metadata for a feed entry.

Feed fields win over scraped page fields; the page is fetched exactly once
per entry and the parsed document is shared by every lookup.
"""

import logging
from typing import Optional, Union
from urllib.parse import urlparse

from bs4 import BeautifulSoup

from skywrite.models.content import FeedEntry, PageMetadata
from skywrite.services.feed_fetcher import FeedFetcher


NO_DESCRIPTION = "This site has not provided a description"

OG_DESCRIPTION_SELECTOR = 'meta[property="og:description"]'
OG_IMAGE_SELECTOR = 'meta[property="og:image"]'


class PageDocument:
    """A fetched page, parsed once.

    Raw bytes are decoded by BeautifulSoup using the page's <meta charset>.
    """

    def __init__(self, url: str, content: Union[bytes, str]):
        self.url = url
        self.soup = BeautifulSoup(content, "html.parser")

    def select_attribute(self, selector: str, attribute: str = "content") -> Optional[str]:
        node = self.soup.select_one(selector)
        if node is None:
            return None
        value = node.get(attribute)
        if isinstance(value, list):
            value = " ".join(value)
        return value


def strip_markup(fragment: str) -> str:
    """Concatenate the text nodes of an HTML fragment, dropping all tags."""
    return BeautifulSoup(fragment, "html.parser").get_text()


def parse_absolute_url(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    value = value.strip()
    try:
        parsed = urlparse(value)
    except ValueError:
        return None
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return None
    return value


class PageMetadataResolver:
    def __init__(self, fetcher: FeedFetcher):
        self.fetcher = fetcher
        self.logger = logging.getLogger(__name__)

    async def load(self, url: str) -> PageDocument:
        content = await self.fetcher.fetch_page(url)
        return PageDocument(url, content)

    async def resolve(self, entry: FeedEntry, link: str) -> PageMetadata:
        """
        Build title, description and thumbnail for ``link``.

        Fetch failures propagate: the caller abandons this entry for the cycle.
        """
        page = await self.load(link)

        title = entry.title or link

        if entry.summary:
            description = strip_markup(entry.summary)
        else:
            description = page.select_attribute(OG_DESCRIPTION_SELECTOR) or NO_DESCRIPTION

        thumbnail_url = parse_absolute_url(page.select_attribute(OG_IMAGE_SELECTOR))
        if thumbnail_url is None:
            self.logger.debug(f"No usable og:image for {link}")

        return PageMetadata(
            title=title,
            description=description,
            thumbnail_url=thumbnail_url,
        )
