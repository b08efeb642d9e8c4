from typing import Optional, Sequence
from urllib.parse import urlparse

from skywrite.models.content import FeedLink


def url_domain(url: str) -> Optional[str]:
    """Host of url, or None when it does not parse as an absolute URL."""
    try:
        host = urlparse(url).hostname
    except ValueError:
        return None
    return host or None


def select_canonical_link(links: Sequence[FeedLink], feed_url: str) -> Optional[str]:
    """
    Pick the article URL for an entry.

    The first link on the feed's own domain wins; otherwise the first link
    in document order. Links that fail to parse can only win as that fallback.
    """
    if not links:
        return None

    feed_domain = url_domain(feed_url)
    if feed_domain is not None:
        for link in links:
            if url_domain(link.href) == feed_domain:
                return link.href

    return links[0].href
