import asyncio
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import aiohttp
import pytest

from skywrite.models.content import FeedEntry, FeedLink, PostPayload
from skywrite.utils.error_monitoring import PublishError


NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class FakeResponse:
    def __init__(self, status: int = 200, body: bytes = b"", error: Optional[Exception] = None):
        self.status = status
        self.body = body
        self.error = error

    async def __aenter__(self):
        if self.error is not None:
            raise self.error
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def read(self) -> bytes:
        return self.body


class FakeSession:
    """Stands in for aiohttp.ClientSession.get()."""

    def __init__(self, routes: Optional[Dict[str, FakeResponse]] = None):
        self.routes = routes or {}
        self.requests: List[str] = []

    def add(self, url: str, body=b"", status: int = 200, error: Optional[Exception] = None) -> None:
        if isinstance(body, str):
            body = body.encode("utf-8")
        self.routes[url] = FakeResponse(status=status, body=body, error=error)

    def get(self, url: str, headers=None) -> FakeResponse:
        self.requests.append(url)
        if url not in self.routes:
            return FakeResponse(error=aiohttp.ClientConnectionError(f"no route to {url}"))
        return self.routes[url]


class FakePublisher:
    def __init__(self, fail_on: Optional[List[str]] = None):
        self.fail_on = set(fail_on or [])
        self.posts: List[PostPayload] = []

    async def publish(self, post: PostPayload) -> str:
        if post.embed and post.embed.uri in self.fail_on:
            raise PublishError(f"rejected {post.embed.uri}")
        self.posts.append(post)
        return f"at://did:plc:test/app.bsky.feed.post/{len(self.posts)}"


def make_entry(href: Optional[str] = None, minutes_ago: Optional[int] = 10, title: Optional[str] = "Title",
               summary: Optional[str] = None, links: Optional[List[str]] = None) -> FeedEntry:
    hrefs = links if links is not None else ([href] if href else [])
    return FeedEntry(
        published=NOW - timedelta(minutes=minutes_ago) if minutes_ago is not None else None,
        title=title,
        summary=summary,
        links=[FeedLink(href=h) for h in hrefs],
    )


def page_html(description: Optional[str] = None, image: Optional[str] = None) -> str:
    meta = ""
    if description is not None:
        meta += f'<meta property="og:description" content="{description}">'
    if image is not None:
        meta += f'<meta property="og:image" content="{image}">'
    return f"<html><head>{meta}</head><body><p>Article</p></body></html>"


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def fake_session():
    return FakeSession()


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "data" / "posted.db")
