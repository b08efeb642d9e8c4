"""
Bluesky publishing via the atproto SDK.

One publisher (and one authenticated client) is shared by all feed tasks;
publishing is serialized behind a lock so session refreshes and record
creation never interleave.
"""

import asyncio
import logging
import re
from pathlib import Path
from typing import Optional

from atproto import AsyncClient, AtUri, SessionEvent, client_utils, models

from skywrite.models.content import PostEmbed, PostPayload
from skywrite.services.feed_fetcher import FeedFetcher
from skywrite.utils.error_monitoring import PublishError, SkywriteError
from skywrite.utils.image import prepare_thumbnail


URL_PATTERN = re.compile(r"https?://\S+")

IMAGE_ACCEPT = "image/avif,image/webp,image/png,image/jpeg,image/*;q=0.8"


def build_rich_text(text: str) -> client_utils.TextBuilder:
    """Plain text with a link facet for every URL it contains."""
    builder = client_utils.TextBuilder()
    cursor = 0
    for match in URL_PATTERN.finditer(text):
        if match.start() > cursor:
            builder.text(text[cursor:match.start()])
        builder.link(match.group(0), match.group(0))
        cursor = match.end()
    if cursor < len(text):
        builder.text(text[cursor:])
    return builder


class BlueskyPublisher:
    def __init__(
        self,
        fetcher: FeedFetcher,
        service: str = "https://bsky.social",
        session_path: str = "data/session.txt",
        disable_comments: bool = True,
        client: Optional[AsyncClient] = None,
    ):
        self.fetcher = fetcher
        self.session_path = Path(session_path)
        self.disable_comments = disable_comments
        self.client = client or AsyncClient(base_url=service.rstrip("/") + "/xrpc")
        self.client.on_session_change(self._on_session_change)
        self._lock = asyncio.Lock()
        self.logger = logging.getLogger(__name__)

    async def _on_session_change(self, event: SessionEvent, session) -> None:
        if event in (SessionEvent.CREATE, SessionEvent.REFRESH):
            self._write_session(session.export())

    def _write_session(self, session_string: str) -> None:
        self.logger.debug(f"Writing persisted session to {self.session_path}")
        self.session_path.parent.mkdir(parents=True, exist_ok=True)
        self.session_path.write_text(session_string, encoding="utf-8")

    def _read_session(self) -> Optional[str]:
        try:
            return self.session_path.read_text(encoding="utf-8").strip() or None
        except OSError:
            return None

    async def login(self, identifier: str, password: str) -> None:
        """Resume the persisted session, falling back to credentials."""
        session_string = self._read_session()
        if session_string:
            try:
                profile = await self.client.login(session_string=session_string)
                self.logger.info(f"Resumed persisted session for {profile.handle}")
                return
            except Exception as e:  # noqa: BLE001
                self.logger.info(f"Persisted session unusable ({e!r}); logging in with credentials")

        try:
            profile = await self.client.login(identifier, password)
        except Exception as e:  # noqa: BLE001
            raise PublishError(f"Authentication failure for {identifier}: {e}") from e
        self._write_session(self.client.export_session_string())
        self.logger.info(f"Successful login for {profile.handle}")

    async def publish(self, post: PostPayload) -> str:
        """Create the post record and return its at:// URI."""
        async with self._lock:
            try:
                return await self._publish(post)
            except SkywriteError:
                raise
            except Exception as e:  # noqa: BLE001
                raise PublishError(f"Failed to publish '{post.text}': {e}") from e

    async def _publish(self, post: PostPayload) -> str:
        self.logger.info(f"Constructing post data for: '{post.text}'")
        rich_text = build_rich_text(post.text)
        embed = await self._build_embed(post.embed) if post.embed else None

        record = models.AppBskyFeedPost.Record(
            text=rich_text.build_text(),
            facets=rich_text.build_facets() or None,
            created_at=post.created_at.isoformat(),
            langs=post.languages or None,
            embed=embed,
        )
        repo = self.client.me.did
        created = await self.client.app.bsky.feed.post.create(repo, record)

        if self.disable_comments:
            await self._disable_replies(repo, created.uri)

        self.logger.info(f"Successfully created post {created.uri}")
        return created.uri

    async def _build_embed(self, embed: PostEmbed) -> models.AppBskyEmbedExternal.Main:
        thumb = None
        if embed.thumbnail_url:
            thumb = await self._upload_thumbnail(embed.thumbnail_url, embed.uri)
        return models.AppBskyEmbedExternal.Main(
            external=models.AppBskyEmbedExternal.External(
                title=embed.title,
                description=embed.description,
                uri=embed.uri,
                thumb=thumb,
            )
        )

    async def _upload_thumbnail(self, image_url: str, uri: str):
        """Upload a re-encoded thumbnail; on any failure, post without one."""
        try:
            raw = await self.fetcher.fetch(image_url, accept=IMAGE_ACCEPT)
            data = await asyncio.to_thread(prepare_thumbnail, raw)
            self.logger.debug(f"Uploading blob data for '{uri}'")
            uploaded = await self.client.upload_blob(data)
            return uploaded.blob
        except Exception as e:  # noqa: BLE001
            self.logger.warning(f"Thumbnail {image_url} for {uri} skipped: {e!r}")
            return None

    async def _disable_replies(self, repo: str, post_uri: str) -> None:
        self.logger.info(f"Disabling post comments via threadgate for '{post_uri}'")
        gate = models.AppBskyFeedThreadgate.Record(
            post=post_uri,
            created_at=self.client.get_current_time_iso(),
            allow=[],
        )
        try:
            await self.client.app.bsky.feed.threadgate.create(
                repo, gate, rkey=AtUri.from_str(post_uri).rkey
            )
        except Exception as e:  # noqa: BLE001
            self.logger.warning(f"Failed to set threadgate reply restriction for {post_uri} - continuing: {e!r}")
