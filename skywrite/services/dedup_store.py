from __future__ import annotations

import asyncio
import logging
import sqlite3
from pathlib import Path
from typing import List

import aiosqlite

from skywrite.utils.error_monitoring import StorageError


DEFAULT_MAX_ROWS = 500


class DedupStore:
    """
    SQLite-backed record of URLs that have already been posted.

    Rows are kept in insertion order and capped by ``trim``; the oldest rows
    are evicted first. Reads may run concurrently; writes are serialized
    through a single lock so one process never interleaves inserts with a trim.
    """

    def __init__(self, db_path: str = "data/skywrite.db"):
        self.db_path = db_path
        self.logger = logging.getLogger(__name__)
        self._write_lock = asyncio.Lock()
        # Note: call await initialize_db() after constructing.

    async def initialize_db(self) -> None:
        """Create the posted_urls table. Safe to run on every startup."""
        try:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    """
                    CREATE TABLE IF NOT EXISTS posted_urls (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        url TEXT UNIQUE NOT NULL
                    );
                    """
                )
                await db.commit()
        except (sqlite3.Error, OSError) as e:
            raise StorageError(f"Failed to initialize {self.db_path}: {e}") from e
        self.logger.debug(f"Dedup store ready at {self.db_path}")

    async def exists(self, url: str) -> bool:
        """Check if URL has already been posted"""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                cur = await db.execute(
                    "SELECT 1 FROM posted_urls WHERE url = ? LIMIT 1",
                    (url,),
                )
                found = await cur.fetchone() is not None
        except (sqlite3.Error, OSError) as e:
            raise StorageError(f"Failed to look up {url}: {e}") from e
        self.logger.debug(f"{url} already posted: {found}")
        return found

    async def insert(self, url: str) -> None:
        """Record URL as posted. Re-inserting an existing URL is a no-op."""
        self.logger.debug(f"Storing {url} in posted_urls")
        async with self._write_lock:
            try:
                async with aiosqlite.connect(self.db_path) as db:
                    await db.execute(
                        "INSERT OR IGNORE INTO posted_urls (url) VALUES (?)",
                        (url,),
                    )
                    await db.commit()
            except (sqlite3.Error, OSError) as e:
                raise StorageError(f"Failed to record {url}: {e}") from e

    async def remove(self, url: str) -> bool:
        """
        Forget a posted URL so it may be posted again.
        Returns whether a row was removed; absent URLs are not an error.
        """
        self.logger.debug(f"Removing {url} from posted_urls")
        async with self._write_lock:
            try:
                async with aiosqlite.connect(self.db_path) as db:
                    cur = await db.execute(
                        "DELETE FROM posted_urls WHERE url = ?",
                        (url,),
                    )
                    await db.commit()
                    return cur.rowcount > 0
            except (sqlite3.Error, OSError) as e:
                raise StorageError(f"Failed to remove {url}: {e}") from e

    async def trim(self, max_rows: int = DEFAULT_MAX_ROWS) -> int:
        """
        Evict the oldest rows beyond max_rows, by insertion order.
        Returns number of removed rows.
        """
        async with self._write_lock:
            try:
                async with aiosqlite.connect(self.db_path) as db:
                    cur = await db.execute(
                        """
                        DELETE FROM posted_urls WHERE id IN (
                            SELECT id FROM posted_urls ORDER BY id DESC LIMIT -1 OFFSET ?
                        )
                        """,
                        (max_rows,),
                    )
                    await db.commit()
                    removed = cur.rowcount
            except (sqlite3.Error, OSError) as e:
                raise StorageError(f"Failed to trim posted_urls: {e}") from e
        if removed:
            self.logger.info(f"Trimmed {removed} old entries from posted_urls")
        return removed

    async def count(self) -> int:
        try:
            async with aiosqlite.connect(self.db_path) as db:
                cur = await db.execute("SELECT COUNT(*) FROM posted_urls")
                row = await cur.fetchone()
                return int(row[0])
        except (sqlite3.Error, OSError) as e:
            raise StorageError(f"Failed to count posted_urls: {e}") from e

    async def recent(self, limit: int = 10) -> List[str]:
        """Most recently recorded URLs, newest first."""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                cur = await db.execute(
                    "SELECT url FROM posted_urls ORDER BY id DESC LIMIT ?",
                    (limit,),
                )
                rows = await cur.fetchall()
                return [r[0] for r in rows]
        except (sqlite3.Error, OSError) as e:
            raise StorageError(f"Failed to list posted_urls: {e}") from e
