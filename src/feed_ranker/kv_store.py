"""
Key-value stores shared by the feed cache, the experiment registry and
assignment memoization.

All stores hold string values, support an optional TTL per key and list
keys by prefix. Backend failures are raised as ``CacheError``.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from pathlib import Path
from typing import Callable, Protocol, runtime_checkable

import redis.asyncio as redis

from .config import REDIS_URL, SQLITE_PATH
from .errors import CacheError

logger = logging.getLogger(__name__)


@runtime_checkable
class KeyValueStore(Protocol):
    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None: ...

    async def delete(self, *keys: str) -> int: ...

    async def keys(self, prefix: str) -> list[str]: ...


class InMemoryKeyValueStore:
    """Process-local store with lazy expiry. Used in tests and single-node setups."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._data: dict[str, tuple[str, float | None]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str) -> str | None:
        item = self._data.get(key)
        if item is None:
            return None
        value, expires_at = item
        if expires_at is not None and expires_at <= self._clock():
            self._data.pop(key, None)
            return None
        return value

    async def get(self, key: str) -> str | None:
        with self._lock:
            return self._live(key)

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds else None
        with self._lock:
            self._data[key] = (value, expires_at)

    async def delete(self, *keys: str) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                if self._data.pop(key, None) is not None:
                    removed += 1
        return removed

    async def keys(self, prefix: str) -> list[str]:
        with self._lock:
            return [k for k in list(self._data) if k.startswith(prefix) and self._live(k) is not None]


class SqliteKeyValueStore:
    """SQLite-backed store for single-host deployments."""

    def __init__(self, db_path: str | None = None, clock: Callable[[], float] = time.time):
        if db_path is None:
            db_path = SQLITE_PATH or None
        if db_path is None:
            db_dir = Path.home() / ".feed-ranker"
            db_dir.mkdir(parents=True, exist_ok=True)
            db_path = str(db_dir / "feed_ranker.db")

        self.db_path = db_path
        self._clock = clock
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self):
        """Initialize the key-value table if it doesn't exist."""
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS kv_store (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                expires_at REAL,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """
        )
        self.conn.commit()

    def close(self):
        self.conn.close()

    async def get(self, key: str) -> str | None:
        try:
            with self._lock:
                row = self.conn.execute(
                    "SELECT value, expires_at FROM kv_store WHERE key = ?", (key,)
                ).fetchone()
                if not row:
                    return None
                value, expires_at = row
                if expires_at is not None and expires_at <= self._clock():
                    self.conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
                    self.conn.commit()
                    return None
                return value
        except sqlite3.Error as e:
            raise CacheError(f"sqlite get failed for {key}: {e}") from e

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds else None
        try:
            with self._lock:
                self.conn.execute(
                    """
                    INSERT INTO kv_store (key, value, expires_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(key)
                    DO UPDATE SET value = excluded.value,
                                  expires_at = excluded.expires_at,
                                  updated_at = CURRENT_TIMESTAMP
                    """,
                    (key, value, expires_at),
                )
                self.conn.commit()
        except sqlite3.Error as e:
            raise CacheError(f"sqlite set failed for {key}: {e}") from e

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        placeholders = ", ".join("?" for _ in keys)
        try:
            with self._lock:
                cursor = self.conn.execute(f"DELETE FROM kv_store WHERE key IN ({placeholders})", keys)
                self.conn.commit()
                return cursor.rowcount
        except sqlite3.Error as e:
            raise CacheError(f"sqlite delete failed: {e}") from e

    async def keys(self, prefix: str) -> list[str]:
        escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        try:
            with self._lock:
                rows = self.conn.execute(
                    """SELECT key FROM kv_store
                       WHERE key LIKE ? ESCAPE '\\'
                         AND (expires_at IS NULL OR expires_at > ?)""",
                    (escaped + "%", self._clock()),
                ).fetchall()
        except sqlite3.Error as e:
            raise CacheError(f"sqlite key scan failed: {e}") from e
        return [row[0] for row in rows]


class RedisKeyValueStore:
    """Redis-backed store for multi-node deployments."""

    def __init__(self, redis_url: str | None = None, client: redis.Redis | None = None):
        if client is None:
            client = redis.from_url(redis_url or REDIS_URL, decode_responses=True)
        self.client = client

    async def close(self):
        await self.client.aclose()

    async def get(self, key: str) -> str | None:
        try:
            return await self.client.get(key)
        except redis.RedisError as e:
            raise CacheError(f"redis get failed for {key}: {e}") from e

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        try:
            await self.client.set(key, value, ex=ttl_seconds or None)
        except redis.RedisError as e:
            raise CacheError(f"redis set failed for {key}: {e}") from e

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        try:
            return await self.client.delete(*keys)
        except redis.RedisError as e:
            raise CacheError(f"redis delete failed: {e}") from e

    async def keys(self, prefix: str) -> list[str]:
        try:
            return [key async for key in self.client.scan_iter(match=f"{prefix}*", count=100)]
        except redis.RedisError as e:
            raise CacheError(f"redis key scan failed: {e}") from e
