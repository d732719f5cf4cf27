# src/feed_ranker/cache.py
"""
Feed, preference and popularity caching on top of a key-value store.

Every value is wrapped in a CacheEntry (payload, created_at, ttl) and
checked for freshness on read against the cache's own clock, so expiry
works the same on every backend and can be driven from tests. Backend
failures are logged and treated as misses.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections import defaultdict
from typing import Awaitable, Callable, TypeVar

from pydantic import ValidationError

from .background_tasks import PrewarmReport, prewarm_feeds
from .config import (
    EXPLORE_FEED_CACHE_TTL,
    FEED_CACHE_TTL,
    MAX_FEED_CACHE_TTL,
    MIN_FEED_CACHE_TTL,
    PERSONALIZED_FEED_CACHE_TTL,
    POPULARITY_CACHE_TTL,
    PREFERENCES_CACHE_TTL,
    TRENDING_FEED_CACHE_TTL,
)
from .errors import CacheError
from .kv_store import KeyValueStore
from .models import (
    CacheEntry,
    CacheStats,
    CategoryStats,
    FeedReasonType,
    FeedType,
    GeneratedFeed,
    UserPreferenceProfile,
)

logger = logging.getLogger(__name__)

KEY_VERSION = "v1"
FEED = "feed"
PREFERENCES = "user_prefs"
POPULARITY = "popularity"

FEED_TTLS = {
    FeedType.HOME: FEED_CACHE_TTL,
    FeedType.FOLLOWING: FEED_CACHE_TTL,
    FeedType.EXPLORE: EXPLORE_FEED_CACHE_TTL,
    FeedType.TRENDING: TRENDING_FEED_CACHE_TTL,
    FeedType.PERSONALIZED: PERSONALIZED_FEED_CACHE_TTL,
}

VOLATILE_REASONS = {FeedReasonType.TRENDING, FeedReasonType.RECENCY}
STABLE_REASONS = {FeedReasonType.SIMILAR_USERS, FeedReasonType.TOPIC_INTEREST}
VOLATILE_SHARE = 0.5
STABLE_SHARE = 0.7
SIZE_PRUNE_THRESHOLD = 1024  # tracked keys before expired ones are swept on write

T = TypeVar("T")

FeedGenerator = Callable[[str, FeedType], Awaitable[GeneratedFeed]]


def feed_key(user_id: str, feed_type: FeedType) -> str:
    return f"{KEY_VERSION}:{FEED}:{user_id}:{feed_type.name}"


def preferences_key(user_id: str) -> str:
    return f"{KEY_VERSION}:{PREFERENCES}:{user_id}"


def popularity_key(content_id: str) -> str:
    return f"{KEY_VERSION}:{POPULARITY}:{content_id}"


class FeedCache:
    """Versioned cache for generated feeds, preference profiles and popularity scores."""

    def __init__(self, store: KeyValueStore, clock: Callable[[], float] = time.time):
        self.store = store
        self._clock = clock
        self._lock = threading.Lock()
        self._hits: dict[str, int] = defaultdict(int)
        self._misses: dict[str, int] = defaultdict(int)
        self._sizes: dict[str, tuple[int, float]] = {}  # key -> (entry bytes, expires at)
        self._prune_at = SIZE_PRUNE_THRESHOLD
        self._prewarm_tasks: set[asyncio.Task] = set()

    # --- Low-level entry handling ---

    def _record(self, category: str, hit: bool):
        with self._lock:
            if hit:
                self._hits[category] += 1
            else:
                self._misses[category] += 1

    async def _read(self, category: str, key: str, decode: Callable[[str], T], count: bool = True) -> T | None:
        """
        Read and decode one entry.

        Store failures, expired entries and entries that no longer decode
        (garbled or written under an older schema) all count as a miss.
        Expired and undecodable entries are removed.
        """
        try:
            raw = await self.store.get(key)
        except CacheError as e:
            logger.warning(f"Cache read failed for {key}: {e}")
            raw = None

        value = None
        if raw is not None:
            try:
                entry = CacheEntry.model_validate_json(raw)
                if entry.is_fresh(self._clock()):
                    value = decode(entry.payload)
                else:
                    await self._delete(key)
            except (ValidationError, ValueError) as e:
                logger.warning(f"Dropping undecodable cache entry {key}: {e}")
                await self._delete(key)

        if count:
            self._record(category, value is not None)
        return value

    async def _write(self, key: str, payload: str, ttl_seconds: int) -> bool:
        now = self._clock()
        entry = CacheEntry(payload=payload, created_at=now, ttl_seconds=ttl_seconds)
        raw = entry.model_dump_json()
        try:
            await self.store.set(key, raw, ttl_seconds)
        except CacheError as e:
            logger.warning(f"Cache write failed for {key}: {e}")
            return False
        with self._lock:
            self._sizes[key] = (len(raw.encode("utf-8")), now + ttl_seconds)
            if len(self._sizes) >= self._prune_at:
                self._prune_sizes(now)
        return True

    def _prune_sizes(self, now: float):
        """Forget entries the store has expired on its own. Caller holds the lock."""
        for key in [k for k, (_, expires_at) in self._sizes.items() if expires_at <= now]:
            del self._sizes[key]
        self._prune_at = max(SIZE_PRUNE_THRESHOLD, 2 * len(self._sizes))

    async def _delete(self, *keys: str) -> int:
        with self._lock:
            for key in keys:
                self._sizes.pop(key, None)
        try:
            return await self.store.delete(*keys)
        except CacheError as e:
            logger.warning(f"Cache delete failed for {len(keys)} keys: {e}")
            return 0

    # --- Feeds ---

    async def get_feed(self, user_id: str, feed_type: FeedType) -> GeneratedFeed | None:
        return await self._read(FEED, feed_key(user_id, feed_type), GeneratedFeed.model_validate_json)

    async def put_feed(self, feed: GeneratedFeed) -> int:
        """Cache a feed under its adaptive TTL. Returns the TTL used, in seconds."""
        ttl = self.compute_feed_ttl(feed)
        await self._write(feed_key(feed.user_id, feed.feed_type), feed.model_dump_json(), ttl)
        return ttl

    def compute_feed_ttl(self, feed: GeneratedFeed) -> int:
        """
        TTL for a feed, adapted to how quickly its content goes stale.

        Feeds driven mostly by trending or recency reasons expire in half
        the base time; feeds driven by stable interest signals last twice
        as long.
        """
        base = FEED_TTLS.get(feed.feed_type, FEED_CACHE_TTL)
        if not feed.entries:
            return base

        total = len(feed.entries)
        volatile = sum(1 for e in feed.entries if any(r.type in VOLATILE_REASONS for r in e.reasons))
        stable = sum(1 for e in feed.entries if any(r.type in STABLE_REASONS for r in e.reasons))

        ttl = base
        if volatile / total > VOLATILE_SHARE:
            ttl = base // 2
        elif stable / total > STABLE_SHARE:
            ttl = base * 2
        return max(MIN_FEED_CACHE_TTL, min(MAX_FEED_CACHE_TTL, ttl))

    async def is_fresh(self, user_id: str, feed_type: FeedType) -> bool:
        """Whether a live feed is cached. Does not count as a hit or miss."""
        key = feed_key(user_id, feed_type)
        return await self._read(FEED, key, GeneratedFeed.model_validate_json, count=False) is not None

    async def invalidate_feed(self, user_id: str, feed_type: FeedType) -> bool:
        return await self._delete(feed_key(user_id, feed_type)) > 0

    async def invalidate_user(self, user_id: str) -> int:
        """Drop every cached feed type and the preference profile for a user."""
        keys = [feed_key(user_id, feed_type) for feed_type in FeedType]
        keys.append(preferences_key(user_id))
        removed = await self._delete(*keys)
        logger.info(f"Invalidated {removed} cache entries for {user_id}")
        return removed

    # --- Preferences ---

    async def get_preferences(self, user_id: str) -> UserPreferenceProfile | None:
        return await self._read(PREFERENCES, preferences_key(user_id), UserPreferenceProfile.model_validate_json)

    async def put_preferences(self, preferences: UserPreferenceProfile) -> bool:
        return await self._write(
            preferences_key(preferences.user_id), preferences.model_dump_json(), PREFERENCES_CACHE_TTL
        )

    # --- Popularity ---

    async def get_popularity(self, content_id: str) -> float | None:
        return await self._read(POPULARITY, popularity_key(content_id), float)

    async def get_popularity_batch(self, content_ids: list[str]) -> dict[str, float]:
        """Cached scores for the ids that have one; missing ids are left out."""
        scores = await asyncio.gather(*(self.get_popularity(cid) for cid in content_ids))
        return {cid: score for cid, score in zip(content_ids, scores) if score is not None}

    async def put_popularity(self, content_id: str, score: float) -> bool:
        return await self._write(popularity_key(content_id), repr(float(score)), POPULARITY_CACHE_TTL)

    async def put_popularity_batch(self, scores: dict[str, float]):
        await asyncio.gather(*(self.put_popularity(cid, score) for cid, score in scores.items()))

    # --- Stats ---

    def get_stats(self) -> CacheStats:
        """Hit/miss counters and the size of live entries per category."""
        now = self._clock()
        with self._lock:
            self._prune_sizes(now)
            categories = {}
            for category in (FEED, PREFERENCES, POPULARITY):
                prefix = f"{KEY_VERSION}:{category}:"
                sizes = [size for key, (size, _) in self._sizes.items() if key.startswith(prefix)]
                categories[category] = CategoryStats(
                    hits=self._hits[category],
                    misses=self._misses[category],
                    entries=len(sizes),
                    approx_bytes=sum(sizes),
                )
        return CacheStats(categories=categories)

    def reset_stats(self):
        with self._lock:
            self._hits.clear()
            self._misses.clear()

    # --- Pre-warming ---

    async def prewarm(self, pairs: list[tuple[str, FeedType]], generate: FeedGenerator) -> PrewarmReport:
        return await prewarm_feeds(self, pairs, generate)

    def schedule_prewarm(self, pairs: list[tuple[str, FeedType]], generate: FeedGenerator) -> asyncio.Task:
        """Start pre-warming in the background and return immediately."""
        task = asyncio.get_running_loop().create_task(self.prewarm(pairs, generate))
        self._prewarm_tasks.add(task)
        task.add_done_callback(self._prewarm_tasks.discard)
        logger.info(f"Scheduled pre-warm for {len(pairs)} feeds")
        return task
