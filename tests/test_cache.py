import asyncio
import logging
from unittest.mock import AsyncMock, patch

import pytest

from feed_ranker.background_tasks import prewarm_refresh_loop
from feed_ranker.cache import SIZE_PRUNE_THRESHOLD, FeedCache, feed_key, popularity_key, preferences_key
from feed_ranker.config import (
    FEED_CACHE_TTL,
    PERSONALIZED_FEED_CACHE_TTL,
    POPULARITY_CACHE_TTL,
    TRENDING_FEED_CACHE_TTL,
)
from feed_ranker.errors import CacheError
from feed_ranker.kv_store import InMemoryKeyValueStore
from feed_ranker.models import (
    CacheEntry,
    FeedEntry,
    FeedMetadata,
    FeedReason,
    FeedReasonType,
    FeedType,
    GeneratedFeed,
)

from conftest import make_profile


class FakeClock:
    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now


def make_feed(
    user_id: str = "user_1",
    feed_type: FeedType = FeedType.HOME,
    reasons: list[FeedReasonType] | None = None,
    count: int = 4,
) -> GeneratedFeed:
    entries = []
    for rank in range(1, count + 1):
        entry_reasons = [FeedReason(type=r, description=r.value, weight=0.5) for r in (reasons or [])]
        entries.append(FeedEntry(
            entry_id=f"c{rank}_{rank}",
            content_id=f"c{rank}",
            author_id=f"author_{rank}",
            score=1.0 - rank * 0.1,
            rank=rank,
            reasons=entry_reasons,
        ))
    return GeneratedFeed(
        user_id=user_id,
        feed_type=feed_type,
        entries=entries,
        metadata=FeedMetadata(algorithm_id=f"default_{feed_type.value}", content_count=count),
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    # The store never expires on its own; freshness comes from the cache clock
    return FeedCache(InMemoryKeyValueStore(clock=lambda: 0.0), clock=clock)


class TestKeys:
    def test_versioned_keys(self):
        assert feed_key("u1", FeedType.HOME) == "v1:feed:u1:HOME"
        assert preferences_key("u1") == "v1:user_prefs:u1"
        assert popularity_key("c1") == "v1:popularity:c1"


class TestFeeds:
    """Test feed caching"""

    @pytest.mark.asyncio
    async def test_round_trip(self, cache):
        """A cached feed reads back equal to what was stored"""
        feed = make_feed()
        await cache.put_feed(feed)
        cached = await cache.get_feed("user_1", FeedType.HOME)
        assert cached.model_dump() == feed.model_dump()

    @pytest.mark.asyncio
    async def test_miss(self, cache):
        assert await cache.get_feed("nobody", FeedType.HOME) is None

    @pytest.mark.asyncio
    async def test_expires_after_ttl(self, cache, clock):
        """Reads past the TTL miss and remove the stale entry"""
        ttl = await cache.put_feed(make_feed())
        clock.now += ttl - 1
        assert await cache.get_feed("user_1", FeedType.HOME) is not None
        clock.now += 2
        assert await cache.get_feed("user_1", FeedType.HOME) is None
        assert await cache.store.get(feed_key("user_1", FeedType.HOME)) is None

    @pytest.mark.asyncio
    async def test_feed_types_separate(self, cache):
        await cache.put_feed(make_feed(feed_type=FeedType.HOME))
        assert await cache.get_feed("user_1", FeedType.EXPLORE) is None

    @pytest.mark.asyncio
    async def test_invalidate_feed(self, cache):
        await cache.put_feed(make_feed())
        assert await cache.invalidate_feed("user_1", FeedType.HOME) is True
        assert await cache.get_feed("user_1", FeedType.HOME) is None

    @pytest.mark.asyncio
    async def test_invalidate_user(self, cache):
        """Invalidating a user drops every feed type and their preferences"""
        await cache.put_feed(make_feed(feed_type=FeedType.HOME))
        await cache.put_feed(make_feed(feed_type=FeedType.TRENDING))
        await cache.put_feed(make_feed(user_id="user_2"))
        await cache.put_preferences(make_profile("user_1"))

        assert await cache.invalidate_user("user_1") == 3
        assert await cache.get_feed("user_1", FeedType.TRENDING) is None
        assert await cache.get_preferences("user_1") is None
        assert await cache.get_feed("user_2", FeedType.HOME) is not None


class TestAdaptiveTtl:
    """Test TTLs adapted to feed content"""

    def test_base_ttl_per_feed_type(self, cache):
        assert cache.compute_feed_ttl(make_feed(feed_type=FeedType.HOME)) == FEED_CACHE_TTL
        assert cache.compute_feed_ttl(make_feed(feed_type=FeedType.TRENDING)) == TRENDING_FEED_CACHE_TTL
        assert cache.compute_feed_ttl(make_feed(feed_type=FeedType.PERSONALIZED)) == PERSONALIZED_FEED_CACHE_TTL

    def test_volatile_feed_halved(self, cache):
        """Mostly trending/recency content halves the TTL"""
        feed = make_feed(reasons=[FeedReasonType.TRENDING])
        assert cache.compute_feed_ttl(feed) == FEED_CACHE_TTL // 2

    def test_stable_feed_doubled(self, cache):
        """Mostly interest-driven content doubles the TTL"""
        feed = make_feed(reasons=[FeedReasonType.TOPIC_INTEREST])
        assert cache.compute_feed_ttl(feed) == FEED_CACHE_TTL * 2

    def test_half_volatile_unchanged(self, cache):
        """Exactly half volatile entries is not a majority"""
        feed = make_feed(count=4)
        for entry in feed.entries[:2]:
            entry.reasons = [FeedReason(type=FeedReasonType.RECENCY, description="recent", weight=0.9)]
        assert cache.compute_feed_ttl(feed) == FEED_CACHE_TTL

    def test_empty_feed_base(self, cache):
        assert cache.compute_feed_ttl(make_feed(count=0)) == FEED_CACHE_TTL


class TestPreferencesAndPopularity:
    @pytest.mark.asyncio
    async def test_preferences_round_trip(self, cache):
        profile = make_profile("user_1", topic_interests={"kotlin": 0.9}, blocked_users={"spam"})
        await cache.put_preferences(profile)
        cached = await cache.get_preferences("user_1")
        assert cached.model_dump() == profile.model_dump()

    @pytest.mark.asyncio
    async def test_popularity_batch(self, cache):
        await cache.put_popularity_batch({"c1": 0.8, "c2": 0.25})
        assert await cache.get_popularity_batch(["c1", "c2", "c3"]) == {"c1": 0.8, "c2": 0.25}


class TestStats:
    """Test hit/miss accounting"""

    @pytest.mark.asyncio
    async def test_hits_and_misses_per_category(self, cache):
        await cache.put_feed(make_feed())
        await cache.get_feed("user_1", FeedType.HOME)
        await cache.get_feed("user_1", FeedType.EXPLORE)
        await cache.get_preferences("user_1")

        stats = cache.get_stats()
        assert stats.categories["feed"].hits == 1
        assert stats.categories["feed"].misses == 1
        assert stats.categories["feed"].entries == 1
        assert stats.categories["feed"].approx_bytes > 0
        assert stats.categories["user_prefs"].misses == 1
        assert stats.hit_rate == pytest.approx(1 / 3)

    @pytest.mark.asyncio
    async def test_freshness_check_not_counted(self, cache):
        await cache.put_feed(make_feed())
        assert await cache.is_fresh("user_1", FeedType.HOME) is True
        assert cache.get_stats().total_hits == 0

    @pytest.mark.asyncio
    async def test_reset(self, cache):
        await cache.get_feed("user_1", FeedType.HOME)
        cache.reset_stats()
        assert cache.get_stats().total_misses == 0


class TestStoreFailures:
    """Test that a failing store never fails a call"""

    @pytest.fixture
    def broken_cache(self, clock):
        store = AsyncMock()
        store.get.side_effect = CacheError("redis down")
        store.set.side_effect = CacheError("redis down")
        store.delete.side_effect = CacheError("redis down")
        return FeedCache(store, clock=clock)

    @pytest.mark.asyncio
    async def test_read_failure_is_miss(self, broken_cache):
        assert await broken_cache.get_feed("user_1", FeedType.HOME) is None
        assert broken_cache.get_stats().categories["feed"].misses == 1

    @pytest.mark.asyncio
    async def test_write_failure_swallowed(self, broken_cache):
        ttl = await broken_cache.put_feed(make_feed())
        assert ttl == FEED_CACHE_TTL
        assert await broken_cache.put_preferences(make_profile()) is False

    @pytest.mark.asyncio
    async def test_invalidate_failure(self, broken_cache):
        assert await broken_cache.invalidate_user("user_1") == 0


class TestUndecodableEntries:
    """Test that garbled or outdated entries read as misses"""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("raw", ["not json", '{"payload": "x"}'])
    async def test_bad_wrapper_is_miss(self, cache, raw):
        """An entry that is not a CacheEntry misses and is removed"""
        key = feed_key("user_1", FeedType.HOME)
        await cache.store.set(key, raw, 60)
        assert await cache.get_feed("user_1", FeedType.HOME) is None
        assert await cache.store.get(key) is None
        assert cache.get_stats().categories["feed"].misses == 1

    @pytest.mark.asyncio
    async def test_bad_payload_per_category(self, cache, clock):
        """A fresh wrapper around a payload that no longer decodes misses in every category"""
        seeded = {
            feed_key("user_1", FeedType.HOME): "{}",
            preferences_key("user_1"): "{}",
            popularity_key("c1"): "not a number",
        }
        for key, payload in seeded.items():
            entry = CacheEntry(payload=payload, created_at=clock(), ttl_seconds=600)
            await cache.store.set(key, entry.model_dump_json(), 600)

        assert await cache.get_feed("user_1", FeedType.HOME) is None
        assert await cache.get_preferences("user_1") is None
        assert await cache.get_popularity("c1") is None
        for key in seeded:
            assert await cache.store.get(key) is None

        stats = cache.get_stats()
        assert all(stats.categories[c].misses == 1 for c in ("feed", "user_prefs", "popularity"))

    @pytest.mark.asyncio
    async def test_overwrite_after_bad_entry(self, cache):
        await cache.store.set(preferences_key("user_1"), "garbage", 60)
        assert await cache.get_preferences("user_1") is None
        profile = make_profile("user_1")
        await cache.put_preferences(profile)
        assert (await cache.get_preferences("user_1")).user_id == "user_1"


class TestEntryTracking:
    """Test that size tracking follows entry lifetimes"""

    @pytest.mark.asyncio
    async def test_counts_drop_after_ttl(self, cache, clock):
        """Entries expired by the store stop counting without being read"""
        await cache.put_popularity_batch({f"c{i}": 0.5 for i in range(50)})
        assert cache.get_stats().categories["popularity"].entries == 50

        clock.now += POPULARITY_CACHE_TTL + 1
        popularity = cache.get_stats().categories["popularity"]
        assert popularity.entries == 0
        assert popularity.approx_bytes == 0

    @pytest.mark.asyncio
    async def test_tracking_bounded_without_stats_calls(self, cache, clock):
        """Writes sweep expired keys so tracking does not grow with every id ever cached"""
        for batch in range(3):
            await cache.put_popularity_batch({f"b{batch}_c{i}": 0.5 for i in range(SIZE_PRUNE_THRESHOLD)})
            clock.now += POPULARITY_CACHE_TTL + 1
        assert len(cache._sizes) <= SIZE_PRUNE_THRESHOLD


class TestPrewarm:
    """Test cache pre-warming"""

    @pytest.mark.asyncio
    async def test_skips_fresh_and_isolates_failures(self, cache):
        await cache.put_feed(make_feed("fresh_user"))

        async def generate(user_id, feed_type):
            if user_id == "broken_user":
                raise RuntimeError("generation failed")
            return make_feed(user_id, feed_type)

        pairs = [
            ("fresh_user", FeedType.HOME),
            ("broken_user", FeedType.HOME),
            ("user_a", FeedType.HOME),
            ("user_b", FeedType.EXPLORE),
        ]
        report = await cache.prewarm(pairs, generate)

        assert (report.warmed, report.skipped, report.failed) == (2, 1, 1)
        assert await cache.get_feed("user_b", FeedType.EXPLORE) is not None

    @pytest.mark.asyncio
    async def test_schedule_returns_immediately(self, cache):
        """Scheduling returns a task before any feed is generated"""
        started = asyncio.Event()
        release = asyncio.Event()

        async def generate(user_id, feed_type):
            started.set()
            await release.wait()
            return make_feed(user_id, feed_type)

        task = cache.schedule_prewarm([("user_a", FeedType.HOME)], generate)
        assert not task.done()
        await started.wait()
        release.set()
        report = await task
        assert report.warmed == 1

    @pytest.mark.asyncio
    async def test_refresh_loop_survives_failed_cycle(self, cache, caplog):
        """A failing cycle is logged, the next one warms, and cancellation stops the loop"""
        get_pairs = AsyncMock(side_effect=[RuntimeError("active users unavailable"), [("user_a", FeedType.HOME)]])

        async def generate(user_id, feed_type):
            return make_feed(user_id, feed_type)

        with patch("feed_ranker.background_tasks.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            mock_sleep.side_effect = [None, asyncio.CancelledError()]
            with caplog.at_level(logging.INFO, logger="feed_ranker.background_tasks"):
                with pytest.raises(asyncio.CancelledError):
                    await prewarm_refresh_loop(cache, get_pairs, generate, interval=5)

        assert get_pairs.await_count == 2
        mock_sleep.assert_awaited_with(5)
        assert "active users unavailable" in caplog.text
        assert "Background pre-warm loop cancelled" in caplog.text
        assert await cache.get_feed("user_a", FeedType.HOME) is not None
