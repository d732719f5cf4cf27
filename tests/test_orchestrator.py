# tests/test_orchestrator.py
import time
from collections import Counter
from unittest.mock import AsyncMock, Mock

import pytest

from feed_ranker.cache import FeedCache, feed_key, preferences_key
from feed_ranker.errors import RequestValidationError
from feed_ranker.experiments import ExperimentAssignment
from feed_ranker.kv_store import InMemoryKeyValueStore
from feed_ranker.models import (
    CacheEntry,
    ContentType,
    EngagementMetrics,
    ExperimentConfig,
    ExperimentVariant,
    FeedReasonType,
    FeedRequest,
    FeedSourceType,
    FeedType,
)
from feed_ranker.orchestrator import FeedOrchestrator, default_algorithm, parse_feed_type

from conftest import NOW, FakeContentSource, FakePreferenceProvider, make_candidate, make_profile

CONTENT_TYPES = [ContentType.TEXT, ContentType.IMAGE, ContentType.VIDEO, ContentType.LINK]
TOPICS = ["news", "technology", "food", "travel", "music"]


@pytest.fixture
def pool():
    """Thirty recent candidates across eight authors, five topics and four types"""
    return [
        make_candidate(
            f"c{i:02d}",
            author_id=f"author_{i % 8}",
            tags=[TOPICS[i % 5]],
            hours_old=1 + i,
            content_type=CONTENT_TYPES[i % 4],
            likes=5 + i,
        )
        for i in range(30)
    ]


@pytest.fixture
def cache():
    return FeedCache(InMemoryKeyValueStore())


@pytest.fixture
def established():
    return make_profile("user_1")


def build(source, preferences=None, cache=None, **kwargs) -> FeedOrchestrator:
    return FeedOrchestrator(
        content_source=source,
        preference_provider=preferences or FakePreferenceProvider(),
        cache=cache or FeedCache(InMemoryKeyValueStore()),
        clock=lambda: NOW,
        **kwargs,
    )


class TestValidation:
    """Test request validation"""

    def test_parse_feed_type(self):
        assert parse_feed_type("HOME") == FeedType.HOME
        assert parse_feed_type(FeedType.TRENDING) == FeedType.TRENDING
        with pytest.raises(RequestValidationError, match="Unknown feed type"):
            parse_feed_type("bogus")

    @pytest.mark.asyncio
    async def test_bad_limit_raises(self, pool):
        """Invalid limits are raised, not turned into an error feed"""
        orchestrator = build(FakeContentSource(pool))
        request = FeedRequest.model_construct(user_id="user_1", feed_type=FeedType.HOME, limit=0, algorithm=None)
        with pytest.raises(RequestValidationError):
            await orchestrator.generate_feed(request)

    @pytest.mark.asyncio
    async def test_unknown_feed_type_raises(self, pool):
        orchestrator = build(FakeContentSource(pool))
        request = FeedRequest.model_construct(user_id="user_1", feed_type="bogus", limit=10, algorithm=None)
        with pytest.raises(RequestValidationError):
            await orchestrator.generate_feed(request)

    def test_request_model_limits(self):
        with pytest.raises(ValueError):
            FeedRequest(user_id="user_1", limit=500)


class TestGeneration:
    """Test the ranking pipeline"""

    @pytest.mark.asyncio
    async def test_cold_start_home_feed(self, pool):
        """A brand-new user gets a trending/recommendation feed without cap violations"""
        orchestrator = build(FakeContentSource(pool))
        feed = await orchestrator.generate_feed(FeedRequest(user_id="new_user", feed_type=FeedType.HOME, limit=10))

        assert len(feed.entries) == 10
        assert feed.metadata.parameters["is_cold_start"] is True
        mix = Counter(entry.source_type for entry in feed.entries)
        assert (mix[FeedSourceType.TRENDING] + mix[FeedSourceType.RECOMMENDATION]) / len(feed.entries) >= 0.7
        assert max(Counter(entry.author_id for entry in feed.entries).values()) <= 3
        assert all(
            any(reason.type == FeedReasonType.COLD_START for reason in entry.reasons)
            for entry in feed.entries
        )

    @pytest.mark.asyncio
    async def test_topic_interest_ranks_first(self, established):
        """With equal engagement the candidate matching the user's interest ranks first"""
        candidates = [
            make_candidate("kotlin_post", author_id="author_k", tags=["kotlin"], likes=20),
            make_candidate("cooking_post", author_id="author_c", tags=["cooking"], likes=20),
            make_candidate("travel_post", author_id="author_t", tags=["travel"], likes=20),
            make_candidate("python_post", author_id="author_p", tags=["python"], likes=20),
        ]
        profile = established.model_copy(update={"topic_interests": {"kotlin": 0.9}})
        orchestrator = build(FakeContentSource(candidates), FakePreferenceProvider({"user_1": profile}))
        feed = await orchestrator.generate_feed(FeedRequest(user_id="user_1", limit=4))

        assert feed.metadata.parameters["is_cold_start"] is False
        first = feed.entries[0]
        assert first.content_id == "kotlin_post"
        assert first.rank == 1
        assert first.entry_id == "kotlin_post_1"
        assert FeedReasonType.TOPIC_INTEREST in {r.type for r in first.reasons}

    @pytest.mark.asyncio
    async def test_entries_and_pagination(self, pool, established):
        orchestrator = build(FakeContentSource(pool), FakePreferenceProvider({"user_1": established}))
        feed = await orchestrator.generate_feed(FeedRequest(user_id="user_1", limit=5))

        assert [e.rank for e in feed.entries] == [1, 2, 3, 4, 5]
        assert all(e.entry_id == f"{e.content_id}_{e.rank}" for e in feed.entries)
        assert all(e.algorithm_id == "default_home" for e in feed.entries)
        assert feed.has_more is True
        assert feed.next_cursor == feed.entries[-1].entry_id
        assert feed.metadata.candidate_count == 15  # 5 x 3 oversampling
        assert feed.metadata.content_count == 5
        assert feed.metadata.expires_at > feed.metadata.generated_at

    @pytest.mark.asyncio
    async def test_blocked_content_never_served(self, pool):
        profile = make_profile("user_1", blocked_users={"author_0"}, blocked_topics={"food"})
        orchestrator = build(FakeContentSource(pool), FakePreferenceProvider({"user_1": profile}))
        feed = await orchestrator.generate_feed(FeedRequest(user_id="user_1", limit=20))
        assert all(e.author_id != "author_0" for e in feed.entries)
        assert "c02" not in {e.content_id for e in feed.entries}  # tagged food

    @pytest.mark.asyncio
    async def test_diversity_can_be_disabled(self, established):
        candidates = [make_candidate(f"a{i}", author_id="author_a", likes=50 - i) for i in range(6)]
        orchestrator = build(FakeContentSource(candidates), FakePreferenceProvider({"user_1": established}))

        diversified = await orchestrator.generate_feed(FeedRequest(user_id="user_1", limit=6))
        request = FeedRequest(user_id="user_1", limit=6)
        request.algorithm = default_algorithm(FeedType.HOME)
        request.algorithm.parameters["diversity_enabled"] = False
        plain = await orchestrator.generate_feed(request)

        assert len(diversified.entries) == 3
        assert len(plain.entries) == 6


class TestDegradation:
    """Test failure handling"""

    @pytest.mark.asyncio
    async def test_internal_failure_returns_error_feed(self, established):
        source = Mock()
        source.get_candidates = AsyncMock(side_effect=RuntimeError("index offline"))
        orchestrator = build(source, FakePreferenceProvider({"user_1": established}))
        feed = await orchestrator.generate_feed(FeedRequest(user_id="user_1"))

        assert feed.entries == []
        assert feed.metadata.algorithm_id == "error"
        assert feed.metadata.parameters == {"error": "index offline", "error_type": "RuntimeError"}

    @pytest.mark.asyncio
    async def test_preference_failure_degrades(self, pool):
        """A failing preference service still yields a feed, flagged as degraded"""
        orchestrator = build(FakeContentSource(pool), FakePreferenceProvider(error=ConnectionError("prefs down")))
        feed = await orchestrator.generate_feed(FeedRequest(user_id="user_1", limit=5))

        assert len(feed.entries) == 5
        assert any("preferences unavailable" in r for r in feed.metadata.parameters["degraded"])

    @pytest.mark.asyncio
    async def test_popularity_from_metrics_provider(self, established, cache):
        """Candidates without engagement get metrics from the provider, cached for later"""
        candidates = [make_candidate("c1", author_id="a1"), make_candidate("c2", author_id="a2")]
        metrics = Mock()
        metrics.get_metrics = AsyncMock(return_value={"c1": EngagementMetrics(likes=60)})
        orchestrator = build(
            FakeContentSource(candidates), FakePreferenceProvider({"user_1": established}),
            cache=cache, metrics_provider=metrics,
        )
        feed = await orchestrator.generate_feed(FeedRequest(user_id="user_1", limit=2))

        metrics.get_metrics.assert_awaited_once_with(["c1", "c2"])
        assert feed.entries[0].content_id == "c1"
        assert await cache.get_popularity("c1") is not None

    @pytest.mark.asyncio
    async def test_metrics_failure_degrades(self, established):
        metrics = Mock()
        metrics.get_metrics = AsyncMock(side_effect=TimeoutError("slow"))
        orchestrator = build(
            FakeContentSource([make_candidate("c1")]), FakePreferenceProvider({"user_1": established}),
            metrics_provider=metrics,
        )
        feed = await orchestrator.generate_feed(FeedRequest(user_id="user_1", limit=2))
        assert len(feed.entries) == 1
        assert any("engagement metrics unavailable" in r for r in feed.metadata.parameters["degraded"])


class TestCachingAndExperiments:
    @pytest.mark.asyncio
    async def test_get_feed_reads_through_cache(self, pool, established, cache):
        source = FakeContentSource(pool)
        orchestrator = build(source, FakePreferenceProvider({"user_1": established}), cache=cache)
        request = FeedRequest(user_id="user_1", limit=5)

        first = await orchestrator.get_feed(request)
        second = await orchestrator.get_feed(request)

        assert len(source.calls) == 1
        assert [e.content_id for e in second.entries] == [e.content_id for e in first.entries]

    @pytest.mark.asyncio
    async def test_garbled_cache_entries_regenerate(self, pool, established, cache):
        """Undecodable cached feeds and preferences are treated as misses"""
        await cache.store.set(feed_key("user_1", FeedType.HOME), "not json", 60)
        stale_schema = CacheEntry(payload="{}", created_at=time.time(), ttl_seconds=600)
        await cache.store.set(preferences_key("user_1"), stale_schema.model_dump_json(), 600)
        source = FakeContentSource(pool)
        orchestrator = build(source, FakePreferenceProvider({"user_1": established}), cache=cache)

        feed = await orchestrator.get_feed(FeedRequest(user_id="user_1", limit=5))

        assert feed.metadata.algorithm_id == "default_home"
        assert len(feed.entries) == 5
        assert "degraded" not in feed.metadata.parameters
        assert len(source.calls) == 1

    @pytest.mark.asyncio
    async def test_refresh_bypasses_cache(self, pool, established, cache):
        source = FakeContentSource(pool)
        orchestrator = build(source, FakePreferenceProvider({"user_1": established}), cache=cache)
        await orchestrator.get_feed(FeedRequest(user_id="user_1", limit=5))
        await orchestrator.get_feed(FeedRequest(user_id="user_1", limit=5, refresh=True))
        assert len(source.calls) == 2

    @pytest.mark.asyncio
    async def test_invalidate_preferences(self, pool, established, cache):
        orchestrator = build(FakeContentSource(pool), FakePreferenceProvider({"user_1": established}), cache=cache)
        await orchestrator.get_feed(FeedRequest(user_id="user_1", limit=5))
        assert await orchestrator.invalidate_preferences("user_1") == 2  # home feed + preferences

    @pytest.mark.asyncio
    async def test_prewarm_inline(self, pool, established, cache):
        orchestrator = build(FakeContentSource(pool), FakePreferenceProvider({"user_1": established}), cache=cache)
        report = await orchestrator.prewarm([("user_1", FeedType.HOME)], background=False)
        assert report.warmed == 1
        assert await cache.get_feed("user_1", FeedType.HOME) is not None

    @pytest.mark.asyncio
    async def test_experiment_applied_and_logged(self, pool, established):
        store = InMemoryKeyValueStore()
        sink = Mock()
        sink.publish = AsyncMock()
        experiments = ExperimentAssignment(store, event_sink=sink, salt="test_salt")
        await experiments.registry.register(ExperimentConfig(
            experiment_id="recency_boost",
            variants=[ExperimentVariant(variant_id="all_in", allocation_percentage=100.0, parameters={"recency_weight": 0.9})],
        ))
        orchestrator = build(
            FakeContentSource(pool), FakePreferenceProvider({"user_1": established}), experiments=experiments
        )
        feed = await orchestrator.generate_feed(FeedRequest(user_id="user_1", limit=5))
        await experiments.drain()

        assert feed.metadata.parameters["experiment_id"] == "recency_boost"
        assert feed.metadata.parameters["variant_id"] == "all_in"
        event = sink.publish.await_args.args[0]
        assert event.content_count == 5
        assert event.experiment_id == "recency_boost"
