from datetime import datetime, timedelta, timezone

import pytest

from feed_ranker.kv_store import InMemoryKeyValueStore
from feed_ranker.models import (
    ContentCandidate,
    ContentType,
    EngagementMetrics,
    FeedType,
    ScoreBreakdown,
    ScoredCandidate,
    UserPreferenceProfile,
)

NOW = datetime(2024, 6, 3, 14, 0, tzinfo=timezone.utc)  # Monday afternoon


def make_candidate(
    content_id: str,
    author_id: str = "author_a",
    tags: list[str] | None = None,
    hours_old: float = 1.0,
    content_type: ContentType = ContentType.TEXT,
    likes: int = 0,
    popularity: float = 0.0,
    **kwargs,
) -> ContentCandidate:
    return ContentCandidate(
        content_id=content_id,
        author_id=author_id,
        tags=tags or [],
        created_at=NOW - timedelta(hours=hours_old),
        content_type=content_type,
        engagement=EngagementMetrics(likes=likes),
        popularity_score=popularity,
        **kwargs,
    )


def make_scored(
    content_id: str,
    score: float,
    author_id: str = "author_a",
    tags: list[str] | None = None,
    content_type: ContentType = ContentType.TEXT,
) -> ScoredCandidate:
    candidate = make_candidate(content_id, author_id=author_id, tags=tags, content_type=content_type)
    return ScoredCandidate(
        candidate=candidate,
        breakdown=ScoreBreakdown(recency=0.5, popularity=0.5, relevance=0.5, composite=score),
        score=score,
    )


def make_profile(user_id: str = "user_1", **kwargs) -> UserPreferenceProfile:
    defaults = {
        "account_age_days": 120,
        "engagement_history": {f"author_{i}": 0.5 for i in range(20)},
        "last_active_at": NOW - timedelta(hours=2),
    }
    defaults.update(kwargs)
    return UserPreferenceProfile(user_id=user_id, **defaults)


class FakeContentSource:
    """Returns a fixed pool for every query, honouring the limit."""

    def __init__(self, candidates: list[ContentCandidate]):
        self.candidates = candidates
        self.calls: list[tuple[FeedType, int, dict]] = []

    async def get_candidates(self, feed_type, limit, filters):
        self.calls.append((feed_type, limit, filters))
        return list(self.candidates[:limit])


class FakePreferenceProvider:
    def __init__(self, profiles: dict[str, UserPreferenceProfile] | None = None, error: Exception | None = None):
        self.profiles = profiles or {}
        self.error = error

    async def get_preferences(self, user_id):
        if self.error is not None:
            raise self.error
        return self.profiles.get(user_id)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def memory_store():
    return InMemoryKeyValueStore()
