"""Candidate generation and weighting for users without enough history."""

from __future__ import annotations

import logging
import math
from collections import defaultdict
from datetime import datetime, timedelta

from .collaborators import ContentSource
from .config import (
    POPULAR_MIN_POPULARITY,
    POPULAR_WINDOW_DAYS,
    TRENDING_MIN_ENGAGEMENT,
    TRENDING_MIN_POPULARITY,
    TRENDING_WINDOW_HOURS,
)
from .filters import apply_safety_filters, dedupe_by_id
from .models import (
    ColdStartConfig,
    ContentCandidate,
    FeedType,
    RetrievalSource,
    ScoringWeights,
    UserPreferenceProfile,
    utcnow,
)
from .scoring import calculate_popularity_score

logger = logging.getLogger(__name__)

MIN_ITEMS_PER_TOPIC = 2
MAX_ITEMS_PER_TOPIC = 5
MAX_SAMPLED_TOPICS = 15
FULL_PERSONALIZATION_AGE_DAYS = 30
FULL_PERSONALIZATION_INTERESTS = 5


class ColdStartStrategy:
    """Builds feeds for new or dormant users from trending, diverse and popular content."""

    def __init__(
        self,
        content_source: ContentSource,
        config: ColdStartConfig | None = None,
        clock=utcnow,
    ):
        self.content_source = content_source
        self.config = config or ColdStartConfig()
        self._clock = clock

    def is_new_user(
        self,
        preferences: UserPreferenceProfile | None,
        config: ColdStartConfig | None = None,
        now: datetime | None = None,
    ) -> bool:
        """
        A user is cold when any of these holds:
        - the account is no older than the threshold
        - they have fewer recorded engagements than the minimum
        - they have been inactive longer than the threshold
        """
        cfg = config or self.config
        if preferences is None:
            return True
        now = now or self._clock()
        if preferences.account_age_days <= cfg.new_user_threshold_days:
            return True
        if len(preferences.engagement_history) < cfg.min_engagement_actions:
            return True
        if preferences.last_active_at is not None:
            inactive_days = (now - preferences.last_active_at).total_seconds() / 86400.0
            if inactive_days > cfg.new_user_threshold_days:
                return True
        return False

    async def generate_cold_start_feed(
        self,
        user_id: str,
        preferences: UserPreferenceProfile | None,
        limit: int,
        config: ColdStartConfig | None = None,
    ) -> list[ContentCandidate]:
        """
        Blend trending, topic-diverse and popular content for a cold user.

        The trending slice takes ``limit x trending_weight`` slots. Diverse
        sampling fills the rest from recent content across many topics, and
        the popular fallback tops up whatever is still missing. The result
        is deduplicated and safety-filtered before truncation.
        """
        cfg = config or self.config
        now = self._clock()
        filters = self._base_filters(user_id, preferences)

        trending_count = int(limit * cfg.trending_weight)
        selected: list[ContentCandidate] = []
        if trending_count > 0:
            trending = await self.get_trending_content(trending_count, filters, now)
            selected.extend(self._safe(trending, preferences)[:trending_count])

        remaining = limit - len(selected)
        if remaining > 0 and cfg.enable_diversity_sampling:
            pool = await self.content_source.get_candidates(
                FeedType.EXPLORE,
                remaining * 2,
                {**filters, "max_age_hours": POPULAR_WINDOW_DAYS * 24, "sort": "recent"},
            )
            pool = self._safe(pool, preferences)
            sampled = self.sample_diverse_topics(pool, remaining * 2, now)
            selected = dedupe_by_id(selected + [_tagged(c, RetrievalSource.DIVERSE) for c in sampled])

        remaining = limit - len(selected)
        if remaining > 0 and cfg.enable_popular_fallback:
            popular = await self.get_popular_content(limit, filters, now)
            selected = dedupe_by_id(selected + self._safe(popular, preferences))

        result = dedupe_by_id(selected)[:limit]
        logger.debug(f"Cold-start feed for {user_id}: {len(result)} candidates (trending slice {trending_count})")
        return result

    async def get_trending_content(
        self, limit: int, filters: dict | None = None, now: datetime | None = None
    ) -> list[ContentCandidate]:
        """
        Content from the last 48 hours that has traction.

        An item qualifies with popularity >= 0.6 or at least 10 engagements.
        Ranked by popularity, then engagement per hour since posting.
        """
        now = now or self._clock()
        pool = await self.content_source.get_candidates(
            FeedType.TRENDING,
            limit * 2,
            {**(filters or {}), "max_age_hours": TRENDING_WINDOW_HOURS, "sort": "trending"},
        )
        window_start = now - timedelta(hours=TRENDING_WINDOW_HOURS)

        qualified = []
        for candidate in pool:
            if candidate.created_at < window_start:
                continue
            popularity = calculate_popularity_score(candidate, now)
            engagements = candidate.engagement.total_engagement
            if popularity < TRENDING_MIN_POPULARITY and engagements < TRENDING_MIN_ENGAGEMENT:
                continue
            age_hours = max((now - candidate.created_at).total_seconds() / 3600.0, 1.0)
            qualified.append((popularity, engagements / age_hours, candidate))

        qualified.sort(key=lambda q: (-q[0], -q[1], q[2].content_id))
        return [_tagged(c, RetrievalSource.TRENDING) for _, _, c in qualified[:limit]]

    async def get_popular_content(
        self, limit: int, filters: dict | None = None, now: datetime | None = None
    ) -> list[ContentCandidate]:
        """Content from the last 7 days with popularity >= 0.6, most popular first."""
        now = now or self._clock()
        pool = await self.content_source.get_candidates(
            FeedType.EXPLORE,
            limit * 2,
            {
                **(filters or {}),
                "max_age_hours": POPULAR_WINDOW_DAYS * 24,
                "min_popularity": POPULAR_MIN_POPULARITY,
                "sort": "popular",
            },
        )
        window_start = now - timedelta(days=POPULAR_WINDOW_DAYS)
        scored = [
            (calculate_popularity_score(c, now), c)
            for c in pool
            if c.created_at >= window_start
        ]
        scored = [(p, c) for p, c in scored if p >= POPULAR_MIN_POPULARITY]
        scored.sort(key=lambda s: (-s[0], s[1].content_id))
        return [_tagged(c, RetrievalSource.POPULAR) for _, c in scored[:limit]]

    def sample_diverse_topics(
        self, candidates: list[ContentCandidate], limit: int, now: datetime | None = None
    ) -> list[ContentCandidate]:
        """
        Spread a pool across topics.

        Topics need at least two items to be sampled. Up to 15 topics are
        used, largest first, taking 2-5 of the most popular items from each.
        When no topic qualifies the pool is returned by popularity.
        """
        now = now or self._clock()

        def popularity(c: ContentCandidate) -> tuple:
            return (-calculate_popularity_score(c, now), c.content_id)

        by_topic: dict[str, list[ContentCandidate]] = defaultdict(list)
        for candidate in candidates:
            for tag in {t.lower() for t in candidate.tags}:
                by_topic[tag].append(candidate)

        viable = sorted(
            ((topic, items) for topic, items in by_topic.items() if len(items) >= MIN_ITEMS_PER_TOPIC),
            key=lambda pair: (-len(pair[1]), pair[0]),
        )[:MAX_SAMPLED_TOPICS]

        if not viable:
            return sorted(candidates, key=popularity)[:limit]

        per_topic = max(MIN_ITEMS_PER_TOPIC, min(MAX_ITEMS_PER_TOPIC, math.ceil(limit / len(viable))))
        sampled = []
        for _, items in viable:
            sampled.extend(sorted(items, key=popularity)[:per_topic])
        return dedupe_by_id(sampled)[:limit]

    def personalization_level(
        self, preferences: UserPreferenceProfile | None, config: ColdStartConfig | None = None
    ) -> float:
        """How much behavioural signal the user has, from 0.0 (none) to 1.0."""
        cfg = config or self.config
        if preferences is None:
            return 0.0
        age = min(preferences.account_age_days / FULL_PERSONALIZATION_AGE_DAYS, 1.0)
        history_target = max(cfg.min_engagement_actions * 3, 1)
        history = min(len(preferences.engagement_history) / history_target, 1.0)
        interests = min(len(preferences.interests) / FULL_PERSONALIZATION_INTERESTS, 1.0)
        return max(0.0, min(1.0, age * 0.4 + history * 0.4 + interests * 0.2))

    def get_cold_start_weights(
        self,
        preferences: UserPreferenceProfile | None,
        base: ScoringWeights | None = None,
        config: ColdStartConfig | None = None,
    ) -> ScoringWeights:
        """
        Shift weight from relevance to recency/popularity for low-signal users.

        At level 0 relevance is dropped entirely and a trending bonus is
        applied; at level 1 the base weights are used unchanged.
        """
        cfg = config or self.config
        base = base or ScoringWeights()
        level = self.personalization_level(preferences, cfg)

        custom = dict(base.custom)
        custom["trending"] = cfg.trending_weight * (1.0 - level)
        if cfg.enable_diversity_sampling:
            custom["diversity"] = 0.3

        weights = ScoringWeights(
            recency=base.recency * (0.7 + 0.3 * level),
            popularity=base.popularity * (0.8 + 0.2 * level),
            relevance=base.relevance * level,
            following=base.following,
            engagement=base.engagement,
            custom=custom,
        )
        return weights.normalized()

    @staticmethod
    def _base_filters(user_id: str, preferences: UserPreferenceProfile | None) -> dict:
        filters: dict = {"user_id": user_id}
        if preferences is not None:
            filters["exclude_authors"] = sorted(preferences.blocked_users)
            filters["exclude_topics"] = sorted(preferences.blocked_topics)
            if preferences.language_preferences:
                filters["languages"] = list(preferences.language_preferences)
        return filters

    @staticmethod
    def _safe(candidates: list[ContentCandidate], preferences: UserPreferenceProfile | None) -> list[ContentCandidate]:
        return apply_safety_filters(candidates, preferences, restrict_content_types=True)


def _tagged(candidate: ContentCandidate, source: RetrievalSource) -> ContentCandidate:
    if candidate.retrieval_source == source:
        return candidate
    return candidate.model_copy(update={"retrieval_source": source})
