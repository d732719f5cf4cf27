"""
Contracts for the services the ranking core depends on.

The core never implements these. Content retrieval, user profiles,
activity history, request context and engagement aggregates all live in
other systems and are injected into the orchestrator and blender.
Each call is expected to be time-bounded by the implementation.
"""

from typing import Any, Protocol, runtime_checkable

from .models import (
    ContentCandidate,
    EngagementMetrics,
    FeedType,
    UserActivity,
    UserContext,
    UserPreferenceProfile,
)


@runtime_checkable
class ContentSource(Protocol):
    async def get_candidates(
        self, feed_type: FeedType, limit: int, filters: dict[str, Any]
    ) -> list[ContentCandidate]:
        """Return up to ``limit`` candidates for a feed type.

        Filters understood by the core's queries: ``user_id``,
        ``max_age_hours``, ``min_popularity``, ``exclude_authors``,
        ``exclude_topics``, ``languages``, ``sort``.
        """
        ...


@runtime_checkable
class PreferenceProvider(Protocol):
    async def get_preferences(self, user_id: str) -> UserPreferenceProfile | None: ...


@runtime_checkable
class HistoryProvider(Protocol):
    async def get_history(self, user_id: str, lookback_days: int) -> list[UserActivity]: ...


@runtime_checkable
class ContextProvider(Protocol):
    async def get_context(self, user_id: str) -> UserContext: ...


@runtime_checkable
class EngagementMetricsProvider(Protocol):
    async def get_metrics(self, content_ids: list[str]) -> dict[str, EngagementMetrics]: ...
