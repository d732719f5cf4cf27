# src/feed_ranker/source_affinity.py
"""
Source affinity: how much a user likes content from a given author,
derived from their past engagement with that author.

Signals combined:
- base affinity: sigmoid of signed, weighted engagement per interaction
- consistency: steady engagement scores count more than erratic ones
- recency: share of interactions in the last 30 days
- topic diversity: entropy of topics the user engaged with from this author
- reliability: positive vs (amplified) negative actions
- temporal decay: older interactions weigh less

Authors the user never engaged with get a low but non-zero 0.3.
"""

from __future__ import annotations

import math
import statistics
from collections import Counter
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from .models import ConfidenceLevel, EngagementType, UserActivity, utcnow

UNSEEN_SOURCE_AFFINITY = 0.3

POSITIVE_ENGAGEMENTS = {
    EngagementType.LIKE,
    EngagementType.SHARE,
    EngagementType.COMMENT,
    EngagementType.BOOKMARK,
    EngagementType.EXPAND,
}
NEGATIVE_ENGAGEMENTS = {
    EngagementType.HIDE,
    EngagementType.REPORT,
    EngagementType.UNLIKE,
    EngagementType.UNBOOKMARK,
}


def _default_engagement_weights() -> dict[EngagementType, float]:
    return {
        EngagementType.LIKE: 1.0,
        EngagementType.SHARE: 2.0,
        EngagementType.COMMENT: 1.8,
        EngagementType.BOOKMARK: 2.2,
        EngagementType.VIEW: 0.2,
        EngagementType.CLICK: 0.4,
        EngagementType.DWELL_TIME: 1.2,
        EngagementType.EXPAND: 1.0,
        EngagementType.SCROLL: 0.3,
        EngagementType.HIDE: -1.0,
        EngagementType.REPORT: -3.0,
        EngagementType.UNLIKE: -0.8,
        EngagementType.UNBOOKMARK: -0.5,
    }


class EngagementTrend(str, Enum):
    INCREASING = "increasing"
    DECREASING = "decreasing"
    STABLE = "stable"
    VOLATILE = "volatile"
    INSUFFICIENT_DATA = "insufficient_data"


class ActivityTrend(str, Enum):
    MORE_RECENT = "more_recent"
    LESS_RECENT = "less_recent"
    CONSISTENT = "consistent"
    INSUFFICIENT_DATA = "insufficient_data"


class SourceAffinityConfig(BaseModel):
    engagement_weights: dict[EngagementType, float] = Field(default_factory=_default_engagement_weights)
    unknown_engagement_weight: float = 0.1
    temporal_decay_factor: float = 0.1  # per day
    negative_engagement_penalty: float = 2.0
    consistency_bonus: float = 0.2
    recency_bonus: float = 0.3
    diversity_bonus: float = 0.1
    recent_window_days: int = 30
    enable_temporal_decay: bool = True
    enable_consistency_analysis: bool = True
    enable_reliability_scoring: bool = True


class EngagementPattern(BaseModel):
    positive: int = 0
    negative: int = 0
    neutral: int = 0
    average_score: float = 0.0
    trend: EngagementTrend = EngagementTrend.INSUFFICIENT_DATA
    dominant_types: list[EngagementType] = Field(default_factory=list)
    consistency: float = 0.0
    last_engagement_at: datetime | None = None


class TemporalPattern(BaseModel):
    peak_hours: list[int] = Field(default_factory=list)
    peak_days: list[int] = Field(default_factory=list)  # Monday = 1
    average_gap_hours: float = 0.0
    regularity: float = 0.0
    trend: ActivityTrend = ActivityTrend.INSUFFICIENT_DATA


class SourceAffinityResult(BaseModel):
    author_id: str
    score: float
    interactions: int = 0
    reliability: float = 0.5
    consistency: float = 0.0
    recency: float = 0.0
    diversity: float = 0.0
    confidence: ConfidenceLevel = ConfidenceLevel.MINIMAL
    engagement_pattern: EngagementPattern = Field(default_factory=EngagementPattern)
    temporal_pattern: TemporalPattern = Field(default_factory=TemporalPattern)
    explanation: str = ""


def _days_between(then: datetime, now: datetime) -> float:
    return max(0.0, (now - then).total_seconds() / 86400.0)


def _sigmoid(x: float) -> float:
    return 1.0 / (1.0 + math.exp(-x))


def confidence_for(interactions: int) -> ConfidenceLevel:
    if interactions >= 20:
        return ConfidenceLevel.HIGH
    if interactions >= 5:
        return ConfidenceLevel.MEDIUM
    if interactions >= 2:
        return ConfidenceLevel.LOW
    return ConfidenceLevel.MINIMAL


class SourceAffinityCalculator:
    """Scores a user's affinity for an author from their activity history."""

    def __init__(self, config: SourceAffinityConfig | None = None):
        self.config = config or SourceAffinityConfig()

    def calculate(
        self, author_id: str, history: list[UserActivity], now: datetime | None = None
    ) -> SourceAffinityResult:
        now = now or utcnow()
        cfg = self.config
        source_history = [a for a in history if a.author_id == author_id]
        if not source_history:
            return SourceAffinityResult(
                author_id=author_id,
                score=UNSEEN_SOURCE_AFFINITY,
                explanation="No previous interactions with this source",
            )

        pattern = self.engagement_pattern(source_history)
        temporal = self.temporal_pattern(source_history, now)
        reliability = self.reliability(source_history) if cfg.enable_reliability_scoring else 0.5
        consistency = pattern.consistency if cfg.enable_consistency_analysis else 0.5
        recency = self._recency(source_history, now)
        diversity = self._topic_diversity(source_history)

        affinity = self._base_affinity(source_history)
        affinity += consistency * cfg.consistency_bonus
        affinity += recency * cfg.recency_bonus
        affinity += diversity * cfg.diversity_bonus
        affinity *= 0.5 + reliability * 0.5
        if cfg.enable_temporal_decay:
            affinity *= self._temporal_decay(source_history, now)

        return SourceAffinityResult(
            author_id=author_id,
            score=max(0.0, min(1.0, affinity)),
            interactions=len(source_history),
            reliability=reliability,
            consistency=consistency,
            recency=recency,
            diversity=diversity,
            confidence=confidence_for(len(source_history)),
            engagement_pattern=pattern,
            temporal_pattern=temporal,
            explanation=self._explain(pattern, temporal, reliability),
        )

    def score(self, author_id: str, history: list[UserActivity], now: datetime | None = None) -> float:
        return self.calculate(author_id, history, now).score

    def engagement_pattern(self, source_history: list[UserActivity]) -> EngagementPattern:
        if not source_history:
            return EngagementPattern()
        positive = sum(1 for a in source_history if a.engagement_type in POSITIVE_ENGAGEMENTS)
        negative = sum(1 for a in source_history if a.engagement_type in NEGATIVE_ENGAGEMENTS)
        scores = [a.engagement_score for a in source_history]
        return EngagementPattern(
            positive=positive,
            negative=negative,
            neutral=len(source_history) - positive - negative,
            average_score=statistics.fmean(scores),
            trend=self._engagement_trend(source_history),
            dominant_types=[t for t, _ in Counter(a.engagement_type for a in source_history).most_common(3)],
            consistency=max(0.0, 1.0 - min(statistics.pstdev(scores), 1.0)) if len(scores) > 1 else 0.0,
            last_engagement_at=max(a.timestamp for a in source_history),
        )

    def temporal_pattern(self, source_history: list[UserActivity], now: datetime | None = None) -> TemporalPattern:
        if len(source_history) < 2:
            return TemporalPattern()
        now = now or utcnow()
        ordered = sorted(source_history, key=lambda a: a.timestamp)
        gaps = [
            (b.timestamp - a.timestamp).total_seconds() / 3600.0
            for a, b in zip(ordered, ordered[1:])
        ]
        avg_gap = statistics.fmean(gaps)
        regularity = max(0.0, 1.0 - statistics.pstdev(gaps) / avg_gap) if avg_gap > 0 else 0.0

        return TemporalPattern(
            peak_hours=[h for h, _ in Counter(a.timestamp.hour for a in ordered).most_common(3)],
            peak_days=[d for d, _ in Counter(a.timestamp.isoweekday() for a in ordered).most_common(2)],
            average_gap_hours=avg_gap,
            regularity=regularity,
            trend=self._activity_trend(ordered, now),
        )

    def reliability(self, source_history: list[UserActivity]) -> float:
        if len(source_history) < 3:
            return 0.5
        total = len(source_history)
        positive = sum(1 for a in source_history if a.engagement_type in POSITIVE_ENGAGEMENTS)
        negative = sum(1 for a in source_history if a.engagement_type in NEGATIVE_ENGAGEMENTS)
        neutral = total - positive - negative
        score = (
            positive / total
            - negative / total * self.config.negative_engagement_penalty
            + neutral / total * 0.5
        )
        return max(0.0, min(1.0, score))

    def _weight(self, engagement_type: EngagementType) -> float:
        return self.config.engagement_weights.get(engagement_type, self.config.unknown_engagement_weight)

    def _base_affinity(self, source_history: list[UserActivity]) -> float:
        total = sum(self._weight(a.engagement_type) * a.engagement_score for a in source_history)
        return _sigmoid(total / max(len(source_history), 1))

    def _recency(self, source_history: list[UserActivity], now: datetime) -> float:
        window = self.config.recent_window_days
        days = [_days_between(a.timestamp, now) for a in source_history]
        recent_ratio = sum(1 for d in days if d <= window) / len(days)
        avg_recency = statistics.fmean(math.exp(-d / window) for d in days)
        return max(0.0, min(1.0, recent_ratio * 0.6 + avg_recency * 0.4))

    @staticmethod
    def _topic_diversity(source_history: list[UserActivity]) -> float:
        topics = [t for a in source_history for t in a.topics]
        if not topics:
            return 0.0
        counts = Counter(topics)
        total = len(topics)
        entropy = -sum((c / total) * math.log(c / total) for c in counts.values())
        max_entropy = math.log(len(counts))
        return max(0.0, min(1.0, entropy / max_entropy)) if max_entropy > 0 else 0.0

    def _temporal_decay(self, source_history: list[UserActivity], now: datetime) -> float:
        factor = self.config.temporal_decay_factor
        return statistics.fmean(math.exp(-_days_between(a.timestamp, now) * factor) for a in source_history)

    @staticmethod
    def _engagement_trend(source_history: list[UserActivity]) -> EngagementTrend:
        if len(source_history) < 4:
            return EngagementTrend.INSUFFICIENT_DATA
        ordered = sorted(source_history, key=lambda a: a.timestamp)
        midpoint = len(ordered) // 2
        first = statistics.fmean(a.engagement_score for a in ordered[:midpoint])
        second = statistics.fmean(a.engagement_score for a in ordered[midpoint:])
        difference = second - first
        if difference > 0.1:
            return EngagementTrend.INCREASING
        if difference < -0.1:
            return EngagementTrend.DECREASING
        if statistics.pvariance([a.engagement_score for a in ordered]) > 0.2:
            return EngagementTrend.VOLATILE
        return EngagementTrend.STABLE

    @staticmethod
    def _activity_trend(source_history: list[UserActivity], now: datetime) -> ActivityTrend:
        if len(source_history) < 3:
            return ActivityTrend.INSUFFICIENT_DATA
        recent_ratio = sum(1 for a in source_history if _days_between(a.timestamp, now) <= 7) / len(source_history)
        if recent_ratio > 0.6:
            return ActivityTrend.MORE_RECENT
        if recent_ratio < 0.3:
            return ActivityTrend.LESS_RECENT
        return ActivityTrend.CONSISTENT

    @staticmethod
    def _explain(pattern: EngagementPattern, temporal: TemporalPattern, reliability: float) -> str:
        parts = []
        if pattern.positive > pattern.negative:
            parts.append(f"{pattern.positive} positive interactions")
        if pattern.negative:
            parts.append(f"{pattern.negative} negative interactions")
        if pattern.trend == EngagementTrend.INCREASING:
            parts.append("engagement is increasing")
        if temporal.trend == ActivityTrend.MORE_RECENT:
            parts.append("mostly recent activity")
        if reliability > 0.7:
            parts.append("consistently positive")
        return "; ".join(parts) or "Limited engagement with this source"
