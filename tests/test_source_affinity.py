from datetime import timedelta

import pytest

from feed_ranker.models import ConfidenceLevel, EngagementType, UserActivity
from feed_ranker.source_affinity import (
    UNSEEN_SOURCE_AFFINITY,
    ActivityTrend,
    EngagementTrend,
    SourceAffinityCalculator,
    confidence_for,
)

from conftest import NOW


def activity(
    author_id: str = "author_a",
    engagement_type: EngagementType = EngagementType.LIKE,
    days_ago: float = 1.0,
    score: float = 1.0,
    topics: list[str] | None = None,
) -> UserActivity:
    return UserActivity(
        content_id=f"{author_id}_{engagement_type.value}_{days_ago}",
        author_id=author_id,
        topics=topics or ["kotlin"],
        engagement_type=engagement_type,
        engagement_score=score,
        timestamp=NOW - timedelta(days=days_ago),
    )


@pytest.fixture
def calculator():
    return SourceAffinityCalculator()


class TestSourceAffinity:
    """Test affinity scoring from engagement history"""

    def test_unseen_source(self, calculator):
        """Authors never engaged with get the low default"""
        result = calculator.calculate("author_z", [activity()], NOW)
        assert result.score == UNSEEN_SOURCE_AFFINITY
        assert result.interactions == 0
        assert result.confidence == ConfidenceLevel.MINIMAL

    def test_positive_recent_history_scores_high(self, calculator):
        """Steady recent likes give a strong affinity"""
        history = [activity(days_ago=d / 10) for d in range(6)]
        result = calculator.calculate("author_a", history, NOW)
        assert result.score > 0.7
        assert result.confidence == ConfidenceLevel.MEDIUM
        assert result.engagement_pattern.positive == 6

    def test_negative_history_scores_low(self, calculator):
        """Reports drag affinity below the unseen default"""
        negative = [activity(engagement_type=EngagementType.REPORT, days_ago=d / 10) for d in range(4)]
        positive = [activity(days_ago=d / 10) for d in range(4)]
        negative_score = calculator.score("author_a", negative, NOW)
        assert negative_score < UNSEEN_SOURCE_AFFINITY
        assert negative_score < calculator.score("author_a", positive, NOW)

    def test_old_history_decays(self, calculator):
        """The same engagement months ago counts for much less"""
        recent = [activity(days_ago=1 + d) for d in range(5)]
        old = [activity(days_ago=90 + d) for d in range(5)]
        assert calculator.score("author_a", old, NOW) < calculator.score("author_a", recent, NOW)

    def test_only_matching_author_counts(self, calculator):
        """History for other authors is ignored"""
        history = [activity(author_id="author_b") for _ in range(3)] + [activity()]
        assert calculator.calculate("author_a", history, NOW).interactions == 1

    def test_score_bounded(self, calculator):
        """Affinity stays within 0.0-1.0"""
        history = [activity(engagement_type=EngagementType.BOOKMARK, days_ago=d / 24) for d in range(30)]
        assert 0.0 <= calculator.score("author_a", history, NOW) <= 1.0


class TestPatterns:
    """Test engagement and temporal pattern analysis"""

    def test_reliability_needs_three_interactions(self, calculator):
        assert calculator.reliability([activity(), activity()]) == 0.5

    def test_reliability_penalizes_negatives(self, calculator):
        """Negative actions count double against reliability"""
        history = [activity(), activity(), activity(engagement_type=EngagementType.HIDE)]
        # 2/3 - 1/3 * 2 = 0
        assert calculator.reliability(history) == pytest.approx(0.0)

    def test_increasing_engagement_trend(self, calculator):
        """Later interactions scoring higher is an increasing trend"""
        history = [
            activity(days_ago=10, score=0.2),
            activity(days_ago=8, score=0.3),
            activity(days_ago=2, score=0.9),
            activity(days_ago=1, score=1.0),
        ]
        assert calculator.engagement_pattern(history).trend == EngagementTrend.INCREASING

    def test_recent_activity_trend(self, calculator):
        """Mostly last-week activity is flagged as more recent"""
        history = [activity(days_ago=d) for d in (1, 2, 3, 40)]
        assert calculator.temporal_pattern(history, NOW).trend == ActivityTrend.MORE_RECENT

    def test_single_interaction_has_no_temporal_pattern(self, calculator):
        assert calculator.temporal_pattern([activity()], NOW).trend == ActivityTrend.INSUFFICIENT_DATA

    def test_confidence_levels(self):
        assert confidence_for(0) == ConfidenceLevel.MINIMAL
        assert confidence_for(2) == ConfidenceLevel.LOW
        assert confidence_for(5) == ConfidenceLevel.MEDIUM
        assert confidence_for(20) == ConfidenceLevel.HIGH
