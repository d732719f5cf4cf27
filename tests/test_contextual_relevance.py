import pytest

from feed_ranker.contextual_relevance import ContextualRelevanceCalculator, peak_hour_alignment
from feed_ranker.models import ConfidenceLevel, ContentType, DeviceType, UserContext, UserLocation

from conftest import NOW, make_candidate


@pytest.fixture
def calculator():
    return ContextualRelevanceCalculator()


class TestTemporal:
    """Test time-of-day and day-of-week fit"""

    def test_morning_news_fits(self, calculator):
        """Morning-briefing topics score above unrelated topics at 8am"""
        context = UserContext(time_of_day=8, day_of_week=2)
        news = make_candidate("c1", tags=["news", "business", "productivity"])
        other = make_candidate("c2", tags=["cooking"])
        assert calculator.temporal(news, context, NOW).time_of_day == pytest.approx(0.8)
        assert calculator.temporal(other, context, NOW).time_of_day == pytest.approx(0.5)

    def test_weekend_leisure(self, calculator):
        """Leisure topics fit weekends, work topics fit weekdays"""
        leisure = make_candidate("c1", tags=["entertainment"])
        work = make_candidate("c2", tags=["business"])
        saturday = UserContext(time_of_day=12, day_of_week=6)
        tuesday = UserContext(time_of_day=12, day_of_week=2)
        assert calculator.temporal(leisure, saturday, NOW).day_of_week == 0.8
        assert calculator.temporal(work, saturday, NOW).day_of_week == 0.5
        assert calculator.temporal(work, tuesday, NOW).day_of_week == 0.8

    def test_peak_hours(self):
        assert peak_hour_alignment(20) == 0.9
        assert peak_hour_alignment(17) == 0.7
        assert peak_hour_alignment(3) == 0.4


class TestLocationAndSession:
    """Test regional and session signals"""

    def test_regional_topic_boost(self, calculator):
        """Regional topics score above neutral for that country"""
        scores = calculator.location(make_candidate("c1", tags=["anime"]), UserLocation(country="jp"))
        assert scores.geographic > 0.5

    def test_local_event(self, calculator):
        """Tags naming the user's city count as local events"""
        scores = calculator.location(make_candidate("c1", tags=["berlin-marathon"]), UserLocation(city="Berlin"))
        assert scores.local_event == 0.8

    def test_already_seen_penalized(self, calculator):
        """Content the user just saw scores lower than fresh content"""
        candidate = make_candidate("c1")
        seen = UserContext(recent_content_ids=["c1"])
        unseen = UserContext(recent_content_ids=["c9"])
        assert calculator.session(candidate, seen).previous_activity == 0.2
        assert calculator.score(candidate, seen, NOW) < calculator.score(candidate, unseen, NOW)


class TestDevice:
    """Test device format fit"""

    def test_tv_prefers_video(self, calculator):
        """Video suits a TV better than text"""
        video = make_candidate("c1", content_type=ContentType.VIDEO)
        text = make_candidate("c2", content_type=ContentType.TEXT)
        assert calculator.device(video, DeviceType.TV).score > calculator.device(text, DeviceType.TV).score

    def test_unknown_device_skipped(self, calculator):
        """Without a device the device factor is not applied"""
        result = calculator.calculate(make_candidate("c1"), UserContext(), NOW)
        assert "device" not in result.factors_applied
        assert result.device.score == 0.5


class TestOverall:
    """Test the combined contextual score"""

    def test_bounded(self, calculator):
        context = UserContext(
            time_of_day=20,
            day_of_week=6,
            device_type=DeviceType.TV,
            location=UserLocation(country="US", city="Austin"),
            session_duration_minutes=45,
            recent_content_ids=["c0"],
        )
        candidate = make_candidate("c1", tags=["entertainment", "movies", "austin-local"], content_type=ContentType.VIDEO)
        result = calculator.calculate(candidate, context, NOW)
        assert 0.0 <= result.score <= 1.0
        assert result.confidence == ConfidenceLevel.HIGH
        assert result.explanations

    def test_sparse_context_low_confidence(self, calculator):
        result = calculator.calculate(make_candidate("c1"), UserContext(), NOW)
        assert result.confidence == ConfidenceLevel.LOW
