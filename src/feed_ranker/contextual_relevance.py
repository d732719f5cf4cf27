# src/feed_ranker/contextual_relevance.py
"""
Contextual relevance: how well an item fits the moment it is being shown.

Four sub-scores, each 0.0-1.0 with 0.5 as neutral:
- temporal: time of day / day of week topic fit, content age, peak hours
- location: regional topic boosts and local events
- session: session length vs. content, already-seen avoidance
- device: content type vs. device format and capabilities

The overall score is their weighted sum. Confidence reflects how many
context signals were actually present.
"""

from __future__ import annotations

import math
import statistics
from datetime import datetime

from pydantic import BaseModel, Field

from .models import (
    ConfidenceLevel,
    ContentCandidate,
    ContentType,
    DeviceType,
    UserContext,
    UserLocation,
    utcnow,
)

# Topics that suit a given hour range (inclusive)
TIME_OF_DAY_TOPICS: list[tuple[range, list[str]]] = [
    (range(6, 10), ["news", "current-events", "business", "productivity", "morning-briefing"]),
    (range(10, 12), ["work", "productivity", "technology", "business", "learning"]),
    (range(12, 15), ["lifestyle", "food", "entertainment", "social", "quick-reads"]),
    (range(15, 18), ["work", "productivity", "news", "technology", "updates"]),
    (range(18, 21), ["entertainment", "sports", "social", "lifestyle", "personal"]),
    (range(21, 24), ["entertainment", "movies", "books", "relaxation", "personal-time"]),
]

WEEKEND_TOPICS = ("entertainment", "leisure", "hobby")
WORKDAY_TOPICS = ("work", "business", "productivity")

GEOGRAPHIC_TOPIC_BOOSTS: dict[str, list[str]] = {
    "US": ["american-football", "baseball", "thanksgiving", "july-4th"],
    "UK": ["football", "cricket", "tea", "royal-family"],
    "JP": ["anime", "manga", "cherry-blossoms", "technology"],
    "DE": ["oktoberfest", "soccer", "engineering", "precision"],
}

DEVICE_CONTENT_PREFERENCES: dict[DeviceType, dict[str, float]] = {
    DeviceType.MOBILE: {"quick-reads": 0.9, "social": 0.85, "news": 0.8, "photos": 0.9, "short-videos": 0.95},
    DeviceType.TABLET: {"long-form": 0.8, "magazines": 0.9, "videos": 0.85, "interactive": 0.8, "visual-content": 0.9},
    DeviceType.DESKTOP: {"long-form": 0.95, "work-related": 0.9, "productivity": 0.9, "detailed-analysis": 0.9, "technical": 0.85},
    DeviceType.TV: {"videos": 0.95, "entertainment": 0.9, "movies": 0.95, "streaming": 0.9, "visual-heavy": 0.9},
}

DEVICE_CAPABILITY: dict[DeviceType, dict[ContentType, float]] = {
    DeviceType.MOBILE: {ContentType.TEXT: 0.8, ContentType.IMAGE: 0.9, ContentType.VIDEO: 0.6},
    DeviceType.TABLET: {},
    DeviceType.DESKTOP: {ContentType.TEXT: 0.9, ContentType.VIDEO: 0.9, ContentType.IMAGE: 0.8},
    DeviceType.TV: {ContentType.VIDEO: 0.95, ContentType.IMAGE: 0.7, ContentType.TEXT: 0.3},
}
DEVICE_CAPABILITY_DEFAULT = {
    DeviceType.MOBILE: 0.5,
    DeviceType.TABLET: 0.8,
    DeviceType.DESKTOP: 0.7,
    DeviceType.TV: 0.4,
    DeviceType.UNKNOWN: 0.5,
}
DEVICE_INTERACTION = {
    DeviceType.MOBILE: 0.8,
    DeviceType.TABLET: 0.7,
    DeviceType.DESKTOP: 0.9,
    DeviceType.TV: 0.5,
    DeviceType.UNKNOWN: 0.5,
}
DEVICE_DISPLAY = {
    DeviceType.MOBILE: 0.7,
    DeviceType.TABLET: 0.8,
    DeviceType.DESKTOP: 0.9,
    DeviceType.TV: 0.6,
    DeviceType.UNKNOWN: 0.5,
}

# Words that mark a content type for device-format matching
CONTENT_TYPE_HINTS: dict[ContentType, tuple[str, ...]] = {
    ContentType.VIDEO: ("videos", "short-videos", "streaming", "movies", "visual-heavy"),
    ContentType.IMAGE: ("photos", "visual-content", "visual-heavy"),
    ContentType.TEXT: ("quick-reads", "long-form", "news", "detailed-analysis", "magazines"),
    ContentType.LINK: ("news", "work-related"),
}


class ContextualRelevanceConfig(BaseModel):
    temporal_weight: float = 0.3
    location_weight: float = 0.2
    session_weight: float = 0.25
    device_weight: float = 0.25
    temporal_decay_hours: float = 24.0
    enable_temporal: bool = True
    enable_location: bool = True
    enable_session: bool = True
    enable_device: bool = True


class TemporalScores(BaseModel):
    time_of_day: float = 0.5
    day_of_week: float = 0.5
    recency: float = 0.5
    peak_alignment: float = 0.5

    @property
    def score(self) -> float:
        return statistics.fmean([self.time_of_day, self.day_of_week, self.recency, self.peak_alignment])


class LocationScores(BaseModel):
    geographic: float = 0.5
    timezone: float = 0.5
    local_event: float = 0.5
    cultural: float = 0.5

    @property
    def score(self) -> float:
        return statistics.fmean([self.geographic, self.timezone, self.local_event, self.cultural])


class SessionScores(BaseModel):
    duration_alignment: float = 0.5
    previous_activity: float = 0.5
    attention_span: float = 0.5

    @property
    def score(self) -> float:
        return statistics.fmean([self.duration_alignment, self.previous_activity, self.attention_span])


class DeviceScores(BaseModel):
    format_alignment: float = 0.5
    capability: float = 0.5
    interaction: float = 0.5
    display: float = 0.5

    @property
    def score(self) -> float:
        return statistics.fmean([self.format_alignment, self.capability, self.interaction, self.display])


class ContextualRelevanceResult(BaseModel):
    score: float
    temporal: TemporalScores = Field(default_factory=TemporalScores)
    location: LocationScores = Field(default_factory=LocationScores)
    session: SessionScores = Field(default_factory=SessionScores)
    device: DeviceScores = Field(default_factory=DeviceScores)
    confidence: ConfidenceLevel = ConfidenceLevel.MINIMAL
    factors_applied: list[str] = Field(default_factory=list)
    explanations: list[str] = Field(default_factory=list)


def _topic_hits(topics: list[str], keywords) -> int:
    lowered = [t.lower() for t in topics]
    return sum(1 for keyword in keywords if any(keyword in t for t in lowered))


def peak_hour_alignment(hour: int) -> float:
    if hour in (9, 10, 11, 13, 14, 15, 19, 20, 21):
        return 0.9
    if hour in (8, 12, 16, 17, 18, 22):
        return 0.7
    return 0.4


class ContextualRelevanceCalculator:
    """Scores an item against the viewer's current context."""

    def __init__(self, config: ContextualRelevanceConfig | None = None):
        self.config = config or ContextualRelevanceConfig()

    def calculate(
        self, candidate: ContentCandidate, context: UserContext, now: datetime | None = None
    ) -> ContextualRelevanceResult:
        cfg = self.config
        now = now or utcnow()
        factors: list[str] = []

        temporal = TemporalScores()
        if cfg.enable_temporal:
            factors.append("temporal")
            temporal = self.temporal(candidate, context, now)

        location = LocationScores()
        if cfg.enable_location and context.location is not None:
            factors.append("location")
            location = self.location(candidate, context.location)

        session = SessionScores()
        if cfg.enable_session:
            factors.append("session")
            session = self.session(candidate, context)

        device = DeviceScores()
        if cfg.enable_device and context.device_type != DeviceType.UNKNOWN:
            factors.append("device")
            device = self.device(candidate, context.device_type)

        overall = (
            temporal.score * cfg.temporal_weight
            + location.score * cfg.location_weight
            + session.score * cfg.session_weight
            + device.score * cfg.device_weight
        )

        return ContextualRelevanceResult(
            score=max(0.0, min(1.0, overall)),
            temporal=temporal,
            location=location,
            session=session,
            device=device,
            confidence=self._confidence(len(factors), context),
            factors_applied=factors,
            explanations=self._explain(temporal, location, session, device, context.device_type),
        )

    def score(self, candidate: ContentCandidate, context: UserContext, now: datetime | None = None) -> float:
        return self.calculate(candidate, context, now).score

    def temporal(self, candidate: ContentCandidate, context: UserContext, now: datetime) -> TemporalScores:
        hour = context.time_of_day
        preferred = [topic for hours, topics in TIME_OF_DAY_TOPICS if hour in hours for topic in topics]
        time_of_day = 0.5 + _topic_hits(candidate.tags, preferred) / max(len(preferred), 1) * 0.5 if preferred else 0.5

        is_weekend = context.day_of_week in (6, 7)
        if is_weekend and _topic_hits(candidate.tags, WEEKEND_TOPICS):
            day_of_week = 0.8
        elif not is_weekend and _topic_hits(candidate.tags, WORKDAY_TOPICS):
            day_of_week = 0.8
        else:
            day_of_week = 0.5

        hours_old = max(0.0, (now - candidate.created_at).total_seconds() / 3600.0)
        recency = math.exp(-hours_old / self.config.temporal_decay_hours)

        return TemporalScores(
            time_of_day=min(1.0, time_of_day),
            day_of_week=day_of_week,
            recency=min(1.0, recency),
            peak_alignment=peak_hour_alignment(hour),
        )

    def location(self, candidate: ContentCandidate, location: UserLocation) -> LocationScores:
        geographic = 0.5
        boosts = GEOGRAPHIC_TOPIC_BOOSTS.get((location.country or "").upper())
        if boosts:
            geographic = min(1.0, 0.5 + _topic_hits(candidate.tags, boosts) / len(boosts) * 0.5)

        local_event = 0.5
        if location.city:
            city = location.city.lower()
            if any(city in t.lower() or "local" in t.lower() for t in candidate.tags):
                local_event = 0.8

        # Candidates carry no publishing region, so timezone alignment is neutral
        return LocationScores(geographic=geographic, timezone=0.5, local_event=local_event, cultural=geographic)

    def session(self, candidate: ContentCandidate, context: UserContext) -> SessionScores:
        minutes = context.session_duration_minutes
        tags = candidate.tags

        if minutes < 5 and _topic_hits(tags, ("quick", "brief")):
            duration = 0.9
        elif 5 <= minutes <= 30 and _topic_hits(tags, ("medium", "news")):
            duration = 0.8
        elif minutes > 30 and _topic_hits(tags, ("detailed", "analysis")):
            duration = 0.9
        else:
            duration = 0.5

        if not context.recent_content_ids:
            previous = 0.5
        elif candidate.content_id in context.recent_content_ids:
            previous = 0.2
        else:
            previous = 0.7

        if minutes < 5:
            attention = 0.8
        elif minutes > 30:
            attention = 0.7
        else:
            attention = 0.6

        return SessionScores(duration_alignment=duration, previous_activity=previous, attention_span=attention)

    def device(self, candidate: ContentCandidate, device_type: DeviceType) -> DeviceScores:
        preferences = DEVICE_CONTENT_PREFERENCES.get(device_type, {})
        hints = CONTENT_TYPE_HINTS.get(candidate.content_type, ())
        lowered = [t.lower() for t in candidate.tags]
        aligned = [
            score for pref, score in preferences.items()
            if pref in hints or any(pref in t for t in lowered)
        ]
        capability = DEVICE_CAPABILITY.get(device_type, {}).get(
            candidate.content_type, DEVICE_CAPABILITY_DEFAULT.get(device_type, 0.5)
        )
        return DeviceScores(
            format_alignment=max(aligned) if aligned else 0.5,
            capability=capability,
            interaction=DEVICE_INTERACTION.get(device_type, 0.5),
            display=DEVICE_DISPLAY.get(device_type, 0.5),
        )

    @staticmethod
    def _confidence(factors_applied: int, context: UserContext) -> ConfidenceLevel:
        richness = sum([
            context.location is not None,
            context.session_duration_minutes > 0,
            bool(context.recent_content_ids),
            context.device_type != DeviceType.UNKNOWN,
        ])
        if factors_applied >= 3 and richness >= 3:
            return ConfidenceLevel.HIGH
        if factors_applied >= 2 and richness >= 2:
            return ConfidenceLevel.MEDIUM
        if factors_applied >= 1 or richness >= 1:
            return ConfidenceLevel.LOW
        return ConfidenceLevel.MINIMAL

    @staticmethod
    def _explain(
        temporal: TemporalScores,
        location: LocationScores,
        session: SessionScores,
        device: DeviceScores,
        device_type: DeviceType,
    ) -> list[str]:
        explanations = []
        if temporal.time_of_day > 0.7:
            explanations.append("Content aligns well with the current time of day")
        if temporal.day_of_week > 0.7:
            explanations.append("Appropriate for the current day of week")
        if location.geographic > 0.7:
            explanations.append("Relevant to your region")
        if location.local_event > 0.7:
            explanations.append("Related to local events")
        if session.duration_alignment > 0.7:
            explanations.append("Fits your current session length")
        if device.format_alignment > 0.7:
            explanations.append(f"Suited to your {device_type.value}")
        return explanations
