# src/feed_ranker/scoring.py
"""
Scoring functions for feed ranking.

All signal functions return normalized values between 0.0 and 1.0:
- 1.0 = perfect match/highest quality
- 0.0 = no match/lowest quality

These scores are combined using the weights in ScoringWeights (defaults
in config.py). Every function here is pure: identical inputs always give
identical outputs, so candidates can be scored in any order or in parallel.
"""

import math
from datetime import datetime

from feed_ranker.models import (
    ContentCandidate,
    RetrievalSource,
    ScoreBreakdown,
    ScoredCandidate,
    ScoringWeights,
    UserPreferenceProfile,
    utcnow,
)

RECENCY_HALF_LIFE_HOURS = 24.0
RECENCY_FLOOR = 0.1
POPULARITY_HALF_LIFE_HOURS = 48.0
HISTORY_BONUS_CAP = 0.3


def _age_hours(created_at: datetime, now: datetime) -> float:
    return max(0.0, (now - created_at).total_seconds() / 3600.0)


def normalize_weights(weights: ScoringWeights) -> ScoringWeights:
    """
    Scale the core weights so they sum to 1.0.

    Args:
        weights: Weights to normalize

    Returns:
        New ScoringWeights. If the core weights sum to zero or less they are
        returned unchanged, since there is nothing to scale.
    """
    return weights.normalized()


def calculate_recency_score(created_at: datetime, now: datetime | None = None) -> float:
    """
    Score based on content age (0.1-1.0, recent = higher).

    Uses exponential decay with a 24 hour half-life:
    - just posted: 1.0
    - 24 hours: 0.5
    - 48 hours: 0.25
    - ~80+ hours: floor of 0.1

    Args:
        created_at: When the content was created (timezone-aware)
        now: Reference time, defaults to the current UTC time

    Returns:
        Score between 0.1 and 1.0
    """
    now = now or utcnow()
    score = math.exp(-_age_hours(created_at, now) * math.log(2) / RECENCY_HALF_LIFE_HOURS)
    return max(RECENCY_FLOOR, min(1.0, score))


def calculate_popularity_score(candidate: ContentCandidate, now: datetime | None = None) -> float:
    """
    Score based on engagement (0.0-1.0, more engagement = higher score).

    Weighted engagement (likes x1, comments x2, shares x3) is blended with
    click-through and engagement-rate terms, then decayed with a 48 hour
    half-life so older content needs more engagement to hold its score.
    A sigmoid maps the result into 0.0-1.0; content with any engagement
    lands above 0.5.

    Candidates without engagement signals fall back to their precomputed
    popularity score.

    Args:
        candidate: Content with engagement metrics
        now: Reference time, defaults to the current UTC time

    Returns:
        Score between 0.0 and 1.0
    """
    metrics = candidate.engagement
    if not metrics.has_signal():
        return max(0.0, min(1.0, candidate.popularity_score))

    now = now or utcnow()
    engagement = metrics.likes * 1.0 + metrics.comments * 2.0 + metrics.shares * 3.0
    view_term = 0.0
    if metrics.views > 0:
        view_term = metrics.click_through_rate * 100.0 + metrics.engagement_rate * 50.0

    raw = engagement * 0.6 + view_term * 0.4
    decay = math.exp(-_age_hours(candidate.created_at, now) * math.log(2) / POPULARITY_HALF_LIFE_HOURS) * 0.8 + 0.2
    adjusted = raw * decay

    score = 1.0 / (1.0 + math.exp(-adjusted / 10.0))
    return max(0.0, min(1.0, score))


def is_blocked(candidate: ContentCandidate, preferences: UserPreferenceProfile) -> bool:
    """True if the author is blocked or any tag contains a blocked topic (case-insensitive)."""
    if candidate.author_id in preferences.blocked_users:
        return True
    blocked_topics = [t.lower() for t in preferences.blocked_topics if t]
    return any(blocked in tag.lower() for tag in candidate.tags for blocked in blocked_topics)


def calculate_interest_score(candidate: ContentCandidate, topic_interests: dict[str, float]) -> float:
    """
    Score based on overlap with the user's topic interests (0.0-1.0).

    Each interest counts with its weight:
    - exact tag match: full weight
    - partial match (tag or text contains the interest): 0.6 x weight

    Args:
        candidate: Content with tags and text
        topic_interests: Dict mapping topic -> interest weight

    Returns:
        Weighted share of matched interest, or 0.5 when the user has none
    """
    interests = {t.lower(): w for t, w in topic_interests.items() if w > 0}
    if not interests:
        return 0.5

    tags = [t.lower() for t in candidate.tags]
    text = candidate.text.lower()
    matched = 0.0
    for interest, weight in interests.items():
        if interest in tags:
            matched += weight
        elif any(interest in tag for tag in tags) or interest in text:
            matched += weight * 0.6

    return max(0.0, min(1.0, matched / sum(interests.values())))


def calculate_history_bonus(author_id: str, engagement_history: dict[str, float]) -> float:
    """
    Bonus for authors the user engaged with before (0.0-0.3).

    History keys are either the author id or "author_id:content_id".
    """
    scores = [
        score for key, score in engagement_history.items()
        if key == author_id or key.startswith(f"{author_id}:")
    ]
    if not scores:
        return 0.0
    return max(0.0, min(HISTORY_BONUS_CAP, sum(scores) / len(scores) * HISTORY_BONUS_CAP))


def language_matches(candidate: ContentCandidate, preferences: UserPreferenceProfile) -> bool:
    if not candidate.language or not preferences.language_preferences:
        return False
    return candidate.language.lower() in {lang.lower() for lang in preferences.language_preferences}


def calculate_relevance_score(candidate: ContentCandidate, preferences: UserPreferenceProfile | None) -> float:
    """
    Score based on how well content fits the user's stated preferences (0.0-1.0).

    Exactly 0.0 when the author is blocked or a tag contains a blocked
    topic, regardless of every other signal. Otherwise:
    - interest overlap (see calculate_interest_score)
    - +0.1 preferred content type
    - +0.1 preferred language
    - + history bonus, capped at 0.3

    Args:
        candidate: Content to score
        preferences: User profile, or None when unavailable

    Returns:
        Score between 0.0 and 1.0 (0.5 without preferences)
    """
    if preferences is None:
        return 0.5
    if is_blocked(candidate, preferences):
        return 0.0

    score = calculate_interest_score(candidate, preferences.topic_interests)
    if candidate.content_type in preferences.preferred_content_types:
        score += 0.1
    if language_matches(candidate, preferences):
        score += 0.1
    score += calculate_history_bonus(candidate.author_id, preferences.engagement_history)

    return max(0.0, min(1.0, score))


def custom_bonus_factor(
    name: str,
    candidate: ContentCandidate,
    preferences: UserPreferenceProfile | None,
    relevance: float,
) -> float:
    """Signal value a custom weight multiplies. Unknown names contribute nothing."""
    if name == "trending":
        return 1.0 if candidate.retrieval_source == RetrievalSource.TRENDING else 0.0
    if name == "diversity":
        return 1.0 if candidate.retrieval_source == RetrievalSource.DIVERSE else 0.0
    if name == "following":
        return 1.0 if candidate.is_following else 0.0
    if name == "engagement":
        return _engagement_bonus(candidate, preferences)
    if name == "topic_relevance":
        return relevance
    if name == "language_match":
        return 1.0 if preferences is not None and language_matches(candidate, preferences) else 0.0
    return 0.0


def _engagement_bonus(candidate: ContentCandidate, preferences: UserPreferenceProfile | None) -> float:
    if preferences is None:
        return 0.0
    return calculate_history_bonus(candidate.author_id, preferences.engagement_history) / HISTORY_BONUS_CAP


def calculate_composite_score(
    candidate: ContentCandidate,
    recency_score: float,
    popularity_score: float,
    relevance_score: float,
    preferences: UserPreferenceProfile | None = None,
    weights: ScoringWeights | None = None,
) -> float:
    """
    Weighted combination of all scores.

    Combines recency, popularity and relevance with the core weights, then
    adds the following and engagement bonuses and any custom weights
    (trending, diversity, topic_relevance, language_match, ...).

    Args:
        candidate: Content being scored
        recency_score: Score from calculate_recency_score
        popularity_score: Score from calculate_popularity_score
        relevance_score: Score from calculate_relevance_score
        preferences: User profile for the bonus signals
        weights: ScoringWeights, defaults to the configured defaults

    Returns:
        Composite score between 0.0 and 1.0
    """
    weights = weights or ScoringWeights()
    composite = (
        recency_score * weights.recency +
        popularity_score * weights.popularity +
        relevance_score * weights.relevance
    )
    if candidate.is_following:
        composite += weights.following
    composite += _engagement_bonus(candidate, preferences) * weights.engagement

    for name, weight in sorted(weights.custom.items()):
        composite += weight * custom_bonus_factor(name, candidate, preferences, relevance_score)

    return max(0.0, min(1.0, composite))


def score_candidate(
    candidate: ContentCandidate,
    preferences: UserPreferenceProfile | None = None,
    weights: ScoringWeights | None = None,
    now: datetime | None = None,
) -> ScoredCandidate:
    """Score one candidate and keep the per-signal breakdown."""
    now = now or utcnow()
    recency = calculate_recency_score(candidate.created_at, now)
    popularity = calculate_popularity_score(candidate, now)
    relevance = calculate_relevance_score(candidate, preferences)
    composite = calculate_composite_score(candidate, recency, popularity, relevance, preferences, weights)

    topic_match = False
    if preferences is not None:
        interests = {t.lower() for t in preferences.interests}
        topic_match = any(tag.lower() in interests for tag in candidate.tags)

    return ScoredCandidate(
        candidate=candidate,
        breakdown=ScoreBreakdown(recency=recency, popularity=popularity, relevance=relevance, composite=composite),
        score=composite,
        topic_match=topic_match,
    )


def score_candidates(
    candidates: list[ContentCandidate],
    preferences: UserPreferenceProfile | None = None,
    weights: ScoringWeights | None = None,
    now: datetime | None = None,
) -> list[ScoredCandidate]:
    """Score a batch of candidates, sorted by score (highest first, ties by content id)."""
    now = now or utcnow()
    scored = [score_candidate(c, preferences, weights, now) for c in candidates]
    return sort_by_score(scored)


def sort_by_score(scored: list[ScoredCandidate]) -> list[ScoredCandidate]:
    return sorted(scored, key=lambda s: (-s.score, s.content_id))
