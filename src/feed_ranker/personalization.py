# src/feed_ranker/personalization.py
"""
Personalization: turns topic, source and contextual relevance into a
per-item multiplier on the base (composite) score.

The blender fetches the user's history and context itself. Either fetch
can fail; the affected factor then falls back to a neutral 0.5 and the
failure is reported, but personalization always completes.
"""

from __future__ import annotations

import asyncio
import logging
import math
import statistics
from collections import Counter
from datetime import datetime
from typing import Protocol, runtime_checkable

from pydantic import BaseModel, Field

from .collaborators import ContextProvider, HistoryProvider
from .contextual_relevance import ContextualRelevanceCalculator
from .errors import UpstreamUnavailable
from .models import ScoredCandidate, UserActivity, UserContext, UserPreferenceProfile, utcnow
from .outcome import Degraded, Ok, Outcome, degraded_reasons
from .source_affinity import SourceAffinityCalculator
from .topic_relevance import TopicRelevanceCalculator

logger = logging.getLogger(__name__)

NEUTRAL_FACTOR = 0.5
LINEAR_SHARE = 0.7
HARMONIC_SHARE = 0.3
HARMONIC_FLOOR = 0.01
AMPLIFICATION_FLOOR = 0.8
AMPLIFICATION_CEILING = 1.2
MAX_RECENCY_BOOST = 0.2


class PersonalizationConfig(BaseModel):
    topic_weight: float = 0.5
    source_weight: float = 0.3
    context_weight: float = 0.2
    diversity_factor: float = 0.1
    recency_decay_hours: float = 168.0  # 1 week
    min_multiplier: float = 0.1
    max_multiplier: float = 3.0
    enable_diversity_controls: bool = True
    enable_recency_boost: bool = True
    enable_contextual_boost: bool = True
    max_same_topic_ratio: float = 0.4
    max_same_source_ratio: float = 0.3
    history_lookback_days: int = 30


class PersonalizationFactors(BaseModel):
    topic_relevance: float = NEUTRAL_FACTOR
    source_affinity: float = NEUTRAL_FACTOR
    contextual_relevance: float = NEUTRAL_FACTOR
    recency_boost: float = 0.0
    diversity_adjustment: float = 0.0
    multiplier: float = 1.0


class PersonalizedItem(BaseModel):
    item: ScoredCandidate
    base_score: float
    final_score: float
    factors: PersonalizationFactors = Field(default_factory=PersonalizationFactors)
    explanations: list[str] = Field(default_factory=list)


class PersonalizationMetrics(BaseModel):
    average_multiplier: float = 0.0
    topic_coverage: int = 0
    source_diversity: int = 0
    temporal_spread_hours: float = 0.0
    score_lift: float = 0.0


class PersonalizationResult(BaseModel):
    items: list[ScoredCandidate] = Field(default_factory=list)
    details: list[PersonalizedItem] = Field(default_factory=list)
    metrics: PersonalizationMetrics = Field(default_factory=PersonalizationMetrics)
    degraded: list[str] = Field(default_factory=list)
    processing_ms: int = 0


@runtime_checkable
class PersonalizationStrategy(Protocol):
    async def personalize(
        self,
        user_id: str,
        items: list[ScoredCandidate],
        preferences: UserPreferenceProfile | None,
        apply_diversity: bool | None = None,
    ) -> PersonalizationResult: ...


class PassThroughPersonalization:
    """Keeps the composite scores as they are."""

    async def personalize(
        self,
        user_id: str,
        items: list[ScoredCandidate],
        preferences: UserPreferenceProfile | None,
        apply_diversity: bool | None = None,
    ) -> PersonalizationResult:
        return PersonalizationResult(items=list(items))


def blend_factors(topic: float, source: float, context: float, config: PersonalizationConfig) -> float:
    """
    70/30 mix of the weighted linear sum and the weighted harmonic mean.

    The harmonic mean pulls the blend down when one factor is much weaker
    than the others.
    """
    weights = [config.topic_weight, config.source_weight, config.context_weight]
    values = [topic, source, context]
    total = sum(weights)
    if total <= 0:
        return NEUTRAL_FACTOR

    linear = sum(w * v for w, v in zip(weights, values)) / total
    harmonic = total / sum(w / max(v, HARMONIC_FLOOR) for w, v in zip(weights, values))
    return LINEAR_SHARE * linear + HARMONIC_SHARE * harmonic


def quality_amplification(base_score: float) -> float:
    """Higher-quality content gains more from personalization (0.8x-1.2x)."""
    return max(AMPLIFICATION_FLOOR, min(AMPLIFICATION_CEILING, 0.8 + 0.4 * base_score))


def contextual_bonus(topic: float, source: float, context: float) -> float:
    bonus = 0.0
    if topic > 0.7 and source > 0.7 and context > 0.6:
        bonus += 0.2
    elif context > 0.8:
        bonus += 0.1
    if source < 0.3:
        bonus -= 0.15
    return bonus


def recency_boost(created_at: datetime, now: datetime, decay_hours: float) -> float:
    age_hours = max(0.0, (now - created_at).total_seconds() / 3600.0)
    return math.exp(-age_hours / decay_hours) * MAX_RECENCY_BOOST


class PersonalizationBlender:
    """Combines topic, source and contextual relevance into a score multiplier."""

    def __init__(
        self,
        history_provider: HistoryProvider,
        context_provider: ContextProvider,
        config: PersonalizationConfig | None = None,
        topic_calculator: TopicRelevanceCalculator | None = None,
        source_calculator: SourceAffinityCalculator | None = None,
        context_calculator: ContextualRelevanceCalculator | None = None,
        clock=utcnow,
    ):
        self.history_provider = history_provider
        self.context_provider = context_provider
        self.config = config or PersonalizationConfig()
        self.topic_calculator = topic_calculator or TopicRelevanceCalculator()
        self.source_calculator = source_calculator or SourceAffinityCalculator()
        self.context_calculator = context_calculator or ContextualRelevanceCalculator()
        self._clock = clock

    async def fetch_history(self, user_id: str) -> Outcome[list[UserActivity]]:
        try:
            history = await self.history_provider.get_history(user_id, self.config.history_lookback_days)
            return Ok(history)
        except Exception as e:
            error = UpstreamUnavailable("history", e)
            logger.warning(f"Personalization for {user_id} without history: {error}")
            return Degraded([], str(error))

    async def fetch_context(self, user_id: str) -> Outcome[UserContext | None]:
        try:
            return Ok(await self.context_provider.get_context(user_id))
        except Exception as e:
            error = UpstreamUnavailable("context", e)
            logger.warning(f"Personalization for {user_id} without context: {error}")
            return Degraded(None, str(error))

    async def personalize(
        self,
        user_id: str,
        items: list[ScoredCandidate],
        preferences: UserPreferenceProfile | None,
        apply_diversity: bool | None = None,
    ) -> PersonalizationResult:
        """
        Re-score items for one user.

        Args:
            user_id: Viewer
            items: Scored candidates; their ``score`` is the base score
            preferences: Viewer profile, None when it could not be fetched
            apply_diversity: Override for the ratio-based diversity control.
                Pipelines with their own diversity stage pass False.

        Returns:
            PersonalizationResult with items sorted by personalized score
        """
        started = self._clock()
        if not items:
            return PersonalizationResult()

        history_outcome, context_outcome = await asyncio.gather(
            self.fetch_history(user_id), self.fetch_context(user_id)
        )
        degraded = degraded_reasons(history_outcome, context_outcome)
        if preferences is None:
            degraded.append("preferences unavailable")

        now = self._clock()
        personalized = [
            self._personalize_item(item, preferences, history_outcome, context_outcome, now)
            for item in items
        ]

        use_diversity = self.config.enable_diversity_controls if apply_diversity is None else apply_diversity
        if use_diversity:
            personalized = self.apply_diversity_controls(personalized)

        personalized.sort(key=lambda p: (-p.final_score, p.item.content_id))
        elapsed = int((self._clock() - started).total_seconds() * 1000)

        return PersonalizationResult(
            items=[
                p.item.model_copy(update={"score": p.final_score, "explanations": p.explanations})
                for p in personalized
            ],
            details=personalized,
            metrics=self._metrics(personalized),
            degraded=degraded,
            processing_ms=elapsed,
        )

    def _personalize_item(
        self,
        item: ScoredCandidate,
        preferences: UserPreferenceProfile | None,
        history: Outcome[list[UserActivity]],
        context: Outcome[UserContext | None],
        now: datetime,
    ) -> PersonalizedItem:
        cfg = self.config
        candidate = item.candidate

        topic = NEUTRAL_FACTOR
        if preferences is not None:
            topic = self.topic_calculator.score(candidate.tags, preferences.topic_interests)

        source = NEUTRAL_FACTOR
        if isinstance(history, Ok):
            source = self.source_calculator.score(candidate.author_id, history.value, now)

        contextual = NEUTRAL_FACTOR
        if isinstance(context, Ok) and context.value is not None:
            contextual = self.context_calculator.score(candidate, context.value, now)

        multiplier = blend_factors(topic, source, contextual, cfg) * quality_amplification(item.score)
        if cfg.enable_contextual_boost:
            multiplier += contextual_bonus(topic, source, contextual)

        boost = recency_boost(candidate.created_at, now, cfg.recency_decay_hours) if cfg.enable_recency_boost else 0.0
        multiplier *= 1.0 + boost
        multiplier = max(cfg.min_multiplier, min(cfg.max_multiplier, multiplier))

        factors = PersonalizationFactors(
            topic_relevance=topic,
            source_affinity=source,
            contextual_relevance=contextual,
            recency_boost=boost,
            multiplier=multiplier,
        )
        return PersonalizedItem(
            item=item,
            base_score=item.score,
            final_score=item.score * multiplier,
            factors=factors,
            explanations=self._explain(item, factors),
        )

    def apply_diversity_controls(self, items: list[PersonalizedItem]) -> list[PersonalizedItem]:
        """
        Penalize items whose topic or source already fills too much of the list.

        Walks the list in score order keeping running topic/source counts;
        each exceeded ratio costs ``diversity_factor`` of the item's score.
        """
        cfg = self.config
        ordered = sorted(items, key=lambda p: (-p.final_score, p.item.content_id))
        total = len(ordered)
        topic_counts: Counter = Counter()
        source_counts: Counter = Counter()

        adjusted = []
        for personalized in ordered:
            candidate = personalized.item.candidate
            topics = {t.lower() for t in candidate.tags}
            topic_ratio = max((topic_counts[t] / total for t in topics), default=0.0)
            source_ratio = source_counts[candidate.author_id] / total

            adjustment = 0.0
            if topic_ratio > cfg.max_same_topic_ratio:
                adjustment -= cfg.diversity_factor
            if source_ratio > cfg.max_same_source_ratio:
                adjustment -= cfg.diversity_factor

            topic_counts.update(topics)
            source_counts[candidate.author_id] += 1

            if adjustment:
                factors = personalized.factors.model_copy(update={"diversity_adjustment": adjustment})
                personalized = personalized.model_copy(
                    update={
                        "final_score": personalized.final_score * (1.0 + adjustment),
                        "factors": factors,
                        "explanations": self._explain(personalized.item, factors),
                    }
                )
            adjusted.append(personalized)
        return adjusted

    @staticmethod
    def _explain(item: ScoredCandidate, factors: PersonalizationFactors) -> list[str]:
        explanations = []
        if factors.topic_relevance > 0.7:
            explanations.append(f"Matches your interest in {', '.join(item.candidate.tags)}")
        if factors.source_affinity > 0.7:
            explanations.append(f"From {item.candidate.author_id}, a source you frequently engage with")
        if factors.contextual_relevance > 0.6:
            explanations.append("Relevant to your current context and time of day")
        if factors.recency_boost > 0.1:
            explanations.append("Recently published content")
        if factors.diversity_adjustment < -0.05:
            explanations.append("Score adjusted to maintain feed diversity")
        return explanations

    @staticmethod
    def _metrics(items: list[PersonalizedItem]) -> PersonalizationMetrics:
        if not items:
            return PersonalizationMetrics()
        created = [p.item.candidate.created_at for p in items]
        base_avg = statistics.fmean(p.base_score for p in items)
        final_avg = statistics.fmean(p.final_score for p in items)
        return PersonalizationMetrics(
            average_multiplier=statistics.fmean(p.factors.multiplier for p in items),
            topic_coverage=len({t.lower() for p in items for t in p.item.candidate.tags}),
            source_diversity=len({p.item.candidate.author_id for p in items}),
            temporal_spread_hours=(max(created) - min(created)).total_seconds() / 3600.0,
            score_lift=(final_avg - base_avg) / base_avg if base_avg > 0 else 0.0,
        )
