"""Feed generation pipeline: retrieval, scoring, personalization and diversity."""

from __future__ import annotations

import asyncio
import logging
import time
from concurrent.futures import Executor
from datetime import datetime, timedelta
from functools import partial
from typing import Any

from .cache import FeedCache
from .cold_start import ColdStartStrategy
from .collaborators import ContentSource, EngagementMetricsProvider, PreferenceProvider
from .config import ALGORITHM_VERSION, CANDIDATE_OVERSAMPLE_FACTOR, MAX_FEED_LIMIT, SCORING_BATCH_SIZE
from .diversity import DiversityEnforcer
from .errors import GenerationFailure, RequestValidationError, UpstreamUnavailable
from .experiments import ExperimentAssignment
from .filters import apply_safety_filters, dedupe_by_id
from .models import (
    AlgorithmConfig,
    ContentCandidate,
    FeedEntry,
    FeedMetadata,
    FeedReason,
    FeedReasonType,
    FeedRequest,
    FeedSourceType,
    FeedType,
    GeneratedFeed,
    RetrievalSource,
    ScoredCandidate,
    UserExperiment,
    UserPreferenceProfile,
    utcnow,
)
from .outcome import Degraded, Ok, Outcome
from .personalization import PassThroughPersonalization, PersonalizationStrategy
from .scoring import calculate_popularity_score, score_candidates, sort_by_score

logger = logging.getLogger(__name__)

ERROR_ALGORITHM_ID = "error"
BOOST_THRESHOLD = 0.8


def parse_feed_type(value: str | FeedType) -> FeedType:
    """Accept a FeedType or its name/value in any case."""
    if isinstance(value, FeedType):
        return value
    normalized = str(value).strip().lower()
    for feed_type in FeedType:
        if normalized == feed_type.value:
            return feed_type
    raise RequestValidationError(f"Unknown feed type: {value!r}")


def validate_request(request: FeedRequest):
    if not isinstance(request.feed_type, FeedType):
        raise RequestValidationError(f"Unknown feed type: {request.feed_type!r}")
    if not 1 <= request.limit <= MAX_FEED_LIMIT:
        raise RequestValidationError(f"Limit must be between 1 and {MAX_FEED_LIMIT}, got {request.limit}")
    if not request.user_id:
        raise RequestValidationError("user_id is required")


def fallback_preferences(user_id: str) -> UserPreferenceProfile:
    """Neutral profile used when no preferences can be loaded."""
    return UserPreferenceProfile(user_id=user_id, language_preferences=["en"], account_age_days=1)


def default_algorithm(feed_type: FeedType) -> AlgorithmConfig:
    return AlgorithmConfig(algorithm_id=f"default_{feed_type.value}", version=ALGORITHM_VERSION)


def entry_reasons(item: ScoredCandidate, is_cold_start: bool) -> list[FeedReason]:
    breakdown = item.breakdown
    candidate = item.candidate
    reasons = []
    if breakdown.relevance > 0.7:
        reasons.append(FeedReason(
            type=FeedReasonType.RELEVANCE, description="Matches your interests", weight=breakdown.relevance
        ))
    if breakdown.popularity > 0.6:
        reasons.append(FeedReason(
            type=FeedReasonType.POPULARITY, description="Popular with other users", weight=breakdown.popularity
        ))
    if breakdown.recency > 0.8:
        reasons.append(FeedReason(
            type=FeedReasonType.RECENCY, description="Recently posted", weight=breakdown.recency
        ))
    if item.topic_match:
        reasons.append(FeedReason(
            type=FeedReasonType.TOPIC_INTEREST,
            description=f"About {', '.join(candidate.tags)}",
            weight=breakdown.relevance,
        ))
    if candidate.is_following:
        reasons.append(FeedReason(
            type=FeedReasonType.FOLLOWING, description=f"From {candidate.author_id}, who you follow", weight=1.0
        ))
    if candidate.retrieval_source == RetrievalSource.TRENDING:
        reasons.append(FeedReason(
            type=FeedReasonType.TRENDING, description="Trending right now", weight=breakdown.popularity
        ))
    if candidate.retrieval_source == RetrievalSource.DIVERSE:
        reasons.append(FeedReason(
            type=FeedReasonType.DIVERSITY, description="Something different to explore", weight=0.5
        ))
    if is_cold_start:
        reasons.append(FeedReason(
            type=FeedReasonType.COLD_START, description="Popular picks while we learn what you like", weight=0.5
        ))
    return reasons


def entry_source_type(item: ScoredCandidate) -> FeedSourceType:
    candidate = item.candidate
    if candidate.is_following:
        return FeedSourceType.FOLLOWING
    if candidate.retrieval_source == RetrievalSource.TRENDING or item.breakdown.popularity > 0.8:
        return FeedSourceType.TRENDING
    return FeedSourceType.RECOMMENDATION


class FeedOrchestrator:
    """Generates ranked feeds for one user at a time."""

    def __init__(
        self,
        content_source: ContentSource,
        preference_provider: PreferenceProvider,
        cache: FeedCache,
        experiments: ExperimentAssignment | None = None,
        cold_start: ColdStartStrategy | None = None,
        personalization: PersonalizationStrategy | None = None,
        metrics_provider: EngagementMetricsProvider | None = None,
        executor: Executor | None = None,
        clock=utcnow,
    ):
        self.content_source = content_source
        self.preference_provider = preference_provider
        self.cache = cache
        self.experiments = experiments
        self.cold_start = cold_start or ColdStartStrategy(content_source, clock=clock)
        self.personalization = personalization or PassThroughPersonalization()
        self.metrics_provider = metrics_provider
        self._executor = executor
        self._clock = clock

    # --- Public API ---

    async def get_feed(self, request: FeedRequest) -> GeneratedFeed:
        """Serve from the cache when possible, otherwise generate and cache."""
        validate_request(request)
        if not request.refresh and request.cursor is None:
            cached = await self.cache.get_feed(request.user_id, request.feed_type)
            if cached is not None:
                return cached

        feed = await self.generate_feed(request)
        if feed.metadata.algorithm_id != ERROR_ALGORITHM_ID and request.cursor is None:
            await self.cache.put_feed(feed)
        return feed

    async def generate_feed(self, request: FeedRequest) -> GeneratedFeed:
        """
        Run the full ranking pipeline for one request.

        Invalid requests raise RequestValidationError. Any other failure is
        logged and returned as an empty feed whose metadata carries the
        error, so callers always get a well-formed response.
        """
        validate_request(request)
        started = time.perf_counter()
        try:
            return await self._generate(request, started)
        except Exception as e:
            logger.error(f"Feed generation failed for {request.user_id}: {e}", exc_info=True)
            return self._error_feed(request, e, started)

    async def invalidate_preferences(self, user_id: str) -> int:
        return await self.cache.invalidate_user(user_id)

    async def prewarm(self, pairs: list[tuple[str, FeedType]], background: bool = True):
        """Pre-warm feeds for (user, feed type) pairs, in the background by default."""

        async def generate(user_id: str, feed_type: FeedType) -> GeneratedFeed:
            feed = await self.generate_feed(FeedRequest(user_id=user_id, feed_type=feed_type))
            if feed.metadata.algorithm_id == ERROR_ALGORITHM_ID:
                raise GenerationFailure(feed.metadata.parameters.get("error", "feed generation failed"))
            return feed

        if background:
            return self.cache.schedule_prewarm(pairs, generate)
        return await self.cache.prewarm(pairs, generate)

    # --- Pipeline ---

    async def _generate(self, request: FeedRequest, started: float) -> GeneratedFeed:
        now = self._clock()
        user_id = request.user_id
        degraded: list[str] = []

        preferences_outcome = await self._fetch_preferences(user_id)
        if isinstance(preferences_outcome, Degraded):
            degraded.append(preferences_outcome.reason)
        preferences = preferences_outcome.value

        algorithm = request.algorithm or default_algorithm(request.feed_type)
        assignment = None
        if self.experiments is not None:
            assignment = await self.experiments.get_user_experiment(user_id, request.feed_type)
            algorithm = self.experiments.apply_experiment_parameters(algorithm, assignment)

        # Retrieval
        weights = algorithm.weights
        fetch_limit = request.limit * CANDIDATE_OVERSAMPLE_FACTOR
        is_cold_start = algorithm.cold_start_enabled and self.cold_start.is_new_user(
            preferences, algorithm.cold_start, now
        )
        if is_cold_start:
            candidates = await self.cold_start.generate_cold_start_feed(
                user_id, preferences, fetch_limit, algorithm.cold_start
            )
            weights = self.cold_start.get_cold_start_weights(preferences, weights, algorithm.cold_start)
        else:
            filters = self._filters(request, preferences)
            candidates = await self.content_source.get_candidates(request.feed_type, fetch_limit, filters)

        candidates = dedupe_by_id(apply_safety_filters(candidates, preferences))
        candidates, popularity_degraded = await self._attach_popularity(candidates, now)
        degraded.extend(popularity_degraded)

        # Scoring
        scoring_started = time.perf_counter()
        scored = await self._score(candidates, preferences, weights, now)
        scoring_ms = _elapsed_ms(scoring_started)

        personalization_started = time.perf_counter()
        personalized = await self.personalization.personalize(user_id, scored, preferences, apply_diversity=False)
        degraded.extend(personalized.degraded)
        personalization_ms = _elapsed_ms(personalization_started)

        diversity_started = time.perf_counter()
        if algorithm.diversity_enabled:
            ranked = DiversityEnforcer(algorithm.diversity).enforce(personalized.items, request.limit)
        else:
            ranked = sort_by_score(personalized.items)
        diversity_ms = _elapsed_ms(diversity_started)

        page = ranked[:request.limit]
        entries = [
            FeedEntry(
                entry_id=f"{item.content_id}_{rank}",
                content_id=item.content_id,
                author_id=item.candidate.author_id,
                score=item.score,
                rank=rank,
                reasons=entry_reasons(item, is_cold_start),
                source_type=entry_source_type(item),
                boosted=item.score > BOOST_THRESHOLD,
                algorithm_id=algorithm.algorithm_id,
            )
            for rank, item in enumerate(page, start=1)
        ]

        parameters: dict[str, Any] = {
            **algorithm.parameters,
            "is_cold_start": is_cold_start,
            "scoring_time_ms": scoring_ms,
            "personalization_time_ms": personalization_ms,
            "diversity_time_ms": diversity_ms,
        }
        if assignment is not None:
            parameters["experiment_id"] = assignment.experiment_id
            parameters["variant_id"] = assignment.variant_id
            parameters["is_control"] = assignment.is_control
        if degraded:
            parameters["degraded"] = degraded

        feed = GeneratedFeed(
            user_id=user_id,
            feed_type=request.feed_type,
            entries=entries,
            metadata=FeedMetadata(
                algorithm_id=algorithm.algorithm_id,
                algorithm_version=algorithm.version,
                generation_duration_ms=_elapsed_ms(started),
                candidate_count=len(candidates),
                content_count=len(entries),
                generated_at=now,
                parameters=parameters,
            ),
            next_cursor=entries[-1].entry_id if len(entries) == request.limit else None,
            has_more=len(ranked) > request.limit,
        )
        ttl = self.cache.compute_feed_ttl(feed)
        feed.metadata.expires_at = now + timedelta(seconds=ttl)

        logger.debug(
            f"Generated {request.feed_type.value} feed for {user_id}: {len(entries)} entries "
            f"from {len(candidates)} candidates in {feed.metadata.generation_duration_ms}ms"
        )
        self._log_experiment(assignment, feed)
        return feed

    async def _fetch_preferences(self, user_id: str) -> Outcome[UserPreferenceProfile]:
        cached = await self.cache.get_preferences(user_id)
        if cached is not None:
            return Ok(cached)
        try:
            preferences = await self.preference_provider.get_preferences(user_id)
        except Exception as e:
            error = UpstreamUnavailable("preferences", e)
            logger.warning(f"Using fallback preferences for {user_id}: {error}")
            return Degraded(fallback_preferences(user_id), str(error))

        if preferences is None:
            return Ok(fallback_preferences(user_id))
        await self.cache.put_preferences(preferences)
        return Ok(preferences)

    async def _attach_popularity(
        self, candidates: list[ContentCandidate], now: datetime
    ) -> tuple[list[ContentCandidate], list[str]]:
        """
        Fill in popularity for candidates that arrived without engagement data.

        The popularity cache is checked first; remaining ids go to the
        metrics provider and the resulting scores are cached.
        """
        missing = [c.content_id for c in candidates if not c.engagement.has_signal() and c.popularity_score <= 0]
        if not missing:
            return candidates, []

        popularity = await self.cache.get_popularity_batch(missing)
        degraded = []
        uncached = [cid for cid in missing if cid not in popularity]
        metrics = {}
        if uncached and self.metrics_provider is not None:
            try:
                metrics = await self.metrics_provider.get_metrics(uncached)
            except Exception as e:
                error = UpstreamUnavailable("engagement metrics", e)
                logger.warning(f"Scoring without fresh engagement metrics: {error}")
                degraded.append(str(error))

        updated = []
        fresh_scores = {}
        for candidate in candidates:
            if candidate.content_id in popularity:
                candidate = candidate.model_copy(update={"popularity_score": popularity[candidate.content_id]})
            elif candidate.content_id in metrics:
                candidate = candidate.model_copy(update={"engagement": metrics[candidate.content_id]})
                fresh_scores[candidate.content_id] = calculate_popularity_score(candidate, now)
            updated.append(candidate)

        if fresh_scores:
            await self.cache.put_popularity_batch(fresh_scores)
        return updated, degraded

    async def _score(
        self,
        candidates: list[ContentCandidate],
        preferences: UserPreferenceProfile | None,
        weights,
        now: datetime,
    ) -> list[ScoredCandidate]:
        """Score in fixed-size chunks on the executor and merge the results."""
        if not candidates:
            return []
        loop = asyncio.get_running_loop()
        chunks = [
            candidates[start:start + SCORING_BATCH_SIZE]
            for start in range(0, len(candidates), SCORING_BATCH_SIZE)
        ]
        results = await asyncio.gather(*(
            loop.run_in_executor(self._executor, partial(score_candidates, chunk, preferences, weights, now))
            for chunk in chunks
        ))
        return sort_by_score([item for chunk in results for item in chunk])

    @staticmethod
    def _filters(request: FeedRequest, preferences: UserPreferenceProfile | None) -> dict[str, Any]:
        filters: dict[str, Any] = {"user_id": request.user_id}
        if request.cursor:
            filters["cursor"] = request.cursor
        if preferences is not None:
            filters["exclude_authors"] = sorted(preferences.blocked_users)
            filters["exclude_topics"] = sorted(preferences.blocked_topics)
            if preferences.language_preferences:
                filters["languages"] = list(preferences.language_preferences)
        return filters

    def _log_experiment(self, assignment: UserExperiment | None, feed: GeneratedFeed):
        if assignment is None or self.experiments is None:
            return
        self.experiments.log_experiment_metrics(assignment, feed)

    def _error_feed(self, request: FeedRequest, error: Exception, started: float) -> GeneratedFeed:
        return GeneratedFeed(
            user_id=request.user_id,
            feed_type=request.feed_type,
            metadata=FeedMetadata(
                algorithm_id=ERROR_ALGORITHM_ID,
                generation_duration_ms=_elapsed_ms(started),
                generated_at=self._clock(),
                parameters={"error": str(error), "error_type": type(error).__name__},
            ),
        )


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)
