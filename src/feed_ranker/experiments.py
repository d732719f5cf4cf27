# src/feed_ranker/experiments.py
"""
A/B experiment assignment.

Users are hashed into buckets in [0, 100) with SHA-256 over
(user, experiment, salt), so assignment needs no coordination and is the
same on every node. Inclusion and variant selection hash different keys,
which keeps the variant split even inside a small included slice. Once a
variant is chosen it is memoized in the key-value store and never changes
for that (user, experiment) pair.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from typing import Any

from .config import DEFAULT_EXPERIMENT_ID, EXPERIMENT_SALT
from .errors import CacheError
from .events import EventSink, LoggingEventSink
from .kv_store import KeyValueStore
from .models import (
    AlgorithmConfig,
    ExperimentConfig,
    ExperimentEventType,
    ExperimentMetricEvent,
    ExperimentVariant,
    FeedType,
    GeneratedFeed,
    UserExperiment,
)

logger = logging.getLogger(__name__)

ASSIGNMENT_KEY_PREFIX = "experiment:assignment:"
REGISTRY_KEY = "experiment:registry"

WEIGHT_PARAMETERS = {
    "recency_weight": "recency",
    "popularity_weight": "popularity",
    "relevance_weight": "relevance",
    "following_weight": "following",
    "engagement_weight": "engagement",
}
DIVERSITY_PARAMETERS = {"max_same_author", "max_same_topic", "author_spacing"}
COLD_START_PARAMETERS = {"trending_weight"}
FLAG_PARAMETERS = {"enable_cold_start", "diversity_enabled"}


def stable_bucket(*parts: str) -> float:
    """Map the joined parts to a bucket in [0, 100) with 0.01 resolution."""
    digest = hashlib.sha256(":".join(parts).encode("utf-8")).digest()
    value = int.from_bytes(digest[:8], "big", signed=False)
    return (value % 10_000) / 100.0


def default_experiment() -> ExperimentConfig:
    return ExperimentConfig(
        experiment_id=DEFAULT_EXPERIMENT_ID,
        name="Feed algorithm recency test",
        target_percentage=10.0,
        variants=[
            ExperimentVariant(variant_id="control", allocation_percentage=50.0, is_control=True),
            ExperimentVariant(
                variant_id="high_recency",
                allocation_percentage=50.0,
                parameters={"recency_weight": 0.7, "popularity_weight": 0.2, "relevance_weight": 0.1},
            ),
        ],
    )


class ExperimentRegistry:
    """Active experiments, kept in the shared key-value store."""

    def __init__(self, store: KeyValueStore):
        self.store = store

    async def all(self) -> list[ExperimentConfig]:
        try:
            raw = await self.store.get(REGISTRY_KEY)
        except CacheError as e:
            logger.warning(f"Experiment registry unavailable: {e}")
            return []
        if not raw:
            return []
        return [ExperimentConfig(**item) for item in json.loads(raw)]

    async def _save(self, experiments: list[ExperimentConfig]):
        payload = json.dumps([e.model_dump(mode="json") for e in experiments])
        await self.store.set(REGISTRY_KEY, payload)

    async def register(self, experiment: ExperimentConfig):
        """Add or replace an experiment by id."""
        total = sum(v.allocation_percentage for v in experiment.variants)
        if not experiment.variants or abs(total - 100.0) > 0.01:
            raise ValueError(f"Variant allocations must sum to 100, got {total}")
        experiments = [e for e in await self.all() if e.experiment_id != experiment.experiment_id]
        experiments.append(experiment)
        await self._save(experiments)
        logger.info(f"Registered experiment {experiment.experiment_id} ({len(experiment.variants)} variants)")

    async def deactivate(self, experiment_id: str) -> bool:
        experiments = await self.all()
        found = False
        for experiment in experiments:
            if experiment.experiment_id == experiment_id:
                experiment.active = False
                found = True
        if found:
            await self._save(experiments)
        return found

    async def get(self, experiment_id: str) -> ExperimentConfig | None:
        for experiment in await self.all():
            if experiment.experiment_id == experiment_id:
                return experiment
        return None

    async def active_for(self, feed_type: FeedType) -> list[ExperimentConfig]:
        return [e for e in await self.all() if e.applies_to(feed_type)]

    async def ensure_default(self) -> ExperimentConfig:
        existing = await self.get(DEFAULT_EXPERIMENT_ID)
        if existing is not None:
            return existing
        experiment = default_experiment()
        await self.register(experiment)
        return experiment


class ExperimentAssignment:
    """Deterministic bucket/variant assignment and experiment parameter application."""

    def __init__(
        self,
        store: KeyValueStore,
        registry: ExperimentRegistry | None = None,
        event_sink: EventSink | None = None,
        salt: str = EXPERIMENT_SALT,
    ):
        self.store = store
        self.registry = registry or ExperimentRegistry(store)
        self.event_sink = event_sink or LoggingEventSink()
        self.salt = salt
        self._pending: set[asyncio.Task] = set()

    # --- Assignment ---

    def inclusion_bucket(self, user_id: str, experiment_id: str) -> float:
        return stable_bucket(user_id, experiment_id, self.salt)

    def variant_bucket(self, user_id: str, experiment_id: str) -> float:
        return stable_bucket(user_id, experiment_id, "variant", self.salt)

    def should_include_user(self, user_id: str, experiment: ExperimentConfig) -> bool:
        return self.inclusion_bucket(user_id, experiment.experiment_id) < experiment.target_percentage

    def select_variant(self, user_id: str, experiment: ExperimentConfig) -> ExperimentVariant:
        """First variant whose cumulative allocation exceeds the user's bucket."""
        if not experiment.variants:
            raise ValueError(f"Experiment {experiment.experiment_id} has no variants")
        bucket = self.variant_bucket(user_id, experiment.experiment_id)
        cumulative = 0.0
        for variant in experiment.variants:
            cumulative += variant.allocation_percentage
            if bucket < cumulative:
                return variant
        return experiment.variants[-1]

    async def assign(self, user_id: str, experiment: ExperimentConfig) -> UserExperiment:
        """Return the memoized variant for the user, choosing and storing one if needed."""
        key = f"{ASSIGNMENT_KEY_PREFIX}{experiment.experiment_id}:{user_id}"
        variant = None
        try:
            stored = await self.store.get(key)
        except CacheError as e:
            logger.warning(f"Assignment lookup failed for {user_id}: {e}")
            stored = None
        if stored:
            variant = next((v for v in experiment.variants if v.variant_id == stored), None)

        if variant is None:
            variant = self.select_variant(user_id, experiment)
            try:
                await self.store.set(key, variant.variant_id)
            except CacheError as e:
                logger.warning(f"Could not memoize assignment for {user_id}: {e}")

        return UserExperiment(
            user_id=user_id,
            experiment_id=experiment.experiment_id,
            variant_id=variant.variant_id,
            is_control=variant.is_control,
            parameters=dict(variant.parameters),
        )

    async def get_user_experiment(self, user_id: str, feed_type: FeedType) -> UserExperiment | None:
        """The first active experiment for this feed type that includes the user."""
        for experiment in await self.registry.active_for(feed_type):
            if self.should_include_user(user_id, experiment):
                return await self.assign(user_id, experiment)
        return None

    # --- Parameters ---

    def apply_experiment_parameters(
        self, algorithm: AlgorithmConfig, assignment: UserExperiment | None
    ) -> AlgorithmConfig:
        """
        Return a copy of the algorithm config with the variant's overrides.

        Weight parameters replace the named weights. Diversity, cold-start
        and flag parameters update their part of the config. Any other
        numeric parameter becomes a custom weight. Weights are renormalized
        afterwards unless they sum to zero or less.
        """
        if assignment is None or not assignment.parameters:
            return algorithm

        updated = algorithm.model_copy(deep=True)
        weights = updated.weights
        for name, value in assignment.parameters.items():
            if name in WEIGHT_PARAMETERS:
                setattr(weights, WEIGHT_PARAMETERS[name], float(value))
            elif name in DIVERSITY_PARAMETERS:
                setattr(updated.diversity, name, int(value))
            elif name in COLD_START_PARAMETERS:
                setattr(updated.cold_start, name, float(value))
            elif name in FLAG_PARAMETERS:
                updated.parameters[name] = bool(value)
            elif isinstance(value, (int, float)) and not isinstance(value, bool):
                weights.custom[name] = float(value)
            else:
                logger.debug(f"Ignoring unsupported experiment parameter {name}={value!r}")

        updated.weights = weights.normalized()
        updated.parameters["experiment_id"] = assignment.experiment_id
        updated.parameters["variant_id"] = assignment.variant_id
        return updated

    # --- Metrics ---

    def log_experiment_metrics(
        self,
        assignment: UserExperiment,
        feed: GeneratedFeed,
        event_type: ExperimentEventType = ExperimentEventType.FEED_GENERATED,
    ) -> asyncio.Task | None:
        """Publish a feed-generation event without waiting for the sink."""
        event = ExperimentMetricEvent(
            user_id=assignment.user_id,
            experiment_id=assignment.experiment_id,
            variant_id=assignment.variant_id,
            is_control=assignment.is_control,
            event_type=event_type,
            duration_ms=feed.metadata.generation_duration_ms,
            content_count=feed.metadata.content_count,
            candidate_count=feed.metadata.candidate_count,
            algorithm_id=feed.metadata.algorithm_id,
            metadata={"feed_type": feed.feed_type.value},
        )
        return self._publish_in_background(event)

    def track_event(
        self,
        assignment: UserExperiment,
        event_type: ExperimentEventType,
        metadata: dict[str, Any] | None = None,
    ) -> asyncio.Task | None:
        """Publish a non-feed event (view, engagement, session) for an assigned user."""
        event = ExperimentMetricEvent(
            user_id=assignment.user_id,
            experiment_id=assignment.experiment_id,
            variant_id=assignment.variant_id,
            is_control=assignment.is_control,
            event_type=event_type,
            metadata=metadata or {},
        )
        return self._publish_in_background(event)

    def _publish_in_background(self, event: ExperimentMetricEvent) -> asyncio.Task | None:
        try:
            task = asyncio.get_running_loop().create_task(self._publish(event))
        except RuntimeError:
            logger.warning(f"No running event loop, dropping {event.event_type.value} event for {event.user_id}")
            return None
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _publish(self, event: ExperimentMetricEvent):
        try:
            await self.event_sink.publish(event)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Failed to publish experiment event {event.event_type.value}: {e}", exc_info=True)

    async def drain(self):
        """Wait for in-flight events. Used on shutdown and in tests."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
