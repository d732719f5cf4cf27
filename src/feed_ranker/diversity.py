# src/feed_ranker/diversity.py
"""
Greedy diversity enforcement over a score-sorted candidate list.

Hard caps remove candidates outright once an author, topic or content type
has been used too often. Spacing rules prefer the best candidate that is
far enough from the previous item by the same author (and on the same
topic); when no such candidate exists the best remaining one is placed
anyway with a proximity penalty on its score. Near the end of the page,
under-represented content types are preferred to approach the target mix.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field

from pydantic import BaseModel, Field

from .models import ContentType, DiversityConfig, ScoredCandidate
from .scoring import sort_by_score

logger = logging.getLogger(__name__)

AUTHOR_PENALTY_FACTOR = 0.15
AUTHOR_PENALTY_MULTIPLIER = 2.0
TOPIC_PENALTY_FACTOR = 0.10
MAX_PENALTY = 1.0
BALANCE_START_FRACTION = 0.8


class DiversityReport(BaseModel):
    author_counts: dict[str, int] = Field(default_factory=dict)
    topic_counts: dict[str, int] = Field(default_factory=dict)
    content_type_counts: dict[ContentType, int] = Field(default_factory=dict)
    penalized: int = 0
    excluded: int = 0


@dataclass
class _RunningState:
    authors: Counter = field(default_factory=Counter)
    topics: Counter = field(default_factory=Counter)
    types: Counter = field(default_factory=Counter)
    last_author_position: dict[str, int] = field(default_factory=dict)
    last_topic_position: dict[str, int] = field(default_factory=dict)

    def record(self, item: ScoredCandidate, position: int):
        candidate = item.candidate
        self.authors[candidate.author_id] += 1
        self.types[candidate.content_type] += 1
        self.last_author_position[candidate.author_id] = position
        for topic in _topics(item):
            self.topics[topic] += 1
            self.last_topic_position[topic] = position


def _topics(item: ScoredCandidate) -> set[str]:
    return {tag.lower() for tag in item.candidate.tags}


def _far_enough(distance: int | None, spacing: int) -> bool:
    return distance is None or distance >= spacing


class DiversityEnforcer:
    """Reorders and penalizes ranked candidates under author/topic/type rules."""

    def __init__(self, config: DiversityConfig | None = None):
        self.config = config or DiversityConfig()

    def enforce(self, scored: list[ScoredCandidate], limit: int | None = None) -> list[ScoredCandidate]:
        return self.enforce_with_report(scored, limit)[0]

    def enforce_with_report(
        self, scored: list[ScoredCandidate], limit: int | None = None
    ) -> tuple[list[ScoredCandidate], DiversityReport]:
        """
        Apply caps, spacing and content-type balance.

        Args:
            scored: Candidates in any order; they are sorted by score first
            limit: Page size used for content-type targets. Every admissible
                candidate is still returned so callers can tell if more exist.

        Returns:
            (ordered candidates, report)
        """
        remaining = sort_by_score(scored)
        page_size = limit or len(remaining)
        targets = self.content_type_targets(page_size) if self.config.enforce_content_type_balance else {}

        state = _RunningState()
        result: list[ScoredCandidate] = []
        penalized = excluded = 0

        while remaining:
            admissible = [item for item in remaining if not self._violates_caps(item, state)]
            excluded += len(remaining) - len(admissible)
            remaining = admissible
            if not remaining:
                break

            position = len(result)
            pool = self._spacing_pool(remaining, state, position)
            chosen = pool[0]
            if targets and BALANCE_START_FRACTION * page_size <= position < page_size:
                under_target = [
                    item for item in pool
                    if state.types[item.candidate.content_type] < targets.get(item.candidate.content_type, 0)
                ]
                if under_target:
                    chosen = under_target[0]

            remaining = [item for item in remaining if item is not chosen]
            penalty = self.proximity_penalty(chosen, state, position)
            if penalty > 0:
                penalized += 1
                chosen = chosen.model_copy(
                    update={"score": chosen.score * (1.0 - penalty), "diversity_penalty": penalty}
                )
            state.record(chosen, position)
            result.append(chosen)

        if excluded or penalized:
            logger.debug(f"Diversity: {excluded} excluded by caps, {penalized} penalized for spacing")

        report = DiversityReport(
            author_counts=dict(state.authors),
            topic_counts=dict(state.topics),
            content_type_counts=dict(state.types),
            penalized=penalized,
            excluded=excluded,
        )
        return result, report

    def content_type_targets(self, page_size: int) -> dict[ContentType, int]:
        return {
            content_type: round(share * page_size)
            for content_type, share in self.config.content_type_distribution.items()
        }

    def proximity_penalty(self, item: ScoredCandidate, state: _RunningState, position: int) -> float:
        """
        Penalty for placing an item too close to a previous one.

        Author: 0.15 x (spacing - distance) / spacing x 2
        Topic:  0.10 x (spacing - distance) / spacing, for the closest topic

        The two are summed and capped at 1.0.
        """
        cfg = self.config
        penalty = 0.0

        distance = self._author_distance(item, state, position)
        if distance is not None and cfg.author_spacing > 0 and distance < cfg.author_spacing:
            penalty += (
                AUTHOR_PENALTY_FACTOR
                * (cfg.author_spacing - distance) / cfg.author_spacing
                * AUTHOR_PENALTY_MULTIPLIER
            )

        distance = self._topic_distance(item, state, position)
        if distance is not None and cfg.topic_spacing > 0 and distance < cfg.topic_spacing:
            penalty += TOPIC_PENALTY_FACTOR * (cfg.topic_spacing - distance) / cfg.topic_spacing

        return min(MAX_PENALTY, penalty)

    def _violates_caps(self, item: ScoredCandidate, state: _RunningState) -> bool:
        cfg = self.config
        candidate = item.candidate
        if state.authors[candidate.author_id] >= cfg.max_same_author:
            return True
        if state.types[candidate.content_type] >= cfg.max_same_content_type:
            return True
        return any(state.topics[topic] >= cfg.max_same_topic for topic in _topics(item))

    def _spacing_pool(
        self, remaining: list[ScoredCandidate], state: _RunningState, position: int
    ) -> list[ScoredCandidate]:
        """Best tier available: fully spaced, then author-spaced, then anything."""
        cfg = self.config
        author_spaced = [
            item for item in remaining
            if _far_enough(self._author_distance(item, state, position), cfg.author_spacing)
        ]
        fully_spaced = [
            item for item in author_spaced
            if _far_enough(self._topic_distance(item, state, position), cfg.topic_spacing)
        ]
        return fully_spaced or author_spaced or remaining

    @staticmethod
    def _author_distance(item: ScoredCandidate, state: _RunningState, position: int) -> int | None:
        last = state.last_author_position.get(item.candidate.author_id)
        return None if last is None else position - last

    @staticmethod
    def _topic_distance(item: ScoredCandidate, state: _RunningState, position: int) -> int | None:
        distances = [
            position - state.last_topic_position[topic]
            for topic in _topics(item)
            if topic in state.last_topic_position
        ]
        return min(distances) if distances else None
