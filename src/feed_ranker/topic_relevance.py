# src/feed_ranker/topic_relevance.py
"""
Hierarchical topic matching between an item's tags and a user's topic
interests.

Match strength, strongest first:
- exact tag match
- partial / semantic match (substring containment or edit distance)
- category match (both topics fall in the same category)
- no match

Scores are normalized to 0.0-1.0; an empty item or empty interest map
returns a neutral 0.5.
"""

from __future__ import annotations

import statistics
from collections import Counter
from enum import Enum

from pydantic import BaseModel, Field


class TopicMatchType(str, Enum):
    EXACT = "exact"
    PARTIAL = "partial"
    SEMANTIC = "semantic"
    CATEGORY = "category"
    NONE = "none"


class TopicCategory(str, Enum):
    TECHNOLOGY = "technology"
    SCIENCE = "science"
    ENTERTAINMENT = "entertainment"
    SPORTS = "sports"
    POLITICS = "politics"
    BUSINESS = "business"
    HEALTH = "health"
    LIFESTYLE = "lifestyle"
    EDUCATION = "education"
    OTHER = "other"


TOPIC_HIERARCHY: dict[TopicCategory, list[str]] = {
    TopicCategory.TECHNOLOGY: [
        "programming", "software", "ai", "machine-learning", "data-science",
        "web-development", "mobile", "cybersecurity", "blockchain", "cloud",
        "kotlin", "python", "javascript",
    ],
    TopicCategory.SCIENCE: [
        "physics", "chemistry", "biology", "astronomy", "medicine",
        "research", "laboratory", "experiment", "discovery",
    ],
    TopicCategory.ENTERTAINMENT: [
        "movies", "tv-shows", "celebrities", "music", "gaming",
        "comedy", "drama", "documentary", "streaming",
    ],
    TopicCategory.SPORTS: [
        "football", "basketball", "soccer", "tennis", "baseball",
        "olympics", "fitness", "workout", "athlete", "competition",
    ],
    TopicCategory.POLITICS: [
        "election", "government", "policy", "democracy", "legislation",
        "voting", "campaign", "debate", "political",
    ],
    TopicCategory.BUSINESS: [
        "startup", "entrepreneurship", "investing", "marketing", "finance",
        "economy", "stock-market", "cryptocurrency", "business-strategy",
    ],
    TopicCategory.HEALTH: [
        "wellness", "nutrition", "mental-health", "fitness", "medical",
        "healthcare", "diet", "exercise", "therapy", "medicine",
    ],
    TopicCategory.LIFESTYLE: [
        "fashion", "food", "travel", "home", "relationships", "parenting",
        "personal-development", "productivity", "minimalism",
    ],
    TopicCategory.EDUCATION: [
        "learning", "university", "school", "course", "tutorial",
        "study", "knowledge", "academic", "scholarship",
    ],
}

# Hand-tuned neighbours for common topics; a stand-in for embeddings.
SEMANTIC_SIMILARITIES: dict[str, dict[str, float]] = {
    "ai": {
        "machine-learning": 0.9,
        "data-science": 0.8,
        "programming": 0.7,
        "technology": 0.6,
        "automation": 0.8,
    },
    "programming": {
        "software": 0.9,
        "coding": 0.95,
        "development": 0.85,
        "web-development": 0.8,
        "mobile-development": 0.75,
    },
    "fitness": {
        "health": 0.8,
        "workout": 0.9,
        "exercise": 0.95,
        "wellness": 0.7,
        "sports": 0.6,
    },
}


class TopicRelevanceConfig(BaseModel):
    exact_match_weight: float = 1.0
    partial_match_weight: float = 0.7
    category_match_weight: float = 0.5
    semantic_match_weight: float = 0.6
    specificity_bonus: float = 0.2
    diversity_bonus: float = 0.1
    minimum_similarity_threshold: float = 0.3
    enable_category_fallback: bool = True


class TopicMatch(BaseModel):
    item_topic: str
    match_type: TopicMatchType
    matched_user_topic: str | None = None
    interest: float = 0.0
    similarity: float = 0.0
    weighted_score: float = 0.0
    category: TopicCategory = TopicCategory.OTHER


class TopicRelevanceResult(BaseModel):
    score: float
    matches: list[TopicMatch] = Field(default_factory=list)
    dominant_categories: list[TopicCategory] = Field(default_factory=list)
    specificity: float = 0.0
    diversity: float = 0.0
    explanations: list[str] = Field(default_factory=list)

    @property
    def match_count(self) -> int:
        return sum(1 for m in self.matches if m.match_type != TopicMatchType.NONE)


def _normalize(topic: str) -> str:
    return topic.strip().lower().replace("-", " ")


def levenshtein_distance(a: str, b: str) -> int:
    """Classic edit distance with a rolling row."""
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            cost = 0 if ca == cb else 1
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


def topic_similarity(topic1: str, topic2: str) -> float:
    """
    Similarity between two topics (0.0-1.0).

    Containment scores higher the earlier the shorter topic appears inside
    the longer one (0.8 at position 0, down to 0.5). Edit-distance similarity
    is scaled by 0.6, so a containment hit usually wins. Known semantic
    neighbours use their table value.
    """
    a = _normalize(topic1)
    b = _normalize(topic2)
    if not a or not b:
        return 0.0
    if a == b:
        return 1.0

    semantic = max(
        SEMANTIC_SIMILARITIES.get(topic1.lower(), {}).get(topic2.lower(), 0.0),
        SEMANTIC_SIMILARITIES.get(topic2.lower(), {}).get(topic1.lower(), 0.0),
    )

    if b in a:
        contains = 0.8 - (a.index(b) / len(a) * 0.3)
    elif a in b:
        contains = 0.8 - (b.index(a) / len(b) * 0.3)
    else:
        contains = 0.0

    max_len = max(len(a), len(b))
    lev = 1.0 - levenshtein_distance(a, b) / max_len

    return max(0.0, min(1.0, max(contains, lev * 0.6, semantic)))


def topic_category(topic: str) -> TopicCategory:
    """Category of a topic: direct keyword hit first, then substring hit."""
    lowered = topic.lower()
    for category, keywords in TOPIC_HIERARCHY.items():
        if lowered in keywords:
            return category
    for category, keywords in TOPIC_HIERARCHY.items():
        if any(keyword in lowered for keyword in keywords):
            return category
    return TopicCategory.OTHER


def topic_specificity(topic: str, topic_interests: dict[str, float]) -> float:
    """Longer, hyphenated, capitalized or explicitly followed topics are more specific."""
    score = min(len(topic) / 20.0, 1.0)
    if "-" in topic:
        score += 0.2
    if any(ch.isupper() for ch in topic):
        score += 0.1
    if topic in topic_interests or topic.lower() in topic_interests:
        score += 0.3
    return max(0.0, min(1.0, score))


class TopicRelevanceCalculator:
    """Scores how well an item's tags match a user's topic interests."""

    def __init__(self, config: TopicRelevanceConfig | None = None):
        self.config = config or TopicRelevanceConfig()

    def calculate(self, item_topics: list[str], topic_interests: dict[str, float]) -> TopicRelevanceResult:
        if not item_topics or not topic_interests:
            return TopicRelevanceResult(
                score=0.5,
                specificity=0.5,
                diversity=0.5,
                explanations=["Not enough topic information, using neutral relevance"],
            )

        interests = {topic.lower(): weight for topic, weight in topic_interests.items()}
        matches = [self._match_topic(topic, interests) for topic in item_topics]

        overall = self._overall(matches)
        specificity = statistics.fmean(topic_specificity(t, interests) for t in item_topics)
        diversity = self._category_diversity(item_topics)

        score = overall + diversity * self.config.diversity_bonus + specificity * self.config.specificity_bonus
        return TopicRelevanceResult(
            score=max(0.0, min(1.0, score)),
            matches=matches,
            dominant_categories=self._dominant_categories(matches),
            specificity=specificity,
            diversity=diversity,
            explanations=[self._explain(m) for m in matches if m.match_type != TopicMatchType.NONE],
        )

    def score(self, item_topics: list[str], topic_interests: dict[str, float]) -> float:
        return self.calculate(item_topics, topic_interests).score

    def _match_topic(self, item_topic: str, interests: dict[str, float]) -> TopicMatch:
        cfg = self.config
        lowered = item_topic.lower()
        category = topic_category(item_topic)

        if lowered in interests:
            matched, interest, similarity, match_type = lowered, interests[lowered], 1.0, TopicMatchType.EXACT
        else:
            matched, interest, similarity, match_type = None, 0.0, 0.0, TopicMatchType.NONE
            candidates = [
                (user_topic, weight, topic_similarity(item_topic, user_topic))
                for user_topic, weight in interests.items()
            ]
            candidates = [c for c in candidates if c[2] > cfg.minimum_similarity_threshold]
            if candidates:
                matched, interest, similarity = max(candidates, key=lambda c: c[2])
                match_type = TopicMatchType.PARTIAL if 0.6 < similarity <= 0.8 else TopicMatchType.SEMANTIC
            elif cfg.enable_category_fallback and category != TopicCategory.OTHER:
                same_category = [(t, w) for t, w in interests.items() if topic_category(t) == category]
                if same_category:
                    matched, interest = max(same_category, key=lambda c: c[1])
                    similarity, match_type = 0.4, TopicMatchType.CATEGORY

        match_weight = {
            TopicMatchType.EXACT: cfg.exact_match_weight,
            TopicMatchType.PARTIAL: cfg.partial_match_weight,
            TopicMatchType.SEMANTIC: cfg.semantic_match_weight,
            TopicMatchType.CATEGORY: cfg.category_match_weight,
            TopicMatchType.NONE: 0.0,
        }[match_type]
        specificity = topic_specificity(item_topic, interests)
        weighted = interest * match_weight * similarity * (1.0 + specificity * cfg.specificity_bonus)

        return TopicMatch(
            item_topic=item_topic,
            match_type=match_type,
            matched_user_topic=matched,
            interest=interest,
            similarity=similarity,
            weighted_score=max(0.0, min(1.0, weighted)),
            category=category,
        )

    @staticmethod
    def _overall(matches: list[TopicMatch]) -> float:
        if not matches:
            return 0.5
        matched = [m for m in matches if m.match_type != TopicMatchType.NONE]
        if not matched:
            return 0.3
        scores = [m.weighted_score for m in matches]
        match_bonus = min(len(matched) * 0.1, 0.3)
        return max(0.0, min(1.0, statistics.fmean(scores) * 0.7 + max(scores) * 0.3 + match_bonus))

    @staticmethod
    def _category_diversity(topics: list[str]) -> float:
        if len(topics) <= 1:
            return 0.0
        return len({topic_category(t) for t in topics}) / len(topics)

    @staticmethod
    def _dominant_categories(matches: list[TopicMatch]) -> list[TopicCategory]:
        counts = Counter(m.category for m in matches if m.match_type != TopicMatchType.NONE)
        return [category for category, _ in counts.most_common(3)]

    @staticmethod
    def _explain(match: TopicMatch) -> str:
        if match.match_type == TopicMatchType.EXACT:
            return f"Matches your interest in {match.item_topic}"
        if match.match_type == TopicMatchType.CATEGORY:
            return f"Related to your {match.category.value} interests"
        return f"Similar to your interest in {match.matched_user_topic}"
