from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from .config import ALGORITHM_VERSION, MAX_FEED_LIMIT, DefaultScoringWeights


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ContentType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    LINK = "link"


class FeedType(str, Enum):
    HOME = "home"
    FOLLOWING = "following"
    EXPLORE = "explore"
    TRENDING = "trending"
    PERSONALIZED = "personalized"


class FeedSourceType(str, Enum):
    FOLLOWING = "following"
    TRENDING = "trending"
    RECOMMENDATION = "recommendation"
    PROMOTED = "promoted"
    MANUAL = "manual"


class FeedReasonType(str, Enum):
    RECENCY = "recency"
    POPULARITY = "popularity"
    RELEVANCE = "relevance"
    FOLLOWING = "following"
    ENGAGEMENT = "engagement"
    TRENDING = "trending"
    SIMILAR_USERS = "similar_users"
    TOPIC_INTEREST = "topic_interest"
    DIVERSITY = "diversity"
    COLD_START = "cold_start"


class EngagementType(str, Enum):
    VIEW = "view"
    CLICK = "click"
    LIKE = "like"
    UNLIKE = "unlike"
    COMMENT = "comment"
    SHARE = "share"
    BOOKMARK = "bookmark"
    UNBOOKMARK = "unbookmark"
    DWELL_TIME = "dwell_time"
    SCROLL = "scroll"
    EXPAND = "expand"
    REPORT = "report"
    HIDE = "hide"


class DeviceType(str, Enum):
    MOBILE = "mobile"
    TABLET = "tablet"
    DESKTOP = "desktop"
    TV = "tv"
    UNKNOWN = "unknown"


class ConfidenceLevel(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    MINIMAL = "minimal"


class RetrievalSource(str, Enum):
    CANDIDATE = "candidate"  # regular retrieval for the feed type
    TRENDING = "trending"
    DIVERSE = "diverse"  # cold-start topic sampling
    POPULAR = "popular"  # cold-start fallback


class ExperimentEventType(str, Enum):
    FEED_GENERATED = "feed_generated"
    CONTENT_VIEWED = "content_viewed"
    CONTENT_ENGAGED = "content_engaged"
    FEED_REFRESHED = "feed_refreshed"
    SESSION_STARTED = "session_started"
    SESSION_ENDED = "session_ended"
    EXPERIMENT_EXCLUDED = "experiment_excluded"


# --- Content ---


class EngagementMetrics(BaseModel):
    likes: int = 0
    comments: int = 0
    shares: int = 0
    views: int = 0
    click_through_rate: float = 0.0
    engagement_rate: float = 0.0

    @property
    def total_engagement(self) -> int:
        return self.likes + self.comments + self.shares

    def has_signal(self) -> bool:
        return self.total_engagement > 0 or self.views > 0


class ContentCandidate(BaseModel):
    content_id: str
    author_id: str
    content_type: ContentType = ContentType.TEXT
    tags: list[str] = Field(default_factory=list)
    text: str = ""
    language: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    popularity_score: float = 0.0  # precomputed, 0-1
    engagement: EngagementMetrics = Field(default_factory=EngagementMetrics)
    is_following: bool = False
    retrieval_source: RetrievalSource = RetrievalSource.CANDIDATE


# --- Algorithm configuration ---


class ScoringWeights(BaseModel):
    recency: float = DefaultScoringWeights.RECENCY
    popularity: float = DefaultScoringWeights.POPULARITY
    relevance: float = DefaultScoringWeights.RELEVANCE
    following: float = DefaultScoringWeights.FOLLOWING
    engagement: float = DefaultScoringWeights.ENGAGEMENT
    custom: dict[str, float] = Field(default_factory=dict)

    def core_total(self) -> float:
        return self.recency + self.popularity + self.relevance + self.following + self.engagement

    def normalized(self) -> ScoringWeights:
        """Scale the core weights to sum to 1.0. Custom weights are left as-is."""
        total = self.core_total()
        if total <= 0:
            return self.model_copy(deep=True)
        return ScoringWeights(
            recency=self.recency / total,
            popularity=self.popularity / total,
            relevance=self.relevance / total,
            following=self.following / total,
            engagement=self.engagement / total,
            custom=dict(self.custom),
        )


def _default_type_distribution() -> dict[ContentType, float]:
    return {
        ContentType.TEXT: 0.5,
        ContentType.IMAGE: 0.3,
        ContentType.VIDEO: 0.15,
        ContentType.LINK: 0.05,
    }


class DiversityConfig(BaseModel):
    max_same_author: int = 3
    max_same_topic: int = 5
    max_same_content_type: int = 10
    author_spacing: int = 3
    topic_spacing: int = 2
    enforce_content_type_balance: bool = True
    content_type_distribution: dict[ContentType, float] = Field(default_factory=_default_type_distribution)


class ColdStartConfig(BaseModel):
    new_user_threshold_days: int = 7
    min_engagement_actions: int = 10
    trending_weight: float = 0.7
    enable_diversity_sampling: bool = True
    enable_popular_fallback: bool = True


class AlgorithmConfig(BaseModel):
    algorithm_id: str
    version: str = ALGORITHM_VERSION
    weights: ScoringWeights = Field(default_factory=ScoringWeights)
    diversity: DiversityConfig = Field(default_factory=DiversityConfig)
    cold_start: ColdStartConfig = Field(default_factory=ColdStartConfig)
    parameters: dict[str, Any] = Field(default_factory=dict)

    @property
    def cold_start_enabled(self) -> bool:
        return bool(self.parameters.get("enable_cold_start", True))

    @property
    def diversity_enabled(self) -> bool:
        return bool(self.parameters.get("diversity_enabled", True))


# --- Experiments ---


class ExperimentVariant(BaseModel):
    variant_id: str
    allocation_percentage: float
    parameters: dict[str, Any] = Field(default_factory=dict)
    is_control: bool = False


class ExperimentConfig(BaseModel):
    experiment_id: str
    name: str = ""
    target_percentage: float = 100.0
    variants: list[ExperimentVariant] = Field(default_factory=list)
    feed_types: list[FeedType] = Field(default_factory=list)  # empty = every feed type
    active: bool = True

    def applies_to(self, feed_type: FeedType) -> bool:
        return self.active and (not self.feed_types or feed_type in self.feed_types)


class UserExperiment(BaseModel):
    user_id: str
    experiment_id: str
    variant_id: str
    is_control: bool = False
    parameters: dict[str, Any] = Field(default_factory=dict)
    assigned_at: datetime = Field(default_factory=utcnow)


class ExperimentMetricEvent(BaseModel):
    user_id: str
    experiment_id: str
    variant_id: str
    is_control: bool
    event_type: ExperimentEventType = ExperimentEventType.FEED_GENERATED
    duration_ms: int = 0
    content_count: int = 0
    candidate_count: int = 0
    algorithm_id: str = ""
    timestamp: datetime = Field(default_factory=utcnow)
    metadata: dict[str, Any] = Field(default_factory=dict)


# --- Users ---


class UserPreferenceProfile(BaseModel):
    user_id: str
    topic_interests: dict[str, float] = Field(default_factory=dict)  # topic -> weight 0-1
    source_preferences: dict[str, float] = Field(default_factory=dict)  # author -> weight 0-1
    preferred_content_types: list[ContentType] = Field(default_factory=list)
    blocked_users: set[str] = Field(default_factory=set)
    blocked_topics: set[str] = Field(default_factory=set)
    language_preferences: list[str] = Field(default_factory=list)
    engagement_history: dict[str, float] = Field(default_factory=dict)  # "author" or "author:content" -> score
    account_age_days: int = 0
    last_active_at: datetime | None = None

    @property
    def interests(self) -> list[str]:
        return [topic for topic, weight in self.topic_interests.items() if weight > 0]


class UserActivity(BaseModel):
    content_id: str
    author_id: str
    topics: list[str] = Field(default_factory=list)
    engagement_type: EngagementType
    engagement_score: float = 1.0
    timestamp: datetime = Field(default_factory=utcnow)


class UserLocation(BaseModel):
    country: str | None = None
    region: str | None = None
    city: str | None = None
    timezone: str | None = None


class UserContext(BaseModel):
    time_of_day: int = Field(default=12, ge=0, le=23)
    day_of_week: int = Field(default=1, ge=1, le=7)  # Monday = 1
    device_type: DeviceType = DeviceType.UNKNOWN
    location: UserLocation | None = None
    session_duration_minutes: int = 0
    recent_content_ids: list[str] = Field(default_factory=list)

    @classmethod
    def from_datetime(cls, moment: datetime, **kwargs: Any) -> UserContext:
        return cls(time_of_day=moment.hour, day_of_week=moment.isoweekday(), **kwargs)


# --- Scoring ---


class ScoreBreakdown(BaseModel):
    recency: float
    popularity: float
    relevance: float
    composite: float


class ScoredCandidate(BaseModel):
    candidate: ContentCandidate
    breakdown: ScoreBreakdown
    score: float
    diversity_penalty: float = 0.0
    topic_match: bool = False
    explanations: list[str] = Field(default_factory=list)

    @property
    def content_id(self) -> str:
        return self.candidate.content_id


# --- Requests and feeds ---


class FeedRequest(BaseModel):
    user_id: str
    feed_type: FeedType = FeedType.HOME
    limit: int = Field(default=20, ge=1, le=MAX_FEED_LIMIT)
    cursor: str | None = None
    algorithm: AlgorithmConfig | None = None
    refresh: bool = False


class FeedReason(BaseModel):
    type: FeedReasonType
    description: str
    weight: float


class FeedEntry(BaseModel):
    entry_id: str
    content_id: str
    author_id: str
    score: float
    rank: int
    reasons: list[FeedReason] = Field(default_factory=list)
    source_type: FeedSourceType = FeedSourceType.RECOMMENDATION
    boosted: bool = False
    algorithm_id: str = ""


class FeedMetadata(BaseModel):
    algorithm_id: str
    algorithm_version: str = ALGORITHM_VERSION
    generation_duration_ms: int = 0
    candidate_count: int = 0
    content_count: int = 0
    generated_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime | None = None
    parameters: dict[str, Any] = Field(default_factory=dict)


class GeneratedFeed(BaseModel):
    user_id: str
    feed_type: FeedType
    entries: list[FeedEntry] = Field(default_factory=list)
    metadata: FeedMetadata
    next_cursor: str | None = None
    has_more: bool = False


# --- Cache ---


class CacheEntry(BaseModel):
    payload: str
    created_at: float  # epoch seconds
    ttl_seconds: int

    def is_fresh(self, now: float) -> bool:
        return now - self.created_at < self.ttl_seconds


class CategoryStats(BaseModel):
    hits: int = 0
    misses: int = 0
    entries: int = 0
    approx_bytes: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0


class CacheStats(BaseModel):
    categories: dict[str, CategoryStats] = Field(default_factory=dict)

    @property
    def total_hits(self) -> int:
        return sum(c.hits for c in self.categories.values())

    @property
    def total_misses(self) -> int:
        return sum(c.misses for c in self.categories.values())

    @property
    def hit_rate(self) -> float:
        total = self.total_hits + self.total_misses
        return self.total_hits / total if total else 0.0

    @property
    def approx_bytes(self) -> int:
        return sum(c.approx_bytes for c in self.categories.values())
