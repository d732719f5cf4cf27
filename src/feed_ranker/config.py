# src/feed_ranker/config.py
"""
Feed Ranking Configuration

SCORING WEIGHTS:
These weights control how the core signals influence the composite score
of every candidate. The three blended signals must sum to 1.0 (100%).

- RECENCY: Newer content ranks higher (24h half-life)
- POPULARITY: Engagement volume and rates, time-decayed
- RELEVANCE: Topic, content-type and language match for the user

Bonus signals (added on top, default off):
- FOLLOWING: The viewer follows the author
- ENGAGEMENT: The viewer has engaged with the author before

Deployment settings (experiment salt, Redis URL, metrics endpoint, cache
TTL overrides) are read from the environment, with a local .env file
loaded first.
"""

import os

from dotenv import load_dotenv

load_dotenv()


class DefaultScoringWeights:
    # Blended signals (100% total)
    RECENCY = 0.5
    POPULARITY = 0.3
    RELEVANCE = 0.2

    # Bonus signals
    FOLLOWING = 0.0
    ENGAGEMENT = 0.0

    @classmethod
    def validate(cls):
        """Ensure blended weights sum to 1.0"""
        total = sum([
            cls.RECENCY,
            cls.POPULARITY,
            cls.RELEVANCE,
        ])
        if abs(total - 1.0) >= 0.001:
            raise AssertionError(f"Weights must sum to 1.0, got {total}")
        return True


# Validate on import
DefaultScoringWeights.validate()


ALGORITHM_VERSION = "1.0.0"

# Candidate retrieval
CANDIDATE_OVERSAMPLE_FACTOR = 3
SCORING_BATCH_SIZE = 50
MAX_FEED_LIMIT = 200

# Cold-start retrieval windows
TRENDING_WINDOW_HOURS = 48
TRENDING_MIN_POPULARITY = 0.6
TRENDING_MIN_ENGAGEMENT = 10
POPULAR_WINDOW_DAYS = 7
POPULAR_MIN_POPULARITY = 0.6

# Cache TTLs (in seconds)
FEED_CACHE_TTL = int(os.getenv("FEED_CACHE_TTL_MINUTES", "15")) * 60  # 15 minutes
TRENDING_FEED_CACHE_TTL = 5 * 60  # 5 minutes
EXPLORE_FEED_CACHE_TTL = 2 * FEED_CACHE_TTL  # 30 minutes
PERSONALIZED_FEED_CACHE_TTL = 60 * 60  # 1 hour
PREFERENCES_CACHE_TTL = 60 * 60  # 1 hour
POPULARITY_CACHE_TTL = 15 * 60  # 15 minutes
MIN_FEED_CACHE_TTL = 60  # 1 minute
MAX_FEED_CACHE_TTL = 2 * 60 * 60  # 2 hours

# Pre-warming
PREWARM_BATCH_SIZE = 50
PREWARM_FEED_LIMIT = 20
PREWARM_BATCH_DELAY = 0.1  # seconds
PREWARM_REFRESH_INTERVAL = 10 * 60  # 10 minutes

# Experiments
EXPERIMENT_SALT = os.getenv("FEED_EXPERIMENT_SALT", "feed_experiment_salt_2024")
DEFAULT_EXPERIMENT_ID = "feed_algorithm_test_2024"

# External services
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379")
METRICS_SINK_URL = os.getenv("FEED_METRICS_URL", "")
METRICS_SINK_TIMEOUT = 5.0  # seconds
SQLITE_PATH = os.getenv("FEED_SQLITE_PATH", "")
