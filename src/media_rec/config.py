"""
Configuration constants for the media recommender.

This module centralizes all magic numbers and configurable parameters.
Values can be overridden via environment variables.
"""
import os
import logging
from pathlib import Path

logger = logging.getLogger(__name__)


def _get_float_env(key: str, default: float, min_val: float = 0) -> float:
    """
    Safely parse float from environment variable with validation.

    Args:
        key: Environment variable name
        default: Default value if not set or invalid
        min_val: Minimum allowed value

    Returns:
        Validated float value
    """
    try:
        val = float(os.environ.get(key, default))
        if val < min_val:
            logger.warning(f"{key}={val} is below minimum {min_val}, using {min_val}")
            return min_val
        return val
    except ValueError:
        logger.warning(f"Invalid {key}='{os.environ.get(key)}', using default {default}")
        return default


def _get_int_env(key: str, default: int, min_val: int = 1) -> int:
    """
    Safely parse integer from environment variable with validation.

    Args:
        key: Environment variable name
        default: Default value if not set or invalid
        min_val: Minimum allowed value

    Returns:
        Validated integer value
    """
    try:
        val = int(os.environ.get(key, default))
        if val < min_val:
            logger.warning(f"{key}={val} is below minimum {min_val}, using {min_val}")
            return min_val
        return val
    except ValueError:
        logger.warning(f"Invalid {key}='{os.environ.get(key)}', using default {default}")
        return default


# Database Configuration
DB_PATH = Path(os.environ.get("MEDIA_REC_DB", "data/media_rec.db"))

MEDIA_TYPES = ("movie", "series")

# "exclude" keeps disliked items out of the candidate pool; "penalize" leaves them in
DISLIKE_BEHAVIORS = ("exclude", "penalize")

# Pipeline defaults (per media type where they differ)
DEFAULT_MAX_CANDIDATES = _get_int_env("MEDIA_REC_MAX_CANDIDATES", 50000, min_val=1)
DEFAULT_SELECTED_COUNT = {
    "movie": _get_int_env("MEDIA_REC_SELECTED_COUNT", 50, min_val=0),
    "series": _get_int_env("MEDIA_REC_SERIES_SELECTED_COUNT", 12, min_val=0),
}
DEFAULT_RECENT_WATCH_LIMIT = {
    "movie": _get_int_env("MEDIA_REC_RECENT_WATCH_LIMIT", 50, min_val=1),
    "series": _get_int_env("MEDIA_REC_SERIES_RECENT_WATCH_LIMIT", 100, min_val=1),
}

# Scorer weights. Not renormalized; defaults happen to sum to 1.
DEFAULT_WEIGHTS = {
    'similarity': 0.4,
    'novelty': 0.2,
    'rating': 0.2,
    'diversity': 0.2,
}

# Taste profile
RATING_DISLIKE_THRESHOLD = 4.0   # Explicit ratings (1-10) below this are excluded
RATING_MAX = 10.0
WEIGHT_CAP_MULTIPLIER = 3.0      # No item may outweigh the mean by more than this
POSITION_DECAY = 0.3             # First item 1.0, last item ~0.7
PLAY_COUNT_MAX_BOOST = 0.4
FAVORITE_BOOST = 1.8
FAVORITE_BOOST_MANY = 1.5        # User has more than 10 favorites
FAVORITE_BOOST_LOTS = 1.3        # User has more than 20 favorites
COMMUNITY_RATING_BOOST_THRESHOLD = 7.5
COMMUNITY_RATING_BOOST_BASE = 7.0        # Boost grows from this rating upwards
COMMUNITY_RATING_BOOST_PER_POINT = 0.05  # About +15% for a 10-rated title

# Scorer
NOVELTY_HISTORY_WINDOW = 30      # Most recent watched items used for genre counts
UNRATED_RATING_SCORE = 0.4

# Persistence
STORED_CANDIDATE_LIMIT = 100     # Non-selected candidates kept per run for inspection
EVIDENCE_PER_ITEM = 3
EVIDENCE_VECTOR_LIMIT = 200      # Watched vectors considered when computing evidence

# Explanations
EXPLANATION_BATCH_SIZE = 10
EXPLANATIONS_ENABLED = os.environ.get("MEDIA_REC_EXPLANATIONS", "1") != "0"

# Similarity graph
GRAPH_DEFAULT_LIMIT = 6
GRAPH_DEFAULT_DEPTH = 1
GRAPH_MAX_DEPTH = 3
BUBBLE_THRESHOLD = _get_float_env("MEDIA_REC_BUBBLE_THRESHOLD", 0.5, min_val=0.0)
AI_DIVERSE_SIMILARITY = 0.5
AI_EXCLUDED_TITLES = 15
AI_MIN_SUGGESTIONS = 4
FUZZY_MATCH_THRESHOLD = 0.85

# Oracle / embeddings (OpenAI)
OPENAI_API_KEY = os.environ.get("OPENAI_API_KEY")
ORACLE_MODEL = os.environ.get("MEDIA_REC_ORACLE_MODEL", "gpt-4o-mini")
ORACLE_TIMEOUT = _get_float_env("MEDIA_REC_ORACLE_TIMEOUT", 20.0, min_val=1.0)
ORACLE_MAX_TOKENS = _get_int_env("MEDIA_REC_ORACLE_MAX_TOKENS", 400, min_val=16)
EMBED_MODEL = os.environ.get("MEDIA_REC_EMBED_MODEL", "text-embedding-3-small")
EMBED_BATCH_SIZE = _get_int_env("MEDIA_REC_EMBED_BATCH_SIZE", 64, min_val=1)

# Retry and Rate Limiting
MAX_ORACLE_RETRIES = 3
ORACLE_RETRY_DELAY = 1.0

# Batch processing
DEFAULT_MAX_CONCURRENT_USERS = _get_int_env("MEDIA_REC_MAX_CONCURRENT_USERS", 1, min_val=1)

# Notifications (Discord/Slack-style webhook)
NOTIFICATION_WEBHOOK_URL = os.environ.get("MEDIA_REC_NOTIFICATION_WEBHOOK")

# Content ratings mapped to the minimum viewer age they imply
CONTENT_RATING_AGES = {
    'G': 0,
    'TV-Y': 0,
    'TV-G': 0,
    'TV-Y7': 7,
    'PG': 7,
    'TV-PG': 7,
    'PG-13': 13,
    'TV-14': 14,
    'R': 17,
    'NC-17': 18,
    'TV-MA': 18,
}

# Greedy re-ranking continues this many places past K; the rest of the pool
# keeps its score order behind them.
SELECTION_RANK_WINDOW = _get_int_env("MEDIA_REC_SELECTION_RANK_WINDOW", 200, min_val=0)
