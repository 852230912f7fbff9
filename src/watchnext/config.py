"""
Configuration constants for the WatchNext recommendation pipeline.

This module centralizes API endpoints, credentials and the thresholds used by
the candidate pipeline. Values can be overridden via environment variables.
"""
import os
import logging
from dataclasses import dataclass
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
DB_PATH = Path(os.environ.get("WATCHNEXT_DB", "data/watchnext.db"))

# External APIs
TMDB_API_KEY = os.environ.get("TMDB_API_KEY", "")
TMDB_BASE_URL = os.environ.get("TMDB_BASE_URL", "https://api.themoviedb.org/3")
TMDB_IMAGE_BASE_URL = "https://image.tmdb.org/t/p"

GUARDIAN_API_KEY = os.environ.get("GUARDIAN_API_KEY", "")
GUARDIAN_BASE_URL = os.environ.get("GUARDIAN_BASE_URL", "https://content.guardianapis.com")

ANTHROPIC_API_KEY = os.environ.get("ANTHROPIC_API_KEY", "")
RANKING_MODEL = os.environ.get("WATCHNEXT_RANKING_MODEL", "claude-3-haiku-20240307")
RANKING_MAX_TOKENS = _get_int_env("WATCHNEXT_RANKING_MAX_TOKENS", 2048, min_val=256)
RANKING_TIMEOUT = _get_float_env("WATCHNEXT_RANKING_TIMEOUT", 60.0, min_val=5.0)

# HTTP behaviour
HTTP_TIMEOUT = _get_float_env("WATCHNEXT_HTTP_TIMEOUT", 10.0, min_val=1.0)
DEFAULT_MAX_CONCURRENT = _get_int_env("WATCHNEXT_MAX_CONCURRENT", 8, min_val=1)
MAX_HTTP_RETRIES = 3
MAX_429_RETRY_SECONDS = 30  # Maximum total time to wait for 429 responses
DEFAULT_RETRY_AFTER = 5  # Default wait time if Retry-After header missing

# Review search
REVIEW_PAGE_SIZE = 20
REVIEW_MATCH_WORD_RATIO = 0.7
REVIEW_MIN_WORD_LENGTH = 3  # Words shorter than this are ignored when matching titles
REVIEW_REFRESH_DAYS = 30
REVIEW_SECTIONS = {
    'film': 'film',
    'series': 'tv-and-radio',
}

# Candidate aggregation
SIMILAR_SEED_LIMIT = 3
SIMILAR_PER_SEED = 5
SEED_MIN_RATING = 4
PREFERENCE_MIN_RATING = 3
TOP_GENRES = 3

# Quality thresholds
MIN_VOTE_AVERAGE = 6.5
MIN_VOTE_COUNT = 50
MAX_ENRICHED_CANDIDATES = 100
MIN_REVIEW_RATING = 4
MIN_SERIES_VOTE_AVERAGE = 7.5

# Heuristic scoring
POPULARITY_POINTS = 20
REVIEW_POINTS_PER_STAR = 10
GENRE_MATCH_POINTS = 20
RECENCY_MAX_POINTS = 20
RECENCY_DECAY_PER_YEAR = 5
RECENCY_WINDOW_YEARS = 3
MAX_RANKING_CANDIDATES = 40

# Ranking prompt context
PROMPT_HISTORY_LIMIT = 15
PROMPT_WATCHLIST_LIMIT = 10
PROMPT_DISMISSED_LIMIT = 10
DEFAULT_RECOMMENDATION_LIMIT = 20


@dataclass
class PipelineConfig:
    """
    Thresholds for one recommendation run.

    The default is the strict, quality-gated pipeline. A threshold set to
    None disables the corresponding filter.
    """
    min_review_rating: int | None = MIN_REVIEW_RATING
    min_series_vote_average: float | None = MIN_SERIES_VOTE_AVERAGE
    min_vote_average: float = MIN_VOTE_AVERAGE
    min_vote_count: int = MIN_VOTE_COUNT
    max_enriched: int = MAX_ENRICHED_CANDIDATES
    discovery_years: int = 5
    discovery_pages: int = 3
    similar_seeds: int = SIMILAR_SEED_LIMIT
    similar_per_seed: int = SIMILAR_PER_SEED
    recency_window_years: int = RECENCY_WINDOW_YEARS
    max_ranking_candidates: int = MAX_RANKING_CANDIDATES

    @classmethod
    def lenient(cls) -> "PipelineConfig":
        """Heuristic-only pipeline: no quality gate and a single discovery page."""
        return cls(
            min_review_rating=None,
            min_series_vote_average=None,
            discovery_pages=1,
        )


def validate_env() -> list[str]:
    """Return the names of missing API credentials, warning once if any are absent."""
    missing = [
        name for name, value in (
            ("TMDB_API_KEY", TMDB_API_KEY),
            ("GUARDIAN_API_KEY", GUARDIAN_API_KEY),
            ("ANTHROPIC_API_KEY", ANTHROPIC_API_KEY),
        )
        if not value
    ]
    if missing:
        logger.warning(f"Missing environment variables: {', '.join(missing)}. Some features may not work correctly.")
    return missing
