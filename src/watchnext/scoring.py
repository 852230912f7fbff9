import logging

from .config import (
    POPULARITY_POINTS,
    REVIEW_POINTS_PER_STAR,
    GENRE_MATCH_POINTS,
    RECENCY_MAX_POINTS,
    RECENCY_DECAY_PER_YEAR,
    RECENCY_WINDOW_YEARS,
    MAX_RANKING_CANDIDATES,
)
from .models import Candidate, ScoredCandidate, TitleKind
from .utils import current_year

logger = logging.getLogger(__name__)


def popularity_score(vote_average: float) -> float:
    """Catalog rating on a 0-10 scale mapped to 0-20 points."""
    return (vote_average / 10) * POPULARITY_POINTS


def review_score(cand: Candidate) -> float:
    if cand.kind is not TitleKind.FILM or cand.review_rating is None:
        return 0.0
    return cand.review_rating * REVIEW_POINTS_PER_STAR


def genre_match_score(genre_ids: list[int], preferred: list[int]) -> float:
    matched = len(set(genre_ids) & set(preferred))
    return matched * GENRE_MATCH_POINTS


def recency_score(year: int | None, reference_year: int, window_years: int = RECENCY_WINDOW_YEARS) -> float:
    """Up to 20 points for titles released within the window, 5 fewer per year of age."""
    if year is None:
        return 0.0
    age = max(0, reference_year - year)
    if age > window_years:
        return 0.0
    return float(max(0, RECENCY_MAX_POINTS - age * RECENCY_DECAY_PER_YEAR))


def score_candidate(
    cand: Candidate,
    preferred_genres: list[int],
    reference_year: int | None = None,
    window_years: int = RECENCY_WINDOW_YEARS,
) -> float:
    reference_year = reference_year or current_year()
    return (
        popularity_score(cand.vote_average)
        + review_score(cand)
        + genre_match_score(cand.genre_ids, preferred_genres)
        + recency_score(cand.year, reference_year, window_years)
    )


def rank_by_heuristic(
    candidates: list[Candidate],
    preferred_genres: list[int],
    limit: int = MAX_RANKING_CANDIDATES,
    reference_year: int | None = None,
    window_years: int = RECENCY_WINDOW_YEARS,
) -> list[ScoredCandidate]:
    """Score, stable-sort descending and keep the top `limit` for the ranking model."""
    reference_year = reference_year or current_year()
    scored = [
        ScoredCandidate(cand, score_candidate(cand, preferred_genres, reference_year, window_years))
        for cand in candidates
    ]
    scored.sort(key=lambda s: -s.score)
    if len(scored) > limit:
        logger.debug(f"Truncating {len(scored)} scored candidates to {limit}")
    return scored[:limit]
