"""
Recommendation pipeline.

Preference profile -> candidate aggregation -> review enrichment -> quality
gate -> heuristic scoring -> model ranking. Each stage degrades rather than
fails: a missing external contribution shrinks the candidate pool, and an
unavailable ranking yields no recommendations.
"""
import asyncio
import logging
from datetime import date

from . import database
from .candidates import aggregate_candidates
from .config import (
    DEFAULT_RECOMMENDATION_LIMIT,
    PROMPT_HISTORY_LIMIT,
    PROMPT_WATCHLIST_LIMIT,
    PROMPT_DISMISSED_LIMIT,
    PipelineConfig,
)
from .enrichment import apply_quality_gate, enrich_candidates
from .models import HistoryItem, Recommendation, TitleKind
from .profile import build_preference_profile
from .ranker import RankingClient, rank_candidates
from .scoring import rank_by_heuristic

logger = logging.getLogger(__name__)


def _history_items(rows: list[dict]) -> list[HistoryItem]:
    return [
        HistoryItem(
            title=row['title'],
            rating=row['rating'],
            year=row.get('release_year'),
            genre_ids=row.get('genres') or [],
            notes=row.get('notes'),
        )
        for row in rows
    ]


def _label(row: dict) -> str:
    year = row.get('release_year')
    return f"{row['title']} ({year})" if year else row['title']


async def load_prompt_context(user_id: str, kind: TitleKind, catalog) -> tuple[list[HistoryItem], list[str], list[str], dict[int, str]]:
    """History, watchlist and dismissed labels for the prompt, plus the catalog's genre names."""
    history, watchlist, dismissed, genre_names = await asyncio.gather(
        asyncio.to_thread(database.get_watch_history, user_id, kind, None, PROMPT_HISTORY_LIMIT),
        asyncio.to_thread(database.get_watchlist, user_id, kind, PROMPT_WATCHLIST_LIMIT),
        asyncio.to_thread(database.get_dismissed_recommendations, user_id, kind, PROMPT_DISMISSED_LIMIT),
        catalog.get_genre_names(kind),
    )
    return (
        _history_items(history),
        [_label(row) for row in watchlist],
        [_label(row) for row in dismissed],
        genre_names or {},
    )


async def get_recommendations(
    user_id: str,
    kind: TitleKind | str,
    catalog,
    reviews,
    ranker: RankingClient,
    limit: int = DEFAULT_RECOMMENDATION_LIMIT,
    config: PipelineConfig | None = None,
    reference_year: int | None = None,
    today: date | None = None,
) -> list[Recommendation]:
    """
    Produce up to `limit` ranked recommendations of one kind for a user.

    Args:
        user_id: Owner of the history/watchlist/dismissals to personalize on
        kind: 'film' or 'series'
        catalog: Catalog client (similar/discover/get_genre_names)
        reviews: Review client (get_best_review)
        ranker: Ranking model client
        limit: Maximum recommendations returned
        config: Pipeline thresholds; defaults to the strict quality-gated run
        reference_year: Year used for recency scoring (defaults to this year)
        today: Date anchoring the discovery release window

    Returns:
        Recommendations ordered by model score, highest first. Empty when no
        candidates survive or the ranking is unavailable.

    Raises:
        PersistenceError: the local store could not be read
        ValueError: unknown kind
    """
    config = config or PipelineConfig()
    kind = TitleKind.parse(kind)

    profile = await build_preference_profile(user_id, kind, config.similar_seeds)

    candidates = await aggregate_candidates(catalog, kind, profile, config, today=today)
    if not candidates:
        logger.info(f"No {kind.value} candidates for {user_id}")
        return []

    await enrich_candidates(candidates, kind, reviews, config)
    gated = apply_quality_gate(candidates, kind, config)
    if not gated:
        logger.info(f"No {kind.value} candidates passed the quality gate for {user_id}")
        return []

    scored = rank_by_heuristic(
        gated,
        profile.genre_ids,
        limit=config.max_ranking_candidates,
        reference_year=reference_year,
        window_years=config.recency_window_years,
    )
    top = [s.candidate for s in scored]

    history, watchlist, dismissed, genre_names = await load_prompt_context(user_id, kind, catalog)

    recommendations, result = await rank_candidates(
        ranker, history, watchlist, dismissed, top, limit=limit, genre_names=genre_names,
    )
    if result.ok:
        logger.info(f"Ranked {len(recommendations)} {kind.value} recommendations for {user_id}")
    return recommendations
