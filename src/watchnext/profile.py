import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field

from . import database
from .config import PREFERENCE_MIN_RATING, SEED_MIN_RATING, SIMILAR_SEED_LIMIT, TOP_GENRES
from .models import GenrePreference, TitleKind

logger = logging.getLogger(__name__)


@dataclass
class PreferenceProfile:
    """What the candidate pipeline needs to know about one user for one kind."""
    genres: list[GenrePreference] = field(default_factory=list)
    excluded_ids: set[int] = field(default_factory=set)
    seeds: list[dict] = field(default_factory=list)

    @property
    def genre_ids(self) -> list[int]:
        return [g.genre_id for g in self.genres]

    @property
    def is_cold_start(self) -> bool:
        return not self.genres


def compute_genre_preferences(
    history: list[dict],
    min_rating: int = PREFERENCE_MIN_RATING,
    top_n: int = TOP_GENRES,
) -> list[GenrePreference]:
    """
    Weight each genre by the sum of ratings of the history entries carrying it.

    Only entries rated min_rating or higher count. Returns the top_n genres by
    weight, descending; ties keep first-seen order.
    """
    weights: dict[int, float] = defaultdict(float)
    for entry in history:
        rating = entry.get('rating') or 0
        if rating < min_rating:
            continue
        for genre in entry.get('genres') or []:
            try:
                weights[int(genre)] += rating
            except (TypeError, ValueError):
                continue

    ranked = sorted(weights.items(), key=lambda kv: -kv[1])
    return [GenrePreference(genre_id=g, weight=w) for g, w in ranked[:top_n]]


def get_genre_preferences(user_id: str, kind: TitleKind | str) -> list[GenrePreference]:
    """Top genres for a user; an empty list is the cold-start state."""
    history = database.get_watch_history(user_id, kind, min_rating=PREFERENCE_MIN_RATING)
    return compute_genre_preferences(history)


def get_similarity_seeds(user_id: str, kind: TitleKind | str, limit: int = SIMILAR_SEED_LIMIT) -> list[dict]:
    """Most recently watched titles rated 4-5 stars."""
    return database.get_watch_history(user_id, kind, min_rating=SEED_MIN_RATING, limit=limit)


async def get_excluded_title_ids(user_id: str, kind: TitleKind | str) -> set[int]:
    """External ids the user has watchlisted, watched or dismissed for this kind."""
    kind = TitleKind.parse(kind)
    watchlist_ids, history_ids, dismissed_ids = await asyncio.gather(
        asyncio.to_thread(database.get_watchlist_tmdb_ids, user_id, kind),
        asyncio.to_thread(database.get_history_tmdb_ids, user_id, kind),
        asyncio.to_thread(database.get_dismissed_tmdb_ids, user_id, kind),
    )
    return watchlist_ids | history_ids | dismissed_ids


async def build_preference_profile(
    user_id: str,
    kind: TitleKind | str,
    seed_limit: int = SIMILAR_SEED_LIMIT,
) -> PreferenceProfile:
    kind = TitleKind.parse(kind)
    genres, excluded, seeds = await asyncio.gather(
        asyncio.to_thread(get_genre_preferences, user_id, kind),
        get_excluded_title_ids(user_id, kind),
        asyncio.to_thread(get_similarity_seeds, user_id, kind, seed_limit),
    )

    if genres:
        logger.debug(f"{user_id} top {kind.value} genres: {[(g.genre_id, g.weight) for g in genres]}")
    else:
        logger.info(f"No rated {kind.value} history for {user_id} (cold start)")

    return PreferenceProfile(genres=genres, excluded_ids=excluded, seeds=seeds)
