"""
Review enrichment for candidates and stored titles, plus the post-enrichment
quality gate.
"""
import asyncio
import logging

from . import database
from .config import DEFAULT_MAX_CONCURRENT, MIN_REVIEW_RATING, REVIEW_REFRESH_DAYS, PipelineConfig
from .models import Candidate, ReviewMatch, TitleKind

logger = logging.getLogger(__name__)


def _apply_review(cand: Candidate, review: ReviewMatch) -> None:
    cand.review_rating = review.rating
    cand.review_url = review.url
    cand.review_excerpt = review.excerpt


async def _lookup_review(reviews, cand: Candidate, semaphore: asyncio.Semaphore) -> ReviewMatch:
    """Live review lookup for one film; 4-5 star matches are written back to the title store."""
    async with semaphore:
        match = await reviews.get_best_review(cand.title, cand.year, cand.kind)

    if match.rating is not None and match.rating >= MIN_REVIEW_RATING:
        try:
            await asyncio.to_thread(
                database.save_title_review,
                cand.tmdb_id, cand.kind, match,
                title=cand.title,
                release_year=cand.year,
                poster_url=cand.poster_path,
                overview=cand.overview,
                genre_ids=cand.genre_ids,
                vote_average=cand.vote_average,
            )
        except database.PersistenceError as exc:
            logger.warning(f"Could not store review for '{cand.title}': {exc}")
    return match


async def enrich_candidates(
    candidates: list[Candidate],
    kind: TitleKind,
    reviews,
    config: PipelineConfig | None = None,
    max_concurrent: int = DEFAULT_MAX_CONCURRENT,
) -> list[Candidate]:
    """
    Attach review data to candidates in place and return them.

    Films reuse stored ratings and otherwise query the review client; series
    are never looked up. A failed lookup counts as "no rating" for that
    candidate only. Returns once every lookup has finished.
    """
    config = config or PipelineConfig()
    kind = TitleKind.parse(kind)

    if kind is TitleKind.SERIES:
        for cand in candidates:
            _apply_review(cand, ReviewMatch())
        return candidates

    stored = await asyncio.to_thread(database.get_stored_reviews, [c.tmdb_id for c in candidates], kind)

    to_fetch: list[Candidate] = []
    for cand in candidates:
        if cand.tmdb_id in stored:
            _apply_review(cand, stored[cand.tmdb_id])
        else:
            to_fetch.append(cand)

    semaphore = asyncio.Semaphore(max_concurrent)
    results = await asyncio.gather(
        *[_lookup_review(reviews, cand, semaphore) for cand in to_fetch],
        return_exceptions=True,
    )

    failed = 0
    for cand, result in zip(to_fetch, results):
        if isinstance(result, Exception):
            failed += 1
            logger.error(f"Review lookup failed for '{cand.title}': {type(result).__name__}: {result}")
            _apply_review(cand, ReviewMatch())
        else:
            _apply_review(cand, result)

    logger.info(
        f"Enrichment: {len(stored)} cached, {len(to_fetch)} looked up"
        + (f", {failed} failed" if failed else "")
    )
    return candidates


def apply_quality_gate(candidates: list[Candidate], kind: TitleKind, config: PipelineConfig | None = None) -> list[Candidate]:
    """
    Keep films with a review rating of at least min_review_rating and series
    with a catalog rating of at least min_series_vote_average.
    """
    config = config or PipelineConfig()
    kind = TitleKind.parse(kind)

    if kind is TitleKind.FILM:
        if config.min_review_rating is None:
            return list(candidates)
        kept = [c for c in candidates if c.review_rating is not None and c.review_rating >= config.min_review_rating]
    else:
        if config.min_series_vote_average is None:
            return list(candidates)
        kept = [c for c in candidates if c.vote_average >= config.min_series_vote_average]

    logger.info(f"Quality gate kept {len(kept)}/{len(candidates)} {kind.value} candidates")
    return kept


async def enrich_stored_title(
    title_row: dict,
    reviews,
    max_age_days: int = REVIEW_REFRESH_DAYS,
    force: bool = False,
) -> ReviewMatch | None:
    """
    Refresh review data for one stored title.

    Titles that already carry a rating, or were checked within max_age_days,
    are left alone (None is returned) unless force is set. The lookup result
    is stored even when nothing matched, so the check timestamp advances.
    """
    if not force:
        if title_row.get('review_rating') is not None:
            return None
        if not database.needs_review_refresh(title_row.get('review_checked_at'), max_age_days):
            return None

    kind = TitleKind.parse(title_row['type'])
    match = await reviews.get_best_review(title_row['title'], title_row.get('release_year'), kind)
    await asyncio.to_thread(database.save_title_review, title_row['tmdb_id'], kind, match)
    return match
