"""
Candidate aggregation: similar-to-favourites plus discovery results, merged,
deduplicated, stripped of excluded titles and quality-prefiltered.
"""
import asyncio
import logging
from datetime import date

from .config import PipelineConfig
from .models import Candidate, TitleKind
from .profile import PreferenceProfile

logger = logging.getLogger(__name__)


def _collect(results, labels: list[str]) -> list[Candidate]:
    """Flatten gathered catalog pages, logging and skipping the ones that raised."""
    collected: list[Candidate] = []
    for label, result in zip(labels, results):
        if isinstance(result, Exception):
            logger.error(f"Catalog fetch failed for {label}: {type(result).__name__}: {result}")
            continue
        collected.extend(result.results)
    return collected


async def fetch_similarity_candidates(
    catalog,
    kind: TitleKind,
    seeds: list[dict],
    per_seed: int = 5,
) -> list[Candidate]:
    """First per_seed 'similar' results for each seed title."""
    if not seeds:
        return []

    pages = await asyncio.gather(
        *[catalog.similar(kind, seed['tmdb_id'], page=1) for seed in seeds],
        return_exceptions=True,
    )

    candidates: list[Candidate] = []
    for seed, page in zip(seeds, pages):
        if isinstance(page, Exception):
            logger.error(f"Similar-titles fetch failed for '{seed.get('title')}': {page}")
            continue
        candidates.extend(page.results[:per_seed])
    return candidates


async def fetch_discovery_candidates(
    catalog,
    kind: TitleKind,
    genre_ids: list[int],
    config: PipelineConfig,
    today: date | None = None,
) -> list[Candidate]:
    """
    Popularity-sorted discovery over the recent release window.

    Filtered to the preferred genres when there are any, otherwise unfiltered.
    Pages are requested concurrently.
    """
    today = today or date.today()
    release_from = f"{today.year - config.discovery_years}-01-01"
    pages = list(range(1, config.discovery_pages + 1))

    results = await asyncio.gather(
        *[
            catalog.discover(
                kind,
                genres=genre_ids or None,
                min_vote_count=config.min_vote_count,
                release_date_from=release_from,
                sort_by="popularity.desc",
                page=p,
            )
            for p in pages
        ],
        return_exceptions=True,
    )
    return _collect(results, [f"discover page {p}" for p in pages])


def merge_candidates(*groups: list[Candidate], excluded: set[int] | None = None) -> list[Candidate]:
    """Concatenate groups, keep the first occurrence of each external id, drop excluded ids."""
    excluded = excluded or set()
    seen: set[int] = set()
    merged: list[Candidate] = []
    for group in groups:
        for cand in group:
            if cand.tmdb_id in excluded or cand.tmdb_id in seen:
                continue
            seen.add(cand.tmdb_id)
            merged.append(cand)
    return merged


def quality_prefilter(
    candidates: list[Candidate],
    min_vote_average: float,
    min_vote_count: int,
    limit: int,
) -> list[Candidate]:
    """Drop weakly rated or thinly voted titles and keep the best rated `limit`."""
    kept = [
        c for c in candidates
        if c.vote_average >= min_vote_average and c.vote_count >= min_vote_count
    ]
    kept.sort(key=lambda c: -c.vote_average)
    return kept[:limit]


async def aggregate_candidates(
    catalog,
    kind: TitleKind,
    profile: PreferenceProfile,
    config: PipelineConfig | None = None,
    today: date | None = None,
) -> list[Candidate]:
    config = config or PipelineConfig()
    kind = TitleKind.parse(kind)

    similar, discovered = await asyncio.gather(
        fetch_similarity_candidates(catalog, kind, profile.seeds[:config.similar_seeds], config.similar_per_seed),
        fetch_discovery_candidates(catalog, kind, profile.genre_ids, config, today=today),
    )

    merged = merge_candidates(similar, discovered, excluded=profile.excluded_ids)
    filtered = quality_prefilter(merged, config.min_vote_average, config.min_vote_count, config.max_enriched)

    logger.info(
        f"Candidates: {len(similar)} similar + {len(discovered)} discovered -> "
        f"{len(merged)} unique -> {len(filtered)} after prefilter"
    )
    return filtered
