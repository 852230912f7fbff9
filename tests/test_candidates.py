from datetime import date

import pytest

from conftest import FakeCatalog, make_candidate
from watchnext.candidates import (
    aggregate_candidates,
    fetch_discovery_candidates,
    merge_candidates,
    quality_prefilter,
)
from watchnext.config import PipelineConfig
from watchnext.models import GenrePreference, TitleKind
from watchnext.profile import PreferenceProfile


def test_merge_dedupes_first_seen_and_drops_excluded():
    a1 = make_candidate(1, "First copy")
    a2 = make_candidate(1, "Second copy")
    b = make_candidate(2)
    c = make_candidate(3)

    merged = merge_candidates([a1, b], [a2, c], excluded={3})

    assert [m.tmdb_id for m in merged] == [1, 2]
    assert merged[0].title == "First copy"


def test_merge_is_idempotent():
    items = [make_candidate(i % 3) for i in range(7)]
    once = merge_candidates(items)
    twice = merge_candidates(once)

    assert [c.tmdb_id for c in once] == [c.tmdb_id for c in twice] == [0, 1, 2]


def test_quality_prefilter_thresholds_and_truncation():
    cands = [
        make_candidate(1, vote_average=6.4, vote_count=1000),
        make_candidate(2, vote_average=6.5, vote_count=50),
        make_candidate(3, vote_average=9.0, vote_count=49),
        make_candidate(4, vote_average=8.0, vote_count=800),
        make_candidate(5, vote_average=7.0, vote_count=300),
    ]

    kept = quality_prefilter(cands, min_vote_average=6.5, min_vote_count=50, limit=2)

    assert [c.tmdb_id for c in kept] == [4, 5]
    assert [c.tmdb_id for c in quality_prefilter(cands, 6.5, 50, 100)] == [4, 5, 2]


@pytest.mark.asyncio
async def test_discovery_uses_genres_window_and_pages():
    fake = FakeCatalog(discover={1: [make_candidate(1)], 2: [make_candidate(2)], 3: [make_candidate(3)]})

    found = await fetch_discovery_candidates(fake, TitleKind.FILM, [878, 28], PipelineConfig(), today=date(2025, 3, 1))

    assert sorted(c.tmdb_id for c in found) == [1, 2, 3]
    assert sorted(call["page"] for call in fake.discover_calls) == [1, 2, 3]
    call = fake.discover_calls[0]
    assert call["genres"] == [878, 28]
    assert call["release_date_from"] == "2020-01-01"
    assert call["sort_by"] == "popularity.desc"
    assert call["min_vote_count"] == 50


@pytest.mark.asyncio
async def test_cold_start_discovery_has_no_genre_filter():
    fake = FakeCatalog(discover={1: [make_candidate(1)]})

    await fetch_discovery_candidates(fake, TitleKind.SERIES, [], PipelineConfig.lenient(), today=date(2025, 3, 1))

    assert len(fake.discover_calls) == 1
    assert fake.discover_calls[0]["genres"] is None


@pytest.mark.asyncio
async def test_failed_page_is_skipped():
    fake = FakeCatalog(
        discover={1: [make_candidate(1)], 3: [make_candidate(3)]},
        failing_pages={2},
    )

    found = await fetch_discovery_candidates(fake, TitleKind.FILM, [18], PipelineConfig(), today=date(2025, 1, 1))

    assert sorted(c.tmdb_id for c in found) == [1, 3]


@pytest.mark.asyncio
async def test_aggregate_combines_similar_and_discovery_without_excluded():
    seeds = [{"tmdb_id": 27205, "title": "Inception"}]
    similar = [make_candidate(100 + i, vote_average=8.0) for i in range(7)]
    fake = FakeCatalog(
        similar={27205: similar},
        discover={
            1: [make_candidate(101, vote_average=8.0), make_candidate(200, vote_average=7.0)],
            2: [make_candidate(27205, vote_average=8.8)],
            3: [make_candidate(300, vote_average=5.0)],
        },
    )
    prefs = PreferenceProfile(
        genres=[GenrePreference(878, 5)],
        excluded_ids={27205},
        seeds=seeds,
    )

    result = await aggregate_candidates(fake, TitleKind.FILM, prefs, today=date(2025, 1, 1))
    ids = [c.tmdb_id for c in result]

    # First five similar results only, discovery duplicates merged, watched seed and weak titles dropped
    assert sorted(ids) == [100, 101, 102, 103, 104, 200]
    assert len(ids) == len(set(ids))
    assert fake.similar_calls == [(TitleKind.FILM, 27205, 1)]


@pytest.mark.asyncio
async def test_aggregate_with_no_results_is_empty():
    result = await aggregate_candidates(FakeCatalog(), TitleKind.FILM, PreferenceProfile())

    assert result == []
