from datetime import datetime, timedelta

import pytest

from watchnext import profile
from watchnext.models import TitleKind


def test_compute_genre_preferences_weights_by_rating():
    history = [
        {"rating": 5, "genres": [878, 28]},
        {"rating": 4, "genres": [878, 18]},
        {"rating": 3, "genres": [35]},
        {"rating": 2, "genres": [27, 27, 27]},
        {"rating": 1, "genres": [27]},
    ]

    prefs = profile.compute_genre_preferences(history)

    assert [(p.genre_id, p.weight) for p in prefs] == [(878, 9), (28, 5), (18, 4)]


def test_compute_genre_preferences_empty_history_is_cold_start():
    assert profile.compute_genre_preferences([]) == []
    assert profile.compute_genre_preferences([{"rating": 2, "genres": [18]}]) == []


def test_get_genre_preferences_reads_only_matching_kind(fresh_db):
    db = fresh_db
    db.mark_as_watched("alice", 27205, "Inception", "film", 5, genre_ids=[28, 878, 12])
    db.mark_as_watched("alice", 1399, "Game of Thrones", "series", 5, genre_ids=[18, 10765])

    film_prefs = profile.get_genre_preferences("alice", TitleKind.FILM)
    series_prefs = profile.get_genre_preferences("alice", TitleKind.SERIES)

    assert {p.genre_id for p in film_prefs} == {28, 878, 12}
    assert {p.genre_id for p in series_prefs} == {18, 10765}
    assert profile.get_genre_preferences("bob", TitleKind.FILM) == []


def test_similarity_seeds_are_recent_high_ratings(fresh_db):
    db = fresh_db
    base = datetime(2024, 1, 1)
    for i, rating in enumerate([5, 2, 4, 5, 4]):
        db.mark_as_watched("alice", 100 + i, f"Film {i}", "film", rating, watched_at=base + timedelta(days=i))

    seeds = profile.get_similarity_seeds("alice", TitleKind.FILM, limit=3)

    assert [s["tmdb_id"] for s in seeds] == [104, 103, 102]


@pytest.mark.asyncio
async def test_excluded_ids_cover_watchlist_history_and_dismissed(fresh_db):
    db = fresh_db
    db.add_to_watchlist("alice", 1, "Queued", "film")
    db.mark_as_watched("alice", 2, "Seen", "film", 3)
    db.dismiss_recommendation("alice", 3, "Not For Me", "film")
    db.add_to_watchlist("alice", 4, "A Series", "series")

    excluded = await profile.get_excluded_title_ids("alice", TitleKind.FILM)

    assert excluded == {1, 2, 3}


@pytest.mark.asyncio
async def test_build_preference_profile_cold_start(fresh_db):
    built = await profile.build_preference_profile("newcomer", TitleKind.FILM)

    assert built.is_cold_start
    assert built.genre_ids == []
    assert built.excluded_ids == set()
    assert built.seeds == []


@pytest.mark.asyncio
async def test_build_preference_profile_with_history(fresh_db):
    db = fresh_db
    db.mark_as_watched("alice", 27205, "Inception", "film", 5, genre_ids=[28, 878, 12])

    built = await profile.build_preference_profile("alice", "film")

    assert not built.is_cold_start
    assert set(built.genre_ids) == {28, 878, 12}
    assert built.excluded_ids == {27205}
    assert [s["tmdb_id"] for s in built.seeds] == [27205]
