import pytest

from conftest import make_candidate
from watchnext import scoring
from watchnext.models import TitleKind


@pytest.mark.parametrize(
    "year, expected",
    [(2024, 20.0), (2023, 15.0), (2022, 10.0), (2021, 5.0), (2020, 0.0), (2026, 20.0), (None, 0.0)],
)
def test_recency_score_window(year, expected):
    assert scoring.recency_score(year, reference_year=2024) == expected


def test_recency_boundary_three_versus_four_years():
    assert scoring.recency_score(2021, 2024) == 5.0
    assert scoring.recency_score(2020, 2024) == 0.0


def test_score_components():
    film = make_candidate(1, year=2023, genre_ids=[878, 18, 99], vote_average=8.0, review_rating=4)

    # 16 popularity + 40 review + 40 genre + 15 recency
    assert scoring.score_candidate(film, [878, 18, 28], reference_year=2024) == pytest.approx(111.0)


def test_review_points_only_count_for_films():
    series = make_candidate(1, kind=TitleKind.SERIES, year=2000, vote_average=5.0, review_rating=5)

    assert scoring.review_score(series) == 0.0
    assert scoring.score_candidate(series, [], reference_year=2024) == pytest.approx(10.0)


def test_rank_by_heuristic_orders_and_truncates():
    cands = [
        make_candidate(1, year=2010, vote_average=7.0),
        make_candidate(2, year=2023, vote_average=7.0),
        make_candidate(3, year=2010, vote_average=7.0, genre_ids=[18]),
        make_candidate(4, year=2010, vote_average=7.0),
    ]

    ranked = scoring.rank_by_heuristic(cands, [18], limit=3, reference_year=2024)

    assert [r.candidate.tmdb_id for r in ranked] == [3, 2, 1]
    assert ranked[0].score == pytest.approx(34.0)
    # Equal scores keep input order
    tied = scoring.rank_by_heuristic(cands, [], limit=10, reference_year=2024)
    assert [r.candidate.tmdb_id for r in tied] == [2, 1, 3, 4]
