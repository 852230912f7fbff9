import json
from datetime import date

import pytest

from conftest import FakeCatalog, FakeRanker, FakeReviews, make_candidate
from watchnext import recommender
from watchnext.config import PipelineConfig
from watchnext.models import ReviewMatch, TitleKind

TODAY = date(2025, 6, 1)

INTERSTELLAR_REVIEW = ReviewMatch(
    url="https://www.theguardian.com/film/2014/nov/06/interstellar-review",
    rating=5,
    excerpt="Christopher Nolan's space epic",
)

AD_ASTRA_REVIEW = ReviewMatch(
    url="https://www.theguardian.com/film/2019/sep/18/ad-astra-review",
    rating=4,
    excerpt="Brad Pitt drifts through space",
)


def _interstellar():
    return make_candidate(157336, "Interstellar", year=2014, genre_ids=[12, 18, 878], vote_average=8.4,
                          vote_count=35000, overview="Explorers travel through a wormhole.")


@pytest.fixture
def inception_fan(fresh_db):
    fresh_db.mark_as_watched("alice", 27205, "Inception", TitleKind.FILM, 5, release_year=2010,
                             genre_ids=[28, 878, 12])
    return fresh_db


@pytest.mark.asyncio
async def test_inception_fan_gets_interstellar(inception_fan):
    db = inception_fan
    ad_astra = make_candidate(419704, "Ad Astra", year=2019, genre_ids=[18, 878], vote_average=7.5,
                              vote_count=8000, overview="An astronaut searches for his father.")
    fake_catalog = FakeCatalog(
        similar={27205: [_interstellar(), ad_astra, make_candidate(27205, "Inception", vote_average=8.8)]},
        discover={1: [make_candidate(500, "Unreviewed Blockbuster", year=2024, genre_ids=[28], vote_average=7.1)]},
        genre_names={12: "Adventure", 18: "Drama", 28: "Action", 878: "Science Fiction"},
    )
    fake_reviews = FakeReviews(matches={"Interstellar": INTERSTELLAR_REVIEW, "Ad Astra": AD_ASTRA_REVIEW})
    fake_ranker = FakeRanker(json.dumps([
        {"titleId": 419704, "score": 71, "reasoning": "Quieter space drama"},
        {"titleId": 157336, "score": 94, "reasoning": "Nolan follows Inception with another mind-bending epic"},
    ]))

    recs = await recommender.get_recommendations(
        "alice", "film", fake_catalog, fake_reviews, fake_ranker, today=TODAY, reference_year=2025,
    )

    assert [r.tmdb_id for r in recs] == [157336, 419704]
    rec = recs[0]
    assert rec.score == 94
    assert "Inception" in rec.reasoning
    assert rec.review_rating == 5
    assert rec.review_url == INTERSTELLAR_REVIEW.url
    assert rec.to_dict()["type"] == "film"
    assert recs[1].review_rating == 4

    prompt = fake_ranker.prompts[0]
    assert '"Inception" (2010) [Action, Science Fiction, Adventure] - 5/5 stars' in prompt
    # Heuristic order: 16.8 + 50 + 40 beats 15 + 40 + 20 (six years old, no recency points)
    assert prompt.index("1. [ID:157336]") < prompt.index("2. [ID:419704]")
    # Watched seed never becomes a candidate; the unreviewed film fails the quality gate
    assert "[ID:27205]" not in prompt
    assert "[ID:500]" not in prompt

    assert db.get_title(157336, TitleKind.FILM)["review_rating"] == 5
    assert db.get_title(419704, TitleKind.FILM)["review_rating"] == 4
    discover_call = fake_catalog.discover_calls[0]
    assert set(discover_call["genres"]) == {28, 878, 12}
    assert discover_call["release_date_from"] == "2020-01-01"


@pytest.mark.asyncio
async def test_dismissed_and_watchlisted_titles_are_excluded(inception_fan):
    db = inception_fan
    db.dismiss_recommendation("alice", 157336, "Interstellar", TitleKind.FILM, release_year=2014)
    db.add_to_watchlist("alice", 329865, "Arrival", TitleKind.FILM, release_year=2016)

    fake_catalog = FakeCatalog(similar={27205: [_interstellar(), make_candidate(329865, "Arrival")]})
    fake_ranker = FakeRanker("[]")

    recs = await recommender.get_recommendations(
        "alice", TitleKind.FILM, fake_catalog, FakeReviews(), fake_ranker, today=TODAY,
    )

    assert recs == []
    # Nothing survived, so the model was never asked
    assert fake_ranker.prompts == []


@pytest.mark.asyncio
async def test_ranking_failure_degrades_to_empty(inception_fan):
    fake_catalog = FakeCatalog(similar={27205: [_interstellar()]})
    fake_reviews = FakeReviews(matches={"Interstellar": INTERSTELLAR_REVIEW})

    garbled = await recommender.get_recommendations(
        "alice", "film", fake_catalog, fake_reviews, FakeRanker("Sorry, I cannot rank these."), today=TODAY,
    )
    unavailable = await recommender.get_recommendations(
        "alice", "film", fake_catalog, fake_reviews, FakeRanker(error=TimeoutError()), today=TODAY,
    )

    assert garbled == []
    assert unavailable == []


@pytest.mark.asyncio
async def test_cold_start_series_uses_catalog_rating_gate(fresh_db):
    fake_catalog = FakeCatalog(discover={
        1: [
            make_candidate(1399, "Game of Thrones", kind=TitleKind.SERIES, year=2011, vote_average=8.4),
            make_candidate(2, "So-so Show", kind=TitleKind.SERIES, year=2022, vote_average=7.0),
        ],
    })
    fake_reviews = FakeReviews()
    fake_ranker = FakeRanker('[{"titleId": 1399, "score": 80, "reasoning": "Epic fantasy drama"}]')

    recs = await recommender.get_recommendations(
        "newcomer", TitleKind.SERIES, fake_catalog, fake_reviews, fake_ranker, today=TODAY,
    )

    assert [r.tmdb_id for r in recs] == [1399]
    assert recs[0].review_rating is None
    assert fake_reviews.calls == []
    assert fake_catalog.discover_calls[0]["genres"] is None
    assert "[ID:2]" not in fake_ranker.prompts[0]


@pytest.mark.asyncio
async def test_lenient_pipeline_skips_quality_gate(fresh_db):
    fake_catalog = FakeCatalog(discover={1: [make_candidate(10, "No Review", vote_average=7.0)]})
    fake_ranker = FakeRanker('[{"titleId": 10, "score": 60, "reasoning": "Worth a look"}]')

    recs = await recommender.get_recommendations(
        "newcomer", "film", fake_catalog, FakeReviews(), fake_ranker,
        config=PipelineConfig.lenient(), today=TODAY,
    )

    assert [r.tmdb_id for r in recs] == [10]
    assert len(fake_catalog.discover_calls) == 1


@pytest.mark.asyncio
async def test_unknown_kind_is_rejected(fresh_db):
    with pytest.raises(ValueError):
        await recommender.get_recommendations("alice", "podcast", FakeCatalog(), FakeReviews(), FakeRanker())
