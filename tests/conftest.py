import importlib
import sys
from pathlib import Path

import pytest

# Ensure the package under test is importable without installation
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from watchnext.catalog import CatalogPage  # noqa: E402
from watchnext.models import Candidate, ReviewMatch, TitleKind  # noqa: E402
from watchnext.ranker import RankingClient  # noqa: E402


@pytest.fixture
def fresh_config(monkeypatch, tmp_path):
    """
    Reload config with a temporary database path to keep tests isolated.
    """
    db_path = tmp_path / "test.db"
    monkeypatch.setenv("WATCHNEXT_DB", str(db_path))
    import watchnext.config as config

    importlib.reload(config)
    return config


@pytest.fixture
def fresh_db(monkeypatch, tmp_path):
    """
    Reload config/database modules with a temp DB, create the schema and
    cleanly close the pool after use.
    """
    db_path = tmp_path / "test.db"
    monkeypatch.setenv("WATCHNEXT_DB", str(db_path))

    import watchnext.config as config
    import watchnext.database as database

    database.close_pool()
    importlib.reload(config)
    importlib.reload(database)
    database.init_db()

    yield database
    database.close_pool()


def make_candidate(tmdb_id, title=None, kind=TitleKind.FILM, year=2020, genre_ids=None,
                   vote_average=7.5, vote_count=500, overview="", review_rating=None):
    return Candidate(
        tmdb_id=tmdb_id,
        title=title or f"Title {tmdb_id}",
        kind=kind,
        release_date=f"{year}-06-01" if year else None,
        year=year,
        overview=overview,
        genre_ids=list(genre_ids or []),
        vote_average=vote_average,
        vote_count=vote_count,
        review_rating=review_rating,
    )


class FakeCatalog:
    """In-memory catalog: similar results per seed id and discovery results per page."""

    def __init__(self, similar=None, discover=None, genre_names=None, failing_pages=()):
        self.similar_results = similar or {}
        self.discover_results = discover or {}
        self.genre_names = genre_names or {}
        self.failing_pages = set(failing_pages)
        self.similar_calls = []
        self.discover_calls = []

    async def similar(self, kind, tmdb_id, page=1):
        self.similar_calls.append((kind, tmdb_id, page))
        return CatalogPage(page=page, results=list(self.similar_results.get(tmdb_id, [])))

    async def discover(self, kind, genres=None, min_vote_count=None, min_vote_average=None,
                       release_date_from=None, sort_by="popularity.desc", page=1):
        self.discover_calls.append({
            "kind": kind,
            "genres": genres,
            "min_vote_count": min_vote_count,
            "release_date_from": release_date_from,
            "sort_by": sort_by,
            "page": page,
        })
        if page in self.failing_pages:
            raise RuntimeError(f"discover page {page} unavailable")
        return CatalogPage(page=page, results=list(self.discover_results.get(page, [])))

    async def get_genre_names(self, kind):
        return dict(self.genre_names)


class FakeReviews:
    """Review lookups answered from a title -> ReviewMatch map; listed titles raise."""

    def __init__(self, matches=None, failing=()):
        self.matches = matches or {}
        self.failing = set(failing)
        self.calls = []

    async def get_best_review(self, title, year=None, kind=TitleKind.FILM):
        self.calls.append((title, year, TitleKind.parse(kind)))
        if title in self.failing:
            raise RuntimeError(f"review lookup failed for {title}")
        return self.matches.get(title, ReviewMatch())


class FakeRanker(RankingClient):
    """Returns a canned reply and records the prompt it was given."""

    def __init__(self, reply="[]", error=None):
        self.reply = reply
        self.error = error
        self.prompts = []

    async def complete(self, prompt):
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return self.reply


@pytest.fixture
def candidate_factory():
    return make_candidate
