"""Domain types shared across the recommendation pipeline."""
from dataclasses import dataclass, field
from enum import Enum


class TitleKind(str, Enum):
    FILM = "film"
    SERIES = "series"

    @property
    def media_type(self) -> str:
        """Catalog path segment for this kind ('movie' or 'tv')."""
        return "movie" if self is TitleKind.FILM else "tv"

    @classmethod
    def parse(cls, value: "str | TitleKind") -> "TitleKind":
        if isinstance(value, TitleKind):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(f"Unknown title kind: {value!r} (expected 'film' or 'series')") from None


@dataclass
class Candidate:
    """A catalog title under consideration for recommendation."""
    tmdb_id: int
    title: str
    kind: TitleKind
    release_date: str | None = None
    year: int | None = None
    overview: str = ""
    poster_path: str | None = None
    genre_ids: list[int] = field(default_factory=list)
    vote_average: float = 0.0
    vote_count: int = 0
    popularity: float = 0.0
    review_rating: int | None = None
    review_url: str | None = None
    review_excerpt: str | None = None


@dataclass
class ReviewMatch:
    """Best matching editorial review for a title; all fields None when nothing matched."""
    url: str | None = None
    rating: int | None = None
    excerpt: str | None = None

    @property
    def found(self) -> bool:
        return self.url is not None


@dataclass
class GenrePreference:
    genre_id: int
    weight: float


@dataclass
class ScoredCandidate:
    candidate: Candidate
    score: float


@dataclass
class HistoryItem:
    """Watch-history row as handed to the ranking prompt."""
    title: str
    rating: int
    year: int | None = None
    genre_ids: list[int] = field(default_factory=list)
    notes: str | None = None


@dataclass
class RankedEntry:
    """One validated entry of the ranking model's output."""
    title_id: int
    score: float
    reasoning: str


@dataclass
class Recommendation:
    tmdb_id: int
    title: str
    kind: TitleKind
    year: int | None
    release_date: str | None
    poster_path: str | None
    overview: str
    genre_ids: list[int]
    vote_average: float
    score: float
    reasoning: str
    review_rating: int | None = None
    review_url: str | None = None
    review_excerpt: str | None = None

    def to_dict(self) -> dict:
        return {
            'tmdb_id': self.tmdb_id,
            'title': self.title,
            'type': self.kind.value,
            'year': self.year,
            'release_date': self.release_date,
            'poster_path': self.poster_path,
            'overview': self.overview,
            'genre_ids': list(self.genre_ids),
            'vote_average': self.vote_average,
            'score': self.score,
            'reasoning': self.reasoning,
            'review_rating': self.review_rating,
            'review_url': self.review_url,
            'review_excerpt': self.review_excerpt,
        }
