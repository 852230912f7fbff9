import asyncio
import logging
from dataclasses import dataclass, field

import httpx

from .config import (
    TMDB_API_KEY,
    TMDB_BASE_URL,
    TMDB_IMAGE_BASE_URL,
    HTTP_TIMEOUT,
    DEFAULT_MAX_CONCURRENT,
    MAX_HTTP_RETRIES,
    MAX_429_RETRY_SECONDS,
    DEFAULT_RETRY_AFTER,
)
from .models import Candidate, TitleKind
from .utils import year_from_date

logger = logging.getLogger(__name__)

POSTER_SIZES = ("w154", "w342", "w500", "original")


@dataclass
class CatalogPage:
    page: int = 1
    results: list[Candidate] = field(default_factory=list)
    total_pages: int = 0
    total_results: int = 0


def _retry_after_seconds(resp: httpx.Response) -> float:
    # Retry-After may also be an HTTP date; only delay-seconds is honoured
    try:
        return float(resp.headers.get("Retry-After", DEFAULT_RETRY_AFTER))
    except ValueError:
        return float(DEFAULT_RETRY_AFTER)


def poster_url(path: str | None, size: str = "w342") -> str | None:
    """Full image URL for a catalog poster path."""
    if not path:
        return None
    if size not in POSTER_SIZES:
        raise ValueError(f"Unsupported poster size: {size}")
    return f"{TMDB_IMAGE_BASE_URL}/{size}{path}"


def to_candidate(item: dict, kind: TitleKind) -> Candidate | None:
    """
    Convert a catalog movie/tv payload into a Candidate.

    Handles both list results (genre_ids) and detail payloads (genres objects).
    Returns None for items without a usable id.
    """
    try:
        tmdb_id = int(item["id"])
    except (KeyError, TypeError, ValueError):
        logger.debug(f"Skipping catalog item without id: {item!r:.80}")
        return None

    title = (
        item.get("title") or item.get("name")
        or item.get("original_title") or item.get("original_name") or ""
    )
    release_date = item.get("release_date") or item.get("first_air_date") or None

    genre_ids = item.get("genre_ids")
    if genre_ids is None:
        genre_ids = [g.get("id") for g in item.get("genres") or [] if isinstance(g, dict)]
    genre_ids = [int(g) for g in genre_ids if isinstance(g, (int, str)) and str(g).isdigit()]

    try:
        vote_average = float(item.get("vote_average") or 0.0)
    except (TypeError, ValueError):
        vote_average = 0.0
    try:
        vote_count = int(item.get("vote_count") or 0)
    except (TypeError, ValueError):
        vote_count = 0
    try:
        popularity = float(item.get("popularity") or 0.0)
    except (TypeError, ValueError):
        popularity = 0.0

    return Candidate(
        tmdb_id=tmdb_id,
        title=title,
        kind=kind,
        release_date=release_date,
        year=year_from_date(release_date),
        overview=item.get("overview") or "",
        poster_path=item.get("poster_path"),
        genre_ids=genre_ids,
        vote_average=vote_average,
        vote_count=vote_count,
        popularity=popularity,
    )


class CatalogClient:
    """
    Async TMDB client.

    Every call degrades to an empty result (logged) on network errors,
    timeouts and non-success responses. Use as an async context manager, or
    pass an existing httpx.AsyncClient.
    """

    def __init__(
        self,
        api_key: str = TMDB_API_KEY,
        base_url: str = TMDB_BASE_URL,
        client: httpx.AsyncClient | None = None,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT,
        timeout: float = HTTP_TIMEOUT,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.client = client
        self._owns_client = False
        self.semaphore = asyncio.Semaphore(max_concurrent)

    async def __aenter__(self):
        if self.client is None:
            self.client = httpx.AsyncClient(
                headers={"Accept": "application/json", "User-Agent": "watchnext/1.0"},
                timeout=self.timeout,
            )
            self._owns_client = True
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self.client is not None and self._owns_client:
            await self.client.aclose()
            self.client = None
            self._owns_client = False
        return False

    async def _get_json(self, endpoint: str, params: dict | None = None) -> dict | None:
        """GET an endpoint; None on any failure."""
        if self.client is None:
            raise RuntimeError("CatalogClient must be used as an async context manager or given a client")

        url = f"{self.base_url}{endpoint}"
        query = {"api_key": self.api_key}
        for key, value in (params or {}).items():
            if value is not None:
                query[key] = str(value)

        async with self.semaphore:
            total_429_wait = 0.0
            for attempt in range(MAX_HTTP_RETRIES):
                try:
                    resp = await self.client.get(url, params=query, timeout=self.timeout)

                    if resp.status_code == 429:
                        retry_after = _retry_after_seconds(resp)
                        if total_429_wait + retry_after > MAX_429_RETRY_SECONDS:
                            logger.error(f"Max 429 wait time exceeded for {endpoint}")
                            return None
                        logger.warning(
                            f"Rate limited on {endpoint}, waiting {retry_after}s "
                            f"(attempt {attempt + 1}/{MAX_HTTP_RETRIES})"
                        )
                        await asyncio.sleep(retry_after)
                        total_429_wait += retry_after
                        continue

                    resp.raise_for_status()
                    return resp.json()

                except httpx.TimeoutException:
                    logger.warning(f"Timeout on {endpoint}, skipping")
                    return None
                except httpx.HTTPStatusError as exc:
                    logger.error(f"Catalog API error {exc.response.status_code} on {endpoint}")
                    return None
                except httpx.HTTPError as exc:
                    logger.error(f"Request error on {endpoint}: {type(exc).__name__}: {exc}")
                    return None
                except ValueError as exc:
                    logger.error(f"Invalid JSON from {endpoint}: {exc}")
                    return None

            logger.error(f"Max retries exceeded for {endpoint}")
            return None

    async def _get_page(self, endpoint: str, kind: TitleKind, params: dict | None = None) -> CatalogPage:
        data = await self._get_json(endpoint, params)
        if not data:
            return CatalogPage(page=int((params or {}).get("page", 1)))

        results = []
        for item in data.get("results") or []:
            cand = to_candidate(item, kind)
            if cand is not None:
                results.append(cand)

        return CatalogPage(
            page=int(data.get("page") or 1),
            results=results,
            total_pages=int(data.get("total_pages") or 0),
            total_results=int(data.get("total_results") or 0),
        )

    async def search_movies(self, query: str, page: int = 1) -> CatalogPage:
        return await self._get_page(
            "/search/movie", TitleKind.FILM,
            {"query": query, "page": page, "include_adult": "false"},
        )

    async def search_tv(self, query: str, page: int = 1) -> CatalogPage:
        return await self._get_page(
            "/search/tv", TitleKind.SERIES,
            {"query": query, "page": page, "include_adult": "false"},
        )

    async def search_multi(self, query: str, page: int = 1) -> CatalogPage:
        """Search films and series together; people and other media types are dropped."""
        data = await self._get_json("/search/multi", {"query": query, "page": page, "include_adult": "false"})
        if not data:
            return CatalogPage(page=page)

        results = []
        for item in data.get("results") or []:
            media_type = item.get("media_type")
            if media_type == "movie":
                cand = to_candidate(item, TitleKind.FILM)
            elif media_type == "tv":
                cand = to_candidate(item, TitleKind.SERIES)
            else:
                continue
            if cand is not None:
                results.append(cand)

        return CatalogPage(
            page=int(data.get("page") or page),
            results=results,
            total_pages=int(data.get("total_pages") or 0),
            total_results=int(data.get("total_results") or 0),
        )

    async def get_movie_details(self, tmdb_id: int) -> dict | None:
        return await self._get_json(f"/movie/{tmdb_id}")

    async def get_tv_details(self, tmdb_id: int) -> dict | None:
        return await self._get_json(f"/tv/{tmdb_id}")

    async def get_details(self, kind: TitleKind, tmdb_id: int) -> Candidate | None:
        kind = TitleKind.parse(kind)
        data = await (self.get_movie_details(tmdb_id) if kind is TitleKind.FILM else self.get_tv_details(tmdb_id))
        return to_candidate(data, kind) if data else None

    async def get_movie_genres(self) -> list[dict]:
        data = await self._get_json("/genre/movie/list")
        return (data or {}).get("genres") or []

    async def get_tv_genres(self) -> list[dict]:
        data = await self._get_json("/genre/tv/list")
        return (data or {}).get("genres") or []

    async def get_genre_names(self, kind: TitleKind) -> dict[int, str]:
        """Genre id -> display name for a kind; empty when the lookup fails."""
        kind = TitleKind.parse(kind)
        genres = await (self.get_movie_genres() if kind is TitleKind.FILM else self.get_tv_genres())
        names = {}
        for g in genres:
            try:
                names[int(g["id"])] = str(g["name"])
            except (KeyError, TypeError, ValueError):
                continue
        return names

    async def similar(self, kind: TitleKind, tmdb_id: int, page: int = 1) -> CatalogPage:
        kind = TitleKind.parse(kind)
        return await self._get_page(
            f"/{kind.media_type}/{tmdb_id}/similar", kind,
            {"language": "en-US", "page": page},
        )

    async def discover(
        self,
        kind: TitleKind,
        genres: list[int] | None = None,
        min_vote_count: int | None = None,
        min_vote_average: float | None = None,
        release_date_from: str | None = None,
        sort_by: str = "popularity.desc",
        page: int = 1,
    ) -> CatalogPage:
        """
        Discovery query.

        Genres are comma-joined, so a title must carry all of them;
        release_date_from (YYYY-MM-DD) maps to the kind's release-date field.
        """
        kind = TitleKind.parse(kind)
        date_field = "primary_release_date.gte" if kind is TitleKind.FILM else "first_air_date.gte"
        params = {
            "language": "en-US",
            "include_adult": "false",
            "sort_by": sort_by,
            "page": page,
            "with_genres": ",".join(str(g) for g in genres) if genres else None,
            "vote_count.gte": min_vote_count,
            "vote_average.gte": min_vote_average,
            date_field: release_date_from,
        }
        return await self._get_page(f"/discover/{kind.media_type}", kind, params)
