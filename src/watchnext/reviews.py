"""
Guardian review lookup.

Finds the best matching editorial review for a title: section-scoped search,
hard filtering on the section path of each result, fuzzy title matching and
star-rating extraction. A missing review is an expected outcome and is
reported as an empty ReviewMatch, never as an error.
"""
import asyncio
import logging
import re

import httpx
from selectolax.parser import HTMLParser

from .config import (
    GUARDIAN_API_KEY,
    GUARDIAN_BASE_URL,
    HTTP_TIMEOUT,
    DEFAULT_MAX_CONCURRENT,
    REVIEW_PAGE_SIZE,
    REVIEW_MATCH_WORD_RATIO,
    REVIEW_MIN_WORD_LENGTH,
    REVIEW_SECTIONS,
)
from .models import ReviewMatch, TitleKind

logger = logging.getLogger(__name__)

REVIEW_TAG = "tone/reviews"


def normalize_title(text: str) -> str:
    """Lowercase, turn punctuation and dashes into spaces, collapse whitespace."""
    text = re.sub(r"[^\w\s]|_", " ", (text or "").lower())
    return re.sub(r"\s+", " ", text).strip()


def titles_match(target: str, review_title: str, min_ratio: float = REVIEW_MATCH_WORD_RATIO) -> bool:
    """
    Fuzzy check that a review headline is about the target title.

    Accepts when the normalized target is a substring of the normalized
    headline, or when at least min_ratio of the target's significant words
    (longer than two characters) appear in the headline.
    """
    norm_target = normalize_title(target)
    norm_review = normalize_title(review_title)
    if not norm_target or not norm_review:
        return False

    if norm_target in norm_review:
        return True

    words = [w for w in norm_target.split() if len(w) >= REVIEW_MIN_WORD_LENGTH]
    if not words:
        return False

    review_words = set(norm_review.split())
    matched = sum(1 for w in words if w in review_words)
    return matched / len(words) >= min_ratio


def extract_star_rating(value) -> int | None:
    """Parse a 1-5 star rating; anything else means no rating."""
    if value is None:
        return None
    m = re.match(r"^\s*(\d+)", str(value))
    if not m:
        return None
    rating = int(m.group(1))
    if not 1 <= rating <= 5:
        logger.debug(f"Ignoring out-of-range star rating: {value!r}")
        return None
    return rating


def review_section(review: dict) -> str:
    """Section path segment of a review id, e.g. 'film' for 'film/2023/jul/20/...'."""
    review_id = review.get("id") or ""
    return review_id.split("/", 1)[0] if "/" in review_id else (review.get("sectionId") or "")


def html_to_text(fragment: str | None) -> str | None:
    """Reduce an HTML snippet (trailText) to plain text."""
    if not fragment:
        return None
    tree = HTMLParser(fragment)
    node = tree.body or tree.root
    text = node.text(separator=" ", strip=True) if node else fragment
    text = re.sub(r"\s+", " ", text).strip()
    return text or None


class ReviewClient:
    """Async Guardian content API client."""

    def __init__(
        self,
        api_key: str = GUARDIAN_API_KEY,
        base_url: str = GUARDIAN_BASE_URL,
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

    async def search(
        self,
        query: str,
        section: str | None = None,
        tag_filter: str | None = REVIEW_TAG,
        page_size: int = REVIEW_PAGE_SIZE,
        order_by: str = "relevance",
    ) -> list[dict]:
        """Raw search results; empty on any failure."""
        if self.client is None:
            raise RuntimeError("ReviewClient must be used as an async context manager or given a client")

        params = {
            "api-key": self.api_key,
            "q": query,
            "show-fields": "starRating,trailText",
            "page-size": str(page_size),
            "order-by": order_by,
        }
        if section:
            params["section"] = section
        if tag_filter:
            params["tag"] = tag_filter

        async with self.semaphore:
            try:
                resp = await self.client.get(f"{self.base_url}/search", params=params, timeout=self.timeout)
                resp.raise_for_status()
                data = resp.json()
            except httpx.TimeoutException:
                logger.warning(f"Guardian search timed out for '{query}'")
                return []
            except httpx.HTTPStatusError as exc:
                logger.error(f"Guardian API error {exc.response.status_code} for '{query}'")
                return []
            except httpx.HTTPError as exc:
                logger.error(f"Guardian request error for '{query}': {type(exc).__name__}: {exc}")
                return []
            except ValueError as exc:
                logger.error(f"Invalid JSON from Guardian for '{query}': {exc}")
                return []

        return (data.get("response") or {}).get("results") or []

    async def get_best_review(
        self,
        title: str,
        year: int | None = None,
        kind: TitleKind | str = TitleKind.FILM,
    ) -> ReviewMatch:
        """Best matching review for a title; an empty ReviewMatch when nothing fits."""
        kind = TitleKind.parse(kind)
        section = REVIEW_SECTIONS[kind.value]

        query = f"{title} {year}" if year else title
        if kind is TitleKind.SERIES:
            query = f"{query} tv series"

        results = await self.search(query, section=section)

        accepted = [
            r for r in results
            if review_section(r) == section and titles_match(title, r.get("webTitle") or "")
        ]
        if not accepted:
            logger.debug(f"No {section} review matched '{title}' ({len(results)} results)")
            return ReviewMatch()

        rated = [r for r in accepted if extract_star_rating((r.get("fields") or {}).get("starRating")) is not None]
        best = rated[0] if rated else accepted[0]
        fields = best.get("fields") or {}

        return ReviewMatch(
            url=best.get("webUrl"),
            rating=extract_star_rating(fields.get("starRating")),
            excerpt=html_to_text(fields.get("trailText")),
        )
