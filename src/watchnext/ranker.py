"""
Ranking-model adapter.

Packages a bounded context (history, watchlist, dismissals, heuristic top
candidates) into one prompt, asks the language model for a JSON ranking and
turns its reply into Recommendations. Parsing is a pure parse-then-validate
stage: strict parse, one normalization pass, retry, then a typed error.
Nothing here raises on bad model output.
"""
import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum

import anthropic

from .config import (
    ANTHROPIC_API_KEY,
    RANKING_MODEL,
    RANKING_MAX_TOKENS,
    RANKING_TIMEOUT,
    PROMPT_HISTORY_LIMIT,
    PROMPT_WATCHLIST_LIMIT,
    PROMPT_DISMISSED_LIMIT,
    DEFAULT_RECOMMENDATION_LIMIT,
)
from .models import Candidate, HistoryItem, RankedEntry, Recommendation
from .utils import async_retry_with_backoff

logger = logging.getLogger(__name__)

OVERVIEW_PREVIEW_CHARS = 150


class RankingError(str, Enum):
    EMPTY_RESPONSE = "empty_response"
    NO_JSON_ARRAY = "no_json_array"
    INVALID_JSON = "invalid_json"
    MODEL_UNAVAILABLE = "model_unavailable"


@dataclass
class RankingResult:
    entries: list[RankedEntry] = field(default_factory=list)
    error: RankingError | None = None
    discarded: int = 0
    repaired: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None


# --- parsing ---------------------------------------------------------------

_ARRAY_RE = re.compile(r"\[[\s\S]*\]")
_OBJECT_RE = re.compile(
    r'\{\s*"titleId"\s*:\s*(\d+)\s*,\s*"score"\s*:\s*(\d+(?:\.\d+)?)\s*,'
    r'\s*"reasoning"\s*:\s*"([^{}]*?)"\s*\}'
)
_MISSING_QUOTE_RE = re.compile(r'("reasoning"\s*:\s*")([^"{}]*?)\s*\}')
_MISSING_BRACE_RE = re.compile(r'("reasoning"\s*:\s*"[^"{}]*")\s*(?=,\s*\{|\])')
_TRAILING_COMMA_RE = re.compile(r",\s*([\]}])")


def _rebuild_object(m: re.Match) -> str:
    reasoning = re.sub(r"['\"\\]", "", m.group(3)).strip()
    return f'{{"titleId":{m.group(1)},"score":{m.group(2)},"reasoning":"{reasoning}"}}'


def normalize_ranking_json(text: str) -> str:
    """
    Bounded repair pass for near-miss model JSON.

    Normalizes smart quotes and dashes, drops apostrophes, collapses
    whitespace, closes unterminated reasoning strings and objects, rebuilds
    each object with quote-free reasoning and removes trailing commas.
    """
    text = re.sub("[“”„‟]", '"', text)
    text = re.sub("[‘’‚‛]", "", text)
    text = re.sub("[–—−]", "-", text)
    text = re.sub(r"\s+", " ", text).strip()

    text = _MISSING_QUOTE_RE.sub(r'\1\2"}', text)
    text = _MISSING_BRACE_RE.sub(r"\1}", text)
    text = _OBJECT_RE.sub(_rebuild_object, text)
    text = _TRAILING_COMMA_RE.sub(r"\1", text)
    return text


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _validate_entries(items: list) -> tuple[list[RankedEntry], int]:
    entries: list[RankedEntry] = []
    discarded = 0
    for item in items:
        if not isinstance(item, dict):
            discarded += 1
            continue
        title_id = item.get("titleId")
        score = item.get("score")
        reasoning = item.get("reasoning")
        if not (_is_number(title_id) and _is_number(score) and isinstance(reasoning, str)):
            discarded += 1
            continue
        if isinstance(title_id, float) and not title_id.is_integer():
            discarded += 1
            continue
        entries.append(RankedEntry(title_id=int(title_id), score=float(score), reasoning=reasoning.strip()))
    return entries, discarded


def _first_array(raw: str) -> list | None:
    """First well-formed JSON array in raw that is empty or holds objects."""
    decoder = json.JSONDecoder()
    start = raw.find("[")
    while start != -1:
        try:
            value, _ = decoder.raw_decode(raw, start)
        except json.JSONDecodeError:
            value = None
        # Skips prose brackets such as "[ID:500]" or "[1]"
        if isinstance(value, list) and (not value or any(isinstance(v, dict) for v in value)):
            return value
        start = raw.find("[", start + 1)
    return None


def _validated(parsed: list, repaired: bool) -> RankingResult:
    entries, discarded = _validate_entries(parsed)
    if discarded:
        logger.warning(f"Discarded {discarded} malformed ranking entries")
    return RankingResult(entries=entries, discarded=discarded, repaired=repaired)


def parse_ranking(raw: str | None) -> RankingResult:
    """
    Parse the model's reply into validated ranking entries.

    Entries missing a numeric titleId/score or a string reasoning are
    discarded. Any structural failure yields a RankingResult with an error and
    no entries.
    """
    if not raw or not raw.strip():
        return RankingResult(error=RankingError.EMPTY_RESPONSE)

    parsed = _first_array(raw)
    if parsed is not None:
        return _validated(parsed, repaired=False)

    match = _ARRAY_RE.search(raw)
    if not match:
        logger.error("Ranking response did not contain a JSON array")
        logger.debug(f"Response: {raw[:500]}")
        return RankingResult(error=RankingError.NO_JSON_ARRAY)

    candidate_json = match.group(0)
    repaired = False
    try:
        parsed = json.loads(candidate_json)
    except json.JSONDecodeError:
        repaired = True
        sanitized = normalize_ranking_json(candidate_json)
        try:
            parsed = json.loads(sanitized)
        except json.JSONDecodeError as exc:
            logger.error(f"Failed to parse ranking JSON after repair: {exc}")
            logger.debug(f"Raw JSON: {candidate_json[:500]}")
            logger.debug(f"Sanitized JSON: {sanitized[:500]}")
            return RankingResult(error=RankingError.INVALID_JSON, repaired=True)

    return _validated(parsed, repaired)


# --- prompt ----------------------------------------------------------------

def _genre_label(genre_ids: list[int], genre_names: dict[int, str]) -> str:
    names = [genre_names.get(g, str(g)) for g in genre_ids]
    return ", ".join(names)


def _history_line(item: HistoryItem, genre_names: dict[int, str]) -> str:
    line = f'"{item.title}"'
    if item.year:
        line += f" ({item.year})"
    if item.genre_ids:
        line += f" [{_genre_label(item.genre_ids, genre_names)}]"
    line += f" - {item.rating}/5 stars"
    if item.notes:
        line += f" - Notes: {item.notes}"
    return line


def _candidate_line(idx: int, cand: Candidate, genre_names: dict[int, str]) -> str:
    overview = cand.overview or ""
    if len(overview) > OVERVIEW_PREVIEW_CHARS:
        overview = overview[:OVERVIEW_PREVIEW_CHARS].rstrip() + "..."
    year = f" ({cand.year})" if cand.year else ""
    genres = f" [{_genre_label(cand.genre_ids, genre_names)}]" if cand.genre_ids else ""
    line = f'{idx}. [ID:{cand.tmdb_id}] "{cand.title}"{year}{genres} - {overview}'
    if cand.review_rating:
        line += f" | Guardian: {cand.review_rating}/5"
    line += f" | TMDB: {cand.vote_average:.1f}/10"
    return line


def build_ranking_prompt(
    history: list[HistoryItem],
    watchlist: list[str],
    dismissed: list[str],
    candidates: list[Candidate],
    limit: int = DEFAULT_RECOMMENDATION_LIMIT,
    genre_names: dict[int, str] | None = None,
) -> str:
    genre_names = genre_names or {}
    history = history[:PROMPT_HISTORY_LIMIT]

    loved = "\n".join(_history_line(h, genre_names) for h in history if h.rating >= 4)
    mixed = "\n".join(_history_line(h, genre_names) for h in history if h.rating == 3)
    disliked = "\n".join(_history_line(h, genre_names) for h in history if h.rating <= 2)
    watchlist_text = ", ".join(watchlist[:PROMPT_WATCHLIST_LIMIT])
    dismissed_text = ", ".join(dismissed[:PROMPT_DISMISSED_LIMIT])
    candidates_text = "\n".join(_candidate_line(i + 1, c, genre_names) for i, c in enumerate(candidates))

    return f"""You are an expert film and TV recommendation system. Analyze the user's viewing history and recommend titles from the candidate list.

## User's Highly Rated Content (4-5 stars):
{loved or 'None yet'}

## User's Mixed Content (3 stars):
{mixed or 'None yet'}

## User's Low Rated Content (1-2 stars):
{disliked or 'None yet'}

## User's Watchlist:
{watchlist_text or 'Empty'}

## Recently Dismissed Recommendations (the user was not interested):
{dismissed_text or 'None'}

## Candidate Titles to Evaluate:
{candidates_text}

TASK: Recommend up to {limit} titles from the candidate list that best match this user's taste. Consider:
1. Patterns in their highly rated content (themes, genres, tone, era)
2. What they disliked or dismissed (avoid similar titles)
3. Guardian ratings (high Guardian scores often indicate quality)
4. Diversity (do not just recommend one type)

Return ONLY a valid JSON array. No markdown, no explanations, just the JSON array.

Format each object exactly like this:
{{"titleId": 123, "score": 85, "reasoning": "Simple explanation without any quotes or special characters"}}

CRITICAL RULES:
1. Use double quotes for all JSON keys and string values
2. In reasoning text: NO quotes, NO apostrophes, NO special characters
3. Only use titleId values from the candidate list
4. Separate objects with commas
5. The entire response must be valid JSON

Return at most {limit} recommendations ordered by score (highest first)."""


# --- model client ----------------------------------------------------------

class RankingClient(ABC):
    """Single-turn text completion used for ranking."""

    @abstractmethod
    async def complete(self, prompt: str) -> str:
        """Return the model's text reply for a prompt."""


def first_text_block(content) -> str:
    """Plain text replies are returned as-is; for content blocks the first text block wins."""
    if isinstance(content, str):
        return content
    for block in content or []:
        if getattr(block, "type", None) == "text":
            return block.text
        if isinstance(block, dict) and block.get("type") == "text":
            return block.get("text", "")
    return ""


RETRIABLE_MODEL_ERRORS = (
    anthropic.APIConnectionError,
    anthropic.RateLimitError,
    anthropic.InternalServerError,
)


class AnthropicRankingClient(RankingClient):
    """Claude via the Anthropic Messages API."""

    def __init__(
        self,
        api_key: str = ANTHROPIC_API_KEY,
        model: str = RANKING_MODEL,
        max_tokens: int = RANKING_MAX_TOKENS,
        timeout: float = RANKING_TIMEOUT,
        client: anthropic.AsyncAnthropic | None = None,
    ):
        self.api_key = api_key
        self.model = model
        self.max_tokens = max_tokens
        self.timeout = timeout
        self._client = client

    def _ensure_client(self) -> anthropic.AsyncAnthropic:
        if self._client is None:
            logger.debug(f"Initializing ranking model client: model={self.model}")
            self._client = anthropic.AsyncAnthropic(api_key=self.api_key, timeout=self.timeout, max_retries=0)
        return self._client

    @async_retry_with_backoff(max_retries=3, initial_delay=1.0, exceptions=RETRIABLE_MODEL_ERRORS)
    async def complete(self, prompt: str) -> str:
        message = await self._ensure_client().messages.create(
            model=self.model,
            max_tokens=self.max_tokens,
            messages=[{"role": "user", "content": prompt}],
        )
        return first_text_block(message.content)


# --- adapter ---------------------------------------------------------------

async def request_ranking(client: RankingClient, prompt: str) -> RankingResult:
    """Call the model and parse its reply; model failures become MODEL_UNAVAILABLE."""
    try:
        raw = await client.complete(prompt)
    except Exception as exc:  # noqa: BLE001 - ranking is optional, any failure degrades
        logger.error(f"Ranking model call failed: {type(exc).__name__}: {exc}")
        return RankingResult(error=RankingError.MODEL_UNAVAILABLE)
    return parse_ranking(raw)


def map_rankings(entries: list[RankedEntry], candidates: list[Candidate], limit: int) -> list[Recommendation]:
    """Join ranking entries back onto their candidates and sort by model score, highest first."""
    by_id = {c.tmdb_id: c for c in candidates}
    recs: list[Recommendation] = []
    seen: set[int] = set()

    for entry in entries:
        cand = by_id.get(entry.title_id)
        if cand is None:
            logger.debug(f"Ranking returned unknown titleId {entry.title_id}, ignoring")
            continue
        if entry.title_id in seen:
            continue
        seen.add(entry.title_id)
        recs.append(Recommendation(
            tmdb_id=cand.tmdb_id,
            title=cand.title,
            kind=cand.kind,
            year=cand.year,
            release_date=cand.release_date,
            poster_path=cand.poster_path,
            overview=cand.overview,
            genre_ids=list(cand.genre_ids),
            vote_average=cand.vote_average,
            score=entry.score,
            reasoning=entry.reasoning,
            review_rating=cand.review_rating,
            review_url=cand.review_url,
            review_excerpt=cand.review_excerpt,
        ))

    recs.sort(key=lambda r: -r.score)
    return recs[:limit]


async def rank_candidates(
    client: RankingClient,
    history: list[HistoryItem],
    watchlist: list[str],
    dismissed: list[str],
    candidates: list[Candidate],
    limit: int = DEFAULT_RECOMMENDATION_LIMIT,
    genre_names: dict[int, str] | None = None,
) -> tuple[list[Recommendation], RankingResult]:
    if not candidates:
        return [], RankingResult()

    prompt = build_ranking_prompt(history, watchlist, dismissed, candidates, limit, genre_names)
    result = await request_ranking(client, prompt)
    if not result.ok:
        logger.warning(f"Ranking unavailable ({result.error.value}); no ranked recommendations")
        return [], result

    return map_rankings(result.entries, candidates, limit), result
