import argparse
import asyncio
import atexit
import json
import logging
from urllib.parse import urlparse

from tqdm import tqdm

from . import database
from .catalog import CatalogClient
from .config import DEFAULT_RECOMMENDATION_LIMIT, REVIEW_REFRESH_DAYS, PipelineConfig, validate_env
from .enrichment import enrich_stored_title
from .models import Recommendation, TitleKind
from .ranker import AnthropicRankingClient
from .recommender import get_recommendations
from .reviews import ReviewClient

logger = logging.getLogger(__name__)

# Register cleanup on exit
atexit.register(database.close_pool)

KIND_CHOICES = [k.value for k in TitleKind]


def _validate_user_id(user_id: str) -> str:
    cleaned = user_id.strip()
    if not cleaned:
        raise ValueError("User id must not be empty")
    return cleaned


def _title_label(row: dict) -> str:
    year = row.get('release_year')
    return f"{row['title']} ({year})" if year else row['title']


def _url_section(url: str | None) -> str:
    """First path segment of a review URL ('film', 'tv-and-radio', ...)."""
    if not url:
        return ""
    parts = [p for p in urlparse(url).path.split("/") if p]
    return parts[0] if parts else ""


async def _resolve_title(args: argparse.Namespace) -> dict | None:
    """
    Title metadata for a command operating on one catalog id.

    An explicit --title skips the catalog lookup.
    """
    kind = TitleKind.parse(args.type)
    if getattr(args, 'title', None):
        return {
            'tmdb_id': args.tmdb_id,
            'title': args.title,
            'kind': kind,
            'release_year': getattr(args, 'year', None),
            'poster_url': None,
            'overview': "",
            'genre_ids': [],
        }

    async with CatalogClient() as catalog:
        cand = await catalog.get_details(kind, args.tmdb_id)
    if cand is None:
        return None
    return {
        'tmdb_id': cand.tmdb_id,
        'title': cand.title,
        'kind': kind,
        'release_year': cand.year,
        'poster_url': cand.poster_path,
        'overview': cand.overview,
        'genre_ids': cand.genre_ids,
    }


def cmd_init_db(args: argparse.Namespace) -> None:
    """Create the local database schema."""
    database.init_db()
    logger.info(f"Database ready at {database.DB_PATH}")


def _output_recommendations(recs: list[Recommendation], args: argparse.Namespace, user_id: str) -> None:
    """Format and log recommendations in the requested format."""
    if args.format == 'json':
        logger.info(json.dumps([r.to_dict() for r in recs], indent=2))
        return

    if not recs:
        logger.info(f"No {args.type} recommendations for {user_id} right now.")
        return

    logger.info(f"\nTop {len(recs)} {args.type} recommendations for {user_id}:")
    for i, r in enumerate(recs, 1):
        year = f" ({r.year})" if r.year else ""
        logger.info(f"{i}. {r.title}{year} - Score: {r.score:.0f}")
        logger.info(f"   Why: {r.reasoning}")
        if r.review_rating:
            logger.info(f"   Guardian: {r.review_rating}/5 {r.review_url or ''}".rstrip())


async def _cmd_recommend_async(args: argparse.Namespace, user_id: str) -> list[Recommendation]:
    config = PipelineConfig.lenient() if args.lenient else PipelineConfig()
    ranker = AnthropicRankingClient()
    async with CatalogClient() as catalog, ReviewClient() as reviews:
        return await get_recommendations(
            user_id, args.type, catalog, reviews, ranker,
            limit=args.limit, config=config,
        )


def cmd_recommend(args: argparse.Namespace) -> None:
    """Generate recommendations."""
    user_id = _validate_user_id(args.user)
    validate_env()
    database.init_db()

    recs = asyncio.run(_cmd_recommend_async(args, user_id))
    _output_recommendations(recs, args, user_id)


def cmd_watchlist_add(args: argparse.Namespace) -> None:
    """Add a title to a user's watchlist, fetching review data for films."""
    user_id = _validate_user_id(args.user)
    database.init_db()

    info = asyncio.run(_resolve_title(args))
    if info is None:
        logger.error(f"Title {args.tmdb_id} not found in the catalog. Pass --title to add it anyway.")
        return

    try:
        row = database.add_to_watchlist(
            user_id, info['tmdb_id'], info['title'], info['kind'],
            release_year=info['release_year'],
            poster_url=info['poster_url'],
            overview=info['overview'],
            genre_ids=info['genre_ids'],
        )
    except database.DuplicateEntryError as exc:
        logger.error(f"{exc}: {info['title']}")
        return

    logger.info(f"Added to watchlist: {_title_label(row)}")

    if info['kind'] is TitleKind.FILM and not args.skip_review:
        match = asyncio.run(_enrich_one(row))
        if match is not None and match.rating is not None:
            logger.info(f"  Guardian: {match.rating}/5 {match.url}")


async def _enrich_one(row: dict):
    async with ReviewClient() as reviews:
        return await enrich_stored_title(row, reviews)


def cmd_watchlist_remove(args: argparse.Namespace) -> None:
    user_id = _validate_user_id(args.user)
    database.init_db()
    if database.remove_from_watchlist(user_id, args.tmdb_id, args.type):
        logger.info(f"Removed {args.type} {args.tmdb_id} from watchlist")
    else:
        logger.warning(f"{args.type} {args.tmdb_id} is not on the watchlist")


def cmd_watchlist(args: argparse.Namespace) -> None:
    """Show a user's watchlist."""
    user_id = _validate_user_id(args.user)
    database.init_db()
    rows = database.get_watchlist(user_id, args.type, args.limit)
    if not rows:
        logger.info("Watchlist is empty.")
        return

    logger.info(f"\nWatchlist for {user_id} ({len(rows)} titles):")
    for row in rows:
        review = f" - Guardian {row['review_rating']}/5" if row.get('review_rating') else ""
        logger.info(f"  [{row['type']}:{row['tmdb_id']}] {_title_label(row)}{review}")


def cmd_watch(args: argparse.Namespace) -> None:
    """Mark a title as watched with a 1-5 rating."""
    user_id = _validate_user_id(args.user)
    database.init_db()

    info = asyncio.run(_resolve_title(args))
    if info is None:
        logger.error(f"Title {args.tmdb_id} not found in the catalog. Pass --title to record it anyway.")
        return

    try:
        row = database.mark_as_watched(
            user_id, info['tmdb_id'], info['title'], info['kind'], args.rating,
            notes=args.notes,
            release_year=info['release_year'],
            poster_url=info['poster_url'],
            overview=info['overview'],
            genre_ids=info['genre_ids'],
        )
    except ValueError as exc:
        logger.error(str(exc))
        return

    logger.info(f"Watched: {_title_label(row)} - {args.rating}/5")


def cmd_history(args: argparse.Namespace) -> None:
    """Show a user's watch history."""
    user_id = _validate_user_id(args.user)
    database.init_db()
    rows = database.get_watch_history(user_id, args.type, args.min_rating, args.limit)
    if not rows:
        logger.info("No watch history.")
        return

    logger.info(f"\nWatch history for {user_id}:")
    for row in rows:
        notes = f" - {row['notes']}" if row.get('notes') else ""
        logger.info(f"  {row['rating']}/5 [{row['type']}:{row['tmdb_id']}] {_title_label(row)}{notes}")


def cmd_dismiss(args: argparse.Namespace) -> None:
    """Hide a title from future recommendations."""
    user_id = _validate_user_id(args.user)
    database.init_db()

    info = asyncio.run(_resolve_title(args))
    if info is None:
        logger.error(f"Title {args.tmdb_id} not found in the catalog. Pass --title to dismiss it anyway.")
        return

    try:
        row = database.dismiss_recommendation(
            user_id, info['tmdb_id'], info['title'], info['kind'],
            release_year=info['release_year'],
            poster_url=info['poster_url'],
            overview=info['overview'],
            genre_ids=info['genre_ids'],
        )
    except database.DuplicateEntryError as exc:
        logger.error(f"{exc}: {info['title']}")
        return

    logger.info(f"Dismissed: {_title_label(row)}")


def cmd_undismiss(args: argparse.Namespace) -> None:
    user_id = _validate_user_id(args.user)
    database.init_db()
    if database.undismiss_recommendation(user_id, args.tmdb_id, args.type):
        logger.info(f"Restored {args.type} {args.tmdb_id} to recommendations")
    else:
        logger.warning(f"{args.type} {args.tmdb_id} was not dismissed")


async def _refresh_reviews(rows: list[dict], args: argparse.Namespace) -> list:
    async with ReviewClient() as reviews:
        with tqdm(total=len(rows), desc="Reviews") as pbar:
            async def refresh_one(row: dict):
                try:
                    return await enrich_stored_title(row, reviews, args.max_age_days, force=args.force)
                finally:
                    pbar.update(1)

            return await asyncio.gather(*[refresh_one(r) for r in rows], return_exceptions=True)


def cmd_refresh_reviews(args: argparse.Namespace) -> None:
    """Look up reviews for stored titles that have none or were checked too long ago."""
    database.init_db()
    rows = database.get_titles_needing_review(args.type, args.max_age_days, args.limit, force=args.force)
    if not rows:
        logger.info("No titles need a review refresh.")
        return

    logger.info(f"Refreshing reviews for {len(rows)} titles...")
    results = asyncio.run(_refresh_reviews(rows, args))

    rated = failed = 0
    for row, result in zip(rows, results):
        if isinstance(result, Exception):
            failed += 1
            logger.error(f"  Review refresh failed for {_title_label(row)}: {type(result).__name__}: {result}")
        elif result is not None and result.rating is not None:
            rated += 1
            logger.debug(f"  {_title_label(row)}: {result.rating}/5")

    logger.info(f"Found rated reviews for {rated}/{len(rows)} titles" + (f" ({failed} failed)" if failed else ""))


def cmd_clear_reviews(args: argparse.Namespace) -> None:
    """Reset cached review data so it is fetched again."""
    database.init_db()
    cleared = database.clear_review_data(args.type)
    scope = f"{args.type} " if args.type else ""
    logger.info(f"Cleared review data for {cleared} {scope}titles")


def cmd_check_reviews(args: argparse.Namespace) -> None:
    """List cached review URLs and flag series whose review came from the film section."""
    database.init_db()
    rows = database.get_titles_with_reviews(args.type)
    if not rows:
        logger.info("No cached reviews.")
        return

    mismatched = []
    for row in rows:
        section = _url_section(row['review_url'])
        flag = ""
        if row['type'] == TitleKind.SERIES.value and section == "film":
            mismatched.append(row)
            flag = "  <-- film review cached for a series"
        logger.info(f"  [{row['type']}] {_title_label(row)}: {row['review_rating']}/5 {row['review_url']}{flag}")

    logger.info(f"\n{len(rows)} cached reviews, {len(mismatched)} series with film-section reviews")
    if mismatched:
        logger.info("Run: watchnext clear-reviews --type series")


def _add_kind_argument(parser: argparse.ArgumentParser, required: bool = False) -> None:
    if required:
        parser.add_argument("--type", choices=KIND_CHOICES, default=TitleKind.FILM.value,
                            help="Title kind (default: film)")
    else:
        parser.add_argument("--type", choices=KIND_CHOICES, help="Only this title kind")


def _add_title_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("user", help="User id")
    parser.add_argument("tmdb_id", type=int, help="TMDB id of the title")
    _add_kind_argument(parser, required=True)
    parser.add_argument("--title", help="Title name (skips the catalog lookup)")
    parser.add_argument("--year", type=int, help="Release year, used with --title")


def main():
    parser = argparse.ArgumentParser(description="WatchNext film and series recommender")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser("init-db", help="Create the database schema")
    init_parser.set_defaults(func=cmd_init_db)

    # Recommend command
    rec_parser = subparsers.add_parser("recommend", help="Generate recommendations")
    rec_parser.add_argument("user", help="User id")
    _add_kind_argument(rec_parser, required=True)
    rec_parser.add_argument("--limit", type=int, default=DEFAULT_RECOMMENDATION_LIMIT,
                            help=f"Number of recommendations (default: {DEFAULT_RECOMMENDATION_LIMIT})")
    rec_parser.add_argument("--lenient", action="store_true",
                            help="Skip the review/rating quality gate and fetch a single discovery page")
    rec_parser.add_argument("--format", choices=["text", "json"], default="text", help="Output format")
    rec_parser.set_defaults(func=cmd_recommend)

    # Watchlist commands
    add_parser = subparsers.add_parser("watchlist-add", help="Add a title to the watchlist")
    _add_title_arguments(add_parser)
    add_parser.add_argument("--skip-review", action="store_true", help="Do not look up a review for films")
    add_parser.set_defaults(func=cmd_watchlist_add)

    remove_parser = subparsers.add_parser("watchlist-remove", help="Remove a title from the watchlist")
    remove_parser.add_argument("user", help="User id")
    remove_parser.add_argument("tmdb_id", type=int, help="TMDB id of the title")
    _add_kind_argument(remove_parser, required=True)
    remove_parser.set_defaults(func=cmd_watchlist_remove)

    list_parser = subparsers.add_parser("watchlist", help="Show the watchlist")
    list_parser.add_argument("user", help="User id")
    _add_kind_argument(list_parser)
    list_parser.add_argument("--limit", type=int, help="Maximum titles to show")
    list_parser.set_defaults(func=cmd_watchlist)

    # History commands
    watch_parser = subparsers.add_parser("watch", help="Mark a title as watched")
    _add_title_arguments(watch_parser)
    watch_parser.add_argument("rating", type=int, choices=range(1, 6), metavar="RATING", help="Rating 1-5")
    watch_parser.add_argument("--notes", help="Optional notes")
    watch_parser.set_defaults(func=cmd_watch)

    history_parser = subparsers.add_parser("history", help="Show watch history")
    history_parser.add_argument("user", help="User id")
    _add_kind_argument(history_parser)
    history_parser.add_argument("--min-rating", type=int, help="Only entries rated at least this")
    history_parser.add_argument("--limit", type=int, help="Maximum entries to show")
    history_parser.set_defaults(func=cmd_history)

    # Dismissals
    dismiss_parser = subparsers.add_parser("dismiss", help="Hide a title from recommendations")
    _add_title_arguments(dismiss_parser)
    dismiss_parser.set_defaults(func=cmd_dismiss)

    undismiss_parser = subparsers.add_parser("undismiss", help="Allow a dismissed title again")
    undismiss_parser.add_argument("user", help="User id")
    undismiss_parser.add_argument("tmdb_id", type=int, help="TMDB id of the title")
    _add_kind_argument(undismiss_parser, required=True)
    undismiss_parser.set_defaults(func=cmd_undismiss)

    # Review maintenance
    refresh_parser = subparsers.add_parser("refresh-reviews", help="Look up missing or stale reviews")
    _add_kind_argument(refresh_parser)
    refresh_parser.add_argument("--max-age-days", type=int, default=REVIEW_REFRESH_DAYS,
                                help=f"Re-check titles last checked more than N days ago (default: {REVIEW_REFRESH_DAYS})")
    refresh_parser.add_argument("--limit", type=int, help="Maximum titles to refresh")
    refresh_parser.add_argument("--force", action="store_true", help="Ignore the last-checked timestamp")
    refresh_parser.set_defaults(func=cmd_refresh_reviews)

    clear_parser = subparsers.add_parser("clear-reviews", help="Clear cached review data")
    _add_kind_argument(clear_parser)
    clear_parser.set_defaults(func=cmd_clear_reviews)

    check_parser = subparsers.add_parser("check-reviews", help="List cached reviews and flag section mismatches")
    _add_kind_argument(check_parser)
    check_parser.set_defaults(func=cmd_check_reviews)

    args = parser.parse_args()

    # Configure logging based on verbosity
    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    try:
        args.func(args)
    except ValueError as exc:
        logger.error(str(exc))
    except database.PersistenceError as exc:
        logger.error(f"Database error: {exc}")
