import sqlite3
import json
import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta
from .config import DB_PATH
from .models import ReviewMatch, TitleKind

logger = logging.getLogger(__name__)

UNIQUE_VIOLATION = "unique_violation"


class PersistenceError(Exception):
    """Datastore failure surfaced to the caller."""

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.code = code


class DuplicateEntryError(PersistenceError):
    """Unique-constraint violation (already watchlisted, already dismissed)."""

    def __init__(self, message: str):
        super().__init__(message, code=UNIQUE_VIOLATION)


def parse_timestamp_naive(timestamp_str: str) -> datetime:
    """
    Parse ISO format timestamp string to naive datetime.

    Ensures consistency by always returning naive datetime regardless of
    whether the stored timestamp had timezone info.
    """
    dt = datetime.fromisoformat(timestamp_str)
    return dt.replace(tzinfo=None) if dt.tzinfo else dt


class ConnectionPool:
    """
    One SQLite connection per thread.

    Pipeline reads run through asyncio.to_thread, so connections live in the
    default executor's worker threads and are reused across calls. Each thread
    also tracks how deeply its get_db blocks are nested.
    """

    def __init__(self, db_path):
        self._db_path = db_path
        self._lock = threading.Lock()
        self._connections: dict[int, sqlite3.Connection] = {}
        self._transaction_depth: dict[int, int] = {}

    def _create_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row

        conn.execute("PRAGMA busy_timeout = 5000")
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA foreign_keys = ON")

        return conn

    def get_connection(self) -> sqlite3.Connection:
        """Get a connection for the current thread, creating if necessary."""
        thread_id = threading.get_ident()
        with self._lock:
            conn = self._connections.get(thread_id)
            if conn is None:
                conn = self._create_connection()
                self._connections[thread_id] = conn
                logger.debug(f"Opened connection for thread {thread_id} ({len(self._connections)} open)")
            return conn

    def get_transaction_depth(self) -> int:
        return self._transaction_depth.get(threading.get_ident(), 0)

    def increment_transaction_depth(self):
        thread_id = threading.get_ident()
        with self._lock:
            self._transaction_depth[thread_id] = self._transaction_depth.get(thread_id, 0) + 1

    def decrement_transaction_depth(self):
        thread_id = threading.get_ident()
        with self._lock:
            self._transaction_depth[thread_id] = max(0, self._transaction_depth.get(thread_id, 1) - 1)

    @property
    def size(self) -> int:
        return len(self._connections)

    def close_all(self):
        """Close every open connection."""
        with self._lock:
            for thread_id, conn in list(self._connections.items()):
                try:
                    conn.close()
                except sqlite3.Error as e:
                    logger.warning(f"Error closing connection for thread {thread_id}: {e}")

            self._connections.clear()
            self._transaction_depth.clear()
            logger.debug("Connection pool closed")


_pool: ConnectionPool | None = None
_pool_lock = threading.Lock()


def init_db() -> None:
    DB_PATH.parent.mkdir(exist_ok=True, parents=True)
    with get_db() as conn:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                email TEXT DEFAULT '',
                display_name TEXT DEFAULT '',
                created_at TEXT
            );

            CREATE TABLE IF NOT EXISTS titles (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                tmdb_id INTEGER NOT NULL,
                type TEXT NOT NULL CHECK (type IN ('film', 'series')),
                title TEXT NOT NULL,
                release_year INTEGER,
                genres TEXT,            -- JSON list of catalog genre ids
                poster_url TEXT,
                overview TEXT,
                vote_average REAL,
                review_url TEXT,
                review_rating INTEGER CHECK (review_rating IS NULL OR review_rating BETWEEN 1 AND 5),
                review_excerpt TEXT,
                review_checked_at TEXT,
                created_at TEXT,
                UNIQUE (tmdb_id, type)
            );

            CREATE TABLE IF NOT EXISTS watchlist (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL REFERENCES users(id),
                title_id INTEGER NOT NULL REFERENCES titles(id),
                title_type TEXT NOT NULL,
                added_at TEXT,
                UNIQUE (user_id, title_id)
            );

            CREATE TABLE IF NOT EXISTS watch_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL REFERENCES users(id),
                title_id INTEGER NOT NULL REFERENCES titles(id),
                title_type TEXT NOT NULL,
                rating INTEGER NOT NULL CHECK (rating BETWEEN 1 AND 5),
                notes TEXT,
                watched_at TEXT,
                UNIQUE (user_id, title_id)
            );

            CREATE TABLE IF NOT EXISTS dismissed_recommendations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL REFERENCES users(id),
                title_id INTEGER NOT NULL REFERENCES titles(id),
                tmdb_id INTEGER NOT NULL,
                title_type TEXT NOT NULL,
                dismissed_at TEXT,
                UNIQUE (user_id, title_id)
            );

            CREATE INDEX IF NOT EXISTS idx_watch_history_user ON watch_history(user_id, title_type, watched_at);
            CREATE INDEX IF NOT EXISTS idx_watchlist_user ON watchlist(user_id, title_type);
            CREATE INDEX IF NOT EXISTS idx_dismissed_user ON dismissed_recommendations(user_id, title_type);
        """)


def _get_pool() -> ConnectionPool:
    """Get or create the global connection pool."""
    global _pool
    if _pool is None:
        with _pool_lock:
            if _pool is None:
                DB_PATH.parent.mkdir(exist_ok=True, parents=True)
                _pool = ConnectionPool(DB_PATH)
    return _pool


@contextmanager
def get_db(read_only: bool = False):
    """
    Get database connection with proper transaction handling.

    Args:
        read_only: If True, skip commit on exit (optimization for read operations)

    Handles nested calls correctly:
    - Only the outermost context commits/rollbacks
    - Inner contexts are no-ops for transaction control

    sqlite3 errors are re-raised as PersistenceError; unique-constraint
    violations become DuplicateEntryError.
    """
    pool = _get_pool()
    conn = pool.get_connection()

    is_outermost = pool.get_transaction_depth() == 0
    pool.increment_transaction_depth()

    try:
        yield conn

        if is_outermost and not read_only:
            conn.commit()

    except sqlite3.IntegrityError as exc:
        if is_outermost:
            conn.rollback()
        if "UNIQUE" in str(exc):
            raise DuplicateEntryError(str(exc)) from exc
        raise PersistenceError(str(exc)) from exc

    except sqlite3.Error as exc:
        if is_outermost:
            conn.rollback()
        raise PersistenceError(str(exc)) from exc

    except Exception:
        if is_outermost:
            conn.rollback()
        raise

    finally:
        pool.decrement_transaction_depth()


def close_pool():
    """Close the connection pool. Call on application shutdown."""
    global _pool
    if _pool is not None:
        _pool.close_all()
        _pool = None


def load_json(val):
    """Safely load a JSON list from a db field."""
    if not val:
        return []
    if isinstance(val, list):
        return val
    try:
        return json.loads(val)
    except (json.JSONDecodeError, TypeError) as e:
        logger.warning(f"Failed to parse JSON '{val[:50]}...': {e}")
        return []


def _load_genre_ids(val) -> list[int]:
    ids = []
    for g in load_json(val):
        try:
            ids.append(int(g))
        except (TypeError, ValueError):
            continue
    return ids


def _title_row_to_dict(row) -> dict:
    data = dict(row)
    if 'genres' in data:
        data['genres'] = _load_genre_ids(data['genres'])
    return data


def _validate_rating(rating: int) -> int:
    if not isinstance(rating, int) or isinstance(rating, bool) or not 1 <= rating <= 5:
        raise ValueError(f"Rating must be an integer between 1 and 5, got {rating!r}")
    return rating


# --- users / titles -------------------------------------------------------

def ensure_user(user_id: str, email: str = "", display_name: str = "") -> None:
    """Insert the user row if it does not exist yet; existing rows are left untouched."""
    with get_db() as conn:
        conn.execute("""
            INSERT OR IGNORE INTO users (id, email, display_name, created_at)
            VALUES (?, ?, ?, ?)
        """, (user_id, email, display_name or email, datetime.now().isoformat()))


def upsert_title(
    tmdb_id: int,
    title: str,
    kind: TitleKind | str,
    release_year: int | None = None,
    poster_url: str | None = None,
    overview: str = "",
    genre_ids: list[int] | None = None,
    vote_average: float | None = None,
) -> dict:
    """
    Insert a title keyed by (tmdb_id, kind) and return the stored row.

    An existing title keeps its metadata; only fields that were previously
    missing are filled in.
    """
    kind = TitleKind.parse(kind)
    genres = json.dumps([int(g) for g in genre_ids]) if genre_ids else None

    with get_db() as conn:
        conn.execute("""
            INSERT INTO titles
            (tmdb_id, type, title, release_year, genres, poster_url, overview, vote_average, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (tmdb_id, type) DO UPDATE SET
                release_year = COALESCE(titles.release_year, excluded.release_year),
                genres = COALESCE(titles.genres, excluded.genres),
                poster_url = COALESCE(titles.poster_url, excluded.poster_url),
                overview = COALESCE(NULLIF(titles.overview, ''), excluded.overview),
                vote_average = COALESCE(excluded.vote_average, titles.vote_average)
        """, (tmdb_id, kind.value, title, release_year, genres, poster_url, overview or "",
              vote_average, datetime.now().isoformat()))

        row = conn.execute(
            "SELECT * FROM titles WHERE tmdb_id = ? AND type = ?", (tmdb_id, kind.value)
        ).fetchone()
        return _title_row_to_dict(row)


def get_title(tmdb_id: int, kind: TitleKind | str) -> dict | None:
    kind = TitleKind.parse(kind)
    with get_db(read_only=True) as conn:
        row = conn.execute(
            "SELECT * FROM titles WHERE tmdb_id = ? AND type = ?", (tmdb_id, kind.value)
        ).fetchone()
        return _title_row_to_dict(row) if row else None


# --- watchlist ------------------------------------------------------------

def add_to_watchlist(
    user_id: str,
    tmdb_id: int,
    title: str,
    kind: TitleKind | str,
    release_year: int | None = None,
    poster_url: str | None = None,
    overview: str = "",
    genre_ids: list[int] | None = None,
) -> dict:
    """
    Add a title to the user's watchlist and return the stored title row.

    Raises:
        DuplicateEntryError: the title is already on the watchlist
    """
    kind = TitleKind.parse(kind)
    try:
        with get_db() as conn:
            ensure_user(user_id)
            title_row = upsert_title(tmdb_id, title, kind, release_year, poster_url, overview, genre_ids)
            conn.execute("""
                INSERT INTO watchlist (user_id, title_id, title_type, added_at)
                VALUES (?, ?, ?, ?)
            """, (user_id, title_row['id'], kind.value, datetime.now().isoformat()))
    except DuplicateEntryError:
        raise DuplicateEntryError("Title already in watchlist") from None

    return title_row


def remove_from_watchlist(user_id: str, tmdb_id: int, kind: TitleKind | str) -> bool:
    kind = TitleKind.parse(kind)
    with get_db() as conn:
        cursor = conn.execute("""
            DELETE FROM watchlist
            WHERE user_id = ? AND title_id IN (SELECT id FROM titles WHERE tmdb_id = ? AND type = ?)
        """, (user_id, tmdb_id, kind.value))
        return cursor.rowcount > 0


def get_watchlist(user_id: str, kind: TitleKind | str | None = None, limit: int | None = None) -> list[dict]:
    """Watchlist rows joined with their titles, newest first; watched titles are left out."""
    params: list = [user_id]
    query = """
        SELECT w.title_id, w.title_type, w.added_at,
               t.tmdb_id, t.title, t.type, t.release_year, t.poster_url, t.overview, t.genres,
               t.review_rating, t.review_url
        FROM watchlist w
        JOIN titles t ON t.id = w.title_id
        WHERE w.user_id = ?
          AND NOT EXISTS (
              SELECT 1 FROM watch_history h WHERE h.user_id = w.user_id AND h.title_id = w.title_id
          )
    """
    if kind is not None:
        query += " AND w.title_type = ?"
        params.append(TitleKind.parse(kind).value)
    query += " ORDER BY w.added_at DESC, w.id DESC"
    if limit is not None:
        query += " LIMIT ?"
        params.append(limit)

    with get_db(read_only=True) as conn:
        return [_title_row_to_dict(r) for r in conn.execute(query, params).fetchall()]


def is_in_watchlist(user_id: str, tmdb_id: int, kind: TitleKind | str) -> bool:
    kind = TitleKind.parse(kind)
    with get_db(read_only=True) as conn:
        row = conn.execute("""
            SELECT 1 FROM watchlist w JOIN titles t ON t.id = w.title_id
            WHERE w.user_id = ? AND t.tmdb_id = ? AND t.type = ?
        """, (user_id, tmdb_id, kind.value)).fetchone()
        return row is not None


def get_watchlist_tmdb_ids(user_id: str, kind: TitleKind | str) -> set[int]:
    kind = TitleKind.parse(kind)
    with get_db(read_only=True) as conn:
        return {
            r['tmdb_id'] for r in conn.execute("""
                SELECT t.tmdb_id FROM watchlist w JOIN titles t ON t.id = w.title_id
                WHERE w.user_id = ? AND w.title_type = ?
            """, (user_id, kind.value))
        }


# --- watch history --------------------------------------------------------

def mark_as_watched(
    user_id: str,
    tmdb_id: int,
    title: str,
    kind: TitleKind | str,
    rating: int,
    notes: str | None = None,
    release_year: int | None = None,
    poster_url: str | None = None,
    overview: str = "",
    genre_ids: list[int] | None = None,
    watched_at: datetime | None = None,
) -> dict:
    """
    Record a title as watched with a 1-5 rating.

    Re-marking the same title overwrites rating and notes. Any watchlist entry
    for the title is removed in the same transaction.
    """
    kind = TitleKind.parse(kind)
    _validate_rating(rating)
    watched = (watched_at or datetime.now()).isoformat()

    with get_db() as conn:
        ensure_user(user_id)
        title_row = upsert_title(tmdb_id, title, kind, release_year, poster_url, overview, genre_ids)
        conn.execute(
            "DELETE FROM watchlist WHERE user_id = ? AND title_id = ?",
            (user_id, title_row['id']),
        )
        conn.execute("""
            INSERT INTO watch_history (user_id, title_id, title_type, rating, notes, watched_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT (user_id, title_id) DO UPDATE SET
                rating = excluded.rating,
                notes = excluded.notes
        """, (user_id, title_row['id'], kind.value, rating, notes or None, watched))

    return title_row


def update_watch_history(user_id: str, tmdb_id: int, kind: TitleKind | str, rating: int, notes: str | None = None) -> bool:
    kind = TitleKind.parse(kind)
    _validate_rating(rating)
    with get_db() as conn:
        cursor = conn.execute("""
            UPDATE watch_history SET rating = ?, notes = ?
            WHERE user_id = ? AND title_id IN (SELECT id FROM titles WHERE tmdb_id = ? AND type = ?)
        """, (rating, notes or None, user_id, tmdb_id, kind.value))
        return cursor.rowcount > 0


def remove_from_history(user_id: str, tmdb_id: int, kind: TitleKind | str) -> bool:
    kind = TitleKind.parse(kind)
    with get_db() as conn:
        cursor = conn.execute("""
            DELETE FROM watch_history
            WHERE user_id = ? AND title_id IN (SELECT id FROM titles WHERE tmdb_id = ? AND type = ?)
        """, (user_id, tmdb_id, kind.value))
        return cursor.rowcount > 0


def get_watch_history(
    user_id: str,
    kind: TitleKind | str | None = None,
    min_rating: int | None = None,
    limit: int | None = None,
) -> list[dict]:
    """History rows joined with their titles, most recently watched first."""
    params: list = [user_id]
    query = """
        SELECT h.title_id, h.title_type, h.rating, h.notes, h.watched_at,
               t.tmdb_id, t.title, t.type, t.release_year, t.poster_url, t.overview, t.genres,
               t.review_rating, t.review_url
        FROM watch_history h
        JOIN titles t ON t.id = h.title_id
        WHERE h.user_id = ?
    """
    if kind is not None:
        query += " AND h.title_type = ?"
        params.append(TitleKind.parse(kind).value)
    if min_rating is not None:
        query += " AND h.rating >= ?"
        params.append(min_rating)
    query += " ORDER BY h.watched_at DESC, h.id DESC"
    if limit is not None:
        query += " LIMIT ?"
        params.append(limit)

    with get_db(read_only=True) as conn:
        return [_title_row_to_dict(r) for r in conn.execute(query, params).fetchall()]


def is_watched(user_id: str, tmdb_id: int, kind: TitleKind | str) -> dict:
    kind = TitleKind.parse(kind)
    with get_db(read_only=True) as conn:
        row = conn.execute("""
            SELECT h.rating FROM watch_history h JOIN titles t ON t.id = h.title_id
            WHERE h.user_id = ? AND t.tmdb_id = ? AND t.type = ?
        """, (user_id, tmdb_id, kind.value)).fetchone()
    if row is None:
        return {'watched': False}
    return {'watched': True, 'rating': row['rating']}


def get_history_tmdb_ids(user_id: str, kind: TitleKind | str) -> set[int]:
    kind = TitleKind.parse(kind)
    with get_db(read_only=True) as conn:
        return {
            r['tmdb_id'] for r in conn.execute("""
                SELECT t.tmdb_id FROM watch_history h JOIN titles t ON t.id = h.title_id
                WHERE h.user_id = ? AND h.title_type = ?
            """, (user_id, kind.value))
        }


# --- dismissed recommendations -------------------------------------------

def dismiss_recommendation(
    user_id: str,
    tmdb_id: int,
    title: str,
    kind: TitleKind | str,
    release_year: int | None = None,
    poster_url: str | None = None,
    overview: str = "",
    genre_ids: list[int] | None = None,
) -> dict:
    """
    Hide a title from future recommendations.

    Raises:
        DuplicateEntryError: the title was already dismissed
    """
    kind = TitleKind.parse(kind)
    try:
        with get_db() as conn:
            ensure_user(user_id)
            title_row = upsert_title(tmdb_id, title, kind, release_year, poster_url, overview, genre_ids)
            conn.execute("""
                INSERT INTO dismissed_recommendations (user_id, title_id, tmdb_id, title_type, dismissed_at)
                VALUES (?, ?, ?, ?, ?)
            """, (user_id, title_row['id'], tmdb_id, kind.value, datetime.now().isoformat()))
    except DuplicateEntryError:
        raise DuplicateEntryError("Already dismissed") from None

    return title_row


def undismiss_recommendation(user_id: str, tmdb_id: int, kind: TitleKind | str) -> bool:
    kind = TitleKind.parse(kind)
    with get_db() as conn:
        cursor = conn.execute("""
            DELETE FROM dismissed_recommendations
            WHERE user_id = ? AND tmdb_id = ? AND title_type = ?
        """, (user_id, tmdb_id, kind.value))
        return cursor.rowcount > 0


def get_dismissed_recommendations(
    user_id: str,
    kind: TitleKind | str | None = None,
    limit: int | None = None,
) -> list[dict]:
    params: list = [user_id]
    query = """
        SELECT d.tmdb_id, d.title_type, d.dismissed_at, t.title, t.release_year
        FROM dismissed_recommendations d
        JOIN titles t ON t.id = d.title_id
        WHERE d.user_id = ?
    """
    if kind is not None:
        query += " AND d.title_type = ?"
        params.append(TitleKind.parse(kind).value)
    query += " ORDER BY d.dismissed_at DESC, d.id DESC"
    if limit is not None:
        query += " LIMIT ?"
        params.append(limit)

    with get_db(read_only=True) as conn:
        return [dict(r) for r in conn.execute(query, params).fetchall()]


def get_dismissed_tmdb_ids(user_id: str, kind: TitleKind | str) -> set[int]:
    kind = TitleKind.parse(kind)
    with get_db(read_only=True) as conn:
        return {
            r['tmdb_id'] for r in conn.execute(
                "SELECT tmdb_id FROM dismissed_recommendations WHERE user_id = ? AND title_type = ?",
                (user_id, kind.value),
            )
        }


# --- review cache ---------------------------------------------------------

def get_stored_reviews(tmdb_ids: list[int], kind: TitleKind | str) -> dict[int, ReviewMatch]:
    """Stored review data for the given titles, only where a rating is populated."""
    kind = TitleKind.parse(kind)
    if not tmdb_ids:
        return {}

    placeholders = ",".join("?" * len(tmdb_ids))
    with get_db(read_only=True) as conn:
        rows = conn.execute(f"""
            SELECT tmdb_id, review_url, review_rating, review_excerpt
            FROM titles
            WHERE type = ? AND review_rating IS NOT NULL AND tmdb_id IN ({placeholders})
        """, [kind.value, *tmdb_ids]).fetchall()

    return {
        r['tmdb_id']: ReviewMatch(url=r['review_url'], rating=r['review_rating'], excerpt=r['review_excerpt'])
        for r in rows
    }


def save_title_review(
    tmdb_id: int,
    kind: TitleKind | str,
    review: ReviewMatch,
    title: str | None = None,
    release_year: int | None = None,
    poster_url: str | None = None,
    overview: str = "",
    genre_ids: list[int] | None = None,
    vote_average: float | None = None,
) -> None:
    """
    Attach review data to a title, creating the title when it is new.

    Idempotent per (tmdb_id, kind): concurrent writers simply overwrite each
    other with the same review.
    """
    kind = TitleKind.parse(kind)
    with get_db() as conn:
        if title is not None:
            upsert_title(tmdb_id, title, kind, release_year, poster_url, overview, genre_ids, vote_average)
        conn.execute("""
            UPDATE titles
            SET review_url = ?, review_rating = ?, review_excerpt = ?, review_checked_at = ?
            WHERE tmdb_id = ? AND type = ?
        """, (review.url, review.rating, review.excerpt, datetime.now().isoformat(), tmdb_id, kind.value))


def clear_review_data(kind: TitleKind | str | None = None) -> int:
    """Reset cached review fields so they are fetched again; returns titles affected."""
    query = """
        UPDATE titles
        SET review_url = NULL, review_rating = NULL, review_excerpt = NULL, review_checked_at = NULL
        WHERE (review_url IS NOT NULL OR review_rating IS NOT NULL OR review_checked_at IS NOT NULL)
    """
    params: list = []
    if kind is not None:
        query += " AND type = ?"
        params.append(TitleKind.parse(kind).value)

    with get_db() as conn:
        return conn.execute(query, params).rowcount


def get_titles_with_reviews(kind: TitleKind | str | None = None) -> list[dict]:
    params: list = []
    query = """
        SELECT tmdb_id, title, type, release_year, review_rating, review_url
        FROM titles WHERE review_rating IS NOT NULL
    """
    if kind is not None:
        query += " AND type = ?"
        params.append(TitleKind.parse(kind).value)
    query += " ORDER BY title"

    with get_db(read_only=True) as conn:
        return [dict(r) for r in conn.execute(query, params).fetchall()]


def needs_review_refresh(last_checked: str | None, max_age_days: int = 30, now: datetime | None = None) -> bool:
    """True when review data was never checked or is older than max_age_days."""
    if not last_checked:
        return True
    try:
        checked = parse_timestamp_naive(last_checked)
    except ValueError:
        return True
    return checked < (now or datetime.now()) - timedelta(days=max_age_days)


def get_titles_needing_review(
    kind: TitleKind | str | None = None,
    max_age_days: int = 30,
    limit: int | None = None,
    force: bool = False,
) -> list[dict]:
    """
    Titles without a stored review rating whose last check is missing or stale.

    With force, the last-checked timestamp is ignored and every unrated title
    is returned.
    """
    params: list = []
    query = "SELECT * FROM titles WHERE review_rating IS NULL"
    if kind is not None:
        query += " AND type = ?"
        params.append(TitleKind.parse(kind).value)
    query += " ORDER BY review_checked_at IS NOT NULL, review_checked_at"

    with get_db(read_only=True) as conn:
        rows = [_title_row_to_dict(r) for r in conn.execute(query, params).fetchall()]

    if force:
        stale = rows
    else:
        stale = [r for r in rows if needs_review_refresh(r['review_checked_at'], max_age_days)]
    return stale[:limit] if limit is not None else stale
