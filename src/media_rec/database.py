import sqlite3
import json
import logging
import threading
import time
from contextlib import contextmanager
from datetime import datetime

import numpy as np

from .config import DB_PATH, STORED_CANDIDATE_LIMIT, DISLIKE_BEHAVIORS
from .utils import StoreError

logger = logging.getLogger(__name__)


def parse_timestamp_naive(timestamp_str: str) -> datetime:
    """
    Parse ISO format timestamp string to naive datetime.

    Watch timestamps come from the media server with or without an offset;
    comparisons inside the recommender always use naive datetimes.
    """
    if timestamp_str.endswith('Z'):
        timestamp_str = timestamp_str[:-1] + '+00:00'
    dt = datetime.fromisoformat(timestamp_str)
    return dt.replace(tzinfo=None) if dt.tzinfo else dt


class ConnectionPool:
    """
    Thread-safe SQLite connection pool with health checks and automatic cleanup.

    One connection per thread (SQLite threading requirement). The async
    pipeline reaches the store through ``asyncio.to_thread``, so worker
    threads come and go; their connections are reaped periodically.
    """

    def __init__(self, db_path, max_size: int = 50, health_check_interval: int = 300):
        self._db_path = db_path
        self._max_size = max_size
        self._health_check_interval = health_check_interval

        self._lock = threading.Lock()
        self._connections: dict[int, sqlite3.Connection] = {}
        self._last_health_check: dict[int, float] = {}
        self._transaction_depth: dict[int, int] = {}
        self._last_cleanup = time.time()
        self._cleanup_interval = 60

    def _create_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row

        conn.execute("PRAGMA busy_timeout = 5000")
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = NORMAL")

        return conn

    def _health_check(self, conn: sqlite3.Connection) -> bool:
        try:
            conn.execute("SELECT 1").fetchone()
            return True
        except sqlite3.Error:
            return False

    def _maybe_cleanup(self):
        """Close connections owned by threads that no longer exist."""
        now = time.time()
        if now - self._last_cleanup < self._cleanup_interval:
            return

        self._last_cleanup = now
        alive_threads = {t.ident for t in threading.enumerate()}
        dead_threads = set(self._connections.keys()) - alive_threads

        for thread_id in dead_threads:
            conn = self._connections.pop(thread_id, None)
            self._last_health_check.pop(thread_id, None)
            self._transaction_depth.pop(thread_id, None)
            if conn:
                try:
                    conn.close()
                except sqlite3.Error as e:
                    logger.warning(f"Error closing connection for thread {thread_id}: {e}")

        if dead_threads:
            logger.debug(f"Connection pool cleanup: removed {len(dead_threads)}, {len(self._connections)} remaining")

    def get_connection(self) -> sqlite3.Connection:
        """Get a connection for the current thread, creating if necessary."""
        thread_id = threading.get_ident()
        now = time.time()

        with self._lock:
            self._maybe_cleanup()
            conn = self._connections.get(thread_id)

            if conn is not None and now - self._last_health_check.get(thread_id, 0) > self._health_check_interval:
                if self._health_check(conn):
                    self._last_health_check[thread_id] = now
                else:
                    logger.warning(f"Connection for thread {thread_id} failed health check, replacing")
                    conn = None

            if conn is None:
                if len(self._connections) >= self._max_size:
                    self._last_cleanup = 0
                    self._maybe_cleanup()
                    if len(self._connections) >= self._max_size:
                        raise StoreError(f"Connection pool exhausted ({self._max_size} connections)")

                try:
                    conn = self._create_connection()
                except sqlite3.Error as e:
                    raise StoreError(f"Cannot open database {self._db_path}: {e}") from e
                self._connections[thread_id] = conn
                self._last_health_check[thread_id] = now
                self._transaction_depth[thread_id] = 0

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
            depth = self._transaction_depth.get(thread_id, 1)
            self._transaction_depth[thread_id] = max(0, depth - 1)

    def close_all(self):
        """Close all connections (call on application shutdown)."""
        with self._lock:
            for thread_id, conn in list(self._connections.items()):
                try:
                    conn.close()
                except sqlite3.Error as e:
                    logger.warning(f"Error closing connection for thread {thread_id}: {e}")
            self._connections.clear()
            self._last_health_check.clear()
            self._transaction_depth.clear()

    def stats(self) -> dict:
        with self._lock:
            return {
                'active_connections': len(self._connections),
                'max_size': self._max_size,
            }


_pool: ConnectionPool | None = None
_pool_lock = threading.Lock()


def init_db() -> None:
    DB_PATH.parent.mkdir(exist_ok=True, parents=True)
    with get_db() as conn:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS items (
                id TEXT PRIMARY KEY,
                type TEXT NOT NULL DEFAULT 'movie',   -- movie | series
                title TEXT NOT NULL,
                year INTEGER,
                overview TEXT,
                genres TEXT,            -- JSON list
                directors TEXT,         -- JSON list
                actors TEXT,            -- JSON list of strings or {name, role, thumb}
                studios TEXT,           -- JSON list of strings or {name}
                keywords TEXT,          -- JSON list
                collection_name TEXT,
                network TEXT,
                community_rating REAL,
                content_rating TEXT
            );

            CREATE TABLE IF NOT EXISTS item_embeddings (
                item_id TEXT PRIMARY KEY,
                model TEXT NOT NULL,
                dims INTEGER NOT NULL,
                vector BLOB NOT NULL,   -- float32
                updated_at TEXT
            );

            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                name TEXT,
                max_content_rating TEXT,
                created_at TEXT
            );

            CREATE TABLE IF NOT EXISTS watch_history (
                user_id TEXT NOT NULL,
                item_id TEXT NOT NULL,
                play_count INTEGER DEFAULT 1,
                last_played_at TEXT,
                is_favorite INTEGER DEFAULT 0,
                PRIMARY KEY (user_id, item_id)
            );

            CREATE TABLE IF NOT EXISTS user_ratings (
                user_id TEXT NOT NULL,
                item_id TEXT NOT NULL,
                rating REAL NOT NULL,   -- 1-10
                rated_at TEXT,
                PRIMARY KEY (user_id, item_id)
            );

            CREATE TABLE IF NOT EXISTS disliked_items (
                user_id TEXT NOT NULL,
                item_id TEXT NOT NULL,
                created_at TEXT,
                PRIMARY KEY (user_id, item_id)
            );

            CREATE TABLE IF NOT EXISTS user_preferences (
                user_id TEXT PRIMARY KEY,
                full_franchise_mode INTEGER DEFAULT 0,
                hide_watched INTEGER DEFAULT 0,
                include_watched INTEGER DEFAULT 0,
                dislike_behavior TEXT DEFAULT 'exclude',
                updated_at TEXT
            );

            CREATE TABLE IF NOT EXISTS user_taste_profiles (
                user_id TEXT NOT NULL,
                media_type TEXT NOT NULL,
                vector BLOB NOT NULL,
                source_count INTEGER NOT NULL,
                updated_at TEXT,
                PRIMARY KEY (user_id, media_type)
            );

            CREATE TABLE IF NOT EXISTS recommendation_runs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                media_type TEXT NOT NULL DEFAULT 'movie',
                started_at TEXT NOT NULL,
                completed_at TEXT,
                candidate_count INTEGER DEFAULT 0,
                selected_count INTEGER DEFAULT 0,
                duration_ms INTEGER,
                status TEXT NOT NULL DEFAULT 'running',
                error_message TEXT
            );

            CREATE TABLE IF NOT EXISTS recommendation_candidates (
                run_id INTEGER NOT NULL,
                item_id TEXT NOT NULL,
                rank INTEGER NOT NULL,
                is_selected INTEGER DEFAULT 0,
                selected_rank INTEGER,
                raw_similarity REAL,
                similarity REAL,
                novelty REAL,
                rating_score REAL,
                diversity REAL,
                final_score REAL,
                explanation TEXT,
                PRIMARY KEY (run_id, item_id)
            );

            CREATE TABLE IF NOT EXISTS recommendation_evidence (
                run_id INTEGER NOT NULL,
                item_id TEXT NOT NULL,
                watched_item_id TEXT NOT NULL,
                similarity REAL,
                evidence_type TEXT NOT NULL,   -- favorite | highly_rated | watched
                PRIMARY KEY (run_id, item_id, watched_item_id)
            );

            CREATE TABLE IF NOT EXISTS similarity_validation_cache (
                pair_key TEXT PRIMARY KEY,     -- sorted "a|b"
                source_type TEXT,
                target_type TEXT,
                is_valid INTEGER NOT NULL,
                reason TEXT,
                created_at TEXT
            );

            CREATE TABLE IF NOT EXISTS recommendation_config (
                media_type TEXT PRIMARY KEY,
                config TEXT NOT NULL,          -- JSON
                updated_at TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_items_type ON items(type);
            CREATE INDEX IF NOT EXISTS idx_items_collection ON items(collection_name);
            CREATE INDEX IF NOT EXISTS idx_watch_user ON watch_history(user_id);
            CREATE INDEX IF NOT EXISTS idx_runs_user ON recommendation_runs(user_id, media_type, started_at);
            CREATE INDEX IF NOT EXISTS idx_candidates_selected ON recommendation_candidates(run_id, is_selected);
        """)


def _get_pool() -> ConnectionPool:
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
        read_only: If True, skip commit on exit

    Only the outermost context commits or rolls back; nested contexts
    join the enclosing transaction. sqlite3 errors surface as StoreError.
    """
    pool = _get_pool()
    conn = pool.get_connection()

    is_outermost = pool.get_transaction_depth() == 0
    pool.increment_transaction_depth()

    try:
        yield conn
        if is_outermost and not read_only:
            conn.commit()
    except sqlite3.Error as e:
        if is_outermost:
            conn.rollback()
        raise StoreError(str(e)) from e
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
    """Safely load JSON from db field."""
    if not val:
        return []
    if isinstance(val, list):
        return val
    try:
        return json.loads(val)
    except (json.JSONDecodeError, TypeError) as e:
        logger.warning(f"Failed to parse JSON '{str(val)[:50]}...': {e}")
        return []


def vector_to_blob(vector) -> bytes:
    return np.asarray(vector, dtype=np.float32).tobytes()


def blob_to_vector(blob: bytes) -> np.ndarray:
    return np.frombuffer(blob, dtype=np.float32).astype(np.float64)


# Library items ---------------------------------------------------------

_ITEM_JSON_FIELDS = ('genres', 'directors', 'actors', 'studios', 'keywords')


def _item_from_row(row) -> dict:
    item = dict(row)
    for key in _ITEM_JSON_FIELDS:
        item[key] = load_json(item.get(key))
    return item


def upsert_items(items: list[dict]) -> int:
    """Insert or replace library items. JSON list fields may be given as lists."""
    rows = []
    for item in items:
        rows.append((
            item['id'],
            item.get('type', 'movie'),
            item['title'],
            item.get('year'),
            item.get('overview'),
            *(json.dumps(item.get(key) or []) for key in _ITEM_JSON_FIELDS),
            item.get('collection_name'),
            item.get('network'),
            item.get('community_rating'),
            item.get('content_rating'),
        ))
    with get_db() as conn:
        conn.executemany("""
            INSERT OR REPLACE INTO items (
                id, type, title, year, overview,
                genres, directors, actors, studios, keywords,
                collection_name, network, community_rating, content_rating
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, rows)
    return len(rows)


def load_item(item_id: str) -> dict | None:
    with get_db(read_only=True) as conn:
        row = conn.execute("SELECT * FROM items WHERE id = ?", (item_id,)).fetchone()
        return _item_from_row(row) if row else None


def load_items(item_ids) -> dict[str, dict]:
    """Load many items keyed by id; unknown ids are silently absent."""
    ids = list(dict.fromkeys(item_ids))
    result: dict[str, dict] = {}
    CHUNK_SIZE = 900
    with get_db(read_only=True) as conn:
        for i in range(0, len(ids), CHUNK_SIZE):
            chunk = ids[i:i + CHUNK_SIZE]
            placeholders = ','.join('?' * len(chunk))
            for row in conn.execute(f"SELECT * FROM items WHERE id IN ({placeholders})", chunk):
                result[row['id']] = _item_from_row(row)
    return result


def load_item_titles(item_type: str | None = None) -> list[dict]:
    """Lightweight (id, title, year, collection) listing used for fuzzy title matching."""
    query = "SELECT id, title, year, type, collection_name FROM items"
    params: tuple = ()
    if item_type:
        query += " WHERE type = ?"
        params = (item_type,)
    with get_db(read_only=True) as conn:
        return [dict(r) for r in conn.execute(query, params)]


def count_collection_members(collection_name: str) -> int:
    with get_db(read_only=True) as conn:
        row = conn.execute(
            "SELECT COUNT(*) FROM items WHERE collection_name = ?", (collection_name,)
        ).fetchone()
        return row[0]


# Embeddings ------------------------------------------------------------

def save_embeddings(vectors: dict[str, list[float]], model: str) -> int:
    now = datetime.now().isoformat()
    rows = [
        (item_id, model, len(vec), vector_to_blob(vec), now)
        for item_id, vec in vectors.items()
    ]
    with get_db() as conn:
        conn.executemany("""
            INSERT OR REPLACE INTO item_embeddings (item_id, model, dims, vector, updated_at)
            VALUES (?, ?, ?, ?, ?)
        """, rows)
    return len(rows)


def load_embedding_rows(item_type: str | None = None) -> list[dict]:
    """All stored embeddings with the item's content rating, for the vector index."""
    query = """
        SELECT e.item_id, e.vector, i.type, i.content_rating
        FROM item_embeddings e
        JOIN items i ON i.id = e.item_id
    """
    params: tuple = ()
    if item_type:
        query += " WHERE i.type = ?"
        params = (item_type,)
    with get_db(read_only=True) as conn:
        return [
            {
                'item_id': r['item_id'],
                'vector': blob_to_vector(r['vector']),
                'type': r['type'],
                'content_rating': r['content_rating'],
            }
            for r in conn.execute(query, params)
        ]


def load_items_missing_embeddings(limit: int | None = None) -> list[dict]:
    query = """
        SELECT i.* FROM items i
        LEFT JOIN item_embeddings e ON e.item_id = i.id
        WHERE e.item_id IS NULL
        ORDER BY i.id
    """
    params: tuple = ()
    if limit:
        query += " LIMIT ?"
        params = (limit,)
    with get_db(read_only=True) as conn:
        return [_item_from_row(r) for r in conn.execute(query, params)]


# Users and history -----------------------------------------------------

def upsert_user(user_id: str, name: str | None = None, max_content_rating: str | None = None) -> None:
    with get_db() as conn:
        conn.execute("""
            INSERT INTO users (id, name, max_content_rating, created_at) VALUES (?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                name = COALESCE(excluded.name, users.name),
                max_content_rating = excluded.max_content_rating
        """, (user_id, name, max_content_rating, datetime.now().isoformat()))


def load_user(user_id: str) -> dict | None:
    with get_db(read_only=True) as conn:
        row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        return dict(row) if row else None


def list_user_ids() -> list[str]:
    with get_db(read_only=True) as conn:
        return [r['id'] for r in conn.execute("SELECT id FROM users ORDER BY id")]


def record_watch(
    user_id: str,
    item_id: str,
    play_count: int = 1,
    last_played_at: str | None = None,
    is_favorite: bool = False,
) -> None:
    # Stored naive so string ordering matches time ordering
    played_at = parse_timestamp_naive(last_played_at).isoformat() if last_played_at else datetime.now().isoformat()
    with get_db() as conn:
        conn.execute("""
            INSERT OR REPLACE INTO watch_history (user_id, item_id, play_count, last_played_at, is_favorite)
            VALUES (?, ?, ?, ?, ?)
        """, (user_id, item_id, play_count, played_at, int(is_favorite)))


def load_watch_history(user_id: str, media_type: str | None = None, limit: int | None = None) -> list[dict]:
    """
    Recent watch history for a user.

    Ordered favorites first, then by play count, then by recency, which is
    the order the taste profile's position weighting expects.
    """
    query = """
        SELECT w.item_id, w.play_count, w.last_played_at, w.is_favorite,
               i.community_rating, i.genres
        FROM watch_history w
        JOIN items i ON i.id = w.item_id
        WHERE w.user_id = ?
    """
    params: list = [user_id]
    if media_type:
        query += " AND i.type = ?"
        params.append(media_type)
    query += " ORDER BY w.is_favorite DESC, w.play_count DESC, w.last_played_at DESC, w.item_id"
    if limit:
        query += " LIMIT ?"
        params.append(limit)
    with get_db(read_only=True) as conn:
        rows = []
        for r in conn.execute(query, params):
            row = dict(r)
            row['genres'] = load_json(row['genres'])
            row['is_favorite'] = bool(row['is_favorite'])
            rows.append(row)
        return rows


def set_user_rating(user_id: str, item_id: str, rating: float) -> None:
    if not 1 <= rating <= 10:
        raise ValueError("rating must be between 1 and 10")
    with get_db() as conn:
        conn.execute("""
            INSERT OR REPLACE INTO user_ratings (user_id, item_id, rating, rated_at)
            VALUES (?, ?, ?, ?)
        """, (user_id, item_id, rating, datetime.now().isoformat()))


def load_user_ratings(user_id: str) -> dict[str, float]:
    with get_db(read_only=True) as conn:
        return {
            r['item_id']: r['rating']
            for r in conn.execute("SELECT item_id, rating FROM user_ratings WHERE user_id = ?", (user_id,))
        }


def add_dislike(user_id: str, item_id: str) -> None:
    with get_db() as conn:
        conn.execute(
            "INSERT OR IGNORE INTO disliked_items (user_id, item_id, created_at) VALUES (?, ?, ?)",
            (user_id, item_id, datetime.now().isoformat()),
        )


def load_exclusion_ids(user_id: str, include_watched: bool = False, exclude_disliked: bool = True) -> set[str]:
    """
    Ids to keep out of the candidate pool: watched items unless
    ``include_watched``, plus disliked items when ``exclude_disliked``.
    """
    queries = []
    if not include_watched:
        queries.append("SELECT item_id FROM watch_history WHERE user_id = ?")
    if exclude_disliked:
        queries.append("SELECT item_id FROM disliked_items WHERE user_id = ?")
    if not queries:
        return set()
    with get_db(read_only=True) as conn:
        rows = conn.execute(" UNION ".join(queries), (user_id,) * len(queries)).fetchall()
        return {r['item_id'] for r in rows}


def load_watched_ids(user_id: str) -> set[str]:
    with get_db(read_only=True) as conn:
        return {
            r['item_id']
            for r in conn.execute("SELECT item_id FROM watch_history WHERE user_id = ?", (user_id,))
        }


def load_user_preferences(user_id: str) -> dict:
    with get_db(read_only=True) as conn:
        row = conn.execute("""
            SELECT full_franchise_mode, hide_watched, include_watched,
                   COALESCE(dislike_behavior, 'exclude') AS dislike_behavior
            FROM user_preferences WHERE user_id = ?
        """, (user_id,)).fetchone()
    if not row:
        return {
            'full_franchise_mode': False,
            'hide_watched': False,
            'include_watched': False,
            'dislike_behavior': 'exclude',
        }
    return {
        'full_franchise_mode': bool(row['full_franchise_mode']),
        'hide_watched': bool(row['hide_watched']),
        'include_watched': bool(row['include_watched']),
        'dislike_behavior': row['dislike_behavior'],
    }


def save_user_preferences(
    user_id: str,
    full_franchise_mode: bool = False,
    hide_watched: bool = False,
    include_watched: bool = False,
    dislike_behavior: str = 'exclude',
) -> None:
    if dislike_behavior not in DISLIKE_BEHAVIORS:
        raise ValueError(f"dislike_behavior must be one of {DISLIKE_BEHAVIORS}")
    with get_db() as conn:
        conn.execute("""
            INSERT OR REPLACE INTO user_preferences
                (user_id, full_franchise_mode, hide_watched, include_watched, dislike_behavior, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
        """, (
            user_id, int(full_franchise_mode), int(hide_watched), int(include_watched),
            dislike_behavior, datetime.now().isoformat(),
        ))


def save_taste_profile(user_id: str, media_type: str, vector, source_count: int) -> None:
    with get_db() as conn:
        conn.execute("""
            INSERT OR REPLACE INTO user_taste_profiles (user_id, media_type, vector, source_count, updated_at)
            VALUES (?, ?, ?, ?, ?)
        """, (user_id, media_type, vector_to_blob(vector), source_count, datetime.now().isoformat()))


def load_taste_profile(user_id: str, media_type: str) -> dict | None:
    with get_db(read_only=True) as conn:
        row = conn.execute(
            "SELECT vector, source_count, updated_at FROM user_taste_profiles WHERE user_id = ? AND media_type = ?",
            (user_id, media_type),
        ).fetchone()
    if not row:
        return None
    return {
        'vector': blob_to_vector(row['vector']),
        'source_count': row['source_count'],
        'updated_at': row['updated_at'],
    }


# Recommendation runs ---------------------------------------------------

def create_run(user_id: str, media_type: str = "movie") -> int:
    """Create a run record in the 'running' state and return its id."""
    with get_db() as conn:
        cursor = conn.execute("""
            INSERT INTO recommendation_runs (user_id, media_type, started_at, status)
            VALUES (?, ?, ?, 'running')
        """, (user_id, media_type, datetime.now().isoformat()))
        return cursor.lastrowid


def finalize_run(
    run_id: int,
    status: str,
    candidate_count: int = 0,
    selected_count: int = 0,
    duration_ms: int | None = None,
    error_message: str | None = None,
) -> bool:
    """
    Move a run to a terminal state.

    Only a run still marked 'running' is updated, so a run is finalized at
    most once. Returns True if this call performed the transition.
    """
    if status not in ("completed", "failed"):
        raise ValueError(f"Invalid terminal status '{status}'")
    with get_db() as conn:
        cursor = conn.execute("""
            UPDATE recommendation_runs
            SET status = ?, candidate_count = ?, selected_count = ?, duration_ms = ?,
                error_message = ?, completed_at = ?
            WHERE id = ? AND status = 'running'
        """, (status, candidate_count, selected_count, duration_ms, error_message,
              datetime.now().isoformat(), run_id))
        return cursor.rowcount == 1


def load_run(run_id: int) -> dict | None:
    with get_db(read_only=True) as conn:
        row = conn.execute("SELECT * FROM recommendation_runs WHERE id = ?", (run_id,)).fetchone()
        return dict(row) if row else None


def load_latest_run(user_id: str, media_type: str = "movie", status: str | None = "completed") -> dict | None:
    query = "SELECT * FROM recommendation_runs WHERE user_id = ? AND media_type = ?"
    params: list = [user_id, media_type]
    if status:
        query += " AND status = ?"
        params.append(status)
    query += " ORDER BY started_at DESC, id DESC LIMIT 1"
    with get_db(read_only=True) as conn:
        row = conn.execute(query, params).fetchone()
        return dict(row) if row else None


def save_run_results(run_id: int, candidates: list[dict], evidence: list[dict]) -> None:
    """
    Persist ranked candidates and evidence for a run in one transaction.

    Keeps the top STORED_CANDIDATE_LIMIT candidates by rank plus every
    selected candidate beyond that cut.
    """
    kept = [
        c for c in candidates
        if c['rank'] <= STORED_CANDIDATE_LIMIT or c.get('is_selected')
    ]
    with get_db() as conn:
        conn.executemany("""
            INSERT OR REPLACE INTO recommendation_candidates (
                run_id, item_id, rank, is_selected, selected_rank, raw_similarity,
                similarity, novelty, rating_score, diversity, final_score
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, [
            (run_id, c['item_id'], c['rank'], int(bool(c.get('is_selected'))), c.get('selected_rank'),
             c.get('raw_similarity'), c.get('similarity'), c.get('novelty'), c.get('rating_score'),
             c.get('diversity'), c.get('final_score'))
            for c in kept
        ])
        conn.executemany("""
            INSERT OR REPLACE INTO recommendation_evidence (run_id, item_id, watched_item_id, similarity, evidence_type)
            VALUES (?, ?, ?, ?, ?)
        """, [
            (run_id, e['item_id'], e['watched_item_id'], e['similarity'], e['evidence_type'])
            for e in evidence
        ])


def save_explanations(run_id: int, explanations: dict[str, str]) -> int:
    with get_db() as conn:
        conn.executemany(
            "UPDATE recommendation_candidates SET explanation = ? WHERE run_id = ? AND item_id = ?",
            [(text, run_id, item_id) for item_id, text in explanations.items()],
        )
    return len(explanations)


def load_run_recommendations(run_id: int, selected_only: bool = True) -> list[dict]:
    """Ranked recommendations for a run, each with its evidence list."""
    query = """
        SELECT c.*, i.title, i.year, i.type, i.genres
        FROM recommendation_candidates c
        JOIN items i ON i.id = c.item_id
        WHERE c.run_id = ?
    """
    if selected_only:
        query += " AND c.is_selected = 1 ORDER BY c.selected_rank"
    else:
        query += " ORDER BY c.rank"
    with get_db(read_only=True) as conn:
        recs = []
        for r in conn.execute(query, (run_id,)):
            rec = dict(r)
            rec['genres'] = load_json(rec['genres'])
            rec['is_selected'] = bool(rec['is_selected'])
            recs.append(rec)
        by_item = {rec['item_id']: rec for rec in recs}
        for rec in recs:
            rec['evidence'] = []
        for e in conn.execute("""
            SELECT item_id, watched_item_id, similarity, evidence_type
            FROM recommendation_evidence WHERE run_id = ?
            ORDER BY item_id, similarity DESC
        """, (run_id,)):
            if e['item_id'] in by_item:
                by_item[e['item_id']]['evidence'].append(dict(e))
        return recs


def clear_user_recommendations(user_id: str, media_type: str | None = None) -> int:
    """Delete a user's runs with their candidates and evidence, plus the stored taste profile."""
    with get_db() as conn:
        run_params: list = [user_id]
        type_clause = ""
        if media_type:
            type_clause = " AND media_type = ?"
            run_params.append(media_type)
        run_ids = [
            r['id'] for r in conn.execute(
                f"SELECT id FROM recommendation_runs WHERE user_id = ?{type_clause}", run_params
            )
        ]
        if run_ids:
            placeholders = ','.join('?' * len(run_ids))
            conn.execute(f"DELETE FROM recommendation_evidence WHERE run_id IN ({placeholders})", run_ids)
            conn.execute(f"DELETE FROM recommendation_candidates WHERE run_id IN ({placeholders})", run_ids)
            conn.execute(f"DELETE FROM recommendation_runs WHERE id IN ({placeholders})", run_ids)
        conn.execute(f"DELETE FROM user_taste_profiles WHERE user_id = ?{type_clause}", run_params)
        return len(run_ids)


# Validation cache ------------------------------------------------------

def get_validation(pair_key: str) -> dict | None:
    with get_db(read_only=True) as conn:
        row = conn.execute(
            "SELECT pair_key, source_type, target_type, is_valid, reason, created_at "
            "FROM similarity_validation_cache WHERE pair_key = ?",
            (pair_key,),
        ).fetchone()
    if not row:
        return None
    entry = dict(row)
    entry['is_valid'] = bool(entry['is_valid'])
    return entry


def put_validation(pair_key: str, source_type: str, target_type: str, is_valid: bool, reason: str) -> None:
    """Idempotent upsert; concurrent writers for the same pair are fine (last write wins)."""
    with get_db() as conn:
        conn.execute("""
            INSERT INTO similarity_validation_cache (pair_key, source_type, target_type, is_valid, reason, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(pair_key) DO UPDATE SET
                is_valid = excluded.is_valid,
                reason = excluded.reason,
                created_at = excluded.created_at
        """, (pair_key, source_type, target_type, int(is_valid), reason, datetime.now().isoformat()))


def validation_cache_stats() -> dict:
    with get_db(read_only=True) as conn:
        row = conn.execute("""
            SELECT COUNT(*) AS total,
                   COALESCE(SUM(CASE WHEN is_valid = 1 THEN 1 ELSE 0 END), 0) AS valid
            FROM similarity_validation_cache
        """).fetchone()
    return {'total': row['total'], 'valid': row['valid'], 'invalid': row['total'] - row['valid']}


# Stored pipeline config ------------------------------------------------

def load_recommendation_config(media_type: str) -> dict | None:
    with get_db(read_only=True) as conn:
        row = conn.execute(
            "SELECT config FROM recommendation_config WHERE media_type = ?", (media_type,)
        ).fetchone()
    if not row:
        return None
    try:
        payload = json.loads(row['config'])
    except json.JSONDecodeError as e:
        logger.warning(f"Stored {media_type} recommendation config is not valid JSON: {e}")
        return None
    return payload if isinstance(payload, dict) else None


def save_recommendation_config(media_type: str, config: dict) -> None:
    with get_db() as conn:
        conn.execute("""
            INSERT OR REPLACE INTO recommendation_config (media_type, config, updated_at)
            VALUES (?, ?, ?)
        """, (media_type, json.dumps(config, sort_keys=True), datetime.now().isoformat()))
