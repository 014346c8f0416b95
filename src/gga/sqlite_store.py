"""
GGA SQLite Store -- review history, embeddings and the association graph.

One SQLite database holds everything the engine consumes:

    reviews        one row per completed review (+ packed float32 embedding)
    reviews_fts    FTS5 index over files/result/diff, kept in sync by triggers
    concepts       concept ids with frequency and last-seen
    associations   canonical (concept_a < concept_b) weighted edges per context

Usage:
    store = ReviewStore(db_path)
    review_id = store.save_review(project="api", files="auth.ts", result="...", status="FAILED")
    hits = store.text_search("authentication", limit=10)
"""

import functools
import hashlib
import logging
import os
import re
import sqlite3
import stat
import struct
import threading
import time as _time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, NamedTuple, Optional, Sequence, Tuple

from gga.exceptions import MalformedInputError, StorageError

logger = logging.getLogger("gga.sqlite_store")

SCHEMA_VERSION = 2

REVIEW_STATUSES = ("PASSED", "FAILED", "ERROR", "UNKNOWN")

DEFAULT_CONTEXT = "review"

# ---------------------------------------------------------------------------
# SQLite retry -- a learning event racing a decay pass (or a second process
# on the same gga.db) can outlast busy_timeout. Retry with exponential backoff
# before surfacing the error.
# ---------------------------------------------------------------------------
_DB_RETRY_ATTEMPTS = 3
_DB_RETRY_BASE_DELAY = 0.5  # seconds


def _retry_on_locked(fn, *args, **kwargs):
    """Call fn with retry on 'database is locked' OperationalError."""
    for attempt in range(_DB_RETRY_ATTEMPTS):
        try:
            return fn(*args, **kwargs)
        except sqlite3.OperationalError as e:
            if "database is locked" in str(e) and attempt < _DB_RETRY_ATTEMPTS - 1:
                delay = _DB_RETRY_BASE_DELAY * (2 ** attempt)
                logger.warning("database is locked (attempt %d/%d), retrying in %.1fs",
                               attempt + 1, _DB_RETRY_ATTEMPTS, delay)
                _time.sleep(delay)
            else:
                raise


def _storage_errors(fn):
    """Translate sqlite3 failures into StorageError for callers."""

    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except sqlite3.Error as e:
            raise StorageError(f"{fn.__name__} failed: {e}") from e

    return wrapper


def secure_connect(db_path, **kwargs) -> sqlite3.Connection:
    """Open a SQLite connection on a file readable by the owner only (0o600)."""
    path_obj = Path(db_path)
    path_obj.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
    db_path_str = str(path_obj)

    if not path_obj.exists():
        # Pre-create with restricted permissions (no TOCTOU window)
        fd = os.open(db_path_str, os.O_CREAT | os.O_WRONLY, 0o600)
        os.close(fd)
    else:
        current_mode = path_obj.stat().st_mode
        if current_mode & (stat.S_IRWXG | stat.S_IRWXO):
            os.chmod(db_path_str, 0o600)

    return sqlite3.connect(db_path_str, **kwargs)


def _serialize_f32(vector: Sequence[float]) -> bytes:
    """Pack a float list into bytes for BLOB storage."""
    return struct.pack(f"{len(vector)}f", *vector)


def _deserialize_f32(data: bytes) -> List[float]:
    """Unpack a BLOB into a float list; dimension follows from the length."""
    dim = len(data) // 4
    return list(struct.unpack(f"{dim}f", data[: dim * 4]))


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse ISO or SQLite ``datetime('now')`` strings as UTC-aware datetimes."""
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (ValueError, TypeError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def canonical_pair(concept_a: str, concept_b: str) -> Tuple[str, str]:
    """Order a pair so (a, b) and (b, a) address the same row."""
    return (concept_a, concept_b) if concept_a <= concept_b else (concept_b, concept_a)


_WORD_RE = re.compile(r"\w+")


# ---------------------------------------------------------------------------
# Row types
# ---------------------------------------------------------------------------


class LexicalHit(NamedTuple):
    """One full-text match. ``rank`` is bm25: more negative is better."""

    id: int
    status: str
    project: str
    rank: float
    snippet: str


class EmbeddedItem(NamedTuple):
    id: int
    status: str
    project: str
    vector: List[float]


class ReviewRecord:
    """A stored review as consumed by retrieval and context assembly."""

    __slots__ = (
        "id",
        "created_at",
        "project",
        "project_path",
        "status",
        "files",
        "diff",
        "result",
        "provider",
        "model",
        "git_branch",
        "git_commit",
        "duration_ms",
        "has_embedding",
    )

    def __init__(
        self,
        id: int,
        created_at: Optional[datetime],
        project: str,
        status: str,
        files: str,
        result: str,
        diff: str = "",
        project_path: str = "",
        provider: str = "",
        model: Optional[str] = None,
        git_branch: Optional[str] = None,
        git_commit: Optional[str] = None,
        duration_ms: int = 0,
        has_embedding: bool = False,
    ):
        self.id = id
        self.created_at = created_at or datetime.now(timezone.utc)
        self.project = project
        self.project_path = project_path
        self.status = status
        self.files = files
        self.diff = diff
        self.result = result
        self.provider = provider
        self.model = model
        self.git_branch = git_branch
        self.git_commit = git_commit
        self.duration_ms = duration_ms
        self.has_embedding = has_embedding

    @property
    def timestamp(self) -> datetime:
        return self.created_at

    def age_days(self, now: Optional[datetime] = None) -> float:
        now = now or datetime.now(timezone.utc)
        return max(0.0, (now - self.created_at).total_seconds() / 86400.0)

    def __repr__(self) -> str:
        return f"ReviewRecord(id={self.id}, project={self.project!r}, status={self.status!r})"


_REVIEW_COLUMNS = """id, created_at, project_name, status, files, result, diff_content,
                     project_path, provider, model, git_branch, git_commit, duration_ms,
                     embedding IS NOT NULL"""


# ---------------------------------------------------------------------------
# ReviewStore
# ---------------------------------------------------------------------------


class ReviewStore:
    """SQLite-backed review history and Hebbian association graph.

    Thread-safe: writes are serialised on ``_lock`` and every association or
    concept update is a single atomic upsert, so concurrent learners (threads
    or processes sharing the file) never lose increments.
    """

    def __init__(self, db_path=None):
        gga_home = Path(os.environ.get("GGA_HOME", str(Path.home() / ".gga")))
        self.db_path = Path(db_path) if db_path else (gga_home / "gga.db")

        self._lock = threading.Lock()
        self._fts_available = False
        self._conn = self._connect()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        """Create a new SQLite connection with WAL and a generous busy timeout."""
        conn = secure_connect(
            self.db_path,
            timeout=30,
            check_same_thread=False,
        )
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA busy_timeout=30000")
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    def _init_schema(self) -> None:
        """Create tables if they don't exist."""
        c = self._conn

        c.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER NOT NULL
            )
        """)
        row = c.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
        if row is None:
            c.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))

        c.execute("""
            CREATE TABLE IF NOT EXISTS reviews (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                created_at TEXT NOT NULL,
                project_path TEXT NOT NULL DEFAULT '',
                project_name TEXT NOT NULL,
                git_branch TEXT,
                git_commit TEXT,
                files TEXT NOT NULL,
                files_count INTEGER NOT NULL DEFAULT 0,
                diff_content TEXT,
                diff_hash TEXT UNIQUE,
                result TEXT NOT NULL,
                status TEXT NOT NULL CHECK(status IN ('PASSED', 'FAILED', 'ERROR', 'UNKNOWN')),
                provider TEXT NOT NULL DEFAULT '',
                model TEXT,
                duration_ms INTEGER DEFAULT 0,
                embedding BLOB,
                embedding_provider TEXT
            )
        """)

        # Schema migration v1 -> v2: record which provider produced the embedding
        if row and row[0] < 2:
            try:
                c.execute("ALTER TABLE reviews ADD COLUMN embedding_provider TEXT")
            except sqlite3.OperationalError:
                pass  # Column already exists
            c.execute("UPDATE schema_version SET version = 2")
            c.commit()
            logger.info("Schema migrated v1 -> v2: added embedding_provider column")

        for col in ("project_name", "status", "created_at", "diff_hash"):
            c.execute(f"CREATE INDEX IF NOT EXISTS idx_reviews_{col} ON reviews({col})")

        c.execute("""
            CREATE TABLE IF NOT EXISTS concepts (
                id TEXT PRIMARY KEY,
                type TEXT NOT NULL,
                frequency INTEGER NOT NULL DEFAULT 1,
                last_seen TEXT NOT NULL
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS associations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                concept_a TEXT NOT NULL,
                concept_b TEXT NOT NULL,
                weight REAL NOT NULL DEFAULT 0.5,
                co_occurrences INTEGER NOT NULL DEFAULT 1,
                context TEXT NOT NULL DEFAULT 'review',
                last_updated TEXT NOT NULL,
                UNIQUE(concept_a, concept_b, context),
                CHECK(concept_a < concept_b),
                CHECK(weight >= 0.0 AND weight <= 1.0)
            )
        """)
        c.execute("CREATE INDEX IF NOT EXISTS idx_assoc_a ON associations(concept_a)")
        c.execute("CREATE INDEX IF NOT EXISTS idx_assoc_b ON associations(concept_b)")
        c.execute("CREATE INDEX IF NOT EXISTS idx_assoc_weight ON associations(weight DESC)")
        c.execute("CREATE INDEX IF NOT EXISTS idx_concepts_type ON concepts(type)")

        # FTS5 full-text search index
        try:
            c.execute("""
                CREATE VIRTUAL TABLE IF NOT EXISTS reviews_fts
                USING fts5(files, result, diff_content, content='reviews', content_rowid='id')
            """)
            self._fts_available = True
        except sqlite3.OperationalError as e:
            logger.debug(f"FTS5 not available: {e}")
            self._fts_available = False

        if self._fts_available:
            try:
                c.execute("""
                    CREATE TRIGGER IF NOT EXISTS reviews_ai AFTER INSERT ON reviews BEGIN
                        INSERT INTO reviews_fts(rowid, files, result, diff_content)
                        VALUES (new.id, new.files, new.result, new.diff_content);
                    END
                """)
                c.execute("""
                    CREATE TRIGGER IF NOT EXISTS reviews_ad AFTER DELETE ON reviews BEGIN
                        INSERT INTO reviews_fts(reviews_fts, rowid, files, result, diff_content)
                        VALUES ('delete', old.id, old.files, old.result, old.diff_content);
                    END
                """)
                c.execute("""
                    CREATE TRIGGER IF NOT EXISTS reviews_au AFTER UPDATE OF files, result, diff_content ON reviews BEGIN
                        INSERT INTO reviews_fts(reviews_fts, rowid, files, result, diff_content)
                        VALUES ('delete', old.id, old.files, old.result, old.diff_content);
                        INSERT INTO reviews_fts(rowid, files, result, diff_content)
                        VALUES (new.id, new.files, new.result, new.diff_content);
                    END
                """)
            except sqlite3.OperationalError as e:
                logger.debug(f"FTS5 trigger setup failed: {e}")
                self._fts_available = False

        c.commit()

    # ------------------------------------------------------------------
    # Resilient commit / execute
    # ------------------------------------------------------------------

    def _commit(self) -> None:
        _retry_on_locked(self._conn.commit)

    def _run_sql(self, sql, params=None):
        if params is not None:
            return _retry_on_locked(self._conn.execute, sql, params)
        return _retry_on_locked(self._conn.execute, sql)

    def _rollback_quietly(self) -> None:
        try:
            self._conn.rollback()
        except sqlite3.Error as e:
            logger.debug("Rollback failed: %s", e)

    # ------------------------------------------------------------------
    # Reviews
    # ------------------------------------------------------------------

    @_storage_errors
    def save_review(
        self,
        project: str,
        files: str,
        result: str,
        status: str,
        diff: str = "",
        project_path: str = "",
        git_branch: Optional[str] = None,
        git_commit: Optional[str] = None,
        provider: str = "",
        model: Optional[str] = None,
        duration_ms: int = 0,
        created_at: Optional[datetime] = None,
    ) -> int:
        """Persist a review and return its id.

        Saving the same diff twice updates the earlier row instead of adding a
        duplicate (the diff hash is unique).
        """
        if not project:
            raise MalformedInputError("project is required")
        status = (status or "UNKNOWN").upper()
        if status not in REVIEW_STATUSES:
            raise MalformedInputError(f"Unknown review status {status!r}")
        if isinstance(files, (list, tuple)):
            files = " ".join(files)
        files_count = len(files.split()) if files else 0
        diff_hash = hashlib.sha256(diff.encode("utf-8")).hexdigest() if diff else None
        ts = (created_at or datetime.now(timezone.utc))
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=timezone.utc)
        ts_iso = ts.isoformat()

        with self._lock:
            try:
                existing = None
                if diff_hash:
                    existing = self._conn.execute(
                        "SELECT id FROM reviews WHERE diff_hash = ?", (diff_hash,)
                    ).fetchone()
                if existing:
                    review_id = existing[0]
                    self._run_sql(
                        """UPDATE reviews SET created_at = ?, project_path = ?, project_name = ?,
                               git_branch = ?, git_commit = ?, files = ?, files_count = ?,
                               diff_content = ?, result = ?, status = ?, provider = ?, model = ?,
                               duration_ms = ?, embedding = NULL, embedding_provider = NULL
                           WHERE id = ?""",
                        (ts_iso, project_path, project, git_branch, git_commit, files, files_count,
                         diff, result, status, provider, model, duration_ms, review_id),
                    )
                    logger.debug("Review for diff %s already stored, updated #%d", diff_hash[:12], review_id)
                else:
                    cur = self._run_sql(
                        """INSERT INTO reviews (created_at, project_path, project_name, git_branch, git_commit,
                                                files, files_count, diff_content, diff_hash, result, status,
                                                provider, model, duration_ms)
                           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                        (ts_iso, project_path, project, git_branch, git_commit, files, files_count,
                         diff, diff_hash, result, status, provider, model, duration_ms),
                    )
                    review_id = cur.lastrowid
                self._commit()
            except sqlite3.Error:
                self._rollback_quietly()
                raise
        return review_id

    def _row_to_record(self, row: tuple) -> ReviewRecord:
        return ReviewRecord(
            id=row[0],
            created_at=parse_timestamp(row[1]),
            project=row[2],
            status=row[3],
            files=row[4] or "",
            result=row[5] or "",
            diff=row[6] or "",
            project_path=row[7] or "",
            provider=row[8] or "",
            model=row[9],
            git_branch=row[10],
            git_commit=row[11],
            duration_ms=row[12] or 0,
            has_embedding=bool(row[13]),
        )

    @_storage_errors
    def get_item(self, review_id: int) -> Optional[ReviewRecord]:
        row = self._conn.execute(
            f"SELECT {_REVIEW_COLUMNS} FROM reviews WHERE id = ?", (review_id,)
        ).fetchone()
        return self._row_to_record(row) if row else None

    @_storage_errors
    def get_reviews(
        self, limit: int = 50, status: Optional[str] = None, project: Optional[str] = None
    ) -> List[ReviewRecord]:
        """Most recent reviews first, optionally filtered."""
        conditions, params = [], []
        if status:
            conditions.append("status = ?")
            params.append(status.upper())
        if project:
            conditions.append("project_name = ?")
            params.append(project)
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        params.append(limit)
        rows = self._conn.execute(
            f"SELECT {_REVIEW_COLUMNS} FROM reviews {where} ORDER BY created_at DESC, id DESC LIMIT ?",
            params,
        ).fetchall()
        return [self._row_to_record(r) for r in rows]

    @_storage_errors
    def count_items(self, status: Optional[str] = None, project: Optional[str] = None) -> int:
        conditions, params = [], []
        if status:
            conditions.append("status = ?")
            params.append(status.upper())
        if project:
            conditions.append("project_name = ?")
            params.append(project)
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        return self._conn.execute(f"SELECT COUNT(*) FROM reviews {where}", params).fetchone()[0]

    @_storage_errors
    def delete_review(self, review_id: int) -> bool:
        with self._lock:
            cur = self._run_sql("DELETE FROM reviews WHERE id = ?", (review_id,))
            self._commit()
        return cur.rowcount > 0

    # ------------------------------------------------------------------
    # Full-text search
    # ------------------------------------------------------------------

    def _fts_query(self, fts_terms: str, limit: int, project: Optional[str] = None) -> List[LexicalHit]:
        project_clause = " AND r.project_name = ?" if project else ""
        params: List[Any] = [fts_terms] + ([project] if project else []) + [limit]
        rows = self._conn.execute(
            f"""SELECT r.id, r.status, r.project_name, f.rank,
                       snippet(reviews_fts, 1, '>>>', '<<<', '...', 32)
                FROM reviews_fts f
                JOIN reviews r ON f.rowid = r.id
                WHERE reviews_fts MATCH ?{project_clause}
                ORDER BY f.rank, r.id
                LIMIT ?""",
            params,
        ).fetchall()
        return [LexicalHit(row[0], row[1], row[2], float(row[3]), row[4] or "") for row in rows]

    @_storage_errors
    def text_search(self, query_text: str, limit: int = 20, project: Optional[str] = None) -> List[LexicalHit]:
        """Full-text search over files, result and diff, best match first.

        Uses FTS5 bm25 ranking; on a damaged index it rebuilds once, then falls
        back to a LIKE scan whose rank is minus the number of matched words.
        ``project`` restricts matches before the limit is applied.
        """
        words = [w for w in _WORD_RE.findall(query_text.lower()) if len(w) > 2]
        if not words:
            return []
        # Deduplicate while keeping order
        words = list(dict.fromkeys(words))

        if self._fts_available:
            # OR-match words, quote each to avoid FTS5 syntax errors
            fts_terms = " OR ".join(f'"{w}"' for w in words)
            try:
                return self._fts_query(fts_terms, limit, project)
            except sqlite3.OperationalError as e:
                logger.warning(f"FTS5 search failed: {e} -- attempting auto-repair")
                try:
                    with self._lock:
                        self._conn.execute("INSERT INTO reviews_fts(reviews_fts) VALUES('rebuild')")
                        self._commit()
                    logger.info("FTS5 index rebuilt successfully")
                    return self._fts_query(fts_terms, limit, project)
                except sqlite3.OperationalError as rebuild_err:
                    logger.warning(f"FTS5 rebuild also failed: {rebuild_err} -- falling back to LIKE")

        searchable = "LOWER(files || ' ' || result || ' ' || COALESCE(diff_content, ''))"
        conditions = " OR ".join([f"{searchable} LIKE ?" for _ in words])
        params: List[Any] = [f"%{w}%" for w in words]
        if project:
            conditions = f"({conditions}) AND project_name = ?"
            params.append(project)
        rows = self._conn.execute(
            f"""SELECT id, status, project_name, files, result, diff_content
                FROM reviews WHERE ({conditions})""",
            params,
        ).fetchall()

        hits = []
        for row in rows:
            text = f"{row[3]} {row[4]} {row[5] or ''}".lower()
            matched = sum(1 for w in words if w in text)
            snippet = (row[4] or "")[:160]
            hits.append(LexicalHit(row[0], row[1], row[2], -float(matched), snippet))
        hits.sort(key=lambda h: (h.rank, h.id))
        return hits[:limit]

    # ------------------------------------------------------------------
    # Embeddings
    # ------------------------------------------------------------------

    @_storage_errors
    def set_embedding(self, review_id: int, vector: Sequence[float], provider: Optional[str] = None) -> bool:
        if not vector:
            raise MalformedInputError("Cannot store an empty embedding")
        with self._lock:
            cur = self._run_sql(
                "UPDATE reviews SET embedding = ?, embedding_provider = ? WHERE id = ?",
                (_serialize_f32(vector), provider, review_id),
            )
            self._commit()
        return cur.rowcount > 0

    @_storage_errors
    def get_embedding(self, review_id: int) -> Optional[List[float]]:
        row = self._conn.execute("SELECT embedding FROM reviews WHERE id = ?", (review_id,)).fetchone()
        if not row or not row[0]:
            return None
        return _deserialize_f32(row[0])

    @_storage_errors
    def list_embedded_items(self) -> List[EmbeddedItem]:
        rows = self._conn.execute(
            "SELECT id, status, project_name, embedding FROM reviews WHERE embedding IS NOT NULL ORDER BY id"
        ).fetchall()
        return [EmbeddedItem(r[0], r[1], r[2], _deserialize_f32(r[3])) for r in rows if r[3]]

    @_storage_errors
    def reviews_without_embedding(self, limit: int = 100) -> List[int]:
        rows = self._conn.execute(
            "SELECT id FROM reviews WHERE embedding IS NULL ORDER BY id LIMIT ?", (limit,)
        ).fetchall()
        return [r[0] for r in rows]

    # ------------------------------------------------------------------
    # Concepts and associations
    # ------------------------------------------------------------------

    _UPSERT_CONCEPT_SQL = """
        INSERT INTO concepts (id, type, frequency, last_seen) VALUES (?, ?, 1, ?)
        ON CONFLICT(id) DO UPDATE SET frequency = frequency + 1, last_seen = excluded.last_seen
    """

    _UPSERT_ASSOCIATION_SQL = """
        INSERT INTO associations (concept_a, concept_b, weight, co_occurrences, context, last_updated)
        VALUES (?, ?, MIN(1.0, MAX(0.0, ? + ?)), 1, ?, ?)
        ON CONFLICT(concept_a, concept_b, context) DO UPDATE SET
            weight = MIN(1.0, MAX(0.0, associations.weight + ?)),
            co_occurrences = associations.co_occurrences + 1,
            last_updated = excluded.last_updated
    """

    @_storage_errors
    def upsert_concept(self, concept_id: str, concept_type: Optional[str] = None) -> None:
        ctype = concept_type or concept_id.split(":", 1)[0]
        with self._lock:
            self._run_sql(self._UPSERT_CONCEPT_SQL, (concept_id, ctype, _now_iso()))
            self._commit()

    @_storage_errors
    def get_concept(self, concept_id: str) -> Optional[Dict[str, Any]]:
        row = self._conn.execute(
            "SELECT id, type, frequency, last_seen FROM concepts WHERE id = ?", (concept_id,)
        ).fetchone()
        if not row:
            return None
        return {"id": row[0], "type": row[1], "frequency": row[2], "last_seen": parse_timestamp(row[3])}

    @_storage_errors
    def upsert_association(
        self,
        concept_a: str,
        concept_b: str,
        delta: float,
        context: str = DEFAULT_CONTEXT,
        default_weight: float = 0.5,
    ) -> bool:
        """Add ``delta`` to a pair's weight atomically (``default_weight`` if new).

        Returns False for a self-pair, which is never stored.
        """
        if concept_a == concept_b:
            return False
        a, b = canonical_pair(concept_a, concept_b)
        now = _now_iso()
        with self._lock:
            self._run_sql(self._UPSERT_ASSOCIATION_SQL, (a, b, default_weight, delta, context, now, delta))
            self._commit()
        return True

    @_storage_errors
    def apply_learning(
        self,
        concepts: Iterable[Tuple[str, str]],
        pairs: Iterable[Tuple[str, str, float]],
        context: str = DEFAULT_CONTEXT,
        default_weight: float = 0.5,
    ) -> int:
        """Record one co-occurrence event in a single transaction.

        ``concepts`` are (id, type) rows to bump; ``pairs`` are (a, b, delta).
        Returns the number of association rows touched.
        """
        now = _now_iso()
        touched = 0
        with self._lock:
            try:
                for concept_id, ctype in concepts:
                    self._run_sql(self._UPSERT_CONCEPT_SQL, (concept_id, ctype, now))
                for concept_a, concept_b, delta in pairs:
                    if concept_a == concept_b:
                        continue
                    a, b = canonical_pair(concept_a, concept_b)
                    self._run_sql(self._UPSERT_ASSOCIATION_SQL, (a, b, default_weight, delta, context, now, delta))
                    touched += 1
                self._commit()
            except sqlite3.Error:
                self._rollback_quietly()
                raise
        return touched

    @_storage_errors
    def get_association(self, concept_a: str, concept_b: str, context: str = DEFAULT_CONTEXT) -> Optional[float]:
        row = self.get_association_row(concept_a, concept_b, context)
        return row["weight"] if row else None

    @_storage_errors
    def get_association_row(
        self, concept_a: str, concept_b: str, context: str = DEFAULT_CONTEXT
    ) -> Optional[Dict[str, Any]]:
        if concept_a == concept_b:
            return None
        a, b = canonical_pair(concept_a, concept_b)
        row = self._conn.execute(
            """SELECT concept_a, concept_b, weight, co_occurrences, context, last_updated
               FROM associations WHERE concept_a = ? AND concept_b = ? AND context = ?""",
            (a, b, context),
        ).fetchone()
        if not row:
            return None
        return {
            "concept_a": row[0],
            "concept_b": row[1],
            "weight": row[2],
            "co_occurrences": row[3],
            "context": row[4],
            "last_updated": parse_timestamp(row[5]),
        }

    @_storage_errors
    def list_neighbors(
        self, concept: str, limit: Optional[int] = None, context: Optional[str] = None
    ) -> List[Tuple[str, float]]:
        """Other endpoint of every edge touching ``concept``, strongest first.

        Without a context filter, a neighbour linked in several contexts keeps
        its strongest weight.
        """
        params: List[Any] = [concept, concept, concept]
        ctx_clause = ""
        if context is not None:
            ctx_clause = "AND context = ?"
            params.append(context)
        sql = f"""SELECT CASE WHEN concept_a = ? THEN concept_b ELSE concept_a END AS neighbor,
                         MAX(weight) AS best_weight
                  FROM associations
                  WHERE (concept_a = ? OR concept_b = ?) {ctx_clause}
                  GROUP BY neighbor
                  ORDER BY best_weight DESC, neighbor"""
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        return [(r[0], r[1]) for r in self._conn.execute(sql, params).fetchall()]

    @_storage_errors
    def count_associations(self, context: Optional[str] = None) -> int:
        if context is None:
            return self._conn.execute("SELECT COUNT(*) FROM associations").fetchone()[0]
        return self._conn.execute(
            "SELECT COUNT(*) FROM associations WHERE context = ?", (context,)
        ).fetchone()[0]

    @_storage_errors
    def count_concepts(self) -> int:
        return self._conn.execute("SELECT COUNT(*) FROM concepts").fetchone()[0]

    @_storage_errors
    def decay_all(self, factor: float) -> int:
        """Multiply every association weight by ``factor``. Returns rows touched."""
        with self._lock:
            cur = self._run_sql("UPDATE associations SET weight = MIN(1.0, MAX(0.0, weight * ?))", (factor,))
            self._commit()
        return cur.rowcount

    @_storage_errors
    def delete_below(self, threshold: float) -> int:
        """Delete associations weaker than ``threshold``. Returns rows removed."""
        with self._lock:
            cur = self._run_sql("DELETE FROM associations WHERE weight < ?", (threshold,))
            self._commit()
        return cur.rowcount

    @_storage_errors
    def decay_and_prune(self, factor: float, threshold: float) -> Tuple[int, int]:
        """decay_all + delete_below in one transaction: (decayed, removed)."""
        with self._lock:
            try:
                decayed = self._run_sql(
                    "UPDATE associations SET weight = MIN(1.0, MAX(0.0, weight * ?))", (factor,)
                ).rowcount
                removed = self._run_sql("DELETE FROM associations WHERE weight < ?", (threshold,)).rowcount
                self._commit()
            except sqlite3.Error:
                self._rollback_quietly()
                raise
        return decayed, removed

    @_storage_errors
    def association_stats(self, top: int = 10) -> Dict[str, Any]:
        count, avg_w, max_w = self._conn.execute(
            "SELECT COUNT(*), AVG(weight), MAX(weight) FROM associations"
        ).fetchone()
        top_rows = self._conn.execute(
            """SELECT concept_a, concept_b, weight, co_occurrences FROM associations
               ORDER BY weight DESC, co_occurrences DESC, concept_a, concept_b LIMIT ?""",
            (top,),
        ).fetchall()
        return {
            "concepts": self.count_concepts(),
            "associations": count,
            "avg_weight": round(avg_w or 0.0, 4),
            "max_weight": round(max_w or 0.0, 4),
            "top": [
                {"concept_a": a, "concept_b": b, "weight": w, "co_occurrences": n}
                for a, b, w, n in top_rows
            ],
        }

    # ------------------------------------------------------------------
    # Stats / lifecycle
    # ------------------------------------------------------------------

    @_storage_errors
    def stats(self) -> Dict[str, Any]:
        row = self._conn.execute(
            """SELECT COUNT(*),
                      SUM(CASE WHEN status = 'PASSED' THEN 1 ELSE 0 END),
                      SUM(CASE WHEN status = 'FAILED' THEN 1 ELSE 0 END),
                      SUM(CASE WHEN status = 'ERROR' THEN 1 ELSE 0 END),
                      COUNT(DISTINCT project_name),
                      SUM(CASE WHEN embedding IS NOT NULL THEN 1 ELSE 0 END)
               FROM reviews"""
        ).fetchone()
        return {
            "total_reviews": row[0],
            "passed": row[1] or 0,
            "failed": row[2] or 0,
            "errors": row[3] or 0,
            "projects": row[4],
            "embedded": row[5] or 0,
            "fts_available": self._fts_available,
        }

    @_storage_errors
    def stats_by_project(self) -> List[Dict[str, Any]]:
        rows = self._conn.execute(
            """SELECT project_name, COUNT(*),
                      SUM(CASE WHEN status = 'PASSED' THEN 1 ELSE 0 END),
                      SUM(CASE WHEN status = 'FAILED' THEN 1 ELSE 0 END),
                      MAX(created_at)
               FROM reviews GROUP BY project_name
               ORDER BY COUNT(*) DESC, project_name"""
        ).fetchall()
        return [
            {"project": r[0], "reviews": r[1], "passed": r[2] or 0, "failed": r[3] or 0,
             "last_review": parse_timestamp(r[4])}
            for r in rows
        ]

    @_storage_errors
    def cleanup(self, keep: int = 100) -> int:
        """Keep only the newest ``keep`` reviews per project. Returns rows deleted."""
        if keep < 0:
            raise MalformedInputError(f"keep must be >= 0, got {keep}")
        with self._lock:
            cur = self._run_sql(
                """DELETE FROM reviews WHERE id NOT IN (
                       SELECT id FROM (
                           SELECT id, ROW_NUMBER() OVER (
                               PARTITION BY project_name ORDER BY created_at DESC, id DESC
                           ) AS rn FROM reviews
                       ) WHERE rn <= ?
                   )""",
                (keep,),
            )
            self._commit()
            deleted = cur.rowcount
            if deleted:
                self._conn.execute("VACUUM")
        if deleted:
            logger.info("Cleanup removed %d old reviews (keeping %d per project)", deleted, keep)
        return deleted

    @_storage_errors
    def integrity_check(self) -> str:
        return self._conn.execute("PRAGMA integrity_check").fetchone()[0]

    def close(self) -> None:
        """Close the database connection."""
        try:
            self._conn.close()
        except sqlite3.Error as e:
            logger.debug("Store close failed: %s", e)

    def __enter__(self) -> "ReviewStore":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
