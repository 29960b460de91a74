"""
Cortex SQLite Store -- durable storage for the three memory tiers.

One database file holds core facts, knowledge snippets (with optional
float32 embeddings) and episodes, plus an FTS5 index over knowledge that is
maintained by triggers, so the index changes in the same transaction as the
row it mirrors.

All methods are synchronous. Async callers go through ``run()``, which
funnels every call through a single worker thread so store access is
serialized no matter how many coroutines are in flight.

Usage:
    store = SQLiteStore(db_path=Path("~/.cortex/cortex_memory.db"))
    snippet = store.insert_knowledge("User prefers dark mode", MemoryCategory.PREFERENCE)
    hits = store.keyword_search("dark mode", limit=5)
"""

import asyncio
import functools
import json
import logging
import re
import sqlite3
import struct
import threading
import time as _time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from cortex.config import DB_FILENAME, default_home
from cortex.errors import StoreBusyError
from cortex.types import (
    CoreFact,
    Episode,
    KnowledgeSnippet,
    MemoryCategory,
    MemorySource,
)

logger = logging.getLogger("cortex.sqlite_store")

SCHEMA_VERSION = 1
EMBEDDING_DIM = 384

# ---------------------------------------------------------------------------
# SQLite retry -- WAL + busy_timeout absorb most contention, but a writer in
# another process can still hold the lock past the timeout. Retry a bounded
# number of times with a delay that grows linearly with the attempt number.
# ---------------------------------------------------------------------------
_DB_RETRY_ATTEMPTS = 3
_DB_RETRY_DELAY = 0.1  # seconds, multiplied by the attempt number
_BUSY_MARKERS = ("database is locked", "database is busy", "database table is locked")

_FTS_TOKEN_RE = re.compile(r"\w+", re.UNICODE)


def _is_busy(error: sqlite3.OperationalError) -> bool:
    msg = str(error).lower()
    return any(marker in msg for marker in _BUSY_MARKERS)


def _retry_on_locked(fn, *args, attempts: int = _DB_RETRY_ATTEMPTS, delay: float = _DB_RETRY_DELAY, **kwargs):
    """Call fn, retrying on a locked/busy OperationalError.

    Raises StoreBusyError once every attempt has failed; any other
    OperationalError propagates unchanged.
    """
    for attempt in range(1, attempts + 1):
        try:
            return fn(*args, **kwargs)
        except sqlite3.OperationalError as e:
            if not _is_busy(e):
                raise
            if attempt >= attempts:
                name = getattr(fn, "__name__", "sqlite call")
                raise StoreBusyError(name, attempts) from e
            wait = delay * attempt
            logger.warning("database is locked (attempt %d/%d), retrying in %.2fs", attempt, attempts, wait)
            _time.sleep(wait)


def _serialize_f32(vector: Sequence[float]) -> bytes:
    """Serialize a float32 vector to bytes (also the sqlite-vec wire format)."""
    return struct.pack(f"{len(vector)}f", *vector)


def _deserialize_f32(data: bytes) -> List[float]:
    """Deserialize bytes to a float32 vector."""
    return list(struct.unpack(f"{len(data) // 4}f", data))


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_dt(value: Optional[str]) -> datetime:
    """Parse a stored ISO timestamp; naive values are taken as UTC."""
    if not value:
        return datetime.now(timezone.utc)
    try:
        dt = datetime.fromisoformat(value)
    except ValueError:
        dt = datetime.strptime(value, "%Y-%m-%d %H:%M:%S")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def build_fts_query(text: str) -> Optional[str]:
    """Turn free text into an FTS5 MATCH expression.

    Each word is quoted so punctuation and FTS operators in user text are
    inert; terms are OR-ed and the last one is a prefix match. Returns None
    when the text contains no searchable words.
    """
    words = [w for w in _FTS_TOKEN_RE.findall(text.lower().replace('"', " ")) if len(w) > 1]
    if not words:
        return None
    seen: List[str] = []
    for w in words:
        if w not in seen:
            seen.append(w)
    terms = [f'"{w}"' for w in seen[:-1]]
    terms.append(f'"{seen[-1]}"*')
    return " OR ".join(terms)


_CORE_COLUMNS = "id, content, category, importance, created_at, updated_at, active"
_KNOWLEDGE_COLUMNS = (
    "id, content, category, importance, source, tags, session_id, embedding, "
    "access_count, created_at, updated_at"
)
_EPISODE_COLUMNS = (
    "id, session_id, summary, key_topics, key_takeaways, message_count, started_at, ended_at, created_at"
)


class SQLiteStore:
    """SQLite-backed store for core facts, knowledge snippets and episodes."""

    _CORE_UPDATABLE = ("content", "category", "importance", "active")

    def __init__(
        self,
        db_path=None,
        embedding_dim: int = EMBEDDING_DIM,
        retry_attempts: int = _DB_RETRY_ATTEMPTS,
        retry_delay: float = _DB_RETRY_DELAY,
        busy_timeout_ms: int = 5000,
    ):
        self.db_path = Path(db_path) if db_path else (default_home() / DB_FILENAME)
        self.db_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
        self.embedding_dim = embedding_dim
        self._retry_attempts = max(1, retry_attempts)
        self._retry_delay = retry_delay
        self._busy_timeout_ms = busy_timeout_ms

        self._lock = threading.Lock()
        self._vec_available = False
        self._fts_available = False
        self._executor: Optional[ThreadPoolExecutor] = None
        self._conn: Optional[sqlite3.Connection] = self._connect()
        self._init_schema()

    # ------------------------------------------------------------------
    # Connection and schema
    # ------------------------------------------------------------------

    def _connect(self) -> sqlite3.Connection:
        """Create a new SQLite connection with WAL and a bounded busy timeout."""
        conn = sqlite3.connect(str(self.db_path), timeout=self._busy_timeout_ms / 1000, check_same_thread=False)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute(f"PRAGMA busy_timeout={int(self._busy_timeout_ms)}")
        conn.execute("PRAGMA foreign_keys=ON")

        # sqlite-vec gives us vec_distance_cosine(); without it we scan in numpy
        try:
            import sqlite_vec

            conn.enable_load_extension(True)
            sqlite_vec.load(conn)
            conn.enable_load_extension(False)
            self._vec_available = True
        except (ImportError, AttributeError, sqlite3.OperationalError) as e:
            logger.debug(f"sqlite-vec not available, using numpy similarity scan: {e}")
            self._vec_available = False

        return conn

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("store is closed")
        return self._conn

    @property
    def vec_available(self) -> bool:
        return self._vec_available

    @property
    def fts_available(self) -> bool:
        return self._fts_available

    def _init_schema(self) -> None:
        """Create tables, indexes and FTS triggers if they don't exist."""
        c = self.conn

        c.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER NOT NULL
            )
        """)
        row = c.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
        if row is None:
            c.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))

        c.execute("""
            CREATE TABLE IF NOT EXISTS core_facts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                content TEXT NOT NULL,
                category TEXT NOT NULL,
                importance REAL NOT NULL DEFAULT 0.8,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                active INTEGER NOT NULL DEFAULT 1
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS knowledge (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                content TEXT NOT NULL,
                category TEXT NOT NULL,
                importance REAL NOT NULL DEFAULT 0.5,
                source TEXT NOT NULL DEFAULT 'explicit',
                tags TEXT NOT NULL DEFAULT '',
                session_id TEXT,
                embedding BLOB,
                access_count INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS episodes (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                session_id TEXT NOT NULL UNIQUE,
                summary TEXT NOT NULL,
                key_topics TEXT NOT NULL DEFAULT '[]',
                key_takeaways TEXT NOT NULL DEFAULT '[]',
                message_count INTEGER NOT NULL DEFAULT 0,
                started_at TEXT NOT NULL,
                ended_at TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
        """)

        c.execute("CREATE INDEX IF NOT EXISTS idx_core_facts_active ON core_facts(active, importance DESC)")
        c.execute("CREATE INDEX IF NOT EXISTS idx_core_facts_category ON core_facts(category)")
        for col in ("category", "session_id", "importance", "access_count"):
            c.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_knowledge_{col}
                ON knowledge({col})
            """)
        c.execute("CREATE INDEX IF NOT EXISTS idx_episodes_ended_at ON episodes(ended_at)")

        # FTS5 external-content index over knowledge, kept in sync by triggers
        try:
            c.execute("""
                CREATE VIRTUAL TABLE IF NOT EXISTS knowledge_fts
                USING fts5(content, category, tags, content='knowledge', content_rowid='id')
            """)
            c.execute("""
                CREATE TRIGGER IF NOT EXISTS knowledge_ai AFTER INSERT ON knowledge BEGIN
                    INSERT INTO knowledge_fts(rowid, content, category, tags)
                    VALUES (new.id, new.content, new.category, new.tags);
                END
            """)
            c.execute("""
                CREATE TRIGGER IF NOT EXISTS knowledge_ad AFTER DELETE ON knowledge BEGIN
                    INSERT INTO knowledge_fts(knowledge_fts, rowid, content, category, tags)
                    VALUES ('delete', old.id, old.content, old.category, old.tags);
                END
            """)
            c.execute("""
                CREATE TRIGGER IF NOT EXISTS knowledge_au AFTER UPDATE OF content, category, tags ON knowledge BEGIN
                    INSERT INTO knowledge_fts(knowledge_fts, rowid, content, category, tags)
                    VALUES ('delete', old.id, old.content, old.category, old.tags);
                    INSERT INTO knowledge_fts(rowid, content, category, tags)
                    VALUES (new.id, new.content, new.category, new.tags);
                END
            """)
            fts_count = c.execute("SELECT COUNT(*) FROM knowledge_fts").fetchone()[0]
            k_count = c.execute("SELECT COUNT(*) FROM knowledge").fetchone()[0]
            if fts_count == 0 and k_count > 0:
                c.execute("INSERT INTO knowledge_fts(knowledge_fts) VALUES ('rebuild')")
                logger.info(f"Rebuilt FTS5 index for {k_count} existing snippets")
            self._fts_available = True
        except sqlite3.OperationalError as e:
            logger.warning(f"FTS5 not available, keyword search falls back to LIKE: {e}")
            self._fts_available = False

        c.commit()

    # ------------------------------------------------------------------
    # Resilient execution
    # ------------------------------------------------------------------

    def _run_sql(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        """Execute one statement, retrying on lock contention."""
        return _retry_on_locked(
            self.conn.execute, sql, params, attempts=self._retry_attempts, delay=self._retry_delay
        )

    def _commit(self) -> None:
        _retry_on_locked(self.conn.commit, attempts=self._retry_attempts, delay=self._retry_delay)

    def _write(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        """Execute a write and commit it, rolling back if either step fails."""
        try:
            cur = self._run_sql(sql, params)
            self._commit()
            return cur
        except Exception:
            self.conn.rollback()
            raise

    async def run(self, fn: Callable, *args, **kwargs):
        """Run a store method on the store's single worker thread."""
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="cortex-store")
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, functools.partial(fn, *args, **kwargs))

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_core_fact(row: tuple) -> CoreFact:
        return CoreFact(
            id=row[0],
            content=row[1],
            category=MemoryCategory(row[2]),
            importance=row[3],
            created_at=_parse_dt(row[4]),
            updated_at=_parse_dt(row[5]),
            active=bool(row[6]),
        )

    def _row_to_snippet(self, row: tuple) -> KnowledgeSnippet:
        embedding = None
        if row[7] is not None:
            embedding = _deserialize_f32(row[7])
        tags = json.loads(row[5]) if row[5] else []
        return KnowledgeSnippet(
            id=row[0],
            content=row[1],
            category=MemoryCategory(row[2]),
            importance=row[3],
            source=MemorySource(row[4]),
            tags=tags,
            session_id=row[6],
            embedding=embedding,
            access_count=row[8],
            created_at=_parse_dt(row[9]),
            updated_at=_parse_dt(row[10]),
        )

    @staticmethod
    def _row_to_episode(row: tuple) -> Episode:
        return Episode(
            id=row[0],
            session_id=row[1],
            summary=row[2],
            key_topics=json.loads(row[3] or "[]"),
            key_takeaways=json.loads(row[4] or "[]"),
            message_count=row[5],
            started_at=_parse_dt(row[6]),
            ended_at=_parse_dt(row[7]),
            created_at=_parse_dt(row[8]),
        )

    # ------------------------------------------------------------------
    # Core facts
    # ------------------------------------------------------------------

    def insert_core_fact(self, content: str, category: MemoryCategory, importance: float = 0.8) -> int:
        """Insert an active core fact. Returns its id."""
        if not content or not content.strip():
            raise ValueError("content must be a non-empty string")
        now = _utcnow()
        with self._lock:
            cur = self._write(
                """INSERT INTO core_facts (content, category, importance, created_at, updated_at, active)
                   VALUES (?, ?, ?, ?, ?, 1)""",
                (content.strip(), MemoryCategory.parse(category).value, importance, now, now),
            )
        return cur.lastrowid

    def get_core_fact(self, fact_id: int) -> Optional[CoreFact]:
        with self._lock:
            row = self._run_sql(f"SELECT {_CORE_COLUMNS} FROM core_facts WHERE id = ?", (fact_id,)).fetchone()
        return self._row_to_core_fact(row) if row else None

    def get_active_core_facts(self) -> List[CoreFact]:
        """Active facts, most important first; ties broken by creation order."""
        with self._lock:
            rows = self._run_sql(
                f"""SELECT {_CORE_COLUMNS} FROM core_facts WHERE active = 1
                    ORDER BY importance DESC, created_at ASC, id ASC"""
            ).fetchall()
        return [self._row_to_core_fact(r) for r in rows]

    def get_core_facts_by_category(self, category: MemoryCategory, active_only: bool = True) -> List[CoreFact]:
        sql = f"SELECT {_CORE_COLUMNS} FROM core_facts WHERE category = ?"
        if active_only:
            sql += " AND active = 1"
        sql += " ORDER BY importance DESC, created_at ASC, id ASC"
        with self._lock:
            rows = self._run_sql(sql, (MemoryCategory.parse(category).value,)).fetchall()
        return [self._row_to_core_fact(r) for r in rows]

    def find_similar_core_fact(self, content: str) -> Optional[CoreFact]:
        """Find an active fact starting with the same first 50 characters (case-insensitive)."""
        prefix = content.strip().lower()[:50]
        if not prefix:
            return None
        escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        with self._lock:
            row = self._run_sql(
                f"""SELECT {_CORE_COLUMNS} FROM core_facts
                    WHERE active = 1 AND LOWER(content) LIKE ? ESCAPE '\\'
                    ORDER BY id ASC LIMIT 1""",
                (escaped + "%",),
            ).fetchone()
        return self._row_to_core_fact(row) if row else None

    def update_core_fact(self, fact_id: int, **fields) -> bool:
        """Partially update a core fact. Returns False when nothing was updated."""
        updates: Dict[str, Any] = {}
        for key in self._CORE_UPDATABLE:
            if fields.get(key) is None:
                continue
            value = fields[key]
            if key == "category":
                value = MemoryCategory.parse(value).value
            elif key == "active":
                value = 1 if value else 0
            elif key == "content":
                value = str(value).strip()
                if not value:
                    raise ValueError("content must be a non-empty string")
            updates[key] = value
        unknown = set(fields) - set(self._CORE_UPDATABLE)
        if unknown:
            raise ValueError(f"Unknown core fact field(s): {', '.join(sorted(unknown))}")
        if not updates:
            return False

        assignments = ", ".join(f"{k} = ?" for k in updates)
        params = list(updates.values()) + [_utcnow(), fact_id]
        with self._lock:
            cur = self._write(f"UPDATE core_facts SET {assignments}, updated_at = ? WHERE id = ?", params)
        return cur.rowcount > 0

    def set_core_fact_active(self, fact_id: int, active: bool) -> bool:
        return self.update_core_fact(fact_id, active=active)

    def delete_core_fact(self, fact_id: int) -> bool:
        with self._lock:
            cur = self._write("DELETE FROM core_facts WHERE id = ?", (fact_id,))
        return cur.rowcount > 0

    def count_core_facts(self, active_only: bool = True) -> int:
        sql = "SELECT COUNT(*) FROM core_facts"
        if active_only:
            sql += " WHERE active = 1"
        with self._lock:
            return self._run_sql(sql).fetchone()[0]

    # ------------------------------------------------------------------
    # Knowledge
    # ------------------------------------------------------------------

    def insert_knowledge(
        self,
        content: str,
        category: MemoryCategory,
        importance: float = 0.5,
        source: MemorySource = MemorySource.EXPLICIT,
        tags: Optional[Iterable[str]] = None,
        session_id: Optional[str] = None,
        embedding: Optional[Sequence[float]] = None,
    ) -> KnowledgeSnippet:
        """Insert a knowledge snippet. The FTS index is updated by trigger."""
        if not content or not content.strip():
            raise ValueError("content must be a non-empty string")
        if embedding is not None and len(embedding) != self.embedding_dim:
            logger.warning(
                "insert_knowledge: embedding has %d dims, expected %d -- stored without vector",
                len(embedding), self.embedding_dim,
            )
            embedding = None

        clean_tags = sorted({t.strip() for t in (tags or []) if t and t.strip()})
        blob = _serialize_f32(embedding) if embedding is not None else None
        now = _utcnow()
        with self._lock:
            cur = self._write(
                """INSERT INTO knowledge
                   (content, category, importance, source, tags, session_id, embedding,
                    access_count, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?, ?)""",
                (
                    content.strip(),
                    MemoryCategory.parse(category).value,
                    importance,
                    MemorySource(source).value,
                    json.dumps(clean_tags) if clean_tags else "",
                    session_id,
                    blob,
                    now,
                    now,
                ),
            )
            row = self._run_sql(
                f"SELECT {_KNOWLEDGE_COLUMNS} FROM knowledge WHERE id = ?", (cur.lastrowid,)
            ).fetchone()
        return self._row_to_snippet(row)

    def get_knowledge(self, snippet_id: int) -> Optional[KnowledgeSnippet]:
        with self._lock:
            row = self._run_sql(
                f"SELECT {_KNOWLEDGE_COLUMNS} FROM knowledge WHERE id = ?", (snippet_id,)
            ).fetchone()
        return self._row_to_snippet(row) if row else None

    def get_knowledge_by_category(self, category: MemoryCategory, limit: int = 50) -> List[KnowledgeSnippet]:
        with self._lock:
            rows = self._run_sql(
                f"""SELECT {_KNOWLEDGE_COLUMNS} FROM knowledge WHERE category = ?
                    ORDER BY importance DESC, updated_at DESC LIMIT ?""",
                (MemoryCategory.parse(category).value, limit),
            ).fetchall()
        return [self._row_to_snippet(r) for r in rows]

    def delete_knowledge(self, snippet_id: int) -> bool:
        """Delete one snippet. Returns False if it did not exist."""
        with self._lock:
            cur = self._write("DELETE FROM knowledge WHERE id = ?", (snippet_id,))
        return cur.rowcount > 0

    def delete_knowledge_many(self, snippet_ids: Sequence[int]) -> int:
        ids = list(dict.fromkeys(snippet_ids))
        if not ids:
            return 0
        placeholders = ",".join("?" * len(ids))
        with self._lock:
            cur = self._write(f"DELETE FROM knowledge WHERE id IN ({placeholders})", ids)
        return cur.rowcount

    def count_knowledge(self) -> int:
        with self._lock:
            return self._run_sql("SELECT COUNT(*) FROM knowledge").fetchone()[0]

    def record_access(self, snippet_ids: Sequence[int]) -> Optional[datetime]:
        """Bump access_count and refresh updated_at for returned snippets."""
        ids = list(dict.fromkeys(snippet_ids))
        if not ids:
            return None
        now = _utcnow()
        placeholders = ",".join("?" * len(ids))
        with self._lock:
            self._write(
                f"""UPDATE knowledge SET access_count = access_count + 1, updated_at = ?
                    WHERE id IN ({placeholders})""",
                [now] + ids,
            )
        return _parse_dt(now)

    def keyword_search(
        self, query_text: str, category: Optional[MemoryCategory] = None, limit: int = 20
    ) -> List[Tuple[KnowledgeSnippet, float]]:
        """Full-text search. Returns (snippet, |bm25|) pairs, best first."""
        if limit <= 0:
            return []
        if not self._fts_available:
            return self._like_search(query_text, category, limit)
        fts_query = build_fts_query(query_text)
        if fts_query is None:
            return []

        cols = ", ".join(f"k.{c.strip()}" for c in _KNOWLEDGE_COLUMNS.split(","))
        sql = f"""SELECT {cols}, f.rank
                  FROM knowledge_fts f
                  JOIN knowledge k ON f.rowid = k.id
                  WHERE knowledge_fts MATCH ?"""
        params: List[Any] = [fts_query]
        if category is not None:
            sql += " AND k.category = ?"
            params.append(MemoryCategory.parse(category).value)
        sql += " ORDER BY f.rank LIMIT ?"
        params.append(limit)

        try:
            with self._lock:
                rows = self._run_sql(sql, params).fetchall()
        except sqlite3.OperationalError as e:
            if _is_busy(e):
                raise
            logger.debug(f"FTS5 query failed for {fts_query!r}: {e}")
            return []
        return [(self._row_to_snippet(r[:11]), abs(r[11])) for r in rows]

    def _like_search(
        self, query_text: str, category: Optional[MemoryCategory], limit: int
    ) -> List[Tuple[KnowledgeSnippet, float]]:
        """LIKE fallback when FTS5 is unavailable: score = number of matched words."""
        words = [w for w in _FTS_TOKEN_RE.findall(query_text.lower()) if len(w) > 2]
        if not words:
            return []
        sql = f"SELECT {_KNOWLEDGE_COLUMNS} FROM knowledge WHERE (" + " OR ".join(
            "LOWER(content) LIKE ?" for _ in words
        ) + ")"
        params: List[Any] = [f"%{w}%" for w in words]
        if category is not None:
            sql += " AND category = ?"
            params.append(MemoryCategory.parse(category).value)
        with self._lock:
            rows = self._run_sql(sql, params).fetchall()
        scored = []
        for r in rows:
            snippet = self._row_to_snippet(r)
            lower = snippet.content.lower()
            scored.append((snippet, float(sum(1 for w in words if w in lower))))
        scored.sort(key=lambda pair: pair[1], reverse=True)
        return scored[:limit]

    def semantic_scan(
        self, query_embedding: Sequence[float], category: Optional[MemoryCategory] = None
    ) -> List[Tuple[KnowledgeSnippet, float]]:
        """Cosine similarity of every embedded snippet against the query, best first."""
        if len(query_embedding) != self.embedding_dim:
            raise ValueError(
                f"query embedding has {len(query_embedding)} dims, expected {self.embedding_dim}"
            )
        where = "WHERE embedding IS NOT NULL"
        params: List[Any] = []
        if category is not None:
            where += " AND category = ?"
            params.append(MemoryCategory.parse(category).value)

        if self._vec_available:
            try:
                with self._lock:
                    rows = self._run_sql(
                        f"""SELECT {_KNOWLEDGE_COLUMNS}, 1.0 - vec_distance_cosine(embedding, ?) AS sim
                            FROM knowledge {where} ORDER BY sim DESC""",
                        [_serialize_f32(query_embedding)] + params,
                    ).fetchall()
                return [(self._row_to_snippet(r[:11]), float(r[11])) for r in rows]
            except sqlite3.OperationalError as e:
                if _is_busy(e):
                    raise
                logger.debug(f"vec_distance_cosine failed, using numpy scan: {e}")

        with self._lock:
            rows = self._run_sql(f"SELECT {_KNOWLEDGE_COLUMNS} FROM knowledge {where}", params).fetchall()
        rows = [r for r in rows if len(r[7]) == self.embedding_dim * 4]
        if not rows:
            return []
        matrix = np.vstack([np.frombuffer(r[7], dtype=np.float32) for r in rows])
        query = np.asarray(query_embedding, dtype=np.float32)
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
        sims = np.divide(matrix @ query, norms, out=np.zeros(len(rows), dtype=np.float32), where=norms > 0)
        scored = [(self._row_to_snippet(r), float(s)) for r, s in zip(rows, sims)]
        scored.sort(key=lambda pair: pair[1], reverse=True)
        return scored

    # ------------------------------------------------------------------
    # Episodes
    # ------------------------------------------------------------------

    def insert_episode(
        self,
        session_id: str,
        summary: str,
        key_topics: Sequence[str],
        key_takeaways: Sequence[str],
        message_count: int,
        started_at: datetime,
        ended_at: datetime,
    ) -> Optional[Episode]:
        """Insert the episode for a session. Returns None if the session already has one."""
        now = _utcnow()
        with self._lock:
            try:
                cur = self._write(
                    """INSERT INTO episodes
                       (session_id, summary, key_topics, key_takeaways, message_count,
                        started_at, ended_at, created_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        session_id,
                        summary,
                        json.dumps(list(key_topics)),
                        json.dumps(list(key_takeaways)),
                        message_count,
                        started_at.isoformat(),
                        ended_at.isoformat(),
                        now,
                    ),
                )
            except sqlite3.IntegrityError:
                logger.warning("Episode for session %s already exists, not overwriting", session_id)
                return None
            row = self._run_sql(
                f"SELECT {_EPISODE_COLUMNS} FROM episodes WHERE id = ?", (cur.lastrowid,)
            ).fetchone()
        return self._row_to_episode(row)

    def get_episode_by_session(self, session_id: str) -> Optional[Episode]:
        with self._lock:
            row = self._run_sql(
                f"SELECT {_EPISODE_COLUMNS} FROM episodes WHERE session_id = ?", (session_id,)
            ).fetchone()
        return self._row_to_episode(row) if row else None

    def get_recent_episodes(self, limit: int = 5) -> List[Episode]:
        with self._lock:
            rows = self._run_sql(
                f"SELECT {_EPISODE_COLUMNS} FROM episodes ORDER BY ended_at DESC, id DESC LIMIT ?", (limit,)
            ).fetchall()
        return [self._row_to_episode(r) for r in rows]

    def count_episodes(self) -> int:
        with self._lock:
            return self._run_sql("SELECT COUNT(*) FROM episodes").fetchone()[0]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close_connection(self) -> None:
        """Close the connection but keep the worker thread (see reopen)."""
        with self._lock:
            self._close_connection()

    def reopen(self) -> None:
        """Close and reconnect, e.g. after the database file was replaced."""
        with self._lock:
            self._close_connection()
            self._conn = self._connect()
        self._init_schema()

    def _close_connection(self) -> None:
        if self._conn is None:
            return
        try:
            self._conn.execute("PRAGMA wal_checkpoint(TRUNCATE)")
        except sqlite3.Error as e:
            logger.debug("WAL checkpoint on close failed: %s", e)
        try:
            self._conn.close()
        except sqlite3.Error as e:
            logger.debug("Database close failed: %s", e)
        self._conn = None

    def close(self) -> None:
        """Close the database connection and the worker thread."""
        with self._lock:
            self._close_connection()
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None
