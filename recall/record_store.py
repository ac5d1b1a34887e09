"""
Record store using SQLite.

The record store is the source of truth for:
- Record identity and content (prompt, result, context)
- Tags and category
- The embedding generated at index time
- Which project files have been indexed

The lexical index and the remote vector collection are both derived from
it and can be rebuilt from get_all_records().

Writes are serialized through a single lock; WAL mode lets readers run
concurrently with the drain thread. A short TTL cache fronts get_record()
and is invalidated on every write to the same id.
"""

import json
import logging
import sqlite3
import threading
import time
from array import array
from pathlib import Path
from typing import Any, Callable, Iterable, Optional, TypeVar

from .errors import PersistenceError
from .types import Record, RecordContext, now_ms

logger = logging.getLogger(__name__)

T = TypeVar("T")

# get_record() cache
CACHE_TTL_SECONDS = 30.0
MAX_CACHE_ENTRIES = 500


class RecordStore:
    """
    SQLite-backed store for canonical records.
    """

    def __init__(self, db_path: Path, *, cache_ttl: float = CACHE_TTL_SECONDS):
        """
        Args:
            db_path: Path to SQLite database file

        Raises:
            PersistenceError: If the database cannot be opened or initialized.
                This is fatal to the service and is not retried.
        """
        self._db_path = Path(db_path)
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()
        self._cache_ttl = cache_ttl
        self._cache: dict[str, tuple[float, Record]] = {}
        # Bumped on every committed write; a read only caches if it is unchanged
        self._generation = 0
        try:
            self._init_db()
        except (sqlite3.Error, OSError) as e:
            raise PersistenceError.init_failed(str(self._db_path)) from e

    def _init_db(self) -> None:
        """Initialize the SQLite database."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row

        # Enable WAL mode for better concurrent access
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")
        # Wait up to 5 seconds for locks instead of failing immediately
        self._conn.execute("PRAGMA busy_timeout=5000")

        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS records (
                id TEXT PRIMARY KEY,
                timestamp INTEGER NOT NULL,
                session_id TEXT NOT NULL,
                prompt_text TEXT NOT NULL,
                prompt_type TEXT NOT NULL DEFAULT 'user',
                result_text TEXT,
                context_json TEXT NOT NULL DEFAULT '{}',
                success INTEGER NOT NULL DEFAULT 1,
                error TEXT,
                duration INTEGER NOT NULL DEFAULT 0,
                tools_used_json TEXT NOT NULL DEFAULT '[]',
                tags_json TEXT NOT NULL DEFAULT '[]',
                category TEXT,
                embedding BLOB,
                updated_at INTEGER NOT NULL,
                remote_synced INTEGER NOT NULL DEFAULT 0
            )
        """)
        self._migrate()
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_records_remote_synced
            ON records(remote_synced)
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_records_timestamp
            ON records(timestamp)
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_records_session
            ON records(session_id)
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_records_category
            ON records(category)
        """)
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS indexed_files (
                path TEXT PRIMARY KEY,
                hash TEXT NOT NULL,
                indexed_at INTEGER NOT NULL,
                size INTEGER NOT NULL,
                chunks_count INTEGER DEFAULT 0
            )
        """)
        self._conn.commit()

    def _migrate(self) -> None:
        """Migrate existing databases to current schema."""
        cursor = self._conn.execute("PRAGMA table_info(records)")
        columns = {row[1] for row in cursor.fetchall()}

        # Databases from before remote backfill: treat every row as unpushed
        if "remote_synced" not in columns:
            self._conn.execute(
                "ALTER TABLE records ADD COLUMN remote_synced INTEGER NOT NULL DEFAULT 0"
            )
            self._conn.commit()

    @property
    def path(self) -> Path:
        return self._db_path

    def _run(self, sql: str, fn: Callable[[sqlite3.Connection], T], *, write: bool = False,
             invalidate: Iterable[str] = ()) -> T:
        """
        Run fn against the connection, converting sqlite errors.

        Writes bump the cache generation and drop ``invalidate`` from the
        cache while still holding the write lock, after the commit.
        """
        if self._conn is None:
            raise PersistenceError("Record store is closed", {"db_path": str(self._db_path)}, retryable=False)
        try:
            if write:
                with self._lock:
                    result = fn(self._conn)
                    self._conn.commit()
                    self._generation += 1
                    for id in invalidate:
                        self._cache.pop(id, None)
                    return result
            return fn(self._conn)
        except sqlite3.Error as e:
            if write:
                self._conn.rollback()
            raise PersistenceError.query_failed(sql) from e

    # -------------------------------------------------------------------------
    # Write Operations
    # -------------------------------------------------------------------------

    _UPSERT_SQL = """
        INSERT OR REPLACE INTO records
        (id, timestamp, session_id, prompt_text, prompt_type, result_text,
         context_json, success, error, duration, tools_used_json,
         tags_json, category, embedding, updated_at, remote_synced)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0)
    """

    def store_record(self, record: Record, embedding: Optional[list[float]] = None) -> None:
        """
        Insert or replace a record.

        Re-storing an existing id overwrites it, so replays are idempotent.
        The stored version is unpushed until mark_remote_synced() is called.
        """
        vector = embedding if embedding is not None else record.embedding
        params = (
            record.id,
            int(record.timestamp),
            record.session_id,
            record.prompt_text,
            record.prompt_type,
            record.result_text,
            json.dumps(_context_to_dict(record.context), ensure_ascii=False),
            1 if record.success else 0,
            record.error,
            int(record.duration),
            json.dumps(list(record.tools_used), ensure_ascii=False),
            json.dumps(sorted(record.tags), ensure_ascii=False),
            record.category,
            _encode_embedding(vector),
            now_ms(),
        )
        self._run(self._UPSERT_SQL, lambda c: c.execute(self._UPSERT_SQL, params),
                  write=True, invalidate=(record.id,))

    def delete_record(self, id: str) -> bool:
        """
        Delete a record.

        Returns:
            True if a record was deleted, False if the id was unknown
        """
        sql = "DELETE FROM records WHERE id = ?"
        cursor = self._run(sql, lambda c: c.execute(sql, (id,)), write=True, invalidate=(id,))
        return cursor.rowcount > 0

    def mark_remote_synced(self, ids: list[str]) -> None:
        """Flag records as present in the remote vector collection."""
        if not ids:
            return
        placeholders = ",".join("?" * len(ids))
        sql = f"UPDATE records SET remote_synced = 1 WHERE id IN ({placeholders})"
        self._run(sql, lambda c: c.execute(sql, list(ids)), write=True)

    def get_unsynced_records(self, limit: int = 100) -> list[Record]:
        """Records not yet pushed to the remote collection, oldest first."""
        sql = "SELECT * FROM records WHERE remote_synced = 0 ORDER BY timestamp ASC, id ASC LIMIT ?"
        rows = self._run(sql, lambda c: c.execute(sql, (limit,)).fetchall())
        return [_row_to_record(row) for row in rows]

    def count_unsynced(self) -> int:
        sql = "SELECT COUNT(*) FROM records WHERE remote_synced = 0"
        return self._run(sql, lambda c: c.execute(sql).fetchone()[0])

    def record_indexed_file(self, path: str, hash: str, size: int, chunks_count: int = 0,
                            indexed_at: Optional[int] = None) -> None:
        """Remember that a project file was indexed."""
        sql = """
            INSERT OR REPLACE INTO indexed_files (path, hash, indexed_at, size, chunks_count)
            VALUES (?, ?, ?, ?, ?)
        """
        params = (path, hash, indexed_at or now_ms(), int(size), int(chunks_count))
        self._run(sql, lambda c: c.execute(sql, params), write=True)

    # -------------------------------------------------------------------------
    # Read Operations
    # -------------------------------------------------------------------------

    def get_record(self, id: str) -> Optional[Record]:
        cached = self._cache.get(id)
        if cached is not None and time.monotonic() - cached[0] < self._cache_ttl:
            return cached[1]

        generation = self._generation
        sql = "SELECT * FROM records WHERE id = ?"
        row = self._run(sql, lambda c: c.execute(sql, (id,)).fetchone())
        if row is None:
            return None
        record = _row_to_record(row)
        with self._lock:
            # A write committed since the read may have replaced this row
            if generation == self._generation:
                if len(self._cache) >= MAX_CACHE_ENTRIES:
                    self._cache.clear()
                self._cache[id] = (time.monotonic(), record)
        return record

    def search_records_by_text(self, query: str, limit: int = 10) -> list[Record]:
        """Substring match over prompt, result and category, newest first."""
        escaped = query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        pattern = f"%{escaped}%"
        sql = """
            SELECT * FROM records
            WHERE prompt_text LIKE ? ESCAPE '\\'
               OR result_text LIKE ? ESCAPE '\\'
               OR category LIKE ? ESCAPE '\\'
            ORDER BY timestamp DESC
            LIMIT ?
        """
        rows = self._run(sql, lambda c: c.execute(sql, (pattern, pattern, pattern, limit)).fetchall())
        return [_row_to_record(row) for row in rows]

    def get_all_records(self, limit: int = 10000) -> list[Record]:
        sql = "SELECT * FROM records ORDER BY timestamp ASC LIMIT ?"
        rows = self._run(sql, lambda c: c.execute(sql, (limit,)).fetchall())
        return [_row_to_record(row) for row in rows]

    def get_history(self, session_id: Optional[str] = None, limit: int = 50,
                    offset: int = 0) -> list[Record]:
        """One page of records, newest first, optionally for one session."""
        if session_id is None:
            sql = "SELECT * FROM records ORDER BY timestamp DESC, id ASC LIMIT ? OFFSET ?"
            params: tuple = (limit, offset)
        else:
            sql = """
                SELECT * FROM records WHERE session_id = ?
                ORDER BY timestamp DESC, id ASC LIMIT ? OFFSET ?
            """
            params = (session_id, limit, offset)
        rows = self._run(sql, lambda c: c.execute(sql, params).fetchall())
        return [_row_to_record(row) for row in rows]

    def get_indexed_file(self, path: str) -> Optional[dict[str, Any]]:
        sql = "SELECT * FROM indexed_files WHERE path = ?"
        row = self._run(sql, lambda c: c.execute(sql, (path,)).fetchone())
        if row is None:
            return None
        return {
            "path": row["path"],
            "hash": row["hash"],
            "indexed_at": row["indexed_at"],
            "size": row["size"],
            "chunks_count": row["chunks_count"],
        }

    def count(self) -> int:
        sql = "SELECT COUNT(*) FROM records"
        return self._run(sql, lambda c: c.execute(sql).fetchone()[0])

    def get_stats(self) -> dict[str, Any]:
        """Record counts, time range and database size."""
        sql = "SELECT COUNT(*), MIN(timestamp), MAX(timestamp) FROM records"
        row = self._run(sql, lambda c: c.execute(sql).fetchone())
        files_sql = "SELECT COUNT(*) FROM indexed_files"
        files = self._run(files_sql, lambda c: c.execute(files_sql).fetchone()[0])
        unsynced = self.count_unsynced()
        try:
            size = self._db_path.stat().st_size
        except OSError:
            size = 0
        return {
            "total_records": row[0],
            "oldest": row[1],
            "newest": row[2],
            "indexed_files": files,
            "unsynced_records": unsynced,
            "db_size_bytes": size,
            "db_path": str(self._db_path),
        }

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
        self._cache.clear()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


def _encode_embedding(embedding: Optional[list[float]]) -> Optional[bytes]:
    if embedding is None:
        return None
    return array("f", embedding).tobytes()


def _decode_embedding(blob: Optional[bytes]) -> Optional[list[float]]:
    if not blob:
        return None
    values = array("f")
    values.frombytes(blob)
    return values.tolist()


def _context_to_dict(context: RecordContext) -> dict[str, Any]:
    return {
        "cwd": context.cwd,
        "platform": context.platform,
        "environment": context.environment,
        "tools_available": context.tools_available,
        "files": context.files,
    }


def _row_to_record(row: sqlite3.Row) -> Record:
    ctx = json.loads(row["context_json"] or "{}")
    return Record(
        id=row["id"],
        timestamp=row["timestamp"],
        session_id=row["session_id"],
        prompt_text=row["prompt_text"],
        prompt_type=row["prompt_type"],
        result_text=row["result_text"],
        context=RecordContext(
            cwd=ctx.get("cwd") or "",
            platform=ctx.get("platform") or "",
            environment=ctx.get("environment") or {},
            tools_available=ctx.get("tools_available") or [],
            files=ctx.get("files") or [],
        ),
        success=bool(row["success"]),
        error=row["error"],
        duration=row["duration"],
        tools_used=json.loads(row["tools_used_json"] or "[]"),
        tags=set(json.loads(row["tags_json"] or "[]")),
        category=row["category"],
        embedding=_decode_embedding(row["embedding"]),
    )
