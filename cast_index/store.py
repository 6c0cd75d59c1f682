"""SQLite storage for the recording index.

This module provides:
- IndexStore: owns the database file, its connections and schema
- Transaction: the only mutation boundary for catalog, strategy and fragment
  writes

One writer connection runs every mutation inside ``BEGIN IMMEDIATE``
transactions serialized by a lock; a separate reader connection serves
queries from committed snapshots (WAL mode), so searches never block on, or
observe, a half-written recording.

Features:
- Full-text search with FTS5 (graceful fallback to LIKE if unavailable)
- Version markers driving one-time schema migrations
- Foreign keys with cascading deletes from recordings to their rows
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path

import aiosqlite

logger = logging.getLogger(__name__)

DB_FILENAME = "index.db"

SCHEMA_VERSION_KEY = "schema_version"
INDEXER_VERSION_KEY = "indexer_version"


# ---------------------------------------------------------------------------
# SQL Schema Constants
# ---------------------------------------------------------------------------


CORE_SCHEMA = """
-- One row per logical recording
CREATE TABLE IF NOT EXISTS artifacts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    path TEXT NOT NULL UNIQUE,
    source_path TEXT,
    filename TEXT NOT NULL,
    date TEXT,
    time TEXT,
    timestamp INTEGER,
    tags TEXT NOT NULL DEFAULT '',
    size_bytes INTEGER,
    mtime_ns INTEGER,
    registered_at TEXT NOT NULL,
    completed INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_artifacts_date ON artifacts(date);
CREATE INDEX IF NOT EXISTS idx_artifacts_completed ON artifacts(completed);

-- Strategies fully applied to a recording
CREATE TABLE IF NOT EXISTS strategy_applications (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    artifact_id INTEGER NOT NULL REFERENCES artifacts(id) ON DELETE CASCADE,
    strategy_id TEXT NOT NULL,
    strategy_version TEXT NOT NULL,
    completed_at TEXT,
    UNIQUE(artifact_id, strategy_id, strategy_version)
);

-- Process-wide version markers
CREATE TABLE IF NOT EXISTS version_markers (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);

-- Searchable text extracted from recordings
CREATE TABLE IF NOT EXISTS fragments (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    artifact_id INTEGER NOT NULL REFERENCES artifacts(id) ON DELETE CASCADE,
    text TEXT NOT NULL,
    artifact_timestamp INTEGER,
    time_offset REAL NOT NULL,
    tags TEXT NOT NULL DEFAULT ''
);

CREATE INDEX IF NOT EXISTS idx_fragments_artifact ON fragments(artifact_id);
CREATE INDEX IF NOT EXISTS idx_fragments_timestamp ON fragments(artifact_timestamp DESC);
"""

FTS_SCHEMA = """
-- FTS5 virtual table (content-sync mode)
CREATE VIRTUAL TABLE IF NOT EXISTS fragments_fts USING fts5(
    text,
    content='fragments',
    content_rowid='id',
    tokenize='unicode61'
);

-- Fragments are only ever inserted or deleted, never updated
CREATE TRIGGER IF NOT EXISTS fragments_fts_insert
AFTER INSERT ON fragments BEGIN
    INSERT INTO fragments_fts(rowid, text) VALUES (new.id, new.text);
END;

CREATE TRIGGER IF NOT EXISTS fragments_fts_delete
AFTER DELETE ON fragments BEGIN
    INSERT INTO fragments_fts(fragments_fts, rowid, text)
    VALUES ('delete', old.id, old.text);
END;
"""

# Ordered (version, statements). Applied once each, tracked by schema_version.
MIGRATIONS: list[tuple[str, list[str]]] = [
    ("1.0.0", []),
    ("1.1.0", ["ALTER TABLE artifacts ADD COLUMN duration_seconds REAL"]),
    # Fragments are owned by the strategy that wrote them; existing rows are
    # unattributed, so everything is reindexed once.
    (
        "1.2.0",
        [
            "ALTER TABLE fragments ADD COLUMN strategy_id TEXT NOT NULL DEFAULT ''",
            "CREATE INDEX IF NOT EXISTS idx_fragments_strategy ON fragments(artifact_id, strategy_id)",
            "DELETE FROM fragments",
            "DELETE FROM strategy_applications",
            "UPDATE artifacts SET completed = 0",
        ],
    ),
]

SCHEMA_VERSION = MIGRATIONS[-1][0]


def _version_tuple(version: str) -> tuple[int, ...]:
    try:
        return tuple(int(part) for part in version.split("."))
    except ValueError:
        return (0,)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Transaction
# ---------------------------------------------------------------------------


class Transaction:
    """A single open write transaction.

    Obtained from IndexStore.transaction(); every catalog, strategy and
    fragment mutation for one recording goes through one instance.
    """

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn
        self.fragments_written = 0

    async def execute(self, sql: str, params: tuple = ()) -> aiosqlite.Cursor:
        return await self._conn.execute(sql, params)

    async def fetchone(self, sql: str, params: tuple = ()) -> aiosqlite.Row | None:
        async with self._conn.execute(sql, params) as cursor:
            return await cursor.fetchone()

    async def fetchall(self, sql: str, params: tuple = ()) -> list[aiosqlite.Row]:
        async with self._conn.execute(sql, params) as cursor:
            return list(await cursor.fetchall())

    async def delete_fragments(self, artifact_id: int, strategy_id: str | None = None) -> int:
        """Delete a recording's fragments.

        Args:
            artifact_id: Recording id.
            strategy_id: Only delete fragments written by this strategy.
                None deletes every fragment of the recording.

        Returns:
            Number of fragments removed (0 is fine).
        """
        if strategy_id is None:
            cursor = await self._conn.execute(
                "DELETE FROM fragments WHERE artifact_id = ?",
                (artifact_id,),
            )
        else:
            cursor = await self._conn.execute(
                "DELETE FROM fragments WHERE artifact_id = ? AND strategy_id = ?",
                (artifact_id, strategy_id),
            )
        return cursor.rowcount

    async def insert_fragments(
        self,
        rows: Iterable[tuple[int, str, int | None, float, str]],
        strategy_id: str = "",
    ) -> int:
        """Insert fragments.

        Args:
            rows: Tuples of (artifact_id, text, artifact_timestamp,
                time_offset, tags).
            strategy_id: Strategy the fragments were extracted by.

        Returns:
            Number of fragments inserted.
        """
        batch = [(*row, strategy_id) for row in rows]
        if not batch:
            return 0
        await self._conn.executemany(
            """
            INSERT INTO fragments (
                artifact_id, text, artifact_timestamp, time_offset, tags, strategy_id
            )
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            batch,
        )
        self.fragments_written += len(batch)
        return len(batch)


# ---------------------------------------------------------------------------
# IndexStore Class
# ---------------------------------------------------------------------------


class IndexStore:
    """SQLite-backed store for the recording index.

    The database is a CACHE - it can be fully rebuilt from the recordings
    on disk at any time.

    Usage:
        async with IndexStore(Path("state")) as store:
            async with store.transaction() as txn:
                await txn.delete_fragments(artifact_id)
    """

    def __init__(self, state_dir: Path, filename: str = DB_FILENAME) -> None:
        """Initialize the IndexStore.

        Args:
            state_dir: Directory for storing the database file.
            filename: Database filename inside state_dir.
        """
        self.state_dir = Path(state_dir)
        self.db_path = self.state_dir / filename
        self._connection: aiosqlite.Connection | None = None
        self._read_connection: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()
        self._read_lock = asyncio.Lock()
        self._fts_available: bool | None = None

    async def __aenter__(self) -> IndexStore:
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # ================================================================
    # FTS5 Support
    # ================================================================

    @staticmethod
    def _check_fts5_available() -> bool:
        """Check if FTS5 extension is available."""
        try:
            conn = sqlite3.connect(":memory:")
            conn.execute("CREATE VIRTUAL TABLE t USING fts5(x)")
            conn.close()
            return True
        except sqlite3.OperationalError:
            return False

    @property
    def fts_available(self) -> bool:
        """Check if FTS5 is available (cached after first check)."""
        if self._fts_available is None:
            self._fts_available = self._check_fts5_available()
        return self._fts_available

    async def _setup_fts(self) -> None:
        conn = await self._get_connection()
        try:
            await conn.executescript(FTS_SCHEMA)
            logger.info("FTS5 search enabled")
        except sqlite3.OperationalError as e:
            logger.warning(f"Failed to create FTS5 table: {e}")
            self._fts_available = False

    # ================================================================
    # Lifecycle
    # ================================================================

    async def initialize(self) -> None:
        """Open the database and bring its schema up to date.

        Creates the state directory if it doesn't exist, sets pragmas,
        creates tables, applies pending migrations and sets up FTS5 if
        available.
        """
        self.state_dir.mkdir(parents=True, exist_ok=True)

        try:
            await self._initialize_schema()
        except BaseException:
            await self.close()
            raise

        logger.info(f"IndexStore initialized at {self.db_path}")

    async def _initialize_schema(self) -> None:
        conn = await self._get_connection()

        await conn.execute("PRAGMA journal_mode = WAL")
        await conn.execute("PRAGMA busy_timeout = 5000")
        await conn.execute("PRAGMA synchronous = NORMAL")
        await conn.execute("PRAGMA foreign_keys = ON")

        await conn.executescript(CORE_SCHEMA)
        await self._apply_migrations()

        if self.fts_available:
            await self._setup_fts()
        else:
            logger.warning("FTS5 not available - using LIKE fallback for search")
        await self.set_version("fts_available", "1" if self.fts_available else "0")

    async def close(self) -> None:
        """Close both connections."""
        if self._read_connection:
            await self._read_connection.close()
            self._read_connection = None
        if self._connection:
            await self._connection.close()
            self._connection = None
            logger.debug("IndexStore connection closed")

    async def _apply_migrations(self) -> None:
        current = await self.get_version(SCHEMA_VERSION_KEY)
        current_tuple = _version_tuple(current) if current else (0,)

        for version, statements in MIGRATIONS:
            if _version_tuple(version) <= current_tuple:
                continue
            async with self.transaction() as txn:
                for statement in statements:
                    try:
                        await txn.execute(statement)
                    except sqlite3.OperationalError as e:
                        if "duplicate column name" not in str(e):
                            raise
                await txn.execute(
                    """
                    INSERT INTO version_markers (key, value, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
                    """,
                    (SCHEMA_VERSION_KEY, version, utc_now_iso()),
                )
            logger.info(f"Schema migrated to {version}")

    # ================================================================
    # Connection Management
    # ================================================================

    async def _get_connection(self) -> aiosqlite.Connection:
        """Get or create the writer connection (autocommit mode)."""
        if self._connection is None:
            self._connection = await aiosqlite.connect(self.db_path, isolation_level=None)
            self._connection.row_factory = aiosqlite.Row
        return self._connection

    async def _get_read_connection(self) -> aiosqlite.Connection:
        """Get or create the query-only reader connection."""
        if self._read_connection is None:
            conn = await aiosqlite.connect(self.db_path, isolation_level=None)
            conn.row_factory = aiosqlite.Row
            await conn.execute("PRAGMA busy_timeout = 5000")
            await conn.execute("PRAGMA query_only = ON")
            self._read_connection = conn
        return self._read_connection

    async def _begin_with_retry(self, conn: aiosqlite.Connection, max_retries: int = 3) -> None:
        """Start a write transaction, retrying while another writer holds the lock."""
        for attempt in range(max_retries):
            try:
                await conn.execute("BEGIN IMMEDIATE")
                return
            except sqlite3.OperationalError as e:
                if "locked" in str(e).lower() and attempt < max_retries - 1:
                    wait_time = 0.1 * (attempt + 1)
                    logger.debug(
                        f"Database locked, retrying in {wait_time}s "
                        f"(attempt {attempt + 1}/{max_retries})"
                    )
                    await asyncio.sleep(wait_time)
                    continue
                raise

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Transaction]:
        """Run a block as one atomic write.

        Commits when the block exits cleanly; rolls back and re-raises on any
        exception, leaving previously committed state untouched.
        """
        async with self._write_lock:
            conn = await self._get_connection()
            await self._begin_with_retry(conn)
            txn = Transaction(conn)
            try:
                yield txn
            except BaseException:
                await conn.execute("ROLLBACK")
                raise
            else:
                await conn.execute("COMMIT")

    @asynccontextmanager
    async def snapshot(self) -> AsyncIterator[aiosqlite.Connection]:
        """Read from one consistent committed snapshot."""
        async with self._read_lock:
            conn = await self._get_read_connection()
            await conn.execute("BEGIN")
            try:
                yield conn
            finally:
                await conn.execute("COMMIT")

    # ================================================================
    # Version Markers
    # ================================================================

    async def set_version(self, key: str, value: str) -> None:
        """Set a version marker.

        Args:
            key: Marker key (e.g. "indexer_version").
            value: Marker value.
        """
        async with self.transaction() as txn:
            await txn.execute(
                """
                INSERT INTO version_markers (key, value, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
                """,
                (key, value, utc_now_iso()),
            )

    async def get_version(self, key: str) -> str | None:
        """Get a version marker.

        Returns:
            The value if set, None otherwise.
        """
        conn = await self._get_connection()
        async with conn.execute(
            "SELECT value FROM version_markers WHERE key = ?",
            (key,),
        ) as cursor:
            row = await cursor.fetchone()
            return row["value"] if row else None

    # ================================================================
    # Maintenance Operations
    # ================================================================

    async def verify_integrity(self) -> bool:
        """Check database integrity."""
        conn = await self._get_connection()
        async with conn.execute("PRAGMA integrity_check") as cursor:
            result = await cursor.fetchone()
            return result[0] == "ok"

    async def checkpoint(self) -> None:
        """Force WAL checkpoint to reduce WAL file size."""
        conn = await self._get_connection()
        async with self._write_lock:
            await conn.execute("PRAGMA wal_checkpoint(TRUNCATE)")
        logger.info("IndexStore WAL checkpoint completed")
