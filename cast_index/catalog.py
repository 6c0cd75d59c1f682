"""Recording catalog and change detection.

Each logical recording has one catalog row keyed by path. Registering a
recording compares its live size and modification time against the stored
fingerprint; any difference (or a missing side) marks the recording as not
completed and drops its strategy applications, so every strategy is
reapplied on the next processing.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime

import aiosqlite

from cast_index.filename import parse_cast_filename
from cast_index.store import Transaction, utc_now_iso

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FileStats:
    """Size and modification time used to fingerprint a file."""

    size: int
    mtime_ns: int

    @classmethod
    def from_stat(cls, stat: os.stat_result) -> FileStats:
        return cls(size=stat.st_size, mtime_ns=stat.st_mtime_ns)


@dataclass
class ArtifactRecord:
    """A recording as stored in the catalog."""

    id: int
    path: str
    source_path: str | None
    filename: str
    date: str | None
    time: str | None
    timestamp: int | None
    tags: str
    size_bytes: int | None
    mtime_ns: int | None
    duration_seconds: float | None
    registered_at: datetime
    completed: bool

    @classmethod
    def from_row(cls, row: aiosqlite.Row) -> ArtifactRecord:
        """Create from SQLite row."""
        return cls(
            id=row["id"],
            path=row["path"],
            source_path=row["source_path"],
            filename=row["filename"],
            date=row["date"],
            time=row["time"],
            timestamp=row["timestamp"],
            tags=row["tags"],
            size_bytes=row["size_bytes"],
            mtime_ns=row["mtime_ns"],
            duration_seconds=row["duration_seconds"],
            registered_at=datetime.fromisoformat(row["registered_at"]),
            completed=bool(row["completed"]),
        )


def fingerprint_matches(record: ArtifactRecord, stats: FileStats | None) -> bool:
    """Whether a stored fingerprint still matches the live file.

    Missing data on either side counts as a change.
    """
    if stats is None or record.size_bytes is None or record.mtime_ns is None:
        return False
    return record.size_bytes == stats.size and record.mtime_ns == stats.mtime_ns


class ArtifactCatalog:
    """Catalog operations, bound to one open transaction."""

    def __init__(self, txn: Transaction) -> None:
        self._txn = txn

    async def get(self, path: str) -> ArtifactRecord | None:
        row = await self._txn.fetchone("SELECT * FROM artifacts WHERE path = ?", (path,))
        return ArtifactRecord.from_row(row) if row else None

    async def get_by_id(self, artifact_id: int) -> ArtifactRecord | None:
        row = await self._txn.fetchone("SELECT * FROM artifacts WHERE id = ?", (artifact_id,))
        return ArtifactRecord.from_row(row) if row else None

    async def register(
        self,
        path: str,
        filename: str,
        stats: FileStats | None,
        source_path: str | None = None,
    ) -> int:
        """Register a recording or refresh its fingerprint.

        Args:
            path: Logical path of the recording (catalog key).
            filename: Logical filename (no .gz suffix).
            stats: Live file stats, None if the file couldn't be stat'ed.
            source_path: The file variant actually read.

        Returns:
            The recording's id.
        """
        existing = await self.get(path)

        if existing is None:
            return await self._insert(path, filename, stats, source_path)

        if fingerprint_matches(existing, stats):
            return existing.id

        logger.debug(f"{filename} changed since last registration")
        await self._txn.execute(
            """
            UPDATE artifacts
            SET size_bytes = ?, mtime_ns = ?, source_path = ?, registered_at = ?, completed = 0
            WHERE id = ?
            """,
            (
                stats.size if stats else None,
                stats.mtime_ns if stats else None,
                source_path or existing.source_path,
                utc_now_iso(),
                existing.id,
            ),
        )
        await self._txn.execute(
            "DELETE FROM strategy_applications WHERE artifact_id = ?",
            (existing.id,),
        )
        await self._txn.delete_fragments(existing.id)
        return existing.id

    async def _insert(
        self,
        path: str,
        filename: str,
        stats: FileStats | None,
        source_path: str | None,
    ) -> int:
        parsed = parse_cast_filename(filename)
        cursor = await self._txn.execute(
            """
            INSERT INTO artifacts (
                path, source_path, filename, date, time, timestamp, tags,
                size_bytes, mtime_ns, registered_at, completed
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0)
            """,
            (
                path,
                source_path,
                filename,
                parsed.date if parsed else None,
                parsed.time if parsed else None,
                parsed.timestamp if parsed else None,
                parsed.tags_string if parsed else "",
                stats.size if stats else None,
                stats.mtime_ns if stats else None,
                utc_now_iso(),
            ),
        )
        return cursor.lastrowid

    async def is_up_to_date(
        self,
        artifact_id: int,
        strategy_id: str,
        strategy_version: str,
    ) -> bool:
        """Whether a recording's fragments are current for a strategy version.

        True only if the recording is completed and the exact strategy
        version has a completed application.
        """
        row = await self._txn.fetchone(
            "SELECT completed FROM artifacts WHERE id = ?",
            (artifact_id,),
        )
        if row is None or not row["completed"]:
            return False

        row = await self._txn.fetchone(
            """
            SELECT completed_at FROM strategy_applications
            WHERE artifact_id = ? AND strategy_id = ? AND strategy_version = ?
            """,
            (artifact_id, strategy_id, strategy_version),
        )
        return bool(row and row["completed_at"])

    async def mark_strategy_completed(
        self,
        artifact_id: int,
        strategy_id: str,
        strategy_version: str,
    ) -> None:
        await self._txn.execute(
            """
            INSERT INTO strategy_applications (artifact_id, strategy_id, strategy_version, completed_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(artifact_id, strategy_id, strategy_version) DO UPDATE SET
                completed_at = excluded.completed_at
            """,
            (artifact_id, strategy_id, strategy_version, utc_now_iso()),
        )

    async def mark_completed(
        self,
        artifact_id: int,
        duration_seconds: float | None = None,
    ) -> None:
        await self._txn.execute(
            "UPDATE artifacts SET completed = 1, duration_seconds = ? WHERE id = ?",
            (duration_seconds, artifact_id),
        )
