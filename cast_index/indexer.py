"""Transactional indexer for terminal recordings.

This module provides:
- discover_cast_files: Finds plain and compressed recordings, one per
  logical filename
- CastIndexer: Applies versioned strategies to recordings, one atomic
  transaction per (recording, strategy) pair
- IndexReport: Outcome of a full reindex pass
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, auto
from pathlib import Path

from cast_index.catalog import ArtifactCatalog, FileStats
from cast_index.config import IndexerConfig
from cast_index.extractor import iter_fragments, load_cast_events, read_cast_duration
from cast_index.filename import GZIP_SUFFIX, CastName, logical_filename, parse_cast_filename
from cast_index.store import INDEXER_VERSION_KEY, IndexStore
from cast_index.strategies import Strategy, StrategyRegistry

logger = logging.getLogger(__name__)

CAST_SUFFIX = ".cast"


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------


@dataclass
class CastFile:
    """A recording found on disk."""

    name: CastName
    source_path: Path
    logical_path: Path
    compressed: bool
    stats: FileStats | None

    @property
    def filename(self) -> str:
        """Logical filename (no .gz suffix)."""
        return self.name.filename


def stat_file(path: Path) -> FileStats | None:
    """Stat a file, returning None if it can't be read."""
    try:
        return FileStats.from_stat(path.stat())
    except OSError as e:
        logger.warning(f"Cannot stat {path}: {e}")
        return None


def _scan_directory(
    directory: Path,
    suffix: str,
    casts_dir: Path,
    compressed: bool,
) -> list[CastFile]:
    """List recordings with the given suffix in one directory.

    A missing or unreadable directory yields no recordings.
    """
    if not directory.exists():
        logger.debug(f"Recording directory does not exist: {directory}")
        return []

    found: list[CastFile] = []
    try:
        entries = sorted(directory.iterdir())
    except OSError as e:
        logger.warning(f"Error scanning {directory}: {e}")
        return []

    for entry in entries:
        if not entry.name.endswith(suffix):
            continue
        name = parse_cast_filename(entry.name)
        if name is None:
            logger.debug(f"Ignoring {entry.name}: not a recording filename")
            continue
        found.append(
            CastFile(
                name=name,
                source_path=entry,
                logical_path=casts_dir / logical_filename(entry.name),
                compressed=compressed,
                stats=stat_file(entry),
            )
        )
    return found


def discover_cast_files(casts_dir: Path, zip_dir: Path) -> list[CastFile]:
    """Find every recording, deduplicated by logical filename.

    When both a plain recording and its compressed copy exist, the plain one
    is used.

    Args:
        casts_dir: Directory with plain ``.cast`` recordings.
        zip_dir: Directory with ``.cast.gz`` copies.

    Returns:
        Recordings ordered by start time, oldest first.
    """
    casts_dir = Path(casts_dir)
    by_name: dict[str, CastFile] = {}

    for cast_file in _scan_directory(Path(zip_dir), CAST_SUFFIX + GZIP_SUFFIX, casts_dir, True):
        by_name[cast_file.filename] = cast_file
    for cast_file in _scan_directory(casts_dir, CAST_SUFFIX, casts_dir, False):
        by_name[cast_file.filename] = cast_file

    return sorted(by_name.values(), key=lambda f: (f.name.timestamp, f.filename))


def find_latest_recording(files: list[CastFile]) -> CastFile | None:
    """Most recently modified plain recording, which may still be written."""
    candidates = [f for f in files if not f.compressed and f.stats is not None]
    if not candidates:
        return None
    return max(candidates, key=lambda f: f.stats.mtime_ns)  # type: ignore[union-attr]


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


class ProcessStatus(Enum):
    INDEXED = auto()
    UP_TO_DATE = auto()
    FAILED = auto()


@dataclass
class ProcessResult:
    """Outcome of processing one (recording, strategy) pair."""

    status: ProcessStatus
    fragments: int = 0
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.status is not ProcessStatus.FAILED


@dataclass
class IndexFailure:
    filename: str
    strategy_id: str
    error: str


@dataclass
class IndexReport:
    """Summary of a reindex pass."""

    strategies: list[str] = field(default_factory=list)
    discovered: int = 0
    indexed: int = 0
    up_to_date: int = 0
    failed: list[IndexFailure] = field(default_factory=list)
    fragments_written: int = 0
    skipped_latest: str | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    duration_ms: int = 0

    def record(self, cast_file: CastFile, strategy: Strategy, result: ProcessResult) -> None:
        if result.status is ProcessStatus.INDEXED:
            self.indexed += 1
            self.fragments_written += result.fragments
        elif result.status is ProcessStatus.UP_TO_DATE:
            self.up_to_date += 1
        else:
            self.failed.append(
                IndexFailure(cast_file.filename, strategy.id, result.error or "unknown error")
            )

    def to_dict(self) -> dict:
        """Serialize to dictionary for JSON responses."""
        return {
            "strategies": self.strategies,
            "discovered": self.discovered,
            "indexed": self.indexed,
            "up_to_date": self.up_to_date,
            "failed": [
                {"filename": f.filename, "strategy": f.strategy_id, "error": f.error}
                for f in self.failed
            ],
            "fragments_written": self.fragments_written,
            "skipped_latest": self.skipped_latest,
            "started_at": self.started_at.isoformat(),
            "duration_ms": self.duration_ms,
        }


# ---------------------------------------------------------------------------
# CastIndexer
# ---------------------------------------------------------------------------


class CastIndexer:
    """Keeps the full-text index in sync with recordings on disk.

    Every (recording, strategy) pair is processed in its own transaction:
    register the recording, skip it if already current, otherwise replace
    all of its fragments and record the strategy application. A failure
    rolls the pair back and the pass moves on.
    """

    def __init__(
        self,
        store: IndexStore,
        config: IndexerConfig | None = None,
        registry: StrategyRegistry | None = None,
    ) -> None:
        """Initialize the indexer.

        Args:
            store: Opened IndexStore.
            config: Indexer configuration. Uses defaults if not provided.
            registry: Strategy registry. Built from config if not provided.
        """
        self.store = store
        self.config = config or IndexerConfig()
        self.registry = registry or StrategyRegistry.from_config(self.config)
        self._run_lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        """Whether a reindex pass is in progress."""
        return self._run_lock.locked()

    async def process(self, cast_file: CastFile, strategy: Strategy) -> ProcessResult:
        """Apply one strategy to one recording atomically.

        Never raises: errors roll back the transaction and are returned as a
        FAILED result.

        Args:
            cast_file: The recording to process.
            strategy: The strategy to apply.

        Returns:
            ProcessResult describing what happened.
        """
        filename = cast_file.filename
        stats = stat_file(cast_file.source_path)

        try:
            async with self.store.transaction() as txn:
                catalog = ArtifactCatalog(txn)
                artifact_id = await catalog.register(
                    str(cast_file.logical_path),
                    filename,
                    stats,
                    source_path=str(cast_file.source_path),
                )

                if await catalog.is_up_to_date(artifact_id, strategy.id, strategy.version):
                    logger.debug(
                        f"Skipping {filename} - already indexed with "
                        f"{strategy.id} {strategy.version}"
                    )
                    return ProcessResult(ProcessStatus.UP_TO_DATE)

                logger.info(f"Indexing {filename} with strategy {strategy.id} {strategy.version}")

                await txn.delete_fragments(artifact_id, strategy.id)

                events = load_cast_events(cast_file.source_path, cast_file.compressed)
                timestamp = cast_file.name.timestamp
                tags = cast_file.name.tags_string
                rows = [
                    (artifact_id, text, timestamp, offset, tags)
                    for offset, text in iter_fragments(events, strategy.channels)
                ]
                count = await txn.insert_fragments(rows, strategy_id=strategy.id)

                await catalog.mark_strategy_completed(artifact_id, strategy.id, strategy.version)
                await catalog.mark_completed(artifact_id, read_cast_duration(events))
        except Exception as e:
            logger.error(f"Error indexing {filename} with {strategy.id}: {e}")
            return ProcessResult(ProcessStatus.FAILED, error=str(e) or type(e).__name__)

        logger.info(f"Successfully indexed {filename}: {count} fragments")
        return ProcessResult(ProcessStatus.INDEXED, fragments=count)

    async def run_all(self, strategies: list[Strategy] | None = None) -> IndexReport:
        """Run a full reindex pass.

        Args:
            strategies: Strategies to apply, in order. Defaults to the
                configured active strategies.

        Returns:
            IndexReport for the pass.
        """
        async with self._run_lock:
            start = datetime.now(timezone.utc)

            await self._record_indexer_version()

            if strategies is None:
                strategies = self.registry.resolve(self.config.current_strategies)

            paths = self.config.paths
            files = discover_cast_files(paths.casts_dir, paths.resolved_zip_dir)

            report = IndexReport(
                strategies=[s.id for s in strategies],
                discovered=len(files),
                started_at=start,
            )
            logger.info(
                f"Found {len(files)} recordings "
                f"({sum(f.compressed for f in files)} compressed, "
                f"{sum(not f.compressed for f in files)} plain)"
            )

            if self.config.skip_latest:
                latest = find_latest_recording(files)
                if latest is not None:
                    files = [f for f in files if f is not latest]
                    report.skipped_latest = latest.filename
                    logger.info(f"Skipping {latest.filename}: most recently modified recording")

            for strategy in strategies:
                logger.info(f"Applying strategy: {strategy.name} ({strategy.version})")
                for cast_file in files:
                    result = await self.process(cast_file, strategy)
                    report.record(cast_file, strategy, result)

            end = datetime.now(timezone.utc)
            report.duration_ms = int((end - start).total_seconds() * 1000)

            logger.info(
                f"Index pass complete: {report.indexed} indexed, {report.up_to_date} up to date, "
                f"{len(report.failed)} failed, {report.fragments_written} fragments "
                f"in {report.duration_ms}ms"
            )
            return report

    async def _record_indexer_version(self) -> None:
        current = await self.store.get_version(INDEXER_VERSION_KEY)
        if current != self.config.version:
            logger.info(
                f"Indexer version changed from {current or 'none'} to {self.config.version}"
            )
            await self.store.set_version(INDEXER_VERSION_KEY, self.config.version)
