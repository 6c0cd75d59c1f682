"""Tests for recording discovery and the transactional indexer."""

from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone
from pathlib import Path

from cast_index.config import IndexerConfig
from cast_index.indexer import (
    CastIndexer,
    ProcessStatus,
    discover_cast_files,
    find_latest_recording,
)
from cast_index.search import QueryEngine, SearchOptions
from cast_index.store import INDEXER_VERSION_KEY, IndexStore
from cast_index.strategies import Strategy, StrategyKind, StrategyRegistry

T0 = datetime(2024, 1, 15, 10, 0, 0, tzinfo=timezone.utc)

EVENTS = [
    [0.5, "o", "\x1b[32m$\x1b[0m make build\r\n"],
    [1.0, "i", "make test\r"],
    [2.0, "o", "error: disk full\r\n"],
]


async def _fetch(store: IndexStore, sql: str, params: tuple = ()) -> list:
    async with store.snapshot() as conn:
        async with conn.execute(sql, params) as cursor:
            return list(await cursor.fetchall())


async def _fragment_texts(store: IndexStore) -> list[str]:
    rows = await _fetch(store, "SELECT text FROM fragments ORDER BY time_offset")
    return [row["text"] for row in rows]


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------


class TestDiscovery:
    def test_finds_plain_and_compressed(self, write_recording, casts_dir: Path, zip_dir: Path):
        write_recording(T0, EVENTS)
        write_recording(T0 + timedelta(hours=1), EVENTS, compressed=True)
        (casts_dir / "notes.txt").write_text("ignored")
        (casts_dir / "random.cast").write_text("ignored")

        files = discover_cast_files(casts_dir, zip_dir)

        assert [f.compressed for f in files] == [False, True]
        assert files[1].filename == "asciinema_2024-01-15_11-00-00.cast"
        assert files[1].logical_path == casts_dir / "asciinema_2024-01-15_11-00-00.cast"

    def test_plain_copy_wins_over_compressed(self, write_recording, casts_dir: Path, zip_dir: Path):
        plain = write_recording(T0, EVENTS)
        write_recording(T0, EVENTS, compressed=True)

        files = discover_cast_files(casts_dir, zip_dir)

        assert len(files) == 1
        assert files[0].source_path == plain
        assert files[0].compressed is False

    def test_missing_directories(self, tmp_path: Path):
        assert discover_cast_files(tmp_path / "nope", tmp_path / "nope" / "zip") == []

    def test_ordered_by_start_time(self, write_recording, casts_dir: Path, zip_dir: Path):
        write_recording(T0 + timedelta(days=1), EVENTS)
        write_recording(T0, EVENTS, compressed=True)
        write_recording(T0 + timedelta(hours=2), EVENTS)

        files = discover_cast_files(casts_dir, zip_dir)

        assert [f.name.started_at for f in files] == [
            T0,
            T0 + timedelta(hours=2),
            T0 + timedelta(days=1),
        ]

    def test_latest_is_most_recently_modified_plain(
        self, write_recording, casts_dir: Path, zip_dir: Path
    ):
        write_recording(T0 + timedelta(days=2), EVENTS, compressed=True, mtime=3_000_000)
        newest_plain = write_recording(T0, EVENTS, mtime=2_000_000)
        write_recording(T0 + timedelta(days=1), EVENTS, mtime=1_000_000)

        latest = find_latest_recording(discover_cast_files(casts_dir, zip_dir))

        assert latest.source_path == newest_plain


# ---------------------------------------------------------------------------
# Processing
# ---------------------------------------------------------------------------


class TestRunAll:
    async def test_indexes_recordings(self, indexer: CastIndexer, store: IndexStore, write_recording):
        write_recording(T0, EVENTS, tags=["work"])

        report = await indexer.run_all()

        assert report.discovered == 1
        assert report.indexed == 1
        assert report.failed == []
        assert report.fragments_written == 3
        assert await _fragment_texts(store) == ["$ make build\n", "make test", "error: disk full\n"]

        rows = await _fetch(store, "SELECT completed, duration_seconds FROM artifacts")
        assert rows[0]["completed"] == 1
        assert rows[0]["duration_seconds"] == 2.0

    async def test_fragments_carry_recording_metadata(
        self, indexer: CastIndexer, store: IndexStore, write_recording
    ):
        write_recording(T0, EVENTS, tags=["work", "demo"])

        await indexer.run_all()

        rows = await _fetch(store, "SELECT artifact_timestamp, tags FROM fragments")
        assert {row["artifact_timestamp"] for row in rows} == {int(T0.timestamp() * 1000)}
        assert {row["tags"] for row in rows} == {"work, demo"}

    async def test_second_pass_writes_nothing(
        self, indexer: CastIndexer, store: IndexStore, write_recording
    ):
        write_recording(T0, EVENTS)
        write_recording(T0 + timedelta(hours=1), EVENTS, compressed=True)
        await indexer.run_all()
        before = await _fetch(store, "SELECT strategy_id, completed_at FROM strategy_applications ORDER BY id")

        report = await indexer.run_all()

        assert report.indexed == 0
        assert report.up_to_date == 2
        assert report.fragments_written == 0
        after = await _fetch(store, "SELECT strategy_id, completed_at FROM strategy_applications ORDER BY id")
        assert [tuple(r) for r in after] == [tuple(r) for r in before]

    async def test_changed_recording_is_reindexed(
        self, indexer: CastIndexer, store: IndexStore, write_recording
    ):
        path = write_recording(T0, EVENTS, mtime=1_000_000)
        await indexer.run_all()

        write_recording(T0, [[0.1, "o", "completely new output"]], mtime=2_000_000)
        report = await indexer.run_all()

        assert report.indexed == 1
        assert await _fragment_texts(store) == ["completely new output"]
        rows = await _fetch(store, "SELECT mtime_ns, completed FROM artifacts")
        assert rows[0]["mtime_ns"] == path.stat().st_mtime_ns
        assert rows[0]["completed"] == 1

    async def test_untouched_recordings_keep_fragments(
        self, indexer: CastIndexer, store: IndexStore, write_recording
    ):
        write_recording(T0, EVENTS, mtime=1_000_000)
        write_recording(T0 + timedelta(hours=1), EVENTS, mtime=1_000_000)
        await indexer.run_all()
        sql = "SELECT id, text, time_offset FROM fragments WHERE artifact_timestamp = ? ORDER BY id"
        untouched = int((T0 + timedelta(hours=1)).timestamp() * 1000)
        before = [tuple(r) for r in await _fetch(store, sql, (untouched,))]

        write_recording(T0, [[0.1, "o", "rewritten"]], mtime=2_000_000)
        report = await indexer.run_all()

        assert report.indexed == 1
        assert [tuple(r) for r in await _fetch(store, sql, (untouched,))] == before

    async def test_failure_rolls_back_and_continues(
        self, indexer: CastIndexer, store: IndexStore, write_recording, zip_dir: Path
    ):
        write_recording(T0, EVENTS)
        zip_dir.mkdir(parents=True, exist_ok=True)
        broken = zip_dir / "asciinema_2024-01-15_11-00-00.cast.gz"
        broken.write_bytes(b"not gzip at all")

        report = await indexer.run_all()

        assert report.indexed == 1
        assert len(report.failed) == 1
        assert report.failed[0].filename == "asciinema_2024-01-15_11-00-00.cast"
        rows = await _fetch(store, "SELECT filename FROM artifacts")
        assert [row["filename"] for row in rows] == ["asciinema_2024-01-15_10-00-00.cast"]

    async def test_failure_keeps_previous_fragments(
        self, indexer: CastIndexer, store: IndexStore, write_recording
    ):
        path = write_recording(T0, EVENTS, compressed=True)
        await indexer.run_all()

        path.write_bytes(b"truncated")
        report = await indexer.run_all()

        assert len(report.failed) == 1
        assert len(await _fragment_texts(store)) == 3
        rows = await _fetch(store, "SELECT completed FROM artifacts")
        assert rows[0]["completed"] == 1

    async def test_plain_and_compressed_copies_index_once(
        self, indexer: CastIndexer, store: IndexStore, write_recording
    ):
        plain = write_recording(T0, EVENTS)
        write_recording(T0, EVENTS, compressed=True)

        report = await indexer.run_all()

        assert report.discovered == 1
        rows = await _fetch(store, "SELECT source_path FROM artifacts")
        assert [row["source_path"] for row in rows] == [str(plain)]

    async def test_missing_directories(self, store: IndexStore, tmp_path: Path):
        config = IndexerConfig()
        config.paths.casts_dir = tmp_path / "missing"
        config.paths.state_dir = tmp_path / "state"

        report = await CastIndexer(store, config).run_all()

        assert report.discovered == 0
        assert report.failed == []

    async def test_skip_latest(self, store: IndexStore, config: IndexerConfig, write_recording):
        config.skip_latest = True
        write_recording(T0, EVENTS, mtime=1_000_000)
        write_recording(T0 + timedelta(hours=1), EVENTS, mtime=2_000_000)

        report = await CastIndexer(store, config).run_all()

        assert report.indexed == 1
        assert report.skipped_latest == "asciinema_2024-01-15_11-00-00.cast"

    async def test_non_finite_offset_line_is_skipped(
        self, indexer: CastIndexer, store: IndexStore, write_recording
    ):
        write_recording(T0, [[float("nan"), "o", "bad line"], [1.0, "o", "good line"]])

        report = await indexer.run_all()

        assert report.failed == []
        assert report.indexed == 1
        assert await _fragment_texts(store) == ["good line"]

    async def test_records_indexer_version(self, store: IndexStore, config: IndexerConfig):
        config.version = "2.1.0"

        await CastIndexer(store, config).run_all()

        assert await store.get_version(INDEXER_VERSION_KEY) == "2.1.0"


class TestStrategies:
    async def test_version_bump_reapplies(
        self, store: IndexStore, config: IndexerConfig, write_recording
    ):
        write_recording(T0, EVENTS)
        await CastIndexer(store, config).run_all()

        bumped = StrategyRegistry([Strategy("basic", "Basic", "2.0.0")])
        report = await CastIndexer(store, config, bumped).run_all()

        assert report.indexed == 1
        rows = await _fetch(
            store, "SELECT strategy_version FROM strategy_applications ORDER BY strategy_version"
        )
        assert [row["strategy_version"] for row in rows] == ["1.0.0", "2.0.0"]

    async def test_output_only_strategy(
        self, store: IndexStore, config: IndexerConfig, write_recording
    ):
        config.current_strategies = ["output"]
        write_recording(T0, EVENTS)

        await CastIndexer(store, config).run_all()

        assert "make test" not in await _fragment_texts(store)

    async def test_explicit_strategies_argument(
        self, indexer: CastIndexer, store: IndexStore, write_recording
    ):
        write_recording(T0, EVENTS)
        only_input = Strategy("keys", "Keys", "1.0.0", StrategyKind.INPUT)

        report = await indexer.run_all([only_input])

        assert report.strategies == ["keys"]
        assert await _fragment_texts(store) == ["make test"]

    async def test_process_reports_status(
        self, indexer: CastIndexer, casts_dir: Path, zip_dir: Path, write_recording
    ):
        write_recording(T0, EVENTS)
        cast_file = discover_cast_files(casts_dir, zip_dir)[0]
        strategy = indexer.registry.get("basic")

        first = await indexer.process(cast_file, strategy)
        second = await indexer.process(cast_file, strategy)

        assert first.status is ProcessStatus.INDEXED
        assert first.fragments == 3
        assert second.status is ProcessStatus.UP_TO_DATE
        assert second.success is True

    async def test_process_missing_file_fails(
        self, indexer: CastIndexer, casts_dir: Path, zip_dir: Path, write_recording
    ):
        path = write_recording(T0, EVENTS)
        cast_file = discover_cast_files(casts_dir, zip_dir)[0]
        os.remove(path)

        result = await indexer.process(cast_file, indexer.registry.get("basic"))

        assert result.status is ProcessStatus.FAILED
        assert result.success is False
        assert result.error

    async def test_output_and_input_strategies_coexist(
        self, store: IndexStore, config: IndexerConfig, write_recording
    ):
        config.current_strategies = ["output", "input"]
        write_recording(T0, EVENTS)
        indexer = CastIndexer(store, config)
        await indexer.run_all()

        report = await indexer.run_all()

        assert report.indexed == 0
        assert report.up_to_date == 2
        engine = QueryEngine(store)
        assert (await engine.search("disk", SearchOptions(time_window_minutes=0))).total == 1
        assert (await engine.search("test", SearchOptions(time_window_minutes=0))).total == 1

    async def test_overlapping_strategies_return_one_hit(
        self, store: IndexStore, config: IndexerConfig, write_recording
    ):
        config.current_strategies = ["basic", "output"]
        write_recording(T0, EVENTS)

        report = await CastIndexer(store, config).run_all()

        assert report.fragments_written == 5
        page = await QueryEngine(store).search("disk", SearchOptions(time_window_minutes=0))
        assert [hit.text for hit in page.results] == ["error: disk full\n"]

    async def test_version_bump_keeps_other_strategies(
        self, store: IndexStore, config: IndexerConfig, write_recording
    ):
        config.current_strategies = ["output", "input"]
        write_recording(T0, EVENTS)
        await CastIndexer(store, config).run_all()

        bumped = StrategyRegistry(
            [
                Strategy("output", "Output", "1.0.0", StrategyKind.OUTPUT),
                Strategy("input", "Input", "2.0.0", StrategyKind.INPUT),
            ]
        )
        report = await CastIndexer(store, config, bumped).run_all()

        assert report.indexed == 1
        assert report.up_to_date == 1
        assert sorted(await _fragment_texts(store)) == [
            "$ make build\n",
            "error: disk full\n",
            "make test",
        ]
