"""Shared test fixtures for cast-index."""

from __future__ import annotations

import gzip
import json
import os
from collections.abc import Sequence
from datetime import datetime
from pathlib import Path

import pytest

from cast_index.config import IndexerConfig, PathsConfig
from cast_index.indexer import CastIndexer
from cast_index.store import IndexStore


# ---------------------------------------------------------------------------
# Recording helpers
# ---------------------------------------------------------------------------


DEFAULT_HEADER = {"version": 2, "width": 80, "height": 24}


def cast_filename(started_at: datetime, tags: Sequence[str] = ()) -> str:
    """Build a recording filename following the naming convention."""
    name = f"asciinema_{started_at:%Y-%m-%d_%H-%M-%S}"
    if tags:
        name += "_tags_" + "-".join(tags)
    return name + ".cast"


def make_cast_content(events: list, header: dict | None = None) -> str:
    """Serialize a header and events as line-delimited JSON."""
    lines = [json.dumps(header if header is not None else DEFAULT_HEADER)]
    lines.extend(json.dumps(event) for event in events)
    return "\n".join(lines) + "\n"


def write_cast(
    directory: Path,
    filename: str,
    events: list,
    *,
    header: dict | None = None,
    compressed: bool = False,
    mtime: float | None = None,
) -> Path:
    """Write a recording to disk.

    Args:
        directory: Target directory (created if needed).
        filename: Logical filename; ``.gz`` is appended when compressed.
        events: Event records, e.g. ``[[0.5, "o", "hello"]]``.
        header: Header record. Defaults to a minimal v2 header.
        compressed: Write a gzip-compressed copy.
        mtime: Modification time to set, in epoch seconds.

    Returns:
        Path of the written file.
    """
    directory.mkdir(parents=True, exist_ok=True)
    data = make_cast_content(events, header).encode("utf-8")
    if compressed:
        path = directory / (filename + ".gz")
        path.write_bytes(gzip.compress(data))
    else:
        path = directory / filename
        path.write_bytes(data)
    if mtime is not None:
        os.utime(path, (mtime, mtime))
    return path


# ---------------------------------------------------------------------------
# Directory fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def casts_dir(tmp_path: Path) -> Path:
    """Temporary directory for plain recordings."""
    casts = tmp_path / "casts"
    casts.mkdir()
    return casts


@pytest.fixture
def zip_dir(casts_dir: Path) -> Path:
    """Compressed recordings directory (not created)."""
    return casts_dir / "zip"


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    """Temporary state directory for the index database."""
    state = tmp_path / "state"
    state.mkdir()
    return state


@pytest.fixture
def config(casts_dir: Path, state_dir: Path) -> IndexerConfig:
    """Indexer configuration pointing at the temporary directories.

    skip_latest is off so every written recording is indexed.
    """
    return IndexerConfig(
        version="1.0.0",
        paths=PathsConfig(casts_dir=casts_dir, state_dir=state_dir),
        skip_latest=False,
    )


# ---------------------------------------------------------------------------
# Store fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
async def store(state_dir: Path) -> IndexStore:
    """Initialized IndexStore."""
    index_store = IndexStore(state_dir)
    await index_store.initialize()
    yield index_store
    await index_store.close()


@pytest.fixture
async def store_no_fts(state_dir: Path) -> IndexStore:
    """IndexStore with FTS5 disabled.

    Use this for testing LIKE fallback behavior.
    """
    index_store = IndexStore(state_dir)
    index_store._fts_available = False
    await index_store.initialize()
    yield index_store
    await index_store.close()


@pytest.fixture
def indexer(store: IndexStore, config: IndexerConfig) -> CastIndexer:
    return CastIndexer(store, config)


# ---------------------------------------------------------------------------
# Recording factory fixture
# ---------------------------------------------------------------------------


@pytest.fixture
def write_recording(casts_dir: Path, zip_dir: Path):
    """Factory for writing recordings into the temporary directories.

    Usage:
        path = write_recording(started_at, [[0.5, "o", "hello"]])
        path = write_recording(started_at, events, tags=["work"], compressed=True)

    Compressed recordings go to zip_dir, plain ones to casts_dir.
    """

    def _write(
        started_at: datetime,
        events: list,
        *,
        tags: Sequence[str] = (),
        compressed: bool = False,
        header: dict | None = None,
        mtime: float | None = None,
    ) -> Path:
        return write_cast(
            zip_dir if compressed else casts_dir,
            cast_filename(started_at, tags),
            events,
            header=header,
            compressed=compressed,
            mtime=mtime,
        )

    return _write
