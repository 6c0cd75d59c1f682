"""Full-text queries over indexed recordings.

This module provides:
- QueryEngine: Runs filtered, time-window deduplicated, paginated searches
  and reports index statistics
- Query building: Turns user text into a safe FTS5 expression
- SearchRequest: Validates the query API parameters and shapes responses

Only fragments of completed recordings are ever returned.
"""

from __future__ import annotations

import logging
import math
import sqlite3
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date
from typing import TYPE_CHECKING, Any

from cast_index.filename import split_tags
from cast_index.store import INDEXER_VERSION_KEY, SCHEMA_VERSION_KEY

if TYPE_CHECKING:
    import aiosqlite

    from cast_index.store import IndexStore

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 50
MAX_LIMIT = 200
DEFAULT_TIME_WINDOW = 10  # minutes


class QueryError(ValueError):
    """Raised for empty or malformed queries and search parameters."""


# ---------------------------------------------------------------------------
# Data Classes
# ---------------------------------------------------------------------------


@dataclass
class SearchOptions:
    """Filters and paging for a search."""

    tags: list[str] = field(default_factory=list)
    date_from: str | None = None
    date_to: str | None = None
    limit: int = DEFAULT_LIMIT
    offset: int = 0
    time_window_minutes: int = DEFAULT_TIME_WINDOW


@dataclass
class SearchHit:
    """One matching fragment."""

    text: str
    artifact_filename: str
    date: str | None
    time: str | None
    time_offset_seconds: float
    tags: list[str]
    artifact_timestamp: int | None

    @classmethod
    def from_row(cls, row: aiosqlite.Row) -> SearchHit:
        return cls(
            text=row["text"],
            artifact_filename=row["filename"],
            date=row["date"],
            time=row["time"],
            time_offset_seconds=row["time_offset"],
            tags=split_tags(row["tags"]),
            artifact_timestamp=row["artifact_timestamp"],
        )

    def to_dict(self) -> dict:
        """Serialize for the query API."""
        return {
            "text": self.text,
            "artifactFilename": self.artifact_filename,
            "date": self.date,
            "time": self.time,
            "timeOffsetSeconds": self.time_offset_seconds,
            "tags": self.tags,
        }


@dataclass
class SearchPage:
    """A page of results and the size of the whole result set."""

    results: list[SearchHit]
    total: int


@dataclass
class IndexStats:
    """Aggregate index statistics."""

    total_artifacts: int
    completed_artifacts: int
    strategies: dict[str, dict] = field(default_factory=dict)
    indexer_version: str = "unknown"
    schema_version: str = "unknown"

    def to_dict(self) -> dict:
        """Serialize for the stats API."""
        return {
            "totalFiles": self.total_artifacts,
            "indexedFiles": self.completed_artifacts,
            "strategies": self.strategies,
            "indexerVersion": self.indexer_version,
            "schemaVersion": self.schema_version,
        }


# ---------------------------------------------------------------------------
# Query building
# ---------------------------------------------------------------------------


def tokenize_query(query: str) -> list[tuple[str, bool]]:
    """Split a query into words and quoted phrases.

    - 'disk full' -> [("disk", False), ("full", False)]
    - '"disk full"' -> [("disk full", True)]
    - An unclosed quote is treated as a regular word.

    Returns:
        List of (text, is_quoted_phrase) tuples.
    """
    tokens: list[tuple[str, bool]] = []
    current: list[str] = []
    in_quote = False

    for char in query:
        if char == '"':
            if in_quote:
                phrase = "".join(current).strip()
                if phrase:
                    tokens.append((phrase, True))
                current = []
            elif current:
                tokens.append(("".join(current), False))
                current = []
            in_quote = not in_quote
        elif char.isspace() and not in_quote:
            if current:
                tokens.append(("".join(current), False))
                current = []
        else:
            current.append(char)

    if current:
        word = "".join(current).strip()
        if word:
            tokens.append((word, False))

    return tokens


def _quote(text: str) -> str:
    return '"' + text.replace('"', '""') + '"'


def build_fts_query(query: str) -> str:
    """Convert user text into an FTS5 expression.

    Every word and phrase is quoted, so FTS5 operators in user text are
    matched literally; terms are AND-ed. A trailing ``*`` on an unquoted
    word keeps prefix matching.

    Raises:
        QueryError: If nothing searchable remains.
    """
    parts: list[str] = []
    for text, quoted in tokenize_query(query):
        prefix = not quoted and text.endswith("*") and len(text) > 1
        if prefix:
            text = text.rstrip("*")
        if not any(ch.isalnum() for ch in text):
            continue
        parts.append(_quote(text) + ("*" if prefix else ""))

    if not parts:
        raise QueryError(f"Query has no searchable terms: {query!r}")
    return " ".join(parts)


def _like_pattern(term: str) -> str:
    escaped = term.lower().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


# ---------------------------------------------------------------------------
# QueryEngine
# ---------------------------------------------------------------------------


class QueryEngine:
    """Answers searches and statistics requests from committed index state."""

    def __init__(self, store: IndexStore) -> None:
        self.store = store

    def _build_filters(self, query: str, options: SearchOptions) -> tuple[str, list]:
        conditions: list[str] = [
            "a.completed = 1",
            # Overlapping strategies store the same event once each
            """f.id = (
                SELECT MIN(d.id) FROM fragments d
                WHERE d.artifact_id = f.artifact_id
                  AND d.time_offset = f.time_offset
                  AND d.text = f.text
            )""",
        ]
        params: list = []

        if self.store.fts_available:
            conditions.append(
                "f.id IN (SELECT rowid FROM fragments_fts WHERE fragments_fts MATCH ?)"
            )
            params.append(build_fts_query(query))
        else:
            terms = [
                text.rstrip("*")
                for text, _ in tokenize_query(query)
                if any(ch.isalnum() for ch in text)
            ]
            if not terms:
                raise QueryError(f"Query has no searchable terms: {query!r}")
            for term in terms:
                conditions.append("LOWER(f.text) LIKE ? ESCAPE '\\'")
                params.append(_like_pattern(term))

        tags = [t.strip() for t in options.tags if t and t.strip()]
        if tags:
            tag_clauses = " OR ".join("LOWER(f.tags) LIKE ? ESCAPE '\\'" for _ in tags)
            conditions.append(f"({tag_clauses})")
            params.extend(_like_pattern(tag) for tag in tags)

        if options.date_from:
            conditions.append("a.date >= ?")
            params.append(options.date_from)

        if options.date_to:
            conditions.append("a.date <= ?")
            params.append(options.date_to)

        return " AND ".join(conditions), params

    async def search(self, query: str, options: SearchOptions | None = None) -> SearchPage:
        """Search fragment text.

        With a positive time window, matches are bucketed by
        ``floor(artifact_timestamp / window)`` and only the latest match of each
        bucket is kept. Results are ordered newest recording first, then by
        offset within the recording.

        Args:
            query: Search text; words are AND-ed, "quoted phrases" kept.
            options: Filters and paging. Defaults if not provided.

        Returns:
            SearchPage with the requested slice and the total match count.

        Raises:
            QueryError: If the query or options are invalid.
        """
        options = options or SearchOptions()
        if not query or not query.strip():
            raise QueryError("Query text is required")
        if options.limit < 1:
            raise QueryError("limit must be at least 1")
        if options.offset < 0:
            raise QueryError("offset must not be negative")

        where_clause, params = self._build_filters(query, options)

        matches_sql = f"""
            SELECT
                f.id AS id,
                f.text AS text,
                f.artifact_timestamp AS artifact_timestamp,
                f.time_offset AS time_offset,
                f.tags AS tags,
                a.filename AS filename,
                a.date AS date,
                a.time AS time
            FROM fragments f
            JOIN artifacts a ON a.id = f.artifact_id
            WHERE {where_clause}
        """

        if options.time_window_minutes > 0:
            window_ms = int(options.time_window_minutes) * 60 * 1000
            result_sql = f"""
                SELECT * FROM (
                    SELECT m.*, ROW_NUMBER() OVER (
                        PARTITION BY CASE
                            WHEN m.artifact_timestamp >= 0 THEN m.artifact_timestamp / ?
                            ELSE (m.artifact_timestamp + 1) / ? - 1
                        END
                        ORDER BY m.artifact_timestamp DESC, m.time_offset ASC, m.id ASC
                    ) AS bucket_rank
                    FROM ({matches_sql}) m
                )
                WHERE bucket_rank = 1
            """
            params = [window_ms, window_ms, *params]
        else:
            result_sql = matches_sql

        count_sql = f"SELECT COUNT(*) FROM ({result_sql})"
        page_sql = f"""
            SELECT * FROM ({result_sql})
            ORDER BY artifact_timestamp DESC, time_offset ASC, id ASC
            LIMIT ? OFFSET ?
        """

        try:
            async with self.store.snapshot() as conn:
                async with conn.execute(count_sql, params) as cursor:
                    total = (await cursor.fetchone())[0]
                async with conn.execute(page_sql, [*params, options.limit, options.offset]) as cursor:
                    rows = await cursor.fetchall()
        except sqlite3.OperationalError as e:
            if "fts5" in str(e).lower():
                raise QueryError(f"Malformed query: {e}") from e
            raise

        return SearchPage(results=[SearchHit.from_row(row) for row in rows], total=total)

    async def get_index_stats(self) -> IndexStats:
        """Get index statistics.

        Per strategy, the most recently applied version is reported along with
        the number of recordings it was applied to.
        """
        async with self.store.snapshot() as conn:
            async with conn.execute("SELECT COUNT(*) FROM artifacts") as cursor:
                total = (await cursor.fetchone())[0]

            async with conn.execute(
                "SELECT COUNT(*) FROM artifacts WHERE completed = 1"
            ) as cursor:
                completed = (await cursor.fetchone())[0]

            strategies: dict[str, dict] = {}
            async with conn.execute(
                """
                SELECT strategy_id, strategy_version, COUNT(*) AS count,
                       MAX(completed_at) AS last_completed
                FROM strategy_applications
                WHERE completed_at IS NOT NULL
                GROUP BY strategy_id, strategy_version
                ORDER BY last_completed ASC
                """
            ) as cursor:
                for row in await cursor.fetchall():
                    strategies[row["strategy_id"]] = {
                        "version": row["strategy_version"],
                        "count": row["count"],
                    }

            versions: dict[str, str] = {}
            async with conn.execute(
                "SELECT key, value FROM version_markers WHERE key IN (?, ?)",
                (INDEXER_VERSION_KEY, SCHEMA_VERSION_KEY),
            ) as cursor:
                for row in await cursor.fetchall():
                    versions[row["key"]] = row["value"]

        return IndexStats(
            total_artifacts=total,
            completed_artifacts=completed,
            strategies=strategies,
            indexer_version=versions.get(INDEXER_VERSION_KEY, "unknown"),
            schema_version=versions.get(SCHEMA_VERSION_KEY, "unknown"),
        )


# ---------------------------------------------------------------------------
# Query API surface
# ---------------------------------------------------------------------------


def _parse_int(value: Any, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _parse_date(value: Any, name: str) -> str | None:
    if value is None or value == "":
        return None
    if isinstance(value, date):
        return value.isoformat()
    try:
        return date.fromisoformat(str(value)).isoformat()
    except ValueError as e:
        raise QueryError(f"{name} must be a YYYY-MM-DD date, got {value!r}") from e


def _collect_tags(params: Mapping[str, Any]) -> list[str]:
    if hasattr(params, "getall"):
        raw = list(params.getall("tags", [])) + list(params.getall("tag", []))
    else:
        raw = params.get("tags", params.get("tag")) or []
        if isinstance(raw, str):
            raw = [raw]

    tags: list[str] = []
    for value in raw:
        tags.extend(t.strip() for t in str(value).split(",") if t.strip())
    return tags


@dataclass
class SearchRequest:
    """A validated query API request."""

    query: str
    tags: list[str] = field(default_factory=list)
    date_from: str | None = None
    date_to: str | None = None
    limit: int = DEFAULT_LIMIT
    page: int = 1
    offset: int = 0
    time_window: int = DEFAULT_TIME_WINDOW

    @classmethod
    def from_params(cls, params: Mapping[str, Any]) -> SearchRequest:
        """Parse request parameters.

        Accepts ``query`` (or ``q``), ``tags``, ``dateFrom``, ``dateTo``,
        ``limit``, ``page`` (1-based) or ``offset``, and ``timeWindow``.

        Raises:
            QueryError: If the query is missing or a date is malformed.
        """
        query = str(params.get("query") or params.get("q") or "").strip()
        if not query:
            raise QueryError("query is required")

        limit = max(1, min(MAX_LIMIT, _parse_int(params.get("limit"), DEFAULT_LIMIT)))

        if params.get("page") not in (None, ""):
            page = max(1, _parse_int(params.get("page"), 1))
            offset = (page - 1) * limit
        else:
            offset = max(0, _parse_int(params.get("offset"), 0))
            page = offset // limit + 1

        return cls(
            query=query,
            tags=_collect_tags(params),
            date_from=_parse_date(params.get("dateFrom"), "dateFrom"),
            date_to=_parse_date(params.get("dateTo"), "dateTo"),
            limit=limit,
            page=page,
            offset=offset,
            time_window=_parse_int(params.get("timeWindow"), DEFAULT_TIME_WINDOW),
        )

    def to_options(self) -> SearchOptions:
        return SearchOptions(
            tags=self.tags,
            date_from=self.date_from,
            date_to=self.date_to,
            limit=self.limit,
            offset=self.offset,
            time_window_minutes=self.time_window,
        )


def build_search_response(request: SearchRequest, page: SearchPage) -> dict:
    """Shape a search page for the query API."""
    total_pages = math.ceil(page.total / request.limit) if page.total else 0
    return {
        "results": [hit.to_dict() for hit in page.results],
        "total": page.total,
        "page": request.page,
        "totalPages": total_pages,
        "hasMore": request.offset + len(page.results) < page.total,
    }
