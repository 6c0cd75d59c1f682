"""REST API for the recording index.

Provides the search and statistics endpoints used by the recordings site,
plus a background reindex trigger and a health check.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from aiohttp import web

from cast_index.search import QueryError, SearchRequest, build_search_response

if TYPE_CHECKING:
    from cast_index.indexer import CastIndexer, IndexReport
    from cast_index.search import QueryEngine

logger = logging.getLogger(__name__)


@dataclass
class IndexAPI:
    """REST API handler for the recording index.

    Handlers only read committed state through the QueryEngine; reindexing
    runs through the CastIndexer in a background task.
    """

    query_engine: QueryEngine
    indexer: CastIndexer | None = None

    last_report: IndexReport | None = field(default=None, repr=False)
    _refresh_task: asyncio.Task | None = field(default=None, repr=False)
    _start_time: float = field(default_factory=time.time, repr=False)

    async def handle_search(self, request: web.Request) -> web.Response:
        """Handle GET /api/search - full-text search over recordings.

        Query Parameters:
            query (or q): Search text (required)
            tags: Comma-separated tags, any of which must match (optional)
            dateFrom / dateTo: YYYY-MM-DD bounds, inclusive (optional)
            limit: Results per page (max: 200, default: 50)
            page: 1-based page number (default: 1)
            timeWindow: Deduplication window in minutes, 0 disables (default: 10)

        Response 200:
            {
                "results": [
                    {
                        "text": "...",
                        "artifactFilename": "asciinema_2024-01-15_10-30-00_tags_work.cast",
                        "date": "2024-01-15",
                        "time": "10:30:00",
                        "timeOffsetSeconds": 12.5,
                        "tags": ["work"]
                    }
                ],
                "total": 1,
                "page": 1,
                "totalPages": 1,
                "hasMore": false
            }

        Response 400: Missing or malformed query
        """
        try:
            search_request = SearchRequest.from_params(request.query)
            page = await self.query_engine.search(
                search_request.query, search_request.to_options()
            )
        except QueryError as e:
            return web.json_response({"error": str(e)}, status=400)

        return web.json_response(build_search_response(search_request, page))

    async def handle_index_stats(self, request: web.Request) -> web.Response:
        """Handle GET /api/index/stats - index statistics.

        Response 200:
            {
                "totalFiles": 12,
                "indexedFiles": 11,
                "strategies": {"basic": {"version": "1.0.0", "count": 11}},
                "indexerVersion": "1.2.0",
                "schemaVersion": "1.1.0"
            }
        """
        stats = await self.query_engine.get_index_stats()
        return web.json_response(stats.to_dict())

    async def handle_index_refresh(self, request: web.Request) -> web.Response:
        """Handle POST /api/index/refresh - start a reindex pass.

        Response 202:
            {"status": "started", "message": "Index refresh started"}

        Response 409: A pass is already running
        Response 503: No indexer configured
        """
        if self.indexer is None:
            return web.json_response({"error": "Indexing not available"}, status=503)

        if self.indexer.is_running or (
            self._refresh_task is not None and not self._refresh_task.done()
        ):
            return web.json_response({"error": "Index refresh already running"}, status=409)

        self._refresh_task = asyncio.create_task(self._do_index_refresh())

        return web.json_response(
            {"status": "started", "message": "Index refresh started"},
            status=202,
        )

    async def _do_index_refresh(self) -> None:
        """Perform a reindex pass in the background."""
        if self.indexer is None:
            return
        try:
            self.last_report = await self.indexer.run_all()
        except Exception as e:
            logger.error(f"Background index refresh failed: {e}")

    async def cancel_refresh(self) -> None:
        """Cancel a running background refresh and wait for it to roll back."""
        task = self._refresh_task
        if task is None or task.done():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.info("Background index refresh cancelled")

    async def handle_health(self, request: web.Request) -> web.Response:
        """Handle GET /health - health check with index status.

        Response 200:
            {
                "status": "healthy",
                "uptime_seconds": 3600,
                "indexing": false,
                "fts_enabled": true,
                "last_refresh": {...}  # IndexReport, null before the first pass
            }
        """
        return web.json_response({
            "status": "healthy",
            "uptime_seconds": int(time.time() - self._start_time),
            "indexing": self.indexer.is_running if self.indexer else False,
            "fts_enabled": self.query_engine.store.fts_available,
            "last_refresh": self.last_report.to_dict() if self.last_report else None,
        })

    def create_app(self) -> web.Application:
        """Create and configure the aiohttp web application.

        Returns:
            Configured aiohttp Application with all routes registered.
        """
        app = web.Application()

        app.router.add_get("/health", self.handle_health)
        app.router.add_get("/api/search", self.handle_search)
        app.router.add_get("/api/index/stats", self.handle_index_stats)
        app.router.add_post("/api/index/refresh", self.handle_index_refresh)

        return app
