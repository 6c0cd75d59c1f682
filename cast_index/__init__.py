"""cast-index - full-text search over terminal session recordings."""

from cast_index.api import IndexAPI
from cast_index.catalog import ArtifactCatalog, ArtifactRecord, FileStats
from cast_index.config import (
    ConfigError,
    ConfigManager,
    IndexerConfig,
    PathsConfig,
    StrategyDefinition,
    apply_env_overrides,
)
from cast_index.extractor import iter_fragments, load_cast_events, strip_control_sequences
from cast_index.filename import CastName, parse_cast_filename, split_tags
from cast_index.indexer import CastIndexer, IndexReport, discover_cast_files
from cast_index.search import (
    IndexStats,
    QueryEngine,
    QueryError,
    SearchHit,
    SearchOptions,
    SearchPage,
    SearchRequest,
    build_fts_query,
)
from cast_index.store import IndexStore, Transaction
from cast_index.strategies import BUILTIN_STRATEGIES, Strategy, StrategyKind, StrategyRegistry

__version__ = "0.1.0"

__all__ = [
    # Naming and extraction
    "CastName",
    "parse_cast_filename",
    "split_tags",
    "strip_control_sequences",
    "load_cast_events",
    "iter_fragments",
    # Strategies
    "Strategy",
    "StrategyKind",
    "StrategyRegistry",
    "BUILTIN_STRATEGIES",
    # Configuration
    "ConfigError",
    "ConfigManager",
    "IndexerConfig",
    "PathsConfig",
    "StrategyDefinition",
    "apply_env_overrides",
    # Storage and catalog
    "IndexStore",
    "Transaction",
    "ArtifactCatalog",
    "ArtifactRecord",
    "FileStats",
    # Indexing
    "CastIndexer",
    "IndexReport",
    "discover_cast_files",
    # Search
    "QueryEngine",
    "QueryError",
    "SearchOptions",
    "SearchHit",
    "SearchPage",
    "SearchRequest",
    "IndexStats",
    "build_fts_query",
    # API
    "IndexAPI",
]
