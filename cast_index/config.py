"""Indexer configuration.

The configuration document is YAML (JSON is accepted too) with the keys
written by the recording workflow::

    version: "1.2.0"
    currentStrategies: [basic]
    indexStrategies:
      - {id: basic, name: Basic full-text, version: "1.0.0"}
    paths:
      casts_dir: public/casts
      zip_dir: public/casts/zip
      state_dir: state
    indexing:
      skip_latest: true
"""

from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

DEFAULT_VERSION = "1.0.0"
DEFAULT_CASTS_DIR = Path("public/casts")
DEFAULT_STATE_DIR = Path("state")

ENV_CASTS_DIR = "CAST_INDEX_CASTS_DIR"
ENV_ZIP_DIR = "CAST_INDEX_ZIP_DIR"
ENV_STATE_DIR = "CAST_INDEX_STATE_DIR"


class ConfigError(ValueError):
    """Raised when the configuration document cannot be used."""


# ---------------------------------------------------------------------------
# Dataclasses
# ---------------------------------------------------------------------------


@dataclass
class StrategyDefinition:
    """A strategy as declared in configuration."""

    id: str
    name: str = ""
    version: str = DEFAULT_VERSION
    kind: str | None = None

    def to_dict(self) -> dict:
        """Serialize to dict for YAML storage."""
        result: dict = {"id": self.id, "name": self.name, "version": self.version}
        if self.kind is not None:
            result["kind"] = self.kind
        return result

    @classmethod
    def from_dict(cls, data: dict) -> StrategyDefinition:
        """Deserialize from dict."""
        if not isinstance(data, dict) or not data.get("id"):
            raise ConfigError(f"Strategy definition needs an id: {data!r}")
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or data["id"]),
            version=str(data.get("version", DEFAULT_VERSION)),
            kind=data.get("kind"),
        )


@dataclass
class PathsConfig:
    """Filesystem locations used by the indexer."""

    casts_dir: Path = DEFAULT_CASTS_DIR
    zip_dir: Path | None = None
    state_dir: Path = DEFAULT_STATE_DIR

    @property
    def resolved_zip_dir(self) -> Path:
        """Compressed recordings live in ``casts_dir/zip`` unless set."""
        return self.zip_dir if self.zip_dir is not None else self.casts_dir / "zip"

    def to_dict(self) -> dict:
        result = {
            "casts_dir": str(self.casts_dir),
            "state_dir": str(self.state_dir),
        }
        if self.zip_dir is not None:
            result["zip_dir"] = str(self.zip_dir)
        return result

    @classmethod
    def from_dict(cls, data: dict) -> PathsConfig:
        zip_dir = data.get("zip_dir")
        return cls(
            casts_dir=Path(data.get("casts_dir", DEFAULT_CASTS_DIR)).expanduser(),
            zip_dir=Path(zip_dir).expanduser() if zip_dir else None,
            state_dir=Path(data.get("state_dir", DEFAULT_STATE_DIR)).expanduser(),
        )


@dataclass
class IndexerConfig:
    """Complete indexer configuration."""

    version: str = DEFAULT_VERSION
    current_strategies: list[str] = field(default_factory=lambda: ["basic"])
    index_strategies: list[StrategyDefinition] = field(default_factory=list)
    paths: PathsConfig = field(default_factory=PathsConfig)
    skip_latest: bool = True

    def to_dict(self) -> dict:
        """Serialize to dict for YAML storage."""
        return {
            "version": self.version,
            "currentStrategies": list(self.current_strategies),
            "indexStrategies": [s.to_dict() for s in self.index_strategies],
            "paths": self.paths.to_dict(),
            "indexing": {"skip_latest": self.skip_latest},
        }

    @classmethod
    def from_dict(cls, data: dict) -> IndexerConfig:
        """Deserialize from dict.

        Raises:
            ConfigError: If a section has the wrong shape.
        """
        current = data.get("currentStrategies", ["basic"])
        if not isinstance(current, list):
            raise ConfigError("currentStrategies must be a list")

        definitions = data.get("indexStrategies") or []
        if not isinstance(definitions, list):
            raise ConfigError("indexStrategies must be a list")

        indexing = data.get("indexing") or {}
        return cls(
            version=str(data.get("version", DEFAULT_VERSION)),
            current_strategies=[str(s) for s in current],
            index_strategies=[StrategyDefinition.from_dict(d) for d in definitions],
            paths=PathsConfig.from_dict(data.get("paths") or {}),
            skip_latest=bool(indexing.get("skip_latest", True)),
        )


def apply_env_overrides(config: IndexerConfig) -> IndexerConfig:
    """Apply path overrides from the environment.

    Args:
        config: Loaded configuration (modified in place).

    Returns:
        The same configuration object.
    """
    if os.environ.get(ENV_CASTS_DIR):
        config.paths.casts_dir = Path(os.environ[ENV_CASTS_DIR]).expanduser()
    if os.environ.get(ENV_ZIP_DIR):
        config.paths.zip_dir = Path(os.environ[ENV_ZIP_DIR]).expanduser()
    if os.environ.get(ENV_STATE_DIR):
        config.paths.state_dir = Path(os.environ[ENV_STATE_DIR]).expanduser()
    return config


# ---------------------------------------------------------------------------
# ConfigManager
# ---------------------------------------------------------------------------


class ConfigManager:
    """Loads and saves the indexer configuration file.

    Writes are atomic (temp file + rename) to prevent corruption.
    """

    def __init__(self, config_path: Path) -> None:
        self._config_path = Path(config_path)

    @property
    def config_path(self) -> Path:
        """Return the configuration file path."""
        return self._config_path

    def load(self) -> IndexerConfig:
        """Load the configuration.

        Returns:
            IndexerConfig with environment overrides applied. Defaults if the
            file doesn't exist or is empty.

        Raises:
            ConfigError: If the file is not valid YAML/JSON or has the wrong
                shape.
        """
        if not self._config_path.exists():
            logger.info(f"No config at {self._config_path}, using defaults")
            return apply_env_overrides(IndexerConfig())

        try:
            with open(self._config_path, encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid config file {self._config_path}: {e}") from e

        if data is None:
            return apply_env_overrides(IndexerConfig())
        if not isinstance(data, dict):
            raise ConfigError(f"Config root must be a mapping: {self._config_path}")

        return apply_env_overrides(IndexerConfig.from_dict(data))

    def save(self, config: IndexerConfig) -> None:
        """Save the configuration using an atomic write.

        Args:
            config: Configuration to persist.
        """
        self._config_path.parent.mkdir(parents=True, exist_ok=True)

        fd, temp_path = tempfile.mkstemp(
            dir=self._config_path.parent,
            prefix=".config_",
            suffix=".yaml.tmp",
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                yaml.safe_dump(config.to_dict(), f, default_flow_style=False, sort_keys=False)
            os.replace(temp_path, self._config_path)
        except Exception:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise
