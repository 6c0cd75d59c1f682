"""Versioned indexing strategies.

A strategy kind is a closed set of ways to turn a recording into fragments.
Configuration declares strategy definitions (id, name, version, kind) and an
ordered activation list; bumping a definition's version forces it to be
reapplied to every recording.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from cast_index.config import IndexerConfig, StrategyDefinition

logger = logging.getLogger(__name__)


class StrategyKind(Enum):
    """How a recording's events are turned into fragments."""

    BASIC = "basic"  # every event, control sequences stripped
    OUTPUT = "output"  # terminal output ("o") only
    INPUT = "input"  # keyboard input ("i") only

    @property
    def channels(self) -> frozenset[str] | None:
        """Event channels indexed by this kind (None means all)."""
        return _KIND_CHANNELS[self]


_KIND_CHANNELS: dict[StrategyKind, frozenset[str] | None] = {
    StrategyKind.BASIC: None,
    StrategyKind.OUTPUT: frozenset({"o"}),
    StrategyKind.INPUT: frozenset({"i"}),
}

_KIND_VALUES = frozenset(k.value for k in StrategyKind)


@dataclass(frozen=True)
class Strategy:
    """A resolved, versioned strategy."""

    id: str
    name: str
    version: str
    kind: StrategyKind = StrategyKind.BASIC

    @property
    def channels(self) -> frozenset[str] | None:
        return self.kind.channels


BUILTIN_STRATEGIES: dict[str, Strategy] = {
    "basic": Strategy("basic", "Basic full-text indexing", "1.0.0", StrategyKind.BASIC),
    "output": Strategy("output", "Terminal output only", "1.0.0", StrategyKind.OUTPUT),
    "input": Strategy("input", "Keyboard input only", "1.0.0", StrategyKind.INPUT),
}


def strategy_from_definition(definition: StrategyDefinition) -> Strategy | None:
    """Build a Strategy from a configured definition.

    The kind defaults to the kind named like the id, then to BASIC.

    Returns:
        Strategy, or None if the definition names an unknown kind.
    """
    kind_name = definition.kind
    if kind_name is None:
        kind_name = definition.id if definition.id in _KIND_VALUES else StrategyKind.BASIC.value

    try:
        kind = StrategyKind(kind_name)
    except ValueError:
        logger.warning(
            f"Strategy {definition.id} declares unknown kind '{kind_name}', ignoring"
        )
        return None

    return Strategy(
        id=definition.id,
        name=definition.name or definition.id,
        version=str(definition.version),
        kind=kind,
    )


class StrategyRegistry:
    """Catalog of declared strategies, resolved against an activation list.

    Without any declared strategies the built-in definitions are used, so an
    empty configuration still indexes with ``basic``.
    """

    def __init__(self, strategies: list[Strategy] | None = None) -> None:
        if strategies is None:
            strategies = list(BUILTIN_STRATEGIES.values())
        self._strategies: dict[str, Strategy] = {s.id: s for s in strategies}

    @classmethod
    def from_config(cls, config: IndexerConfig) -> StrategyRegistry:
        """Create a registry from the configured strategy definitions."""
        if not config.index_strategies:
            return cls()
        strategies = []
        for definition in config.index_strategies:
            strategy = strategy_from_definition(definition)
            if strategy is not None:
                strategies.append(strategy)
        return cls(strategies)

    def get(self, strategy_id: str) -> Strategy | None:
        return self._strategies.get(strategy_id)

    def all(self) -> list[Strategy]:
        return list(self._strategies.values())

    def resolve(self, active_ids: list[str]) -> list[Strategy]:
        """Resolve an ordered list of strategy ids.

        Unknown ids are logged and skipped. Duplicates keep their first
        position.

        Args:
            active_ids: Strategy ids in activation order.

        Returns:
            Resolved strategies in activation order.
        """
        resolved: list[Strategy] = []
        seen: set[str] = set()
        for strategy_id in active_ids:
            if strategy_id in seen:
                continue
            strategy = self._strategies.get(strategy_id)
            if strategy is None:
                logger.warning(f"Strategy {strategy_id} not found in config, skipping")
                continue
            seen.add(strategy_id)
            resolved.append(strategy)
        return resolved
