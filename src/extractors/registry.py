"""Ordered extraction strategy chain.

Strategies are tried in registration order, most specific first; the first
one that returns records wins. Adding a layout means registering one more
strategy, no existing strategy needs to change.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from src.extractors.base import ExtractionStrategy

logger = logging.getLogger(__name__)


@dataclass
class ChainResult:
    strategy: str | None
    records: list[dict] = field(default_factory=list)


class StrategyChain:
    """First-non-empty-wins sequence of ``ExtractionStrategy`` objects."""

    def __init__(self, strategies: list[ExtractionStrategy] | None = None) -> None:
        self._strategies: list[ExtractionStrategy] = []
        for strategy in strategies or []:
            self.register(strategy)

    def register(self, strategy: ExtractionStrategy) -> None:
        """Append *strategy* to the end of the chain.

        Raises
        ------
        ValueError
            If a strategy with the same name is already registered.
        """
        if any(s.name == strategy.name for s in self._strategies):
            raise ValueError(f"Strategy '{strategy.name}' is already registered")
        self._strategies.append(strategy)

    def names(self) -> list[str]:
        return [s.name for s in self._strategies]

    def run(self, document: Any) -> ChainResult:
        for strategy in self._strategies:
            records = strategy.extract(document)
            if records:
                logger.debug("Strategy %s matched %d records", strategy.name, len(records))
                return ChainResult(strategy.name, records)
        return ChainResult(None, [])
