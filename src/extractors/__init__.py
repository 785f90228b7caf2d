"""Extraction strategies: ordered, pure, first-non-empty-wins."""

from src.extractors.base import ExtractionStrategy
from src.extractors.registry import ChainResult, StrategyChain
from src.extractors.search_results import default_search_chain, extract_search_results
from src.extractors.voyager import default_voyager_chain, parse_search_page

__all__ = [
    "ChainResult",
    "ExtractionStrategy",
    "StrategyChain",
    "default_search_chain",
    "default_voyager_chain",
    "extract_search_results",
    "parse_search_page",
]
