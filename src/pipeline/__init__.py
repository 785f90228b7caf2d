"""Tiered retrieval pipeline: structured API first, browser automation second."""

from src.pipeline.browser_search import BrowserSearch, build_keywords
from src.pipeline.context import RunContext
from src.pipeline.errors import ErrorKind, classify, classify_exception
from src.pipeline.humanizer import Humanizer
from src.pipeline.retrieval import RetrievalPipeline, RunResult
from src.pipeline.voyager import VoyagerClient, VoyagerPage

__all__ = [
    "BrowserSearch",
    "ErrorKind",
    "Humanizer",
    "RetrievalPipeline",
    "RunContext",
    "RunResult",
    "VoyagerClient",
    "VoyagerPage",
    "build_keywords",
    "classify",
    "classify_exception",
]
