"""Per-run hooks shared by both retrieval tiers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Awaitable, Callable

from src.config.safety_policies import SafetyPolicy
from src.models.requests import SearchJobState
from src.models.schemas import Lead


@dataclass
class RunContext:
    """What a tier needs from the orchestrator while it runs.

    Attributes
    ----------
    job:
        The live job. Tiers read ``total_pulled``/``max_results`` from it but
        only ``commit`` mutates it.
    should_stop:
        True once the job was paused or cancelled.
    check_page:
        Raises ``AccountUnhealthyError`` or ``QuotaExceededError`` when the
        next page must not be fetched.
    commit:
        Persists a batch, charges credits for new leads and checkpoints the
        job. Returns the number of new leads.
    policy:
        The workspace safety policy; Tier 2 takes its page size and
        inter-page delay range from it when set.
    """

    job: SearchJobState
    should_stop: Callable[[], bool]
    check_page: Callable[[], Awaitable[None]]
    commit: Callable[[list[Lead]], Awaitable[int]]
    search_query: str = ""
    policy: SafetyPolicy | None = None
