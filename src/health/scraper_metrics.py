"""Rolling success-rate monitor for retrieval runs.

Each finished job records one outcome. The monitor keeps the most recent
outcomes in a sliding window and classifies the scraper as:

- unknown:  no attempts recorded yet
- failing:  ``consecutive_failures`` reached the threshold (alerting)
- degraded: success rate in the window dropped below the minimum
- healthy:  otherwise
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from src.clock import Clock, utcnow


class ScraperStatus(str, Enum):
    """Overall retrieval health."""

    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    FAILING = "failing"


@dataclass
class RunOutcome:
    success: bool
    leads: int
    data_source: str | None
    error: str | None
    at: datetime


@dataclass
class ScraperMetrics:
    """Counters exposed on the health endpoints."""

    total_attempts: int = 0
    successes: int = 0
    failures: int = 0
    consecutive_failures: int = 0
    total_leads: int = 0
    last_success_at: datetime | None = None
    last_failure_at: datetime | None = None
    last_error: str | None = None
    by_source: dict[str, int] = field(default_factory=dict)


class ScraperHealthMonitor:
    """Sliding-window success tracker.

    Args:
        window_size: Number of recent runs used for the success rate.
        min_success_rate: Percentage below which the status is ``degraded``.
        max_consecutive_failures: Consecutive failures that flip the status to ``failing``.
    """

    def __init__(
        self,
        window_size: int = 20,
        min_success_rate: float = 70.0,
        max_consecutive_failures: int = 3,
        clock: Clock = utcnow,
    ) -> None:
        self._window: deque[RunOutcome] = deque(maxlen=window_size)
        self._min_success_rate = min_success_rate
        self._max_consecutive_failures = max_consecutive_failures
        self._clock = clock
        self._metrics = ScraperMetrics()

    def record_success(self, leads: int, data_source: str | None = None) -> None:
        now = self._clock()
        self._window.append(RunOutcome(True, leads, data_source, None, now))
        m = self._metrics
        m.total_attempts += 1
        m.successes += 1
        m.consecutive_failures = 0
        m.total_leads += leads
        m.last_success_at = now
        if data_source:
            m.by_source[data_source] = m.by_source.get(data_source, 0) + leads

    def record_failure(self, error: str, data_source: str | None = None) -> None:
        now = self._clock()
        self._window.append(RunOutcome(False, 0, data_source, error, now))
        m = self._metrics
        m.total_attempts += 1
        m.failures += 1
        m.consecutive_failures += 1
        m.last_failure_at = now
        m.last_error = error

    @property
    def success_rate(self) -> float:
        """Percentage of successful runs in the window (100 when empty)."""
        if not self._window:
            return 100.0
        ok = sum(1 for outcome in self._window if outcome.success)
        return round(ok / len(self._window) * 100, 1)

    def status(self) -> ScraperStatus:
        if self._metrics.total_attempts == 0:
            return ScraperStatus.UNKNOWN
        if self._metrics.consecutive_failures >= self._max_consecutive_failures:
            return ScraperStatus.FAILING
        if self.success_rate < self._min_success_rate:
            return ScraperStatus.DEGRADED
        return ScraperStatus.HEALTHY

    def snapshot(self) -> dict:
        m = self._metrics
        status = self.status()
        return {
            "status": status.value,
            "alert": status == ScraperStatus.FAILING,
            "success_rate": self.success_rate,
            "window_size": len(self._window),
            "total_attempts": m.total_attempts,
            "successes": m.successes,
            "failures": m.failures,
            "consecutive_failures": m.consecutive_failures,
            "total_leads": m.total_leads,
            "leads_by_source": dict(m.by_source),
            "last_success_at": m.last_success_at.isoformat() if m.last_success_at else None,
            "last_failure_at": m.last_failure_at.isoformat() if m.last_failure_at else None,
            "last_error": m.last_error,
        }
