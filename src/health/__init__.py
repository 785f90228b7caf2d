"""Account safety and scraper health tracking."""

from src.health.account_health import (
    AccountHealthState,
    AccountHealthTracker,
    HealthDecision,
    HealthLimits,
)
from src.health.daily_quota import DailyQuota, DailyUsage
from src.health.scraper_metrics import ScraperHealthMonitor, ScraperStatus

__all__ = [
    "AccountHealthState",
    "AccountHealthTracker",
    "DailyQuota",
    "DailyUsage",
    "HealthDecision",
    "HealthLimits",
    "ScraperHealthMonitor",
    "ScraperStatus",
]
