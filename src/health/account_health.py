"""Per-account health tracking: hourly page budget, CAPTCHA counter, cooldown.

Site accounts get locked when they page through search results too fast or
keep hitting bot-detection challenges. Every (workspace, account) pair has a
rolling one-hour page budget, a per-day CAPTCHA counter and a cooldown that
starts whenever a CAPTCHA is seen.

Window resets are pure functions of ``(now, last_reset)`` so they can be
exercised with any clock. The tracker applies them inside a single database
transaction per operation, locking the account row where the dialect
supports it, so concurrent workers on different instances never lose an
increment.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, replace
from datetime import datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from sqlalchemy import select

from src.clock import Clock, utcnow
from src.storage.database import Database
from src.storage.tables import AccountHealthRow

logger = logging.getLogger(__name__)

HOUR = timedelta(hours=1)


@dataclass(frozen=True)
class HealthLimits:
    """Thresholds applied to every account."""

    max_pages_per_hour: int = 10
    captcha_cooldown_hours: float = 6
    max_captchas_per_day: int = 2
    timezone: str = "UTC"


@dataclass(frozen=True)
class AccountHealthState:
    """Snapshot of one account's counters. Timestamps are naive UTC."""

    pages_this_hour: int
    hour_start: datetime
    captchas_today: int = 0
    last_captcha_at: datetime | None = None
    cooldown_until: datetime | None = None
    consecutive_successes: int = 0

    @classmethod
    def fresh(cls, now: datetime) -> "AccountHealthState":
        return cls(pages_this_hour=0, hour_start=now)


@dataclass(frozen=True)
class HealthDecision:
    allowed: bool
    reason: str | None = None


# ---------------------------------------------------------------------------
# Pure window functions
# ---------------------------------------------------------------------------


def roll_hourly_window(pages: int, hour_start: datetime, now: datetime) -> tuple[int, datetime]:
    """Reset the page counter once a full hour has passed since ``hour_start``."""
    if now - hour_start >= HOUR:
        return 0, now
    return pages, hour_start


def local_midnight_utc(now: datetime, tz_name: str) -> datetime:
    """Naive-UTC instant of the most recent local midnight at ``now``."""
    tz = ZoneInfo(tz_name)
    local_now = now.replace(tzinfo=timezone.utc).astimezone(tz)
    midnight = datetime.combine(local_now.date(), time.min, tzinfo=tz)
    return midnight.astimezone(timezone.utc).replace(tzinfo=None)


def roll_daily_captchas(
    captchas: int,
    last_captcha_at: datetime | None,
    now: datetime,
    tz_name: str = "UTC",
) -> int:
    """Reset the CAPTCHA counter when the last one was before today's local midnight."""
    if last_captcha_at is None or last_captcha_at < local_midnight_utc(now, tz_name):
        return 0
    return captchas


def roll_windows(state: AccountHealthState, now: datetime, limits: HealthLimits) -> AccountHealthState:
    """Apply both window resets."""
    pages, hour_start = roll_hourly_window(state.pages_this_hour, state.hour_start, now)
    captchas = roll_daily_captchas(
        state.captchas_today, state.last_captcha_at, now, limits.timezone
    )
    return replace(state, pages_this_hour=pages, hour_start=hour_start, captchas_today=captchas)


def evaluate(state: AccountHealthState, now: datetime, limits: HealthLimits) -> HealthDecision:
    """Decide whether the account may fetch another page.

    Checked in priority order: active cooldown, hourly page budget, daily
    CAPTCHA cap. ``state`` must already have its windows rolled to ``now``.
    """
    if state.cooldown_until is not None and now < state.cooldown_until:
        minutes = math.ceil((state.cooldown_until - now).total_seconds() / 60)
        return HealthDecision(False, f"Account in cooldown. {minutes} minutes remaining.")

    if state.pages_this_hour >= limits.max_pages_per_hour:
        return HealthDecision(
            False, f"Hourly limit reached ({limits.max_pages_per_hour} pages/hour)"
        )

    if state.captchas_today >= limits.max_captchas_per_day:
        return HealthDecision(False, "Too many CAPTCHAs today. Account paused for safety.")

    return HealthDecision(True)


def apply_page_load(state: AccountHealthState, now: datetime, limits: HealthLimits) -> AccountHealthState:
    rolled = roll_windows(state, now, limits)
    return replace(
        rolled,
        pages_this_hour=rolled.pages_this_hour + 1,
        consecutive_successes=rolled.consecutive_successes + 1,
    )


def apply_captcha(state: AccountHealthState, now: datetime, limits: HealthLimits) -> AccountHealthState:
    rolled = roll_windows(state, now, limits)
    return replace(
        rolled,
        captchas_today=rolled.captchas_today + 1,
        last_captcha_at=now,
        cooldown_until=now + timedelta(hours=limits.captcha_cooldown_hours),
        consecutive_successes=0,
    )


# ---------------------------------------------------------------------------
# Storage-backed tracker
# ---------------------------------------------------------------------------


class AccountHealthTracker:
    """Persists account health and answers ``can_make_request``.

    Parameters
    ----------
    database:
        Shared database; each call is one transaction.
    limits:
        Page budget, CAPTCHA cooldown and cap.
    clock:
        Returns the current naive-UTC time. Injected for tests.
    """

    def __init__(
        self,
        database: Database,
        limits: HealthLimits | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._db = database
        self._limits = limits or HealthLimits()
        self._clock = clock

    @property
    def limits(self) -> HealthLimits:
        return self._limits

    async def can_make_request(self, workspace_id: str, account_id: str) -> HealthDecision:
        state = await self.get_state(workspace_id, account_id)
        return evaluate(state, self._clock(), self._limits)

    async def record_page_load(self, workspace_id: str, account_id: str) -> AccountHealthState:
        return await self._mutate(workspace_id, account_id, apply_page_load)

    async def record_captcha(self, workspace_id: str, account_id: str) -> AccountHealthState:
        state = await self._mutate(workspace_id, account_id, apply_captcha)
        logger.warning(
            "CAPTCHA recorded, account cooling down until %s (%d today)",
            state.cooldown_until.isoformat() if state.cooldown_until else None,
            state.captchas_today,
            extra={"workspace_id": workspace_id, "account_id": account_id},
        )
        return state

    async def get_state(self, workspace_id: str, account_id: str) -> AccountHealthState:
        """Current counters with windows rolled to now (read-only)."""
        now = self._clock()
        async with self._db.session() as session:
            row = await session.get(AccountHealthRow, (workspace_id, account_id))
        state = _state_from_row(row) if row is not None else AccountHealthState.fresh(now)
        return roll_windows(state, now, self._limits)

    async def get_health_status(self, workspace_id: str, account_id: str) -> dict:
        now = self._clock()
        state = await self.get_state(workspace_id, account_id)
        decision = evaluate(state, now, self._limits)
        in_cooldown = state.cooldown_until is not None and now < state.cooldown_until
        return {
            "pages_this_hour": state.pages_this_hour,
            "max_pages_per_hour": self._limits.max_pages_per_hour,
            "captchas_today": state.captchas_today,
            "max_captchas_per_day": self._limits.max_captchas_per_day,
            "in_cooldown": in_cooldown,
            "cooldown_ends_at": state.cooldown_until.isoformat() if in_cooldown else None,
            "consecutive_successes": state.consecutive_successes,
            "is_healthy": decision.allowed,
            "reason": decision.reason,
        }

    async def _mutate(self, workspace_id: str, account_id: str, change) -> AccountHealthState:  # noqa: ANN001
        now = self._clock()
        async with self._db.transaction() as session:
            stmt = select(AccountHealthRow).where(
                AccountHealthRow.workspace_id == workspace_id,
                AccountHealthRow.account_id == account_id,
            )
            if self._db.supports_row_locks:
                stmt = stmt.with_for_update()
            row = (await session.execute(stmt)).scalar_one_or_none()
            if row is None:
                row = AccountHealthRow(
                    workspace_id=workspace_id, account_id=account_id, hour_start=now
                )
                session.add(row)
                state = AccountHealthState.fresh(now)
            else:
                state = _state_from_row(row)

            new_state = change(state, now, self._limits)
            row.pages_this_hour = new_state.pages_this_hour
            row.hour_start = new_state.hour_start
            row.captchas_today = new_state.captchas_today
            row.last_captcha_at = new_state.last_captcha_at
            row.cooldown_until = new_state.cooldown_until
            row.consecutive_successes = new_state.consecutive_successes
            row.updated_at = now
        return new_state


def _state_from_row(row: AccountHealthRow) -> AccountHealthState:
    return AccountHealthState(
        pages_this_hour=row.pages_this_hour,
        hour_start=row.hour_start,
        captchas_today=row.captchas_today,
        last_captcha_at=row.last_captcha_at,
        cooldown_until=row.cooldown_until,
        consecutive_successes=row.consecutive_successes,
    )
