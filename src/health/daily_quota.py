"""Per-account daily pull counter and limit.

One row per (workspace, account) stores the local date it counts for. When
the local date moves on, the counter reads as zero and is reset on the next
write; the configured limit carries over.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timezone
from zoneinfo import ZoneInfo

from sqlalchemy import select

from src.clock import Clock, utcnow
from src.storage.database import Database
from src.storage.tables import DailyUsageRow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DailyUsage:
    date: str
    count: int
    limit: int

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.count)

    def as_dict(self) -> dict:
        return {
            "date": self.date,
            "count": self.count,
            "limit": self.limit,
            "remaining": self.remaining,
        }


class DailyQuota:
    """Storage-backed daily counters keyed by (workspace, account)."""

    def __init__(
        self,
        database: Database,
        *,
        default_limit: int = 1000,
        tz_name: str = "UTC",
        clock: Clock = utcnow,
    ) -> None:
        self._db = database
        self._default_limit = default_limit
        self._tz = ZoneInfo(tz_name)
        self._clock = clock

    def today(self) -> str:
        """Local calendar date as ``YYYY-MM-DD``."""
        return self._clock().replace(tzinfo=timezone.utc).astimezone(self._tz).date().isoformat()

    async def get_usage(self, workspace_id: str, account_id: str) -> DailyUsage:
        today = self.today()
        async with self._db.session() as session:
            row = await session.get(DailyUsageRow, (workspace_id, account_id))
        if row is None:
            return DailyUsage(today, 0, self._default_limit)
        count = row.count if row.usage_date == today else 0
        return DailyUsage(today, count, row.daily_limit)

    async def remaining(self, workspace_id: str, account_id: str, cap: int | None = None) -> int:
        """Pulls left today; *cap* (a workspace policy limit) can only tighten the stored limit."""
        usage = await self.get_usage(workspace_id, account_id)
        if cap is None:
            return usage.remaining
        return max(0, min(usage.limit, cap) - usage.count)

    async def record(self, workspace_id: str, account_id: str, count: int) -> DailyUsage:
        """Add *count* pulls to today's counter."""
        return await self._update(workspace_id, account_id, add=count)

    async def set_limit(self, workspace_id: str, account_id: str, limit: int) -> DailyUsage:
        usage = await self._update(workspace_id, account_id, limit=limit)
        logger.info(
            "Daily limit set to %d",
            limit,
            extra={"workspace_id": workspace_id, "account_id": account_id},
        )
        return usage

    async def _update(
        self,
        workspace_id: str,
        account_id: str,
        *,
        add: int = 0,
        limit: int | None = None,
    ) -> DailyUsage:
        today = self.today()
        async with self._db.transaction() as session:
            stmt = select(DailyUsageRow).where(
                DailyUsageRow.workspace_id == workspace_id,
                DailyUsageRow.account_id == account_id,
            )
            if self._db.supports_row_locks:
                stmt = stmt.with_for_update()
            row = (await session.execute(stmt)).scalar_one_or_none()
            if row is None:
                row = DailyUsageRow(
                    workspace_id=workspace_id,
                    account_id=account_id,
                    usage_date=today,
                    count=0,
                    daily_limit=self._default_limit,
                )
                session.add(row)
            elif row.usage_date != today:
                row.usage_date = today
                row.count = 0

            row.count += add
            if limit is not None:
                row.daily_limit = limit
            row.updated_at = self._clock()
            return DailyUsage(row.usage_date, row.count, row.daily_limit)
