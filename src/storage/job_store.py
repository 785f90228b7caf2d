"""Durable mirror of search job state.

The in-memory ``SearchJobState`` is the working copy owned by a job's worker
task; this store is the system of record that survives restarts. ``save``
upserts the full snapshot so every transition is a single write.
"""

from __future__ import annotations

import logging

from sqlalchemy import func, select, update

from src.models.requests import JobStatus, SearchJobState
from src.models.schemas import Lead
from src.storage.database import Database
from src.storage.tables import LeadRow, SearchJobResultRow, SearchJobRow

logger = logging.getLogger(__name__)


class SearchJobStore:
    """Reads and writes ``search_jobs`` rows."""

    def __init__(self, database: Database) -> None:
        self._db = database

    async def save(self, job: SearchJobState) -> None:
        """Upsert the job snapshot (results are stored by ``LeadStore``)."""
        async with self._db.transaction() as session:
            await session.merge(_to_row(job))

    async def save_if_status(self, job: SearchJobState, expected: JobStatus) -> bool:
        """Write the snapshot only while the stored status is still *expected*.

        Returns False when another writer moved the job first; the row is
        left untouched in that case.
        """
        async with self._db.transaction() as session:
            result = await session.execute(
                update(SearchJobRow)
                .where(SearchJobRow.id == job.id, SearchJobRow.status == expected.value)
                .values(**_columns(job))
            )
            return result.rowcount == 1

    async def get(self, job_id: str, *, with_results: bool = True) -> SearchJobState | None:
        async with self._db.session() as session:
            row = await session.get(SearchJobRow, job_id)
            if row is None:
                return None
            job = _from_row(row)
            if with_results:
                result = await session.execute(
                    select(LeadRow)
                    .join(SearchJobResultRow, SearchJobResultRow.lead_id == LeadRow.id)
                    .where(SearchJobResultRow.job_id == job_id)
                    .order_by(SearchJobResultRow.position)
                )
                job.results = [lead_from_row(r) for r in result.scalars()]
            return job

    async def list_for_workspace(self, workspace_id: str, limit: int = 50) -> list[SearchJobState]:
        """Most recent jobs first, without results."""
        async with self._db.session() as session:
            result = await session.execute(
                select(SearchJobRow)
                .where(SearchJobRow.workspace_id == workspace_id)
                .order_by(SearchJobRow.created_at.desc())
                .limit(limit)
            )
            return [_from_row(row) for row in result.scalars()]

    async def find_by_status(self, statuses: list[JobStatus]) -> list[SearchJobState]:
        async with self._db.session() as session:
            result = await session.execute(
                select(SearchJobRow).where(SearchJobRow.status.in_([s.value for s in statuses]))
            )
            return [_from_row(row) for row in result.scalars()]

    async def count_by_status(
        self, workspace_id: str, account_id: str, statuses: list[JobStatus]
    ) -> int:
        async with self._db.session() as session:
            result = await session.execute(
                select(func.count())
                .select_from(SearchJobRow)
                .where(
                    SearchJobRow.workspace_id == workspace_id,
                    SearchJobRow.account_id == account_id,
                    SearchJobRow.status.in_([s.value for s in statuses]),
                )
            )
            return int(result.scalar_one())


# ---------------------------------------------------------------------------
# Row mapping
# ---------------------------------------------------------------------------


def _to_row(job: SearchJobState) -> SearchJobRow:
    return SearchJobRow(id=job.id, **_columns(job))


def _columns(job: SearchJobState) -> dict:
    return dict(
        workspace_id=job.workspace_id,
        account_id=job.account_id,
        user_id=job.user_id,
        campaign_id=job.campaign_id,
        criteria=job.criteria,
        max_results=job.max_results,
        status=job.status.value,
        progress=job.progress,
        total_found=job.total_found,
        total_pulled=job.total_pulled,
        credits_used=job.credits_used,
        daily_limit_reached=job.daily_limit_reached,
        data_source=job.data_source,
        error=job.error,
        created_at=job.created_at,
        updated_at=job.updated_at,
        started_at=job.started_at,
        paused_at=job.paused_at,
        completed_at=job.completed_at,
        last_heartbeat=job.last_heartbeat,
    )


def _from_row(row: SearchJobRow) -> SearchJobState:
    return SearchJobState(
        id=row.id,
        workspace_id=row.workspace_id,
        account_id=row.account_id,
        criteria=dict(row.criteria or {}),
        max_results=row.max_results,
        status=JobStatus(row.status),
        progress=row.progress,
        total_found=row.total_found,
        total_pulled=row.total_pulled,
        credits_used=row.credits_used,
        daily_limit_reached=row.daily_limit_reached,
        data_source=row.data_source,
        user_id=row.user_id,
        campaign_id=row.campaign_id,
        error=row.error,
        created_at=row.created_at,
        updated_at=row.updated_at,
        started_at=row.started_at,
        paused_at=row.paused_at,
        completed_at=row.completed_at,
        last_heartbeat=row.last_heartbeat,
    )


def lead_from_row(row: LeadRow) -> Lead:
    return Lead(
        profile_url=row.profile_url,
        name=row.name,
        first_name=row.first_name,
        last_name=row.last_name,
        headline=row.headline,
        company=row.company,
        location=row.location,
        connection_degree=row.connection_degree,  # type: ignore[arg-type]
        mutual_connections=row.mutual_connections,
        profile_image_url=row.profile_image_url,
        is_premium=row.is_premium,
        is_open_to_work=row.is_open_to_work,
        data_source=row.data_source,
    )
