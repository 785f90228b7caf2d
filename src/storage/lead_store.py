"""Lead sink with idempotent, deduplicating persistence.

Lead ids are derived from (workspace_id, profile_url), so re-inserting a
profile, whether from a retried page or a restarted job, never creates a
second row. ``persist_and_dedupe`` reports how many leads were genuinely new;
only those are charged.
"""

from __future__ import annotations

import logging

from sqlalchemy import delete, func, select

from src.models.normalizer import lead_id
from src.models.schemas import Lead
from src.storage.database import Database
from src.storage.job_store import lead_from_row
from src.storage.tables import LeadRow, SearchJobResultRow

logger = logging.getLogger(__name__)


class LeadStore:
    """Reads and writes ``linkedin_scraped_leads`` and job result links."""

    def __init__(self, database: Database) -> None:
        self._db = database

    async def persist_and_dedupe(
        self,
        workspace_id: str,
        job_id: str | None,
        leads: list[Lead],
        *,
        start_position: int = 0,
        search_query: str | None = None,
    ) -> int:
        """Insert *leads* and link them to *job_id* in order.

        Returns
        -------
        int
            Number of leads that did not already exist in the workspace.
        """
        if not leads:
            return 0

        new_count = 0
        async with self._db.transaction() as session:
            for offset, lead in enumerate(leads):
                row_id = lead_id(workspace_id, lead.profile_url)
                result = await session.execute(
                    self._db.insert_or_ignore(
                        LeadRow,
                        id=row_id,
                        workspace_id=workspace_id,
                        job_id=job_id,
                        profile_url=lead.profile_url,
                        name=lead.name,
                        first_name=lead.first_name,
                        last_name=lead.last_name,
                        headline=lead.headline,
                        company=lead.company,
                        location=lead.location,
                        connection_degree=lead.connection_degree,
                        mutual_connections=lead.mutual_connections,
                        profile_image_url=lead.profile_image_url,
                        is_premium=lead.is_premium,
                        is_open_to_work=lead.is_open_to_work,
                        data_source=lead.data_source,
                        search_query=search_query,
                    )
                )
                if result.rowcount == 1:
                    new_count += 1

                if job_id is not None:
                    await session.execute(
                        self._db.insert_or_ignore(
                            SearchJobResultRow,
                            job_id=job_id,
                            lead_id=row_id,
                            position=start_position + offset,
                        )
                    )

        logger.debug(
            "Persisted %d leads (%d new) for workspace %s",
            len(leads),
            new_count,
            workspace_id,
            extra={"job_id": job_id, "leads": new_count},
        )
        return new_count

    async def list_job_leads(self, job_id: str, offset: int = 0, limit: int = 100) -> list[Lead]:
        async with self._db.session() as session:
            result = await session.execute(
                select(LeadRow)
                .join(SearchJobResultRow, SearchJobResultRow.lead_id == LeadRow.id)
                .where(SearchJobResultRow.job_id == job_id)
                .order_by(SearchJobResultRow.position)
                .offset(offset)
                .limit(limit)
            )
            return [lead_from_row(row) for row in result.scalars()]

    async def list_workspace_leads(
        self, workspace_id: str, offset: int = 0, limit: int = 100
    ) -> tuple[list[Lead], int]:
        """Return a page of leads (newest first) and the workspace total."""
        async with self._db.session() as session:
            total = await session.execute(
                select(func.count()).select_from(LeadRow).where(LeadRow.workspace_id == workspace_id)
            )
            result = await session.execute(
                select(LeadRow)
                .where(LeadRow.workspace_id == workspace_id)
                .order_by(LeadRow.created_at.desc())
                .offset(offset)
                .limit(limit)
            )
            return [lead_from_row(row) for row in result.scalars()], int(total.scalar_one())

    async def delete_workspace_leads(self, workspace_id: str) -> int:
        async with self._db.transaction() as session:
            result = await session.execute(
                delete(LeadRow).where(LeadRow.workspace_id == workspace_id)
            )
            return result.rowcount or 0
