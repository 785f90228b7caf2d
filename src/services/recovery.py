"""Startup reconciliation and explicit restart of search jobs.

A process restart loses every worker task, so jobs that storage still shows
as ``pending``/``running`` are marked ``interrupted``. They are never resumed
automatically: the account may have been flagged in the meantime, so a user
has to restart them, which re-checks account health first.
"""

from __future__ import annotations

import logging

from src.health.account_health import AccountHealthTracker
from src.middleware.error_handler import (
    AccountUnhealthyError,
    InvalidJobTransitionError,
    JobNotFoundError,
)
from src.models.requests import JobStatus, SearchJobState
from src.services.job_manager import RESTARTABLE_STATUSES, SearchJobManager
from src.storage.job_store import SearchJobStore

logger = logging.getLogger(__name__)

INTERRUPTED_MESSAGE = "Server restarted - search was interrupted. Click Restart to continue."


class RecoveryCoordinator:
    """Reconciles stored jobs with live workers."""

    def __init__(
        self,
        *,
        store: SearchJobStore,
        manager: SearchJobManager,
        health: AccountHealthTracker,
    ) -> None:
        self._store = store
        self._manager = manager
        self._health = health

    async def recover_interrupted_jobs(self) -> int:
        """Mark orphaned ``pending``/``running`` jobs interrupted.

        Returns the number of jobs marked.
        """
        orphaned = await self._store.find_by_status([JobStatus.PENDING, JobStatus.RUNNING])
        recovered = 0
        for job in orphaned:
            if self._manager.is_running(job.id):
                continue
            await self._manager.mark_interrupted(job, INTERRUPTED_MESSAGE)
            recovered += 1
            logger.info(
                "Marked search job interrupted at %d leads",
                job.total_pulled,
                extra={"job_id": job.id, "workspace_id": job.workspace_id},
            )
        if recovered:
            logger.warning("Recovered %d interrupted search jobs", recovered)
        return recovered

    async def restart(self, job_id: str) -> SearchJobState:
        """Re-enter the pipeline at the job's ``total_pulled`` offset.

        Raises
        ------
        JobNotFoundError
            Unknown job id.
        InvalidJobTransitionError
            The job is completed, paused, pending or actively running.
        AccountUnhealthyError
            The account is cooling down or over budget; carries the reason.
        """
        if self._manager.is_running(job_id):
            raise InvalidJobTransitionError("Job is already running", job_id=job_id)

        snapshot = await self._store.get(job_id, with_results=True)
        if snapshot is None:
            raise JobNotFoundError(f"Job not found: {job_id}", job_id=job_id)
        if snapshot.status not in RESTARTABLE_STATUSES:
            raise InvalidJobTransitionError(
                f"Cannot restart a {snapshot.status.value} job",
                job_id=job_id,
                status=snapshot.status.value,
            )

        decision = await self._health.can_make_request(snapshot.workspace_id, snapshot.account_id)
        if not decision.allowed:
            raise AccountUnhealthyError(decision.reason, job_id=job_id)

        snapshot.daily_limit_reached = False
        job = await self._manager.restart_job(snapshot)
        logger.info(
            "Restarted search job from %d leads",
            job.total_pulled,
            extra={"job_id": job.id, "workspace_id": job.workspace_id, "account_id": job.account_id},
        )
        return job
