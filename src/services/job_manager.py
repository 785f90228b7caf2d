"""Search job lifecycle management.

The SearchJobManager owns the job state machine: admission control on
create, one asyncio task per running job, pause/resume/cancel, exports and
per-account stats. Jobs live in memory while they run and are mirrored to
``search_jobs`` on every transition, so a restart can find and reconcile
them (see ``src.services.recovery``).

Transitions are validated by ``can_transition``. A transition is written to
storage before the in-memory job reflects it. Status changes for one job are
serialized, and the durable write only applies while the stored status still
matches, so two transitions out of the same state never both commit.
Once a job's worker exits with the job stopped, the in-memory copy is dropped
and reads fall back to storage.
"""

from __future__ import annotations

import asyncio
import csv
import io
import itertools
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import replace
from typing import AsyncIterator, Hashable
from uuid import uuid4

from src.clock import Clock, utcnow
from src.config.safety_policies import SafetyPolicy, policy_for
from src.health.account_health import AccountHealthTracker
from src.health.daily_quota import DailyQuota
from src.health.scraper_metrics import ScraperHealthMonitor
from src.integration.activity import ActivityEmitter
from src.integration.credit_ledger import CreditLedger
from src.middleware.error_handler import (
    AccountUnhealthyError,
    InsufficientCreditsError,
    InvalidJobTransitionError,
    JobNotFoundError,
    QuotaExceededError,
    UpstreamError,
)
from src.models.requests import CreateSearchJobRequest, ExportFormat, JobStatus, SearchJobState
from src.models.responses import serialize_job
from src.models.schemas import EXPORT_HEADERS, Lead
from src.pipeline.errors import ErrorKind
from src.pipeline.retrieval import DAILY_LIMIT_MESSAGE, RetrievalPipeline, RunResult
from src.storage.job_store import SearchJobStore
from src.storage.lead_store import LeadStore

logger = logging.getLogger(__name__)

INSUFFICIENT_CREDITS_MESSAGE = "Insufficient lookup credits. Please contact your administrator."
CANCELLED_MESSAGE = "Cancelled by user"

TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.RATE_LIMITED})
RESTARTABLE_STATUSES = frozenset({JobStatus.INTERRUPTED, JobStatus.FAILED, JobStatus.RATE_LIMITED})

# (from, to) pairs permitted for each kind of transition
_TRANSITIONS: dict[str, frozenset[tuple[JobStatus, JobStatus]]] = {
    "start": frozenset({(JobStatus.PENDING, JobStatus.RUNNING)}),
    "finish": frozenset(
        (JobStatus.RUNNING, target)
        for target in (
            JobStatus.COMPLETED,
            JobStatus.FAILED,
            JobStatus.RATE_LIMITED,
            JobStatus.INTERRUPTED,
        )
    ),
    "pause": frozenset({(JobStatus.RUNNING, JobStatus.PAUSED)}),
    "resume": frozenset({(JobStatus.PAUSED, JobStatus.RUNNING)}),
    "cancel": frozenset(
        (source, JobStatus.FAILED)
        for source in (JobStatus.PENDING, JobStatus.RUNNING, JobStatus.PAUSED)
    ),
    "restart": frozenset((source, JobStatus.RUNNING) for source in RESTARTABLE_STATUSES),
    "interrupt": frozenset(
        (source, JobStatus.INTERRUPTED) for source in (JobStatus.PENDING, JobStatus.RUNNING)
    ),
}


def can_transition(current: JobStatus, target: JobStatus, via: str) -> bool:
    """True if *via* may move a job from *current* to *target*."""
    return (current, target) in _TRANSITIONS.get(via, frozenset())


class KeyedLocks:
    """One ``asyncio.Lock`` per key, dropped once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._users: dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]

    def locked(self, key: Hashable) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)


class SearchJobManager:
    """Creates, runs and controls search jobs.

    Parameters
    ----------
    store:
        Durable job mirror.
    lead_store:
        Lead sink, also used for job lead listings.
    pipeline:
        Runs a job's retrieval; returns a ``RunResult``.
    health, quota, credits:
        Admission checks on create and resume.
    monitor:
        Receives the outcome of every finished run.
    activity:
        Optional event emitter for ``started``/``completed``/``failed``.
    safety_policies:
        Per-workspace overrides; the effective daily limit caps admission.
    """

    def __init__(
        self,
        *,
        store: SearchJobStore,
        lead_store: LeadStore,
        pipeline: RetrievalPipeline,
        health: AccountHealthTracker,
        quota: DailyQuota,
        credits: CreditLedger,
        monitor: ScraperHealthMonitor,
        activity: ActivityEmitter | None = None,
        safety_policies: dict[str, SafetyPolicy] | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._store = store
        self._lead_store = lead_store
        self._pipeline = pipeline
        self._health = health
        self._quota = quota
        self._credits = credits
        self._monitor = monitor
        self._activity = activity
        self._safety_policies = safety_policies or {}
        self._clock = clock

        self._jobs: dict[str, SearchJobState] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._generations: dict[str, int] = {}
        self._generation_counter = itertools.count(1)
        # Serializes workers per (workspace, account)
        self._locks = KeyedLocks()
        # Serializes status changes and checkpoints per job
        self._job_locks = KeyedLocks()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def create_job(self, request: CreateSearchJobRequest) -> SearchJobState:
        """Admit, persist and start a job.

        Raises
        ------
        QuotaExceededError
            No pulls left today for the account.
        InsufficientCreditsError
            The workspace has no lookup credits.
        AccountUnhealthyError
            The account is cooling down or over its hourly budget.
        """
        workspace_id, account_id = request.workspace_id, request.account_id

        remaining = await self.remaining_today(workspace_id, account_id)
        if remaining <= 0:
            raise QuotaExceededError(DAILY_LIMIT_MESSAGE)
        if not await self._credits.has_enough_credits(workspace_id, 1):
            raise InsufficientCreditsError(INSUFFICIENT_CREDITS_MESSAGE)
        decision = await self._health.can_make_request(workspace_id, account_id)
        if not decision.allowed:
            raise AccountUnhealthyError(decision.reason)

        now = self._clock()
        job = SearchJobState(
            id=str(uuid4()),
            workspace_id=workspace_id,
            account_id=account_id,
            criteria=request.criteria.model_dump(exclude_none=True),
            max_results=min(request.max_results, remaining),
            user_id=request.user_id,
            campaign_id=request.campaign_id,
            created_at=now,
            updated_at=now,
        )
        await self._store.save(job)
        self._spawn(job)

        logger.info(
            "Created search job (max_results=%d)",
            job.max_results,
            extra={"job_id": job.id, "workspace_id": workspace_id, "account_id": account_id},
        )
        return job

    async def pause(self, job_id: str) -> SearchJobState:
        job = await self._load(job_id)
        await self._transition(job, JobStatus.PAUSED, via="pause", paused_at=self._clock())
        logger.info("Paused search job", extra={"job_id": job_id})
        return job

    async def resume(self, job_id: str) -> SearchJobState:
        """Continue a paused job from ``total_pulled``.

        Raises ``QuotaExceededError`` (and flags the job) when the account has
        no pulls left today.
        """
        job = await self._load(job_id)
        if not can_transition(job.status, JobStatus.RUNNING, "resume"):
            raise InvalidJobTransitionError(
                f"Cannot resume a {job.status.value} job", job_id=job_id, status=job.status.value
            )
        if await self.remaining_today(job.workspace_id, job.account_id) <= 0:
            job.daily_limit_reached = True
            await self._checkpoint(job)
            raise QuotaExceededError(DAILY_LIMIT_MESSAGE)

        await self._transition(job, JobStatus.RUNNING, via="resume", paused_at=None)
        self._spawn(job)
        logger.info("Resumed search job at %d leads", job.total_pulled, extra={"job_id": job_id})
        return job

    async def cancel(self, job_id: str) -> SearchJobState:
        """Mark the job failed; an in-flight run stops at its next check."""
        job = await self._load(job_id)
        await self._transition(
            job,
            JobStatus.FAILED,
            via="cancel",
            error=CANCELLED_MESSAGE,
            completed_at=self._clock(),
        )
        self._emit("failed", job, {"description": CANCELLED_MESSAGE})
        logger.info("Cancelled search job", extra={"job_id": job_id})
        return job

    async def restart_job(self, job: SearchJobState) -> SearchJobState:
        """Put a rehydrated job back to ``running`` and start a worker.

        Validation and rehydration belong to ``RecoveryCoordinator.restart``.
        """
        await self._transition(job, JobStatus.RUNNING, via="restart", error=None, completed_at=None)
        self._spawn(job)
        return job

    async def mark_interrupted(self, job: SearchJobState, message: str) -> None:
        await self._transition(job, JobStatus.INTERRUPTED, via="interrupt", error=message)

    def is_running(self, job_id: str) -> bool:
        """True while a worker task for the job is alive."""
        task = self._tasks.get(job_id)
        return task is not None and not task.done()

    def active_count(self) -> int:
        return sum(1 for task in self._tasks.values() if not task.done())

    async def shutdown(self, timeout: float = 30.0) -> None:
        """Wait for running jobs, then cancel the stragglers.

        Cancelled jobs stay ``running`` in storage; recovery marks them
        interrupted on the next start.
        """
        tasks = [t for t in self._tasks.values() if not t.done()]
        if not tasks:
            return
        logger.info("Waiting for %d search jobs to finish", len(tasks))
        _done, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning("Cancelled %d search jobs at shutdown", len(pending))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_job(self, job_id: str) -> SearchJobState:
        job = self._jobs.get(job_id)
        if job is not None:
            return job
        job = await self._store.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job not found: {job_id}", job_id=job_id)
        return job

    async def list_jobs(self, workspace_id: str, limit: int = 50) -> list[SearchJobState]:
        """Workspace jobs, newest first; live in-memory copies take precedence."""
        jobs = {job.id: job for job in await self._store.list_for_workspace(workspace_id, limit)}
        for job in self._jobs.values():
            if job.workspace_id == workspace_id:
                jobs[job.id] = job
        ordered = sorted(jobs.values(), key=lambda j: j.created_at, reverse=True)
        return ordered[:limit]

    async def get_job_leads(self, job_id: str, offset: int = 0, limit: int = 100) -> list[Lead]:
        await self.get_job(job_id)
        return await self._lead_store.list_job_leads(job_id, offset, limit)

    async def export_results(self, job_id: str, fmt: ExportFormat) -> tuple[str, str]:
        """Render a job's results as ``(content, media_type)``."""
        job = await self.get_job(job_id)
        records = [lead.export_record() for lead in job.results]

        if fmt is ExportFormat.CSV:
            buffer = io.StringIO()
            writer = csv.writer(buffer)
            writer.writerow(EXPORT_HEADERS)
            for lead in job.results:
                writer.writerow(lead.export_row())
            return buffer.getvalue(), "text/csv"

        if fmt is ExportFormat.JSONL:
            return "\n".join(json.dumps(record) for record in records), "application/x-ndjson"

        document = {"job": serialize_job(job), "results": records}
        return json.dumps(document), "application/json"

    async def get_search_stats(self, workspace_id: str, account_id: str) -> dict:
        usage = await self._quota.get_usage(workspace_id, account_id)
        active = await self._store.count_by_status(
            workspace_id, account_id, [JobStatus.PENDING, JobStatus.RUNNING]
        )
        try:
            credits_remaining: int | None = await self._credits.get_available(workspace_id)
        except UpstreamError as exc:
            logger.warning("Credit balance unavailable: %s", exc, extra={"workspace_id": workspace_id})
            credits_remaining = None
        return {
            "daily_usage": usage.as_dict(),
            "remaining_today": await self.remaining_today(workspace_id, account_id),
            "active_jobs": active,
            "total_pulled_today": usage.count,
            "credits_remaining": credits_remaining,
        }

    async def get_daily_usage(self, workspace_id: str, account_id: str) -> dict:
        usage = await self._quota.get_usage(workspace_id, account_id)
        return {**usage.as_dict(), "remaining": await self.remaining_today(workspace_id, account_id)}

    async def set_daily_limit(self, workspace_id: str, account_id: str, limit: int) -> dict:
        usage = await self._quota.set_limit(workspace_id, account_id, limit)
        return usage.as_dict()

    async def remaining_today(self, workspace_id: str, account_id: str) -> int:
        """Pulls left today, capped by the workspace safety policy."""
        cap = policy_for(self._safety_policies, workspace_id).effective_daily_limit()
        return await self._quota.remaining(workspace_id, account_id, cap)

    async def list_workspace_leads(
        self, workspace_id: str, offset: int = 0, limit: int = 100
    ) -> tuple[list[Lead], int]:
        return await self._lead_store.list_workspace_leads(workspace_id, offset, limit)

    async def delete_workspace_leads(self, workspace_id: str) -> int:
        deleted = await self._lead_store.delete_workspace_leads(workspace_id)
        logger.info("Deleted %d leads", deleted, extra={"workspace_id": workspace_id})
        return deleted

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    def _spawn(self, job: SearchJobState) -> None:
        self._jobs[job.id] = job
        generation = next(self._generation_counter)
        self._generations[job.id] = generation
        task = asyncio.create_task(self._run_job(job, generation), name=f"search-job-{job.id}")
        self._tasks[job.id] = task

        def _forget(finished: asyncio.Task) -> None:
            if self._tasks.get(job.id) is not finished:
                return
            del self._tasks[job.id]
            # Stopped jobs are served from storage from here on
            if job.status is not JobStatus.RUNNING and self._jobs.get(job.id) is job:
                del self._jobs[job.id]
                self._generations.pop(job.id, None)

        task.add_done_callback(_forget)

    async def _run_job(self, job: SearchJobState, generation: int) -> None:
        def should_stop() -> bool:
            return job.status is not JobStatus.RUNNING or self._generations.get(job.id) != generation

        async with self._locks.hold((job.workspace_id, job.account_id)):
            if job.status is JobStatus.PENDING:
                await self._transition(job, JobStatus.RUNNING, via="start", started_at=self._clock())
            if should_stop():
                return

            pulled_before = job.total_pulled
            self._emit("started", job, {
                "description": f"Starting LinkedIn search for \"{_describe_criteria(job.criteria)}\"",
                "progress": job.progress,
            })

            try:
                result = await self._pipeline.run(job, should_stop=should_stop, checkpoint=self._checkpoint)
            except Exception as exc:
                logger.exception("Search job worker crashed", extra={"job_id": job.id})
                result = RunResult(JobStatus.FAILED, str(exc) or exc.__class__.__name__, ErrorKind.FATAL)

            if should_stop():
                # Paused or cancelled meanwhile; keep the progress made so far
                await self._checkpoint(job)
                return

            try:
                await self._finish(job, result, job.total_pulled - pulled_before)
            except InvalidJobTransitionError:
                # Cancelled or paused while the outcome was being recorded
                logger.info(
                    "Search job left running before it finished: %s",
                    job.status.value,
                    extra={"job_id": job.id, "status": job.status.value},
                )
                await self._checkpoint(job)

    async def _finish(self, job: SearchJobState, result: RunResult, pulled: int) -> None:
        now = self._clock()
        fields: dict = {"error": result.error, "completed_at": now}
        if result.status is JobStatus.COMPLETED:
            fields["progress"] = 100
        await self._transition(job, result.status, via="finish", **fields)

        if result.status is JobStatus.COMPLETED:
            self._monitor.record_success(pulled, job.data_source)
            self._emit("completed", job, {
                "description": f"Search complete: {job.total_pulled} leads found, "
                f"{job.credits_used} credits used",
                "progress": 100,
                "total_pulled": job.total_pulled,
            })
        else:
            if result.kind is not ErrorKind.QUOTA:
                self._monitor.record_failure(result.error or result.status.value, job.data_source)
            self._emit("failed", job, {
                "description": f"Search ended ({result.status.value}): {result.error}",
                "progress": job.progress,
                "total_pulled": job.total_pulled,
            })

        logger.info(
            "Search job finished: %s",
            result.status.value,
            extra={
                "job_id": job.id,
                "workspace_id": job.workspace_id,
                "account_id": job.account_id,
                "leads": job.total_pulled,
                "error_kind": result.kind.value if result.kind else None,
            },
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _load(self, job_id: str) -> SearchJobState:
        """The live job, or a copy read from storage when no worker holds it."""
        job = self._jobs.get(job_id)
        if job is None:
            job = await self._store.get(job_id)
            if job is None:
                raise JobNotFoundError(f"Job not found: {job_id}", job_id=job_id)
        return job

    async def _transition(self, job: SearchJobState, target: JobStatus, *, via: str, **fields: object) -> None:
        async with self._job_locks.hold(job.id):
            if not can_transition(job.status, target, via):
                raise _invalid_transition(job, target, via)
            changes = {"status": target, "updated_at": self._clock(), **fields}
            if not await self._store.save_if_status(replace(job, **changes), job.status):
                stored = await self._store.get(job.id, with_results=False)
                if stored is not None:
                    job.status = stored.status
                raise _invalid_transition(job, target, via)
            for name, value in changes.items():
                setattr(job, name, value)

    async def _checkpoint(self, job: SearchJobState) -> None:
        async with self._job_locks.hold(job.id):
            job.updated_at = self._clock()
            await self._store.save(job)

    def _emit(self, event: str, job: SearchJobState, data: dict) -> None:
        if self._activity is not None:
            self._activity.emit(event, job.id, {"workspace_id": job.workspace_id, **data})


def _invalid_transition(job: SearchJobState, target: JobStatus, via: str) -> InvalidJobTransitionError:
    return InvalidJobTransitionError(
        f"Cannot {via} a {job.status.value} job",
        job_id=job.id,
        status=job.status.value,
        target=target.value,
    )


def _describe_criteria(criteria: dict) -> str:
    return criteria.get("keywords") or criteria.get("title") or "leads"
