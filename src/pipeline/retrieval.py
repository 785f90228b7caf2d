"""Retrieval orchestrator: runs one job through the tiered pipeline.

Lifecycle of a run:
session lookup → proxy lease → Tier 1 (structured API) → Tier 2 (browser,
with bounded sticky-session rotation) → lease release.

Every batch, from either tier, goes through ``_commit``: trim to the job and
daily budgets, persist with dedupe, charge credits for the new leads only,
checkpoint the job. The orchestrator never sets the job's status itself; it
returns a ``RunResult`` and the job manager applies it.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from src.clock import Clock, utcnow
from src.config.safety_policies import SafetyPolicy, policy_for
from src.health.account_health import AccountHealthTracker
from src.health.daily_quota import DailyQuota
from src.integration.activity import ActivityEmitter
from src.integration.credit_ledger import CreditLedger
from src.integration.session_provider import SessionBundle, SessionCredentialProvider
from src.middleware.error_handler import (
    AccountUnhealthyError,
    ChallengeDetectedError,
    InsufficientCreditsError,
    QuotaExceededError,
    RotationExhaustedError,
    SessionInvalidError,
)
from src.models.requests import JobStatus, SearchJobState
from src.models.schemas import LINKEDIN_SEARCH, VOYAGER_API, Lead
from src.pipeline.browser_search import BrowserSearch, build_keywords
from src.pipeline.context import RunContext
from src.pipeline.errors import ErrorKind, classify_exception
from src.pipeline.voyager import VoyagerClient
from src.proxy.pool import ProxyPool
from src.proxy.types import ProxyLease
from src.storage.lead_store import LeadStore

logger = logging.getLogger(__name__)

DAILY_LIMIT_MESSAGE = "Daily limit reached. Try again tomorrow."
NO_SESSION_MESSAGE = "No stored session for this account. Please connect LinkedIn first."
OUT_OF_CREDITS_MESSAGE = "Ran out of lookup credits"


@dataclass
class RunResult:
    """Terminal outcome of one run; ``status`` is what the job should become."""

    status: JobStatus
    error: str | None = None
    kind: ErrorKind | None = None


class RetrievalPipeline:
    """Runs a search job through Tier 1 and, if needed, Tier 2.

    All collaborators are injected so the pipeline is testable with fakes.
    """

    def __init__(
        self,
        *,
        sessions: SessionCredentialProvider,
        proxy_pool: ProxyPool,
        health: AccountHealthTracker,
        quota: DailyQuota,
        credits: CreditLedger,
        lead_store: LeadStore,
        voyager: VoyagerClient,
        browser_search: BrowserSearch,
        activity: ActivityEmitter | None = None,
        safety_policies: dict[str, SafetyPolicy] | None = None,
        credits_per_lead: int = 1,
        max_rotation_attempts: int = 3,
        rotation_delay_ms: int = 5000,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._sessions = sessions
        self._proxy_pool = proxy_pool
        self._health = health
        self._quota = quota
        self._credits = credits
        self._lead_store = lead_store
        self._voyager = voyager
        self._browser_search = browser_search
        self._activity = activity
        self._safety_policies = safety_policies or {}
        self._credits_per_lead = credits_per_lead
        self._max_rotation_attempts = max_rotation_attempts
        self._rotation_delay_ms = rotation_delay_ms
        self._sleep = sleep or asyncio.sleep
        self._clock = clock

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run(
        self,
        job: SearchJobState,
        *,
        should_stop: Callable[[], bool],
        checkpoint: Callable[[SearchJobState], Awaitable[None]],
    ) -> RunResult:
        """Pull leads for *job* starting at ``job.total_pulled``.

        Never raises for retrieval failures; they come back as a
        ``RunResult``. A stop request returns the job's current status.
        """
        query = build_keywords(job.criteria)
        policy = policy_for(self._safety_policies, job.workspace_id) if self._safety_policies else None
        daily_cap = policy.effective_daily_limit() if policy is not None else None

        async def commit(leads: list[Lead]) -> int:
            return await self._commit(job, leads, checkpoint, query, daily_cap)

        ctx = RunContext(
            job=job,
            should_stop=should_stop,
            check_page=lambda: self._check_page(job, daily_cap),
            commit=commit,
            search_query=query,
            policy=policy,
        )

        try:
            await self._run(ctx)
        except ChallengeDetectedError as exc:
            return RunResult(JobStatus.RATE_LIMITED, exc.message, ErrorKind.CHALLENGE)
        except AccountUnhealthyError as exc:
            return RunResult(JobStatus.RATE_LIMITED, exc.message, ErrorKind.QUOTA)
        except InsufficientCreditsError:
            return RunResult(JobStatus.FAILED, OUT_OF_CREDITS_MESSAGE, ErrorKind.QUOTA)
        except QuotaExceededError as exc:
            job.daily_limit_reached = True
            return RunResult(JobStatus.RATE_LIMITED, exc.message, ErrorKind.QUOTA)
        except Exception as exc:
            kind = classify_exception(exc)
            logger.error(
                "Retrieval failed: %s",
                exc,
                extra={"job_id": job.id, "error_kind": kind.value},
                exc_info=kind is ErrorKind.FATAL,
            )
            return RunResult(JobStatus.FAILED, str(exc) or exc.__class__.__name__, kind)

        if should_stop():
            return RunResult(job.status, job.error)
        return RunResult(JobStatus.COMPLETED)

    # ------------------------------------------------------------------
    # Tiers
    # ------------------------------------------------------------------

    async def _run(self, ctx: RunContext) -> None:
        job = ctx.job
        bundle = await self._sessions.get(job.workspace_id, job.account_id)
        if bundle is None:
            raise SessionInvalidError(NO_SESSION_MESSAGE)

        lease = await self._acquire_lease(job, bundle)
        try:
            if await self._run_api(ctx, bundle, lease):
                return
            if ctx.should_stop():
                return
            await self._run_browser(ctx, bundle, lease)
        except SessionInvalidError:
            self._sessions.invalidate(job.workspace_id, job.account_id)
            raise
        finally:
            await self._release_lease(job, lease)

    async def _run_api(
        self, ctx: RunContext, bundle: SessionBundle, lease: ProxyLease | None
    ) -> bool:
        """Tier 1. Returns True when it pulled anything or the job was stopped."""
        job = ctx.job
        pulled = 0
        proxy_url = lease.httpx_url() if lease is not None else None
        try:
            async for page in self._voyager.iter_pages(
                keywords=ctx.search_query,
                cookie_header=bundle.cookie_header(),
                csrf_token=bundle.csrf_token,
                limit=job.remaining,
                start=job.total_pulled,
                proxy_url=proxy_url,
                user_agent=bundle.user_agent,
            ):
                if ctx.should_stop():
                    return True
                if page.total is not None:
                    job.total_found = max(job.total_found, page.total)
                await ctx.commit(page.leads)
                pulled += len(page.leads)
        except (SessionInvalidError, QuotaExceededError):
            raise
        except Exception as exc:
            if pulled:
                logger.warning(
                    "Search API stopped after %d leads: %s",
                    pulled,
                    exc,
                    extra={"job_id": job.id, "leads": pulled},
                )
                return True
            logger.info(
                "Search API unavailable, falling back to browser: %s",
                exc,
                extra={"job_id": job.id, "error_kind": classify_exception(exc).value},
            )
            return False

        if pulled:
            logger.info("Search API returned %d leads", pulled, extra={"job_id": job.id, "leads": pulled})
            return True
        logger.info("Search API returned no results, falling back to browser", extra={"job_id": job.id})
        return ctx.should_stop()

    async def _run_browser(
        self, ctx: RunContext, bundle: SessionBundle, lease: ProxyLease | None
    ) -> None:
        """Tier 2 with bounded rotation on transient proxy failures."""
        job = ctx.job
        attempt = 0
        while True:
            try:
                await self._browser_search.run(ctx, bundle, lease)
                return
            except Exception as exc:
                if classify_exception(exc) is not ErrorKind.PROXY_TRANSIENT:
                    raise
                if attempt >= self._max_rotation_attempts - 1:
                    raise RotationExhaustedError(
                        f"Proxy rotation failed after {self._max_rotation_attempts} attempts: {exc}"
                    ) from exc

                attempt += 1
                logger.warning(
                    "Proxy failure (attempt %d/%d): %s",
                    attempt,
                    self._max_rotation_attempts,
                    exc,
                    extra={
                        "job_id": job.id,
                        "attempt": attempt,
                        "proxy_id": lease.proxy_id if lease else None,
                        "error_kind": ErrorKind.PROXY_TRANSIENT.value,
                    },
                )
                lease = await self._rotate_lease(job, lease)
                self._emit("progress", job, {
                    "description": f"Proxy rotated (attempt {attempt}). Retrying search...",
                    "progress": job.progress,
                })
                await self._sleep(self._rotation_delay_ms / 1000.0)

    # ------------------------------------------------------------------
    # Leases
    # ------------------------------------------------------------------

    async def _acquire_lease(self, job: SearchJobState, bundle: SessionBundle) -> ProxyLease | None:
        """Pick the exit proxy for this session.

        Manually captured cookies are bound to the user's own IP, so they go
        out directly. A quick-login session must reuse the proxy it was
        captured through.
        """
        if bundle.ip_bound:
            logger.info("Session is IP-bound, running without proxy", extra={"job_id": job.id})
            return None
        user_id = job.user_id or job.account_id
        if bundle.session_source == "quick_login" and bundle.proxy_id:
            return await self._proxy_pool.lease_saved_proxy(bundle.proxy_id, user_id, job.workspace_id)
        return await self._proxy_pool.allocate(user_id, job.workspace_id)

    async def _rotate_lease(self, job: SearchJobState, lease: ProxyLease | None) -> ProxyLease | None:
        if lease is None:
            return None
        user_id = job.user_id or job.account_id
        if lease.allocation_id is None:
            rotated = await self._proxy_pool.lease_saved_proxy(lease.proxy_id, user_id, job.workspace_id)
        else:
            rotated = await self._proxy_pool.rotate_sticky_session(lease.proxy_id, user_id, job.workspace_id)
        logger.info(
            "Rotated to sticky session %s",
            rotated.sticky_session_id,
            extra={"job_id": job.id, "proxy_id": rotated.proxy_id},
        )
        return rotated

    async def _release_lease(self, job: SearchJobState, lease: ProxyLease | None) -> None:
        """Give back a dedicated proxy; shared sticky sessions stay allocated."""
        if lease is None or lease.allocation_id is None or lease.kind != "dedicated":
            return
        await self._proxy_pool.revoke(job.user_id or job.account_id, job.workspace_id)

    # ------------------------------------------------------------------
    # Budgets and commits
    # ------------------------------------------------------------------

    async def _check_page(self, job: SearchJobState, daily_cap: int | None) -> None:
        decision = await self._health.can_make_request(job.workspace_id, job.account_id)
        if not decision.allowed:
            raise AccountUnhealthyError(decision.reason)
        if await self._quota.remaining(job.workspace_id, job.account_id, daily_cap) <= 0:
            raise QuotaExceededError(DAILY_LIMIT_MESSAGE)

    async def _commit(
        self,
        job: SearchJobState,
        leads: list[Lead],
        checkpoint: Callable[[SearchJobState], Awaitable[None]],
        search_query: str,
        daily_cap: int | None,
    ) -> int:
        remaining_today = await self._quota.remaining(job.workspace_id, job.account_id, daily_cap)
        if remaining_today <= 0:
            raise QuotaExceededError(DAILY_LIMIT_MESSAGE)

        batch = leads[: min(job.remaining, remaining_today)]
        if not batch:
            return 0

        new_count = await self._lead_store.persist_and_dedupe(
            job.workspace_id,
            job.id,
            batch,
            start_position=job.total_pulled,
            search_query=search_query,
        )

        # Charge only after the new count is known
        if new_count:
            await self._quota.record(job.workspace_id, job.account_id, new_count)
            cost = new_count * self._credits_per_lead
            if cost:
                await self._credits.use_credits(
                    job.workspace_id,
                    cost,
                    {
                        "lookup_type": "linkedin",
                        "job_id": job.id,
                        "description": f"LinkedIn search: {new_count} new profiles",
                    },
                )
                job.credits_used += cost

        job.results.extend(batch)
        job.total_pulled += len(batch)
        job.total_found = max(job.total_found, job.total_pulled)
        job.data_source = VOYAGER_API if batch[0].data_source == VOYAGER_API else LINKEDIN_SEARCH
        job.update_progress()
        job.last_heartbeat = self._clock()
        await checkpoint(job)

        self._emit("progress", job, {
            "description": f"Pulling leads: {job.total_pulled} of {job.max_results} "
            f"({job.credits_used} credits used)",
            "progress": job.progress,
            "total_pulled": job.total_pulled,
        })
        return new_count

    def _emit(self, event: str, job: SearchJobState, data: dict) -> None:
        if self._activity is not None:
            self._activity.emit(event, job.id, {"workspace_id": job.workspace_id, **data})
