"""Unit tests for the tiered retrieval orchestrator.

Storage, account health, quota and the proxy pool are real (in-memory
SQLite); the session provider, credit ledger and both tiers are fakes.
"""

from __future__ import annotations

import random
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from src.browser.fingerprint import FingerprintRandomizer
from src.config.safety_policies import SafetyPolicy
from src.middleware.error_handler import (
    InsufficientCreditsError,
    ProxyTransientError,
    SessionInvalidError,
    UpstreamError,
)
from src.models.requests import JobStatus, ProxyKind
from src.models.schemas import LINKEDIN_SEARCH, VOYAGER_API
from src.pipeline.browser_search import BrowserSearch
from src.pipeline.errors import ErrorKind
from src.pipeline.retrieval import (
    DAILY_LIMIT_MESSAGE,
    NO_SESSION_MESSAGE,
    OUT_OF_CREDITS_MESSAGE,
    RetrievalPipeline,
)
from src.pipeline.voyager import VoyagerPage
from tests.conftest import (
    CAPTCHA_HTML,
    START,
    FakeBrowserPool,
    FakeCredits,
    FakePage,
    FakeSessions,
    make_job,
    make_leads,
    proxy_request,
    results_page_html,
    session_bundle,
)


class FakeVoyager:
    """Tier 1 stand-in yielding scripted pages, or raising before the first."""

    def __init__(self, pages: list[VoyagerPage] | None = None, error: Exception | None = None) -> None:
        self.pages = pages or []
        self.error = error
        self.calls: list[dict] = []

    async def iter_pages(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        for page in self.pages:
            yield page


class FakeBrowserSearch:
    """Tier 2 stand-in: each call pops the next scripted outcome.

    An exception is raised; a list of leads is committed through the context.
    """

    def __init__(self, outcomes: list | None = None) -> None:
        self.outcomes = list(outcomes or [])
        self.leases: list = []

    async def run(self, ctx, bundle, lease=None):
        self.leases.append(lease)
        outcome = self.outcomes.pop(0) if self.outcomes else []
        if isinstance(outcome, Exception):
            raise outcome
        if outcome:
            await ctx.commit(outcome)


@pytest.fixture
def credits() -> FakeCredits:
    return FakeCredits()


@pytest.fixture
def rotation_sleep() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def build(proxy_pool, health, quota, lead_store, credits, clock, rotation_sleep):
    """Factory for a pipeline over the shared fakes."""

    def _build(*, sessions=None, voyager=None, browser_search=None, safety_policies=None) -> RetrievalPipeline:
        return RetrievalPipeline(
            sessions=sessions or FakeSessions(session_bundle()),
            proxy_pool=proxy_pool,
            health=health,
            quota=quota,
            credits=credits,
            lead_store=lead_store,
            voyager=voyager or FakeVoyager(),
            browser_search=browser_search or FakeBrowserSearch(),
            safety_policies=safety_policies,
            sleep=rotation_sleep,
            clock=clock,
        )

    return _build


async def _run(pipeline: RetrievalPipeline, job, job_store, should_stop=lambda: False):
    await job_store.save(job)
    return await pipeline.run(job, should_stop=should_stop, checkpoint=job_store.save)


class TestTierOne:
    @pytest.mark.asyncio
    async def test_api_success_skips_browser(self, build, proxy_pool, job_store, credits, quota):
        await proxy_pool.add_proxy(proxy_request(kind=ProxyKind.MASTER))
        voyager = FakeVoyager([
            VoyagerPage(0, make_leads(0, 10, VOYAGER_API), total=120),
            VoyagerPage(10, make_leads(10, 10, VOYAGER_API), total=120),
        ])
        browser = FakeBrowserSearch()
        job = make_job(max_results=20)

        result = await _run(build(voyager=voyager, browser_search=browser), job, job_store)

        assert result.status is JobStatus.COMPLETED
        assert browser.leases == []
        assert job.total_pulled == 20
        assert job.total_found == 120
        assert job.data_source == VOYAGER_API
        assert credits.charges == [10, 10]
        assert job.credits_used == 20
        assert (await quota.get_usage("ws-1", "acct-1")).count == 20
        assert voyager.calls[0]["proxy_url"].startswith("http://proxyuser_session-")

    @pytest.mark.asyncio
    async def test_api_resumes_at_offset(self, build, proxy_pool, job_store):
        await proxy_pool.add_proxy(proxy_request(kind=ProxyKind.MASTER))
        voyager = FakeVoyager([VoyagerPage(30, make_leads(30, 10, VOYAGER_API))])
        job = make_job(max_results=40, total_pulled=30)

        await _run(build(voyager=voyager), job, job_store)

        assert voyager.calls[0]["start"] == 30
        assert voyager.calls[0]["limit"] == 10
        assert job.total_pulled == 40

    @pytest.mark.asyncio
    async def test_empty_api_falls_back_to_browser(self, build, proxy_pool, job_store):
        await proxy_pool.add_proxy(proxy_request(kind=ProxyKind.MASTER))
        browser = FakeBrowserSearch([make_leads(0, 10)])
        job = make_job(max_results=10)

        result = await _run(build(browser_search=browser), job, job_store)

        assert result.status is JobStatus.COMPLETED
        assert len(browser.leases) == 1
        assert job.data_source == LINKEDIN_SEARCH

    @pytest.mark.asyncio
    async def test_api_error_falls_back_to_browser(self, build, proxy_pool, job_store):
        await proxy_pool.add_proxy(proxy_request(kind=ProxyKind.MASTER))
        browser = FakeBrowserSearch([make_leads(0, 5)])
        voyager = FakeVoyager(error=UpstreamError("Search API returned HTTP 500"))

        result = await _run(build(voyager=voyager, browser_search=browser), make_job(max_results=5), job_store)

        assert result.status is JobStatus.COMPLETED
        assert len(browser.leases) == 1

    @pytest.mark.asyncio
    async def test_api_session_rejection_does_not_fall_back(self, build, proxy_pool, job_store):
        await proxy_pool.add_proxy(proxy_request(kind=ProxyKind.MASTER))
        sessions = FakeSessions(session_bundle())
        browser = FakeBrowserSearch()
        voyager = FakeVoyager(error=SessionInvalidError("Search API rejected the session (HTTP 401)"))

        result = await _run(
            build(sessions=sessions, voyager=voyager, browser_search=browser), make_job(), job_store
        )

        assert result.status is JobStatus.FAILED
        assert result.kind is ErrorKind.SESSION_INVALID
        assert browser.leases == []
        assert sessions.invalidated == [("ws-1", "acct-1")]


class TestRotation:
    @pytest.mark.asyncio
    async def test_three_transient_failures_rotate_twice_then_fail(
        self, build, proxy_pool, job_store, rotation_sleep
    ):
        await proxy_pool.add_proxy(proxy_request(kind=ProxyKind.MASTER))
        failure = ProxyTransientError("net::ERR_TUNNEL_CONNECTION_FAILED")
        browser = FakeBrowserSearch([failure, failure, failure, make_leads(0, 5)])
        pipeline = build(browser_search=browser)

        result = await _run(pipeline, make_job(), job_store)

        assert result.status is JobStatus.FAILED
        assert result.kind is ErrorKind.PROXY_TRANSIENT
        assert result.error.startswith("Proxy rotation failed after 3 attempts:")
        assert len(browser.leases) == 3
        assert len({lease.sticky_session_id for lease in browser.leases}) == 3
        assert len({lease.proxy_id for lease in browser.leases}) == 1
        assert rotation_sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_rotation_recovers(self, build, proxy_pool, job_store):
        await proxy_pool.add_proxy(proxy_request(kind=ProxyKind.MASTER))
        browser = FakeBrowserSearch([ProxyTransientError("502 Bad Gateway"), make_leads(0, 10)])
        job = make_job(max_results=10)

        result = await _run(build(browser_search=browser), job, job_store)

        assert result.status is JobStatus.COMPLETED
        assert job.total_pulled == 10
        assert browser.leases[0].sticky_session_id != browser.leases[1].sticky_session_id

    @pytest.mark.asyncio
    async def test_untyped_proxy_message_is_retried(self, build, proxy_pool, job_store):
        await proxy_pool.add_proxy(proxy_request(kind=ProxyKind.MASTER))
        browser = FakeBrowserSearch([RuntimeError("net::ERR_PROXY_CONNECTION_FAILED at https://www.linkedin.com/feed/")])

        result = await _run(build(browser_search=browser), make_job(), job_store)

        assert result.status is JobStatus.COMPLETED
        assert len(browser.leases) == 2

    @pytest.mark.asyncio
    async def test_non_proxy_error_is_not_retried(self, build, proxy_pool, job_store):
        await proxy_pool.add_proxy(proxy_request(kind=ProxyKind.MASTER))
        browser = FakeBrowserSearch([RuntimeError("Target page, context or browser has been closed")])

        result = await _run(build(browser_search=browser), make_job(), job_store)

        assert result.status is JobStatus.FAILED
        assert result.kind is ErrorKind.FATAL
        assert len(browser.leases) == 1


class TestSessionsAndLeases:
    @pytest.mark.asyncio
    async def test_missing_session_fails(self, build, job_store):
        result = await _run(build(sessions=FakeSessions(None)), make_job(), job_store)
        assert result.status is JobStatus.FAILED
        assert result.error == NO_SESSION_MESSAGE
        assert result.kind is ErrorKind.SESSION_INVALID

    @pytest.mark.asyncio
    async def test_manual_session_runs_without_proxy(self, build, proxy_pool, job_store):
        browser = FakeBrowserSearch([make_leads(0, 5)])
        voyager = FakeVoyager()
        sessions = FakeSessions(session_bundle("manual"))

        result = await _run(
            build(sessions=sessions, voyager=voyager, browser_search=browser), make_job(max_results=5), job_store
        )

        assert result.status is JobStatus.COMPLETED
        assert browser.leases == [None]
        assert voyager.calls[0]["proxy_url"] is None
        assert (await proxy_pool.get_pool_stats())["active_allocations"] == 0

    @pytest.mark.asyncio
    async def test_quick_login_session_reuses_its_proxy(self, build, proxy_pool, job_store):
        await proxy_pool.add_proxy(proxy_request("gw.example.net", kind=ProxyKind.MASTER))
        saved = await proxy_pool.add_proxy(proxy_request("saved.example.net"))
        browser = FakeBrowserSearch([make_leads(0, 5)])
        sessions = FakeSessions(session_bundle("quick_login", proxy_id=saved["id"]))

        await _run(build(sessions=sessions, browser_search=browser), make_job(max_results=5), job_store)

        (lease,) = browser.leases
        assert lease.proxy_id == saved["id"]
        assert lease.allocation_id is None

    @pytest.mark.asyncio
    async def test_no_proxy_available_fails(self, build, job_store):
        result = await _run(build(), make_job(), job_store)
        assert result.status is JobStatus.FAILED
        assert result.kind is ErrorKind.PROXY_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_dedicated_proxy_released_after_run(self, build, proxy_pool, job_store):
        await proxy_pool.add_proxy(proxy_request())
        browser = FakeBrowserSearch([make_leads(0, 5)])

        await _run(build(browser_search=browser), make_job(max_results=5), job_store)

        stats = await proxy_pool.get_pool_stats()
        assert stats["available"] == 1
        assert stats["active_allocations"] == 0

    @pytest.mark.asyncio
    async def test_master_allocation_kept_after_run(self, build, proxy_pool, job_store):
        await proxy_pool.add_proxy(proxy_request(kind=ProxyKind.MASTER))
        await _run(build(browser_search=FakeBrowserSearch([make_leads(0, 5)])), make_job(max_results=5), job_store)
        assert await proxy_pool.get_user_proxy_status("acct-1", "ws-1") is not None


class TestBudgets:
    @pytest.mark.asyncio
    async def test_daily_limit_trims_then_rate_limits(self, build, proxy_pool, quota, job_store):
        await proxy_pool.add_proxy(proxy_request(kind=ProxyKind.MASTER))
        await quota.set_limit("ws-1", "acct-1", 15)
        voyager = FakeVoyager([
            VoyagerPage(0, make_leads(0, 10, VOYAGER_API)),
            VoyagerPage(10, make_leads(10, 10, VOYAGER_API)),
            VoyagerPage(20, make_leads(20, 10, VOYAGER_API)),
        ])
        job = make_job(max_results=50)

        result = await _run(build(voyager=voyager), job, job_store)

        assert result.status is JobStatus.RATE_LIMITED
        assert result.error == DAILY_LIMIT_MESSAGE
        assert job.daily_limit_reached is True
        assert job.total_pulled == 15
        assert (await quota.remaining("ws-1", "acct-1")) == 0

    @pytest.mark.asyncio
    async def test_workspace_policy_caps_mid_run(self, build, proxy_pool, quota, job_store):
        await proxy_pool.add_proxy(proxy_request(kind=ProxyKind.MASTER))
        voyager = FakeVoyager([
            VoyagerPage(0, make_leads(0, 10, VOYAGER_API)),
            VoyagerPage(10, make_leads(10, 10, VOYAGER_API)),
        ])
        policies = {"ws-1": SafetyPolicy(daily_limit=1000, warmup_mode=True, days_active=1)}
        job = make_job(max_results=100)
        await quota.record("ws-1", "acct-1", 45)

        result = await _run(build(voyager=voyager, safety_policies=policies), job, job_store)

        assert result.status is JobStatus.RATE_LIMITED
        assert result.error == DAILY_LIMIT_MESSAGE
        assert job.total_pulled == 5
        assert (await quota.get_usage("ws-1", "acct-1")).count == 50

    @pytest.mark.asyncio
    async def test_only_new_leads_are_charged(self, build, proxy_pool, lead_store, credits, job_store):
        await proxy_pool.add_proxy(proxy_request(kind=ProxyKind.MASTER))
        await lead_store.persist_and_dedupe("ws-1", None, make_leads(0, 5))
        voyager = FakeVoyager([VoyagerPage(0, make_leads(0, 10, VOYAGER_API))])
        job = make_job(max_results=10)

        await _run(build(voyager=voyager), job, job_store)

        assert credits.charges == [5]
        assert job.credits_used == 5
        assert job.total_pulled == 10

    @pytest.mark.asyncio
    async def test_ledger_refusal_fails_job(self, build, proxy_pool, credits, job_store):
        await proxy_pool.add_proxy(proxy_request(kind=ProxyKind.MASTER))
        credits.use_credits = AsyncMock(side_effect=InsufficientCreditsError())
        voyager = FakeVoyager([VoyagerPage(0, make_leads(0, 10, VOYAGER_API))])

        result = await _run(build(voyager=voyager), make_job(), job_store)

        assert result.status is JobStatus.FAILED
        assert result.error == OUT_OF_CREDITS_MESSAGE

    @pytest.mark.asyncio
    async def test_unhealthy_account_rate_limits_browser(self, build, proxy_pool, health, job_store, humanizer, clock):
        await proxy_pool.add_proxy(proxy_request(kind=ProxyKind.MASTER))
        for _ in range(10):
            await health.record_page_load("ws-1", "acct-1")
        browser = BrowserSearch(
            browser_pool=FakeBrowserPool([FakePage([results_page_html(0, 10)])]),
            health=health,
            humanizer=humanizer,
        )

        result = await _run(build(browser_search=browser), make_job(), job_store)

        assert result.status is JobStatus.RATE_LIMITED
        assert result.error == "Hourly limit reached (10 pages/hour)"

    @pytest.mark.asyncio
    async def test_stop_request_returns_current_status(self, build, proxy_pool, job_store):
        await proxy_pool.add_proxy(proxy_request(kind=ProxyKind.MASTER))
        voyager = FakeVoyager([VoyagerPage(0, make_leads(0, 10, VOYAGER_API))])
        job = make_job(status=JobStatus.PAUSED)

        result = await _run(build(voyager=voyager), job, job_store, should_stop=lambda: True)

        assert result.status is JobStatus.PAUSED
        assert job.total_pulled == 0


class TestCaptchaMidJob:
    """A CAPTCHA on the third browser page ends the job rate limited."""

    @pytest.mark.asyncio
    async def test_captcha_on_page_three(self, build, proxy_pool, health, job_store, lead_store, humanizer, clock):
        await proxy_pool.add_proxy(proxy_request(kind=ProxyKind.MASTER))
        page = FakePage([results_page_html(0, 10), results_page_html(10, 10), CAPTCHA_HTML])
        pool = FakeBrowserPool([page])
        browser = BrowserSearch(
            browser_pool=pool,
            health=health,
            fingerprint=FingerprintRandomizer(rng=random.Random(5)),
            humanizer=humanizer,
        )
        job = make_job(max_results=50)

        result = await _run(build(browser_search=browser), job, job_store)

        assert result.status is JobStatus.RATE_LIMITED
        assert result.kind is ErrorKind.CHALLENGE
        assert result.error == "CAPTCHA detected. Account in 6-hour cooldown for safety."
        assert job.total_pulled == 20
        assert len(await lead_store.list_job_leads(job.id)) == 20

        state = await health.get_state("ws-1", "acct-1")
        assert state.cooldown_until == START + timedelta(hours=6)
        decision = await health.can_make_request("ws-1", "acct-1")
        assert decision.reason == "Account in cooldown. 360 minutes remaining."

        assert pool.opened[0]["proxy"] is not None
        stored = await job_store.get(job.id)
        assert stored.total_pulled == 20
