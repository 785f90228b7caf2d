"""Tier 2: interactive people search in a real browser.

One call to ``BrowserSearch.run`` is one browser attempt: warm up on the feed,
type the query into the global search box (falling back to the direct
results URL), then walk result pages in order. A resumed job opens its first
uncounted results page directly. Each page is snapshotted with
``page.content()`` and handed to the pure extraction chain. Page size and the
inter-page delay range come from the workspace safety policy when one is set.

Proxy rotation between attempts is the orchestrator's job; this module only
raises. A challenge page records a CAPTCHA against the account and raises
``ChallengeDetectedError``, which ends the run immediately.
"""

from __future__ import annotations

import logging
import math
from typing import TYPE_CHECKING
from urllib.parse import quote

from src.browser.fingerprint import FingerprintRandomizer
from src.browser.pool import BrowserPool
from src.extractors.registry import StrategyChain
from src.extractors.search_results import default_search_chain, extract_search_results
from src.health.account_health import AccountHealthTracker
from src.middleware.error_handler import ChallengeDetectedError, ProxyTransientError, SessionInvalidError
from src.models.normalizer import LeadNormalizer
from src.models.schemas import LINKEDIN_SEARCH
from src.pipeline.captcha import detect_challenge
from src.pipeline.context import RunContext
from src.pipeline.errors import is_proxy_error
from src.pipeline.humanizer import Humanizer

if TYPE_CHECKING:
    from playwright.async_api import Page

    from src.integration.session_provider import SessionBundle
    from src.proxy.types import ProxyLease

logger = logging.getLogger(__name__)

FEED_URL = "https://www.linkedin.com/feed/"
PEOPLE_SEARCH_URL = "https://www.linkedin.com/search/results/people/?keywords={keywords}&origin=GLOBAL_SEARCH_HEADER"
DEFAULT_KEYWORDS = "developer"

SEARCH_INPUT_SELECTORS = [
    "input.search-global-typeahead__input",
    'input[placeholder*="Search"]',
    'input[aria-label*="Search"]',
    ".search-global-typeahead input",
]

PEOPLE_FILTER_SELECTORS = [
    'button[aria-label*="People"]',
    'a[href*="search/results/people"]',
    '.search-reusables__filter-list button:has-text("People")',
    '.search-navigation--results-type-filters button:has-text("People")',
]

NEXT_BUTTON_SELECTOR = 'button[aria-label="Next"], .artdeco-pagination__button--next:not([disabled])'

RESULTS_READY_SELECTOR = (
    'li.reusable-search__result-container, .entity-result, a[href*="/in/"], .search-results-container'
)

CAPTCHA_MESSAGE = "CAPTCHA detected. Account in {hours}-hour cooldown for safety."

_SESSION_WALL_MARKERS = ("/login", "/authwall", "/uas/login")


def build_keywords(criteria: dict) -> str:
    """Search box text from job criteria; ``developer`` when nothing is set."""
    parts = [
        criteria.get(key)
        for key in ("keywords", "title", "company", "first_name", "last_name", "location")
    ]
    text = " ".join(str(part).strip() for part in parts if part and str(part).strip())
    return text or DEFAULT_KEYWORDS


def is_session_wall(url: str | None) -> bool:
    return bool(url) and any(marker in url for marker in _SESSION_WALL_MARKERS)


def _format_hours(hours: float) -> str:
    return str(int(hours)) if float(hours).is_integer() else str(hours)


class BrowserSearch:
    """Runs one browser attempt of a people search."""

    def __init__(
        self,
        *,
        browser_pool: BrowserPool,
        health: AccountHealthTracker,
        fingerprint: FingerprintRandomizer | None = None,
        humanizer: Humanizer | None = None,
        normalizer: LeadNormalizer | None = None,
        chain: StrategyChain | None = None,
        page_size: int = 10,
        min_page_delay_ms: int = 25000,
        page_delay_jitter_ms: int = 20000,
    ) -> None:
        self._browser_pool = browser_pool
        self._health = health
        self._fingerprint = fingerprint or FingerprintRandomizer()
        self._humanizer = humanizer or Humanizer()
        self._normalizer = normalizer or LeadNormalizer()
        self._chain = chain or default_search_chain()
        self._page_size = page_size
        self._min_page_delay_ms = min_page_delay_ms
        self._page_delay_jitter_ms = page_delay_jitter_ms

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run(
        self,
        ctx: RunContext,
        bundle: "SessionBundle",
        lease: "ProxyLease | None" = None,
    ) -> None:
        """Paginate until the target, the last page, or a stop request.

        Raises
        ------
        SessionInvalidError
            The feed redirected to a login wall, or page 1 came back empty
            behind one.
        ChallengeDetectedError
            A challenge page was seen; the CAPTCHA is already recorded.
        ProxyTransientError
            The site served its own error page, usually a broken tunnel.
        """
        job = ctx.job
        profile = self._fingerprint.generate(
            region=lease.country_code if lease else None,
            user_agent=bundle.user_agent,
        )
        proxy = None if bundle.ip_bound else lease

        async with self._browser_pool.page(
            profile, proxy=proxy, cookies=bundle.playwright_cookies()
        ) as page:
            await self._warm_up(ctx, page)
            if ctx.should_stop():
                return

            keywords = ctx.search_query or build_keywords(job.criteria)
            page_size, min_delay_ms, jitter_ms = self._pacing(ctx)
            start_page = job.total_pulled // page_size + 1
            last_page = math.ceil(job.max_results / page_size)
            if start_page > 1:
                # Counted pages are never loaded again
                await self._open_results_page(page, keywords, start_page)
            else:
                await self._open_search(page, keywords)

            page_no = start_page
            while job.total_pulled < job.max_results and page_no <= last_page:
                if ctx.should_stop():
                    return
                await ctx.check_page()

                await self._humanizer.scroll(page)
                await self._humanizer.move_mouse(page, profile.viewport_width, profile.viewport_height)

                html = await page.content()
                await self._raise_on_challenge(ctx, html, page.url)

                strategy, raw = extract_search_results(html, self._chain)
                leads = self._normalizer.normalize_many(raw, LINKEDIN_SEARCH)
                if not leads:
                    if page_no == start_page and is_session_wall(page.url):
                        raise SessionInvalidError("Session expired - redirected to login")
                    logger.info(
                        "No results on page %d, ending search",
                        page_no,
                        extra={"job_id": job.id, "page": page_no},
                    )
                    await self._health.record_page_load(job.workspace_id, job.account_id)
                    return

                new_count = await ctx.commit(leads)
                logger.info(
                    "Page %d: %d leads via %s (%d new)",
                    page_no,
                    len(leads),
                    strategy,
                    new_count,
                    extra={"job_id": job.id, "page": page_no, "leads": len(leads)},
                )

                done = job.total_pulled >= job.max_results or page_no >= last_page
                advanced = False if done else await self._next_page(page)
                await self._health.record_page_load(job.workspace_id, job.account_id)
                if not advanced:
                    return

                delay_ms = self._humanizer.inter_page_delay_ms(min_delay_ms, jitter_ms)
                if await self._humanizer.wait(delay_ms / 1000.0, ctx.should_stop):
                    return
                page_no += 1

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _warm_up(self, ctx: RunContext, page: "Page") -> None:
        await page.goto(FEED_URL, wait_until="domcontentloaded")
        if is_session_wall(page.url):
            raise SessionInvalidError("Session expired - redirected to login")

        title = await page.title()
        if title and is_proxy_error(title):
            raise ProxyTransientError(f"Site error page: {title}")
        await self._raise_on_challenge(ctx, None, page.url)

        await self._humanizer.pause(5000, 10000)
        await self._humanizer.scroll(page, 200, 500)
        await self._humanizer.pause(1000, 2000)

    async def _open_search(self, page: "Page", keywords: str) -> None:
        """Search through the UI; only go to the results URL if that fails."""
        if await self._search_via_ui(page, keywords):
            await self._click_people_filter(page)
        else:
            logger.info("Search box not found, opening people results directly")
            await page.goto(
                PEOPLE_SEARCH_URL.format(keywords=quote(keywords, safe="")),
                wait_until="domcontentloaded",
            )
        await self._wait_for_results(page)

    async def _search_via_ui(self, page: "Page", keywords: str) -> bool:
        for selector in SEARCH_INPUT_SELECTORS:
            box = await page.query_selector(selector)
            if box is None:
                continue
            await box.click()
            await self._humanizer.pause(300, 800)
            await self._humanizer.type_text(page, keywords)
            await page.keyboard.press("Enter")
            await page.wait_for_load_state("domcontentloaded")
            await self._humanizer.pause(2000, 4000)
            return True
        return False

    async def _click_people_filter(self, page: "Page") -> None:
        if "/search/results/people" in page.url:
            return
        for selector in PEOPLE_FILTER_SELECTORS:
            button = await page.query_selector(selector)
            if button is not None:
                await button.click()
                await self._humanizer.pause(2000, 3000)
                return
        logger.info("People filter not found, continuing with current results")

    async def _wait_for_results(self, page: "Page") -> None:
        from playwright.async_api import TimeoutError as PlaywrightTimeoutError

        try:
            await page.wait_for_selector(RESULTS_READY_SELECTOR, timeout=20000)
        except PlaywrightTimeoutError:
            logger.info("Results selector wait timed out, reading the page as is")

    async def _next_page(self, page: "Page") -> bool:
        button = await page.query_selector(NEXT_BUTTON_SELECTOR)
        if button is None or not await button.is_enabled():
            return False
        await button.click()
        await page.wait_for_load_state("domcontentloaded")
        await self._humanizer.pause(1500, 3000)
        return True

    async def _open_results_page(self, page: "Page", keywords: str, page_no: int) -> None:
        """Go straight to result page *page_no* of the people search."""
        url = PEOPLE_SEARCH_URL.format(keywords=quote(keywords, safe="")) + f"&page={page_no}"
        logger.info("Resuming search at results page %d", page_no, extra={"page": page_no})
        await page.goto(url, wait_until="domcontentloaded")
        await self._humanizer.pause(2000, 4000)
        await self._wait_for_results(page)

    def _pacing(self, ctx: RunContext) -> tuple[int, int, int]:
        """``(page_size, min_delay_ms, jitter_ms)``, from the workspace policy when set."""
        policy = ctx.policy
        if policy is None:
            return self._page_size, self._min_page_delay_ms, self._page_delay_jitter_ms
        return policy.page_size, policy.min_delay_ms, policy.max_delay_ms - policy.min_delay_ms

    async def _raise_on_challenge(self, ctx: RunContext, html: str | None, url: str | None) -> None:
        check = detect_challenge(html, url)
        if not check.detected:
            return
        job = ctx.job
        await self._health.record_captcha(job.workspace_id, job.account_id)
        logger.warning(
            "Challenge detected (%s), stopping search",
            check.indicator,
            extra={"job_id": job.id, "workspace_id": job.workspace_id, "account_id": job.account_id},
        )
        hours = self._health.limits.captcha_cooldown_hours
        raise ChallengeDetectedError(CAPTCHA_MESSAGE.format(hours=_format_hours(hours)))
