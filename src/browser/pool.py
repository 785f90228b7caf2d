"""Playwright browser pool management.

Manages a fixed-size pool of Chromium instances. Every retrieval run gets its
own browser context (fingerprint, proxy and session cookies) inside a pooled
instance; the context is closed when the run ends, so nothing leaks between
accounts. Instances are recycled after a configurable number of runs, and
crashed instances are replaced via Playwright's ``disconnected`` event.
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, AsyncIterator
from uuid import uuid4

from src.browser.fingerprint import WEBDRIVER_OVERRIDE_JS, FingerprintProfile
from src.middleware.error_handler import BrowserUnavailableError

if TYPE_CHECKING:
    from playwright.async_api import BrowserContext, Page

    from src.proxy.types import ProxyLease

logger = logging.getLogger(__name__)

# Chromium flags for containerized operation
CHROMIUM_ARGS: list[str] = [
    "--no-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--disable-blink-features=AutomationControlled",
]


@dataclass
class BrowserInstance:
    """A single managed browser instance in the pool."""

    id: str
    browser: Any  # playwright.async_api.Browser at runtime
    runs: int = 0
    created_at: float = field(default_factory=time.monotonic)

    async def new_context(
        self,
        profile: FingerprintProfile,
        *,
        proxy: "ProxyLease | None" = None,
        cookies: list[dict] | None = None,
    ) -> "BrowserContext":
        """Create an isolated context with *profile*, optional *proxy* and *cookies*."""
        options = profile.context_options()
        if proxy is not None:
            options["proxy"] = proxy.playwright_proxy()
        context = await self.browser.new_context(**options)
        await context.add_init_script(WEBDRIVER_OVERRIDE_JS)
        if cookies:
            await context.add_cookies(cookies)
        return context

    def needs_recycling(self, max_runs: int) -> bool:
        return self.runs >= max_runs


class BrowserPool:
    """Manages a pool of Playwright Chromium browser instances.

    Lifecycle
    ---------
    1. ``initialize(pool_size)``: launch *pool_size* Chromium instances.
    2. ``page(profile, proxy, cookies)``: context manager yielding a fresh
       page; acquires an instance and always closes the context and releases
       the instance on exit.
    3. ``shutdown()``: close all browsers and the Playwright process.
    """

    def __init__(self) -> None:
        self._playwright: Any = None  # Playwright instance (lazy import)
        self._available: asyncio.Queue[BrowserInstance] = asyncio.Queue()
        self._in_use: dict[str, BrowserInstance] = {}
        self._all: dict[str, BrowserInstance] = {}
        self._lock = asyncio.Lock()
        self._run_limit: int = 50
        self._headless: bool = True
        self._navigation_timeout_ms: int = 30000
        self._runs: int = 0
        self._recycled_count: int = 0
        self._initialized: bool = False
        self._shutting_down: bool = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(
        self,
        pool_size: int,
        *,
        run_limit: int = 50,
        headless: bool = True,
        navigation_timeout_ms: int = 30000,
    ) -> None:
        """Launch *pool_size* Chromium instances and populate the pool."""
        from playwright.async_api import async_playwright

        self._run_limit = run_limit
        self._headless = headless
        self._navigation_timeout_ms = navigation_timeout_ms
        self._playwright = await async_playwright().start()

        for _ in range(pool_size):
            instance = await self._launch_instance()
            self._available.put_nowait(instance)

        self._initialized = True
        logger.info("Browser pool initialized: size=%d, run_limit=%d", pool_size, run_limit)

    async def acquire(self, timeout: float = 30.0) -> BrowserInstance:
        """Return an available instance, waiting up to *timeout* seconds."""
        if not self._initialized:
            raise BrowserUnavailableError("Browser pool is not running")
        try:
            instance = await asyncio.wait_for(self._available.get(), timeout=timeout)
        except asyncio.TimeoutError:
            raise BrowserUnavailableError(
                f"No browser instance available within {timeout}s timeout"
            )

        # Instances removed after a crash may still be queued
        if instance.id not in self._all:
            return await self.acquire(timeout=0.1)

        self._in_use[instance.id] = instance
        return instance

    async def release(self, instance: BrowserInstance) -> None:
        """Return *instance* to the pool, recycling it past the run limit."""
        self._in_use.pop(instance.id, None)
        instance.runs += 1
        self._runs += 1

        if self._shutting_down:
            await self._close_instance(instance)
            return

        if instance.needs_recycling(self._run_limit):
            logger.info("Recycling browser instance %s after %d runs", instance.id, instance.runs)
            await self._recycle_instance(instance)
            return

        self._available.put_nowait(instance)

    @asynccontextmanager
    async def page(
        self,
        profile: FingerprintProfile,
        *,
        proxy: "ProxyLease | None" = None,
        cookies: list[dict] | None = None,
        acquire_timeout: float = 30.0,
    ) -> AsyncIterator["Page"]:
        """Yield a page in a fresh context; cleanup runs on every exit path."""
        instance = await self.acquire(timeout=acquire_timeout)
        context = None
        try:
            context = await instance.new_context(profile, proxy=proxy, cookies=cookies)
            context.set_default_navigation_timeout(self._navigation_timeout_ms)
            page = await context.new_page()
            yield page
        finally:
            if context is not None:
                try:
                    await context.close()
                except Exception:
                    logger.debug("Error closing browser context", exc_info=True)
            await self.release(instance)

    async def shutdown(self) -> None:
        """Gracefully close all browser instances and stop Playwright."""
        self._shutting_down = True
        logger.info("Shutting down browser pool")

        for instance in list(self._all.values()):
            await self._close_instance(instance)
        self._all.clear()
        self._in_use.clear()

        while not self._available.empty():
            self._available.get_nowait()

        if self._playwright:
            await self._playwright.stop()
            self._playwright = None

        self._initialized = False
        logger.info("Browser pool shut down")

    def get_stats(self) -> dict:
        return {
            "total": len(self._all),
            "available": self._available.qsize(),
            "in_use": len(self._in_use),
            "runs": self._runs,
            "recycled_count": self._recycled_count,
        }

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _launch_instance(self) -> BrowserInstance:
        assert self._playwright is not None, "Playwright not started"

        browser = await self._playwright.chromium.launch(
            headless=self._headless,
            args=CHROMIUM_ARGS,
        )
        instance_id = str(uuid4())
        instance = BrowserInstance(id=instance_id, browser=browser)
        self._all[instance_id] = instance

        browser.on(
            "disconnected",
            lambda _browser: asyncio.ensure_future(self._on_disconnected(instance_id)),
        )
        return instance

    async def _on_disconnected(self, instance_id: str) -> None:
        if self._shutting_down or instance_id not in self._all:
            return

        logger.warning("Browser instance %s disconnected, replacing", instance_id)
        async with self._lock:
            self._all.pop(instance_id, None)
            self._in_use.pop(instance_id, None)
            try:
                replacement = await self._launch_instance()
                self._available.put_nowait(replacement)
            except Exception:
                logger.error("Failed to replace crashed instance %s", instance_id, exc_info=True)

    async def _recycle_instance(self, instance: BrowserInstance) -> None:
        await self._close_instance(instance)
        self._recycled_count += 1
        if self._shutting_down:
            return
        try:
            replacement = await self._launch_instance()
            self._available.put_nowait(replacement)
        except Exception:
            logger.error("Failed to launch replacement after recycling %s", instance.id, exc_info=True)

    async def _close_instance(self, instance: BrowserInstance) -> None:
        self._all.pop(instance.id, None)
        try:
            await instance.browser.close()
        except Exception:
            logger.debug("Error closing browser instance %s", instance.id, exc_info=True)
