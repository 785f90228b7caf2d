"""FastAPI application entry point with lifespan management.

Startup: validate settings, open storage, build the proxy pool, browser pool,
account safety trackers and retrieval pipeline, then mark jobs orphaned by
the previous process as interrupted.
Shutdown: wait for running jobs, flush activity events, close the browser
pool, cancel background loops, dispose of the database engine.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from src.browser.fingerprint import FingerprintRandomizer
from src.browser.pool import BrowserPool
from src.config.safety_policies import SafetyPolicy, load_safety_policies
from src.config.settings import RetrievalSettings
from src.extractors import default_search_chain, default_voyager_chain
from src.health.account_health import AccountHealthTracker, HealthLimits
from src.health.daily_quota import DailyQuota
from src.health.scraper_metrics import ScraperHealthMonitor
from src.integration.activity import ActivityEmitter
from src.integration.cipher import CredentialCipher
from src.integration.credit_ledger import CreditLedger
from src.integration.session_provider import SessionCredentialProvider
from src.logging_config import configure_logging
from src.middleware.auth import ServiceKeyAuthMiddleware
from src.middleware.error_handler import register_error_handlers
from src.middleware.request_id import RequestIdMiddleware
from src.models.normalizer import LeadNormalizer
from src.pipeline.browser_search import BrowserSearch
from src.pipeline.humanizer import Humanizer
from src.pipeline.retrieval import RetrievalPipeline
from src.pipeline.voyager import VoyagerClient
from src.proxy.health import ProxyHealthChecker
from src.proxy.pool import ProxyPool
from src.routers.health import create_health_router
from src.routers.proxies import create_proxies_router
from src.routers.search import create_search_router
from src.services.job_manager import SearchJobManager
from src.services.recovery import RecoveryCoordinator
from src.storage.database import Database
from src.storage.job_store import SearchJobStore
from src.storage.lead_store import LeadStore

logger = logging.getLogger(__name__)

# Shared state for the application: populated during lifespan startup
_state: dict = {}


async def rotation_loop(proxy_pool: ProxyPool, interval_seconds: int) -> None:
    """Rotate due proxy allocations every ``interval_seconds`` until cancelled."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await proxy_pool.run_scheduled_rotations()
        except Exception:
            logger.exception("Scheduled proxy rotation round failed")


async def _cancel(task: asyncio.Task) -> None:
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown logic."""
    settings = RetrievalSettings()  # type: ignore[call-arg]

    configure_logging(settings.log_level)
    logger.info("Starting retrieval service on port %d", settings.port)

    # Storage
    database = Database(settings.database_url, echo=settings.database_echo)
    await database.create_all()
    job_store = SearchJobStore(database)
    lead_store = LeadStore(database)

    # Proxy pool and its background loops
    proxy_pool = ProxyPool(
        database,
        CredentialCipher(settings.credential_cipher_key),
        master_max_sessions=settings.master_proxy_max_sessions,
    )
    health_checker = ProxyHealthChecker(
        proxy_pool,
        check_url=settings.proxy_health_check_url,
        interval_seconds=settings.proxy_health_check_interval_seconds,
    )

    # Account safety
    health = AccountHealthTracker(
        database,
        HealthLimits(
            max_pages_per_hour=settings.max_pages_per_hour,
            captcha_cooldown_hours=settings.captcha_cooldown_hours,
            max_captchas_per_day=settings.max_captchas_per_day,
            timezone=settings.timezone,
        ),
    )
    quota = DailyQuota(
        database,
        default_limit=settings.default_daily_limit,
        tz_name=settings.timezone,
    )
    safety_policies = load_safety_policies(
        settings.safety_policies_path,
        default=SafetyPolicy(
            daily_limit=settings.default_daily_limit,
            min_delay_ms=settings.min_page_delay_ms,
            max_delay_ms=settings.min_page_delay_ms + settings.page_delay_jitter_ms,
            page_size=settings.page_size,
        ),
    )
    monitor = ScraperHealthMonitor()

    # Backend integration
    sessions = SessionCredentialProvider(
        backend_api_url=settings.backend_api_url,
        service_key=settings.backend_service_key,
        cache_ttl_seconds=settings.session_cache_ttl_seconds,
        max_retries=settings.backend_max_retries,
    )
    credits = CreditLedger(
        backend_api_url=settings.backend_api_url,
        service_key=settings.backend_service_key,
        max_retries=settings.backend_max_retries,
    )
    activity = ActivityEmitter(
        settings.activity_webhook_url,
        secret=settings.activity_webhook_secret,
    )

    # Browser pool
    browser_pool = BrowserPool()
    await browser_pool.initialize(
        settings.browser_pool_size,
        run_limit=settings.browser_page_limit,
        headless=settings.headless,
        navigation_timeout_ms=settings.navigation_timeout_ms,
    )

    # Retrieval pipeline
    humanizer = Humanizer()
    normalizer = LeadNormalizer()
    voyager = VoyagerClient(
        humanizer=humanizer,
        normalizer=normalizer,
        chain=default_voyager_chain(),
        page_size=settings.api_page_size,
        max_empty_pages=settings.api_max_empty_pages,
        timeout_seconds=settings.api_timeout_seconds,
    )
    browser_search = BrowserSearch(
        browser_pool=browser_pool,
        health=health,
        fingerprint=FingerprintRandomizer(),
        humanizer=humanizer,
        normalizer=normalizer,
        chain=default_search_chain(),
        page_size=settings.page_size,
        min_page_delay_ms=settings.min_page_delay_ms,
        page_delay_jitter_ms=settings.page_delay_jitter_ms,
    )
    pipeline = RetrievalPipeline(
        sessions=sessions,
        proxy_pool=proxy_pool,
        health=health,
        quota=quota,
        credits=credits,
        lead_store=lead_store,
        voyager=voyager,
        browser_search=browser_search,
        activity=activity,
        safety_policies=safety_policies,
        credits_per_lead=settings.credits_per_lead,
        max_rotation_attempts=settings.max_proxy_rotation_attempts,
        rotation_delay_ms=settings.proxy_rotation_delay_ms,
    )

    # Job control
    job_manager = SearchJobManager(
        store=job_store,
        lead_store=lead_store,
        pipeline=pipeline,
        health=health,
        quota=quota,
        credits=credits,
        monitor=monitor,
        activity=activity,
        safety_policies=safety_policies,
    )
    recovery = RecoveryCoordinator(store=job_store, manager=job_manager, health=health)
    await recovery.recover_interrupted_jobs()

    health_check_task = asyncio.create_task(health_checker.health_check_loop())
    rotation_task = asyncio.create_task(
        rotation_loop(proxy_pool, settings.proxy_rotation_check_interval_seconds)
    )

    # Mount routers
    app.include_router(
        create_health_router(
            database=database,
            browser_pool=browser_pool,
            proxy_pool=proxy_pool,
            monitor=monitor,
            job_manager=job_manager,
        )
    )
    app.include_router(
        create_search_router(
            job_manager=job_manager,
            recovery=recovery,
            health=health,
            monitor=monitor,
        )
    )
    app.include_router(create_proxies_router(proxy_pool=proxy_pool, health_checker=health_checker))

    _state.update({
        "settings": settings,
        "database": database,
        "proxy_pool": proxy_pool,
        "browser_pool": browser_pool,
        "job_manager": job_manager,
        "recovery": recovery,
    })

    logger.info("Retrieval service started successfully")

    yield

    # --- Shutdown ---
    logger.info("Shutting down retrieval service")

    await job_manager.shutdown(timeout=settings.graceful_shutdown_seconds)
    await activity.aclose()
    await browser_pool.shutdown()

    await _cancel(health_check_task)
    await _cancel(rotation_task)

    await database.dispose()
    logger.info("Retrieval service shut down")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Loads ``RetrievalSettings`` eagerly so that a missing
    ``RETRIEVAL_SERVICE_KEY`` environment variable causes an immediate
    startup failure rather than silently falling back to a placeholder value.
    """
    settings = RetrievalSettings()  # type: ignore[call-arg]

    app = FastAPI(
        title="Prospect Retrieval Service",
        version="1.0.0",
        lifespan=lifespan,
    )

    register_error_handlers(app)

    # Starlette applies middleware in reverse order of add_middleware calls
    app.add_middleware(ServiceKeyAuthMiddleware, service_key=settings.service_key)
    app.add_middleware(RequestIdMiddleware)

    return app


app = create_app()
