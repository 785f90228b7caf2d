"""Health, readiness, and metrics endpoints.

These endpoints do NOT require X-Service-Key authentication.
- GET /health: service status + pool stats
- GET /readiness: 200 only when the database answers and a proxy is usable
- GET /metrics: operational metrics
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import APIRouter, Response

from src.models.responses import ApiResponse

if TYPE_CHECKING:
    from src.browser.pool import BrowserPool
    from src.health.scraper_metrics import ScraperHealthMonitor
    from src.proxy.pool import ProxyPool
    from src.services.job_manager import SearchJobManager
    from src.storage.database import Database


def create_health_router(
    *,
    database: "Database",
    browser_pool: "BrowserPool",
    proxy_pool: "ProxyPool",
    monitor: "ScraperHealthMonitor",
    job_manager: "SearchJobManager",
) -> APIRouter:
    """Factory that creates the health router with injected dependencies."""

    health_router = APIRouter(tags=["health"])

    @health_router.get("/health")
    async def health() -> dict:
        """Service health check with pool statistics."""
        return ApiResponse(
            success=True,
            data={
                "status": "healthy",
                "scraper": monitor.snapshot(),
                "browser_pool": browser_pool.get_stats(),
                "active_jobs": job_manager.active_count(),
            },
        ).model_dump()

    @health_router.get("/readiness")
    async def readiness(response: Response) -> dict:
        """Readiness check: database reachable and at least one usable proxy."""
        database_ok = await database.ping()
        proxy_stats = await proxy_pool.get_pool_stats() if database_ok else {}
        usable_proxies = proxy_stats.get("available", 0) + proxy_stats.get("masters", 0)

        is_ready = database_ok and usable_proxies > 0
        if not is_ready:
            response.status_code = 503

        return ApiResponse(
            success=is_ready,
            data={
                "ready": is_ready,
                "database": database_ok,
                "usable_proxies": usable_proxies,
            },
            error=None if is_ready else "Service not ready",
        ).model_dump()

    @health_router.get("/metrics")
    async def metrics() -> dict:
        """Operational metrics endpoint."""
        return ApiResponse(
            success=True,
            data={
                "scraper": monitor.snapshot(),
                "browser_pool": browser_pool.get_stats(),
                "proxy_pool": await proxy_pool.get_pool_stats(),
                "active_jobs": job_manager.active_count(),
            },
        ).model_dump()

    return health_router
