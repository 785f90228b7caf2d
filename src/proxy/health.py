"""Periodic outbound health checks through every enabled proxy.

Each check is a GET to ``check_url`` through the proxy. Success scores the
proxy by latency and restores unhealthy proxies; failure zeroes the score and
marks the proxy unhealthy. Results are stored through ``ProxyPool`` so the
allocation path sees them immediately.
"""

from __future__ import annotations

import asyncio
import logging
import time

import httpx

from src.proxy.pool import ProxyPool

logger = logging.getLogger(__name__)


class ProxyHealthChecker:
    """Checks proxies on demand and on a fixed interval."""

    def __init__(
        self,
        pool: ProxyPool,
        *,
        check_url: str = "https://httpbin.org/ip",
        timeout_seconds: float = 10.0,
        interval_seconds: int = 900,
    ) -> None:
        self._pool = pool
        self._check_url = check_url
        self._timeout_seconds = timeout_seconds
        self._interval_seconds = interval_seconds

    async def run_health_checks(self) -> dict:
        """Check every non-disabled proxy once and summarise the round."""
        targets = await self._pool.check_targets()
        healthy = 0
        for proxy_id, proxy_url in targets:
            success, latency_ms, error = await self._check_one(proxy_url)
            await self._pool.record_health_check(
                proxy_id, success=success, latency_ms=latency_ms, error=error
            )
            if success:
                healthy += 1

        summary = {"checked": len(targets), "healthy": healthy, "unhealthy": len(targets) - healthy}
        logger.info(
            "Proxy health check round: %d checked, %d healthy",
            summary["checked"],
            healthy,
        )
        return summary

    async def health_check_loop(self) -> None:
        """Run ``run_health_checks`` every ``interval_seconds`` until cancelled."""
        while True:
            await asyncio.sleep(self._interval_seconds)
            try:
                await self.run_health_checks()
            except Exception:
                logger.exception("Proxy health check round failed")

    async def _check_one(self, proxy_url: str) -> tuple[bool, int | None, str | None]:
        started = time.monotonic()
        try:
            async with httpx.AsyncClient(
                proxy=proxy_url,
                timeout=httpx.Timeout(self._timeout_seconds),
            ) as client:
                response = await client.get(self._check_url)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            return False, None, str(exc) or exc.__class__.__name__
        latency_ms = int((time.monotonic() - started) * 1000)
        return True, latency_ms, None
