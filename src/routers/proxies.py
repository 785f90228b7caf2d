"""Proxy pool administration.

- GET    /api/v1/proxies: inventory (no credentials)
- GET    /api/v1/proxies/stats: pool counts
- POST   /api/v1/proxies: register a proxy
- DELETE /api/v1/proxies/{proxy_id}: remove (409 while allocated)
- PUT    /api/v1/proxies/{proxy_id}/status: enable/disable
- POST   /api/v1/proxies/bulk-disable: disable all but N proxies
- POST   /api/v1/proxies/health-check: check every proxy now
- POST   /api/v1/proxies/rotations/run: rotate due allocations now
- GET    /api/v1/proxies/allocations/{workspace_id}/{user_id}
- POST   /api/v1/proxies/allocations/{workspace_id}/{user_id}/rotate
- DELETE /api/v1/proxies/allocations/{workspace_id}/{user_id}
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import APIRouter

from src.models.requests import AddProxyRequest, BulkDisableRequest, UpdateProxyStatusRequest
from src.models.responses import ApiResponse

if TYPE_CHECKING:
    from src.proxy.health import ProxyHealthChecker
    from src.proxy.pool import ProxyPool


def create_proxies_router(
    *,
    proxy_pool: "ProxyPool",
    health_checker: "ProxyHealthChecker",
) -> APIRouter:
    """Factory that creates the proxy admin router with injected dependencies."""

    proxies_router = APIRouter(prefix="/api/v1/proxies", tags=["proxies"])

    @proxies_router.get("")
    async def list_proxies() -> dict:
        proxies = await proxy_pool.list_proxies()
        return ApiResponse(success=True, data=proxies, meta={"count": len(proxies)}).model_dump()

    @proxies_router.get("/stats")
    async def pool_stats() -> dict:
        return ApiResponse(success=True, data=await proxy_pool.get_pool_stats()).model_dump()

    @proxies_router.post("", status_code=201)
    async def add_proxy(body: AddProxyRequest) -> dict:
        return ApiResponse(success=True, data=await proxy_pool.add_proxy(body)).model_dump()

    @proxies_router.delete("/{proxy_id}")
    async def remove_proxy(proxy_id: str) -> dict:
        await proxy_pool.remove_proxy(proxy_id)
        return ApiResponse(success=True, data={"proxy_id": proxy_id, "removed": True}).model_dump()

    @proxies_router.put("/{proxy_id}/status")
    async def update_status(proxy_id: str, body: UpdateProxyStatusRequest) -> dict:
        proxy = await proxy_pool.update_proxy_status(proxy_id, body.status)
        return ApiResponse(success=True, data=proxy).model_dump()

    @proxies_router.post("/bulk-disable")
    async def bulk_disable(body: BulkDisableRequest) -> dict:
        disabled = await proxy_pool.bulk_disable_proxies(body.keep_count)
        return ApiResponse(success=True, data={"disabled": disabled}).model_dump()

    @proxies_router.post("/health-check")
    async def run_health_check() -> dict:
        return ApiResponse(success=True, data=await health_checker.run_health_checks()).model_dump()

    @proxies_router.post("/rotations/run")
    async def run_rotations() -> dict:
        rotated = await proxy_pool.run_scheduled_rotations()
        return ApiResponse(success=True, data={"rotated": rotated}).model_dump()

    @proxies_router.get("/allocations/{workspace_id}/{user_id}")
    async def get_allocation(workspace_id: str, user_id: str) -> dict:
        status = await proxy_pool.get_user_proxy_status(user_id, workspace_id)
        return ApiResponse(success=True, data=status).model_dump()

    @proxies_router.post("/allocations/{workspace_id}/{user_id}/rotate")
    async def rotate_allocation(workspace_id: str, user_id: str) -> dict:
        lease = await proxy_pool.rotate_user_proxy(user_id, workspace_id)
        return ApiResponse(success=True, data=lease.describe()).model_dump()

    @proxies_router.delete("/allocations/{workspace_id}/{user_id}")
    async def revoke_allocation(workspace_id: str, user_id: str) -> dict:
        revoked = await proxy_pool.revoke(user_id, workspace_id)
        return ApiResponse(success=True, data={"revoked": revoked}).model_dump()

    return proxies_router
