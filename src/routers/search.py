"""Search job control surface.

- POST   /api/v1/search/jobs: start a search job
- GET    /api/v1/search/jobs?workspace_id=: list a workspace's jobs
- GET    /api/v1/search/jobs/{job_id}: job status and progress
- POST   /api/v1/search/jobs/{job_id}/pause|resume|cancel|restart
- GET    /api/v1/search/jobs/{job_id}/leads: job leads, paged
- GET    /api/v1/search/jobs/{job_id}/export?format=json|csv|jsonl
- GET    /api/v1/search/health/{workspace_id}/{account_id}: account + scraper health
- GET    /api/v1/search/stats/{workspace_id}/{account_id}
- GET    /api/v1/search/daily-usage/{workspace_id}/{account_id}
- POST   /api/v1/search/daily-limit/{workspace_id}/{account_id}
- GET    /api/v1/search/leads/{workspace_id}
- DELETE /api/v1/search/leads/{workspace_id}
- GET    /api/v1/search/warmup-schedule/{days_active}
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from fastapi import APIRouter, Query, Response

from src.config.safety_policies import warmup_schedule
from src.models.requests import CreateSearchJobRequest, ExportFormat, SetDailyLimitRequest
from src.models.responses import ApiResponse, serialize_job

if TYPE_CHECKING:
    from src.health.account_health import AccountHealthTracker
    from src.health.scraper_metrics import ScraperHealthMonitor
    from src.services.job_manager import SearchJobManager
    from src.services.recovery import RecoveryCoordinator

logger = logging.getLogger(__name__)


def create_search_router(
    *,
    job_manager: "SearchJobManager",
    recovery: "RecoveryCoordinator",
    health: "AccountHealthTracker",
    monitor: "ScraperHealthMonitor",
) -> APIRouter:
    """Factory that creates the search router with injected dependencies."""

    search_router = APIRouter(prefix="/api/v1/search", tags=["search"])

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    @search_router.post("/jobs", status_code=202)
    async def create_job(body: CreateSearchJobRequest) -> dict:
        """Start a search job. 429/402 when the account or workspace is out of budget."""
        job = await job_manager.create_job(body)
        return ApiResponse(success=True, data=serialize_job(job)).model_dump()

    @search_router.get("/jobs")
    async def list_jobs(
        workspace_id: str = Query(..., min_length=1),
        limit: int = Query(default=50, ge=1, le=200),
    ) -> dict:
        jobs = await job_manager.list_jobs(workspace_id, limit)
        return ApiResponse(
            success=True,
            data=[serialize_job(job) for job in jobs],
            meta={"count": len(jobs)},
        ).model_dump()

    @search_router.get("/jobs/{job_id}")
    async def get_job(job_id: str) -> dict:
        job = await job_manager.get_job(job_id)
        return ApiResponse(success=True, data=serialize_job(job)).model_dump()

    @search_router.post("/jobs/{job_id}/pause")
    async def pause_job(job_id: str) -> dict:
        job = await job_manager.pause(job_id)
        return ApiResponse(success=True, data=serialize_job(job)).model_dump()

    @search_router.post("/jobs/{job_id}/resume")
    async def resume_job(job_id: str) -> dict:
        job = await job_manager.resume(job_id)
        return ApiResponse(success=True, data=serialize_job(job)).model_dump()

    @search_router.post("/jobs/{job_id}/cancel")
    async def cancel_job(job_id: str) -> dict:
        """Cancel a job. Work already in flight stops at its next check."""
        job = await job_manager.cancel(job_id)
        return ApiResponse(success=True, data=serialize_job(job)).model_dump()

    @search_router.post("/jobs/{job_id}/restart")
    async def restart_job(job_id: str) -> dict:
        """Restart an interrupted, failed or rate-limited job from where it stopped."""
        job = await recovery.restart(job_id)
        return ApiResponse(success=True, data=serialize_job(job)).model_dump()

    @search_router.get("/jobs/{job_id}/leads")
    async def get_job_leads(
        job_id: str,
        offset: int = Query(default=0, ge=0),
        limit: int = Query(default=100, ge=1, le=1000),
    ) -> dict:
        leads = await job_manager.get_job_leads(job_id, offset, limit)
        return ApiResponse(
            success=True,
            data=[lead.model_dump() for lead in leads],
            meta={"offset": offset, "limit": limit, "count": len(leads)},
        ).model_dump()

    @search_router.get("/jobs/{job_id}/export")
    async def export_job(job_id: str, format: ExportFormat = ExportFormat.JSON) -> Response:  # noqa: A002
        content, media_type = await job_manager.export_results(job_id, format)
        filename = f"search-{job_id}.{format.value}"
        return Response(
            content=content,
            media_type=media_type,
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    # ------------------------------------------------------------------
    # Account health, usage and stats
    # ------------------------------------------------------------------

    @search_router.get("/health/{workspace_id}/{account_id}")
    async def account_health(workspace_id: str, account_id: str) -> dict:
        status = await health.get_health_status(workspace_id, account_id)
        return ApiResponse(
            success=True,
            data={"account": status, "scraper": monitor.snapshot()},
        ).model_dump()

    @search_router.get("/stats/{workspace_id}/{account_id}")
    async def search_stats(workspace_id: str, account_id: str) -> dict:
        stats = await job_manager.get_search_stats(workspace_id, account_id)
        return ApiResponse(success=True, data=stats).model_dump()

    @search_router.get("/daily-usage/{workspace_id}/{account_id}")
    async def daily_usage(workspace_id: str, account_id: str) -> dict:
        usage = await job_manager.get_daily_usage(workspace_id, account_id)
        return ApiResponse(success=True, data=usage).model_dump()

    @search_router.post("/daily-limit/{workspace_id}/{account_id}")
    async def set_daily_limit(workspace_id: str, account_id: str, body: SetDailyLimitRequest) -> dict:
        usage = await job_manager.set_daily_limit(workspace_id, account_id, body.limit)
        return ApiResponse(success=True, data=usage).model_dump()

    # ------------------------------------------------------------------
    # Workspace leads
    # ------------------------------------------------------------------

    @search_router.get("/leads/{workspace_id}")
    async def list_leads(
        workspace_id: str,
        offset: int = Query(default=0, ge=0),
        limit: int = Query(default=100, ge=1, le=1000),
    ) -> dict:
        leads, total = await job_manager.list_workspace_leads(workspace_id, offset, limit)
        return ApiResponse(
            success=True,
            data=[lead.model_dump() for lead in leads],
            meta={"offset": offset, "limit": limit, "total": total},
        ).model_dump()

    @search_router.delete("/leads/{workspace_id}")
    async def delete_leads(workspace_id: str) -> dict:
        deleted = await job_manager.delete_workspace_leads(workspace_id)
        return ApiResponse(success=True, data={"deleted": deleted}).model_dump()

    @search_router.get("/warmup-schedule/{days_active}")
    async def get_warmup_schedule(days_active: int) -> dict:
        limit, recommendation = warmup_schedule(max(0, days_active))
        return ApiResponse(
            success=True,
            data={
                "days_active": days_active,
                "daily_limit": limit,
                "recommendation": recommendation,
            },
        ).model_dump()

    return search_router
