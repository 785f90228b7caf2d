"""Generic API response envelope model and job serialization.

All API responses are wrapped in this envelope for consistency:
{ success: bool, data: T | None, error: str | None, meta: dict | None }
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Generic, TypeVar

from pydantic import BaseModel

if TYPE_CHECKING:
    from src.models.requests import SearchJobState

T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    """JSON envelope for all API responses."""

    success: bool
    data: T | None = None
    error: str | None = None
    meta: dict | None = None


def serialize_job(job: "SearchJobState", *, include_results: bool = False) -> dict:
    """Render a job for the control surface.

    Results are omitted by default; large jobs carry up to thousands of leads
    and callers page through ``/jobs/{id}/leads`` instead.
    """
    data = {
        "job_id": job.id,
        "workspace_id": job.workspace_id,
        "account_id": job.account_id,
        "criteria": job.criteria,
        "max_results": job.max_results,
        "status": job.status.value,
        "progress": job.progress,
        "total_found": job.total_found,
        "total_pulled": job.total_pulled,
        "credits_used": job.credits_used,
        "daily_limit_reached": job.daily_limit_reached,
        "data_source": job.data_source,
        "campaign_id": job.campaign_id,
        "error": job.error,
        "created_at": job.created_at.isoformat(),
        "updated_at": job.updated_at.isoformat(),
        "started_at": job.started_at.isoformat() if job.started_at else None,
        "paused_at": job.paused_at.isoformat() if job.paused_at else None,
        "completed_at": job.completed_at.isoformat() if job.completed_at else None,
    }
    if include_results:
        data["results"] = [lead.model_dump() for lead in job.results]
    return data
