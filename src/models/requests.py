"""Pydantic request models and in-memory state models for search jobs."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field

from src.clock import utcnow
from src.models.schemas import Lead


class JobStatus(str, Enum):
    """Lifecycle status of a search job."""

    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    RATE_LIMITED = "rate_limited"
    INTERRUPTED = "interrupted"


class ProxyKind(str, Enum):
    """Shared (many sticky sessions) vs exclusive proxies."""

    MASTER = "master"
    DEDICATED = "dedicated"


class ProxyStatus(str, Enum):
    AVAILABLE = "available"
    ALLOCATED = "allocated"
    UNHEALTHY = "unhealthy"
    DISABLED = "disabled"


class AllocationStatus(str, Enum):
    ACTIVE = "active"
    REVOKED = "revoked"


class ExportFormat(str, Enum):
    JSON = "json"
    CSV = "csv"
    JSONL = "jsonl"


# ---------------------------------------------------------------------------
# Control-surface requests
# ---------------------------------------------------------------------------


class SearchCriteria(BaseModel):
    """People-search filters. At least one field should be set."""

    keywords: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    title: str | None = None
    company: str | None = None
    location: str | None = None
    industry: str | None = None
    connection_degree: list[Literal["1st", "2nd", "3rd"]] | None = None
    past_company: str | None = None
    school: str | None = None


class CreateSearchJobRequest(BaseModel):
    """Request model for starting a prospect search."""

    workspace_id: str = Field(..., min_length=1)
    account_id: str = Field(..., min_length=1)
    criteria: SearchCriteria
    max_results: int = Field(default=1000, ge=1, le=5000)
    user_id: str | None = None
    campaign_id: str | None = None


class SetDailyLimitRequest(BaseModel):
    limit: int = Field(..., ge=0, le=5000)


class AddProxyRequest(BaseModel):
    """Admin request to register an outbound proxy."""

    provider: str = Field(..., min_length=1)
    kind: ProxyKind = ProxyKind.DEDICATED
    proxy_type: str = "residential"
    host: str = Field(..., min_length=1)
    port: int = Field(..., ge=1, le=65535)
    username: str | None = None
    password: str | None = None
    label: str | None = None
    country_code: str | None = Field(default=None, max_length=2)
    auto_rotate: bool = True
    rotation_interval_hours: int = Field(default=24, ge=1)


class UpdateProxyStatusRequest(BaseModel):
    status: Literal["available", "disabled"]


class BulkDisableRequest(BaseModel):
    keep_count: int = Field(..., ge=0)


# ---------------------------------------------------------------------------
# In-memory job state
# ---------------------------------------------------------------------------


@dataclass
class SearchJobState:
    """In-memory state for a search job, mirrored to the ``search_jobs`` table."""

    id: str  # UUID
    workspace_id: str
    account_id: str
    criteria: dict
    max_results: int
    status: JobStatus = JobStatus.PENDING
    progress: int = 0
    total_found: int = 0
    total_pulled: int = 0
    credits_used: int = 0
    daily_limit_reached: bool = False
    data_source: str | None = None
    user_id: str | None = None
    campaign_id: str | None = None
    error: str | None = None
    results: list[Lead] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    paused_at: datetime | None = None
    completed_at: datetime | None = None
    last_heartbeat: datetime | None = None

    @property
    def remaining(self) -> int:
        return max(0, self.max_results - self.total_pulled)

    def update_progress(self) -> None:
        if self.max_results > 0:
            self.progress = min(100, round(self.total_pulled / self.max_results * 100))
