"""ORM tables using SQLAlchemy 2.0 style.

Tables:
- system_proxies: outbound proxy inventory with health stats
- proxy_allocations: proxy ↔ (user, workspace) links with sticky session ids
- proxy_audit_log: allocation / rotation / health-check history
- account_health: per (workspace, account) page budget and CAPTCHA state
- daily_usage: per (workspace, account) daily pull counter and limit
- search_jobs: durable mirror of search job state
- linkedin_scraped_leads: unique leads per workspace (deterministic ids)
- search_job_results: ordered membership of leads in a job's results

Allocation exclusivity is enforced by partial unique indexes rather than
application locks, so concurrent service instances cannot double-allocate.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from src.clock import utcnow

_ACTIVE = text("status = 'active'")
_ACTIVE_EXCLUSIVE_SQLITE = text("status = 'active' AND is_exclusive = 1")
_ACTIVE_EXCLUSIVE_PG = text("status = 'active' AND is_exclusive")


def _uuid() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    """Base class for all tables."""

    pass


class ProxyRow(Base):
    """An outbound proxy. ``kind`` is ``master`` (shared) or ``dedicated``."""

    __tablename__ = "system_proxies"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    kind: Mapped[str] = mapped_column(String(20), nullable=False, default="dedicated")
    proxy_type: Mapped[str] = mapped_column(String(30), nullable=False, default="residential")
    host: Mapped[str] = mapped_column(String(255), nullable=False)
    port: Mapped[int] = mapped_column(Integer, nullable=False)
    username_encrypted: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    password_encrypted: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    label: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    country_code: Mapped[Optional[str]] = mapped_column(String(2), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="available", index=True)
    health_score: Mapped[int] = mapped_column(Integer, nullable=False, default=100)
    auto_rotate: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    rotation_interval_hours: Mapped[int] = mapped_column(Integer, nullable=False, default=24)
    last_health_check: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_used_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    total_requests: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_requests: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    avg_latency_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)


class ProxyAllocationRow(Base):
    """Link between a proxy and a (user, workspace) pair."""

    __tablename__ = "proxy_allocations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    proxy_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("system_proxies.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    is_exclusive: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    sticky_session_id: Mapped[str] = mapped_column(String(128), nullable=False)
    allocated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    next_rotation_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    released_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        # One active allocation per (user, workspace)
        Index(
            "uq_allocation_active_user",
            "user_id",
            "workspace_id",
            unique=True,
            sqlite_where=_ACTIVE,
            postgresql_where=_ACTIVE,
        ),
        # A dedicated proxy backs at most one active allocation
        Index(
            "uq_allocation_active_exclusive_proxy",
            "proxy_id",
            unique=True,
            sqlite_where=_ACTIVE_EXCLUSIVE_SQLITE,
            postgresql_where=_ACTIVE_EXCLUSIVE_PG,
        ),
        # Sticky tokens are never shared between live allocations
        Index(
            "uq_allocation_active_session",
            "sticky_session_id",
            unique=True,
            sqlite_where=_ACTIVE,
            postgresql_where=_ACTIVE,
        ),
    )


class ProxyAuditRow(Base):
    __tablename__ = "proxy_audit_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    proxy_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("system_proxies.id", ondelete="SET NULL"), nullable=True, index=True
    )
    allocation_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    workspace_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    action: Mapped[str] = mapped_column(String(40), nullable=False)
    details: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)


class AccountHealthRow(Base):
    """Rolling page budget and CAPTCHA state for one site account."""

    __tablename__ = "account_health"

    workspace_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    account_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    pages_this_hour: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    hour_start: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    captchas_today: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_captcha_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    cooldown_until: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    consecutive_successes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)


class DailyUsageRow(Base):
    """Leads pulled today for one account; ``usage_date`` is the local date."""

    __tablename__ = "daily_usage"

    workspace_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    account_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    usage_date: Mapped[str] = mapped_column(String(10), nullable=False)
    count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    daily_limit: Mapped[int] = mapped_column(Integer, nullable=False, default=1000)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)


class SearchJobRow(Base):
    __tablename__ = "search_jobs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    campaign_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    criteria: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    max_results: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_found: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_pulled: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    credits_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    daily_limit_reached: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    data_source: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    paused_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_heartbeat: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


class LeadRow(Base):
    """A unique prospect within a workspace. ``id`` is derived, not random."""

    __tablename__ = "linkedin_scraped_leads"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    job_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    profile_url: Mapped[str] = mapped_column(String(512), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    first_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    last_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    headline: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    company: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    location: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    connection_degree: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    mutual_connections: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    profile_image_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_premium: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_open_to_work: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    data_source: Mapped[str] = mapped_column(String(30), nullable=False)
    search_query: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("workspace_id", "profile_url", name="uq_lead_workspace_profile"),
    )


class SearchJobResultRow(Base):
    """Ordered membership of a lead in one job's results."""

    __tablename__ = "search_job_results"

    job_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("search_jobs.id", ondelete="CASCADE"), primary_key=True
    )
    lead_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("linkedin_scraped_leads.id", ondelete="CASCADE"), primary_key=True
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
