"""Shared proxy pool with sticky-session allocation and rotation.

Proxies come in two kinds:

- ``master``: a shared gateway. Any number of users may hold it at once, each
  with its own sticky session token, so the proxy's status never changes on
  allocation.
- ``dedicated``: an exclusive proxy. It is claimed with a conditional
  ``UPDATE ... WHERE status = 'available'`` and backs at most one active
  allocation.

Exclusivity and "one active allocation per (user, workspace)" are enforced by
partial unique indexes on ``proxy_allocations`` rather than in-process locks,
so several service instances can share one database. A losing concurrent
insert surfaces as ``IntegrityError``. The winner's allocation is then
reused while it is fresh; a stale one is revoked on its own and the insert is
retried once. A second conflict becomes ``ProxyUnavailableError``.

Every state change writes a ``proxy_audit_log`` entry.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import ColumnElement, exists, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.clock import Clock, utcnow
from src.integration.cipher import CredentialCipher
from src.middleware.error_handler import (
    ProxyInUseError,
    ProxyNotFoundError,
    ProxyUnavailableError,
)
from src.models.requests import (
    AddProxyRequest,
    AllocationStatus,
    ProxyKind,
    ProxyStatus,
)
from src.proxy.types import ProxyLease, make_session_id, sticky_username
from src.storage.database import Database
from src.storage.tables import ProxyAllocationRow, ProxyAuditRow, ProxyRow

logger = logging.getLogger(__name__)

_ACTIVE = AllocationStatus.ACTIVE.value
_DEDICATED_CANDIDATES = 5


class ProxyPool:
    """Allocates proxies to (user, workspace) pairs and administers the inventory.

    Parameters
    ----------
    database:
        Shared database holding proxies, allocations and the audit log.
    cipher:
        Decrypts stored proxy credentials when building a lease.
    master_max_sessions:
        Optional ceiling on concurrent active allocations per master proxy.
        ``None`` means unlimited.
    clock:
        Returns the current naive-UTC time.
    """

    def __init__(
        self,
        database: Database,
        cipher: CredentialCipher,
        *,
        master_max_sessions: int | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._db = database
        self._cipher = cipher
        self._master_max_sessions = master_max_sessions
        self._clock = clock

    # ------------------------------------------------------------------
    # Allocation
    # ------------------------------------------------------------------

    async def allocate(self, user_id: str, workspace_id: str) -> ProxyLease:
        """Return the user's active lease, rotating it first when it is due.

        Raises ``ProxyUnavailableError`` when neither a master nor a free
        dedicated proxy exists.
        """
        existing = await self._active_allocation(user_id, workspace_id)
        if existing is not None:
            allocation, proxy = existing
            if allocation.next_rotation_at is None or allocation.next_rotation_at > self._clock():
                return self._lease(allocation, proxy)
            logger.info(
                "Allocation %s due for rotation",
                allocation.id,
                extra={"workspace_id": workspace_id, "proxy_id": proxy.id},
            )
            return await self.rotate_user_proxy(user_id, workspace_id)

        return await self._allocate_fresh(user_id, workspace_id)

    async def rotate_sticky_session(
        self, proxy_id: str, user_id: str, workspace_id: str
    ) -> ProxyLease:
        """Issue a new sticky token on the same proxy.

        Used when the site flagged the current exit identity but the proxy
        itself is fine.
        """
        now = self._clock()
        async with self._db.transaction() as session:
            result = await session.execute(
                select(ProxyAllocationRow, ProxyRow)
                .join(ProxyRow, ProxyRow.id == ProxyAllocationRow.proxy_id)
                .where(
                    ProxyAllocationRow.user_id == user_id,
                    ProxyAllocationRow.workspace_id == workspace_id,
                    ProxyAllocationRow.proxy_id == proxy_id,
                    ProxyAllocationRow.status == _ACTIVE,
                )
            )
            found = result.first()
            if found is None:
                raise ProxyUnavailableError(
                    "No active proxy allocation to rotate", proxy_id=proxy_id
                )
            allocation, proxy = found
            previous = allocation.sticky_session_id
            allocation.sticky_session_id = make_session_id(user_id)
            allocation.allocated_at = now
            self._audit(
                session,
                "session_rotated",
                proxy_id=proxy.id,
                allocation_id=allocation.id,
                user_id=user_id,
                workspace_id=workspace_id,
                previous_session=previous,
                new_session=allocation.sticky_session_id,
            )

        logger.info(
            "Rotated sticky session on proxy %s",
            proxy.host,
            extra={"workspace_id": workspace_id, "proxy_id": proxy.id},
        )
        return self._lease(allocation, proxy)

    async def rotate_user_proxy(self, user_id: str, workspace_id: str) -> ProxyLease:
        """Revoke the user's allocation and allocate afresh."""
        await self.revoke(user_id, workspace_id)
        lease = await self._allocate_fresh(user_id, workspace_id)
        async with self._db.transaction() as session:
            self._audit(
                session,
                "rotated",
                proxy_id=lease.proxy_id,
                allocation_id=lease.allocation_id,
                user_id=user_id,
                workspace_id=workspace_id,
            )
        return lease

    async def revoke(self, user_id: str, workspace_id: str) -> int:
        """Revoke every active allocation for the pair. Returns the number revoked."""
        now = self._clock()
        async with self._db.transaction() as session:
            result = await session.execute(
                select(ProxyAllocationRow).where(
                    ProxyAllocationRow.user_id == user_id,
                    ProxyAllocationRow.workspace_id == workspace_id,
                    ProxyAllocationRow.status == _ACTIVE,
                )
            )
            allocations = list(result.scalars())
            for allocation in allocations:
                allocation.status = AllocationStatus.REVOKED.value
                allocation.released_at = now
                if allocation.is_exclusive:
                    await self._release_dedicated(session, allocation.proxy_id)
                self._audit(
                    session,
                    "revoked",
                    proxy_id=allocation.proxy_id,
                    allocation_id=allocation.id,
                    user_id=user_id,
                    workspace_id=workspace_id,
                )
        return len(allocations)

    async def get_user_proxy_status(self, user_id: str, workspace_id: str) -> dict | None:
        existing = await self._active_allocation(user_id, workspace_id)
        if existing is None:
            return None
        allocation, proxy = existing
        return {
            "allocation_id": allocation.id,
            "proxy_id": proxy.id,
            "provider": proxy.provider,
            "kind": proxy.kind,
            "host": proxy.host,
            "port": proxy.port,
            "country_code": proxy.country_code,
            "sticky_session_id": allocation.sticky_session_id,
            "allocated_at": allocation.allocated_at.isoformat(),
            "next_rotation_at": (
                allocation.next_rotation_at.isoformat() if allocation.next_rotation_at else None
            ),
        }

    async def lease_saved_proxy(self, proxy_id: str, user_id: str, workspace_id: str) -> ProxyLease:
        """Lease the specific proxy a session was captured through.

        Reuses the user's active allocation when it already points at that
        proxy; otherwise issues an unallocated lease with a fresh sticky token.
        Raises ``ProxyUnavailableError`` when the proxy is gone or disabled.
        """
        existing = await self._active_allocation(user_id, workspace_id)
        if existing is not None and existing[1].id == proxy_id:
            return self._lease(*existing)

        async with self._db.session() as session:
            proxy = await session.get(ProxyRow, proxy_id)
        if proxy is None or proxy.status == ProxyStatus.DISABLED.value:
            raise ProxyUnavailableError(
                "Session proxy not available. Please re-connect the account.",
                proxy_id=proxy_id,
            )
        return self._lease_for(proxy, None, make_session_id(user_id), None)

    async def run_scheduled_rotations(self) -> int:
        """Rotate every due allocation on an auto-rotating proxy."""
        now = self._clock()
        async with self._db.session() as session:
            result = await session.execute(
                select(ProxyAllocationRow.user_id, ProxyAllocationRow.workspace_id)
                .join(ProxyRow, ProxyRow.id == ProxyAllocationRow.proxy_id)
                .where(
                    ProxyAllocationRow.status == _ACTIVE,
                    ProxyAllocationRow.next_rotation_at <= now,
                    ProxyRow.auto_rotate.is_(True),
                )
            )
            due = list(result.all())

        rotated = 0
        for user_id, workspace_id in due:
            try:
                await self.rotate_user_proxy(user_id, workspace_id)
                rotated += 1
            except ProxyUnavailableError:
                logger.warning(
                    "Scheduled rotation found no replacement proxy",
                    extra={"workspace_id": workspace_id},
                )
        if rotated:
            logger.info("Scheduled rotations completed: %d", rotated)
        return rotated

    # ------------------------------------------------------------------
    # Admin
    # ------------------------------------------------------------------

    async def add_proxy(self, request: AddProxyRequest) -> dict:
        async with self._db.transaction() as session:
            proxy = ProxyRow(
                provider=request.provider.lower(),
                kind=request.kind.value,
                proxy_type=request.proxy_type,
                host=request.host,
                port=request.port,
                username_encrypted=self._cipher.encrypt(request.username),
                password_encrypted=self._cipher.encrypt(request.password),
                label=request.label,
                country_code=request.country_code,
                status=ProxyStatus.AVAILABLE.value,
                auto_rotate=request.auto_rotate,
                rotation_interval_hours=request.rotation_interval_hours,
                created_at=self._clock(),
            )
            session.add(proxy)
            await session.flush()
            self._audit(session, "added", proxy_id=proxy.id, host=proxy.host, kind=proxy.kind)
        logger.info("Proxy added: %s:%d (%s)", proxy.host, proxy.port, proxy.kind)
        return _describe(proxy, active_allocations=0)

    async def remove_proxy(self, proxy_id: str) -> None:
        async with self._db.transaction() as session:
            proxy = await session.get(ProxyRow, proxy_id)
            if proxy is None:
                raise ProxyNotFoundError(proxy_id=proxy_id)
            active = await self._count_active(session, proxy_id)
            if active:
                raise ProxyInUseError(proxy_id=proxy_id, active_allocations=active)
            await session.delete(proxy)
            self._audit(session, "removed", removed_proxy_id=proxy_id, host=proxy.host)
        logger.info("Proxy removed: %s", proxy_id)

    async def update_proxy_status(self, proxy_id: str, status: str) -> dict:
        async with self._db.transaction() as session:
            proxy = await session.get(ProxyRow, proxy_id)
            if proxy is None:
                raise ProxyNotFoundError(proxy_id=proxy_id)
            previous = proxy.status
            proxy.status = ProxyStatus(status).value
            self._audit(session, "status_changed", proxy_id=proxy_id, previous=previous, status=status)
            active = await self._count_active(session, proxy_id)
        return _describe(proxy, active_allocations=active)

    async def bulk_disable_proxies(self, keep_count: int) -> int:
        """Keep the *keep_count* healthiest enabled proxies and disable the rest."""
        async with self._db.transaction() as session:
            result = await session.execute(
                select(ProxyRow)
                .where(ProxyRow.status != ProxyStatus.DISABLED.value)
                .order_by(ProxyRow.health_score.desc(), ProxyRow.created_at)
            )
            to_disable = list(result.scalars())[keep_count:]
            for proxy in to_disable:
                proxy.status = ProxyStatus.DISABLED.value
                self._audit(session, "status_changed", proxy_id=proxy.id, status="disabled", bulk=True)
        logger.info("Bulk disabled %d proxies, kept %d", len(to_disable), keep_count)
        return len(to_disable)

    async def list_proxies(self) -> list[dict]:
        async with self._db.session() as session:
            counts = await self._active_counts(session)
            result = await session.execute(select(ProxyRow).order_by(ProxyRow.created_at))
            return [_describe(p, active_allocations=counts.get(p.id, 0)) for p in result.scalars()]

    async def get_pool_stats(self) -> dict:
        async with self._db.session() as session:
            by_status = dict(
                (await session.execute(select(ProxyRow.status, func.count()).group_by(ProxyRow.status))).all()
            )
            masters = await session.execute(
                select(func.count()).select_from(ProxyRow).where(ProxyRow.kind == ProxyKind.MASTER.value)
            )
            active = await session.execute(
                select(func.count())
                .select_from(ProxyAllocationRow)
                .where(ProxyAllocationRow.status == _ACTIVE)
            )
            return {
                "total": sum(by_status.values()),
                "available": by_status.get(ProxyStatus.AVAILABLE.value, 0),
                "allocated": by_status.get(ProxyStatus.ALLOCATED.value, 0),
                "unhealthy": by_status.get(ProxyStatus.UNHEALTHY.value, 0),
                "disabled": by_status.get(ProxyStatus.DISABLED.value, 0),
                "masters": int(masters.scalar_one()),
                "active_allocations": int(active.scalar_one()),
            }

    # ------------------------------------------------------------------
    # Health-check support
    # ------------------------------------------------------------------

    async def check_targets(self) -> list[tuple[str, str]]:
        """``(proxy_id, proxy_url)`` for every non-disabled proxy."""
        async with self._db.session() as session:
            result = await session.execute(
                select(ProxyRow).where(ProxyRow.status != ProxyStatus.DISABLED.value)
            )
            return [(p.id, self._check_url(p)) for p in result.scalars()]

    async def record_health_check(
        self,
        proxy_id: str,
        *,
        success: bool,
        latency_ms: int | None = None,
        error: str | None = None,
    ) -> int:
        """Store one health check outcome and return the new health score."""
        now = self._clock()
        async with self._db.transaction() as session:
            proxy = await session.get(ProxyRow, proxy_id)
            if proxy is None:
                raise ProxyNotFoundError(proxy_id=proxy_id)

            proxy.total_requests += 1
            proxy.last_health_check = now
            if success:
                proxy.health_score = health_score(latency_ms or 0)
                proxy.avg_latency_ms = _rolling_average(
                    proxy.avg_latency_ms, latency_ms or 0, proxy.total_requests - proxy.failed_requests
                )
                if proxy.status == ProxyStatus.UNHEALTHY.value:
                    held = await session.scalar(select(_held_exclusively(proxy_id)))
                    restored = ProxyStatus.ALLOCATED if held else ProxyStatus.AVAILABLE
                    proxy.status = restored.value
                    logger.info(
                        "Proxy restored to %s: %s", restored.value, proxy.host, extra={"proxy_id": proxy_id}
                    )
            else:
                proxy.health_score = 0
                proxy.failed_requests += 1
                if proxy.status != ProxyStatus.DISABLED.value:
                    proxy.status = ProxyStatus.UNHEALTHY.value
                logger.warning("Proxy marked unhealthy: %s", proxy.host, extra={"proxy_id": proxy_id})

            self._audit(
                session,
                "health_check",
                proxy_id=proxy_id,
                success=success,
                latency_ms=latency_ms,
                error=error,
                health_score=proxy.health_score,
            )
            return proxy.health_score

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _allocate_fresh(self, user_id: str, workspace_id: str) -> ProxyLease:
        try:
            return await self._insert_allocation(user_id, workspace_id)
        except IntegrityError:
            logger.warning(
                "Concurrent allocation conflict, re-reading active allocation",
                extra={"workspace_id": workspace_id},
            )

        existing = await self._active_allocation(user_id, workspace_id)
        if existing is not None:
            allocation, proxy = existing
            if not self._is_stale(allocation, proxy):
                return self._lease(allocation, proxy)
            await self._revoke_stale(allocation)

        try:
            return await self._insert_allocation(user_id, workspace_id)
        except IntegrityError as exc:
            raise ProxyUnavailableError(
                "Proxy allocation conflict, try again", workspace_id=workspace_id
            ) from exc

    async def _insert_allocation(self, user_id: str, workspace_id: str) -> ProxyLease:
        now = self._clock()
        async with self._db.transaction() as session:
            proxy = await self._pick_master(session)
            exclusive = False
            if proxy is None:
                proxy = await self._claim_dedicated(session)
                exclusive = True
            if proxy is None:
                raise ProxyUnavailableError("No proxies available in the pool")

            allocation = ProxyAllocationRow(
                proxy_id=proxy.id,
                user_id=user_id,
                workspace_id=workspace_id,
                status=_ACTIVE,
                is_exclusive=exclusive,
                sticky_session_id=make_session_id(user_id),
                allocated_at=now,
                next_rotation_at=now + timedelta(hours=proxy.rotation_interval_hours),
            )
            session.add(allocation)
            proxy.last_used_at = now
            await session.flush()
            self._audit(
                session,
                "allocated",
                proxy_id=proxy.id,
                allocation_id=allocation.id,
                user_id=user_id,
                workspace_id=workspace_id,
                kind=proxy.kind,
                sticky_session_id=allocation.sticky_session_id,
            )

        logger.info(
            "Allocated %s proxy %s",
            proxy.kind,
            proxy.host,
            extra={"workspace_id": workspace_id, "proxy_id": proxy.id},
        )
        return self._lease(allocation, proxy)

    async def _pick_master(self, session: AsyncSession) -> ProxyRow | None:
        active_counts = (
            select(ProxyAllocationRow.proxy_id, func.count().label("sessions"))
            .where(ProxyAllocationRow.status == _ACTIVE)
            .group_by(ProxyAllocationRow.proxy_id)
            .subquery()
        )
        stmt = (
            select(ProxyRow)
            .outerjoin(active_counts, active_counts.c.proxy_id == ProxyRow.id)
            .where(
                ProxyRow.kind == ProxyKind.MASTER.value,
                ProxyRow.status == ProxyStatus.AVAILABLE.value,
            )
            .order_by(ProxyRow.health_score.desc())
            .limit(1)
        )
        if self._master_max_sessions is not None:
            stmt = stmt.where(func.coalesce(active_counts.c.sessions, 0) < self._master_max_sessions)
        return (await session.execute(stmt)).scalars().first()

    async def _claim_dedicated(self, session: AsyncSession) -> ProxyRow | None:
        result = await session.execute(
            select(ProxyRow)
            .where(
                ProxyRow.kind == ProxyKind.DEDICATED.value,
                ProxyRow.status == ProxyStatus.AVAILABLE.value,
                ~_held_exclusively(ProxyRow.id),
            )
            .order_by(ProxyRow.health_score.desc(), ProxyRow.last_used_at.asc().nulls_first())
            .limit(_DEDICATED_CANDIDATES)
        )
        for candidate in result.scalars().all():
            claimed = await session.execute(
                update(ProxyRow)
                .where(
                    ProxyRow.id == candidate.id,
                    ProxyRow.status == ProxyStatus.AVAILABLE.value,
                )
                .values(status=ProxyStatus.ALLOCATED.value)
            )
            if claimed.rowcount == 1:
                return candidate
        return None

    async def _release_dedicated(self, session: AsyncSession, proxy_id: str) -> None:
        await session.execute(
            update(ProxyRow)
            .where(ProxyRow.id == proxy_id, ProxyRow.status == ProxyStatus.ALLOCATED.value)
            .values(status=ProxyStatus.AVAILABLE.value)
        )

    def _is_stale(self, allocation: ProxyAllocationRow, proxy: ProxyRow) -> bool:
        if proxy.status == ProxyStatus.DISABLED.value:
            return True
        return allocation.next_rotation_at is not None and allocation.next_rotation_at <= self._clock()

    async def _revoke_stale(self, allocation: ProxyAllocationRow) -> None:
        """Revoke one stale active row; a row another caller already moved is left alone."""
        async with self._db.transaction() as session:
            revoked = await session.execute(
                update(ProxyAllocationRow)
                .where(ProxyAllocationRow.id == allocation.id, ProxyAllocationRow.status == _ACTIVE)
                .values(status=AllocationStatus.REVOKED.value, released_at=self._clock())
            )
            if revoked.rowcount != 1:
                return
            if allocation.is_exclusive:
                await self._release_dedicated(session, allocation.proxy_id)
            self._audit(
                session,
                "revoked",
                proxy_id=allocation.proxy_id,
                allocation_id=allocation.id,
                user_id=allocation.user_id,
                workspace_id=allocation.workspace_id,
                reason="stale",
            )

    async def _active_allocation(
        self, user_id: str, workspace_id: str
    ) -> tuple[ProxyAllocationRow, ProxyRow] | None:
        async with self._db.session() as session:
            result = await session.execute(
                select(ProxyAllocationRow, ProxyRow)
                .join(ProxyRow, ProxyRow.id == ProxyAllocationRow.proxy_id)
                .where(
                    ProxyAllocationRow.user_id == user_id,
                    ProxyAllocationRow.workspace_id == workspace_id,
                    ProxyAllocationRow.status == _ACTIVE,
                )
            )
            found = result.first()
            return (found[0], found[1]) if found is not None else None

    async def _count_active(self, session: AsyncSession, proxy_id: str) -> int:
        result = await session.execute(
            select(func.count())
            .select_from(ProxyAllocationRow)
            .where(ProxyAllocationRow.proxy_id == proxy_id, ProxyAllocationRow.status == _ACTIVE)
        )
        return int(result.scalar_one())

    async def _active_counts(self, session: AsyncSession) -> dict[str, int]:
        result = await session.execute(
            select(ProxyAllocationRow.proxy_id, func.count())
            .where(ProxyAllocationRow.status == _ACTIVE)
            .group_by(ProxyAllocationRow.proxy_id)
        )
        return dict(result.all())

    def _lease(self, allocation: ProxyAllocationRow, proxy: ProxyRow) -> ProxyLease:
        return self._lease_for(
            proxy, allocation.id, allocation.sticky_session_id, allocation.next_rotation_at
        )

    def _lease_for(
        self,
        proxy: ProxyRow,
        allocation_id: str | None,
        session_id: str,
        next_rotation_at: datetime | None,
    ) -> ProxyLease:
        username = self._cipher.decrypt(proxy.username_encrypted)
        if username:
            username = sticky_username(proxy.provider, proxy.port, username, session_id)
        return ProxyLease(
            allocation_id=allocation_id,
            proxy_id=proxy.id,
            provider=proxy.provider,
            kind=proxy.kind,
            host=proxy.host,
            port=proxy.port,
            sticky_session_id=session_id,
            username=username,
            password=self._cipher.decrypt(proxy.password_encrypted),
            next_rotation_at=next_rotation_at,
            country_code=proxy.country_code,
        )

    def _check_url(self, proxy: ProxyRow) -> str:
        lease = ProxyLease(
            allocation_id=None,
            proxy_id=proxy.id,
            provider=proxy.provider,
            kind=proxy.kind,
            host=proxy.host,
            port=proxy.port,
            sticky_session_id="",
            username=self._cipher.decrypt(proxy.username_encrypted),
            password=self._cipher.decrypt(proxy.password_encrypted),
        )
        return lease.httpx_url()

    def _audit(
        self,
        session: AsyncSession,
        action: str,
        *,
        proxy_id: str | None = None,
        allocation_id: str | None = None,
        user_id: str | None = None,
        workspace_id: str | None = None,
        **details: object,
    ) -> None:
        session.add(
            ProxyAuditRow(
                proxy_id=proxy_id,
                allocation_id=allocation_id,
                user_id=user_id,
                workspace_id=workspace_id,
                action=action,
                details=details or None,
                created_at=self._clock(),
            )
        )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _held_exclusively(proxy_id: str | ColumnElement[str]) -> ColumnElement[bool]:
    """True while an active exclusive allocation points at the proxy."""
    return exists().where(
        ProxyAllocationRow.proxy_id == proxy_id,
        ProxyAllocationRow.status == _ACTIVE,
        ProxyAllocationRow.is_exclusive.is_(True),
    )


def health_score(latency_ms: float) -> int:
    """Score a successful check: 100 minus one point per 100 ms, floored at 0."""
    return int(min(100, max(0, 100 - latency_ms / 100)))


def _rolling_average(current: int | None, sample: int, count: int) -> int:
    if current is None or count <= 1:
        return sample
    return round(current + (sample - current) / count)


def _describe(proxy: ProxyRow, *, active_allocations: int) -> dict:
    """Admin view of a proxy row; credentials are never included."""
    return {
        "id": proxy.id,
        "provider": proxy.provider,
        "kind": proxy.kind,
        "proxy_type": proxy.proxy_type,
        "host": proxy.host,
        "port": proxy.port,
        "label": proxy.label,
        "country_code": proxy.country_code,
        "status": proxy.status,
        "health_score": proxy.health_score,
        "auto_rotate": proxy.auto_rotate,
        "rotation_interval_hours": proxy.rotation_interval_hours,
        "last_health_check": proxy.last_health_check.isoformat() if proxy.last_health_check else None,
        "last_used_at": proxy.last_used_at.isoformat() if proxy.last_used_at else None,
        "total_requests": proxy.total_requests,
        "failed_requests": proxy.failed_requests,
        "avg_latency_ms": proxy.avg_latency_ms,
        "active_allocations": active_allocations,
    }
