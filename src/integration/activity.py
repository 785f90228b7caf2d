"""HMAC-SHA256 signed job activity events.

Events (``started``, ``progress``, ``completed``, ``failed``) are posted to a
configured URL as fire-and-forget background tasks. Delivery is best effort:
failures are retried with backoff and then only logged, never raised into the
job that emitted them.

SECURITY: Signatures use HMAC-SHA256(secret, JSON payload).
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import logging

import httpx

from src.clock import utcnow

logger = logging.getLogger(__name__)

ACTIVITY_EVENTS = ("started", "progress", "completed", "failed")


class ActivityEmitter:
    """Delivers signed activity events in the background.

    Parameters
    ----------
    url:
        Destination URL. When ``None`` events are dropped after a debug log.
    secret:
        Shared secret for the ``X-Activity-Signature`` header.
    timeout_seconds:
        HTTP timeout per delivery attempt (default 10).
    max_retries:
        Maximum attempts per event (default 3).
    backoff_base:
        Base backoff in seconds (default 2). Schedule: 2s, 4s, 8s.
    """

    def __init__(
        self,
        url: str | None,
        secret: str | None = None,
        timeout_seconds: float = 10.0,
        max_retries: int = 3,
        backoff_base: float = 2.0,
    ) -> None:
        self._url = url
        self._secret = secret or ""
        self._timeout_seconds = timeout_seconds
        self._max_retries = max_retries
        self._backoff_base = backoff_base
        self._pending: set[asyncio.Task[bool]] = set()

    def compute_signature(self, payload_bytes: bytes) -> str:
        return hmac.new(self._secret.encode("utf-8"), payload_bytes, hashlib.sha256).hexdigest()

    def build_payload(self, event: str, job_id: str, data: dict) -> dict:
        return {
            "event": event,
            "job_id": job_id,
            "timestamp": utcnow().isoformat(),
            "data": data,
        }

    def emit(self, event: str, job_id: str, data: dict | None = None) -> None:
        """Schedule delivery of *event* without waiting for it."""
        if event not in ACTIVITY_EVENTS:
            raise ValueError(f"Unknown activity event: {event}")
        if not self._url:
            logger.debug("No activity URL configured, dropping %s event", event, extra={"job_id": job_id})
            return

        task = asyncio.create_task(self.deliver(event, job_id, data or {}))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def deliver(self, event: str, job_id: str, data: dict) -> bool:
        """Post one signed event with retries. Returns ``True`` on success."""
        if not self._url:
            return False

        payload = self.build_payload(event, job_id, data)
        payload_bytes = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")
        signature = self.compute_signature(payload_bytes)
        last_error: str | None = None

        for attempt in range(self._max_retries):
            try:
                async with httpx.AsyncClient() as client:
                    response = await client.post(
                        self._url,
                        content=payload_bytes,
                        headers={
                            "Content-Type": "application/json",
                            "X-Activity-Signature": signature,
                        },
                        timeout=self._timeout_seconds,
                    )
                if response.status_code < 400:
                    return True
                last_error = f"status {response.status_code}"
            except httpx.TransportError as exc:
                last_error = str(exc) or exc.__class__.__name__

            if attempt < self._max_retries - 1:
                await asyncio.sleep(self._backoff_base * (2**attempt))

        logger.warning(
            "Activity event %s not delivered after %d attempts: %s",
            event,
            self._max_retries,
            last_error,
            extra={"job_id": job_id},
        )
        return False

    async def aclose(self, timeout: float = 5.0) -> None:
        """Wait briefly for in-flight deliveries, then cancel the rest."""
        if not self._pending:
            return
        _done, pending = await asyncio.wait(set(self._pending), timeout=timeout)
        for task in pending:
            task.cancel()
