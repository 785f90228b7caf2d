"""X-Service-Key authentication middleware.

Every control-surface and proxy-admin route is called by the backend on
behalf of a workspace and must carry the shared service key. Liveness,
readiness and metrics endpoints stay public so orchestrators can reach them.
"""

from __future__ import annotations

import hmac
import logging

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from src.middleware.error_handler import AuthenticationError, _envelope

logger = logging.getLogger(__name__)

_PUBLIC_PATHS: frozenset[str] = frozenset({"/health", "/readiness", "/metrics"})


class ServiceKeyAuthMiddleware(BaseHTTPMiddleware):
    """Reject requests whose ``X-Service-Key`` does not match the configured key."""

    def __init__(self, app, service_key: str) -> None:  # noqa: ANN001
        super().__init__(app)
        self._service_key = service_key.encode("utf-8")

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        if request.url.path in _PUBLIC_PATHS:
            return await call_next(request)

        provided_key = request.headers.get("x-service-key")
        reason = None
        if not provided_key:
            reason = "missing_service_key"
        elif not hmac.compare_digest(provided_key.encode("utf-8"), self._service_key):
            reason = "invalid_service_key"

        if reason is not None:
            logger.warning(
                "Rejected request without a valid service key",
                extra={
                    "event": "auth_failure",
                    "reason": reason,
                    "source_ip": request.client.host if request.client else "unknown",
                    "path": request.url.path,
                },
            )
            return _envelope(
                status_code=AuthenticationError.status_code,
                error=AuthenticationError.message,
            )

        return await call_next(request)
