"""Global error hierarchy and FastAPI exception handlers.

All retrieval-specific errors extend RetrievalError. The FastAPI exception
handlers catch these errors (plus Pydantic's RequestValidationError and
unhandled exceptions) and return a consistent JSON envelope:
{ success, data, error, meta }.

The pipeline also uses these types to decide a job's fate: quota, session
and challenge errors end the current run but leave the job resumable,
transient proxy errors are retried locally, anything else is fatal.
"""

from __future__ import annotations

import logging
import traceback

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Error hierarchy
# ---------------------------------------------------------------------------


class RetrievalError(Exception):
    """Base error for all retrieval-service errors."""

    status_code: int = 500
    message: str = "Internal server error"

    def __init__(self, message: str | None = None, **kwargs: object) -> None:
        self.message = message or self.__class__.message
        self.details = kwargs
        super().__init__(self.message)


class ValidationError(RetrievalError):
    """Payload validation failures: includes field-level details."""

    status_code = 422
    message = "Validation error"


class AuthenticationError(RetrievalError):
    """Invalid or missing service key."""

    status_code = 401
    message = "Invalid or missing service key"


class QuotaExceededError(RetrievalError):
    """Daily pull limit or credit balance exhausted."""

    status_code = 429
    message = "Daily limit reached. Try again tomorrow."


class InsufficientCreditsError(QuotaExceededError):
    """Workspace has no lookup credits left."""

    status_code = 402
    message = "Insufficient lookup credits. Please purchase more credits to continue searching."


class AccountUnhealthyError(RetrievalError):
    """Account is cooling down or over its hourly/CAPTCHA budget."""

    status_code = 429
    message = "Account is not allowed to make requests right now"


class SessionInvalidError(RetrievalError):
    """Stored site session is missing or expired."""

    status_code = 409
    message = "Site session is missing or expired. Please reconnect the account."


class ProxyUnavailableError(RetrievalError):
    """No proxy could be allocated."""

    status_code = 503
    message = "No proxy available"


class ProxyTransientError(RetrievalError):
    """Tunnel / connection failure through the current proxy identity."""

    status_code = 502
    message = "Transient proxy connection failure"


class RotationExhaustedError(ProxyTransientError):
    """Sticky-session rotation did not recover the connection."""

    message = "Proxy rotation failed"


class ChallengeDetectedError(RetrievalError):
    """Bot-detection challenge (CAPTCHA) shown by the site."""

    status_code = 429
    message = "CAPTCHA detected. Account in 6-hour cooldown for safety."


class ExtractionEmptyError(RetrievalError):
    """No results after exhausting every extraction strategy."""

    status_code = 404
    message = "No search results found"


class BrowserUnavailableError(RetrievalError):
    """Browser pool exhausted: no instances available."""

    status_code = 503
    message = "Browser pool exhausted: no instances available"


class UpstreamError(RetrievalError):
    """Backend collaborator (session store, credit ledger) failed."""

    status_code = 502
    message = "Upstream service error"


class JobNotFoundError(RetrievalError):
    """Job not found."""

    status_code = 404
    message = "Job not found"


class InvalidJobTransitionError(RetrievalError):
    """Requested job state change is not allowed from the current status."""

    status_code = 409
    message = "Invalid job state transition"


class ProxyNotFoundError(RetrievalError):
    """Proxy not found."""

    status_code = 404
    message = "Proxy not found"


class ProxyInUseError(RetrievalError):
    """Proxy still backs active allocations."""

    status_code = 409
    message = "Proxy has active allocations. Revoke them first."


# ---------------------------------------------------------------------------
# FastAPI exception handlers
# ---------------------------------------------------------------------------


def _envelope(
    status_code: int,
    error: str,
    meta: dict | None = None,
) -> JSONResponse:
    """Build a JSON envelope error response."""
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "data": None,
            "error": error,
            "meta": meta,
        },
    )


async def _retrieval_error_handler(_request: Request, exc: RetrievalError) -> JSONResponse:
    """Handle RetrievalError subclasses."""
    meta = exc.details if exc.details else None
    return _envelope(exc.status_code, exc.message, meta=meta)


async def _validation_error_handler(
    _request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Handle FastAPI / Pydantic RequestValidationError (422)."""
    field_errors = [
        {
            "field": " -> ".join(str(loc) for loc in err["loc"]),
            "message": err["msg"],
            "type": err["type"],
        }
        for err in exc.errors()
    ]
    return _envelope(
        status_code=422,
        error="Validation error",
        meta={"fields": field_errors},
    )


async def _unhandled_error_handler(_request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for unhandled exceptions: log traceback, return generic 500."""
    logger.error(
        "Unhandled exception: %s\n%s",
        exc,
        traceback.format_exc(),
    )
    return _envelope(status_code=500, error="Internal server error")


# ---------------------------------------------------------------------------
# Registration helper
# ---------------------------------------------------------------------------


def register_error_handlers(app: FastAPI) -> None:
    """Wire up all exception handlers on the FastAPI application."""
    app.add_exception_handler(RetrievalError, _retrieval_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, _validation_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, _unhandled_error_handler)  # type: ignore[arg-type]
