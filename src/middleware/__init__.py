"""Middleware package: error hierarchy, auth, and request ID."""

from src.middleware.auth import ServiceKeyAuthMiddleware
from src.middleware.error_handler import (
    AccountUnhealthyError,
    AuthenticationError,
    BrowserUnavailableError,
    ChallengeDetectedError,
    ExtractionEmptyError,
    InsufficientCreditsError,
    InvalidJobTransitionError,
    JobNotFoundError,
    ProxyInUseError,
    ProxyNotFoundError,
    ProxyTransientError,
    ProxyUnavailableError,
    QuotaExceededError,
    RetrievalError,
    RotationExhaustedError,
    SessionInvalidError,
    UpstreamError,
    ValidationError,
    register_error_handlers,
)
from src.middleware.request_id import RequestIdMiddleware

__all__ = [
    "AccountUnhealthyError",
    "AuthenticationError",
    "BrowserUnavailableError",
    "ChallengeDetectedError",
    "ExtractionEmptyError",
    "InsufficientCreditsError",
    "InvalidJobTransitionError",
    "JobNotFoundError",
    "ProxyInUseError",
    "ProxyNotFoundError",
    "ProxyTransientError",
    "ProxyUnavailableError",
    "QuotaExceededError",
    "RequestIdMiddleware",
    "RetrievalError",
    "RotationExhaustedError",
    "ServiceKeyAuthMiddleware",
    "SessionInvalidError",
    "UpstreamError",
    "ValidationError",
    "register_error_handlers",
]
