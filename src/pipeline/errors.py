"""Failure classification for retrieval runs.

``classify`` maps a raw error message to an ``ErrorKind`` with plain
case-insensitive substring matching, so the retry loop never inspects
strings itself. ``classify_exception`` prefers the typed service errors and
only falls back to the message.
"""

from __future__ import annotations

from enum import Enum

from src.middleware.error_handler import (
    AccountUnhealthyError,
    ChallengeDetectedError,
    ExtractionEmptyError,
    ProxyTransientError,
    ProxyUnavailableError,
    QuotaExceededError,
    SessionInvalidError,
)


class ErrorKind(str, Enum):
    PROXY_TRANSIENT = "proxy_transient"
    SESSION_INVALID = "session_invalid"
    CHALLENGE = "challenge"
    QUOTA = "quota"
    PROXY_UNAVAILABLE = "proxy_unavailable"
    EXTRACTION_EMPTY = "extraction_empty"
    FATAL = "fatal"


PROXY_ERROR_SIGNATURES: tuple[str, ...] = (
    "ERR_TUNNEL_CONNECTION_FAILED",
    "ERR_PROXY_CONNECTION_FAILED",
    "ERR_TUNNEL",
    "ECONNREFUSED",
    "ECONNRESET",
    "ETIMEDOUT",
    "proxy",
    "tunnel",
    "this one's our fault",
    "something went wrong",
    "503",
    "502",
    "Bad Gateway",
)

CHALLENGE_SIGNATURES: tuple[str, ...] = (
    "captcha",
    "checkpoint/challenge",
    "security verification",
    "verify you are human",
)

SESSION_SIGNATURES: tuple[str, ...] = (
    "authwall",
    "/login",
    "session expired",
    "not logged in",
    "no stored session",
)

_PROXY_LOWER = tuple(s.lower() for s in PROXY_ERROR_SIGNATURES)

# First match wins; proxy signatures take precedence.
_ORDERED: tuple[tuple[ErrorKind, tuple[str, ...]], ...] = (
    (ErrorKind.PROXY_TRANSIENT, _PROXY_LOWER),
    (ErrorKind.CHALLENGE, CHALLENGE_SIGNATURES),
    (ErrorKind.SESSION_INVALID, SESSION_SIGNATURES),
)


def is_proxy_error(message: str) -> bool:
    lowered = message.lower()
    return any(signature in lowered for signature in _PROXY_LOWER)


def classify(message: str | None) -> ErrorKind:
    """Classify an error message. Unrecognized messages are ``FATAL``."""
    if not message:
        return ErrorKind.FATAL
    lowered = message.lower()
    for kind, signatures in _ORDERED:
        if any(signature in lowered for signature in signatures):
            return kind
    return ErrorKind.FATAL


def classify_exception(exc: BaseException) -> ErrorKind:
    """Classify by exception type, then by message."""
    if isinstance(exc, ChallengeDetectedError):
        return ErrorKind.CHALLENGE
    if isinstance(exc, SessionInvalidError):
        return ErrorKind.SESSION_INVALID
    if isinstance(exc, (QuotaExceededError, AccountUnhealthyError)):
        return ErrorKind.QUOTA
    if isinstance(exc, ProxyUnavailableError):
        return ErrorKind.PROXY_UNAVAILABLE
    if isinstance(exc, ProxyTransientError):
        return ErrorKind.PROXY_TRANSIENT
    if isinstance(exc, ExtractionEmptyError):
        return ErrorKind.EXTRACTION_EMPTY
    return classify(str(exc))
