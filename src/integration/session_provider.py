"""Session credential provider backed by the backend API.

Fetches an account's stored site cookies via
GET /api/v1/workspaces/:workspace_id/accounts/:account_id/session with
X-Service-Key authentication. Responses are sanitized into a
``SessionBundle`` and cached in memory for a configurable TTL. Transient
failures are retried with exponential backoff.

SECURITY: Never logs or persists cookie values.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field

import httpx

from src.middleware.error_handler import UpstreamError

logger = logging.getLogger(__name__)

SITE_DOMAIN = ".linkedin.com"
AUTH_COOKIE = "li_at"
CSRF_COOKIE = "JSESSIONID"

# Short-lived or tracking cookies that break replay when carried over
TRANSIENT_COOKIES = frozenset(
    {
        "__cf_bm",
        "timezone",
        "sdui_ver",
        "_gcl_au",
        "AnalyticsSyncHistory",
        "UserMatchHistory",
    }
)

SESSION_SOURCES = ("quick_login", "manual", "unknown")


def _normalize_domain(domain: str | None) -> str:
    domain = (domain or SITE_DOMAIN).strip().lower()
    if domain in ("www.linkedin.com", ".www.linkedin.com"):
        return SITE_DOMAIN
    if "linkedin.com" in domain and not domain.startswith("."):
        return "." + domain
    return domain


def sanitize_cookies(cookies: list[dict]) -> list[dict]:
    """Normalize domains, drop foreign and transient cookies, dedupe by name.

    When two cookies share a name the one scoped to ``.linkedin.com`` wins.
    """
    by_name: dict[str, dict] = {}
    for cookie in cookies:
        name = cookie.get("name")
        value = cookie.get("value")
        if not name or not value or name in TRANSIENT_COOKIES:
            continue
        domain = _normalize_domain(cookie.get("domain"))
        if "linkedin.com" not in domain:
            continue

        cleaned = {**cookie, "domain": domain, "path": cookie.get("path") or "/"}
        existing = by_name.get(name)
        if existing is None or (domain == SITE_DOMAIN and existing["domain"] != SITE_DOMAIN):
            by_name[name] = cleaned
    return list(by_name.values())


@dataclass
class SessionBundle:
    """Sanitized cookies plus where they came from.

    ``manual`` sessions were pasted from the user's own browser and are bound
    to the user's IP, so they must not be replayed through a proxy.
    ``quick_login`` sessions were captured through a specific proxy which
    should be reused.
    """

    cookies: list[dict] = field(default_factory=list)
    session_source: str = "unknown"
    proxy_id: str | None = None
    user_agent: str | None = None

    def _value(self, name: str) -> str | None:
        for cookie in self.cookies:
            if cookie.get("name") == name:
                return cookie.get("value")
        return None

    @property
    def is_valid(self) -> bool:
        li_at = self._value(AUTH_COOKIE)
        return bool(li_at) and len(li_at) > 10

    @property
    def csrf_token(self) -> str | None:
        value = self._value(CSRF_COOKIE)
        return value.strip('"') if value else None

    @property
    def ip_bound(self) -> bool:
        return self.session_source == "manual"

    def cookie_header(self) -> str:
        return "; ".join(f"{c['name']}={c['value']}" for c in self.cookies)

    def playwright_cookies(self) -> list[dict]:
        """Cookies in the shape ``BrowserContext.add_cookies`` accepts."""
        allowed = ("name", "value", "domain", "path", "expires", "httpOnly", "secure", "sameSite")
        result = []
        for cookie in self.cookies:
            entry = {k: cookie[k] for k in allowed if cookie.get(k) is not None}
            if entry.get("sameSite") not in (None, "Strict", "Lax", "None"):
                entry.pop("sameSite")
            result.append(entry)
        return result


class SessionCredentialProvider:
    """HTTP client for the backend session API with caching and retries.

    Parameters
    ----------
    backend_api_url:
        Base URL for the backend API (e.g. "https://api.example.com/api/v1").
    service_key:
        X-Service-Key value for authenticating with the backend.
    cache_ttl_seconds:
        TTL for cached sessions (default 300 = 5 min).
    max_retries:
        Maximum attempts on transient failures (default 3).
    """

    def __init__(
        self,
        backend_api_url: str,
        service_key: str,
        cache_ttl_seconds: int = 300,
        max_retries: int = 3,
    ) -> None:
        self._backend_api_url = backend_api_url.rstrip("/")
        self._service_key = service_key
        self._cache_ttl_seconds = cache_ttl_seconds
        self._max_retries = max_retries

        # Cache: (workspace_id, account_id) -> (bundle, expiry_timestamp)
        self._cache: dict[tuple[str, str], tuple[SessionBundle, float]] = {}

    async def get(self, workspace_id: str, account_id: str) -> SessionBundle | None:
        """Return a valid session bundle, or ``None`` if the account has none.

        Raises
        ------
        UpstreamError
            If the backend keeps failing after all retry attempts.
        """
        cache_key = (workspace_id, account_id)
        cached = self._cache.get(cache_key)
        if cached is not None:
            bundle, expiry = cached
            if time.monotonic() < expiry:
                return bundle

        payload = await self._fetch_with_retries(workspace_id, account_id)
        if payload is None:
            return None

        source = payload.get("session_source") or "unknown"
        bundle = SessionBundle(
            cookies=sanitize_cookies(payload.get("cookies") or []),
            session_source=source if source in SESSION_SOURCES else "unknown",
            proxy_id=payload.get("proxy_id"),
            user_agent=payload.get("user_agent"),
        )
        if not bundle.is_valid:
            logger.warning(
                "Stored session has no usable auth cookie",
                extra={"workspace_id": workspace_id, "account_id": account_id},
            )
            return None

        self._cache[cache_key] = (bundle, time.monotonic() + self._cache_ttl_seconds)
        return bundle

    def invalidate(self, workspace_id: str, account_id: str) -> None:
        """Drop a cached bundle, e.g. after the site rejected it."""
        self._cache.pop((workspace_id, account_id), None)

    async def _fetch_with_retries(self, workspace_id: str, account_id: str) -> dict | None:
        """Fetch the raw session payload. Retry schedule: 1s, 2s, 4s."""
        url = f"{self._backend_api_url}/workspaces/{workspace_id}/accounts/{account_id}/session"
        last_exception: Exception | None = None

        for attempt in range(self._max_retries):
            try:
                async with httpx.AsyncClient() as client:
                    response = await client.get(
                        url,
                        headers={"X-Service-Key": self._service_key},
                        timeout=10.0,
                    )

                if response.status_code == 404:
                    logger.info(
                        "No stored session",
                        extra={"workspace_id": workspace_id, "account_id": account_id},
                    )
                    return None

                response.raise_for_status()
                data = response.json()
                if isinstance(data, dict) and "data" in data:
                    return data["data"] or None
                return data

            except (httpx.TransportError, httpx.HTTPStatusError) as exc:
                last_exception = exc
                backoff = 2**attempt
                logger.warning(
                    "Session fetch failed (attempt %d/%d), retrying in %ds",
                    attempt + 1,
                    self._max_retries,
                    backoff,
                    extra={"workspace_id": workspace_id, "account_id": account_id},
                )
                if attempt < self._max_retries - 1:
                    await asyncio.sleep(backoff)

        logger.error(
            "Failed to fetch session after %d attempts",
            self._max_retries,
            extra={"workspace_id": workspace_id, "account_id": account_id},
        )
        raise UpstreamError(
            f"Session store unreachable after {self._max_retries} attempts"
        ) from last_exception
