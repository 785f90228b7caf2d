"""Proxy lease model and provider-specific sticky-session formatting."""

from __future__ import annotations

import random
import string
import time
from dataclasses import dataclass
from datetime import datetime
from urllib.parse import quote

# Providers whose gateways accept a session token embedded in the username
_DECODO_PROVIDERS = {"decodo", "smartproxy"}
_DECODO_STICKY_PORT = 7000


def make_session_id(user_id: str) -> str:
    """Issue a fresh sticky session token: ``sess_{user[:8]}_{epoch_ms}_{rand6}``."""
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=6))
    return f"sess_{user_id[:8]}_{int(time.time() * 1000)}_{suffix}"


def sticky_username(provider: str, port: int, username: str, session_id: str) -> str:
    """Embed *session_id* into *username* using the provider's gateway syntax."""
    provider = provider.lower()

    if provider in _DECODO_PROVIDERS:
        if port != _DECODO_STICKY_PORT:
            return username
        return f"user-{username}-session-{session_id}-sessionduration-30"

    if provider == "anyip":
        return f"{username},session_{session_id}"

    if provider == "iproyal":
        return f"{username}_session-{session_id}"

    if provider == "oxylabs":
        base = username.split("-sessid-", 1)[0]
        return f"{base}-sessid-{session_id}"

    return f"{username}-session-{session_id}"


@dataclass
class ProxyLease:
    """An active proxy allocation handed to a retrieval run.

    ``username`` already carries the sticky session token; ``password`` is
    decrypted and must never be logged.
    """

    allocation_id: str | None
    proxy_id: str
    provider: str
    kind: str
    host: str
    port: int
    sticky_session_id: str
    username: str | None = None
    password: str | None = None
    next_rotation_at: datetime | None = None
    country_code: str | None = None

    @property
    def server(self) -> str:
        return f"http://{self.host}:{self.port}"

    def playwright_proxy(self) -> dict:
        """Proxy settings in the shape ``browser.new_context(proxy=...)`` expects."""
        proxy: dict = {"server": self.server}
        if self.username:
            proxy["username"] = self.username
        if self.password:
            proxy["password"] = self.password
        return proxy

    def httpx_url(self) -> str:
        """Proxy URL with credentials for ``httpx.AsyncClient(proxy=...)``."""
        if self.username and self.password:
            return f"http://{quote(self.username, safe='')}:{quote(self.password, safe='')}@{self.host}:{self.port}"
        return self.server

    def describe(self) -> dict:
        """Loggable summary without credentials."""
        return {
            "proxy_id": self.proxy_id,
            "provider": self.provider,
            "kind": self.kind,
            "host": self.host,
            "port": self.port,
            "sticky_session_id": self.sticky_session_id,
            "next_rotation_at": self.next_rotation_at.isoformat() if self.next_rotation_at else None,
        }
