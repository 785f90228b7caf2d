"""Proxy pool package: sticky-session allocation, rotation, and health checks."""

from src.proxy.health import ProxyHealthChecker
from src.proxy.pool import ProxyPool
from src.proxy.types import ProxyLease, make_session_id, sticky_username

__all__ = [
    "ProxyHealthChecker",
    "ProxyLease",
    "ProxyPool",
    "make_session_id",
    "sticky_username",
]
