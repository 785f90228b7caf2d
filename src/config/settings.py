"""Pydantic Settings for the retrieval service.

All environment variables use the RETRIEVAL_ prefix.
Example: RETRIEVAL_PORT=8002, RETRIEVAL_SERVICE_KEY=my-secret-key
"""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings


class RetrievalSettings(BaseSettings):
    """Retrieval service configuration validated from environment variables."""

    # Service
    port: int = 8002
    service_key: str  # X-Service-Key for auth
    log_level: str = "INFO"
    timezone: str = "UTC"  # Local day boundary for CAPTCHA and quota resets

    # Storage
    database_url: str = "sqlite+aiosqlite:///./retrieval.db"
    database_echo: bool = False

    # Backend integration (session cookies, credit ledger)
    backend_api_url: str  # e.g. "https://api.example.com/api/v1"
    backend_service_key: str
    session_cache_ttl_seconds: int = Field(default=300, ge=0)
    backend_max_retries: int = Field(default=3, ge=1)

    # Activity events
    activity_webhook_url: str | None = None
    activity_webhook_secret: str | None = None

    # Fernet key sealing proxy credentials at rest
    credential_cipher_key: str

    # Browser pool
    browser_pool_size: int = Field(default=2, ge=1, le=20)
    browser_page_limit: int = Field(default=50, ge=1)  # Recycle after N runs
    navigation_timeout_ms: int = Field(default=30000, ge=1000)
    headless: bool = True

    # Proxy pool
    proxy_health_check_interval_seconds: int = Field(default=900, ge=1)
    proxy_rotation_check_interval_seconds: int = Field(default=300, ge=1)
    proxy_health_check_url: str = "https://httpbin.org/ip"
    max_proxy_rotation_attempts: int = Field(default=3, ge=1)
    proxy_rotation_delay_ms: int = Field(default=5000, ge=0)
    master_proxy_max_sessions: int | None = Field(default=None, ge=1)

    # Account safety
    max_pages_per_hour: int = Field(default=10, ge=1)
    captcha_cooldown_hours: float = Field(default=6, gt=0)
    max_captchas_per_day: int = Field(default=2, ge=1)
    default_daily_limit: int = Field(default=1000, ge=0)
    credits_per_lead: int = Field(default=1, ge=0)

    # Pagination
    page_size: int = Field(default=10, ge=1)
    min_page_delay_ms: int = Field(default=25000, ge=0)
    page_delay_jitter_ms: int = Field(default=20000, ge=0)
    api_page_size: int = Field(default=10, ge=1)
    api_max_empty_pages: int = Field(default=2, ge=1)
    api_timeout_seconds: float = Field(default=30.0, gt=0)

    # Per-workspace safety overrides
    safety_policies_path: str = "src/config/safety_policies.yaml"

    # Shutdown
    graceful_shutdown_seconds: int = Field(default=30, ge=0)

    model_config = {"env_prefix": "RETRIEVAL_"}
