"""Shared test fixtures, fakes and hypothesis strategies for the retrieval test suite."""

from __future__ import annotations

import os
import random
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from unittest.mock import AsyncMock
from urllib.parse import parse_qs, urlsplit

import pytest
import pytest_asyncio
from cryptography.fernet import Fernet
from hypothesis import strategies as st

from src.config.settings import RetrievalSettings
from src.health.account_health import AccountHealthTracker, HealthLimits
from src.health.daily_quota import DailyQuota
from src.integration.cipher import CredentialCipher
from src.integration.session_provider import SessionBundle
from src.models.requests import AddProxyRequest, JobStatus, ProxyKind, SearchJobState
from src.models.schemas import LINKEDIN_SEARCH, Lead
from src.pipeline.browser_search import NEXT_BUTTON_SELECTOR
from src.pipeline.humanizer import Humanizer
from src.proxy.pool import ProxyPool
from src.storage.database import Database
from src.storage.job_store import SearchJobStore
from src.storage.lead_store import LeadStore

TEST_CIPHER_KEY = Fernet.generate_key().decode()
START = datetime(2025, 3, 10, 9, 0, 0)


# ---------------------------------------------------------------------------
# Ensure required env vars are set for RetrievalSettings in tests
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _set_test_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Set minimal env vars so RetrievalSettings can be instantiated in tests."""
    defaults = {
        "RETRIEVAL_SERVICE_KEY": "test-key",
        "RETRIEVAL_BACKEND_API_URL": "http://localhost:3000/api/v1",
        "RETRIEVAL_BACKEND_SERVICE_KEY": "test-backend-key",
        "RETRIEVAL_CREDENTIAL_CIPHER_KEY": TEST_CIPHER_KEY,
    }
    for key, value in defaults.items():
        if key not in os.environ:
            monkeypatch.setenv(key, value)


@pytest.fixture
def settings() -> RetrievalSettings:
    """Test settings with safe defaults."""
    return RetrievalSettings(
        service_key="test-key",
        backend_api_url="http://localhost:3000/api/v1",
        backend_service_key="test-backend-key",
        credential_cipher_key=TEST_CIPHER_KEY,
        database_url="sqlite+aiosqlite://",
    )


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------

class FakeClock:
    """Callable naive-UTC clock that only moves when told to."""

    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ---------------------------------------------------------------------------
# Storage-backed components (in-memory SQLite)
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def database():
    db = Database("sqlite+aiosqlite://")
    await db.create_all()
    yield db
    await db.dispose()


@pytest.fixture
def cipher() -> CredentialCipher:
    return CredentialCipher(TEST_CIPHER_KEY)


@pytest.fixture
def proxy_pool(database: Database, cipher: CredentialCipher, clock: FakeClock) -> ProxyPool:
    return ProxyPool(database, cipher, clock=clock)


@pytest.fixture
def health(database: Database, clock: FakeClock) -> AccountHealthTracker:
    return AccountHealthTracker(database, HealthLimits(), clock=clock)


@pytest.fixture
def quota(database: Database, clock: FakeClock) -> DailyQuota:
    return DailyQuota(database, default_limit=1000, clock=clock)


@pytest.fixture
def job_store(database: Database) -> SearchJobStore:
    return SearchJobStore(database)


@pytest.fixture
def lead_store(database: Database) -> LeadStore:
    return LeadStore(database)


def proxy_request(
    host: str = "gw.example.net",
    *,
    kind: ProxyKind = ProxyKind.DEDICATED,
    provider: str = "iproyal",
    port: int = 12321,
    rotation_interval_hours: int = 24,
) -> AddProxyRequest:
    return AddProxyRequest(
        provider=provider,
        kind=kind,
        host=host,
        port=port,
        username="proxyuser",
        password="proxypass",
        country_code="US",
        rotation_interval_hours=rotation_interval_hours,
    )


# ---------------------------------------------------------------------------
# Jobs and leads
# ---------------------------------------------------------------------------

def make_job(
    *,
    job_id: str = "job-1",
    workspace_id: str = "ws-1",
    account_id: str = "acct-1",
    max_results: int = 50,
    status: JobStatus = JobStatus.RUNNING,
    total_pulled: int = 0,
    criteria: dict | None = None,
) -> SearchJobState:
    return SearchJobState(
        id=job_id,
        workspace_id=workspace_id,
        account_id=account_id,
        criteria=criteria if criteria is not None else {"keywords": "data engineer"},
        max_results=max_results,
        status=status,
        total_pulled=total_pulled,
        created_at=START,
        updated_at=START,
    )


def make_lead(index: int, data_source: str = LINKEDIN_SEARCH) -> Lead:
    return Lead(
        profile_url=f"https://www.linkedin.com/in/person-{index}/",
        name=f"Person {index}",
        first_name="Person",
        last_name=str(index),
        headline=f"Engineer at Company {index}",
        company=f"Company {index}",
        data_source=data_source,
    )


def make_leads(start: int, count: int, data_source: str = LINKEDIN_SEARCH) -> list[Lead]:
    return [make_lead(i, data_source) for i in range(start, start + count)]


def session_bundle(source: str = "unknown", proxy_id: str | None = None) -> SessionBundle:
    return SessionBundle(
        cookies=[
            {"name": "li_at", "value": "AQEDAR-test-auth-cookie-value", "domain": ".linkedin.com", "path": "/"},
            {"name": "JSESSIONID", "value": '"ajax:1234567890"', "domain": ".linkedin.com", "path": "/"},
        ],
        session_source=source,
        proxy_id=proxy_id,
    )


# ---------------------------------------------------------------------------
# Backend collaborator fakes
# ---------------------------------------------------------------------------

class FakeSessions:
    """Stands in for ``SessionCredentialProvider``."""

    def __init__(self, bundle: SessionBundle | None) -> None:
        self.bundle = bundle
        self.invalidated: list[tuple[str, str]] = []

    async def get(self, workspace_id: str, account_id: str) -> SessionBundle | None:
        return self.bundle

    def invalidate(self, workspace_id: str, account_id: str) -> None:
        self.invalidated.append((workspace_id, account_id))


class FakeCredits:
    """Stands in for ``CreditLedger``; records every debit."""

    def __init__(self, available: int = 10_000) -> None:
        self.available = available
        self.charges: list[int] = []

    async def get_available(self, workspace_id: str) -> int:
        return self.available

    async def has_enough_credits(self, workspace_id: str, amount: int) -> bool:
        return self.available >= amount

    async def use_credits(self, workspace_id: str, amount: int, metadata: dict | None = None) -> int:
        self.charges.append(amount)
        self.available -= amount
        return self.available


@pytest.fixture
def humanizer() -> Humanizer:
    """Seeded humanizer whose sleeps return immediately."""
    return Humanizer(rng=random.Random(7), sleep=AsyncMock())


# ---------------------------------------------------------------------------
# Browser fakes
# ---------------------------------------------------------------------------

def results_page_html(start: int, count: int) -> str:
    cards = "".join(
        f"""
        <li class="reusable-search__result-container">
          <a class="app-aware-link" href="https://www.linkedin.com/in/person-{i}?miniProfileUrn=x">
            <span dir="ltr"><span aria-hidden="true">Person {i}</span></span>
          </a>
          <div class="entity-result__primary-subtitle">Engineer at Company {i}</div>
          <div class="entity-result__secondary-subtitle">Berlin, Germany</div>
          <span class="entity-result__badge-text">• 2nd</span>
        </li>"""
        for i in range(start, start + count)
    )
    return f"<html><body><ul>{cards}</ul></body></html>"


CAPTCHA_HTML = '<html><body><div id="captcha-internal">Let\'s do a quick security check</div></body></html>'


class FakeNextButton:
    def __init__(self, page: "FakePage") -> None:
        self._page = page

    async def is_enabled(self) -> bool:
        return True

    async def click(self) -> None:
        self._page.index += 1


class FakePage:
    """Scripted Playwright page: ``contents[i]`` is served for result page i+1."""

    def __init__(self, contents: list[str], *, feed_url: str = "https://www.linkedin.com/feed/") -> None:
        self.contents = contents
        self.index = 0
        self.url = "about:blank"
        self._feed_url = feed_url
        self.mouse = AsyncMock()
        self.keyboard = AsyncMock()
        self.visited: list[str] = []

    async def goto(self, url: str, **_kwargs: object) -> None:
        self.visited.append(url)
        self.url = self._feed_url if "/feed/" in url else url
        requested = parse_qs(urlsplit(url).query).get("page")
        if requested:
            self.index = int(requested[0]) - 1

    async def title(self) -> str:
        return "Feed | LinkedIn"

    async def query_selector(self, selector: str):  # noqa: ANN201
        if selector == NEXT_BUTTON_SELECTOR and self.index + 1 < len(self.contents):
            return FakeNextButton(self)
        return None

    async def wait_for_selector(self, selector: str, **_kwargs: object) -> None:
        return None

    async def wait_for_load_state(self, *_args: object, **_kwargs: object) -> None:
        return None

    async def content(self) -> str:
        return self.contents[min(self.index, len(self.contents) - 1)]


class FakeBrowserPool:
    """Hands out scripted pages and records how each was opened."""

    def __init__(self, pages: list[FakePage]) -> None:
        self._pages = list(pages)
        self.opened: list[dict] = []

    @asynccontextmanager
    async def page(self, profile, *, proxy=None, cookies=None, acquire_timeout: float = 30.0):  # noqa: ANN001, ANN201
        self.opened.append({"profile": profile, "proxy": proxy, "cookies": cookies})
        yield self._pages.pop(0)


# ---------------------------------------------------------------------------
# Hypothesis strategies
# ---------------------------------------------------------------------------

workspace_ids = st.text(alphabet="abcdefghijklmnopqrstuvwxyz0123456789-", min_size=1, max_size=24)
profile_slugs = st.text(alphabet="abcdefghijklmnopqrstuvwxyz0123456789-", min_size=2, max_size=30).filter(
    lambda s: s.strip("-") and s not in {"feed", "search"}
)
job_statuses = st.sampled_from(list(JobStatus))
