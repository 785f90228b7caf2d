"""Unit tests for the HTTP control surface with mocked services."""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from src.middleware.auth import ServiceKeyAuthMiddleware
from src.middleware.error_handler import (
    AccountUnhealthyError,
    InsufficientCreditsError,
    InvalidJobTransitionError,
    JobNotFoundError,
    ProxyInUseError,
    QuotaExceededError,
    register_error_handlers,
)
from src.middleware.request_id import RequestIdMiddleware
from src.models.requests import ExportFormat, JobStatus
from src.routers.health import create_health_router
from src.routers.proxies import create_proxies_router
from src.routers.search import create_search_router
from tests.conftest import make_job, make_leads

_SERVICE_KEY = "test-service-key"
_HEADERS = {"X-Service-Key": _SERVICE_KEY}


@pytest.fixture
def services() -> SimpleNamespace:
    job_manager = MagicMock()
    for name in (
        "create_job", "list_jobs", "get_job", "pause", "resume", "cancel", "get_job_leads",
        "export_results", "get_search_stats", "get_daily_usage", "set_daily_limit",
        "list_workspace_leads", "delete_workspace_leads",
    ):
        setattr(job_manager, name, AsyncMock())
    job_manager.active_count.return_value = 2

    database = MagicMock()
    database.ping = AsyncMock(return_value=True)
    proxy_pool = AsyncMock()
    proxy_pool.get_pool_stats.return_value = {"total": 2, "available": 1, "masters": 0}
    browser_pool = MagicMock()
    browser_pool.get_stats.return_value = {"total": 1, "available": 1, "in_use": 0}
    monitor = MagicMock()
    monitor.snapshot.return_value = {"status": "healthy", "alert": False}

    return SimpleNamespace(
        job_manager=job_manager,
        recovery=AsyncMock(),
        health=AsyncMock(),
        monitor=monitor,
        database=database,
        proxy_pool=proxy_pool,
        browser_pool=browser_pool,
        health_checker=AsyncMock(),
    )


@pytest.fixture
def client(services: SimpleNamespace) -> TestClient:
    app = FastAPI()
    register_error_handlers(app)
    app.include_router(create_health_router(
        database=services.database,
        browser_pool=services.browser_pool,
        proxy_pool=services.proxy_pool,
        monitor=services.monitor,
        job_manager=services.job_manager,
    ))
    app.include_router(create_search_router(
        job_manager=services.job_manager,
        recovery=services.recovery,
        health=services.health,
        monitor=services.monitor,
    ))
    app.include_router(create_proxies_router(
        proxy_pool=services.proxy_pool,
        health_checker=services.health_checker,
    ))
    app.add_middleware(ServiceKeyAuthMiddleware, service_key=_SERVICE_KEY)
    app.add_middleware(RequestIdMiddleware)
    return TestClient(app, raise_server_exceptions=False)


_JOB_BODY = {
    "workspace_id": "ws-1",
    "account_id": "acct-1",
    "criteria": {"keywords": "data engineer"},
    "max_results": 50,
}


class TestAuth:
    def test_missing_key_rejected(self, client: TestClient):
        response = client.get("/api/v1/search/jobs/job-1")
        assert response.status_code == 401
        assert response.json() == {
            "success": False,
            "data": None,
            "error": "Invalid or missing service key",
            "meta": None,
        }

    def test_wrong_key_rejected(self, client: TestClient):
        response = client.get("/api/v1/proxies", headers={"X-Service-Key": "nope"})
        assert response.status_code == 401

    def test_health_endpoints_are_public(self, client: TestClient):
        assert client.get("/health").status_code == 200
        assert client.get("/metrics").status_code == 200

    def test_request_id_echoed(self, client: TestClient):
        response = client.get("/health", headers={"X-Request-ID": "req-42"})
        assert response.headers["X-Request-ID"] == "req-42"


class TestSearchJobs:
    def test_create_job(self, client: TestClient, services: SimpleNamespace):
        services.job_manager.create_job.return_value = make_job(status=JobStatus.PENDING)
        response = client.post("/api/v1/search/jobs", json=_JOB_BODY, headers=_HEADERS)

        assert response.status_code == 202
        body = response.json()
        assert body["success"] is True
        assert body["data"]["job_id"] == "job-1"
        assert body["data"]["status"] == "pending"
        request = services.job_manager.create_job.await_args.args[0]
        assert request.criteria.keywords == "data engineer"

    def test_create_job_validation(self, client: TestClient):
        response = client.post(
            "/api/v1/search/jobs", json={**_JOB_BODY, "max_results": 0}, headers=_HEADERS
        )
        assert response.status_code == 422
        assert response.json()["error"] == "Validation error"
        assert any("max_results" in f["field"] for f in response.json()["meta"]["fields"])

    @pytest.mark.parametrize(
        "error, status",
        [
            (QuotaExceededError(), 429),
            (InsufficientCreditsError(), 402),
            (AccountUnhealthyError("Account in cooldown. 30 minutes remaining."), 429),
        ],
    )
    def test_create_job_admission_errors(self, client, services, error, status):
        services.job_manager.create_job.side_effect = error
        response = client.post("/api/v1/search/jobs", json=_JOB_BODY, headers=_HEADERS)
        assert response.status_code == status
        assert response.json()["error"] == error.message

    def test_unknown_job_is_404(self, client: TestClient, services: SimpleNamespace):
        services.job_manager.get_job.side_effect = JobNotFoundError("Job not found: x", job_id="x")
        response = client.get("/api/v1/search/jobs/x", headers=_HEADERS)
        assert response.status_code == 404
        assert response.json()["meta"] == {"job_id": "x"}

    def test_invalid_transition_is_409(self, client: TestClient, services: SimpleNamespace):
        services.recovery.restart.side_effect = InvalidJobTransitionError("Cannot restart a completed job")
        response = client.post("/api/v1/search/jobs/job-1/restart", headers=_HEADERS)
        assert response.status_code == 409

    @pytest.mark.parametrize("action", ["pause", "resume", "cancel"])
    def test_control_actions(self, client, services, action):
        getattr(services.job_manager, action).return_value = make_job(status=JobStatus.PAUSED)
        response = client.post(f"/api/v1/search/jobs/job-1/{action}", headers=_HEADERS)
        assert response.status_code == 200
        getattr(services.job_manager, action).assert_awaited_once_with("job-1")

    def test_list_jobs_requires_workspace(self, client: TestClient, services: SimpleNamespace):
        assert client.get("/api/v1/search/jobs", headers=_HEADERS).status_code == 422
        services.job_manager.list_jobs.return_value = [make_job()]
        response = client.get("/api/v1/search/jobs?workspace_id=ws-1", headers=_HEADERS)
        assert response.json()["meta"] == {"count": 1}

    def test_job_leads_paged(self, client: TestClient, services: SimpleNamespace):
        services.job_manager.get_job_leads.return_value = make_leads(0, 2)
        response = client.get("/api/v1/search/jobs/job-1/leads?offset=5&limit=2", headers=_HEADERS)
        assert [lead["name"] for lead in response.json()["data"]] == ["Person 0", "Person 1"]
        services.job_manager.get_job_leads.assert_awaited_once_with("job-1", 5, 2)

    def test_csv_export_is_an_attachment(self, client: TestClient, services: SimpleNamespace):
        services.job_manager.export_results.return_value = ("profileUrl,name\r\n", "text/csv")
        response = client.get("/api/v1/search/jobs/job-1/export?format=csv", headers=_HEADERS)

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        assert response.headers["content-disposition"] == 'attachment; filename="search-job-1.csv"'
        services.job_manager.export_results.assert_awaited_once_with("job-1", ExportFormat.CSV)


class TestAccountEndpoints:
    def test_account_health_includes_scraper(self, client: TestClient, services: SimpleNamespace):
        services.health.get_health_status.return_value = {"is_healthy": True}
        response = client.get("/api/v1/search/health/ws-1/acct-1", headers=_HEADERS)
        assert response.json()["data"] == {
            "account": {"is_healthy": True},
            "scraper": {"status": "healthy", "alert": False},
        }

    def test_daily_limit_validated(self, client: TestClient, services: SimpleNamespace):
        response = client.post("/api/v1/search/daily-limit/ws-1/acct-1", json={"limit": -1}, headers=_HEADERS)
        assert response.status_code == 422

        services.job_manager.set_daily_limit.return_value = {"limit": 200}
        response = client.post("/api/v1/search/daily-limit/ws-1/acct-1", json={"limit": 200}, headers=_HEADERS)
        assert response.json()["data"] == {"limit": 200}

    def test_workspace_leads(self, client: TestClient, services: SimpleNamespace):
        services.job_manager.list_workspace_leads.return_value = (make_leads(0, 1), 7)
        response = client.get("/api/v1/search/leads/ws-1", headers=_HEADERS)
        assert response.json()["meta"] == {"offset": 0, "limit": 100, "total": 7}

        services.job_manager.delete_workspace_leads.return_value = 7
        response = client.delete("/api/v1/search/leads/ws-1", headers=_HEADERS)
        assert response.json()["data"] == {"deleted": 7}

    def test_warmup_schedule(self, client: TestClient):
        response = client.get("/api/v1/search/warmup-schedule/5", headers=_HEADERS)
        assert response.json()["data"]["daily_limit"] == 150


class TestHealthEndpoints:
    def test_readiness_ok(self, client: TestClient):
        response = client.get("/readiness")
        assert response.status_code == 200
        assert response.json()["data"] == {"ready": True, "database": True, "usable_proxies": 1}

    def test_readiness_without_proxies(self, client: TestClient, services: SimpleNamespace):
        services.proxy_pool.get_pool_stats.return_value = {"total": 0, "available": 0, "masters": 0}
        response = client.get("/readiness")
        assert response.status_code == 503
        assert response.json()["error"] == "Service not ready"

    def test_readiness_without_database(self, client: TestClient, services: SimpleNamespace):
        services.database.ping.return_value = False
        response = client.get("/readiness")
        assert response.status_code == 503
        services.proxy_pool.get_pool_stats.assert_not_awaited()

    def test_health_reports_active_jobs(self, client: TestClient):
        assert client.get("/health").json()["data"]["active_jobs"] == 2


class TestProxyAdmin:
    def test_add_proxy(self, client: TestClient, services: SimpleNamespace):
        services.proxy_pool.add_proxy.return_value = {"id": "p-1", "host": "gw.example.net"}
        response = client.post(
            "/api/v1/proxies",
            json={"provider": "iproyal", "host": "gw.example.net", "port": 12321},
            headers=_HEADERS,
        )
        assert response.status_code == 201
        assert response.json()["data"]["id"] == "p-1"

    def test_remove_in_use_is_409(self, client: TestClient, services: SimpleNamespace):
        services.proxy_pool.remove_proxy.side_effect = ProxyInUseError()
        response = client.delete("/api/v1/proxies/p-1", headers=_HEADERS)
        assert response.status_code == 409

    def test_rotate_allocation(self, client: TestClient, services: SimpleNamespace):
        lease = MagicMock()
        lease.describe.return_value = {"proxy_id": "p-1", "sticky_session_id": "abc"}
        services.proxy_pool.rotate_user_proxy.return_value = lease
        response = client.post("/api/v1/proxies/allocations/ws-1/user-1/rotate", headers=_HEADERS)
        assert response.json()["data"]["sticky_session_id"] == "abc"
        services.proxy_pool.rotate_user_proxy.assert_awaited_once_with("user-1", "ws-1")

    def test_health_check_and_rotations(self, client: TestClient, services: SimpleNamespace):
        services.health_checker.run_health_checks.return_value = {"checked": 2, "healthy": 2, "unhealthy": 0}
        services.proxy_pool.run_scheduled_rotations.return_value = 1
        assert client.post("/api/v1/proxies/health-check", headers=_HEADERS).json()["data"]["checked"] == 2
        assert client.post("/api/v1/proxies/rotations/run", headers=_HEADERS).json()["data"] == {"rotated": 1}
