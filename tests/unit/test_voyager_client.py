"""Unit tests for the structured search API client and the humanizer."""

from __future__ import annotations

import random
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from src.middleware.error_handler import SessionInvalidError, UpstreamError
from src.models.schemas import VOYAGER_API
from src.pipeline.humanizer import Humanizer
from src.pipeline.voyager import VoyagerClient, build_headers, build_search_url


def _page(start: int, count: int, total: int = 100) -> dict:
    items = [
        {
            "itemUnion": {
                "entityResult": {
                    "title": {"text": f"Member {i}"},
                    "primarySubtitle": {"text": f"Analyst at Firm {i}"},
                    "navigationUrl": f"https://www.linkedin.com/in/member-{i}?miniProfileUrn=x",
                }
            }
        }
        for i in range(start, start + count)
    ]
    return {"data": {"searchDashClustersByAll": {"paging": {"total": total}, "elements": [{"items": items}]}}}


def _ok(document: dict) -> httpx.Response:
    return httpx.Response(200, json=document, request=httpx.Request("GET", "https://www.linkedin.com/voyager/api/graphql"))


def _status(code: int) -> httpx.Response:
    return httpx.Response(code, json={}, request=httpx.Request("GET", "https://www.linkedin.com/voyager/api/graphql"))


@pytest.fixture
def client(humanizer: Humanizer) -> VoyagerClient:
    return VoyagerClient(humanizer=humanizer, page_size=10)


async def _collect(client: VoyagerClient, **kwargs) -> list:
    params = {"keywords": "data engineer", "cookie_header": "li_at=x", "csrf_token": "ajax:1", "limit": 25}
    params.update(kwargs)
    return [page async for page in client.iter_pages(**params)]


class TestRequestShape:
    def test_search_url_encodes_keywords_and_offset(self):
        url = build_search_url("data engineer", 20)
        assert "start:20" in url
        assert "keywords:data%20engineer" in url
        assert "queryId=voyagerSearchDashClusters" in url

    def test_headers_carry_session(self):
        headers = build_headers("li_at=x; JSESSIONID=y", "ajax:1", "cto", None)
        assert headers["Cookie"] == "li_at=x; JSESSIONID=y"
        assert headers["csrf-token"] == "ajax:1"
        assert headers["User-Agent"].startswith("Mozilla/5.0")


class TestIterPages:
    @pytest.mark.asyncio
    async def test_pages_until_limit(self, client: VoyagerClient):
        responses = [_ok(_page(0, 10)), _ok(_page(10, 10)), _ok(_page(20, 10))]
        with patch("httpx.AsyncClient.get", new_callable=AsyncMock, side_effect=responses) as mock_get:
            pages = await _collect(client)

        assert [len(p.leads) for p in pages] == [10, 10, 5]
        assert [p.start for p in pages] == [0, 10, 20]
        assert pages[0].total == 100
        assert pages[0].leads[0].data_source == VOYAGER_API
        assert mock_get.call_count == 3

    @pytest.mark.asyncio
    async def test_resumes_from_start_offset(self, client: VoyagerClient):
        with patch("httpx.AsyncClient.get", new_callable=AsyncMock, side_effect=[_ok(_page(40, 10))]) as mock_get:
            pages = await _collect(client, start=40, limit=10)
        assert pages[0].start == 40
        assert "start:40" in mock_get.call_args.args[0]

    @pytest.mark.asyncio
    async def test_stops_after_consecutive_empty_pages(self, client: VoyagerClient):
        responses = [_ok(_page(0, 10)), _ok({"data": {}}), _ok({"data": {}})]
        with patch("httpx.AsyncClient.get", new_callable=AsyncMock, side_effect=responses):
            pages = await _collect(client, limit=50)
        assert len(pages) == 1

    @pytest.mark.asyncio
    async def test_auth_failure_first_page_is_session_invalid(self, client: VoyagerClient):
        with patch("httpx.AsyncClient.get", new_callable=AsyncMock, return_value=_status(401)):
            with pytest.raises(SessionInvalidError):
                await _collect(client)

    @pytest.mark.asyncio
    async def test_server_error_first_page_is_upstream_error(self, client: VoyagerClient):
        with patch("httpx.AsyncClient.get", new_callable=AsyncMock, return_value=_status(500)):
            with pytest.raises(UpstreamError):
                await _collect(client)

    @pytest.mark.asyncio
    async def test_transport_error_first_page_is_upstream_error(self, client: VoyagerClient):
        with patch("httpx.AsyncClient.get", new_callable=AsyncMock, side_effect=httpx.ConnectError("reset")):
            with pytest.raises(UpstreamError):
                await _collect(client)

    @pytest.mark.asyncio
    async def test_partial_results_survive_later_failures(self, client: VoyagerClient):
        responses = [_ok(_page(0, 10)), _status(403)]
        with patch("httpx.AsyncClient.get", new_callable=AsyncMock, side_effect=responses):
            pages = await _collect(client)
        assert len(pages) == 1

    @pytest.mark.asyncio
    async def test_rate_limit_ends_quietly(self, client: VoyagerClient):
        with patch("httpx.AsyncClient.get", new_callable=AsyncMock, return_value=_status(429)):
            assert await _collect(client) == []


class TestHumanizer:
    def test_uniform_ms_within_bounds(self):
        humanizer = Humanizer(rng=random.Random(1))
        values = [humanizer.uniform_ms(50, 100) for _ in range(200)]
        assert min(values) >= 50
        assert max(values) <= 100

    def test_inter_page_delay_range(self):
        humanizer = Humanizer(rng=random.Random(1))
        for _ in range(100):
            assert 25000 <= humanizer.inter_page_delay_ms() <= 45000

    @pytest.mark.asyncio
    async def test_wait_sleeps_in_slices(self):
        sleep = AsyncMock()
        humanizer = Humanizer(sleep=sleep, slice_seconds=1.0)
        assert await humanizer.wait(3.5) is False
        assert [c.args[0] for c in sleep.call_args_list] == [1.0, 1.0, 1.0, 0.5]

    @pytest.mark.asyncio
    async def test_wait_interrupted_by_stop_flag(self):
        sleep = AsyncMock()
        humanizer = Humanizer(sleep=sleep)
        calls = iter([False, False, True])
        assert await humanizer.wait(30, lambda: next(calls)) is True
        assert sleep.call_count == 2

    @pytest.mark.asyncio
    async def test_type_text_one_key_at_a_time(self):
        page = AsyncMock()
        humanizer = Humanizer(rng=random.Random(1), sleep=AsyncMock())
        await humanizer.type_text(page, "cto")
        assert [c.args[0] for c in page.keyboard.type.call_args_list] == ["c", "t", "o"]

    @pytest.mark.asyncio
    async def test_scroll_and_mouse_use_page_input(self):
        page = AsyncMock()
        humanizer = Humanizer(rng=random.Random(1), sleep=AsyncMock())
        await humanizer.scroll(page)
        await humanizer.move_mouse(page)
        assert page.mouse.wheel.await_count >= 2
        page.mouse.move.assert_awaited_once()
