"""Tier 1: the structured people-search API.

Pages are requested with the account's session cookies over httpx and parsed
by the pure strategy cascade in ``src.extractors.voyager``. The client is an
async generator of pages so the orchestrator can commit each batch and check
for pause/cancel between requests.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import AsyncIterator
from urllib.parse import quote

import httpx

from src.extractors.registry import StrategyChain
from src.extractors.voyager import default_voyager_chain, parse_search_page
from src.middleware.error_handler import SessionInvalidError, UpstreamError
from src.models.normalizer import LeadNormalizer
from src.models.schemas import VOYAGER_API, Lead
from src.pipeline.humanizer import Humanizer

logger = logging.getLogger(__name__)

SEARCH_QUERY_ID = "voyagerSearchDashClusters.b0928897b71bd00a5a7291755dcd64f0"
GRAPHQL_URL = "https://www.linkedin.com/voyager/api/graphql"
DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


@dataclass
class VoyagerPage:
    start: int
    leads: list[Lead] = field(default_factory=list)
    total: int | None = None


def build_search_url(keywords: str, start: int) -> str:
    encoded = quote(keywords, safe="")
    variables = (
        f"(start:{start},origin:GLOBAL_SEARCH_HEADER,"
        f"query:(keywords:{encoded},flagshipSearchIntent:SEARCH_SRP,"
        "queryParameters:List((key:resultType,value:List(PEOPLE))),"
        "includeFiltersInResponse:false))"
    )
    return f"{GRAPHQL_URL}?variables={variables}&queryId={SEARCH_QUERY_ID}"


def build_headers(cookie_header: str, csrf_token: str | None, keywords: str, user_agent: str | None) -> dict:
    return {
        "User-Agent": user_agent or DEFAULT_USER_AGENT,
        "Accept": "application/vnd.linkedin.normalized+json+2.1",
        "Accept-Language": "en-US,en;q=0.9",
        "Cookie": cookie_header,
        "csrf-token": csrf_token or "",
        "x-li-lang": "en_US",
        "x-restli-protocol-version": "2.0.0",
        "Referer": f"https://www.linkedin.com/search/results/people/?keywords={quote(keywords, safe='')}",
        "Origin": "https://www.linkedin.com",
    }


def _total_from(document: dict) -> int | None:
    body = document.get("data") or {}
    for container in (body, body.get("data") or {}):
        if not isinstance(container, dict):
            continue
        for key in ("searchDashClustersByAll", "searchDashClusters"):
            paging = (container.get(key) or {}).get("paging") or {}
            if isinstance(paging.get("total"), int):
                return paging["total"]
    return None


class VoyagerClient:
    """Paginated client for the people-search GraphQL endpoint."""

    def __init__(
        self,
        *,
        humanizer: Humanizer | None = None,
        normalizer: LeadNormalizer | None = None,
        chain: StrategyChain | None = None,
        page_size: int = 10,
        max_empty_pages: int = 2,
        timeout_seconds: float = 30.0,
    ) -> None:
        self._humanizer = humanizer or Humanizer()
        self._normalizer = normalizer or LeadNormalizer()
        self._chain = chain or default_voyager_chain()
        self._page_size = page_size
        self._max_empty_pages = max_empty_pages
        self._timeout_seconds = timeout_seconds

    async def iter_pages(
        self,
        *,
        keywords: str,
        cookie_header: str,
        csrf_token: str | None,
        limit: int,
        start: int = 0,
        proxy_url: str | None = None,
        user_agent: str | None = None,
    ) -> AsyncIterator[VoyagerPage]:
        """Yield one ``VoyagerPage`` per non-empty API page.

        Stops after *limit* leads, after ``max_empty_pages`` consecutive empty
        pages, or on an upstream rate limit.

        Raises
        ------
        SessionInvalidError
            On 401/403 before anything was collected.
        UpstreamError
            On any other error status or transport failure before anything
            was collected. After that the partial result stands.
        """
        headers = build_headers(cookie_header, csrf_token, keywords, user_agent)
        collected = 0
        empty_pages = 0
        offset = start

        async with httpx.AsyncClient(proxy=proxy_url, timeout=self._timeout_seconds) as client:
            while collected < limit:
                if offset != start:
                    await self._humanizer.pause(1000, 2000)

                try:
                    response = await client.get(build_search_url(keywords, offset), headers=headers)
                except httpx.HTTPError as exc:
                    if collected == 0:
                        raise UpstreamError(f"Search API request failed: {exc}") from exc
                    logger.warning("Search API request failed after partial results: %s", exc)
                    return

                status = response.status_code
                if status in (401, 403):
                    if collected == 0:
                        raise SessionInvalidError(f"Search API rejected the session (HTTP {status})")
                    logger.warning("Search API auth failure after %d leads, keeping partial results", collected)
                    return
                if status == 429:
                    logger.warning("Search API rate limited after %d leads", collected)
                    return
                if status >= 400:
                    if collected == 0:
                        raise UpstreamError(f"Search API returned HTTP {status}", status=status)
                    return

                document = response.json()
                leads = self._normalizer.normalize_many(parse_search_page(document, self._chain), VOYAGER_API)
                if not leads:
                    empty_pages += 1
                    if empty_pages >= self._max_empty_pages:
                        return
                    offset += self._page_size
                    continue

                empty_pages = 0
                leads = leads[: limit - collected]
                collected += len(leads)
                yield VoyagerPage(start=offset, leads=leads, total=_total_from(document))
                offset += self._page_size
