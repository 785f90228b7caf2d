"""Lookup-credit ledger client.

The ledger itself lives in the backend; this service only reads the balance
and posts debits and refunds:

- GET  /workspaces/:id/credits          -> {"available": int}
- POST /workspaces/:id/credits/use      {"amount", "metadata"}
- POST /workspaces/:id/credits/refund   {"amount", "reason"}

Requests carry X-Service-Key and are retried with exponential backoff on
transport errors and 5xx responses.
"""

from __future__ import annotations

import asyncio
import logging

import httpx

from src.middleware.error_handler import InsufficientCreditsError, UpstreamError

logger = logging.getLogger(__name__)


class CreditLedger:
    """HTTP client for the backend credit ledger."""

    def __init__(self, backend_api_url: str, service_key: str, max_retries: int = 3) -> None:
        self._backend_api_url = backend_api_url.rstrip("/")
        self._service_key = service_key
        self._max_retries = max_retries

    async def get_available(self, workspace_id: str) -> int:
        data = await self._request("GET", f"/workspaces/{workspace_id}/credits")
        return int(data.get("available", 0))

    async def has_enough_credits(self, workspace_id: str, amount: int) -> bool:
        return await self.get_available(workspace_id) >= amount

    async def use_credits(self, workspace_id: str, amount: int, metadata: dict | None = None) -> int:
        """Debit *amount* credits and return the remaining balance.

        Raises ``InsufficientCreditsError`` when the ledger refuses the debit.
        """
        if amount <= 0:
            return await self.get_available(workspace_id)
        data = await self._request(
            "POST",
            f"/workspaces/{workspace_id}/credits/use",
            json={"amount": amount, "metadata": metadata or {}},
        )
        logger.info(
            "Charged %d credits",
            amount,
            extra={"workspace_id": workspace_id, "leads": amount},
        )
        return int(data.get("available", 0))

    async def refund(self, workspace_id: str, amount: int, reason: str) -> None:
        if amount <= 0:
            return
        await self._request(
            "POST",
            f"/workspaces/{workspace_id}/credits/refund",
            json={"amount": amount, "reason": reason},
        )
        logger.info("Refunded %d credits: %s", amount, reason, extra={"workspace_id": workspace_id})

    async def _request(self, method: str, path: str, json: dict | None = None) -> dict:
        url = f"{self._backend_api_url}{path}"
        last_exception: Exception | None = None

        for attempt in range(self._max_retries):
            try:
                async with httpx.AsyncClient() as client:
                    response = await client.request(
                        method,
                        url,
                        json=json,
                        headers={"X-Service-Key": self._service_key},
                        timeout=10.0,
                    )

                if response.status_code == 402:
                    raise InsufficientCreditsError()
                if response.status_code < 500:
                    response.raise_for_status()
                    data = response.json()
                    if isinstance(data, dict) and "data" in data:
                        return data["data"] or {}
                    return data if isinstance(data, dict) else {}

                last_exception = httpx.HTTPStatusError(
                    f"Credit ledger returned {response.status_code}",
                    request=response.request,
                    response=response,
                )
            except httpx.TransportError as exc:
                last_exception = exc
            except httpx.HTTPStatusError as exc:
                raise UpstreamError(
                    f"Credit ledger rejected request ({exc.response.status_code})"
                ) from exc

            backoff = 2**attempt
            logger.warning(
                "Credit ledger %s %s failed (attempt %d/%d), retrying in %ds",
                method,
                path,
                attempt + 1,
                self._max_retries,
                backoff,
            )
            if attempt < self._max_retries - 1:
                await asyncio.sleep(backoff)

        raise UpstreamError(
            f"Credit ledger unreachable after {self._max_retries} attempts"
        ) from last_exception
