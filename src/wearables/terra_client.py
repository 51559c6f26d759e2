"""Outbound client for the aggregator's REST API.

Endpoints used:
    GET /v2/{data_type}   — request (re)delivery of a historical range
    GET /v2/integrations  — connectivity probe

Every call is bounded by a timeout.  Non-2xx responses, network errors and
timeouts are raised as ``ProviderRequestError`` so batch callers can record
them per item.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date
from typing import Any

import httpx

from src.wearables.base import DataType

logger = logging.getLogger("vitalink.wearables.terra")

DEFAULT_API_BASE = "https://api.tryterra.co/v2"


class ProviderRequestError(RuntimeError):
    """One outbound aggregator call failed (status, network or timeout)."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TerraClient:
    """Thin async wrapper over the aggregator REST API.

    Args:
        api_key:     Value sent as ``x-api-key``.
        dev_id:      Value sent as ``dev-id``.
        base_url:    API root, including the ``/v2`` prefix.
        timeout_s:   Upper bound for one call, enforced with ``asyncio.wait_for``.
        http_client: Optional shared httpx client (tests inject a mock).
    """

    def __init__(
        self,
        api_key: str,
        dev_id: str,
        base_url: str = DEFAULT_API_BASE,
        timeout_s: float = 15.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_key = api_key
        self._dev_id = dev_id
        self._base_url = base_url.rstrip("/")
        self._timeout_s = timeout_s
        self._http_client = http_client

    def _build_headers(self) -> dict[str, str]:
        return {
            "dev-id": self._dev_id,
            "x-api-key": self._api_key,
            "Accept": "application/json",
        }

    async def request_history(
        self,
        data_type: DataType | str,
        terra_user_id: str,
        start_date: date,
        end_date: date,
        to_webhook: bool = True,
    ) -> dict[str, Any]:
        """Ask the aggregator to redeliver ``data_type`` for a date range.

        With ``to_webhook`` the data arrives later through the webhook path;
        the immediate response only acknowledges the request.

        Raises:
            ProviderRequestError: On non-2xx status, network error or timeout.
        """
        data_type = DataType(data_type)
        params = {
            "user_id": terra_user_id,
            "start_date": start_date.isoformat(),
            "end_date": end_date.isoformat(),
            "to_webhook": "true" if to_webhook else "false",
        }
        return await self._get(f"/{data_type.value}", params)

    async def list_integrations(self) -> dict[str, Any]:
        """Return the aggregator's provider list. Used as a connectivity probe."""
        return await self._get("/integrations", {})

    async def _get(self, path: str, params: dict[str, str]) -> dict[str, Any]:
        url = f"{self._base_url}{path}"
        try:
            response = await asyncio.wait_for(
                self._send(url, params), timeout=self._timeout_s
            )
            response.raise_for_status()
        except asyncio.TimeoutError as exc:
            raise ProviderRequestError(
                f"GET {path} timed out after {self._timeout_s:.0f}s"
            ) from exc
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            raise ProviderRequestError(f"GET {path} returned HTTP {status}", status) from exc
        except httpx.HTTPError as exc:
            raise ProviderRequestError(f"GET {path} failed: {exc}") from exc

        try:
            return response.json()
        except ValueError:
            # historical requests may acknowledge with an empty body
            return {}

    async def _send(self, url: str, params: dict[str, str]) -> httpx.Response:
        headers = self._build_headers()
        if self._http_client:
            return await self._http_client.get(url, params=params, headers=headers)
        async with httpx.AsyncClient(timeout=self._timeout_s) as client:
            return await client.get(url, params=params, headers=headers)
