"""
Square REST API client
Thin wrapper over the Square v2 endpoints the storefront uses.
Every call has a bounded timeout; non-2xx responses raise ProviderError.
"""

import logging
from typing import Any, Optional

import httpx

from ..config import Settings
from ..errors import ProviderError

logger = logging.getLogger(__name__)


class SquareClient:
    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self.oauth_url = settings.square_oauth_base_url
        self.api_url = settings.square_api_url
        self.timeout = settings.square_http_timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    def _headers(self, access_token: Optional[str] = None) -> dict[str, str]:
        headers = {
            "Square-Version": self.settings.square_api_version,
            "Content-Type": "application/json",
        }
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        return headers

    async def _send(
        self,
        method: str,
        url: str,
        access_token: Optional[str] = None,
        json: Optional[dict[str, Any]] = None,
        params: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        try:
            async with self._client() as http_client:
                response = await http_client.request(
                    method, url, json=json, params=params, headers=self._headers(access_token)
                )
        except httpx.TimeoutException as e:
            logger.error(f"❌ Square {method} {url} timed out after {self.timeout}s")
            raise ProviderError(f"Square request timed out: {method} {url}") from e
        except httpx.HTTPError as e:
            logger.error(f"❌ Square {method} {url} transport error: {e}")
            raise ProviderError(f"Square request failed: {method} {url}") from e

        if response.status_code < 200 or response.status_code >= 300:
            logger.error(f"❌ Square {method} {url} failed ({response.status_code}): {response.text[:500]}")
            raise ProviderError(_error_detail(response), status=response.status_code)

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            logger.error(f"❌ Square {method} {url} returned a non-JSON body ({response.status_code})")
            raise ProviderError("Square returned an unreadable response", status=response.status_code) from e

    # OAuth

    async def request_token(self, body: dict[str, str]) -> dict[str, Any]:
        """POST /oauth2/token for both authorization_code and refresh_token grants"""
        return await self._send("POST", f"{self.oauth_url}/oauth2/token", json=body)

    # Locations

    async def list_locations(self, access_token: str) -> list[dict[str, Any]]:
        data = await self._send("GET", f"{self.api_url}/locations", access_token)
        return data.get("locations", [])

    # Catalog

    async def list_catalog(self, access_token: str, types: str = "ITEM,IMAGE") -> list[dict[str, Any]]:
        """List every catalog object of the given types, following cursors"""
        objects: list[dict[str, Any]] = []
        cursor: Optional[str] = None
        while True:
            params = {"types": types}
            if cursor:
                params["cursor"] = cursor
            data = await self._send("GET", f"{self.api_url}/catalog/list", access_token, params=params)
            objects.extend(data.get("objects", []))
            cursor = data.get("cursor")
            if not cursor:
                return objects

    # Orders & payments

    async def create_order(self, access_token: str, body: dict[str, Any]) -> dict[str, Any]:
        data = await self._send("POST", f"{self.api_url}/orders", access_token, json=body)
        return data.get("order", {})

    async def create_payment(self, access_token: str, body: dict[str, Any]) -> dict[str, Any]:
        data = await self._send("POST", f"{self.api_url}/payments", access_token, json=body)
        return data.get("payment", {})

    # Customers & bookings

    async def create_customer(self, access_token: str, body: dict[str, Any]) -> dict[str, Any]:
        data = await self._send("POST", f"{self.api_url}/customers", access_token, json=body)
        return data.get("customer", {})

    async def create_booking(self, access_token: str, body: dict[str, Any]) -> dict[str, Any]:
        data = await self._send("POST", f"{self.api_url}/bookings", access_token, json=body)
        return data.get("booking", {})

    async def search_availability(self, access_token: str, body: dict[str, Any]) -> list[dict[str, Any]]:
        data = await self._send(
            "POST", f"{self.api_url}/bookings/availability/search", access_token, json=body
        )
        return data.get("availabilities", [])


def _error_detail(response: httpx.Response) -> str:
    try:
        errors = response.json().get("errors") or []
    except ValueError:
        return response.text[:500] or "Square request failed"
    if errors:
        return "; ".join(
            f"{e.get('category', 'ERROR')}/{e.get('code', 'UNKNOWN')}: {e.get('detail', '')}".strip()
            for e in errors
        )
    return "Square request failed"
