# backend/coinfolio/services/catalog/coingecko.py
"""
CoinGecko implementation of RemoteCatalogClient.

Endpoints consumed:
- GET /coins/list                       identity listing (id, symbol, name)
- GET /coins/markets?page=&per_page=    market pages carrying image URLs
- GET /coins/markets?ids=               current prices for held coins

Only the fields listed above are read; everything else in the payload is
ignored. The API key, when configured, is sent as `x-cg-demo-api-key`.

Error mapping:
- 429                      -> RateLimitError carrying Retry-After, which the retry wait honours
- 5xx, timeouts, transport -> RemoteUnavailableError
- other 4xx                -> RemoteUnavailableError (logged at ERROR)
- non-JSON body            -> RemoteUnavailableError
"""

import logging
from typing import Any

import httpx

from coinfolio.services.catalog.base import (
    CatalogRecord,
    MarketQuote,
    RemoteCatalogClient,
    parse_catalog_records,
    parse_market_quotes,
)
from coinfolio.services.exceptions import RemoteUnavailableError, RateLimitError

logger = logging.getLogger(__name__)

API_KEY_HEADER = "x-cg-demo-api-key"
VS_CURRENCY = "usd"


class CoinGeckoClient(RemoteCatalogClient):
    """
    Synchronous CoinGecko client built on httpx.

    Example:
        client = CoinGeckoClient(api_key="CG-...")
        records = client.fetch_image_page(page=1, page_size=250)
    """

    def __init__(
            self,
            base_url: str = "https://api.coingecko.com/api/v3",
            api_key: str | None = None,
            timeout_seconds: float = 30.0,
            transport: httpx.BaseTransport | None = None,
    ) -> None:
        """
        Args:
            base_url: API root, without trailing slash
            api_key: Optional CoinGecko API key
            timeout_seconds: Per-request timeout
            transport: Custom httpx transport (tests use httpx.MockTransport)
        """
        headers = {"Accept": "application/json"}
        if api_key:
            headers[API_KEY_HEADER] = api_key

        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=httpx.Timeout(timeout_seconds),
            transport=transport,
        )

    @property
    def name(self) -> str:
        return "coingecko"

    def close(self) -> None:
        self._client.close()

    # =========================================================================
    # CONTRACT
    # =========================================================================

    def fetch_identity_list(self) -> list[CatalogRecord]:
        payload = self._get_json("/coins/list")
        records = parse_catalog_records(payload)
        logger.debug(f"Fetched {len(records)} catalog identities from {self.name}")
        return records

    def fetch_image_page(self, page: int, page_size: int) -> list[CatalogRecord]:
        payload = self._get_json(
            "/coins/markets",
            params={
                "vs_currency": VS_CURRENCY,
                "page": page,
                "per_page": page_size,
            },
        )
        if not isinstance(payload, list):
            logger.warning(f"Page {page} returned a non-list body, treating as empty")
        return parse_catalog_records(payload, with_image=True)

    def fetch_market_quotes(self, coin_ids: list[str]) -> list[MarketQuote]:
        if not coin_ids:
            return []
        payload = self._get_json(
            "/coins/markets",
            params={
                "vs_currency": VS_CURRENCY,
                "ids": ",".join(coin_ids),
                "per_page": len(coin_ids),
                "price_change_percentage": "7d",
            },
        )
        return parse_market_quotes(payload)

    # =========================================================================
    # HTTP
    # =========================================================================

    def _get_json(self, path: str, params: dict[str, Any] | None = None) -> Any:
        try:
            response = self._client.get(path, params=params)
        except httpx.TimeoutException as e:
            raise RemoteUnavailableError(self.name, f"timeout calling {path}: {e}") from e
        except httpx.RequestError as e:
            raise RemoteUnavailableError(self.name, f"network error calling {path}: {e}") from e

        if response.status_code == 429:
            raise RateLimitError(self.name, retry_after=self._retry_after(response))

        if response.status_code >= 500:
            raise RemoteUnavailableError(
                self.name, f"{path} returned HTTP {response.status_code}"
            )

        if response.status_code >= 400:
            logger.error(
                f"{self.name} rejected {path} with HTTP {response.status_code}: "
                f"{response.text[:200]}"
            )
            raise RemoteUnavailableError(
                self.name, f"{path} returned HTTP {response.status_code}"
            )

        try:
            return response.json()
        except ValueError as e:
            raise RemoteUnavailableError(self.name, f"invalid JSON from {path}: {e}") from e

    @staticmethod
    def _retry_after(response: httpx.Response) -> int | None:
        value = response.headers.get("Retry-After")
        if value and value.isdigit():
            return int(value)
        return None
