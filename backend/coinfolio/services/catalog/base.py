# backend/coinfolio/services/catalog/base.py
"""
Abstract interface for remote coin catalog providers.

The sync engine and the quote refresh depend on this contract only, which
keeps CoinGecko specifics in one module and lets tests plug in an
in-memory client.

Contract:
- Transport and HTTP failures raise RemoteUnavailableError or RateLimitError
- An empty or non-list body is "no data yet" and returns [], never an error
- Records missing an id are dropped during parsing

Design Principles:
- Dependency Inversion: services take a RemoteCatalogClient, not httpx
- Immutable DTOs: frozen dataclasses, safe to buffer across pages
- DRY: retry policy for single calls lives in the base class
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, TypeVar

from tenacity import (
    RetryCallState,
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log,
)
from tenacity.wait import wait_base

from coinfolio.services.exceptions import RemoteUnavailableError, RateLimitError

logger = logging.getLogger(__name__)

T = TypeVar('T')


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass(frozen=True)
class CatalogRecord:
    """
    One coin as listed by the remote catalog.

    `image` is only present in market pages; the identity listing leaves it None.
    """

    id: str
    symbol: str
    name: str
    image: str | None = None

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("id is required")


@dataclass(frozen=True)
class MarketQuote:
    """Current price snapshot for one coin."""

    id: str
    current_price: Decimal | None
    price_change_percentage_7d: Decimal | None = None


# =============================================================================
# PARSING HELPERS
# =============================================================================

def _to_decimal(value: Any) -> Decimal | None:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def parse_catalog_records(payload: Any, *, with_image: bool = False) -> list[CatalogRecord]:
    """
    Convert a raw JSON body into CatalogRecords.

    Non-list payloads (error objects, null) yield an empty list.
    """
    if not isinstance(payload, list):
        return []

    records = []
    for item in payload:
        if not isinstance(item, dict) or not item.get("id"):
            continue
        records.append(CatalogRecord(
            id=str(item["id"]),
            symbol=str(item.get("symbol") or ""),
            name=str(item.get("name") or item["id"]),
            image=item.get("image") if with_image else None,
        ))
    return records


def parse_market_quotes(payload: Any) -> list[MarketQuote]:
    """Convert a /coins/markets body into MarketQuotes."""
    if not isinstance(payload, list):
        return []

    return [
        MarketQuote(
            id=str(item["id"]),
            current_price=_to_decimal(item.get("current_price")),
            price_change_percentage_7d=_to_decimal(
                item.get("price_change_percentage_7d_in_currency")
            ),
        )
        for item in payload
        if isinstance(item, dict) and item.get("id")
    ]


# =============================================================================
# RETRY WAIT
# =============================================================================

class wait_retry_after(wait_base):
    """
    Tenacity wait that follows the provider's Retry-After.

    When the last attempt raised a RateLimitError carrying `retry_after`,
    wait that many seconds (capped at `max_wait`); otherwise defer to
    `fallback`.
    """

    def __init__(self, fallback: wait_base, max_wait: float | None = None) -> None:
        self.fallback = fallback
        self.max_wait = max_wait

    def __call__(self, retry_state: RetryCallState) -> float:
        outcome = retry_state.outcome
        error = outcome.exception() if outcome is not None and outcome.failed else None
        if isinstance(error, RateLimitError) and error.retry_after:
            wait = float(error.retry_after)
            return wait if self.max_wait is None else min(wait, self.max_wait)
        return self.fallback(retry_state)


# =============================================================================
# ABSTRACT BASE CLASS
# =============================================================================

class RemoteCatalogClient(ABC):
    """
    Abstract base class for remote coin catalog providers.

    Retry Behavior:
        `_execute_with_retry` retries RemoteUnavailableError and
        RateLimitError with exponential backoff, or after the provider's
        Retry-After (capped at RETRY_MAX_WAIT). It is meant for one-shot
        calls (identity listing, quote refresh). The paginated image sync
        applies its own linear per-page policy on top of plain calls.
    """

    MAX_RETRY_ATTEMPTS: int = 3
    RETRY_MIN_WAIT: int = 1
    RETRY_MAX_WAIT: int = 10
    RETRY_MULTIPLIER: int = 1

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider name used in logs and error messages."""
        pass

    @abstractmethod
    def fetch_identity_list(self) -> list[CatalogRecord]:
        """
        Fetch the full catalog listing (id, symbol, name).

        Raises:
            RemoteUnavailableError: Network or API error (retryable)
            RateLimitError: Rate limit exceeded (retryable)
        """
        pass

    @abstractmethod
    def fetch_image_page(self, page: int, page_size: int) -> list[CatalogRecord]:
        """
        Fetch one page of market data carrying image URLs.

        Args:
            page: 1-based page number
            page_size: Records per page

        Raises:
            RemoteUnavailableError: Network or API error (retryable)
            RateLimitError: Rate limit exceeded (retryable)
        """
        pass

    @abstractmethod
    def fetch_market_quotes(self, coin_ids: list[str]) -> list[MarketQuote]:
        """
        Fetch current prices for the given coin ids.

        Raises:
            RemoteUnavailableError: Network or API error (retryable)
            RateLimitError: Rate limit exceeded (retryable)
        """
        pass

    def _execute_with_retry(
            self,
            func: Callable[..., T],
            *args: Any,
            **kwargs: Any,
    ) -> T:
        """
        Execute a function with exponential backoff on transient failures.

        Raises:
            The last exception if all retries fail
        """

        @retry(
            stop=stop_after_attempt(self.MAX_RETRY_ATTEMPTS),
            wait=wait_retry_after(
                wait_exponential(
                    multiplier=self.RETRY_MULTIPLIER,
                    min=self.RETRY_MIN_WAIT,
                    max=self.RETRY_MAX_WAIT,
                ),
                max_wait=self.RETRY_MAX_WAIT,
            ),
            retry=retry_if_exception_type((RemoteUnavailableError, RateLimitError)),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        def _inner() -> T:
            return func(*args, **kwargs)

        return _inner()

    def fetch_identity_list_with_retry(self) -> list[CatalogRecord]:
        return self._execute_with_retry(self.fetch_identity_list)

    def fetch_market_quotes_with_retry(self, coin_ids: list[str]) -> list[MarketQuote]:
        return self._execute_with_retry(self.fetch_market_quotes, coin_ids)
