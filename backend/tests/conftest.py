# backend/tests/conftest.py
"""
Pytest configuration and fixtures.

This module provides shared fixtures for all tests:
- Database session fixtures (in-memory SQLite)
- Mock remote catalog client
- Sample data factories
"""

import os

# Settings are read at import time; must run before any coinfolio import
os.environ.setdefault("ENVIRONMENT", "test")

from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from coinfolio.middleware.rate_limit import limiter
from coinfolio.models import (
    Base,
    CatalogEntry,
    CoinQuote,
    Holding,
    Transaction,
    Wallet,
)
from coinfolio.services.catalog.base import CatalogRecord, MarketQuote, RemoteCatalogClient
from coinfolio.services.exceptions import RemoteUnavailableError


# =============================================================================
# DATABASE FIXTURES
# =============================================================================

@pytest.fixture(scope="function")
def db_engine():
    """Create an in-memory SQLite database engine for testing."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)


@pytest.fixture(scope="function")
def db(db_engine) -> Iterator[Session]:
    """Create a database session for testing."""
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


# =============================================================================
# APP STATE
# =============================================================================

@pytest.fixture(autouse=True)
def rate_limits_off():
    """
    The limiter is process-wide; without this, API tests would exhaust
    each other's budget. Tests of the limiter itself turn it back on.
    """
    limiter.enabled = False
    limiter.reset()
    yield
    limiter.enabled = True


# =============================================================================
# MOCK REMOTE CATALOG CLIENT
# =============================================================================

class MockCatalogClient(RemoteCatalogClient):
    """
    In-memory RemoteCatalogClient for testing.

    Serves a configurable identity listing; market pages are slices of it
    with an image URL per coin. Pages and the listing can be made to fail.
    """

    # No backoff between retries in tests
    RETRY_MIN_WAIT = 0
    RETRY_MAX_WAIT = 0

    def __init__(self, identities: list[CatalogRecord] | None = None):
        self._identities: list[CatalogRecord] = list(identities or [])
        self._quotes: dict[str, MarketQuote] = {}
        self._listing_error: Exception | None = None
        self._page_failures: dict[int, int] = {}
        self._page_errors: dict[int, Exception] = {}
        self.page_calls: list[int] = []
        self.listing_calls = 0
        self.quote_calls: list[list[str]] = []

    @property
    def name(self) -> str:
        return "mock"

    def set_identities(self, identities: list[CatalogRecord]) -> None:
        self._identities = list(identities)

    def set_listing_error(self, error: Exception | None) -> None:
        """Make every identity listing call raise `error`."""
        self._listing_error = error

    def fail_page(self, page: int, times: int = 1_000) -> None:
        """Make `page` fail the next `times` fetches (default: always)."""
        self._page_failures[page] = times

    def raise_on_page(self, page: int, error: Exception) -> None:
        """Make `page` raise `error` (not retried unless it is a CatalogError)."""
        self._page_errors[page] = error

    def set_quote(self, coin_id: str, price: str | None, change_7d: str | None = None) -> None:
        self._quotes[coin_id] = MarketQuote(
            id=coin_id,
            current_price=Decimal(price) if price is not None else None,
            price_change_percentage_7d=Decimal(change_7d) if change_7d is not None else None,
        )

    def fetch_identity_list(self) -> list[CatalogRecord]:
        self.listing_calls += 1
        if self._listing_error is not None:
            raise self._listing_error
        return list(self._identities)

    def fetch_image_page(self, page: int, page_size: int) -> list[CatalogRecord]:
        self.page_calls.append(page)
        if page in self._page_errors:
            raise self._page_errors[page]
        remaining = self._page_failures.get(page, 0)
        if remaining > 0:
            self._page_failures[page] = remaining - 1
            raise RemoteUnavailableError(self.name, f"page {page} unavailable")

        start = (page - 1) * page_size
        return [
            CatalogRecord(
                id=record.id,
                symbol=record.symbol,
                name=record.name,
                image=f"https://img.example/{record.id}.png",
            )
            for record in self._identities[start:start + page_size]
        ]

    def fetch_market_quotes(self, coin_ids: list[str]) -> list[MarketQuote]:
        self.quote_calls.append(list(coin_ids))
        return [self._quotes[coin_id] for coin_id in coin_ids if coin_id in self._quotes]


@pytest.fixture
def mock_client() -> MockCatalogClient:
    """Create a fresh mock client for each test."""
    return MockCatalogClient()


def no_sleep(seconds: float) -> None:
    """Sleep replacement so retry and pacing delays do not slow tests."""
    pass


# =============================================================================
# SAMPLE DATA FACTORIES
# =============================================================================

def make_records(count: int, prefix: str = "coin") -> list[CatalogRecord]:
    """Factory for identity listings: coin-0001, coin-0002, ..."""
    return [
        CatalogRecord(id=f"{prefix}-{i:04d}", symbol=f"c{i}", name=f"Coin {i}")
        for i in range(1, count + 1)
    ]


def create_coin(
        db: Session,
        coin_id: str = "bitcoin",
        symbol: str = "btc",
        name: str = "Bitcoin",
        image: str | None = None,
) -> CatalogEntry:
    """Factory function for creating CatalogEntry rows in the database."""
    coin = CatalogEntry(id=coin_id, symbol=symbol, name=name, image=image)
    db.add(coin)
    db.commit()
    db.refresh(coin)
    return coin


def create_quote(
        db: Session,
        coin_id: str,
        price: str | None,
        updated_at: datetime | None = None,
) -> CoinQuote:
    quote = CoinQuote(
        coin_id=coin_id,
        current_price=Decimal(price) if price is not None else None,
        updated_at=updated_at or datetime.now(timezone.utc),
    )
    db.add(quote)
    db.commit()
    return quote


def create_holding(
        db: Session,
        user_id: str = "user-1",
        coin_id: str = "bitcoin",
        desired_sell_price: Decimal | None = None,
) -> Holding:
    """
    Factory for an empty Holding row.

    Aggregates start at zero; use the mutation service or the reconciler to
    derive them from transactions.
    """
    holding = Holding(
        user_id=user_id,
        coin_id=coin_id,
        total_quantity=Decimal("0"),
        total_cost=Decimal("0"),
        average_price=Decimal("0"),
        desired_sell_price=desired_sell_price,
    )
    db.add(holding)
    db.commit()
    db.refresh(holding)
    return holding


def create_transaction(
        db: Session,
        holding: Holding,
        quantity: str,
        price: str,
        date: datetime,
        wallet: Wallet = Wallet.OTHER,
) -> Transaction:
    """Factory for a raw Transaction row (no reconciliation)."""
    transaction = Transaction(
        holding_id=holding.id,
        quantity=Decimal(quantity),
        price=Decimal(price),
        date=date,
        wallet=wallet,
    )
    db.add(transaction)
    db.commit()
    db.refresh(transaction)
    return transaction


@pytest.fixture
def bitcoin(db: Session) -> CatalogEntry:
    """Provide a catalog entry for bitcoin."""
    return create_coin(db)
