# backend/coinfolio/services/quotes.py
"""
Quote Refresh Service for held coins.

Prices are refreshed explicitly (scheduler or POST /holdings/quotes/refresh),
never as a side effect of reading holdings. Only coins the user holds whose
quote is missing or older than the staleness window are fetched.

Design Principles:
- Dependency Injection: remote client and clock via constructor
- Never writes holdings; only `coin_quotes`
- Empty upstream answer leaves stored quotes untouched

Usage:
    service = QuoteRefreshService(client=CoinGeckoClient())
    result = service.refresh_user_quotes(db, user_id)
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable

from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from coinfolio.models import CoinQuote, Holding
from coinfolio.services.catalog.base import MarketQuote, RemoteCatalogClient
from coinfolio.services.catalog.coingecko import CoinGeckoClient
from coinfolio.services.constants import (
    DEFAULT_QUOTE_REFRESH_LIMIT,
    DEFAULT_QUOTE_STALE_AFTER_MINUTES,
)
from coinfolio.services.exceptions import PersistenceError
from coinfolio.utils.sql import dialect_insert

logger = logging.getLogger(__name__)


@dataclass
class QuoteRefreshResult:
    """Outcome of one refresh call."""

    status: str  # "completed", "up_to_date", "empty_upstream"
    requested: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


class QuoteRefreshService:
    """Fetches and stores current prices for a user's stale holdings."""

    def __init__(
            self,
            client: RemoteCatalogClient | None = None,
            stale_after_minutes: int = DEFAULT_QUOTE_STALE_AFTER_MINUTES,
            refresh_limit: int = DEFAULT_QUOTE_REFRESH_LIMIT,
            clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._client = client or CoinGeckoClient()
        self._stale_after = timedelta(minutes=stale_after_minutes)
        self._limit = refresh_limit
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def stale_coin_ids(self, db: Session, user_id: str) -> list[str]:
        """Held coins whose quote is missing or older than the staleness window."""
        cutoff = self._clock() - self._stale_after
        stmt = (
            select(Holding.coin_id)
            .outerjoin(CoinQuote, CoinQuote.coin_id == Holding.coin_id)
            .where(
                Holding.user_id == user_id,
                or_(CoinQuote.coin_id.is_(None), CoinQuote.updated_at < cutoff),
            )
            .order_by(Holding.coin_id)
            .limit(self._limit)
        )
        return list(db.scalars(stmt))

    def refresh_user_quotes(self, db: Session, user_id: str) -> QuoteRefreshResult:
        """
        Refresh quotes for the user's stale holdings.

        Raises:
            RemoteUnavailableError / RateLimitError: Provider still failing after retries
            PersistenceError: Quotes could not be stored
        """
        coin_ids = self.stale_coin_ids(db, user_id)
        if not coin_ids:
            return QuoteRefreshResult(status="up_to_date")

        result = QuoteRefreshResult(status="completed", requested=coin_ids)
        quotes = self._client.fetch_market_quotes_with_retry(coin_ids)

        if not quotes:
            logger.warning(f"No quotes returned for {len(coin_ids)} coins, keeping cached values")
            result.status = "empty_upstream"
            result.missing = coin_ids
            result.warnings.append("Provider returned no quotes; cached values kept")
            return result

        wanted = set(coin_ids)
        quotes = [quote for quote in quotes if quote.id in wanted]

        try:
            self._store_quotes(db, quotes)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise PersistenceError("store quotes", str(e)) from e

        result.updated = sorted(quote.id for quote in quotes)
        result.missing = sorted(wanted - set(result.updated))
        if result.missing:
            result.warnings.append(f"No quote for: {result.missing}")

        logger.info(
            f"Refreshed {len(result.updated)}/{len(coin_ids)} quotes for user {user_id}"
        )
        return result

    def _store_quotes(self, db: Session, quotes: list[MarketQuote]) -> None:
        if not quotes:
            return

        now = self._clock()
        rows = [
            {
                "coin_id": quote.id,
                "current_price": quote.current_price,
                "price_change_percentage_7d": quote.price_change_percentage_7d,
                "updated_at": now,
            }
            for quote in {q.id: q for q in quotes}.values()
        ]

        insert_fn = dialect_insert(db)
        if insert_fn is None:
            for row in rows:
                db.merge(CoinQuote(**row))
            return

        stmt = insert_fn(CoinQuote).values(rows)
        stmt = stmt.on_conflict_do_update(
            index_elements=["coin_id"],
            set_={
                "current_price": stmt.excluded.current_price,
                "price_change_percentage_7d": stmt.excluded.price_change_percentage_7d,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        db.execute(stmt)
