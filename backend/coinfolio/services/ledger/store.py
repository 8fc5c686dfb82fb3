# backend/coinfolio/services/ledger/store.py
"""
Persistence helpers for holdings and their transactions.

Like the catalog store, nothing here commits: PositionMutationService owns
the unit of work.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session, joinedload, contains_eager

from coinfolio.models import CatalogEntry, Holding, Transaction
from coinfolio.services.exceptions import CoinNotFoundError
from coinfolio.utils.sql import dialect_insert

logger = logging.getLogger(__name__)


class LedgerStore:
    """Read/write access to `holdings` and `holding_transactions`."""

    def require_coin(self, db: Session, coin_id: str) -> CatalogEntry:
        coin = db.get(CatalogEntry, coin_id)
        if coin is None:
            raise CoinNotFoundError(coin_id)
        return coin

    # =========================================================================
    # HOLDINGS
    # =========================================================================

    def get_holding(
            self,
            db: Session,
            user_id: str,
            coin_id: str,
            for_update: bool = False,
    ) -> Holding | None:
        """
        Fetch the user's holding of a coin.

        With for_update=True the row is locked until the transaction ends
        (PostgreSQL; SQLite renders no FOR UPDATE) and the identity map is
        refreshed from the locked row.
        """
        stmt = select(Holding).where(Holding.user_id == user_id, Holding.coin_id == coin_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        return db.scalar(stmt)

    def get_or_create_holding(self, db: Session, user_id: str, coin_id: str) -> Holding:
        """
        Return the locked holding, inserting an empty one on first write.

        INSERT ... ON CONFLICT DO NOTHING makes two first trades on the same
        coin converge on one row instead of failing on uq_holding_user_coin.
        """
        insert_fn = dialect_insert(db)

        if insert_fn is None:
            holding = self.get_holding(db, user_id, coin_id, for_update=True)
            if holding is None:
                holding = Holding(user_id=user_id, coin_id=coin_id)
                db.add(holding)
                db.flush()
            return holding

        now = datetime.now(timezone.utc)
        db.execute(
            insert_fn(Holding)
            .values(
                user_id=user_id,
                coin_id=coin_id,
                total_quantity=Decimal(0),
                total_cost=Decimal(0),
                average_price=Decimal(0),
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=["user_id", "coin_id"])
        )
        return self.get_holding(db, user_id, coin_id, for_update=True)

    def list_holdings(self, db: Session, user_id: str) -> list[Holding]:
        """All holdings of a user with coin and quote loaded, ordered by coin id."""
        stmt = (
            select(Holding)
            .options(joinedload(Holding.coin).joinedload(CatalogEntry.quote))
            .where(Holding.user_id == user_id)
            .order_by(Holding.coin_id)
        )
        return list(db.scalars(stmt).unique())

    # =========================================================================
    # TRANSACTIONS
    # =========================================================================

    def add_transaction(self, db: Session, holding: Holding, **fields) -> Transaction:
        transaction = Transaction(holding_id=holding.id, **fields)
        db.add(transaction)
        return transaction

    def list_transactions(self, db: Session, holding_id: int) -> list[Transaction]:
        """Transactions of one holding in replay order (date, id)."""
        return list(db.scalars(
            select(Transaction)
            .where(Transaction.holding_id == holding_id)
            .order_by(Transaction.date, Transaction.id)
        ))

    def get_transactions_by_id(
            self,
            db: Session,
            holding_id: int,
            transaction_ids: list[int],
    ) -> dict[int, Transaction]:
        if not transaction_ids:
            return {}
        rows = db.scalars(
            select(Transaction).where(
                Transaction.holding_id == holding_id,
                Transaction.id.in_(transaction_ids),
            )
        )
        return {row.id: row for row in rows}

    def get_transaction_for_user(
            self,
            db: Session,
            user_id: str,
            transaction_id: int,
    ) -> Transaction | None:
        """Fetch a transaction only if its holding belongs to the user."""
        stmt = (
            select(Transaction)
            .join(Transaction.holding)
            .options(contains_eager(Transaction.holding))
            .where(Transaction.id == transaction_id, Holding.user_id == user_id)
        )
        return db.scalar(stmt)

    def list_user_transactions(self, db: Session, user_id: str) -> list[Transaction]:
        """Every transaction of a user across holdings, newest first."""
        stmt = (
            select(Transaction)
            .join(Transaction.holding)
            .options(contains_eager(Transaction.holding))
            .where(Holding.user_id == user_id)
            .order_by(Transaction.date.desc(), Transaction.id.desc())
        )
        return list(db.scalars(stmt))
