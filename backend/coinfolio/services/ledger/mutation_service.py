# backend/coinfolio/services/ledger/mutation_service.py
"""
Position Mutation Service: every write to holdings and transactions.

This service handles:
- Recording trades (holding created on the first one)
- Appending dated or placeholder transactions to an existing holding
- Bulk edits of a holding's transactions and its desired sell price
- Removing a transaction or a whole holding
- Read models for the holdings endpoints

Each operation is one unit of work: the balance checks, the row writes and a
full LedgerReconciler pass share one database transaction, and any failure
rolls all of it back. Operations on the same (user, coin) are serialized by
an in-process lock plus SELECT ... FOR UPDATE on the holding row.

Design Principles:
- Dependency Injection: store and reconciler via constructor
- No HTTP Knowledge: raises domain exceptions, not HTTPException
- Aggregates are only ever written by the reconciler

Usage:
    from coinfolio.services.ledger import PositionMutationService

    service = PositionMutationService()
    holding = service.record_trade(db, user_id, "bitcoin", Decimal("0.5"), Decimal("42000"))
"""

import logging
import threading
import weakref
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterator, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from coinfolio.models import Holding, Transaction, Wallet
from coinfolio.services.constants import DEFAULT_LEDGER_TIMEOUT_SECONDS
from coinfolio.services.exceptions import (
    HoldingNotFoundError,
    InsufficientBalanceError,
    InvalidQuantityError,
    PersistenceError,
    ServiceError,
    TransactionNotFoundError,
    ValidationError,
)
from coinfolio.services.ledger.reconciler import LedgerReconciler
from coinfolio.services.ledger.store import LedgerStore
from coinfolio.services.ledger.summary import (
    PortfolioSummary,
    SummaryLine,
    compute_portfolio_summary,
)
from coinfolio.utils.sql import apply_statement_timeout

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


class _Unset:
    def __repr__(self) -> str:
        return "UNSET"


# Distinguishes "leave desired_sell_price alone" from "clear it" (None)
UNSET = _Unset()


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass(frozen=True)
class TransactionEdit:
    """
    New values for one existing transaction.

    Fields left as None keep their stored value.
    """

    transaction_id: int
    quantity: Decimal | None = None
    price: Decimal | None = None
    date: datetime | None = None
    wallet: Wallet | None = None


@dataclass
class HoldingDetail:
    """A holding with its transactions in replay order."""

    holding: Holding
    transactions: list[Transaction]


@dataclass
class PortfolioView:
    """All holdings of a user plus the portfolio totals."""

    holdings: list[Holding]
    summary: PortfolioSummary


# =============================================================================
# KEYED LOCKS
# =============================================================================

class _KeyLock:
    # threading.Lock does not support weak references
    __slots__ = ("lock", "__weakref__")

    def __init__(self) -> None:
        self.lock = threading.Lock()


class KeyedLocks:
    """
    One lock per key, created on demand and dropped when no caller holds it.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: "weakref.WeakValueDictionary[tuple, _KeyLock]" = weakref.WeakValueDictionary()

    @contextmanager
    def hold(self, key: tuple) -> Iterator[None]:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = _KeyLock()
                self._locks[key] = entry
        with entry.lock:
            yield


# =============================================================================
# SERVICE
# =============================================================================

class PositionMutationService:
    """
    Atomic ledger mutations for one user at a time.

    Attributes:
        _store: Holding/transaction persistence helper
        _reconciler: Recomputes holding aggregates
        _timeout: Statement timeout applied to each unit of work
    """

    def __init__(
            self,
            store: LedgerStore | None = None,
            reconciler: LedgerReconciler | None = None,
            statement_timeout_seconds: int = DEFAULT_LEDGER_TIMEOUT_SECONDS,
            locks: KeyedLocks | None = None,
    ) -> None:
        self._store = store or LedgerStore()
        self._reconciler = reconciler or LedgerReconciler()
        self._timeout = statement_timeout_seconds
        self._locks = locks or KeyedLocks()

    @contextmanager
    def _unit_of_work(self, db: Session, user_id: str, coin_id: str, operation: str) -> Iterator[None]:
        """
        Serialize on (user, coin), run the body, commit or roll back.

        SQLAlchemy failures become PersistenceError; domain errors pass
        through unchanged after the rollback.
        """
        with self._locks.hold((user_id, coin_id)):
            try:
                apply_statement_timeout(db, self._timeout)
                yield
                db.commit()
            except ServiceError:
                db.rollback()
                raise
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"{operation} failed for user {user_id}, coin {coin_id}: {e}")
                raise PersistenceError(operation, str(e)) from e
            except Exception:
                db.rollback()
                raise

    # =========================================================================
    # MUTATIONS
    # =========================================================================

    def record_trade(
            self,
            db: Session,
            user_id: str,
            coin_id: str,
            quantity: Decimal,
            price: Decimal,
            wallet: Wallet = Wallet.OTHER,
            date: datetime | None = None,
    ) -> Holding:
        """
        Record a buy (positive quantity) or sell (negative quantity).

        The holding is created on the first trade. A sell is checked against
        the quantity held before the trade, then the whole ledger is
        replayed.

        Raises:
            InvalidQuantityError: quantity is zero
            ValidationError: price is negative
            CoinNotFoundError: coin_id is not in the catalog
            InsufficientBalanceError: sell exceeds the quantity held
            PersistenceError: The database rejected the write
        """
        quantity = Decimal(quantity)
        price = Decimal(price)
        if quantity == ZERO:
            raise InvalidQuantityError(quantity)
        self._validate_price(price)

        with self._unit_of_work(db, user_id, coin_id, "record trade"):
            self._store.require_coin(db, coin_id)
            holding = self._store.get_or_create_holding(db, user_id, coin_id)

            if quantity < ZERO and -quantity > holding.total_quantity:
                raise InsufficientBalanceError(
                    coin_id=coin_id,
                    requested=-quantity,
                    available=holding.total_quantity,
                )

            self._store.add_transaction(
                db, holding,
                quantity=quantity,
                price=price,
                date=date or datetime.now(timezone.utc),
                wallet=wallet,
            )
            self._reconciler.reconcile(db, holding)

        logger.info(
            f"Recorded {'buy' if quantity > 0 else 'sell'} of {abs(quantity)} {coin_id} "
            f"@ {price} for user {user_id}"
        )
        return holding

    def add_transaction(
            self,
            db: Session,
            user_id: str,
            coin_id: str,
            quantity: Decimal,
            price: Decimal,
            date: datetime,
            wallet: Wallet = Wallet.OTHER,
    ) -> Holding:
        """
        Append a dated transaction to an existing holding.

        A back-dated sell is accepted only if the replay stays non-negative
        at every point.
        """
        quantity = Decimal(quantity)
        price = Decimal(price)
        if quantity == ZERO:
            raise InvalidQuantityError(quantity)
        self._validate_price(price)

        with self._unit_of_work(db, user_id, coin_id, "add transaction"):
            holding = self._require_holding(db, user_id, coin_id)
            self._store.add_transaction(
                db, holding,
                quantity=quantity,
                price=price,
                date=date,
                wallet=wallet,
            )
            self._reconciler.reconcile(db, holding)

        logger.info(f"Added transaction of {quantity} {coin_id} to holding {holding.id}")
        return holding

    def add_empty_transaction(self, db: Session, user_id: str, coin_id: str) -> Holding:
        """Append a zero placeholder row (dated now, wallet OTHER) for later editing."""
        with self._unit_of_work(db, user_id, coin_id, "add transaction"):
            holding = self._require_holding(db, user_id, coin_id)
            self._store.add_transaction(
                db, holding,
                quantity=ZERO,
                price=ZERO,
                date=datetime.now(timezone.utc),
                wallet=Wallet.OTHER,
            )
            self._reconciler.reconcile(db, holding)

        logger.info(f"Added placeholder transaction to holding {holding.id}")
        return holding

    def replace_transactions(
            self,
            db: Session,
            user_id: str,
            coin_id: str,
            edits: Sequence[TransactionEdit],
            desired_sell_price=UNSET,
    ) -> Holding:
        """
        Apply a batch of edits to a holding's transactions, then reconcile once.

        Args:
            edits: Per-transaction new values; every id must belong to the holding
            desired_sell_price: New target price, None to clear, UNSET to keep

        Raises:
            HoldingNotFoundError: The user holds no position in coin_id
            TransactionNotFoundError: An edit targets a transaction of another holding
            ValidationError: A negative price or desired sell price
            InsufficientBalanceError: The edited ledger goes negative at some point
        """
        for edit in edits:
            if edit.price is not None:
                self._validate_price(Decimal(edit.price))
        if desired_sell_price is not UNSET and desired_sell_price is not None:
            desired_sell_price = Decimal(desired_sell_price)
            self._validate_price(desired_sell_price, field="desired_sell_price")

        with self._unit_of_work(db, user_id, coin_id, "update transactions"):
            holding = self._require_holding(db, user_id, coin_id)

            by_id = self._store.get_transactions_by_id(
                db, holding.id, [edit.transaction_id for edit in edits]
            )
            for edit in edits:
                transaction = by_id.get(edit.transaction_id)
                if transaction is None:
                    raise TransactionNotFoundError(edit.transaction_id)
                if edit.quantity is not None:
                    transaction.quantity = Decimal(edit.quantity)
                if edit.price is not None:
                    transaction.price = Decimal(edit.price)
                if edit.date is not None:
                    transaction.date = edit.date
                if edit.wallet is not None:
                    transaction.wallet = edit.wallet

            if desired_sell_price is not UNSET:
                holding.desired_sell_price = desired_sell_price

            self._reconciler.reconcile(db, holding)

        logger.info(
            f"Updated {len(edits)} transactions of holding {holding.id} ({coin_id}) "
            f"for user {user_id}"
        )
        return holding

    def set_desired_sell_price(
            self,
            db: Session,
            user_id: str,
            coin_id: str,
            price: Decimal | None,
    ) -> Holding:
        return self.replace_transactions(db, user_id, coin_id, [], desired_sell_price=price)

    def remove_transaction(self, db: Session, user_id: str, transaction_id: int) -> Holding:
        """
        Delete one transaction and reconcile its holding.

        Removing a buy that a later sell depends on is rejected by the replay.

        Raises:
            TransactionNotFoundError: Unknown id or owned by another user
            InsufficientBalanceError: The remaining ledger goes negative
        """
        transaction = self._store.get_transaction_for_user(db, user_id, transaction_id)
        if transaction is None:
            raise TransactionNotFoundError(transaction_id)
        coin_id = transaction.holding.coin_id

        with self._unit_of_work(db, user_id, coin_id, "delete transaction"):
            holding = self._require_holding(db, user_id, coin_id)
            transaction = self._store.get_transaction_for_user(db, user_id, transaction_id)
            if transaction is None or transaction.holding_id != holding.id:
                raise TransactionNotFoundError(transaction_id)

            db.delete(transaction)
            self._reconciler.reconcile(db, holding)

        logger.info(f"Deleted transaction {transaction_id} from holding {holding.id}")
        return holding

    def remove_holding(self, db: Session, user_id: str, coin_id: str) -> None:
        """
        Delete a holding together with all of its transactions.

        Raises:
            HoldingNotFoundError: The user holds no position in coin_id
        """
        with self._unit_of_work(db, user_id, coin_id, "delete holding"):
            holding = self._require_holding(db, user_id, coin_id)
            holding_id = holding.id
            db.delete(holding)

        logger.info(f"Deleted holding {holding_id} ({coin_id}) for user {user_id}")

    # =========================================================================
    # READS
    # =========================================================================

    def get_holding(self, db: Session, user_id: str, coin_id: str) -> HoldingDetail:
        holding = self._store.get_holding(db, user_id, coin_id)
        if holding is None:
            raise HoldingNotFoundError(user_id, coin_id)
        return HoldingDetail(
            holding=holding,
            transactions=self._store.list_transactions(db, holding.id),
        )

    def list_holdings(self, db: Session, user_id: str) -> PortfolioView:
        """All holdings with cached quotes and portfolio totals. Never calls the network."""
        holdings = self._store.list_holdings(db, user_id)
        lines = []
        for holding in holdings:
            quote = holding.coin.quote if holding.coin is not None else None
            lines.append(SummaryLine(
                total_quantity=holding.total_quantity,
                total_cost=holding.total_cost,
                current_price=quote.current_price if quote is not None else None,
                desired_sell_price=holding.desired_sell_price,
            ))
        return PortfolioView(holdings=holdings, summary=compute_portfolio_summary(lines))

    def list_transactions(self, db: Session, user_id: str) -> list[Transaction]:
        return self._store.list_user_transactions(db, user_id)

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _require_holding(self, db: Session, user_id: str, coin_id: str) -> Holding:
        holding = self._store.get_holding(db, user_id, coin_id, for_update=True)
        if holding is None:
            raise HoldingNotFoundError(user_id, coin_id)
        return holding

    @staticmethod
    def _validate_price(price: Decimal, field: str = "price") -> None:
        if price < ZERO:
            raise ValidationError(f"{field} cannot be negative, got {price}", field=field)
