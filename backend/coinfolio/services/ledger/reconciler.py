# backend/coinfolio/services/ledger/reconciler.py
"""
Ledger reconciliation: holding aggregates recomputed from transactions.

The fold is a weighted-average cost basis:
- Acquisition (quantity >= 0): cost += quantity × price, held += quantity
- Disposal (quantity < 0): cost -= cost × sold / held, held -= sold

A disposal therefore leaves the average price of the remaining units
unchanged. Entries are replayed by date, ties broken by insertion order (id),
and every prefix must keep the held quantity non-negative.

Design Principles:
- compute_position is pure: same entries in, same Decimals out
- LedgerReconciler only reads the holding's rows and writes its aggregates
- Uses Decimal for ALL ledger values, quantized to the column scale

Usage:
    reconciler = LedgerReconciler()
    totals = reconciler.reconcile(db, holding)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, localcontext
from typing import Iterable, Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from coinfolio.models import Holding, Transaction
from coinfolio.services.constants import LEDGER_QUANTUM
from coinfolio.services.exceptions import InsufficientBalanceError

logger = logging.getLogger(__name__)

ZERO = Decimal("0")

# Intermediate precision for the fold; results are quantized afterwards
_FOLD_PRECISION = 60


class LedgerEntry(Protocol):
    """Anything with the fields the fold reads (ORM Transaction or a test double)."""

    id: int | None
    quantity: Decimal
    price: Decimal
    date: datetime


@dataclass(frozen=True)
class PositionTotals:
    """Aggregate position produced by the fold."""

    total_quantity: Decimal
    total_cost: Decimal
    average_price: Decimal

    @property
    def is_empty(self) -> bool:
        return self.total_quantity == ZERO


def replay_key(entry: LedgerEntry) -> tuple[datetime, int]:
    """
    Sort key for replay: (date, id).

    Naive datetimes are read as UTC; SQLite drops the offset on the way back.
    Unsaved entries (id None) sort after saved ones on the same date.
    """
    when = entry.date
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return when, entry.id if entry.id is not None else 2**63


def _quantize(value: Decimal) -> Decimal:
    return value.quantize(LEDGER_QUANTUM)


def compute_position(entries: Iterable[LedgerEntry], coin_id: str = "") -> PositionTotals:
    """
    Fold ledger entries into a position.

    Args:
        entries: Transactions of one holding, in any order
        coin_id: Used only in the error message

    Returns:
        PositionTotals with quantity, remaining cost and average price

    Raises:
        InsufficientBalanceError: A disposal exceeds the quantity held at
            that point of the replay
    """
    held = ZERO
    cost = ZERO

    with localcontext() as ctx:
        ctx.prec = _FOLD_PRECISION

        for entry in sorted(entries, key=replay_key):
            quantity = Decimal(entry.quantity)
            price = Decimal(entry.price)

            if quantity >= ZERO:
                held += quantity
                cost += quantity * price
                continue

            sold = -quantity
            if sold > held:
                raise InsufficientBalanceError(
                    coin_id=coin_id,
                    requested=_quantize(sold),
                    available=_quantize(held),
                )

            cost -= cost * sold / held
            held -= sold

        average = cost / held if held != ZERO else ZERO

        return PositionTotals(
            total_quantity=_quantize(held),
            total_cost=_quantize(cost),
            average_price=_quantize(average),
        )


class LedgerReconciler:
    """
    Writes fold results onto a Holding.

    Runs inside the caller's transaction and never commits.
    """

    def reconcile(self, db: Session, holding: Holding) -> PositionTotals:
        """
        Recompute and store the aggregates of one holding.

        Pending inserts, edits and deletes are flushed first so the replay
        sees the holding's rows as they will be committed.

        Raises:
            InsufficientBalanceError: The replay goes negative
        """
        db.flush()

        entries = db.scalars(
            select(Transaction)
            .where(Transaction.holding_id == holding.id)
            .order_by(Transaction.date, Transaction.id)
        ).all()

        totals = compute_position(entries, coin_id=holding.coin_id)

        holding.total_quantity = totals.total_quantity
        holding.total_cost = totals.total_cost
        holding.average_price = totals.average_price

        logger.debug(
            f"Reconciled holding {holding.id} ({holding.coin_id}): "
            f"qty={totals.total_quantity}, cost={totals.total_cost}, "
            f"avg={totals.average_price}, entries={len(entries)}"
        )
        return totals
