# backend/tests/services/test_reconciler.py
"""
Tests for the ledger fold and LedgerReconciler.

This module tests:
- Weighted-average cost basis under buys and sells
- Replay order (date, then id)
- Oversell detection at any prefix of the ledger
- Reconciliation idempotence against the database
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from coinfolio.services.exceptions import InsufficientBalanceError
from coinfolio.services.ledger import LedgerReconciler, compute_position, replay_key
from tests.conftest import create_holding, create_transaction

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


@dataclass
class Entry:
    """Minimal ledger entry, no database involved."""

    quantity: Decimal
    price: Decimal
    date: datetime
    id: int | None = None


def entry(quantity: str, price: str, day: int, entry_id: int | None = None) -> Entry:
    return Entry(
        quantity=Decimal(quantity),
        price=Decimal(price),
        date=T0 + timedelta(days=day),
        id=entry_id,
    )


# =============================================================================
# PURE FOLD
# =============================================================================

class TestComputePosition:
    """Tests for compute_position."""

    def test_empty_ledger(self):
        totals = compute_position([])

        assert totals.total_quantity == Decimal("0")
        assert totals.total_cost == Decimal("0")
        assert totals.average_price == Decimal("0")
        assert totals.is_empty

    def test_buys_average_by_quantity(self):
        totals = compute_position([
            entry("10", "2", day=0, entry_id=1),
            entry("10", "4", day=1, entry_id=2),
        ])

        assert totals.total_quantity == Decimal("20")
        assert totals.total_cost == Decimal("60")
        assert totals.average_price == Decimal("3")

    def test_sell_keeps_average_price(self):
        """10 @ 2, 10 @ 4, then sell 5: average stays 3, quantity becomes 15."""
        totals = compute_position([
            entry("10", "2", day=0, entry_id=1),
            entry("10", "4", day=1, entry_id=2),
            entry("-5", "10", day=2, entry_id=3),
        ])

        assert totals.total_quantity == Decimal("15")
        assert totals.total_cost == Decimal("45")
        assert totals.average_price == Decimal("3")

    def test_sell_price_does_not_affect_cost_basis(self):
        cheap = compute_position([entry("4", "5", 0, 1), entry("-1", "1", 1, 2)])
        dear = compute_position([entry("4", "5", 0, 1), entry("-1", "1000", 1, 2)])

        assert cheap == dear
        assert cheap.total_cost == Decimal("15")

    def test_selling_everything_resets_basis(self):
        totals = compute_position([
            entry("3", "100", day=0, entry_id=1),
            entry("-3", "150", day=1, entry_id=2),
        ])

        assert totals.total_quantity == Decimal("0")
        assert totals.total_cost == Decimal("0")
        assert totals.average_price == Decimal("0")

    def test_rebuy_after_full_sell(self):
        totals = compute_position([
            entry("3", "100", day=0, entry_id=1),
            entry("-3", "150", day=1, entry_id=2),
            entry("2", "50", day=2, entry_id=3),
        ])

        assert totals.total_quantity == Decimal("2")
        assert totals.average_price == Decimal("50")

    def test_zero_quantity_entry_is_neutral(self):
        base = [entry("2", "10", 0, 1)]
        with_placeholder = base + [entry("0", "0", 1, 2)]

        assert compute_position(base) == compute_position(with_placeholder)

    def test_zero_price_acquisition_lowers_average(self):
        totals = compute_position([
            entry("1", "10", day=0, entry_id=1),
            entry("1", "0", day=1, entry_id=2),
        ])

        assert totals.average_price == Decimal("5")

    def test_input_order_is_irrelevant(self):
        ordered = [
            entry("10", "2", 0, 1),
            entry("10", "4", 1, 2),
            entry("-5", "1", 2, 3),
        ]

        assert compute_position(ordered) == compute_position(list(reversed(ordered)))

    def test_results_are_quantized(self):
        totals = compute_position([
            entry("3", "1", 0, 1),
            entry("-1", "1", 1, 2),
            entry("1", "0", 2, 3),
        ])

        # 2/3 of the original cost, spread over 3 units
        assert totals.total_cost == Decimal("2.000000000000")
        assert totals.average_price == Decimal("0.666666666667")


class TestOversell:
    """A disposal may never exceed what is held at that point of the replay."""

    def test_sell_more_than_held(self):
        with pytest.raises(InsufficientBalanceError) as exc_info:
            compute_position([
                entry("5", "10", 0, 1),
                entry("-6", "10", 1, 2),
            ], coin_id="bitcoin")

        assert exc_info.value.coin_id == "bitcoin"
        assert exc_info.value.requested == Decimal("6")
        assert exc_info.value.available == Decimal("5")

    def test_sell_before_buy_is_rejected_even_if_final_total_is_positive(self):
        with pytest.raises(InsufficientBalanceError):
            compute_position([
                entry("-1", "10", day=0, entry_id=1),
                entry("5", "10", day=1, entry_id=2),
            ])

    def test_sell_exactly_held_is_allowed(self):
        totals = compute_position([
            entry("5", "10", 0, 1),
            entry("-5", "12", 1, 2),
        ])

        assert totals.total_quantity == Decimal("0")


class TestReplayKey:
    """Tests for replay ordering."""

    def test_same_date_ordered_by_id(self):
        a = entry("1", "1", day=0, entry_id=7)
        b = entry("1", "1", day=0, entry_id=3)

        assert sorted([a, b], key=replay_key) == [b, a]

    def test_unsaved_entries_sort_last_on_same_date(self):
        saved = entry("1", "1", day=0, entry_id=99)
        unsaved = entry("1", "1", day=0)

        assert sorted([unsaved, saved], key=replay_key) == [saved, unsaved]

    def test_naive_dates_read_as_utc(self):
        aware = entry("1", "1", day=1, entry_id=1)
        naive = Entry(
            quantity=Decimal("1"),
            price=Decimal("1"),
            date=(T0 + timedelta(hours=12)).replace(tzinfo=None),
            id=2,
        )

        assert sorted([aware, naive], key=replay_key) == [naive, aware]

    def test_same_day_sell_before_buy_by_id(self):
        """Ties on date replay in insertion order, so this sell comes first."""
        with pytest.raises(InsufficientBalanceError):
            compute_position([
                entry("-1", "1", day=0, entry_id=1),
                entry("1", "1", day=0, entry_id=2),
            ])


# =============================================================================
# RECONCILER AGAINST THE DATABASE
# =============================================================================

class TestLedgerReconciler:
    """Tests for LedgerReconciler.reconcile."""

    def test_writes_aggregates(self, db, bitcoin):
        holding = create_holding(db)
        create_transaction(db, holding, "10", "2", T0)
        create_transaction(db, holding, "10", "4", T0 + timedelta(days=1))
        create_transaction(db, holding, "-5", "9", T0 + timedelta(days=2))

        LedgerReconciler().reconcile(db, holding)
        db.commit()
        db.refresh(holding)

        assert holding.total_quantity == Decimal("15")
        assert holding.total_cost == Decimal("45")
        assert holding.average_price == Decimal("3")

    def test_reconcile_is_idempotent(self, db, bitcoin):
        holding = create_holding(db)
        create_transaction(db, holding, "3", "1", T0)
        create_transaction(db, holding, "-1", "1", T0 + timedelta(days=1))
        create_transaction(db, holding, "1", "0", T0 + timedelta(days=2))

        reconciler = LedgerReconciler()
        first = reconciler.reconcile(db, holding)
        db.commit()
        second = reconciler.reconcile(db, holding)
        db.commit()

        assert first == second
        assert str(first.average_price) == str(second.average_price)

    def test_sees_pending_changes(self, db, bitcoin):
        holding = create_holding(db)
        transaction = create_transaction(db, holding, "2", "10", T0)

        transaction.price = Decimal("20")
        totals = LedgerReconciler().reconcile(db, holding)

        assert totals.total_cost == Decimal("40")

    def test_only_reads_own_holding(self, db, bitcoin):
        mine = create_holding(db, user_id="user-1")
        theirs = create_holding(db, user_id="user-2")
        create_transaction(db, mine, "1", "100", T0)
        create_transaction(db, theirs, "50", "1", T0)

        totals = LedgerReconciler().reconcile(db, mine)

        assert totals.total_quantity == Decimal("1")

    def test_oversell_leaves_aggregates_untouched(self, db, bitcoin):
        holding = create_holding(db)
        create_transaction(db, holding, "1", "100", T0)
        LedgerReconciler().reconcile(db, holding)
        db.commit()

        create_transaction(db, holding, "-2", "100", T0 + timedelta(days=1))
        with pytest.raises(InsufficientBalanceError):
            LedgerReconciler().reconcile(db, holding)

        assert holding.total_quantity == Decimal("1")
