# backend/coinfolio/services/ledger/__init__.py
"""
Holding ledger package.

Exports:
    PositionMutationService: Atomic add/edit/delete of transactions and holdings
    LedgerReconciler: Recomputes holding aggregates from transactions
    compute_position: Pure weighted-average cost fold
    compute_portfolio_summary: Pure portfolio totals
"""

from coinfolio.services.ledger.reconciler import (
    LedgerReconciler,
    PositionTotals,
    compute_position,
    replay_key,
)
from coinfolio.services.ledger.store import LedgerStore
from coinfolio.services.ledger.summary import (
    PortfolioSummary,
    SummaryLine,
    compute_portfolio_summary,
)
from coinfolio.services.ledger.mutation_service import (
    UNSET,
    HoldingDetail,
    KeyedLocks,
    PortfolioView,
    PositionMutationService,
    TransactionEdit,
)

__all__ = [
    "LedgerReconciler",
    "PositionTotals",
    "compute_position",
    "replay_key",
    "LedgerStore",
    "PortfolioSummary",
    "SummaryLine",
    "compute_portfolio_summary",
    "UNSET",
    "HoldingDetail",
    "KeyedLocks",
    "PortfolioView",
    "PositionMutationService",
    "TransactionEdit",
]
