# backend/coinfolio/routers/__init__.py
"""
API routers.

Each router groups related endpoints:
- holdings: positions, trades, ledger edits, quote refresh
- transactions: cross-holding listing and single deletes
- catalog: catalog search and scheduler-triggered sync passes
"""

from coinfolio.routers.holdings import router as holdings_router
from coinfolio.routers.transactions import router as transactions_router
from coinfolio.routers.catalog import router as catalog_router

__all__ = [
    "holdings_router",
    "transactions_router",
    "catalog_router",
]
