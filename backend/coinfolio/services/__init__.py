# backend/coinfolio/services/__init__.py
"""
Service layer for business logic.

Services:
- Have NO knowledge of HTTP (no HTTPException, no status codes)
- Raise domain-specific exceptions
- Receive database sessions as parameters (not via Depends)
- Are easily testable via dependency injection

Usage:
    from coinfolio.services import CatalogSyncEngine
    from coinfolio.services import PositionMutationService
    from coinfolio.services import QuoteRefreshService
    from coinfolio.services import InsufficientBalanceError, HoldingNotFoundError

Architecture:
    services/
    ├── __init__.py              # This file - main exports
    ├── exceptions.py            # Domain exceptions
    ├── constants.py             # Batching defaults and limits
    ├── quotes.py                # Explicit quote refresh
    ├── catalog/                 # Coin catalog
    │   ├── base.py              # Abstract remote client + DTOs
    │   ├── coingecko.py         # CoinGecko implementation
    │   ├── store.py             # Catalog persistence
    │   ├── buffer.py            # Page buffer and flush decision
    │   └── sync_service.py      # Identity/image sync and prune
    └── ledger/                  # Holdings ledger
        ├── reconciler.py        # Weighted-average cost fold
        ├── store.py             # Holding/transaction persistence
        ├── summary.py           # Portfolio totals
        └── mutation_service.py  # Atomic position mutations
"""

from coinfolio.services.catalog import (
    CatalogStore,
    CatalogSyncEngine,
    CoinGeckoClient,
    RemoteCatalogClient,
)
from coinfolio.services.ledger import (
    LedgerReconciler,
    PositionMutationService,
    TransactionEdit,
)
from coinfolio.services.quotes import QuoteRefreshResult, QuoteRefreshService
from coinfolio.services.exceptions import (
    ServiceError,
    ValidationError,
    InvalidQuantityError,
    NotFoundError,
    CoinNotFoundError,
    HoldingNotFoundError,
    TransactionNotFoundError,
    BusinessRuleViolation,
    InsufficientBalanceError,
    CatalogError,
    RemoteUnavailableError,
    RateLimitError,
    PersistenceError,
)

__all__ = [
    "CatalogStore",
    "CatalogSyncEngine",
    "CoinGeckoClient",
    "RemoteCatalogClient",
    "LedgerReconciler",
    "PositionMutationService",
    "TransactionEdit",
    "QuoteRefreshResult",
    "QuoteRefreshService",
    "ServiceError",
    "ValidationError",
    "InvalidQuantityError",
    "NotFoundError",
    "CoinNotFoundError",
    "HoldingNotFoundError",
    "TransactionNotFoundError",
    "BusinessRuleViolation",
    "InsufficientBalanceError",
    "CatalogError",
    "RemoteUnavailableError",
    "RateLimitError",
    "PersistenceError",
]
