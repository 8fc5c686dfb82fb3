# backend/coinfolio/services/catalog/__init__.py
"""
Coin catalog package.

Exports:
    RemoteCatalogClient: Abstract remote catalog provider
    CoinGeckoClient: CoinGecko implementation
    CatalogRecord, MarketQuote: Provider DTOs
    CatalogStore: Catalog persistence helpers
    CatalogSyncEngine: Identity/image sync and prune orchestration
"""

from coinfolio.services.catalog.base import (
    RemoteCatalogClient,
    CatalogRecord,
    MarketQuote,
)
from coinfolio.services.catalog.coingecko import CoinGeckoClient
from coinfolio.services.catalog.store import CatalogStore
from coinfolio.services.catalog.buffer import PageBuffer, decide_flush, settle_flush
from coinfolio.services.catalog.sync_service import (
    CatalogSyncEngine,
    IdentitySyncResult,
    ImageSyncResult,
    PruneResult,
)

__all__ = [
    "RemoteCatalogClient",
    "CoinGeckoClient",
    "CatalogRecord",
    "MarketQuote",
    "CatalogStore",
    "PageBuffer",
    "decide_flush",
    "settle_flush",
    "CatalogSyncEngine",
    "IdentitySyncResult",
    "ImageSyncResult",
    "PruneResult",
]
