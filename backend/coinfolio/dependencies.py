# backend/coinfolio/dependencies.py
"""
Dependency injection module for FastAPI.

Services are process-wide singletons, lazily built from Settings on first
use. Sharing them matters: the CoinGecko client pools connections, and
PositionMutationService owns the per-(user, coin) locks, which only
serialize anything if every request sees the same instance.

Usage in routers:
    from coinfolio.dependencies import get_mutation_service, get_current_user_id

    @router.post("/trades")
    def record_trade(
        user_id: str = Depends(get_current_user_id),
        service: PositionMutationService = Depends(get_mutation_service),
    ):
        ...
"""

import hmac
import logging
from functools import lru_cache
from typing import Annotated

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from coinfolio.config import settings
from coinfolio.services.catalog import CatalogStore, CatalogSyncEngine, CoinGeckoClient
from coinfolio.services.ledger import PositionMutationService
from coinfolio.services.quotes import QuoteRefreshService

logger = logging.getLogger(__name__)

_bearer_scheme = HTTPBearer(auto_error=False)


# =============================================================================
# SINGLETON SERVICE INSTANCES
# =============================================================================
# Order matters: the client is shared by the sync engine and quote refresh

@lru_cache(maxsize=1)
def get_catalog_client() -> CoinGeckoClient:
    logger.debug("Initializing singleton CoinGeckoClient")
    return CoinGeckoClient(
        base_url=settings.coingecko_base_url,
        api_key=settings.coingecko_api_key,
        timeout_seconds=settings.coingecko_timeout_seconds,
    )


@lru_cache(maxsize=1)
def get_sync_engine() -> CatalogSyncEngine:
    """Catalog sync engine tuned from CATALOG_* settings."""
    logger.debug("Initializing singleton CatalogSyncEngine")
    return CatalogSyncEngine(
        client=get_catalog_client(),
        store=CatalogStore(),
        batch_size=settings.catalog_batch_size,
        page_size=settings.catalog_page_size,
        max_attempts=settings.catalog_max_attempts,
        retry_delay_seconds=settings.catalog_retry_delay_seconds,
        page_delay_seconds=settings.catalog_page_delay_seconds,
        flush_every_pages=settings.catalog_flush_every_pages,
        flush_timeout_seconds=settings.catalog_flush_timeout_seconds,
        prune_batch_pause_seconds=settings.catalog_prune_batch_pause_seconds,
    )


@lru_cache(maxsize=1)
def get_mutation_service() -> PositionMutationService:
    logger.debug("Initializing singleton PositionMutationService")
    return PositionMutationService(
        statement_timeout_seconds=settings.ledger_statement_timeout_seconds,
    )


@lru_cache(maxsize=1)
def get_quote_service() -> QuoteRefreshService:
    logger.debug("Initializing singleton QuoteRefreshService")
    return QuoteRefreshService(
        client=get_catalog_client(),
        stale_after_minutes=settings.quote_stale_after_minutes,
        refresh_limit=settings.quote_refresh_limit,
    )


# =============================================================================
# CALLER IDENTITY
# =============================================================================

def get_current_user_id(
        x_user_id: Annotated[str | None, Header(alias="X-User-Id")] = None,
) -> str:
    """
    Caller's user id, as asserted by the authenticating gateway.

    Raises:
        HTTPException 401: Header missing or blank
    """
    if x_user_id is None or not x_user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-User-Id header",
        )
    return x_user_id.strip()


def require_cron_secret(
        credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(_bearer_scheme)],
) -> None:
    """
    Guard for scheduler-triggered endpoints: Authorization: Bearer $CRON_SECRET.

    Raises:
        HTTPException 401: Missing or wrong secret
        HTTPException 503: No CRON_SECRET configured
    """
    if not settings.cron_secret:
        logger.error("Catalog sync endpoint called but CRON_SECRET is not configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Scheduler endpoints are disabled",
        )

    if credentials is None or not hmac.compare_digest(
            credentials.credentials.encode(), settings.cron_secret.encode()
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid scheduler credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
