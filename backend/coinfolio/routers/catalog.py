# backend/coinfolio/routers/catalog.py
"""
Coin catalog endpoints.

- GET /catalog: searchable, paginated listing (public read)
- POST /catalog/sync/identity, /catalog/sync/images, /catalog/prune and
  GET /catalog/sync/status: scheduler endpoints, guarded by
  Authorization: Bearer $CRON_SECRET

Sync passes run synchronously in the request; a scheduler with a long
timeout (or scripts/run_catalog_sync.py) is the intended caller. A pass
that is already running answers with status "already_running".
"""

import logging

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from coinfolio.database import get_db
from coinfolio.dependencies import get_sync_engine, require_cron_secret
from coinfolio.middleware.rate_limit import limiter, RATE_LIMIT_SYNC
from coinfolio.models import CatalogSyncKind, SyncStatusEnum
from coinfolio.schemas.catalog import (
    CatalogEntryResponse,
    CatalogListResponse,
    IdentitySyncResponse,
    ImageSyncResponse,
    PaginationMeta,
    PruneResponse,
    SyncStateResponse,
)
from coinfolio.services.catalog import CatalogStore, CatalogSyncEngine
from coinfolio.services.constants import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/catalog",
    tags=["Catalog"],
)

_store = CatalogStore()


# =============================================================================
# LISTING
# =============================================================================

@router.get(
    "",
    response_model=CatalogListResponse,
    summary="Search the coin catalog",
)
def list_catalog(
        q: str | None = Query(default=None, max_length=100, description="Symbol or name fragment"),
        offset: int = Query(default=0, ge=0),
        limit: int = Query(default=DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
        db: Session = Depends(get_db),
) -> CatalogListResponse:
    entries, total = _store.search(db, query=q, offset=offset, limit=limit)
    return CatalogListResponse(
        items=[CatalogEntryResponse.model_validate(e) for e in entries],
        pagination=PaginationMeta(
            total=total,
            offset=offset,
            limit=limit,
            has_more=offset + len(entries) < total,
        ),
    )


# =============================================================================
# SCHEDULER ENDPOINTS
# =============================================================================

@router.post(
    "/sync/identity",
    response_model=IdentitySyncResponse,
    dependencies=[Depends(require_cron_secret)],
    summary="Upsert the full remote listing",
)
@limiter.limit(RATE_LIMIT_SYNC)
def sync_identity(
        request: Request,  # Required for rate limiting
        db: Session = Depends(get_db),
        engine: CatalogSyncEngine = Depends(get_sync_engine),
) -> IdentitySyncResponse:
    """Raises **503** if the remote listing is unavailable after retries."""
    result = engine.sync_catalog_identity(db)
    return IdentitySyncResponse.model_validate(result)


@router.post(
    "/sync/images",
    response_model=ImageSyncResponse,
    dependencies=[Depends(require_cron_secret)],
    summary="Walk market pages and store image URLs",
)
@limiter.limit(RATE_LIMIT_SYNC)
def sync_images(
        request: Request,
        start_page: int = Query(default=1, ge=1, description="Page to start from (use resume_page)"),
        db: Session = Depends(get_db),
        engine: CatalogSyncEngine = Depends(get_sync_engine),
) -> ImageSyncResponse:
    """
    Pages that keep failing are skipped; `resume_page` tells the scheduler
    where the next run should start.
    """
    result = engine.sync_catalog_images(db, start_page=start_page)
    return ImageSyncResponse.model_validate(result)


@router.post(
    "/prune",
    response_model=PruneResponse,
    dependencies=[Depends(require_cron_secret)],
    summary="Delete coins that vanished upstream",
)
@limiter.limit(RATE_LIMIT_SYNC)
def prune_catalog(
        request: Request,
        db: Session = Depends(get_db),
        engine: CatalogSyncEngine = Depends(get_sync_engine),
) -> PruneResponse:
    """Coins still referenced by a holding are kept and listed in `kept_referenced`."""
    result = engine.prune_orphaned_catalog_entries(db)
    return PruneResponse.model_validate(result)


@router.get(
    "/sync/status",
    response_model=list[SyncStateResponse],
    dependencies=[Depends(require_cron_secret)],
    summary="Last run of each sync pass",
)
def sync_status(
        db: Session = Depends(get_db),
        engine: CatalogSyncEngine = Depends(get_sync_engine),
) -> list[SyncStateResponse]:
    """One entry per pass kind; kinds that never ran report status NEVER."""
    states = {state.kind: state for state in engine.list_sync_states(db)}
    response = []
    for kind in CatalogSyncKind:
        state = states.get(kind)
        if state is None:
            response.append(SyncStateResponse(kind=kind.value, status=SyncStatusEnum.NEVER.value))
            continue
        response.append(SyncStateResponse(
            kind=kind.value,
            status=state.status.value,
            last_started=state.last_started,
            last_completed=state.last_completed,
            resume_page=state.resume_page,
            summary=state.summary,
            last_error=state.last_error,
        ))
    return response
