# backend/coinfolio/schemas/catalog.py
"""
Pydantic schemas for the coin catalog and its sync passes.
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class CatalogEntryResponse(BaseModel):
    id: str
    symbol: str
    name: str
    image: str | None = None

    model_config = ConfigDict(from_attributes=True)


class PaginationMeta(BaseModel):
    total: int = Field(..., ge=0)
    offset: int = Field(..., ge=0)
    limit: int = Field(..., ge=1)
    has_more: bool


class CatalogListResponse(BaseModel):
    items: list[CatalogEntryResponse]
    pagination: PaginationMeta


# =============================================================================
# SYNC PASSES
# =============================================================================

class IdentitySyncResponse(BaseModel):
    status: str = Field(description="completed, partial, failed, empty_upstream, already_running")
    sync_started: datetime
    sync_completed: datetime | None = None
    remote_count: int = 0
    batches_total: int = 0
    batches_failed: list[int] = Field(default_factory=list)
    records_upserted: int = 0
    failed_ids: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    error: str | None = None

    model_config = ConfigDict(from_attributes=True)


class ImageSyncResponse(BaseModel):
    status: str = Field(description="completed, partial, failed, empty_upstream, already_running")
    sync_started: datetime
    sync_completed: datetime | None = None
    start_page: int = 1
    total_pages: int = 0
    pages_fetched: int = 0
    pages_failed: list[int] = Field(default_factory=list)
    flushes: int = 0
    flushes_failed: int = 0
    records_upserted: int = 0
    resume_page: int | None = Field(
        default=None,
        description="Page to pass as start_page on the next run; null when nothing is left"
    )
    aborted: bool = False
    warnings: list[str] = Field(default_factory=list)
    error: str | None = None

    model_config = ConfigDict(from_attributes=True)


class PruneResponse(BaseModel):
    status: str = Field(description="completed, partial, failed, empty_upstream, already_running")
    sync_started: datetime
    sync_completed: datetime | None = None
    remote_count: int = 0
    local_count: int = 0
    orphaned: int = 0
    kept_referenced: list[str] = Field(default_factory=list)
    deleted: int = 0
    failed_ids: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    error: str | None = None

    model_config = ConfigDict(from_attributes=True)


class SyncStateResponse(BaseModel):
    kind: str
    status: str = Field(description="NEVER, IN_PROGRESS, COMPLETED, PARTIAL, FAILED")
    last_started: datetime | None = None
    last_completed: datetime | None = None
    resume_page: int | None = None
    summary: dict | None = None
    last_error: str | None = None
