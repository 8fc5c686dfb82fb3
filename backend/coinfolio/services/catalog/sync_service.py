# backend/coinfolio/services/catalog/sync_service.py
"""
Catalog Sync Engine keeping `coin_catalog` consistent with the remote catalog.

This service handles:
- Identity sync: full listing upserted in fixed-size batches
- Image sync: paginated market pages, retried per page, buffered and
  flushed periodically, resumable from any page
- Prune: removal of coins that disappeared upstream, unless a holding
  still references them
- Tracking each pass in `catalog_sync_state`

Design Principles:
- Dependency Injection: client, store and sleep function via constructor
- No HTTP Knowledge: raises domain exceptions, not HTTPException
- Partial Success: a failed batch is retried one record at a time and a
  failed page is skipped; the run continues and reports what to retry
- Idempotent: upserts keyed by coin id, safe to re-run at any time
- Empty upstream is a no-op, never "delete everything"

Usage:
    from coinfolio.services.catalog import CatalogSyncEngine

    engine = CatalogSyncEngine()

    engine.sync_catalog_identity(db)

    result = engine.sync_catalog_images(db, start_page=1)
    if result.resume_page:
        print(f"Re-run with start_page={result.resume_page}")

    engine.prune_orphaned_catalog_entries(db)
"""

import logging
import math
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone, timedelta
from typing import Callable, Sequence

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_incrementing,
)

from coinfolio.utils.sql import apply_statement_timeout
from coinfolio.models import CatalogSyncKind, CatalogSyncState, SyncStatusEnum
from coinfolio.services.catalog.base import CatalogRecord, RemoteCatalogClient, wait_retry_after
from coinfolio.services.catalog.buffer import PageBuffer, decide_flush, settle_flush
from coinfolio.services.catalog.coingecko import CoinGeckoClient
from coinfolio.services.catalog.store import CatalogStore, chunked
from coinfolio.services.constants import (
    DEFAULT_CATALOG_BATCH_SIZE,
    DEFAULT_FLUSH_EVERY_PAGES,
    DEFAULT_FLUSH_TIMEOUT_SECONDS,
    DEFAULT_IMAGE_PAGE_SIZE,
    DEFAULT_PAGE_DELAY_SECONDS,
    DEFAULT_PAGE_MAX_ATTEMPTS,
    DEFAULT_PAGE_RETRY_DELAY_SECONDS,
    DEFAULT_PRUNE_BATCH_PAUSE_SECONDS,
    MAX_RETRY_AFTER_SECONDS,
)
from coinfolio.services.exceptions import CatalogError, ValidationError

logger = logging.getLogger(__name__)

# An IN_PROGRESS pass older than this is considered abandoned (crashed worker)
ABANDONED_PASS_AFTER = timedelta(hours=2)


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class IdentitySyncResult:
    """Result of a full identity listing sync."""

    status: str  # "completed", "partial", "failed", "empty_upstream", "already_running"
    sync_started: datetime
    sync_completed: datetime | None = None

    remote_count: int = 0
    batches_total: int = 0
    batches_failed: list[int] = field(default_factory=list)
    records_upserted: int = 0
    failed_ids: list[str] = field(default_factory=list)

    warnings: list[str] = field(default_factory=list)
    error: str | None = None


@dataclass
class ImageSyncResult:
    """
    Result of a paginated image sync.

    `resume_page` is the page a follow-up run should start from, or None
    when every page from `start_page` on was persisted.
    """

    status: str  # "completed", "partial", "failed", "empty_upstream", "already_running"
    sync_started: datetime
    start_page: int = 1
    sync_completed: datetime | None = None

    total_pages: int = 0
    pages_fetched: int = 0
    pages_failed: list[int] = field(default_factory=list)
    flushes: int = 0
    flushes_failed: int = 0
    records_upserted: int = 0
    resume_page: int | None = None
    aborted: bool = False

    warnings: list[str] = field(default_factory=list)
    error: str | None = None


@dataclass
class PruneResult:
    """Result of removing catalog entries that vanished upstream."""

    status: str  # "completed", "partial", "failed", "empty_upstream", "already_running"
    sync_started: datetime
    sync_completed: datetime | None = None

    remote_count: int = 0
    local_count: int = 0
    orphaned: int = 0
    kept_referenced: list[str] = field(default_factory=list)
    deleted: int = 0
    failed_ids: list[str] = field(default_factory=list)

    warnings: list[str] = field(default_factory=list)
    error: str | None = None


# =============================================================================
# SYNC ENGINE
# =============================================================================

class CatalogSyncEngine:
    """
    Orchestrates catalog synchronization against a RemoteCatalogClient.

    Every numeric knob is a constructor argument so the scheduler, the API
    and tests can tune batching without touching module constants.

    Attributes:
        _client: Remote catalog provider
        _store: Catalog persistence helper
        _sleep: Sleep function used for backoff and pacing (tests pass a no-op)
    """

    def __init__(
            self,
            client: RemoteCatalogClient | None = None,
            store: CatalogStore | None = None,
            batch_size: int = DEFAULT_CATALOG_BATCH_SIZE,
            page_size: int = DEFAULT_IMAGE_PAGE_SIZE,
            max_attempts: int = DEFAULT_PAGE_MAX_ATTEMPTS,
            retry_delay_seconds: float = DEFAULT_PAGE_RETRY_DELAY_SECONDS,
            page_delay_seconds: float = DEFAULT_PAGE_DELAY_SECONDS,
            flush_every_pages: int = DEFAULT_FLUSH_EVERY_PAGES,
            flush_timeout_seconds: int = DEFAULT_FLUSH_TIMEOUT_SECONDS,
            prune_batch_pause_seconds: float = DEFAULT_PRUNE_BATCH_PAUSE_SECONDS,
            max_buffered_pages: int | None = None,
            sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """
        Initialize the catalog sync engine.

        Args:
            client: Remote catalog client (defaults to CoinGeckoClient)
            store: Catalog store (defaults to a new CatalogStore)
            batch_size: Rows per upsert/delete statement (default: 50)
            page_size: Records per remote page (default: 250)
            max_attempts: Fetch attempts per page before skipping it (default: 3)
            retry_delay_seconds: Linear backoff base, attempt N waits N * delay
            page_delay_seconds: Pause between page fetches
            flush_every_pages: Pages buffered between flushes (default: 10)
            flush_timeout_seconds: Statement timeout of a flush transaction
            prune_batch_pause_seconds: Pause between prune delete batches
            max_buffered_pages: Buffer capacity while flushes keep failing
                (default: twice the flush cadence)
            sleep: Sleep function (injectable for tests)
        """
        for arg_name, value in (
                ("batch_size", batch_size),
                ("page_size", page_size),
                ("max_attempts", max_attempts),
                ("flush_every_pages", flush_every_pages),
        ):
            if value < 1:
                raise ValueError(f"{arg_name} must be >= 1, got {value}")

        self._client = client or CoinGeckoClient()
        self._store = store or CatalogStore()
        self._batch_size = batch_size
        self._page_size = page_size
        self._max_attempts = max_attempts
        self._retry_delay = retry_delay_seconds
        self._page_delay = page_delay_seconds
        self._flush_every = flush_every_pages
        self._flush_timeout = flush_timeout_seconds
        self._prune_pause = prune_batch_pause_seconds
        self._max_buffered_pages = max(max_buffered_pages or flush_every_pages * 2, flush_every_pages)
        self._sleep = sleep

        logger.info(
            f"CatalogSyncEngine initialized "
            f"(provider={self._client.name}, batch_size={batch_size}, "
            f"page_size={page_size}, max_attempts={max_attempts}, "
            f"flush_every={flush_every_pages})"
        )

    # =========================================================================
    # IDENTITY SYNC
    # =========================================================================

    def sync_catalog_identity(self, db: Session) -> IdentitySyncResult:
        """
        Upsert the full remote listing in batches.

        A failed batch is rolled back and retried one record at a time; ids
        that still fail are collected in `failed_ids`. Re-running is safe.

        Raises:
            CatalogError: The remote listing was unavailable after retries
                (recorded as FAILED before propagating)
        """
        started = datetime.now(timezone.utc)
        result = IdentitySyncResult(status="in_progress", sync_started=started)

        if not self._try_acquire_pass(db, CatalogSyncKind.IDENTITY, started):
            return self._already_running(result, CatalogSyncKind.IDENTITY)

        try:
            records = self._fetch_listing(db, CatalogSyncKind.IDENTITY, result)
            result.remote_count = len(records)

            if not records:
                return self._finish_empty(db, CatalogSyncKind.IDENTITY, result)

            batches = chunked(records, self._batch_size)
            result.batches_total = len(batches)

            for index, batch in enumerate(batches, start=1):
                try:
                    result.records_upserted += self._store.upsert_identities(db, batch)
                    db.commit()
                except SQLAlchemyError as e:
                    db.rollback()
                    result.batches_failed.append(index)
                    logger.warning(
                        f"Identity batch {index}/{len(batches)} failed "
                        f"({batch[0].id}..{batch[-1].id}), upserting one by one: {e}"
                    )
                    self._upsert_individually(db, batch, result)

            if result.failed_ids:
                result.warnings.append(
                    f"{len(result.failed_ids)} of {result.remote_count} records could not be upserted"
                )
                result.status = "partial"
            else:
                result.status = "completed"

            result.sync_completed = datetime.now(timezone.utc)
            self._record_pass(
                db, CatalogSyncKind.IDENTITY,
                status=SyncStatusEnum.PARTIAL if result.failed_ids else SyncStatusEnum.COMPLETED,
                completed=result.sync_completed,
                summary={
                    "remote_count": result.remote_count,
                    "records_upserted": result.records_upserted,
                    "batches_failed": result.batches_failed,
                    "failed_ids": result.failed_ids,
                },
                last_error=result.warnings[0] if result.warnings else None,
            )

            logger.info(
                f"Identity sync {result.status}: {result.records_upserted}/{result.remote_count} "
                f"records, {len(result.batches_failed)} batches retried per record, "
                f"{len(result.failed_ids)} records failed"
            )
            return result

        except CatalogError:
            raise
        except Exception as e:
            return self._fail(db, CatalogSyncKind.IDENTITY, result, e)

    def _upsert_individually(
            self,
            db: Session,
            records: Sequence[CatalogRecord],
            result: IdentitySyncResult,
    ) -> None:
        for record in records:
            try:
                result.records_upserted += self._store.upsert_identities(db, [record])
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                result.failed_ids.append(record.id)
                logger.error(f"Could not upsert catalog entry '{record.id}': {e}")

    # =========================================================================
    # IMAGE SYNC
    # =========================================================================

    def sync_catalog_images(self, db: Session, start_page: int = 1) -> ImageSyncResult:
        """
        Walk remote market pages from `start_page` and persist image URLs.

        total_pages = ceil(remote identity count / page_size). Each page is
        fetched with up to `max_attempts` tries; a page that keeps failing is
        skipped and becomes a resume candidate. Pages are buffered and
        flushed every `flush_every_pages` pages and on the last page, one
        transaction per flush. A failed flush keeps its records buffered.

        Raises:
            ValidationError: start_page < 1
            CatalogError: The remote listing was unavailable after retries
        """
        if start_page < 1:
            raise ValidationError(f"start_page must be >= 1, got {start_page}", field="start_page")

        started = datetime.now(timezone.utc)
        result = ImageSyncResult(status="in_progress", sync_started=started, start_page=start_page)

        if not self._try_acquire_pass(db, CatalogSyncKind.IMAGES, started):
            return self._already_running(result, CatalogSyncKind.IMAGES)

        buffer = PageBuffer(window_start=start_page, capacity=self._max_buffered_pages)
        try:
            identities = self._fetch_listing(db, CatalogSyncKind.IMAGES, result)
            if not identities:
                return self._finish_empty(db, CatalogSyncKind.IMAGES, result)

            result.total_pages = math.ceil(len(identities) / self._page_size)

            for page in range(start_page, result.total_pages + 1):
                records = self._fetch_page(page)

                if records is None:
                    result.pages_failed.append(page)
                else:
                    buffer = buffer.with_page(page, records)
                    result.pages_fetched += 1

                if decide_flush(page, result.total_pages, self._flush_every) or buffer.is_full:
                    succeeded = self._flush_buffer(db, buffer, page, result)
                    buffer = settle_flush(buffer, page, succeeded)

                    if not succeeded and buffer.is_full:
                        result.aborted = True
                        result.warnings.append(
                            f"Stopped after page {page}: {len(buffer.pages)} pages "
                            f"buffered and flushes keep failing"
                        )
                        break

                if page < result.total_pages and self._page_delay > 0:
                    self._sleep(self._page_delay)

            result.resume_page = self._resume_page(result, buffer)
            result.sync_completed = datetime.now(timezone.utc)

            if result.resume_page is None:
                result.status = "completed"
                final_status = SyncStatusEnum.COMPLETED
            elif result.flushes > 0:
                result.status = "partial"
                final_status = SyncStatusEnum.PARTIAL
            else:
                result.status = "failed"
                final_status = SyncStatusEnum.FAILED

            if result.pages_failed:
                result.warnings.append(
                    f"Pages skipped after {self._max_attempts} attempts: {result.pages_failed}"
                )

            self._record_pass(
                db, CatalogSyncKind.IMAGES,
                status=final_status,
                completed=result.sync_completed,
                resume_page=result.resume_page,
                summary={
                    "start_page": start_page,
                    "total_pages": result.total_pages,
                    "pages_fetched": result.pages_fetched,
                    "pages_failed": result.pages_failed,
                    "flushes_failed": result.flushes_failed,
                    "records_upserted": result.records_upserted,
                },
                last_error=result.warnings[0] if result.warnings else None,
            )

            logger.info(
                f"Image sync {result.status}: pages {start_page}..{result.total_pages}, "
                f"fetched={result.pages_fetched}, failed={len(result.pages_failed)}, "
                f"records={result.records_upserted}, resume_page={result.resume_page}"
            )
            return result

        except CatalogError:
            raise
        except Exception as e:
            # Pages before the buffered window are already persisted
            result.aborted = True
            result.resume_page = self._resume_page(result, buffer)
            return self._fail(db, CatalogSyncKind.IMAGES, result, e, resume_page=result.resume_page)

    def _fetch_page(self, page: int) -> list[CatalogRecord] | None:
        """
        Fetch one market page with linear backoff, or the provider's Retry-After.

        Returns:
            The page's records, or None once every attempt failed
        """
        retrying = Retrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_retry_after(
                wait_incrementing(start=self._retry_delay, increment=self._retry_delay),
                max_wait=MAX_RETRY_AFTER_SECONDS,
            ),
            retry=retry_if_exception_type(CatalogError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            sleep=self._sleep,
            reraise=True,
        )
        try:
            return retrying(self._client.fetch_image_page, page, self._page_size)
        except CatalogError as e:
            logger.error(f"Page {page} failed after {self._max_attempts} attempts: {e}")
            return None

    def _flush_buffer(
            self,
            db: Session,
            buffer: PageBuffer,
            page: int,
            result: ImageSyncResult,
    ) -> bool:
        """Persist all buffered records in one transaction. Returns success."""
        if buffer.is_empty:
            return True

        try:
            apply_statement_timeout(db, self._flush_timeout)
            for batch in chunked(buffer.records, self._batch_size):
                self._store.upsert_images(db, batch)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            result.flushes_failed += 1
            result.warnings.append(
                f"Flush at page {page} failed, {buffer.record_count} records kept "
                f"(pages {buffer.pages[0]}..{buffer.pages[-1]})"
            )
            logger.error(f"Flush at page {page} failed: {e}")
            return False

        result.flushes += 1
        result.records_upserted += buffer.record_count
        logger.debug(
            f"Flushed {buffer.record_count} records from pages "
            f"{buffer.pages[0]}..{buffer.pages[-1]}"
        )
        return True

    @staticmethod
    def _resume_page(result: ImageSyncResult, buffer: PageBuffer) -> int | None:
        """Earliest page that is not persisted: a skipped page or the unflushed window."""
        candidates = list(result.pages_failed)
        if not buffer.is_empty or result.aborted:
            candidates.append(buffer.window_start)
        return min(candidates) if candidates else None

    # =========================================================================
    # PRUNE
    # =========================================================================

    def prune_orphaned_catalog_entries(self, db: Session) -> PruneResult:
        """
        Delete local catalog entries that are absent from the remote listing.

        Entries referenced by any holding are kept and reported. Deletion
        runs in batches; a failed batch is retried one id at a time and
        individual failures are collected in `failed_ids`.

        Raises:
            CatalogError: The remote listing was unavailable after retries
        """
        started = datetime.now(timezone.utc)
        result = PruneResult(status="in_progress", sync_started=started)

        if not self._try_acquire_pass(db, CatalogSyncKind.PRUNE, started):
            return self._already_running(result, CatalogSyncKind.PRUNE)

        try:
            remote = self._fetch_listing(db, CatalogSyncKind.PRUNE, result)
            result.remote_count = len(remote)

            if not remote:
                return self._finish_empty(db, CatalogSyncKind.PRUNE, result)

            remote_ids = {record.id for record in remote}
            local_ids = self._store.list_ids(db)
            result.local_count = len(local_ids)

            orphaned = sorted(local_ids - remote_ids)
            result.orphaned = len(orphaned)

            referenced = self._store.referenced_ids(db)
            result.kept_referenced = [coin_id for coin_id in orphaned if coin_id in referenced]
            deletable = [coin_id for coin_id in orphaned if coin_id not in referenced]

            if result.kept_referenced:
                logger.info(
                    f"Keeping {len(result.kept_referenced)} delisted coins still held by users: "
                    f"{result.kept_referenced[:10]}"
                )

            batches = chunked(deletable, self._batch_size)
            for index, batch in enumerate(batches, start=1):
                try:
                    result.deleted += self._store.delete_batch(db, batch)
                    db.commit()
                except SQLAlchemyError as e:
                    db.rollback()
                    logger.warning(
                        f"Prune batch {index}/{len(batches)} failed, deleting one by one: {e}"
                    )
                    self._delete_individually(db, batch, result)

                if index < len(batches) and self._prune_pause > 0:
                    self._sleep(self._prune_pause)

            result.status = "partial" if result.failed_ids else "completed"
            if result.failed_ids:
                result.warnings.append(f"{len(result.failed_ids)} entries could not be deleted")

            result.sync_completed = datetime.now(timezone.utc)
            self._record_pass(
                db, CatalogSyncKind.PRUNE,
                status=SyncStatusEnum.PARTIAL if result.failed_ids else SyncStatusEnum.COMPLETED,
                completed=result.sync_completed,
                summary={
                    "remote_count": result.remote_count,
                    "local_count": result.local_count,
                    "orphaned": result.orphaned,
                    "kept_referenced": len(result.kept_referenced),
                    "deleted": result.deleted,
                    "failed_ids": result.failed_ids,
                },
                last_error=result.warnings[0] if result.warnings else None,
            )

            logger.info(
                f"Prune {result.status}: orphaned={result.orphaned}, deleted={result.deleted}, "
                f"kept={len(result.kept_referenced)}, failed={len(result.failed_ids)}"
            )
            return result

        except CatalogError:
            raise
        except Exception as e:
            return self._fail(db, CatalogSyncKind.PRUNE, result, e)

    def _delete_individually(self, db: Session, coin_ids, result: PruneResult) -> None:
        for coin_id in coin_ids:
            try:
                if self._store.delete_one(db, coin_id):
                    result.deleted += 1
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                result.failed_ids.append(coin_id)
                logger.error(f"Could not delete catalog entry '{coin_id}': {e}")

    # =========================================================================
    # STATUS METHODS
    # =========================================================================

    def get_sync_state(self, db: Session, kind: CatalogSyncKind) -> CatalogSyncState | None:
        return db.get(CatalogSyncState, kind)

    def list_sync_states(self, db: Session) -> list[CatalogSyncState]:
        return list(db.scalars(select(CatalogSyncState).order_by(CatalogSyncState.kind)))

    def _try_acquire_pass(self, db: Session, kind: CatalogSyncKind, started: datetime) -> bool:
        """
        Atomically mark a pass IN_PROGRESS.

        Uses a conditional UPDATE so that two schedulers firing at once
        cannot both run the same pass. An IN_PROGRESS row older than
        ABANDONED_PASS_AFTER is taken over.

        Returns:
            True if the pass was acquired, False if another run holds it
        """
        existing = db.get(CatalogSyncState, kind)

        if existing is None:
            db.add(CatalogSyncState(
                kind=kind,
                status=SyncStatusEnum.IN_PROGRESS,
                last_started=started,
                summary={},
            ))
            try:
                db.commit()
                return True
            except IntegrityError:
                # Concurrent insert, fall through to the conditional update
                db.rollback()

        stmt = (
            update(CatalogSyncState)
            .where(
                CatalogSyncState.kind == kind,
                or_(
                    CatalogSyncState.status != SyncStatusEnum.IN_PROGRESS,
                    CatalogSyncState.last_started < started - ABANDONED_PASS_AFTER,
                ),
            )
            .values(status=SyncStatusEnum.IN_PROGRESS, last_started=started)
            .execution_options(synchronize_session=False)
        )
        acquired = db.execute(stmt).rowcount > 0
        db.commit()
        return acquired

    def _record_pass(
            self,
            db: Session,
            kind: CatalogSyncKind,
            status: SyncStatusEnum,
            completed: datetime | None = None,
            resume_page: int | None = None,
            summary: dict | None = None,
            last_error: str | None = None,
    ) -> None:
        state = db.get(CatalogSyncState, kind)
        if state is None:
            state = CatalogSyncState(kind=kind)
            db.add(state)

        state.status = status
        state.last_completed = completed
        state.resume_page = resume_page
        if summary is not None:
            state.summary = summary
        state.last_error = last_error
        db.commit()

    def _fetch_listing(self, db: Session, kind: CatalogSyncKind, result) -> list[CatalogRecord]:
        """Fetch the full identity listing; record FAILED and re-raise if unavailable."""
        try:
            return self._client.fetch_identity_list_with_retry()
        except CatalogError as e:
            logger.error(f"{kind.value} pass aborted, remote listing unavailable: {e}")
            result.status = "failed"
            result.error = str(e)
            result.sync_completed = datetime.now(timezone.utc)
            self._record_pass(
                db, kind,
                status=SyncStatusEnum.FAILED,
                completed=result.sync_completed,
                last_error=str(e),
            )
            raise

    def _finish_empty(self, db: Session, kind: CatalogSyncKind, result):
        logger.warning(f"{kind.value} pass: remote listing is empty, leaving catalog untouched")
        result.status = "empty_upstream"
        result.warnings.append("Remote catalog returned no records; nothing changed")
        result.sync_completed = datetime.now(timezone.utc)
        self._record_pass(
            db, kind,
            status=SyncStatusEnum.COMPLETED,
            completed=result.sync_completed,
            summary={"empty_upstream": True},
            last_error=result.warnings[0],
        )
        return result

    def _fail(
            self,
            db: Session,
            kind: CatalogSyncKind,
            result,
            error: Exception,
            resume_page: int | None = None,
    ):
        logger.exception(f"{kind.value} pass failed: {error}")
        db.rollback()
        result.status = "failed"
        result.error = str(error)
        result.sync_completed = datetime.now(timezone.utc)
        self._record_pass(
            db, kind,
            status=SyncStatusEnum.FAILED,
            completed=result.sync_completed,
            resume_page=resume_page,
            last_error=str(error),
        )
        return result

    @staticmethod
    def _already_running(result, kind: CatalogSyncKind):
        logger.info(f"{kind.value} pass already in progress, skipping")
        result.status = "already_running"
        result.sync_completed = datetime.now(timezone.utc)
        result.warnings.append(f"Another {kind.value} pass is already in progress")
        return result
