# backend/tests/services/test_catalog_sync_service.py
"""
Tests for the CatalogSyncEngine.

This module tests:
- Identity sync batching, idempotence and partial failure
- Image sync paging, per-page retries and the resume cursor
- Buffered flushes that fail and are retried with later pages
- Prune with the referential guard and the one-by-one fallback
- Empty upstream and unavailable upstream handling
- Pass tracking in catalog_sync_state
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, OperationalError

from coinfolio.models import CatalogEntry, CatalogSyncKind, CatalogSyncState, CoinQuote, SyncStatusEnum
from coinfolio.services.catalog import CatalogRecord, CatalogStore, CatalogSyncEngine
from coinfolio.services.exceptions import CatalogError, RemoteUnavailableError, ValidationError
from tests.conftest import create_coin, create_holding, create_quote, make_records, no_sleep


# =============================================================================
# FIXTURES
# =============================================================================

def db_failure() -> OperationalError:
    return OperationalError("INSERT INTO coin_catalog", {}, Exception("statement timeout"))


class FlakyStore(CatalogStore):
    """CatalogStore whose writes can be made to fail for chosen rows or a number of times."""

    def __init__(self):
        self.poison_ids: set[str] = set()
        self.image_failures = 0
        self.batch_delete_failures = 0
        self.undeletable: set[str] = set()

    def upsert_identities(self, db, records):
        poisoned = [record.id for record in records if record.id in self.poison_ids]
        if poisoned:
            raise IntegrityError("INSERT INTO coin_catalog", {"id": poisoned[0]}, Exception("bad row"))
        return super().upsert_identities(db, records)

    def upsert_images(self, db, records):
        if self.image_failures > 0:
            self.image_failures -= 1
            raise db_failure()
        return super().upsert_images(db, records)

    def delete_batch(self, db, coin_ids):
        if len(coin_ids) > 1 and self.batch_delete_failures > 0:
            self.batch_delete_failures -= 1
            raise db_failure()
        if len(coin_ids) == 1 and coin_ids[0] in self.undeletable:
            raise db_failure()
        return super().delete_batch(db, coin_ids)


@pytest.fixture
def store() -> FlakyStore:
    return FlakyStore()


@pytest.fixture
def engine(mock_client, store) -> CatalogSyncEngine:
    """Engine with one record per page so page numbers are easy to follow."""
    return CatalogSyncEngine(
        client=mock_client,
        store=store,
        batch_size=50,
        page_size=1,
        max_attempts=3,
        retry_delay_seconds=0,
        page_delay_seconds=0,
        flush_every_pages=10,
        prune_batch_pause_seconds=0,
        sleep=no_sleep,
    )


def catalog_rows(db) -> list[tuple]:
    db.expire_all()
    return [
        (e.id, e.symbol, e.name, e.image)
        for e in db.scalars(select(CatalogEntry).order_by(CatalogEntry.id))
    ]


def catalog_ids(db) -> list[str]:
    return [row[0] for row in catalog_rows(db)]


# =============================================================================
# IDENTITY SYNC
# =============================================================================

class TestIdentitySync:
    """Tests for sync_catalog_identity."""

    def test_upserts_full_listing_in_batches(self, db, mock_client, engine):
        mock_client.set_identities(make_records(120))

        result = engine.sync_catalog_identity(db)

        assert result.status == "completed"
        assert result.remote_count == 120
        assert result.batches_total == 3
        assert result.records_upserted == 120
        assert len(catalog_ids(db)) == 120

    def test_running_twice_is_idempotent(self, db, mock_client, engine):
        mock_client.set_identities(make_records(75))

        engine.sync_catalog_identity(db)
        once = catalog_rows(db)
        engine.sync_catalog_identity(db)
        twice = catalog_rows(db)

        assert once == twice

    def test_updates_symbol_and_name(self, db, mock_client, engine):
        create_coin(db, coin_id="bitcoin", symbol="xbt", name="Old Name")
        mock_client.set_identities([CatalogRecord(id="bitcoin", symbol="btc", name="Bitcoin")])

        engine.sync_catalog_identity(db)

        assert catalog_rows(db) == [("bitcoin", "btc", "Bitcoin", None)]

    def test_keeps_existing_image(self, db, mock_client, engine):
        create_coin(db, coin_id="bitcoin", image="https://img.example/btc.png")
        mock_client.set_identities([CatalogRecord(id="bitcoin", symbol="btc", name="Bitcoin")])

        engine.sync_catalog_identity(db)

        assert catalog_rows(db)[0][3] == "https://img.example/btc.png"

    def test_bad_row_does_not_sink_its_batch(self, db, mock_client, store, engine):
        mock_client.set_identities(make_records(120))
        store.poison_ids = {"coin-0060"}

        result = engine.sync_catalog_identity(db)

        assert result.status == "partial"
        assert result.batches_failed == [2]
        assert result.failed_ids == ["coin-0060"]
        assert result.records_upserted == 119
        ids = catalog_ids(db)
        assert len(ids) == 119
        assert "coin-0060" not in ids
        assert {"coin-0051", "coin-0059", "coin-0061", "coin-0100"} <= set(ids)

        state = engine.get_sync_state(db, CatalogSyncKind.IDENTITY)
        assert state.status == SyncStatusEnum.PARTIAL
        assert state.summary["batches_failed"] == [2]
        assert state.summary["failed_ids"] == ["coin-0060"]

    def test_rerun_repairs_failed_row(self, db, mock_client, store, engine):
        mock_client.set_identities(make_records(120))
        store.poison_ids = {"coin-0060"}
        engine.sync_catalog_identity(db)

        store.poison_ids = set()
        result = engine.sync_catalog_identity(db)

        assert result.status == "completed"
        assert result.failed_ids == []
        assert len(catalog_ids(db)) == 120

    def test_empty_upstream_is_a_noop(self, db, mock_client, engine):
        create_coin(db, coin_id="bitcoin")
        mock_client.set_identities([])

        result = engine.sync_catalog_identity(db)

        assert result.status == "empty_upstream"
        assert result.warnings
        assert catalog_ids(db) == ["bitcoin"]

    def test_unavailable_listing_raises_and_is_recorded(self, db, mock_client, engine):
        mock_client.set_listing_error(RemoteUnavailableError("mock", "connection refused"))

        with pytest.raises(CatalogError):
            engine.sync_catalog_identity(db)

        # Retried by the client before giving up
        assert mock_client.listing_calls == mock_client.MAX_RETRY_ATTEMPTS
        state = engine.get_sync_state(db, CatalogSyncKind.IDENTITY)
        assert state.status == SyncStatusEnum.FAILED
        assert "connection refused" in state.last_error


# =============================================================================
# IMAGE SYNC
# =============================================================================

class TestImageSync:
    """Tests for sync_catalog_images."""

    def test_all_pages_persisted(self, db, mock_client, engine):
        mock_client.set_identities(make_records(20))

        result = engine.sync_catalog_images(db)

        assert result.status == "completed"
        assert result.total_pages == 20
        assert result.pages_fetched == 20
        assert result.flushes == 2
        assert result.resume_page is None
        rows = catalog_rows(db)
        assert len(rows) == 20
        assert all(image == f"https://img.example/{coin_id}.png" for coin_id, _, _, image in rows)

    def test_total_pages_rounds_up(self, db, mock_client, store):
        mock_client.set_identities(make_records(501))
        engine = CatalogSyncEngine(
            client=mock_client, store=store, page_size=250,
            page_delay_seconds=0, sleep=no_sleep,
        )

        result = engine.sync_catalog_images(db)

        assert result.total_pages == 3
        assert mock_client.page_calls == [1, 2, 3]

    def test_persistently_failing_page_is_the_resume_cursor(self, db, mock_client, engine):
        """Page 7 of 20 fails every attempt: the run continues and resumes at 7."""
        mock_client.set_identities(make_records(20))
        mock_client.fail_page(7)

        result = engine.sync_catalog_images(db)

        assert result.pages_failed == [7]
        assert result.resume_page == 7
        assert result.pages_fetched == 19
        assert result.status == "partial"
        assert mock_client.page_calls.count(7) == 3
        assert mock_client.page_calls[-1] == 20

        ids = catalog_ids(db)
        assert "coin-0007" not in ids
        assert "coin-0020" in ids

        state = engine.get_sync_state(db, CatalogSyncKind.IMAGES)
        assert state.status == SyncStatusEnum.PARTIAL
        assert state.resume_page == 7

    def test_transient_page_failure_is_retried(self, db, mock_client, engine):
        mock_client.set_identities(make_records(12))
        mock_client.fail_page(3, times=2)

        result = engine.sync_catalog_images(db)

        assert result.status == "completed"
        assert result.pages_failed == []
        assert mock_client.page_calls.count(3) == 3
        assert "coin-0003" in catalog_ids(db)

    def test_earliest_failed_page_wins(self, db, mock_client, engine):
        mock_client.set_identities(make_records(20))
        mock_client.fail_page(15)
        mock_client.fail_page(4)

        result = engine.sync_catalog_images(db)

        assert result.pages_failed == [4, 15]
        assert result.resume_page == 4

    def test_start_page_resumes_mid_run(self, db, mock_client, engine):
        mock_client.set_identities(make_records(20))

        result = engine.sync_catalog_images(db, start_page=11)

        assert mock_client.page_calls == list(range(11, 21))
        assert result.start_page == 11
        assert result.resume_page is None
        assert catalog_ids(db) == [f"coin-{i:04d}" for i in range(11, 21)]

    def test_invalid_start_page(self, db, engine):
        with pytest.raises(ValidationError):
            engine.sync_catalog_images(db, start_page=0)

    def test_failed_flush_keeps_records_for_next_flush(self, db, mock_client, store, engine):
        mock_client.set_identities(make_records(20))
        store.image_failures = 1

        result = engine.sync_catalog_images(db)

        assert result.flushes_failed == 1
        assert result.flushes == 1
        assert result.records_upserted == 20
        assert result.resume_page is None
        assert result.status == "completed"
        assert len(catalog_ids(db)) == 20

    def test_failed_last_flush_resumes_at_window_start(self, db, mock_client, store, engine):
        """Flush at page 10 fails: the buffered pages 1..10 are not lost, resume at 10 - 9."""
        mock_client.set_identities(make_records(10))
        store.image_failures = 1

        result = engine.sync_catalog_images(db)

        assert result.resume_page == 1
        assert result.status == "failed"
        assert catalog_ids(db) == []
        assert engine.get_sync_state(db, CatalogSyncKind.IMAGES).resume_page == 1

    def test_failed_flush_after_resume(self, db, mock_client, store, engine):
        mock_client.set_identities(make_records(20))
        store.image_failures = 1

        result = engine.sync_catalog_images(db, start_page=11)

        assert result.resume_page == 11

    def test_stops_when_buffer_full_and_flushes_keep_failing(self, db, mock_client, store, engine):
        mock_client.set_identities(make_records(30))
        store.image_failures = 1_000

        result = engine.sync_catalog_images(db)

        assert result.aborted
        assert result.pages_fetched == 20
        assert max(mock_client.page_calls) == 20
        assert result.resume_page == 1
        assert result.status == "failed"

    def test_skipped_page_inside_failed_flush_window(self, db, mock_client, store, engine):
        mock_client.set_identities(make_records(10))
        mock_client.fail_page(4)
        store.image_failures = 1

        result = engine.sync_catalog_images(db)

        assert result.resume_page == 1

    @pytest.mark.parametrize("crash_page", [11, 15])
    def test_unexpected_error_keeps_resume_cursor(self, db, mock_client, engine, crash_page):
        """Pages 1..10 were flushed before the crash, so the next run starts at 11."""
        mock_client.set_identities(make_records(20))
        mock_client.raise_on_page(crash_page, RuntimeError("worker killed"))

        result = engine.sync_catalog_images(db)

        assert result.status == "failed"
        assert result.flushes == 1
        assert result.resume_page == 11
        assert mock_client.page_calls.count(crash_page) == 1

        state = engine.get_sync_state(db, CatalogSyncKind.IMAGES)
        assert state.status == SyncStatusEnum.FAILED
        assert state.resume_page == 11
        assert "worker killed" in state.last_error
        assert sum(1 for row in catalog_rows(db) if row[3] is not None) == 10

    def test_empty_upstream_is_a_noop(self, db, mock_client, engine):
        mock_client.set_identities([])

        result = engine.sync_catalog_images(db)

        assert result.status == "empty_upstream"
        assert mock_client.page_calls == []

    def test_unavailable_listing_raises(self, db, mock_client, engine):
        mock_client.set_listing_error(RemoteUnavailableError("mock", "HTTP 503"))

        with pytest.raises(CatalogError):
            engine.sync_catalog_images(db)

        assert mock_client.page_calls == []


# =============================================================================
# PRUNE
# =============================================================================

class TestPrune:
    """Tests for prune_orphaned_catalog_entries."""

    @pytest.fixture
    def seeded(self, db, mock_client):
        """Five coins listed upstream, three delisted locally, one of them held."""
        records = make_records(5)
        for record in records:
            create_coin(db, coin_id=record.id, symbol=record.symbol, name=record.name)
        for coin_id in ("gone-a", "gone-b", "gone-held"):
            create_coin(db, coin_id=coin_id, symbol=coin_id, name=coin_id)
        create_holding(db, user_id="user-1", coin_id="gone-held")
        mock_client.set_identities(records)

    def test_deletes_unreferenced_orphans(self, db, seeded, engine):
        result = engine.prune_orphaned_catalog_entries(db)

        assert result.status == "completed"
        assert result.orphaned == 3
        assert result.deleted == 2
        assert result.kept_referenced == ["gone-held"]

        ids = catalog_ids(db)
        assert "gone-a" not in ids
        assert "gone-b" not in ids
        assert "gone-held" in ids
        assert "coin-0001" in ids

    def test_deletes_quotes_of_pruned_coins(self, db, seeded, engine):
        create_quote(db, "gone-a", "1.5")
        create_quote(db, "gone-held", "2.5")

        engine.prune_orphaned_catalog_entries(db)

        quotes = set(db.scalars(select(CoinQuote.coin_id)))
        assert quotes == {"gone-held"}

    def test_batch_failure_falls_back_to_single_deletes(self, db, seeded, store, mock_client):
        store.batch_delete_failures = 1
        engine = CatalogSyncEngine(
            client=mock_client, store=store, batch_size=2,
            prune_batch_pause_seconds=0, sleep=no_sleep,
        )

        result = engine.prune_orphaned_catalog_entries(db)

        assert result.deleted == 2
        assert result.failed_ids == []
        assert result.status == "completed"

    def test_single_delete_failures_are_reported(self, db, seeded, store, engine):
        store.batch_delete_failures = 1
        store.undeletable = {"gone-b"}

        result = engine.prune_orphaned_catalog_entries(db)

        assert result.deleted == 1
        assert result.failed_ids == ["gone-b"]
        assert result.status == "partial"
        assert "gone-b" in catalog_ids(db)

        state = engine.get_sync_state(db, CatalogSyncKind.PRUNE)
        assert state.status == SyncStatusEnum.PARTIAL

    def test_empty_upstream_deletes_nothing(self, db, seeded, mock_client, engine):
        mock_client.set_identities([])

        result = engine.prune_orphaned_catalog_entries(db)

        assert result.status == "empty_upstream"
        assert result.deleted == 0
        assert len(catalog_ids(db)) == 8

    def test_nothing_to_prune(self, db, mock_client, engine):
        records = make_records(3)
        for record in records:
            create_coin(db, coin_id=record.id)
        mock_client.set_identities(records)

        result = engine.prune_orphaned_catalog_entries(db)

        assert result.status == "completed"
        assert result.orphaned == 0
        assert result.deleted == 0


# =============================================================================
# PASS TRACKING
# =============================================================================

class TestPassTracking:
    """Tests for catalog_sync_state bookkeeping."""

    def test_completed_pass_is_recorded(self, db, mock_client, engine):
        mock_client.set_identities(make_records(3))

        engine.sync_catalog_identity(db)

        state = engine.get_sync_state(db, CatalogSyncKind.IDENTITY)
        assert state.status == SyncStatusEnum.COMPLETED
        assert state.last_started is not None
        assert state.last_completed is not None
        assert state.summary["records_upserted"] == 3

    def test_running_pass_is_not_started_twice(self, db, mock_client, engine):
        db.add(CatalogSyncState(
            kind=CatalogSyncKind.IDENTITY,
            status=SyncStatusEnum.IN_PROGRESS,
            last_started=datetime.now(timezone.utc),
        ))
        db.commit()
        mock_client.set_identities(make_records(3))

        result = engine.sync_catalog_identity(db)

        assert result.status == "already_running"
        assert mock_client.listing_calls == 0
        assert catalog_ids(db) == []

    def test_abandoned_pass_is_taken_over(self, db, mock_client, engine):
        db.add(CatalogSyncState(
            kind=CatalogSyncKind.PRUNE,
            status=SyncStatusEnum.IN_PROGRESS,
            last_started=datetime.now(timezone.utc) - timedelta(hours=3),
        ))
        db.commit()
        mock_client.set_identities(make_records(1))

        result = engine.prune_orphaned_catalog_entries(db)

        assert result.status == "completed"

    def test_passes_are_tracked_independently(self, db, mock_client, engine):
        db.add(CatalogSyncState(
            kind=CatalogSyncKind.IMAGES,
            status=SyncStatusEnum.IN_PROGRESS,
            last_started=datetime.now(timezone.utc),
        ))
        db.commit()
        mock_client.set_identities(make_records(2))

        assert engine.sync_catalog_identity(db).status == "completed"
        assert engine.sync_catalog_images(db).status == "already_running"

    def test_list_sync_states(self, db, mock_client, engine):
        mock_client.set_identities(make_records(2))
        engine.sync_catalog_identity(db)
        engine.prune_orphaned_catalog_entries(db)

        kinds = {state.kind for state in engine.list_sync_states(db)}

        assert kinds == {CatalogSyncKind.IDENTITY, CatalogSyncKind.PRUNE}
