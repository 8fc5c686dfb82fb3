# backend/tests/services/test_page_buffer.py
"""
Tests for the image sync page buffer and its flush decisions.
"""

import pytest

from coinfolio.services.catalog import CatalogRecord, PageBuffer, decide_flush, settle_flush


def records(page: int, count: int = 2) -> list[CatalogRecord]:
    return [
        CatalogRecord(id=f"p{page}-{i}", symbol="s", name="n", image="img")
        for i in range(count)
    ]


class TestDecideFlush:
    """Flush every N pages and on the last page."""

    @pytest.mark.parametrize("page,expected", [
        (1, False),
        (9, False),
        (10, True),
        (11, False),
        (20, True),
        (23, True),
    ])
    def test_cadence_and_last_page(self, page, expected):
        assert decide_flush(page, total_pages=23, flush_every_pages=10) is expected

    def test_single_page_run(self):
        assert decide_flush(1, total_pages=1, flush_every_pages=10)

    def test_invalid_cadence(self):
        with pytest.raises(ValueError):
            decide_flush(1, total_pages=5, flush_every_pages=0)


class TestPageBuffer:
    """Tests for PageBuffer."""

    def test_starts_empty(self):
        buffer = PageBuffer(window_start=1, capacity=3)

        assert buffer.is_empty
        assert not buffer.is_full
        assert buffer.record_count == 0

    def test_with_page_returns_new_buffer(self):
        empty = PageBuffer(window_start=1, capacity=3)

        buffer = empty.with_page(1, records(1))

        assert empty.is_empty
        assert buffer.pages == (1,)
        assert buffer.record_count == 2

    def test_full_buffer_rejects_pages(self):
        buffer = PageBuffer(window_start=1, capacity=2)
        buffer = buffer.with_page(1, records(1)).with_page(2, records(2))

        assert buffer.is_full
        with pytest.raises(OverflowError):
            buffer.with_page(3, records(3))

    def test_skipped_pages_are_absent(self):
        buffer = PageBuffer(window_start=5, capacity=10)
        buffer = buffer.with_page(5, records(5)).with_page(7, records(7))

        assert buffer.pages == (5, 7)
        assert buffer.window_start == 5

    @pytest.mark.parametrize("window_start,capacity", [(0, 1), (1, 0)])
    def test_invalid_arguments(self, window_start, capacity):
        with pytest.raises(ValueError):
            PageBuffer(window_start=window_start, capacity=capacity)


class TestSettleFlush:
    """Successful flushes clear the buffer, failed ones retain it."""

    def test_success_moves_window_past_page(self):
        buffer = PageBuffer(window_start=1, capacity=20).with_page(10, records(10))

        settled = settle_flush(buffer, page=10, succeeded=True)

        assert settled.is_empty
        assert settled.window_start == 11
        assert settled.capacity == 20

    def test_failure_retains_records(self):
        buffer = PageBuffer(window_start=1, capacity=20)
        for page in range(1, 11):
            buffer = buffer.with_page(page, records(page))

        settled = settle_flush(buffer, page=10, succeeded=False)

        assert settled is buffer
        assert settled.record_count == 20
        # Resume point is the page just flushed minus nine
        assert settled.window_start == 10 - 9
