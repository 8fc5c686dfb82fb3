# backend/coinfolio/services/catalog/buffer.py
"""
Bounded page buffer for the image sync.

Fetched market pages accumulate here until the flush cadence is reached.
The buffer itself is immutable: every operation returns a new PageBuffer,
and the flush-or-retain decision is a pair of pure functions:

- decide_flush(page, total_pages, flush_every_pages) -> bool
- settle_flush(buffer, page, succeeded) -> PageBuffer

A failed flush keeps the buffer, so the next flush retries the same
records together with newer pages. Once the retained buffer reaches its
capacity the engine stops fetching and reports `buffer.window_start` as the
page to resume from.
"""

from dataclasses import dataclass, field, replace

from coinfolio.services.catalog.base import CatalogRecord


@dataclass(frozen=True)
class PageBuffer:
    """
    Pages fetched since the last successful flush.

    Attributes:
        window_start: First page not yet persisted (resume point if the
            buffered records are lost)
        capacity: Maximum number of pages held before the engine must stop
        pages: Page numbers currently buffered (skipped pages are absent)
        records: Records of the buffered pages, in fetch order
    """

    window_start: int
    capacity: int
    pages: tuple[int, ...] = field(default_factory=tuple)
    records: tuple[CatalogRecord, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        if self.window_start < 1:
            raise ValueError("window_start must be >= 1")
        if self.capacity < 1:
            raise ValueError("capacity must be >= 1")

    @property
    def is_empty(self) -> bool:
        return not self.pages

    @property
    def is_full(self) -> bool:
        return len(self.pages) >= self.capacity

    @property
    def record_count(self) -> int:
        return len(self.records)

    def with_page(self, page: int, records: list[CatalogRecord]) -> "PageBuffer":
        """Return a buffer with `page` appended. Raises OverflowError when full."""
        if self.is_full:
            raise OverflowError(
                f"Page buffer full ({self.capacity} pages since page {self.window_start})"
            )
        return replace(
            self,
            pages=self.pages + (page,),
            records=self.records + tuple(records),
        )

    def cleared(self, next_page: int) -> "PageBuffer":
        return PageBuffer(window_start=max(1, next_page), capacity=self.capacity)


def decide_flush(page: int, total_pages: int, flush_every_pages: int) -> bool:
    """
    Whether the buffer must be flushed after `page` was processed.

    Flush on every `flush_every_pages`-th page and on the last page.
    """
    if flush_every_pages < 1:
        raise ValueError("flush_every_pages must be >= 1")
    return page % flush_every_pages == 0 or page >= total_pages


def settle_flush(buffer: PageBuffer, page: int, succeeded: bool) -> PageBuffer:
    """
    Buffer state after a flush attempted at `page`.

    Success empties the buffer and moves the window past `page`; failure
    retains every buffered record.
    """
    if succeeded:
        return buffer.cleared(page + 1)
    return buffer
