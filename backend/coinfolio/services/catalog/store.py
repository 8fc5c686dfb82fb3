# backend/coinfolio/services/catalog/store.py
"""
Persistence helpers for the coin catalog.

All methods take the caller's Session and never commit: the sync engine
decides where transaction boundaries go (one per identity batch, one per
buffered image flush, one per prune batch).

Upserts use the dialect's INSERT ... ON CONFLICT DO UPDATE (PostgreSQL in
production, SQLite in tests), falling back to get-then-add elsewhere.
"""

import logging
from datetime import datetime, timezone
from typing import Iterable, Sequence

from sqlalchemy import delete, exists, func, or_, select
from sqlalchemy.orm import Session

from coinfolio.models import CatalogEntry, CoinQuote, Holding
from coinfolio.services.catalog.base import CatalogRecord
from coinfolio.utils.sql import dialect_insert, escape_like_pattern

logger = logging.getLogger(__name__)


def chunked(items: Sequence, size: int) -> list[Sequence]:
    """Split a sequence into consecutive slices of at most `size` items."""
    if size < 1:
        raise ValueError("size must be at least 1")
    return [items[i:i + size] for i in range(0, len(items), size)]


class CatalogStore:
    """
    Read/write access to `coin_catalog`.

    Example:
        store = CatalogStore()
        store.upsert_identities(db, records[:50])
        db.commit()
    """

    # =========================================================================
    # UPSERTS
    # =========================================================================

    def upsert_identities(self, db: Session, records: Sequence[CatalogRecord]) -> int:
        """
        Insert new coins and refresh symbol/name of existing ones.

        The image column is left untouched on existing rows.

        Returns:
            Number of records sent to the database
        """
        now = datetime.now(timezone.utc)
        rows = [
            {"id": r.id, "symbol": r.symbol, "name": r.name, "created_at": now, "updated_at": now}
            for r in self._dedupe(records)
        ]
        return self._upsert(db, rows, update_columns=("symbol", "name"), now=now)

    def upsert_images(self, db: Session, records: Sequence[CatalogRecord]) -> int:
        """
        Set the image of existing coins; create unknown coins in full.

        Returns:
            Number of records sent to the database
        """
        now = datetime.now(timezone.utc)
        rows = [
            {
                "id": r.id,
                "symbol": r.symbol,
                "name": r.name,
                "image": r.image,
                "created_at": now,
                "updated_at": now,
            }
            for r in self._dedupe(records)
        ]
        return self._upsert(db, rows, update_columns=("image",), now=now)

    def _upsert(
            self,
            db: Session,
            rows: list[dict],
            update_columns: tuple[str, ...],
            now: datetime,
    ) -> int:
        if not rows:
            return 0

        insert_fn = dialect_insert(db)
        if insert_fn is None:
            for row in rows:
                existing = db.get(CatalogEntry, row["id"])
                if existing is None:
                    db.add(CatalogEntry(**row))
                else:
                    for column in update_columns:
                        setattr(existing, column, row[column])
            db.flush()
            return len(rows)

        stmt = insert_fn(CatalogEntry).values(rows)
        update_set = {column: getattr(stmt.excluded, column) for column in update_columns}
        update_set["updated_at"] = now
        stmt = stmt.on_conflict_do_update(index_elements=["id"], set_=update_set)
        db.execute(stmt)
        return len(rows)

    @staticmethod
    def _dedupe(records: Iterable[CatalogRecord]) -> list[CatalogRecord]:
        # ON CONFLICT cannot touch the same row twice in one statement; last wins
        by_id: dict[str, CatalogRecord] = {}
        for record in records:
            by_id[record.id] = record
        return list(by_id.values())

    # =========================================================================
    # READS
    # =========================================================================

    def list_ids(self, db: Session) -> set[str]:
        return set(db.scalars(select(CatalogEntry.id)))

    def referenced_ids(self, db: Session) -> set[str]:
        """Coin ids that at least one holding points at."""
        return set(db.scalars(select(Holding.coin_id).distinct()))

    def search(
            self,
            db: Session,
            query: str | None = None,
            offset: int = 0,
            limit: int = 50,
    ) -> tuple[list[CatalogEntry], int]:
        """
        Page through the catalog, optionally filtered by symbol or name.

        Returns:
            Tuple of (entries, total matching count)
        """
        stmt = select(CatalogEntry)
        if query:
            pattern = f"%{escape_like_pattern(query.strip())}%"
            stmt = stmt.where(or_(
                CatalogEntry.symbol.ilike(pattern, escape="\\"),
                CatalogEntry.name.ilike(pattern, escape="\\"),
            ))

        total = db.scalar(select(func.count()).select_from(stmt.subquery())) or 0
        entries = db.scalars(
            stmt.order_by(CatalogEntry.symbol, CatalogEntry.id).offset(offset).limit(limit)
        ).all()
        return list(entries), total

    # =========================================================================
    # DELETES
    # =========================================================================

    def delete_batch(self, db: Session, coin_ids: Sequence[str]) -> int:
        """
        Delete catalog rows by id in one statement.

        Rows referenced by a holding are excluded by the statement itself,
        so a holding created after the caller computed `coin_ids` is still
        protected.

        Returns:
            Number of catalog rows deleted
        """
        if not coin_ids:
            return 0

        unreferenced = ~exists(select(Holding.id).where(Holding.coin_id == CatalogEntry.id))

        db.execute(
            delete(CoinQuote)
            .where(CoinQuote.coin_id.in_(coin_ids))
            .where(~exists(select(Holding.id).where(Holding.coin_id == CoinQuote.coin_id)))
            .execution_options(synchronize_session=False)
        )
        result = db.execute(
            delete(CatalogEntry)
            .where(CatalogEntry.id.in_(coin_ids))
            .where(unreferenced)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    def delete_one(self, db: Session, coin_id: str) -> bool:
        """Delete a single unreferenced catalog row. Returns True if a row was removed."""
        return self.delete_batch(db, [coin_id]) == 1
