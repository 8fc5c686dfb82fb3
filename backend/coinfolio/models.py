# backend/coinfolio/models.py
import enum
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    CheckConstraint, DateTime, Enum, ForeignKey, Index, Integer, JSON, Numeric, String, UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


class Wallet(str, enum.Enum):
    """Where a transaction was executed. Informational only, never used in ledger math."""
    BINANCE = "BINANCE"
    GATE = "GATE"
    LEDGER = "LEDGER"
    MEXC = "MEXC"
    PROBIT_GLOBAL = "PROBIT_GLOBAL"
    OTHER = "OTHER"


class SyncStatusEnum(str, enum.Enum):
    """
    Status values for catalog sync passes.

    State transitions:
        NEVER → IN_PROGRESS → COMPLETED
        NEVER → IN_PROGRESS → PARTIAL (some batches or pages failed)
        NEVER → IN_PROGRESS → FAILED (remote listing unavailable)

        Any state except IN_PROGRESS → IN_PROGRESS (when a pass is triggered)
    """
    NEVER = "NEVER"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"


class CatalogSyncKind(str, enum.Enum):
    IDENTITY = "identity"
    IMAGES = "images"
    PRUNE = "prune"


class CatalogEntry(Base):
    """
    Global catalog of coins shared by all users.

    `id` is the remote provider's stable identifier (e.g. "bitcoin") and is
    the join key used by holdings. Rows are written only by the catalog sync
    job and deleted only by the prune pass when no holding references them.
    """
    __tablename__ = "coin_catalog"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    symbol: Mapped[str] = mapped_column(String, index=True)
    name: Mapped[str] = mapped_column(String, index=True)
    image: Mapped[str | None] = mapped_column(String, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    holdings: Mapped[list["Holding"]] = relationship(back_populates="coin")
    quote: Mapped["CoinQuote | None"] = relationship(back_populates="coin", uselist=False)


class Holding(Base):
    """
    A user's aggregate position in one coin.

    total_quantity, total_cost and average_price are outputs of the ledger
    reconciler and are never written directly by request handlers.
    total_cost is the remaining cost basis of the units still held.
    """
    __tablename__ = "holdings"
    __table_args__ = (
        UniqueConstraint('user_id', 'coin_id', name='uq_holding_user_coin'),
        CheckConstraint('total_quantity >= 0', name='ck_holding_quantity_non_negative'),
    )

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    user_id: Mapped[str] = mapped_column(String, index=True)
    coin_id: Mapped[str] = mapped_column(ForeignKey("coin_catalog.id"), index=True)

    # Numeric(30, 12) leaves room for sub-satoshi prices and large supplies
    total_quantity: Mapped[Decimal] = mapped_column(Numeric(30, 12), default=Decimal(0))
    total_cost: Mapped[Decimal] = mapped_column(Numeric(30, 12), default=Decimal(0))
    average_price: Mapped[Decimal] = mapped_column(Numeric(30, 12), default=Decimal(0))

    # User-set target, independent of ledger math
    desired_sell_price: Mapped[Decimal | None] = mapped_column(Numeric(30, 12), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    coin: Mapped["CatalogEntry"] = relationship(back_populates="holdings")
    transactions: Mapped[list["Transaction"]] = relationship(
        back_populates="holding",
        cascade="all, delete-orphan",
    )


class Transaction(Base):
    """
    One signed ledger entry: positive quantity acquires, negative disposes.

    Price may be zero (airdrops, quick-add placeholders).
    """
    __tablename__ = "holding_transactions"
    __table_args__ = (
        # Replay order for the reconciler: "all entries of holding X by date"
        Index('ix_holding_transaction_holding_date', 'holding_id', 'date'),
    )

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    holding_id: Mapped[int] = mapped_column(ForeignKey("holdings.id", ondelete="CASCADE"), index=True)
    quantity: Mapped[Decimal] = mapped_column(Numeric(30, 12))
    price: Mapped[Decimal] = mapped_column(Numeric(30, 12), default=Decimal(0))
    date: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    wallet: Mapped[Wallet] = mapped_column(Enum(Wallet), default=Wallet.OTHER)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    holding: Mapped["Holding"] = relationship(back_populates="transactions")


class CoinQuote(Base):
    """
    Latest market quote for a catalog coin.

    Written only by the explicit quote refresh; reads never hit the network.
    """
    __tablename__ = "coin_quotes"

    coin_id: Mapped[str] = mapped_column(ForeignKey("coin_catalog.id", ondelete="CASCADE"), primary_key=True)
    current_price: Mapped[Decimal | None] = mapped_column(Numeric(30, 12), nullable=True)
    price_change_percentage_7d: Mapped[Decimal | None] = mapped_column(Numeric(18, 8), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    coin: Mapped["CatalogEntry"] = relationship(back_populates="quote")


class CatalogSyncState(Base):
    """
    Tracks the last run of each catalog sync pass.

    `resume_page` holds the page an image sync should restart from, so a
    scheduler can resume without reading logs.
    """
    __tablename__ = "catalog_sync_state"

    kind: Mapped[CatalogSyncKind] = mapped_column(Enum(CatalogSyncKind), primary_key=True)
    status: Mapped[SyncStatusEnum] = mapped_column(Enum(SyncStatusEnum), default=SyncStatusEnum.NEVER)

    last_started: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_completed: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resume_page: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Example: {"processed": 14012, "failed_batches": [3], "pages_failed": [7]}
    summary: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    last_error: Mapped[str | None] = mapped_column(String, nullable=True)

    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
