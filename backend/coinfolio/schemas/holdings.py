# backend/coinfolio/schemas/holdings.py
"""
Pydantic schemas for holdings and their transactions.

Request bodies carry signed quantities: positive buys, negative sells.
Aggregates (total_quantity, total_cost, average_price) only appear in
responses; clients never send them.

IMPORTANT: All ledger values use Decimal. Never use float for money!
"""

from datetime import datetime, timezone
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from coinfolio.models import Wallet


def _as_utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# =============================================================================
# REQUESTS
# =============================================================================

class TradeCreate(BaseModel):
    """Body of POST /holdings/trades."""

    coin_id: str = Field(
        ...,
        min_length=1,
        max_length=200,
        description="Catalog id of the coin",
        examples=["bitcoin"]
    )
    quantity: Decimal = Field(
        ...,
        max_digits=30,
        decimal_places=12,
        description="Signed quantity: positive buys, negative sells",
        examples=["0.5", "-0.25"]
    )
    price: Decimal = Field(
        ...,
        ge=0,
        max_digits=30,
        decimal_places=12,
        description="Unit price in USD (0 for airdrops)",
        examples=["42000", "0"]
    )
    wallet: Wallet = Field(default=Wallet.OTHER)

    @field_validator("coin_id")
    @classmethod
    def normalize_coin_id(cls, v: str) -> str:
        return v.strip().lower()


class TransactionCreate(BaseModel):
    """Body of POST /holdings/{coin_id}/transactions."""

    quantity: Decimal = Field(..., max_digits=30, decimal_places=12)
    price: Decimal = Field(..., ge=0, max_digits=30, decimal_places=12)
    date: datetime = Field(
        ...,
        description="When the trade happened; replay order follows this date",
        examples=["2026-01-15T14:30:00Z"]
    )
    wallet: Wallet = Field(default=Wallet.OTHER)

    @field_validator("date")
    @classmethod
    def ensure_timezone(cls, v: datetime) -> datetime:
        return _as_utc(v)


class TransactionEditRequest(BaseModel):
    """New values for one transaction; omitted fields are kept."""

    id: int = Field(..., gt=0)
    quantity: Decimal | None = Field(default=None, max_digits=30, decimal_places=12)
    price: Decimal | None = Field(default=None, ge=0, max_digits=30, decimal_places=12)
    date: datetime | None = None
    wallet: Wallet | None = None

    @field_validator("date")
    @classmethod
    def ensure_timezone(cls, v: datetime | None) -> datetime | None:
        return _as_utc(v)


class HoldingUpdate(BaseModel):
    """
    Body of PATCH /holdings/{coin_id}.

    `desired_sell_price` is only touched when present in the body; send
    null to clear it.
    """

    transactions: list[TransactionEditRequest] = Field(default_factory=list, max_length=500)
    desired_sell_price: Decimal | None = Field(default=None, ge=0, max_digits=30, decimal_places=12)


# =============================================================================
# RESPONSES
# =============================================================================

class TransactionResponse(BaseModel):
    id: int
    holding_id: int
    quantity: Decimal
    price: Decimal
    date: datetime
    wallet: Wallet
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class UserTransactionResponse(TransactionResponse):
    """Transaction listed across holdings, tagged with its coin."""

    coin_id: str


class QuoteResponse(BaseModel):
    current_price: Decimal | None = None
    price_change_percentage_7d: Decimal | None = None
    updated_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class HoldingResponse(BaseModel):
    id: int
    coin_id: str
    symbol: str | None = None
    name: str | None = None
    image: str | None = None
    total_quantity: Decimal
    total_cost: Decimal
    average_price: Decimal
    desired_sell_price: Decimal | None = None
    quote: QuoteResponse | None = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class HoldingDetailResponse(HoldingResponse):
    transactions: list[TransactionResponse] = Field(default_factory=list)


class PortfolioSummaryResponse(BaseModel):
    total_invested: Decimal
    total_value: Decimal
    planned_profit: Decimal
    unrealized_pnl: Decimal
    holdings_count: int
    unpriced_count: int

    model_config = ConfigDict(from_attributes=True)


class HoldingListResponse(BaseModel):
    holdings: list[HoldingResponse]
    summary: PortfolioSummaryResponse


class QuoteRefreshResponse(BaseModel):
    status: str = Field(description="completed, up_to_date, or empty_upstream")
    requested: list[str] = Field(default_factory=list)
    updated: list[str] = Field(default_factory=list)
    missing: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)
