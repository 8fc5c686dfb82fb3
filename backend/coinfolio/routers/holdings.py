# backend/coinfolio/routers/holdings.py
"""
Holding endpoints: the user's positions and their ledger.

Every mutation goes through PositionMutationService, which runs the write
and the reconciliation in one transaction. Aggregates in the responses are
the reconciler's output; nothing here computes them.

Caller identity comes from X-User-Id (see dependencies.get_current_user_id).
Domain errors propagate to the global handlers in main.py.
"""

import logging

from fastapi import APIRouter, Depends, Request, Response, status
from sqlalchemy.orm import Session

from coinfolio.database import get_db
from coinfolio.dependencies import get_current_user_id, get_mutation_service, get_quote_service
from coinfolio.middleware.rate_limit import limiter, RATE_LIMIT_REFRESH, RATE_LIMIT_WRITE
from coinfolio.models import Holding, Transaction
from coinfolio.schemas.holdings import (
    HoldingDetailResponse,
    HoldingListResponse,
    HoldingResponse,
    HoldingUpdate,
    PortfolioSummaryResponse,
    QuoteRefreshResponse,
    QuoteResponse,
    TradeCreate,
    TransactionCreate,
    TransactionResponse,
)
from coinfolio.services.ledger import UNSET, PositionMutationService, TransactionEdit
from coinfolio.services.quotes import QuoteRefreshService

logger = logging.getLogger(__name__)

# =============================================================================
# ROUTER SETUP
# =============================================================================

router = APIRouter(
    prefix="/holdings",
    tags=["Holdings"],
)


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def to_holding_response(holding: Holding) -> HoldingResponse:
    coin = holding.coin
    quote = coin.quote if coin is not None else None
    return HoldingResponse(
        id=holding.id,
        coin_id=holding.coin_id,
        symbol=coin.symbol if coin is not None else None,
        name=coin.name if coin is not None else None,
        image=coin.image if coin is not None else None,
        total_quantity=holding.total_quantity,
        total_cost=holding.total_cost,
        average_price=holding.average_price,
        desired_sell_price=holding.desired_sell_price,
        quote=QuoteResponse.model_validate(quote) if quote is not None else None,
        created_at=holding.created_at,
        updated_at=holding.updated_at,
    )


def _detail_response(holding: Holding, transactions: list[Transaction]) -> HoldingDetailResponse:
    return HoldingDetailResponse(
        **to_holding_response(holding).model_dump(),
        transactions=[TransactionResponse.model_validate(t) for t in transactions],
    )


# =============================================================================
# READ ENDPOINTS
# =============================================================================

@router.get(
    "",
    response_model=HoldingListResponse,
    summary="List holdings",
)
def list_holdings(
        user_id: str = Depends(get_current_user_id),
        db: Session = Depends(get_db),
        service: PositionMutationService = Depends(get_mutation_service),
) -> HoldingListResponse:
    """
    All holdings of the caller with cached quotes and portfolio totals.

    Quotes are read from storage only; use POST /holdings/quotes/refresh
    to update them.
    """
    view = service.list_holdings(db, user_id)
    summary = view.summary
    return HoldingListResponse(
        holdings=[to_holding_response(h) for h in view.holdings],
        summary=PortfolioSummaryResponse(
            total_invested=summary.total_invested,
            total_value=summary.total_value,
            planned_profit=summary.planned_profit,
            unrealized_pnl=summary.unrealized_pnl,
            holdings_count=summary.holdings_count,
            unpriced_count=summary.unpriced_count,
        ),
    )


@router.get(
    "/{coin_id}",
    response_model=HoldingDetailResponse,
    summary="Get one holding with its transactions",
)
def get_holding(
        coin_id: str,
        user_id: str = Depends(get_current_user_id),
        db: Session = Depends(get_db),
        service: PositionMutationService = Depends(get_mutation_service),
) -> HoldingDetailResponse:
    """Raises **404** if the caller holds no position in the coin."""
    detail = service.get_holding(db, user_id, coin_id)
    return _detail_response(detail.holding, detail.transactions)


# =============================================================================
# MUTATIONS
# =============================================================================

@router.post(
    "/trades",
    response_model=HoldingResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Record a buy or sell",
)
@limiter.limit(RATE_LIMIT_WRITE)
def record_trade(
        request: Request,  # Required for rate limiting
        trade: TradeCreate,
        user_id: str = Depends(get_current_user_id),
        db: Session = Depends(get_db),
        service: PositionMutationService = Depends(get_mutation_service),
) -> HoldingResponse:
    """
    Record a trade dated now. Positive quantity buys, negative sells.

    The holding is created on the first trade of a coin.

    Raises **400** for a zero quantity or a sell above the held quantity,
    **404** if the coin is not in the catalog.
    """
    holding = service.record_trade(
        db,
        user_id=user_id,
        coin_id=trade.coin_id,
        quantity=trade.quantity,
        price=trade.price,
        wallet=trade.wallet,
    )
    return to_holding_response(holding)


@router.post(
    "/{coin_id}/transactions",
    response_model=HoldingDetailResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Add a dated transaction to a holding",
)
@limiter.limit(RATE_LIMIT_WRITE)
def add_transaction(
        request: Request,
        coin_id: str,
        body: TransactionCreate,
        user_id: str = Depends(get_current_user_id),
        db: Session = Depends(get_db),
        service: PositionMutationService = Depends(get_mutation_service),
) -> HoldingDetailResponse:
    """
    Append a transaction with an explicit date.

    Back-dated sells are accepted only if the ledger never goes negative.
    """
    service.add_transaction(
        db,
        user_id=user_id,
        coin_id=coin_id,
        quantity=body.quantity,
        price=body.price,
        date=body.date,
        wallet=body.wallet,
    )
    detail = service.get_holding(db, user_id, coin_id)
    return _detail_response(detail.holding, detail.transactions)


@router.post(
    "/{coin_id}/transactions/empty",
    response_model=HoldingDetailResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Add a placeholder transaction",
)
@limiter.limit(RATE_LIMIT_WRITE)
def add_empty_transaction(
        request: Request,
        coin_id: str,
        user_id: str = Depends(get_current_user_id),
        db: Session = Depends(get_db),
        service: PositionMutationService = Depends(get_mutation_service),
) -> HoldingDetailResponse:
    """Zero quantity, zero price, dated now; edit it later with PATCH."""
    service.add_empty_transaction(db, user_id, coin_id)
    detail = service.get_holding(db, user_id, coin_id)
    return _detail_response(detail.holding, detail.transactions)


@router.patch(
    "/{coin_id}",
    response_model=HoldingDetailResponse,
    summary="Edit transactions and the desired sell price",
)
@limiter.limit(RATE_LIMIT_WRITE)
def update_holding(
        request: Request,
        coin_id: str,
        body: HoldingUpdate,
        user_id: str = Depends(get_current_user_id),
        db: Session = Depends(get_db),
        service: PositionMutationService = Depends(get_mutation_service),
) -> HoldingDetailResponse:
    """
    Apply all edits atomically and reconcile once.

    Raises **400** if the edited ledger would sell more than was held at
    any point, **404** for an unknown holding or transaction.
    """
    edits = [
        TransactionEdit(
            transaction_id=edit.id,
            quantity=edit.quantity,
            price=edit.price,
            date=edit.date,
            wallet=edit.wallet,
        )
        for edit in body.transactions
    ]
    desired_sell_price = (
        body.desired_sell_price if "desired_sell_price" in body.model_fields_set else UNSET
    )

    service.replace_transactions(
        db, user_id, coin_id, edits, desired_sell_price=desired_sell_price
    )
    detail = service.get_holding(db, user_id, coin_id)
    return _detail_response(detail.holding, detail.transactions)


@router.delete(
    "/{coin_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a holding and its transactions",
)
@limiter.limit(RATE_LIMIT_WRITE)
def delete_holding(
        request: Request,
        coin_id: str,
        user_id: str = Depends(get_current_user_id),
        db: Session = Depends(get_db),
        service: PositionMutationService = Depends(get_mutation_service),
) -> Response:
    service.remove_holding(db, user_id, coin_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# =============================================================================
# QUOTES
# =============================================================================

@router.post(
    "/quotes/refresh",
    response_model=QuoteRefreshResponse,
    summary="Refresh stale quotes of held coins",
)
@limiter.limit(RATE_LIMIT_REFRESH)
def refresh_quotes(
        request: Request,
        user_id: str = Depends(get_current_user_id),
        db: Session = Depends(get_db),
        service: QuoteRefreshService = Depends(get_quote_service),
) -> QuoteRefreshResponse:
    """
    Fetch current prices for held coins whose quote is missing or stale.

    Raises **503** if the provider stays unavailable after retries.
    """
    result = service.refresh_user_quotes(db, user_id)
    return QuoteRefreshResponse.model_validate(result)
