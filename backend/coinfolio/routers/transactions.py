# backend/coinfolio/routers/transactions.py
"""
Transaction endpoints across all of the caller's holdings.

Transactions are created and edited through /holdings; this router lists
them and deletes single rows by id.
"""

import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from coinfolio.database import get_db
from coinfolio.dependencies import get_current_user_id, get_mutation_service
from coinfolio.middleware.rate_limit import limiter, RATE_LIMIT_WRITE
from coinfolio.schemas.holdings import HoldingResponse, UserTransactionResponse
from coinfolio.services.ledger import PositionMutationService
from coinfolio.routers.holdings import to_holding_response

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/transactions",
    tags=["Transactions"],
)


@router.get(
    "",
    response_model=list[UserTransactionResponse],
    summary="List all transactions, newest first",
)
def list_transactions(
        user_id: str = Depends(get_current_user_id),
        db: Session = Depends(get_db),
        service: PositionMutationService = Depends(get_mutation_service),
) -> list[UserTransactionResponse]:
    return [
        UserTransactionResponse(
            id=t.id,
            holding_id=t.holding_id,
            coin_id=t.holding.coin_id,
            quantity=t.quantity,
            price=t.price,
            date=t.date,
            wallet=t.wallet,
            created_at=t.created_at,
        )
        for t in service.list_transactions(db, user_id)
    ]


@router.delete(
    "/{transaction_id}",
    response_model=HoldingResponse,
    summary="Delete a transaction",
)
@limiter.limit(RATE_LIMIT_WRITE)
def delete_transaction(
        request: Request,  # Required for rate limiting
        transaction_id: int,
        user_id: str = Depends(get_current_user_id),
        db: Session = Depends(get_db),
        service: PositionMutationService = Depends(get_mutation_service),
) -> HoldingResponse:
    """
    Delete one transaction and return the reconciled holding.

    Raises **404** for an unknown id or another user's transaction, **400**
    if a later sell depends on the deleted row.
    """
    holding = service.remove_transaction(db, user_id, transaction_id)
    return to_holding_response(holding)
