"""GET /v1/cards/{card_id}/billing-cycles - Reconciled billing cycles for a card"""

import uuid
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from cardsync.api.v1.schemas import BillingCycleSchema, BillingCyclesResponse
from cardsync.infrastructure.database.repositories import CardRepository
from cardsync.infrastructure.database.session import get_db
from cardsync.services.cycles import BillingCycleService

router = APIRouter()


@router.get("/cards/{card_id}/billing-cycles", response_model=BillingCyclesResponse)
def get_billing_cycles(
    card_id: str,
    scope: str = Query("full", pattern="^(recent|full)$"),
    db: Session = Depends(get_db),
):
    """
    One cycle per (start, end), newest first.

    Returns:
        The newest two cycles for scope=recent, the full history otherwise
    """
    try:
        card_uuid = uuid.UUID(card_id)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid card ID format")

    if CardRepository(db).get(card_uuid) is None:
        raise HTTPException(status_code=404, detail="Card not found")

    cycles = BillingCycleService(db).view(card_uuid, scope)
    return BillingCyclesResponse(
        card_id=card_id,
        scope=scope,
        cycles=[
            BillingCycleSchema(
                start_date=c.start_date,
                end_date=c.end_date,
                total_spend=c.total_spend,
                transaction_count=c.transaction_count,
                statement_balance=c.statement_balance,
                minimum_payment=c.minimum_payment,
                due_date=c.due_date,
                payment_status=c.payment_status.value,
            )
            for c in cycles
        ],
    )
