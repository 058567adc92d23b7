"""Card endpoints: manual credit limit override"""

import uuid
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from cardsync.api.v1.schemas import CardLimitResponse, ManualLimitRequest
from cardsync.domain.exceptions import CardNotFoundError
from cardsync.infrastructure.database.models import Card
from cardsync.infrastructure.database.session import get_db
from cardsync.services.cards import CardService

router = APIRouter()


def parse_card_id(card_id: str) -> uuid.UUID:
    try:
        return uuid.UUID(card_id)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid card ID format")


def to_limit_response(card: Card) -> CardLimitResponse:
    return CardLimitResponse(
        card_id=str(card.id),
        credit_limit=card.credit_limit,
        credit_limit_source=card.credit_limit_source,
        manual_limit_enabled=card.manual_limit_enabled,
        manual_credit_limit=card.manual_credit_limit,
    )


@router.put("/cards/{card_id}/manual-limit", response_model=CardLimitResponse)
def set_manual_limit(card_id: str, request_body: ManualLimitRequest, db: Session = Depends(get_db)):
    """
    Set a manual credit limit for a card whose institution reports none.

    Aggregator limits still take precedence and clear the override on the
    next sync that finds one.
    """
    try:
        card = CardService(db).set_manual_limit(parse_card_id(card_id), request_body.manual_credit_limit)
    except CardNotFoundError:
        raise HTTPException(status_code=404, detail="Card not found")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return to_limit_response(card)


@router.delete("/cards/{card_id}/manual-limit", response_model=CardLimitResponse)
def clear_manual_limit(card_id: str, db: Session = Depends(get_db)):
    try:
        card = CardService(db).clear_manual_limit(parse_card_id(card_id))
    except CardNotFoundError:
        raise HTTPException(status_code=404, detail="Card not found")
    return to_limit_response(card)
