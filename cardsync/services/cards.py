"""User-maintained card settings"""

import logging
import math
import uuid

from sqlalchemy.orm import Session

from cardsync.domain.exceptions import CardNotFoundError
from cardsync.infrastructure.database.models import Card
from cardsync.infrastructure.database.repositories import CardRepository

logger = logging.getLogger(__name__)

MANUAL_LIMIT_SOURCE = "manual_override"


class CardService:
    def __init__(self, db: Session):
        self.db = db
        self.cards = CardRepository(db)

    def _get(self, card_id: uuid.UUID) -> Card:
        card = self.cards.get(card_id)
        if card is None:
            raise CardNotFoundError(f"Card {card_id} not found")
        return card

    def set_manual_limit(self, card_id: uuid.UUID, value: float) -> Card:
        """
        Store a user-supplied credit limit. It becomes the effective limit
        only while the aggregator reports none; the next sync that finds a
        valid aggregator limit clears it.
        """
        if not isinstance(value, (int, float)) or not math.isfinite(value) or value <= 0:
            raise ValueError("Manual credit limit must be a positive number")

        card = self._get(card_id)
        card.manual_limit_enabled = True
        card.manual_credit_limit = float(value)
        if card.credit_limit is None or card.credit_limit_source == MANUAL_LIMIT_SOURCE:
            card.credit_limit = float(value)
            card.credit_limit_source = MANUAL_LIMIT_SOURCE
        self.db.commit()
        logger.info("Manual credit limit set", extra={"card_id": str(card.id), "manual_limit": value})
        return card

    def clear_manual_limit(self, card_id: uuid.UUID) -> Card:
        card = self._get(card_id)
        card.manual_limit_enabled = False
        card.manual_credit_limit = None
        if card.credit_limit_source == MANUAL_LIMIT_SOURCE:
            card.credit_limit = None
            card.credit_limit_source = None
        self.db.commit()
        logger.info("Manual credit limit removed", extra={"card_id": str(card.id)})
        return card
