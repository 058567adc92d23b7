"""Stored billing cycles: scope ingestion, reconciliation, and scoped views"""

import logging
import uuid
from typing import Iterable, List

from sqlalchemy.orm import Session

from cardsync.domain.institutions import classify
from cardsync.domain.models import CycleRecord
from cardsync.domain.reconciliation import duplicates_of, limit_cycles, recent_scope, reconcile_cycles, totals
from cardsync.infrastructure.database.repositories import BillingCycleRepository, CardRepository

logger = logging.getLogger(__name__)


class BillingCycleService:
    def __init__(self, db: Session):
        self.db = db
        self.cycles = BillingCycleRepository(db)
        self.cards = CardRepository(db)

    def _persist_merged_totals(self, stored: List[CycleRecord], kept: List[CycleRecord]) -> None:
        by_id = {r.id: r for r in stored}
        for record in kept:
            original = by_id.get(record.id)
            if original is not None and totals(original) != totals(record):
                self.cycles.update_totals(record)

    def reconcile_card(self, card_id: uuid.UUID) -> List[CycleRecord]:
        """Collapse stored duplicates for one card down to the richest record per cycle"""
        stored = self.cycles.list_for_card(card_id)
        kept = reconcile_cycles(stored)
        self._persist_merged_totals(stored, kept)
        losers = duplicates_of(stored, kept)
        if losers:
            removed = self.cycles.delete_ids(r.id for r in losers)
            logger.info(
                f"Removed {removed} duplicate billing cycles",
                extra={"card_id": str(card_id), "step": "reconcile_cycles"},
            )
        return kept

    def ingest_scopes(self, card_id: uuid.UUID, *scopes: Iterable[CycleRecord]) -> List[CycleRecord]:
        """
        Merge cycle records from one or more fetch scopes (recent first, then
        full history) with what is already stored, persisting the winners.
        """
        stored = self.cycles.list_for_card(card_id)
        # Ties keep the stored record
        kept = reconcile_cycles(stored, *([r for r in scope if r.card_id == card_id] for scope in scopes))

        for record in kept:
            if record.id is None:
                record.id = self.cycles.add(record).id
        self._persist_merged_totals(stored, kept)
        self.cycles.delete_ids(r.id for r in duplicates_of(stored, kept))
        self.db.flush()
        return kept

    def view(self, card_id: uuid.UUID, scope: str = "full") -> List[CycleRecord]:
        """
        Cycles as the caller should see them: the newest two per card for the
        recent scope, everything (capped for restricted-history cards) otherwise.
        """
        cycles = reconcile_cycles(self.cycles.list_for_card(card_id))
        if scope == "recent":
            return recent_scope(cycles)
        card = self.cards.get(card_id)
        institution = card.connection.institution_name if card is not None and card.connection else None
        policy = classify(institution, card.name if card is not None else None)
        return limit_cycles(cycles, policy.max_cycles)
