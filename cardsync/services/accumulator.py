"""Transaction accumulation - upsert by external id, never delete"""

import logging
import uuid
from datetime import date
from typing import Any, Dict, Iterable, List

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from cardsync.config import settings
from cardsync.domain.exceptions import InvalidTransactionDataError
from cardsync.domain.models import AccumulationReport
from cardsync.domain.transactions import normalize_transaction
from cardsync.infrastructure.database.models import Connection
from cardsync.infrastructure.database.repositories import CardRepository, TransactionRepository
from cardsync.infrastructure.observability.metrics import (
    transactions_skipped_counter,
    transactions_upserted_counter,
)

logger = logging.getLogger(__name__)


class TransactionAccumulator:
    """
    Stores fetched transactions so the union of every sync window survives.

    - Owning card resolved by external account id; unresolved rows are kept
      with a NULL card
    - Bad amounts or missing identifiers skip only that record
    - Zero amounts are stored and flagged for review
    - Batched upsert, falling back to one record at a time if a batch fails
    """

    def __init__(self, db: Session, amount_ceiling: float | None = None, batch_size: int | None = None):
        self.db = db
        self.amount_ceiling = amount_ceiling or settings.amount_sanity_ceiling
        self.batch_size = batch_size or settings.transaction_batch_size
        self.transactions = TransactionRepository(db)
        self.cards = CardRepository(db)

    def _account_map(self, connection_id: uuid.UUID) -> Dict[str, uuid.UUID]:
        return {card.external_account_id: card.id for card in self.cards.list_for_connection(connection_id)}

    def build_rows(
        self, connection: Connection, raw_transactions: Iterable[Dict[str, Any]], report: AccumulationReport
    ) -> List[Dict[str, Any]]:
        account_to_card = self._account_map(connection.id)
        rows: Dict[str, Dict[str, Any]] = {}

        for raw in raw_transactions:
            try:
                txn = normalize_transaction(raw, self.amount_ceiling)
            except InvalidTransactionDataError as e:
                report.skipped += 1
                transactions_skipped_counter.labels(reason="invalid_record").inc()
                logger.warning(
                    f"Skipping transaction: {e}",
                    extra={"connection_id": str(connection.id), "transaction_id": raw.get("transaction_id")},
                )
                continue

            card_id = account_to_card.get(txn.external_account_id)
            if card_id is None:
                report.unresolved_cards += 1
                logger.info(
                    f"No card for account {txn.external_account_id}; storing transaction unlinked",
                    extra={"connection_id": str(connection.id), "transaction_id": txn.external_id},
                )
            if txn.needs_review:
                report.flagged += 1
                logger.warning(
                    "Zero-amount transaction flagged for review",
                    extra={"connection_id": str(connection.id), "transaction_id": txn.external_id},
                )

            rows[txn.external_id] = {
                "external_id": txn.external_id,
                "connection_id": connection.id,
                "card_id": card_id,
                "external_account_id": txn.external_account_id,
                "amount": txn.amount,
                "date": txn.date,
                "authorized_date": txn.authorized_date,
                "name": txn.name,
                "merchant_name": txn.merchant_name,
                "category": txn.category,
                "subcategory": txn.subcategory,
                "category_id": txn.category_id,
                "iso_currency_code": txn.iso_currency_code,
                "pending": txn.pending,
                "is_payment": txn.is_payment,
                "needs_review": txn.needs_review,
            }
        return list(rows.values())

    def _write(self, rows: List[Dict[str, Any]], report: AccumulationReport) -> None:
        for offset in range(0, len(rows), self.batch_size):
            batch = rows[offset:offset + self.batch_size]
            try:
                with self.db.begin_nested():
                    report.upserted += self.transactions.upsert_batch(batch)
                continue
            except SQLAlchemyError as e:
                report.fallback_used = True
                logger.error(
                    f"Batch upsert of {len(batch)} transactions failed, retrying one by one: {e}",
                    extra={"step": "accumulate", "batch_size": len(batch)},
                )

            for row in batch:
                try:
                    with self.db.begin_nested():
                        self.transactions.upsert_one(row)
                    report.upserted += 1
                except SQLAlchemyError as e:
                    report.skipped += 1
                    transactions_skipped_counter.labels(reason="write_failed").inc()
                    logger.error(
                        f"Could not store transaction {row['external_id']}: {e}",
                        extra={"step": "accumulate", "transaction_id": row["external_id"]},
                    )

    def accumulate(
        self, connection: Connection, raw_transactions: Iterable[Dict[str, Any]], window_start: date
    ) -> AccumulationReport:
        report = AccumulationReport()
        rows = self.build_rows(connection, raw_transactions, report)
        self._write(rows, report)
        transactions_upserted_counter.inc(report.upserted)

        report.preserved_older = self.transactions.count_older_than(connection.id, window_start)
        logger.info(
            f"Stored {report.upserted} transactions; {report.preserved_older} older than {window_start} preserved",
            extra={
                "step": "accumulate",
                "connection_id": str(connection.id),
                "upserted": report.upserted,
                "skipped": report.skipped,
                "flagged": report.flagged,
                "preserved_older": report.preserved_older,
            },
        )
        return report
