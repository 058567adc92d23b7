"""Data access layer for sync entities"""

import uuid
from datetime import date, datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import func, select, update, delete
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from cardsync.domain.exceptions import ConnectionNotFoundError, SyncLeaseHeldError
from cardsync.domain.models import CycleRecord, PaymentStatus
from cardsync.infrastructure.database.models import (
    APR,
    BillingCycle,
    Card,
    Connection,
    SyncLease,
    TransactionRecord,
)
from cardsync.utils.date_utils import as_utc, utcnow

# Fields refreshed in place when a transaction is seen again
TRANSACTION_MUTABLE_FIELDS = (
    "external_account_id",
    "amount",
    "date",
    "authorized_date",
    "name",
    "merchant_name",
    "category",
    "subcategory",
    "category_id",
    "iso_currency_code",
    "pending",
    "is_payment",
    "needs_review",
)


def _insert_for(db: Session):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise NotImplementedError(f"Upsert not supported for dialect {dialect}")


class ConnectionRepository:
    """Repository for linked institution connections"""

    def __init__(self, db: Session):
        self.db = db

    def get(self, connection_id: uuid.UUID) -> Connection:
        connection = self.db.get(Connection, connection_id)
        if connection is None:
            raise ConnectionNotFoundError(f"Connection {connection_id} not found")
        return connection

    def get_by_item_id(self, item_id: str) -> Optional[Connection]:
        return self.db.query(Connection).filter(Connection.item_id == item_id).first()

    def list_for_user(self, user_id: str) -> List[Connection]:
        return (
            self.db.query(Connection)
            .filter(Connection.user_id == user_id)
            .order_by(Connection.created_at.desc())
            .all()
        )

    def create(
        self,
        user_id: str,
        item_id: str,
        encrypted_access_token: str,
        institution_id: str | None,
        institution_name: str | None,
    ) -> Connection:
        connection = Connection(
            user_id=user_id,
            item_id=item_id,
            encrypted_access_token=encrypted_access_token,
            institution_id=institution_id,
            institution_name=institution_name,
            status="active",
        )
        self.db.add(connection)
        self.db.flush()
        return connection

    def mark_synced(self, connection: Connection, when: datetime | None = None) -> None:
        connection.status = "active"
        connection.last_sync_at = when or utcnow()
        connection.error_code = None
        connection.error_message = None

    def mark_error(self, connection: Connection, status: str, code: str | None, message: str | None) -> None:
        connection.status = status
        connection.error_code = code
        connection.error_message = message

    def replace_credential(self, connection: Connection, item_id: str, encrypted_access_token: str) -> None:
        connection.item_id = item_id
        connection.encrypted_access_token = encrypted_access_token


class CardRepository:
    """Repository for credit cards"""

    def __init__(self, db: Session):
        self.db = db

    def get(self, card_id: uuid.UUID) -> Optional[Card]:
        return self.db.get(Card, card_id)

    def list_for_connection(self, connection_id: uuid.UUID) -> List[Card]:
        return (
            self.db.query(Card)
            .filter(Card.connection_id == connection_id)
            .order_by(Card.created_at.asc())
            .all()
        )

    def list_by_external_ids(self, external_ids: Iterable[str]) -> List[Card]:
        external_ids = list(external_ids)
        if not external_ids:
            return []
        return (
            self.db.query(Card)
            .filter(Card.external_account_id.in_(external_ids))
            .order_by(Card.created_at.asc(), Card.id.asc())
            .all()
        )

    def create(self, connection_id: uuid.UUID, external_account_id: str) -> Card:
        card = Card(connection_id=connection_id, external_account_id=external_account_id)
        self.db.add(card)
        self.db.flush()
        return card

    def merge_into(self, mapping: Dict[uuid.UUID, uuid.UUID]) -> None:
        """Re-point children of duplicate cards at their canonical card, then drop the duplicates"""
        for duplicate_id, canonical_id in mapping.items():
            self.db.execute(
                update(TransactionRecord)
                .where(TransactionRecord.card_id == duplicate_id)
                .values(card_id=canonical_id)
                .execution_options(synchronize_session=False)
            )
            self.db.execute(
                update(BillingCycle)
                .where(BillingCycle.card_id == duplicate_id)
                .values(card_id=canonical_id)
                .execution_options(synchronize_session=False)
            )
            self.db.execute(
                update(APR)
                .where(APR.card_id == duplicate_id)
                .values(card_id=canonical_id)
                .execution_options(synchronize_session=False)
            )
        for duplicate_id in mapping:
            card = self.db.get(Card, duplicate_id)
            if card is not None:
                self.db.delete(card)
        self.db.flush()


class TransactionRepository:
    """Repository for accumulated transactions; there is deliberately no delete"""

    def __init__(self, db: Session):
        self.db = db

    def _upsert_statement(self, rows: List[Dict[str, Any]]):
        insert = _insert_for(self.db)
        stmt = insert(TransactionRecord).values(rows)
        updates = {name: stmt.excluded[name] for name in TRANSACTION_MUTABLE_FIELDS}
        # A later sync that cannot resolve the card must not unlink it
        updates["card_id"] = func.coalesce(stmt.excluded.card_id, TransactionRecord.card_id)
        updates["updated_at"] = utcnow()
        return stmt.on_conflict_do_update(index_elements=[TransactionRecord.external_id], set_=updates)

    def upsert_batch(self, rows: List[Dict[str, Any]]) -> int:
        """Single conflict-resolving write keyed on external_id"""
        if not rows:
            return 0
        now = utcnow()
        prepared = [{"id": uuid.uuid4(), "created_at": now, "updated_at": now, **row} for row in rows]
        self.db.execute(self._upsert_statement(prepared))
        return len(prepared)

    def upsert_one(self, row: Dict[str, Any]) -> None:
        self.upsert_batch([row])

    def get_by_external_id(self, external_id: str) -> Optional[TransactionRecord]:
        return self.db.query(TransactionRecord).filter(TransactionRecord.external_id == external_id).first()

    def count_for_card(self, card_id: uuid.UUID) -> int:
        return self.db.query(func.count(TransactionRecord.id)).filter(TransactionRecord.card_id == card_id).scalar()

    def count_for_connection(self, connection_id: uuid.UUID) -> int:
        return (
            self.db.query(func.count(TransactionRecord.id))
            .filter(TransactionRecord.connection_id == connection_id)
            .scalar()
        )

    def count_older_than(self, connection_id: uuid.UUID, before: date) -> int:
        """Stored transactions for a connection dated before `before` (history kept beyond the fetch window)"""
        return (
            self.db.query(func.count(TransactionRecord.id))
            .filter(TransactionRecord.connection_id == connection_id, TransactionRecord.date < before)
            .scalar()
        )

    def earliest_date_for_card(self, card_id: uuid.UUID) -> Optional[date]:
        return self.db.query(func.min(TransactionRecord.date)).filter(TransactionRecord.card_id == card_id).scalar()

    def link_unresolved(self, connection_id: uuid.UUID, account_to_card: Dict[str, uuid.UUID]) -> None:
        """Attach transactions stored before their card existed"""
        for external_account_id, card_id in account_to_card.items():
            self.db.execute(
                update(TransactionRecord)
                .where(
                    TransactionRecord.connection_id == connection_id,
                    TransactionRecord.card_id.is_(None),
                    TransactionRecord.external_account_id == external_account_id,
                )
                .values(card_id=card_id)
                .execution_options(synchronize_session=False)
            )


class BillingCycleRepository:
    """Repository for billing cycles"""

    def __init__(self, db: Session):
        self.db = db

    @staticmethod
    def to_record(row: BillingCycle) -> CycleRecord:
        return CycleRecord(
            card_id=row.card_id,
            start_date=row.start_date,
            end_date=row.end_date,
            total_spend=row.total_spend or 0.0,
            transaction_count=row.transaction_count or 0,
            statement_balance=row.statement_balance,
            minimum_payment=row.minimum_payment,
            due_date=row.due_date,
            payment_status=PaymentStatus(row.payment_status),
            id=row.id,
        )

    def add(self, record: CycleRecord) -> BillingCycle:
        row = BillingCycle(
            card_id=record.card_id,
            start_date=record.start_date,
            end_date=record.end_date,
            total_spend=record.total_spend,
            transaction_count=record.transaction_count,
            statement_balance=record.statement_balance,
            minimum_payment=record.minimum_payment,
            due_date=record.due_date,
            payment_status=record.payment_status.value,
        )
        self.db.add(row)
        self.db.flush()
        return row

    def list_for_card(self, card_id: uuid.UUID) -> List[CycleRecord]:
        rows = (
            self.db.query(BillingCycle)
            .filter(BillingCycle.card_id == card_id)
            .order_by(BillingCycle.start_date.desc(), BillingCycle.created_at.asc())
            .all()
        )
        return [self.to_record(row) for row in rows]

    def earliest_statement_date(self, card_id: uuid.UUID) -> Optional[date]:
        """End of the earliest cycle that closed with statement data"""
        return (
            self.db.query(func.min(BillingCycle.end_date))
            .filter(BillingCycle.card_id == card_id, BillingCycle.statement_balance.is_not(None))
            .scalar()
        )

    def update_totals(self, record: CycleRecord) -> None:
        self.db.query(BillingCycle).filter(BillingCycle.id == record.id).update(
            {"transaction_count": record.transaction_count, "total_spend": record.total_spend},
            synchronize_session=False,
        )

    def delete_ids(self, cycle_ids: Iterable[uuid.UUID]) -> int:
        cycle_ids = [cid for cid in cycle_ids if cid is not None]
        if not cycle_ids:
            return 0
        result = self.db.execute(
            delete(BillingCycle).where(BillingCycle.id.in_(cycle_ids)).execution_options(synchronize_session=False)
        )
        return result.rowcount


class AprRepository:
    """APR snapshots are not accumulated; each sync replaces them"""

    def __init__(self, db: Session):
        self.db = db

    def replace_for_card(self, card_id: uuid.UUID, aprs: List[Dict[str, Any]]) -> None:
        self.db.execute(delete(APR).where(APR.card_id == card_id).execution_options(synchronize_session=False))
        for apr in aprs:
            self.db.add(
                APR(
                    card_id=card_id,
                    apr_type=apr.get("apr_type") or "unknown",
                    apr_percentage=apr.get("apr_percentage"),
                    balance_subject_to_apr=apr.get("balance_subject_to_apr"),
                    interest_charge_amount=apr.get("interest_charge_amount"),
                )
            )
        self.db.flush()

    def list_for_card(self, card_id: uuid.UUID) -> List[APR]:
        return self.db.query(APR).filter(APR.card_id == card_id).all()


class SyncLeaseRepository:
    """Per-connection sync lease with expiry"""

    def __init__(self, db: Session):
        self.db = db

    def acquire(self, connection_id: uuid.UUID, ttl_seconds: int, now: datetime | None = None) -> str:
        """
        Take the lease or raise SyncLeaseHeldError.

        Expired leases are taken over with a conditional update so two
        callers racing for the same expired lease cannot both win.
        """
        now = now or utcnow()
        token = uuid.uuid4().hex
        expires_at = now + timedelta(seconds=ttl_seconds)
        lease = self.db.get(SyncLease, connection_id)

        if lease is None:
            try:
                with self.db.begin_nested():
                    self.db.add(SyncLease(connection_id=connection_id, token=token, acquired_at=now, expires_at=expires_at))
            except IntegrityError:
                current = self.db.get(SyncLease, connection_id)
                raise SyncLeaseHeldError(connection_id, current.expires_at if current else None)
            return token

        if as_utc(lease.expires_at) > now:
            raise SyncLeaseHeldError(connection_id, lease.expires_at)

        result = self.db.execute(
            update(SyncLease)
            .where(SyncLease.connection_id == connection_id, SyncLease.token == lease.token)
            .values(token=token, acquired_at=now, expires_at=expires_at)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise SyncLeaseHeldError(connection_id, None)
        self.db.expire(lease)
        return token

    def release(self, connection_id: uuid.UUID, token: str) -> bool:
        result = self.db.execute(
            delete(SyncLease)
            .where(SyncLease.connection_id == connection_id, SyncLease.token == token)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
