"""SQLAlchemy ORM models for connections, cards, transactions, and billing cycles"""

import uuid
from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Text,
    Uuid,
    event,
)
from sqlalchemy.orm import Session, declarative_base, relationship

from cardsync.domain.exceptions import AccumulationViolationError
from cardsync.utils.date_utils import utcnow

Base = declarative_base()


class Connection(Base):
    """One linked institution credential"""

    __tablename__ = "connection"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Text, nullable=False, index=True)
    item_id = Column(Text, nullable=False, unique=True)
    encrypted_access_token = Column(Text, nullable=False)
    institution_id = Column(Text, nullable=True)
    institution_name = Column(Text, nullable=True)
    status = Column(Text, nullable=False, default="active")  # active | error | expired | removed
    last_sync_at = Column(DateTime(timezone=True), nullable=True)
    error_code = Column(Text, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    cards = relationship("Card", back_populates="connection")


class Card(Base):
    """Credit-card account under a connection"""

    __tablename__ = "card"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    connection_id = Column(Uuid, ForeignKey("connection.id", ondelete="CASCADE"), nullable=False, index=True)
    # Unique per account; enforced by the duplicate cleanup pass rather than a
    # constraint so racing inserts can still be collapsed afterwards
    external_account_id = Column(Text, nullable=False, index=True)
    name = Column(Text, nullable=True)
    official_name = Column(Text, nullable=True)
    mask = Column(Text, nullable=True)
    subtype = Column(Text, nullable=True)
    iso_currency_code = Column(Text, nullable=True)
    balance_current = Column(Float, nullable=True)
    balance_available = Column(Float, nullable=True)
    credit_limit = Column(Float, nullable=True)  # NULL means unknown, never zero
    credit_limit_source = Column(Text, nullable=True)
    manual_limit_enabled = Column(Boolean, nullable=False, default=False)
    manual_credit_limit = Column(Float, nullable=True)
    last_statement_balance = Column(Float, nullable=True)
    last_statement_issue_date = Column(Date, nullable=True)
    next_payment_due_date = Column(Date, nullable=True)
    minimum_payment_amount = Column(Float, nullable=True)
    open_date = Column(Date, nullable=True)
    open_date_source = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    connection = relationship("Connection", back_populates="cards")


class TransactionRecord(Base):
    """Stored card transaction; rows are upserted and never deleted by a sync"""

    __tablename__ = "card_transaction"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    external_id = Column(Text, nullable=False, unique=True)
    connection_id = Column(Uuid, ForeignKey("connection.id", ondelete="CASCADE"), nullable=False)
    card_id = Column(Uuid, ForeignKey("card.id", ondelete="SET NULL"), nullable=True, index=True)
    external_account_id = Column(Text, nullable=True)
    amount = Column(Float, nullable=False)  # positive = spend, negative = payment/credit
    date = Column(Date, nullable=False)
    authorized_date = Column(Date, nullable=True)
    name = Column(Text, nullable=True)
    merchant_name = Column(Text, nullable=True)
    category = Column(Text, nullable=True)
    subcategory = Column(Text, nullable=True)
    category_id = Column(Text, nullable=True)
    iso_currency_code = Column(Text, nullable=True)
    pending = Column(Boolean, nullable=False, default=False)
    is_payment = Column(Boolean, nullable=False, default=False)
    needs_review = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (Index("ix_card_transaction_connection_date", "connection_id", "date"),)


class BillingCycle(Base):
    """Statement period for a card; closing fields are set once the cycle closes"""

    __tablename__ = "billing_cycle"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    card_id = Column(Uuid, ForeignKey("card.id", ondelete="CASCADE"), nullable=False, index=True)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    total_spend = Column(Float, nullable=False, default=0.0)
    transaction_count = Column(Integer, nullable=False, default=0)
    statement_balance = Column(Float, nullable=True)
    minimum_payment = Column(Float, nullable=True)
    due_date = Column(Date, nullable=True)
    payment_status = Column(Text, nullable=False, default="current")  # current | due | paid | outstanding
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class APR(Base):
    """APR snapshot; replaced wholesale on every sync"""

    __tablename__ = "apr"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    card_id = Column(Uuid, ForeignKey("card.id", ondelete="CASCADE"), nullable=False, index=True)
    apr_type = Column(Text, nullable=False)
    apr_percentage = Column(Float, nullable=True)
    balance_subject_to_apr = Column(Float, nullable=True)
    interest_charge_amount = Column(Float, nullable=True)


class SyncLease(Base):
    """Per-connection sync lock with expiry"""

    __tablename__ = "sync_lease"

    connection_id = Column(Uuid, ForeignKey("connection.id", ondelete="CASCADE"), primary_key=True)
    token = Column(Text, nullable=False)
    acquired_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    expires_at = Column(DateTime(timezone=True), nullable=False)


@event.listens_for(Session, "before_flush")
def _refuse_transaction_deletes(session, flush_context, instances):
    if any(isinstance(obj, TransactionRecord) for obj in session.deleted):
        raise AccumulationViolationError("Stored transactions are never deleted")


@event.listens_for(Session, "do_orm_execute")
def _refuse_bulk_transaction_deletes(orm_execute_state):
    mapper = orm_execute_state.bind_mapper
    if orm_execute_state.is_delete and mapper is not None and mapper.class_ is TransactionRecord:
        raise AccumulationViolationError("Stored transactions are never deleted")
