"""Integration tests for transaction accumulation against the store"""

import pytest
from datetime import timedelta
from sqlalchemy import delete
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from cardsync.domain.exceptions import AccumulationViolationError
from cardsync.infrastructure.database.models import TransactionRecord
from cardsync.infrastructure.database.repositories import CardRepository, TransactionRepository
from cardsync.services.accumulator import TransactionAccumulator
from conftest import TODAY, make_transaction


@pytest.fixture
def connection(connection_factory):
    return connection_factory()


@pytest.fixture
def card(db: Session, connection):
    card = CardRepository(db).create(connection.id, "acc-1")
    db.commit()
    return card


def count(db: Session) -> int:
    return db.query(TransactionRecord).count()


def test_upsert_is_idempotent(db: Session, connection, card):
    """Test storing the same batch twice leaves one row per external id"""
    batch = [make_transaction(f"t-{i}", TODAY - timedelta(days=i)) for i in range(5)]
    accumulator = TransactionAccumulator(db)

    accumulator.accumulate(connection, batch, TODAY - timedelta(days=90))
    db.commit()
    accumulator.accumulate(connection, batch, TODAY - timedelta(days=90))
    db.commit()

    assert count(db) == 5
    assert TransactionRepository(db).count_for_card(card.id) == 5


def test_upsert_updates_mutable_fields(db: Session, connection, card):
    """Test a pending transaction that posts later is updated in place"""
    accumulator = TransactionAccumulator(db)
    accumulator.accumulate(connection, [make_transaction("t-1", TODAY, amount=10.0, pending=True)], TODAY)
    db.commit()
    accumulator.accumulate(connection, [make_transaction("t-1", TODAY, amount=12.5, pending=False)], TODAY)
    db.commit()
    db.expire_all()

    stored = TransactionRepository(db).get_by_external_id("t-1")
    assert stored.amount == 12.5
    assert stored.pending is False
    assert count(db) == 1


def test_capped_window_preserves_older_history(db: Session, connection, card):
    """Test a later, shorter fetch never removes earlier-accumulated transactions"""
    accumulator = TransactionAccumulator(db)
    history = [make_transaction(f"old-{i}", TODAY - timedelta(days=100 + i * 30)) for i in range(12)]
    accumulator.accumulate(connection, history, TODAY - timedelta(days=730))
    db.commit()

    recent = [make_transaction(f"new-{i}", TODAY - timedelta(days=i * 7)) for i in range(10)]
    report = accumulator.accumulate(connection, recent, TODAY - timedelta(days=90))
    db.commit()

    assert count(db) == 22
    assert report.upserted == 10
    assert report.preserved_older == 12


def test_nan_amount_skips_only_that_record(db: Session, connection, card):
    """Test one NaN in a batch of 50 leaves 49 stored and the batch otherwise intact"""
    batch = [make_transaction(f"t-{i}", TODAY - timedelta(days=i % 60)) for i in range(50)]
    batch[17]["amount"] = float("nan")

    report = TransactionAccumulator(db).accumulate(connection, batch, TODAY - timedelta(days=90))
    db.commit()

    assert report.upserted == 49
    assert report.skipped == 1
    assert count(db) == 49
    assert TransactionRepository(db).get_by_external_id("t-17") is None


def test_zero_amount_is_stored_and_flagged(db: Session, connection, card):
    """Test zero-amount transactions are kept with a review flag"""
    report = TransactionAccumulator(db).accumulate(connection, [make_transaction("zero", TODAY, amount=0)], TODAY)
    db.commit()

    stored = TransactionRepository(db).get_by_external_id("zero")
    assert report.flagged == 1
    assert stored.needs_review is True


def test_unresolved_card_stored_with_null_card(db: Session, connection, card):
    """Test transactions for an unknown account are kept and linked once the card appears"""
    repo = TransactionRepository(db)
    report = TransactionAccumulator(db).accumulate(
        connection, [make_transaction("orphan", TODAY, account_id="acc-unknown")], TODAY
    )
    db.commit()

    assert report.unresolved_cards == 1
    assert repo.get_by_external_id("orphan").card_id is None

    new_card = CardRepository(db).create(connection.id, "acc-unknown")
    repo.link_unresolved(connection.id, {"acc-unknown": new_card.id})
    db.commit()
    db.expire_all()
    assert repo.get_by_external_id("orphan").card_id == new_card.id


def test_later_unresolved_sync_does_not_unlink(db: Session, connection, card):
    """Test an upsert that cannot resolve the card keeps the existing link"""
    accumulator = TransactionAccumulator(db)
    accumulator.accumulate(connection, [make_transaction("t-1", TODAY)], TODAY)
    db.commit()

    accumulator.cards.list_for_connection = lambda connection_id: []
    accumulator.accumulate(connection, [make_transaction("t-1", TODAY)], TODAY)
    db.commit()
    db.expire_all()

    assert TransactionRepository(db).get_by_external_id("t-1").card_id == card.id


def test_batch_failure_falls_back_to_single_writes(db: Session, connection, card, monkeypatch):
    """Test a failed batch write is retried one record at a time"""
    repo_cls = TransactionRepository
    original = repo_cls.upsert_batch

    def failing_batch(self, rows):
        if len(rows) > 1:
            raise OperationalError("INSERT ...", {}, Exception("database is locked"))
        return original(self, rows)

    monkeypatch.setattr(repo_cls, "upsert_batch", failing_batch)
    batch = [make_transaction(f"t-{i}", TODAY - timedelta(days=i)) for i in range(4)]

    report = TransactionAccumulator(db).accumulate(connection, batch, TODAY - timedelta(days=30))
    db.commit()

    assert report.fallback_used is True
    assert report.upserted == 4
    assert count(db) == 4


def test_transactions_are_never_deleted(db: Session, connection, card):
    """Test both ORM and bulk deletes of stored transactions are refused"""
    TransactionAccumulator(db).accumulate(connection, [make_transaction("keep", TODAY)], TODAY)
    db.commit()

    stored = TransactionRepository(db).get_by_external_id("keep")
    db.delete(stored)
    with pytest.raises(AccumulationViolationError):
        db.flush()
    db.rollback()

    with pytest.raises(AccumulationViolationError):
        db.execute(delete(TransactionRecord))
    db.rollback()

    assert count(db) == 1


def test_batches_respect_batch_size(db: Session, connection, card):
    """Test more rows than the batch size are written across several batches"""
    batch = [make_transaction(f"t-{i}", TODAY - timedelta(days=i % 80)) for i in range(25)]
    report = TransactionAccumulator(db, batch_size=10).accumulate(connection, batch, TODAY - timedelta(days=90))
    db.commit()

    assert report.upserted == 25
    assert report.fallback_used is False
    assert count(db) == 25
