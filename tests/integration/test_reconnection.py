"""Integration tests for the reconnection validator"""

import uuid
import pytest
from datetime import timedelta
from sqlalchemy.orm import Session
from cardsync.domain.exceptions import ConnectionNotFoundError, RequestFailedError
from cardsync.domain.models import ReconnectionStage
from cardsync.infrastructure.clients.fetcher import ChunkedTransactionFetcher
from cardsync.infrastructure.database.models import Card, SyncLease
from cardsync.infrastructure.database.repositories import CardRepository, SyncLeaseRepository
from cardsync.services.reconnection import ReconnectionValidator
from conftest import TODAY, no_sleep


@pytest.fixture
def validator(db: Session, fake_aggregator, cipher) -> ReconnectionValidator:
    fetcher = ChunkedTransactionFetcher(fake_aggregator, inter_chunk_delay=0, sleep=no_sleep)
    return ReconnectionValidator(db, fake_aggregator, cipher=cipher, fetcher=fetcher)


@pytest.fixture
def expired_connection(connection_factory):
    return connection_factory(status="expired", error_code="ITEM_LOGIN_REQUIRED")


def stage_results(report):
    return {outcome.stage: outcome.ok for outcome in report.stages}


async def test_reconnection_success(db: Session, validator, expired_connection, fake_aggregator, cipher):
    """Test a refreshed credential is stored, everything resyncs, and validation passes"""
    report = await validator.reconnect(expired_connection.id, "public-new", today=TODAY)

    assert report.succeeded is True
    assert report.final_stage == ReconnectionStage.SUCCESS
    assert all(outcome.ok for outcome in report.stages)
    assert [o.stage for o in report.stages] == [
        ReconnectionStage.TOKEN_REFRESHED,
        ReconnectionStage.VALIDATING_TOKEN,
        ReconnectionStage.SYNCING_ACCOUNTS,
        ReconnectionStage.SYNCING_TRANSACTIONS,
        ReconnectionStage.BACKFILLING_OPEN_DATES,
        ReconnectionStage.VALIDATING,
    ]
    assert report.completeness.account_count == 1

    db.refresh(expired_connection)
    assert expired_connection.status == "active"
    assert expired_connection.error_code is None
    assert expired_connection.item_id == "item-1"
    assert cipher.decrypt(expired_connection.encrypted_access_token) == "access-public-new"
    assert db.query(SyncLease).count() == 0


async def test_reconnection_forces_full_history_fetch(validator, expired_connection, fake_aggregator):
    """Test the resync reaches back the full policy lookback"""
    await validator.reconnect(expired_connection.id, "public-new", today=TODAY)

    calls = fake_aggregator.transaction_calls()
    assert min(c[1] for c in calls) == TODAY - timedelta(days=730)


async def test_failed_stages_do_not_stop_later_stages(db: Session, validator, expired_connection, fake_aggregator):
    """Test account views failing still lets transactions and open-date backfill complete validation"""
    card = CardRepository(db).create(expired_connection.id, "acc-1")
    db.commit()
    for endpoint in ("accounts", "liabilities", "balances"):
        fake_aggregator.errors[endpoint] = RequestFailedError(f"{endpoint} down", status_code=500)

    report = await validator.reconnect(expired_connection.id, "public-new", today=TODAY)

    results = stage_results(report)
    assert results[ReconnectionStage.VALIDATING_TOKEN] is False
    assert results[ReconnectionStage.SYNCING_ACCOUNTS] is False
    assert results[ReconnectionStage.SYNCING_TRANSACTIONS] is True
    assert results[ReconnectionStage.BACKFILLING_OPEN_DATES] is True
    assert report.succeeded is True

    db.refresh(card)
    # Earliest stored transaction (27 days ago) minus the 21-day margin
    assert card.open_date == TODAY - timedelta(days=48)
    assert card.open_date_source == "earliest_transaction_margin"


async def test_backfill_replaces_estimate_later_than_stored_history(db: Session, validator, expired_connection, fake_aggregator):
    """Test a stored estimate that postdates the earliest transaction is corrected during reconnection"""
    card = CardRepository(db).create(expired_connection.id, "acc-1")
    card.open_date = TODAY - timedelta(days=5)
    card.open_date_source = "statement_offset_estimate"
    db.commit()
    for endpoint in ("accounts", "liabilities", "balances"):
        fake_aggregator.errors[endpoint] = RequestFailedError(f"{endpoint} down", status_code=500)

    await validator.reconnect(expired_connection.id, "public-new", today=TODAY)

    db.refresh(card)
    assert card.open_date == TODAY - timedelta(days=48)
    assert card.open_date_source == "earliest_transaction_margin"


async def test_validation_fails_without_accounts(db: Session, validator, expired_connection, fake_aggregator):
    """Test an empty account list fails validation but leaves the connection active with a warning"""
    fake_aggregator.accounts = []
    fake_aggregator.liabilities = []
    fake_aggregator.transactions = []

    report = await validator.reconnect(expired_connection.id, "public-new", today=TODAY)

    assert report.succeeded is False
    assert report.final_stage == ReconnectionStage.FAILED
    assert report.completeness.account_count == 0
    assert stage_results(report)[ReconnectionStage.VALIDATING] is False

    db.refresh(expired_connection)
    assert expired_connection.status == "active"
    assert expired_connection.error_code == "SYNC_WARNING"
    assert db.query(Card).count() == 0


async def test_token_exchange_failure_stops_immediately(db: Session, validator, expired_connection, fake_aggregator):
    """Test a failed exchange records the failure and makes no further calls"""
    fake_aggregator.errors["exchange_token"] = RequestFailedError("INVALID_PUBLIC_TOKEN", status_code=400)

    report = await validator.reconnect(expired_connection.id, "public-bad", today=TODAY)

    assert report.succeeded is False
    assert [o.stage for o in report.stages] == [ReconnectionStage.TOKEN_REFRESHED]
    assert [c[0] for c in fake_aggregator.calls] == ["exchange_token"]
    db.refresh(expired_connection)
    assert expired_connection.status == "error"
    assert expired_connection.error_code == "RECONNECTION_FAILED"


async def test_held_lease_fails_reconnection(db: Session, validator, expired_connection, fake_aggregator):
    """Test a reconnection does not run alongside another sync"""
    SyncLeaseRepository(db).acquire(expired_connection.id, ttl_seconds=600)
    db.commit()

    report = await validator.reconnect(expired_connection.id, "public-new", today=TODAY)

    assert report.succeeded is False
    assert fake_aggregator.transaction_calls() == []


async def test_unknown_connection(validator):
    """Test reconnecting a missing connection raises"""
    with pytest.raises(ConnectionNotFoundError):
        await validator.reconnect(uuid.uuid4(), "public-new", today=TODAY)
