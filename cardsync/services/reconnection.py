"""Reconnection validation after a credential refresh"""

import logging
import uuid
from datetime import date, timedelta
from typing import Awaitable, Callable

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from cardsync.config import settings
from cardsync.domain.exceptions import DomainException, SyncLeaseHeldError
from cardsync.domain.institutions import classify_connection
from cardsync.domain.models import (
    CompletenessCheck,
    ReconnectionReport,
    ReconnectionStage,
    StageOutcome,
)
from cardsync.infrastructure.clients.aggregator import AggregatorClient
from cardsync.infrastructure.clients.fetcher import ChunkedTransactionFetcher
from cardsync.infrastructure.database.models import Card, Connection, TransactionRecord
from cardsync.infrastructure.database.repositories import ConnectionRepository, SyncLeaseRepository
from cardsync.infrastructure.observability.metrics import reconnection_counter
from cardsync.infrastructure.security.encryption import CredentialCipher
from cardsync.services.accounts import AccountSynchronizer
from cardsync.services.accumulator import TransactionAccumulator
from cardsync.utils.date_utils import utcnow

logger = logging.getLogger(__name__)


class ReconnectionValidator:
    """
    Drives a relinked connection through a forced full sync and then checks
    that the data is minimally complete.

    TokenRefreshed -> ValidatingToken -> SyncingAccounts -> SyncingTransactions
    -> BackfillingMissingOpenDates -> Validating -> Success | Failed

    A failing stage is recorded and the next stage still runs against
    whatever earlier stages stored. Only the final completeness check decides
    success, so a failed reconnection may still have written data.
    """

    def __init__(
        self,
        db: Session,
        client: AggregatorClient,
        cipher: CredentialCipher | None = None,
        fetcher: ChunkedTransactionFetcher | None = None,
    ):
        self.db = db
        self.client = client
        self._cipher = cipher
        self.fetcher = fetcher or ChunkedTransactionFetcher(client)
        self.connections = ConnectionRepository(db)
        self.leases = SyncLeaseRepository(db)
        self.accounts = AccountSynchronizer(db, client)
        self.accumulator = TransactionAccumulator(db)

    @property
    def cipher(self) -> CredentialCipher:
        if self._cipher is None:
            self._cipher = CredentialCipher()
        return self._cipher

    async def _stage(
        self,
        report: ReconnectionReport,
        stage: ReconnectionStage,
        action: Callable[[], Awaitable[str]],
    ) -> bool:
        logger.info(f"Reconnection stage {stage.value}", extra={"connection_id": str(report.connection_id), "step": stage.value})
        try:
            detail = await action()
            self.db.commit()
        except (DomainException, SQLAlchemyError) as e:
            self.db.rollback()
            report.stages.append(StageOutcome(stage, ok=False, detail=str(e)))
            logger.error(
                f"Reconnection stage {stage.value} failed: {e}",
                extra={"connection_id": str(report.connection_id), "step": stage.value},
            )
            return False
        report.stages.append(StageOutcome(stage, ok=True, detail=detail or ""))
        return True

    async def reconnect(self, connection_id: uuid.UUID, public_token: str, today: date | None = None) -> ReconnectionReport:
        today = today or date.today()
        connection = self.connections.get(connection_id)
        report = ReconnectionReport(connection_id=connection.id, final_stage=ReconnectionStage.TOKEN_REFRESHED)
        holder = {}

        async def refresh_token() -> str:
            access_token, item_id = await self.client.exchange_token(public_token)
            self.connections.replace_credential(connection, item_id, self.cipher.encrypt(access_token))
            self.connections.mark_error(connection, "active", None, None)
            holder["access_token"] = access_token
            return f"item {item_id}"

        if not await self._stage(report, ReconnectionStage.TOKEN_REFRESHED, refresh_token):
            return self._finish(report, connection, passed=False, refreshed=False)

        try:
            lease_token = self.leases.acquire(connection.id, settings.sync_lease_ttl_seconds)
            self.db.commit()
        except SyncLeaseHeldError as e:
            self.db.rollback()
            report.stages.append(StageOutcome(ReconnectionStage.VALIDATING_TOKEN, ok=False, detail=str(e)))
            return self._finish(report, connection, passed=False)

        try:
            await self._run_stages(report, connection, holder["access_token"], today)
        finally:
            self.leases.release(connection.id, lease_token)
            self.db.commit()

        check = self.completeness(connection)
        report.completeness = check
        report.stages.append(StageOutcome(ReconnectionStage.VALIDATING, ok=check.passed, detail=str(check)))
        return self._finish(report, connection, passed=check.passed)

    async def _run_stages(self, report: ReconnectionReport, connection: Connection, access_token: str, today: date) -> None:
        async def validate_token() -> str:
            accounts = await self.client.get_accounts(access_token)
            return f"{len(accounts.get('accounts') or [])} accounts visible"

        async def sync_accounts() -> str:
            result = await self.accounts.sync(connection, access_token, today)
            return f"{len(result.cards)} cards"

        async def sync_transactions() -> str:
            names = [card.name for card in connection.cards]
            policy = classify_connection(connection.institution_name, names)
            start = today - timedelta(days=policy.max_lookback_days)
            fetched = await self.fetcher.fetch(access_token, policy, start, today, today=today)
            stored = self.accumulator.accumulate(connection, fetched.transactions, fetched.start_date)
            return f"{stored.upserted} upserted, fetch {fetched.state.value}"

        async def backfill() -> str:
            return f"{self.accounts.refresh_open_dates(connection, today)} open dates estimated"

        for stage, action in (
            (ReconnectionStage.VALIDATING_TOKEN, validate_token),
            (ReconnectionStage.SYNCING_ACCOUNTS, sync_accounts),
            (ReconnectionStage.SYNCING_TRANSACTIONS, sync_transactions),
            (ReconnectionStage.BACKFILLING_OPEN_DATES, backfill),
        ):
            report.final_stage = stage
            await self._stage(report, stage, action)

    def completeness(self, connection: Connection) -> CompletenessCheck:
        """At least one card, one with an open date, and one with a balance or a transaction"""
        cards = self.db.query(Card).filter(Card.connection_id == connection.id).all()
        counts = dict(
            self.db.query(TransactionRecord.card_id, func.count(TransactionRecord.id))
            .filter(TransactionRecord.connection_id == connection.id, TransactionRecord.card_id.is_not(None))
            .group_by(TransactionRecord.card_id)
            .all()
        )
        return CompletenessCheck(
            account_count=len(cards),
            accounts_with_open_date=sum(1 for c in cards if c.open_date is not None),
            accounts_with_balance_or_activity=sum(
                1 for c in cards if c.balance_current is not None or counts.get(c.id, 0) > 0
            ),
        )

    def _finish(self, report: ReconnectionReport, connection: Connection, passed: bool, refreshed: bool = True) -> ReconnectionReport:
        if passed:
            report.final_stage = ReconnectionStage.SUCCESS
            connection.last_sync_at = utcnow()
        else:
            report.final_stage = ReconnectionStage.FAILED
            failed = [s.stage.value for s in report.stages if not s.ok]
            self.connections.mark_error(
                connection,
                "active" if refreshed else "error",
                "SYNC_WARNING" if refreshed else "RECONNECTION_FAILED",
                f"Reconnection incomplete; failed stages: {', '.join(failed) or 'none'}",
            )
        self.db.commit()
        reconnection_counter.labels(outcome="success" if passed else "failed").inc()
        logger.info(
            f"Reconnection {report.final_stage.value}",
            extra={
                "connection_id": str(connection.id),
                "stages": [(s.stage.value, s.ok) for s in report.stages],
            },
        )
        return report
