"""Per-connection sync: accounts, chunked transactions, accumulation, cycle reconciliation"""

import logging
import time
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from cardsync.config import settings
from cardsync.domain.exceptions import (
    DomainException,
    RateLimitExceededError,
    ReconnectionRequiredError,
    SyncLeaseHeldError,
)
from cardsync.domain.institutions import classify_connection
from cardsync.domain.models import FetchResult, SyncResult, SyncStatus
from cardsync.infrastructure.clients.aggregator import AggregatorClient
from cardsync.infrastructure.clients.fetcher import ChunkedTransactionFetcher
from cardsync.infrastructure.database.models import Connection
from cardsync.infrastructure.database.repositories import ConnectionRepository, SyncLeaseRepository
from cardsync.infrastructure.observability.logging import log_sync_outcome
from cardsync.infrastructure.observability.metrics import record_sync
from cardsync.infrastructure.security.encryption import CredentialCipher
from cardsync.services.accounts import AccountSynchronizer, AccountSyncReport
from cardsync.services.accumulator import TransactionAccumulator
from cardsync.services.cycles import BillingCycleService
from cardsync.utils.date_utils import as_utc, utcnow

logger = logging.getLogger(__name__)

SCOPES = ("recent", "full")


def needs_daily_sync(connection: Connection, today: date | None = None) -> bool:
    """True when the connection has never synced or last synced before today"""
    today = today or date.today()
    if connection.last_sync_at is None:
        return True
    return as_utc(connection.last_sync_at).date() < today


def synced_recently(connection: Connection, now: datetime, hours: int) -> bool:
    if connection.last_sync_at is None:
        return False
    return now - as_utc(connection.last_sync_at) < timedelta(hours=hours)


@dataclass
class SyncRun:
    """What one pass over a connection produced, before it is classified"""

    accounts: AccountSyncReport
    fetch: FetchResult
    upserted: int
    skipped: int
    flagged: int
    preserved_older: int


class SyncService:
    """
    Runs the sync of one connection at a time, sequentially.

    Every sync holds the connection's lease for its duration. Outcomes:
    - success: everything fetched and stored
    - degraded: partial fetch or some account views missing; data was still written
    - needs_reconnection: the credential was rejected; connection marked expired
    - failed: nothing usable could be fetched or stored
    - skipped: synced too recently, or another sync holds the lease
    """

    def __init__(
        self,
        db: Session,
        client: AggregatorClient,
        cipher: CredentialCipher | None = None,
        fetcher: ChunkedTransactionFetcher | None = None,
        lease_ttl_seconds: int | None = None,
    ):
        self.db = db
        self.client = client
        self._cipher = cipher
        self.fetcher = fetcher or ChunkedTransactionFetcher(client)
        self.lease_ttl_seconds = lease_ttl_seconds or settings.sync_lease_ttl_seconds
        self.connections = ConnectionRepository(db)
        self.leases = SyncLeaseRepository(db)
        self.accounts = AccountSynchronizer(db, client)
        self.accumulator = TransactionAccumulator(db)
        self.cycles = BillingCycleService(db)

    @property
    def cipher(self) -> CredentialCipher:
        if self._cipher is None:
            self._cipher = CredentialCipher()
        return self._cipher

    async def sync_connection(
        self,
        connection_id: uuid.UUID,
        scope: str = "full",
        force: bool = False,
        today: date | None = None,
    ) -> SyncResult:
        """Load a connection, decrypt its credential, and sync it"""
        connection = self.connections.get(connection_id)
        access_token = self.cipher.decrypt(connection.encrypted_access_token)
        return await self.sync(connection, access_token, scope=scope, force=force, today=today)

    async def sync(
        self,
        connection: Connection,
        access_token: str,
        scope: str = "full",
        force: bool = False,
        today: date | None = None,
    ) -> SyncResult:
        if scope not in SCOPES:
            raise ValueError(f"Unknown sync scope {scope!r}")
        today = today or date.today()
        now = utcnow()
        start_time = time.time()

        if not force and synced_recently(connection, now, settings.min_resync_interval_hours):
            logger.info(
                "Skipping sync, connection synced recently",
                extra={"connection_id": str(connection.id), "last_sync_at": str(connection.last_sync_at)},
            )
            record_sync(SyncStatus.SKIPPED.value)
            return SyncResult(connection_id=connection.id, status=SyncStatus.SKIPPED)

        try:
            lease_token = self.leases.acquire(connection.id, self.lease_ttl_seconds, now)
            self.db.commit()
        except SyncLeaseHeldError as e:
            self.db.rollback()
            logger.warning(str(e), extra={"connection_id": str(connection.id)})
            record_sync(SyncStatus.SKIPPED.value)
            return SyncResult(connection_id=connection.id, status=SyncStatus.SKIPPED, errors=[str(e)])

        try:
            result = await self._guarded_run(connection, access_token, scope, today)
        finally:
            self.leases.release(connection.id, lease_token)
            self.db.commit()

        record_sync(result.status.value)
        log_sync_outcome(
            str(connection.id),
            connection.institution_name,
            result.status.value,
            result.transactions_upserted,
            result.preserved_older,
            (time.time() - start_time) * 1000,
        )
        return result

    async def _guarded_run(self, connection: Connection, access_token: str, scope: str, today: date) -> SyncResult:
        try:
            run = await self.run(connection, access_token, scope, today)
        except ReconnectionRequiredError as e:
            self.db.rollback()
            self.connections.mark_error(connection, "expired", e.error_code or "ITEM_LOGIN_REQUIRED", str(e))
            self.db.commit()
            logger.warning(
                f"Connection requires reconnection: {e}",
                extra={"connection_id": str(connection.id), "error_code": e.error_code},
            )
            return SyncResult(connection_id=connection.id, status=SyncStatus.NEEDS_RECONNECTION, errors=[str(e)])
        except (DomainException, SQLAlchemyError) as e:
            self.db.rollback()
            code = "RATE_LIMIT_EXCEEDED" if isinstance(e, RateLimitExceededError) else type(e).__name__
            self.connections.mark_error(connection, "error", code, str(e))
            self.db.commit()
            logger.error(f"Sync failed: {e}", extra={"connection_id": str(connection.id), "error_type": code})
            return SyncResult(connection_id=connection.id, status=SyncStatus.FAILED, errors=[str(e)])

        errors = run.accounts.errors + run.fetch.errors
        status = SyncStatus.DEGRADED if (run.fetch.degraded or run.accounts.degraded) else SyncStatus.SUCCESS
        self.connections.mark_synced(connection)
        self.db.commit()

        return SyncResult(
            connection_id=connection.id,
            status=status,
            cards_synced=len(run.accounts.cards),
            transactions_upserted=run.upserted,
            transactions_skipped=run.skipped,
            transactions_flagged=run.flagged,
            preserved_older=run.preserved_older,
            fetch_state=run.fetch.state,
            errors=errors,
        )

    def window_start(self, connection: Connection, scope: str, today: date, account_names=()) -> date:
        policy = classify_connection(connection.institution_name, account_names)
        if scope == "recent":
            return today - timedelta(days=settings.recent_sync_lookback_days)
        return today - timedelta(days=policy.max_lookback_days)

    async def run(self, connection: Connection, access_token: str, scope: str, today: date) -> SyncRun:
        """Accounts, then transactions, then open dates and cycles; raises only on unrecoverable failures"""
        accounts = await self.accounts.sync(connection, access_token, today)
        self.db.commit()

        names = [card.name for card in accounts.cards]
        policy = classify_connection(connection.institution_name, names)
        start = self.window_start(connection, scope, today, names)
        fetch = await self.fetcher.fetch(access_token, policy, start, today, today=today)

        report = self.accumulator.accumulate(connection, fetch.transactions, fetch.start_date)
        self.accounts.refresh_open_dates(connection, today)
        for card in accounts.cards:
            self.cycles.reconcile_card(card.id)
        self.db.commit()

        return SyncRun(
            accounts=accounts,
            fetch=fetch,
            upserted=report.upserted,
            skipped=report.skipped,
            flagged=report.flagged,
            preserved_older=report.preserved_older,
        )
