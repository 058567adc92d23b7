"""Card and APR synchronisation for one connection"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from cardsync.config import settings
from cardsync.domain.exceptions import AggregatorError, ReconnectionRequiredError
from cardsync.domain.extraction import extract_credit_limit, extract_open_date
from cardsync.domain.institutions import classify
from cardsync.domain.models import ExtractionInput, ExtractionResult
from cardsync.domain.transactions import parse_date, to_number
from cardsync.infrastructure.clients.aggregator import AggregatorClient
from cardsync.infrastructure.database.models import Card, Connection
from cardsync.infrastructure.database.repositories import (
    AprRepository,
    BillingCycleRepository,
    CardRepository,
    TransactionRepository,
)
from cardsync.infrastructure.observability.logging import log_extraction
from cardsync.infrastructure.observability.metrics import record_extraction

logger = logging.getLogger(__name__)

CREDIT_CARD_SUBTYPE = "credit card"

# Open dates taken from the aggregator, not estimated
REPORTED_OPEN_DATE_SOURCES = frozenset({"liability_origination_date", "account_origination_date"})


@dataclass
class AccountSnapshot:
    """The three aggregator views of a connection's accounts"""

    liabilities: Dict[str, Any] = field(default_factory=dict)
    accounts: Dict[str, Any] = field(default_factory=dict)
    balances: Dict[str, Any] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)

    @staticmethod
    def _index(response: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
        return {a["account_id"]: a for a in response.get("accounts") or [] if a.get("account_id")}

    def credit_accounts(self) -> Dict[str, Dict[str, Any]]:
        """Credit-card accounts across all views; the liabilities view wins as the base record"""
        merged: Dict[str, Dict[str, Any]] = {}
        for response in (self.balances, self.accounts, self.liabilities):
            for account_id, account in self._index(response).items():
                if (account.get("subtype") or "").lower() == CREDIT_CARD_SUBTYPE:
                    merged[account_id] = account
        return merged

    def liability_for(self, account_id: str) -> Optional[Dict[str, Any]]:
        for liability in (self.liabilities.get("liabilities") or {}).get("credit") or []:
            if liability.get("account_id") == account_id:
                return liability
        return None

    def views_for(self, account_id: str) -> Tuple[Optional[Dict], Optional[Dict], Optional[Dict]]:
        return (
            self._index(self.balances).get(account_id),
            self._index(self.accounts).get(account_id),
            self._index(self.liabilities).get(account_id),
        )


@dataclass
class AccountSyncReport:
    cards: List[Card] = field(default_factory=list)
    merged_duplicates: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def degraded(self) -> bool:
        return bool(self.errors)


def resolve_credit_limit(card: Card, result: ExtractionResult) -> None:
    """
    Aggregator data wins whenever it is valid and clears any manual override;
    otherwise a manual limit is kept, and failing that the limit is NULL.
    """
    if result.found:
        card.credit_limit = result.value
        card.credit_limit_source = result.source
        if card.manual_limit_enabled:
            logger.info(
                "Valid aggregator limit found; clearing manual override",
                extra={"card_id": str(card.id), "manual_limit": card.manual_credit_limit},
            )
            card.manual_limit_enabled = False
            card.manual_credit_limit = None
    elif card.manual_limit_enabled and card.manual_credit_limit:
        card.credit_limit = card.manual_credit_limit
        card.credit_limit_source = "manual_override"
    else:
        card.credit_limit = None
        card.credit_limit_source = None


class AccountSynchronizer:
    """Fetches account views, collapses duplicate cards, and writes card fields"""

    def __init__(self, db: Session, client: AggregatorClient):
        self.db = db
        self.client = client
        self.cards = CardRepository(db)
        self.transactions = TransactionRepository(db)
        self.cycles = BillingCycleRepository(db)
        self.aprs = AprRepository(db)

    async def fetch_snapshot(self, access_token: str, now: datetime | None = None) -> AccountSnapshot:
        """
        Liabilities, accounts, and balances, each best-effort.

        Credential failures propagate. If no view could be fetched at all the
        last error is raised.
        """
        now = now or datetime.now(timezone.utc)
        snapshot = AccountSnapshot()
        calls = (
            ("liabilities", lambda: self.client.get_liabilities(access_token)),
            ("accounts", lambda: self.client.get_accounts(access_token)),
            (
                "balances",
                lambda: self.client.get_balances(
                    access_token, now - timedelta(days=settings.balance_max_staleness_days)
                ),
            ),
        )
        last_error: AggregatorError | None = None
        for name, call in calls:
            try:
                setattr(snapshot, name, await call() or {})
            except ReconnectionRequiredError:
                raise
            except AggregatorError as e:
                last_error = e
                snapshot.errors.append(f"{name}: {e}")
                logger.warning(f"{name} fetch failed, continuing with other sources: {e}", extra={"step": "accounts"})

        if last_error is not None and len(snapshot.errors) == len(calls):
            raise last_error
        return snapshot

    def collapse_duplicates(self, connection: Connection) -> Tuple[Dict[str, Card], int]:
        """
        Pass one of the card write: map every external account id to its
        oldest card and fold the rest into it before anything else is written.
        """
        canonical: Dict[str, Card] = {}
        mapping: Dict[uuid.UUID, uuid.UUID] = {}
        for card in self.cards.list_for_connection(connection.id):
            keeper = canonical.get(card.external_account_id)
            if keeper is None:
                canonical[card.external_account_id] = card
            else:
                mapping[card.id] = keeper.id

        if mapping:
            logger.warning(
                f"Merging {len(mapping)} duplicate cards into their oldest record",
                extra={"connection_id": str(connection.id), "duplicates": [str(k) for k in mapping]},
            )
            self.cards.merge_into(mapping)
        return canonical, len(mapping)

    def _earliest_statement(self, card: Card, liability: Optional[Dict[str, Any]]) -> Optional[date]:
        candidates = [
            parse_date((liability or {}).get("last_statement_issue_date")),
            card.last_statement_issue_date,
            self.cycles.earliest_statement_date(card.id),
        ]
        known = [d for d in candidates if d is not None]
        return min(known) if known else None

    def _apply_fields(self, card: Card, account: Dict[str, Any], snapshot: AccountSnapshot, institution: str | None, today: date) -> None:
        account_id = account["account_id"]
        balance_view, accounts_view, liabilities_view = snapshot.views_for(account_id)
        liability = snapshot.liability_for(account_id)
        freshest = (balance_view or account).get("balances") or {}

        card.name = account.get("name") or card.name
        card.official_name = account.get("official_name") or card.official_name
        card.mask = account.get("mask") or card.mask
        card.subtype = account.get("subtype")
        card.iso_currency_code = freshest.get("iso_currency_code") or card.iso_currency_code
        card.balance_current = to_number(freshest.get("current"))
        card.balance_available = to_number(freshest.get("available"))

        if liability is not None:
            card.last_statement_balance = to_number(liability.get("last_statement_balance"))
            card.last_statement_issue_date = parse_date(liability.get("last_statement_issue_date"))
            card.next_payment_due_date = parse_date(liability.get("next_payment_due_date"))
            card.minimum_payment_amount = to_number(liability.get("minimum_payment_amount"))

        bundle = ExtractionInput(
            account=account,
            policy=classify(institution, card.name),
            today=today,
            liability=liability,
            balance_account=balance_view,
            accounts_account=accounts_view,
            liabilities_account=liabilities_view,
            stored_open_date=card.open_date,
            earliest_transaction_date=self.transactions.earliest_date_for_card(card.id),
            earliest_statement_date=self._earliest_statement(card, liability),
        )

        limit = extract_credit_limit(bundle)
        resolve_credit_limit(card, limit)
        log_extraction("credit_limit", account_id, card.credit_limit_source or "none", card.credit_limit, limit.attempted)
        record_extraction("credit_limit", card.credit_limit_source or "none")

        self._apply_open_date(card, bundle, account_id)

        if liability is not None:
            self.aprs.replace_for_card(card.id, liability.get("aprs") or [])

    def _apply_open_date(self, card: Card, bundle: ExtractionInput, ref: str) -> None:
        opened = extract_open_date(bundle)
        if card.open_date is not None and opened.source != "stored_open_date" and card.open_date != opened.value:
            logger.info(
                f"Replacing open date {card.open_date} with {opened.value}",
                extra={"card_id": str(card.id), "source": opened.source},
            )
        card.open_date = opened.value
        card.open_date_source = opened.source
        log_extraction("open_date", ref, opened.source, opened.value, opened.attempted)
        record_extraction("open_date", opened.source)

    async def sync(self, connection: Connection, access_token: str, today: date | None = None) -> AccountSyncReport:
        today = today or date.today()
        snapshot = await self.fetch_snapshot(access_token)
        report = AccountSyncReport(errors=list(snapshot.errors))

        canonical, report.merged_duplicates = self.collapse_duplicates(connection)

        for account_id, account in snapshot.credit_accounts().items():
            card = canonical.get(account_id)
            if card is None:
                card = self.cards.create(connection.id, account_id)
                canonical[account_id] = card
                logger.info(f"New card for account {account_id}", extra={"connection_id": str(connection.id)})
            self._apply_fields(card, account, snapshot, connection.institution_name, today)
            report.cards.append(card)

        self.transactions.link_unresolved(connection.id, {c.external_account_id: c.id for c in report.cards})
        self.db.flush()
        return report

    def refresh_open_dates(self, connection: Connection, today: date | None = None) -> int:
        """
        Re-run the open-date cascade against stored history once transactions
        are in, so an estimate never lands after a card's earliest transaction.
        Cards without an open date are filled; dates the aggregator reported
        are kept. Returns how many cards changed.
        """
        today = today or date.today()
        changed = 0
        for card in self.cards.list_for_connection(connection.id):
            if card.open_date is not None and card.open_date_source in REPORTED_OPEN_DATE_SOURCES:
                continue
            before = card.open_date
            bundle = ExtractionInput(
                account={"account_id": card.external_account_id, "name": card.name},
                policy=classify(connection.institution_name, card.name),
                today=today,
                stored_open_date=card.open_date,
                earliest_transaction_date=self.transactions.earliest_date_for_card(card.id),
                earliest_statement_date=self._earliest_statement(card, None),
            )
            self._apply_open_date(card, bundle, card.external_account_id)
            if card.open_date != before:
                changed += 1
        self.db.flush()
        return changed
