"""Domain models - pure Python dataclasses representing sync entities"""

from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


@dataclass(frozen=True)
class InstitutionPolicy:
    """How a family of institutions is fetched and interpreted"""

    key: str
    tokens: Tuple[str, ...]
    restricted_history: bool
    max_lookback_days: int
    chunk_days: int
    origination_offset_months: int
    liability_limit_fields: Tuple[str, str] = ("credit_limit", "limit")
    max_cycles: Optional[int] = None


class FetchState(str, Enum):
    NOT_STARTED = "not_started"
    FETCHING = "fetching"
    DONE = "done"
    PARTIAL_FAILURE = "partial_failure"


@dataclass
class FetchResult:
    """Outcome of a chunked transaction fetch"""

    transactions: List[Dict[str, Any]]
    state: FetchState
    start_date: date
    end_date: date
    chunks_total: int
    chunks_completed: int
    errors: List[str] = field(default_factory=list)
    covered_span_days: int = 0
    short_span: bool = False

    @property
    def degraded(self) -> bool:
        return self.state == FetchState.PARTIAL_FAILURE


@dataclass
class NormalizedTransaction:
    """Aggregator transaction validated and mapped onto storage fields"""

    external_id: str
    external_account_id: str
    amount: float
    date: date
    name: str
    merchant_name: Optional[str]
    category: Optional[str]
    subcategory: Optional[str]
    category_id: Optional[str]
    iso_currency_code: Optional[str]
    authorized_date: Optional[date]
    pending: bool
    is_payment: bool
    needs_review: bool


@dataclass
class ExtractionInput:
    """Everything the field cascades may look at for one account"""

    account: Dict[str, Any]
    policy: InstitutionPolicy
    today: date
    liability: Optional[Dict[str, Any]] = None
    balance_account: Optional[Dict[str, Any]] = None
    accounts_account: Optional[Dict[str, Any]] = None
    liabilities_account: Optional[Dict[str, Any]] = None
    stored_open_date: Optional[date] = None
    earliest_transaction_date: Optional[date] = None
    earliest_statement_date: Optional[date] = None


@dataclass
class ExtractionResult:
    """Value chosen by a cascade and the strategy that produced it"""

    value: Any
    source: str
    attempted: List[str] = field(default_factory=list)

    @property
    def found(self) -> bool:
        return self.value is not None


class PaymentStatus(str, Enum):
    CURRENT = "current"
    DUE = "due"
    PAID = "paid"
    OUTSTANDING = "outstanding"


@dataclass
class CycleRecord:
    """A billing cycle as produced by one fetch scope"""

    card_id: Any
    start_date: date
    end_date: date
    total_spend: float = 0.0
    transaction_count: int = 0
    statement_balance: Optional[float] = None
    minimum_payment: Optional[float] = None
    due_date: Optional[date] = None
    payment_status: PaymentStatus = PaymentStatus.CURRENT
    id: Any = None

    @property
    def key(self) -> Tuple[Any, date, date]:
        return (self.card_id, self.start_date, self.end_date)

    @property
    def has_closing_data(self) -> bool:
        return (
            self.statement_balance is not None
            or self.minimum_payment is not None
            or self.due_date is not None
        )


class SyncStatus(str, Enum):
    SUCCESS = "success"
    DEGRADED = "degraded"
    NEEDS_RECONNECTION = "needs_reconnection"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class AccumulationReport:
    """What one accumulator run wrote"""

    upserted: int = 0
    skipped: int = 0
    flagged: int = 0
    unresolved_cards: int = 0
    fallback_used: bool = False
    preserved_older: int = 0


@dataclass
class SyncResult:
    """Per-connection outcome consumed by whoever triggered the sync"""

    connection_id: Any
    status: SyncStatus
    cards_synced: int = 0
    transactions_upserted: int = 0
    transactions_skipped: int = 0
    transactions_flagged: int = 0
    preserved_older: int = 0
    fetch_state: Optional[FetchState] = None
    errors: List[str] = field(default_factory=list)


class ReconnectionStage(str, Enum):
    TOKEN_REFRESHED = "token_refreshed"
    VALIDATING_TOKEN = "validating_token"
    SYNCING_ACCOUNTS = "syncing_accounts"
    SYNCING_TRANSACTIONS = "syncing_transactions"
    BACKFILLING_OPEN_DATES = "backfilling_open_dates"
    VALIDATING = "validating"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass
class StageOutcome:
    stage: ReconnectionStage
    ok: bool
    detail: str = ""


@dataclass
class CompletenessCheck:
    """Minimum viable data after a reconnection"""

    account_count: int
    accounts_with_open_date: int
    accounts_with_balance_or_activity: int

    @property
    def passed(self) -> bool:
        return (
            self.account_count > 0
            and self.accounts_with_open_date > 0
            and self.accounts_with_balance_or_activity > 0
        )


@dataclass
class ReconnectionReport:
    connection_id: Any
    final_stage: ReconnectionStage
    stages: List[StageOutcome] = field(default_factory=list)
    completeness: Optional[CompletenessCheck] = None

    @property
    def succeeded(self) -> bool:
        return self.final_stage == ReconnectionStage.SUCCESS


@dataclass
class ConnectionHealth:
    connection_id: Any
    status: str  # "healthy" | "requires_auth" | "error"
    connectivity: Dict[str, bool]
    error_code: Optional[str] = None
    recommended_action: str = ""
