"""
Field extraction cascades - credit limit and account open date.

Institutions report these fields inconsistently, so each field is resolved by
an ordered list of small strategies. Every strategy takes the normalised
ExtractionInput bundle and returns a value or None; the runner stops at the
first value and records which strategy produced it.

Credit limit order:
1. Institution-specific liability fields (primary, then secondary)
2. APR balance subject to APR, by APR type priority, then any APR
3. Liability "balances.limit"
4. Alternative liability field names
5. "balances.limit" from the balances, accounts, then liabilities endpoint
6. available + |current| from the first source with a positive available
7. None (never zero)

Open date order:
1. Origination date on the liability, then on the account
2. Earliest statement date minus the institution's offset in months
3. Previously stored open date, if still plausible
4. Earliest transaction date minus a fixed margin
5. Fixed default lookback from today
"""

from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any, Callable, Dict, Optional, Sequence

from cardsync.config import settings
from cardsync.domain.models import ExtractionInput, ExtractionResult
from cardsync.domain.transactions import parse_date, to_number
from cardsync.utils.date_utils import subtract_months

SENTINEL_VALUES = frozenset({"n/a", "na", "unknown", "none", "null", "-", ""})

APR_TYPE_PRIORITY = ("purchase_apr", "balance_transfer_apr", "cash_apr", "special")

ALTERNATIVE_LIMIT_FIELDS = ("credit_line", "creditLimit", "total_credit_line", "spending_limit", "limit_amount")


@dataclass(frozen=True)
class Strategy:
    name: str
    extract: Callable[[ExtractionInput], Any]


def run_cascade(strategies: Sequence[Strategy], bundle: ExtractionInput) -> ExtractionResult:
    attempted = []
    for strategy in strategies:
        attempted.append(strategy.name)
        value = strategy.extract(bundle)
        if value is not None:
            return ExtractionResult(value=value, source=strategy.name, attempted=attempted)
    return ExtractionResult(value=None, source="none", attempted=attempted)


# Credit limit

def valid_limit(raw: Any) -> Optional[float]:
    """Positive, finite, non-sentinel amount or None"""
    if isinstance(raw, str) and raw.strip().lower() in SENTINEL_VALUES:
        return None
    value = to_number(raw)
    if value is None or value <= 0:
        return None
    return value


def _balances(source: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    return (source or {}).get("balances") or {}


def _liability_field(position: int) -> Callable[[ExtractionInput], Optional[float]]:
    def extract(bundle: ExtractionInput) -> Optional[float]:
        field_name = bundle.policy.liability_limit_fields[position]
        return valid_limit((bundle.liability or {}).get(field_name))
    return extract


def _apr_typed(bundle: ExtractionInput) -> Optional[float]:
    aprs = (bundle.liability or {}).get("aprs") or []
    for apr_type in APR_TYPE_PRIORITY:
        for apr in aprs:
            if apr.get("apr_type") == apr_type:
                value = valid_limit(apr.get("balance_subject_to_apr"))
                if value is not None:
                    return value
    return None


def _apr_any(bundle: ExtractionInput) -> Optional[float]:
    for apr in (bundle.liability or {}).get("aprs") or []:
        value = valid_limit(apr.get("balance_subject_to_apr"))
        if value is not None:
            return value
    return None


def _liability_balances_limit(bundle: ExtractionInput) -> Optional[float]:
    return valid_limit(_balances(bundle.liability).get("limit"))


def _liability_alternative_fields(bundle: ExtractionInput) -> Optional[float]:
    liability = bundle.liability or {}
    for field_name in ALTERNATIVE_LIMIT_FIELDS:
        value = valid_limit(liability.get(field_name))
        if value is not None:
            return value
    return None


def _endpoint_limit(attr: str) -> Callable[[ExtractionInput], Optional[float]]:
    def extract(bundle: ExtractionInput) -> Optional[float]:
        return valid_limit(_balances(getattr(bundle, attr)).get("limit"))
    return extract


def _calculated_limit(bundle: ExtractionInput) -> Optional[float]:
    for source in (bundle.balance_account, bundle.accounts_account, bundle.liabilities_account, bundle.account):
        balances = _balances(source)
        available = to_number(balances.get("available"))
        if available is not None and available > 0:
            current = to_number(balances.get("current")) or 0.0
            return valid_limit(available + abs(current))
    return None


CREDIT_LIMIT_STRATEGIES: Sequence[Strategy] = (
    Strategy("liability_primary_field", _liability_field(0)),
    Strategy("liability_secondary_field", _liability_field(1)),
    Strategy("apr_balance_by_type", _apr_typed),
    Strategy("apr_balance_any", _apr_any),
    Strategy("liability_balances_limit", _liability_balances_limit),
    Strategy("liability_alternative_field", _liability_alternative_fields),
    Strategy("balances_endpoint_limit", _endpoint_limit("balance_account")),
    Strategy("accounts_endpoint_limit", _endpoint_limit("accounts_account")),
    Strategy("liabilities_endpoint_limit", _endpoint_limit("liabilities_account")),
    Strategy("calculated_available_plus_current", _calculated_limit),
)


def extract_credit_limit(bundle: ExtractionInput) -> ExtractionResult:
    return run_cascade(CREDIT_LIMIT_STRATEGIES, bundle)


# Open date

def plausible_estimate(candidate: Optional[date], bundle: ExtractionInput) -> Optional[date]:
    """
    Bounds for derived open dates: within the plausibility window, not in the
    future, and no earlier than the transaction margin before (nor after) the
    earliest known transaction.
    """
    if candidate is None or candidate > bundle.today:
        return None
    if candidate < bundle.today - timedelta(days=settings.open_date_plausibility_days):
        return None
    earliest = bundle.earliest_transaction_date
    if earliest is not None:
        if candidate > earliest:
            return None
        if candidate < earliest - timedelta(days=settings.open_date_transaction_margin_days):
            return None
    return candidate


def _reported_origination(candidate: Any, bundle: ExtractionInput) -> Optional[date]:
    value = parse_date(candidate)
    if value is None or value > bundle.today:
        return None
    return value


def _liability_origination(bundle: ExtractionInput) -> Optional[date]:
    return _reported_origination((bundle.liability or {}).get("origination_date"), bundle)


def _account_origination(bundle: ExtractionInput) -> Optional[date]:
    for source in (bundle.account, bundle.accounts_account):
        value = _reported_origination((source or {}).get("origination_date"), bundle)
        if value is not None:
            return value
    return None


def _statement_offset(bundle: ExtractionInput) -> Optional[date]:
    if bundle.earliest_statement_date is None:
        return None
    estimate = subtract_months(bundle.earliest_statement_date, bundle.policy.origination_offset_months)
    return plausible_estimate(estimate, bundle)


def _stored_open_date(bundle: ExtractionInput) -> Optional[date]:
    return plausible_estimate(bundle.stored_open_date, bundle)


def _earliest_transaction(bundle: ExtractionInput) -> Optional[date]:
    if bundle.earliest_transaction_date is None:
        return None
    return bundle.earliest_transaction_date - timedelta(days=settings.open_date_transaction_margin_days)


def _default_lookback(bundle: ExtractionInput) -> date:
    return bundle.today - timedelta(days=settings.default_open_date_lookback_days)


OPEN_DATE_STRATEGIES: Sequence[Strategy] = (
    Strategy("liability_origination_date", _liability_origination),
    Strategy("account_origination_date", _account_origination),
    Strategy("statement_offset_estimate", _statement_offset),
    Strategy("stored_open_date", _stored_open_date),
    Strategy("earliest_transaction_margin", _earliest_transaction),
    Strategy("default_lookback", _default_lookback),
)


def extract_open_date(bundle: ExtractionInput) -> ExtractionResult:
    return run_cascade(OPEN_DATE_STRATEGIES, bundle)
