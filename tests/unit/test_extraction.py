"""Unit tests for credit limit and open date extraction"""

import pytest
from datetime import date, timedelta
from cardsync.domain.extraction import (
    CREDIT_LIMIT_STRATEGIES,
    OPEN_DATE_STRATEGIES,
    extract_credit_limit,
    extract_open_date,
    valid_limit,
)
from cardsync.domain.institutions import DEFAULT_POLICY, classify
from cardsync.domain.models import ExtractionInput

TODAY = date(2025, 6, 15)


def bundle(**kwargs) -> ExtractionInput:
    kwargs.setdefault("account", {"account_id": "acc-1", "balances": {}})
    kwargs.setdefault("policy", DEFAULT_POLICY)
    kwargs.setdefault("today", TODAY)
    return ExtractionInput(**kwargs)


@pytest.mark.parametrize("raw", [None, 0, -500, "N/A", "unknown", "", float("nan"), float("inf"), True])
def test_valid_limit_rejects_sentinels_and_non_positive(raw):
    """Test sentinel and non-positive values are never used as a limit"""
    assert valid_limit(raw) is None


def test_valid_limit_accepts_numeric_strings():
    """Test string amounts from inconsistent institutions are parsed"""
    assert valid_limit("5,000.00") == 5000.0
    assert valid_limit(7500) == 7500.0


def test_credit_limit_earlier_source_wins():
    """Test with only the APR balance and the balances endpoint present, the APR source wins"""
    result = extract_credit_limit(
        bundle(
            liability={"aprs": [{"apr_type": "purchase_apr", "balance_subject_to_apr": 3200.0}]},
            balance_account={"balances": {"limit": 9000.0}},
        )
    )
    assert result.value == 3200.0
    assert result.source == "apr_balance_by_type"
    assert result.attempted == ["liability_primary_field", "liability_secondary_field", "apr_balance_by_type"]


def test_credit_limit_apr_type_priority():
    """Test purchase APR is preferred over cash APR regardless of order"""
    result = extract_credit_limit(
        bundle(
            liability={
                "aprs": [
                    {"apr_type": "cash_apr", "balance_subject_to_apr": 100.0},
                    {"apr_type": "purchase_apr", "balance_subject_to_apr": 2500.0},
                ]
            }
        )
    )
    assert result.value == 2500.0


def test_credit_limit_institution_specific_field():
    """Test the institution's own liability field is consulted first"""
    policy = classify("Capital One")
    result = extract_credit_limit(
        bundle(policy=policy, liability={"limit_amount": "6000", "credit_line": 1000})
    )
    assert result.value == 6000.0
    assert result.source == "liability_secondary_field"


def test_credit_limit_sentinel_falls_through():
    """Test a sentinel in an early field does not stop the cascade"""
    result = extract_credit_limit(
        bundle(
            liability={"credit_limit": "N/A", "balances": {"limit": 4000}},
        )
    )
    assert result.value == 4000.0
    assert result.source == "liability_balances_limit"


def test_credit_limit_calculated_from_available_and_current():
    """Test available + |current| is the last resort"""
    result = extract_credit_limit(
        bundle(accounts_account={"balances": {"available": 800.0, "current": -200.0}})
    )
    assert result.value == 1000.0
    assert result.source == "calculated_available_plus_current"


def test_credit_limit_none_when_nothing_valid():
    """Test absence of data yields None, never zero"""
    result = extract_credit_limit(
        bundle(
            liability={"credit_limit": 0},
            balance_account={"balances": {"limit": "unknown", "available": 0}},
        )
    )
    assert result.value is None
    assert result.found is False
    assert result.attempted == [s.name for s in CREDIT_LIMIT_STRATEGIES]


def test_open_date_from_liability_origination():
    """Test a reported origination date is used as-is"""
    result = extract_open_date(bundle(liability={"origination_date": "2015-03-01"}))
    assert result.value == date(2015, 3, 1)
    assert result.source == "liability_origination_date"


def test_open_date_future_origination_rejected():
    """Test origination dates in the future are skipped"""
    result = extract_open_date(
        bundle(
            liability={"origination_date": (TODAY + timedelta(days=10)).isoformat()},
            earliest_transaction_date=TODAY - timedelta(days=100),
        )
    )
    assert result.source == "earliest_transaction_margin"
    assert result.value == TODAY - timedelta(days=121)


def test_open_date_from_statement_offset():
    """Test restricted institutions subtract their larger month offset from the earliest statement"""
    result = extract_open_date(
        bundle(
            policy=classify("Capital One"),
            earliest_statement_date=date(2025, 5, 31),
        )
    )
    assert result.value == date(2025, 2, 28)
    assert result.source == "statement_offset_estimate"


def test_stale_stored_open_date_is_discarded():
    """Test a stored open date five years before the earliest transaction is replaced"""
    earliest = TODAY - timedelta(days=180)
    result = extract_open_date(
        bundle(
            stored_open_date=earliest - timedelta(days=5 * 365),
            earliest_transaction_date=earliest,
        )
    )
    assert result.source == "earliest_transaction_margin"
    assert result.value == earliest - timedelta(days=21)


def test_plausible_stored_open_date_is_kept():
    """Test a stored estimate inside the margin survives"""
    earliest = TODAY - timedelta(days=180)
    stored = earliest - timedelta(days=10)
    result = extract_open_date(bundle(stored_open_date=stored, earliest_transaction_date=earliest))
    assert result.value == stored
    assert result.source == "stored_open_date"


def test_statement_estimate_after_first_transaction_is_rejected():
    """Test an estimate later than the earliest transaction is not plausible"""
    result = extract_open_date(
        bundle(
            earliest_statement_date=TODAY - timedelta(days=10),
            earliest_transaction_date=TODAY - timedelta(days=200),
        )
    )
    assert result.source == "earliest_transaction_margin"


def test_open_date_default_lookback():
    """Test with no data at all the open date is one year back"""
    result = extract_open_date(bundle())
    assert result.value == TODAY - timedelta(days=365)
    assert result.source == "default_lookback"
    assert result.attempted == [s.name for s in OPEN_DATE_STRATEGIES]
