"""Unit tests for transaction normalisation"""

import pytest
from datetime import date
from cardsync.domain.exceptions import InvalidTransactionDataError
from cardsync.domain.transactions import (
    is_payment_transaction,
    normalize_transaction,
    parse_date,
    to_number,
    validate_amount,
)

CEILING = 1_000_000.0


def raw(**overrides):
    txn = {
        "transaction_id": "txn-1",
        "account_id": "acc-1",
        "amount": 42.5,
        "date": "2025-06-01",
        "authorized_date": "2025-05-31",
        "name": "Grocery Store",
        "merchant_name": "Grocer",
        "pending": True,
        "category": ["Shops", "Supermarkets and Groceries"],
        "category_id": "19047000",
        "iso_currency_code": "USD",
    }
    txn.update(overrides)
    return txn


def test_normalize_maps_fields():
    """Test a well-formed transaction maps onto storage fields"""
    txn = normalize_transaction(raw(), CEILING)

    assert txn.external_id == "txn-1"
    assert txn.external_account_id == "acc-1"
    assert txn.amount == 42.5
    assert txn.date == date(2025, 6, 1)
    assert txn.authorized_date == date(2025, 5, 31)
    assert txn.pending is True
    assert txn.category == "Shops"
    assert txn.subcategory == "Supermarkets and Groceries"
    assert txn.is_payment is False
    assert txn.needs_review is False


def test_personal_finance_category_preferred():
    """Test the newer category field wins over the legacy list"""
    txn = normalize_transaction(
        raw(personal_finance_category={"primary": "FOOD_AND_DRINK", "detailed": "FOOD_AND_DRINK_GROCERIES"}, category=None),
        CEILING,
    )
    assert txn.category == "FOOD_AND_DRINK"
    assert txn.subcategory == "FOOD_AND_DRINK_GROCERIES"


def test_payment_keeps_sign_and_is_flagged():
    """Test payments are detected by name and the amount sign is untouched"""
    txn = normalize_transaction(raw(name="AUTOPAY PYMT - THANK YOU", amount=-350.0), CEILING)
    assert txn.is_payment is True
    assert txn.amount == -350.0


def test_zero_amount_flagged_for_review():
    """Test zero amounts are kept but flagged"""
    txn = normalize_transaction(raw(amount=0), CEILING)
    assert txn.amount == 0.0
    assert txn.needs_review is True


@pytest.mark.parametrize("amount", [None, "abc", float("nan"), float("inf"), 2_000_000.0, -2_000_000.0])
def test_invalid_amounts_rejected(amount):
    """Test NaN, infinities, non-numeric and absurd amounts are rejected"""
    with pytest.raises(InvalidTransactionDataError):
        normalize_transaction(raw(amount=amount), CEILING)


def test_missing_identifier_or_date_rejected():
    """Test records without an id or a usable date are rejected"""
    with pytest.raises(InvalidTransactionDataError):
        normalize_transaction(raw(transaction_id=None), CEILING)
    with pytest.raises(InvalidTransactionDataError):
        normalize_transaction(raw(date="not-a-date"), CEILING)


def test_to_number_and_validate_amount():
    """Test numeric coercion rules"""
    assert to_number("$1,250.75") == 1250.75
    assert to_number(False) is None
    assert to_number({"amount": 1}) is None
    assert validate_amount("12.5", CEILING) == 12.5


def test_parse_date_variants():
    """Test ISO strings with a time part are accepted"""
    assert parse_date("2025-06-01T12:30:00Z") == date(2025, 6, 1)
    assert parse_date(date(2025, 1, 2)) == date(2025, 1, 2)
    assert parse_date("") is None
    assert parse_date(20250601) is None


def test_payment_indicators():
    """Test common payment descriptions"""
    assert is_payment_transaction("ONLINE PAYMENT, THANK YOU")
    assert is_payment_transaction("Mobile Pymt")
    assert not is_payment_transaction("Payless Shoes")
    assert not is_payment_transaction(None)
