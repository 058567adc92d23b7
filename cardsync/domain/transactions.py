"""Transaction validation and normalisation of aggregator records"""

import math
from datetime import date, datetime
from typing import Any, Dict, Optional

from cardsync.domain.exceptions import InvalidTransactionDataError
from cardsync.domain.models import NormalizedTransaction

PAYMENT_INDICATORS = (
    "pymt",
    "payment",
    "autopay",
    "online payment",
    "mobile payment",
    "phone payment",
    "bank payment",
    "ach payment",
    "electronic payment",
    "web payment",
)


def parse_date(value: Any) -> Optional[date]:
    """Accept date, datetime, or ISO string; anything else is None"""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value:
        try:
            return date.fromisoformat(value[:10])
        except ValueError:
            return None
    return None


def to_number(value: Any) -> Optional[float]:
    """Finite float from a number or numeric string, else None"""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip().replace(",", "").lstrip("$"))
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def is_payment_transaction(name: str | None) -> bool:
    lowered = (name or "").lower()
    return any(indicator in lowered for indicator in PAYMENT_INDICATORS)


def validate_amount(raw: Any, ceiling: float) -> float:
    """
    Amount sanity check.

    Raises:
        InvalidTransactionDataError: missing, non-numeric, NaN/inf, or beyond the ceiling
    """
    amount = to_number(raw)
    if amount is None:
        raise InvalidTransactionDataError(f"Unusable amount: {raw!r}")
    if abs(amount) > ceiling:
        raise InvalidTransactionDataError(f"Amount {amount} exceeds sanity ceiling {ceiling}")
    return amount


def normalize_transaction(raw: Dict[str, Any], ceiling: float) -> NormalizedTransaction:
    """
    Map one aggregator transaction onto storage fields.

    Sign convention is kept as delivered: positive is spend, negative is a
    payment or credit.

    Raises:
        InvalidTransactionDataError: missing identifiers, date, or a bad amount
    """
    external_id = raw.get("transaction_id")
    if not external_id:
        raise InvalidTransactionDataError("Transaction has no transaction_id")
    txn_date = parse_date(raw.get("date"))
    if txn_date is None:
        raise InvalidTransactionDataError(f"Transaction {external_id} has no usable date")
    amount = validate_amount(raw.get("amount"), ceiling)

    legacy_category = raw.get("category") or []
    pfc = raw.get("personal_finance_category") or {}
    name = raw.get("name") or raw.get("merchant_name") or ""

    return NormalizedTransaction(
        external_id=external_id,
        external_account_id=raw.get("account_id") or "",
        amount=amount,
        date=txn_date,
        name=name,
        merchant_name=raw.get("merchant_name"),
        category=pfc.get("primary") or (legacy_category[0] if legacy_category else None),
        subcategory=legacy_category[1] if len(legacy_category) > 1 else pfc.get("detailed"),
        category_id=raw.get("category_id"),
        iso_currency_code=raw.get("iso_currency_code"),
        authorized_date=parse_date(raw.get("authorized_date")),
        pending=bool(raw.get("pending", False)),
        is_payment=is_payment_transaction(name),
        needs_review=amount == 0,
    )
