"""Institution classification - one lookup table for every institution-specific policy"""

from typing import Iterable, Tuple
from cardsync.domain.models import InstitutionPolicy
from cardsync.config import settings


# Order matters: the first policy whose tokens match wins.
# Card product names are included because some items report a generic
# institution name while the account name carries the brand.
INSTITUTION_POLICIES: Tuple[InstitutionPolicy, ...] = (
    InstitutionPolicy(
        key="capital_one",
        tokens=("capital one", "quicksilver", "venture", "savor", "spark"),
        restricted_history=True,
        max_lookback_days=settings.restricted_lookback_days,
        chunk_days=settings.restricted_lookback_days,
        origination_offset_months=3,
        liability_limit_fields=("credit_limit", "limit_amount"),
        max_cycles=4,
    ),
    InstitutionPolicy(
        key="american_express",
        tokens=("american express", "amex"),
        restricted_history=False,
        max_lookback_days=settings.standard_lookback_days,
        chunk_days=60,
        origination_offset_months=1,
        liability_limit_fields=("credit_limit", "total_credit_limit"),
    ),
    InstitutionPolicy(
        key="bank_of_america",
        tokens=("bank of america",),
        restricted_history=False,
        max_lookback_days=settings.standard_lookback_days,
        chunk_days=settings.default_chunk_days,
        origination_offset_months=1,
        liability_limit_fields=("credit_limit", "credit_line"),
    ),
)

DEFAULT_POLICY = InstitutionPolicy(
    key="standard",
    tokens=(),
    restricted_history=False,
    max_lookback_days=settings.standard_lookback_days,
    chunk_days=settings.default_chunk_days,
    origination_offset_months=1,
)


def classify(institution_name: str | None, account_name: str | None = None) -> InstitutionPolicy:
    """
    Resolve the policy for an institution/account pair.

    Case-insensitive substring match of each policy's tokens against both
    names. Unknown institutions get DEFAULT_POLICY.
    """
    haystacks = [name.lower() for name in (institution_name, account_name) if name]
    for policy in INSTITUTION_POLICIES:
        if any(token in text for token in policy.tokens for text in haystacks):
            return policy
    return DEFAULT_POLICY


def classify_connection(institution_name: str | None, account_names: Iterable[str | None] = ()) -> InstitutionPolicy:
    """Policy for a whole connection: the institution name, then any of its account names"""
    policy = classify(institution_name)
    if policy is not DEFAULT_POLICY:
        return policy
    for account_name in account_names:
        policy = classify(None, account_name)
        if policy is not DEFAULT_POLICY:
            return policy
    return DEFAULT_POLICY


def is_restricted_history(institution_name: str | None, account_name: str | None = None) -> bool:
    return classify(institution_name, account_name).restricted_history
