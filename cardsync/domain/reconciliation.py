"""Billing-cycle reconciliation across fetch scopes"""

from collections import defaultdict
from dataclasses import replace
from datetime import date
from typing import Any, Dict, Iterable, List, Tuple

from cardsync.domain.models import CycleRecord

RECENT_CYCLES_PER_CARD = 2


def richness(record: CycleRecord) -> Tuple[bool, int, float]:
    """
    Sort key: higher is richer.

    Closing data (statement balance, minimum payment, or due date) beats
    totals; then transaction count; then absolute spend.
    """
    return (record.has_closing_data, record.transaction_count, abs(record.total_spend or 0.0))


def _day(value: Any) -> date:
    return value.date() if hasattr(value, "date") and callable(value.date) else value


def totals(record: CycleRecord) -> Tuple[int, float]:
    return (record.transaction_count, abs(record.total_spend or 0.0))


def reconcile_cycles(*scopes: Iterable[CycleRecord]) -> List[CycleRecord]:
    """
    Collapse cycle records from any number of fetch scopes to one per
    (card, start, end) key, newest start first.

    The richest record is the base. When another record for the same key
    has higher-fidelity totals, the base takes its transaction count and
    spend. Ties keep the record seen first, so pass the scope you trust
    more first.
    """
    best: Dict[Tuple[Any, date, date], CycleRecord] = {}
    busiest: Dict[Tuple[Any, date, date], CycleRecord] = {}
    for scope in scopes:
        for record in scope:
            key = (record.card_id, _day(record.start_date), _day(record.end_date))
            current = best.get(key)
            if current is None or richness(record) > richness(current):
                best[key] = record
            current = busiest.get(key)
            if current is None or totals(record) > totals(current):
                busiest[key] = record

    merged = []
    for key, record in best.items():
        donor = busiest[key]
        if totals(donor) > totals(record):
            record = replace(record, transaction_count=donor.transaction_count, total_spend=donor.total_spend)
        merged.append(record)
    return sorted(merged, key=lambda r: _day(r.start_date), reverse=True)


def duplicates_of(records: Iterable[CycleRecord], kept: Iterable[CycleRecord]) -> List[CycleRecord]:
    """Records that lost reconciliation; a merged winner still owns its stored id"""
    kept = list(kept)
    kept_objects = {id(r) for r in kept}
    kept_ids = {r.id for r in kept if r.id is not None}
    return [r for r in records if id(r) not in kept_objects and (r.id is None or r.id not in kept_ids)]


def recent_scope(records: Iterable[CycleRecord], per_card: int = RECENT_CYCLES_PER_CARD) -> List[CycleRecord]:
    """The newest `per_card` cycles (by end date) for each card"""
    by_card: Dict[Any, List[CycleRecord]] = defaultdict(list)
    for record in sorted(records, key=lambda r: _day(r.end_date), reverse=True):
        if len(by_card[record.card_id]) < per_card:
            by_card[record.card_id].append(record)
    return [record for cycles in by_card.values() for record in cycles]


def limit_cycles(records: List[CycleRecord], max_cycles: int | None) -> List[CycleRecord]:
    """Keep the most recent `max_cycles` cycles; None keeps everything"""
    if max_cycles is None:
        return records
    return sorted(records, key=lambda r: _day(r.end_date), reverse=True)[:max_cycles]
