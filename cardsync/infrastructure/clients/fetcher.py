"""Date-chunked transaction fetch sized per institution policy"""

import asyncio
import logging
from datetime import date, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Protocol, Tuple

from cardsync.config import settings
from cardsync.domain.exceptions import AggregatorError, ReconnectionRequiredError
from cardsync.domain.models import FetchResult, FetchState, InstitutionPolicy
from cardsync.domain.transactions import parse_date
from cardsync.infrastructure.observability.metrics import chunk_failure_counter

logger = logging.getLogger(__name__)


class TransactionSource(Protocol):
    async def get_transactions(self, access_token: str, start_date: date, end_date: date) -> List[Dict[str, Any]]:
        ...


def split_range(start: date, end: date, chunk_days: int) -> List[Tuple[date, date]]:
    """
    Split [start, end] into inclusive, non-overlapping windows of at most chunk_days,
    newest window first so a later failure still leaves the most recent data.
    """
    if start > end:
        return []
    chunks = []
    chunk_end = end
    while chunk_end >= start:
        chunk_start = max(start, chunk_end - timedelta(days=chunk_days - 1))
        chunks.append((chunk_start, chunk_end))
        chunk_end = chunk_start - timedelta(days=1)
    return chunks


class ChunkedTransactionFetcher:
    """
    Fetches a transaction history window for one connection.

    Restricted-history institutions get a single call over at most the last
    max_lookback_days; everyone else is fetched in sequential chunks with a
    small pause between calls. A failed chunk stops the fetch and the chunks
    already fetched are returned as a partial failure. A credential failure
    is the exception: it propagates so the caller can drive reconnection.
    """

    def __init__(
        self,
        source: TransactionSource,
        inter_chunk_delay: float | None = None,
        short_span_ratio: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.source = source
        self.inter_chunk_delay = (
            settings.inter_chunk_delay_seconds if inter_chunk_delay is None else inter_chunk_delay
        )
        self.short_span_ratio = settings.short_span_warning_ratio if short_span_ratio is None else short_span_ratio
        self._sleep = sleep

    @staticmethod
    def bounded_range(policy: InstitutionPolicy, start: date, end: date, today: date) -> Tuple[date, date]:
        """Clamp the requested range to the policy's maximum lookback and to today"""
        end = min(end, today)
        earliest_allowed = today - timedelta(days=policy.max_lookback_days)
        return max(start, earliest_allowed), end

    async def fetch(
        self,
        access_token: str,
        policy: InstitutionPolicy,
        start: date,
        end: date,
        today: date | None = None,
    ) -> FetchResult:
        today = today or date.today()
        start, end = self.bounded_range(policy, start, end, today)

        if policy.restricted_history:
            chunks = [(start, end)] if start <= end else []
        else:
            chunks = split_range(start, end, policy.chunk_days)

        result = FetchResult(
            transactions=[],
            state=FetchState.NOT_STARTED,
            start_date=start,
            end_date=end,
            chunks_total=len(chunks),
            chunks_completed=0,
        )
        collected: Dict[str, Dict[str, Any]] = {}

        for index, (chunk_start, chunk_end) in enumerate(chunks):
            result.state = FetchState.FETCHING
            if index > 0 and self.inter_chunk_delay > 0:
                await self._sleep(self.inter_chunk_delay)

            logger.info(
                f"Fetching chunk {index + 1}/{len(chunks)}: {chunk_start} to {chunk_end}",
                extra={"step": "fetch_chunk", "policy": policy.key, "chunk": index + 1, "chunks": len(chunks)},
            )
            try:
                page = await self.source.get_transactions(access_token, chunk_start, chunk_end)
            except ReconnectionRequiredError:
                raise
            except AggregatorError as e:
                chunk_failure_counter.inc()
                result.errors.append(f"chunk {chunk_start}..{chunk_end}: {e}")
                result.state = FetchState.PARTIAL_FAILURE
                logger.error(
                    f"Chunk {chunk_start}..{chunk_end} failed, keeping {len(collected)} transactions fetched so far: {e}",
                    extra={"step": "fetch_chunk", "policy": policy.key, "error_type": type(e).__name__},
                )
                break

            for txn in page:
                txn_date = parse_date(txn.get("date"))
                if txn_date is not None and not (start <= txn_date <= end):
                    continue
                key = txn.get("transaction_id") or f"_anon_{len(collected)}"
                collected[key] = txn
            result.chunks_completed += 1

        result.transactions = list(collected.values())
        if result.state != FetchState.PARTIAL_FAILURE:
            result.state = FetchState.DONE

        self._validate_span(result, policy)
        return result

    def _validate_span(self, result: FetchResult, policy: InstitutionPolicy) -> None:
        dates = [d for d in (parse_date(t.get("date")) for t in result.transactions) if d is not None]
        if not dates:
            result.covered_span_days = 0
        else:
            result.covered_span_days = (max(dates) - min(dates)).days + 1

        requested_span = (result.end_date - result.start_date).days + 1
        if policy.restricted_history and dates and requested_span > 0:
            if result.covered_span_days < requested_span * self.short_span_ratio:
                result.short_span = True
                logger.warning(
                    f"{policy.key}: returned {result.covered_span_days} days of history, expected about {requested_span}",
                    extra={"step": "fetch_validation", "policy": policy.key},
                )
