"""Retry executor with exponential backoff and jitter for aggregator calls"""

import asyncio
import logging
import random
from typing import Awaitable, Callable, TypeVar

from cardsync.config import settings
from cardsync.domain.exceptions import (
    RateLimitedError,
    RateLimitExceededError,
    RequestFailedError,
    TransientAggregatorError,
)
from cardsync.infrastructure.observability.metrics import aggregator_retry_counter, rate_limit_exhausted_counter

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryExecutor:
    """
    Runs an aggregator operation, retrying only what is worth retrying.

    Retry strategy:
    - Rate limited: base * 2^(attempt-1) + uniform(0, max_jitter), up to
      rate_limit_max_attempts, then RateLimitExceededError
    - Timeout / connection reset: step * attempt, up to transient_max_attempts,
      then RequestFailedError
    - Anything else propagates immediately
    """

    def __init__(
        self,
        max_attempts: int | None = None,
        backoff_base: float | None = None,
        max_jitter: float | None = None,
        transient_max_attempts: int | None = None,
        transient_backoff_step: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
    ):
        self.max_attempts = max_attempts or settings.rate_limit_max_attempts
        self.backoff_base = settings.rate_limit_backoff_base if backoff_base is None else backoff_base
        self.max_jitter = settings.rate_limit_max_jitter if max_jitter is None else max_jitter
        self.transient_max_attempts = transient_max_attempts or settings.transient_max_attempts
        self.transient_backoff_step = (
            settings.transient_backoff_step if transient_backoff_step is None else transient_backoff_step
        )
        self._sleep = sleep
        self._rng = rng or random.Random()

    def rate_limit_delay(self, attempt: int) -> float:
        return self.backoff_base * (2 ** (attempt - 1)) + self._rng.uniform(0, self.max_jitter)

    def transient_delay(self, attempt: int) -> float:
        return self.transient_backoff_step * attempt

    async def run(self, operation: Callable[[], Awaitable[T]], description: str = "aggregator call") -> T:
        rate_limited = 0
        transient = 0
        while True:
            try:
                return await operation()

            except RateLimitedError as e:
                rate_limited += 1
                if rate_limited >= self.max_attempts:
                    rate_limit_exhausted_counter.inc()
                    logger.error(
                        f"{description}: rate limit persisted after {rate_limited} attempts",
                        extra={"step": "retry", "reason": "rate_limit", "attempts": rate_limited},
                    )
                    raise RateLimitExceededError(
                        f"Rate limit exceeded for {description}",
                        attempts=rate_limited,
                        status_code=e.status_code,
                        error_code=e.error_code,
                        error_type=e.error_type,
                    ) from e

                delay = self.rate_limit_delay(rate_limited)
                aggregator_retry_counter.labels(reason="rate_limit").inc()
                logger.warning(
                    f"{description}: rate limited, retrying in {delay:.2f}s",
                    extra={"step": "retry", "reason": "rate_limit", "attempt": rate_limited, "delay": delay},
                )
                await self._sleep(delay)

            except TransientAggregatorError as e:
                transient += 1
                if transient >= self.transient_max_attempts:
                    raise RequestFailedError(
                        f"{description} failed after {transient} attempts: {e}",
                        status_code=e.status_code,
                    ) from e

                delay = self.transient_delay(transient)
                aggregator_retry_counter.labels(reason="transient").inc()
                logger.warning(
                    f"{description}: transient failure ({e}), retrying in {delay:.2f}s",
                    extra={"step": "retry", "reason": "transient", "attempt": transient, "delay": delay},
                )
                await self._sleep(delay)
