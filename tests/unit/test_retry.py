"""Unit tests for the aggregator retry executor"""

import random
import pytest
from cardsync.domain.exceptions import (
    RateLimitedError,
    RateLimitExceededError,
    ReconnectionRequiredError,
    RequestFailedError,
    TransientAggregatorError,
)
from cardsync.infrastructure.clients.retry import RetryExecutor


class SleepRecorder:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def scripted(*outcomes):
    """Operation that raises or returns each outcome in turn"""
    remaining = list(outcomes)
    calls = {"count": 0}

    async def operation():
        calls["count"] += 1
        outcome = remaining.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    return operation, calls


async def test_success_first_try_does_not_sleep():
    """Test a successful call returns immediately"""
    sleep = SleepRecorder()
    executor = RetryExecutor(sleep=sleep)
    operation, calls = scripted({"ok": True})

    assert await executor.run(operation) == {"ok": True}
    assert calls["count"] == 1
    assert sleep.delays == []


async def test_rate_limit_exhaustion_makes_exactly_max_attempts():
    """Test persistent rate limiting gives up after 5 calls with bounded backoff"""
    sleep = SleepRecorder()
    executor = RetryExecutor(max_attempts=5, backoff_base=1.0, max_jitter=2.0, sleep=sleep, rng=random.Random(7))
    operation, calls = scripted(*[RateLimitedError("slow down", status_code=429)] * 5)

    with pytest.raises(RateLimitExceededError) as exc_info:
        await executor.run(operation, description="/transactions/get")

    assert calls["count"] == 5
    assert exc_info.value.attempts == 5
    assert len(sleep.delays) == 4
    # Exponential base with jitter in [0, 2]
    for attempt, delay in enumerate(sleep.delays, start=1):
        base = 2 ** (attempt - 1)
        assert base <= delay <= base + 2.0


async def test_rate_limit_recovers_before_exhaustion():
    """Test a call that succeeds on the third attempt"""
    sleep = SleepRecorder()
    executor = RetryExecutor(max_attempts=5, sleep=sleep, rng=random.Random(1))
    operation, calls = scripted(RateLimitedError("429"), RateLimitedError("429"), ["txn"])

    assert await executor.run(operation) == ["txn"]
    assert calls["count"] == 3
    assert len(sleep.delays) == 2


async def test_transient_errors_use_linear_backoff():
    """Test timeouts retry with step * attempt delays then fail as a request failure"""
    sleep = SleepRecorder()
    executor = RetryExecutor(transient_max_attempts=3, transient_backoff_step=1.0, sleep=sleep)
    operation, calls = scripted(*[TransientAggregatorError("timeout")] * 3)

    with pytest.raises(RequestFailedError):
        await executor.run(operation)

    assert calls["count"] == 3
    assert sleep.delays == [1.0, 2.0]


async def test_reconnection_required_is_not_retried():
    """Test credential errors propagate on the first attempt"""
    sleep = SleepRecorder()
    executor = RetryExecutor(sleep=sleep)
    operation, calls = scripted(ReconnectionRequiredError("login required", error_code="ITEM_LOGIN_REQUIRED"))

    with pytest.raises(ReconnectionRequiredError):
        await executor.run(operation)

    assert calls["count"] == 1
    assert sleep.delays == []


async def test_other_request_failures_are_not_retried():
    """Test non-retryable errors propagate unchanged"""
    executor = RetryExecutor(sleep=SleepRecorder())
    operation, calls = scripted(RequestFailedError("bad request", status_code=400))

    with pytest.raises(RequestFailedError):
        await executor.run(operation)
    assert calls["count"] == 1


def test_rate_limit_delay_is_bounded():
    """Test delay for attempt n lies in [base * 2^(n-1), base * 2^(n-1) + jitter]"""
    executor = RetryExecutor(backoff_base=0.5, max_jitter=1.0, rng=random.Random(3))
    for attempt in range(1, 6):
        delay = executor.rate_limit_delay(attempt)
        assert 0.5 * 2 ** (attempt - 1) <= delay <= 0.5 * 2 ** (attempt - 1) + 1.0
