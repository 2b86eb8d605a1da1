from __future__ import annotations

import pytest

from previewhub.core.errors import IntegrationUnavailableError
from previewhub.services.resilience import CircuitBreaker, CircuitBreakerConfig, RetryPolicy, retry_async
from previewhub.tests.utils.builders import RecordingSleep


@pytest.mark.asyncio
async def test_retry_async_retries_transient() -> None:
    calls = {"count": 0}

    async def flaky() -> str:
        calls["count"] += 1
        if calls["count"] < 2:
            raise TimeoutError("timeout")
        return "ok"

    result = await retry_async(
        flaky,
        policy=RetryPolicy(timeout_ms=100, max_attempts=2, backoff_ms=1),
        sleep=RecordingSleep(),
    )
    assert result == "ok"
    assert calls["count"] == 2


@pytest.mark.asyncio
async def test_retry_async_stops_on_non_retryable() -> None:
    calls = {"count": 0}

    async def broken() -> None:
        calls["count"] += 1
        raise ValueError("bad input")

    with pytest.raises(ValueError):
        await retry_async(
            broken,
            policy=RetryPolicy(timeout_ms=100, max_attempts=5, backoff_ms=1),
            retryable=lambda exc: isinstance(exc, TimeoutError),
            sleep=RecordingSleep(),
        )
    assert calls["count"] == 1


def test_backoff_is_capped() -> None:
    policy = RetryPolicy(timeout_ms=100, max_attempts=10, backoff_ms=1000, max_backoff_ms=10000)
    assert [policy.delay_s(attempt) for attempt in (1, 2, 3, 4, 5, 6)] == [1.0, 2.0, 4.0, 8.0, 10.0, 10.0]


@pytest.mark.asyncio
async def test_circuit_breaker_transitions() -> None:
    now = {"t": 0.0}

    def time_source() -> float:
        return now["t"]

    breaker = CircuitBreaker(
        "test.integration",
        config=CircuitBreakerConfig(failure_threshold=2, open_seconds=10, half_open_trials=1),
        time_source=time_source,
    )
    await breaker.before_call()
    await breaker.record_failure()
    await breaker.record_failure()
    with pytest.raises(IntegrationUnavailableError):
        await breaker.before_call()

    now["t"] = 11.0
    await breaker.before_call()
    assert await breaker.state() == "half_open"
    await breaker.record_success()
    await breaker.before_call()
    assert await breaker.state() == "closed"
