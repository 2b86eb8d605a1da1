from __future__ import annotations

import asyncio

import pytest

from previewhub.services.rate_limiter import FixedWindowRateLimiter
from previewhub.services.telemetry import counters_snapshot
from previewhub.tests.utils.builders import ManualClock


@pytest.mark.asyncio
async def test_allows_limit_then_blocks_until_window_resets() -> None:
    clock = ManualClock()
    limiter = FixedWindowRateLimiter(3, 10.0, name="unit", time_provider=clock)

    decisions = [await limiter.check_and_increment("k") for _ in range(3)]
    assert [decision.allowed for decision in decisions] == [True, True, True]
    assert [decision.remaining for decision in decisions] == [2, 1, 0]

    clock.advance(4)
    blocked = await limiter.check_and_increment("k")
    assert not blocked.allowed
    assert blocked.retry_after == pytest.approx(6.0)
    assert blocked.retry_after_s == 6

    clock.advance(6)
    reopened = await limiter.check_and_increment("k")
    assert reopened.allowed
    assert reopened.remaining == 2
    assert counters_snapshot().get("rate_limited_total.unit") == 1


@pytest.mark.asyncio
async def test_keys_are_independent_and_override_limits() -> None:
    limiter = FixedWindowRateLimiter(1, 1.0, time_provider=ManualClock())
    assert (await limiter.check_and_increment("a")).allowed
    assert (await limiter.check_and_increment("b")).allowed
    assert not (await limiter.check_and_increment("a")).allowed

    assert (await limiter.check_and_increment("wide", limit=2, window_s=5.0)).allowed
    assert (await limiter.check_and_increment("wide", limit=2, window_s=5.0)).allowed
    assert not (await limiter.check_and_increment("wide", limit=2, window_s=5.0)).allowed


@pytest.mark.asyncio
async def test_concurrent_checks_never_exceed_limit() -> None:
    limiter = FixedWindowRateLimiter(5, 60.0, time_provider=ManualClock())
    decisions = await asyncio.gather(*(limiter.check_and_increment("burst") for _ in range(25)))
    assert sum(1 for decision in decisions if decision.allowed) == 5


@pytest.mark.asyncio
async def test_sweep_evicts_only_expired_windows() -> None:
    clock = ManualClock()
    limiter = FixedWindowRateLimiter(2, 10.0, time_provider=clock)
    await limiter.check_and_increment("old")
    clock.advance(5)
    await limiter.check_and_increment("fresh")
    clock.advance(6)

    assert await limiter.sweep() == 1
    assert limiter.size == 1
    # The surviving window keeps its count.
    decision = await limiter.check_and_increment("fresh")
    assert decision.allowed
    assert decision.remaining == 0


def test_rejects_invalid_configuration() -> None:
    with pytest.raises(ValueError):
        FixedWindowRateLimiter(0, 1.0)
    with pytest.raises(ValueError):
        FixedWindowRateLimiter(1, 0)
