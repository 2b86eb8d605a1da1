from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import math
import time
from typing import Callable, Protocol

from redis.asyncio import Redis

from previewhub.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)


@dataclass
class RateLimitEntry:
    count: int
    window_reset_at: float
    limit: int
    blocked_until: float | None = None


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    reset_at: float
    retry_after: float | None = None

    @property
    def retry_after_s(self) -> int:
        # Whole seconds for Retry-After headers.
        if self.retry_after is None:
            return 0
        return max(1, int(math.ceil(self.retry_after)))


class RateLimiter(Protocol):
    async def check_and_increment(
        self, key: str, *, limit: int | None = None, window_s: float | None = None
    ) -> RateLimitDecision:
        ...


class FixedWindowRateLimiter:
    """Fixed-window limiter whose key map is owned by a single lock.

    Check-and-increment and the eviction sweep run in the same critical
    section, so a sweep can never drop a window that a concurrent check is
    about to increment. Callers may override limit/window per key; the
    values are recorded on the entry when its window opens.
    """

    def __init__(
        self,
        limit: int,
        window_s: float,
        *,
        name: str = "default",
        time_provider: Callable[[], float] | None = None,
    ) -> None:
        if limit < 1 or window_s <= 0:
            raise ValueError("limit must be >= 1 and window_s > 0")
        self._limit = limit
        self._window_s = window_s
        self._name = name
        self._time = time_provider or time.monotonic
        self._entries: dict[str, RateLimitEntry] = {}
        self._lock = asyncio.Lock()
        self._sweeper: asyncio.Task | None = None

    @property
    def size(self) -> int:
        return len(self._entries)

    async def check_and_increment(
        self, key: str, *, limit: int | None = None, window_s: float | None = None
    ) -> RateLimitDecision:
        async with self._lock:
            now = self._time()
            entry = self._entries.get(key)
            if entry is None or now >= entry.window_reset_at:
                entry = RateLimitEntry(
                    count=0,
                    window_reset_at=now + (window_s or self._window_s),
                    limit=limit or self._limit,
                )
                self._entries[key] = entry
            if entry.blocked_until is not None and now < entry.blocked_until:
                increment_counter(f"rate_limited_total.{self._name}")
                return RateLimitDecision(
                    allowed=False,
                    remaining=0,
                    reset_at=entry.window_reset_at,
                    retry_after=entry.blocked_until - now,
                )
            if entry.count >= entry.limit:
                entry.blocked_until = entry.window_reset_at
                increment_counter(f"rate_limited_total.{self._name}")
                return RateLimitDecision(
                    allowed=False,
                    remaining=0,
                    reset_at=entry.window_reset_at,
                    retry_after=entry.window_reset_at - now,
                )
            entry.count += 1
            return RateLimitDecision(
                allowed=True,
                remaining=entry.limit - entry.count,
                reset_at=entry.window_reset_at,
            )

    async def sweep(self) -> int:
        # Evict windows whose reset time has passed.
        async with self._lock:
            now = self._time()
            expired = [key for key, entry in self._entries.items() if now >= entry.window_reset_at]
            for key in expired:
                del self._entries[key]
            set_gauge(f"rate_limiter_entries.{self._name}", float(len(self._entries)))
            return len(expired)

    async def _sweep_loop(self, interval_s: float) -> None:
        while True:
            await asyncio.sleep(interval_s)
            try:
                evicted = await self.sweep()
            except Exception:  # noqa: BLE001 - keep the sweeper alive
                logger.exception("rate_limiter_sweep_failed name=%s", self._name)
                continue
            if evicted:
                logger.debug("rate_limiter_swept name=%s evicted=%s", self._name, evicted)

    def start_sweeper(self, interval_s: float) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_loop(interval_s))

    async def stop_sweeper(self) -> None:
        task = self._sweeper
        self._sweeper = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


_FIXED_WINDOW_LUA = r"""
local count = redis.call("INCR", KEYS[1])
if count == 1 then
  redis.call("PEXPIRE", KEYS[1], ARGV[1])
end
local ttl = redis.call("PTTL", KEYS[1])
if ttl < 0 then
  redis.call("PEXPIRE", KEYS[1], ARGV[1])
  ttl = tonumber(ARGV[1])
end
return {count, ttl}
"""


class RedisFixedWindowRateLimiter:
    """Same contract as the in-memory limiter, shared across processes.

    INCR and PEXPIRE run in one Lua script, so the increment and the window
    expiry are atomic per key; Redis key expiry performs the sweep.
    """

    def __init__(
        self,
        redis: Redis,
        limit: int,
        window_s: float,
        *,
        prefix: str = "previewhub:rl",
        name: str = "default",
        time_provider: Callable[[], float] | None = None,
    ) -> None:
        self._redis = redis
        self._limit = limit
        self._window_s = window_s
        self._prefix = prefix
        self._name = name
        self._time = time_provider or time.time

    async def check_and_increment(
        self, key: str, *, limit: int | None = None, window_s: float | None = None
    ) -> RateLimitDecision:
        limit = limit or self._limit
        window_ms = int((window_s or self._window_s) * 1000)
        result = await self._redis.eval(_FIXED_WINDOW_LUA, 1, f"{self._prefix}:{key}", window_ms)
        count = int(result[0])
        ttl_ms = max(int(result[1]), 0)
        reset_at = self._time() + ttl_ms / 1000.0
        if count > limit:
            increment_counter(f"rate_limited_total.{self._name}")
            return RateLimitDecision(
                allowed=False,
                remaining=0,
                reset_at=reset_at,
                retry_after=ttl_ms / 1000.0,
            )
        return RateLimitDecision(allowed=True, remaining=limit - count, reset_at=reset_at)
