from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable


from previewhub.core.config import get_settings
from previewhub.core.errors import IntegrationUnavailableError
from previewhub.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)


TransientException = (TimeoutError, OSError)


def _default_retryable(exc: Exception) -> bool:
    # Retry only transient network/timeout failures by default.
    if isinstance(exc, TransientException):
        return True
    status = getattr(exc, "status_code", None)
    if isinstance(status, int) and status >= 500:
        return True
    return False


@dataclass(frozen=True)
class RetryPolicy:
    # Per-attempt timeout is separate from the overall attempt budget.
    timeout_ms: int
    max_attempts: int
    backoff_ms: int
    max_backoff_ms: int | None = None

    def delay_s(self, attempt: int, *, jitter: float = 1.0) -> float:
        # Exponential delay for the given (1-based) failed attempt, capped when configured.
        delay_ms = self.backoff_ms * (2 ** (attempt - 1)) * jitter
        if self.max_backoff_ms is not None:
            delay_ms = min(delay_ms, float(self.max_backoff_ms))
        return delay_ms / 1000.0


def default_retry_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        timeout_ms=settings.ext_call_timeout_ms,
        max_attempts=settings.ext_retry_max_attempts,
        backoff_ms=settings.ext_retry_backoff_ms,
    )


def provisioner_retry_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        timeout_ms=settings.provisioner_call_timeout_ms,
        max_attempts=settings.provisioner_retry_max_attempts,
        backoff_ms=settings.provisioner_retry_backoff_ms,
        max_backoff_ms=settings.provisioner_retry_backoff_ms * 8,
    )


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] | None = None,
    sleep: Callable[[float], Awaitable[None]] | None = None,
    name: str = "external",
) -> Any:
    # Retry helper with jittered backoff for transient failures only.
    policy = policy or default_retry_policy()
    retryable = retryable or _default_retryable
    sleep = sleep or asyncio.sleep
    attempt = 1
    while True:
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
        except Exception as exc:  # noqa: BLE001 - caller handles non-transient failures
            if attempt >= max(policy.max_attempts, 1) or not retryable(exc):
                raise
            increment_counter("external_retries_total")
            increment_counter(f"external_retries_total.{name}")
            sleep_s = policy.delay_s(attempt, jitter=random.uniform(0.5, 1.5))
            logger.info(
                "retry_scheduled name=%s attempt=%s delay_s=%.2f error=%s",
                name,
                attempt,
                sleep_s,
                type(exc).__name__,
            )
            await sleep(sleep_s)
            attempt += 1


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int
    open_seconds: int
    half_open_trials: int


STATE_CLOSED = "closed"
STATE_OPEN = "open"
STATE_HALF_OPEN = "half_open"

_STATE_GAUGE = {STATE_CLOSED: 0.0, STATE_HALF_OPEN: 0.5, STATE_OPEN: 1.0}


class CircuitBreaker:
    """Per-process breaker around one external integration.

    `failure_threshold` consecutive failures open the circuit; after
    `open_seconds` a limited number of half-open trial calls decide whether it
    closes again or reopens.
    """

    def __init__(
        self,
        name: str,
        *,
        config: CircuitBreakerConfig | None = None,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        settings = get_settings()
        self._name = name
        self._config = config or CircuitBreakerConfig(
            failure_threshold=settings.cb_failure_threshold,
            open_seconds=settings.cb_open_seconds,
            half_open_trials=settings.cb_half_open_trials,
        )
        self._time = time_source or time.monotonic
        self._lock = asyncio.Lock()
        self._state = STATE_CLOSED
        self._failures = 0
        self._opened_at: float | None = None
        self._trials = 0

    @property
    def name(self) -> str:
        return self._name

    def _move(self, target: str) -> None:
        if self._state != target:
            logger.warning("circuit_breaker_transition name=%s from=%s to=%s", self._name, self._state, target)
            increment_counter(f"circuit_breaker_transition_total.{self._name}.{target}")
            set_gauge(f"circuit_breaker_state.{self._name}", _STATE_GAUGE[target])
        self._state = target
        self._failures = 0
        self._trials = 0
        self._opened_at = self._time() if target == STATE_OPEN else None

    async def state(self) -> str:
        return self._state

    async def before_call(self) -> None:
        async with self._lock:
            if self._state == STATE_OPEN:
                if self._opened_at is None or self._time() - self._opened_at < self._config.open_seconds:
                    raise IntegrationUnavailableError(f"{self._name} is temporarily unavailable")
                self._move(STATE_HALF_OPEN)
            if self._state == STATE_HALF_OPEN:
                if self._trials >= self._config.half_open_trials:
                    raise IntegrationUnavailableError(f"{self._name} is temporarily unavailable")
                self._trials += 1

    async def record_success(self) -> None:
        async with self._lock:
            if self._state != STATE_CLOSED:
                self._move(STATE_CLOSED)
            self._failures = 0

    async def record_failure(self) -> None:
        async with self._lock:
            if self._state == STATE_HALF_OPEN:
                self._move(STATE_OPEN)
                return
            self._failures += 1
            if self._failures >= self._config.failure_threshold:
                self._move(STATE_OPEN)
