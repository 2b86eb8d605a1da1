from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
from typing import Awaitable, Callable

from previewhub.core.config import get_settings
from previewhub.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconnectPolicy:
    base_delay_s: float = 1.0
    max_delay_s: float = 30.0
    max_attempts: int = 5

    def delay_for(self, attempt: int) -> float:
        # attempt is 1-based: 1s, 2s, 4s ... capped at max_delay_s.
        return min(self.base_delay_s * (2 ** (attempt - 1)), self.max_delay_s)


def default_reconnect_policy() -> ReconnectPolicy:
    settings = get_settings()
    return ReconnectPolicy(
        base_delay_s=settings.realtime_reconnect_base_delay_s,
        max_delay_s=settings.realtime_reconnect_max_delay_s,
        max_attempts=settings.realtime_reconnect_max_attempts,
    )


class ReconnectScheduler:
    """Single-flight reconnect timer for one subscription.

    `schedule()` cancels any pending attempt before arming a new one. After
    `max_attempts` consecutive failures it stops permanently and reports
    exhaustion through `on_exhausted`; a successful connect resets the count.
    """

    def __init__(
        self,
        name: str,
        connect: Callable[[], Awaitable[None]],
        *,
        policy: ReconnectPolicy | None = None,
        on_exhausted: Callable[[], None] | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self._name = name
        self._connect = connect
        self._policy = policy or default_reconnect_policy()
        self._on_exhausted = on_exhausted
        self._sleep = sleep or asyncio.sleep
        self._pending: asyncio.Task | None = None
        self.attempts = 0
        self.timers_scheduled = 0
        self.exhausted = False

    @property
    def pending(self) -> bool:
        return self._pending is not None and not self._pending.done()

    def schedule(self) -> bool:
        self._cancel_pending()
        if self.exhausted:
            return False
        if self.attempts >= self._policy.max_attempts:
            self.exhausted = True
            increment_counter("realtime_reconnect_exhausted_total")
            logger.warning("realtime_reconnect_exhausted name=%s attempts=%s", self._name, self.attempts)
            if self._on_exhausted is not None:
                self._on_exhausted()
            return False
        self.attempts += 1
        self.timers_scheduled += 1
        delay = self._policy.delay_for(self.attempts)
        logger.info("realtime_reconnect_scheduled name=%s attempt=%s delay_s=%.1f", self._name, self.attempts, delay)
        self._pending = asyncio.create_task(self._run(delay))
        return True

    async def _run(self, delay: float) -> None:
        await self._sleep(delay)
        try:
            await self._connect()
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001 - any connect failure counts as an attempt
            logger.info("realtime_reconnect_failed name=%s attempt=%s error=%s", self._name, self.attempts, exc)
            # Detach before re-arming so schedule() does not cancel the running task.
            self._pending = None
            self.schedule()
            return
        increment_counter("realtime_reconnect_success_total")
        self.attempts = 0
        if self._pending is asyncio.current_task():
            self._pending = None

    def _cancel_pending(self) -> None:
        task = self._pending
        self._pending = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def cancel(self) -> None:
        self._cancel_pending()

    def reset(self) -> None:
        self._cancel_pending()
        self.attempts = 0
        self.exhausted = False
