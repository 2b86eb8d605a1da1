from __future__ import annotations

import asyncio
from collections import OrderedDict
from dataclasses import dataclass
import inspect
import logging
import time
from typing import Any, Awaitable, Callable
from uuid import uuid4

from previewhub.core.config import Settings, get_settings
from previewhub.core.errors import ChannelAccessDeniedError, ChannelClosedError
from previewhub.domain.events import BroadcastMessage, build_message
from previewhub.services.rate_limiter import RateLimiter
from previewhub.services.realtime.access import (
    ACTION_PUBLISH,
    ACTION_SUBSCRIBE,
    DEFAULT_POLICIES,
    ChannelAccessPolicy,
    Subject,
    check_access,
    find_policy,
)
from previewhub.services.realtime.reconnect import ReconnectPolicy, ReconnectScheduler, default_reconnect_policy
from previewhub.services.realtime.transport import BroadcastTransport, TransportStream
from previewhub.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

OVERFLOW_DROP_OLDEST = "drop_oldest"
OVERFLOW_REJECT_NEW = "reject_new"

STATUS_CONNECTING = "connecting"
STATUS_CONNECTED = "connected"
STATUS_RECONNECTING = "reconnecting"
STATUS_DISCONNECTED = "disconnected"
STATUS_CLOSED = "closed"

Handler = Callable[[BroadcastMessage], Awaitable[None] | None]


@dataclass(frozen=True)
class PublishResult:
    broadcast_id: str | None
    rate_limited: bool = False
    retry_after: float | None = None

    @property
    def ok(self) -> bool:
        return self.broadcast_id is not None


class Subscription:
    """One subscriber: a bounded queue drained by a single consumer task.

    The transport writes into the queue without blocking; when it is full the
    overflow policy decides whether the oldest queued message or the incoming
    one is dropped. Messages whose idempotency key was handled recently, or
    whose TTL has passed, are skipped before reaching the handler.
    """

    def __init__(
        self,
        channel_name: str,
        handler: Handler,
        *,
        transport: BroadcastTransport,
        capacity: int,
        overflow_policy: str,
        dedupe_capacity: int,
        reconnect_policy: ReconnectPolicy,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        if overflow_policy not in (OVERFLOW_DROP_OLDEST, OVERFLOW_REJECT_NEW):
            raise ValueError(f"unknown overflow policy: {overflow_policy}")
        self.id = str(uuid4())
        self.channel_name = channel_name
        self._handler = handler
        self._transport = transport
        self._overflow_policy = overflow_policy
        self._dedupe_capacity = max(dedupe_capacity, 0)
        self._clock = clock or time.time
        self._queue: asyncio.Queue[BroadcastMessage] = asyncio.Queue(maxsize=max(capacity, 1))
        self._seen: OrderedDict[str, None] = OrderedDict()
        self._stream: TransportStream | None = None
        self._watcher: asyncio.Task | None = None
        self._consumer: asyncio.Task | None = None
        self.reconnect = ReconnectScheduler(
            f"{channel_name}#{self.id[:8]}",
            self._connect,
            policy=reconnect_policy,
            on_exhausted=self._on_exhausted,
            sleep=sleep,
        )
        self.status = STATUS_CONNECTING
        self.delivered = 0
        self.dropped = 0
        self.duplicates = 0
        self.expired = 0

    async def start(self) -> None:
        self._consumer = asyncio.create_task(self._consume())
        try:
            await self._connect()
        except ChannelClosedError as exc:
            logger.warning("realtime_subscribe_connect_failed channel=%s error=%s", self.channel_name, exc)
            self.status = STATUS_RECONNECTING
            self.reconnect.schedule()

    async def _connect(self) -> None:
        if self.status == STATUS_CLOSED:
            return
        stream = await self._transport.open_stream(self.channel_name, self._enqueue)
        self._stream = stream
        self.status = STATUS_CONNECTED
        self._watcher = asyncio.create_task(self._watch(stream))

    async def _watch(self, stream: TransportStream) -> None:
        reason = await stream.wait_closed()
        if self.status == STATUS_CLOSED or stream is not self._stream:
            return
        self._stream = None
        self.status = STATUS_RECONNECTING
        increment_counter("realtime_disconnects_total")
        logger.warning("realtime_stream_closed channel=%s reason=%s", self.channel_name, reason)
        self.reconnect.schedule()

    def _on_exhausted(self) -> None:
        self.status = STATUS_DISCONNECTED

    def _enqueue(self, message: BroadcastMessage) -> None:
        if self.status == STATUS_CLOSED:
            return
        try:
            self._queue.put_nowait(message)
            return
        except asyncio.QueueFull:
            pass
        self.dropped += 1
        increment_counter("realtime_messages_dropped_total")
        if self._overflow_policy == OVERFLOW_REJECT_NEW:
            return
        try:
            self._queue.get_nowait()
            self._queue.task_done()
        except asyncio.QueueEmpty:
            pass
        self._queue.put_nowait(message)

    def _remember(self, key: str) -> None:
        if self._dedupe_capacity == 0:
            return
        self._seen[key] = None
        self._seen.move_to_end(key)
        while len(self._seen) > self._dedupe_capacity:
            self._seen.popitem(last=False)

    async def _consume(self) -> None:
        while True:
            message = await self._queue.get()
            try:
                await self._dispatch(message)
            finally:
                self._queue.task_done()

    async def _dispatch(self, message: BroadcastMessage) -> None:
        if message.is_expired(self._clock()):
            self.expired += 1
            return
        key = message.idempotency_key
        if key is not None and key in self._seen:
            self.duplicates += 1
            return
        try:
            result = self._handler(message)
            if inspect.isawaitable(result):
                await result
        except Exception:  # noqa: BLE001 - one bad message must not stop the subscription
            increment_counter("realtime_handler_errors_total")
            logger.exception(
                "realtime_handler_failed channel=%s event=%s id=%s",
                self.channel_name,
                message.event_type,
                message.id,
            )
            return
        if key is not None:
            self._remember(key)
        self.delivered += 1

    async def join(self) -> None:
        # Wait until every queued message has been handled.
        await self._queue.join()

    @property
    def queued(self) -> int:
        return self._queue.qsize()

    async def close(self) -> None:
        self.status = STATUS_CLOSED
        self.reconnect.cancel()
        stream = self._stream
        self._stream = None
        if stream is not None:
            await stream.close()
        for task in (self._watcher, self._consumer):
            if task is None or task.done():
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    def describe(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "channel": self.channel_name,
            "status": self.status,
            "queued": self.queued,
            "delivered": self.delivered,
            "dropped": self.dropped,
            "duplicates": self.duplicates,
            "reconnect_attempts": self.reconnect.attempts,
        }


class RealtimeChannel:
    def __init__(
        self,
        transport: BroadcastTransport,
        limiter: RateLimiter,
        *,
        policies: tuple[ChannelAccessPolicy, ...] = DEFAULT_POLICIES,
        queue_capacity: int = 256,
        overflow_policy: str = OVERFLOW_DROP_OLDEST,
        dedupe_capacity: int = 1024,
        publish_limit: int = 1,
        publish_window_s: float = 1.0,
        reconnect_policy: ReconnectPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._transport = transport
        self._limiter = limiter
        self._policies = policies
        self._queue_capacity = queue_capacity
        self._overflow_policy = overflow_policy
        self._dedupe_capacity = dedupe_capacity
        self._publish_limit = publish_limit
        self._publish_window_s = publish_window_s
        self._reconnect_policy = reconnect_policy or default_reconnect_policy()
        self._sleep = sleep
        self._clock = clock or time.time
        self._subscriptions: dict[str, dict[str, Subscription]] = {}

    @classmethod
    def from_settings(
        cls,
        transport: BroadcastTransport,
        limiter: RateLimiter,
        *,
        settings: Settings | None = None,
    ) -> "RealtimeChannel":
        settings = settings or get_settings()
        return cls(
            transport,
            limiter,
            queue_capacity=settings.realtime_queue_capacity,
            overflow_policy=settings.realtime_overflow_policy,
            dedupe_capacity=settings.realtime_dedupe_capacity,
            publish_limit=settings.realtime_publish_limit,
            publish_window_s=settings.realtime_publish_window_s,
        )

    def subscriber_count(self, channel_name: str) -> int:
        return len(self._subscriptions.get(channel_name, {}))

    def check_access(
        self,
        channel_name: str,
        subject: Subject | None,
        project_id: str | None = None,
        *,
        action: str = ACTION_SUBSCRIBE,
    ) -> bool:
        return check_access(
            channel_name,
            subject,
            project_id,
            action=action,
            current_subscribers=self.subscriber_count(channel_name),
            policies=self._policies,
        )

    async def subscribe(
        self,
        channel_name: str,
        handler: Handler,
        *,
        subject: Subject | None = None,
        project_id: str | None = None,
    ) -> Subscription:
        if not self.check_access(channel_name, subject, project_id, action=ACTION_SUBSCRIBE):
            raise ChannelAccessDeniedError(f"subscribe denied on {channel_name}")
        subscription = Subscription(
            channel_name,
            handler,
            transport=self._transport,
            capacity=self._queue_capacity,
            overflow_policy=self._overflow_policy,
            dedupe_capacity=self._dedupe_capacity,
            reconnect_policy=self._reconnect_policy,
            sleep=self._sleep,
            clock=self._clock,
        )
        self._subscriptions.setdefault(channel_name, {})[subscription.id] = subscription
        await subscription.start()
        logger.info("realtime_subscribed channel=%s id=%s status=%s", channel_name, subscription.id, subscription.status)
        return subscription

    async def unsubscribe(self, subscription: Subscription) -> None:
        subscriptions = self._subscriptions.get(subscription.channel_name, {})
        subscriptions.pop(subscription.id, None)
        if not subscriptions:
            self._subscriptions.pop(subscription.channel_name, None)
        await subscription.close()

    async def publish(
        self,
        channel_name: str,
        event_type: str,
        payload: dict[str, Any],
        *,
        sender_id: str | None = None,
        key_hint: str | None = None,
        priority: str = "normal",
        ttl_s: float | None = None,
        subject: Subject | None = None,
        project_id: str | None = None,
    ) -> PublishResult:
        if not self.check_access(channel_name, subject, project_id, action=ACTION_PUBLISH):
            raise ChannelAccessDeniedError(f"publish denied on {channel_name}")
        # Channel cap first, so a publish it rejects never spends the per-key window.
        decision = None
        policy = find_policy(channel_name, self._policies)
        if policy is not None:
            decision = await self._limiter.check_and_increment(
                f"channel:{channel_name}", limit=policy.rate_limit_per_second, window_s=1.0
            )
        if decision is None or decision.allowed:
            decision = await self._limiter.check_and_increment(
                f"publish:{channel_name}:{key_hint or event_type}",
                limit=self._publish_limit,
                window_s=self._publish_window_s,
            )
        if not decision.allowed:
            increment_counter("realtime_publish_rate_limited_total")
            logger.info(
                "realtime_publish_rate_limited channel=%s key=%s retry_after=%.2f",
                channel_name,
                key_hint or event_type,
                decision.retry_after or 0.0,
            )
            return PublishResult(broadcast_id=None, rate_limited=True, retry_after=decision.retry_after)
        message = build_message(
            channel_name,
            event_type,
            payload,
            sender_id=sender_id,
            priority=priority,
            ttl_s=ttl_s,
            now=self._clock(),
        )
        await self._transport.publish(message)
        increment_counter(f"realtime_published_total.{event_type}")
        return PublishResult(broadcast_id=message.id)

    def describe(self) -> list[dict[str, Any]]:
        return [
            subscription.describe()
            for subscriptions in self._subscriptions.values()
            for subscription in subscriptions.values()
        ]

    async def aclose(self) -> None:
        for subscriptions in list(self._subscriptions.values()):
            for subscription in list(subscriptions.values()):
                await self.unsubscribe(subscription)
