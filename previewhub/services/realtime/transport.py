from __future__ import annotations

import asyncio
import json
import logging
from typing import Callable, Protocol

from redis.asyncio import Redis
from redis.exceptions import RedisError

from previewhub.core.errors import ChannelClosedError
from previewhub.domain.events import BroadcastMessage


logger = logging.getLogger(__name__)

Deliver = Callable[[BroadcastMessage], None]


class TransportStream(Protocol):
    @property
    def closed(self) -> bool:
        ...

    async def wait_closed(self) -> BaseException | None:
        ...

    async def close(self) -> None:
        ...


class BroadcastTransport(Protocol):
    async def publish(self, message: BroadcastMessage) -> None:
        ...

    async def open_stream(self, channel_name: str, deliver: Deliver) -> TransportStream:
        ...

    async def aclose(self) -> None:
        ...


class _LocalStream:
    def __init__(self, transport: "LocalTransport", channel_name: str, deliver: Deliver) -> None:
        self._transport = transport
        self._channel_name = channel_name
        self._deliver = deliver
        self._closed = asyncio.Event()
        self._reason: BaseException | None = None

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def deliver(self, message: BroadcastMessage) -> None:
        if not self.closed:
            self._deliver(message)

    def drop(self, reason: BaseException | None) -> None:
        if self.closed:
            return
        self._reason = reason
        self._closed.set()
        self._transport._detach(self._channel_name, self)

    async def wait_closed(self) -> BaseException | None:
        await self._closed.wait()
        return self._reason

    async def close(self) -> None:
        self.drop(None)


class LocalTransport:
    """In-process transport with fault injection for tests and single-node runs."""

    def __init__(self) -> None:
        self._streams: dict[str, set[_LocalStream]] = {}
        self._open_failures = 0
        self._publish_failures = 0
        self.published: list[BroadcastMessage] = []
        self.open_attempts = 0

    def _detach(self, channel_name: str, stream: _LocalStream) -> None:
        streams = self._streams.get(channel_name)
        if streams is not None:
            streams.discard(stream)
            if not streams:
                self._streams.pop(channel_name, None)

    def fail_next_opens(self, count: int) -> None:
        self._open_failures = count

    def fail_next_publishes(self, count: int) -> None:
        self._publish_failures = count

    def drop_channel(self, channel_name: str, reason: BaseException | None = None) -> int:
        # Simulate a server-side disconnect for every stream on the channel.
        streams = list(self._streams.get(channel_name, ()))
        for stream in streams:
            stream.drop(reason or ChannelClosedError(f"{channel_name} dropped"))
        return len(streams)

    def stream_count(self, channel_name: str) -> int:
        return len(self._streams.get(channel_name, ()))

    async def publish(self, message: BroadcastMessage) -> None:
        if self._publish_failures > 0:
            self._publish_failures -= 1
            raise ChannelClosedError("injected publish failure")
        self.published.append(message)
        for stream in list(self._streams.get(message.channel_name, ())):
            stream.deliver(message)

    async def open_stream(self, channel_name: str, deliver: Deliver) -> _LocalStream:
        self.open_attempts += 1
        if self._open_failures > 0:
            self._open_failures -= 1
            raise ChannelClosedError(f"injected open failure for {channel_name}")
        stream = _LocalStream(self, channel_name, deliver)
        self._streams.setdefault(channel_name, set()).add(stream)
        return stream

    async def aclose(self) -> None:
        for channel_name in list(self._streams):
            for stream in list(self._streams.get(channel_name, ())):
                stream.drop(None)


class _RedisStream:
    def __init__(self, pubsub, channel_key: str, deliver: Deliver) -> None:
        self._pubsub = pubsub
        self._channel_key = channel_key
        self._deliver = deliver
        self._closed = asyncio.Event()
        self._reason: BaseException | None = None
        self._task: asyncio.Task | None = None

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def start(self) -> None:
        self._task = asyncio.create_task(self._pump())

    def _finish(self, reason: BaseException | None) -> None:
        if not self.closed:
            self._reason = reason
            self._closed.set()

    async def _pump(self) -> None:
        try:
            async for raw in self._pubsub.listen():
                if raw.get("type") != "message":
                    continue
                try:
                    message = BroadcastMessage.from_wire(json.loads(raw["data"]))
                except (ValueError, KeyError, TypeError):
                    logger.warning("realtime_message_malformed channel=%s", self._channel_key)
                    continue
                self._deliver(message)
            self._finish(ChannelClosedError(f"{self._channel_key} stream ended"))
        except asyncio.CancelledError:
            self._finish(None)
            raise
        except (RedisError, OSError, asyncio.TimeoutError) as exc:
            self._finish(ChannelClosedError(f"{self._channel_key}: {exc}"))

    async def wait_closed(self) -> BaseException | None:
        await self._closed.wait()
        return self._reason

    async def close(self) -> None:
        self._finish(None)
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        try:
            await self._pubsub.unsubscribe(self._channel_key)
            await self._pubsub.aclose()
        except (RedisError, OSError) as exc:
            logger.info("realtime_unsubscribe_failed channel=%s error=%s", self._channel_key, exc)


class RedisTransport:
    def __init__(self, redis: Redis, *, prefix: str = "previewhub:rt") -> None:
        self._redis = redis
        self._prefix = prefix

    def _key(self, channel_name: str) -> str:
        return f"{self._prefix}:{channel_name}"

    async def publish(self, message: BroadcastMessage) -> None:
        try:
            await self._redis.publish(self._key(message.channel_name), json.dumps(message.to_wire()))
        except (RedisError, OSError) as exc:
            raise ChannelClosedError(f"publish to {message.channel_name} failed: {exc}") from exc

    async def open_stream(self, channel_name: str, deliver: Deliver) -> _RedisStream:
        pubsub = self._redis.pubsub()
        try:
            await pubsub.subscribe(self._key(channel_name))
        except (RedisError, OSError) as exc:
            raise ChannelClosedError(f"subscribe to {channel_name} failed: {exc}") from exc
        stream = _RedisStream(pubsub, self._key(channel_name), deliver)
        stream.start()
        return stream

    async def aclose(self) -> None:
        await self._redis.aclose()
