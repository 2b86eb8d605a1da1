from __future__ import annotations

from dataclasses import dataclass
import logging

from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncEngine

from previewhub.core.config import Settings, get_settings
from previewhub.domain.models import Base
from previewhub.persistence.db import SessionFactory, create_engine, create_session_factory
from previewhub.providers.compute.base import ComputeProvider
from previewhub.providers.compute.factory import get_compute_provider
from previewhub.services.file_events import FileEventNotifier
from previewhub.services.files import FileSyncService
from previewhub.services.quota import ActiveSessionQuota
from previewhub.services.rate_limiter import FixedWindowRateLimiter, RateLimiter, RedisFixedWindowRateLimiter
from previewhub.services.realtime.channel import RealtimeChannel
from previewhub.services.realtime.transport import BroadcastTransport, LocalTransport, RedisTransport
from previewhub.services.sessions import SessionService


logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    """Process-wide services, built once at startup and closed at shutdown."""

    settings: Settings
    engine: AsyncEngine
    session_factory: SessionFactory
    redis: Redis | None
    api_limiter: RateLimiter
    publish_limiter: FixedWindowRateLimiter
    transport: BroadcastTransport
    channel: RealtimeChannel
    provider: ComputeProvider
    notifier: FileEventNotifier
    files: FileSyncService
    sessions: SessionService

    @classmethod
    def build(
        cls,
        settings: Settings | None = None,
        *,
        engine: AsyncEngine | None = None,
        provider: ComputeProvider | None = None,
        transport: BroadcastTransport | None = None,
        redis: Redis | None = None,
    ) -> "AppContext":
        settings = settings or get_settings()
        engine = engine or create_engine(settings=settings)
        session_factory = create_session_factory(engine)
        needs_redis = settings.realtime_transport == "redis" or settings.rl_backend == "redis"
        if redis is None and needs_redis:
            redis = Redis.from_url(settings.redis_url)

        if transport is None:
            transport = RedisTransport(redis, prefix=settings.realtime_redis_prefix) if (
                settings.realtime_transport == "redis"
            ) else LocalTransport()

        api_limiter: RateLimiter
        if settings.rl_backend == "redis":
            api_limiter = RedisFixedWindowRateLimiter(
                redis,
                settings.rl_api_limit,
                settings.rl_api_window_s,
                prefix=settings.rl_redis_prefix,
                name="api",
            )
        else:
            api_limiter = FixedWindowRateLimiter(settings.rl_api_limit, settings.rl_api_window_s, name="api")
        publish_limiter = FixedWindowRateLimiter(
            settings.realtime_publish_limit, settings.realtime_publish_window_s, name="publish"
        )
        channel = RealtimeChannel.from_settings(transport, publish_limiter, settings=settings)
        provider = provider or get_compute_provider(settings)
        notifier = FileEventNotifier(channel, trailing_delay_s=settings.realtime_publish_window_s)
        files = FileSyncService(session_factory, notifier=notifier)
        sessions = SessionService(
            session_factory,
            provider,
            ActiveSessionQuota(session_factory, max_active=settings.quota_max_active_sessions_per_user),
            channel=channel,
            settings=settings,
        )
        return cls(
            settings=settings,
            engine=engine,
            session_factory=session_factory,
            redis=redis,
            api_limiter=api_limiter,
            publish_limiter=publish_limiter,
            transport=transport,
            channel=channel,
            provider=provider,
            notifier=notifier,
            files=files,
            sessions=sessions,
        )

    async def create_schema(self) -> None:
        # Local development and tests; deployed databases are migrated with Alembic.
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    def start(self) -> None:
        for limiter in (self.api_limiter, self.publish_limiter):
            if isinstance(limiter, FixedWindowRateLimiter):
                limiter.start_sweeper(self.settings.rl_sweep_interval_s)
        logger.info(
            "app_context_started provider=%s transport=%s rl_backend=%s",
            self.settings.compute_provider,
            self.settings.realtime_transport,
            self.settings.rl_backend,
        )

    async def aclose(self) -> None:
        await self.notifier.aclose()
        await self.channel.aclose()
        await self.transport.aclose()
        await self.provider.aclose()
        for limiter in (self.api_limiter, self.publish_limiter):
            if isinstance(limiter, FixedWindowRateLimiter):
                await limiter.stop_sweeper()
        if self.redis is not None:
            await self.redis.aclose()
        await self.engine.dispose()
        logger.info("app_context_closed")
