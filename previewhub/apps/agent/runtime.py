from __future__ import annotations

import asyncio
import logging

import httpx
from redis.asyncio import Redis

from previewhub.apps.agent.config import AgentSettings
from previewhub.apps.agent.project import ProjectProfile, detect_project
from previewhub.apps.agent.supervisor import STATUS_FAILED, DevServerSupervisor, ProcessFactory, child_env, run_command
from previewhub.apps.agent.sync import WorkspaceSync
from previewhub.core.config import Settings
from previewhub.core.errors import ChannelAccessDeniedError, HydrationError, PreviewHubError
from previewhub.domain.events import project_files_channel
from previewhub.providers.compute.base import ComputeProvider
from previewhub.providers.compute.fly_machines import FlyMachinesProvider
from previewhub.services.hot_reload import HotReloadCoordinator, ReloadBatch
from previewhub.services.hydration import HydrationChain, HydrationReport, default_chain
from previewhub.services.rate_limiter import FixedWindowRateLimiter
from previewhub.services.realtime.access import Subject
from previewhub.services.realtime.channel import RealtimeChannel, Subscription
from previewhub.services.realtime.transport import BroadcastTransport, LocalTransport, RedisTransport
from previewhub.services.sessions import machine_name
from previewhub.services.workspace import read_files


logger = logging.getLogger(__name__)

HEALTH_STARTING = "starting"
HEALTH_READY = "ready"
HEALTH_ERROR = "error"
HEALTH_SHUTTING_DOWN = "shutting_down"


def _lookup_provider(settings: AgentSettings) -> ComputeProvider | None:
    # Without credentials the agent cannot locate other sessions and answers 421.
    if not settings.fly_api_token:
        return None
    return FlyMachinesProvider(
        settings=Settings(
            compute_provider="fly",
            fly_api_token=settings.fly_api_token,
            fly_app_name=settings.fly_app_name,
            fly_api_base_url=settings.fly_api_base_url,
        )
    )


class AgentContext:
    """Everything one sandbox agent runs: sync, hydration, dev server, lookups."""

    def __init__(
        self,
        settings: AgentSettings,
        *,
        client: httpx.AsyncClient,
        transport: BroadcastTransport,
        channel: RealtimeChannel,
        provider: ComputeProvider | None = None,
        chain: HydrationChain | None = None,
        spawn: ProcessFactory | None = None,
    ) -> None:
        self.settings = settings
        self.client = client
        self.transport = transport
        self.channel = channel
        self.provider = provider
        self._subject = Subject(subject_id=f"agent:{settings.session_id}", is_service=True)
        self._chain = chain or default_chain(
            settings.project_id,
            client=client,
            snapshot_url=settings.snapshot_url,
            storage_url=settings.storage_url,
            api_url=settings.file_api_url,
        )
        self._spawn = spawn
        self.coordinator = HotReloadCoordinator(
            settings.project_id,
            channel,
            rebuild=self._on_reload,
            debounce_s=settings.hot_reload_debounce_s,
            sender_id=f"agent:{settings.session_id}",
        )
        self.sync = WorkspaceSync(
            settings.workdir,
            settings.project_id,
            coordinator=self.coordinator,
            channel=channel,
            sender_id=f"agent:{settings.session_id}",
        )
        self.subscription: Subscription | None = None
        self.hydration: HydrationReport | None = None
        self.profile: ProjectProfile | None = None
        self.supervisor: DevServerSupervisor | None = None
        self.error: str | None = None
        self._boot_task: asyncio.Task | None = None
        self._closing = False

    @classmethod
    def build(
        cls,
        settings: AgentSettings | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        transport: BroadcastTransport | None = None,
        provider: ComputeProvider | None = None,
        chain: HydrationChain | None = None,
        spawn: ProcessFactory | None = None,
    ) -> "AgentContext":
        settings = settings or AgentSettings()
        client = client or httpx.AsyncClient(timeout=settings.proxy_timeout_s)
        if transport is None:
            if settings.realtime_transport == "redis":
                transport = RedisTransport(Redis.from_url(settings.redis_url), prefix=settings.realtime_redis_prefix)
            else:
                transport = LocalTransport()
        channel = RealtimeChannel(transport, FixedWindowRateLimiter(1, 1.0, name="agent-publish"))
        return cls(
            settings,
            client=client,
            transport=transport,
            channel=channel,
            provider=provider if provider is not None else _lookup_provider(settings),
            chain=chain,
            spawn=spawn,
        )

    @property
    def dev_server_ready(self) -> bool:
        return self.supervisor is not None and self.supervisor.ready

    @property
    def realtime_status(self) -> str:
        return self.subscription.status if self.subscription is not None else "disconnected"

    @property
    def status(self) -> str:
        if self._closing:
            return HEALTH_SHUTTING_DOWN
        if self.error is not None:
            return HEALTH_ERROR
        if self.supervisor is not None and self.supervisor.status == STATUS_FAILED:
            return HEALTH_ERROR
        if self.dev_server_ready:
            return HEALTH_READY
        return HEALTH_STARTING

    def start(self) -> None:
        # Boot runs in the background so /health answers while the workspace hydrates.
        if self._boot_task is None:
            self._boot_task = asyncio.create_task(self.boot())

    async def boot(self) -> None:
        settings = self.settings
        logger.info("agent_boot session_id=%s project_id=%s", settings.session_id, settings.project_id)
        try:
            self.subscription = await self.channel.subscribe(
                project_files_channel(settings.project_id),
                self.sync.handle,
                subject=self._subject,
                project_id=settings.project_id,
            )
        except ChannelAccessDeniedError as exc:
            logger.warning("agent_subscribe_denied project_id=%s error=%s", settings.project_id, exc)

        try:
            self.hydration = await self._chain.run(settings.workdir)
        except HydrationError as exc:
            self.error = str(exc)
            logger.error("agent_hydration_failed project_id=%s error=%s", settings.project_id, exc)
            return
        self.coordinator.prime(read_files(settings.workdir))

        self.profile = detect_project(settings.workdir)
        port = settings.dev_port or self.profile.port
        command = settings.dev_command or self.profile.dev_command
        logger.info(
            "agent_project_detected framework=%s command=%s port=%s",
            self.profile.framework,
            command,
            port,
        )
        await self._install()
        self.supervisor = DevServerSupervisor(
            command,
            cwd=settings.workdir,
            port=port,
            restart_delay_s=settings.restart_delay_s,
            max_restarts_per_minute=settings.max_restarts_per_minute,
            probe_interval_s=settings.ready_probe_interval_s,
            ready_timeout_s=settings.ready_timeout_s,
            client=self.client,
            spawn=self._spawn,
        )
        self.supervisor.start()

    async def _install(self) -> None:
        profile = self.profile
        if profile is None or profile.install_command is None or not self.settings.install_dependencies:
            return
        if not (self.settings.workdir / "package.json").is_file():
            return
        code = await run_command(
            profile.install_command,
            cwd=self.settings.workdir,
            env=child_env(self.settings.dev_port or profile.port),
        )
        if code != 0:
            logger.warning("agent_install_failed command=%s code=%s", profile.install_command, code)

    async def _on_reload(self, batch: ReloadBatch) -> None:
        # Source edits are picked up by the dev server's own HMR; dependency changes need a restart.
        if not batch.requires_rebuild or self.supervisor is None:
            return
        if "package.json" in batch.changed_files:
            await self._install()
        await self.supervisor.restart()

    async def locate_session(self, session_id: str) -> str | None:
        if self.provider is None:
            return None
        try:
            return await self.provider.find_by_name(machine_name(session_id))
        except PreviewHubError as exc:
            logger.warning("agent_session_lookup_failed session_id=%s error=%s", session_id, exc)
            return None

    async def aclose(self) -> None:
        self._closing = True
        if self._boot_task is not None and not self._boot_task.done():
            self._boot_task.cancel()
            try:
                await self._boot_task
            except asyncio.CancelledError:
                pass
        if self.supervisor is not None:
            await self.supervisor.stop()
        await self.coordinator.aclose()
        await self.channel.aclose()
        await self.transport.aclose()
        if self.provider is not None:
            await self.provider.aclose()
        await self.client.aclose()
        logger.info("agent_closed session_id=%s", self.settings.session_id)
