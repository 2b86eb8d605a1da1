from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import logging
from typing import Any, AsyncIterator, Callable
from uuid import uuid4

from previewhub.core.config import Settings, get_settings
from previewhub.core.errors import (
    ChannelAccessDeniedError,
    ChannelClosedError,
    IntegrationUnavailableError,
    ProvisioningError,
    SessionNotFoundError,
)
from previewhub.domain.events import EVENT_SESSION_STATUS, SessionStatusPayload, session_channel, utc_timestamp
from previewhub.domain.models import PreviewSession
from previewhub.domain.state import SessionStatus
from previewhub.persistence.db import SessionFactory
from previewhub.persistence.repos import sessions as sessions_repo
from previewhub.providers.compute.base import ComputeProvider
from previewhub.services.quota import QuotaChecker
from previewhub.services.realtime.access import Subject
from previewhub.services.realtime.channel import RealtimeChannel
from previewhub.services.telemetry import increment_counter, set_gauge
from previewhub.services.tiers import (
    AGENT_PORT,
    MachineRequest,
    ServicePort,
    ServiceSpec,
    apply_to_provisioning_request,
    resolve_tier,
    tier_limits_snapshot,
    validate,
)


logger = logging.getLogger(__name__)

OUTCOME_TERMINATED = "terminated"
OUTCOME_ALREADY_TERMINATED = "already_terminated"
OUTCOME_IN_PROGRESS = "in_progress"
OUTCOME_FAILED = "failed"

# Machine metadata key that marks an instance as owned by a preview session.
SESSION_METADATA_KEY = "preview-session"

_SERVICE_SUBJECT = Subject(subject_id="session-service", is_service=True)


@dataclass(frozen=True)
class SessionHandle:
    session_id: str
    container_id: str
    container_url: str
    status: str

    def to_public(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "containerId": self.container_id,
            "containerUrl": self.container_url,
            "status": self.status,
        }


@dataclass(frozen=True)
class SessionSnapshot:
    # Detached read model; safe to hand out after the DB session is closed.
    session_id: str
    project_id: str
    user_id: str
    status: str
    container_id: str | None
    container_url: str | None
    resource_tier: str
    device_type: str | None
    error_message: str | None
    created_at: datetime
    expires_at: datetime
    ended_at: datetime | None

    def to_public(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "projectId": self.project_id,
            "userId": self.user_id,
            "status": self.status,
            "containerId": self.container_id,
            "containerUrl": self.container_url,
            "resourceTier": self.resource_tier,
            "deviceType": self.device_type,
            "errorMessage": self.error_message,
            "createdAt": self.created_at.isoformat(),
            "expiresAt": self.expires_at.isoformat(),
            "endedAt": self.ended_at.isoformat() if self.ended_at else None,
        }


@dataclass(frozen=True)
class CleanupOutcome:
    session_id: str
    outcome: str
    error: str | None = None


@dataclass
class CleanupReport:
    total_expired: int = 0
    outcomes: list[CleanupOutcome] = field(default_factory=list)

    @property
    def successful(self) -> int:
        return sum(1 for item in self.outcomes if item.outcome != OUTCOME_FAILED)

    @property
    def failed(self) -> int:
        return sum(1 for item in self.outcomes if item.outcome == OUTCOME_FAILED)

    def to_public(self) -> dict[str, Any]:
        return {
            "totalExpired": self.total_expired,
            "successful": self.successful,
            "failed": self.failed,
            "outcomes": [
                {"sessionId": item.session_id, "outcome": item.outcome, "error": item.error}
                for item in self.outcomes
            ],
        }


@dataclass(frozen=True)
class SessionMetrics:
    by_status: dict[str, int]
    total: int
    active: int
    oldest_active_created_at: datetime | None
    newest_active_created_at: datetime | None
    average_duration_s: float | None

    def to_public(self) -> dict[str, Any]:
        return {
            "byStatus": self.by_status,
            "total": self.total,
            "active": self.active,
            "oldestActiveCreatedAt": _isoformat(self.oldest_active_created_at),
            "newestActiveCreatedAt": _isoformat(self.newest_active_created_at),
            "averageDurationSeconds": self.average_duration_s,
        }


@dataclass(frozen=True)
class OrphanCleanupReport:
    scanned: int
    destroyed: list[str]
    failed: list[str]

    def to_public(self) -> dict[str, Any]:
        return {"scanned": self.scanned, "destroyed": self.destroyed, "failed": self.failed}


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo on round trip; treat naive values as UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def machine_name(session_id: str) -> str:
    return f"preview-{session_id[:8]}"


def snapshot_from_row(row: PreviewSession) -> SessionSnapshot:
    return SessionSnapshot(
        session_id=row.id,
        project_id=row.project_id,
        user_id=row.user_id,
        status=row.status,
        container_id=row.container_id,
        container_url=row.container_url,
        resource_tier=row.resource_tier,
        device_type=row.device_type,
        error_message=row.error_message,
        created_at=_as_utc(row.created_at),
        expires_at=_as_utc(row.expires_at),
        ended_at=_as_utc(row.ended_at),
    )


class SessionService:
    """Owns the preview session lifecycle and the machines behind it.

    Status changes are conditional updates keyed on the status the caller
    observed, so two workers racing on the same row cannot both apply the
    same edge. Destroys of one id inside this process are additionally
    serialized by a per-session lock so the loser never repeats the
    provisioner calls. Across processes a fresh `terminating` row means
    another worker owns the teardown; only a row whose lease
    (`updated_at`) has gone stale is taken over.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        provider: ComputeProvider,
        quota: QuotaChecker,
        *,
        channel: RealtimeChannel | None = None,
        settings: Settings | None = None,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._provider = provider
        self._quota = quota
        self._channel = channel
        self._settings = settings or get_settings()
        self._now = time_provider or (lambda: datetime.now(timezone.utc))
        self._locks: dict[str, list[Any]] = {}

    @asynccontextmanager
    async def _session_lock(self, session_id: str) -> AsyncIterator[None]:
        # Reference-counted so idle ids do not accumulate locks.
        entry = self._locks.get(session_id)
        if entry is None:
            entry = [asyncio.Lock(), 0]
            self._locks[session_id] = entry
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                self._locks.pop(session_id, None)

    def _build_request(self, session_id: str, project_id: str) -> MachineRequest:
        settings = self._settings
        env = {
            "AGENT_SESSION_ID": session_id,
            "AGENT_PROJECT_ID": project_id,
            "AGENT_FILE_API_URL": settings.public_api_url,
            "AGENT_SNAPSHOT_URL": f"{settings.public_api_url}/v1/projects/{project_id}/snapshot",
            "AGENT_FLY_APP_NAME": settings.fly_app_name,
            "NODE_ENV": "development",
        }
        if settings.storage_base_url:
            env["AGENT_STORAGE_URL"] = settings.storage_base_url
        if settings.realtime_transport == "redis":
            # Sandboxes join the same pub/sub bus as the API.
            env["AGENT_REALTIME_TRANSPORT"] = "redis"
            env["AGENT_REDIS_URL"] = settings.redis_url
        return MachineRequest(
            name=machine_name(session_id),
            image=settings.preview_image,
            region=settings.fly_region,
            env=env,
            services=(
                ServiceSpec(
                    internal_port=AGENT_PORT,
                    ports=(ServicePort(80, ("http",)), ServicePort(443, ("http", "tls"))),
                ),
            ),
            metadata={SESSION_METADATA_KEY: session_id, "preview-project": project_id},
        )

    async def _transition(
        self,
        session_id: str,
        *,
        expected: SessionStatus,
        target: SessionStatus,
        values: dict[str, Any] | None = None,
    ) -> bool:
        async with self._session_factory() as session:
            moved = await sessions_repo.transition(
                session, session_id, expected=expected, target=target, now=self._now(), values=values
            )
            await session.commit()
        if moved:
            logger.info("session_transition session_id=%s from=%s to=%s", session_id, expected.value, target.value)
        return moved

    async def _load(self, session_id: str) -> PreviewSession | None:
        async with self._session_factory() as session:
            return await sessions_repo.get_session(session, session_id)

    async def _notify_status(self, session_id: str, status: SessionStatus, container_url: str | None) -> None:
        # Status notifications are best effort; the row is the source of truth.
        if self._channel is None:
            return
        payload: SessionStatusPayload = {
            "sessionId": session_id,
            "status": status.value,
            "containerUrl": container_url,
            "timestamp": utc_timestamp(),
        }
        try:
            await self._channel.publish(
                session_channel(session_id),
                EVENT_SESSION_STATUS,
                payload,
                sender_id="session-service",
                key_hint=status.value,
                priority="high",
                subject=_SERVICE_SUBJECT,
            )
        except (ChannelClosedError, ChannelAccessDeniedError) as exc:
            logger.warning("session_status_publish_failed session_id=%s error=%s", session_id, exc)

    async def create_session(
        self,
        project_id: str,
        user_id: str,
        tier_name: str | None = None,
        device_type: str | None = None,
    ) -> SessionHandle:
        tier = resolve_tier(tier_name)
        validate(tier.resources)
        await self._quota.check(user_id, tier.name)

        session_id = str(uuid4())
        now = self._now()
        request = apply_to_provisioning_request(self._build_request(session_id, project_id), tier)
        async with self._session_factory() as session:
            await sessions_repo.insert_pending(
                session,
                session_id=session_id,
                project_id=project_id,
                user_id=user_id,
                resource_tier=tier.name,
                device_type=device_type,
                container_name=request.name,
                resource_limits=tier_limits_snapshot(tier),
                created_at=now,
                expires_at=now + timedelta(hours=tier.max_duration_hours),
            )
            await session.commit()
        increment_counter("sessions_created_total")
        logger.info(
            "session_pending session_id=%s project_id=%s user_id=%s tier=%s",
            session_id,
            project_id,
            user_id,
            tier.name,
        )

        instance_id: str | None = None
        try:
            machine = await self._provider.create(request)
            instance_id = machine.instance_id
            await self._provider.wait_until_started(
                instance_id, timeout_s=self._settings.provisioner_ready_timeout_s
            )
        except (ProvisioningError, IntegrationUnavailableError) as exc:
            increment_counter("sessions_provisioning_failed_total")
            logger.warning("session_provisioning_failed session_id=%s error=%s", session_id, exc)
            await self._transition(
                session_id,
                expected=SessionStatus.PENDING,
                target=SessionStatus.ERROR,
                values={"error_message": str(exc), "last_container_id": instance_id},
            )
            await self._notify_status(session_id, SessionStatus.ERROR, None)
            raise ProvisioningError(f"failed to provision session {session_id}: {exc}") from exc

        container_url = self._provider.public_url(session_id)
        activated = await self._transition(
            session_id,
            expected=SessionStatus.PENDING,
            target=SessionStatus.ACTIVE,
            values={
                "container_id": instance_id,
                "last_container_id": instance_id,
                "container_url": container_url,
            },
        )
        if not activated:
            # Destroyed while provisioning; the destroy path owns the row now.
            increment_counter("sessions_provisioning_aborted_total")
            await self._release_machine(instance_id)
            raise ProvisioningError(f"session {session_id} was terminated during provisioning")
        await self._notify_status(session_id, SessionStatus.ACTIVE, container_url)
        return SessionHandle(
            session_id=session_id,
            container_id=instance_id,
            container_url=container_url,
            status=SessionStatus.ACTIVE.value,
        )

    async def _release_machine(self, instance_id: str) -> None:
        try:
            await self._provider.stop(instance_id)
            await self._provider.delete(instance_id)
        except (ProvisioningError, IntegrationUnavailableError) as exc:
            logger.warning("machine_release_failed instance_id=%s error=%s", instance_id, exc)

    async def _resolve_instance(self, row: PreviewSession) -> str | None:
        # Prefer the recorded id; fall back to a name lookup when it is stale.
        instance_id = row.container_id or row.last_container_id
        if instance_id is not None:
            if await self._provider.get_state(instance_id) is not None:
                return instance_id
            logger.info("session_instance_stale session_id=%s instance_id=%s", row.id, instance_id)
        if row.container_name:
            return await self._provider.find_by_name(row.container_name)
        return None

    async def _teardown(self, row: PreviewSession) -> str | None:
        instance_id = await self._resolve_instance(row)
        if instance_id is None:
            return None
        await self._provider.stop(instance_id)
        await self._provider.delete(instance_id)
        return instance_id

    async def get_session_status(self, session_id: str) -> SessionSnapshot | None:
        row = await self._load(session_id)
        return snapshot_from_row(row) if row is not None else None

    async def destroy_session(self, session_id: str, *, force: bool = False) -> str:
        async with self._session_lock(session_id):
            return await self._destroy_locked(session_id, force=force)

    async def force_terminate_session(self, session_id: str) -> str:
        # Marks the row terminated even when the provisioner refuses the teardown.
        return await self.destroy_session(session_id, force=True)

    async def _destroy_locked(self, session_id: str, *, force: bool) -> str:
        row = await self._load(session_id)
        if row is None:
            raise SessionNotFoundError(session_id)
        status = SessionStatus(row.status)
        if status == SessionStatus.TERMINATED:
            logger.info("session_destroy_noop session_id=%s", session_id)
            return OUTCOME_ALREADY_TERMINATED

        if status == SessionStatus.PENDING:
            moved = await self._transition(
                session_id,
                expected=SessionStatus.PENDING,
                target=SessionStatus.ERROR,
                values={"error_message": "destroyed before provisioning completed"},
            )
            if not moved:
                return await self._destroy_locked(session_id, force=force)
            row = await self._load(session_id)
            status = SessionStatus.ERROR

        if status == SessionStatus.TERMINATING:
            # The row may belong to a teardown running in another process.
            if not await self._claim_stale_teardown(row):
                logger.info("session_destroy_in_progress session_id=%s", session_id)
                return OUTCOME_IN_PROGRESS
            increment_counter("sessions_teardown_resumed_total")
            logger.warning("session_teardown_resumed session_id=%s", session_id)
        else:
            instance_id = await self._recorded_instance(row, force=force)
            if instance_id is None and status == SessionStatus.ERROR:
                moved = await self._transition(
                    session_id,
                    expected=SessionStatus.ERROR,
                    target=SessionStatus.TERMINATED,
                    values={"ended_at": self._now()},
                )
                if moved:
                    increment_counter("sessions_terminated_total")
                    await self._notify_status(session_id, SessionStatus.TERMINATED, None)
                    return OUTCOME_TERMINATED
            else:
                # Terminating rows always name the instance being torn down.
                moved = await self._transition(
                    session_id,
                    expected=status,
                    target=SessionStatus.TERMINATING,
                    values={"container_id": instance_id},
                )
            if not moved:
                # Another worker moved the row first; act on what it left behind.
                return await self._destroy_locked(session_id, force=force)
        row = await self._load(session_id)

        try:
            released = await self._teardown(row)
        except (ProvisioningError, IntegrationUnavailableError) as exc:
            increment_counter("sessions_teardown_failed_total")
            logger.warning("session_teardown_failed session_id=%s force=%s error=%s", session_id, force, exc)
            if not force:
                await self._transition(
                    session_id,
                    expected=SessionStatus.TERMINATING,
                    target=SessionStatus.ERROR,
                    values={
                        "error_message": f"teardown failed: {exc}",
                        "container_id": None,
                        "last_container_id": row.container_id or row.last_container_id,
                    },
                )
                raise
            released = None

        await self._finish_termination(row, released)
        increment_counter("sessions_terminated_total")
        await self._notify_status(session_id, SessionStatus.TERMINATED, None)
        return OUTCOME_TERMINATED

    async def _recorded_instance(self, row: PreviewSession, *, force: bool) -> str | None:
        instance_id = row.container_id or row.last_container_id
        if instance_id is not None or not row.container_name:
            return instance_id
        # Creation may have failed after the provisioner accepted the request.
        try:
            return await self._provider.find_by_name(row.container_name)
        except (ProvisioningError, IntegrationUnavailableError) as exc:
            logger.warning("session_instance_lookup_failed session_id=%s error=%s", row.id, exc)
            if not force:
                raise
            return None

    async def _claim_stale_teardown(self, row: PreviewSession) -> bool:
        now = self._now()
        stale_before = now - timedelta(seconds=self._settings.session_teardown_lease_s)
        updated_at = _as_utc(row.updated_at)
        if updated_at is not None and updated_at >= stale_before:
            return False
        async with self._session_factory() as session:
            claimed = await sessions_repo.claim_stale_terminating(
                session, row.id, stale_before=stale_before, now=now
            )
            await session.commit()
        return claimed

    async def _finish_termination(self, row: PreviewSession, released: str | None) -> None:
        last_container_id = released or row.container_id or row.last_container_id
        await self._transition(
            row.id,
            expected=SessionStatus.TERMINATING,
            target=SessionStatus.TERMINATED,
            values={
                "container_id": None,
                "last_container_id": last_container_id,
                "ended_at": self._now(),
            },
        )

    async def cleanup_expired_sessions(self) -> CleanupReport:
        now = self._now()
        async with self._session_factory() as session:
            rows = await sessions_repo.list_expired(
                session, now=now, limit=self._settings.cleanup_batch_size
            )
            session_ids = [row.id for row in rows]
        report = CleanupReport(total_expired=len(session_ids))
        for session_id in session_ids:
            try:
                outcome = await self.destroy_session(session_id)
            except Exception as exc:  # noqa: BLE001 - one session must not stop the sweep
                increment_counter("session_cleanup_failures_total")
                logger.exception("session_cleanup_failed session_id=%s", session_id)
                report.outcomes.append(CleanupOutcome(session_id, OUTCOME_FAILED, str(exc)))
                continue
            report.outcomes.append(CleanupOutcome(session_id, outcome))
        set_gauge("session_cleanup_last_expired", report.total_expired)
        logger.info(
            "session_cleanup_completed expired=%s successful=%s failed=%s",
            report.total_expired,
            report.successful,
            report.failed,
        )
        return report

    async def session_metrics(self) -> SessionMetrics:
        async with self._session_factory() as session:
            counts = await sessions_repo.status_counts(session)
            active_rows = await sessions_repo.list_by_status(session, [SessionStatus.ACTIVE.value])
            ended_rows = await sessions_repo.list_by_status(session, [SessionStatus.TERMINATED.value])
            active_created = [_as_utc(row.created_at) for row in active_rows]
            durations = [
                (_as_utc(row.ended_at) - _as_utc(row.created_at)).total_seconds()
                for row in ended_rows
                if row.ended_at is not None
            ]
        by_status = {status.value: counts.get(status.value, 0) for status in SessionStatus}
        return SessionMetrics(
            by_status=by_status,
            total=sum(by_status.values()),
            active=by_status[SessionStatus.ACTIVE.value],
            oldest_active_created_at=min(active_created) if active_created else None,
            newest_active_created_at=max(active_created) if active_created else None,
            average_duration_s=round(sum(durations) / len(durations), 3) if durations else None,
        )

    async def cleanup_orphaned_machines(self, max_age_minutes: int | None = None) -> OrphanCleanupReport:
        # Destroy preview machines that no live session row references.
        minutes = self._settings.orphan_max_age_minutes if max_age_minutes is None else max_age_minutes
        max_age = timedelta(minutes=minutes)
        machines = await self._provider.list_machines()
        async with self._session_factory() as session:
            referenced = await sessions_repo.referenced_container_ids(session)
        now = self._now()
        destroyed: list[str] = []
        failed: list[str] = []
        for machine in machines:
            if SESSION_METADATA_KEY not in machine.metadata:
                continue
            if machine.instance_id in referenced:
                continue
            created_at = _as_utc(machine.created_at)
            if created_at is not None and now - created_at < max_age:
                continue
            try:
                await self._provider.stop(machine.instance_id)
                await self._provider.delete(machine.instance_id)
            except (ProvisioningError, IntegrationUnavailableError) as exc:
                logger.warning("orphan_cleanup_failed instance_id=%s error=%s", machine.instance_id, exc)
                failed.append(machine.instance_id)
                continue
            destroyed.append(machine.instance_id)
        increment_counter("orphan_machines_destroyed_total", len(destroyed))
        logger.info(
            "orphan_cleanup_completed scanned=%s destroyed=%s failed=%s",
            len(machines),
            len(destroyed),
            len(failed),
        )
        return OrphanCleanupReport(scanned=len(machines), destroyed=destroyed, failed=failed)
