from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from previewhub.core.errors import (
    IntegrationUnavailableError,
    ProvisioningError,
    QuotaExceededError,
    SessionNotFoundError,
)
from previewhub.domain.events import EVENT_SESSION_STATUS
from previewhub.domain.models import PreviewSession
from previewhub.persistence.repos import sessions as sessions_repo
from previewhub.providers.compute.fake import FakeComputeProvider
from previewhub.services.realtime.transport import LocalTransport
from previewhub.services.sessions import (
    OUTCOME_ALREADY_TERMINATED,
    OUTCOME_FAILED,
    OUTCOME_IN_PROGRESS,
    OUTCOME_TERMINATED,
    SESSION_METADATA_KEY,
    machine_name,
)
from previewhub.tests.utils.builders import build_channel, build_session_service, seed_session, utc_now


@pytest.mark.asyncio
async def test_create_session_provisions_and_activates(session_factory) -> None:
    transport = LocalTransport()
    service, provider = build_session_service(session_factory, channel=build_channel(transport))

    handle = await service.create_session("p-1", "u-1", "free", device_type="mobile")

    assert handle.status == "active"
    assert handle.container_id == "m-0001"
    assert handle.container_url == f"https://previewhub-sandboxes.fly.dev/session/{handle.session_id}"
    assert provider.calls == [("create", machine_name(handle.session_id)), ("wait", "m-0001")]

    request = provider.requests["m-0001"]
    assert request.resources.cpus == 1
    assert request.resources.memory_mb == 256
    assert request.metadata[SESSION_METADATA_KEY] == handle.session_id
    assert request.env["AGENT_SESSION_ID"] == handle.session_id
    assert request.env["AGENT_PROJECT_ID"] == "p-1"

    snapshot = await service.get_session_status(handle.session_id)
    assert snapshot is not None
    assert snapshot.status == "active"
    assert snapshot.container_id == "m-0001"
    assert snapshot.device_type == "mobile"
    assert snapshot.expires_at - snapshot.created_at == timedelta(hours=2)

    statuses = [message.payload["status"] for message in transport.published if message.event_type == EVENT_SESSION_STATUS]
    assert statuses == ["active"]


@pytest.mark.asyncio
async def test_unknown_tier_is_provisioned_as_free(session_factory) -> None:
    service, provider = build_session_service(session_factory)
    handle = await service.create_session("p-1", "u-1", "platinum")
    snapshot = await service.get_session_status(handle.session_id)
    assert snapshot.resource_tier == "free"
    assert provider.requests[handle.container_id].resources.memory_mb == 256


@pytest.mark.asyncio
async def test_quota_rejects_before_any_provisioning(session_factory) -> None:
    service, provider = build_session_service(session_factory, max_active=1)
    await service.create_session("p-1", "u-1")

    with pytest.raises(QuotaExceededError):
        await service.create_session("p-2", "u-1")
    assert provider.external_calls("create") == [provider.calls[0][1]]

    # Other users are unaffected.
    await service.create_session("p-2", "u-2")


@pytest.mark.asyncio
async def test_create_failure_marks_session_error(session_factory) -> None:
    service, provider = build_session_service(session_factory)
    provider.fail_next("create", ProvisioningError("capacity", status_code=503))

    with pytest.raises(ProvisioningError):
        await service.create_session("p-1", "u-1")

    metrics = await service.session_metrics()
    assert metrics.by_status["error"] == 1
    assert metrics.active == 0
    assert provider.external_calls("create") and not provider.external_calls("wait")


@pytest.mark.asyncio
async def test_machine_that_never_starts_leaves_error_row_with_last_container(session_factory) -> None:
    service, provider = build_session_service(session_factory)
    provider.fail_next("wait", IntegrationUnavailableError("circuit open"))

    with pytest.raises(ProvisioningError):
        await service.create_session("p-1", "u-1")

    async with session_factory() as session:
        rows = await sessions_repo.list_for_project(session, "p-1")
    assert len(rows) == 1
    assert rows[0].status == "error"
    assert rows[0].container_id is None
    assert rows[0].last_container_id == "m-0001"
    assert "circuit open" in rows[0].error_message

    # Errored sessions can still be torn down; the recorded machine is released.
    assert await service.destroy_session(rows[0].id) == OUTCOME_TERMINATED
    assert provider.external_calls("delete") == ["m-0001"]


@pytest.mark.asyncio
async def test_destroy_unknown_session_raises(session_factory) -> None:
    service, provider = build_session_service(session_factory)
    with pytest.raises(SessionNotFoundError):
        await service.destroy_session("missing")
    assert provider.calls == []


@pytest.mark.asyncio
async def test_destroy_is_idempotent(session_factory) -> None:
    service, provider = build_session_service(session_factory)
    handle = await service.create_session("p-1", "u-1")

    assert await service.destroy_session(handle.session_id) == OUTCOME_TERMINATED
    calls_after_first = list(provider.calls)
    assert await service.destroy_session(handle.session_id) == OUTCOME_ALREADY_TERMINATED

    assert provider.calls == calls_after_first
    assert provider.external_calls("stop") == ["m-0001"]
    snapshot = await service.get_session_status(handle.session_id)
    assert snapshot.status == "terminated"
    assert snapshot.container_id is None
    assert snapshot.ended_at is not None


@pytest.mark.asyncio
async def test_concurrent_destroys_in_one_process_tear_down_once(session_factory) -> None:
    service, provider = build_session_service(session_factory)
    handle = await service.create_session("p-1", "u-1")

    outcomes = await asyncio.gather(*(service.destroy_session(handle.session_id) for _ in range(3)))

    assert sorted(outcomes) == [OUTCOME_ALREADY_TERMINATED, OUTCOME_ALREADY_TERMINATED, OUTCOME_TERMINATED]
    assert provider.external_calls("stop") == ["m-0001"]
    assert provider.external_calls("delete") == ["m-0001"]


@pytest.mark.asyncio
async def test_concurrent_destroys_across_workers_tear_down_once(session_factory) -> None:
    provider = FakeComputeProvider()
    first, _ = build_session_service(session_factory, provider=provider)
    second, _ = build_session_service(session_factory, provider=provider)
    handle = await first.create_session("p-1", "u-1")

    outcomes = await asyncio.gather(
        first.destroy_session(handle.session_id),
        second.destroy_session(handle.session_id),
    )

    assert outcomes.count(OUTCOME_TERMINATED) == 1
    assert set(outcomes) <= {OUTCOME_TERMINATED, OUTCOME_ALREADY_TERMINATED, OUTCOME_IN_PROGRESS}
    assert provider.external_calls("stop") == ["m-0001"]
    assert (await first.get_session_status(handle.session_id)).status == "terminated"


class BlockingStopProvider(FakeComputeProvider):
    """Holds every stop call until the test releases it."""

    def __init__(self) -> None:
        super().__init__()
        self.stop_entered = asyncio.Event()
        self.release = asyncio.Event()

    async def stop(self, instance_id: str) -> None:
        self.stop_entered.set()
        await self.release.wait()
        await super().stop(instance_id)


@pytest.mark.asyncio
async def test_second_worker_leaves_running_teardown_alone(session_factory) -> None:
    provider = BlockingStopProvider()
    api, _ = build_session_service(session_factory, provider=provider)
    sweeper, _ = build_session_service(session_factory, provider=provider)
    handle = await api.create_session("p-1", "u-1")

    first = asyncio.create_task(api.destroy_session(handle.session_id))
    await provider.stop_entered.wait()

    assert await sweeper.destroy_session(handle.session_id) == OUTCOME_IN_PROGRESS
    provider.release.set()
    assert await first == OUTCOME_TERMINATED

    assert provider.external_calls("stop") == ["m-0001"]
    assert provider.external_calls("delete") == ["m-0001"]
    assert (await api.get_session_status(handle.session_id)).status == "terminated"


@pytest.mark.asyncio
async def test_fresh_terminating_row_is_not_torn_down_again(session_factory) -> None:
    service, provider = build_session_service(session_factory)
    machine_id = provider.add_machine(machine_name("sess-busy-0001"))
    await seed_session(
        session_factory,
        session_id="sess-busy-0001",
        status="terminating",
        container_id=machine_id,
        container_name=machine_name("sess-busy-0001"),
        updated_at=utc_now(),
    )

    assert await service.destroy_session("sess-busy-0001") == OUTCOME_IN_PROGRESS
    assert provider.external_calls("stop") == []
    assert (await service.get_session_status("sess-busy-0001")).status == "terminating"


@pytest.mark.asyncio
async def test_abandoned_teardown_is_taken_over_after_lease(session_factory) -> None:
    service, provider = build_session_service(session_factory)
    machine_id = provider.add_machine(machine_name("sess-dead-0001"))
    await seed_session(
        session_factory,
        session_id="sess-dead-0001",
        status="terminating",
        container_id=machine_id,
        container_name=machine_name("sess-dead-0001"),
        updated_at=utc_now() - timedelta(hours=1),
    )

    assert await service.destroy_session("sess-dead-0001") == OUTCOME_TERMINATED
    assert provider.external_calls("delete") == [machine_id]
    snapshot = await service.get_session_status("sess-dead-0001")
    assert snapshot.status == "terminated"
    assert snapshot.container_id is None


@pytest.mark.asyncio
async def test_errored_session_without_instance_terminates_directly(session_factory) -> None:
    transport = LocalTransport()
    service, provider = build_session_service(session_factory, channel=build_channel(transport))
    provider.fail_next("create", ProvisioningError("capacity", status_code=503))
    with pytest.raises(ProvisioningError):
        await service.create_session("p-1", "u-1")
    async with session_factory() as session:
        (row,) = await sessions_repo.list_for_project(session, "p-1")

    assert await service.destroy_session(row.id) == OUTCOME_TERMINATED

    snapshot = await service.get_session_status(row.id)
    assert snapshot.status == "terminated"
    assert snapshot.container_id is None
    assert snapshot.ended_at is not None
    assert provider.external_calls("stop") == []
    assert provider.external_calls("delete") == []
    statuses = [message.payload["status"] for message in transport.published if message.event_type == EVENT_SESSION_STATUS]
    assert statuses == ["error", "terminated"]


@pytest.mark.asyncio
async def test_destroying_pending_session_without_instance(session_factory) -> None:
    service, provider = build_session_service(session_factory)
    await seed_session(
        session_factory,
        session_id="sess-pend-0001",
        status="pending",
        container_name=machine_name("sess-pend-0001"),
    )

    assert await service.destroy_session("sess-pend-0001") == OUTCOME_TERMINATED
    snapshot = await service.get_session_status("sess-pend-0001")
    assert snapshot.status == "terminated"
    assert snapshot.container_id is None
    assert provider.external_calls("stop") == []


@pytest.mark.asyncio
async def test_terminating_row_names_instance_found_by_name(session_factory) -> None:
    service, provider = build_session_service(session_factory)
    machine_id = provider.add_machine(machine_name("sess-lost-0001"))
    await seed_session(
        session_factory,
        session_id="sess-lost-0001",
        status="error",
        container_name=machine_name("sess-lost-0001"),
    )
    observed: list[tuple[str, str | None]] = []
    teardown = service._teardown

    async def recording_teardown(row: PreviewSession) -> str | None:
        current = await service.get_session_status(row.id)
        observed.append((current.status, current.container_id))
        return await teardown(row)

    service._teardown = recording_teardown

    assert await service.destroy_session("sess-lost-0001") == OUTCOME_TERMINATED
    assert observed == [("terminating", machine_id)]
    assert provider.external_calls("delete") == [machine_id]


@pytest.mark.asyncio
async def test_destroy_falls_back_to_name_lookup_for_stale_id(session_factory) -> None:
    service, provider = build_session_service(session_factory)
    live_id = provider.add_machine(machine_name("sess-stale-0001"))
    await seed_session(
        session_factory,
        session_id="sess-stale-0001",
        container_id="m-9999",
        container_name=machine_name("sess-stale-0001"),
    )

    assert await service.destroy_session("sess-stale-0001") == OUTCOME_TERMINATED
    assert provider.external_calls("delete") == [live_id]


@pytest.mark.asyncio
async def test_teardown_failure_moves_session_to_error(session_factory) -> None:
    service, provider = build_session_service(session_factory)
    handle = await service.create_session("p-1", "u-1")
    provider.fail_next("stop", ProvisioningError("api down", status_code=502))

    with pytest.raises(ProvisioningError):
        await service.destroy_session(handle.session_id)

    snapshot = await service.get_session_status(handle.session_id)
    assert snapshot.status == "error"
    assert snapshot.container_id is None

    # A later attempt resumes from the error state.
    assert await service.destroy_session(handle.session_id) == OUTCOME_TERMINATED
    assert provider.external_calls("delete") == ["m-0001"]


@pytest.mark.asyncio
async def test_force_terminate_ignores_provider_failures(session_factory) -> None:
    service, provider = build_session_service(session_factory)
    handle = await service.create_session("p-1", "u-1")
    provider.fail_next("stop", ProvisioningError("api down"))

    assert await service.force_terminate_session(handle.session_id) == OUTCOME_TERMINATED
    assert (await service.get_session_status(handle.session_id)).status == "terminated"


@pytest.mark.asyncio
async def test_cleanup_destroys_only_expired_sessions(session_factory) -> None:
    service, provider = build_session_service(session_factory)
    now = utc_now()
    for index in range(3):
        instance_id = provider.add_machine(machine_name(f"expired-{index}"))
        await seed_session(
            session_factory,
            session_id=f"expired-{index}",
            container_id=instance_id,
            expires_at=now - timedelta(minutes=5),
        )
    await seed_session(
        session_factory,
        session_id="fresh",
        container_id=provider.add_machine("preview-fresh"),
        expires_at=now + timedelta(hours=1),
    )
    await seed_session(
        session_factory,
        session_id="done",
        status="terminated",
        expires_at=now - timedelta(hours=1),
    )
    provider.fail_next("stop", ProvisioningError("flaky"))

    report = await service.cleanup_expired_sessions()

    assert report.total_expired == 3
    assert report.successful == 2
    assert report.failed == 1
    failed = [item for item in report.outcomes if item.outcome == OUTCOME_FAILED]
    assert failed[0].error
    assert (await service.get_session_status("fresh")).status == "active"
    assert report.to_public()["totalExpired"] == 3


@pytest.mark.asyncio
async def test_cleanup_orphaned_machines(session_factory) -> None:
    service, provider = build_session_service(session_factory)
    old = utc_now() - timedelta(hours=5)
    orphan = provider.add_machine("preview-orphan", created_at=old, metadata={SESSION_METADATA_KEY: "gone"})
    owned = provider.add_machine("preview-owned", created_at=old, metadata={SESSION_METADATA_KEY: "owned"})
    young = provider.add_machine("preview-young", metadata={SESSION_METADATA_KEY: "young"})
    foreign = provider.add_machine("api-server", created_at=old)
    await seed_session(session_factory, session_id="owned", container_id=owned)

    report = await service.cleanup_orphaned_machines(max_age_minutes=60)

    assert report.scanned == 4
    assert report.destroyed == [orphan]
    assert report.failed == []
    assert provider.machines[owned].state == "started"
    assert provider.machines[young].state == "started"
    assert provider.machines[foreign].state == "started"


@pytest.mark.asyncio
async def test_session_metrics(session_factory) -> None:
    service, _ = build_session_service(session_factory)
    created = utc_now() - timedelta(hours=1)
    await seed_session(session_factory, session_id="a", created_at=created)
    await seed_session(session_factory, session_id="b", created_at=created + timedelta(minutes=10))
    await seed_session(session_factory, session_id="c", status="pending")
    async with session_factory() as session:
        row = await session.get(PreviewSession, "a")
        row.status = "terminated"
        row.ended_at = created + timedelta(minutes=30)
        await session.commit()

    metrics = await service.session_metrics()

    assert metrics.by_status["active"] == 1
    assert metrics.by_status["pending"] == 1
    assert metrics.by_status["terminated"] == 1
    assert metrics.total == 3
    assert metrics.average_duration_s == pytest.approx(1800.0)
    assert metrics.oldest_active_created_at == metrics.newest_active_created_at
