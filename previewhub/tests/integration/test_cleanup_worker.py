from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from previewhub.services.sessions import SESSION_METADATA_KEY, machine_name
from previewhub.tests.utils.builders import seed_session
from previewhub.workers import cleanup_worker


@pytest.mark.asyncio
async def test_cleanup_jobs_use_the_shared_context(api_context) -> None:
    provider = api_context.provider
    now = datetime.now(timezone.utc)
    expired = provider.add_machine(machine_name("s-expired"))
    await seed_session(
        api_context.session_factory,
        session_id="s-expired",
        container_id=expired,
        container_name=machine_name("s-expired"),
        created_at=now - timedelta(hours=3),
        expires_at=now - timedelta(minutes=5),
    )
    orphan = provider.add_machine(
        machine_name("s-gone"),
        created_at=now - timedelta(hours=2),
        metadata={SESSION_METADATA_KEY: "s-gone"},
    )
    ctx = {"app_context": api_context}

    report = await cleanup_worker.cleanup_expired_sessions(ctx)
    orphans = await cleanup_worker.cleanup_orphaned_machines(ctx, max_age_minutes=30)

    assert report["totalExpired"] == 1
    assert report["successful"] == 1
    assert orphans["destroyed"] == [orphan]
    assert provider.machines[expired].state == "destroyed"
    assert provider.machines[orphan].state == "destroyed"


@pytest.mark.asyncio
async def test_destroy_job_is_idempotent(api_context) -> None:
    provider = api_context.provider
    machine = provider.add_machine(machine_name("s-live"))
    await seed_session(
        api_context.session_factory,
        session_id="s-live",
        container_id=machine,
        container_name=machine_name("s-live"),
    )
    ctx = {"app_context": api_context}

    first = await cleanup_worker.destroy_session(ctx, "s-live")
    second = await cleanup_worker.destroy_session(ctx, "s-live")

    assert (first, second) == ("terminated", "already_terminated")
    assert provider.external_calls("delete") == [machine]


def test_worker_settings_schedule() -> None:
    settings = cleanup_worker.WorkerSettings
    assert {job.__name__ for job in settings.functions} == {
        "cleanup_expired_sessions",
        "cleanup_orphaned_machines",
        "destroy_session",
    }
    assert len(settings.cron_jobs) == 2
    assert cleanup_worker._every(5) == set(range(0, 60, 5))
    assert cleanup_worker._every(0) == set(range(60))
