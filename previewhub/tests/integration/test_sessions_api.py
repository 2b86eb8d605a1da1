from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from previewhub.domain.events import session_channel
from previewhub.domain.state import SessionStatus
from previewhub.services.sessions import machine_name
from previewhub.tests.utils.builders import seed_session


@pytest.mark.asyncio
async def test_create_get_and_destroy_session(client, api_context) -> None:
    created = await client.post(
        "/v1/sessions",
        json={"projectId": "p-1", "userId": "u-1", "deviceType": "mobile"},
    )
    assert created.status_code == 201
    body = created.json()
    assert body["meta"]["api_version"] == "v1"
    handle = body["data"]
    assert handle["status"] == SessionStatus.ACTIVE.value
    assert handle["containerUrl"].startswith("https://")
    session_id = handle["sessionId"]

    fetched = await client.get(f"/v1/sessions/{session_id}")
    assert fetched.status_code == 200
    status = fetched.json()["data"]
    assert status["projectId"] == "p-1"
    assert status["deviceType"] == "mobile"
    assert status["resourceTier"] == "free"
    assert status["containerId"] == handle["containerId"]

    provider = api_context.provider
    assert await provider.find_by_name(machine_name(session_id)) == handle["containerId"]

    deleted = await client.delete(f"/v1/sessions/{session_id}")
    assert deleted.status_code == 204

    after = (await client.get(f"/v1/sessions/{session_id}")).json()["data"]
    assert after["status"] == "terminated"
    assert after["endedAt"] is not None
    assert await provider.find_by_name(machine_name(session_id)) is None


@pytest.mark.asyncio
async def test_status_events_are_broadcast(client, api_context) -> None:
    response = await client.post("/v1/sessions", json={"projectId": "p-1", "userId": "u-1"})
    session_id = response.json()["data"]["sessionId"]

    published = [
        message for message in api_context.transport.published if message.channel_name == session_channel(session_id)
    ]
    assert [message.payload["status"] for message in published] == [SessionStatus.ACTIVE.value]
    assert published[-1].payload["containerUrl"] == response.json()["data"]["containerUrl"]


@pytest.mark.asyncio
async def test_unknown_session_is_absent_and_destroy_is_not_found(client) -> None:
    missing = await client.get("/v1/sessions/does-not-exist")
    assert missing.status_code == 200
    assert missing.json()["data"] is None

    deleted = await client.delete("/v1/sessions/does-not-exist")
    assert deleted.status_code == 404
    error = deleted.json()["error"]
    assert error["code"] == "SESSION_NOT_FOUND"
    assert error["details"] == {"sessionId": "does-not-exist"}


@pytest.mark.asyncio
async def test_invalid_tier_and_payload_are_rejected(client) -> None:
    missing_fields = await client.post("/v1/sessions", json={"projectId": "p-1"})
    assert missing_fields.status_code == 422
    assert missing_fields.json()["error"]["code"] == "REQUEST_VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_quota_is_enforced_per_user(client, api_context) -> None:
    limit = api_context.settings.quota_max_active_sessions_per_user
    for _ in range(limit):
        response = await client.post("/v1/sessions", json={"projectId": "p-1", "userId": "u-quota"})
        assert response.status_code == 201

    rejected = await client.post("/v1/sessions", json={"projectId": "p-1", "userId": "u-quota"})
    assert rejected.status_code == 402
    assert rejected.json()["error"]["code"] == "QUOTA_EXCEEDED"

    other_user = await client.post("/v1/sessions", json={"projectId": "p-1", "userId": "u-other"})
    assert other_user.status_code == 201


@pytest.mark.asyncio
async def test_metrics_and_cleanup_endpoints(client, api_context) -> None:
    provider = api_context.provider
    machine = provider.add_machine(machine_name("expired-1"))
    now = datetime.now(timezone.utc)
    await seed_session(
        api_context.session_factory,
        session_id="expired-1",
        container_id=machine,
        container_name=machine_name("expired-1"),
        created_at=now - timedelta(hours=3),
        expires_at=now - timedelta(hours=1),
    )
    await client.post("/v1/sessions", json={"projectId": "p-1", "userId": "u-1"})

    metrics = (await client.get("/v1/sessions/metrics")).json()["data"]
    assert metrics["active"] == 2
    assert metrics["byStatus"]["active"] == 2

    cleanup = await client.post("/v1/sessions/cleanup")
    assert cleanup.status_code == 200
    report = cleanup.json()["data"]
    assert report["totalExpired"] == 1
    assert report["successful"] == 1
    assert report["outcomes"][0]["sessionId"] == "expired-1"
    assert provider.machines[machine].state == "destroyed"

    orphans = await client.post("/v1/sessions/cleanup/orphans", params={"maxAgeMinutes": 0})
    assert orphans.status_code == 200
    assert orphans.json()["data"]["destroyed"] == []


@pytest.mark.asyncio
async def test_legacy_routes_return_bare_payloads(client) -> None:
    response = await client.post("/sessions", json={"projectId": "p-1", "userId": "u-1"})
    assert response.status_code == 201
    assert "sessionId" in response.json()
    assert response.headers["Deprecation"] == "true"
    assert response.headers["Link"] == '</v1/docs>; rel="successor-version"'

    missing = await client.delete("/sessions/nope")
    assert missing.status_code == 404
    assert missing.json()["detail"]["code"] == "SESSION_NOT_FOUND"
