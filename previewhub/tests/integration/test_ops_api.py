from __future__ import annotations

import httpx
import pytest

from previewhub.apps.api.main import create_app
from previewhub.apps.api.rate_limit import route_class_for_path
from previewhub.core.config import get_settings
from previewhub.providers.compute.fake import FakeComputeProvider
from previewhub.services.context import AppContext
from previewhub.services.realtime.transport import LocalTransport


@pytest.mark.asyncio
async def test_health_is_enveloped_and_aliased(client) -> None:
    versioned = await client.get("/v1/health", headers={"X-Request-Id": "req-1"})
    assert versioned.status_code == 200
    assert versioned.json() == {
        "data": {"status": "ok", "service": "previewhub"},
        "meta": {"request_id": "req-1", "api_version": "v1"},
    }
    assert versioned.headers["X-Request-Id"] == "req-1"
    assert "Deprecation" not in versioned.headers

    legacy = await client.get("/health")
    assert legacy.json() == {"status": "ok", "service": "previewhub"}
    assert legacy.headers["Deprecation"] == "true"
    assert "Sunset" in legacy.headers


@pytest.mark.asyncio
async def test_ops_metrics_reports_counters_and_sessions(client) -> None:
    await client.post("/v1/sessions", json={"projectId": "p-1", "userId": "u-1"})
    response = await client.get("/v1/ops/metrics")
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["counters"]["sessions_created_total"] == 1
    assert data["sessions"]["active"] == 1
    assert "session" in data["request_latency"]
    assert isinstance(data["channels"], list)


@pytest.mark.asyncio
async def test_unknown_routes_use_the_error_envelope(client) -> None:
    response = await client.get("/v1/nope")
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_requests_over_the_limit_are_throttled(monkeypatch) -> None:
    monkeypatch.setenv("RL_API_LIMIT", "2")
    get_settings.cache_clear()
    context = AppContext.build(get_settings(), provider=FakeComputeProvider(), transport=LocalTransport())
    await context.create_schema()
    app = create_app(context)
    try:
        async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
            headers = {"X-Client-Id": "client-a"}
            first = await client.get("/v1/projects/p-1/files", headers=headers)
            second = await client.get("/v1/projects/p-1/files", headers=headers)
            third = await client.get("/v1/projects/p-1/files", headers=headers)
            other_class = await client.put(
                "/v1/projects/p-1/files/a.txt", json={"content": "a"}, headers=headers
            )
            other_client = await client.get("/v1/projects/p-1/files", headers={"X-Client-Id": "client-b"})
    finally:
        await context.aclose()

    assert [first.status_code, second.status_code] == [200, 200]
    assert first.headers["X-RateLimit-Remaining"] == "1"
    assert third.status_code == 429
    error = third.json()["error"]
    assert error["code"] == "RATE_LIMITED"
    assert error["details"]["route_class"] == "read"
    assert int(third.headers["Retry-After"]) >= 1
    assert third.headers["X-RateLimit-Route-Class"] == "read"
    assert other_class.status_code == 200
    assert other_client.status_code == 200


@pytest.mark.parametrize(
    ("path", "method", "expected"),
    [
        ("/v1/sessions", "POST", "session"),
        ("/v1/sessions/abc", "DELETE", "session"),
        ("/v1/sessions/abc", "GET", "read"),
        ("/v1/projects/p-1/files/a.ts", "PUT", "mutation"),
        ("/v1/ops/metrics", "GET", "ops"),
        ("/health", "GET", "ops"),
    ],
)
def test_route_classes(path: str, method: str, expected: str) -> None:
    assert route_class_for_path(path, method) == expected
