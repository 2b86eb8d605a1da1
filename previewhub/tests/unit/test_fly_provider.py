from __future__ import annotations

import json

import httpx
import pytest

from previewhub.core.config import Settings
from previewhub.core.errors import IntegrationUnavailableError, ProvisioningError, ProvisioningRejectedError
from previewhub.providers.compute.factory import get_compute_provider
from previewhub.providers.compute.fake import FakeComputeProvider
from previewhub.providers.compute.fly_machines import FlyMachinesProvider
from previewhub.services.resilience import CircuitBreaker, CircuitBreakerConfig, RetryPolicy
from previewhub.services.tiers import MachineRequest, ServicePort, ServiceSpec, TIERS, apply_to_provisioning_request
from previewhub.tests.utils.builders import RecordingSleep


API = "https://machines.test/v1"
POLICY = RetryPolicy(timeout_ms=1000, max_attempts=3, backoff_ms=10)


def _machine(machine_id: str = "m-1", state: str = "created", **extra) -> dict:
    return {
        "id": machine_id,
        "name": "preview-abc12345",
        "state": state,
        "region": "ord",
        "created_at": "2026-01-01T00:00:00Z",
        "config": {"metadata": {"preview-session": "abc12345"}},
        **extra,
    }


def _provider(handler, *, breaker: CircuitBreaker | None = None) -> tuple[FlyMachinesProvider, RecordingSleep]:
    settings = Settings(compute_provider="fly", fly_app_name="sandboxes", preview_domain="fly.dev")
    client = httpx.AsyncClient(base_url=API, transport=httpx.MockTransport(handler))
    sleep = RecordingSleep()
    provider = FlyMachinesProvider(settings=settings, client=client, breaker=breaker, retry_policy=POLICY, sleep=sleep)
    return provider, sleep


def _request() -> MachineRequest:
    request = MachineRequest(
        name="preview-abc12345",
        image="agent:latest",
        region="ord",
        env={"AGENT_SESSION_ID": "abc12345"},
        services=(ServiceSpec(internal_port=8080, ports=(ServicePort(443, ("http", "tls")),)),),
        metadata={"preview-session": "abc12345"},
    )
    return apply_to_provisioning_request(request, TIERS["basic"])


@pytest.mark.asyncio
async def test_create_serializes_the_tier_shaped_request() -> None:
    bodies: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/apps/sandboxes/machines"
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json=_machine())

    provider, _ = _provider(handler)
    machine = await provider.create(_request())

    assert machine.instance_id == "m-1"
    assert machine.metadata == {"preview-session": "abc12345"}
    config = bodies[0]["config"]
    assert config["guest"] == {"cpu_kind": "shared", "cpus": 2, "memory_mb": 512}
    assert config["services"][0]["internal_port"] == 8080
    assert config["services"][0]["ports"] == [{"port": 443, "handlers": ["http", "tls"]}]
    assert config["checks"]["health"]["path"] == "/health"
    assert config["metadata"]["preview-tier"] == "basic"
    assert bodies[0]["name"] == "preview-abc12345"


@pytest.mark.asyncio
async def test_server_errors_are_retried() -> None:
    attempts = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        attempts["count"] += 1
        if attempts["count"] < 3:
            return httpx.Response(503)
        return httpx.Response(200, json=_machine())

    provider, sleep = _provider(handler)
    machine = await provider.create(_request())

    assert machine.instance_id == "m-1"
    assert attempts["count"] == 3
    assert len(sleep.delays) == 2


@pytest.mark.asyncio
async def test_client_errors_are_not_retried() -> None:
    attempts = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        attempts["count"] += 1
        return httpx.Response(422, json={"error": "invalid image"})

    provider, _ = _provider(handler)
    with pytest.raises(ProvisioningRejectedError) as excinfo:
        await provider.create(_request())
    assert excinfo.value.status_code == 422
    assert attempts["count"] == 1


@pytest.mark.asyncio
async def test_exhausted_retries_raise_provisioning_error() -> None:
    provider, sleep = _provider(lambda request: httpx.Response(500))
    with pytest.raises(ProvisioningError) as excinfo:
        await provider.create(_request())
    assert excinfo.value.status_code == 500
    assert len(sleep.delays) == 2


@pytest.mark.asyncio
async def test_open_circuit_short_circuits_calls() -> None:
    breaker = CircuitBreaker(
        "compute.test",
        config=CircuitBreakerConfig(failure_threshold=1, open_seconds=60, half_open_trials=1),
    )
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        raise httpx.ConnectError("refused", request=request)

    provider, _ = _provider(handler, breaker=breaker)
    with pytest.raises(ProvisioningError):
        await provider.get_machine("m-1")
    with pytest.raises(IntegrationUnavailableError):
        await provider.get_machine("m-1")
    assert calls["count"] == 3


@pytest.mark.asyncio
async def test_stop_and_delete_tolerate_missing_machines() -> None:
    seen: list[tuple[str, str]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.method, request.url.path))
        return httpx.Response(404)

    provider, _ = _provider(handler)
    await provider.stop("m-1")
    await provider.delete("m-1")
    assert await provider.get_state("m-1") is None
    assert seen == [
        ("POST", "/v1/apps/sandboxes/machines/m-1/stop"),
        ("DELETE", "/v1/apps/sandboxes/machines/m-1"),
        ("GET", "/v1/apps/sandboxes/machines/m-1"),
    ]


@pytest.mark.asyncio
async def test_stop_of_an_already_stopped_machine_succeeds() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/stop"):
            return httpx.Response(412, json={"error": "machine not started"})
        return httpx.Response(200, json=_machine(state="stopped"))

    provider, _ = _provider(handler)
    await provider.stop("m-1")


@pytest.mark.asyncio
async def test_wait_until_started_polls_until_ready() -> None:
    states = iter(["created", "starting", "started"])

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=_machine(state=next(states)))

    provider, sleep = _provider(handler)
    machine = await provider.wait_until_started("m-1", timeout_s=60)
    assert machine.state == "started"
    assert len(sleep.delays) == 2


@pytest.mark.asyncio
async def test_wait_until_started_aborts_on_failed_machine() -> None:
    provider, _ = _provider(lambda request: httpx.Response(200, json=_machine(state="failed")))
    with pytest.raises(ProvisioningError):
        await provider.wait_until_started("m-1", timeout_s=60)


@pytest.mark.asyncio
async def test_find_by_name_skips_destroyed_machines() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json=[_machine("m-old", state="destroyed"), _machine("m-new", state="started")],
        )

    provider, _ = _provider(handler)
    assert await provider.find_by_name("preview-abc12345") == "m-new"
    machines = await provider.list_machines()
    assert [machine.created_at.year for machine in machines] == [2026, 2026]


def test_public_url() -> None:
    provider, _ = _provider(lambda request: httpx.Response(200))
    assert provider.public_url("abc") == "https://sandboxes.fly.dev/session/abc"


def test_factory_selects_provider() -> None:
    assert isinstance(get_compute_provider(Settings(compute_provider="fake")), FakeComputeProvider)
    assert isinstance(get_compute_provider(Settings(compute_provider="fly")), FlyMachinesProvider)
    with pytest.raises(ProvisioningRejectedError):
        get_compute_provider(Settings(compute_provider="k8s"))


@pytest.mark.asyncio
async def test_missing_token_is_rejected() -> None:
    provider = FlyMachinesProvider(settings=Settings(compute_provider="fly", fly_api_token=None))
    with pytest.raises(ProvisioningRejectedError):
        await provider.list_machines()
