from __future__ import annotations

from datetime import datetime
import asyncio
import logging
import time
from typing import Any, Awaitable, Callable

import httpx

from previewhub.core.config import Settings, get_settings
from previewhub.core.errors import ProvisioningError, ProvisioningRejectedError
from previewhub.providers.compute.base import GONE_STATES, MachineInfo
from previewhub.services.resilience import CircuitBreaker, RetryPolicy, provisioner_retry_policy, retry_async
from previewhub.services.telemetry import record_external_call
from previewhub.services.tiers import MachineRequest


logger = logging.getLogger(__name__)

_INTEGRATION = "compute.fly"
_FAILED_STATES = frozenset({"failed", "stopped", "destroyed", "destroying"})


def _retryable(exc: Exception) -> bool:
    # Transport errors, timeouts, throttling and 5xx are worth another attempt; other 4xx are not.
    if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError, TimeoutError)):
        return True
    if isinstance(exc, ProvisioningRejectedError):
        return False
    status = getattr(exc, "status_code", None)
    return isinstance(status, int) and (status >= 500 or status == 429)


def _parse_time(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


def _parse_machine(data: dict[str, Any]) -> MachineInfo:
    checks = data.get("checks") or []
    checks_passing = all(check.get("status") == "passing" for check in checks) if checks else None
    config = data.get("config") or {}
    return MachineInfo(
        instance_id=str(data["id"]),
        name=str(data.get("name") or ""),
        state=str(data.get("state") or "unknown"),
        region=data.get("region"),
        created_at=_parse_time(data.get("created_at")),
        metadata=dict(config.get("metadata") or {}),
        checks_passing=checks_passing,
    )


def _machine_body(request: MachineRequest) -> dict[str, Any]:
    config: dict[str, Any] = {
        "image": request.image,
        "env": dict(request.env),
        "services": [
            {
                "protocol": service.protocol,
                "internal_port": service.internal_port,
                "ports": [{"port": port.port, "handlers": list(port.handlers)} for port in service.ports],
            }
            for service in request.services
        ],
        "checks": dict(request.checks),
        "metadata": dict(request.metadata),
        "restart": {"policy": "on-failure"},
    }
    if request.resources is not None:
        config["guest"] = {
            "cpu_kind": request.resources.cpu_kind,
            "cpus": request.resources.cpus,
            "memory_mb": request.resources.memory_mb,
        }
    return {"name": request.name, "region": request.region, "config": config}


class FlyMachinesProvider:
    def __init__(
        self,
        *,
        settings: Settings | None = None,
        client: httpx.AsyncClient | None = None,
        breaker: CircuitBreaker | None = None,
        retry_policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._client = client
        self._owns_client = client is None
        self._breaker = breaker or CircuitBreaker(_INTEGRATION)
        self._policy = retry_policy or provisioner_retry_policy()
        self._sleep = sleep or asyncio.sleep
        self._clock = clock or time.monotonic
        self._app = self._settings.fly_app_name

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client per provider for connection pooling.
        if not self._settings.fly_api_token:
            raise ProvisioningRejectedError("FLY_API_TOKEN is required for the fly compute provider")
        self._client = httpx.AsyncClient(
            base_url=self._settings.fly_api_base_url,
            headers={"Authorization": f"Bearer {self._settings.fly_api_token}"},
            timeout=self._settings.provisioner_call_timeout_ms / 1000.0,
        )
        return self._client

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        tolerate: frozenset[int] = frozenset(),
    ) -> httpx.Response:
        client = self._get_client()
        await self._breaker.before_call()
        start = time.monotonic()

        async def _call() -> httpx.Response:
            response = await client.request(method, path, json=json, params=params)
            if response.status_code >= 500 or response.status_code == 429:
                raise ProvisioningError(
                    f"compute API {method} {path} returned {response.status_code}",
                    status_code=response.status_code,
                )
            return response

        try:
            response = await retry_async(
                _call,
                policy=self._policy,
                retryable=_retryable,
                sleep=self._sleep,
                name=_INTEGRATION,
            )
        except (httpx.HTTPError, ProvisioningError, TimeoutError) as exc:
            await self._breaker.record_failure()
            record_external_call(
                integration=_INTEGRATION,
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            logger.warning("compute_request_failed method=%s path=%s error=%s", method, path, exc)
            if isinstance(exc, ProvisioningError):
                raise
            raise ProvisioningError(f"compute API {method} {path} failed: {type(exc).__name__}") from exc

        # A 4xx answer still proves the API is reachable.
        await self._breaker.record_success()
        record_external_call(
            integration=_INTEGRATION,
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=True,
        )
        if response.status_code >= 400 and response.status_code not in tolerate:
            raise ProvisioningRejectedError(
                f"compute API rejected {method} {path}: {response.status_code} {response.text[:200]}",
                status_code=response.status_code,
            )
        return response

    def _machine_path(self, instance_id: str, suffix: str = "") -> str:
        return f"/apps/{self._app}/machines/{instance_id}{suffix}"

    async def create(self, request: MachineRequest) -> MachineInfo:
        response = await self._request("POST", f"/apps/{self._app}/machines", json=_machine_body(request))
        machine = _parse_machine(response.json())
        logger.info("machine_created id=%s name=%s state=%s", machine.instance_id, machine.name, machine.state)
        return machine

    async def start(self, instance_id: str) -> None:
        await self._request("POST", self._machine_path(instance_id, "/start"))

    async def stop(self, instance_id: str) -> None:
        try:
            response = await self._request("POST", self._machine_path(instance_id, "/stop"), tolerate=frozenset({404}))
        except ProvisioningRejectedError:
            # Stopping an already stopped machine is rejected by the API; treat it as done.
            state = await self.get_state(instance_id)
            if state is None or state in GONE_STATES:
                return
            raise
        if response.status_code == 404:
            logger.info("machine_stop_already_gone id=%s", instance_id)

    async def delete(self, instance_id: str) -> None:
        response = await self._request(
            "DELETE",
            self._machine_path(instance_id),
            params={"force": "true"},
            tolerate=frozenset({404}),
        )
        if response.status_code == 404:
            logger.info("machine_delete_already_gone id=%s", instance_id)

    async def get_machine(self, instance_id: str) -> MachineInfo | None:
        response = await self._request("GET", self._machine_path(instance_id), tolerate=frozenset({404}))
        if response.status_code == 404:
            return None
        return _parse_machine(response.json())

    async def get_state(self, instance_id: str) -> str | None:
        machine = await self.get_machine(instance_id)
        return machine.state if machine else None

    async def list_machines(self) -> list[MachineInfo]:
        response = await self._request("GET", f"/apps/{self._app}/machines")
        return [_parse_machine(item) for item in response.json() or []]

    async def find_by_name(self, name: str) -> str | None:
        for machine in await self.list_machines():
            if machine.name == name and machine.state != "destroyed":
                return machine.instance_id
        return None

    async def wait_until_started(
        self, instance_id: str, *, timeout_s: float, require_checks: bool = False
    ) -> MachineInfo:
        # Poll until started; failed or stopped machines abort immediately.
        deadline = self._clock() + timeout_s
        checks = 0
        while True:
            checks += 1
            machine = await self.get_machine(instance_id)
            if machine is None:
                raise ProvisioningError(f"machine {instance_id} disappeared while starting")
            checks_ok = machine.checks_passing is not False or not require_checks
            if machine.state == "started" and checks_ok:
                logger.info("machine_ready id=%s checks=%s", instance_id, checks)
                return machine
            if machine.state in _FAILED_STATES:
                raise ProvisioningError(f"machine {instance_id} failed to start: {machine.state}")
            if self._clock() >= deadline:
                raise ProvisioningError(f"machine {instance_id} not ready within {timeout_s:.0f}s")
            await self._sleep(self._settings.provisioner_ready_poll_s)

    def public_url(self, session_id: str) -> str:
        return f"https://{self._app}.{self._settings.preview_domain}/session/{session_id}"

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
