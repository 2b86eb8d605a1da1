from __future__ import annotations

from datetime import datetime, timezone
from itertools import count

from previewhub.core.errors import ProvisioningError, ProvisioningRejectedError
from previewhub.providers.compute.base import MachineInfo
from previewhub.services.tiers import MachineRequest


class FakeComputeProvider:
    """Deterministic in-memory compute backend for tests and local development.

    Failures are injected per operation: `fail_next("create", error)` makes the
    next create raise `error`. Every call is appended to `calls` so tests can
    assert on the exact sequence of external operations.
    """

    def __init__(self, *, app_name: str = "previewhub-sandboxes", domain: str = "fly.dev") -> None:
        self._app_name = app_name
        self._domain = domain
        self._ids = count(1)
        self.machines: dict[str, MachineInfo] = {}
        self.requests: dict[str, MachineRequest] = {}
        self.calls: list[tuple[str, str]] = []
        self._failures: dict[str, list[Exception]] = {}

    def fail_next(self, operation: str, error: Exception | None = None, *, times: int = 1) -> None:
        queue = self._failures.setdefault(operation, [])
        for _ in range(times):
            queue.append(error or ProvisioningError(f"injected {operation} failure"))

    def _maybe_fail(self, operation: str) -> None:
        queue = self._failures.get(operation)
        if queue:
            raise queue.pop(0)

    def _set_state(self, instance_id: str, state: str) -> None:
        machine = self.machines[instance_id]
        self.machines[instance_id] = MachineInfo(
            instance_id=machine.instance_id,
            name=machine.name,
            state=state,
            region=machine.region,
            created_at=machine.created_at,
            metadata=machine.metadata,
            checks_passing=machine.checks_passing,
        )

    def add_machine(
        self,
        name: str,
        *,
        state: str = "started",
        created_at: datetime | None = None,
        metadata: dict[str, str] | None = None,
    ) -> str:
        # Seed machines that no session created (orphans, leftovers from crashes).
        instance_id = f"m-{next(self._ids):04d}"
        self.machines[instance_id] = MachineInfo(
            instance_id=instance_id,
            name=name,
            state=state,
            created_at=created_at or datetime.now(timezone.utc),
            metadata=dict(metadata or {}),
        )
        return instance_id

    async def create(self, request: MachineRequest) -> MachineInfo:
        self.calls.append(("create", request.name))
        self._maybe_fail("create")
        instance_id = self.add_machine(request.name, metadata=request.metadata)
        self.requests[instance_id] = request
        return self.machines[instance_id]

    async def start(self, instance_id: str) -> None:
        self.calls.append(("start", instance_id))
        self._maybe_fail("start")
        if instance_id not in self.machines:
            raise ProvisioningRejectedError(f"machine {instance_id} not found", status_code=404)
        self._set_state(instance_id, "started")

    async def stop(self, instance_id: str) -> None:
        self.calls.append(("stop", instance_id))
        self._maybe_fail("stop")
        if instance_id in self.machines and self.machines[instance_id].state != "destroyed":
            self._set_state(instance_id, "stopped")

    async def delete(self, instance_id: str) -> None:
        self.calls.append(("delete", instance_id))
        self._maybe_fail("delete")
        if instance_id in self.machines:
            self._set_state(instance_id, "destroyed")

    async def get_machine(self, instance_id: str) -> MachineInfo | None:
        self.calls.append(("get", instance_id))
        self._maybe_fail("get")
        machine = self.machines.get(instance_id)
        if machine is None or machine.state == "destroyed":
            return None
        return machine

    async def get_state(self, instance_id: str) -> str | None:
        machine = await self.get_machine(instance_id)
        return machine.state if machine else None

    async def list_machines(self) -> list[MachineInfo]:
        self.calls.append(("list", ""))
        self._maybe_fail("list")
        return [machine for machine in self.machines.values() if machine.state != "destroyed"]

    async def find_by_name(self, name: str) -> str | None:
        for machine in await self.list_machines():
            if machine.name == name:
                return machine.instance_id
        return None

    async def wait_until_started(
        self, instance_id: str, *, timeout_s: float, require_checks: bool = False
    ) -> MachineInfo:
        self.calls.append(("wait", instance_id))
        self._maybe_fail("wait")
        machine = self.machines.get(instance_id)
        if machine is None or machine.state != "started":
            raise ProvisioningError(f"machine {instance_id} failed to start")
        return machine

    def public_url(self, session_id: str) -> str:
        return f"https://{self._app_name}.{self._domain}/session/{session_id}"

    def external_calls(self, operation: str) -> list[str]:
        return [target for name, target in self.calls if name == operation]

    async def aclose(self) -> None:
        return None
