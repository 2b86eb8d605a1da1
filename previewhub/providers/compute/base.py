from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

from previewhub.services.tiers import MachineRequest


# Machine states reported by the compute API that count as already torn down.
GONE_STATES = frozenset({"stopped", "destroyed", "destroying"})


@dataclass(frozen=True)
class MachineInfo:
    instance_id: str
    name: str
    state: str
    region: str | None = None
    created_at: datetime | None = None
    metadata: dict[str, str] = field(default_factory=dict)
    checks_passing: bool | None = None


class ComputeProvider(Protocol):
    async def create(self, request: MachineRequest) -> MachineInfo:
        ...

    async def start(self, instance_id: str) -> None:
        ...

    async def stop(self, instance_id: str) -> None:
        ...

    async def delete(self, instance_id: str) -> None:
        ...

    async def find_by_name(self, name: str) -> str | None:
        ...

    async def get_state(self, instance_id: str) -> str | None:
        ...

    async def get_machine(self, instance_id: str) -> MachineInfo | None:
        ...

    async def wait_until_started(self, instance_id: str, *, timeout_s: float) -> MachineInfo:
        ...

    async def list_machines(self) -> list[MachineInfo]:
        ...

    def public_url(self, session_id: str) -> str:
        ...

    async def aclose(self) -> None:
        ...
