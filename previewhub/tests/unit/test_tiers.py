from __future__ import annotations

from dataclasses import replace

import pytest

from previewhub.core.errors import ResourceValidationError
from previewhub.services.tiers import (
    AGENT_PORT,
    TIERS,
    MachineRequest,
    ServiceSpec,
    apply_to_provisioning_request,
    resolve_tier,
    tier_limits_snapshot,
    validate,
)


def _request() -> MachineRequest:
    return MachineRequest(
        name="preview-abc12345",
        image="agent:latest",
        region="ord",
        env={"AGENT_SESSION_ID": "abc"},
        services=(ServiceSpec(internal_port=8080), ServiceSpec(internal_port=9999)),
        metadata={"preview-session": "abc"},
    )


def test_free_tier_profile() -> None:
    tier = resolve_tier("free")
    assert tier.resources.cpus == 1
    assert tier.resources.memory_mb == 256
    assert tier.max_duration_hours == 2
    assert tier.security.allowed_ports == (8080, 8081, 3000)


def test_unknown_tier_falls_back_to_free() -> None:
    assert resolve_tier("enterprise") is TIERS["free"]
    assert resolve_tier(None) is TIERS["free"]
    assert resolve_tier(" PRO ") is TIERS["pro"]


def test_every_tier_is_within_platform_bounds() -> None:
    for tier in TIERS.values():
        validate(tier.resources)


@pytest.mark.parametrize(
    "changes",
    [{"cpus": 0}, {"cpus": 9}, {"memory_mb": 64}, {"memory_mb": 8192}, {"disk_gb": 20}],
)
def test_validate_rejects_out_of_bounds(changes: dict) -> None:
    resources = replace(TIERS["basic"].resources, **changes)
    with pytest.raises(ResourceValidationError):
        validate(resources)


def test_apply_shapes_request_without_mutating_input() -> None:
    request = _request()
    shaped = apply_to_provisioning_request(request, TIERS["free"])

    assert shaped.resources == TIERS["free"].resources
    assert [service.internal_port for service in shaped.services] == [8080]
    assert shaped.checks["health"]["port"] == AGENT_PORT
    assert shaped.checks["health"]["path"] == "/health"
    assert shaped.metadata["preview-tier"] == "free"
    assert shaped.metadata["preview-session"] == "abc"
    assert shaped.metadata["allowed-ports"] == "8080,8081,3000"
    assert shaped.env["PREVIEW_TIER"] == "free"

    assert request.resources is None
    assert len(request.services) == 2
    assert request.checks == {}
    assert "PREVIEW_TIER" not in request.env


def test_pro_tier_uses_dedicated_cpus_and_shorter_health_interval() -> None:
    shaped = apply_to_provisioning_request(_request(), TIERS["pro"])
    assert shaped.resources.cpu_kind == "dedicated"
    assert shaped.checks["health"]["interval"] == "15s"
    assert shaped.metadata["read-only-rootfs"] == "false"


def test_limits_snapshot_is_serializable() -> None:
    snapshot = tier_limits_snapshot(TIERS["basic"])
    assert snapshot["tier"] == "basic"
    assert snapshot["resources"]["memory_mb"] == 512
    assert snapshot["allowed_ports"] == [8080, 8081, 3000, 3001]
    assert snapshot["max_duration_hours"] == 4
