from __future__ import annotations

from dataclasses import dataclass, field, replace
import logging
from typing import Any

from previewhub.core.errors import ResourceValidationError


logger = logging.getLogger(__name__)

# Hard platform bounds, independent of tier.
MIN_CPUS, MAX_CPUS = 1, 8
MIN_MEMORY_MB, MAX_MEMORY_MB = 128, 4096
MIN_DISK_GB, MAX_DISK_GB = 1, 10

DEFAULT_TIER = "free"
AGENT_PORT = 8080


@dataclass(frozen=True)
class ResourceLimits:
    cpu_kind: str
    cpus: int
    memory_mb: int
    swap_size_mb: int | None = None
    disk_gb: int | None = None
    disk_iops: int | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "cpu_kind": self.cpu_kind,
            "cpus": self.cpus,
            "memory_mb": self.memory_mb,
            "swap_size_mb": self.swap_size_mb,
            "disk_gb": self.disk_gb,
            "disk_iops": self.disk_iops,
        }


@dataclass(frozen=True)
class ResourceAlerts:
    cpu_threshold: int
    memory_threshold: int
    disk_threshold: int


@dataclass(frozen=True)
class SecurityProfile:
    allowed_ports: tuple[int, ...]
    enable_firewall: bool
    read_only_root_fs: bool
    no_new_privileges: bool
    drop_capabilities: tuple[str, ...]
    seccomp_profile: str | None
    health_check_interval_s: int
    alerts: ResourceAlerts
    enable_metrics: bool = True
    blocked_regions: tuple[str, ...] = ()


@dataclass(frozen=True)
class ContainerTier:
    name: str
    description: str
    resources: ResourceLimits
    security: SecurityProfile
    max_duration_hours: int


@dataclass(frozen=True)
class ServicePort:
    port: int
    handlers: tuple[str, ...]


@dataclass(frozen=True)
class ServiceSpec:
    internal_port: int
    protocol: str = "tcp"
    ports: tuple[ServicePort, ...] = ()


@dataclass(frozen=True)
class MachineRequest:
    """Provider-neutral description of a sandbox machine.

    Built by the session service, shaped by `apply_to_provisioning_request`
    and serialized by the compute provider.
    """

    name: str
    image: str
    region: str
    env: dict[str, str] = field(default_factory=dict)
    resources: ResourceLimits | None = None
    services: tuple[ServiceSpec, ...] = ()
    checks: dict[str, dict[str, Any]] = field(default_factory=dict)
    metadata: dict[str, str] = field(default_factory=dict)


TIERS: dict[str, ContainerTier] = {
    "free": ContainerTier(
        name="free",
        description="Basic preview containers with limited resources",
        max_duration_hours=2,
        resources=ResourceLimits(cpu_kind="shared", cpus=1, memory_mb=256, swap_size_mb=128, disk_gb=1),
        security=SecurityProfile(
            allowed_ports=(8080, 8081, 3000),
            enable_firewall=True,
            read_only_root_fs=True,
            no_new_privileges=True,
            drop_capabilities=("ALL",),
            seccomp_profile="runtime/default",
            health_check_interval_s=30,
            alerts=ResourceAlerts(cpu_threshold=80, memory_threshold=85, disk_threshold=90),
        ),
    ),
    "basic": ContainerTier(
        name="basic",
        description="Standard preview containers with moderate resources",
        max_duration_hours=4,
        resources=ResourceLimits(cpu_kind="shared", cpus=2, memory_mb=512, swap_size_mb=256, disk_gb=2),
        security=SecurityProfile(
            allowed_ports=(8080, 8081, 3000, 3001),
            enable_firewall=True,
            read_only_root_fs=True,
            no_new_privileges=True,
            drop_capabilities=("NET_ADMIN", "SYS_ADMIN"),
            seccomp_profile="runtime/default",
            health_check_interval_s=30,
            alerts=ResourceAlerts(cpu_threshold=85, memory_threshold=90, disk_threshold=85),
        ),
    ),
    "pro": ContainerTier(
        name="pro",
        description="High-performance containers with dedicated resources",
        max_duration_hours=8,
        resources=ResourceLimits(
            cpu_kind="dedicated", cpus=4, memory_mb=1024, swap_size_mb=512, disk_gb=4, disk_iops=3000
        ),
        security=SecurityProfile(
            allowed_ports=(8080, 8081, 3000, 3001, 4000, 5000),
            enable_firewall=True,
            read_only_root_fs=False,
            no_new_privileges=True,
            drop_capabilities=("NET_ADMIN",),
            seccomp_profile="runtime/default",
            health_check_interval_s=15,
            alerts=ResourceAlerts(cpu_threshold=90, memory_threshold=95, disk_threshold=80),
        ),
    ),
}


def resolve_tier(name: str | None) -> ContainerTier:
    # Unknown tiers soft-fail to the most restrictive profile.
    key = (name or "").strip().lower()
    tier = TIERS.get(key)
    if tier is None:
        logger.warning("unknown_resource_tier name=%s fallback=%s", name, DEFAULT_TIER)
        return TIERS[DEFAULT_TIER]
    return tier


def validate(resources: ResourceLimits) -> None:
    if not MIN_CPUS <= resources.cpus <= MAX_CPUS:
        raise ResourceValidationError(f"cpus must be between {MIN_CPUS} and {MAX_CPUS}, got {resources.cpus}")
    if not MIN_MEMORY_MB <= resources.memory_mb <= MAX_MEMORY_MB:
        raise ResourceValidationError(
            f"memory_mb must be between {MIN_MEMORY_MB} and {MAX_MEMORY_MB}, got {resources.memory_mb}"
        )
    if resources.disk_gb is not None and not MIN_DISK_GB <= resources.disk_gb <= MAX_DISK_GB:
        raise ResourceValidationError(
            f"disk_gb must be between {MIN_DISK_GB} and {MAX_DISK_GB}, got {resources.disk_gb}"
        )


def apply_to_provisioning_request(request: MachineRequest, tier: ContainerTier) -> MachineRequest:
    # Returns a shaped copy; the caller's request is left untouched.
    security = tier.security
    services = request.services
    if security.enable_firewall and security.allowed_ports:
        allowed = set(security.allowed_ports)
        services = tuple(service for service in services if service.internal_port in allowed)
    checks = dict(request.checks)
    checks["health"] = {
        "type": "http",
        "port": AGENT_PORT,
        "method": "GET",
        "path": "/health",
        "interval": f"{security.health_check_interval_s}s",
        "timeout": "10s",
        "grace_period": "15s",
    }
    metadata = dict(request.metadata)
    metadata.update(
        {
            "preview-tier": tier.name,
            "security-tier": "hardened",
            "firewall-enabled": str(security.enable_firewall).lower(),
            "allowed-ports": ",".join(str(port) for port in security.allowed_ports),
            "monitoring-enabled": str(security.enable_metrics).lower(),
            "read-only-rootfs": str(security.read_only_root_fs).lower(),
            "dropped-capabilities": ",".join(security.drop_capabilities),
        }
    )
    env = dict(request.env)
    env.setdefault("PREVIEW_TIER", tier.name)
    return replace(
        request,
        env=env,
        resources=tier.resources,
        services=services,
        checks=checks,
        metadata=metadata,
    )


def tier_limits_snapshot(tier: ContainerTier) -> dict[str, Any]:
    # Persisted alongside the session for audit.
    return {
        "tier": tier.name,
        "resources": tier.resources.as_dict(),
        "allowed_ports": list(tier.security.allowed_ports),
        "max_duration_hours": tier.max_duration_hours,
    }
