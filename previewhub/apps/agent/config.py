from __future__ import annotations

from pathlib import Path

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class AgentSettings(BaseSettings):
    """Boot environment of the in-sandbox agent, injected by the session service."""

    model_config = SettingsConfigDict(
        env_prefix="AGENT_", env_file=".env", env_file_encoding="utf-8", extra="ignore", populate_by_name=True
    )

    session_id: str
    project_id: str
    log_level: str = "INFO"

    # Hydration sources, tried in this order before the scaffold fallback.
    snapshot_url: str | None = None
    storage_url: str | None = None
    file_api_url: str | None = None

    # Realtime bus: "local" keeps events in-process, "redis" joins the shared pub/sub.
    realtime_transport: str = "local"
    redis_url: str = "redis://localhost:6379/0"
    realtime_redis_prefix: str = "previewhub:rt"

    # Compute API credentials, only used to locate the instance owning another session.
    fly_api_token: str | None = None
    fly_app_name: str = "previewhub-sandboxes"
    fly_api_base_url: str = "https://api.machines.dev/v1"
    # Fly injects FLY_MACHINE_ID into every machine.
    instance_id: str | None = Field(
        default=None, validation_alias=AliasChoices("AGENT_INSTANCE_ID", "FLY_MACHINE_ID")
    )

    workdir: Path = Path("/workspace")
    # Overrides project detection when set.
    dev_command: str | None = None
    port: int = 8080
    # Overrides the detected dev server port when set.
    dev_port: int | None = None
    install_dependencies: bool = True

    restart_delay_s: float = 2.0
    max_restarts_per_minute: int = 5
    ready_probe_interval_s: float = 1.0
    ready_timeout_s: float = 120.0
    proxy_timeout_s: float = 30.0
    hot_reload_debounce_s: float = 1.0
