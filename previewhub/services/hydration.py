from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Protocol, Sequence
from urllib.parse import quote

import httpx

from previewhub.core.config import Settings, get_settings
from previewhub.core.errors import HydrationError
from previewhub.services.files import FileSyncService
from previewhub.services.resilience import RetryPolicy, retry_async
from previewhub.services.scaffold import default_scaffold
from previewhub.services.snapshots import extract_snapshot
from previewhub.services.telemetry import increment_counter
from previewhub.services.workspace import write_files


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HydrationOutcome:
    strategy: str
    succeeded: bool
    files_written: int = 0
    error: str | None = None


@dataclass
class HydrationReport:
    outcomes: list[HydrationOutcome] = field(default_factory=list)

    @property
    def strategy(self) -> str | None:
        for outcome in self.outcomes:
            if outcome.succeeded:
                return outcome.strategy
        return None

    @property
    def files_written(self) -> int:
        return sum(outcome.files_written for outcome in self.outcomes if outcome.succeeded)

    def to_public(self) -> dict[str, Any]:
        return {
            "strategy": self.strategy,
            "filesWritten": self.files_written,
            "attempts": [
                {
                    "strategy": outcome.strategy,
                    "succeeded": outcome.succeeded,
                    "filesWritten": outcome.files_written,
                    "error": outcome.error,
                }
                for outcome in self.outcomes
            ],
        }


class HydrationStrategy(Protocol):
    name: str

    async def hydrate(self, dest: Path) -> int:
        ...


def hydration_retry_policy(settings: Settings | None = None) -> RetryPolicy:
    settings = settings or get_settings()
    return RetryPolicy(
        timeout_ms=int(settings.hydration_attempt_timeout_s * 1000),
        max_attempts=settings.hydration_snapshot_attempts,
        backoff_ms=int(settings.hydration_base_delay_s * 1000),
        max_backoff_ms=int(settings.hydration_max_delay_s * 1000),
    )


def _download_retryable(exc: Exception) -> bool:
    # A 4xx will not change on retry; the next strategy takes over instead.
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    return isinstance(exc, (httpx.HTTPError, TimeoutError, OSError))


class SnapshotStrategy:
    name = "snapshot"

    def __init__(
        self,
        snapshot_url: str | None,
        *,
        client: httpx.AsyncClient,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self._url = snapshot_url
        self._client = client
        self._policy = policy or hydration_retry_policy()
        self._sleep = sleep

    async def _download(self) -> bytes:
        response = await self._client.get(self._url)
        response.raise_for_status()
        return response.content

    async def hydrate(self, dest: Path) -> int:
        if not self._url:
            raise HydrationError("no snapshot url configured")
        archive = await retry_async(
            self._download,
            policy=self._policy,
            retryable=_download_retryable,
            sleep=self._sleep,
            name="snapshot_download",
        )
        return len(extract_snapshot(archive, dest))


class StorageStrategy:
    """Lists a project's objects in the durable store and downloads each one.

    The listing endpoint answers `GET {base}/projects/{id}/files` with
    `{"files": [{"path": ..., "url": ...}]}`; entries without a url are
    fetched from `{base}/projects/{id}/files/{path}`.
    """

    name = "storage"

    def __init__(
        self,
        base_url: str | None,
        project_id: str,
        *,
        client: httpx.AsyncClient,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/") if base_url else None
        self._project_id = project_id
        self._client = client
        self._policy = policy or hydration_retry_policy()
        self._sleep = sleep

    async def _get(self, url: str) -> httpx.Response:
        async def _call() -> httpx.Response:
            response = await self._client.get(url)
            response.raise_for_status()
            return response

        return await retry_async(
            _call,
            policy=self._policy,
            retryable=_download_retryable,
            sleep=self._sleep,
            name="storage_download",
        )

    async def hydrate(self, dest: Path) -> int:
        if not self._base_url:
            raise HydrationError("no storage url configured")
        listing_url = f"{self._base_url}/projects/{quote(self._project_id, safe='')}/files"
        listing = (await self._get(listing_url)).json()
        entries = listing.get("files", []) if isinstance(listing, dict) else listing
        files: dict[str, str] = {}
        for entry in entries:
            path = entry.get("path") if isinstance(entry, dict) else None
            if not path:
                continue
            url = entry.get("url") or f"{listing_url}/{quote(path)}"
            files[path] = (await self._get(url)).text
        return write_files(dest, files)


class VersionedApiStrategy:
    name = "versioned_api"

    def __init__(
        self,
        project_id: str,
        *,
        api_url: str | None = None,
        client: httpx.AsyncClient | None = None,
        file_service: FileSyncService | None = None,
    ) -> None:
        self._project_id = project_id
        self._api_url = api_url.rstrip("/") if api_url else None
        self._client = client
        self._file_service = file_service

    async def _fetch(self) -> dict[str, str]:
        if self._file_service is not None:
            current = await self._file_service.list_current(self._project_id)
            return {item.path: item.content or "" for item in current}
        if not self._api_url or self._client is None:
            raise HydrationError("no versioned file api configured")
        response = await self._client.get(
            f"{self._api_url}/v1/projects/{quote(self._project_id, safe='')}/files"
        )
        response.raise_for_status()
        body = response.json()
        # Versioned responses are enveloped: {"data": {"items": [...]}, "meta": {...}}.
        data = body.get("data", body) if isinstance(body, dict) else body
        items = data.get("items", []) if isinstance(data, dict) else data
        return {
            item["path"]: item.get("content") or ""
            for item in items
            if isinstance(item, dict) and item.get("path") and item.get("content") is not None
        }

    async def hydrate(self, dest: Path) -> int:
        return write_files(dest, await self._fetch())


class ScaffoldStrategy:
    name = "scaffold"

    def __init__(self, project_id: str) -> None:
        self._project_id = project_id

    async def hydrate(self, dest: Path) -> int:
        return write_files(dest, default_scaffold(self._project_id))


class HydrationChain:
    """Tries each strategy in order until one writes at least one file."""

    def __init__(self, strategies: Sequence[HydrationStrategy]) -> None:
        self._strategies = list(strategies)

    @property
    def strategy_names(self) -> list[str]:
        return [strategy.name for strategy in self._strategies]

    async def run(self, dest: Path) -> HydrationReport:
        report = HydrationReport()
        dest.mkdir(parents=True, exist_ok=True)
        for strategy in self._strategies:
            try:
                written = await strategy.hydrate(dest)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001 - a failing stage falls through to the next
                increment_counter(f"hydration_failures_total.{strategy.name}")
                logger.warning("hydration_strategy_failed strategy=%s error=%s", strategy.name, exc)
                report.outcomes.append(HydrationOutcome(strategy.name, False, error=str(exc) or type(exc).__name__))
                continue
            if written <= 0:
                logger.info("hydration_strategy_empty strategy=%s", strategy.name)
                report.outcomes.append(HydrationOutcome(strategy.name, False, error="empty"))
                continue
            report.outcomes.append(HydrationOutcome(strategy.name, True, files_written=written))
            increment_counter(f"hydration_success_total.{strategy.name}")
            logger.info("hydration_completed strategy=%s files=%s dest=%s", strategy.name, written, dest)
            return report
        raise HydrationError(f"all hydration strategies failed: {self.strategy_names}")


def default_chain(
    project_id: str,
    *,
    client: httpx.AsyncClient,
    snapshot_url: str | None = None,
    storage_url: str | None = None,
    api_url: str | None = None,
    file_service: FileSyncService | None = None,
    policy: RetryPolicy | None = None,
    sleep: Callable[[float], Awaitable[None]] | None = None,
) -> HydrationChain:
    return HydrationChain(
        [
            SnapshotStrategy(snapshot_url, client=client, policy=policy, sleep=sleep),
            StorageStrategy(storage_url, project_id, client=client, policy=policy, sleep=sleep),
            VersionedApiStrategy(project_id, api_url=api_url, client=client, file_service=file_service),
            ScaffoldStrategy(project_id),
        ]
    )
