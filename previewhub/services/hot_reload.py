from __future__ import annotations

import asyncio
from dataclasses import dataclass
import hashlib
import inspect
import logging
from pathlib import Path
import posixpath
from typing import Awaitable, Callable, Mapping
from uuid import uuid4

from previewhub.core.errors import ChannelAccessDeniedError, ChannelClosedError
from previewhub.domain.events import EVENT_HOT_RELOAD, HotReloadPayload, project_preview_channel, utc_timestamp
from previewhub.services.realtime.access import Subject
from previewhub.services.realtime.channel import RealtimeChannel
from previewhub.services.telemetry import increment_counter
from previewhub.services.workspace import read_files


logger = logging.getLogger(__name__)

SOURCE_EXTENSIONS = frozenset({".ts", ".tsx", ".js", ".jsx", ".css", ".html", ".json", ".vue", ".svelte"})

# Changes to these files need a dependency reinstall or dev-server restart, not just HMR.
REBUILD_TRIGGERS = frozenset(
    {
        "package.json",
        "package-lock.json",
        "yarn.lock",
        "tsconfig.json",
        "vite.config.js",
        "vite.config.ts",
        "next.config.js",
        "next.config.ts",
        "webpack.config.js",
        "webpack.config.ts",
        ".env",
    }
)


@dataclass(frozen=True)
class ReloadBatch:
    batch_id: str
    project_id: str
    changed_files: list[str]
    requires_rebuild: bool
    timestamp: str

    def payload(self) -> HotReloadPayload:
        return {
            "batchId": self.batch_id,
            "projectId": self.project_id,
            "changedFiles": self.changed_files,
            "timestamp": self.timestamp,
        }


RebuildCallback = Callable[[ReloadBatch], Awaitable[None] | None]


def is_relevant(path: str) -> bool:
    name = posixpath.basename(path)
    if name in REBUILD_TRIGGERS:
        return True
    _, ext = posixpath.splitext(name)
    return ext.lower() in SOURCE_EXTENSIONS


def requires_rebuild(path: str) -> bool:
    return posixpath.basename(path) in REBUILD_TRIGGERS


def _digest(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


class HotReloadCoordinator:
    """Coalesces local file changes into one reload per quiet period.

    Changes are detected by content hash, so rewriting a file with the same
    bytes is ignored. Each relevant change re-arms the debounce timer; when it
    fires, the accumulated paths go out as a single `hot_reload` broadcast and
    one rebuild callback.
    """

    def __init__(
        self,
        project_id: str,
        channel: RealtimeChannel | None = None,
        *,
        rebuild: RebuildCallback | None = None,
        debounce_s: float = 1.0,
        sender_id: str = "hot-reload",
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self._project_id = project_id
        self._channel = channel
        self._rebuild = rebuild
        self._debounce_s = debounce_s
        self._sender_id = sender_id
        self._subject = Subject(subject_id=sender_id, is_service=True)
        self._sleep = sleep or asyncio.sleep
        self._hashes: dict[str, str] = {}
        self._changed: dict[str, None] = {}
        self._timer: asyncio.Task | None = None
        self.batches: list[ReloadBatch] = []

    @property
    def pending(self) -> list[str]:
        return list(self._changed)

    def prime(self, files: Mapping[str, str]) -> None:
        # Record a baseline without treating it as a change.
        self._hashes = {path: _digest(content) for path, content in files.items()}

    def record_change(self, path: str, content: str | None) -> bool:
        # content=None records a deletion.
        digest = _digest(content) if content is not None else None
        if self._hashes.get(path) == digest:
            return False
        if digest is None:
            self._hashes.pop(path, None)
        else:
            self._hashes[path] = digest
        if not is_relevant(path):
            logger.debug("hot_reload_ignored path=%s", path)
            return False
        self._changed[path] = None
        self._arm(self._debounce_s)
        return True

    def scan(self, root: Path) -> int:
        # Hash the workspace and record every file that differs from the last scan.
        current = read_files(root)
        changes = 0
        for path, content in current.items():
            if self.record_change(path, content):
                changes += 1
        for path in [known for known in self._hashes if known not in current]:
            if self.record_change(path, None):
                changes += 1
        return changes

    def _arm(self, delay: float) -> None:
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = asyncio.create_task(self._fire_after(delay))

    async def _fire_after(self, delay: float) -> None:
        await self._sleep(delay)
        # Detach so a flush that re-arms does not cancel itself.
        self._timer = None
        await self.flush()

    async def flush(self) -> ReloadBatch | None:
        if not self._changed:
            return None
        changed = list(self._changed)
        self._changed.clear()
        batch = ReloadBatch(
            batch_id=str(uuid4()),
            project_id=self._project_id,
            changed_files=changed,
            requires_rebuild=any(requires_rebuild(path) for path in changed),
            timestamp=utc_timestamp(),
        )
        if self._channel is not None:
            try:
                result = await self._channel.publish(
                    project_preview_channel(self._project_id),
                    EVENT_HOT_RELOAD,
                    batch.payload(),
                    sender_id=self._sender_id,
                    key_hint=EVENT_HOT_RELOAD,
                    subject=self._subject,
                )
            except (ChannelClosedError, ChannelAccessDeniedError) as exc:
                logger.warning("hot_reload_publish_failed project_id=%s error=%s", self._project_id, exc)
            else:
                if result.rate_limited:
                    # Fold the batch back in and try again once the window reopens.
                    for path in changed:
                        self._changed.setdefault(path, None)
                    self._arm(result.retry_after or self._debounce_s)
                    return None
        self.batches.append(batch)
        increment_counter("hot_reload_batches_total")
        logger.info(
            "hot_reload_batch project_id=%s files=%s rebuild=%s",
            self._project_id,
            len(changed),
            batch.requires_rebuild,
        )
        if self._rebuild is not None:
            outcome = self._rebuild(batch)
            if inspect.isawaitable(outcome):
                await outcome
        return batch

    async def aclose(self) -> None:
        timer = self._timer
        self._timer = None
        if timer is not None and not timer.done():
            timer.cancel()
            try:
                await timer
            except asyncio.CancelledError:
                pass
