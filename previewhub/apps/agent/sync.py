from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from previewhub.core.errors import ChannelAccessDeniedError, ChannelClosedError, InvalidPathError
from previewhub.domain.events import (
    EVENT_FILE_BULK_UPDATE,
    EVENT_FILE_DELETE,
    EVENT_FILE_ERROR,
    EVENT_FILE_UPDATE,
    BroadcastMessage,
    FileErrorPayload,
    project_files_channel,
    utc_timestamp,
)
from previewhub.services.hot_reload import HotReloadCoordinator
from previewhub.services.realtime.access import Subject
from previewhub.services.realtime.channel import RealtimeChannel
from previewhub.services.telemetry import increment_counter
from previewhub.services.workspace import remove_file, write_file


logger = logging.getLogger(__name__)


class WorkspaceSync:
    """Applies file broadcasts to the local workspace.

    Writes are last-write-wins and every handler is safe to replay: an update
    overwrites, a delete of a missing file is a no-op. A path that cannot be
    applied is reported back on the files channel as `file:error`.
    """

    def __init__(
        self,
        root: Path,
        project_id: str,
        *,
        coordinator: HotReloadCoordinator | None = None,
        channel: RealtimeChannel | None = None,
        sender_id: str = "preview-agent",
    ) -> None:
        self._root = root
        self._project_id = project_id
        self._coordinator = coordinator
        self._channel = channel
        self._sender_id = sender_id
        self._subject = Subject(subject_id=sender_id, is_service=True)
        self.applied = 0
        self.failed = 0

    async def handle(self, message: BroadcastMessage) -> None:
        payload = message.payload
        if message.event_type == EVENT_FILE_UPDATE:
            await self._apply(payload.get("filePath"), "update", payload.get("content"))
        elif message.event_type == EVENT_FILE_DELETE:
            await self._apply(payload.get("filePath"), "delete", None)
        elif message.event_type == EVENT_FILE_BULK_UPDATE:
            for entry in payload.get("files") or []:
                await self._apply(entry.get("filePath"), entry.get("action", "update"), entry.get("content"))
        else:
            logger.debug("agent_sync_ignored event=%s", message.event_type)

    async def _apply(self, path: Any, action: str, content: Any) -> None:
        if not isinstance(path, str) or not path:
            await self._report(str(path), "missing file path")
            return
        try:
            if action == "delete":
                remove_file(self._root, path)
                change: str | None = None
            else:
                if not isinstance(content, str):
                    raise ValueError("update without content")
                write_file(self._root, path, content)
                change = content
        except (InvalidPathError, OSError, ValueError) as exc:
            await self._report(path, str(exc))
            return
        self.applied += 1
        increment_counter(f"agent_file_{action}_total")
        logger.info("agent_file_applied path=%s action=%s", path, action)
        if self._coordinator is not None:
            self._coordinator.record_change(path, change)

    async def _report(self, path: str, error: str) -> None:
        self.failed += 1
        increment_counter("agent_file_errors_total")
        logger.warning("agent_file_failed path=%s error=%s", path, error)
        if self._channel is None:
            return
        payload: FileErrorPayload = {"filePath": path, "error": error, "timestamp": utc_timestamp()}
        try:
            await self._channel.publish(
                project_files_channel(self._project_id),
                EVENT_FILE_ERROR,
                payload,
                sender_id=self._sender_id,
                key_hint=f"error:{path}",
                subject=self._subject,
            )
        except (ChannelClosedError, ChannelAccessDeniedError) as exc:
            logger.warning("agent_file_error_publish_failed path=%s error=%s", path, exc)
