from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Sequence

from previewhub.core.errors import ChannelAccessDeniedError, ChannelClosedError
from previewhub.domain.events import (
    EVENT_FILE_BULK_UPDATE,
    EVENT_FILE_DELETE,
    EVENT_FILE_UPDATE,
    BulkFileEntry,
    FileBulkUpdatePayload,
    FileDeletePayload,
    FileUpdatePayload,
    project_files_channel,
    utc_timestamp,
)
from previewhub.services.realtime.access import Subject
from previewhub.services.realtime.channel import PublishResult, RealtimeChannel
from previewhub.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

_BULK_KEY = "__bulk__"


class FileEventNotifier:
    """Publishes accepted file writes on the project's file channel.

    Publishes are limited per (channel, path). A write that lands inside the
    window is not lost: the latest payload for that path is parked and a
    single trailing task re-publishes it once the window has passed.
    """

    def __init__(
        self,
        channel: RealtimeChannel,
        *,
        sender_id: str = "file-sync",
        trailing_delay_s: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self._channel = channel
        self._sender_id = sender_id
        self._subject = Subject(subject_id=sender_id, is_service=True)
        self._trailing_delay_s = trailing_delay_s
        self._sleep = sleep or asyncio.sleep
        self._latest: dict[tuple[str, str], tuple[str, dict[str, Any]]] = {}
        self._pending: dict[tuple[str, str], asyncio.Task] = {}

    @property
    def pending_keys(self) -> list[tuple[str, str]]:
        return list(self._pending)

    async def file_updated(self, project_id: str, path: str, content: str) -> PublishResult | None:
        payload: FileUpdatePayload = {"filePath": path, "content": content, "timestamp": utc_timestamp()}
        return await self._publish(project_id, path, EVENT_FILE_UPDATE, payload)

    async def file_deleted(self, project_id: str, path: str) -> PublishResult | None:
        payload: FileDeletePayload = {"filePath": path, "timestamp": utc_timestamp()}
        return await self._publish(project_id, path, EVENT_FILE_DELETE, payload)

    async def files_bulk_updated(
        self, project_id: str, entries: Sequence[tuple[str, str, str | None]]
    ) -> PublishResult | None:
        files: list[BulkFileEntry] = []
        for path, action, content in entries:
            entry: BulkFileEntry = {"filePath": path, "action": action}
            if action != "delete" and content is not None:
                entry["content"] = content
            files.append(entry)
        payload: FileBulkUpdatePayload = {"files": files, "timestamp": utc_timestamp()}
        return await self._publish(project_id, _BULK_KEY, EVENT_FILE_BULK_UPDATE, payload)

    async def _send(self, channel_name: str, key_hint: str, event_type: str, payload: dict[str, Any]) -> PublishResult | None:
        try:
            return await self._channel.publish(
                channel_name,
                event_type,
                payload,
                sender_id=self._sender_id,
                key_hint=key_hint,
                subject=self._subject,
            )
        except (ChannelClosedError, ChannelAccessDeniedError) as exc:
            # The write is already committed; sandboxes resync from the versioned API.
            increment_counter("file_event_publish_failed_total")
            logger.warning("file_event_publish_failed channel=%s event=%s error=%s", channel_name, event_type, exc)
            return None

    async def _publish(
        self, project_id: str, key_hint: str, event_type: str, payload: dict[str, Any]
    ) -> PublishResult | None:
        channel_name = project_files_channel(project_id)
        key = (channel_name, key_hint)
        if key in self._pending:
            # A trailing publish is already armed; it will carry this payload.
            self._park(key, event_type, payload)
            return PublishResult(broadcast_id=None, rate_limited=True)
        result = await self._send(channel_name, key_hint, event_type, payload)
        if result is not None and result.rate_limited:
            self._park(key, event_type, payload)
            delay = result.retry_after or self._trailing_delay_s
            self._pending[key] = asyncio.create_task(self._flush_later(key, delay))
            increment_counter("file_event_deferred_total")
        return result

    def _park(self, key: tuple[str, str], event_type: str, payload: dict[str, Any]) -> None:
        parked = self._latest.get(key)
        if event_type == EVENT_FILE_BULK_UPDATE and parked is not None and parked[0] == event_type:
            # Bulk batches share one key; merge them so no path is lost, later entries winning.
            merged = {entry["filePath"]: entry for entry in parked[1]["files"]}
            merged.update({entry["filePath"]: entry for entry in payload["files"]})
            payload = {"files": list(merged.values()), "timestamp": payload["timestamp"]}
        self._latest[key] = (event_type, payload)

    async def _flush_later(self, key: tuple[str, str], delay: float) -> None:
        channel_name, key_hint = key
        try:
            while key in self._latest:
                await self._sleep(max(delay, 0.0))
                event_type, payload = self._latest.pop(key)
                result = await self._send(channel_name, key_hint, event_type, payload)
                if result is not None and result.rate_limited:
                    newer = self._latest.pop(key, None)
                    self._park(key, event_type, payload)
                    if newer is not None:
                        self._park(key, *newer)
                    delay = result.retry_after or self._trailing_delay_s
                else:
                    delay = self._trailing_delay_s
        finally:
            self._pending.pop(key, None)

    async def flush(self) -> None:
        # Wait for every parked payload to be published.
        while self._pending:
            await asyncio.gather(*list(self._pending.values()), return_exceptions=True)

    async def aclose(self) -> None:
        tasks = list(self._pending.values())
        self._pending.clear()
        self._latest.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
