"""Realtime wire payloads and the per-event idempotency contract.

Every event type registered here declares how its idempotency key is derived.
Subscriptions drop a message whose key they handled recently, and every
handler must stay safe to apply twice: file writes overwrite, tombstones
delete-if-present, reloads are advisory.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import hashlib
import json
import time
from typing import Any, Callable, Literal, NotRequired, TypedDict
from uuid import uuid4


EVENT_FILE_UPDATE = "file:update"
EVENT_FILE_DELETE = "file:delete"
EVENT_FILE_BULK_UPDATE = "file:bulk-update"
EVENT_FILE_ERROR = "file:error"
EVENT_HOT_RELOAD = "hot_reload"
EVENT_SESSION_STATUS = "session:status"

PRIORITIES = ("low", "normal", "high", "urgent")


class FileUpdatePayload(TypedDict):
    filePath: str
    content: str
    timestamp: str


class FileDeletePayload(TypedDict):
    filePath: str
    timestamp: str


class BulkFileEntry(TypedDict):
    filePath: str
    action: Literal["update", "delete"]
    content: NotRequired[str]


class FileBulkUpdatePayload(TypedDict):
    files: list[BulkFileEntry]
    timestamp: str


class HotReloadPayload(TypedDict):
    batchId: str
    projectId: str
    changedFiles: list[str]
    timestamp: str


class SessionStatusPayload(TypedDict):
    sessionId: str
    status: str
    containerUrl: str | None
    timestamp: str


class FileErrorPayload(TypedDict):
    filePath: str
    error: str
    timestamp: str


def utc_timestamp(now: datetime | None = None) -> str:
    return (now or datetime.now(timezone.utc)).isoformat()


def _digest(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:16]


def _file_update_key(payload: dict[str, Any]) -> str:
    return f"{payload['filePath']}:{payload['timestamp']}:{_digest(payload.get('content', ''))}"


def _file_delete_key(payload: dict[str, Any]) -> str:
    return f"{payload['filePath']}:{payload['timestamp']}"


def _bulk_key(payload: dict[str, Any]) -> str:
    entries = json.dumps(payload.get("files", []), sort_keys=True)
    return f"{payload['timestamp']}:{_digest(entries)}"


def _hot_reload_key(payload: dict[str, Any]) -> str:
    if payload.get("batchId"):
        return str(payload["batchId"])
    changed = ",".join(sorted(payload.get("changedFiles", [])))
    return f"{payload['projectId']}:{payload['timestamp']}:{_digest(changed)}"


def _session_status_key(payload: dict[str, Any]) -> str:
    return f"{payload['sessionId']}:{payload['status']}"


def _file_error_key(payload: dict[str, Any]) -> str:
    return f"{payload['filePath']}:{payload['timestamp']}"


IDEMPOTENCY_KEYS: dict[str, Callable[[dict[str, Any]], str]] = {
    EVENT_FILE_UPDATE: _file_update_key,
    EVENT_FILE_DELETE: _file_delete_key,
    EVENT_FILE_BULK_UPDATE: _bulk_key,
    EVENT_HOT_RELOAD: _hot_reload_key,
    EVENT_SESSION_STATUS: _session_status_key,
    EVENT_FILE_ERROR: _file_error_key,
}


def idempotency_key_for(event_type: str, payload: dict[str, Any]) -> str | None:
    # Unregistered event types (e.g. health pings) are delivered without dedupe.
    builder = IDEMPOTENCY_KEYS.get(event_type)
    if builder is None:
        return None
    try:
        return f"{event_type}:{builder(payload)}"
    except KeyError:
        return None


@dataclass(frozen=True)
class BroadcastMessage:
    channel_name: str
    event_type: str
    payload: dict[str, Any]
    sender_id: str | None = None
    priority: str = "normal"
    expires_at: float | None = None
    idempotency_key: str | None = None
    id: str = field(default_factory=lambda: str(uuid4()))
    created_at: float = field(default_factory=time.time)

    def is_expired(self, now: float | None = None) -> bool:
        if self.expires_at is None:
            return False
        return (now if now is not None else time.time()) >= self.expires_at

    def to_wire(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "channel": self.channel_name,
            "event": self.event_type,
            "payload": self.payload,
            "senderId": self.sender_id,
            "priority": self.priority,
            "expiresAt": self.expires_at,
            "idempotencyKey": self.idempotency_key,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> "BroadcastMessage":
        return cls(
            id=str(data["id"]),
            channel_name=str(data["channel"]),
            event_type=str(data["event"]),
            payload=dict(data.get("payload") or {}),
            sender_id=data.get("senderId"),
            priority=str(data.get("priority") or "normal"),
            expires_at=data.get("expiresAt"),
            idempotency_key=data.get("idempotencyKey"),
            created_at=float(data.get("createdAt") or time.time()),
        )


def build_message(
    channel_name: str,
    event_type: str,
    payload: dict[str, Any],
    *,
    sender_id: str | None = None,
    priority: str = "normal",
    ttl_s: float | None = None,
    now: float | None = None,
) -> BroadcastMessage:
    if priority not in PRIORITIES:
        raise ValueError(f"unknown priority: {priority}")
    created_at = now if now is not None else time.time()
    return BroadcastMessage(
        channel_name=channel_name,
        event_type=event_type,
        payload=payload,
        sender_id=sender_id,
        priority=priority,
        expires_at=created_at + ttl_s if ttl_s is not None else None,
        idempotency_key=idempotency_key_for(event_type, payload),
        created_at=created_at,
    )


def project_files_channel(project_id: str) -> str:
    return f"project:{project_id}:files"


def project_preview_channel(project_id: str) -> str:
    return f"project:{project_id}:preview"


def session_channel(session_id: str) -> str:
    return f"session:{session_id}"
