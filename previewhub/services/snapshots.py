from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import io
import json
import logging
from pathlib import Path
import tarfile
from typing import Iterable

from previewhub.core.errors import HydrationError, InvalidPathError
from previewhub.services.files import BulkFileWrite, BulkResult, FileSyncService, hash_content, normalize_path
from previewhub.services.workspace import write_file


logger = logging.getLogger(__name__)

SNAPSHOT_MARKER = ".previewhub-snapshot.json"
SNAPSHOT_FORMAT_VERSION = 1


@dataclass(frozen=True)
class SnapshotManifest:
    project_id: str
    file_count: int
    hashes: dict[str, str]
    created_at: str
    format_version: int = SNAPSHOT_FORMAT_VERSION

    def to_json(self) -> bytes:
        return json.dumps(
            {
                "projectId": self.project_id,
                "fileCount": self.file_count,
                "hashes": self.hashes,
                "createdAt": self.created_at,
                "formatVersion": self.format_version,
            },
            sort_keys=True,
        ).encode("utf-8")

    @classmethod
    def from_json(cls, raw: bytes) -> "SnapshotManifest":
        try:
            data = json.loads(raw.decode("utf-8"))
            return cls(
                project_id=str(data["projectId"]),
                file_count=int(data["fileCount"]),
                hashes={str(k): str(v) for k, v in dict(data["hashes"]).items()},
                created_at=str(data.get("createdAt", "")),
                format_version=int(data.get("formatVersion", SNAPSHOT_FORMAT_VERSION)),
            )
        except (ValueError, KeyError, TypeError) as exc:
            raise HydrationError(f"snapshot marker is malformed: {exc}") from exc


def _add_member(archive: tarfile.TarFile, name: str, data: bytes, mtime: float) -> None:
    info = tarfile.TarInfo(name=name)
    info.size = len(data)
    info.mtime = int(mtime)
    info.mode = 0o644
    archive.addfile(info, io.BytesIO(data))


def build_snapshot(project_id: str, files: Iterable[tuple[str, str]], *, now: datetime | None = None) -> bytes:
    moment = now or datetime.now(timezone.utc)
    entries = sorted(files)
    manifest = SnapshotManifest(
        project_id=project_id,
        file_count=len(entries),
        hashes={path: hash_content(content) for path, content in entries},
        created_at=moment.isoformat(),
    )
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as archive:
        _add_member(archive, SNAPSHOT_MARKER, manifest.to_json(), moment.timestamp())
        for path, content in entries:
            _add_member(archive, path, content.encode("utf-8"), moment.timestamp())
    return buffer.getvalue()


def read_snapshot(archive: bytes) -> tuple[SnapshotManifest, dict[str, str]]:
    # Validates the marker, member paths and content hashes without touching disk.
    files: dict[str, str] = {}
    marker: bytes | None = None
    try:
        with tarfile.open(fileobj=io.BytesIO(archive), mode="r:*") as tar:
            for member in tar.getmembers():
                if member.isdir():
                    continue
                if not member.isfile():
                    raise HydrationError(f"snapshot member {member.name} is not a regular file")
                try:
                    name = normalize_path(member.name)
                except InvalidPathError as exc:
                    raise HydrationError(f"snapshot member escapes the project root: {member.name}") from exc
                handle = tar.extractfile(member)
                data = handle.read() if handle is not None else b""
                if name == SNAPSHOT_MARKER:
                    marker = data
                    continue
                files[name] = data.decode("utf-8")
    except (tarfile.TarError, EOFError, OSError) as exc:
        raise HydrationError(f"snapshot archive is unreadable: {exc}") from exc
    except UnicodeDecodeError as exc:
        raise HydrationError("snapshot contains non UTF-8 content") from exc
    if marker is None:
        raise HydrationError(f"snapshot is missing its {SNAPSHOT_MARKER} marker")
    manifest = SnapshotManifest.from_json(marker)
    for path, content in files.items():
        expected = manifest.hashes.get(path)
        if expected is not None and expected != hash_content(content):
            raise HydrationError(f"snapshot content hash mismatch for {path}")
    return manifest, files


def extract_snapshot(archive: bytes, dest: Path) -> list[str]:
    manifest, files = read_snapshot(archive)
    root = dest.resolve()
    root.mkdir(parents=True, exist_ok=True)
    written: list[str] = []
    for path, content in sorted(files.items()):
        try:
            write_file(root, path, content)
        except InvalidPathError as exc:
            raise HydrationError(f"snapshot member escapes the destination: {path}") from exc
        written.append(path)
    (root / SNAPSHOT_MARKER).write_bytes(manifest.to_json())
    logger.info("snapshot_extracted project_id=%s files=%s dest=%s", manifest.project_id, len(written), root)
    return written


async def export_snapshot(file_service: FileSyncService, project_id: str) -> bytes:
    current = await file_service.list_current(project_id)
    archive = build_snapshot(project_id, [(item.path, item.content or "") for item in current])
    logger.info("snapshot_exported project_id=%s files=%s bytes=%s", project_id, len(current), len(archive))
    return archive


async def import_snapshot(file_service: FileSyncService, project_id: str, archive: bytes) -> BulkResult:
    manifest, files = read_snapshot(archive)
    if manifest.project_id != project_id:
        logger.info("snapshot_import_cross_project source=%s target=%s", manifest.project_id, project_id)
    return await file_service.bulk_upsert(
        project_id,
        [BulkFileWrite(path=path, content=content) for path, content in sorted(files.items())],
    )
