from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import hashlib
import logging
import posixpath
from typing import Any, Callable, Sequence

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from previewhub.core.errors import (
    BulkConflictError,
    ConcurrencyConflictError,
    FileRecordNotFoundError,
    InvalidPathError,
    ResourceValidationError,
)
from previewhub.domain.models import FileRevision, ProjectFile
from previewhub.persistence.db import SessionFactory
from previewhub.persistence.repos import files as files_repo
from previewhub.services.file_events import FileEventNotifier
from previewhub.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

ACTION_CREATE = "create"
ACTION_UPDATE = "update"
ACTION_DELETE = "delete"

BULK_APPLIED = "applied"
BULK_CONFLICT = "conflict"
BULK_ROLLED_BACK = "rolled_back"
BULK_NOT_APPLIED = "not_applied"

_FILE_TYPES = {
    ".ts": "typescript",
    ".tsx": "typescript",
    ".js": "javascript",
    ".jsx": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".json": "json",
    ".css": "css",
    ".scss": "css",
    ".html": "html",
    ".md": "markdown",
    ".vue": "vue",
    ".svelte": "svelte",
}


@dataclass(frozen=True)
class FileWriteResult:
    path: str
    version: int
    content_hash: str | None
    action: str

    def to_public(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "path": self.path,
            "version": self.version,
            "contentHash": self.content_hash,
        }
        if self.action == ACTION_DELETE:
            payload["content"] = None
        return payload


@dataclass(frozen=True)
class FileView:
    path: str
    content: str | None
    content_hash: str | None
    file_type: str
    version: int
    updated_at: datetime

    @property
    def deleted(self) -> bool:
        return self.content is None

    def to_public(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "content": self.content,
            "contentHash": self.content_hash,
            "fileType": self.file_type,
            "version": self.version,
            "deleted": self.deleted,
            "updatedAt": self.updated_at.isoformat(),
        }


@dataclass(frozen=True)
class RevisionView:
    version: int
    action: str
    content: str | None
    content_hash: str | None
    created_at: datetime

    def to_public(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "action": self.action,
            "content": self.content,
            "contentHash": self.content_hash,
            "createdAt": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class BulkFileWrite:
    path: str
    content: str | None = None
    file_type: str | None = None
    expected_version: int | None = None
    action: str = ACTION_UPDATE


@dataclass(frozen=True)
class BulkOutcome:
    path: str
    status: str
    version: int | None = None
    expected_version: int | None = None
    current_version: int | None = None

    def to_public(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "status": self.status,
            "version": self.version,
            "expectedVersion": self.expected_version,
            "currentVersion": self.current_version,
        }


@dataclass(frozen=True)
class BulkResult:
    processed: int
    upserted: int
    deleted: int
    results: list[BulkOutcome]

    def to_public(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "upserted": self.upserted,
            "deleted": self.deleted,
            "results": [item.to_public() for item in self.results],
        }


def normalize_path(path: str | None) -> str:
    # Project paths are POSIX, relative and confined to the project root.
    if path is None or not path.strip():
        raise InvalidPathError("file path must not be empty")
    if "\x00" in path:
        raise InvalidPathError("file path must not contain NUL bytes")
    raw = path.strip().replace("\\", "/")
    if raw.startswith("/") or (len(raw) > 1 and raw[1] == ":"):
        raise InvalidPathError(f"file path must be relative: {path}")
    parts: list[str] = []
    for part in raw.split("/"):
        if part in ("", "."):
            continue
        if part == "..":
            raise InvalidPathError(f"file path must not contain '..': {path}")
        parts.append(part)
    if not parts:
        raise InvalidPathError(f"file path is empty after normalization: {path}")
    return "/".join(parts)


def hash_content(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def infer_file_type(path: str) -> str:
    _, ext = posixpath.splitext(path)
    return _FILE_TYPES.get(ext.lower(), "text")


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _file_view(row: ProjectFile) -> FileView:
    return FileView(
        path=row.path,
        content=row.content,
        content_hash=row.content_hash,
        file_type=row.file_type,
        version=row.version,
        updated_at=_as_utc(row.updated_at),
    )


def _revision_view(row: FileRevision) -> RevisionView:
    return RevisionView(
        version=row.version,
        action=row.action,
        content=row.content,
        content_hash=row.content_hash,
        created_at=_as_utc(row.created_at),
    )


class FileSyncService:
    """Authoritative versioned file store for preview projects.

    Every accepted write bumps the record version by exactly one through a
    conditional statement and appends an immutable revision row. Writers
    that present a stale version get `ConcurrencyConflictError` carrying the
    version currently stored; nothing is merged on their behalf.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        notifier: FileEventNotifier | None = None,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._notifier = notifier
        self._now = time_provider or (lambda: datetime.now(timezone.utc))

    async def _conflict(
        self, session: AsyncSession, project_id: str, path: str, expected_version: int | None
    ) -> ConcurrencyConflictError:
        state = await files_repo.current_state(session, project_id, path)
        increment_counter("file_version_conflicts_total")
        logger.info(
            "file_version_conflict project_id=%s path=%s expected=%s current=%s",
            project_id,
            path,
            expected_version,
            state[0] if state else None,
        )
        return ConcurrencyConflictError(
            path, expected_version=expected_version, current_version=state[0] if state else None
        )

    async def _write_content(
        self,
        session: AsyncSession,
        *,
        project_id: str,
        path: str,
        content: str,
        file_type: str | None,
        expected_version: int | None,
        adopt_observed: bool,
        now: datetime,
    ) -> FileWriteResult:
        content_hash = hash_content(content)
        resolved_type = file_type or infer_file_type(path)
        state = await files_repo.current_state(session, project_id, path)
        if state is None:
            if expected_version is not None:
                raise await self._conflict(session, project_id, path, expected_version)
            await files_repo.insert_first_version(
                session,
                project_id=project_id,
                path=path,
                content=content,
                content_hash=content_hash,
                file_type=resolved_type,
                now=now,
            )
            version, action = 1, ACTION_CREATE
        else:
            current, tombstoned = state
            if expected_version is None:
                # Creating over a tombstone, or a bulk entry adopting the observed version.
                if not (tombstoned or adopt_observed):
                    raise await self._conflict(session, project_id, path, expected_version)
                base = current
            elif expected_version != current:
                raise await self._conflict(session, project_id, path, expected_version)
            else:
                base = expected_version
            swapped = await files_repo.compare_and_swap(
                session,
                project_id=project_id,
                path=path,
                expected_version=base,
                content=content,
                content_hash=content_hash,
                file_type=resolved_type,
                now=now,
            )
            if not swapped:
                raise await self._conflict(session, project_id, path, expected_version)
            version = base + 1
            action = ACTION_CREATE if tombstoned else ACTION_UPDATE
        await files_repo.append_revision(
            session,
            project_id=project_id,
            path=path,
            version=version,
            action=action,
            content=content,
            content_hash=content_hash,
            now=now,
        )
        return FileWriteResult(path=path, version=version, content_hash=content_hash, action=action)

    async def _write_tombstone(
        self,
        session: AsyncSession,
        *,
        project_id: str,
        path: str,
        expected_version: int | None,
        now: datetime,
    ) -> FileWriteResult | None:
        state = await files_repo.current_state(session, project_id, path)
        if state is None:
            raise FileRecordNotFoundError(f"file {path} not found in project {project_id}")
        current, tombstoned = state
        if expected_version is not None and expected_version != current:
            raise await self._conflict(session, project_id, path, expected_version)
        if tombstoned:
            return None
        swapped = await files_repo.compare_and_swap(
            session,
            project_id=project_id,
            path=path,
            expected_version=current,
            content=None,
            content_hash=None,
            file_type=None,
            now=now,
        )
        if not swapped:
            raise await self._conflict(session, project_id, path, expected_version)
        await files_repo.append_revision(
            session,
            project_id=project_id,
            path=path,
            version=current + 1,
            action=ACTION_DELETE,
            content=None,
            content_hash=None,
            now=now,
        )
        return FileWriteResult(path=path, version=current + 1, content_hash=None, action=ACTION_DELETE)

    async def upsert(
        self,
        project_id: str,
        path: str,
        content: str,
        file_type: str | None = None,
        expected_version: int | None = None,
    ) -> FileWriteResult:
        path = normalize_path(path)
        async with self._session_factory() as session:
            try:
                result = await self._write_content(
                    session,
                    project_id=project_id,
                    path=path,
                    content=content,
                    file_type=file_type,
                    expected_version=expected_version,
                    adopt_observed=False,
                    now=self._now(),
                )
                await session.commit()
            except IntegrityError as exc:
                # A concurrent create won the primary key.
                await session.rollback()
                raise await self._conflict(session, project_id, path, expected_version) from exc
        increment_counter("file_writes_total")
        logger.info("file_upserted project_id=%s path=%s version=%s", project_id, path, result.version)
        if self._notifier is not None:
            await self._notifier.file_updated(project_id, path, content)
        return result

    async def delete(
        self, project_id: str, path: str, expected_version: int | None = None
    ) -> FileWriteResult:
        path = normalize_path(path)
        async with self._session_factory() as session:
            result = await self._write_tombstone(
                session,
                project_id=project_id,
                path=path,
                expected_version=expected_version,
                now=self._now(),
            )
            await session.commit()
        if result is None:
            state = await self.get(project_id, path)
            logger.info("file_delete_noop project_id=%s path=%s", project_id, path)
            return FileWriteResult(path=path, version=state.version, content_hash=None, action=ACTION_DELETE)
        increment_counter("file_writes_total")
        logger.info("file_deleted project_id=%s path=%s version=%s", project_id, path, result.version)
        if self._notifier is not None:
            await self._notifier.file_deleted(project_id, path)
        return result

    async def get(self, project_id: str, path: str, *, include_tombstones: bool = True) -> FileView | None:
        path = normalize_path(path)
        async with self._session_factory() as session:
            row = await files_repo.get_file(session, project_id, path)
            if row is None:
                return None
            view = _file_view(row)
        if view.deleted and not include_tombstones:
            return None
        return view

    async def list_current(self, project_id: str) -> list[FileView]:
        async with self._session_factory() as session:
            rows = await files_repo.list_current(session, project_id)
            return [_file_view(row) for row in rows]

    async def history(self, project_id: str, path: str) -> list[RevisionView]:
        path = normalize_path(path)
        async with self._session_factory() as session:
            rows = await files_repo.list_revisions(session, project_id, path)
            return [_revision_view(row) for row in rows]

    async def bulk_upsert(self, project_id: str, files: Sequence[BulkFileWrite]) -> BulkResult:
        entries = [
            BulkFileWrite(
                path=normalize_path(item.path),
                content=item.content,
                file_type=item.file_type,
                expected_version=item.expected_version,
                action=item.action,
            )
            for item in files
        ]
        for item in entries:
            if item.action not in (ACTION_UPDATE, ACTION_DELETE):
                raise ResourceValidationError(f"unsupported bulk action {item.action!r} for {item.path}")
            if item.action == ACTION_UPDATE and item.content is None:
                raise ResourceValidationError(f"bulk update for {item.path} carries no content")

        now = self._now()
        applied: list[tuple[BulkFileWrite, FileWriteResult | None]] = []
        async with self._session_factory() as session:
            for index, item in enumerate(entries):
                try:
                    if item.action == ACTION_DELETE:
                        result = await self._write_tombstone(
                            session,
                            project_id=project_id,
                            path=item.path,
                            expected_version=item.expected_version,
                            now=now,
                        )
                    else:
                        result = await self._write_content(
                            session,
                            project_id=project_id,
                            path=item.path,
                            content=item.content or "",
                            file_type=item.file_type,
                            expected_version=item.expected_version,
                            adopt_observed=True,
                            now=now,
                        )
                except (ConcurrencyConflictError, IntegrityError) as exc:
                    await session.rollback()
                    current = exc.current_version if isinstance(exc, ConcurrencyConflictError) else None
                    outcomes = [BulkOutcome(done.path, BULK_ROLLED_BACK) for done, _ in applied]
                    outcomes.append(
                        BulkOutcome(
                            item.path,
                            BULK_CONFLICT,
                            expected_version=item.expected_version,
                            current_version=current,
                        )
                    )
                    outcomes.extend(BulkOutcome(rest.path, BULK_NOT_APPLIED) for rest in entries[index + 1 :])
                    increment_counter("file_bulk_conflicts_total")
                    logger.info(
                        "file_bulk_rolled_back project_id=%s path=%s entries=%s",
                        project_id,
                        item.path,
                        len(entries),
                    )
                    raise BulkConflictError(outcomes) from exc
                applied.append((item, result))
            await session.commit()

        outcomes: list[BulkOutcome] = []
        upserted = deleted = 0
        for item, result in applied:
            if result is None:
                outcomes.append(BulkOutcome(item.path, BULK_APPLIED))
                continue
            if result.action == ACTION_DELETE:
                deleted += 1
            else:
                upserted += 1
            outcomes.append(BulkOutcome(item.path, BULK_APPLIED, version=result.version))
        increment_counter("file_writes_total", upserted + deleted)
        logger.info(
            "file_bulk_applied project_id=%s processed=%s upserted=%s deleted=%s",
            project_id,
            len(entries),
            upserted,
            deleted,
        )
        if self._notifier is not None and entries:
            await self._notifier.files_bulk_updated(
                project_id,
                [(item.path, item.action, item.content) for item, _ in applied],
            )
        return BulkResult(processed=len(entries), upserted=upserted, deleted=deleted, results=outcomes)
