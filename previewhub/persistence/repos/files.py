from __future__ import annotations

from datetime import datetime
from typing import Sequence

from sqlalchemy import insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from previewhub.domain.models import FileRevision, ProjectFile


async def get_file(session: AsyncSession, project_id: str, path: str) -> ProjectFile | None:
    result = await session.execute(
        select(ProjectFile).where(ProjectFile.project_id == project_id, ProjectFile.path == path)
    )
    return result.scalar_one_or_none()


async def current_state(
    session: AsyncSession, project_id: str, path: str
) -> tuple[int, bool] | None:
    # Column-level read so values are never served from a stale identity map.
    result = await session.execute(
        select(ProjectFile.version, ProjectFile.content_hash).where(
            ProjectFile.project_id == project_id, ProjectFile.path == path
        )
    )
    row = result.first()
    if row is None:
        return None
    version, content_hash = row
    return int(version), content_hash is None


async def insert_first_version(
    session: AsyncSession,
    *,
    project_id: str,
    path: str,
    content: str,
    content_hash: str,
    file_type: str,
    now: datetime,
) -> None:
    # Primary key on (project_id, path) makes a racing create fail with IntegrityError.
    await session.execute(
        insert(ProjectFile).values(
            project_id=project_id,
            path=path,
            content=content,
            content_hash=content_hash,
            file_type=file_type,
            version=1,
            created_at=now,
            updated_at=now,
        )
    )


async def compare_and_swap(
    session: AsyncSession,
    *,
    project_id: str,
    path: str,
    expected_version: int,
    content: str | None,
    content_hash: str | None,
    file_type: str | None,
    now: datetime,
) -> bool:
    # Single conditional statement; zero rows means another writer got there first.
    values: dict = {
        "version": expected_version + 1,
        "content": content,
        "content_hash": content_hash,
        "updated_at": now,
    }
    if file_type is not None:
        values["file_type"] = file_type
    result = await session.execute(
        update(ProjectFile)
        .where(
            ProjectFile.project_id == project_id,
            ProjectFile.path == path,
            ProjectFile.version == expected_version,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) == 1


async def append_revision(
    session: AsyncSession,
    *,
    project_id: str,
    path: str,
    version: int,
    action: str,
    content: str | None,
    content_hash: str | None,
    now: datetime,
) -> None:
    await session.execute(
        insert(FileRevision).values(
            project_id=project_id,
            path=path,
            version=version,
            action=action,
            content=content,
            content_hash=content_hash,
            created_at=now,
        )
    )


async def list_current(session: AsyncSession, project_id: str) -> Sequence[ProjectFile]:
    result = await session.execute(
        select(ProjectFile)
        .where(ProjectFile.project_id == project_id, ProjectFile.content.is_not(None))
        .order_by(ProjectFile.path.asc())
    )
    return result.scalars().all()


async def list_revisions(
    session: AsyncSession, project_id: str, path: str
) -> Sequence[FileRevision]:
    result = await session.execute(
        select(FileRevision)
        .where(FileRevision.project_id == project_id, FileRevision.path == path)
        .order_by(FileRevision.version.asc())
    )
    return result.scalars().all()
