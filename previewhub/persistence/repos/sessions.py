from __future__ import annotations

from datetime import datetime
from typing import Any, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from previewhub.domain.models import PreviewSession
from previewhub.domain.state import SessionStatus, ensure_transition


async def get_session(session: AsyncSession, session_id: str) -> PreviewSession | None:
    result = await session.execute(select(PreviewSession).where(PreviewSession.id == session_id))
    return result.scalar_one_or_none()


async def insert_pending(
    session: AsyncSession,
    *,
    session_id: str,
    project_id: str,
    user_id: str,
    resource_tier: str,
    device_type: str | None,
    container_name: str | None,
    resource_limits: dict[str, Any] | None,
    created_at: datetime,
    expires_at: datetime,
) -> PreviewSession:
    row = PreviewSession(
        id=session_id,
        project_id=project_id,
        user_id=user_id,
        status=SessionStatus.PENDING.value,
        resource_tier=resource_tier,
        device_type=device_type,
        container_name=container_name,
        resource_limits=resource_limits,
        created_at=created_at,
        updated_at=created_at,
        expires_at=expires_at,
    )
    session.add(row)
    await session.flush()
    return row


async def transition(
    session: AsyncSession,
    session_id: str,
    *,
    expected: SessionStatus,
    target: SessionStatus,
    now: datetime,
    values: dict[str, Any] | None = None,
) -> bool:
    # Conditional update: only the caller that observed `expected` wins the transition.
    ensure_transition(expected, target)
    stmt = (
        update(PreviewSession)
        .where(PreviewSession.id == session_id, PreviewSession.status == expected.value)
        .values(status=target.value, updated_at=now, **(values or {}))
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return (result.rowcount or 0) == 1


async def claim_stale_terminating(
    session: AsyncSession, session_id: str, *, stale_before: datetime, now: datetime
) -> bool:
    # Renews the lease of an abandoned teardown; only one caller can win it.
    stmt = (
        update(PreviewSession)
        .where(
            PreviewSession.id == session_id,
            PreviewSession.status == SessionStatus.TERMINATING.value,
            PreviewSession.updated_at < stale_before,
        )
        .values(updated_at=now)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return (result.rowcount or 0) == 1


async def list_expired(
    session: AsyncSession, *, now: datetime, limit: int
) -> Sequence[PreviewSession]:
    result = await session.execute(
        select(PreviewSession)
        .where(
            PreviewSession.expires_at < now,
            PreviewSession.status != SessionStatus.TERMINATED.value,
        )
        .order_by(PreviewSession.expires_at.asc())
        .limit(limit)
    )
    return result.scalars().all()


async def count_live_for_user(session: AsyncSession, user_id: str) -> int:
    result = await session.execute(
        select(func.count())
        .select_from(PreviewSession)
        .where(
            PreviewSession.user_id == user_id,
            PreviewSession.status.in_([SessionStatus.PENDING.value, SessionStatus.ACTIVE.value]),
        )
    )
    return int(result.scalar_one())


async def referenced_container_ids(session: AsyncSession) -> set[str]:
    # Instances still owned by a session that has not reached a terminal state.
    result = await session.execute(
        select(PreviewSession.container_id, PreviewSession.last_container_id).where(
            PreviewSession.status != SessionStatus.TERMINATED.value
        )
    )
    ids: set[str] = set()
    for container_id, last_container_id in result.all():
        if container_id:
            ids.add(container_id)
        if last_container_id:
            ids.add(last_container_id)
    return ids


async def status_counts(session: AsyncSession) -> dict[str, int]:
    result = await session.execute(
        select(PreviewSession.status, func.count()).group_by(PreviewSession.status)
    )
    return {status: int(count) for status, count in result.all()}


async def list_by_status(
    session: AsyncSession, statuses: Sequence[str], *, limit: int = 1000
) -> Sequence[PreviewSession]:
    result = await session.execute(
        select(PreviewSession)
        .where(PreviewSession.status.in_(list(statuses)))
        .order_by(PreviewSession.created_at.asc())
        .limit(limit)
    )
    return result.scalars().all()


async def list_for_project(session: AsyncSession, project_id: str) -> Sequence[PreviewSession]:
    result = await session.execute(
        select(PreviewSession)
        .where(PreviewSession.project_id == project_id)
        .order_by(PreviewSession.created_at.desc())
    )
    return result.scalars().all()
