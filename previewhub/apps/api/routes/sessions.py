from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query, Request, Response, status

from previewhub.apps.api.deps import get_session_service, rate_limited
from previewhub.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from previewhub.apps.api.response import CamelModel, SuccessEnvelope, success_response
from previewhub.services.sessions import SessionService


router = APIRouter(
    prefix="/sessions",
    tags=["sessions"],
    responses=DEFAULT_ERROR_RESPONSES,
    dependencies=[Depends(rate_limited)],
)


class CreateSessionRequest(CamelModel):
    project_id: str
    user_id: str
    device_type: str | None = None
    tier: str | None = None


class SessionHandleResponse(CamelModel):
    session_id: str
    container_id: str
    container_url: str
    status: str


class SessionStatusResponse(CamelModel):
    session_id: str
    project_id: str
    user_id: str
    status: str
    container_id: str | None
    container_url: str | None
    resource_tier: str
    device_type: str | None
    error_message: str | None
    created_at: datetime
    expires_at: datetime
    ended_at: datetime | None


class SessionMetricsResponse(CamelModel):
    by_status: dict[str, int]
    total: int
    active: int
    oldest_active_created_at: datetime | None
    newest_active_created_at: datetime | None
    average_duration_seconds: float | None


class CleanupOutcomeResponse(CamelModel):
    session_id: str
    outcome: str
    error: str | None


class CleanupReportResponse(CamelModel):
    total_expired: int
    successful: int
    failed: int
    outcomes: list[CleanupOutcomeResponse]


class OrphanCleanupResponse(CamelModel):
    scanned: int
    destroyed: list[str]
    failed: list[str]


@router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    response_model=SuccessEnvelope[SessionHandleResponse] | SessionHandleResponse,
)
async def create_session(
    payload: CreateSessionRequest,
    request: Request,
    sessions: SessionService = Depends(get_session_service),
) -> dict:
    handle = await sessions.create_session(
        payload.project_id,
        payload.user_id,
        tier_name=payload.tier,
        device_type=payload.device_type,
    )
    return success_response(request=request, data=handle.to_public())


# Declared before /{session_id} so the literal segments win.
@router.get("/metrics", response_model=SuccessEnvelope[SessionMetricsResponse] | SessionMetricsResponse)
async def session_metrics(
    request: Request,
    sessions: SessionService = Depends(get_session_service),
) -> dict:
    metrics = await sessions.session_metrics()
    return success_response(request=request, data=metrics.to_public())


@router.post("/cleanup", response_model=SuccessEnvelope[CleanupReportResponse] | CleanupReportResponse)
async def cleanup_expired(
    request: Request,
    sessions: SessionService = Depends(get_session_service),
) -> dict:
    report = await sessions.cleanup_expired_sessions()
    return success_response(request=request, data=report.to_public())


@router.post(
    "/cleanup/orphans",
    response_model=SuccessEnvelope[OrphanCleanupResponse] | OrphanCleanupResponse,
)
async def cleanup_orphans(
    request: Request,
    max_age_minutes: int | None = Query(default=None, alias="maxAgeMinutes", ge=0),
    sessions: SessionService = Depends(get_session_service),
) -> dict:
    report = await sessions.cleanup_orphaned_machines(max_age_minutes)
    return success_response(request=request, data=report.to_public())


@router.get(
    "/{session_id}",
    response_model=SuccessEnvelope[SessionStatusResponse | None] | SessionStatusResponse | None,
)
async def get_session(
    session_id: str,
    request: Request,
    sessions: SessionService = Depends(get_session_service),
) -> dict | None:
    # Unknown sessions are absent, not an error.
    snapshot = await sessions.get_session_status(session_id)
    data = snapshot.to_public() if snapshot is not None else None
    return success_response(request=request, data=data)


@router.delete("/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
async def destroy_session(
    session_id: str,
    force: bool = Query(default=False),
    sessions: SessionService = Depends(get_session_service),
) -> Response:
    await sessions.destroy_session(session_id, force=force)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
