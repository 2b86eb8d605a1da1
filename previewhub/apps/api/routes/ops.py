from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel

from previewhub.apps.api.deps import get_context, rate_limited
from previewhub.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from previewhub.apps.api.response import SuccessEnvelope, success_response
from previewhub.persistence.db import pool_stats
from previewhub.services.context import AppContext
from previewhub.services.telemetry import (
    counters_snapshot,
    external_latency_by_integration,
    gauges_snapshot,
    request_latency_by_class,
)


router = APIRouter(
    prefix="/ops",
    tags=["ops"],
    responses=DEFAULT_ERROR_RESPONSES,
    dependencies=[Depends(rate_limited)],
)


class OpsMetricsResponse(BaseModel):
    counters: dict[str, int]
    gauges: dict[str, float]
    request_latency: dict[str, dict[str, float | None]]
    external_latency: dict[str, dict[str, float | None]]
    db_pool: dict[str, int | None]
    channels: list[dict[str, Any]]
    sessions: dict[str, Any]


@router.get("/metrics", response_model=SuccessEnvelope[OpsMetricsResponse] | OpsMetricsResponse)
async def ops_metrics(
    request: Request,
    window_s: int = Query(default=300, ge=1, le=86400),
    context: AppContext = Depends(get_context),
) -> dict:
    metrics = await context.sessions.session_metrics()
    payload = OpsMetricsResponse(
        counters=counters_snapshot(),
        gauges=gauges_snapshot(),
        request_latency=request_latency_by_class(window_s),
        external_latency=external_latency_by_integration(window_s),
        db_pool=pool_stats(context.engine),
        channels=context.channel.describe(),
        sessions=metrics.to_public(),
    )
    return success_response(request=request, data=payload)
