from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel

from previewhub.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from previewhub.apps.api.response import SuccessEnvelope, success_response

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str
    service: str


@router.get("/health", response_model=SuccessEnvelope[HealthResponse] | HealthResponse)
async def health(request: Request) -> dict:
    settings = request.app.state.context.settings
    payload = HealthResponse(status="ok", service=settings.app_name)
    return success_response(request=request, data=payload)
