from __future__ import annotations

from fastapi import Depends, Request, Response

from previewhub.apps.api.rate_limit import enforce_rate_limit
from previewhub.services.context import AppContext
from previewhub.services.files import FileSyncService
from previewhub.services.sessions import SessionService


def get_context(request: Request) -> AppContext:
    # Services live on app.state; they are built by the lifespan or injected by tests.
    return request.app.state.context


def get_session_service(context: AppContext = Depends(get_context)) -> SessionService:
    return context.sessions


def get_file_service(context: AppContext = Depends(get_context)) -> FileSyncService:
    return context.files


async def rate_limited(
    request: Request,
    response: Response,
    context: AppContext = Depends(get_context),
) -> None:
    await enforce_rate_limit(
        request=request,
        response=response,
        limiter=context.api_limiter,
        settings=context.settings,
    )
