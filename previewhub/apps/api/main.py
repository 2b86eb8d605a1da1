from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from email.utils import format_datetime
import time
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.openapi.utils import get_openapi
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from previewhub.apps.api.errors import (
    domain_exception_handler,
    http_exception_handler,
    starlette_http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from previewhub.apps.api.rate_limit import route_class_for_request
from previewhub.apps.api.response import API_VERSION
from previewhub.apps.api.routes.files import router as files_router
from previewhub.apps.api.routes.health import router as health_router
from previewhub.apps.api.routes.ops import router as ops_router
from previewhub.apps.api.routes.sessions import router as sessions_router
from previewhub.core.errors import PreviewHubError
from previewhub.core.logging import configure_logging
from previewhub.services.context import AppContext
from previewhub.services.telemetry import record_request


_LEGACY_SUNSET_DAYS = 90
_LEGACY_EXEMPT_PREFIXES = (
    "/v1",
    "/docs",
    "/openapi.json",
    "/redoc",
)
_ROUTERS = (health_router, sessions_router, files_router, ops_router)
_EXCEPTION_HANDLERS = (
    (StarletteHTTPException, starlette_http_exception_handler),
    (HTTPException, http_exception_handler),
    (RequestValidationError, validation_exception_handler),
    (PreviewHubError, domain_exception_handler),
    (Exception, unhandled_exception_handler),
)


def _mark_legacy(response: Response) -> None:
    # Unversioned aliases advertise their successor and a sunset date.
    sunset_at = datetime.now(timezone.utc) + timedelta(days=_LEGACY_SUNSET_DAYS)
    response.headers["Deprecation"] = "true"
    response.headers["Sunset"] = format_datetime(sunset_at)
    response.headers["Link"] = '</v1/docs>; rel="successor-version"'


def create_app(context: AppContext | None = None) -> FastAPI:
    configure_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owned = getattr(app.state, "context", None) is None
        if owned:
            app.state.context = AppContext.build()
            # Deployed databases are migrated with Alembic; sqlite is bootstrapped in place.
            if app.state.context.settings.database_url.startswith("sqlite"):
                await app.state.context.create_schema()
            app.state.context.start()
        try:
            yield
        finally:
            if owned:
                await app.state.context.aclose()
                app.state.context = None

    app = FastAPI(title="PreviewHub API", lifespan=lifespan)
    # Tests inject a prebuilt context; the lifespan then leaves it alone.
    app.state.context = context

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        record_request(
            path=request.url.path,
            route_class=route_class_for_request(request),
            status_code=response.status_code,
            latency_ms=latency_ms,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        if not request.url.path.startswith(_LEGACY_EXEMPT_PREFIXES):
            _mark_legacy(response)
        return response

    for exc_type, handler in _EXCEPTION_HANDLERS:
        app.add_exception_handler(exc_type, handler)

    # Mount versioned v1 API routes.
    for router in _ROUTERS:
        app.include_router(router, prefix=f"/{API_VERSION}")
    # Retain unversioned legacy routes as deprecated compatibility aliases.
    for router in _ROUTERS:
        app.include_router(router, include_in_schema=False)

    # Serve versioned OpenAPI JSON and docs endpoints for v1 consumers.
    @app.get("/v1/openapi.json", include_in_schema=False)
    async def openapi_json() -> JSONResponse:
        return JSONResponse(app.openapi())

    @app.get("/v1/docs", include_in_schema=False)
    async def v1_docs() -> HTMLResponse:
        return get_swagger_ui_html(openapi_url="/v1/openapi.json", title="PreviewHub API v1")

    @app.get("/docs", include_in_schema=False)
    async def docs_redirect() -> RedirectResponse:
        return RedirectResponse(url="/v1/docs")

    def custom_openapi() -> dict:
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(title="PreviewHub API", version=API_VERSION, routes=app.routes)
        schema["servers"] = [{"url": "http://localhost:8000"}]
        app.openapi_schema = schema
        return app.openapi_schema

    app.openapi = custom_openapi

    return app


app = create_app()
