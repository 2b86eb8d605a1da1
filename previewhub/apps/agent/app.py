from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import re
from typing import AsyncIterator

from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse, JSONResponse, Response
import httpx
import uvicorn

from previewhub.apps.agent.config import AgentSettings
from previewhub.apps.agent.runtime import HEALTH_ERROR, HEALTH_READY, AgentContext
from previewhub.core.logging import configure_logging
from previewhub.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

SESSION_HEADER = "X-Preview-Session"

_SESSION_PATH = re.compile(r"^/session/(?P<session_id>[^/]+)(?P<rest>/.*)?$")
_HOP_BY_HOP = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailers",
        "transfer-encoding",
        "upgrade",
        "host",
        "content-length",
        "content-encoding",
    }
)
_PROXY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]

_STARTING_PAGE = """<!doctype html>
<html>
  <head>
    <meta charset="utf-8" />
    <meta http-equiv="refresh" content="2" />
    <title>Starting preview</title>
  </head>
  <body style="font-family: system-ui, sans-serif; text-align: center; padding-top: 20vh">
    <h1>Your preview is starting</h1>
    <p>The development server is still booting. This page refreshes automatically.</p>
  </body>
</html>
"""


def split_session_path(path: str) -> tuple[str | None, str]:
    # "/session/<id>/assets/x.js" -> ("<id>", "/assets/x.js")
    match = _SESSION_PATH.match(path)
    if match is None:
        return None, path
    return match.group("session_id"), match.group("rest") or "/"


def _forward_headers(headers: httpx.Headers | dict[str, str], *, drop: frozenset[str] = _HOP_BY_HOP) -> dict[str, str]:
    return {key: value for key, value in headers.items() if key.lower() not in drop}


def create_app(context: AgentContext | None = None) -> FastAPI:
    configure_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owned = getattr(app.state, "agent", None) is None
        if owned:
            settings = AgentSettings()
            configure_logging(settings.log_level)
            app.state.agent = AgentContext.build(settings)
            app.state.agent.start()
        try:
            yield
        finally:
            if owned:
                await app.state.agent.aclose()
                app.state.agent = None

    app = FastAPI(title="PreviewHub Agent", lifespan=lifespan, docs_url=None, redoc_url=None, openapi_url=None)
    app.state.agent = context

    @app.get("/health")
    async def health(request: Request) -> JSONResponse:
        agent: AgentContext = request.app.state.agent
        status = agent.status
        body = {
            "status": status,
            "sessionId": agent.settings.session_id,
            "projectId": agent.settings.project_id,
            "devServerReady": agent.dev_server_ready,
            "realtime": agent.realtime_status,
        }
        if agent.hydration is not None:
            body["hydration"] = agent.hydration.to_public()
        if status == HEALTH_READY:
            code = 200
        elif status == HEALTH_ERROR:
            code = 500
        else:
            code = 503
        return JSONResponse(content=body, status_code=code)

    @app.api_route("/{full_path:path}", methods=_PROXY_METHODS, include_in_schema=False)
    async def proxy(request: Request, full_path: str) -> Response:
        agent: AgentContext = request.app.state.agent
        path_session, target_path = split_session_path(request.url.path)
        requested = path_session or request.headers.get(SESSION_HEADER)
        if requested and requested != agent.settings.session_id:
            return await _reroute(agent, requested)

        if not agent.dev_server_ready:
            return HTMLResponse(content=_STARTING_PAGE, status_code=503, headers={"Retry-After": "2"})

        url = f"http://127.0.0.1:{agent.supervisor.port}{target_path}"
        try:
            upstream = await agent.client.request(
                request.method,
                url,
                params=request.query_params.multi_items(),
                headers=_forward_headers(request.headers),
                content=await request.body(),
            )
        except httpx.HTTPError as exc:
            increment_counter("agent_proxy_errors_total")
            logger.warning("agent_proxy_failed path=%s error=%s", target_path, exc)
            return JSONResponse(
                content={"error": "Bad Gateway", "message": "Failed to proxy request to development server"},
                status_code=502,
            )
        return Response(
            content=upstream.content,
            status_code=upstream.status_code,
            headers=_forward_headers(upstream.headers),
        )

    return app


async def _reroute(agent: AgentContext, session_id: str) -> Response:
    # One lookup of the owning instance; never a blind 404 for a live session.
    instance_id = await agent.locate_session(session_id)
    if instance_id is None or instance_id == agent.settings.instance_id:
        increment_counter("agent_misdirected_total")
        logger.info("agent_session_misdirected session_id=%s", session_id)
        return JSONResponse(
            content={"error": "Misdirected Request", "sessionId": session_id},
            status_code=421,
        )
    increment_counter("agent_replayed_total")
    logger.info("agent_session_replay session_id=%s instance_id=%s", session_id, instance_id)
    return JSONResponse(
        content={"message": "Redirecting to correct machine", "targetMachine": instance_id},
        status_code=307,
        headers={"fly-replay": f"instance={instance_id}"},
    )


app = create_app()


def main() -> None:
    settings = AgentSettings()
    uvicorn.run(app, host="0.0.0.0", port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
