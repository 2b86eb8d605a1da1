from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from previewhub.apps.api.response import error_response, is_versioned_request
from previewhub.core.errors import (
    BulkConflictError,
    ChannelAccessDeniedError,
    ChannelClosedError,
    ConcurrencyConflictError,
    FileRecordNotFoundError,
    HydrationError,
    IntegrationUnavailableError,
    InvalidPathError,
    InvalidSessionTransitionError,
    PreviewHubError,
    ProvisioningError,
    ProvisioningRejectedError,
    QuotaExceededError,
    ResourceValidationError,
    SessionNotFoundError,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    402: "QUOTA_EXCEEDED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    421: "MISDIRECTED_REQUEST",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMITED",
    500: "INTERNAL_ERROR",
    502: "BAD_GATEWAY",
    503: "SERVICE_UNAVAILABLE",
}

# Most specific classes first; the first isinstance match wins.
_DOMAIN_ERRORS: tuple[tuple[type[PreviewHubError], int, str], ...] = (
    (SessionNotFoundError, 404, "SESSION_NOT_FOUND"),
    (FileRecordNotFoundError, 404, "FILE_NOT_FOUND"),
    (ConcurrencyConflictError, 409, "CONCURRENCY_CONFLICT"),
    (BulkConflictError, 409, "BULK_CONFLICT"),
    (InvalidSessionTransitionError, 409, "INVALID_SESSION_TRANSITION"),
    (QuotaExceededError, 402, "QUOTA_EXCEEDED"),
    (ResourceValidationError, 422, "RESOURCE_VALIDATION_ERROR"),
    (InvalidPathError, 422, "INVALID_PATH"),
    (HydrationError, 422, "SNAPSHOT_INVALID"),
    (ChannelAccessDeniedError, 403, "CHANNEL_ACCESS_DENIED"),
    (ProvisioningRejectedError, 502, "PROVISIONING_REJECTED"),
    (ProvisioningError, 502, "PROVISIONING_FAILED"),
    (IntegrationUnavailableError, 503, "INTEGRATION_UNAVAILABLE"),
    (ChannelClosedError, 503, "REALTIME_UNAVAILABLE"),
)


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # HTTPException detail may be a plain message or a {code, message, ...} dict.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


def classify_error(exc: PreviewHubError) -> tuple[int, str]:
    for error_type, status_code, code in _DOMAIN_ERRORS:
        if isinstance(exc, error_type):
            return status_code, code
    return 500, "INTERNAL_ERROR"


def _error_details(exc: PreviewHubError) -> dict[str, Any] | None:
    if isinstance(exc, ConcurrencyConflictError):
        return {
            "path": exc.path,
            "expectedVersion": exc.expected_version,
            "currentVersion": exc.current_version,
        }
    if isinstance(exc, BulkConflictError):
        return {"results": [item.to_public() for item in exc.results]}
    if isinstance(exc, SessionNotFoundError):
        return {"sessionId": exc.session_id}
    if isinstance(exc, ProvisioningError) and exc.status_code is not None:
        return {"upstreamStatus": exc.status_code}
    return None


def _wrap(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: dict[str, Any] | None,
) -> JSONResponse:
    if not is_versioned_request(request):
        content: dict[str, Any] = {"code": code, "message": message}
        if details:
            content.update(details)
        return JSONResponse(content={"detail": content}, status_code=status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=status_code)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def starlette_http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    # Routing errors (unknown path, wrong method) arrive as Starlette exceptions.
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.errors()}, status_code=422)
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": exc.errors()},
    )
    return JSONResponse(content=payload, status_code=422)


async def domain_exception_handler(request: Request, exc: PreviewHubError) -> JSONResponse:
    status_code, code = classify_error(exc)
    if status_code >= 500:
        logger.warning("request_failed path=%s code=%s error=%s", request.url.path, code, exc)
    return _wrap(request, status_code=status_code, code=code, message=str(exc), details=_error_details(exc))


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Never leak stack traces to clients.
    logger.exception("request_unhandled_error path=%s", request.url.path)
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": "Internal Server Error"}, status_code=500)
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)
