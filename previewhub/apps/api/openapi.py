from __future__ import annotations

from typing import Any

from previewhub.apps.api.response import API_VERSION, ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": API_VERSION},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, *, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": _error_example(code=code, message=message, details=details)}},
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    402: _response(
        "Quota exceeded",
        code="QUOTA_EXCEEDED",
        message="user u-1 already has 3 live sessions (limit 3)",
    ),
    404: _response("Not found", code="SESSION_NOT_FOUND", message="session s-1 not found"),
    409: _response(
        "Version conflict",
        code="CONCURRENCY_CONFLICT",
        message="version conflict on src/App.tsx: expected=1 current=2",
        details={"path": "src/App.tsx", "expectedVersion": 1, "currentVersion": 2},
    ),
    422: _response("Validation error", code="REQUEST_VALIDATION_ERROR", message="Validation error"),
    429: _response(
        "Rate limited",
        code="RATE_LIMITED",
        message="Rate limit exceeded",
        details={"route_class": "mutation", "retry_after_ms": 1200},
    ),
    500: _response("Internal server error", code="INTERNAL_ERROR", message="Internal server error"),
    502: _response(
        "Provisioning failed",
        code="PROVISIONING_FAILED",
        message="failed to provision session s-1",
    ),
    503: _response("Service unavailable", code="INTEGRATION_UNAVAILABLE", message="compute provider circuit open"),
}
