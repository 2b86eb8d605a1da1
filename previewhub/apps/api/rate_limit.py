from __future__ import annotations

import logging

from fastapi import HTTPException, Request, Response, status
from redis.exceptions import RedisError

from previewhub.core.config import Settings
from previewhub.services.rate_limiter import RateLimitDecision, RateLimiter
from previewhub.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

ROUTE_CLASS_SESSION = "session"
ROUTE_CLASS_MUTATION = "mutation"
ROUTE_CLASS_READ = "read"
ROUTE_CLASS_OPS = "ops"

_VERSION_PREFIX = "/v1"


def route_class_for_path(path: str, method: str) -> str:
    # Bucket requests so a burst of file reads cannot starve session creation.
    if path.startswith(_VERSION_PREFIX):
        path = path[len(_VERSION_PREFIX):] or "/"
    normalized_method = method.upper()

    if path.startswith("/ops") or path.startswith("/health"):
        return ROUTE_CLASS_OPS
    if path.startswith("/sessions") and normalized_method in {"POST", "DELETE"}:
        return ROUTE_CLASS_SESSION
    if normalized_method in {"POST", "PUT", "PATCH", "DELETE"}:
        return ROUTE_CLASS_MUTATION
    return ROUTE_CLASS_READ


def route_class_for_request(request: Request) -> str:
    return route_class_for_path(request.url.path, request.method)


def client_identity(request: Request) -> str:
    # Callers identify themselves explicitly; fall back to the peer address.
    explicit = request.headers.get("X-Client-Id")
    if explicit:
        return explicit.strip()
    if request.client is not None:
        return request.client.host
    return "anonymous"


def _throttle_exception(*, decision: RateLimitDecision, route_class: str) -> HTTPException:
    retry_after_ms = int((decision.retry_after or 0.0) * 1000)
    headers = {
        "Retry-After": str(decision.retry_after_s),
        "X-RateLimit-Route-Class": route_class,
        "X-RateLimit-Remaining": "0",
        "X-RateLimit-Retry-After-Ms": str(retry_after_ms),
    }
    return HTTPException(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        detail={
            "code": "RATE_LIMITED",
            "message": "Rate limit exceeded",
            "route_class": route_class,
            "retry_after_ms": retry_after_ms,
        },
        headers=headers,
    )


def _unavailable_exception() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail={"code": "RATE_LIMIT_UNAVAILABLE", "message": "Rate limiting unavailable"},
    )


async def enforce_rate_limit(
    *,
    request: Request,
    response: Response,
    limiter: RateLimiter,
    settings: Settings,
) -> None:
    if not settings.rate_limit_enabled:
        return
    route_class = route_class_for_request(request)
    key = f"api:{client_identity(request)}:{route_class}"
    try:
        decision = await limiter.check_and_increment(key)
    except (RedisError, OSError) as exc:
        if settings.rl_fail_mode.lower() == "closed":
            raise _unavailable_exception() from exc
        response.headers["X-RateLimit-Status"] = "degraded"
        increment_counter("rate_limit_degraded_total")
        logger.warning("rate_limit_degraded path=%s error=%s", request.url.path, type(exc).__name__)
        return

    response.headers["X-RateLimit-Remaining"] = str(decision.remaining)
    if decision.allowed:
        return
    increment_counter(f"rate_limited_total.{route_class}")
    logger.info(
        "rate_limited client=%s route_class=%s retry_after=%.2f",
        client_identity(request),
        route_class,
        decision.retry_after or 0.0,
    )
    raise _throttle_exception(decision=decision, route_class=route_class)
