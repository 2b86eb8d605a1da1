from __future__ import annotations

import logging
from typing import Any

from arq import cron
from arq.connections import RedisSettings

from previewhub.core.config import get_settings
from previewhub.core.logging import configure_logging
from previewhub.services.context import AppContext


logger = logging.getLogger(__name__)


def _context(ctx: dict[str, Any]) -> AppContext:
    return ctx["app_context"]


async def cleanup_expired_sessions(ctx: dict[str, Any]) -> dict[str, Any]:
    report = await _context(ctx).sessions.cleanup_expired_sessions()
    logger.info(
        "cleanup_job_finished expired=%s successful=%s failed=%s",
        report.total_expired,
        report.successful,
        report.failed,
    )
    return report.to_public()


async def cleanup_orphaned_machines(ctx: dict[str, Any], max_age_minutes: int | None = None) -> dict[str, Any]:
    report = await _context(ctx).sessions.cleanup_orphaned_machines(max_age_minutes)
    logger.info("orphan_job_finished scanned=%s destroyed=%s", report.scanned, len(report.destroyed))
    return report.to_public()


async def destroy_session(ctx: dict[str, Any], session_id: str, force: bool = False) -> str:
    # Lets the API hand slow teardowns to the worker.
    return await _context(ctx).sessions.destroy_session(session_id, force=force)


def _every(minutes: int) -> set[int]:
    step = max(1, min(int(minutes), 59))
    return set(range(0, 60, step))


async def _startup(ctx: dict[str, Any]) -> None:
    # Services are built once per worker process and shared by every job.
    configure_logging()
    ctx["app_context"] = AppContext.build()


async def _shutdown(ctx: dict[str, Any]) -> None:
    app_context = ctx.get("app_context")
    if app_context is not None:
        await app_context.aclose()


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.cleanup_queue_name
    functions = [cleanup_expired_sessions, cleanup_orphaned_machines, destroy_session]
    cron_jobs = [
        cron(cleanup_expired_sessions, minute=_every(settings.cleanup_interval_minutes), run_at_startup=True),
        cron(cleanup_orphaned_machines, minute={17}, unique=True),
    ]
    on_startup = _startup
    on_shutdown = _shutdown
