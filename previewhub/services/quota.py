from __future__ import annotations

import logging
from typing import Protocol

from sqlalchemy.exc import SQLAlchemyError

from previewhub.core.errors import QuotaExceededError
from previewhub.persistence.db import SessionFactory
from previewhub.persistence.repos import sessions as sessions_repo
from previewhub.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


class QuotaChecker(Protocol):
    async def check(self, user_id: str, tier: str) -> None:
        ...


class ActiveSessionQuota:
    """Caps concurrently live (pending or active) sessions per user.

    An unavailable backing store is treated as a rejection so no session is
    created without a successful pre-flight check.
    """

    def __init__(self, session_factory: SessionFactory, *, max_active: int) -> None:
        self._session_factory = session_factory
        self._max_active = max_active

    async def check(self, user_id: str, tier: str) -> None:
        if self._max_active <= 0:
            return
        try:
            async with self._session_factory() as session:
                live = await sessions_repo.count_live_for_user(session, user_id)
        except SQLAlchemyError as exc:
            increment_counter("quota_unavailable_total")
            logger.warning("quota_check_unavailable user_id=%s error=%s", user_id, type(exc).__name__)
            raise QuotaExceededError("quota service unavailable") from exc
        if live >= self._max_active:
            increment_counter("quota_rejections_total")
            raise QuotaExceededError(
                f"user {user_id} already has {live} live sessions (limit {self._max_active})"
            )
