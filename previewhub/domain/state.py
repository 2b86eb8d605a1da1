from __future__ import annotations

from enum import Enum

from previewhub.core.errors import InvalidSessionTransitionError


class SessionStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    ERROR = "error"
    TERMINATING = "terminating"
    TERMINATED = "terminated"


# Single source of truth for lifecycle edges; repositories only apply these.
_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.PENDING: frozenset({SessionStatus.ACTIVE, SessionStatus.ERROR}),
    SessionStatus.ACTIVE: frozenset({SessionStatus.TERMINATING, SessionStatus.ERROR}),
    SessionStatus.TERMINATING: frozenset({SessionStatus.TERMINATED, SessionStatus.ERROR}),
    # Errored sessions with no instance behind them terminate without a teardown.
    SessionStatus.ERROR: frozenset({SessionStatus.TERMINATING, SessionStatus.TERMINATED}),
    SessionStatus.TERMINATED: frozenset(),
}


def can_transition(current: str | SessionStatus, target: str | SessionStatus) -> bool:
    return SessionStatus(target) in _TRANSITIONS[SessionStatus(current)]


def ensure_transition(current: str | SessionStatus, target: str | SessionStatus) -> None:
    if not can_transition(current, target):
        raise InvalidSessionTransitionError(SessionStatus(current).value, SessionStatus(target).value)


def allowed_targets(current: str | SessionStatus) -> frozenset[SessionStatus]:
    return _TRANSITIONS[SessionStatus(current)]
