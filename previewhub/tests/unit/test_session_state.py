from __future__ import annotations

import pytest

from previewhub.core.errors import InvalidSessionTransitionError
from previewhub.domain.state import SessionStatus, allowed_targets, can_transition, ensure_transition


@pytest.mark.parametrize(
    ("current", "target"),
    [
        ("pending", "active"),
        ("pending", "error"),
        ("active", "terminating"),
        ("active", "error"),
        ("terminating", "terminated"),
        ("terminating", "error"),
        ("error", "terminating"),
        ("error", "terminated"),
    ],
)
def test_lifecycle_edges_are_allowed(current: str, target: str) -> None:
    assert can_transition(current, target)
    ensure_transition(current, target)


@pytest.mark.parametrize(
    ("current", "target"),
    [
        ("pending", "terminated"),
        ("active", "pending"),
        ("active", "terminated"),
        ("error", "active"),
        ("terminated", "terminating"),
        ("terminated", "active"),
    ],
)
def test_other_edges_are_rejected(current: str, target: str) -> None:
    assert not can_transition(current, target)
    with pytest.raises(InvalidSessionTransitionError) as excinfo:
        ensure_transition(current, target)
    assert excinfo.value.current == current
    assert excinfo.value.target == target


def test_terminated_is_final() -> None:
    assert allowed_targets(SessionStatus.TERMINATED) == frozenset()


def test_unknown_status_is_rejected() -> None:
    with pytest.raises(ValueError):
        can_transition("paused", "active")
