from __future__ import annotations

from dataclasses import dataclass, field
from fnmatch import fnmatchcase
import logging


logger = logging.getLogger(__name__)

ACTION_SUBSCRIBE = "subscribe"
ACTION_PUBLISH = "publish"


@dataclass(frozen=True)
class Subject:
    subject_id: str
    authenticated: bool = True
    # Role per project id (owner, editor, viewer).
    project_roles: dict[str, str] = field(default_factory=dict)
    # Internal services (orchestrator, sandbox agents) skip role checks.
    is_service: bool = False


@dataclass(frozen=True)
class ChannelAccessPolicy:
    pattern: str
    require_authentication: bool = True
    require_project_access: bool = True
    roles: frozenset[str] = frozenset({"owner", "editor", "viewer"})
    publish_roles: frozenset[str] = frozenset({"owner", "editor"})
    max_subscribers: int = 1000
    rate_limit_per_second: int = 100

    def matches(self, channel_name: str) -> bool:
        return fnmatchcase(channel_name, self.pattern)


DEFAULT_POLICIES: tuple[ChannelAccessPolicy, ...] = (
    ChannelAccessPolicy(pattern="project:*:files"),
    ChannelAccessPolicy(pattern="project:*:preview"),
    ChannelAccessPolicy(pattern="session:*", publish_roles=frozenset({"owner"}), max_subscribers=50),
)


def project_id_from_channel(channel_name: str) -> str | None:
    parts = channel_name.split(":")
    if len(parts) >= 2 and parts[0] == "project":
        return parts[1]
    return None


def find_policy(
    channel_name: str, policies: tuple[ChannelAccessPolicy, ...] = DEFAULT_POLICIES
) -> ChannelAccessPolicy | None:
    for policy in policies:
        if policy.matches(channel_name):
            return policy
    return None


def check_access(
    channel_name: str,
    subject: Subject | None,
    project_id: str | None = None,
    *,
    action: str = ACTION_SUBSCRIBE,
    current_subscribers: int = 0,
    policies: tuple[ChannelAccessPolicy, ...] = DEFAULT_POLICIES,
) -> bool:
    # Default deny: channels without a policy are not reachable.
    policy = find_policy(channel_name, policies)
    if policy is None:
        logger.info("channel_access_denied channel=%s reason=no_policy", channel_name)
        return False
    if action == ACTION_SUBSCRIBE and current_subscribers >= policy.max_subscribers:
        logger.info("channel_access_denied channel=%s reason=subscriber_cap", channel_name)
        return False
    if subject is None:
        return not policy.require_authentication
    if policy.require_authentication and not subject.authenticated:
        return False
    if subject.is_service:
        return True
    if policy.require_project_access:
        scope = project_id or project_id_from_channel(channel_name)
        role = subject.project_roles.get(scope) if scope else None
        if role is None or role not in policy.roles:
            logger.info(
                "channel_access_denied channel=%s subject=%s reason=project_role",
                channel_name,
                subject.subject_id,
            )
            return False
        if action == ACTION_PUBLISH and role not in policy.publish_roles:
            return False
    return True
