from __future__ import annotations


class PreviewHubError(Exception):
    """Base error for previewhub."""


class IntegrationUnavailableError(PreviewHubError):
    """External integration is unavailable (circuit open or backend down)."""


class ResourceValidationError(PreviewHubError):
    """Requested resources fall outside hard platform bounds."""


class ProvisioningError(PreviewHubError):
    """Compute API call failed after retries."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ProvisioningRejectedError(ProvisioningError):
    """Compute API rejected the request; never retried."""


class QuotaExceededError(PreviewHubError):
    """Pre-flight quota check failed or could not be performed."""


class SessionNotFoundError(PreviewHubError):
    """No preview session exists for the given id."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"session {session_id} not found")
        self.session_id = session_id


class InvalidSessionTransitionError(PreviewHubError):
    """Session status change is not an edge of the lifecycle state machine."""

    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"cannot transition session from {current} to {target}")
        self.current = current
        self.target = target


class ConcurrencyConflictError(PreviewHubError):
    """Write presented a stale version; carries the version currently stored."""

    def __init__(self, path: str, *, expected_version: int | None, current_version: int | None) -> None:
        super().__init__(
            f"version conflict on {path}: expected={expected_version} current={current_version}"
        )
        self.path = path
        self.expected_version = expected_version
        self.current_version = current_version


class BulkConflictError(PreviewHubError):
    """A bulk write was rolled back because at least one entry conflicted."""

    def __init__(self, results: list) -> None:
        super().__init__("bulk upsert rolled back on version conflict")
        self.results = results


class FileRecordNotFoundError(PreviewHubError):
    """No file record exists for the given project path."""


class InvalidPathError(PreviewHubError):
    """File path is absolute, escapes the project root or is empty."""


class HydrationError(PreviewHubError):
    """A hydration strategy could not populate the sandbox."""


class ChannelAccessDeniedError(PreviewHubError):
    """Subject may not subscribe or publish on the channel."""


class ChannelClosedError(PreviewHubError):
    """Realtime transport connection closed or timed out."""
