"""Error taxonomy for missing-attachment sync and remediation.

Integrations raise these; the orchestrator converts them into `ErrorRecord`s so
a single failure never aborts a whole run.

`category` lets callers tell "reconnect to the provider" (token problems) apart
from "retry the sync later" (data-fetch problems).
"""

from __future__ import annotations

import builtins

RECONNECT = "reconnect"
RETRY_LATER = "retry_later"
FIX_INPUT = "fix_input"


class AttachmentSyncError(Exception):
    retryable: bool = False
    category: str = RETRY_LATER

    def __init__(self, message: str = "", *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class AuthenticationError(AttachmentSyncError):
    """Token invalid or expired even after one refresh attempt."""

    category = RECONNECT


class ReconnectRequiredError(AuthenticationError):
    """The refresh token itself was rejected (`invalid_grant`)."""


class ConfigurationError(AttachmentSyncError):
    """Missing client credentials or other local misconfiguration."""

    category = RECONNECT


class XeroPermissionError(AttachmentSyncError, builtins.PermissionError):
    """Insufficient API scope. Never retried."""

    category = RECONNECT


# Public alias matching the taxonomy name.
PermissionError = XeroPermissionError


class TransientServerError(AttachmentSyncError):
    """5xx, network failure or timeout. Safe to retry later."""

    retryable = True


class RateLimitError(TransientServerError):
    """HTTP 429 from the provider."""

    def __init__(
        self,
        message: str = "",
        *,
        status_code: int | None = 429,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message, status_code=status_code)
        self.retry_after = retry_after


class XeroApiError(AttachmentSyncError):
    """Any other unexpected 4xx response."""


class ValidationError(AttachmentSyncError, ValueError):
    """Malformed recipient contact, bad upload, or invalid link transition."""

    category = FIX_INPUT


class LinkNotFoundError(ValidationError):
    pass


class NotificationDeliveryError(AttachmentSyncError):
    """A notification provider rejected or failed to send a message."""

    retryable = True


class PaginationSafetyAbort(AttachmentSyncError):
    """Internal loop breaker. Logged and recorded, never raised to callers."""
