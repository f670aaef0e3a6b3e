"""Error taxonomy for calendar synchronization.

Every error raised by the calendar package derives from ``CalendarError``.
Only the webhook-boundary errors (``WebhookAuthError`` subclasses) are meant
to reach a provider as a failed response; everything else is handled inside
the sync path or reported to the caller that triggered it.
"""

from __future__ import annotations

import re

# Public message shared by every webhook credential failure so the response
# never reveals whether the channel id or the token was wrong.
INVALID_NOTIFICATION_MESSAGE = "Invalid notification credentials"

_MAX_ERROR_MESSAGE_CHARS = 200


class CalendarError(RuntimeError):
    """Base error for calendar sync, subscription and provider failures."""


class AuthExpired(CalendarError):
    """Raised when the provider refuses to refresh the account's access token.

    Terminal until the user re-authorizes; the provider account is flagged
    with ``needs_reauth`` before this is raised.
    """

    def __init__(self, message: str, *, provider_id: object | None = None) -> None:
        self.provider_id = provider_id
        super().__init__(message)


class AccessTokenRejected(CalendarError):
    """Raised by a provider client when an API call is rejected with HTTP 401."""


class SyncTokenInvalid(CalendarError):
    """Raised when the provider no longer recognizes a sync token; a full resync is required."""


class ProviderRejected(CalendarError):
    """Raised for non-retryable provider responses (4xx other than auth/invalidation)."""

    def __init__(self, *, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f"Provider rejected the request ({status_code}): {message}")


class Transient(CalendarError):
    """Raised for timeouts, rate limits and 5xx responses; safe to retry."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        self.status_code = status_code
        self.retry_after = retry_after
        super().__init__(message)


class WebhookAuthError(CalendarError):
    """Base error for inbound notifications rejected at the webhook boundary."""

    def __init__(self, detail: str | None = None) -> None:
        # ``detail`` is for logs only; ``str(exc)`` is the public message.
        self.detail = detail
        super().__init__(INVALID_NOTIFICATION_MESSAGE)


class MalformedNotification(WebhookAuthError):
    """Raised when required channel headers are missing from a notification."""


class UnknownChannel(WebhookAuthError):
    """Raised when a notification names a channel id that is not stored."""


class InvalidChannelToken(WebhookAuthError):
    """Raised when a notification's channel token does not match the stored verifier."""


class StorageConflict(CalendarError):
    """Raised by a store when an insert violates a unique constraint."""

    def __init__(self, constraint: str, message: str | None = None) -> None:
        self.constraint = constraint
        super().__init__(message or f"Unique constraint violated: {constraint}")


class SyncClaimLost(CalendarError):
    """Raised when a sync tries to write after another owner took over its claim.

    The write is rolled back; the newer owner's state stands.
    """

    def __init__(self, source_id: object, owner: str) -> None:
        self.source_id = source_id
        self.owner = owner
        super().__init__(f"Sync claim on source {source_id} is no longer held by {owner}")


class RecordNotFound(CalendarError):
    """Raised when a provider account, source or subscription does not exist."""

    def __init__(self, kind: str, record_id: object) -> None:
        self.kind = kind
        self.record_id = record_id
        super().__init__(f"{kind} not found: {record_id}")


def redact_credential_values(message: str) -> str:
    """Redact credential-looking values from an error message."""
    redacted = message
    # key=value style pairs
    redacted = re.sub(
        r"(?i)\b(client_secret|refresh_token|access_token|token|verifier)\s*=\s*([^\s,;&]+)",
        r"\1=[REDACTED]",
        redacted,
    )
    # JSON/Python dict style quoted values
    redacted = re.sub(
        r"""(?i)(['"]?(?:client_secret|refresh_token|access_token|token|verifier)"""
        r"""['"]?\s*:\s*)(['"]).*?\2""",
        r'\1"[REDACTED]"',
        redacted,
    )
    # Bearer headers
    redacted = re.sub(r"(?i)\bBearer\s+[A-Za-z0-9._~+/=-]+", "Bearer [REDACTED]", redacted)
    return redacted


def sanitize_error_message(exc: BaseException | str) -> str:
    """Return a redacted, whitespace-normalized message capped at 200 characters."""
    raw = exc if isinstance(exc, str) else str(exc)
    redacted = redact_credential_values(raw)
    sanitized = " ".join(redacted.split())[:_MAX_ERROR_MESSAGE_CHARS]
    return sanitized or (type(exc).__name__ if not isinstance(exc, str) else "")
