"""Calendar synchronization core: records, provider clients, sync and push subscriptions."""

from calsync.calendar.errors import (
    AccessTokenRejected,
    AuthExpired,
    CalendarError,
    InvalidChannelToken,
    MalformedNotification,
    ProviderRejected,
    RecordNotFound,
    StorageConflict,
    SyncTokenInvalid,
    Transient,
    UnknownChannel,
    WebhookAuthError,
)

__all__ = [
    "AccessTokenRejected",
    "AuthExpired",
    "CalendarError",
    "InvalidChannelToken",
    "MalformedNotification",
    "ProviderRejected",
    "RecordNotFound",
    "StorageConflict",
    "SyncTokenInvalid",
    "Transient",
    "UnknownChannel",
    "WebhookAuthError",
]
