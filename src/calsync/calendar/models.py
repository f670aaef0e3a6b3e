"""Records and provider-neutral DTOs for calendar synchronization.

Persisted records:
- ``CalendarProvider``: one OAuth-linked external account
- ``CalendarSource``: one provider calendar the user chose to mirror
- ``CalendarSubscription``: one push-notification lease for a source
- ``CalendarItem``: one mirrored event

Provider DTOs (never persisted): ``CalendarSummary``, ``EventTime``,
``ProviderEvent``, ``EventDeltaPage``, ``PushChannel``, ``TokenGrant``.
"""

from __future__ import annotations

import re
import uuid
from datetime import UTC, date, datetime, timedelta
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

_COLOR_PATTERN = re.compile(r"^[0-9a-f]{6}$")
DEFAULT_SOURCE_COLOR = "4285f4"


def utc_now() -> datetime:
    return datetime.now(UTC)


def ensure_utc(value: datetime) -> datetime:
    """Return *value* as an aware UTC datetime (naive values are assumed UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class ProviderKind(StrEnum):
    """External calendar provider kinds with a ProviderClient implementation."""

    google = "google"


class SyncStatus(StrEnum):
    """Per-source synchronization state."""

    never_synced = "never_synced"
    syncing = "syncing"
    synced = "synced"
    failed = "failed"


# ---------------------------------------------------------------------------
# Persisted records
# ---------------------------------------------------------------------------


class CalendarProvider(BaseModel):
    """OAuth-linked provider account holding the tokens used for API calls."""

    model_config = ConfigDict(extra="ignore")

    id: uuid.UUID
    user_id: str
    kind: ProviderKind
    identifier: str
    access_token: str
    refresh_token: str
    token_expiry: datetime
    needs_reauth: bool = False
    last_auth_error: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator("token_expiry")
    @classmethod
    def _normalize_expiry(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    def token_is_fresh(self, now: datetime, margin: timedelta) -> bool:
        """Whether the access token can be used at *now* without refreshing first."""
        return ensure_utc(now) + margin < self.token_expiry


class CalendarSource(BaseModel):
    """A provider calendar mirrored locally."""

    model_config = ConfigDict(extra="ignore")

    id: uuid.UUID
    provider_id: uuid.UUID
    calendar_id: str
    name: str
    color: str = DEFAULT_SOURCE_COLOR
    last_sync: datetime | None = None
    sync_token: str | None = None
    sync_status: SyncStatus = SyncStatus.never_synced
    last_sync_error: str | None = None
    sync_claimed_at: datetime | None = None
    sync_claim_owner: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator("color", mode="before")
    @classmethod
    def _normalize_color(cls, value: Any) -> Any:
        return normalize_color(value)

    @property
    def needs_full_sync(self) -> bool:
        return self.sync_token is None


class CalendarSubscription(BaseModel):
    """A push-notification lease. Rows are never updated; renewal inserts a new one."""

    model_config = ConfigDict(extra="ignore")

    id: uuid.UUID
    source_id: uuid.UUID
    channel_id: str
    # Secret echoed back as the channel token; never serialized.
    verifier: str = Field(exclude=True, repr=False)
    resource_id: str | None = None
    expires_at: datetime
    created_at: datetime | None = None

    @field_validator("expires_at")
    @classmethod
    def _normalize_expires_at(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= ensure_utc(now)


class CalendarItem(BaseModel):
    """A mirrored event. ``(source_id, event_id)`` is the idempotence key.

    Each boundary is either an all-day date or a timed instant, never both.
    """

    model_config = ConfigDict(extra="ignore")

    id: uuid.UUID | None = None
    source_id: uuid.UUID
    event_id: str
    title: str
    start_date: date | None = None
    start_time: datetime | None = None
    end_date: date | None = None
    end_time: datetime | None = None
    html_link: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator("start_time", "end_time")
    @classmethod
    def _normalize_instant(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value) if value is not None else None

    @model_validator(mode="after")
    def _validate_boundaries(self) -> CalendarItem:
        for label, day, instant in (
            ("start", self.start_date, self.start_time),
            ("end", self.end_date, self.end_time),
        ):
            if day is not None and instant is not None:
                raise ValueError(f"{label} cannot be both a date and a time")
            if day is None and instant is None:
                raise ValueError(f"{label} must be a date or a time")
        return self

    @property
    def all_day(self) -> bool:
        return self.start_date is not None

    @property
    def start(self) -> date | datetime:
        return self.start_date if self.start_date is not None else self.start_time  # type: ignore[return-value]

    @property
    def end(self) -> date | datetime:
        return self.end_date if self.end_date is not None else self.end_time  # type: ignore[return-value]

    @classmethod
    def from_event(cls, source_id: uuid.UUID, event: ProviderEvent) -> CalendarItem:
        """Translate a provider event into the local date-or-instant representation."""
        if event.start is None or event.end is None:
            raise ValueError(f"Event '{event.event_id}' has no start/end to mirror")
        return cls(
            source_id=source_id,
            event_id=event.event_id,
            title=event.title,
            start_date=event.start.day,
            start_time=event.start.instant,
            end_date=event.end.day,
            end_time=event.end.instant,
            html_link=event.html_link,
        )


# ---------------------------------------------------------------------------
# Provider DTOs
# ---------------------------------------------------------------------------


class CalendarSummary(BaseModel):
    """A calendar as listed by the provider."""

    calendar_id: str
    name: str
    color: str | None = None
    primary: bool = False
    linked: bool = False

    @field_validator("color", mode="before")
    @classmethod
    def _normalize_color(cls, value: Any) -> Any:
        if value is None:
            return None
        try:
            return normalize_color(value)
        except ValueError:
            return None


class EventTime(BaseModel):
    """One event boundary: an all-day ``day`` or a timed ``instant``."""

    model_config = ConfigDict(extra="forbid")

    day: date | None = None
    instant: datetime | None = None

    @field_validator("instant")
    @classmethod
    def _normalize_instant(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value) if value is not None else None

    @model_validator(mode="after")
    def _validate_shape(self) -> EventTime:
        if (self.day is None) == (self.instant is None):
            raise ValueError("exactly one of day or instant must be set")
        return self


class ProviderEvent(BaseModel):
    """One entry of a provider delta: an upsert, or a removal when ``removed`` is set."""

    event_id: str = Field(min_length=1)
    removed: bool = False
    title: str = "(untitled)"
    start: EventTime | None = None
    end: EventTime | None = None
    html_link: str | None = None

    @model_validator(mode="after")
    def _validate_boundaries(self) -> ProviderEvent:
        if not self.removed and (self.start is None or self.end is None):
            raise ValueError(f"event '{self.event_id}' requires start and end unless removed")
        return self


class EventDeltaPage(BaseModel):
    """All changes since a sync token plus the token for the next call."""

    events: list[ProviderEvent] = Field(default_factory=list)
    next_sync_token: str = Field(min_length=1)


class PushChannel(BaseModel):
    """Provider acknowledgement of a push-channel registration."""

    channel_id: str
    resource_id: str | None = None
    expires_at: datetime

    @field_validator("expires_at")
    @classmethod
    def _normalize_expires_at(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class TokenGrant(BaseModel):
    """A refreshed access token and its absolute expiry."""

    access_token: str = Field(min_length=1)
    expires_at: datetime

    @field_validator("expires_at")
    @classmethod
    def _normalize_expires_at(cls, value: datetime) -> datetime:
        return ensure_utc(value)


# ---------------------------------------------------------------------------
# Operation results
# ---------------------------------------------------------------------------


class SyncOutcome(BaseModel):
    """Result of one ``SyncEngine.sync`` call."""

    source_id: uuid.UUID
    status: SyncStatus
    upserted: int = 0
    deleted: int = 0
    full_resync: bool = False
    skipped: bool = False
    next_sync_token: str | None = None


class RenewalReport(BaseModel):
    """Result of one ``SubscriptionManager.renew_expiring`` scan."""

    checked: int = 0
    renewed: list[CalendarSubscription] = Field(default_factory=list)
    failed: list[uuid.UUID] = Field(default_factory=list)


class ProviderStatus(BaseModel):
    """Credential-free view of a provider account and its linked sources."""

    id: uuid.UUID
    user_id: str
    kind: ProviderKind
    identifier: str
    token_expiry: datetime
    needs_reauth: bool
    last_auth_error: str | None = None
    sources: list[CalendarSource] = Field(default_factory=list)

    @classmethod
    def from_provider(
        cls, provider: CalendarProvider, sources: list[CalendarSource]
    ) -> ProviderStatus:
        return cls(
            id=provider.id,
            user_id=provider.user_id,
            kind=provider.kind,
            identifier=provider.identifier,
            token_expiry=provider.token_expiry,
            needs_reauth=provider.needs_reauth,
            last_auth_error=provider.last_auth_error,
            sources=sources,
        )


class NotificationReceipt(BaseModel):
    """Acknowledgement of one processed push notification."""

    source_id: uuid.UUID
    synced: bool = False
    skipped: bool = False
    sync_error: str | None = None
    renewed: bool = False


def normalize_color(value: Any) -> str:
    """Normalize ``#RRGGBB`` / ``RRGGBB`` colors to six lowercase hex digits."""
    if not isinstance(value, str):
        raise ValueError("color must be a string")
    normalized = value.strip().lstrip("#").lower()
    if _COLOR_PATTERN.fullmatch(normalized) is None:
        raise ValueError(f"color must be six hex digits, got {value!r}")
    return normalized
