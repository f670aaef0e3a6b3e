"""Push-channel lease lifecycle and inbound channel credential checks."""

from __future__ import annotations

import hmac
import logging
import secrets
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta

from calsync.calendar.errors import (
    CalendarError,
    InvalidChannelToken,
    StorageConflict,
    UnknownChannel,
    sanitize_error_message,
)
from calsync.calendar.models import (
    CalendarSource,
    CalendarSubscription,
    RenewalReport,
    ensure_utc,
    utc_now,
)
from calsync.calendar.provider import ProviderRegistry
from calsync.calendar.store import CalendarStore
from calsync.calendar.tokens import TokenGuard
from calsync.core.metrics import SyncMetrics

logger = logging.getLogger(__name__)

DEFAULT_RENEWAL_LEAD_TIME = timedelta(hours=24)
DEFAULT_CHANNEL_TTL = timedelta(days=7)

# Compared against when the channel id is unknown so both failure paths do the
# same work.
_DUMMY_VERIFIER = secrets.token_urlsafe(32)


class SubscriptionManager:
    """Creates, renews and validates push-notification leases.

    Lease rows are append-only: renewal inserts a new row and the row with
    the latest expiry is authoritative for its source.  Superseded rows stay
    valid for validation so notifications on an old channel are still
    accepted (optionally bounded by ``expired_channel_grace``).
    """

    def __init__(
        self,
        store: CalendarStore,
        registry: ProviderRegistry,
        token_guard: TokenGuard,
        *,
        webhook_url: str,
        renewal_lead_time: timedelta = DEFAULT_RENEWAL_LEAD_TIME,
        channel_ttl: timedelta = DEFAULT_CHANNEL_TTL,
        expired_channel_grace: timedelta | None = None,
        clock: Callable[[], datetime] = utc_now,
        metrics: SyncMetrics | None = None,
    ) -> None:
        self._store = store
        self._registry = registry
        self._token_guard = token_guard
        self._webhook_url = webhook_url
        self._renewal_lead_time = renewal_lead_time
        self._channel_ttl = channel_ttl
        self._expired_channel_grace = expired_channel_grace
        self._clock = clock
        self._metrics = metrics or SyncMetrics()

    @property
    def renewal_lead_time(self) -> timedelta:
        return self._renewal_lead_time

    async def latest_subscription(self, source_id: uuid.UUID) -> CalendarSubscription | None:
        return await self._store.latest_subscription(source_id)

    async def ensure_subscription(
        self,
        source_id: uuid.UUID,
        *,
        now: datetime | None = None,
        observed_expiry: datetime | None = None,
    ) -> CalendarSubscription:
        """Return a lease for *source_id* that outlives the renewal lead time.

        The stored lease is reused unless it is missing or its effective
        expiry (the earlier of the stored expiry and ``observed_expiry``, the
        expiry the provider last reported) falls within the lead time.
        """
        now = ensure_utc(now) if now is not None else self._clock()
        latest = await self._store.latest_subscription(source_id)
        if latest is not None:
            effective_expiry = latest.expires_at
            if observed_expiry is not None:
                effective_expiry = min(effective_expiry, ensure_utc(observed_expiry))
            if effective_expiry > now + self._renewal_lead_time:
                return latest

        source = await self._store.get_source(source_id)
        provider = await self._store.get_provider(source.provider_id)
        client = self._registry.for_kind(provider.kind)

        channel_id = str(uuid.uuid4())
        verifier = secrets.token_urlsafe(32)
        channel = await self._token_guard.call(
            provider,
            lambda access_token: client.create_push_channel(
                access_token,
                source.calendar_id,
                channel_id,
                verifier,
                self._webhook_url,
                self._channel_ttl,
            ),
            description=f"push channel for calendar '{source.calendar_id}'",
        )

        try:
            subscription = await self._store.insert_subscription(
                source_id=source_id,
                channel_id=channel.channel_id,
                verifier=verifier,
                resource_id=channel.resource_id,
                expires_at=channel.expires_at,
            )
        except StorageConflict:
            existing = await self._store.get_subscription_by_channel(channel.channel_id)
            if existing is None:
                raise
            logger.info("Subscription for channel %s was already stored", channel.channel_id)
            return existing

        self._metrics.subscription_created()
        logger.info(
            "Created push subscription for source %s (channel=%s, expires_at=%s)",
            source_id,
            subscription.channel_id,
            subscription.expires_at.isoformat(),
        )
        return subscription

    async def renew_expiring(self, now: datetime | None = None) -> RenewalReport:
        """Ensure a lease for every source that lacks one or whose lease expires soon.

        Per-source failures are logged and reported, never raised.
        """
        now = ensure_utc(now) if now is not None else self._clock()
        sources = await self._store.list_sources_needing_subscription(now + self._renewal_lead_time)
        report = RenewalReport(checked=len(sources))
        for source in sources:
            try:
                subscription = await self.ensure_subscription(source.id, now=now)
            except CalendarError as exc:
                logger.warning(
                    "Failed to renew subscription for source %s: %s",
                    source.id,
                    sanitize_error_message(exc),
                )
                report.failed.append(source.id)
                continue
            report.renewed.append(subscription)
        if sources:
            logger.info(
                "Subscription renewal: %d checked, %d renewed, %d failed",
                report.checked,
                len(report.renewed),
                len(report.failed),
            )
        return report

    async def validate(self, channel_id: str, channel_token: str) -> CalendarSource:
        """Resolve the source for an inbound notification.

        Unknown channel ids and verifier mismatches are indistinguishable to
        the caller apart from the exception subclass used for logging.
        """
        binding = await self._store.get_channel_binding(channel_id)
        if binding is None:
            hmac.compare_digest(_DUMMY_VERIFIER.encode(), channel_token.encode())
            raise UnknownChannel(f"unknown channel id {channel_id!r}")

        subscription, source = binding
        if not hmac.compare_digest(subscription.verifier.encode(), channel_token.encode()):
            raise InvalidChannelToken(f"token mismatch for channel {channel_id!r}")

        if self._expired_channel_grace is not None and subscription.expires_at < (
            self._clock() - self._expired_channel_grace
        ):
            raise InvalidChannelToken(f"channel {channel_id!r} expired past the grace period")

        return source
