"""Inbound push-notification handling."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from email.utils import parsedate_to_datetime

from calsync.calendar.errors import (
    CalendarError,
    MalformedNotification,
    WebhookAuthError,
    sanitize_error_message,
)
from calsync.calendar.models import NotificationReceipt, ensure_utc
from calsync.calendar.subscriptions import SubscriptionManager
from calsync.calendar.sync import SyncEngine
from calsync.core.logging import calendar_source_context
from calsync.core.metrics import SyncMetrics

logger = logging.getLogger(__name__)

_CHANNEL_ID_HEADERS = ("x-goog-channel-id", "channel-id")
_CHANNEL_TOKEN_HEADERS = ("x-goog-channel-token", "channel-token")
_CHANNEL_EXPIRATION_HEADERS = ("x-goog-channel-expiration", "channel-expiration")
_RESOURCE_STATE_HEADERS = ("x-goog-resource-state", "resource-state")
# Expiration headers are whole seconds; stored expiries keep milliseconds.
_EXPIRATION_HEADER_PRECISION = timedelta(seconds=1)


@dataclass(frozen=True)
class ChannelNotification:
    """Channel credentials and metadata carried by one push notification."""

    channel_id: str
    channel_token: str
    expiration: datetime | None = None
    resource_state: str | None = None


def _first_header(headers: Mapping[str, str], names: tuple[str, ...]) -> str | None:
    for name in names:
        value = headers.get(name)
        if value is not None and value.strip():
            return value.strip()
    return None


def parse_channel_expiration(value: str | None) -> datetime | None:
    """Parse an RFC 1123 (as sent by Google) or ISO 8601 expiration; ``None`` if unusable."""
    if value is None:
        return None
    try:
        return ensure_utc(parsedate_to_datetime(value))
    except (TypeError, ValueError):
        pass
    normalized = value[:-1] + "+00:00" if value.endswith("Z") else value
    try:
        return ensure_utc(datetime.fromisoformat(normalized))
    except ValueError:
        logger.debug("Ignoring unparseable channel expiration header: %r", value)
        return None


def parse_notification_headers(headers: Mapping[str, str]) -> ChannelNotification:
    """Extract channel fields from notification headers (case-insensitive).

    Raises:
        MalformedNotification: when the channel id or token is missing or blank.
    """
    lowered = {str(key).lower(): str(value) for key, value in headers.items()}
    channel_id = _first_header(lowered, _CHANNEL_ID_HEADERS)
    channel_token = _first_header(lowered, _CHANNEL_TOKEN_HEADERS)
    if channel_id is None or channel_token is None:
        raise MalformedNotification("notification is missing channel id or token headers")
    return ChannelNotification(
        channel_id=channel_id,
        channel_token=channel_token,
        expiration=parse_channel_expiration(_first_header(lowered, _CHANNEL_EXPIRATION_HEADERS)),
        resource_state=_first_header(lowered, _RESOURCE_STATE_HEADERS),
    )


class WebhookHandler:
    """Validates a push notification, syncs its source and tops up a shortened lease.

    Validation failures propagate so the HTTP layer can reject the request.
    Once a notification is authenticated it is always acknowledged: sync and
    renewal failures are logged and recorded on the receipt instead of raised.
    """

    def __init__(
        self,
        subscriptions: SubscriptionManager,
        sync_engine: SyncEngine,
        *,
        metrics: SyncMetrics | None = None,
    ) -> None:
        self._subscriptions = subscriptions
        self._sync_engine = sync_engine
        self._metrics = metrics or SyncMetrics()

    async def handle_notification(self, headers: Mapping[str, str]) -> NotificationReceipt:
        try:
            notification = parse_notification_headers(headers)
            source = await self._subscriptions.validate(
                notification.channel_id, notification.channel_token
            )
        except WebhookAuthError as exc:
            self._metrics.notification("rejected")
            logger.warning("Rejected calendar notification: %s", exc.detail or exc)
            raise

        self._metrics.notification("accepted")
        receipt = NotificationReceipt(source_id=source.id)
        with calendar_source_context(str(source.id)):
            logger.info(
                "Calendar notification for source %s (state=%s)",
                source.id,
                notification.resource_state or "unknown",
            )
            try:
                outcome = await self._sync_engine.sync(source.id)
            except CalendarError as exc:
                receipt.sync_error = sanitize_error_message(exc)
                logger.warning(
                    "Sync triggered by notification failed for source %s: %s",
                    source.id,
                    receipt.sync_error,
                )
            except Exception as exc:
                receipt.sync_error = sanitize_error_message(exc)
                logger.exception(
                    "Unexpected error syncing source %s after a notification", source.id
                )
            else:
                receipt.synced = not outcome.skipped
                receipt.skipped = outcome.skipped

            if notification.expiration is not None:
                receipt.renewed = await self._renew_if_shortened(
                    source.id, notification.channel_id, notification.expiration
                )
        return receipt

    async def _renew_if_shortened(
        self, source_id: uuid.UUID, channel_id: str, observed_expiry: datetime
    ) -> bool:
        try:
            latest = await self._subscriptions.latest_subscription(source_id)
            # An older channel's expiry says nothing about the current lease.
            if latest is None or latest.channel_id != channel_id:
                return False
            if observed_expiry >= latest.expires_at - _EXPIRATION_HEADER_PRECISION:
                return False
            logger.info(
                "Provider reports an earlier channel expiry for source %s (%s < %s)",
                source_id,
                observed_expiry.isoformat(),
                latest.expires_at.isoformat(),
            )
            subscription = await self._subscriptions.ensure_subscription(
                source_id, observed_expiry=observed_expiry
            )
        except CalendarError as exc:
            logger.warning(
                "Failed to renew shortened subscription for source %s: %s",
                source_id,
                sanitize_error_message(exc),
            )
            return False
        except Exception:
            logger.exception("Unexpected error renewing subscription for source %s", source_id)
            return False
        return subscription.id != latest.id
