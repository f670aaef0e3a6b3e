"""Calendar-source management on top of the sync core.

``CalendarService`` wires the store, provider registry, TokenGuard, SyncEngine
and SubscriptionManager together and exposes the account/source operations
used by the HTTP API and the CLI.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta

from calsync.calendar.errors import CalendarError, StorageConflict, sanitize_error_message
from calsync.calendar.models import (
    DEFAULT_SOURCE_COLOR,
    CalendarItem,
    CalendarSource,
    CalendarSummary,
    ProviderStatus,
    RenewalReport,
    SyncOutcome,
    normalize_color,
    utc_now,
)
from calsync.calendar.provider import ProviderRegistry
from calsync.calendar.store import CalendarStore
from calsync.calendar.subscriptions import SubscriptionManager
from calsync.calendar.sync import SyncEngine
from calsync.calendar.tokens import TokenGuard

logger = logging.getLogger(__name__)


class CalendarService:
    def __init__(
        self,
        store: CalendarStore,
        registry: ProviderRegistry,
        token_guard: TokenGuard,
        sync_engine: SyncEngine,
        subscriptions: SubscriptionManager,
    ) -> None:
        self.store = store
        self.registry = registry
        self.token_guard = token_guard
        self.sync_engine = sync_engine
        self.subscriptions = subscriptions

    # -- Provider accounts -------------------------------------------------

    async def provider_status(self, provider_id: uuid.UUID) -> ProviderStatus:
        provider = await self.store.get_provider(provider_id)
        sources = await self.store.list_sources(provider_id)
        return ProviderStatus.from_provider(provider, sources)

    async def unlink_provider(self, provider_id: uuid.UUID) -> None:
        await self.store.delete_provider(provider_id)
        logger.info("Unlinked provider account %s", provider_id)

    async def list_calendars(self, provider_id: uuid.UUID) -> list[CalendarSummary]:
        """List the account's calendars, flagging the ones already linked as sources."""
        provider = await self.store.get_provider(provider_id)
        client = self.registry.for_kind(provider.kind)
        calendars = await self.token_guard.call(
            provider, client.list_calendars, description="calendar list"
        )
        linked = {source.calendar_id for source in await self.store.list_sources(provider_id)}
        return [
            calendar.model_copy(update={"linked": calendar.calendar_id in linked})
            for calendar in calendars
        ]

    # -- Sources -------------------------------------------------------------

    async def link_source(
        self,
        provider_id: uuid.UUID,
        calendar_id: str,
        *,
        name: str | None = None,
        color: str | None = None,
        subscribe: bool = True,
    ) -> CalendarSource:
        """Link a provider calendar as a source.

        Linking a calendar that is already linked returns the existing source.
        When ``subscribe`` is set a push lease is ensured; a failure there is
        logged and leaves the source linked (the renewal scan retries it).
        """
        await self.store.get_provider(provider_id)
        source = await self.store.find_source_by_calendar(provider_id, calendar_id)
        if source is None:
            try:
                source = await self.store.create_source(
                    provider_id=provider_id,
                    calendar_id=calendar_id,
                    name=(name or "").strip() or calendar_id,
                    color=normalize_color(color) if color else DEFAULT_SOURCE_COLOR,
                )
            except StorageConflict:
                source = await self.store.find_source_by_calendar(provider_id, calendar_id)
                if source is None:
                    raise
            else:
                logger.info("Linked calendar '%s' as source %s", calendar_id, source.id)

        if subscribe:
            try:
                await self.subscriptions.ensure_subscription(source.id)
            except CalendarError as exc:
                logger.warning(
                    "Could not subscribe to calendar '%s' (source %s): %s",
                    calendar_id,
                    source.id,
                    sanitize_error_message(exc),
                )
        return source

    async def unlink_source(self, source_id: uuid.UUID) -> None:
        await self.store.delete_source(source_id)
        logger.info("Unlinked source %s", source_id)

    async def sync_now(self, source_id: uuid.UUID) -> SyncOutcome:
        return await self.sync_engine.sync(source_id)

    async def source_items(
        self, source_id: uuid.UUID
    ) -> tuple[CalendarSource, list[CalendarItem]]:
        source = await self.store.get_source(source_id)
        return source, await self.store.list_items(source_id)

    # -- Subscriptions -------------------------------------------------------

    async def renew_subscriptions(self, now: datetime | None = None) -> RenewalReport:
        return await self.subscriptions.renew_expiring(now)

    async def prune_subscriptions(self, older_than: timedelta, now: datetime | None = None) -> int:
        cutoff = (now or utc_now()) - older_than
        return await self.store.prune_subscriptions(cutoff)
