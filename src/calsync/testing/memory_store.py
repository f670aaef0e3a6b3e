"""In-memory ``CalendarStore`` used by unit tests.

Every operation completes without yielding to the event loop, so each call is
atomic with respect to other tasks, which matches the transactional guarantees
of ``PostgresCalendarStore``.
"""

from __future__ import annotations

import uuid
from collections.abc import Sequence
from datetime import UTC, date, datetime, time, timedelta

from calsync.calendar.errors import RecordNotFound, StorageConflict, SyncClaimLost
from calsync.calendar.models import (
    CalendarItem,
    CalendarProvider,
    CalendarSource,
    CalendarSubscription,
    ProviderKind,
    SyncStatus,
    utc_now,
)
from calsync.calendar.store import CalendarStore


def _item_sort_key(item: CalendarItem) -> tuple[datetime, str]:
    start = item.start
    if isinstance(start, datetime):
        return start, item.event_id
    assert isinstance(start, date)
    return datetime.combine(start, time.min, tzinfo=UTC), item.event_id


class InMemoryCalendarStore(CalendarStore):
    """Dict-backed store with the same semantics as the PostgreSQL implementation."""

    def __init__(self) -> None:
        self.providers: dict[uuid.UUID, CalendarProvider] = {}
        self.sources: dict[uuid.UUID, CalendarSource] = {}
        self.subscriptions: dict[uuid.UUID, CalendarSubscription] = {}
        self.items: dict[tuple[uuid.UUID, str], CalendarItem] = {}

    # -- Provider accounts -------------------------------------------------

    async def create_provider(
        self,
        *,
        user_id: str,
        kind: ProviderKind,
        identifier: str,
        access_token: str,
        refresh_token: str,
        token_expiry: datetime,
    ) -> CalendarProvider:
        now = utc_now()
        provider = CalendarProvider(
            id=uuid.uuid4(),
            user_id=user_id,
            kind=kind,
            identifier=identifier,
            access_token=access_token,
            refresh_token=refresh_token,
            token_expiry=token_expiry,
            created_at=now,
            updated_at=now,
        )
        self.providers[provider.id] = provider
        return provider

    async def get_provider(self, provider_id: uuid.UUID) -> CalendarProvider:
        try:
            return self.providers[provider_id]
        except KeyError:
            raise RecordNotFound("provider", provider_id) from None

    async def delete_provider(self, provider_id: uuid.UUID) -> None:
        if self.providers.pop(provider_id, None) is None:
            raise RecordNotFound("provider", provider_id)
        for source in [s for s in self.sources.values() if s.provider_id == provider_id]:
            self._drop_source(source.id)

    async def update_provider_tokens(
        self,
        provider_id: uuid.UUID,
        *,
        access_token: str,
        token_expiry: datetime,
    ) -> CalendarProvider:
        provider = await self.get_provider(provider_id)
        updated = provider.model_copy(
            update={
                "access_token": access_token,
                "token_expiry": token_expiry,
                "needs_reauth": False,
                "last_auth_error": None,
                "updated_at": utc_now(),
            }
        )
        self.providers[provider_id] = updated
        return updated

    async def mark_provider_needs_reauth(self, provider_id: uuid.UUID, error: str) -> None:
        provider = self.providers.get(provider_id)
        if provider is None:
            return
        self.providers[provider_id] = provider.model_copy(
            update={"needs_reauth": True, "last_auth_error": error, "updated_at": utc_now()}
        )

    # -- Sources -------------------------------------------------------------

    async def create_source(
        self,
        *,
        provider_id: uuid.UUID,
        calendar_id: str,
        name: str,
        color: str,
    ) -> CalendarSource:
        if provider_id not in self.providers:
            raise RecordNotFound("provider", provider_id)
        if await self.find_source_by_calendar(provider_id, calendar_id) is not None:
            raise StorageConflict(
                "calendar_sources_provider_calendar_key",
                f"Calendar '{calendar_id}' is already linked",
            )
        now = utc_now()
        source = CalendarSource(
            id=uuid.uuid4(),
            provider_id=provider_id,
            calendar_id=calendar_id,
            name=name,
            color=color,
            created_at=now,
            updated_at=now,
        )
        self.sources[source.id] = source
        return source

    async def get_source(self, source_id: uuid.UUID) -> CalendarSource:
        try:
            return self.sources[source_id]
        except KeyError:
            raise RecordNotFound("source", source_id) from None

    async def find_source_by_calendar(
        self, provider_id: uuid.UUID, calendar_id: str
    ) -> CalendarSource | None:
        for source in self.sources.values():
            if source.provider_id == provider_id and source.calendar_id == calendar_id:
                return source
        return None

    async def list_sources(self, provider_id: uuid.UUID | None = None) -> list[CalendarSource]:
        return [
            source
            for source in self.sources.values()
            if provider_id is None or source.provider_id == provider_id
        ]

    async def delete_source(self, source_id: uuid.UUID) -> None:
        if source_id not in self.sources:
            raise RecordNotFound("source", source_id)
        self._drop_source(source_id)

    def _drop_source(self, source_id: uuid.UUID) -> None:
        self.sources.pop(source_id, None)
        for key in [k for k in self.items if k[0] == source_id]:
            del self.items[key]
        for sub_id in [s.id for s in self.subscriptions.values() if s.source_id == source_id]:
            del self.subscriptions[sub_id]

    def _update_source(self, source_id: uuid.UUID, **fields: object) -> CalendarSource:
        source = self.sources.get(source_id)
        if source is None:
            raise RecordNotFound("source", source_id)
        fields["updated_at"] = utc_now()
        updated = source.model_copy(update=fields)
        self.sources[source_id] = updated
        return updated

    # -- Sync state ----------------------------------------------------------

    async def claim_source_sync(
        self,
        source_id: uuid.UUID,
        owner: str,
        *,
        now: datetime,
        stale_after: timedelta,
    ) -> bool:
        source = await self.get_source(source_id)
        claimed_at = source.sync_claimed_at
        if claimed_at is not None and claimed_at >= now - stale_after:
            return False
        self._update_source(
            source_id,
            sync_claimed_at=now,
            sync_claim_owner=owner,
            sync_status=SyncStatus.syncing,
        )
        return True

    def _check_claim(self, source_id: uuid.UUID, claim_owner: str | None) -> None:
        source = self.sources.get(source_id)
        if source is None:
            raise RecordNotFound("source", source_id)
        if claim_owner is not None and source.sync_claim_owner != claim_owner:
            raise SyncClaimLost(source_id, claim_owner)

    async def reset_source(self, source_id: uuid.UUID, *, claim_owner: str | None = None) -> int:
        self._check_claim(source_id, claim_owner)
        self._update_source(source_id, sync_token=None)
        keys = [k for k in self.items if k[0] == source_id]
        for key in keys:
            del self.items[key]
        return len(keys)

    async def apply_sync_batch(
        self,
        source_id: uuid.UUID,
        *,
        upserts: Sequence[CalendarItem],
        removals: Sequence[str],
        next_sync_token: str,
        synced_at: datetime,
        claim_owner: str | None = None,
    ) -> tuple[int, int]:
        self._check_claim(source_id, claim_owner)
        deleted = 0
        for event_id in removals:
            if self.items.pop((source_id, event_id), None) is not None:
                deleted += 1
        now = utc_now()
        for item in upserts:
            key = (source_id, item.event_id)
            existing = self.items.get(key)
            self.items[key] = item.model_copy(
                update={
                    "id": existing.id if existing is not None else uuid.uuid4(),
                    "source_id": source_id,
                    "created_at": existing.created_at if existing is not None else now,
                    "updated_at": now,
                }
            )
        self._update_source(
            source_id,
            sync_token=next_sync_token,
            last_sync=synced_at,
            sync_status=SyncStatus.synced,
            last_sync_error=None,
            sync_claimed_at=None,
            sync_claim_owner=None,
        )
        return len(upserts), deleted

    async def mark_sync_failed(
        self,
        source_id: uuid.UUID,
        error: str,
        *,
        claim_owner: str | None = None,
    ) -> bool:
        source = self.sources.get(source_id)
        if source is None:
            return False
        if claim_owner is not None and source.sync_claim_owner != claim_owner:
            return False
        self._update_source(
            source_id,
            sync_status=SyncStatus.failed,
            last_sync_error=error,
            sync_claimed_at=None,
            sync_claim_owner=None,
        )
        return True

    # -- Items ---------------------------------------------------------------

    async def list_items(self, source_id: uuid.UUID) -> list[CalendarItem]:
        items = [item for (sid, _), item in self.items.items() if sid == source_id]
        return sorted(items, key=_item_sort_key)

    # -- Subscriptions -------------------------------------------------------

    async def insert_subscription(
        self,
        *,
        source_id: uuid.UUID,
        channel_id: str,
        verifier: str,
        resource_id: str | None,
        expires_at: datetime,
    ) -> CalendarSubscription:
        if source_id not in self.sources:
            raise RecordNotFound("source", source_id)
        if await self.get_subscription_by_channel(channel_id) is not None:
            raise StorageConflict("calendar_subscriptions_channel_id_key")
        subscription = CalendarSubscription(
            id=uuid.uuid4(),
            source_id=source_id,
            channel_id=channel_id,
            verifier=verifier,
            resource_id=resource_id,
            expires_at=expires_at,
            created_at=utc_now(),
        )
        self.subscriptions[subscription.id] = subscription
        return subscription

    async def latest_subscription(self, source_id: uuid.UUID) -> CalendarSubscription | None:
        candidates = [s for s in self.subscriptions.values() if s.source_id == source_id]
        if not candidates:
            return None
        return max(candidates, key=lambda s: (s.expires_at, s.created_at or s.expires_at))

    async def get_subscription_by_channel(self, channel_id: str) -> CalendarSubscription | None:
        for subscription in self.subscriptions.values():
            if subscription.channel_id == channel_id:
                return subscription
        return None

    async def get_channel_binding(
        self, channel_id: str
    ) -> tuple[CalendarSubscription, CalendarSource] | None:
        subscription = await self.get_subscription_by_channel(channel_id)
        if subscription is None or subscription.source_id not in self.sources:
            return None
        return subscription, self.sources[subscription.source_id]

    async def list_sources_needing_subscription(self, threshold: datetime) -> list[CalendarSource]:
        needing: list[CalendarSource] = []
        for source in self.sources.values():
            latest = await self.latest_subscription(source.id)
            if latest is None or latest.expires_at <= threshold:
                needing.append(source)
        return needing

    async def prune_subscriptions(self, before: datetime) -> int:
        pruned = 0
        for subscription in list(self.subscriptions.values()):
            if subscription.expires_at >= before:
                continue
            latest = await self.latest_subscription(subscription.source_id)
            if latest is not None and latest.expires_at > subscription.expires_at:
                del self.subscriptions[subscription.id]
                pruned += 1
        return pruned
