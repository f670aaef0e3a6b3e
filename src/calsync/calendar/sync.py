"""Per-source incremental synchronization.

One ``SyncEngine.sync`` call moves a source through
``never_synced|synced|failed -> syncing -> synced|failed``:

1. take the per-source claim (a held, non-stale claim makes the call a no-op)
2. fetch deltas since the stored sync token through ``TokenGuard``
3. on an invalidated token, wipe the mirror and restart as a full sync
4. apply the whole delta and the next token in one store transaction
"""

from __future__ import annotations

import logging
import os
import socket
import time
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta

from calsync.calendar.errors import (
    CalendarError,
    SyncClaimLost,
    SyncTokenInvalid,
    sanitize_error_message,
)
from calsync.calendar.models import (
    CalendarItem,
    CalendarProvider,
    CalendarSource,
    EventDeltaPage,
    ProviderEvent,
    SyncOutcome,
    SyncStatus,
    utc_now,
)
from calsync.calendar.provider import ProviderRegistry
from calsync.calendar.store import CalendarStore
from calsync.calendar.tokens import TokenGuard
from calsync.core.logging import calendar_source_context
from calsync.core.metrics import SyncMetrics

logger = logging.getLogger(__name__)

DEFAULT_CLAIM_TIMEOUT = timedelta(seconds=300)


def _default_owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


def collapse_events(events: list[ProviderEvent]) -> list[ProviderEvent]:
    """Keep only the last occurrence of each event id, ordered by that occurrence."""
    latest: dict[str, ProviderEvent] = {}
    for event in events:
        latest.pop(event.event_id, None)
        latest[event.event_id] = event
    return list(latest.values())


class SyncEngine:
    """Mirrors provider calendars into the store, one source at a time."""

    def __init__(
        self,
        store: CalendarStore,
        registry: ProviderRegistry,
        token_guard: TokenGuard,
        *,
        claim_timeout: timedelta = DEFAULT_CLAIM_TIMEOUT,
        owner: str | None = None,
        clock: Callable[[], datetime] = utc_now,
        metrics: SyncMetrics | None = None,
    ) -> None:
        self._store = store
        self._registry = registry
        self._token_guard = token_guard
        self._claim_timeout = claim_timeout
        self._owner_prefix = owner or _default_owner()
        self._clock = clock
        self._metrics = metrics or SyncMetrics()

    async def sync(self, source_id: uuid.UUID) -> SyncOutcome:
        """Synchronize one source.

        Returns a ``skipped`` outcome when another sync holds the source's
        claim.  Any failure before the batch commits marks the source
        ``failed`` (keeping its sync token) and is re-raised.  When another
        owner took over a stale claim, this run's writes are discarded and
        ``SyncClaimLost`` is raised without touching the source.
        """
        with calendar_source_context(str(source_id)):
            claim_owner = f"{self._owner_prefix}:{uuid.uuid4().hex[:8]}"
            claimed = await self._store.claim_source_sync(
                source_id,
                claim_owner,
                now=self._clock(),
                stale_after=self._claim_timeout,
            )
            if not claimed:
                logger.info("Sync already in progress for source %s; skipping", source_id)
                self._metrics.sync_run("skipped")
                source = await self._store.get_source(source_id)
                return SyncOutcome(source_id=source_id, status=source.sync_status, skipped=True)

            started = time.monotonic()
            try:
                outcome = await self._run(source_id, claim_owner)
            except SyncClaimLost:
                logger.warning(
                    "Sync claim on source %s was taken over; discarding this run's changes",
                    source_id,
                )
                self._metrics.sync_run("claim_lost")
                raise
            except Exception as exc:
                message = sanitize_error_message(exc)
                marked = await self._store.mark_sync_failed(
                    source_id, message, claim_owner=claim_owner
                )
                if not marked:
                    logger.info(
                        "Source %s is no longer claimed by this sync; leaving its status unchanged",
                        source_id,
                    )
                self._metrics.sync_run("failed")
                if isinstance(exc, CalendarError):
                    logger.warning("Sync failed for source %s: %s", source_id, message)
                else:
                    logger.exception("Unexpected error while syncing source %s", source_id)
                raise
            finally:
                self._metrics.record_sync_duration((time.monotonic() - started) * 1000)

            self._metrics.sync_run("synced")
            self._metrics.items_applied(upserted=outcome.upserted, deleted=outcome.deleted)
            logger.info(
                "Synced source %s: %d upserted, %d deleted%s",
                source_id,
                outcome.upserted,
                outcome.deleted,
                " (full resync)" if outcome.full_resync else "",
            )
            return outcome

    async def _run(self, source_id: uuid.UUID, claim_owner: str) -> SyncOutcome:
        source = await self._store.get_source(source_id)
        provider = await self._store.get_provider(source.provider_id)

        full_resync = False
        try:
            page = await self._fetch(provider, source, source.sync_token)
        except SyncTokenInvalid:
            if source.sync_token is None:
                raise
            logger.info(
                "Sync token for source %s was invalidated; clearing items for a full resync",
                source_id,
            )
            removed = await self._store.reset_source(source_id, claim_owner=claim_owner)
            logger.debug("Removed %d item(s) from source %s before full resync", removed, source_id)
            self._metrics.full_resync()
            full_resync = True
            page = await self._fetch(provider, source, None)

        upserts: list[CalendarItem] = []
        removals: list[str] = []
        for event in collapse_events(page.events):
            if event.removed:
                removals.append(event.event_id)
            else:
                upserts.append(CalendarItem.from_event(source_id, event))

        upserted, deleted = await self._store.apply_sync_batch(
            source_id,
            upserts=upserts,
            removals=removals,
            next_sync_token=page.next_sync_token,
            synced_at=self._clock(),
            claim_owner=claim_owner,
        )
        return SyncOutcome(
            source_id=source_id,
            status=SyncStatus.synced,
            upserted=upserted,
            deleted=deleted,
            full_resync=full_resync,
            next_sync_token=page.next_sync_token,
        )

    async def _fetch(
        self,
        provider: CalendarProvider,
        source: CalendarSource,
        sync_token: str | None,
    ) -> EventDeltaPage:
        client = self._registry.for_kind(provider.kind)
        return await self._token_guard.call(
            provider,
            lambda access_token: client.list_event_deltas(
                access_token, source.calendar_id, sync_token
            ),
            description=f"event deltas for calendar '{source.calendar_id}'",
        )
