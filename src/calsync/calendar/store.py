"""Persistence contract for calendar records and its PostgreSQL implementation.

``CalendarStore`` is the only way the sync core touches storage.  Operations
that must be atomic (``apply_sync_batch``, ``reset_source``) are single
transactions in every implementation, and the per-source sync claim is a
conditional update so it works across processes.  Sync-state writes made on
behalf of a claim only land while their owner still holds it.
"""

from __future__ import annotations

import abc
import logging
import uuid
from collections.abc import Sequence
from datetime import datetime, timedelta
from typing import Any

import asyncpg

from calsync.calendar.errors import RecordNotFound, StorageConflict, SyncClaimLost
from calsync.calendar.models import (
    CalendarItem,
    CalendarProvider,
    CalendarSource,
    CalendarSubscription,
    ProviderKind,
    SyncStatus,
)

logger = logging.getLogger(__name__)


class CalendarStore(abc.ABC):
    """Storage operations needed by TokenGuard, SyncEngine and SubscriptionManager."""

    # -- Provider accounts -------------------------------------------------

    @abc.abstractmethod
    async def create_provider(
        self,
        *,
        user_id: str,
        kind: ProviderKind,
        identifier: str,
        access_token: str,
        refresh_token: str,
        token_expiry: datetime,
    ) -> CalendarProvider: ...

    @abc.abstractmethod
    async def get_provider(self, provider_id: uuid.UUID) -> CalendarProvider:
        """Return the provider account or raise ``RecordNotFound``."""
        ...

    @abc.abstractmethod
    async def delete_provider(self, provider_id: uuid.UUID) -> None:
        """Delete the account and cascade to its sources."""
        ...

    @abc.abstractmethod
    async def update_provider_tokens(
        self,
        provider_id: uuid.UUID,
        *,
        access_token: str,
        token_expiry: datetime,
    ) -> CalendarProvider:
        """Persist refreshed credentials and clear any re-authorization flag."""
        ...

    @abc.abstractmethod
    async def mark_provider_needs_reauth(self, provider_id: uuid.UUID, error: str) -> None: ...

    # -- Sources -------------------------------------------------------------

    @abc.abstractmethod
    async def create_source(
        self,
        *,
        provider_id: uuid.UUID,
        calendar_id: str,
        name: str,
        color: str,
    ) -> CalendarSource:
        """Insert a source; raise ``StorageConflict`` if the calendar is already linked."""
        ...

    @abc.abstractmethod
    async def get_source(self, source_id: uuid.UUID) -> CalendarSource: ...

    @abc.abstractmethod
    async def find_source_by_calendar(
        self, provider_id: uuid.UUID, calendar_id: str
    ) -> CalendarSource | None: ...

    @abc.abstractmethod
    async def list_sources(self, provider_id: uuid.UUID | None = None) -> list[CalendarSource]: ...

    @abc.abstractmethod
    async def delete_source(self, source_id: uuid.UUID) -> None:
        """Delete the source and cascade to its items and subscriptions."""
        ...

    # -- Sync state ----------------------------------------------------------

    @abc.abstractmethod
    async def claim_source_sync(
        self,
        source_id: uuid.UUID,
        owner: str,
        *,
        now: datetime,
        stale_after: timedelta,
    ) -> bool:
        """Take the per-source sync claim.

        Succeeds when no claim is held or the held claim is older than
        ``stale_after``.  Returns ``False`` when another owner holds a live
        claim.  Raises ``RecordNotFound`` for an unknown source.
        """
        ...

    @abc.abstractmethod
    async def reset_source(self, source_id: uuid.UUID, *, claim_owner: str | None = None) -> int:
        """Clear the sync token and delete every item of the source in one transaction.

        When ``claim_owner`` is given the reset only happens while that owner
        still holds the claim; otherwise ``SyncClaimLost`` is raised and
        nothing changes.  Returns the number of deleted items.
        """
        ...

    @abc.abstractmethod
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
        """Apply one delta atomically and release the claim.

        Upserts replace by ``(source_id, event_id)``; removals of missing rows
        are no-ops.  The token, ``last_sync`` and ``synced`` status are
        persisted in the same transaction.  When ``claim_owner`` is given and
        no longer holds the claim, ``SyncClaimLost`` is raised and the whole
        batch is rolled back.  Returns ``(upserted, deleted)``.
        """
        ...

    @abc.abstractmethod
    async def mark_sync_failed(
        self,
        source_id: uuid.UUID,
        error: str,
        *,
        claim_owner: str | None = None,
    ) -> bool:
        """Record a failed sync and release the claim, leaving the token untouched.

        With ``claim_owner`` the row is only updated while that owner holds
        the claim.  Returns whether the source was updated.
        """
        ...

    # -- Items ---------------------------------------------------------------

    @abc.abstractmethod
    async def list_items(self, source_id: uuid.UUID) -> list[CalendarItem]:
        """Return the mirrored items of a source ordered by start."""
        ...

    # -- Subscriptions -------------------------------------------------------

    @abc.abstractmethod
    async def insert_subscription(
        self,
        *,
        source_id: uuid.UUID,
        channel_id: str,
        verifier: str,
        resource_id: str | None,
        expires_at: datetime,
    ) -> CalendarSubscription:
        """Insert a lease row; raise ``StorageConflict`` on a duplicate channel id."""
        ...

    @abc.abstractmethod
    async def latest_subscription(self, source_id: uuid.UUID) -> CalendarSubscription | None: ...

    @abc.abstractmethod
    async def get_subscription_by_channel(self, channel_id: str) -> CalendarSubscription | None: ...

    @abc.abstractmethod
    async def get_channel_binding(
        self, channel_id: str
    ) -> tuple[CalendarSubscription, CalendarSource] | None:
        """Return the lease for *channel_id* together with its source in one read."""
        ...

    @abc.abstractmethod
    async def list_sources_needing_subscription(self, threshold: datetime) -> list[CalendarSource]:
        """Sources whose latest lease expires at or before *threshold*, or that have none."""
        ...

    @abc.abstractmethod
    async def prune_subscriptions(self, before: datetime) -> int:
        """Delete superseded leases that expired before *before*; keep each source's latest."""
        ...


# ---------------------------------------------------------------------------
# PostgreSQL
# ---------------------------------------------------------------------------

_PROVIDER_COLUMNS = """
    id, user_id, kind, identifier, access_token, refresh_token, token_expiry,
    needs_reauth, last_auth_error, created_at, updated_at
"""

_SOURCE_COLUMNS = """
    id, provider_id, calendar_id, name, color, last_sync, sync_token,
    sync_status, last_sync_error, sync_claimed_at, sync_claim_owner,
    created_at, updated_at
"""

_SUBSCRIPTION_COLUMNS = """
    id, source_id, channel_id, verifier, resource_id, expires_at, created_at
"""

_ITEM_COLUMNS = """
    id, source_id, event_id, title, start_date, start_time, end_date, end_time,
    html_link, created_at, updated_at
"""


def _row_dict(row: asyncpg.Record | None) -> dict[str, Any] | None:
    return dict(row) if row is not None else None


class PostgresCalendarStore(CalendarStore):
    """``CalendarStore`` over an asyncpg pool (tables from the calendar migrations)."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

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
        row = await self._pool.fetchrow(
            f"""
            INSERT INTO calendar_providers
                (user_id, kind, identifier, access_token, refresh_token, token_expiry)
            VALUES ($1, $2, $3, $4, $5, $6)
            RETURNING {_PROVIDER_COLUMNS}
            """,
            user_id,
            str(kind),
            identifier,
            access_token,
            refresh_token,
            token_expiry,
        )
        return CalendarProvider.model_validate(_row_dict(row))

    async def get_provider(self, provider_id: uuid.UUID) -> CalendarProvider:
        row = await self._pool.fetchrow(
            f"SELECT {_PROVIDER_COLUMNS} FROM calendar_providers WHERE id = $1",
            provider_id,
        )
        if row is None:
            raise RecordNotFound("provider", provider_id)
        return CalendarProvider.model_validate(_row_dict(row))

    async def delete_provider(self, provider_id: uuid.UUID) -> None:
        deleted = await self._pool.fetchval(
            "DELETE FROM calendar_providers WHERE id = $1 RETURNING id",
            provider_id,
        )
        if deleted is None:
            raise RecordNotFound("provider", provider_id)

    async def update_provider_tokens(
        self,
        provider_id: uuid.UUID,
        *,
        access_token: str,
        token_expiry: datetime,
    ) -> CalendarProvider:
        row = await self._pool.fetchrow(
            f"""
            UPDATE calendar_providers
            SET access_token = $2,
                token_expiry = $3,
                needs_reauth = false,
                last_auth_error = NULL,
                updated_at = now()
            WHERE id = $1
            RETURNING {_PROVIDER_COLUMNS}
            """,
            provider_id,
            access_token,
            token_expiry,
        )
        if row is None:
            raise RecordNotFound("provider", provider_id)
        return CalendarProvider.model_validate(_row_dict(row))

    async def mark_provider_needs_reauth(self, provider_id: uuid.UUID, error: str) -> None:
        await self._pool.execute(
            """
            UPDATE calendar_providers
            SET needs_reauth = true, last_auth_error = $2, updated_at = now()
            WHERE id = $1
            """,
            provider_id,
            error,
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
        try:
            row = await self._pool.fetchrow(
                f"""
                INSERT INTO calendar_sources (provider_id, calendar_id, name, color)
                VALUES ($1, $2, $3, $4)
                RETURNING {_SOURCE_COLUMNS}
                """,
                provider_id,
                calendar_id,
                name,
                color,
            )
        except asyncpg.UniqueViolationError as exc:
            raise StorageConflict(
                "calendar_sources_provider_calendar_key",
                f"Calendar '{calendar_id}' is already linked",
            ) from exc
        except asyncpg.ForeignKeyViolationError as exc:
            raise RecordNotFound("provider", provider_id) from exc
        return CalendarSource.model_validate(_row_dict(row))

    async def get_source(self, source_id: uuid.UUID) -> CalendarSource:
        row = await self._pool.fetchrow(
            f"SELECT {_SOURCE_COLUMNS} FROM calendar_sources WHERE id = $1",
            source_id,
        )
        if row is None:
            raise RecordNotFound("source", source_id)
        return CalendarSource.model_validate(_row_dict(row))

    async def find_source_by_calendar(
        self, provider_id: uuid.UUID, calendar_id: str
    ) -> CalendarSource | None:
        row = await self._pool.fetchrow(
            f"""
            SELECT {_SOURCE_COLUMNS} FROM calendar_sources
            WHERE provider_id = $1 AND calendar_id = $2
            """,
            provider_id,
            calendar_id,
        )
        return CalendarSource.model_validate(_row_dict(row)) if row is not None else None

    async def list_sources(self, provider_id: uuid.UUID | None = None) -> list[CalendarSource]:
        if provider_id is None:
            rows = await self._pool.fetch(
                f"SELECT {_SOURCE_COLUMNS} FROM calendar_sources ORDER BY created_at, id"
            )
        else:
            rows = await self._pool.fetch(
                f"""
                SELECT {_SOURCE_COLUMNS} FROM calendar_sources
                WHERE provider_id = $1
                ORDER BY created_at, id
                """,
                provider_id,
            )
        return [CalendarSource.model_validate(dict(row)) for row in rows]

    async def delete_source(self, source_id: uuid.UUID) -> None:
        deleted = await self._pool.fetchval(
            "DELETE FROM calendar_sources WHERE id = $1 RETURNING id",
            source_id,
        )
        if deleted is None:
            raise RecordNotFound("source", source_id)

    # -- Sync state ----------------------------------------------------------

    async def claim_source_sync(
        self,
        source_id: uuid.UUID,
        owner: str,
        *,
        now: datetime,
        stale_after: timedelta,
    ) -> bool:
        claimed = await self._pool.fetchval(
            """
            UPDATE calendar_sources
            SET sync_claimed_at = $3,
                sync_claim_owner = $2,
                sync_status = 'syncing',
                updated_at = now()
            WHERE id = $1
              AND (sync_claimed_at IS NULL OR sync_claimed_at < $4)
            RETURNING id
            """,
            source_id,
            owner,
            now,
            now - stale_after,
        )
        if claimed is not None:
            return True
        exists = await self._pool.fetchval(
            "SELECT 1 FROM calendar_sources WHERE id = $1", source_id
        )
        if not exists:
            raise RecordNotFound("source", source_id)
        return False

    async def reset_source(self, source_id: uuid.UUID, *, claim_owner: str | None = None) -> int:
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                updated = await conn.fetchval(
                    """
                    UPDATE calendar_sources
                    SET sync_token = NULL, updated_at = now()
                    WHERE id = $1
                      AND ($2::text IS NULL OR sync_claim_owner = $2)
                    RETURNING id
                    """,
                    source_id,
                    claim_owner,
                )
                if updated is None:
                    await _raise_claim_missing(conn, source_id, claim_owner)
                status = await conn.execute(
                    "DELETE FROM calendar_items WHERE source_id = $1",
                    source_id,
                )
        return _affected_rows(status)

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
        deleted = 0
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                # Lock the source row first; a lost claim aborts before any item write.
                updated = await conn.fetchval(
                    """
                    UPDATE calendar_sources
                    SET sync_token = $2,
                        last_sync = $3,
                        sync_status = 'synced',
                        last_sync_error = NULL,
                        sync_claimed_at = NULL,
                        sync_claim_owner = NULL,
                        updated_at = now()
                    WHERE id = $1
                      AND ($4::text IS NULL OR sync_claim_owner = $4)
                    RETURNING id
                    """,
                    source_id,
                    next_sync_token,
                    synced_at,
                    claim_owner,
                )
                if updated is None:
                    await _raise_claim_missing(conn, source_id, claim_owner)
                if removals:
                    status = await conn.execute(
                        """
                        DELETE FROM calendar_items
                        WHERE source_id = $1 AND event_id = ANY($2::text[])
                        """,
                        source_id,
                        list(removals),
                    )
                    deleted = _affected_rows(status)
                if upserts:
                    await conn.executemany(
                        """
                        INSERT INTO calendar_items
                            (source_id, event_id, title, start_date, start_time,
                             end_date, end_time, html_link)
                        VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                        ON CONFLICT (source_id, event_id) DO UPDATE
                        SET title = EXCLUDED.title,
                            start_date = EXCLUDED.start_date,
                            start_time = EXCLUDED.start_time,
                            end_date = EXCLUDED.end_date,
                            end_time = EXCLUDED.end_time,
                            html_link = EXCLUDED.html_link,
                            updated_at = now()
                        """,
                        [
                            (
                                source_id,
                                item.event_id,
                                item.title,
                                item.start_date,
                                item.start_time,
                                item.end_date,
                                item.end_time,
                                item.html_link,
                            )
                            for item in upserts
                        ],
                    )
        return len(upserts), deleted

    async def mark_sync_failed(
        self,
        source_id: uuid.UUID,
        error: str,
        *,
        claim_owner: str | None = None,
    ) -> bool:
        updated = await self._pool.fetchval(
            """
            UPDATE calendar_sources
            SET sync_status = $2,
                last_sync_error = $3,
                sync_claimed_at = NULL,
                sync_claim_owner = NULL,
                updated_at = now()
            WHERE id = $1
              AND ($4::text IS NULL OR sync_claim_owner = $4)
            RETURNING id
            """,
            source_id,
            str(SyncStatus.failed),
            error,
            claim_owner,
        )
        return updated is not None

    # -- Items ---------------------------------------------------------------

    async def list_items(self, source_id: uuid.UUID) -> list[CalendarItem]:
        rows = await self._pool.fetch(
            f"""
            SELECT {_ITEM_COLUMNS} FROM calendar_items
            WHERE source_id = $1
            ORDER BY COALESCE(start_time, start_date::timestamp AT TIME ZONE 'UTC'), event_id
            """,
            source_id,
        )
        return [CalendarItem.model_validate(dict(row)) for row in rows]

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
        try:
            row = await self._pool.fetchrow(
                f"""
                INSERT INTO calendar_subscriptions
                    (source_id, channel_id, verifier, resource_id, expires_at)
                VALUES ($1, $2, $3, $4, $5)
                RETURNING {_SUBSCRIPTION_COLUMNS}
                """,
                source_id,
                channel_id,
                verifier,
                resource_id,
                expires_at,
            )
        except asyncpg.UniqueViolationError as exc:
            raise StorageConflict("calendar_subscriptions_channel_id_key") from exc
        except asyncpg.ForeignKeyViolationError as exc:
            raise RecordNotFound("source", source_id) from exc
        return CalendarSubscription.model_validate(_row_dict(row))

    async def latest_subscription(self, source_id: uuid.UUID) -> CalendarSubscription | None:
        row = await self._pool.fetchrow(
            f"""
            SELECT {_SUBSCRIPTION_COLUMNS} FROM calendar_subscriptions
            WHERE source_id = $1
            ORDER BY expires_at DESC, created_at DESC
            LIMIT 1
            """,
            source_id,
        )
        return CalendarSubscription.model_validate(_row_dict(row)) if row is not None else None

    async def get_subscription_by_channel(self, channel_id: str) -> CalendarSubscription | None:
        row = await self._pool.fetchrow(
            f"SELECT {_SUBSCRIPTION_COLUMNS} FROM calendar_subscriptions WHERE channel_id = $1",
            channel_id,
        )
        return CalendarSubscription.model_validate(_row_dict(row)) if row is not None else None

    async def get_channel_binding(
        self, channel_id: str
    ) -> tuple[CalendarSubscription, CalendarSource] | None:
        row = await self._pool.fetchrow(
            """
            SELECT sub.id AS sub_id, sub.source_id AS sub_source_id, sub.channel_id,
                   sub.verifier, sub.resource_id, sub.expires_at,
                   sub.created_at AS sub_created_at,
                   s.id, s.provider_id, s.calendar_id, s.name, s.color, s.last_sync,
                   s.sync_token, s.sync_status, s.last_sync_error, s.sync_claimed_at,
                   s.sync_claim_owner, s.created_at, s.updated_at
            FROM calendar_subscriptions sub
            JOIN calendar_sources s ON s.id = sub.source_id
            WHERE sub.channel_id = $1
            """,
            channel_id,
        )
        if row is None:
            return None
        data = dict(row)
        subscription = CalendarSubscription(
            id=data.pop("sub_id"),
            source_id=data.pop("sub_source_id"),
            channel_id=data.pop("channel_id"),
            verifier=data.pop("verifier"),
            resource_id=data.pop("resource_id"),
            expires_at=data.pop("expires_at"),
            created_at=data.pop("sub_created_at"),
        )
        return subscription, CalendarSource.model_validate(data)

    async def list_sources_needing_subscription(self, threshold: datetime) -> list[CalendarSource]:
        rows = await self._pool.fetch(
            f"""
            SELECT {_SOURCE_COLUMNS} FROM calendar_sources s
            WHERE NOT EXISTS (
                SELECT 1 FROM calendar_subscriptions sub
                WHERE sub.source_id = s.id AND sub.expires_at > $1
            )
            ORDER BY s.created_at, s.id
            """,
            threshold,
        )
        return [CalendarSource.model_validate(dict(row)) for row in rows]

    async def prune_subscriptions(self, before: datetime) -> int:
        status = await self._pool.execute(
            """
            DELETE FROM calendar_subscriptions sub
            WHERE sub.expires_at < $1
              AND EXISTS (
                SELECT 1 FROM calendar_subscriptions newer
                WHERE newer.source_id = sub.source_id
                  AND newer.expires_at > sub.expires_at
              )
            """,
            before,
        )
        pruned = _affected_rows(status)
        if pruned:
            logger.info("Pruned %d superseded calendar subscription(s)", pruned)
        return pruned


def _affected_rows(status: str) -> int:
    """Parse the row count from an asyncpg command status such as ``DELETE 3``."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (AttributeError, ValueError):
        return 0


async def _raise_claim_missing(
    conn: asyncpg.Connection, source_id: uuid.UUID, claim_owner: str | None
) -> None:
    """Raise ``RecordNotFound`` or ``SyncClaimLost`` after a guarded update matched nothing."""
    exists = await conn.fetchval("SELECT 1 FROM calendar_sources WHERE id = $1", source_id)
    if not exists:
        raise RecordNotFound("source", source_id)
    raise SyncClaimLost(source_id, claim_owner or "")
