"""Provider capability interface used by the sync and subscription paths.

The core depends only on ``ProviderClient``; each ``ProviderKind`` gets one
implementation that owns the provider's request/response formats.
"""

from __future__ import annotations

import abc
from collections.abc import Mapping
from datetime import timedelta

from calsync.calendar.errors import ProviderRejected
from calsync.calendar.models import (
    CalendarSummary,
    EventDeltaPage,
    ProviderKind,
    PushChannel,
    TokenGrant,
)


class ProviderClient(abc.ABC):
    """Thin capability over one provider's calendar and token endpoints.

    Every operation is idempotent or safely retryable.  Implementations raise
    the taxonomy in ``calsync.calendar.errors``: ``AccessTokenRejected`` for a
    401, ``SyncTokenInvalid`` for a stale sync token, ``Transient`` for
    timeouts/5xx/rate limits and ``ProviderRejected`` for any other 4xx.
    """

    @property
    @abc.abstractmethod
    def kind(self) -> ProviderKind:
        """Provider kind served by this client."""
        ...

    @abc.abstractmethod
    async def list_calendars(self, access_token: str) -> list[CalendarSummary]:
        """Return every calendar visible to the account."""
        ...

    @abc.abstractmethod
    async def list_event_deltas(
        self,
        access_token: str,
        calendar_id: str,
        sync_token: str | None,
    ) -> EventDeltaPage:
        """Return changes since ``sync_token`` (a full listing when ``None``).

        Raises:
            ``SyncTokenInvalid`` when the provider no longer accepts the
            token.  The caller must restart with ``sync_token=None``.
        """
        ...

    @abc.abstractmethod
    async def create_push_channel(
        self,
        access_token: str,
        calendar_id: str,
        channel_id: str,
        verifier: str,
        target_url: str,
        ttl: timedelta,
    ) -> PushChannel:
        """Register a webhook lease; the returned expiry is authoritative."""
        ...

    @abc.abstractmethod
    async def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        """Exchange a refresh token for a new access token.

        Raises:
            ``AuthExpired`` when the refresh token is revoked or invalid.
        """
        ...

    async def aclose(self) -> None:
        """Release client resources."""
        return None


class ProviderRegistry:
    """Selects the ``ProviderClient`` for a provider kind."""

    def __init__(self, clients: Mapping[ProviderKind, ProviderClient] | None = None) -> None:
        self._clients: dict[ProviderKind, ProviderClient] = dict(clients or {})

    def register(self, client: ProviderClient) -> None:
        self._clients[client.kind] = client

    def for_kind(self, kind: ProviderKind | str) -> ProviderClient:
        try:
            return self._clients[ProviderKind(kind)]
        except (KeyError, ValueError):
            raise ProviderRejected(
                status_code=400,
                message=f"No provider client registered for kind '{kind}'",
            ) from None

    @property
    def kinds(self) -> list[ProviderKind]:
        return sorted(self._clients)

    async def aclose(self) -> None:
        for client in self._clients.values():
            await client.aclose()
