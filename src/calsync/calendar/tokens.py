"""Access-token enforcement for provider API calls."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import TypeVar

from calsync.calendar.errors import AccessTokenRejected, AuthExpired, sanitize_error_message
from calsync.calendar.models import CalendarProvider, utc_now
from calsync.calendar.provider import ProviderClient, ProviderRegistry
from calsync.calendar.retry import RetryPolicy
from calsync.calendar.store import CalendarStore
from calsync.core.metrics import SyncMetrics

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_REFRESH_MARGIN = timedelta(seconds=60)


class TokenGuard:
    """Runs provider actions with a valid access token.

    ``call`` refreshes the token first when it is expired or about to expire,
    retries transient failures through the ``RetryPolicy`` and, when the
    provider rejects the token mid-flight, forces exactly one refresh before
    retrying the action once more.  A refused refresh flags the account with
    ``needs_reauth`` and raises ``AuthExpired``.

    Concurrent refreshes for one provider are coalesced: the first caller
    starts the refresh as a task and later callers await that same task.  No
    lock is held across the provider or store calls, and the task is
    forgotten once it finishes.
    """

    def __init__(
        self,
        store: CalendarStore,
        registry: ProviderRegistry,
        *,
        retry_policy: RetryPolicy | None = None,
        refresh_margin: timedelta = DEFAULT_REFRESH_MARGIN,
        clock: Callable[[], datetime] = utc_now,
        metrics: SyncMetrics | None = None,
    ) -> None:
        self._store = store
        self._registry = registry
        self._retry = retry_policy or RetryPolicy()
        self._refresh_margin = refresh_margin
        self._clock = clock
        self._metrics = metrics or SyncMetrics()
        self._refreshes: dict[uuid.UUID, asyncio.Task[str]] = {}

    async def call(
        self,
        provider: CalendarProvider,
        action: Callable[[str], Awaitable[T]],
        *,
        description: str = "provider call",
    ) -> T:
        """Invoke ``action(access_token)`` under the token and retry rules above."""
        if provider.needs_reauth:
            raise AuthExpired(
                f"Provider account {provider.id} requires re-authorization",
                provider_id=provider.id,
            )
        client = self._registry.for_kind(provider.kind)

        access_token = await self._valid_access_token(provider, client)
        try:
            return await self._retry.run(lambda: action(access_token), description=description)
        except AccessTokenRejected:
            logger.info(
                "Access token rejected during %s for provider %s; forcing one refresh",
                description,
                provider.id,
            )

        access_token = await self._valid_access_token(
            provider, client, rejected_token=access_token
        )
        try:
            return await self._retry.run(lambda: action(access_token), description=description)
        except AccessTokenRejected as exc:
            message = sanitize_error_message(exc)
            await self._store.mark_provider_needs_reauth(provider.id, message)
            logger.warning(
                "Provider %s rejected a freshly refreshed token; re-authorization required",
                provider.id,
            )
            raise AuthExpired(message, provider_id=provider.id) from exc

    async def _valid_access_token(
        self,
        provider: CalendarProvider,
        client: ProviderClient,
        *,
        rejected_token: str | None = None,
    ) -> str:
        if rejected_token is None and provider.token_is_fresh(self._clock(), self._refresh_margin):
            return provider.access_token

        in_flight = self._refreshes.get(provider.id)
        if in_flight is None:
            current = await self._store.get_provider(provider.id)
            if current.needs_reauth:
                raise AuthExpired(
                    f"Provider account {provider.id} requires re-authorization",
                    provider_id=provider.id,
                )
            if current.access_token != rejected_token and current.token_is_fresh(
                self._clock(), self._refresh_margin
            ):
                return current.access_token
            # Another caller may have started a refresh while the account was read.
            in_flight = self._refreshes.get(provider.id)
            if in_flight is None:
                in_flight = asyncio.create_task(self._refresh(current, client))
                self._refreshes[provider.id] = in_flight
                in_flight.add_done_callback(
                    lambda task, provider_id=provider.id: self._forget_refresh(provider_id, task)
                )
        return await asyncio.shield(in_flight)

    def _forget_refresh(self, provider_id: uuid.UUID, task: asyncio.Task[str]) -> None:
        if self._refreshes.get(provider_id) is task:
            del self._refreshes[provider_id]
        if not task.cancelled():
            # Waiters receive the error; this marks it retrieved if none are left.
            task.exception()

    async def _refresh(self, provider: CalendarProvider, client: ProviderClient) -> str:
        try:
            grant = await self._retry.run(
                lambda: client.refresh_access_token(provider.refresh_token),
                description="token refresh",
            )
        except AuthExpired as exc:
            self._metrics.token_refresh("rejected")
            message = sanitize_error_message(exc)
            await self._store.mark_provider_needs_reauth(provider.id, message)
            logger.warning(
                "Token refresh rejected for provider %s; re-authorization required: %s",
                provider.id,
                message,
            )
            raise AuthExpired(message, provider_id=provider.id) from exc
        except Exception:
            self._metrics.token_refresh("error")
            raise

        updated = await self._store.update_provider_tokens(
            provider.id,
            access_token=grant.access_token,
            token_expiry=grant.expires_at,
        )
        self._metrics.token_refresh("success")
        logger.info("Refreshed access token for provider %s", provider.id)
        return updated.access_token
