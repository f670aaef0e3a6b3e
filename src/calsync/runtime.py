"""Component wiring shared by the HTTP app and the CLI.

``open_runtime`` connects the database, builds the provider registry from the
configured providers and assembles the sync core around a
``PostgresCalendarStore``.  Everything it opens is closed on exit.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from calsync.calendar.google import GoogleProviderClient
from calsync.calendar.provider import ProviderRegistry
from calsync.calendar.retry import RetryPolicy
from calsync.calendar.service import CalendarService
from calsync.calendar.store import CalendarStore, PostgresCalendarStore
from calsync.calendar.subscriptions import SubscriptionManager
from calsync.calendar.sync import SyncEngine
from calsync.calendar.tokens import TokenGuard
from calsync.calendar.webhook import WebhookHandler
from calsync.config import CalsyncConfig
from calsync.core.metrics import SyncMetrics
from calsync.db import Database

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    """The assembled sync core."""

    service: CalendarService
    webhook: WebhookHandler


def build_registry(config: CalsyncConfig) -> ProviderRegistry:
    registry = ProviderRegistry()
    if config.google is not None:
        registry.register(
            GoogleProviderClient(
                client_id=config.google.client_id,
                client_secret=config.google.client_secret,
                timeout_seconds=config.http.timeout_seconds,
                full_sync_window_days=config.sync.full_sync_window_days,
            )
        )
    else:
        logger.warning("No [providers.google] section configured; provider calls will fail")
    return registry


def build_runtime(
    config: CalsyncConfig,
    store: CalendarStore,
    registry: ProviderRegistry,
    *,
    metrics: SyncMetrics | None = None,
) -> Runtime:
    """Assemble TokenGuard, SyncEngine, SubscriptionManager and the handlers."""
    metrics = metrics or SyncMetrics(config.name)
    retry_policy = RetryPolicy(
        max_attempts=config.retry.max_attempts,
        base_delay_seconds=config.retry.base_delay_seconds,
        max_delay_seconds=config.retry.max_delay_seconds,
    )
    token_guard = TokenGuard(
        store,
        registry,
        retry_policy=retry_policy,
        refresh_margin=config.sync.token_refresh_margin,
        metrics=metrics,
    )
    sync_engine = SyncEngine(
        store,
        registry,
        token_guard,
        claim_timeout=config.sync.claim_timeout,
        metrics=metrics,
    )
    subscriptions = SubscriptionManager(
        store,
        registry,
        token_guard,
        webhook_url=config.webhook_url,
        renewal_lead_time=config.subscriptions.renewal_lead_time,
        channel_ttl=config.subscriptions.channel_ttl,
        expired_channel_grace=config.subscriptions.expired_channel_grace,
        metrics=metrics,
    )
    service = CalendarService(store, registry, token_guard, sync_engine, subscriptions)
    webhook = WebhookHandler(subscriptions, sync_engine, metrics=metrics)
    return Runtime(service=service, webhook=webhook)


@asynccontextmanager
async def open_runtime(config: CalsyncConfig) -> AsyncIterator[Runtime]:
    """Connect to PostgreSQL and yield a ready ``Runtime``."""
    db = Database.from_config(config)
    pool = await db.connect()
    registry = build_registry(config)
    try:
        yield build_runtime(config, PostgresCalendarStore(pool), registry)
    finally:
        await registry.aclose()
        await db.close()
