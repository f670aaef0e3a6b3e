"""Shared fixtures for the calsync test suite.

Unit tests run the sync core against ``InMemoryCalendarStore`` and
``FakeProviderClient``; integration tests get a fresh, migrated PostgreSQL
database per test from a session-wide testcontainer.
"""

from __future__ import annotations

import shutil
import uuid
from collections.abc import AsyncIterator, Callable, Iterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING
from unittest.mock import MagicMock

import pytest

from calsync.calendar.models import CalendarProvider, CalendarSource, ProviderKind
from calsync.calendar.provider import ProviderRegistry
from calsync.calendar.retry import RetryPolicy
from calsync.calendar.service import CalendarService
from calsync.calendar.subscriptions import SubscriptionManager
from calsync.calendar.sync import SyncEngine
from calsync.calendar.tokens import TokenGuard
from calsync.core.metrics import SyncMetrics
from calsync.testing import FakeProviderClient, InMemoryCalendarStore

if TYPE_CHECKING:
    from asyncpg.pool import Pool
    from testcontainers.postgres import PostgresContainer

docker_available = shutil.which("docker") is not None

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
WEBHOOK_URL = "https://calsync.example.com/google/calendar/notifications"


# ---------------------------------------------------------------------------
# Core fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def clock(now: datetime) -> Callable[[], datetime]:
    return lambda: now


@pytest.fixture
def store() -> InMemoryCalendarStore:
    return InMemoryCalendarStore()


@pytest.fixture
def fake_client(clock) -> FakeProviderClient:
    return FakeProviderClient(clock)


@pytest.fixture
def registry(fake_client: FakeProviderClient) -> ProviderRegistry:
    return ProviderRegistry({ProviderKind.google: fake_client})


@pytest.fixture
def metrics() -> MagicMock:
    return MagicMock(spec=SyncMetrics)


async def _no_sleep(_: float) -> None:
    return None


@pytest.fixture
def retry_policy() -> RetryPolicy:
    return RetryPolicy(
        max_attempts=3, base_delay_seconds=0.5, max_delay_seconds=8.0, sleep=_no_sleep
    )


@pytest.fixture
def token_guard(store, registry, retry_policy, clock, metrics) -> TokenGuard:
    return TokenGuard(store, registry, retry_policy=retry_policy, clock=clock, metrics=metrics)


@pytest.fixture
def sync_engine(store, registry, token_guard, clock, metrics) -> SyncEngine:
    return SyncEngine(
        store, registry, token_guard, owner="test-host", clock=clock, metrics=metrics
    )


@pytest.fixture
def subscriptions(store, registry, token_guard, clock, metrics) -> SubscriptionManager:
    return SubscriptionManager(
        store,
        registry,
        token_guard,
        webhook_url=WEBHOOK_URL,
        clock=clock,
        metrics=metrics,
    )


@pytest.fixture
def service(store, registry, token_guard, sync_engine, subscriptions) -> CalendarService:
    return CalendarService(store, registry, token_guard, sync_engine, subscriptions)


@pytest.fixture
async def provider(store: InMemoryCalendarStore) -> CalendarProvider:
    return await store.create_provider(
        user_id="user-1",
        kind=ProviderKind.google,
        identifier="owner@example.com",
        access_token="access-initial",
        refresh_token="refresh-initial",
        token_expiry=NOW + timedelta(hours=1),
    )


@pytest.fixture
async def source(store: InMemoryCalendarStore, provider: CalendarProvider) -> CalendarSource:
    return await store.create_source(
        provider_id=provider.id,
        calendar_id="primary",
        name="Work",
        color="4285f4",
    )


# ---------------------------------------------------------------------------
# PostgreSQL (integration)
# ---------------------------------------------------------------------------


def _unique_test_db_name() -> str:
    return f"test_{uuid.uuid4().hex[:12]}"


@pytest.fixture(scope="session")
def postgres_container() -> Iterator[PostgresContainer]:
    """Shared Postgres testcontainer for all DB-backed tests in this pytest session.

    Each ``provisioned_postgres_pool`` call creates a new database with a
    random name, so rows never leak between tests.
    """
    if not docker_available:
        pytest.skip("Docker not available")
    from testcontainers.postgres import PostgresContainer

    with PostgresContainer("postgres:16") as pg:
        yield pg


@pytest.fixture
def provisioned_postgres_pool(
    postgres_container: PostgresContainer,
) -> Callable[..., AbstractAsyncContextManager[Pool]]:
    """Create a fresh, fully migrated database and asyncpg pool.

    Tests should use this as:
        async with provisioned_postgres_pool() as pool:
            ...
    """
    from calsync.db import ConnectionSettings, Database
    from calsync.migrations import run_migrations

    @asynccontextmanager
    async def _provision(
        *,
        min_pool_size: int = 1,
        max_pool_size: int = 3,
    ) -> AsyncIterator[Pool]:
        db = Database(
            db_name=_unique_test_db_name(),
            settings=ConnectionSettings(
                host=postgres_container.get_container_host_ip(),
                port=int(postgres_container.get_exposed_port(5432)),
                user=postgres_container.username,
                password=postgres_container.password,
            ),
            min_pool_size=min_pool_size,
            max_pool_size=max_pool_size,
        )
        await db.provision()
        await run_migrations(db.dsn)
        pool = await db.connect()
        try:
            yield pool
        finally:
            await db.close()

    return _provision
