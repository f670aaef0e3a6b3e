"""Tests for RetryPolicy backoff and Retry-After handling."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from calsync.calendar.errors import ProviderRejected, Transient
from calsync.calendar.retry import RetryPolicy

pytestmark = pytest.mark.unit


class TestDelayFor:
    def test_exponential_backoff_from_base(self):
        policy = RetryPolicy(base_delay_seconds=0.5, max_delay_seconds=8.0)
        assert [policy.delay_for(n) for n in (1, 2, 3, 4, 5, 6)] == [0.5, 1.0, 2.0, 4.0, 8.0, 8.0]

    def test_retry_after_replaces_computed_delay(self):
        policy = RetryPolicy(base_delay_seconds=0.5, max_delay_seconds=8.0)
        assert policy.delay_for(1, retry_after=3.0) == 3.0

    def test_retry_after_is_capped(self):
        policy = RetryPolicy(max_delay_seconds=8.0)
        assert policy.delay_for(1, retry_after=120.0) == 8.0

    def test_invalid_attempts_rejected(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)


class TestRun:
    async def test_returns_first_success(self):
        sleep = AsyncMock()
        policy = RetryPolicy(sleep=sleep)
        operation = AsyncMock(return_value="ok")

        assert await policy.run(operation) == "ok"
        operation.assert_awaited_once()
        sleep.assert_not_awaited()

    async def test_retries_transient_then_succeeds(self):
        sleep = AsyncMock()
        policy = RetryPolicy(max_attempts=3, base_delay_seconds=0.5, sleep=sleep)
        operation = AsyncMock(side_effect=[Transient("503"), Transient("503"), "ok"])

        assert await policy.run(operation, description="events") == "ok"
        assert operation.await_count == 3
        assert [call.args[0] for call in sleep.await_args_list] == [0.5, 1.0]

    async def test_gives_up_after_max_attempts(self):
        sleep = AsyncMock()
        policy = RetryPolicy(max_attempts=3, sleep=sleep)
        operation = AsyncMock(side_effect=Transient("timeout"))

        with pytest.raises(Transient):
            await policy.run(operation)
        assert operation.await_count == 3
        assert sleep.await_count == 2

    async def test_honours_retry_after_hint(self):
        sleep = AsyncMock()
        policy = RetryPolicy(sleep=sleep)
        operation = AsyncMock(
            side_effect=[Transient("429", status_code=429, retry_after=2.0), "ok"]
        )

        await policy.run(operation)
        sleep.assert_awaited_once_with(2.0)

    async def test_non_transient_errors_are_not_retried(self):
        sleep = AsyncMock()
        policy = RetryPolicy(sleep=sleep)
        operation = AsyncMock(side_effect=ProviderRejected(status_code=403, message="nope"))

        with pytest.raises(ProviderRejected):
            await policy.run(operation)
        operation.assert_awaited_once()
        sleep.assert_not_awaited()
