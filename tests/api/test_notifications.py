"""Tests for the Google push webhook endpoint."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from calsync.calendar.errors import Transient
from calsync.calendar.models import EventDeltaPage
from calsync.config import WEBHOOK_PATH
from calsync.testing import timed_event

pytestmark = pytest.mark.unit


def _headers(channel_id: str, token: str, **extra: str) -> dict[str, str]:
    return {
        "X-Goog-Channel-ID": channel_id,
        "X-Goog-Channel-Token": token,
        "X-Goog-Resource-State": "exists",
        "X-Goog-Message-Number": "2",
        **extra,
    }


@pytest.fixture
async def lease(subscriptions, source):
    return await subscriptions.ensure_subscription(source.id)


async def test_valid_notification_syncs_source(client, lease, source, store, fake_client):
    fake_client.delta_results.append(
        EventDeltaPage(events=[timed_event("evt-1")], next_sync_token="t1")
    )

    response = await client.post(WEBHOOK_PATH, headers=_headers(lease.channel_id, lease.verifier))

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["source_id"] == str(source.id)
    assert data["synced"] is True
    assert data["sync_error"] is None
    assert [item.event_id for item in await store.list_items(source.id)] == ["evt-1"]


async def test_unknown_channel_is_rejected_without_sync(client, lease, sync_engine, monkeypatch):
    sync = AsyncMock()
    monkeypatch.setattr(sync_engine, "sync", sync)

    response = await client.post(WEBHOOK_PATH, headers=_headers("no-such-channel", lease.verifier))

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "INVALID_NOTIFICATION"
    sync.assert_not_awaited()


async def test_wrong_token_gets_the_same_response(client, lease, sync_engine, monkeypatch):
    sync = AsyncMock()
    monkeypatch.setattr(sync_engine, "sync", sync)

    unknown = await client.post(WEBHOOK_PATH, headers=_headers("no-such-channel", "x"))
    mismatched = await client.post(WEBHOOK_PATH, headers=_headers(lease.channel_id, "x"))

    assert mismatched.status_code == unknown.status_code == 400
    assert mismatched.json() == unknown.json()
    sync.assert_not_awaited()


async def test_missing_headers_are_rejected(client):
    response = await client.post(WEBHOOK_PATH)

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "INVALID_NOTIFICATION"


async def test_sync_failure_is_still_acknowledged(client, lease, source, store, fake_client):
    fake_client.delta_results.extend([Transient("down")] * 3)

    response = await client.post(WEBHOOK_PATH, headers=_headers(lease.channel_id, lease.verifier))

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["synced"] is False
    assert "down" in data["sync_error"]
    assert (await store.get_source(source.id)).sync_status == "failed"
