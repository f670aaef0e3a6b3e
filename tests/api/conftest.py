"""Fixtures for the HTTP API tests.

The app is built around the in-memory store and the fake provider from the
root conftest, so requests exercise the real sync core end to end.
"""

from __future__ import annotations

from collections.abc import AsyncIterator

import httpx
import pytest
from fastapi import FastAPI

from calsync.api.app import create_app
from calsync.calendar.webhook import WebhookHandler
from calsync.runtime import Runtime


@pytest.fixture
def webhook(subscriptions, sync_engine, metrics) -> WebhookHandler:
    return WebhookHandler(subscriptions, sync_engine, metrics=metrics)


@pytest.fixture
def app(service, webhook) -> FastAPI:
    return create_app(runtime=Runtime(service=service, webhook=webhook))


@pytest.fixture
async def client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
