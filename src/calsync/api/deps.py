"""FastAPI dependencies for the calendar routers.

Routers depend on the stub providers below; ``wire_dependencies`` overrides
them with the live ``Runtime`` at startup (or with test doubles in tests).
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from calsync.calendar.service import CalendarService
from calsync.calendar.webhook import WebhookHandler

if TYPE_CHECKING:
    from fastapi import FastAPI

    from calsync.runtime import Runtime


def get_calendar_service() -> CalendarService:
    """Dependency stub; overridden at app startup or in tests."""
    raise RuntimeError("CalendarService not initialized")


def get_webhook_handler() -> WebhookHandler:
    """Dependency stub; overridden at app startup or in tests."""
    raise RuntimeError("WebhookHandler not initialized")


def wire_dependencies(app: FastAPI, runtime: Runtime) -> None:
    """Point the router dependency stubs at *runtime*'s components."""
    app.state.runtime = runtime
    app.dependency_overrides[get_calendar_service] = lambda: runtime.service
    app.dependency_overrides[get_webhook_handler] = lambda: runtime.webhook
