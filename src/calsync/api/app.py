"""FastAPI application factory for calsync.

The app factory creates a FastAPI instance with:
- Lifespan handler that opens the database pool and assembles the sync core
- Error envelope handlers and the catch-all middleware
- The Google push webhook at ``/google/calendar/notifications``
- Provider, source and subscription routers under ``/api``
- Health endpoint at GET /api/health
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from calsync import __version__
from calsync.api.deps import wire_dependencies
from calsync.api.middleware import register_error_handlers
from calsync.api.routers.notifications import router as notifications_router
from calsync.api.routers.providers import router as providers_router
from calsync.api.routers.sources import router as sources_router
from calsync.api.routers.subscriptions import router as subscriptions_router
from calsync.config import CalsyncConfig, load_config
from calsync.core.metrics import init_metrics
from calsync.runtime import Runtime, open_runtime

logger = logging.getLogger(__name__)


def _make_lifespan(config: CalsyncConfig | None):
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Open the runtime on startup unless one was injected; close it on shutdown."""
        if getattr(app.state, "runtime", None) is not None:
            yield
            return

        resolved = config or load_config()
        init_metrics(resolved.name)
        async with open_runtime(resolved) as runtime:
            wire_dependencies(app, runtime)
            logger.info("calsync ready (webhook=%s)", resolved.webhook_url)
            yield
        app.state.runtime = None

    return lifespan


def create_app(
    config: CalsyncConfig | None = None,
    runtime: Runtime | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    config:
        Loaded configuration.  When omitted the lifespan handler loads
        ``calsync.toml`` via ``load_config()``.
    runtime:
        Pre-built components (tests).  When given, routes are wired to it
        immediately and the lifespan handler opens nothing.
    """
    app = FastAPI(
        title="calsync",
        version=__version__,
        lifespan=_make_lifespan(config),
    )
    app.router.redirect_slashes = False
    app.state.runtime = None

    register_error_handlers(app)

    if runtime is not None:
        wire_dependencies(app, runtime)

    app.include_router(notifications_router)
    app.include_router(providers_router)
    app.include_router(sources_router)
    app.include_router(subscriptions_router)

    @app.get("/api/health")
    async def health():
        return {"status": "ok"}

    return app
