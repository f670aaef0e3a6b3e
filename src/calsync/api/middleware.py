"""API error handling middleware with a consistent error envelope.

Registers FastAPI exception handlers that convert calendar errors into
standardised ``{"error": {"code": "...", "message": "..."}}`` JSON responses.

Status code mapping:
- ``WebhookAuthError`` → 400 ``INVALID_NOTIFICATION``
- ``RecordNotFound`` → 404 ``NOT_FOUND``
- ``AuthExpired`` → 409 ``AUTH_EXPIRED``
- ``SyncClaimLost`` → 409 ``SYNC_IN_PROGRESS``
- ``ProviderRejected`` → 502 ``PROVIDER_REJECTED``
- ``Transient`` → 503 ``PROVIDER_UNAVAILABLE``
- any other ``CalendarError`` → 500 ``CALENDAR_ERROR``
- ``RequestValidationError`` → 422, ``ValueError`` → 400
- Any other ``Exception`` → 500 Internal Server Error
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from calsync.api.models import ErrorDetail, ErrorResponse
from calsync.calendar.errors import (
    INVALID_NOTIFICATION_MESSAGE,
    AuthExpired,
    CalendarError,
    ProviderRejected,
    RecordNotFound,
    SyncClaimLost,
    Transient,
    WebhookAuthError,
    sanitize_error_message,
)

logger = logging.getLogger(__name__)


def _error_response(
    status_code: int,
    code: str,
    message: str,
    details: dict | None = None,
) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message, details=details))
    return JSONResponse(status_code=status_code, content=body.model_dump())


async def _handle_webhook_auth_error(request: Request, exc: WebhookAuthError) -> JSONResponse:
    """Return 400 for every rejected notification, whatever the reason."""
    return _error_response(400, "INVALID_NOTIFICATION", INVALID_NOTIFICATION_MESSAGE)


async def _handle_not_found(request: Request, exc: RecordNotFound) -> JSONResponse:
    logger.info("Not found: %s", exc)
    return _error_response(
        404,
        "NOT_FOUND",
        str(exc),
        details={"kind": exc.kind, "id": str(exc.record_id)},
    )


async def _handle_auth_expired(request: Request, exc: AuthExpired) -> JSONResponse:
    """Return 409 until the user re-authorizes the provider account."""
    details = {"provider_id": str(exc.provider_id)} if exc.provider_id is not None else None
    return _error_response(409, "AUTH_EXPIRED", sanitize_error_message(exc), details=details)


async def _handle_claim_lost(request: Request, exc: SyncClaimLost) -> JSONResponse:
    """Return 409 when a newer sync took over the source while this one ran."""
    return _error_response(
        409,
        "SYNC_IN_PROGRESS",
        "Another sync took over this source",
        details={"source_id": str(exc.source_id)},
    )


async def _handle_provider_rejected(request: Request, exc: ProviderRejected) -> JSONResponse:
    logger.warning("Provider rejected request on %s: %s", request.url.path, exc)
    return _error_response(
        502,
        "PROVIDER_REJECTED",
        sanitize_error_message(exc),
        details={"status_code": exc.status_code},
    )


async def _handle_transient(request: Request, exc: Transient) -> JSONResponse:
    logger.warning("Provider unavailable on %s: %s", request.url.path, exc)
    return _error_response(503, "PROVIDER_UNAVAILABLE", sanitize_error_message(exc))


async def _handle_calendar_error(request: Request, exc: CalendarError) -> JSONResponse:
    logger.warning("Calendar error on %s: %s", request.url.path, exc)
    return _error_response(500, "CALENDAR_ERROR", sanitize_error_message(exc))


async def _handle_request_validation(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    return _error_response(
        422,
        "VALIDATION_ERROR",
        "Request validation failed",
        details={"errors": [str(error.get("msg", "")) for error in exc.errors()]},
    )


async def _handle_value_error(request: Request, exc: ValueError) -> JSONResponse:
    """Return 400 for validation / value errors."""
    logger.info("Validation error: %s", exc)
    return _error_response(400, "VALIDATION_ERROR", str(exc))


class CatchAllErrorMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that catches any unhandled exception and returns a 500.

    This sits above the Starlette exception handler layer, ensuring that
    even exceptions not caught by ``add_exception_handler`` are converted
    to the standard error envelope rather than bubbling up as raw 500s.
    """

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception:
            logger.error(
                "Unhandled exception on %s %s",
                request.method,
                request.url.path,
                exc_info=True,
            )
            return _error_response(500, "INTERNAL_ERROR", "Internal server error")


def register_error_handlers(app: FastAPI) -> None:
    """Attach all exception handlers to the FastAPI application.

    Starlette resolves handlers along the exception's MRO, so the specific
    calendar errors win over the ``CalendarError`` fallback.
    """
    app.add_exception_handler(WebhookAuthError, _handle_webhook_auth_error)  # type: ignore[arg-type]
    app.add_exception_handler(RecordNotFound, _handle_not_found)  # type: ignore[arg-type]
    app.add_exception_handler(AuthExpired, _handle_auth_expired)  # type: ignore[arg-type]
    app.add_exception_handler(SyncClaimLost, _handle_claim_lost)  # type: ignore[arg-type]
    app.add_exception_handler(ProviderRejected, _handle_provider_rejected)  # type: ignore[arg-type]
    app.add_exception_handler(Transient, _handle_transient)  # type: ignore[arg-type]
    app.add_exception_handler(CalendarError, _handle_calendar_error)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, _handle_request_validation)  # type: ignore[arg-type]
    app.add_exception_handler(ValueError, _handle_value_error)  # type: ignore[arg-type]
    app.add_middleware(CatchAllErrorMiddleware)
