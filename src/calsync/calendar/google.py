"""Google Calendar v3 ``ProviderClient`` over ``httpx``.

Owns every Google-specific detail: endpoint URLs, query parameters, status
mapping, event translation and push-channel registration.  Token freshness is
the caller's concern (see ``calsync.calendar.tokens.TokenGuard``); this client
only reports a rejected access token via ``AccessTokenRejected``.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, date, datetime, timedelta
from typing import Any
from urllib.parse import quote

import httpx

from calsync.calendar.errors import (
    AccessTokenRejected,
    AuthExpired,
    ProviderRejected,
    SyncTokenInvalid,
    Transient,
    sanitize_error_message,
)
from calsync.calendar.models import (
    CalendarSummary,
    EventDeltaPage,
    EventTime,
    ProviderEvent,
    ProviderKind,
    PushChannel,
    TokenGrant,
    ensure_utc,
    utc_now,
)
from calsync.calendar.provider import ProviderClient

logger = logging.getLogger(__name__)

GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"

DEFAULT_SYNC_WINDOW_DAYS = 30
DEFAULT_TIMEOUT_SECONDS = 30.0
EVENTS_PAGE_SIZE = 250
UNTITLED_EVENT = "(untitled)"

_RATE_LIMIT_REASONS = frozenset({"rateLimitExceeded", "userRateLimitExceeded"})
_DEFAULT_EXPIRES_IN_SECONDS = 3600


class GoogleProviderClient(ProviderClient):
    """Google Calendar API adapter with the status mapping used by the sync core."""

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        full_sync_window_days: int = DEFAULT_SYNC_WINDOW_DAYS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout_seconds)
        self._full_sync_window_days = full_sync_window_days
        self._clock = clock

    @property
    def kind(self) -> ProviderKind:
        return ProviderKind.google

    # ------------------------------------------------------------------
    # Calendars
    # ------------------------------------------------------------------

    async def list_calendars(self, access_token: str) -> list[CalendarSummary]:
        params: dict[str, Any] = {"maxResults": EVENTS_PAGE_SIZE}
        calendars: list[CalendarSummary] = []
        while True:
            payload = await self._get_json(access_token, "/users/me/calendarList", params=params)
            for item in _payload_items(payload):
                calendar_id = item.get("id")
                if not isinstance(calendar_id, str) or not calendar_id.strip():
                    continue
                name = item.get("summaryOverride") or item.get("summary") or calendar_id
                calendars.append(
                    CalendarSummary(
                        calendar_id=calendar_id,
                        name=str(name),
                        color=item.get("backgroundColor"),
                        primary=bool(item.get("primary", False)),
                    )
                )
            next_page_token = payload.get("nextPageToken")
            if not isinstance(next_page_token, str) or not next_page_token:
                return calendars
            params["pageToken"] = next_page_token

    # ------------------------------------------------------------------
    # Event deltas
    # ------------------------------------------------------------------

    async def list_event_deltas(
        self,
        access_token: str,
        calendar_id: str,
        sync_token: str | None,
    ) -> EventDeltaPage:
        """Fetch changes using Google's ``syncToken`` / ``nextSyncToken`` flow.

        Performs a full sync bounded by the configured window when
        ``sync_token`` is ``None``.  Follows ``nextPageToken`` until the final
        page, which carries the next sync token.
        """
        path = f"/calendars/{quote(calendar_id, safe='')}/events"
        params: dict[str, Any] = {
            "showDeleted": "true",
            "singleEvents": "true",
            "maxResults": EVENTS_PAGE_SIZE,
        }
        if sync_token is not None:
            params["syncToken"] = sync_token
        else:
            window_start = self._clock() - timedelta(days=self._full_sync_window_days)
            params["timeMin"] = _google_rfc3339(window_start)

        events: list[ProviderEvent] = []
        next_sync_token: str | None = None
        while True:
            response = await self._send(
                "GET",
                f"{GOOGLE_CALENDAR_API_BASE_URL}{path}",
                access_token=access_token,
                params=params,
            )
            # 410 Gone means the sync token is expired; caller must do a full re-sync.
            if response.status_code == 410:
                raise SyncTokenInvalid(
                    f"Sync token expired for calendar '{calendar_id}'; full re-sync required"
                )
            payload = _decode_json(_raise_for_api_status(response))

            for item in _payload_items(payload):
                event = _google_item_to_provider_event(item)
                if event is not None:
                    events.append(event)

            candidate_sync_token = payload.get("nextSyncToken")
            if isinstance(candidate_sync_token, str) and candidate_sync_token.strip():
                next_sync_token = candidate_sync_token.strip()

            next_page_token = payload.get("nextPageToken")
            if not isinstance(next_page_token, str) or not next_page_token:
                break
            params["pageToken"] = next_page_token

        if next_sync_token is None:
            raise ProviderRejected(
                status_code=502,
                message=(
                    f"Google Calendar sync response for '{calendar_id}' "
                    "did not return nextSyncToken"
                ),
            )
        return EventDeltaPage(events=events, next_sync_token=next_sync_token)

    # ------------------------------------------------------------------
    # Push channels
    # ------------------------------------------------------------------

    async def create_push_channel(
        self,
        access_token: str,
        calendar_id: str,
        channel_id: str,
        verifier: str,
        target_url: str,
        ttl: timedelta,
    ) -> PushChannel:
        body = {
            "id": channel_id,
            "type": "web_hook",
            "address": target_url,
            "token": verifier,
            "params": {"ttl": str(int(ttl.total_seconds()))},
        }
        response = await self._send(
            "POST",
            f"{GOOGLE_CALENDAR_API_BASE_URL}/calendars/{quote(calendar_id, safe='')}/events/watch",
            access_token=access_token,
            json_body=body,
        )
        payload = _decode_json(_raise_for_api_status(response))

        expires_at = _parse_epoch_millis(payload.get("expiration"))
        if expires_at is None:
            logger.warning(
                "Google watch response for calendar '%s' has no expiration; assuming ttl of %s",
                calendar_id,
                ttl,
            )
            expires_at = self._clock() + ttl
        resource_id = payload.get("resourceId")
        return PushChannel(
            channel_id=str(payload.get("id") or channel_id),
            resource_id=resource_id if isinstance(resource_id, str) else None,
            expires_at=expires_at,
        )

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    async def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        try:
            response = await self._http_client.post(
                GOOGLE_OAUTH_TOKEN_URL,
                data={
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                },
                headers={"Accept": "application/json"},
            )
        except httpx.TimeoutException as exc:
            raise Transient(f"Google OAuth token refresh timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise Transient(
                f"Google OAuth token refresh request failed: {sanitize_error_message(exc)}"
            ) from exc

        if response.status_code in (400, 401):
            raise AuthExpired(
                "Google OAuth token refresh was rejected "
                f"({response.status_code}): {_safe_google_error_message(response)}"
            )
        if response.status_code == 429 or response.status_code >= 500:
            raise Transient(
                "Google OAuth token endpoint unavailable "
                f"({response.status_code}): {_safe_google_error_message(response)}",
                status_code=response.status_code,
                retry_after=_retry_after_seconds(response),
            )
        if response.status_code < 200 or response.status_code >= 300:
            raise ProviderRejected(
                status_code=response.status_code,
                message=_safe_google_error_message(response),
            )

        payload = _decode_json(response)
        access_token = payload.get("access_token")
        if not isinstance(access_token, str) or not access_token.strip():
            raise ProviderRejected(
                status_code=502,
                message="Google OAuth token response is missing a non-empty access_token",
            )
        expires_in_seconds = _coerce_expires_in_seconds(payload.get("expires_in"))
        return TokenGrant(
            access_token=access_token.strip(),
            expires_at=self._clock() + timedelta(seconds=expires_in_seconds),
        )

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    # ------------------------------------------------------------------
    # Request helpers
    # ------------------------------------------------------------------

    async def _get_json(
        self,
        access_token: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        response = await self._send(
            "GET",
            f"{GOOGLE_CALENDAR_API_BASE_URL}{path}",
            access_token=access_token,
            params=params,
        )
        return _decode_json(_raise_for_api_status(response))

    async def _send(
        self,
        method: str,
        url: str,
        *,
        access_token: str,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> httpx.Response:
        try:
            return await self._http_client.request(
                method,
                url,
                params=params,
                json=json_body,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.TimeoutException as exc:
            raise Transient(f"Google Calendar request timed out: {method} {url}") from exc
        except httpx.HTTPError as exc:
            raise Transient(
                f"Google Calendar request failed: {sanitize_error_message(exc)}"
            ) from exc


def _raise_for_api_status(response: httpx.Response) -> httpx.Response:
    """Map a Calendar API response onto the error taxonomy; return it when 2xx."""
    status = response.status_code
    if 200 <= status < 300:
        return response
    message = _safe_google_error_message(response)
    if status == 401:
        raise AccessTokenRejected(f"Google Calendar rejected the access token: {message}")
    if status == 429 or status >= 500 or (status == 403 and _is_rate_limited(response)):
        raise Transient(
            f"Google Calendar unavailable ({status}): {message}",
            status_code=status,
            retry_after=_retry_after_seconds(response),
        )
    raise ProviderRejected(status_code=status, message=message)


def _decode_json(response: httpx.Response) -> dict[str, Any]:
    if response.status_code == 204:
        return {}
    try:
        payload = response.json()
    except ValueError as exc:
        raise ProviderRejected(
            status_code=502,
            message="Google returned invalid JSON for a successful response",
        ) from exc
    if not isinstance(payload, dict):
        raise ProviderRejected(
            status_code=502,
            message="Google returned an unexpected JSON payload shape",
        )
    return payload


def _payload_items(payload: dict[str, Any]) -> list[dict[str, Any]]:
    items = payload.get("items")
    if not isinstance(items, list):
        return []
    return [item for item in items if isinstance(item, dict)]


def _error_payload(response: httpx.Response) -> Any:
    try:
        payload = response.json()
    except ValueError:
        return None
    return payload.get("error") if isinstance(payload, dict) else None


def _is_rate_limited(response: httpx.Response) -> bool:
    error_payload = _error_payload(response)
    if not isinstance(error_payload, dict):
        return False
    errors = error_payload.get("errors")
    if not isinstance(errors, list):
        return False
    return any(
        isinstance(entry, dict) and entry.get("reason") in _RATE_LIMIT_REASONS for entry in errors
    )


def _retry_after_seconds(response: httpx.Response) -> float | None:
    raw = response.headers.get("Retry-After")
    if raw is None:
        return None
    try:
        return max(float(raw), 0.0)
    except ValueError:
        return None


def _safe_google_error_message(response: httpx.Response) -> str:
    error_payload = _error_payload(response)
    if isinstance(error_payload, dict):
        message = error_payload.get("message")
        if isinstance(message, str) and message.strip():
            return sanitize_error_message(message)
    if isinstance(error_payload, str) and error_payload.strip():
        return sanitize_error_message(error_payload)

    raw_text = response.text.strip()
    if raw_text:
        return sanitize_error_message(raw_text)
    return "Request failed without an error payload"


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return _DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, int | float):
        return int(value) if value > 0 else _DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip()) or _DEFAULT_EXPIRES_IN_SECONDS
    return _DEFAULT_EXPIRES_IN_SECONDS


def _parse_epoch_millis(value: Any) -> datetime | None:
    if isinstance(value, bool) or value is None:
        return None
    try:
        millis = int(value)
    except (TypeError, ValueError):
        return None
    return datetime.fromtimestamp(millis / 1000, tz=UTC)


def _google_rfc3339(value: datetime) -> str:
    return ensure_utc(value).isoformat().replace("+00:00", "Z")


def _parse_google_datetime(value: str) -> datetime:
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise ValueError(f"Google Calendar returned an invalid dateTime: {value}") from exc
    return ensure_utc(parsed)


def _parse_google_event_boundary(payload: Any) -> EventTime:
    if not isinstance(payload, dict):
        raise ValueError("Google Calendar event boundary is not an object")

    date_time = payload.get("dateTime")
    if isinstance(date_time, str) and date_time.strip():
        return EventTime(instant=_parse_google_datetime(date_time))

    date_value = payload.get("date")
    if isinstance(date_value, str) and date_value.strip():
        try:
            return EventTime(day=date.fromisoformat(date_value.strip()))
        except ValueError as exc:
            raise ValueError(
                f"Google Calendar returned an invalid date value: {date_value}"
            ) from exc

    raise ValueError("Google Calendar event is missing start/end dateTime or date values")


def _google_item_to_provider_event(item: dict[str, Any]) -> ProviderEvent | None:
    event_id_raw = item.get("id")
    if not isinstance(event_id_raw, str) or not event_id_raw.strip():
        return None
    event_id = event_id_raw.strip()

    status = item.get("status")
    if isinstance(status, str) and status.lower() == "cancelled":
        return ProviderEvent(event_id=event_id, removed=True)

    try:
        start = _parse_google_event_boundary(item.get("start"))
        end = _parse_google_event_boundary(item.get("end"))
    except ValueError as exc:
        logger.warning("Skipping Google event '%s' with unusable boundaries: %s", event_id, exc)
        return None

    summary = item.get("summary")
    title = summary.strip() if isinstance(summary, str) and summary.strip() else UNTITLED_EVENT
    html_link = item.get("htmlLink")
    return ProviderEvent(
        event_id=event_id,
        title=title,
        start=start,
        end=end,
        html_link=html_link if isinstance(html_link, str) and html_link else None,
    )
