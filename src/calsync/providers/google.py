"""Google Calendar provider client over httpx."""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import quote, urlencode

import httpx

from calsync.errors import (
    OAuthNotConfiguredError,
    ProviderRequestError,
    RemoteEventGoneError,
    SyncCursorExpiredError,
    TokenRefreshFailedError,
)
from calsync.models import (
    EventPage,
    RemoteCalendar,
    RemoteEvent,
    RemoteEventTime,
    RemoteEventWrite,
    TokenGrant,
    WatchChannel,
)
from calsync.providers.base import CalendarProviderClient

logger = logging.getLogger(__name__)

GOOGLE_OAUTH_AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
GOOGLE_CALENDAR_SCOPES = (
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/userinfo.email",
)

DEFAULT_PAGE_SIZE = 250

RATE_LIMIT_RETRY_STATUS_CODES = {429, 503}
RATE_LIMIT_MAX_RETRIES = 3
RATE_LIMIT_BASE_BACKOFF_SECONDS = 1.0

# Google calendarList backgroundColor -> local palette name.
GOOGLE_COLOR_MAP: dict[str, str] = {
    "#9e69af": "purple",
    "#7986cb": "blue",
    "#5c6bc0": "blue",
    "#3f51b5": "blue",
    "#4285f4": "blue",
    "#039be5": "blue",
    "#0097a7": "blue",
    "#009688": "green",
    "#43a047": "green",
    "#7cb342": "green",
    "#afb42b": "yellow",
    "#f9a825": "yellow",
    "#ff9800": "orange",
    "#ef6c02": "orange",
    "#e65100": "orange",
    "#e64a19": "red",
    "#f44336": "red",
    "#d32f2f": "red",
    "#757575": "gray",
}
DEFAULT_CALENDAR_COLOR = "blue"

# OAuth token endpoint statuses meaning "this refresh token is no good".
_REJECTED_GRANT_STATUS_CODES = {400, 401, 403}


def map_google_color(background_color: str | None) -> str:
    if not background_color:
        return DEFAULT_CALENDAR_COLOR
    return GOOGLE_COLOR_MAP.get(background_color.strip().lower(), DEFAULT_CALENDAR_COLOR)


def _safe_google_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return " ".join(message.split())[:200]
        if isinstance(error_payload, str) and error_payload.strip():
            description = payload.get("error_description")
            if isinstance(description, str) and description.strip():
                return f"{error_payload.strip()}: {' '.join(description.split())[:200]}"
            return " ".join(error_payload.split())[:200]

    raw_text = response.text.strip()
    if raw_text:
        return " ".join(raw_text.split())[:200]
    return "Request failed without an error payload"


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return 3600
    if isinstance(value, int | float):
        return int(value) if value > 0 else 3600
    return 3600


def _google_rfc3339(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _parse_expiration_ms(value: Any) -> datetime | None:
    """Watch expirations come back as epoch milliseconds, usually as a string."""
    try:
        millis = int(value)
    except (TypeError, ValueError):
        return None
    return datetime.fromtimestamp(millis / 1000, tz=UTC)


def _as_non_empty_string(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


def _parse_event_time(payload: Any) -> RemoteEventTime | None:
    if not isinstance(payload, dict):
        return None
    return RemoteEventTime(
        date=_as_non_empty_string(payload.get("date")),
        date_time=_as_non_empty_string(payload.get("dateTime")),
        time_zone=_as_non_empty_string(payload.get("timeZone")),
    )


def _email_of(payload: Any) -> str | None:
    if not isinstance(payload, dict):
        return None
    return _as_non_empty_string(payload.get("email"))


def parse_google_event(item: dict[str, Any]) -> RemoteEvent:
    """Convert a Google Calendar event resource into a :class:`RemoteEvent`."""
    guests_can_modify = item.get("guestsCanModify")
    return RemoteEvent(
        id=_as_non_empty_string(item.get("id")),
        status=_as_non_empty_string(item.get("status")),
        summary=item.get("summary") if isinstance(item.get("summary"), str) else None,
        description=item.get("description") if isinstance(item.get("description"), str) else None,
        location=item.get("location") if isinstance(item.get("location"), str) else None,
        start=_parse_event_time(item.get("start")),
        end=_parse_event_time(item.get("end")),
        recurring_event_id=_as_non_empty_string(item.get("recurringEventId")),
        creator_email=_email_of(item.get("creator")),
        organizer_email=_email_of(item.get("organizer")),
        guests_can_modify=guests_can_modify if isinstance(guests_can_modify, bool) else None,
        transparency=_as_non_empty_string(item.get("transparency")),
        visibility=_as_non_empty_string(item.get("visibility")),
    )


def _serialize_event_time(value: RemoteEventTime) -> dict[str, str]:
    if value.date is not None:
        return {"date": value.date}
    body: dict[str, str] = {}
    if value.date_time is not None:
        body["dateTime"] = value.date_time
    if value.time_zone is not None:
        body["timeZone"] = value.time_zone
    return body


def serialize_event_write(body: RemoteEventWrite) -> dict[str, Any]:
    """Render an insert/patch body, omitting fields that are not being written."""
    payload: dict[str, Any] = {}
    if body.summary is not None:
        payload["summary"] = body.summary
    if body.description is not None:
        payload["description"] = body.description
    if body.location is not None:
        payload["location"] = body.location
    if body.start is not None:
        payload["start"] = _serialize_event_time(body.start)
    if body.end is not None:
        payload["end"] = _serialize_event_time(body.end)
    return payload


class GoogleCalendarProvider(CalendarProviderClient):
    """Google Calendar v3 client.

    Access tokens are supplied per call by the token store; this client
    only performs the OAuth token-endpoint exchanges.
    """

    def __init__(
        self,
        *,
        client_id: str | None,
        client_secret: str | None,
        http_client: httpx.AsyncClient | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=30.0)
        self._page_size = page_size

    @property
    def name(self) -> str:
        return "google"

    def _require_credentials(self) -> tuple[str, str]:
        if not self._client_id or not self._client_secret:
            raise OAuthNotConfiguredError(self.name)
        return self._client_id, self._client_secret

    # -- OAuth ---------------------------------------------------------------

    def authorization_url(self, *, state: str, redirect_uri: str) -> str:
        client_id, _ = self._require_credentials()
        params = {
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": " ".join(GOOGLE_CALENDAR_SCOPES),
            "access_type": "offline",
            "prompt": "consent",
            "include_granted_scopes": "true",
            "state": state,
        }
        return f"{GOOGLE_OAUTH_AUTHORIZE_URL}?{urlencode(params)}"

    async def exchange_auth_code(self, code: str, *, redirect_uri: str) -> TokenGrant:
        client_id, client_secret = self._require_credentials()
        payload = await self._post_token_endpoint(
            {
                "code": code,
                "client_id": client_id,
                "client_secret": client_secret,
                "redirect_uri": redirect_uri,
                "grant_type": "authorization_code",
            },
            action="authorization code exchange",
        )
        return self._grant_from_payload(payload)

    async def refresh_token(self, refresh_token: str) -> TokenGrant:
        client_id, client_secret = self._require_credentials()
        payload = await self._post_token_endpoint(
            {
                "client_id": client_id,
                "client_secret": client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            },
            action="token refresh",
        )
        return self._grant_from_payload(payload)

    async def _post_token_endpoint(self, data: dict[str, str], *, action: str) -> dict[str, Any]:
        try:
            response = await self._http_client.post(
                GOOGLE_OAUTH_TOKEN_URL,
                data=data,
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise ProviderRequestError(0, f"Google OAuth {action} request failed: {exc}") from exc

        if response.status_code in _REJECTED_GRANT_STATUS_CODES:
            raise TokenRefreshFailedError(
                f"Google OAuth {action} rejected "
                f"({response.status_code}): {_safe_google_error_message(response)}"
            )
        if response.status_code < 200 or response.status_code >= 300:
            raise ProviderRequestError(response.status_code, _safe_google_error_message(response))

        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderRequestError(
                response.status_code, "Google OAuth token endpoint returned invalid JSON"
            ) from exc
        if not isinstance(payload, dict):
            raise ProviderRequestError(
                response.status_code, "Google OAuth token endpoint returned an unexpected payload"
            )
        return payload

    @staticmethod
    def _grant_from_payload(payload: dict[str, Any]) -> TokenGrant:
        access_token = _as_non_empty_string(payload.get("access_token"))
        if access_token is None:
            raise TokenRefreshFailedError(
                "Google OAuth token response is missing a non-empty access_token"
            )
        expires_in = _coerce_expires_in_seconds(payload.get("expires_in"))
        return TokenGrant(
            access_token=access_token,
            refresh_token=_as_non_empty_string(payload.get("refresh_token")),
            expires_at=datetime.now(UTC) + timedelta(seconds=expires_in),
        )

    # -- HTTP helpers --------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        access_token: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> httpx.Response:
        url = f"{GOOGLE_CALENDAR_API_BASE_URL}{path}"
        response = await self._request_once(method, url, access_token, params, json_body)

        # Rate-limit retry: honour Retry-After on 429, exponential backoff on 503.
        retry = 0
        while (
            response.status_code in RATE_LIMIT_RETRY_STATUS_CODES and retry < RATE_LIMIT_MAX_RETRIES
        ):
            backoff = RATE_LIMIT_BASE_BACKOFF_SECONDS * (2**retry)
            if response.status_code == 429:
                retry_after_header = response.headers.get("Retry-After")
                if retry_after_header is not None:
                    try:
                        backoff = float(retry_after_header)
                    except ValueError:
                        pass
            logger.warning(
                "Google Calendar API rate-limited (status=%d), retrying in %.1fs (attempt %d/%d)",
                response.status_code,
                backoff,
                retry + 1,
                RATE_LIMIT_MAX_RETRIES,
            )
            await asyncio.sleep(backoff)
            response = await self._request_once(method, url, access_token, params, json_body)
            retry += 1

        return response

    async def _request_once(
        self,
        method: str,
        url: str,
        access_token: str,
        params: dict[str, Any] | None,
        json_body: dict[str, Any] | None,
    ) -> httpx.Response:
        try:
            return await self._http_client.request(
                method,
                url,
                params=params,
                json=json_body,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as exc:
            raise ProviderRequestError(0, f"Google Calendar request failed: {exc}") from exc

    @staticmethod
    def _json_or_raise(response: httpx.Response) -> dict[str, Any]:
        if response.status_code < 200 or response.status_code >= 300:
            raise ProviderRequestError(response.status_code, _safe_google_error_message(response))
        if response.status_code == 204 or not response.content:
            return {}
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderRequestError(
                response.status_code, "Google Calendar API returned invalid JSON"
            ) from exc
        if not isinstance(payload, dict):
            raise ProviderRequestError(
                response.status_code, "Google Calendar API returned an unexpected JSON payload"
            )
        return payload

    # -- Calendar API --------------------------------------------------------

    async def list_calendars(self, access_token: str) -> list[RemoteCalendar]:
        calendars: list[RemoteCalendar] = []
        page_token: str | None = None
        while True:
            params: dict[str, Any] = {"maxResults": self._page_size}
            if page_token is not None:
                params["pageToken"] = page_token
            payload = self._json_or_raise(
                await self._request("GET", "/users/me/calendarList", access_token, params=params)
            )
            for item in payload.get("items") or []:
                if not isinstance(item, dict):
                    continue
                calendar_id = _as_non_empty_string(item.get("id"))
                if calendar_id is None:
                    continue
                calendars.append(
                    RemoteCalendar(
                        id=calendar_id,
                        name=_as_non_empty_string(item.get("summary")) or calendar_id,
                        color=map_google_color(item.get("backgroundColor")),
                        primary=item.get("primary") is True,
                    )
                )
            page_token = _as_non_empty_string(payload.get("nextPageToken"))
            if page_token is None:
                return calendars

    async def list_events(
        self,
        access_token: str,
        remote_calendar_id: str,
        *,
        sync_cursor: str | None = None,
        time_min: datetime | None = None,
        page_token: str | None = None,
    ) -> EventPage:
        params: dict[str, Any] = {"singleEvents": "true", "maxResults": self._page_size}
        if sync_cursor:
            params["syncToken"] = sync_cursor
        elif time_min is not None:
            params["timeMin"] = _google_rfc3339(time_min)
        if page_token is not None:
            params["pageToken"] = page_token

        response = await self._request(
            "GET",
            f"/calendars/{quote(remote_calendar_id, safe='')}/events",
            access_token,
            params=params,
        )
        # 410 Gone means the sync token is expired; caller must do a full resync.
        if response.status_code == 410:
            raise SyncCursorExpiredError(
                410, f"Sync token expired for calendar {remote_calendar_id!r}"
            )
        payload = self._json_or_raise(response)

        items = [
            parse_google_event(item)
            for item in payload.get("items") or []
            if isinstance(item, dict)
        ]
        return EventPage(
            items=items,
            next_page_token=_as_non_empty_string(payload.get("nextPageToken")),
            next_sync_cursor=_as_non_empty_string(payload.get("nextSyncToken")),
        )

    async def insert_event(
        self, access_token: str, remote_calendar_id: str, body: RemoteEventWrite
    ) -> RemoteEvent:
        payload = self._json_or_raise(
            await self._request(
                "POST",
                f"/calendars/{quote(remote_calendar_id, safe='')}/events",
                access_token,
                json_body=serialize_event_write(body),
            )
        )
        return parse_google_event(payload)

    async def patch_event(
        self,
        access_token: str,
        remote_calendar_id: str,
        remote_event_id: str,
        body: RemoteEventWrite,
        *,
        original_start_time: RemoteEventTime | None = None,
    ) -> RemoteEvent:
        json_body = serialize_event_write(body)
        if original_start_time is not None:
            json_body["originalStartTime"] = _serialize_event_time(original_start_time)
        payload = self._json_or_raise(
            await self._request(
                "PATCH",
                f"/calendars/{quote(remote_calendar_id, safe='')}"
                f"/events/{quote(remote_event_id, safe='')}",
                access_token,
                json_body=json_body,
            )
        )
        return parse_google_event(payload)

    async def delete_event(
        self, access_token: str, remote_calendar_id: str, remote_event_id: str
    ) -> None:
        response = await self._request(
            "DELETE",
            f"/calendars/{quote(remote_calendar_id, safe='')}"
            f"/events/{quote(remote_event_id, safe='')}",
            access_token,
        )
        if response.status_code in (404, 410):
            raise RemoteEventGoneError(
                response.status_code, f"Event {remote_event_id!r} is already gone"
            )
        self._json_or_raise(response)

    async def create_watch(
        self,
        access_token: str,
        remote_calendar_id: str,
        *,
        channel_id: str,
        webhook_url: str,
        expires_at: datetime,
        channel_token: str | None = None,
    ) -> WatchChannel:
        body: dict[str, Any] = {
            "id": channel_id,
            "type": "web_hook",
            "address": webhook_url,
            "expiration": int(expires_at.timestamp() * 1000),
        }
        if channel_token is not None:
            body["token"] = channel_token
        payload = self._json_or_raise(
            await self._request(
                "POST",
                f"/calendars/{quote(remote_calendar_id, safe='')}/events/watch",
                access_token,
                json_body=body,
            )
        )
        return WatchChannel(
            channel_id=_as_non_empty_string(payload.get("id")) or channel_id,
            resource_id=_as_non_empty_string(payload.get("resourceId")),
            expires_at=_parse_expiration_ms(payload.get("expiration")) or expires_at,
        )

    async def stop_watch(self, access_token: str, *, channel_id: str, resource_id: str) -> None:
        response = await self._request(
            "POST",
            "/channels/stop",
            access_token,
            json_body={"id": channel_id, "resourceId": resource_id},
        )
        if response.status_code == 404:
            logger.debug("Channel %s was already stopped", channel_id)
            return
        self._json_or_raise(response)

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()
