"""Tests for the Google Calendar provider client."""

from __future__ import annotations

import json
from collections.abc import Callable
from datetime import UTC, datetime
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest

from calsync.errors import (
    OAuthNotConfiguredError,
    ProviderRequestError,
    RemoteEventGoneError,
    SyncCursorExpiredError,
    TokenRefreshFailedError,
)
from calsync.models import RemoteEventTime, RemoteEventWrite
from calsync.providers import google as google_module
from calsync.providers.google import (
    GOOGLE_CALENDAR_API_BASE_URL,
    GOOGLE_OAUTH_TOKEN_URL,
    GoogleCalendarProvider,
    map_google_color,
    parse_google_event,
    serialize_event_write,
)

pytestmark = pytest.mark.unit


def _provider(
    handler: Callable[[httpx.Request], httpx.Response], **kwargs
) -> GoogleCalendarProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GoogleCalendarProvider(
        client_id=kwargs.pop("client_id", "cid"),
        client_secret=kwargs.pop("client_secret", "secret"),
        http_client=client,
        **kwargs,
    )


def _form(request: httpx.Request) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(request.content.decode()).items()}


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------


class TestParsing:
    def test_parse_google_event(self):
        event = parse_google_event(
            {
                "id": "evt-1",
                "status": "confirmed",
                "summary": "Standup",
                "start": {"dateTime": "2026-10-20T09:00:00+02:00", "timeZone": "Europe/Berlin"},
                "end": {"dateTime": "2026-10-20T09:15:00+02:00"},
                "recurringEventId": "series-1",
                "creator": {"email": "boss@example.com"},
                "organizer": {"email": "team@group.calendar.google.com"},
                "guestsCanModify": True,
                "transparency": "transparent",
                "visibility": "private",
            }
        )
        assert event.id == "evt-1"
        assert event.start == RemoteEventTime(
            date_time="2026-10-20T09:00:00+02:00", time_zone="Europe/Berlin"
        )
        assert event.recurring_event_id == "series-1"
        assert event.creator_email == "boss@example.com"
        assert event.guests_can_modify is True
        assert event.transparency == "transparent"

    def test_parse_tolerates_malformed_fields(self):
        event = parse_google_event(
            {"id": "  ", "summary": 7, "start": "tomorrow", "guestsCanModify": "yes"}
        )
        assert event.id is None
        assert event.summary is None
        assert event.start is None
        assert event.guests_can_modify is None

    def test_serialize_patch_omits_unset_fields(self):
        assert serialize_event_write(RemoteEventWrite(summary="Retro")) == {"summary": "Retro"}
        assert serialize_event_write(
            RemoteEventWrite(start=RemoteEventTime(date="2026-10-21"))
        ) == {"start": {"date": "2026-10-21"}}

    @pytest.mark.parametrize(
        ("color", "expected"),
        [("#F44336", "red"), ("#43a047", "green"), ("#123456", "blue"), (None, "blue")],
    )
    def test_map_google_color(self, color, expected):
        assert map_google_color(color) == expected


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


class TestOAuth:
    def test_authorization_url_requests_offline_access(self):
        provider = _provider(lambda request: httpx.Response(500))
        url = provider.authorization_url(state="st-1", redirect_uri="https://app.test/cb")

        query = parse_qs(urlsplit(url).query)
        assert query["state"] == ["st-1"]
        assert query["access_type"] == ["offline"]
        assert query["prompt"] == ["consent"]
        assert query["redirect_uri"] == ["https://app.test/cb"]
        assert "https://www.googleapis.com/auth/calendar" in query["scope"][0].split()

    def test_authorization_url_without_credentials(self):
        provider = _provider(lambda request: httpx.Response(500), client_id=None)
        with pytest.raises(OAuthNotConfiguredError):
            provider.authorization_url(state="s", redirect_uri="https://app.test/cb")

    async def test_exchange_auth_code(self):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(
                200,
                json={"access_token": "at-1", "refresh_token": "rt-1", "expires_in": 3599},
            )

        grant = await _provider(handler).exchange_auth_code("code-1", redirect_uri="https://x/cb")

        assert str(requests[0].url) == GOOGLE_OAUTH_TOKEN_URL
        form = _form(requests[0])
        assert form["grant_type"] == "authorization_code"
        assert form["code"] == "code-1"
        assert form["redirect_uri"] == "https://x/cb"
        assert grant.access_token == "at-1"
        assert grant.refresh_token == "rt-1"
        assert grant.expires_at > datetime.now(UTC)

    async def test_refresh_token(self):
        forms: list[dict[str, str]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            forms.append(_form(request))
            return httpx.Response(200, json={"access_token": "at-2", "expires_in": "bogus"})

        grant = await _provider(handler).refresh_token("rt-1")

        assert forms[0]["grant_type"] == "refresh_token"
        assert forms[0]["refresh_token"] == "rt-1"
        assert grant.refresh_token is None

    @pytest.mark.parametrize("status", [400, 401, 403])
    async def test_rejected_refresh(self, status):
        provider = _provider(
            lambda request: httpx.Response(
                status, json={"error": "invalid_grant", "error_description": "Token revoked"}
            )
        )
        with pytest.raises(TokenRefreshFailedError, match="invalid_grant: Token revoked"):
            await provider.refresh_token("rt-1")

    async def test_token_endpoint_outage_is_transient(self):
        provider = _provider(lambda request: httpx.Response(500, text="oops"))
        with pytest.raises(ProviderRequestError) as exc_info:
            await provider.refresh_token("rt-1")
        assert not isinstance(exc_info.value, TokenRefreshFailedError)

    async def test_missing_access_token_in_response(self):
        provider = _provider(lambda request: httpx.Response(200, json={"expires_in": 10}))
        with pytest.raises(TokenRefreshFailedError):
            await provider.refresh_token("rt-1")


# ---------------------------------------------------------------------------
# Calendar API
# ---------------------------------------------------------------------------


class TestCalendarApi:
    async def test_list_calendars_follows_pages(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.headers["Authorization"] == "Bearer tok"
            if "pageToken" not in request.url.params:
                return httpx.Response(
                    200,
                    json={
                        "items": [
                            {"id": "primary", "summary": "Work", "primary": True,
                             "backgroundColor": "#f44336"},
                            {"summary": "no id"},
                        ],
                        "nextPageToken": "p2",
                    },
                )
            return httpx.Response(200, json={"items": [{"id": "team@group.calendar.google.com"}]})

        calendars = await _provider(handler).list_calendars("tok")

        assert [(c.id, c.name, c.color, c.primary) for c in calendars] == [
            ("primary", "Work", "red", True),
            ("team@group.calendar.google.com", "team@group.calendar.google.com", "blue", False),
        ]

    async def test_full_list_sends_time_min(self):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(
                200,
                json={
                    "items": [{"id": "e1", "start": {"date": "2026-10-21"}}],
                    "nextPageToken": "p2",
                },
            )

        page = await _provider(handler, page_size=50).list_events(
            "tok", "team@group.calendar.google.com", time_min=datetime(2026, 9, 18, tzinfo=UTC)
        )

        url = requests[0].url
        assert url.raw_path.startswith(
            b"/calendar/v3/calendars/team%40group.calendar.google.com/events?"
        )
        assert url.params["timeMin"] == "2026-09-18T00:00:00Z"
        assert url.params["singleEvents"] == "true"
        assert url.params["maxResults"] == "50"
        assert "syncToken" not in url.params
        assert page.items[0].start.date == "2026-10-21"
        assert page.next_page_token == "p2"
        assert page.next_sync_cursor is None

    async def test_incremental_list_sends_sync_token_only(self):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={"items": [], "nextSyncToken": "next"})

        page = await _provider(handler).list_events(
            "tok",
            "primary",
            sync_cursor="cursor-1",
            time_min=datetime(2026, 9, 18, tzinfo=UTC),
            page_token="p3",
        )

        params = requests[0].url.params
        assert params["syncToken"] == "cursor-1"
        assert params["pageToken"] == "p3"
        assert "timeMin" not in params
        assert page.next_sync_cursor == "next"

    async def test_gone_sync_token_raises_cursor_expired(self):
        provider = _provider(lambda request: httpx.Response(410, json={"error": {"message": "Gone"}}))
        with pytest.raises(SyncCursorExpiredError):
            await provider.list_events("tok", "primary", sync_cursor="old")

    async def test_api_error_message_is_surfaced(self):
        provider = _provider(
            lambda request: httpx.Response(
                404, json={"error": {"code": 404, "message": "Not   Found"}}
            )
        )
        with pytest.raises(ProviderRequestError, match=r"\(404\): Not Found"):
            await provider.list_events("tok", "missing")

    async def test_rate_limited_request_is_retried(self, monkeypatch):
        monkeypatch.setattr(google_module, "RATE_LIMIT_BASE_BACKOFF_SECONDS", 0.0)
        responses = [httpx.Response(503), httpx.Response(429, headers={"Retry-After": "0"})]

        def handler(request: httpx.Request) -> httpx.Response:
            if responses:
                return responses.pop(0)
            return httpx.Response(200, json={"items": [], "nextSyncToken": "c"})

        page = await _provider(handler).list_events("tok", "primary")
        assert page.next_sync_cursor == "c"

    async def test_network_error_is_provider_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(ProviderRequestError):
            await _provider(handler).list_events("tok", "primary")

    async def test_insert_event(self):
        bodies: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "POST"
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={"id": "new-1", "summary": "Retro"})

        created = await _provider(handler).insert_event(
            "tok",
            "primary",
            RemoteEventWrite(
                summary="Retro",
                start=RemoteEventTime(date_time="2026-10-22T15:00:00+00:00", time_zone="UTC"),
                end=RemoteEventTime(date_time="2026-10-22T16:00:00+00:00", time_zone="UTC"),
            ),
        )

        assert created.id == "new-1"
        assert bodies[0]["start"] == {"dateTime": "2026-10-22T15:00:00+00:00", "timeZone": "UTC"}

    async def test_patch_event_with_original_start_time(self):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={"id": "evt_20261022"})

        await _provider(handler).patch_event(
            "tok",
            "primary",
            "evt_20261022",
            RemoteEventWrite(summary="Moved"),
            original_start_time=RemoteEventTime(date="2026-10-22"),
        )

        assert requests[0].method == "PATCH"
        assert requests[0].url.path.endswith("/calendars/primary/events/evt_20261022")
        assert json.loads(requests[0].content) == {
            "summary": "Moved",
            "originalStartTime": {"date": "2026-10-22"},
        }

    @pytest.mark.parametrize("status", [404, 410])
    async def test_delete_of_missing_event_raises_gone(self, status):
        provider = _provider(lambda request: httpx.Response(status))
        with pytest.raises(RemoteEventGoneError):
            await provider.delete_event("tok", "primary", "evt-1")

    async def test_delete_event(self):
        methods: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            methods.append(request.method)
            return httpx.Response(204)

        await _provider(handler).delete_event("tok", "primary", "evt-1")
        assert methods == ["DELETE"]


# ---------------------------------------------------------------------------
# Push channels
# ---------------------------------------------------------------------------


class TestWatchChannels:
    async def test_create_watch(self):
        bodies: list[dict] = []
        expires_at = datetime(2026, 10, 25, 12, tzinfo=UTC)

        def handler(request: httpx.Request) -> httpx.Response:
            assert str(request.url) == (
                f"{GOOGLE_CALENDAR_API_BASE_URL}/calendars/primary/events/watch"
            )
            bodies.append(json.loads(request.content))
            return httpx.Response(
                200,
                json={"id": "chan-1", "resourceId": "res-1", "expiration": "1792843200000"},
            )

        channel = await _provider(handler).create_watch(
            "tok",
            "primary",
            channel_id="chan-1",
            webhook_url="https://hooks.example.test/google",
            expires_at=expires_at,
            channel_token="secret",
        )

        assert bodies[0] == {
            "id": "chan-1",
            "type": "web_hook",
            "address": "https://hooks.example.test/google",
            "expiration": int(expires_at.timestamp() * 1000),
            "token": "secret",
        }
        assert channel.resource_id == "res-1"
        assert channel.expires_at == datetime.fromtimestamp(1792843200, tz=UTC)

    async def test_create_watch_without_expiration_keeps_requested(self):
        expires_at = datetime(2026, 10, 25, 12, tzinfo=UTC)
        provider = _provider(lambda request: httpx.Response(200, json={"resourceId": "res-1"}))

        channel = await provider.create_watch(
            "tok", "primary", channel_id="chan-1", webhook_url="https://h", expires_at=expires_at
        )

        assert channel.channel_id == "chan-1"
        assert channel.expires_at == expires_at

    async def test_stop_watch_tolerates_unknown_channel(self):
        bodies: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(json.loads(request.content))
            return httpx.Response(404)

        await _provider(handler).stop_watch("tok", channel_id="chan-1", resource_id="res-1")
        assert bodies == [{"id": "chan-1", "resourceId": "res-1"}]

    async def test_shutdown_leaves_injected_client_open(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200)))
        provider = GoogleCalendarProvider(client_id="a", client_secret="b", http_client=client)
        await provider.shutdown()
        assert not client.is_closed
        await client.aclose()
