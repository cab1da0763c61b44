"""Tests for the Linear task-tracker provider client."""

from __future__ import annotations

import json
from collections.abc import Callable
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest

from calsync.errors import ProviderRequestError, TokenRefreshFailedError
from calsync.providers.linear import (
    ASSIGNED_ISSUES_LIMIT,
    LINEAR_GRAPHQL_URL,
    LINEAR_OAUTH_TOKEN_URL,
    LinearTaskProvider,
    normalize_state,
)

pytestmark = pytest.mark.unit


def _provider(handler: Callable[[httpx.Request], httpx.Response]) -> LinearTaskProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return LinearTaskProvider(client_id="lin-id", client_secret="lin-secret", http_client=client)


@pytest.mark.parametrize(
    ("state_type", "expected"),
    [
        ("triage", "backlog"),
        ("unstarted", "todo"),
        ("started", "in_progress"),
        ("completed", "done"),
        ("canceled", "cancelled"),
        ("mystery", "todo"),
        (None, "todo"),
    ],
)
def test_normalize_state(state_type, expected):
    assert normalize_state(state_type) == expected


def test_authorization_url():
    url = _provider(lambda request: httpx.Response(500)).authorization_url(
        state="st-1", redirect_uri="https://app.test/api/oauth/linear/callback"
    )
    query = parse_qs(urlsplit(url).query)
    assert url.startswith("https://linear.app/oauth/authorize?")
    assert query["scope"] == ["read"]
    assert query["state"] == ["st-1"]


async def test_exchange_auth_code_fetches_organization_metadata():
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        if str(request.url) == LINEAR_OAUTH_TOKEN_URL:
            return httpx.Response(
                200,
                json={"access_token": "lin-at", "refresh_token": "lin-rt", "expires_in": 86399},
            )
        assert request.headers["Authorization"] == "Bearer lin-at"
        return httpx.Response(
            200, json={"data": {"organization": {"name": "Acme", "urlKey": "acme"}}}
        )

    grant = await _provider(handler).exchange_auth_code("code-1", redirect_uri="https://x/cb")

    assert seen == [LINEAR_OAUTH_TOKEN_URL, LINEAR_GRAPHQL_URL]
    assert grant.refresh_token == "lin-rt"
    assert grant.expires_at is not None
    assert grant.metadata == {"organizationName": "Acme", "urlKey": "acme"}


async def test_exchange_survives_metadata_failure():
    def handler(request: httpx.Request) -> httpx.Response:
        if str(request.url) == LINEAR_OAUTH_TOKEN_URL:
            return httpx.Response(200, json={"access_token": "lin-at", "refresh_token": "lin-rt"})
        return httpx.Response(500, text="down")

    grant = await _provider(handler).exchange_auth_code("code-1", redirect_uri="https://x/cb")

    assert grant.metadata == {}
    assert grant.expires_at is None


async def test_rejected_code_is_a_provider_error():
    provider = _provider(lambda request: httpx.Response(400, json={"error": "invalid_grant"}))
    with pytest.raises(ProviderRequestError, match="invalid_grant"):
        await provider.exchange_auth_code("bad", redirect_uri="https://x/cb")


async def test_rejected_refresh_token():
    provider = _provider(
        lambda request: httpx.Response(401, json={"error_description": "refresh token revoked"})
    )
    with pytest.raises(TokenRefreshFailedError, match="refresh token revoked"):
        await provider.refresh_token("lin-rt")


async def test_list_assigned_tasks():
    bodies: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(
            200,
            json={
                "data": {
                    "viewer": {
                        "assignedIssues": {
                            "nodes": [
                                {
                                    "id": "issue-1",
                                    "identifier": "ENG-12",
                                    "title": "Fix sync",
                                    "url": "https://linear.app/acme/issue/ENG-12",
                                    "priority": 2,
                                    "dueDate": "2026-10-30",
                                    "state": {"type": "started"},
                                },
                                {"identifier": "ENG-13", "title": "no id"},
                                {"id": "issue-3", "title": None, "state": None},
                            ]
                        }
                    }
                }
            },
        )

    tasks = await _provider(handler).list_assigned_tasks("lin-at")

    assert bodies[0]["variables"] == {"first": ASSIGNED_ISSUES_LIMIT}
    assert [t.external_id for t in tasks] == ["issue-1", "issue-3"]
    assert tasks[0].state == "in_progress"
    assert tasks[0].due_date == "2026-10-30"
    assert tasks[1].title == ""
    assert tasks[1].state == "todo"


async def test_graphql_errors_raise():
    provider = _provider(
        lambda request: httpx.Response(200, json={"errors": [{"message": "Authentication required"}]})
    )
    with pytest.raises(ProviderRequestError, match="Authentication required"):
        await provider.list_assigned_tasks("lin-at")
