"""Linear task-tracker provider client over httpx (OAuth + GraphQL)."""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import urlencode

import httpx

from calsync.errors import OAuthNotConfiguredError, ProviderRequestError, TokenRefreshFailedError
from calsync.models import RemoteTask, TokenGrant
from calsync.providers.base import TaskProviderClient

logger = logging.getLogger(__name__)

LINEAR_OAUTH_AUTHORIZE_URL = "https://linear.app/oauth/authorize"
LINEAR_OAUTH_TOKEN_URL = "https://api.linear.app/oauth/token"
LINEAR_GRAPHQL_URL = "https://api.linear.app/graphql"
LINEAR_SCOPES = ("read",)
ASSIGNED_ISSUES_LIMIT = 50

STATE_TYPE_MAP: dict[str, str] = {
    "triage": "backlog",
    "backlog": "backlog",
    "unstarted": "todo",
    "started": "in_progress",
    "completed": "done",
    "canceled": "cancelled",
}

_ORGANIZATION_QUERY = "query { organization { name urlKey } }"

_ASSIGNED_ISSUES_QUERY = """
query AssignedIssues($first: Int!) {
  viewer {
    assignedIssues(
      first: $first
      filter: { state: { type: { nin: ["completed", "canceled"] } } }
    ) {
      nodes {
        id
        identifier
        title
        url
        priority
        dueDate
        state { type }
      }
    }
  }
}
"""


def normalize_state(state_type: str | None) -> str:
    """Map a Linear workflow state type onto the local task states."""
    if not state_type:
        return "todo"
    return STATE_TYPE_MAP.get(state_type, "todo")


def _safe_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        for key in ("error_description", "error"):
            value = payload.get(key)
            if isinstance(value, str) and value.strip():
                return " ".join(value.split())[:200]
        errors = payload.get("errors")
        if isinstance(errors, list) and errors and isinstance(errors[0], dict):
            message = errors[0].get("message")
            if isinstance(message, str) and message.strip():
                return " ".join(message.split())[:200]
    raw_text = response.text.strip()
    return " ".join(raw_text.split())[:200] if raw_text else "Request failed without a body"


class LinearTaskProvider(TaskProviderClient):
    """Linear OAuth application client."""

    def __init__(
        self,
        *,
        client_id: str | None,
        client_secret: str | None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=30.0)

    @property
    def name(self) -> str:
        return "linear"

    def _require_credentials(self) -> tuple[str, str]:
        if not self._client_id or not self._client_secret:
            raise OAuthNotConfiguredError(self.name)
        return self._client_id, self._client_secret

    def authorization_url(self, *, state: str, redirect_uri: str) -> str:
        client_id, _ = self._require_credentials()
        params = {
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": ",".join(LINEAR_SCOPES),
            "state": state,
            "prompt": "consent",
        }
        return f"{LINEAR_OAUTH_AUTHORIZE_URL}?{urlencode(params)}"

    async def exchange_auth_code(self, code: str, *, redirect_uri: str) -> TokenGrant:
        client_id, client_secret = self._require_credentials()
        payload = await self._post_token_endpoint(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
                "client_id": client_id,
                "client_secret": client_secret,
            },
            rejected_error=ProviderRequestError,
        )
        grant = self._grant_from_payload(payload)
        try:
            metadata = await self._organization_metadata(grant.access_token)
        except ProviderRequestError:
            logger.warning("Failed to fetch Linear organization metadata", exc_info=True)
            metadata = {}
        return grant.model_copy(update={"metadata": metadata})

    async def refresh_token(self, refresh_token: str) -> TokenGrant:
        client_id, client_secret = self._require_credentials()
        payload = await self._post_token_endpoint(
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": client_id,
                "client_secret": client_secret,
            },
            rejected_error=TokenRefreshFailedError,
        )
        return self._grant_from_payload(payload)

    async def _post_token_endpoint(
        self, data: dict[str, str], *, rejected_error: type[Exception]
    ) -> dict[str, Any]:
        try:
            response = await self._http_client.post(
                LINEAR_OAUTH_TOKEN_URL,
                data=data,
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise ProviderRequestError(0, f"Linear OAuth request failed: {exc}") from exc

        if response.status_code in (400, 401):
            message = f"Linear OAuth grant rejected ({response.status_code}): "
            message += _safe_error_message(response)
            if rejected_error is ProviderRequestError:
                raise ProviderRequestError(response.status_code, message)
            raise rejected_error(message)
        if response.status_code < 200 or response.status_code >= 300:
            raise ProviderRequestError(response.status_code, _safe_error_message(response))
        payload = response.json()
        if not isinstance(payload, dict):
            raise ProviderRequestError(response.status_code, "Unexpected Linear token payload")
        return payload

    @staticmethod
    def _grant_from_payload(payload: dict[str, Any]) -> TokenGrant:
        access_token = payload.get("access_token")
        if not isinstance(access_token, str) or not access_token.strip():
            raise TokenRefreshFailedError("Linear token response is missing an access_token")
        refresh_token = payload.get("refresh_token")
        expires_in = payload.get("expires_in")
        expires_at = None
        if isinstance(expires_in, int | float) and not isinstance(expires_in, bool):
            expires_at = datetime.now(UTC) + timedelta(seconds=int(expires_in))
        return TokenGrant(
            access_token=access_token.strip(),
            refresh_token=refresh_token if isinstance(refresh_token, str) and refresh_token else None,
            expires_at=expires_at,
        )

    async def _graphql(
        self, access_token: str, query: str, variables: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        try:
            response = await self._http_client.post(
                LINEAR_GRAPHQL_URL,
                json={"query": query, "variables": variables or {}},
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as exc:
            raise ProviderRequestError(0, f"Linear API request failed: {exc}") from exc
        if response.status_code < 200 or response.status_code >= 300:
            raise ProviderRequestError(response.status_code, _safe_error_message(response))
        payload = response.json()
        if not isinstance(payload, dict) or payload.get("errors"):
            raise ProviderRequestError(response.status_code, _safe_error_message(response))
        data = payload.get("data")
        return data if isinstance(data, dict) else {}

    async def _organization_metadata(self, access_token: str) -> dict[str, Any]:
        data = await self._graphql(access_token, _ORGANIZATION_QUERY)
        organization = data.get("organization") or {}
        metadata: dict[str, Any] = {}
        if organization.get("name"):
            metadata["organizationName"] = organization["name"]
        if organization.get("urlKey"):
            metadata["urlKey"] = organization["urlKey"]
        return metadata

    async def list_assigned_tasks(self, access_token: str) -> list[RemoteTask]:
        data = await self._graphql(
            access_token, _ASSIGNED_ISSUES_QUERY, {"first": ASSIGNED_ISSUES_LIMIT}
        )
        viewer = data.get("viewer") or {}
        nodes = (viewer.get("assignedIssues") or {}).get("nodes") or []
        tasks: list[RemoteTask] = []
        for node in nodes:
            if not isinstance(node, dict) or not node.get("id"):
                continue
            state = node.get("state") or {}
            tasks.append(
                RemoteTask(
                    external_id=node["id"],
                    identifier=node.get("identifier"),
                    title=node.get("title") or "",
                    url=node.get("url"),
                    state=normalize_state(state.get("type")),
                    priority=node.get("priority"),
                    due_date=node.get("dueDate"),
                )
            )
        return tasks

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()
