"""Connect flow: OAuth state handling and first-time provider setup.

The flow:
  1. ``begin`` generates a one-time state token bound to the user and
     provider (TTL 10 min) and returns the provider's consent URL.
  2. ``complete`` consumes the state, exchanges the code for tokens and
     persists the connection.  For a calendar provider every remote
     calendar is mapped, a push channel is registered per mapping (when a
     webhook URL is configured) and an initial full sync is enqueued.

NOTE: the state store is process-local; run a single worker process.
"""

from __future__ import annotations

import logging
import secrets
import time
from dataclasses import dataclass, field

from calsync.config import OAuthClientConfig
from calsync.errors import (
    InvalidOAuthStateError,
    NoRefreshTokenError,
    OAuthNotConfiguredError,
)
from calsync.models import CALENDAR_PROVIDERS, Connection, ExternalCalendar
from calsync.providers.base import ProviderRegistry
from calsync.sync.channels import ChannelManager
from calsync.sync.orchestrator import SyncOrchestrator
from calsync.sync.registry import ExternalCalendarRegistry
from calsync.sync.tokens import ConnectionStore

logger = logging.getLogger(__name__)

STATE_TTL_SECONDS = 600


@dataclass(frozen=True)
class PendingAuthorization:
    user_id: str
    provider: str
    expires_at: float


class OAuthStateStore:
    """One-time CSRF state tokens, keyed by token value."""

    def __init__(self, *, ttl_seconds: float = STATE_TTL_SECONDS) -> None:
        self._ttl = ttl_seconds
        self._pending: dict[str, PendingAuthorization] = {}

    def issue(self, user_id: str, provider: str) -> str:
        self._evict_expired()
        state = secrets.token_urlsafe(32)
        self._pending[state] = PendingAuthorization(
            user_id=user_id, provider=provider, expires_at=time.monotonic() + self._ttl
        )
        return state

    def consume(self, state: str, provider: str) -> PendingAuthorization:
        """Validate and consume *state*; raises InvalidOAuthStateError otherwise."""
        self._evict_expired()
        pending = self._pending.pop(state, None)
        if pending is None or pending.provider != provider:
            raise InvalidOAuthStateError("OAuth state is invalid or has expired")
        return pending

    def _evict_expired(self) -> None:
        now = time.monotonic()
        expired = [k for k, p in self._pending.items() if now >= p.expires_at]
        for k in expired:
            del self._pending[k]

    def clear(self) -> None:
        self._pending.clear()


@dataclass
class ConnectResult:
    connection: Connection
    mappings: list[ExternalCalendar] = field(default_factory=list)
    watched: list[str] = field(default_factory=list)
    run_ids: dict[str, str] = field(default_factory=dict)


class OnboardingService:
    def __init__(
        self,
        *,
        providers: ProviderRegistry,
        oauth_clients: dict[str, OAuthClientConfig],
        tokens: ConnectionStore,
        registry: ExternalCalendarRegistry,
        channels: ChannelManager,
        orchestrator: SyncOrchestrator,
        states: OAuthStateStore | None = None,
    ) -> None:
        self._providers = providers
        self._oauth_clients = oauth_clients
        self._tokens = tokens
        self._registry = registry
        self._channels = channels
        self._orchestrator = orchestrator
        self.states = states or OAuthStateStore()

    def _redirect_uri(self, provider: str) -> str:
        client = self._oauth_clients.get(provider)
        if client is None or not client.configured or not client.redirect_uri:
            raise OAuthNotConfiguredError(provider)
        return client.redirect_uri

    def begin(self, user_id: str, provider: str) -> str:
        """Return the consent URL for *provider*."""
        redirect_uri = self._redirect_uri(provider)
        client = self._providers.get(provider)
        state = self.states.issue(user_id, provider)
        return client.authorization_url(state=state, redirect_uri=redirect_uri)

    async def complete(self, provider: str, *, code: str, state: str) -> ConnectResult:
        redirect_uri = self._redirect_uri(provider)
        pending = self.states.consume(state, provider)
        client = self._providers.get(provider)

        grant = await client.exchange_auth_code(code, redirect_uri=redirect_uri)
        if not grant.refresh_token:
            raise NoRefreshTokenError(
                f"{provider} did not return a refresh token; revoke access and reconnect"
            )
        connection = await self._tokens.save_connection(
            provider=provider,
            user_id=pending.user_id,
            refresh_token=grant.refresh_token,
            access_token=grant.access_token,
            access_token_expires_at=grant.expires_at,
            metadata=grant.metadata,
        )

        if provider in CALENDAR_PROVIDERS:
            return await self.onboard_calendars(connection)

        result = ConnectResult(connection=connection)
        result.run_ids[connection.id] = await self._orchestrator.enqueue_task_sync(connection.id)
        return result

    async def onboard_calendars(self, connection: Connection) -> ConnectResult:
        """Map every remote calendar of *connection*, watch it and enqueue a full sync."""
        result = ConnectResult(connection=connection)
        access_token = await self._tokens.get_valid_access_token(connection.id)
        calendars = await self._providers.calendar(connection.provider).list_calendars(
            access_token
        )

        for remote in calendars:
            mapping = await self._registry.upsert_by_remote_id(
                connection, remote.id, name=remote.name, color=remote.color
            )
            result.mappings.append(mapping)

            if self._channels.push_enabled:
                try:
                    await self._channels.register_watch(connection.id, remote.id)
                    result.watched.append(mapping.id)
                except Exception:
                    logger.warning(
                        "Failed to register push channel for mapping %s; "
                        "the fallback sweep will keep it in sync",
                        mapping.id,
                        exc_info=True,
                    )

            result.run_ids[mapping.id] = await self._orchestrator.enqueue_calendar_sync(
                mapping.id
            )

        logger.info(
            "Onboarded %s connection %s: %d calendar(s), %d watched",
            connection.provider,
            connection.id,
            len(result.mappings),
            len(result.watched),
        )
        return result
