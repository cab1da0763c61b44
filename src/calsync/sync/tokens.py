"""Connection & token store.

Persists one OAuth connection per (user, provider) and hands out access
tokens that are valid for at least the refresh margin, refreshing and
persisting them on demand.  Concurrent refreshers may race; the provider
simply issues two valid tokens and the last write wins.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import Any

from calsync.errors import ConnectionNotFoundError, ProviderRequestError, UserNotFoundError
from calsync.models import Connection
from calsync.providers.base import CalendarProviderClient, ProviderRegistry
from calsync.storage.base import SyncStore

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_MARGIN = timedelta(seconds=60)


class ConnectionStore:
    def __init__(
        self,
        store: SyncStore,
        providers: ProviderRegistry,
        *,
        refresh_margin: timedelta = DEFAULT_REFRESH_MARGIN,
    ) -> None:
        self._store = store
        self._providers = providers
        self._refresh_margin = refresh_margin

    async def save_connection(
        self,
        *,
        provider: str,
        user_id: str,
        refresh_token: str,
        access_token: str | None = None,
        access_token_expires_at: datetime | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Connection:
        """Create the user's connection for *provider*, or update the existing one."""
        if await self._store.get_user(user_id) is None:
            raise UserNotFoundError(f"User {user_id} not found")
        connection = await self._store.upsert_connection(
            user_id=user_id,
            provider=provider,
            refresh_token=refresh_token,
            access_token=access_token or None,
            access_token_expires_at=access_token_expires_at,
            metadata=metadata or {},
        )
        logger.info("Saved %s connection %s for user %s", provider, connection.id, user_id)
        return connection

    async def get_connection(self, connection_id: str) -> Connection:
        connection = await self._store.get_connection(connection_id)
        if connection is None:
            raise ConnectionNotFoundError(f"Connection {connection_id} not found")
        return connection

    def _token_is_fresh(self, connection: Connection, now: datetime) -> bool:
        if connection.access_token is None or connection.access_token_expires_at is None:
            return False
        return connection.access_token_expires_at > now + self._refresh_margin

    async def get_valid_access_token(self, connection_id: str) -> str:
        """Return an access token that outlives the refresh margin.

        Raises :class:`~calsync.errors.TokenRefreshFailedError` when the
        provider rejects the stored refresh token; callers should surface it
        as "reconnect required".
        """
        connection = await self.get_connection(connection_id)
        now = datetime.now(UTC)
        if self._token_is_fresh(connection, now):
            assert connection.access_token is not None
            return connection.access_token

        provider = self._providers.get(connection.provider)
        grant = await provider.refresh_token(connection.refresh_token)
        await self._store.update_access_token(
            connection.id,
            access_token=grant.access_token,
            access_token_expires_at=grant.expires_at,
            refresh_token=grant.refresh_token,
        )
        logger.debug("Refreshed access token for connection %s", connection.id)
        return grant.access_token

    async def remove_connection(
        self, connection_id: str, *, also_delete_mirrored_events: bool = False
    ) -> bool:
        """Delete a connection with its mappings; idempotent.

        Push channels are stopped best-effort first.  Mirrored events are
        deleted when requested, otherwise they are unlinked and kept as
        ordinary local events.
        """
        connection = await self._store.get_connection(connection_id)
        if connection is None:
            return False
        await self._stop_channels(connection)
        removed = await self._store.delete_connection(
            connection_id, delete_mirrored_events=also_delete_mirrored_events
        )
        if removed:
            logger.info(
                "Removed %s connection %s (mirrored events %s)",
                connection.provider,
                connection_id,
                "deleted" if also_delete_mirrored_events else "unlinked",
            )
        return removed

    async def _stop_channels(self, connection: Connection) -> None:
        mappings = await self._store.list_external_calendars(connection_id=connection.id)
        with_channels = [m for m in mappings if m.channel_id and m.channel_resource_id]
        if not with_channels:
            return
        provider = self._providers.get(connection.provider)
        if not isinstance(provider, CalendarProviderClient):
            return
        try:
            access_token = await self.get_valid_access_token(connection.id)
        except Exception:
            logger.warning(
                "Could not obtain a token to stop channels of connection %s",
                connection.id,
                exc_info=True,
            )
            return
        for mapping in with_channels:
            assert mapping.channel_id is not None and mapping.channel_resource_id is not None
            try:
                await provider.stop_watch(
                    access_token,
                    channel_id=mapping.channel_id,
                    resource_id=mapping.channel_resource_id,
                )
            except ProviderRequestError:
                logger.warning(
                    "Failed to stop channel %s for mapping %s",
                    mapping.channel_id,
                    mapping.id,
                    exc_info=True,
                )
