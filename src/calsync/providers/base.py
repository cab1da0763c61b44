"""Provider capability interfaces.

The sync engine is provider-agnostic: it talks to a provider only through
these contracts, and a :class:`ProviderRegistry` resolves the implementation
from a connection's provider tag.
"""

from __future__ import annotations

import abc
from datetime import datetime

from calsync.errors import ConfigurationError
from calsync.models import (
    EventPage,
    RemoteCalendar,
    RemoteEvent,
    RemoteEventTime,
    RemoteEventWrite,
    RemoteTask,
    TokenGrant,
    WatchChannel,
)


class ProviderClient(abc.ABC):
    """OAuth surface shared by every provider."""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Stable provider tag stored on connections."""
        ...

    @abc.abstractmethod
    def authorization_url(self, *, state: str, redirect_uri: str) -> str:
        """Consent URL the user is sent to."""
        ...

    @abc.abstractmethod
    async def exchange_auth_code(self, code: str, *, redirect_uri: str) -> TokenGrant:
        """Exchange an authorization code for tokens."""
        ...

    @abc.abstractmethod
    async def refresh_token(self, refresh_token: str) -> TokenGrant:
        """Mint a new access token.

        Raises :class:`~calsync.errors.TokenRefreshFailedError` when the
        provider rejects *refresh_token*.
        """
        ...

    @abc.abstractmethod
    async def shutdown(self) -> None:
        """Release provider resources."""
        ...


class CalendarProviderClient(ProviderClient):
    """Remote calendar API."""

    @abc.abstractmethod
    async def list_calendars(self, access_token: str) -> list[RemoteCalendar]: ...

    @abc.abstractmethod
    async def list_events(
        self,
        access_token: str,
        remote_calendar_id: str,
        *,
        sync_cursor: str | None = None,
        time_min: datetime | None = None,
        page_token: str | None = None,
    ) -> EventPage:
        """Fetch one page of events.

        Raises :class:`~calsync.errors.SyncCursorExpiredError` when the
        provider no longer accepts *sync_cursor*.
        """
        ...

    @abc.abstractmethod
    async def insert_event(
        self, access_token: str, remote_calendar_id: str, body: RemoteEventWrite
    ) -> RemoteEvent: ...

    @abc.abstractmethod
    async def patch_event(
        self,
        access_token: str,
        remote_calendar_id: str,
        remote_event_id: str,
        body: RemoteEventWrite,
        *,
        original_start_time: RemoteEventTime | None = None,
    ) -> RemoteEvent: ...

    @abc.abstractmethod
    async def delete_event(
        self, access_token: str, remote_calendar_id: str, remote_event_id: str
    ) -> None:
        """Delete a remote event.

        Raises :class:`~calsync.errors.RemoteEventGoneError` when the event is
        already gone.
        """
        ...

    @abc.abstractmethod
    async def create_watch(
        self,
        access_token: str,
        remote_calendar_id: str,
        *,
        channel_id: str,
        webhook_url: str,
        expires_at: datetime,
        channel_token: str | None = None,
    ) -> WatchChannel: ...

    @abc.abstractmethod
    async def stop_watch(self, access_token: str, *, channel_id: str, resource_id: str) -> None: ...


class TaskProviderClient(ProviderClient):
    """Remote task tracker API."""

    @abc.abstractmethod
    async def list_assigned_tasks(self, access_token: str) -> list[RemoteTask]: ...


class ProviderRegistry:
    """Lookup of provider clients by tag."""

    def __init__(self, *providers: ProviderClient) -> None:
        self._providers = {provider.name: provider for provider in providers}

    def get(self, name: str) -> ProviderClient:
        try:
            return self._providers[name]
        except KeyError:
            raise ConfigurationError(f"No provider client registered for {name!r}") from None

    def calendar(self, name: str) -> CalendarProviderClient:
        provider = self.get(name)
        if not isinstance(provider, CalendarProviderClient):
            raise ConfigurationError(f"Provider {name!r} is not a calendar provider")
        return provider

    def tasks(self, name: str) -> TaskProviderClient:
        provider = self.get(name)
        if not isinstance(provider, TaskProviderClient):
            raise ConfigurationError(f"Provider {name!r} is not a task provider")
        return provider

    async def shutdown(self) -> None:
        for provider in self._providers.values():
            await provider.shutdown()
