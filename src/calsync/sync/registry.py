"""External calendar registry: remote calendar <-> local calendar mappings."""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta

from calsync.errors import ExternalCalendarNotFoundError
from calsync.models import Connection, ExternalCalendar
from calsync.storage.base import SyncStore

logger = logging.getLogger(__name__)

DEFAULT_RENEWAL_WINDOW = timedelta(hours=48)


class ExternalCalendarRegistry:
    def __init__(self, store: SyncStore) -> None:
        self._store = store

    async def get(self, mapping_id: str) -> ExternalCalendar:
        mapping = await self._store.get_external_calendar(mapping_id)
        if mapping is None:
            raise ExternalCalendarNotFoundError(f"External calendar {mapping_id} not found")
        return mapping

    async def get_by_remote_id(
        self, connection_id: str, remote_calendar_id: str
    ) -> ExternalCalendar:
        mapping = await self._store.get_by_remote_id(connection_id, remote_calendar_id)
        if mapping is None:
            raise ExternalCalendarNotFoundError(
                f"Calendar {remote_calendar_id!r} is not mapped for connection {connection_id}"
            )
        return mapping

    async def get_by_channel_id(self, channel_id: str) -> ExternalCalendar | None:
        return await self._store.get_by_channel_id(channel_id)

    async def find_by_local_calendar(self, calendar_id: str) -> ExternalCalendar | None:
        return await self._store.find_by_local_calendar(calendar_id)

    async def find_by_remote_calendar(
        self, user_id: str, provider: str, remote_calendar_id: str
    ) -> ExternalCalendar | None:
        return await self._store.find_by_remote_calendar(user_id, provider, remote_calendar_id)

    async def list_for_user(self, user_id: str) -> list[ExternalCalendar]:
        return await self._store.list_external_calendars(user_id=user_id)

    async def list_all(self) -> list[ExternalCalendar]:
        return await self._store.list_external_calendars()

    async def find_channels_expiring_within(
        self, window: timedelta = DEFAULT_RENEWAL_WINDOW, *, now: datetime | None = None
    ) -> list[ExternalCalendar]:
        """Mappings with a push channel that expires within *window* or has no known expiry."""
        cutoff = (now or datetime.now(UTC)) + window
        return await self._store.list_channels_expiring_before(cutoff)

    async def upsert_by_remote_id(
        self,
        connection: Connection,
        remote_calendar_id: str,
        *,
        name: str,
        color: str | None = None,
    ) -> ExternalCalendar:
        mapping, created = await self._store.upsert_external_calendar(
            connection,
            remote_calendar_id=remote_calendar_id,
            name=name,
            color=color,
        )
        if created:
            logger.info(
                "Mapped remote calendar %r to local calendar %s (mapping %s)",
                remote_calendar_id,
                mapping.local_calendar_id,
                mapping.id,
            )
        return mapping

    async def set_sync_cursor(self, mapping_id: str, cursor: str) -> None:
        await self._store.set_sync_cursor(mapping_id, cursor)

    async def record_channel(
        self,
        mapping_id: str,
        *,
        channel_id: str,
        channel_secret: str | None,
        resource_id: str | None,
        expires_at: datetime | None,
    ) -> None:
        await self._store.set_channel(
            mapping_id,
            channel_id=channel_id,
            channel_secret=channel_secret,
            resource_id=resource_id,
            expires_at=expires_at,
        )

    async def mark_run_started(self, mapping_id: str, run_id: str) -> None:
        """Point the mapping at a new run and clear the previous failure."""
        await self._store.mark_run_started(mapping_id, run_id)

    async def record_sync_error(self, mapping_id: str, error: str) -> None:
        await self._store.set_sync_error(mapping_id, error)
