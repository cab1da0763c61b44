"""Repository contracts for persisted sync state.

Each method is one short local transaction.  Engines depend on these
protocols only, so the Postgres backend and the in-memory backend are
interchangeable.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol

from calsync.models import (
    Calendar,
    Connection,
    Event,
    EventFields,
    ExternalCalendar,
    MirrorLink,
    TaskItem,
    User,
)

MirrorKey = tuple[str, str, str]


class UserRepository(Protocol):
    async def get_user(self, user_id: str) -> User | None: ...


class ConnectionRepository(Protocol):
    async def get_connection(self, connection_id: str) -> Connection | None: ...

    async def find_connection(self, user_id: str, provider: str) -> Connection | None: ...

    async def list_connections(
        self, *, user_id: str | None = None, provider: str | None = None
    ) -> list[Connection]: ...

    async def upsert_connection(
        self,
        *,
        user_id: str,
        provider: str,
        refresh_token: str,
        access_token: str | None,
        access_token_expires_at: datetime | None,
        metadata: dict[str, Any],
    ) -> Connection: ...

    async def update_access_token(
        self,
        connection_id: str,
        *,
        access_token: str,
        access_token_expires_at: datetime | None,
        refresh_token: str | None = None,
    ) -> None: ...

    async def delete_connection(
        self, connection_id: str, *, delete_mirrored_events: bool
    ) -> bool:
        """Delete the connection, its mappings and its task items atomically.

        Mirrored events pointing at the connection's calendars are deleted when
        *delete_mirrored_events* is set, otherwise their mirroring fields are
        cleared.  Returns False when the connection did not exist.
        """
        ...

    async def mark_connection_run_started(self, connection_id: str, run_id: str) -> None: ...

    async def set_connection_sync_error(self, connection_id: str, error: str) -> None: ...


class ExternalCalendarRepository(Protocol):
    async def get_external_calendar(self, mapping_id: str) -> ExternalCalendar | None: ...

    async def get_by_channel_id(self, channel_id: str) -> ExternalCalendar | None: ...

    async def get_by_remote_id(
        self, connection_id: str, remote_calendar_id: str
    ) -> ExternalCalendar | None: ...

    async def find_by_local_calendar(self, calendar_id: str) -> ExternalCalendar | None: ...

    async def find_by_remote_calendar(
        self, user_id: str, provider: str, remote_calendar_id: str
    ) -> ExternalCalendar | None: ...

    async def list_external_calendars(
        self, *, user_id: str | None = None, connection_id: str | None = None
    ) -> list[ExternalCalendar]: ...

    async def list_channels_expiring_before(self, cutoff: datetime) -> list[ExternalCalendar]:
        """Rows with a channel id whose expiry is before *cutoff* or unknown."""
        ...

    async def upsert_external_calendar(
        self,
        connection: Connection,
        *,
        remote_calendar_id: str,
        name: str,
        color: str | None,
    ) -> tuple[ExternalCalendar, bool]:
        """Insert or refresh a mapping; returns ``(mapping, created)``.

        On first insert a local calendar is created and linked in the same
        transaction.
        """
        ...

    async def set_sync_cursor(self, mapping_id: str, cursor: str) -> None: ...

    async def set_channel(
        self,
        mapping_id: str,
        *,
        channel_id: str,
        channel_secret: str | None,
        resource_id: str | None,
        expires_at: datetime | None,
    ) -> None: ...

    async def mark_run_started(self, mapping_id: str, run_id: str) -> None: ...

    async def set_sync_error(self, mapping_id: str, error: str) -> None: ...


class CalendarRepository(Protocol):
    async def get_calendar(self, calendar_id: str) -> Calendar | None: ...


class EventRepository(Protocol):
    async def get_event(self, event_id: str) -> Event | None: ...

    async def find_mirrored_event(self, key: MirrorKey) -> Event | None: ...

    async def create_event(self, fields: EventFields) -> Event: ...

    async def update_event(self, event_id: str, changes: dict[str, Any]) -> Event: ...

    async def delete_event(self, event_id: str) -> Event | None: ...

    async def set_mirror(self, event_id: str, mirror: MirrorLink | None) -> None: ...

    async def apply_mirror_batch(
        self, *, deletes: list[MirrorKey], upserts: list[EventFields]
    ) -> tuple[int, int]:
        """Apply one batch in a single transaction; returns ``(upserted, deleted)``.

        Upserts patch the event matching the mirror key or insert a new one.
        Deletes of unknown keys are silent no-ops and are not counted.
        """
        ...


class TaskItemRepository(Protocol):
    async def list_task_items(self, connection_id: str) -> list[TaskItem]: ...

    async def replace_task_items(
        self, connection_id: str, items: list[TaskItem]
    ) -> tuple[int, int]:
        """Upsert *items* and prune the rest; returns ``(upserted, pruned)``."""
        ...


class SyncStore(
    UserRepository,
    ConnectionRepository,
    ExternalCalendarRepository,
    CalendarRepository,
    EventRepository,
    TaskItemRepository,
    Protocol,
):
    """Everything the sync engine persists."""
