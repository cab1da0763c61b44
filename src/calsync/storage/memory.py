"""In-process implementation of :class:`~calsync.storage.base.SyncStore`.

Used by the ``memory`` database backend for local development and by the
test suite.  State lives in plain dicts guarded by a single asyncio lock so a
batch is applied atomically with respect to other coroutines.
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime
from typing import Any

from calsync.errors import ConnectionNotFoundError, EventNotFoundError, UserNotFoundError
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
from calsync.storage.base import MirrorKey


def _new_id() -> str:
    return str(uuid.uuid4())


class InMemoryStore:
    """Dict-backed sync store."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self.users: dict[str, User] = {}
        self.connections: dict[str, Connection] = {}
        self.external_calendars: dict[str, ExternalCalendar] = {}
        self.calendars: dict[str, Calendar] = {}
        self.events: dict[str, Event] = {}
        self.task_items: dict[tuple[str, str], TaskItem] = {}

    # -- users ---------------------------------------------------------------

    def add_user(
        self, email: str | None = None, *, user_id: str | None = None, sync_horizon_months: int = 1
    ) -> User:
        user = User(id=user_id or _new_id(), email=email, sync_horizon_months=sync_horizon_months)
        self.users[user.id] = user
        return user

    async def get_user(self, user_id: str) -> User | None:
        return self.users.get(user_id)

    # -- connections ---------------------------------------------------------

    async def get_connection(self, connection_id: str) -> Connection | None:
        return self.connections.get(connection_id)

    async def find_connection(self, user_id: str, provider: str) -> Connection | None:
        for connection in self.connections.values():
            if connection.user_id == user_id and connection.provider == provider:
                return connection
        return None

    async def list_connections(
        self, *, user_id: str | None = None, provider: str | None = None
    ) -> list[Connection]:
        return [
            c
            for c in self.connections.values()
            if (user_id is None or c.user_id == user_id)
            and (provider is None or c.provider == provider)
        ]

    async def upsert_connection(
        self,
        *,
        user_id: str,
        provider: str,
        refresh_token: str,
        access_token: str | None,
        access_token_expires_at: datetime | None,
        metadata: dict[str, Any],
    ) -> Connection:
        async with self._lock:
            if user_id not in self.users:
                raise UserNotFoundError(f"User {user_id} not found")
            existing = await self.find_connection(user_id, provider)
            connection = Connection(
                id=existing.id if existing else _new_id(),
                user_id=user_id,
                provider=provider,
                refresh_token=refresh_token,
                access_token=access_token,
                access_token_expires_at=access_token_expires_at,
                metadata=metadata,
                latest_sync_run_id=existing.latest_sync_run_id if existing else None,
                last_sync_error=existing.last_sync_error if existing else None,
            )
            self.connections[connection.id] = connection
            return connection

    async def update_access_token(
        self,
        connection_id: str,
        *,
        access_token: str,
        access_token_expires_at: datetime | None,
        refresh_token: str | None = None,
    ) -> None:
        connection = self.connections.get(connection_id)
        if connection is None:
            raise ConnectionNotFoundError(f"Connection {connection_id} not found")
        update: dict[str, Any] = {
            "access_token": access_token,
            "access_token_expires_at": access_token_expires_at,
        }
        if refresh_token:
            update["refresh_token"] = refresh_token
        self.connections[connection_id] = connection.model_copy(update=update)

    async def delete_connection(self, connection_id: str, *, delete_mirrored_events: bool) -> bool:
        async with self._lock:
            connection = self.connections.pop(connection_id, None)
            if connection is None:
                return False
            mappings = [
                m for m in self.external_calendars.values() if m.connection_id == connection_id
            ]
            remote_ids = {m.remote_calendar_id for m in mappings}
            for event in list(self.events.values()):
                mirror = event.mirror
                if (
                    mirror is None
                    or event.user_id != connection.user_id
                    or mirror.provider != connection.provider
                    or mirror.remote_calendar_id not in remote_ids
                ):
                    continue
                if delete_mirrored_events:
                    del self.events[event.id]
                else:
                    self.events[event.id] = event.model_copy(update={"mirror": None})
            for mapping in mappings:
                del self.external_calendars[mapping.id]
            for key in [k for k in self.task_items if k[0] == connection_id]:
                del self.task_items[key]
            return True

    async def mark_connection_run_started(self, connection_id: str, run_id: str) -> None:
        self._patch_connection(connection_id, latest_sync_run_id=run_id, last_sync_error=None)

    async def set_connection_sync_error(self, connection_id: str, error: str) -> None:
        self._patch_connection(connection_id, last_sync_error=error)

    def _patch_connection(self, connection_id: str, **update: Any) -> None:
        connection = self.connections.get(connection_id)
        if connection is not None:
            self.connections[connection_id] = connection.model_copy(update=update)

    # -- external calendars --------------------------------------------------

    async def get_external_calendar(self, mapping_id: str) -> ExternalCalendar | None:
        return self.external_calendars.get(mapping_id)

    async def get_by_channel_id(self, channel_id: str) -> ExternalCalendar | None:
        for mapping in self.external_calendars.values():
            if mapping.channel_id == channel_id:
                return mapping
        return None

    async def get_by_remote_id(
        self, connection_id: str, remote_calendar_id: str
    ) -> ExternalCalendar | None:
        for mapping in self.external_calendars.values():
            if (
                mapping.connection_id == connection_id
                and mapping.remote_calendar_id == remote_calendar_id
            ):
                return mapping
        return None

    async def find_by_local_calendar(self, calendar_id: str) -> ExternalCalendar | None:
        for mapping in self.external_calendars.values():
            if mapping.local_calendar_id == calendar_id:
                return mapping
        return None

    async def find_by_remote_calendar(
        self, user_id: str, provider: str, remote_calendar_id: str
    ) -> ExternalCalendar | None:
        for mapping in self.external_calendars.values():
            if (
                mapping.user_id == user_id
                and mapping.provider == provider
                and mapping.remote_calendar_id == remote_calendar_id
            ):
                return mapping
        return None

    async def list_external_calendars(
        self, *, user_id: str | None = None, connection_id: str | None = None
    ) -> list[ExternalCalendar]:
        return [
            m
            for m in self.external_calendars.values()
            if (user_id is None or m.user_id == user_id)
            and (connection_id is None or m.connection_id == connection_id)
        ]

    async def list_channels_expiring_before(self, cutoff: datetime) -> list[ExternalCalendar]:
        return [
            m
            for m in self.external_calendars.values()
            if m.channel_id and (m.channel_expires_at is None or m.channel_expires_at < cutoff)
        ]

    async def upsert_external_calendar(
        self,
        connection: Connection,
        *,
        remote_calendar_id: str,
        name: str,
        color: str | None,
    ) -> tuple[ExternalCalendar, bool]:
        async with self._lock:
            existing = await self.get_by_remote_id(connection.id, remote_calendar_id)
            if existing is not None:
                updated = existing.model_copy(update={"name": name, "color": color})
                self.external_calendars[existing.id] = updated
                return updated, False

            calendar = Calendar(id=_new_id(), user_id=connection.user_id, name=name, color=color)
            self.calendars[calendar.id] = calendar
            mapping = ExternalCalendar(
                id=_new_id(),
                connection_id=connection.id,
                user_id=connection.user_id,
                provider=connection.provider,
                remote_calendar_id=remote_calendar_id,
                local_calendar_id=calendar.id,
                name=name,
                color=color,
            )
            self.external_calendars[mapping.id] = mapping
            return mapping, True

    async def set_sync_cursor(self, mapping_id: str, cursor: str) -> None:
        self._patch_mapping(mapping_id, sync_cursor=cursor)

    async def set_channel(
        self,
        mapping_id: str,
        *,
        channel_id: str,
        channel_secret: str | None,
        resource_id: str | None,
        expires_at: datetime | None,
    ) -> None:
        self._patch_mapping(
            mapping_id,
            channel_id=channel_id,
            channel_secret=channel_secret,
            channel_resource_id=resource_id,
            channel_expires_at=expires_at,
        )

    async def mark_run_started(self, mapping_id: str, run_id: str) -> None:
        self._patch_mapping(mapping_id, latest_sync_run_id=run_id, last_sync_error=None)

    async def set_sync_error(self, mapping_id: str, error: str) -> None:
        self._patch_mapping(mapping_id, last_sync_error=error)

    def _patch_mapping(self, mapping_id: str, **update: Any) -> None:
        mapping = self.external_calendars.get(mapping_id)
        if mapping is not None:
            self.external_calendars[mapping_id] = mapping.model_copy(update=update)

    # -- calendars -----------------------------------------------------------

    def add_calendar(self, user_id: str, name: str = "Personal") -> Calendar:
        calendar = Calendar(id=_new_id(), user_id=user_id, name=name)
        self.calendars[calendar.id] = calendar
        return calendar

    async def get_calendar(self, calendar_id: str) -> Calendar | None:
        return self.calendars.get(calendar_id)

    # -- events --------------------------------------------------------------

    async def get_event(self, event_id: str) -> Event | None:
        return self.events.get(event_id)

    async def find_mirrored_event(self, key: MirrorKey) -> Event | None:
        for event in self.events.values():
            if event.mirror is not None and event.mirror.key == key:
                return event
        return None

    async def create_event(self, fields: EventFields) -> Event:
        event = Event(id=_new_id(), **fields.model_dump())
        self.events[event.id] = event
        return event

    async def update_event(self, event_id: str, changes: dict[str, Any]) -> Event:
        event = self.events.get(event_id)
        if event is None:
            raise EventNotFoundError(f"Event {event_id} not found")
        updated = Event.model_validate({**event.model_dump(), **changes})
        self.events[event_id] = updated
        return updated

    async def delete_event(self, event_id: str) -> Event | None:
        return self.events.pop(event_id, None)

    async def set_mirror(self, event_id: str, mirror: MirrorLink | None) -> None:
        event = self.events.get(event_id)
        if event is None:
            raise EventNotFoundError(f"Event {event_id} not found")
        self.events[event_id] = event.model_copy(update={"mirror": mirror})

    async def apply_mirror_batch(
        self, *, deletes: list[MirrorKey], upserts: list[EventFields]
    ) -> tuple[int, int]:
        async with self._lock:
            deleted = 0
            for key in deletes:
                existing = await self.find_mirrored_event(key)
                if existing is not None:
                    del self.events[existing.id]
                    deleted += 1
            for fields in upserts:
                if fields.mirror is None:
                    raise ValueError("apply_mirror_batch upserts require mirroring fields")
                existing = await self.find_mirrored_event(fields.mirror.key)
                event_id = existing.id if existing else _new_id()
                self.events[event_id] = Event(id=event_id, **fields.model_dump())
            return len(upserts), deleted

    # -- task items ----------------------------------------------------------

    async def list_task_items(self, connection_id: str) -> list[TaskItem]:
        return [item for key, item in self.task_items.items() if key[0] == connection_id]

    async def replace_task_items(
        self, connection_id: str, items: list[TaskItem]
    ) -> tuple[int, int]:
        async with self._lock:
            seen = set()
            for item in items:
                self.task_items[(connection_id, item.external_id)] = item
                seen.add(item.external_id)
            stale = [k for k in self.task_items if k[0] == connection_id and k[1] not in seen]
            for key in stale:
                del self.task_items[key]
            return len(items), len(stale)
