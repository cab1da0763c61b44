"""asyncpg implementation of :class:`~calsync.storage.base.SyncStore`.

Queries are raw SQL against the tables created by the ``core`` alembic
chain.  Mapping rows are always read joined with their connection so
``user_id`` and ``provider`` travel with them.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any

import asyncpg

from calsync.db import Database, decode_jsonb
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

logger = logging.getLogger(__name__)

_MAPPING_SELECT = """
    SELECT ec.*, c.user_id, c.provider
    FROM external_calendars ec
    JOIN connections c ON c.id = ec.connection_id
"""

_EVENT_COLUMNS = (
    "user_id",
    "calendar_id",
    "kind",
    "title",
    "description",
    "location",
    "start_at",
    "end_at",
    "all_day",
    "time_zone",
    "busy",
    "visibility",
    "color",
    "creator_email",
    "organizer_email",
    "guests_can_modify",
    "external_provider",
    "external_calendar_id",
    "external_event_id",
    "is_editable",
    "recurring_event_id",
)

_MIRROR_COLUMNS = {
    "external_provider": "provider",
    "external_calendar_id": "remote_calendar_id",
    "external_event_id": "remote_event_id",
    "is_editable": "is_editable",
    "recurring_event_id": "recurring_event_id",
}


def _str_or_none(value: Any) -> str | None:
    return None if value is None else str(value)


def _connection_from_row(row: asyncpg.Record) -> Connection:
    return Connection(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        provider=row["provider"],
        refresh_token=row["refresh_token"],
        access_token=row["access_token"],
        access_token_expires_at=row["access_token_expires_at"],
        metadata=decode_jsonb(row["metadata"]) or {},
        latest_sync_run_id=row["latest_sync_run_id"],
        last_sync_error=row["last_sync_error"],
    )


def _mapping_from_row(row: asyncpg.Record) -> ExternalCalendar:
    return ExternalCalendar(
        id=str(row["id"]),
        connection_id=str(row["connection_id"]),
        user_id=str(row["user_id"]),
        provider=row["provider"],
        remote_calendar_id=row["remote_calendar_id"],
        local_calendar_id=str(row["local_calendar_id"]),
        name=row["name"],
        color=row["color"],
        sync_cursor=row["sync_cursor"] or "",
        channel_id=row["channel_id"],
        channel_secret=row["channel_secret"],
        channel_resource_id=row["channel_resource_id"],
        channel_expires_at=row["channel_expires_at"],
        last_sync_error=row["last_sync_error"],
        latest_sync_run_id=row["latest_sync_run_id"],
    )


def _event_from_row(row: asyncpg.Record) -> Event:
    mirror = None
    if row["external_event_id"] is not None:
        mirror = MirrorLink(
            **{attr: row[column] for column, attr in _MIRROR_COLUMNS.items()},
        )
    return Event(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        calendar_id=_str_or_none(row["calendar_id"]),
        kind=row["kind"],
        title=row["title"],
        description=row["description"],
        location=row["location"],
        start_at=row["start_at"],
        end_at=row["end_at"],
        all_day=row["all_day"],
        time_zone=row["time_zone"],
        busy=row["busy"],
        visibility=row["visibility"],
        color=row["color"],
        creator_email=row["creator_email"],
        organizer_email=row["organizer_email"],
        guests_can_modify=row["guests_can_modify"],
        mirror=mirror,
    )


def _event_values(fields: EventFields) -> list[Any]:
    """Flatten *fields* into column order of ``_EVENT_COLUMNS``."""
    data = fields.model_dump(exclude={"mirror"})
    mirror = fields.mirror
    for column, attr in _MIRROR_COLUMNS.items():
        data[column] = getattr(mirror, attr) if mirror is not None else None
    if mirror is None:
        data["is_editable"] = None
    return [data[column] for column in _EVENT_COLUMNS]


def _task_item_from_row(row: asyncpg.Record) -> TaskItem:
    return TaskItem(
        connection_id=str(row["connection_id"]),
        user_id=str(row["user_id"]),
        external_id=row["external_id"],
        identifier=row["identifier"],
        title=row["title"],
        url=row["url"],
        state=row["state"],
        priority=row["priority"],
        due_date=row["due_date"],
    )


class PostgresStore:
    """Sync store backed by a :class:`~calsync.db.Database` pool."""

    def __init__(self, db: Database) -> None:
        self._db = db

    # -- users ---------------------------------------------------------------

    async def get_user(self, user_id: str) -> User | None:
        row = await self._db.fetchrow(
            "SELECT id, email, sync_horizon_months FROM users WHERE id = $1", user_id
        )
        if row is None:
            return None
        return User(
            id=str(row["id"]), email=row["email"], sync_horizon_months=row["sync_horizon_months"]
        )

    # -- connections ---------------------------------------------------------

    async def get_connection(self, connection_id: str) -> Connection | None:
        row = await self._db.fetchrow("SELECT * FROM connections WHERE id = $1", connection_id)
        return _connection_from_row(row) if row else None

    async def find_connection(self, user_id: str, provider: str) -> Connection | None:
        row = await self._db.fetchrow(
            "SELECT * FROM connections WHERE user_id = $1 AND provider = $2", user_id, provider
        )
        return _connection_from_row(row) if row else None

    async def list_connections(
        self, *, user_id: str | None = None, provider: str | None = None
    ) -> list[Connection]:
        rows = await self._db.fetch(
            """
            SELECT * FROM connections
            WHERE ($1::uuid IS NULL OR user_id = $1::uuid)
              AND ($2::text IS NULL OR provider = $2::text)
            ORDER BY created_at
            """,
            user_id,
            provider,
        )
        return [_connection_from_row(row) for row in rows]

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
        try:
            row = await self._db.fetchrow(
                """
                INSERT INTO connections (
                    user_id, provider, refresh_token, access_token,
                    access_token_expires_at, metadata
                )
                VALUES ($1, $2, $3, $4, $5, $6::jsonb)
                ON CONFLICT (user_id, provider) DO UPDATE SET
                    refresh_token = EXCLUDED.refresh_token,
                    access_token = EXCLUDED.access_token,
                    access_token_expires_at = EXCLUDED.access_token_expires_at,
                    metadata = EXCLUDED.metadata,
                    updated_at = now()
                RETURNING *
                """,
                user_id,
                provider,
                refresh_token,
                access_token,
                access_token_expires_at,
                json.dumps(metadata),
            )
        except asyncpg.ForeignKeyViolationError as exc:
            raise UserNotFoundError(f"User {user_id} not found") from exc
        return _connection_from_row(row)

    async def update_access_token(
        self,
        connection_id: str,
        *,
        access_token: str,
        access_token_expires_at: datetime | None,
        refresh_token: str | None = None,
    ) -> None:
        result = await self._db.execute(
            """
            UPDATE connections
            SET access_token = $2,
                access_token_expires_at = $3,
                refresh_token = COALESCE($4, refresh_token),
                updated_at = now()
            WHERE id = $1
            """,
            connection_id,
            access_token,
            access_token_expires_at,
            refresh_token,
        )
        if result == "UPDATE 0":
            raise ConnectionNotFoundError(f"Connection {connection_id} not found")

    async def delete_connection(self, connection_id: str, *, delete_mirrored_events: bool) -> bool:
        async with self._db.transaction() as conn:
            connection = await conn.fetchrow(
                "SELECT user_id, provider FROM connections WHERE id = $1 FOR UPDATE",
                connection_id,
            )
            if connection is None:
                return False
            remote_ids = [
                row["remote_calendar_id"]
                for row in await conn.fetch(
                    "SELECT remote_calendar_id FROM external_calendars WHERE connection_id = $1",
                    connection_id,
                )
            ]
            if remote_ids:
                if delete_mirrored_events:
                    await conn.execute(
                        """
                        DELETE FROM events
                        WHERE user_id = $1 AND external_provider = $2
                          AND external_calendar_id = ANY($3::text[])
                        """,
                        connection["user_id"],
                        connection["provider"],
                        remote_ids,
                    )
                else:
                    await conn.execute(
                        """
                        UPDATE events
                        SET external_provider = NULL,
                            external_calendar_id = NULL,
                            external_event_id = NULL,
                            is_editable = NULL,
                            recurring_event_id = NULL,
                            updated_at = now()
                        WHERE user_id = $1 AND external_provider = $2
                          AND external_calendar_id = ANY($3::text[])
                        """,
                        connection["user_id"],
                        connection["provider"],
                        remote_ids,
                    )
            # external_calendars and task_items cascade.
            await conn.execute("DELETE FROM connections WHERE id = $1", connection_id)
        return True

    async def mark_connection_run_started(self, connection_id: str, run_id: str) -> None:
        await self._db.execute(
            """
            UPDATE connections
            SET latest_sync_run_id = $2, last_sync_error = NULL, updated_at = now()
            WHERE id = $1
            """,
            connection_id,
            run_id,
        )

    async def set_connection_sync_error(self, connection_id: str, error: str) -> None:
        await self._db.execute(
            "UPDATE connections SET last_sync_error = $2, updated_at = now() WHERE id = $1",
            connection_id,
            error,
        )

    # -- external calendars --------------------------------------------------

    async def _fetch_mapping(self, where: str, *args: Any) -> ExternalCalendar | None:
        row = await self._db.fetchrow(f"{_MAPPING_SELECT} WHERE {where}", *args)
        return _mapping_from_row(row) if row else None

    async def get_external_calendar(self, mapping_id: str) -> ExternalCalendar | None:
        return await self._fetch_mapping("ec.id = $1", mapping_id)

    async def get_by_channel_id(self, channel_id: str) -> ExternalCalendar | None:
        return await self._fetch_mapping("ec.channel_id = $1", channel_id)

    async def get_by_remote_id(
        self, connection_id: str, remote_calendar_id: str
    ) -> ExternalCalendar | None:
        return await self._fetch_mapping(
            "ec.connection_id = $1 AND ec.remote_calendar_id = $2",
            connection_id,
            remote_calendar_id,
        )

    async def find_by_local_calendar(self, calendar_id: str) -> ExternalCalendar | None:
        return await self._fetch_mapping("ec.local_calendar_id = $1", calendar_id)

    async def find_by_remote_calendar(
        self, user_id: str, provider: str, remote_calendar_id: str
    ) -> ExternalCalendar | None:
        return await self._fetch_mapping(
            "c.user_id = $1 AND c.provider = $2 AND ec.remote_calendar_id = $3",
            user_id,
            provider,
            remote_calendar_id,
        )

    async def list_external_calendars(
        self, *, user_id: str | None = None, connection_id: str | None = None
    ) -> list[ExternalCalendar]:
        rows = await self._db.fetch(
            f"""
            {_MAPPING_SELECT}
            WHERE ($1::uuid IS NULL OR c.user_id = $1::uuid)
              AND ($2::uuid IS NULL OR ec.connection_id = $2::uuid)
            ORDER BY ec.created_at
            """,
            user_id,
            connection_id,
        )
        return [_mapping_from_row(row) for row in rows]

    async def list_channels_expiring_before(self, cutoff: datetime) -> list[ExternalCalendar]:
        rows = await self._db.fetch(
            f"""
            {_MAPPING_SELECT}
            WHERE ec.channel_id IS NOT NULL
              AND (ec.channel_expires_at IS NULL OR ec.channel_expires_at < $1)
            ORDER BY ec.channel_expires_at NULLS FIRST
            """,
            cutoff,
        )
        return [_mapping_from_row(row) for row in rows]

    async def upsert_external_calendar(
        self,
        connection: Connection,
        *,
        remote_calendar_id: str,
        name: str,
        color: str | None,
    ) -> tuple[ExternalCalendar, bool]:
        async with self._db.transaction() as conn:
            mapping_id = await conn.fetchval(
                """
                UPDATE external_calendars
                SET name = $3, color = $4, updated_at = now()
                WHERE connection_id = $1 AND remote_calendar_id = $2
                RETURNING id
                """,
                connection.id,
                remote_calendar_id,
                name,
                color,
            )
            created = mapping_id is None
            if created:
                calendar_id = await conn.fetchval(
                    "INSERT INTO calendars (user_id, name, color) VALUES ($1, $2, $3) RETURNING id",
                    connection.user_id,
                    name,
                    color,
                )
                mapping_id = await conn.fetchval(
                    """
                    INSERT INTO external_calendars (
                        connection_id, remote_calendar_id, local_calendar_id, name, color
                    )
                    VALUES ($1, $2, $3, $4, $5)
                    RETURNING id
                    """,
                    connection.id,
                    remote_calendar_id,
                    calendar_id,
                    name,
                    color,
                )
            row = await conn.fetchrow(f"{_MAPPING_SELECT} WHERE ec.id = $1", mapping_id)
        return _mapping_from_row(row), created

    async def set_sync_cursor(self, mapping_id: str, cursor: str) -> None:
        await self._db.execute(
            "UPDATE external_calendars SET sync_cursor = $2, updated_at = now() WHERE id = $1",
            mapping_id,
            cursor,
        )

    async def set_channel(
        self,
        mapping_id: str,
        *,
        channel_id: str,
        channel_secret: str | None,
        resource_id: str | None,
        expires_at: datetime | None,
    ) -> None:
        await self._db.execute(
            """
            UPDATE external_calendars
            SET channel_id = $2,
                channel_secret = $3,
                channel_resource_id = $4,
                channel_expires_at = $5,
                updated_at = now()
            WHERE id = $1
            """,
            mapping_id,
            channel_id,
            channel_secret,
            resource_id,
            expires_at,
        )

    async def mark_run_started(self, mapping_id: str, run_id: str) -> None:
        await self._db.execute(
            """
            UPDATE external_calendars
            SET latest_sync_run_id = $2, last_sync_error = NULL, updated_at = now()
            WHERE id = $1
            """,
            mapping_id,
            run_id,
        )

    async def set_sync_error(self, mapping_id: str, error: str) -> None:
        await self._db.execute(
            "UPDATE external_calendars SET last_sync_error = $2, updated_at = now() WHERE id = $1",
            mapping_id,
            error,
        )

    # -- calendars -----------------------------------------------------------

    async def get_calendar(self, calendar_id: str) -> Calendar | None:
        row = await self._db.fetchrow(
            "SELECT id, user_id, name, color FROM calendars WHERE id = $1", calendar_id
        )
        if row is None:
            return None
        return Calendar(
            id=str(row["id"]), user_id=str(row["user_id"]), name=row["name"], color=row["color"]
        )

    # -- events --------------------------------------------------------------

    async def get_event(self, event_id: str) -> Event | None:
        row = await self._db.fetchrow("SELECT * FROM events WHERE id = $1", event_id)
        return _event_from_row(row) if row else None

    async def find_mirrored_event(self, key: MirrorKey) -> Event | None:
        row = await self._db.fetchrow(
            """
            SELECT * FROM events
            WHERE external_provider = $1 AND external_calendar_id = $2 AND external_event_id = $3
            """,
            *key,
        )
        return _event_from_row(row) if row else None

    async def create_event(self, fields: EventFields) -> Event:
        columns = ", ".join(_EVENT_COLUMNS)
        placeholders = ", ".join(f"${i}" for i in range(1, len(_EVENT_COLUMNS) + 1))
        row = await self._db.fetchrow(
            f"INSERT INTO events ({columns}) VALUES ({placeholders}) RETURNING *",
            *_event_values(fields),
        )
        return _event_from_row(row)

    async def update_event(self, event_id: str, changes: dict[str, Any]) -> Event:
        current = await self.get_event(event_id)
        if current is None:
            raise EventNotFoundError(f"Event {event_id} not found")
        merged = EventFields.model_validate(
            {**current.model_dump(exclude={"id"}), **changes}
        )
        assignments = ", ".join(f"{column} = ${i}" for i, column in enumerate(_EVENT_COLUMNS, 2))
        row = await self._db.fetchrow(
            f"UPDATE events SET {assignments}, updated_at = now() WHERE id = $1 RETURNING *",
            event_id,
            *_event_values(merged),
        )
        if row is None:
            raise EventNotFoundError(f"Event {event_id} not found")
        return _event_from_row(row)

    async def delete_event(self, event_id: str) -> Event | None:
        row = await self._db.fetchrow("DELETE FROM events WHERE id = $1 RETURNING *", event_id)
        return _event_from_row(row) if row else None

    async def set_mirror(self, event_id: str, mirror: MirrorLink | None) -> None:
        values = [getattr(mirror, attr) if mirror else None for attr in _MIRROR_COLUMNS.values()]
        result = await self._db.execute(
            """
            UPDATE events
            SET external_provider = $2,
                external_calendar_id = $3,
                external_event_id = $4,
                is_editable = $5,
                recurring_event_id = $6,
                updated_at = now()
            WHERE id = $1
            """,
            event_id,
            *values,
        )
        if result == "UPDATE 0":
            raise EventNotFoundError(f"Event {event_id} not found")

    async def apply_mirror_batch(
        self, *, deletes: list[MirrorKey], upserts: list[EventFields]
    ) -> tuple[int, int]:
        columns = ", ".join(_EVENT_COLUMNS)
        placeholders = ", ".join(f"${i}" for i in range(1, len(_EVENT_COLUMNS) + 1))
        updates = ", ".join(
            f"{column} = EXCLUDED.{column}" for column in _EVENT_COLUMNS if column != "user_id"
        )
        upsert_sql = f"""
            INSERT INTO events ({columns}) VALUES ({placeholders})
            ON CONFLICT (external_provider, external_calendar_id, external_event_id)
            DO UPDATE SET {updates}, updated_at = now()
        """
        deleted = 0
        async with self._db.transaction() as conn:
            for provider, remote_calendar_id, remote_event_id in deletes:
                result = await conn.execute(
                    """
                    DELETE FROM events
                    WHERE external_provider = $1
                      AND external_calendar_id = $2
                      AND external_event_id = $3
                    """,
                    provider,
                    remote_calendar_id,
                    remote_event_id,
                )
                deleted += int(result.split()[-1])
            if upserts:
                for fields in upserts:
                    if fields.mirror is None:
                        raise ValueError("apply_mirror_batch upserts require mirroring fields")
                await conn.executemany(upsert_sql, [_event_values(f) for f in upserts])
        return len(upserts), deleted

    # -- task items ----------------------------------------------------------

    async def list_task_items(self, connection_id: str) -> list[TaskItem]:
        rows = await self._db.fetch(
            "SELECT * FROM task_items WHERE connection_id = $1 ORDER BY external_id",
            connection_id,
        )
        return [_task_item_from_row(row) for row in rows]

    async def replace_task_items(
        self, connection_id: str, items: list[TaskItem]
    ) -> tuple[int, int]:
        async with self._db.transaction() as conn:
            if items:
                await conn.executemany(
                    """
                    INSERT INTO task_items (
                        connection_id, user_id, external_id, identifier, title,
                        url, state, priority, due_date
                    )
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                    ON CONFLICT (connection_id, external_id) DO UPDATE SET
                        identifier = EXCLUDED.identifier,
                        title = EXCLUDED.title,
                        url = EXCLUDED.url,
                        state = EXCLUDED.state,
                        priority = EXCLUDED.priority,
                        due_date = EXCLUDED.due_date,
                        updated_at = now()
                    """,
                    [
                        (
                            connection_id,
                            item.user_id,
                            item.external_id,
                            item.identifier,
                            item.title,
                            item.url,
                            item.state,
                            item.priority,
                            item.due_date,
                        )
                        for item in items
                    ],
                )
            result = await conn.execute(
                """
                DELETE FROM task_items
                WHERE connection_id = $1 AND NOT (external_id = ANY($2::text[]))
                """,
                connection_id,
                [item.external_id for item in items],
            )
        return len(items), int(result.split()[-1])
