"""Local event mutations that feed the outbound sync engine.

Every method commits the local write first and only then hands the change
to the :class:`~calsync.sync.outbound.OutboundDispatcher`; a failed remote
call never rolls the local state back.
"""

from __future__ import annotations

import logging
from typing import Any

from calsync.errors import EventNotEditableError, EventNotFoundError
from calsync.models import EditScope, Event, EventFields, EventKind
from calsync.storage.base import SyncStore
from calsync.sync.outbound import OutboundDispatcher
from calsync.sync.registry import ExternalCalendarRegistry

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = frozenset(
    {
        "calendar_id",
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
    }
)


def _ensure_editable(event: Event) -> None:
    if event.mirror is not None and not event.mirror.is_editable:
        raise EventNotEditableError(event.id)


class LocalEventService:
    def __init__(
        self,
        store: SyncStore,
        registry: ExternalCalendarRegistry,
        outbound: OutboundDispatcher,
    ) -> None:
        self._store = store
        self._registry = registry
        self._outbound = outbound

    async def _get(self, event_id: str) -> Event:
        event = await self._store.get_event(event_id)
        if event is None:
            raise EventNotFoundError(f"Event {event_id} not found")
        return event

    async def _calendar_is_mirrored(self, calendar_id: str | None) -> bool:
        if calendar_id is None:
            return False
        return await self._registry.find_by_local_calendar(calendar_id) is not None

    async def create_event(self, fields: EventFields) -> Event:
        event = await self._store.create_event(fields.model_copy(update={"mirror": None}))
        if await self._calendar_is_mirrored(event.calendar_id):
            self._outbound.event_created(event.id)
        return event

    async def update_event(
        self,
        event_id: str,
        changes: dict[str, Any],
        *,
        scope: EditScope = EditScope.ALL,
    ) -> Event:
        unknown = set(changes) - EDITABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")

        event = await self._get(event_id)
        _ensure_editable(event)

        changed = frozenset(k for k, v in changes.items() if getattr(event, k) != v)
        if not changed:
            return event
        # Captured before the patch: a single-occurrence edit must name the
        # occurrence by its pre-edit start.
        original_start_at = event.start_at
        original_all_day = event.all_day
        original_time_zone = event.time_zone

        updated = await self._store.update_event(event_id, {k: changes[k] for k in changed})

        if updated.mirror is not None:
            self._outbound.event_updated(
                updated.id,
                changed,
                scope=scope,
                original_start_at=original_start_at,
                original_all_day=original_all_day,
                original_time_zone=original_time_zone,
            )
        elif "calendar_id" in changed and await self._calendar_is_mirrored(updated.calendar_id):
            self._outbound.event_created(updated.id)
        return updated

    async def delete_event(self, event_id: str) -> bool:
        event = await self._store.get_event(event_id)
        if event is None:
            return False
        _ensure_editable(event)
        deleted = await self._store.delete_event(event_id)
        if deleted is None:
            return False
        if deleted.mirror is not None:
            self._outbound.event_deleted(deleted.user_id, deleted.mirror)
        return True

    async def convert_kind(self, event_id: str, kind: EventKind) -> Event:
        """Change an event's kind; a mirrored event is unlinked from the provider.

        The kind change and the removal of the mirror link commit together, so
        later inbound syncs no longer match the event.  The remote copy is
        deleted afterwards through the outbox, like any other delete.
        """
        event = await self._get(event_id)
        if event.kind == kind:
            return event
        _ensure_editable(event)
        mirror = event.mirror
        updated = await self._store.update_event(event_id, {"kind": kind, "mirror": None})
        if mirror is not None:
            logger.info("Unlinked event %s from %s", event.id, mirror.provider)
            self._outbound.event_deleted(event.user_id, mirror)
        return updated
