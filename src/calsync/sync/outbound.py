"""Outbound sync engine: reflect local edits of mirrored events on the provider.

Operations run after the local write has committed, one at a time, and are
never retried here.  :class:`OutboundDispatcher` is the outbox: it turns a
committed local mutation into a fire-and-forget workflow run.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from opentelemetry import trace

from calsync.core.workflow import WorkflowEngine
from calsync.errors import InsertReturnedNoIdError, RemoteEventGoneError
from calsync.models import EditScope, ExternalCalendar, MirrorLink, RemoteEventTime
from calsync.providers.base import CalendarProviderClient, ProviderRegistry
from calsync.storage.base import SyncStore
from calsync.sync.mapping import DEFAULT_TIME_ZONE, local_to_remote
from calsync.sync.registry import ExternalCalendarRegistry
from calsync.sync.tokens import ConnectionStore

logger = logging.getLogger(__name__)


def original_start_time(
    original_start_at: datetime,
    *,
    original_all_day: bool,
    original_time_zone: str | None = None,
) -> RemoteEventTime:
    """Identify a series occurrence by its start and zone from before the local edit."""
    if original_all_day:
        return RemoteEventTime(date=original_start_at.astimezone(UTC).date().isoformat())
    return RemoteEventTime(
        date_time=original_start_at.isoformat(),
        time_zone=original_time_zone or DEFAULT_TIME_ZONE,
    )


class OutboundSyncEngine:
    def __init__(
        self,
        store: SyncStore,
        registry: ExternalCalendarRegistry,
        tokens: ConnectionStore,
        providers: ProviderRegistry,
    ) -> None:
        self._store = store
        self._registry = registry
        self._tokens = tokens
        self._providers = providers

    async def _resolve(
        self, mapping: ExternalCalendar
    ) -> tuple[CalendarProviderClient, str]:
        access_token = await self._tokens.get_valid_access_token(mapping.connection_id)
        return self._providers.calendar(mapping.provider), access_token

    async def _mapping_for(self, user_id: str, mirror: MirrorLink) -> ExternalCalendar | None:
        mapping = await self._registry.find_by_remote_calendar(
            user_id, mirror.provider, mirror.remote_calendar_id
        )
        if mapping is None:
            logger.info(
                "No mapping for remote calendar %r; skipping outbound call",
                mirror.remote_calendar_id,
            )
        return mapping

    async def push_created(self, event_id: str) -> MirrorLink | None:
        """Insert a new local event remotely if its calendar is mirrored."""
        event = await self._store.get_event(event_id)
        if event is None or event.mirror is not None or event.calendar_id is None:
            return None
        mapping = await self._registry.find_by_local_calendar(event.calendar_id)
        if mapping is None:
            return None

        tracer = trace.get_tracer("calsync")
        with tracer.start_as_current_span("calsync.outbound.create"):
            provider, access_token = await self._resolve(mapping)
            created = await provider.insert_event(
                access_token, mapping.remote_calendar_id, local_to_remote(event)
            )
            if created.id is None:
                raise InsertReturnedNoIdError(mapping.remote_calendar_id)
            mirror = MirrorLink(
                provider=mapping.provider,
                remote_calendar_id=mapping.remote_calendar_id,
                remote_event_id=created.id,
                is_editable=True,
            )
            await self._store.set_mirror(event.id, mirror)
        logger.info("Pushed new event %s to %s as %s", event.id, mapping.provider, created.id)
        return mirror

    async def push_updated(
        self,
        event_id: str,
        changed: frozenset[str],
        *,
        scope: EditScope = EditScope.ALL,
        original_start_at: datetime | None = None,
        original_all_day: bool = False,
        original_time_zone: str | None = None,
    ) -> bool:
        """Patch the remote copy of an editable mirrored event.

        For a single-occurrence edit of a recurring series the patch names
        the occurrence by its start time and zone from before the local edit.
        """
        event = await self._store.get_event(event_id)
        if event is None or event.mirror is None or not event.mirror.is_editable:
            return False
        mapping = await self._mapping_for(event.user_id, event.mirror)
        if mapping is None:
            return False
        body = local_to_remote(event, changed)
        if body.model_dump(exclude_none=True) == {}:
            return False

        original = None
        if (
            event.mirror.recurring_event_id
            and scope == EditScope.THIS
            and original_start_at is not None
        ):
            original = original_start_time(
                original_start_at,
                original_all_day=original_all_day,
                original_time_zone=original_time_zone,
            )

        tracer = trace.get_tracer("calsync")
        with tracer.start_as_current_span("calsync.outbound.update"):
            provider, access_token = await self._resolve(mapping)
            await provider.patch_event(
                access_token,
                mapping.remote_calendar_id,
                event.mirror.remote_event_id,
                body,
                original_start_time=original,
            )
        return True

    async def push_deleted(self, user_id: str, mirror: MirrorLink) -> bool:
        """Delete the remote copy of a locally deleted event; already-gone counts as done."""
        mapping = await self._mapping_for(user_id, mirror)
        if mapping is None:
            return False
        tracer = trace.get_tracer("calsync")
        with tracer.start_as_current_span("calsync.outbound.delete"):
            provider, access_token = await self._resolve(mapping)
            try:
                await provider.delete_event(
                    access_token, mapping.remote_calendar_id, mirror.remote_event_id
                )
            except RemoteEventGoneError:
                logger.debug("Remote event %s already gone", mirror.remote_event_id)
        return True

class OutboundDispatcher:
    """Outbox for committed local mutations; each call schedules one run."""

    def __init__(self, engine: OutboundSyncEngine, workflows: WorkflowEngine) -> None:
        self._engine = engine
        self._workflows = workflows

    def event_created(self, event_id: str) -> str:
        return self._workflows.start(
            "outbound.create",
            lambda: self._engine.push_created(event_id),
            retry=False,
            context={"event_id": event_id},
        )

    def event_updated(
        self,
        event_id: str,
        changed: frozenset[str],
        *,
        scope: EditScope = EditScope.ALL,
        original_start_at: datetime | None = None,
        original_all_day: bool = False,
        original_time_zone: str | None = None,
    ) -> str:
        return self._workflows.start(
            "outbound.update",
            lambda: self._engine.push_updated(
                event_id,
                changed,
                scope=scope,
                original_start_at=original_start_at,
                original_all_day=original_all_day,
                original_time_zone=original_time_zone,
            ),
            retry=False,
            context={"event_id": event_id},
        )

    def event_deleted(self, user_id: str, mirror: MirrorLink) -> str:
        return self._workflows.start(
            "outbound.delete",
            lambda: self._engine.push_deleted(user_id, mirror),
            retry=False,
            context={"remote_event_id": mirror.remote_event_id},
        )
