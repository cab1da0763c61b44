"""Inbound sync engine: pull remote changes for one mapping into local events.

One run:

1. resolves a valid access token,
2. lists remote events incrementally from the stored cursor, or from the
   user's sync horizon when the cursor is empty,
3. follows page tokens to the end and keeps the last ``next_sync_cursor``,
4. splits items into deletions (cancelled) and upserts,
5. applies them in batches against the mirror idempotency key,
6. stores the new cursor only after every batch has been applied.

When the provider rejects the cursor, the engine clears it and performs
exactly one full resync in the same run.
"""

from __future__ import annotations

import calendar
import logging
from collections.abc import Iterator
from datetime import UTC, datetime

from opentelemetry import trace

from calsync.errors import SyncCursorExpiredError
from calsync.models import EventFields, ExternalCalendar, RemoteEvent, SyncResult
from calsync.providers.base import ProviderRegistry
from calsync.storage.base import MirrorKey, SyncStore
from calsync.sync.mapping import remote_to_local
from calsync.sync.registry import ExternalCalendarRegistry
from calsync.sync.tokens import ConnectionStore

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 100
MIN_HORIZON_MONTHS = 1
MAX_HORIZON_MONTHS = 24


def clamp_horizon_months(months: int | None, default: int = MIN_HORIZON_MONTHS) -> int:
    if months is None:
        months = default
    return max(MIN_HORIZON_MONTHS, min(MAX_HORIZON_MONTHS, months))


def months_before(moment: datetime, months: int) -> datetime:
    """Same wall time *months* calendar months earlier, clamping the day of month."""
    month_index = moment.year * 12 + (moment.month - 1) - months
    year, month = divmod(month_index, 12)
    month += 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def _batched(items: list, size: int) -> Iterator[list]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


class InboundSyncEngine:
    def __init__(
        self,
        store: SyncStore,
        registry: ExternalCalendarRegistry,
        tokens: ConnectionStore,
        providers: ProviderRegistry,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        default_horizon_months: int = MIN_HORIZON_MONTHS,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self._store = store
        self._registry = registry
        self._tokens = tokens
        self._providers = providers
        self._batch_size = batch_size
        self._default_horizon_months = default_horizon_months

    async def sync(self, mapping_id: str, *, retry_on_cursor_reset: bool = True) -> SyncResult:
        tracer = trace.get_tracer("calsync")
        with tracer.start_as_current_span("calsync.inbound_sync") as span:
            span.set_attribute("mapping_id", mapping_id)
            mapping = await self._registry.get(mapping_id)
            mode = "incremental" if mapping.sync_cursor else "full"
            span.set_attribute("mode", mode)

            try:
                items, next_cursor = await self._fetch_all(mapping)
            except SyncCursorExpiredError:
                logger.warning(
                    "Sync cursor expired for mapping %s; clearing it for a full resync", mapping.id
                )
                await self._registry.set_sync_cursor(mapping.id, "")
                if not retry_on_cursor_reset:
                    return SyncResult(mapping_id=mapping.id, mode=mode, cursor_reset=True)
                result = await self.sync(mapping_id, retry_on_cursor_reset=False)
                return result.model_copy(update={"cursor_reset": True})

            user = await self._store.get_user(mapping.user_id)
            deletes, upserts, skipped = self._partition(
                items, mapping, user_email=user.email if user else None
            )

            upserted = deleted = 0
            for batch in _batched(deletes, self._batch_size):
                _, batch_deleted = await self._store.apply_mirror_batch(deletes=batch, upserts=[])
                deleted += batch_deleted
            for batch in _batched(upserts, self._batch_size):
                batch_upserted, _ = await self._store.apply_mirror_batch(deletes=[], upserts=batch)
                upserted += batch_upserted

            if next_cursor:
                await self._registry.set_sync_cursor(mapping.id, next_cursor)

            span.set_attribute("fetched", len(items))
            logger.info(
                "Inbound %s sync for mapping %s: fetched=%d upserted=%d deleted=%d skipped=%d",
                mode,
                mapping.id,
                len(items),
                upserted,
                deleted,
                skipped,
            )
            return SyncResult(
                mapping_id=mapping.id,
                mode=mode,
                fetched=len(items),
                upserted=upserted,
                deleted=deleted,
                skipped=skipped,
                next_sync_cursor=next_cursor,
            )

    async def _fetch_all(self, mapping: ExternalCalendar) -> tuple[list[RemoteEvent], str | None]:
        access_token = await self._tokens.get_valid_access_token(mapping.connection_id)
        provider = self._providers.calendar(mapping.provider)

        time_min: datetime | None = None
        if not mapping.sync_cursor:
            user = await self._store.get_user(mapping.user_id)
            months = clamp_horizon_months(
                user.sync_horizon_months if user else None, self._default_horizon_months
            )
            time_min = months_before(datetime.now(UTC), months)

        items: list[RemoteEvent] = []
        next_cursor: str | None = None
        page_token: str | None = None
        while True:
            page = await provider.list_events(
                access_token,
                mapping.remote_calendar_id,
                sync_cursor=mapping.sync_cursor or None,
                time_min=time_min,
                page_token=page_token,
            )
            items.extend(page.items)
            if page.next_sync_cursor:
                next_cursor = page.next_sync_cursor
            page_token = page.next_page_token
            if page_token is None:
                return items, next_cursor

    def _partition(
        self,
        items: list[RemoteEvent],
        mapping: ExternalCalendar,
        *,
        user_email: str | None,
    ) -> tuple[list[MirrorKey], list[EventFields], int]:
        # Later pages supersede earlier ones for the same remote id.
        latest: dict[str, RemoteEvent] = {}
        skipped = 0
        for item in items:
            if item.id is None:
                logger.warning("Skipping remote item without an id in mapping %s", mapping.id)
                skipped += 1
                continue
            latest.pop(item.id, None)
            latest[item.id] = item

        deletes: list[MirrorKey] = []
        upserts: list[EventFields] = []
        for remote_id, item in latest.items():
            if item.cancelled:
                deletes.append((mapping.provider, mapping.remote_calendar_id, remote_id))
                continue
            fields = remote_to_local(item, mapping, user_email=user_email)
            if fields is None:
                logger.warning(
                    "Skipping remote event %s in mapping %s without a start time",
                    remote_id,
                    mapping.id,
                )
                skipped += 1
                continue
            upserts.append(fields)
        return deletes, upserts, skipped
