"""Tests for the outbound sync engine."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from calsync.errors import InsertReturnedNoIdError, ProviderRequestError, RemoteEventGoneError
from calsync.models import EditScope, EventFields, MirrorLink, RemoteEventTime
from calsync.sync.outbound import OutboundSyncEngine, original_start_time
from calsync.sync.registry import ExternalCalendarRegistry
from calsync.sync.tokens import ConnectionStore

pytestmark = pytest.mark.unit


@pytest.fixture
def engine(store, providers) -> OutboundSyncEngine:
    registry = ExternalCalendarRegistry(store)
    return OutboundSyncEngine(store, registry, ConnectionStore(store, providers), providers)


def _fields(mapping, *, mirror: MirrorLink | None = None, **overrides) -> EventFields:
    values = {
        "user_id": mapping.user_id,
        "calendar_id": mapping.local_calendar_id,
        "title": "Retro",
        "start_at": datetime(2026, 10, 22, 15, tzinfo=UTC),
        "end_at": datetime(2026, 10, 22, 16, tzinfo=UTC),
        "time_zone": "UTC",
        "mirror": mirror,
    }
    values.update(overrides)
    return EventFields(**values)


def _mirror(mapping, remote_id: str = "remote-1", **overrides) -> MirrorLink:
    return MirrorLink(
        provider="google",
        remote_calendar_id=mapping.remote_calendar_id,
        remote_event_id=remote_id,
        **{"is_editable": True, **overrides},
    )


# ---------------------------------------------------------------------------
# create
# ---------------------------------------------------------------------------


class TestPushCreated:
    async def test_push_created_inserts_and_links(self, engine, store, mapping, google):
        event = await store.create_event(_fields(mapping))

        mirror = await engine.push_created(event.id)

        call = google.calls_to("insert_event")[0].kwargs
        assert call["remote_calendar_id"] == "primary"
        assert call["body"].summary == "Retro"
        assert mirror.remote_event_id == "remote-new"
        assert mirror.is_editable is True
        assert (await store.get_event(event.id)).mirror == mirror

    async def test_push_created_without_remote_id_fails(self, engine, store, mapping, google):
        google.insert_response_id = None
        event = await store.create_event(_fields(mapping))

        with pytest.raises(InsertReturnedNoIdError):
            await engine.push_created(event.id)

        assert (await store.get_event(event.id)).mirror is None

    async def test_push_created_ignores_unmirrored_calendar(self, engine, store, user, google):
        personal = store.add_calendar(user.id)
        event = await store.create_event(
            EventFields(
                user_id=user.id,
                calendar_id=personal.id,
                title="Dentist",
                start_at=datetime(2026, 10, 22, 8, tzinfo=UTC),
                end_at=datetime(2026, 10, 22, 9, tzinfo=UTC),
            )
        )

        assert await engine.push_created(event.id) is None
        assert google.calls_to("insert_event") == []

    async def test_push_created_skips_already_mirrored_event(
        self, engine, store, mapping, google
    ):
        event = await store.create_event(_fields(mapping, mirror=_mirror(mapping)))
        assert await engine.push_created(event.id) is None
        assert google.calls_to("insert_event") == []


# ---------------------------------------------------------------------------
# update
# ---------------------------------------------------------------------------


class TestPushUpdated:
    async def test_push_updated_patches_changed_fields(self, engine, store, mapping, google):
        event = await store.create_event(_fields(mapping, mirror=_mirror(mapping)))

        assert await engine.push_updated(event.id, frozenset({"title"})) is True

        call = google.calls_to("patch_event")[0].kwargs
        assert call["remote_event_id"] == "remote-1"
        assert call["body"].model_dump(exclude_none=True) == {"summary": "Retro"}
        assert call["original_start_time"] is None

    async def test_push_updated_is_noop_for_read_only_event(
        self, engine, store, mapping, google
    ):
        event = await store.create_event(
            _fields(mapping, mirror=_mirror(mapping, is_editable=False))
        )

        assert await engine.push_updated(event.id, frozenset({"title"})) is False
        assert google.calls_to("patch_event") == []

    async def test_push_updated_ignores_local_only_fields(self, engine, store, mapping, google):
        event = await store.create_event(_fields(mapping, mirror=_mirror(mapping)))

        assert await engine.push_updated(event.id, frozenset({"color", "busy"})) is False
        assert google.calls_to("patch_event") == []

    async def test_single_occurrence_edit_names_original_start(
        self, engine, store, mapping, google
    ):
        event = await store.create_event(
            _fields(mapping, mirror=_mirror(mapping, recurring_event_id="series-1"))
        )
        original_start = datetime(2026, 10, 22, 14, tzinfo=UTC)

        await engine.push_updated(
            event.id,
            frozenset({"start_at", "end_at"}),
            scope=EditScope.THIS,
            original_start_at=original_start,
            original_time_zone="UTC",
        )

        call = google.calls_to("patch_event")[0].kwargs
        assert call["original_start_time"] == RemoteEventTime(
            date_time="2026-10-22T14:00:00+00:00", time_zone="UTC"
        )
        assert call["body"].start.date_time == "2026-10-22T15:00:00+00:00"

    async def test_series_edit_does_not_name_an_occurrence(self, engine, store, mapping, google):
        event = await store.create_event(
            _fields(mapping, mirror=_mirror(mapping, recurring_event_id="series-1"))
        )

        await engine.push_updated(
            event.id,
            frozenset({"title"}),
            scope=EditScope.ALL,
            original_start_at=datetime(2026, 10, 22, 14, tzinfo=UTC),
        )

        assert google.calls_to("patch_event")[0].kwargs["original_start_time"] is None

    def test_original_start_time_for_all_day_occurrence(self):
        event_start = datetime(2026, 10, 24, tzinfo=UTC)
        value = original_start_time(event_start, original_all_day=True)
        assert value == RemoteEventTime(date="2026-10-24")

    def test_original_start_time_uses_zone_from_before_the_edit(self):
        start = datetime(2026, 10, 24, 9, tzinfo=UTC)

        value = original_start_time(start, original_all_day=False, original_time_zone="Asia/Tokyo")

        assert value == RemoteEventTime(
            date_time="2026-10-24T09:00:00+00:00", time_zone="Asia/Tokyo"
        )


# ---------------------------------------------------------------------------
# delete
# ---------------------------------------------------------------------------


class TestPushDeleted:
    async def test_push_deleted_calls_provider(self, engine, mapping, google):
        assert await engine.push_deleted(mapping.user_id, _mirror(mapping)) is True
        assert google.calls_to("delete_event")[0].kwargs["remote_event_id"] == "remote-1"

    async def test_push_deleted_treats_gone_as_done(self, engine, mapping, google):
        google.delete_error = RemoteEventGoneError(410, "Resource has been deleted")
        assert await engine.push_deleted(mapping.user_id, _mirror(mapping)) is True

    async def test_push_deleted_propagates_other_failures(self, engine, mapping, google):
        google.delete_error = ProviderRequestError(500, "backend error")
        with pytest.raises(ProviderRequestError):
            await engine.push_deleted(mapping.user_id, _mirror(mapping))

    async def test_push_deleted_without_mapping(self, engine, user, google):
        mirror = MirrorLink(provider="google", remote_calendar_id="unmapped", remote_event_id="x")
        assert await engine.push_deleted(user.id, mirror) is False
        assert google.calls_to("delete_event") == []
