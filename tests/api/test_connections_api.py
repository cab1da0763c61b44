"""Tests for the connection status and disconnect endpoints."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from calsync.models import EventFields, MirrorLink

pytestmark = pytest.mark.unit


async def _mirrored_event(store, mapping):
    await store.apply_mirror_batch(
        deletes=[],
        upserts=[
            EventFields(
                user_id=mapping.user_id,
                calendar_id=mapping.local_calendar_id,
                title="Synced",
                start_at=datetime(2026, 10, 20, 9, tzinfo=UTC),
                end_at=datetime(2026, 10, 20, 10, tzinfo=UTC),
                mirror=MirrorLink(
                    provider="google", remote_calendar_id="primary", remote_event_id="r1"
                ),
            )
        ],
    )
    return next(iter(store.events.values()))


async def test_list_connections(client, runtime, auth, mapping, linear_connection):
    await runtime.registry.record_sync_error(mapping.id, "Sync failed")

    resp = await client.get("/api/connections", headers=auth)

    assert resp.status_code == 200
    data = {c["provider"]: c for c in resp.json()["data"]}
    google = data["google"]
    assert google["id"] == mapping.connection_id
    assert [c["remote_calendar_id"] for c in google["calendars"]] == ["primary"]
    assert google["calendars"][0]["last_sync_error"] == "Sync failed"
    assert google["calendars"][0]["push_enabled"] is False
    assert data["linear"]["metadata"] == {"organizationName": "Acme"}
    assert data["linear"]["calendars"] == []
    assert "refresh-1" not in resp.text
    assert "access_token" not in resp.text


async def test_list_connections_is_scoped_to_user(client, store, mapping):
    other = store.add_user("other@example.com")
    resp = await client.get("/api/connections", headers={"X-User-Id": other.id})
    assert resp.json()["data"] == []


async def test_delete_connection_keeps_events_by_default(client, store, auth, mapping):
    event = await _mirrored_event(store, mapping)

    resp = await client.delete(f"/api/connections/{mapping.connection_id}", headers=auth)

    assert resp.status_code == 200
    assert resp.json()["data"] == {
        "id": mapping.connection_id,
        "deleted": True,
        "mirrored_events": "unlinked",
    }
    assert await store.get_connection(mapping.connection_id) is None
    assert (await store.get_event(event.id)).mirror is None


async def test_delete_connection_can_delete_events(client, store, auth, mapping):
    event = await _mirrored_event(store, mapping)

    resp = await client.delete(
        f"/api/connections/{mapping.connection_id}",
        params={"delete_events": "true"},
        headers=auth,
    )

    assert resp.json()["data"]["mirrored_events"] == "deleted"
    assert await store.get_event(event.id) is None


async def test_delete_other_users_connection_is_404(client, store, mapping):
    other = store.add_user("other@example.com")

    resp = await client.delete(
        f"/api/connections/{mapping.connection_id}", headers={"X-User-Id": other.id}
    )

    assert resp.status_code == 404
    assert await store.get_connection(mapping.connection_id) is not None
