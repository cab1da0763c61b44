"""Tests for push channel registration and renewal."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from calsync.errors import ProviderRequestError, WebhookNotConfiguredError
from calsync.sync.channels import ChannelManager
from calsync.sync.registry import ExternalCalendarRegistry
from calsync.sync.tokens import ConnectionStore

pytestmark = pytest.mark.unit

WEBHOOK_URL = "https://calsync.example.test/webhooks/google-calendar"


@pytest.fixture
def registry(store) -> ExternalCalendarRegistry:
    return ExternalCalendarRegistry(store)


@pytest.fixture
def channels(store, registry, providers) -> ChannelManager:
    return ChannelManager(
        registry, ConnectionStore(store, providers), providers, webhook_url=WEBHOOK_URL
    )


async def test_register_watch_persists_channel(channels, store, mapping, google):
    before = datetime.now(UTC)
    channel = await channels.register_watch(mapping.connection_id, "primary")

    call = google.calls_to("create_watch")[0].kwargs
    assert call["webhook_url"] == WEBHOOK_URL
    assert call["remote_calendar_id"] == "primary"
    assert call["channel_token"]
    assert before + timedelta(days=6) < call["expires_at"] <= datetime.now(UTC) + timedelta(days=7)

    stored = await store.get_external_calendar(mapping.id)
    assert stored.channel_id == channel.channel_id == call["channel_id"]
    assert stored.channel_secret == call["channel_token"]
    assert stored.channel_resource_id == f"resource-{channel.channel_id}"
    assert stored.channel_expires_at == call["expires_at"]
    assert google.calls_to("stop_watch") == []


async def test_register_watch_without_webhook_url(store, registry, providers, mapping, google):
    manager = ChannelManager(
        registry, ConnectionStore(store, providers), providers, webhook_url=None
    )
    assert manager.push_enabled is False
    with pytest.raises(WebhookNotConfiguredError):
        await manager.register_watch(mapping.connection_id, "primary")
    assert google.calls_to("create_watch") == []


async def test_reregistering_stops_previous_channel(channels, store, mapping, google):
    first = await channels.register_watch(mapping.connection_id, "primary")
    second = await channels.register_watch(mapping.connection_id, "primary")

    assert first.channel_id != second.channel_id
    stopped = google.calls_to("stop_watch")
    assert [c.kwargs["channel_id"] for c in stopped] == [first.channel_id]
    assert stopped[0].kwargs["resource_id"] == f"resource-{first.channel_id}"
    assert (await store.get_external_calendar(mapping.id)).channel_id == second.channel_id


async def test_failed_stop_of_previous_channel_is_tolerated(channels, store, mapping, google):
    await channels.register_watch(mapping.connection_id, "primary")

    async def _fail(*args, **kwargs):
        raise ProviderRequestError(404, "Channel not found")

    google.stop_watch = _fail
    second = await channels.register_watch(mapping.connection_id, "primary")

    assert (await store.get_external_calendar(mapping.id)).channel_id == second.channel_id


async def test_failed_watch_leaves_mapping_unchanged(channels, store, mapping, google):
    google.watch_error = ProviderRequestError(400, "push not supported")

    with pytest.raises(ProviderRequestError):
        await channels.register_watch(mapping.connection_id, "primary")

    assert (await store.get_external_calendar(mapping.id)).channel_id is None


async def test_renew_expiring_reports_per_mapping(channels, store, registry, connection, google):
    now = datetime.now(UTC)
    expiring = await registry.upsert_by_remote_id(connection, "expiring", name="Expiring")
    healthy = await registry.upsert_by_remote_id(connection, "healthy", name="Healthy")
    broken = await registry.upsert_by_remote_id(connection, "broken", name="Broken")
    for mapping, hours in ((expiring, 10), (healthy, 24 * 5), (broken, 1)):
        await registry.record_channel(
            mapping.id,
            channel_id=f"old-{mapping.remote_calendar_id}",
            channel_secret=None,
            resource_id=f"res-{mapping.remote_calendar_id}",
            expires_at=now + timedelta(hours=hours),
        )

    original = google.create_watch

    async def _create_watch(access_token, remote_calendar_id, **kwargs):
        if remote_calendar_id == "broken":
            raise ProviderRequestError(403, "forbidden")
        return await original(access_token, remote_calendar_id, **kwargs)

    google.create_watch = _create_watch

    report = await channels.renew_expiring(now=now)

    assert report.renewed == [expiring.id]
    assert list(report.failed) == [broken.id]
    assert "forbidden" in report.failed[broken.id]
    assert (await store.get_external_calendar(expiring.id)).channel_id != "old-expiring"
    assert (await store.get_external_calendar(healthy.id)).channel_id == "old-healthy"
    assert (await store.get_external_calendar(broken.id)).channel_id == "old-broken"


async def test_renew_expiring_with_nothing_due(channels, mapping):
    report = await channels.renew_expiring()
    assert report.renewed == []
    assert report.failed == {}
