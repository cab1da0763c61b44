"""Shared fixtures: an in-memory store, recording providers and a wired runtime."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from calsync.config import (
    CalsyncConfig,
    DatabaseConfig,
    OAuthClientConfig,
    SyncConfig,
    WebhookConfig,
)
from calsync.models import Connection, ExternalCalendar, User
from calsync.providers.base import ProviderRegistry
from calsync.runtime import Runtime
from calsync.storage.memory import InMemoryStore
from calsync.testing import FakeCalendarProvider, FakeTaskProvider

WEBHOOK_URL = "https://calsync.example.test/webhooks/google-calendar"


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def google() -> FakeCalendarProvider:
    return FakeCalendarProvider()


@pytest.fixture
def linear() -> FakeTaskProvider:
    return FakeTaskProvider()


@pytest.fixture
def providers(google: FakeCalendarProvider, linear: FakeTaskProvider) -> ProviderRegistry:
    return ProviderRegistry(google, linear)


@pytest.fixture
def config() -> CalsyncConfig:
    return CalsyncConfig(
        google=OAuthClientConfig(
            client_id="google-client",
            client_secret="google-secret",
            redirect_uri="http://localhost:8000/api/oauth/google/callback",
        ),
        linear=OAuthClientConfig(
            client_id="linear-client",
            client_secret="linear-secret",
            redirect_uri="http://localhost:8000/api/oauth/linear/callback",
        ),
        webhook=WebhookConfig(url=WEBHOOK_URL),
        sync=SyncConfig(batch_size=2, workflow_max_attempts=2, workflow_backoff_seconds=0.0),
        database=DatabaseConfig(backend="memory"),
    )


@pytest.fixture
async def runtime(config, store, providers):
    rt = Runtime(config, store=store, providers=providers)
    yield rt
    await rt.workflows.shutdown()


@pytest.fixture
def user(store: InMemoryStore) -> User:
    return store.add_user("me@example.com")


@pytest.fixture
async def connection(store: InMemoryStore, user: User) -> Connection:
    return await store.upsert_connection(
        user_id=user.id,
        provider="google",
        refresh_token="refresh-1",
        access_token="access-0",
        access_token_expires_at=datetime.now(UTC) + timedelta(hours=1),
        metadata={},
    )


@pytest.fixture
async def mapping(store: InMemoryStore, connection: Connection) -> ExternalCalendar:
    mapping, _ = await store.upsert_external_calendar(
        connection, remote_calendar_id="primary", name="Work", color="blue"
    )
    return mapping


@pytest.fixture
async def linear_connection(store: InMemoryStore, user: User) -> Connection:
    return await store.upsert_connection(
        user_id=user.id,
        provider="linear",
        refresh_token="linear-refresh",
        access_token="linear-access",
        access_token_expires_at=datetime.now(UTC) + timedelta(hours=1),
        metadata={"organizationName": "Acme"},
    )
