"""Persisted records and provider-neutral shapes used across the sync engine."""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

ProviderTag = Literal["google", "linear"]
EventKind = Literal["event", "task"]
SyncMode = Literal["incremental", "full"]

CALENDAR_PROVIDERS: tuple[str, ...] = ("google",)
TASK_PROVIDERS: tuple[str, ...] = ("linear",)


class EditScope(enum.StrEnum):
    """Which occurrences of a recurring series an edit applies to."""

    THIS = "this"
    ALL = "all"


def _strip_or_none(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = value.strip()
    return normalized or None


# ---------------------------------------------------------------------------
# Persisted records
# ---------------------------------------------------------------------------


class User(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    email: str | None = None
    sync_horizon_months: int = 1


class Connection(BaseModel):
    """OAuth credentials for one (user, provider) pair."""

    model_config = ConfigDict(extra="forbid")

    id: str
    user_id: str
    provider: ProviderTag
    refresh_token: str = Field(min_length=1)
    access_token: str | None = None
    access_token_expires_at: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    latest_sync_run_id: str | None = None
    last_sync_error: str | None = None

    def __repr__(self) -> str:
        return (
            f"Connection(id={self.id!r}, user_id={self.user_id!r}, "
            f"provider={self.provider!r}, refresh_token=<REDACTED>, "
            f"access_token={'<REDACTED>' if self.access_token else None}, "
            f"access_token_expires_at={self.access_token_expires_at!r})"
        )

    __str__ = __repr__


class ExternalCalendar(BaseModel):
    """Mapping between one remote calendar and one local calendar.

    ``sync_cursor`` is the provider's opaque incremental token; the empty
    string means the next inbound run must be a full resync.
    """

    model_config = ConfigDict(extra="forbid")

    id: str
    connection_id: str
    user_id: str
    provider: ProviderTag
    remote_calendar_id: str = Field(min_length=1)
    local_calendar_id: str
    name: str
    color: str | None = None
    sync_cursor: str = ""
    channel_id: str | None = None
    channel_secret: str | None = None
    channel_resource_id: str | None = None
    channel_expires_at: datetime | None = None
    last_sync_error: str | None = None
    latest_sync_run_id: str | None = None


class Calendar(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    user_id: str
    name: str
    color: str | None = None


class MirrorLink(BaseModel):
    """Mirroring fields of a local event; present as a whole or not at all."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    provider: ProviderTag
    remote_calendar_id: str = Field(min_length=1)
    remote_event_id: str = Field(min_length=1)
    is_editable: bool = False
    recurring_event_id: str | None = None

    @property
    def key(self) -> tuple[str, str, str]:
        """Idempotency key used by inbound upserts."""
        return (self.provider, self.remote_calendar_id, self.remote_event_id)


class EventFields(BaseModel):
    """Everything about a local event except its identity."""

    model_config = ConfigDict(extra="forbid")

    user_id: str
    calendar_id: str | None = None
    kind: EventKind = "event"
    title: str
    description: str | None = None
    location: str | None = None
    start_at: datetime
    end_at: datetime
    all_day: bool = False
    time_zone: str | None = None
    busy: Literal["busy", "free"] = "free"
    visibility: Literal["public", "private"] = "public"
    color: str | None = None
    creator_email: str | None = None
    organizer_email: str | None = None
    guests_can_modify: bool | None = None
    mirror: MirrorLink | None = None

    @model_validator(mode="after")
    def _end_not_before_start(self) -> EventFields:
        if self.end_at < self.start_at:
            raise ValueError("end_at must not be before start_at")
        return self


class Event(EventFields):
    id: str

    @property
    def is_mirrored(self) -> bool:
        return self.mirror is not None


class TaskItem(BaseModel):
    """Cached issue from a task-tracker provider."""

    model_config = ConfigDict(extra="forbid")

    connection_id: str
    user_id: str
    external_id: str = Field(min_length=1)
    identifier: str | None = None
    title: str
    url: str | None = None
    state: Literal["backlog", "todo", "in_progress", "done", "cancelled"] = "todo"
    priority: int | None = None
    due_date: str | None = None


# ---------------------------------------------------------------------------
# Provider shapes
# ---------------------------------------------------------------------------


class TokenGrant(BaseModel):
    """Result of an authorization-code exchange or a token refresh."""

    model_config = ConfigDict(extra="forbid")

    access_token: str = Field(min_length=1)
    refresh_token: str | None = None
    expires_at: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    def __repr__(self) -> str:
        return f"TokenGrant(access_token=<REDACTED>, expires_at={self.expires_at!r})"


class RemoteCalendar(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str = Field(min_length=1)
    name: str
    color: str | None = None
    primary: bool = False


class RemoteEventTime(BaseModel):
    """Either an all-day ``date`` (YYYY-MM-DD) or a ``date_time`` (RFC3339)."""

    model_config = ConfigDict(extra="forbid")

    date: str | None = None
    date_time: str | None = None
    time_zone: str | None = None

    @field_validator("date", "date_time", "time_zone")
    @classmethod
    def _normalize(cls, value: str | None) -> str | None:
        return _strip_or_none(value)


class RemoteEvent(BaseModel):
    """Provider-neutral remote event as returned by list/insert calls."""

    model_config = ConfigDict(extra="forbid")

    id: str | None = None
    status: str | None = None
    summary: str | None = None
    description: str | None = None
    location: str | None = None
    start: RemoteEventTime | None = None
    end: RemoteEventTime | None = None
    recurring_event_id: str | None = None
    creator_email: str | None = None
    organizer_email: str | None = None
    guests_can_modify: bool | None = None
    transparency: str | None = None
    visibility: str | None = None

    @field_validator("id", "recurring_event_id")
    @classmethod
    def _normalize_ids(cls, value: str | None) -> str | None:
        return _strip_or_none(value)

    @property
    def cancelled(self) -> bool:
        return self.status == "cancelled"


class EventPage(BaseModel):
    """One page of a list-events call."""

    model_config = ConfigDict(extra="forbid")

    items: list[RemoteEvent] = Field(default_factory=list)
    next_page_token: str | None = None
    next_sync_cursor: str | None = None

    @field_validator("next_page_token", "next_sync_cursor")
    @classmethod
    def _normalize_tokens(cls, value: str | None) -> str | None:
        return _strip_or_none(value)


class RemoteEventWrite(BaseModel):
    """Insert/patch body; ``None`` fields are omitted from patches."""

    model_config = ConfigDict(extra="forbid")

    summary: str | None = None
    description: str | None = None
    location: str | None = None
    start: RemoteEventTime | None = None
    end: RemoteEventTime | None = None


class RemoteTask(BaseModel):
    """Issue returned by a task-tracker provider."""

    model_config = ConfigDict(extra="forbid")

    external_id: str = Field(min_length=1)
    identifier: str | None = None
    title: str
    url: str | None = None
    state: Literal["backlog", "todo", "in_progress", "done", "cancelled"] = "todo"
    priority: int | None = None
    due_date: str | None = None


class WatchChannel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    channel_id: str = Field(min_length=1)
    resource_id: str | None = None
    expires_at: datetime | None = None


class SyncResult(BaseModel):
    """Outcome summary from one inbound sync run."""

    model_config = ConfigDict(extra="forbid")

    mapping_id: str
    mode: SyncMode
    fetched: int = 0
    upserted: int = 0
    deleted: int = 0
    skipped: int = 0
    next_sync_cursor: str | None = None
    cursor_reset: bool = False
