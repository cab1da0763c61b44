"""Pydantic request/response models for the HTTP API."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, Field


class ApiMeta(BaseModel):
    """Extensible metadata bag attached to every API response."""

    model_config = {"extra": "allow"}


T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    """Generic API response wrapper.

    All successful responses follow ``{"data": T, "meta": {...}}``.
    """

    data: T
    meta: ApiMeta = Field(default_factory=ApiMeta)


class ErrorDetail(BaseModel):
    code: str
    message: str


class ErrorResponse(BaseModel):
    """Standard error response envelope."""

    error: ErrorDetail


# ---------------------------------------------------------------------------
# Sync
# ---------------------------------------------------------------------------


class SyncNowResponse(BaseModel):
    calendar_runs: dict[str, str] = Field(default_factory=dict)
    task_runs: dict[str, str] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Connections
# ---------------------------------------------------------------------------


class MappingSummary(BaseModel):
    id: str
    remote_calendar_id: str
    local_calendar_id: str
    name: str
    color: str | None = None
    latest_sync_run_id: str | None = None
    last_sync_error: str | None = None
    channel_expires_at: datetime | None = None
    push_enabled: bool = False


class ConnectionSummary(BaseModel):
    """Connection status; never carries token material."""

    id: str
    provider: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    latest_sync_run_id: str | None = None
    last_sync_error: str | None = None
    calendars: list[MappingSummary] = Field(default_factory=list)


class DeleteConnectionResponse(BaseModel):
    id: str
    deleted: bool
    mirrored_events: str


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


class OAuthStartResponse(BaseModel):
    provider: str
    authorization_url: str


class OAuthCallbackSuccess(BaseModel):
    provider: str
    connection_id: str
    calendars: int = 0
    watched: int = 0
    run_ids: dict[str, str] = Field(default_factory=dict)
