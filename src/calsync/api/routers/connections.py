"""Connection status and disconnect endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from calsync.api.deps import get_current_user_id, get_runtime
from calsync.api.models import (
    ApiResponse,
    ConnectionSummary,
    DeleteConnectionResponse,
    MappingSummary,
)
from calsync.errors import ConnectionNotFoundError
from calsync.models import ExternalCalendar
from calsync.runtime import Runtime

router = APIRouter(prefix="/api/connections", tags=["connections"])


def _mapping_summary(mapping: ExternalCalendar) -> MappingSummary:
    return MappingSummary(
        id=mapping.id,
        remote_calendar_id=mapping.remote_calendar_id,
        local_calendar_id=mapping.local_calendar_id,
        name=mapping.name,
        color=mapping.color,
        latest_sync_run_id=mapping.latest_sync_run_id,
        last_sync_error=mapping.last_sync_error,
        channel_expires_at=mapping.channel_expires_at,
        push_enabled=mapping.channel_id is not None,
    )


@router.get("", response_model=ApiResponse[list[ConnectionSummary]])
async def list_connections(
    user_id: str = Depends(get_current_user_id),
    runtime: Runtime = Depends(get_runtime),
) -> ApiResponse[list[ConnectionSummary]]:
    connections = await runtime.store.list_connections(user_id=user_id)
    mappings = await runtime.registry.list_for_user(user_id)
    summaries = [
        ConnectionSummary(
            id=connection.id,
            provider=connection.provider,
            metadata=connection.metadata,
            latest_sync_run_id=connection.latest_sync_run_id,
            last_sync_error=connection.last_sync_error,
            calendars=[
                _mapping_summary(m) for m in mappings if m.connection_id == connection.id
            ],
        )
        for connection in connections
    ]
    return ApiResponse[list[ConnectionSummary]](data=summaries)


@router.delete("/{connection_id}", response_model=ApiResponse[DeleteConnectionResponse])
async def delete_connection(
    connection_id: str,
    delete_events: bool = Query(
        default=False,
        description="Delete mirrored events instead of keeping them as local events.",
    ),
    user_id: str = Depends(get_current_user_id),
    runtime: Runtime = Depends(get_runtime),
) -> ApiResponse[DeleteConnectionResponse]:
    connection = await runtime.store.get_connection(connection_id)
    if connection is None or connection.user_id != user_id:
        raise ConnectionNotFoundError(f"Connection {connection_id} not found")
    deleted = await runtime.tokens.remove_connection(
        connection_id, also_delete_mirrored_events=delete_events
    )
    return ApiResponse[DeleteConnectionResponse](
        data=DeleteConnectionResponse(
            id=connection_id,
            deleted=deleted,
            mirrored_events="deleted" if delete_events else "unlinked",
        )
    )
