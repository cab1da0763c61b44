"""User-triggered "sync now" endpoint."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from calsync.api.deps import get_current_user_id, get_runtime
from calsync.api.models import ApiResponse, SyncNowResponse
from calsync.runtime import Runtime

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sync", tags=["sync"])


@router.post("/now", status_code=202, response_model=ApiResponse[SyncNowResponse])
async def sync_now(
    user_id: str = Depends(get_current_user_id),
    runtime: Runtime = Depends(get_runtime),
) -> ApiResponse[SyncNowResponse]:
    """Enqueue one sync run per connected calendar and task tracker of the user."""
    result = await runtime.orchestrator.sync_now(user_id)
    logger.info(
        "Sync-now for user %s: %d calendar run(s), %d task run(s)",
        user_id,
        len(result.calendar_runs),
        len(result.task_runs),
    )
    return ApiResponse[SyncNowResponse](
        data=SyncNowResponse(calendar_runs=result.calendar_runs, task_runs=result.task_runs)
    )
