"""Push-notification receiver for Google Calendar watch channels.

Google delivers at least once and redelivers on anything but a fast 2xx, so
the receiver only routes the channel id to a mapping and enqueues a sync; it
never syncs inline.  Unknown channel ids (stale channels after renewal,
duplicates) are acknowledged and dropped.
"""

from __future__ import annotations

import hmac
import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Response

from calsync.api.deps import get_runtime
from calsync.runtime import Runtime

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

# Handshake sent once when a channel is created; carries no change.
RESOURCE_STATE_SYNC = "sync"


@router.post("/google-calendar", status_code=200)
async def google_calendar_notification(
    x_goog_channel_id: str | None = Header(default=None),
    x_goog_resource_state: str | None = Header(default=None),
    x_goog_channel_token: str | None = Header(default=None),
    runtime: Runtime = Depends(get_runtime),
) -> Response:
    if not x_goog_channel_id:
        raise HTTPException(status_code=400, detail="Missing X-Goog-Channel-ID header")

    if x_goog_resource_state == RESOURCE_STATE_SYNC:
        logger.debug("Acknowledged sync handshake for channel %s", x_goog_channel_id)
        return Response(status_code=200)

    mapping = await runtime.registry.get_by_channel_id(x_goog_channel_id)
    if mapping is None:
        logger.debug("Ignoring notification for unknown channel %s", x_goog_channel_id)
        return Response(status_code=200)

    if mapping.channel_secret and not hmac.compare_digest(
        mapping.channel_secret, x_goog_channel_token or ""
    ):
        logger.warning("Ignoring notification with a bad token for channel %s", x_goog_channel_id)
        return Response(status_code=200)

    try:
        await runtime.orchestrator.enqueue_calendar_sync(mapping.id)
    except Exception:
        logger.exception("Failed to enqueue sync for mapping %s from webhook", mapping.id)
    return Response(status_code=200)
