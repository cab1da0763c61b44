"""OAuth connect endpoints.

The flow:
  1. GET /api/oauth/{provider}/start
     - Issues a one-time state token bound to the acting user (TTL 10 min).
     - Redirects to the provider consent URL, or returns it as JSON with
       ``?redirect=false``.

  2. GET /api/oauth/{provider}/callback
     - Consumes the state, exchanges the code, persists the connection and,
       for calendar providers, maps every remote calendar, registers push
       channels and enqueues the initial sync.

Security notes:
  - State tokens are one-time-use and process-local.
  - Token material is never returned or logged.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse, RedirectResponse, Response

from calsync.api.deps import get_current_user_id, get_runtime
from calsync.api.models import ApiResponse, OAuthCallbackSuccess, OAuthStartResponse
from calsync.errors import InvalidOAuthStateError
from calsync.runtime import Runtime

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/oauth", tags=["oauth"])

SUPPORTED_PROVIDERS = ("google", "linear")


def _check_provider(provider: str) -> None:
    if provider not in SUPPORTED_PROVIDERS:
        raise HTTPException(status_code=404, detail=f"Unknown provider: {provider}")


@router.get("/{provider}/start")
async def oauth_start(
    provider: str,
    redirect: bool = Query(
        default=True,
        description="If true (default), redirect to the consent URL. "
        "If false, return the URL as JSON for programmatic callers.",
    ),
    user_id: str = Depends(get_current_user_id),
    runtime: Runtime = Depends(get_runtime),
) -> Response:
    _check_provider(provider)
    authorization_url = runtime.onboarding.begin(user_id, provider)
    logger.info("%s OAuth flow started for user %s", provider, user_id)
    if redirect:
        return RedirectResponse(url=authorization_url, status_code=302)
    payload = ApiResponse[OAuthStartResponse](
        data=OAuthStartResponse(provider=provider, authorization_url=authorization_url)
    )
    return JSONResponse(content=payload.model_dump(mode="json"))


@router.get("/{provider}/callback", response_model=ApiResponse[OAuthCallbackSuccess])
async def oauth_callback(
    provider: str,
    code: str | None = Query(default=None),
    state: str | None = Query(default=None),
    error: str | None = Query(default=None),
    runtime: Runtime = Depends(get_runtime),
) -> ApiResponse[OAuthCallbackSuccess]:
    _check_provider(provider)
    if error:
        logger.warning("%s OAuth provider error: %s", provider, error)
        # Consume the state so a denied flow cannot be replayed.
        if state:
            try:
                runtime.onboarding.states.consume(state, provider)
            except InvalidOAuthStateError:
                logger.debug("Denied OAuth flow carried an unknown state")
        raise HTTPException(status_code=400, detail=f"Authorization was not granted: {error}")
    if not code:
        raise ValueError("Authorization code is missing from the callback")
    if not state:
        raise InvalidOAuthStateError("State parameter is missing from the callback")

    result = await runtime.onboarding.complete(provider, code=code, state=state)
    return ApiResponse[OAuthCallbackSuccess](
        data=OAuthCallbackSuccess(
            provider=provider,
            connection_id=result.connection.id,
            calendars=len(result.mappings),
            watched=len(result.watched),
            run_ids=result.run_ids,
        )
    )
