"""FastAPI dependencies: the service runtime and the acting user."""

from __future__ import annotations

from fastapi import Header, HTTPException, Request

from calsync.runtime import Runtime


def get_runtime(request: Request) -> Runtime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=503, detail="Service runtime is not initialized")
    return runtime


def get_current_user_id(x_user_id: str | None = Header(default=None)) -> str:
    """Resolve the acting user from the ``X-User-Id`` header set by the auth proxy."""
    if x_user_id is None or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return x_user_id.strip()
