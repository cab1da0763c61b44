"""API error handling middleware: consistent error responses.

Registers FastAPI exception handlers that convert domain exceptions into
standardised ``{"error": {"code": "...", "message": "..."}}`` JSON responses.

Status code mapping:
- ``NotFoundError`` → 404 Not Found
- ``TokenRefreshFailedError`` → 401 (the user must reconnect)
- ``EventNotEditableError``, ``ConfigurationError`` → 409 Conflict
- ``ProviderRequestError``, ``DataError`` → 502 Bad Gateway
- ``InvalidOAuthStateError``, ``NoRefreshTokenError``, ``ValueError`` → 400
- ``HTTPException`` → its own status, wrapped in the envelope
- Any other ``Exception`` → 500 Internal Server Error
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from calsync.api.models import ErrorDetail, ErrorResponse
from calsync.errors import (
    CalsyncError,
    ConfigurationError,
    DataError,
    EventNotEditableError,
    InvalidOAuthStateError,
    NoRefreshTokenError,
    NotFoundError,
    ProviderRequestError,
    TokenRefreshFailedError,
)

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR: tuple[tuple[type[CalsyncError], int], ...] = (
    (NotFoundError, 404),
    (TokenRefreshFailedError, 401),
    (EventNotEditableError, 409),
    (ConfigurationError, 409),
    (InvalidOAuthStateError, 400),
    (NoRefreshTokenError, 400),
    (ProviderRequestError, 502),
    (DataError, 502),
)

_HTTP_CODES = {
    400: "BAD_REQUEST",
    401: "UNAUTHORIZED",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    503: "SERVICE_UNAVAILABLE",
}


def _error_response(status_code: int, code: str, message: str) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message))
    return JSONResponse(status_code=status_code, content=body.model_dump())


def status_for(exc: CalsyncError) -> int:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return 500


async def _handle_calsync_error(request: Request, exc: CalsyncError) -> JSONResponse:
    status_code = status_for(exc)
    if status_code >= 500:
        logger.warning("%s on %s %s: %s", exc.code, request.method, request.url.path, exc)
    else:
        logger.info("%s on %s %s: %s", exc.code, request.method, request.url.path, exc)
    return _error_response(status_code, exc.code, str(exc))


async def _handle_value_error(request: Request, exc: ValueError) -> JSONResponse:
    """Return 400 for validation / value errors."""
    logger.info("Validation error: %s", exc)
    return _error_response(400, "VALIDATION_ERROR", str(exc))


async def _handle_http_exception(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code = _HTTP_CODES.get(exc.status_code, "HTTP_ERROR")
    return _error_response(exc.status_code, code, str(exc.detail))


class CatchAllErrorMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that catches any unhandled exception and returns a 500."""

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception:
            logger.error(
                "Unhandled exception on %s %s",
                request.method,
                request.url.path,
                exc_info=True,
            )
            return _error_response(500, "INTERNAL_ERROR", "Internal server error")


def register_error_handlers(app: FastAPI) -> None:
    """Attach all exception handlers to the FastAPI application."""
    app.add_exception_handler(CalsyncError, _handle_calsync_error)  # type: ignore[arg-type]
    app.add_exception_handler(ValueError, _handle_value_error)  # type: ignore[arg-type]
    app.add_exception_handler(StarletteHTTPException, _handle_http_exception)  # type: ignore[arg-type]
    app.add_middleware(CatchAllErrorMiddleware)
