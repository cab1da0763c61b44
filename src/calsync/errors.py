"""Error taxonomy for calendar synchronization.

Every error carries a stable ``code`` that the HTTP layer maps onto a
response status.  Errors deriving from :class:`PermanentError` are never
retried by the workflow engine: retrying a missing webhook URL, a revoked
refresh token, or a malformed provider response cannot succeed.
"""

from __future__ import annotations


class CalsyncError(RuntimeError):
    """Base error for calsync failures."""

    code = "INTERNAL_ERROR"


class PermanentError(CalsyncError):
    """Errors that a retry cannot fix."""


# ---------------------------------------------------------------------------
# Configuration errors
# ---------------------------------------------------------------------------


class ConfigurationError(PermanentError):
    """Deployment misconfiguration."""

    code = "CONFIGURATION_ERROR"


class ConfigError(ConfigurationError):
    """Raised when the config file or environment is missing, malformed, or invalid."""

    code = "CONFIG_INVALID"


class OAuthNotConfiguredError(ConfigurationError):
    """Raised when OAuth client credentials for a provider are not set."""

    code = "OAUTH_NOT_CONFIGURED"

    def __init__(self, provider: str) -> None:
        super().__init__(f"OAuth client credentials are not configured for provider {provider!r}")
        self.provider = provider


class WebhookNotConfiguredError(ConfigurationError):
    """Raised when push registration is attempted without a public webhook URL."""

    code = "WEBHOOK_URL_NOT_SET"

    def __init__(self) -> None:
        super().__init__("Public webhook URL is not configured; push channels are disabled")


# ---------------------------------------------------------------------------
# Auth errors
# ---------------------------------------------------------------------------


class TokenRefreshFailedError(PermanentError):
    """The provider rejected the stored refresh token; the user must reconnect."""

    code = "TOKEN_REFRESH_FAILED"


class NoRefreshTokenError(PermanentError):
    """An authorization code exchange returned no refresh token."""

    code = "NO_REFRESH_TOKEN"


class InvalidOAuthStateError(PermanentError):
    """The OAuth callback carried an unknown or expired state value."""

    code = "INVALID_STATE"


# ---------------------------------------------------------------------------
# Provider errors
# ---------------------------------------------------------------------------


class ProviderRequestError(CalsyncError):
    """Provider API request failed."""

    code = "PROVIDER_REQUEST_FAILED"

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(f"Provider request failed ({status_code}): {message}")
        self.status_code = status_code
        self.message = message


class SyncCursorExpiredError(ProviderRequestError):
    """The provider no longer accepts the stored incremental sync cursor."""

    code = "SYNC_CURSOR_EXPIRED"


class RemoteEventGoneError(ProviderRequestError):
    """The remote event does not exist (or was already deleted)."""

    code = "REMOTE_EVENT_GONE"


# ---------------------------------------------------------------------------
# Data errors
# ---------------------------------------------------------------------------


class DataError(PermanentError):
    """The provider returned a response missing data we depend on."""

    code = "PROVIDER_DATA_ERROR"


class InsertReturnedNoIdError(DataError):
    """The provider accepted an insert but returned no event identifier."""

    code = "GOOGLE_INSERT_NO_EVENT_ID"

    def __init__(self, remote_calendar_id: str) -> None:
        super().__init__(
            f"Provider accepted insert into calendar {remote_calendar_id!r} but returned no id"
        )
        self.remote_calendar_id = remote_calendar_id


# ---------------------------------------------------------------------------
# Lookup errors
# ---------------------------------------------------------------------------


class NotFoundError(PermanentError):
    """A referenced record does not exist."""

    code = "NOT_FOUND"


class UserNotFoundError(NotFoundError):
    code = "USER_NOT_FOUND"


class ConnectionNotFoundError(NotFoundError):
    code = "CONNECTION_NOT_FOUND"


class ExternalCalendarNotFoundError(NotFoundError):
    code = "EXTERNAL_CALENDAR_NOT_FOUND"


class EventNotFoundError(NotFoundError):
    code = "EVENT_NOT_FOUND"


class EventNotEditableError(PermanentError):
    """A mirrored event the local user may not modify was edited."""

    code = "EVENT_CANNOT_BE_EDITED"

    def __init__(self, event_id: str) -> None:
        super().__init__(f"Event {event_id} is synced from an external calendar and cannot be edited")
        self.event_id = event_id
