"""Provider clients (Google Calendar, Linear) behind capability interfaces."""

from calsync.providers.base import (
    CalendarProviderClient,
    ProviderClient,
    ProviderRegistry,
    TaskProviderClient,
)

__all__ = ["CalendarProviderClient", "ProviderClient", "ProviderRegistry", "TaskProviderClient"]
