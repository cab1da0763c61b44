"""Channel manager: register and renew provider push subscriptions."""

from __future__ import annotations

import logging
import secrets
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from calsync.errors import ProviderRequestError, WebhookNotConfiguredError
from calsync.models import ExternalCalendar, WatchChannel
from calsync.providers.base import ProviderRegistry
from calsync.sync.registry import DEFAULT_RENEWAL_WINDOW, ExternalCalendarRegistry
from calsync.sync.tokens import ConnectionStore

logger = logging.getLogger(__name__)

# Google caps web_hook channels at seven days.
DEFAULT_CHANNEL_TTL = timedelta(days=7)


@dataclass
class RenewalReport:
    renewed: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)


class ChannelManager:
    def __init__(
        self,
        registry: ExternalCalendarRegistry,
        tokens: ConnectionStore,
        providers: ProviderRegistry,
        *,
        webhook_url: str | None,
        channel_ttl: timedelta = DEFAULT_CHANNEL_TTL,
        renewal_window: timedelta = DEFAULT_RENEWAL_WINDOW,
    ) -> None:
        self._registry = registry
        self._tokens = tokens
        self._providers = providers
        self._webhook_url = webhook_url
        self._channel_ttl = channel_ttl
        self._renewal_window = renewal_window

    @property
    def push_enabled(self) -> bool:
        return bool(self._webhook_url)

    async def register_watch(self, connection_id: str, remote_calendar_id: str) -> WatchChannel:
        """Create a fresh push channel for the mapping and persist it.

        The previous channel, if any, is stopped best-effort afterwards so
        the provider does not keep delivering to it until it expires.
        """
        if not self._webhook_url:
            raise WebhookNotConfiguredError()
        mapping = await self._registry.get_by_remote_id(connection_id, remote_calendar_id)
        access_token = await self._tokens.get_valid_access_token(connection_id)
        provider = self._providers.calendar(mapping.provider)

        channel_id = str(uuid.uuid4())
        channel_secret = secrets.token_urlsafe(24)
        expires_at = datetime.now(UTC) + self._channel_ttl
        channel = await provider.create_watch(
            access_token,
            remote_calendar_id,
            channel_id=channel_id,
            webhook_url=self._webhook_url,
            expires_at=expires_at,
            channel_token=channel_secret,
        )
        await self._registry.record_channel(
            mapping.id,
            channel_id=channel.channel_id,
            channel_secret=channel_secret,
            resource_id=channel.resource_id,
            expires_at=channel.expires_at or expires_at,
        )
        logger.info(
            "Registered push channel %s for mapping %s (expires %s)",
            channel.channel_id,
            mapping.id,
            (channel.expires_at or expires_at).isoformat(),
        )

        if mapping.channel_id and mapping.channel_resource_id:
            await self._stop_previous(access_token, mapping)
        return channel

    async def _stop_previous(self, access_token: str, mapping: ExternalCalendar) -> None:
        assert mapping.channel_id is not None and mapping.channel_resource_id is not None
        provider = self._providers.calendar(mapping.provider)
        try:
            await provider.stop_watch(
                access_token,
                channel_id=mapping.channel_id,
                resource_id=mapping.channel_resource_id,
            )
        except ProviderRequestError:
            logger.warning(
                "Failed to stop replaced channel %s for mapping %s",
                mapping.channel_id,
                mapping.id,
                exc_info=True,
            )

    async def renew_expiring(self, *, now: datetime | None = None) -> RenewalReport:
        """Re-register every channel expiring within the renewal window.

        Each mapping is independent: a failure is logged and the sweep moves on.
        """
        report = RenewalReport()
        expiring = await self._registry.find_channels_expiring_within(self._renewal_window, now=now)
        for mapping in expiring:
            try:
                await self.register_watch(mapping.connection_id, mapping.remote_calendar_id)
            except Exception as exc:
                logger.warning(
                    "Channel renewal failed for mapping %s", mapping.id, exc_info=True
                )
                report.failed[mapping.id] = str(exc)
            else:
                report.renewed.append(mapping.id)
        if expiring:
            logger.info(
                "Channel renewal sweep: renewed=%d failed=%d",
                len(report.renewed),
                len(report.failed),
            )
        return report
