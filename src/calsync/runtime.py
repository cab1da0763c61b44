"""Service runtime. Builds and owns every long-lived component.

``Runtime.from_config`` wires storage, provider clients, the sync engines,
the workflow engine and the fallback scheduler from a :class:`CalsyncConfig`.
Tests construct it directly with an in-memory store and fake providers.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from calsync.config import CalsyncConfig
from calsync.core.scheduler import FallbackScheduler
from calsync.core.workflow import WorkflowEngine
from calsync.db import Database
from calsync.providers.base import ProviderRegistry
from calsync.providers.google import GoogleCalendarProvider
from calsync.providers.linear import LinearTaskProvider
from calsync.storage.base import SyncStore
from calsync.storage.memory import InMemoryStore
from calsync.storage.postgres import PostgresStore
from calsync.sync.channels import ChannelManager
from calsync.sync.events import LocalEventService
from calsync.sync.inbound import InboundSyncEngine
from calsync.sync.onboarding import OnboardingService
from calsync.sync.orchestrator import SyncOrchestrator
from calsync.sync.outbound import OutboundDispatcher, OutboundSyncEngine
from calsync.sync.registry import ExternalCalendarRegistry
from calsync.sync.tasks import TaskSyncEngine
from calsync.sync.tokens import ConnectionStore

logger = logging.getLogger(__name__)


class Runtime:
    def __init__(
        self,
        config: CalsyncConfig,
        *,
        store: SyncStore,
        providers: ProviderRegistry,
        database: Database | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self.providers = providers
        self.database = database
        sync = config.sync

        self.workflows = WorkflowEngine(
            max_attempts=sync.workflow_max_attempts,
            backoff_seconds=sync.workflow_backoff_seconds,
        )
        self.registry = ExternalCalendarRegistry(store)
        self.tokens = ConnectionStore(
            store,
            providers,
            refresh_margin=timedelta(seconds=sync.token_refresh_margin_seconds),
        )
        self.inbound = InboundSyncEngine(
            store,
            self.registry,
            self.tokens,
            providers,
            batch_size=sync.batch_size,
            default_horizon_months=sync.default_horizon_months,
        )
        self.task_sync = TaskSyncEngine(store, self.tokens, providers)
        self.orchestrator = SyncOrchestrator(
            store, self.registry, self.inbound, self.task_sync, self.workflows
        )
        self.channels = ChannelManager(
            self.registry,
            self.tokens,
            providers,
            webhook_url=config.webhook.url,
            channel_ttl=timedelta(days=sync.channel_ttl_days),
            renewal_window=timedelta(hours=sync.renewal_window_hours),
        )
        self.outbound = OutboundSyncEngine(store, self.registry, self.tokens, providers)
        self.events = LocalEventService(
            store, self.registry, OutboundDispatcher(self.outbound, self.workflows)
        )
        self.onboarding = OnboardingService(
            providers=providers,
            oauth_clients={"google": config.google, "linear": config.linear},
            tokens=self.tokens,
            registry=self.registry,
            channels=self.channels,
            orchestrator=self.orchestrator,
        )

        self.scheduler = FallbackScheduler()
        if self.channels.push_enabled:
            self.scheduler.add_job("channel_renewal", sync.renewal_cron, self.channels.renew_expiring)
        self.scheduler.add_job("fallback_sync", sync.fallback_cron, self.orchestrator.enqueue_all)
        self.scheduler.add_job(
            "task_sync", sync.task_sync_cron, self.orchestrator.enqueue_all_task_syncs
        )

    @classmethod
    def from_config(cls, config: CalsyncConfig) -> Runtime:
        providers = ProviderRegistry(
            GoogleCalendarProvider(
                client_id=config.google.client_id,
                client_secret=config.google.client_secret,
            ),
            LinearTaskProvider(
                client_id=config.linear.client_id,
                client_secret=config.linear.client_secret,
            ),
        )
        if config.database.backend == "memory":
            logger.warning("Using the in-memory store; all state is lost on restart")
            return cls(config, store=InMemoryStore(), providers=providers)

        assert config.database.url is not None
        database = Database.from_url(config.database.url)
        return cls(config, store=PostgresStore(database), providers=providers, database=database)

    async def start(self, *, run_scheduler: bool = True) -> None:
        if self.database is not None:
            await self.database.connect()
        if not self.channels.push_enabled:
            logger.warning(
                "Webhook URL not configured; inbound sync relies on the fallback sweep only"
            )
        if run_scheduler:
            self.scheduler.start()

    async def stop(self) -> None:
        await self.scheduler.stop()
        await self.workflows.shutdown()
        await self.providers.shutdown()
        if self.database is not None:
            await self.database.close()
