"""Sync orchestrator: one workflow run per triggered sync.

Run lifecycle per mapping: ``started`` (fresh run id recorded, previous error
cleared) -> inbound sync -> ``succeeded`` | ``failed`` (reason written back to
the mapping).  Runs for the same mapping execute one at a time in this
process.  A trigger that arrives while a run is still queued behind the
active one joins the queued run instead of adding another.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

from calsync.core.workflow import RunOutcome, WorkflowEngine
from calsync.errors import ConnectionNotFoundError
from calsync.models import TASK_PROVIDERS
from calsync.storage.base import SyncStore
from calsync.sync.inbound import InboundSyncEngine
from calsync.sync.registry import ExternalCalendarRegistry
from calsync.sync.tasks import TaskSyncEngine

logger = logging.getLogger(__name__)

DEFAULT_FAILURE_MESSAGE = "Sync failed"


@dataclass
class SyncNowResult:
    calendar_runs: dict[str, str] = field(default_factory=dict)
    task_runs: dict[str, str] = field(default_factory=dict)


class SyncOrchestrator:
    def __init__(
        self,
        store: SyncStore,
        registry: ExternalCalendarRegistry,
        inbound: InboundSyncEngine,
        tasks: TaskSyncEngine,
        workflows: WorkflowEngine,
    ) -> None:
        self._store = store
        self._registry = registry
        self._inbound = inbound
        self._tasks = tasks
        self._workflows = workflows
        # key -> (lock, number of runs holding or waiting on it)
        self._locks: dict[str, tuple[asyncio.Lock, int]] = {}
        # key -> id of the run waiting for the lock
        self._queued: dict[str, str] = {}

    @asynccontextmanager
    async def _exclusive(self, key: str) -> AsyncIterator[None]:
        lock, users = self._locks.get(key, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._locks[key] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._locks[key]
            if users == 1:
                del self._locks[key]
            else:
                self._locks[key] = (lock, users - 1)

    def _dequeue(self, key: str, run_id: str) -> None:
        if self._queued.get(key) == run_id:
            del self._queued[key]

    @property
    def queued_runs(self) -> dict[str, str]:
        return dict(self._queued)

    @property
    def lock_count(self) -> int:
        return len(self._locks)

    # -- calendar mappings ---------------------------------------------------

    async def enqueue_calendar_sync(self, mapping_id: str) -> str:
        """Start an inbound sync run for *mapping_id* and return its run id.

        Returns the id of the already queued run when one has not started yet.
        """
        mapping = await self._registry.get(mapping_id)
        queued = self._queued.get(mapping.id)
        if queued is not None:
            logger.debug("Coalesced sync trigger for mapping %s into run %s", mapping.id, queued)
            return queued

        run_id = self._workflows.new_run_id()
        self._queued[mapping.id] = run_id
        try:
            await self._registry.mark_run_started(mapping.id, run_id)
        except Exception:
            self._dequeue(mapping.id, run_id)
            raise

        async def _work():
            try:
                async with self._exclusive(mapping.id):
                    self._dequeue(mapping.id, run_id)
                    return await self._inbound.sync(mapping.id)
            finally:
                self._dequeue(mapping.id, run_id)

        async def _on_complete(outcome: RunOutcome) -> None:
            await self._record_calendar_outcome(mapping.id, outcome)

        self._workflows.start(
            "inbound_sync",
            _work,
            run_id=run_id,
            on_complete=_on_complete,
            context={"mapping_id": mapping.id},
        )
        logger.debug("Enqueued inbound sync run %s for mapping %s", run_id, mapping.id)
        return run_id

    async def _record_calendar_outcome(self, mapping_id: str, outcome: RunOutcome) -> None:
        if outcome.status != "failed":
            return
        mapping = await self._store.get_external_calendar(mapping_id)
        if mapping is None:
            return
        # A newer run owns the error field once it has started.
        if mapping.latest_sync_run_id != outcome.run_id:
            return
        await self._registry.record_sync_error(mapping_id, outcome.error or DEFAULT_FAILURE_MESSAGE)

    async def enqueue_all(self) -> dict[str, str]:
        """Enqueue a run for every mapping; one failing mapping does not stop the rest."""
        runs: dict[str, str] = {}
        for mapping in await self._registry.list_all():
            try:
                runs[mapping.id] = await self.enqueue_calendar_sync(mapping.id)
            except Exception:
                logger.exception("Failed to enqueue fallback sync for mapping %s", mapping.id)
        return runs

    # -- task connections ----------------------------------------------------

    async def enqueue_task_sync(self, connection_id: str) -> str:
        connection = await self._store.get_connection(connection_id)
        if connection is None:
            raise ConnectionNotFoundError(f"Connection {connection_id} not found")
        key = f"connection:{connection.id}"
        queued = self._queued.get(key)
        if queued is not None:
            return queued

        run_id = self._workflows.new_run_id()
        self._queued[key] = run_id
        try:
            await self._store.mark_connection_run_started(connection.id, run_id)
        except Exception:
            self._dequeue(key, run_id)
            raise

        async def _work():
            try:
                async with self._exclusive(key):
                    self._dequeue(key, run_id)
                    return await self._tasks.sync(connection.id)
            finally:
                self._dequeue(key, run_id)

        async def _on_complete(outcome: RunOutcome) -> None:
            if outcome.status != "failed":
                return
            current = await self._store.get_connection(connection.id)
            if current is None or current.latest_sync_run_id != outcome.run_id:
                return
            await self._store.set_connection_sync_error(
                connection.id, outcome.error or DEFAULT_FAILURE_MESSAGE
            )

        self._workflows.start(
            "task_sync",
            _work,
            run_id=run_id,
            on_complete=_on_complete,
            context={"connection_id": connection.id},
        )
        return run_id

    async def enqueue_all_task_syncs(self) -> dict[str, str]:
        runs: dict[str, str] = {}
        for provider in TASK_PROVIDERS:
            for connection in await self._store.list_connections(provider=provider):
                try:
                    runs[connection.id] = await self.enqueue_task_sync(connection.id)
                except Exception:
                    logger.exception("Failed to enqueue task sync for connection %s", connection.id)
        return runs

    # -- user trigger --------------------------------------------------------

    async def sync_now(self, user_id: str) -> SyncNowResult:
        """Enqueue one run per mapping of the user, plus their task-tracker sync."""
        mappings = await self._registry.list_for_user(user_id)
        task_connections = [
            c
            for c in await self._store.list_connections(user_id=user_id)
            if c.provider in TASK_PROVIDERS
        ]
        if not mappings and not task_connections:
            raise ConnectionNotFoundError(f"User {user_id} has no connected calendars or trackers")

        result = SyncNowResult()
        for mapping in mappings:
            result.calendar_runs[mapping.id] = await self.enqueue_calendar_sync(mapping.id)
        for connection in task_connections:
            result.task_runs[connection.id] = await self.enqueue_task_sync(connection.id)
        return result
