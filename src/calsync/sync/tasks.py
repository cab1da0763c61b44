"""Task-tracker sync: mirror the user's open assigned issues into the task cache."""

from __future__ import annotations

import logging

from calsync.models import TaskItem
from calsync.providers.base import ProviderRegistry
from calsync.storage.base import SyncStore
from calsync.sync.tokens import ConnectionStore

logger = logging.getLogger(__name__)


class TaskSyncEngine:
    def __init__(
        self, store: SyncStore, tokens: ConnectionStore, providers: ProviderRegistry
    ) -> None:
        self._store = store
        self._tokens = tokens
        self._providers = providers

    async def sync(self, connection_id: str) -> dict[str, int]:
        connection = await self._tokens.get_connection(connection_id)
        provider = self._providers.tasks(connection.provider)
        access_token = await self._tokens.get_valid_access_token(connection.id)
        remote_tasks = await provider.list_assigned_tasks(access_token)
        items = [
            TaskItem(connection_id=connection.id, user_id=connection.user_id, **task.model_dump())
            for task in remote_tasks
        ]
        upserted, pruned = await self._store.replace_task_items(connection.id, items)
        logger.info(
            "Task sync for %s connection %s: upserted=%d pruned=%d",
            connection.provider,
            connection.id,
            upserted,
            pruned,
        )
        return {"upserted": upserted, "pruned": pruned}
