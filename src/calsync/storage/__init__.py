"""Persistence for connections, calendar mappings, events and task items."""

from calsync.storage.base import SyncStore
from calsync.storage.memory import InMemoryStore

__all__ = ["InMemoryStore", "SyncStore"]
