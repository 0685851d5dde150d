"""Persistence for local records, sync state and the sync audit log."""

from storage.base import LocalEntityStore, SyncLogRepository, SyncStateRepository, SyncStore
from storage.sqlite_store import DEFAULT_DB_PATH, SQLiteSyncStore, init_sync_db

__all__ = [
    "LocalEntityStore",
    "SyncStateRepository",
    "SyncLogRepository",
    "SyncStore",
    "SQLiteSyncStore",
    "DEFAULT_DB_PATH",
    "init_sync_db",
]
