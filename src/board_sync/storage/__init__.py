"""Durable storage: the offline write queue and the persistence client."""

from board_sync.storage.pending_queue import (
    InMemoryPendingWriteQueue,
    PendingWriteQueue,
    SQLitePendingWriteQueue,
)
from board_sync.storage.persistence import (
    HttpObjectPersistence,
    ObjectPersistence,
    PersistenceError,
)

__all__ = [
    "InMemoryPendingWriteQueue",
    "PendingWriteQueue",
    "SQLitePendingWriteQueue",
    "HttpObjectPersistence",
    "ObjectPersistence",
    "PersistenceError",
]
