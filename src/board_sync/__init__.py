"""board-sync - realtime synchronization core for collaborative boards."""

from board_sync.core.board_object import ObjectType, SharedObject, build_board_object
from board_sync.store.object_store import ObjectStore
from board_sync.sync.connection_machine import ChannelStatus, ConnectionState
from board_sync.sync.connection_manager import ConnectionManager
from board_sync.sync.engine import FlushResult, ObjectSyncEngine
from board_sync.sync.session import BoardSession, open_session

__version__ = "0.1.0"

__all__ = [
    # Core models
    "ObjectType",
    "SharedObject",
    "build_board_object",
    "ObjectStore",
    # Connection
    "ChannelStatus",
    "ConnectionState",
    "ConnectionManager",
    # Sync
    "FlushResult",
    "ObjectSyncEngine",
    "BoardSession",
    "open_session",
    # Version
    "__version__",
]
