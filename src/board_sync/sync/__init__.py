"""Realtime synchronization: connection lifecycle, transport, engine, session."""

from board_sync.sync.connection_machine import (
    ChannelStatus,
    ConnectionContext,
    ConnectionState,
    Transition,
    backoff_delay,
    transition,
)
from board_sync.sync.connection_manager import ConnectionManager, ConnectivityProbe
from board_sync.sync.engine import FlushResult, ObjectSyncEngine
from board_sync.sync.scheduling import KeyedDebouncer, TrailingThrottle
from board_sync.sync.session import BoardSession, open_session
from board_sync.sync.transport import (
    BroadcastChannel,
    ChannelClosedError,
    Envelope,
    LoopbackHub,
    WebSocketChannel,
)

__all__ = [
    "ChannelStatus",
    "ConnectionContext",
    "ConnectionState",
    "Transition",
    "backoff_delay",
    "transition",
    "ConnectionManager",
    "ConnectivityProbe",
    "FlushResult",
    "ObjectSyncEngine",
    "KeyedDebouncer",
    "TrailingThrottle",
    "BoardSession",
    "open_session",
    "BroadcastChannel",
    "ChannelClosedError",
    "Envelope",
    "LoopbackHub",
    "WebSocketChannel",
]
