"""Per-board session: owns the store, engine, connection manager and channels."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from typing import Any, Protocol
from urllib.parse import urlsplit
from uuid import uuid4

from board_sync.storage.pending_queue import PendingWriteQueue, SQLitePendingWriteQueue
from board_sync.storage.persistence import HttpObjectPersistence, ObjectPersistence
from board_sync.store.object_store import ObjectStore
from board_sync.sync.connection_machine import ChannelStatus, ConnectionState, backoff_delay
from board_sync.sync.connection_manager import ConnectionManager, ConnectivityProbe
from board_sync.sync.engine import (
    DEFAULT_DEBOUNCE_MS,
    DEFAULT_THROTTLE_MS,
    OBJECT_CREATE,
    OBJECT_DELETE,
    OBJECT_UPDATE,
    PREVIEW_EVENTS,
    FlushResult,
    ObjectSyncEngine,
)
from board_sync.sync.transport import BroadcastChannel, Envelope, WebSocketChannel
from board_sync.utils.config import Config, get_config

logger = logging.getLogger(__name__)

ACCESS_REVOKED = "access:revoked"
BOARD_DELETED = "board:deleted"
MEMBER_JOINED = "member:joined"

_OBJECT_EVENTS = (OBJECT_CREATE, OBJECT_UPDATE, OBJECT_DELETE)

ChannelFactory = Callable[[str, str], BroadcastChannel]
EnvelopeListener = Callable[[Envelope], None]


class _AsyncClosable(Protocol):
    async def close(self) -> None: ...


def objects_topic(board_id: str) -> str:
    return f"board:{board_id}:objects"


def presence_topic(board_id: str) -> str:
    return f"board:{board_id}"


class BoardSession:
    """
    Everything that lives for as long as one board is open.

    ``start()`` subscribes both channels, fetches the board and replays the
    durable queue (generation 0). Each reconnect generation from the
    :class:`ConnectionManager` replaces the channels, refetches and
    reconciles; work belonging to a superseded generation is discarded.
    ``close()`` cancels every timer and task the session owns.

    Usage:
        hub = LoopbackHub()
        session = BoardSession(
            "board-1",
            persistence=persistence,
            queue=InMemoryPendingWriteQueue(),
            channel_factory=hub.channel,
        )
        await session.start()
        session.engine.create("sticky", 100, 100)
        await session.close()
    """

    def __init__(
        self,
        board_id: str,
        *,
        persistence: ObjectPersistence,
        queue: PendingWriteQueue,
        channel_factory: ChannelFactory,
        user_id: str = "",
        client_id: str | None = None,
        debounce_ms: float = DEFAULT_DEBOUNCE_MS,
        throttle_ms: float = DEFAULT_THROTTLE_MS,
        max_retries: int = 5,
        backoff_base_ms: int = 1000,
        backoff_max_ms: int = 16000,
    ) -> None:
        self._board_id = board_id
        self._user_id = user_id
        # Echo filtering is per session, so two tabs of one user still sync.
        self._client_id = client_id or str(uuid4())
        self._persistence = persistence
        self._queue = queue
        self._channel_factory = channel_factory

        self.store = ObjectStore()
        self.engine = ObjectSyncEngine(
            board_id,
            self.store,
            queue,
            persistence,
            user_id=user_id,
            debounce_ms=debounce_ms,
            throttle_ms=throttle_ms,
        )
        self.manager = ConnectionManager(
            max_retries=max_retries,
            backoff_base_ms=backoff_base_ms,
            backoff_max_ms=backoff_max_ms,
        )
        self.manager.on_reconnect(self._on_reconnect)

        self._objects_channel: BroadcastChannel | None = None
        self._presence_channel: BroadcastChannel | None = None
        self._cycle_task: asyncio.Task[None] | None = None
        self._join_task: asyncio.Task[None] | None = None
        self._load_task: asyncio.Task[None] | None = None
        self._close_task: asyncio.Task[None] | None = None
        self._last_flush: FlushResult | None = None
        self._probe: ConnectivityProbe | None = None
        self._owned: list[_AsyncClosable] = []
        self._started = False
        self._closed = False

        self._access_revoked_listeners: list[Callable[[], None]] = []
        self._board_deleted_listeners: list[Callable[[], None]] = []
        self._member_joined_listeners: list[Callable[[dict[str, Any]], None]] = []
        self._preview_listeners: list[EnvelopeListener] = []
        self._presence_listeners: list[EnvelopeListener] = []

    @property
    def board_id(self) -> str:
        return self._board_id

    @property
    def client_id(self) -> str:
        return self._client_id

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def last_flush(self) -> FlushResult | None:
        """Result of the queue replay done at start, once it has run."""
        return self._last_flush

    @property
    def objects_channel(self) -> BroadcastChannel | None:
        return self._objects_channel

    @property
    def presence_channel(self) -> BroadcastChannel | None:
        return self._presence_channel

    # ── Listener registration ──────────────────────────────────────────

    def on_access_revoked(self, listener: Callable[[], None]) -> None:
        self._access_revoked_listeners.append(listener)

    def on_board_deleted(self, listener: Callable[[], None]) -> None:
        self._board_deleted_listeners.append(listener)

    def on_member_joined(self, listener: Callable[[dict[str, Any]], None]) -> None:
        self._member_joined_listeners.append(listener)

    def on_preview(self, listener: EnvelopeListener) -> None:
        self._preview_listeners.append(listener)

    def on_presence(self, listener: EnvelopeListener) -> None:
        """Everything else received on the presence channel (cursors etc)."""
        self._presence_listeners.append(listener)

    def send_presence(self, event: str, payload: dict[str, Any]) -> None:
        """Best-effort presence broadcast; dropped while not subscribed."""
        channel = self._presence_channel
        if channel is not None and channel.is_subscribed:
            channel.send(event, payload)

    def attach_probe(self, probe: ConnectivityProbe) -> None:
        """Run ``probe`` for the lifetime of the session."""
        self._probe = probe

    def own(self, resource: _AsyncClosable) -> None:
        """Close ``resource`` when the session closes."""
        self._owned.append(resource)

    # ── Lifecycle ──────────────────────────────────────────────────────

    async def start(self) -> None:
        """Open channels, load the board and replay the durable queue."""
        if self._started:
            raise RuntimeError("Session already started")
        self._started = True
        logger.info("Session for board %s starting (client %s)", self._board_id, self._client_id)
        if self._probe is not None:
            self._probe.start()
        await self._open_channels()
        if self.manager.status == ConnectionState.IDLE:
            self._join_task = asyncio.get_running_loop().create_task(self._retry_join())
        if not await self._initial_load():
            self._load_task = asyncio.get_running_loop().create_task(self._retry_initial_load())

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.manager.close()
        for task in (self._join_task, self._load_task, self._cycle_task):
            if task is not None:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._join_task = None
        self._load_task = None
        self._cycle_task = None
        if self._probe is not None:
            await self._probe.stop()
        await self.engine.close()
        await self._close_channels()
        for resource in reversed(self._owned):
            try:
                await resource.close()
            except Exception:
                logger.debug("Failed to close session resource", exc_info=True)
        self._owned.clear()
        logger.info("Session for board %s closed", self._board_id)

    async def __aenter__(self) -> BoardSession:
        await self.start()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()

    async def wait_reconciled(self) -> None:
        """Wait for the in-flight reconnect cycle (if any) to finish."""
        while self._cycle_task is not None and not self._cycle_task.done():
            await asyncio.wait({self._cycle_task})

    # ── Channels ───────────────────────────────────────────────────────

    async def _open_channels(self) -> None:
        objects = self._channel_factory(objects_topic(self._board_id), self._client_id)
        presence = self._channel_factory(presence_topic(self._board_id), self._client_id)

        for channel in (objects, presence):
            channel.on_status(self._on_channel_status)
            for event in (ACCESS_REVOKED, BOARD_DELETED, MEMBER_JOINED):
                channel.on(event, self._on_board_event)
        for event in _OBJECT_EVENTS:
            objects.on(event, self.engine.apply_remote)
        for event in PREVIEW_EVENTS:
            objects.on(event, self._on_preview_event)
        presence.on("*", self._on_presence_event)

        self._objects_channel = objects
        self._presence_channel = presence
        self.engine.attach_channel(objects)
        await asyncio.gather(objects.subscribe(), presence.subscribe())

    async def _close_channels(self) -> None:
        channels = [c for c in (self._objects_channel, self._presence_channel) if c is not None]
        self._objects_channel = None
        self._presence_channel = None
        if not self._closed:
            self.engine.attach_channel(None)
        for channel in channels:
            await channel.close()

    def _on_channel_status(self, topic: str, status: ChannelStatus) -> None:
        self.manager.report_channel_status(topic, status)
        if status == ChannelStatus.SUBSCRIBED and topic == objects_topic(self._board_id):
            self.engine.drain_pending_broadcasts()

    # ── Load / reconcile cycles ────────────────────────────────────────

    async def _initial_load(self) -> bool:
        """Fetch the board once and replay the queue. False if the fetch failed."""
        try:
            remote = await self._persistence.fetch_all(self._board_id)
        except Exception as e:
            logger.warning(
                "Initial fetch for board %s failed: %s", self._board_id, e, exc_info=True
            )
            return False
        if self._is_stale(0):
            logger.debug("Initial load superseded by a reconnect, discarded")
            return True
        self.store.load_objects(remote)
        self._last_flush = await self.engine.flush_pending_writes()
        return True

    async def _retry_initial_load(self) -> None:
        # A reconnect cycle refetches on its own, so retries stop once one starts.
        context = self.manager.context
        attempt = 0
        while not self._is_stale(0):
            delay = backoff_delay(attempt, context.backoff_base_ms, context.backoff_max_ms)
            await asyncio.sleep(delay / 1000)
            if self._is_stale(0):
                return
            logger.info(
                "Retrying initial fetch for board %s (attempt %d)", self._board_id, attempt + 1
            )
            if await self._initial_load():
                return
            attempt += 1

    async def _retry_join(self) -> None:
        # The machine only leaves idle once every channel has joined, so a
        # failed first join is retried here with the reconnect backoff.
        context = self.manager.context
        attempt = 0
        while not self._closed and self.manager.status == ConnectionState.IDLE:
            delay = backoff_delay(attempt, context.backoff_base_ms, context.backoff_max_ms)
            await asyncio.sleep(delay / 1000)
            if self._closed or self.manager.status != ConnectionState.IDLE:
                return
            logger.info("Retrying first join for board %s (attempt %d)", self._board_id, attempt + 1)
            await self._close_channels()
            await self._open_channels()
            attempt += 1

    def _on_reconnect(self, generation: int) -> None:
        if self._closed:
            return
        if self._cycle_task is not None and not self._cycle_task.done():
            logger.debug("Cancelling reconnect cycle superseded by generation %d", generation)
            self._cycle_task.cancel()
        self._cycle_task = asyncio.get_running_loop().create_task(self._reconnect(generation))

    def _is_stale(self, generation: int) -> bool:
        return self._closed or generation != self.manager.reconnect_generation

    async def _reconnect(self, generation: int) -> None:
        await self._close_channels()
        if self._is_stale(generation):
            return
        await self._open_channels()
        if self._is_stale(generation):
            return

        try:
            remote = await self._persistence.fetch_all(self._board_id)
        except Exception as e:
            logger.warning("Refetch for board %s failed: %s", self._board_id, e)
            return
        if self._is_stale(generation):
            logger.debug("Discarding snapshot for stale generation %d", generation)
            return

        local_only = self.engine.reconcile(remote)
        if local_only:
            logger.info("Replaying %d local-only objects as creates", len(local_only))
            self.engine.republish(local_only)

    # ── Inbound board events ───────────────────────────────────────────

    def _on_board_event(self, envelope: Envelope) -> None:
        if envelope.event == ACCESS_REVOKED:
            if envelope.payload.get("userId") != self._user_id:
                return
            logger.warning("Access to board %s revoked", self._board_id)
            for listener in list(self._access_revoked_listeners):
                listener()
            self._schedule_close()
        elif envelope.event == BOARD_DELETED:
            logger.warning("Board %s deleted", self._board_id)
            for listener in list(self._board_deleted_listeners):
                listener()
            self._schedule_close()
        elif envelope.event == MEMBER_JOINED:
            for member_listener in list(self._member_joined_listeners):
                member_listener(envelope.payload)

    def _on_preview_event(self, envelope: Envelope) -> None:
        for listener in list(self._preview_listeners):
            listener(envelope)

    def _on_presence_event(self, envelope: Envelope) -> None:
        if envelope.event in (ACCESS_REVOKED, BOARD_DELETED, MEMBER_JOINED):
            return
        for listener in list(self._presence_listeners):
            listener(envelope)

    def _schedule_close(self) -> None:
        if self._close_task is None and not self._closed:
            self._close_task = asyncio.get_running_loop().create_task(self.close())


def _probe_target(url: str) -> tuple[str, int]:
    parts = urlsplit(url)
    default_port = 443 if parts.scheme in ("https", "wss") else 80
    return parts.hostname or "127.0.0.1", parts.port or default_port


async def open_session(
    board_id: str,
    *,
    user_id: str = "",
    config: Config | None = None,
    probe: bool = True,
) -> BoardSession:
    """Build and start a session against the configured REST and realtime servers."""
    config = config or get_config()
    config.data_path.mkdir(parents=True, exist_ok=True)

    queue = SQLitePendingWriteQueue(config.pending_db_path)
    await queue.initialize()
    persistence = HttpObjectPersistence(
        config.api_url, token=config.api_token, timeout=config.request_timeout
    )
    await persistence.connect()

    def channel_factory(topic: str, sender_id: str) -> BroadcastChannel:
        return WebSocketChannel(config.realtime_url, topic, sender_id, token=config.api_token)

    session = BoardSession(
        board_id,
        persistence=persistence,
        queue=queue,
        channel_factory=channel_factory,
        user_id=user_id,
        debounce_ms=config.debounce_ms,
        throttle_ms=config.throttle_ms,
        max_retries=config.max_retries,
        backoff_base_ms=config.backoff_base_ms,
        backoff_max_ms=config.backoff_max_ms,
    )
    session.own(queue)
    session.own(persistence)
    if probe:
        host, port = _probe_target(config.realtime_url)
        session.attach_probe(
            ConnectivityProbe(session.manager, host, port, interval=config.probe_interval)
        )
    await session.start()
    return session
