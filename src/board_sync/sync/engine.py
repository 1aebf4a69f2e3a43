"""Object synchronization engine: optimistic edits, fan-out, durable persistence."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine, Iterable
from dataclasses import dataclass
from typing import Any

from board_sync.core.board_object import (
    ObjectType,
    SharedObject,
    build_board_object,
    changes_to_wire,
    normalize_changes,
)
from board_sync.core.pending_write import CreateWrite, DeleteWrite, PendingWrite, UpdateWrite
from board_sync.storage.pending_queue import PendingWriteQueue
from board_sync.storage.persistence import ObjectPersistence, PersistenceError
from board_sync.store.object_store import ObjectStore
from board_sync.sync.scheduling import KeyedDebouncer, TrailingThrottle
from board_sync.sync.transport import BroadcastChannel, Envelope

logger = logging.getLogger(__name__)

OBJECT_CREATE = "object:create"
OBJECT_UPDATE = "object:update"
OBJECT_DELETE = "object:delete"
PREVIEW_EVENTS = frozenset({"draw:preview", "connector:preview", "shape:preview"})

DEFAULT_DEBOUNCE_MS = 300
DEFAULT_THROTTLE_MS = 50


@dataclass(frozen=True)
class FlushResult:
    """Outcome of replaying the durable queue."""

    replayed: int = 0
    remaining: int = 0
    halted: bool = False
    error: str | None = None


class ObjectSyncEngine:
    """
    Applies edits to the :class:`ObjectStore` immediately, fans them out on
    the broadcast channel and persists them in the background.

    - ``create``/``delete`` persist at once; ``update`` persists through a
      per-object debounce window that coalesces all changes seen in it.
    - Persistence failures never reach the caller: they become entries in
      the durable :class:`PendingWriteQueue`.
    - Broadcasts attempted while the channel is not subscribed wait in an
      in-memory queue and go out, in order, once it is.
    - ``live_move`` and preview events are broadcast-only and throttled.
    """

    def __init__(
        self,
        board_id: str,
        store: ObjectStore,
        queue: PendingWriteQueue,
        persistence: ObjectPersistence,
        *,
        user_id: str = "",
        debounce_ms: float = DEFAULT_DEBOUNCE_MS,
        throttle_ms: float = DEFAULT_THROTTLE_MS,
    ) -> None:
        self._board_id = board_id
        self._store = store
        self._queue = queue
        self._persistence = persistence
        self._user_id = user_id
        self._throttle_ms = throttle_ms

        self._channel: BroadcastChannel | None = None
        self._pending_broadcasts: list[tuple[str, dict[str, Any]]] = []
        self._debouncer = KeyedDebouncer(debounce_ms, self._on_debounce_flush)
        self._live_move: TrailingThrottle[dict[str, Any]] = TrailingThrottle(
            throttle_ms, self._send_live_move
        )
        self._preview_throttles: dict[str, TrailingThrottle[dict[str, Any]]] = {}
        self._tasks: set[asyncio.Task[None]] = set()
        # Last persistence task per object id; later calls for the id wait on it.
        self._inflight: dict[str, asyncio.Task[None]] = {}
        # Newest explicit ``updated_at`` accepted per object id.
        self._explicit_stamps: dict[str, str] = {}
        self._flush_lock = asyncio.Lock()
        self._disposed = False

    @property
    def board_id(self) -> str:
        return self._board_id

    @property
    def store(self) -> ObjectStore:
        return self._store

    @property
    def channel(self) -> BroadcastChannel | None:
        return self._channel

    @property
    def pending_broadcast_count(self) -> int:
        return len(self._pending_broadcasts)

    @property
    def pending_update_count(self) -> int:
        """Objects with a debounce window still open."""
        return len(self._debouncer)

    # ── Channel wiring ─────────────────────────────────────────────────

    def attach_channel(self, channel: BroadcastChannel | None) -> None:
        """Use ``channel`` for outgoing broadcasts (None to detach)."""
        self._channel = channel
        if channel is not None and channel.is_subscribed:
            self.drain_pending_broadcasts()

    def drain_pending_broadcasts(self) -> int:
        """Send every queued broadcast in FIFO order if the channel is up.

        Returns the number of messages sent.
        """
        channel = self._channel
        if channel is None or not channel.is_subscribed or not self._pending_broadcasts:
            return 0
        pending, self._pending_broadcasts = self._pending_broadcasts, []
        for event, payload in pending:
            channel.send(event, payload)
        logger.debug("Drained %d pending broadcasts for board %s", len(pending), self._board_id)
        return len(pending)

    def _broadcast(self, event: str, payload: dict[str, Any]) -> None:
        channel = self._channel
        if channel is not None and channel.is_subscribed:
            channel.send(event, payload)
        else:
            self._pending_broadcasts.append((event, payload))

    # ── Local operations ───────────────────────────────────────────────

    def create(
        self,
        obj_type: ObjectType | str,
        x: float,
        y: float,
        overrides: dict[str, Any] | None = None,
    ) -> SharedObject:
        """Create an object centered on ``(x, y)`` and return it."""
        obj = build_board_object(
            obj_type,
            x,
            y,
            board_id=self._board_id,
            created_by=self._user_id,
            z_index=len(self._store),
            overrides=overrides,
        )
        stored = self._store.add(obj)
        self._broadcast(OBJECT_CREATE, {"object": stored.to_dict()})
        self._spawn_ordered(stored.id, self._persist_create(stored))
        return stored

    def update(self, object_id: str, changes: dict[str, Any]) -> SharedObject | None:
        """Apply ``changes`` locally, broadcast them and schedule persistence.

        ``changes`` may carry an explicit ``updated_at`` from another logical
        source. Such a change set is discarded when it is older than the last
        explicitly stamped change accepted for the same object, so concurrent
        edits settle on the newest stamp whatever their arrival order.
        Returns the updated object, or None if the id is unknown or the
        change set was stale.

        Raises:
            ValueError: if ``changes`` names an unknown field.
        """
        changes = normalize_changes(changes)
        current = self._store.get(object_id)
        if current is None:
            logger.debug("Update for unknown object %s ignored", object_id)
            return None

        explicit_stamp = changes.get("updated_at")
        if explicit_stamp is not None:
            newest = self._explicit_stamps.get(object_id)
            if newest is not None and explicit_stamp < newest:
                logger.debug(
                    "Stale update for %s (%s < %s) discarded", object_id, explicit_stamp, newest
                )
                return None
            self._explicit_stamps[object_id] = explicit_stamp

        updated = self._store.update(object_id, changes)
        assert updated is not None
        stamped = {**changes, "updated_at": updated.updated_at}
        self._broadcast(
            OBJECT_UPDATE, {"objectId": object_id, "changes": changes_to_wire(stamped)}
        )
        self._debouncer.push(object_id, stamped)
        return updated

    def delete(self, object_id: str) -> None:
        """Remove an object everywhere. Any open debounce window is dropped."""
        self._debouncer.cancel(object_id)
        self._explicit_stamps.pop(object_id, None)
        self._store.delete(object_id)
        self._broadcast(OBJECT_DELETE, {"objectId": object_id})
        self._spawn_ordered(object_id, self._persist_delete(object_id))

    def live_move(self, object_id: str, changes: dict[str, Any]) -> None:
        """Broadcast an in-progress drag. Never stored, never persisted.

        At most one send per throttle interval across all objects; the
        trailing send carries the most recent call.
        """
        payload = {"objectId": object_id, "changes": changes_to_wire(normalize_changes(changes))}
        self._live_move.submit(payload)

    def send_preview(self, event: str, payload: dict[str, Any]) -> None:
        """Throttled, broadcast-only preview (drawing, connector, shape ghost)."""
        if event not in PREVIEW_EVENTS:
            raise ValueError(f"Unknown preview event: {event}")
        throttle = self._preview_throttles.get(event)
        if throttle is None:
            throttle = TrailingThrottle(
                self._throttle_ms, lambda p, e=event: self._send_ephemeral(e, p)
            )
            self._preview_throttles[event] = throttle
        throttle.submit(payload)

    def _send_live_move(self, payload: dict[str, Any]) -> None:
        self._send_ephemeral(OBJECT_UPDATE, payload)

    def _send_ephemeral(self, event: str, payload: dict[str, Any]) -> None:
        # Ephemeral frames are only useful live; they are not queued.
        channel = self._channel
        if channel is not None and channel.is_subscribed:
            channel.send(event, payload)

    # ── Remote operations ──────────────────────────────────────────────

    def apply_remote(self, envelope: Envelope) -> bool:
        """Apply an inbound object event to the store without re-broadcasting.

        Returns True if the event was an object event and was well formed.
        """
        payload = envelope.payload
        try:
            if envelope.event == OBJECT_CREATE:
                self._store.apply_remote_create(SharedObject.from_dict(payload["object"]))
            elif envelope.event == OBJECT_UPDATE:
                changes = payload.get("changes") or {}
                self._store.apply_remote_wire_update(payload["objectId"], changes)
            elif envelope.event == OBJECT_DELETE:
                object_id = payload["objectId"]
                self._debouncer.cancel(object_id)
                self._explicit_stamps.pop(object_id, None)
                self._store.apply_remote_delete(object_id)
            else:
                return False
        except (KeyError, TypeError, ValueError):
            logger.warning("Malformed %s event ignored: %r", envelope.event, payload)
            return False
        logger.debug("Applied remote %s", envelope.event)
        return True

    def reconcile(self, remote_objects: Iterable[SharedObject]) -> list[SharedObject]:
        """Last-write-wins merge of an authoritative snapshot.

        Returns the objects only known locally; see :meth:`republish`.
        """
        return self._store.reconcile(remote_objects)

    def republish(self, objects: Iterable[SharedObject]) -> None:
        """Broadcast and persist objects as creates (e.g. local-only after reconcile)."""
        for obj in objects:
            self._broadcast(OBJECT_CREATE, {"object": obj.to_dict()})
            self._spawn_ordered(obj.id, self._persist_create(obj))

    # ── Durable queue ──────────────────────────────────────────────────

    async def flush_pending_writes(self) -> FlushResult:
        """Replay the durable queue in order against the persistence layer.

        Stops at the first failure: the failed entry and everything after it
        stay queued and no broadcast from this run is sent. On full success
        the replayed entries are removed and the staged broadcasts go out.
        """
        async with self._flush_lock:
            writes = await self._queue.read_all(self._board_id)
            if not writes:
                return FlushResult()

            staged: list[tuple[str, dict[str, Any]]] = []
            for index, write in enumerate(writes):
                try:
                    staged.append(await self._replay(write))
                except Exception as e:
                    await self._queue.remove_head(self._board_id, index)
                    remaining = len(writes) - index
                    logger.warning(
                        "Pending write replay halted for board %s at %d/%d: %s",
                        self._board_id,
                        index + 1,
                        len(writes),
                        e,
                    )
                    return FlushResult(
                        replayed=index, remaining=remaining, halted=True, error=str(e)
                    )

            await self._queue.remove_head(self._board_id, len(writes))
            for event, payload in staged:
                self._broadcast(event, payload)
            logger.info("Replayed %d pending writes for board %s", len(writes), self._board_id)
            return FlushResult(replayed=len(writes))

    async def _replay(self, write: PendingWrite) -> tuple[str, dict[str, Any]]:
        if isinstance(write, CreateWrite):
            await self._persistence.create(write.object)
            self._store.apply_remote_create(write.object)
            return OBJECT_CREATE, {"object": write.object.to_dict()}

        if isinstance(write, UpdateWrite):
            await self._idempotent(
                self._persistence.patch(self._board_id, write.object_id, write.changes)
            )
            self._store.apply_remote_update(write.object_id, write.changes)
            return OBJECT_UPDATE, {
                "objectId": write.object_id,
                "changes": changes_to_wire(write.changes),
            }

        await self._idempotent(self._persistence.delete(self._board_id, write.object_id))
        self._store.apply_remote_delete(write.object_id)
        return OBJECT_DELETE, {"objectId": write.object_id}

    @staticmethod
    async def _idempotent(call: Coroutine[Any, Any, None]) -> None:
        """Await a replayed patch/delete, treating "already gone" as success."""
        try:
            await call
        except PersistenceError as e:
            if not e.is_not_found:
                raise

    # ── Background persistence ─────────────────────────────────────────

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task[None]:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _spawn_ordered(self, object_id: str, coro: Coroutine[Any, Any, None]) -> None:
        """Run ``coro`` once every earlier persistence call for ``object_id`` is done.

        Keeps create, patch and delete for one object in issue order, so a
        patch never reaches the server ahead of a slow create.
        """
        task = self._spawn(self._after(self._inflight.get(object_id), coro))
        self._inflight[object_id] = task
        task.add_done_callback(lambda done: self._release(object_id, done))

    @staticmethod
    async def _after(
        previous: asyncio.Task[None] | None, coro: Coroutine[Any, Any, None]
    ) -> None:
        try:
            if previous is not None and not previous.done():
                await asyncio.wait({previous})
        except asyncio.CancelledError:
            coro.close()
            raise
        await coro

    def _release(self, object_id: str, task: asyncio.Task[None]) -> None:
        if self._inflight.get(object_id) is task:
            del self._inflight[object_id]

    def _on_debounce_flush(self, object_id: str, changes: dict[str, Any]) -> None:
        if self._disposed:
            return
        self._spawn_ordered(object_id, self._persist_update(object_id, changes))

    # Live path: a 404 is queued like any other failure; only replay treats it as done.

    async def _persist_create(self, obj: SharedObject) -> None:
        try:
            await self._persistence.create(obj)
        except Exception as e:
            logger.warning("Persisting create of %s failed, queued: %s", obj.id, e, exc_info=True)
            await self._enqueue(CreateWrite(obj))

    async def _persist_update(self, object_id: str, changes: dict[str, Any]) -> None:
        try:
            await self._persistence.patch(self._board_id, object_id, changes)
        except Exception as e:
            logger.warning(
                "Persisting update of %s failed, queued: %s", object_id, e, exc_info=True
            )
            await self._enqueue(UpdateWrite(object_id, changes))

    async def _persist_delete(self, object_id: str) -> None:
        try:
            await self._persistence.delete(self._board_id, object_id)
        except Exception as e:
            logger.warning(
                "Persisting delete of %s failed, queued: %s", object_id, e, exc_info=True
            )
            await self._enqueue(DeleteWrite(object_id))

    async def _enqueue(self, write: PendingWrite) -> None:
        try:
            await self._queue.append(self._board_id, write)
        except Exception:
            logger.error(
                "Could not queue pending %s for board %s; the write is lost until the next reconcile",
                type(write).__name__,
                self._board_id,
                exc_info=True,
            )

    # ── Lifecycle ──────────────────────────────────────────────────────

    async def wait_idle(self) -> None:
        """Wait until every in-flight persistence task has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def dispose(self) -> None:
        """Cancel all timers and drop queued broadcasts. In-flight writes continue."""
        self._disposed = True
        self._debouncer.cancel_all()
        self._live_move.cancel()
        for throttle in self._preview_throttles.values():
            throttle.cancel()
        self._pending_broadcasts.clear()
        self._explicit_stamps.clear()
        self._channel = None

    async def close(self) -> None:
        """Dispose and wait for in-flight persistence to settle."""
        self.dispose()
        await self.wait_idle()
