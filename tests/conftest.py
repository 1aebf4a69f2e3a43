"""Pytest configuration and fixtures."""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from typing import Any

import pytest
import pytest_asyncio

from board_sync.core.board_object import ObjectType, SharedObject
from board_sync.storage.pending_queue import InMemoryPendingWriteQueue
from board_sync.storage.persistence import ObjectPersistence, PersistenceError
from board_sync.store.object_store import ObjectStore
from board_sync.sync.engine import ObjectSyncEngine
from board_sync.sync.transport import Envelope, LoopbackHub
from board_sync.utils.config import reset_config

BOARD_ID = "board-1"


class FakePersistence(ObjectPersistence):
    """In-memory persistence layer that can be told to fail."""

    def __init__(self) -> None:
        self.objects: dict[str, SharedObject] = {}
        self.calls: list[tuple[str, Any]] = []
        self.fail = False
        self.fail_fetch = False
        self.failing_ids: set[str] = set()
        self.closed = False

    def _check(self, object_id: str) -> None:
        if self.fail or object_id in self.failing_ids:
            raise PersistenceError("persistence unavailable", status_code=503)

    async def fetch_all(self, board_id: str) -> list[SharedObject]:
        self.calls.append(("fetch_all", board_id))
        if self.fail_fetch:
            raise PersistenceError("fetch failed", status_code=503)
        return [obj for obj in self.objects.values() if obj.board_id == board_id]

    async def create(self, obj: SharedObject) -> None:
        self.calls.append(("create", obj))
        self._check(obj.id)
        self.objects[obj.id] = obj

    async def patch(self, board_id: str, object_id: str, changes: dict[str, Any]) -> None:
        self.calls.append(("patch", (object_id, changes)))
        self._check(object_id)
        existing = self.objects.get(object_id)
        if existing is None:
            raise PersistenceError("not found", status_code=404)
        self.objects[object_id] = existing.with_changes(changes)

    async def delete(self, board_id: str, object_id: str) -> None:
        self.calls.append(("delete", object_id))
        self._check(object_id)
        if self.objects.pop(object_id, None) is None:
            raise PersistenceError("not found", status_code=404)

    async def close(self) -> None:
        self.closed = True

    def calls_of(self, op: str) -> list[Any]:
        return [args for name, args in self.calls if name == op]


def _make_object(
    object_id: str = "obj-1",
    *,
    updated_at: str = "2026-01-15T10:00:00.000Z",
    **overrides: Any,
) -> SharedObject:
    """Build a sticky note with fixed timestamps."""
    fields: dict[str, Any] = {
        "id": object_id,
        "board_id": BOARD_ID,
        "type": ObjectType.STICKY,
        "x": 0.0,
        "y": 0.0,
        "width": 200.0,
        "height": 200.0,
        "color": "#FFEB3B",
        "created_by": "user-1",
        "created_at": "2026-01-15T09:00:00.000Z",
        "updated_at": updated_at,
    }
    fields.update(overrides)
    return SharedObject(**fields)


@pytest.fixture(autouse=True)
def _reset_config() -> None:
    reset_config()


@pytest.fixture
def make_object() -> Callable[..., SharedObject]:
    return _make_object


@pytest.fixture
def persistence() -> FakePersistence:
    return FakePersistence()


@pytest.fixture
def queue() -> InMemoryPendingWriteQueue:
    return InMemoryPendingWriteQueue()


@pytest.fixture
def hub() -> LoopbackHub:
    return LoopbackHub()


@pytest.fixture
def store() -> ObjectStore:
    return ObjectStore()


@pytest_asyncio.fixture
async def engine(
    store: ObjectStore,
    queue: InMemoryPendingWriteQueue,
    persistence: FakePersistence,
) -> AsyncGenerator[ObjectSyncEngine, None]:
    """Engine with short timing windows and no channel attached."""
    engine = ObjectSyncEngine(
        BOARD_ID,
        store,
        queue,
        persistence,
        user_id="user-1",
        debounce_ms=30,
        throttle_ms=50,
    )
    yield engine
    await engine.close()


@pytest_asyncio.fixture
async def peer(hub: LoopbackHub) -> AsyncGenerator[list[Envelope], None]:
    """Envelopes received by another client on the board's objects topic."""
    received: list[Envelope] = []
    channel = hub.channel(f"board:{BOARD_ID}:objects", "client-peer")
    channel.on("*", received.append)
    await channel.subscribe()
    yield received
    await channel.close()
