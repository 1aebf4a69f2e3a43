"""In-memory authoritative cache of the objects on one board."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from types import MappingProxyType
from typing import Any

from board_sync.core.board_object import ObjectType, SharedObject, changes_from_wire
from board_sync.utils.timeutils import iso_now

logger = logging.getLogger(__name__)

StoreListener = Callable[[MappingProxyType[str, SharedObject]], None]


class ObjectStore:
    """
    Id-keyed map of :class:`SharedObject` with local, remote and merge paths.

    Local mutations (``add``/``update``/``delete``) stamp ``updated_at``;
    remote mutations trust the incoming timestamp as-is. Every mutation
    replaces the internal map in one assignment, so listeners always
    observe a consistent snapshot.
    """

    def __init__(self, objects: Iterable[SharedObject] = ()) -> None:
        self._objects: dict[str, SharedObject] = {obj.id: obj for obj in objects}
        self._listeners: list[StoreListener] = []

    # ── Reads ──────────────────────────────────────────────────────────

    @property
    def objects(self) -> MappingProxyType[str, SharedObject]:
        """Read-only view of the current map."""
        return MappingProxyType(self._objects)

    def get(self, object_id: str) -> SharedObject | None:
        return self._objects.get(object_id)

    def __contains__(self, object_id: object) -> bool:
        return object_id in self._objects

    def __len__(self) -> int:
        return len(self._objects)

    def sorted_objects(self) -> list[SharedObject]:
        """Objects in paint order (lowest ``z_index`` first)."""
        return sorted(self._objects.values(), key=lambda o: o.z_index)

    def connectors_for(self, object_id: str) -> list[str]:
        """Ids of connectors attached to ``object_id`` at either end."""
        return [
            obj.id
            for obj in self._objects.values()
            if obj.type == ObjectType.CONNECTOR
            and object_id in (obj.properties.get("fromId"), obj.properties.get("toId"))
        ]

    def frame_children(self, frame_id: str) -> list[SharedObject]:
        """Objects whose ``parentFrameId`` property points at ``frame_id``."""
        return [
            obj for obj in self._objects.values() if obj.properties.get("parentFrameId") == frame_id
        ]

    # ── Listeners ──────────────────────────────────────────────────────

    def subscribe(self, listener: StoreListener) -> Callable[[], None]:
        """Register a change listener. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _commit(self, objects: dict[str, SharedObject]) -> None:
        self._objects = objects
        snapshot = self.objects
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.warning("Store listener failed", exc_info=True)

    # ── Local mutations ────────────────────────────────────────────────

    def add(self, obj: SharedObject) -> SharedObject:
        """Insert a locally created object, stamping ``updated_at``."""
        stamped = obj.with_changes({"updated_at": iso_now()})
        self._commit({**self._objects, stamped.id: stamped})
        return stamped

    def update(self, object_id: str, changes: dict[str, Any]) -> SharedObject | None:
        """Merge ``changes`` into an existing object and stamp ``updated_at``.

        An ``updated_at`` already present in ``changes`` is kept as given.
        Returns the updated object, or None if the id is unknown.
        """
        existing = self._objects.get(object_id)
        if existing is None:
            return None
        updated = existing.with_changes({"updated_at": iso_now(), **changes})
        self._commit({**self._objects, object_id: updated})
        return updated

    def delete(self, object_id: str) -> bool:
        """Remove an object. Returns False if it was not present."""
        if object_id not in self._objects:
            return False
        remaining = dict(self._objects)
        del remaining[object_id]
        self._commit(remaining)
        return True

    # ── Remote mutations (no timestamp stamping) ───────────────────────

    def apply_remote_create(self, obj: SharedObject) -> None:
        self._commit({**self._objects, obj.id: obj})

    def apply_remote_update(self, object_id: str, changes: dict[str, Any]) -> bool:
        """Apply a remote change set (attribute names). Unknown ids are ignored."""
        existing = self._objects.get(object_id)
        if existing is None:
            logger.debug("Remote update for unknown object %s ignored", object_id)
            return False
        self._commit({**self._objects, object_id: existing.with_changes(changes)})
        return True

    def apply_remote_delete(self, object_id: str) -> bool:
        return self.delete(object_id)

    def apply_remote_batch_update(self, updates: Iterable[tuple[str, dict[str, Any]]]) -> int:
        """Apply many remote change sets in a single commit.

        Returns the number of objects actually changed.
        """
        merged = self._objects
        changed = 0
        for object_id, changes in updates:
            existing = merged.get(object_id)
            if existing is None:
                continue
            if changed == 0:
                merged = dict(merged)
            merged[object_id] = existing.with_changes(changes)
            changed += 1
        if changed:
            self._commit(merged)
        return changed

    def apply_remote_wire_update(self, object_id: str, wire_changes: dict[str, Any]) -> bool:
        """Apply a camelCase change set as received from the broadcast channel."""
        return self.apply_remote_update(object_id, changes_from_wire(wire_changes))

    # ── Bulk ───────────────────────────────────────────────────────────

    def load_objects(self, objects: Iterable[SharedObject]) -> None:
        """Replace the whole map (initial fetch)."""
        self._commit({obj.id: obj for obj in objects})

    def clear(self) -> None:
        self._commit({})

    def reconcile(self, remote_objects: Iterable[SharedObject]) -> list[SharedObject]:
        """Merge an authoritative snapshot into the local map (last-write-wins).

        For ids on both sides the local object survives only when its
        ``updated_at`` is strictly greater than the remote one. Remote-only
        ids are adopted. Local-only ids are kept and returned so the caller
        can replay them as creates.
        """
        remote = {obj.id: obj for obj in remote_objects}
        merged = dict(remote)
        local_only: list[SharedObject] = []
        kept_local = 0

        for object_id, local_obj in self._objects.items():
            remote_obj = remote.get(object_id)
            if remote_obj is None:
                merged[object_id] = local_obj
                local_only.append(local_obj)
            elif local_obj.updated_at > remote_obj.updated_at:
                merged[object_id] = local_obj
                kept_local += 1

        self._commit(merged)
        logger.debug(
            "Reconciled %d remote objects: %d local wins, %d local-only",
            len(remote),
            kept_local,
            len(local_only),
        )
        return local_only
