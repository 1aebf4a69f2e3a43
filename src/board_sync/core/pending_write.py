"""Pending writes: mutations that failed to reach the persistence layer."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from board_sync.core.board_object import SharedObject, changes_from_wire, changes_to_wire


@dataclass(frozen=True)
class CreateWrite:
    """A create that has not been persisted yet."""

    object: SharedObject

    @property
    def object_id(self) -> str:
        return self.object.id

    def to_dict(self) -> dict[str, Any]:
        return {"type": "create", "object": self.object.to_dict()}


@dataclass(frozen=True)
class UpdateWrite:
    """A (possibly coalesced) field update that has not been persisted yet."""

    object_id: str
    changes: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "update",
            "objectId": self.object_id,
            "changes": changes_to_wire(self.changes),
        }


@dataclass(frozen=True)
class DeleteWrite:
    """A delete that has not been persisted yet."""

    object_id: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": "delete", "objectId": self.object_id}


PendingWrite = CreateWrite | UpdateWrite | DeleteWrite


def pending_write_from_dict(data: dict[str, Any]) -> PendingWrite:
    """Decode a stored pending write.

    Raises:
        ValueError: for an unknown ``type`` tag.
        KeyError: if a required field is missing.
    """
    kind = data.get("type")
    if kind == "create":
        return CreateWrite(object=SharedObject.from_dict(data["object"]))
    if kind == "update":
        return UpdateWrite(
            object_id=data["objectId"],
            changes=changes_from_wire(data.get("changes", {})),
        )
    if kind == "delete":
        return DeleteWrite(object_id=data["objectId"])
    raise ValueError(f"Unknown pending write type: {kind!r}")
