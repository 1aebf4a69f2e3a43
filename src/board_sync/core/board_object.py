"""Shared board objects and their wire representation."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import StrEnum
from typing import Any
from uuid import uuid4

from board_sync.utils.timeutils import iso_now


class ObjectType(StrEnum):
    """Kinds of objects that can live on a board."""

    STICKY = "sticky"
    RECTANGLE = "rectangle"
    CIRCLE = "circle"
    LINE = "line"
    TEXT = "text"
    CONNECTOR = "connector"
    FRAME = "frame"


DEFAULT_COLORS: dict[ObjectType, str] = {
    ObjectType.STICKY: "#FFEB3B",
    ObjectType.RECTANGLE: "#90CAF9",
    ObjectType.CIRCLE: "#CE93D8",
    ObjectType.LINE: "#666666",
    ObjectType.TEXT: "#333333",
    ObjectType.CONNECTOR: "#666666",
    ObjectType.FRAME: "#4A90D9",
}

DEFAULT_SIZES: dict[ObjectType, tuple[float, float]] = {
    ObjectType.STICKY: (200, 200),
    ObjectType.RECTANGLE: (240, 160),
    ObjectType.CIRCLE: (160, 160),
    ObjectType.LINE: (200, 0),
    ObjectType.TEXT: (200, 40),
    ObjectType.CONNECTOR: (0, 0),
    ObjectType.FRAME: (400, 300),
}

# Frames paint behind everything else on the board.
FRAME_Z_INDEX = -1

# Python attribute name -> camelCase name used on the broadcast wire.
WIRE_NAMES: dict[str, str] = {
    "id": "id",
    "board_id": "boardId",
    "type": "type",
    "x": "x",
    "y": "y",
    "width": "width",
    "height": "height",
    "rotation": "rotation",
    "text": "text",
    "color": "color",
    "z_index": "zIndex",
    "properties": "properties",
    "created_by": "createdBy",
    "created_at": "createdAt",
    "updated_at": "updatedAt",
}
_FROM_WIRE: dict[str, str] = {wire: attr for attr, wire in WIRE_NAMES.items()}

# Fields a PATCH must never touch.
_IMMUTABLE_FIELDS = frozenset({"id", "board_id"})


@dataclass(frozen=True)
class SharedObject:
    """
    One entity on a shared board.

    Instances are immutable; every mutation produces a new object via
    :meth:`with_changes`. ``updated_at`` is an ISO-8601 UTC string whose
    lexical order is its chronological order.
    """

    id: str
    board_id: str
    type: ObjectType
    x: float
    y: float
    width: float
    height: float
    rotation: float = 0.0
    color: str = ""
    z_index: int = 0
    properties: dict[str, Any] = field(default_factory=dict)
    created_by: str = ""
    created_at: str = ""
    updated_at: str = ""
    text: str | None = None

    def with_changes(self, changes: dict[str, Any]) -> SharedObject:
        """Return a copy with ``changes`` (attribute names) applied."""
        return replace(self, **normalize_changes(changes))

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the camelCase broadcast shape."""
        data: dict[str, Any] = {}
        for attr, wire in WIRE_NAMES.items():
            value = getattr(self, attr)
            if attr == "text" and value is None:
                continue
            if attr == "type":
                value = value.value
            elif attr == "properties":
                value = dict(value)
            data[wire] = value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SharedObject:
        """Build from the camelCase broadcast shape.

        Raises:
            KeyError: if ``id`` or ``type`` is missing.
            ValueError: if ``type`` is not a known object type.
        """
        return cls._from_attrs(changes_from_wire(data))

    @classmethod
    def _from_attrs(cls, attrs: dict[str, Any]) -> SharedObject:
        obj_type = ObjectType(attrs["type"])
        return cls(
            id=attrs["id"],
            board_id=attrs.get("board_id", ""),
            type=obj_type,
            x=float(attrs.get("x", 0.0)),
            y=float(attrs.get("y", 0.0)),
            width=float(attrs.get("width", 0.0)),
            height=float(attrs.get("height", 0.0)),
            rotation=float(attrs.get("rotation", 0.0)),
            color=attrs.get("color") or DEFAULT_COLORS[obj_type],
            z_index=int(attrs.get("z_index", 0)),
            properties=dict(attrs.get("properties") or {}),
            created_by=attrs.get("created_by", ""),
            created_at=attrs.get("created_at", ""),
            updated_at=attrs.get("updated_at", ""),
            text=attrs.get("text"),
        )


_ATTRS = frozenset(WIRE_NAMES)


def normalize_changes(changes: dict[str, Any]) -> dict[str, Any]:
    """Validate a change set keyed by attribute names.

    Raises:
        ValueError: if a key is not a ``SharedObject`` attribute.
    """
    unknown = set(changes) - _ATTRS
    if unknown:
        raise ValueError(f"Unknown object fields: {sorted(unknown)}")
    normalized = dict(changes)
    if "type" in normalized:
        normalized["type"] = ObjectType(normalized["type"])
    return normalized


def changes_to_wire(changes: dict[str, Any]) -> dict[str, Any]:
    """Rename a change set to camelCase for broadcasting."""
    wire: dict[str, Any] = {}
    for attr, value in changes.items():
        if isinstance(value, ObjectType):
            value = value.value
        wire[WIRE_NAMES[attr]] = value
    return wire


def changes_from_wire(data: dict[str, Any]) -> dict[str, Any]:
    """Rename a camelCase change set to attribute names, dropping unknown keys."""
    return {_FROM_WIRE[key]: value for key, value in data.items() if key in _FROM_WIRE}


def changes_to_patch(changes: dict[str, Any]) -> dict[str, Any]:
    """Build a PATCH body from a change set, leaving out identity fields."""
    return changes_to_wire({k: v for k, v in changes.items() if k not in _IMMUTABLE_FIELDS})


def build_board_object(
    obj_type: ObjectType | str,
    x: float,
    y: float,
    *,
    board_id: str = "",
    created_by: str = "",
    z_index: int = 0,
    overrides: dict[str, Any] | None = None,
) -> SharedObject:
    """Create a new object of ``obj_type`` centered on ``(x, y)``.

    Frames always use :data:`FRAME_Z_INDEX`; ``overrides`` (attribute names)
    win over every default, including the generated id and timestamps.
    """
    obj_type = ObjectType(obj_type)
    width, height = DEFAULT_SIZES[obj_type]
    now = iso_now()

    text: str | None = None
    if obj_type == ObjectType.TEXT:
        text = ""
    elif obj_type == ObjectType.FRAME:
        text = "Frame"

    obj = SharedObject(
        id=str(uuid4()),
        board_id=board_id,
        type=obj_type,
        x=x - width / 2,
        y=y - height / 2,
        width=width,
        height=height,
        rotation=0.0,
        color=DEFAULT_COLORS[obj_type],
        z_index=FRAME_Z_INDEX if obj_type == ObjectType.FRAME else z_index,
        properties={},
        created_by=created_by,
        created_at=now,
        updated_at=now,
        text=text,
    )
    if overrides:
        obj = obj.with_changes(overrides)
    return obj
