"""Tests for SharedObject, default construction and pending writes."""

from __future__ import annotations

from collections.abc import Callable

import pytest

from board_sync.core.board_object import (
    DEFAULT_COLORS,
    FRAME_Z_INDEX,
    ObjectType,
    SharedObject,
    build_board_object,
    changes_from_wire,
    changes_to_patch,
    changes_to_wire,
)
from board_sync.core.pending_write import (
    CreateWrite,
    DeleteWrite,
    UpdateWrite,
    pending_write_from_dict,
)

MakeObject = Callable[..., SharedObject]


# ── build_board_object ────────────────────────────────────────────────────────


class TestBuildBoardObject:
    """Per-type defaults and centering."""

    def test_sticky_is_centered(self) -> None:
        obj = build_board_object(ObjectType.STICKY, 500, 300, board_id="b", created_by="u")

        assert (obj.width, obj.height) == (200, 200)
        assert (obj.x, obj.y) == (400, 200)
        assert obj.color == DEFAULT_COLORS[ObjectType.STICKY]
        assert obj.board_id == "b"
        assert obj.created_by == "u"
        assert obj.text is None
        assert obj.created_at == obj.updated_at
        assert obj.created_at.endswith("Z")

    def test_string_type_accepted(self) -> None:
        assert build_board_object("circle", 0, 0).type == ObjectType.CIRCLE

    def test_unknown_type_rejected(self) -> None:
        with pytest.raises(ValueError):
            build_board_object("hexagon", 0, 0)

    def test_text_defaults_to_empty(self) -> None:
        assert build_board_object(ObjectType.TEXT, 0, 0).text == ""

    def test_frame_defaults(self) -> None:
        frame = build_board_object(ObjectType.FRAME, 0, 0, z_index=9)
        assert frame.text == "Frame"
        assert frame.z_index == FRAME_Z_INDEX

    def test_z_index_passed_through(self) -> None:
        assert build_board_object(ObjectType.RECTANGLE, 0, 0, z_index=4).z_index == 4

    def test_overrides_win(self) -> None:
        obj = build_board_object(
            ObjectType.STICKY,
            0,
            0,
            overrides={"id": "fixed", "color": "#123456", "text": "hello"},
        )
        assert obj.id == "fixed"
        assert obj.color == "#123456"
        assert obj.text == "hello"

    def test_ids_are_unique(self) -> None:
        assert build_board_object("sticky", 0, 0).id != build_board_object("sticky", 0, 0).id


# ── Wire mapping ──────────────────────────────────────────────────────────────


class TestWireMapping:
    """camelCase broadcast / REST representation."""

    def test_to_dict_uses_camel_case(self, make_object: MakeObject) -> None:
        data = make_object("a", z_index=3).to_dict()

        assert data["boardId"] == "board-1"
        assert data["zIndex"] == 3
        assert data["updatedAt"] == "2026-01-15T10:00:00.000Z"
        assert data["type"] == "sticky"
        assert "text" not in data

    def test_from_dict_round_trip(self, make_object: MakeObject) -> None:
        obj = make_object("a", text="hi", properties={"fromId": "x"})
        assert SharedObject.from_dict(obj.to_dict()) == obj

    def test_from_dict_fills_defaults(self) -> None:
        obj = SharedObject.from_dict({"id": "a", "type": "frame"})
        assert obj.color == DEFAULT_COLORS[ObjectType.FRAME]
        assert obj.x == 0.0
        assert obj.properties == {}

    def test_from_dict_requires_id(self) -> None:
        with pytest.raises(KeyError):
            SharedObject.from_dict({"type": "sticky"})

    def test_changes_to_wire_and_back(self) -> None:
        changes = {"z_index": 2, "updated_at": "t", "type": ObjectType.TEXT}
        wire = changes_to_wire(changes)
        assert wire == {"zIndex": 2, "updatedAt": "t", "type": "text"}
        assert changes_from_wire({**wire, "senderId": "c"}) == {
            "z_index": 2,
            "updated_at": "t",
            "type": "text",
        }

    def test_patch_excludes_identity_fields(self) -> None:
        patch = changes_to_patch({"id": "a", "board_id": "b", "color": "#fff", "z_index": 1})
        assert patch == {"color": "#fff", "zIndex": 1}

    def test_with_changes_coerces_type(self, make_object: MakeObject) -> None:
        obj = make_object("a").with_changes({"type": "circle"})
        assert obj.type is ObjectType.CIRCLE


# ── Pending writes ────────────────────────────────────────────────────────────


class TestPendingWrites:
    """Tagged PendingWrite serialization."""

    def test_create_round_trip(self, make_object: MakeObject) -> None:
        write = CreateWrite(make_object("a"))
        data = write.to_dict()
        assert data["type"] == "create"
        assert pending_write_from_dict(data) == write
        assert write.object_id == "a"

    def test_update_uses_wire_names(self) -> None:
        write = UpdateWrite("a", {"z_index": 3, "updated_at": "t"})
        data = write.to_dict()
        assert data == {"type": "update", "objectId": "a", "changes": {"zIndex": 3, "updatedAt": "t"}}
        assert pending_write_from_dict(data) == write

    def test_delete_round_trip(self) -> None:
        assert pending_write_from_dict(DeleteWrite("a").to_dict()) == DeleteWrite("a")

    def test_unknown_type_rejected(self) -> None:
        with pytest.raises(ValueError, match="Unknown pending write type"):
            pending_write_from_dict({"type": "upsert"})
