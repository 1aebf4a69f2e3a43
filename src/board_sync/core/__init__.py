"""Core data structures for board synchronization."""

from board_sync.core.board_object import (
    DEFAULT_COLORS,
    DEFAULT_SIZES,
    FRAME_Z_INDEX,
    ObjectType,
    SharedObject,
    build_board_object,
)
from board_sync.core.pending_write import (
    CreateWrite,
    DeleteWrite,
    PendingWrite,
    UpdateWrite,
    pending_write_from_dict,
)

__all__ = [
    "DEFAULT_COLORS",
    "DEFAULT_SIZES",
    "FRAME_Z_INDEX",
    "ObjectType",
    "SharedObject",
    "build_board_object",
    "CreateWrite",
    "DeleteWrite",
    "PendingWrite",
    "UpdateWrite",
    "pending_write_from_dict",
]
