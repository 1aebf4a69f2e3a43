"""Pydantic models for the board objects REST API."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from board_sync.core.board_object import ObjectType, SharedObject


class BoardObjectModel(BaseModel):
    """A board object as returned by ``GET /api/boards/{id}/objects``."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(..., min_length=1)
    board_id: str = Field("", alias="boardId")
    type: ObjectType
    x: float = 0.0
    y: float = 0.0
    width: float = 0.0
    height: float = 0.0
    rotation: float = 0.0
    text: str | None = None
    color: str = ""
    z_index: int = Field(0, alias="zIndex")
    properties: dict[str, Any] = Field(default_factory=dict)
    created_by: str = Field("", alias="createdBy")
    created_at: str = Field("", alias="createdAt")
    updated_at: str = Field("", alias="updatedAt")

    def to_shared_object(self) -> SharedObject:
        return SharedObject.from_dict(self.model_dump(by_alias=True))


class MutationResponse(BaseModel):
    """Body of a successful create/patch/delete."""

    model_config = ConfigDict(extra="allow")

    ok: bool = True
    error: str | None = None
