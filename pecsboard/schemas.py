from __future__ import annotations

import re
from datetime import datetime
from typing import Optional, Union

from pydantic import BaseModel, Field, field_validator

COLOR_RE = re.compile(r"^(#[0-9a-fA-F]{3,8}|var\(--[a-zA-Z0-9-]+\))$")
DEFAULT_COLOR = "#6366f1"


def _check_color(value: Optional[str]) -> Optional[str]:
    if value is not None and not COLOR_RE.match(value):
        raise ValueError(
            "Invalid color format. Use a hex color (e.g. #6366f1) or CSS variable (e.g. var(--primary))."
        )
    return value


class Health(BaseModel):
    status: str = "ok"


class Version(BaseModel):
    version: str = "1.0.0"


# === Boards ===


class BoardIn(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    isPublic: bool = False

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("name must not be blank")
        return value


class BoardPatch(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    isPublic: Optional[bool] = None
    emailNotificationsEnabled: Optional[bool] = None


class BoardOut(BaseModel):
    id: str
    userId: str
    name: str
    description: Optional[str]
    isPublic: bool
    emailNotificationsEnabled: bool
    isTemplate: bool
    createdAt: datetime


class PublicBoardOut(BoardOut):
    likeCount: int = 0
    commentCount: int = 0
    cardCount: int = 0
    isLikedByUser: bool = False


class CloneIn(BaseModel):
    name: str = Field(min_length=1, max_length=100)


class CloneOut(BaseModel):
    board: BoardOut
    cardCount: int


# === Cards ===


class CardIn(BaseModel):
    label: str = Field(default="", max_length=100)
    imageUrl: Optional[str] = Field(default=None, max_length=2048)
    audioUrl: Optional[str] = Field(default=None, max_length=2048)
    color: Optional[str] = Field(default=DEFAULT_COLOR, max_length=64)
    category: Optional[str] = Field(default=None, max_length=50)

    check_color = field_validator("color")(_check_color)


class CardPatch(BaseModel):
    label: Optional[str] = Field(default=None, max_length=100)
    imageUrl: Optional[str] = Field(default=None, max_length=2048)
    audioUrl: Optional[str] = Field(default=None, max_length=2048)
    color: Optional[str] = Field(default=None, max_length=64)
    category: Optional[str] = Field(default=None, max_length=50)
    boardId: Optional[str] = None

    check_color = field_validator("color")(_check_color)


class BatchCardsIn(BaseModel):
    cards: list[CardIn] = Field(min_length=1, max_length=100)


class ImportCardsIn(BaseModel):
    sourceBoardId: str
    cardIds: list[str] = Field(min_length=1, max_length=100)


class ReorderIn(BaseModel):
    cardIds: list[str]


class CardOut(BaseModel):
    id: str
    boardId: str
    label: str
    imageUrl: Optional[str]
    audioUrl: Optional[str]
    color: Optional[str]
    category: Optional[str]
    order: int
    sourceBoardId: Optional[str]
    templateKey: Optional[str]
    lineage: str


class BoardView(BaseModel):
    board: BoardOut
    cards: list[CardOut]


# === Likes and comments ===


class LikeOut(BaseModel):
    liked: bool
    likeCount: int


class CommentIn(BaseModel):
    content: str = Field(min_length=1, max_length=1000)

    @field_validator("content")
    @classmethod
    def content_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Comment content is required")
        return value


class CommentOut(BaseModel):
    id: str
    boardId: str
    userId: str
    content: str
    commenterName: str
    createdAt: datetime
    updatedAt: datetime
    isEdited: bool


# === Admin ===


class SettingIn(BaseModel):
    key: str
    value: Union[int, float, str]
