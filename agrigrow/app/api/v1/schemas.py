import uuid
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from agrigrow.app.core.errors import MAX_MESSAGE_LENGTH


class MessagePart(BaseModel):
    text: str


class ChatMessage(BaseModel):
    role: Literal["user", "model"]
    parts: List[MessagePart]


class ChatRequest(BaseModel):
    message: str = Field(..., max_length=MAX_MESSAGE_LENGTH)
    conversation_history: List[ChatMessage] = Field(
        default_factory=list, alias="conversationHistory"
    )
    crops_context: Optional[List[str]] = Field(None, alias="cropsContext")

    class Config:
        populate_by_name = True

    @field_validator("message")
    @classmethod
    def message_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Message is required")
        return value


class TrackViewsRequest(BaseModel):
    post_ids: List[str] = Field(..., alias="postIds", min_length=1)
    durations: Dict[str, float] = Field(default_factory=dict)

    class Config:
        populate_by_name = True


class IdListUpdate(BaseModel):
    operation: Literal["add", "remove", "set"]
    ids: List[uuid.UUID]


class FeedSettingsUpdate(BaseModel):
    show_reposts: Optional[bool] = None
    prioritize_following: Optional[bool] = None
    content_types: Optional[List[str]] = None


class PreferencesUpdate(BaseModel):
    hidden_posts: Optional[IdListUpdate] = None
    muted_users: Optional[IdListUpdate] = None
    liked_topics: Optional[Dict[str, float]] = None
    liked_crops: Optional[Dict[str, float]] = None
    settings: Optional[FeedSettingsUpdate] = None


class HideRequest(BaseModel):
    post_id: uuid.UUID = Field(..., alias="postId")

    class Config:
        populate_by_name = True


class MuteRequest(BaseModel):
    user_id: uuid.UUID = Field(..., alias="userId")

    class Config:
        populate_by_name = True


class CommentRequest(BaseModel):
    content: str = Field(..., min_length=1, max_length=MAX_MESSAGE_LENGTH)

    @field_validator("content")
    @classmethod
    def content_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Comment cannot be empty")
        return value


class GroupPostCreate(BaseModel):
    content: str = Field(..., min_length=1, max_length=5000)
    post_type: str = Field("discussion", alias="postType")

    class Config:
        populate_by_name = True

    @field_validator("content")
    @classmethod
    def content_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Post content cannot be empty")
        return value
