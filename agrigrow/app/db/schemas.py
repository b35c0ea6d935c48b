import uuid
from datetime import datetime
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field


# --- User Schemas ---
class UserBase(BaseModel):
    phone: str
    name: Optional[str] = None
    role: str = "farmer"
    crops: List[str] = Field(default_factory=list)
    location_state: Optional[str] = None
    location_district: Optional[str] = None
    experience_level: Optional[str] = None


class UserInDB(UserBase):
    id: uuid.UUID
    is_verified: bool = False
    badges: List[str] = Field(default_factory=list)
    created_at: datetime

    class Config:
        from_attributes = True

    @property
    def region(self) -> Optional[str]:
        return self.location_state


class UserContext(BaseModel):
    """Profile fields the chat assistant personalises on."""

    name: Optional[str] = None
    role: Optional[str] = None
    crops: List[str] = Field(default_factory=list)
    state: Optional[str] = None
    district: Optional[str] = None
    experience_level: Optional[str] = None


# --- Post Schemas ---
class PostInDB(BaseModel):
    id: uuid.UUID
    author_id: uuid.UUID
    content: str
    post_type: str = "update"
    crops: List[str] = Field(default_factory=list)
    location_state: Optional[str] = None
    location_district: Optional[str] = None
    likes_count: int = 0
    comments_count: int = 0
    shares_count: int = 0
    helpful_count: int = 0
    views_count: int = 0
    engagement_score: float = 0.0
    is_verified: bool = False
    is_repost: bool = False
    is_deleted: bool = False
    created_at: datetime
    updated_at: Optional[datetime] = None

    # Author columns joined in by feed queries
    author_name: Optional[str] = None
    author_role: Optional[str] = None
    author_experience_level: Optional[str] = None
    author_state: Optional[str] = None
    author_district: Optional[str] = None
    author_is_verified: bool = False
    author_badges: List[str] = Field(default_factory=list)

    class Config:
        from_attributes = True

    @property
    def region(self) -> Optional[str]:
        return self.location_state

    @property
    def popularity(self) -> int:
        return self.views_count


class PostCounters(BaseModel):
    id: uuid.UUID
    likes_count: int
    comments_count: int
    shares_count: int
    helpful_count: int
    views_count: int
    engagement_score: float
    created_at: datetime


class CommentInDB(BaseModel):
    id: uuid.UUID
    post_id: uuid.UUID
    author_id: uuid.UUID
    content: str
    created_at: datetime

    class Config:
        from_attributes = True


# --- Group Schemas ---
class GroupInDB(BaseModel):
    id: uuid.UUID
    name: str
    slug: Optional[str] = None
    description: Optional[str] = None
    crops: List[str] = Field(default_factory=list)
    region: Optional[str] = None
    privacy: str = "public"
    require_post_approval: bool = False
    member_count: int = 0
    post_count: int = 0
    is_active: bool = True
    created_at: datetime

    class Config:
        from_attributes = True

    @property
    def popularity(self) -> int:
        return self.member_count


class GroupPostInDB(BaseModel):
    id: uuid.UUID
    group_id: uuid.UUID
    author_id: uuid.UUID
    content: str
    post_type: str = "discussion"
    status: str
    approved_by: Optional[uuid.UUID] = None
    approved_at: Optional[datetime] = None
    is_deleted: bool = False
    created_at: datetime

    class Config:
        from_attributes = True


# --- Feed Preference Schemas ---
class FeedPreferenceRow(BaseModel):
    user_id: uuid.UUID
    viewed_posts: List[Dict[str, Any]] = Field(default_factory=list)
    liked_topics: Dict[str, float] = Field(default_factory=dict)
    liked_crops: Dict[str, float] = Field(default_factory=dict)
    preferred_authors: Dict[str, float] = Field(default_factory=dict)
    hidden_posts: List[str] = Field(default_factory=list)
    muted_users: List[str] = Field(default_factory=list)
    settings: Dict[str, Any] = Field(default_factory=dict)
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# --- Notification Schemas ---
class NotificationInDB(BaseModel):
    id: uuid.UUID
    user_id: uuid.UUID
    type: str
    title: str
    message: str
    data: Dict[str, Any] = Field(default_factory=dict)
    is_read: bool = False
    created_at: datetime

    class Config:
        from_attributes = True
