from datetime import datetime, timezone
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from agrigrow.app.config import settings
from agrigrow.app.db.schemas import FeedPreferenceRow, PostInDB

DEFAULT_VIEWED_POSTS_LIMIT = 1000


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ViewedPost(BaseModel):
    post_id: str
    view_duration: float = 0.0
    timestamp: datetime = Field(default_factory=_utcnow)
    scroll_percentage: Optional[float] = None
    interacted: bool = False


class FeedSettings(BaseModel):
    show_reposts: bool = True
    prioritize_following: bool = True
    content_types: List[str] = Field(
        default_factory=lambda: list(settings.feed.default_content_types)
    )


class FeedPreference(BaseModel):
    user_id: str
    viewed_posts: List[ViewedPost] = Field(default_factory=list)
    liked_topics: Dict[str, float] = Field(default_factory=dict)
    liked_crops: Dict[str, float] = Field(default_factory=dict)
    preferred_authors: Dict[str, float] = Field(default_factory=dict)
    hidden_posts: List[str] = Field(default_factory=list)
    muted_users: List[str] = Field(default_factory=list)
    settings: FeedSettings = Field(default_factory=FeedSettings)

    @classmethod
    def from_row(cls, row: FeedPreferenceRow) -> "FeedPreference":
        return cls(
            user_id=str(row.user_id),
            viewed_posts=row.viewed_posts,
            liked_topics=row.liked_topics,
            liked_crops=row.liked_crops,
            preferred_authors=row.preferred_authors,
            hidden_posts=row.hidden_posts,
            muted_users=row.muted_users,
            settings=row.settings or {},
        )

    # --- view history ---

    def record_view(
        self,
        post_id: str,
        view_duration: float,
        scroll_percentage: Optional[float] = None,
        interacted: bool = False,
        now: Optional[datetime] = None,
        limit: int = DEFAULT_VIEWED_POSTS_LIMIT,
    ) -> bool:
        """Adds or updates the view entry for a post, keeping at most ``limit``
        entries. Returns True when this is the first view of the post still
        held in history."""
        now = now or _utcnow()
        existing = next(
            (view for view in self.viewed_posts if view.post_id == post_id), None
        )

        if existing is not None:
            existing.view_duration += view_duration
            existing.timestamp = now
            if scroll_percentage is not None:
                existing.scroll_percentage = max(
                    existing.scroll_percentage or 0, scroll_percentage
                )
            if interacted:
                existing.interacted = True
            return False

        self.viewed_posts.append(
            ViewedPost(
                post_id=post_id,
                view_duration=view_duration,
                timestamp=now,
                scroll_percentage=scroll_percentage,
                interacted=interacted,
            )
        )
        # Oldest inserted views go first
        if len(self.viewed_posts) > limit:
            self.viewed_posts = self.viewed_posts[-limit:]
        return True

    def has_viewed(self, post_id: str) -> bool:
        return any(view.post_id == post_id for view in self.viewed_posts)

    def viewed_post_ids(self, since: Optional[datetime] = None) -> List[str]:
        return [
            view.post_id
            for view in self.viewed_posts
            if since is None or view.timestamp >= since
        ]

    # --- affinity ---

    @staticmethod
    def _bump(scores: Dict[str, float], key: str, delta: float):
        scores[key] = max(0.0, scores.get(key, 0.0) + delta)

    def update_topic_score(self, topic: str, delta: float):
        self._bump(self.liked_topics, topic, delta)

    def update_crop_score(self, crop: str, delta: float):
        self._bump(self.liked_crops, crop.lower(), delta)

    def update_author_score(self, author_id: str, delta: float):
        self._bump(self.preferred_authors, author_id, delta)

    def top_topics(self, limit: int = 5) -> List[str]:
        return [
            topic
            for topic, _ in sorted(
                self.liked_topics.items(), key=lambda item: item[1], reverse=True
            )[:limit]
        ]

    def top_crops(self, limit: int = 5) -> List[str]:
        return [
            crop
            for crop, _ in sorted(
                self.liked_crops.items(), key=lambda item: item[1], reverse=True
            )[:limit]
        ]

    # --- exclusion lists ---

    def hide_post(self, post_id: str):
        if post_id not in self.hidden_posts:
            self.hidden_posts.append(post_id)

    def unhide_post(self, post_id: str):
        self.hidden_posts = [pid for pid in self.hidden_posts if pid != post_id]

    def is_hidden(self, post_id: str) -> bool:
        return post_id in self.hidden_posts

    def mute_user(self, user_id: str):
        if user_id not in self.muted_users:
            self.muted_users.append(user_id)

    def unmute_user(self, user_id: str):
        self.muted_users = [uid for uid in self.muted_users if uid != user_id]

    def is_muted(self, user_id: str) -> bool:
        return user_id in self.muted_users


def interaction_scores(post: PostInDB, delta: float) -> Dict[str, Dict[str, float]]:
    """Affinity deltas, per preference column, for engaging with a post."""
    crops: Dict[str, float] = {}
    for crop in post.crops:
        crops[crop.lower()] = crops.get(crop.lower(), 0.0) + delta
    return {
        "liked_topics": {post.post_type: delta},
        "liked_crops": crops,
        "preferred_authors": {str(post.author_id): delta},
    }


def merge_scores(
    target: Dict[str, Dict[str, float]], scores: Dict[str, Dict[str, float]]
) -> Dict[str, Dict[str, float]]:
    for column, deltas in scores.items():
        bucket = target.setdefault(column, {})
        for key, delta in deltas.items():
            bucket[key] = bucket.get(key, 0.0) + delta
    return target

