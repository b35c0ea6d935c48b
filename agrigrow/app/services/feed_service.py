import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from cachetools import TTLCache
from loguru import logger
from starlette.concurrency import run_in_threadpool

from agrigrow.app.config import FeedConfig
from agrigrow.app.core.errors import bad_request, not_found
from agrigrow.app.db import feed_preferences as preferences_db
from agrigrow.app.db import groups as groups_db
from agrigrow.app.db import posts as posts_db
from agrigrow.app.db import users as users_db
from agrigrow.app.db.schemas import PostCounters, PostInDB, UserInDB
from agrigrow.app.services.feed_preferences import (
    FeedPreference,
    interaction_scores,
    merge_scores,
)
from agrigrow.app.services.feed_ranking import (
    calculate_engagement_score,
    hours_since,
    rank_by_relevance,
    rank_feed,
)

# Feed tab -> post types it shows
CATEGORY_POST_TYPES: Dict[str, List[str]] = {
    "questions": ["question"],
    "tips": ["tip"],
    "updates": ["update", "news"],
    "problems": ["problem"],
    "success-stories": ["success_story"],
}

PREVIEW_LENGTH = 100


def parse_timestamp(raw: str) -> datetime:
    """Accepts ISO-8601 strings or epoch milliseconds."""
    value = raw.strip()
    if value.isdigit():
        return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


CURSOR_SEPARATOR = "_"


def make_cursor(post: PostInDB) -> str:
    return f"{post.created_at.isoformat()}{CURSOR_SEPARATOR}{post.id}"


def parse_cursor(raw: str) -> Tuple[datetime, Optional[uuid.UUID]]:
    """Splits a feed cursor into the boundary timestamp and post id. A bare
    timestamp is accepted and has no id."""
    timestamp, _, post_id = raw.partition(CURSOR_SEPARATOR)
    return parse_timestamp(timestamp), uuid.UUID(post_id) if post_id else None


def _preview(content: str) -> str:
    if len(content) > PREVIEW_LENGTH:
        return content[:PREVIEW_LENGTH] + "..."
    return content


def _post_types_for(
    category: Optional[str], content_types: Optional[Sequence[str]] = None
) -> Optional[List[str]]:
    types = CATEGORY_POST_TYPES.get(category) if category and category != "all" else None
    if content_types:
        allowed = set(content_types)
        types = [t for t in (types or content_types) if t in allowed]
    return types


class FeedService:
    def __init__(self, config: FeedConfig):
        self.config = config
        self._discover_cache: TTLCache = TTLCache(
            maxsize=config.discover_cache_size, ttl=config.discover_cache_ttl_seconds
        )
        logger.info("FeedService initialized.")

    # --- preferences ---

    async def load_preference(self, user_id: uuid.UUID) -> Optional[FeedPreference]:
        row = await run_in_threadpool(preferences_db.get_preference_db, user_id)
        return FeedPreference.from_row(row) if row else None

    async def get_or_create_preference(self, user_id: uuid.UUID) -> FeedPreference:
        row = await run_in_threadpool(preferences_db.get_or_create_preference_db, user_id)
        return FeedPreference.from_row(row)

    async def change_preference(self, user_id: uuid.UUID, **changes) -> FeedPreference:
        """Applies id set, score and settings changes as targeted updates."""
        row = await run_in_threadpool(
            preferences_db.apply_preference_changes_db, user_id, **changes
        )
        return FeedPreference.from_row(row)

    # --- home feed ---

    async def get_feed(
        self,
        viewer: Optional[UserInDB],
        cursor: Optional[str] = None,
        limit: Optional[int] = None,
        category: Optional[str] = None,
        crop: Optional[str] = None,
    ) -> Dict[str, Any]:
        method_name = "FeedService.get_feed"
        page_size = min(limit or self.config.default_page_size, self.config.max_page_size)

        before, before_id = None, None
        if cursor:
            try:
                before, before_id = parse_cursor(cursor)
            except ValueError:
                raise bad_request("Invalid cursor")

        preference = await self.load_preference(viewer.id) if viewer else None
        feed_settings = preference.settings if preference else None

        candidates = await run_in_threadpool(
            posts_db.get_feed_candidates_db,
            viewer.id if viewer else None,
            preference.hidden_posts if preference else (),
            preference.muted_users if preference else (),
            crop,
            before,
            _post_types_for(category, feed_settings.content_types if feed_settings else None),
            feed_settings.show_reposts if feed_settings else True,
            page_size + 1,
            before_id,
        )

        has_more = len(candidates) > page_size
        window = candidates[:page_size]
        next_cursor = make_cursor(window[-1]) if has_more and window else None

        ranked = rank_feed(window, viewer, preference)
        logger.debug(
            f"{method_name}: ranked {len(ranked)} of {len(window)} candidates "
            f"for viewer {viewer.id if viewer else 'anonymous'}"
        )

        return {
            "posts": [
                {
                    **post.model_dump(mode="json"),
                    "feed_score": round(score, 4),
                    "has_viewed": preference.has_viewed(str(post.id)) if preference else False,
                }
                for post, score in ranked
            ],
            "next_cursor": next_cursor,
            "has_more": has_more,
        }

    async def count_new_posts(
        self,
        viewer: Optional[UserInDB],
        since_raw: Optional[str],
        category: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not since_raw:
            raise bad_request("since timestamp is required")
        try:
            since = parse_timestamp(since_raw)
        except ValueError:
            raise bad_request("Invalid timestamp format")

        preference = await self.load_preference(viewer.id) if viewer else None
        excluded_posts: List[str] = []
        if preference:
            # Already-seen posts are not "new" for this viewer
            excluded_posts = list(
                dict.fromkeys(preference.hidden_posts + preference.viewed_post_ids())
            )

        count, latest = await run_in_threadpool(
            posts_db.count_new_posts_since_db,
            since,
            viewer.id if viewer else None,
            excluded_posts,
            preference.muted_users if preference else (),
            _post_types_for(category),
        )

        latest_post = None
        if latest:
            latest_post = {
                "id": str(latest.id),
                "content": _preview(latest.content),
                "author": {"name": latest.author_name or "Unknown"},
                "post_type": latest.post_type,
                "created_at": latest.created_at.isoformat(),
            }

        return {
            "count": count,
            "latest_post": latest_post,
            "since": since.isoformat(),
            "checked_at": datetime.now(timezone.utc).isoformat(),
        }

    # --- interactions ---

    async def track_views(
        self,
        viewer: UserInDB,
        post_ids: Sequence[str],
        durations: Optional[Dict[str, float]] = None,
    ) -> Dict[str, Any]:
        method_name = "FeedService.track_views"
        valid_ids: List[str] = []
        for raw in post_ids:
            try:
                post_id = str(uuid.UUID(str(raw)))
            except ValueError:
                continue
            if post_id not in valid_ids:
                valid_ids.append(post_id)

        if not valid_ids:
            raise bad_request("No valid post IDs provided")

        batch = valid_ids[: self.config.track_views_batch_limit]
        updated = await run_in_threadpool(posts_db.increment_views_db, batch)
        logger.debug(f"{method_name}: incremented views on {len(updated)} of {len(batch)} posts")

        durations = {post_id: float((durations or {}).get(post_id, 0.0)) for post_id in batch}
        first_views: List[str] = []

        def merge_history(viewed_posts: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
            history = FeedPreference(user_id=str(viewer.id), viewed_posts=viewed_posts)
            first_views.clear()
            for post_id in batch:
                if history.record_view(
                    post_id, durations[post_id], limit=self.config.viewed_posts_limit
                ):
                    first_views.append(post_id)
            return [view.model_dump(mode="json") for view in history.viewed_posts]

        try:
            await run_in_threadpool(preferences_db.update_viewed_posts_db, viewer.id, merge_history)

            view_delta = self.config.affinity_deltas.get("view", 0.0)
            by_id = {str(post.id): post for post in updated}
            scores: Dict[str, Dict[str, float]] = {}
            for post_id in first_views:
                post = by_id.get(post_id)
                if post and durations[post_id] >= self.config.extended_view_seconds:
                    merge_scores(scores, interaction_scores(post, view_delta))
            if scores:
                await self.change_preference(viewer.id, scores=scores)
        except Exception as e:
            logger.error(
                f"{method_name}: view history update failed for {viewer.id}: {e}",
                exc_info=True,
            )

        return {"processed": len(batch), "modified_count": len(updated)}

    async def _refresh_engagement(self, counters: PostCounters) -> float:
        score = calculate_engagement_score(
            counters.likes_count,
            counters.comments_count,
            counters.shares_count,
            counters.helpful_count,
            hours_since(counters.created_at),
        )
        try:
            await run_in_threadpool(posts_db.update_engagement_score_db, counters.id, score)
        except Exception as e:
            logger.error(
                f"FeedService._refresh_engagement: failed to store score for {counters.id}: {e}",
                exc_info=True,
            )
        return score

    async def _record_affinity(self, viewer: UserInDB, post: PostInDB, kind: str):
        try:
            delta = self.config.affinity_deltas.get(kind, 0.0)
            await self.change_preference(viewer.id, scores=interaction_scores(post, delta))
        except Exception as e:
            logger.error(
                f"FeedService._record_affinity: {kind} affinity update failed for {viewer.id}: {e}",
                exc_info=True,
            )

    async def _require_post(self, post_id: uuid.UUID) -> PostInDB:
        post = await run_in_threadpool(posts_db.get_post_by_id_db, post_id)
        if not post:
            raise not_found("Post not found")
        return post

    async def toggle_like(self, viewer: UserInDB, post_id: uuid.UUID) -> Dict[str, Any]:
        post = await self._require_post(post_id)
        result = await run_in_threadpool(posts_db.toggle_like_db, post_id, viewer.id)
        if result is None:
            raise not_found("Post not found")
        liked, counters = result

        score = await self._refresh_engagement(counters)
        if liked:
            await self._record_affinity(viewer, post, "like")

        return {
            "liked": liked,
            "likes_count": counters.likes_count,
            "engagement_score": score,
        }

    async def share(self, viewer: UserInDB, post_id: uuid.UUID) -> Dict[str, Any]:
        post = await self._require_post(post_id)
        counters = await run_in_threadpool(posts_db.increment_shares_db, post_id)
        if counters is None:
            raise not_found("Post not found")

        score = await self._refresh_engagement(counters)
        await self._record_affinity(viewer, post, "share")
        return {"shares_count": counters.shares_count, "engagement_score": score}

    async def comment(
        self, viewer: UserInDB, post_id: uuid.UUID, content: str
    ) -> Dict[str, Any]:
        post = await self._require_post(post_id)
        result = await run_in_threadpool(
            posts_db.create_comment_db, post_id, viewer.id, content
        )
        if result is None:
            raise not_found("Post not found")
        comment, counters = result

        score = await self._refresh_engagement(counters)
        await self._record_affinity(viewer, post, "comment")
        return {
            "comment": comment.model_dump(mode="json"),
            "comments_count": counters.comments_count,
            "engagement_score": score,
        }

    # --- hide / mute ---

    async def hide_post(self, viewer: UserInDB, post_id: uuid.UUID) -> FeedPreference:
        return await self.change_preference(
            viewer.id, id_sets={"hidden_posts": ("add", [str(post_id)])}
        )

    async def unhide_post(self, viewer: UserInDB, post_id: uuid.UUID) -> FeedPreference:
        return await self.change_preference(
            viewer.id, id_sets={"hidden_posts": ("remove", [str(post_id)])}
        )

    async def mute_user(self, viewer: UserInDB, user_id: uuid.UUID) -> FeedPreference:
        if user_id == viewer.id:
            raise bad_request("You cannot mute yourself")
        target = await run_in_threadpool(users_db.get_user_by_id, user_id)
        if not target:
            raise not_found("User not found")

        return await self.change_preference(
            viewer.id, id_sets={"muted_users": ("add", [str(user_id)])}
        )

    async def unmute_user(self, viewer: UserInDB, user_id: uuid.UUID) -> FeedPreference:
        return await self.change_preference(
            viewer.id, id_sets={"muted_users": ("remove", [str(user_id)])}
        )

    async def muted_users(self, viewer: UserInDB) -> List[Dict[str, Any]]:
        preference = await self.load_preference(viewer.id)
        if not preference or not preference.muted_users:
            return []
        users = await run_in_threadpool(users_db.get_users_by_ids_db, preference.muted_users)
        return [
            {"id": str(user.id), "name": user.name, "role": user.role}
            for user in users
        ]

    async def update_preferences(
        self, viewer: UserInDB, changes: Dict[str, Any]
    ) -> FeedPreference:
        id_sets = {}
        for field in ("hidden_posts", "muted_users"):
            update = changes.get(field)
            if update:
                id_sets[field] = (update["operation"], [str(i) for i in update["ids"]])

        scores: Dict[str, Dict[str, float]] = {}
        if changes.get("liked_topics"):
            scores["liked_topics"] = dict(changes["liked_topics"])
        if changes.get("liked_crops"):
            crops: Dict[str, float] = {}
            for crop, delta in changes["liked_crops"].items():
                crops[crop.lower()] = crops.get(crop.lower(), 0.0) + delta
            scores["liked_crops"] = crops

        return await self.change_preference(
            viewer.id,
            id_sets=id_sets,
            scores=scores,
            settings=changes.get("settings") or None,
        )

    # --- group discovery ---

    async def discover_groups(
        self, viewer: Optional[UserInDB], limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        method_name = "FeedService.discover_groups"
        size = max(1, min(limit or self.config.discover_default_limit, self.config.discover_max_limit))
        cache_key = (str(viewer.id) if viewer else "anonymous", size)

        cached = self._discover_cache.get(cache_key)
        if cached is not None:
            logger.debug(f"{method_name}: cache hit for {cache_key}")
            return cached

        joined: List[str] = []
        if viewer:
            joined = await run_in_threadpool(groups_db.get_joined_group_ids_db, viewer.id)

        groups = await run_in_threadpool(groups_db.get_discoverable_groups_db, joined)
        ranked = rank_by_relevance(
            groups,
            viewer.crops if viewer else None,
            viewer.location_state if viewer else None,
        )

        result = [
            {**group.model_dump(mode="json"), "relevance_score": round(score, 4)}
            for group, score in ranked[:size]
        ]
        self._discover_cache[cache_key] = result
        return result

