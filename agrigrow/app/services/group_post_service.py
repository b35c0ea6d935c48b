"""
Group post moderation.

A post starts ``approved`` unless its group requires approval and the
poster is a plain member, in which case it waits in ``pending_approval``.
Moderators move pending posts to ``approved`` or ``rejected``; rejection
and deletion are soft deletes. Only approved posts count towards the
group's ``post_count``, and only approved posts are listed to anyone but
moderators and the post's author.
"""
import uuid
from enum import Enum
from typing import Any, Dict, Optional

from loguru import logger
from starlette.concurrency import run_in_threadpool

from agrigrow.app.core.errors import ApiError, forbidden, not_found
from agrigrow.app.db import group_posts as group_posts_db
from agrigrow.app.db import groups as groups_db
from agrigrow.app.db.schemas import GroupInDB, GroupPostInDB, UserInDB
from agrigrow.app.services.notification_service import Notifier


class GroupPostStatus(str, Enum):
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    REJECTED = "rejected"


ROLE_HIERARCHY = {"member": 1, "moderator": 2, "admin": 3, "owner": 4}
MODERATOR_LEVEL = ROLE_HIERARCHY["moderator"]

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 50


def role_level(role: Optional[str]) -> int:
    return ROLE_HIERARCHY.get(role or "", 0)


def initial_status(require_post_approval: bool, poster_role: Optional[str]) -> GroupPostStatus:
    if require_post_approval and role_level(poster_role) < MODERATOR_LEVEL:
        return GroupPostStatus.PENDING_APPROVAL
    return GroupPostStatus.APPROVED


def _conflict(message: str) -> ApiError:
    return ApiError("CONFLICT", message, status_code=400)


class GroupPostService:
    def __init__(self, notifier: Notifier):
        self.notifier = notifier

    async def _group(self, group_id: uuid.UUID) -> GroupInDB:
        group = await run_in_threadpool(groups_db.get_group_by_id_db, group_id)
        if not group:
            raise not_found("Group not found")
        return group

    async def _member_role(self, group_id: uuid.UUID, user: UserInDB) -> str:
        role = await run_in_threadpool(groups_db.get_member_role_db, group_id, user.id)
        if not role:
            raise forbidden("You are not a member of this group")
        return role

    async def _post(self, group_id: uuid.UUID, post_id: uuid.UUID) -> GroupPostInDB:
        post = await run_in_threadpool(group_posts_db.get_group_post_db, group_id, post_id)
        if not post:
            raise not_found("Post not found")
        return post

    async def _require_moderator(self, group_id: uuid.UUID, user: UserInDB, action: str):
        role = await self._member_role(group_id, user)
        if role_level(role) < MODERATOR_LEVEL:
            raise forbidden(f"Only moderators, admins, and owners can {action} posts")

    async def list_posts(
        self,
        viewer: Optional[UserInDB],
        group_id: uuid.UUID,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
        post_type: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Moderators see the whole queue. Everyone else sees approved posts
        and their own pending ones."""
        await self._group(group_id)
        role = None
        if viewer:
            role = await run_in_threadpool(groups_db.get_member_role_db, group_id, viewer.id)
        is_moderator = role_level(role) >= MODERATOR_LEVEL

        page = max(1, page)
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        total, posts = await run_in_threadpool(
            group_posts_db.list_group_posts_db,
            group_id,
            viewer.id if viewer else None,
            is_moderator,
            post_type,
            limit,
            (page - 1) * limit,
        )
        total_pages = (total + limit - 1) // limit
        logger.debug(
            f"GroupPostService.list_posts: {len(posts)} of {total} posts in {group_id} "
            f"(moderator view: {is_moderator})"
        )
        return {
            "posts": [post.model_dump(mode="json") for post in posts],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "total_pages": total_pages,
                "has_next_page": page < total_pages,
                "has_prev_page": page > 1,
            },
        }

    async def create_post(
        self, user: UserInDB, group_id: uuid.UUID, content: str, post_type: str
    ) -> GroupPostInDB:
        group = await self._group(group_id)
        role = await self._member_role(group_id, user)
        status = initial_status(group.require_post_approval, role)

        post = await run_in_threadpool(
            group_posts_db.create_group_post_db,
            group_id,
            user.id,
            content,
            post_type,
            status.value,
        )
        logger.info(
            f"GroupPostService.create_post: {post.id} in group {group_id} starts as {status.value}"
        )
        return post

    async def approve(
        self, user: UserInDB, group_id: uuid.UUID, post_id: uuid.UUID
    ) -> GroupPostInDB:
        method_name = "GroupPostService.approve"
        group = await self._group(group_id)
        await self._require_moderator(group_id, user, "approve")

        post = await self._post(group_id, post_id)
        if post.status == GroupPostStatus.APPROVED.value:
            raise _conflict("Post is already approved")

        approved = await run_in_threadpool(
            group_posts_db.approve_group_post_db, group_id, post_id, user.id
        )
        if approved is None:
            # Lost a race with another moderator
            raise _conflict("Post is already approved")

        logger.success(f"{method_name}: post {post_id} approved by {user.id}")

        if approved.author_id != user.id:
            self.notifier.notify(
                approved.author_id,
                "group_post_approved",
                "Post approved",
                f'Your post in "{group.name}" has been approved',
                {
                    "group_id": str(group.id),
                    "group_name": group.name,
                    "group_slug": group.slug,
                    "group_post_id": str(approved.id),
                    "post_content": approved.content[:100],
                    "approved_by_name": user.name or "A moderator",
                },
            )
        return approved

    async def reject(
        self, user: UserInDB, group_id: uuid.UUID, post_id: uuid.UUID
    ) -> GroupPostInDB:
        await self._group(group_id)
        await self._require_moderator(group_id, user, "reject")

        post = await self._post(group_id, post_id)
        if post.status != GroupPostStatus.PENDING_APPROVAL.value:
            raise _conflict("Only posts pending approval can be rejected")

        rejected = await run_in_threadpool(group_posts_db.reject_group_post_db, group_id, post_id)
        if rejected is None:
            raise _conflict("Only posts pending approval can be rejected")

        logger.info(f"GroupPostService.reject: post {post_id} rejected by {user.id}")
        return rejected

    async def delete(
        self, user: UserInDB, group_id: uuid.UUID, post_id: uuid.UUID
    ) -> GroupPostInDB:
        await self._group(group_id)
        post = await self._post(group_id, post_id)

        if post.author_id != user.id:
            role = await run_in_threadpool(groups_db.get_member_role_db, group_id, user.id)
            if role_level(role) < MODERATOR_LEVEL:
                raise forbidden("You can only delete your own posts")

        deleted = await run_in_threadpool(
            group_posts_db.soft_delete_group_post_db, group_id, post_id
        )
        if deleted is None:
            raise not_found("Post not found")

        logger.info(f"GroupPostService.delete: post {post_id} deleted by {user.id}")
        return deleted
