import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query
from loguru import logger

from agrigrow.app.api.deps import get_feed_service, get_group_post_service
from agrigrow.app.api.v1.schemas import GroupPostCreate
from agrigrow.app.auth.deps import get_current_user, get_optional_user
from agrigrow.app.db.schemas import UserInDB
from agrigrow.app.services.feed_service import FeedService
from agrigrow.app.services.group_post_service import GroupPostService

router = APIRouter()


@router.get("/discover", summary="Groups recommended for the caller")
async def discover_groups_endpoint(
    limit: Optional[int] = Query(None),
    viewer: Optional[UserInDB] = Depends(get_optional_user),
    feed_svc: FeedService = Depends(get_feed_service),
):
    groups = await feed_svc.discover_groups(viewer, limit)
    return {"success": True, "data": {"groups": groups, "count": len(groups)}}


@router.get("/{group_id}/posts", summary="Posts visible in a group")
async def list_group_posts_endpoint(
    group_id: uuid.UUID,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1),
    post_type: Optional[str] = Query(None, alias="postType"),
    viewer: Optional[UserInDB] = Depends(get_optional_user),
    group_svc: GroupPostService = Depends(get_group_post_service),
):
    data = await group_svc.list_posts(viewer, group_id, page=page, limit=limit, post_type=post_type)
    return {"success": True, "data": data["posts"], "pagination": data["pagination"]}


@router.post("/{group_id}/posts", status_code=201, summary="Post in a group")
async def create_group_post_endpoint(
    group_id: uuid.UUID,
    body: GroupPostCreate,
    user: UserInDB = Depends(get_current_user),
    group_svc: GroupPostService = Depends(get_group_post_service),
):
    post = await group_svc.create_post(user, group_id, body.content.strip(), body.post_type)
    message = (
        "Post submitted for approval"
        if post.status == "pending_approval"
        else "Post created"
    )
    return {"success": True, "message": message, "data": post.model_dump(mode="json")}


@router.post("/{group_id}/posts/{post_id}/approve", summary="Approve a pending post")
async def approve_group_post_endpoint(
    group_id: uuid.UUID,
    post_id: uuid.UUID,
    user: UserInDB = Depends(get_current_user),
    group_svc: GroupPostService = Depends(get_group_post_service),
):
    logger.debug(f"API POST /groups/{group_id}/posts/{post_id}/approve by {user.id}")
    post = await group_svc.approve(user, group_id, post_id)
    return {"success": True, "message": "Post approved", "data": post.model_dump(mode="json")}


@router.post("/{group_id}/posts/{post_id}/reject", summary="Reject a pending post")
async def reject_group_post_endpoint(
    group_id: uuid.UUID,
    post_id: uuid.UUID,
    user: UserInDB = Depends(get_current_user),
    group_svc: GroupPostService = Depends(get_group_post_service),
):
    post = await group_svc.reject(user, group_id, post_id)
    return {"success": True, "message": "Post rejected", "data": post.model_dump(mode="json")}


@router.delete("/{group_id}/posts/{post_id}", summary="Delete a group post")
async def delete_group_post_endpoint(
    group_id: uuid.UUID,
    post_id: uuid.UUID,
    user: UserInDB = Depends(get_current_user),
    group_svc: GroupPostService = Depends(get_group_post_service),
):
    await group_svc.delete(user, group_id, post_id)
    return {"success": True, "message": "Post deleted"}
