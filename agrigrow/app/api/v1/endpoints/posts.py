import uuid

from fastapi import APIRouter, Depends
from loguru import logger

from agrigrow.app.api.deps import get_feed_service
from agrigrow.app.api.v1.schemas import CommentRequest, TrackViewsRequest
from agrigrow.app.auth.deps import get_current_user
from agrigrow.app.db.schemas import UserInDB
from agrigrow.app.services.feed_service import FeedService

router = APIRouter()


@router.post("/track-views", summary="Record that posts were seen")
async def track_views_endpoint(
    body: TrackViewsRequest,
    viewer: UserInDB = Depends(get_current_user),
    feed_svc: FeedService = Depends(get_feed_service),
):
    logger.debug(f"API POST /posts/track-views: {len(body.post_ids)} ids from {viewer.id}")
    data = await feed_svc.track_views(viewer, body.post_ids, body.durations)
    return {"success": True, "data": data}


@router.post("/{post_id}/like", summary="Like or unlike a post")
async def toggle_like_endpoint(
    post_id: uuid.UUID,
    viewer: UserInDB = Depends(get_current_user),
    feed_svc: FeedService = Depends(get_feed_service),
):
    return {"success": True, "data": await feed_svc.toggle_like(viewer, post_id)}


@router.post("/{post_id}/share", summary="Share a post")
async def share_endpoint(
    post_id: uuid.UUID,
    viewer: UserInDB = Depends(get_current_user),
    feed_svc: FeedService = Depends(get_feed_service),
):
    return {"success": True, "data": await feed_svc.share(viewer, post_id)}


@router.post("/{post_id}/comments", status_code=201, summary="Comment on a post")
async def comment_endpoint(
    post_id: uuid.UUID,
    body: CommentRequest,
    viewer: UserInDB = Depends(get_current_user),
    feed_svc: FeedService = Depends(get_feed_service),
):
    data = await feed_svc.comment(viewer, post_id, body.content.strip())
    return {"success": True, "data": data}
