import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query
from loguru import logger

from agrigrow.app.api.deps import get_feed_service
from agrigrow.app.api.v1.schemas import HideRequest, MuteRequest, PreferencesUpdate
from agrigrow.app.auth.deps import get_current_user, get_optional_user
from agrigrow.app.db.schemas import UserInDB
from agrigrow.app.services.feed_preferences import FeedPreference
from agrigrow.app.services.feed_service import FeedService

router = APIRouter()


def _preference_payload(preference: FeedPreference) -> dict:
    data = preference.model_dump(mode="json", exclude={"viewed_posts"})
    data["viewed_posts_count"] = len(preference.viewed_posts)
    data["top_topics"] = preference.top_topics()
    data["top_crops"] = preference.top_crops()
    return data


@router.get("", summary="Ranked home feed")
async def get_feed_endpoint(
    cursor: Optional[str] = Query(None),
    limit: Optional[int] = Query(None, ge=1),
    category: Optional[str] = Query(None),
    crop: Optional[str] = Query(None),
    viewer: Optional[UserInDB] = Depends(get_optional_user),
    feed_svc: FeedService = Depends(get_feed_service),
):
    logger.debug(
        f"API GET /feed viewer={viewer.id if viewer else 'anonymous'} cursor={cursor} category={category} crop={crop}"
    )
    data = await feed_svc.get_feed(viewer, cursor=cursor, limit=limit, category=category, crop=crop)
    return {"success": True, "data": data}


@router.get("/new-posts-count", summary="Count posts newer than a timestamp")
async def new_posts_count_endpoint(
    since: Optional[str] = Query(None),
    category: Optional[str] = Query(None),
    viewer: Optional[UserInDB] = Depends(get_optional_user),
    feed_svc: FeedService = Depends(get_feed_service),
):
    data = await feed_svc.count_new_posts(viewer, since, category)
    return {"success": True, "data": data}


@router.get("/preferences", summary="Current user's feed preferences")
async def get_preferences_endpoint(
    viewer: UserInDB = Depends(get_current_user),
    feed_svc: FeedService = Depends(get_feed_service),
):
    preference = await feed_svc.get_or_create_preference(viewer.id)
    return {"success": True, "data": _preference_payload(preference)}


@router.put("/preferences", summary="Update feed preferences")
async def update_preferences_endpoint(
    update: PreferencesUpdate,
    viewer: UserInDB = Depends(get_current_user),
    feed_svc: FeedService = Depends(get_feed_service),
):
    changes = update.model_dump(mode="json", exclude_none=True)
    logger.debug(f"API PUT /feed/preferences for {viewer.id}: {list(changes.keys())}")
    preference = await feed_svc.update_preferences(viewer, changes)
    return {"success": True, "data": _preference_payload(preference)}


@router.post("/preferences/hide", summary="Hide a post from the feed")
async def hide_post_endpoint(
    body: HideRequest,
    viewer: UserInDB = Depends(get_current_user),
    feed_svc: FeedService = Depends(get_feed_service),
):
    preference = await feed_svc.hide_post(viewer, body.post_id)
    return {"success": True, "data": {"hidden_posts": preference.hidden_posts}}


@router.delete("/preferences/hide/{post_id}", summary="Unhide a post")
async def unhide_post_endpoint(
    post_id: uuid.UUID,
    viewer: UserInDB = Depends(get_current_user),
    feed_svc: FeedService = Depends(get_feed_service),
):
    preference = await feed_svc.unhide_post(viewer, post_id)
    return {"success": True, "data": {"hidden_posts": preference.hidden_posts}}


@router.post("/mute", summary="Mute a user")
async def mute_user_endpoint(
    body: MuteRequest,
    viewer: UserInDB = Depends(get_current_user),
    feed_svc: FeedService = Depends(get_feed_service),
):
    preference = await feed_svc.mute_user(viewer, body.user_id)
    logger.info(f"API POST /feed/mute: {viewer.id} muted {body.user_id}")
    return {"success": True, "data": {"muted_users": preference.muted_users}}


@router.delete("/mute/{user_id}", summary="Unmute a user")
async def unmute_user_endpoint(
    user_id: uuid.UUID,
    viewer: UserInDB = Depends(get_current_user),
    feed_svc: FeedService = Depends(get_feed_service),
):
    preference = await feed_svc.unmute_user(viewer, user_id)
    return {"success": True, "data": {"muted_users": preference.muted_users}}


@router.get("/mute/list", summary="Users muted by the caller")
async def muted_users_endpoint(
    viewer: UserInDB = Depends(get_current_user),
    feed_svc: FeedService = Depends(get_feed_service),
):
    users = await feed_svc.muted_users(viewer)
    return {"success": True, "data": {"users": users, "count": len(users)}}
