from fastapi import APIRouter
from agrigrow.app.api.v1.endpoints import crop_ai, feed, posts, groups

api_v1_router = APIRouter()

api_v1_router.include_router(crop_ai.router, prefix="/crop-ai", tags=["Crop AI"])
api_v1_router.include_router(feed.router, prefix="/feed", tags=["Feed"])
api_v1_router.include_router(posts.router, prefix="/posts", tags=["Posts"])
api_v1_router.include_router(groups.router, prefix="/groups", tags=["Groups"])
