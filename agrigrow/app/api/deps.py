from fastapi import Request

from agrigrow.app.core.ai_cache import AIResponseCache
from agrigrow.app.core.rate_limit import RateLimiter
from agrigrow.app.services.analytics_service import AnalyticsRecorder
from agrigrow.app.services.chat_service import ChatService
from agrigrow.app.services.feed_service import FeedService
from agrigrow.app.services.group_post_service import GroupPostService


def get_chat_service(request: Request) -> ChatService:
    return request.app.state.chat_service


def get_ai_cache(request: Request) -> AIResponseCache:
    return request.app.state.ai_cache


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter


def get_analytics_recorder(request: Request) -> AnalyticsRecorder:
    return request.app.state.analytics


def get_feed_service(request: Request) -> FeedService:
    return request.app.state.feed_service


def get_group_post_service(request: Request) -> GroupPostService:
    return request.app.state.group_post_service
