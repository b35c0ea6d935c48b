import json
import re
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from loguru import logger

from agrigrow.app.api.deps import (
    get_ai_cache,
    get_analytics_recorder,
    get_chat_service,
    get_rate_limiter,
)
from agrigrow.app.core.ai_cache import AIResponseCache
from agrigrow.app.core.errors import bad_request
from agrigrow.app.core.rate_limit import RateLimiter, get_identifier, rate_limit_headers
from agrigrow.app.services.analytics_service import AnalyticsRecorder, OperationType
from agrigrow.app.services.chat_service import ChatService

router = APIRouter()


@router.post("/chat", summary="Ask the crop assistant a question")
async def chat_endpoint(
    request: Request,
    chat_svc: ChatService = Depends(get_chat_service),
):
    try:
        raw_body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        # Left to the validator so it maps onto INVALID_REQUEST after the rate limit gate
        raw_body = None

    client_host = request.client.host if request.client else None
    payload, headers = await chat_svc.chat(raw_body, request.headers, client_host)
    return JSONResponse(content=payload, headers=headers)


@router.get("/cache/stats", summary="AI response cache statistics")
async def cache_stats_endpoint(cache: AIResponseCache = Depends(get_ai_cache)):
    return {"success": True, "data": cache.get_stats()}


@router.delete("/cache", summary="Invalidate cached AI responses")
async def invalidate_cache_endpoint(
    pattern: Optional[str] = Query(None),
    cache: AIResponseCache = Depends(get_ai_cache),
):
    if pattern:
        try:
            removed = cache.invalidate_pattern(pattern)
        except re.error:
            raise bad_request("Invalid pattern")
    else:
        removed = len(cache)
        cache.clear()

    logger.info(f"API DELETE /crop-ai/cache pattern={pattern!r} removed {removed} entries")
    return {"success": True, "data": {"removed": removed}}


@router.get("/rate-limit", summary="Remaining AI quota for the caller")
async def rate_limit_status_endpoint(
    request: Request,
    limiter: RateLimiter = Depends(get_rate_limiter),
):
    client_host = request.client.host if request.client else None
    identifier = get_identifier(request.headers, client_host)
    result = limiter.check_rate_limit(identifier)
    return JSONResponse(
        content={"success": True, "data": result.model_dump()},
        headers=rate_limit_headers(result),
    )


@router.get("/analytics", summary="AI usage analytics")
async def analytics_endpoint(
    operation_type: Optional[OperationType] = Query(None),
    days: int = Query(7, ge=1, le=90),
    recorder: AnalyticsRecorder = Depends(get_analytics_recorder),
):
    logger.debug(f"API GET /crop-ai/analytics operation_type={operation_type} days={days}")
    summary = await recorder.get_aggregated_stats(operation_type=operation_type)
    daily = await recorder.get_daily_stats(days=days, operation_type=operation_type)
    top_errors = await recorder.get_top_errors()
    realtime = await recorder.get_realtime_stats()
    return {
        "success": True,
        "data": {
            "summary": summary.model_dump(),
            "daily": daily,
            "top_errors": top_errors,
            "realtime": {key: stats.model_dump() for key, stats in realtime.items()},
        },
    }
