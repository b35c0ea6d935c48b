"""
Crop assistant chat.

Every request passes the same gates in order: the per-identity rate limit,
body validation, optional user context, the response cache (new
conversations only), then the model. A request only consumes quota once it
has produced a reply; any failure releases the slot it reserved.
"""
import re
from datetime import date
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from loguru import logger
from starlette.concurrency import run_in_threadpool

from agrigrow.app.api.v1.schemas import ChatRequest
from agrigrow.app.api.v1.validation import validate_body
from agrigrow.app.core.ai_cache import AIResponseCache, with_cache
from agrigrow.app.core.clock import Clock, now_ms
from agrigrow.app.core.errors import ApiError, RateLimitExceeded, chat_error
from agrigrow.app.core.rate_limit import (
    USER_PHONE_HEADER,
    RateLimiter,
    get_identifier,
    rate_limit_headers,
)
from agrigrow.app.db import users as users_db
from agrigrow.app.db.schemas import UserContext
from agrigrow.app.prompts.prompt_engine import PromptEngine
from agrigrow.app.prompts.seasonal_context import get_seasonal_context
from agrigrow.app.services.analytics_service import AnalyticsRecorder, PerformanceTracker
from agrigrow.app.services.model_service import ModelService


class ModelFailure(Exception):
    """The model answered with an error payload instead of text."""


def classify_model_error(message: str) -> str:
    return "AI_BLOCKED" if "blocked" in message.lower() else "AI_ERROR"


def _validation_error_code(errors) -> str:
    for error in errors:
        if error.field == "message":
            if error.type == "string_too_long":
                return "MESSAGE_TOO_LONG"
            return "MISSING_MESSAGE"
    return "INVALID_REQUEST"


def _phone_digits(headers: Mapping[str, str]) -> Optional[str]:
    digits = re.sub(r"\D", "", headers.get(USER_PHONE_HEADER) or "")
    return digits or None


def _turn(role: str, text: str) -> Dict[str, Any]:
    return {"role": role, "parts": [{"text": text}]}


class ChatService:
    def __init__(
        self,
        model_service: ModelService,
        prompt_engine: PromptEngine,
        cache: AIResponseCache,
        limiter: RateLimiter,
        recorder: AnalyticsRecorder,
        clock: Clock = now_ms,
        today: Callable[[], date] = date.today,
    ):
        self.model_service = model_service
        self.prompt_engine = prompt_engine
        self.cache = cache
        self.limiter = limiter
        self.recorder = recorder
        self.clock = clock
        self.today = today

    async def _user_context(self, phone: Optional[str]) -> UserContext:
        if not phone:
            return UserContext()
        try:
            context = await run_in_threadpool(users_db.get_user_context_by_phone, phone)
        except Exception as e:
            logger.error(
                f"ChatService._user_context: lookup failed for {phone}: {e}", exc_info=True
            )
            return UserContext()
        return context or UserContext()

    def _validate(self, raw_body: Any) -> ChatRequest:
        result = validate_body(ChatRequest, raw_body)
        if not result.ok:
            code = _validation_error_code(result.errors)
            logger.info(
                f"ChatService._validate: rejected request with {code} "
                f"({[e.field for e in result.errors]})"
            )
            raise chat_error(code)
        return result.value

    async def chat(
        self,
        raw_body: Any,
        headers: Mapping[str, str],
        client_host: Optional[str] = None,
    ) -> Tuple[Dict[str, Any], Dict[str, str]]:
        """Returns the response payload and the rate limit headers."""
        method_name = "ChatService.chat"
        tracker = PerformanceTracker(self.recorder, self.clock)
        identifier = get_identifier(headers, client_host)

        reservation = self.limiter.reserve(identifier)
        if not reservation.allowed:
            logger.info(f"{method_name}: rate limit exceeded for {identifier}")
            raise RateLimitExceeded(reservation)

        try:
            request = self._validate(raw_body)
            if not self.model_service.is_available():
                logger.error(f"{method_name}: chat model unavailable (missing GEMINI_API_KEY?)")
                raise chat_error("MISSING_API_KEY")

            user_phone = _phone_digits(headers)
            reply, cached, metadata = await self._respond(request, user_phone, tracker)
        except Exception:
            self.limiter.release(identifier)
            raise

        self.limiter.record_request(identifier)
        duration = tracker.record_success(
            "chat", user_phone=user_phone, cached=cached, metadata=metadata
        )
        logger.success(
            f"{method_name}: replied in {duration}ms, user: {user_phone or 'anonymous'}, "
            f"season: {metadata['season']}, cached: {cached}"
        )

        history = [turn.model_dump() for turn in request.conversation_history]
        history.append(_turn("user", request.message.strip()))
        history.append(_turn("model", reply))

        payload = {
            "success": True,
            "data": {
                "response": reply,
                "conversation_history": history,
                "cached": cached,
            },
        }
        headers_out = rate_limit_headers(self.limiter.check_rate_limit(identifier))
        return payload, headers_out

    async def _respond(
        self, request: ChatRequest, user_phone: Optional[str], tracker: PerformanceTracker
    ) -> Tuple[str, bool, Dict[str, Any]]:
        method_name = "ChatService._respond"
        user = await self._user_context(user_phone)
        seasonal = get_seasonal_context(self.today())
        crops_context = request.crops_context or []
        message = request.message.strip()

        system_prompt = self.prompt_engine.build_chat_system_prompt(seasonal, user, crops_context)
        greeting = self.prompt_engine.build_chat_greeting(seasonal, user)
        if not system_prompt or not greeting:
            logger.error(f"{method_name}: chat prompt templates are missing")
            raise chat_error("AI_ERROR")

        history: List[Dict[str, Any]] = [_turn("user", system_prompt), _turn("model", greeting)]
        history.extend(turn.model_dump() for turn in request.conversation_history)

        async def generate() -> str:
            result = await self.model_service.generate_chat(history, message)
            if "error" in result:
                raise ModelFailure(str(result["error"]))
            text = result.get("text") or ""
            if not text.strip():
                raise ModelFailure("Empty response, likely blocked by safety settings")
            return text

        context = {
            "season": seasonal.season,
            "state": user.state,
            "crop": crops_context[0] if crops_context else None,
        }
        try:
            if request.conversation_history:
                reply, cached = await generate(), False
            else:
                reply, cached = await with_cache(self.cache, "chat", message, context, generate)
        except ModelFailure as e:
            code = classify_model_error(str(e))
            tracker.record_error("chat", code, str(e), user_phone=user_phone)
            logger.error(f"{method_name}: model failed with {code}: {e}")
            raise chat_error(code)
        except ApiError:
            raise
        except Exception as e:
            tracker.record_error("chat", "AI_ERROR", str(e), user_phone=user_phone)
            logger.error(f"{method_name}: unexpected failure: {e}", exc_info=True)
            raise chat_error("AI_ERROR")

        metadata = {
            "season": seasonal.season,
            "state": user.state,
            "crop": context["crop"],
            "model": self.model_service.model_name,
            "query_length": len(request.message),
            "response_length": len(reply),
        }
        return reply, cached, metadata
