from datetime import date

import pytest
from fastapi.testclient import TestClient

from agrigrow.app.config import AICacheConfig, AnalyticsConfig, RateLimitConfig, settings
from agrigrow.app.core.ai_cache import AIResponseCache
from agrigrow.app.core.rate_limit import RateLimiter
from agrigrow.app.db import users as users_db
from agrigrow.app.db.schemas import UserContext
from agrigrow.app.main import create_app
from agrigrow.app.prompts.prompt_engine import PromptEngine
from agrigrow.app.services.analytics_service import AnalyticsRecorder
from agrigrow.app.services.chat_service import ChatService

CHAT_URL = "/api/v1/crop-ai/chat"
PHONE = {"x-user-phone": "98765-43210"}
QUESTION = "How to control aphids on mustard?"


class FakeModelService:
    model_name = "fake-gemini"

    def __init__(self, replies=None, available=True):
        self.replies = list(replies or [])
        self.available = available
        self.calls = []

    def is_available(self) -> bool:
        return self.available

    async def generate_chat(self, history, message):
        self.calls.append((history, message))
        if self.replies:
            return self.replies.pop(0)
        return {"text": "Spray neem oil at 5 ml per litre of water."}


class Harness:
    def __init__(self, clock, model, requests_per_hour=50):
        self.model = model
        self.events = []
        self.cache = AIResponseCache(AICacheConfig(enabled=True), clock=clock)
        self.limiter = RateLimiter(
            RateLimitConfig(enabled=True, requests_per_hour=requests_per_hour, requests_per_day=200),
            clock=clock,
        )
        self.recorder = AnalyticsRecorder(AnalyticsConfig(), sink=self.events.append)
        engine = PromptEngine(
            template_dir=settings.prompts.engine.template_dir,
            default_version=settings.prompts.engine.default_version,
        )

        app = create_app(with_lifecycle=False)
        app.state.ai_cache = self.cache
        app.state.rate_limiter = self.limiter
        app.state.analytics = self.recorder
        app.state.chat_service = ChatService(
            model_service=model,
            prompt_engine=engine,
            cache=self.cache,
            limiter=self.limiter,
            recorder=self.recorder,
            clock=clock,
            today=lambda: date(2025, 1, 15),
        )
        self.client = TestClient(app)

    def post(self, body, headers=PHONE):
        return self.client.post(CHAT_URL, json=body, headers=headers)

    def hourly_remaining(self, identifier="user:9876543210"):
        return self.limiter.check_rate_limit(identifier).hourly_remaining


@pytest.fixture(autouse=True)
def no_user_profile(monkeypatch):
    monkeypatch.setattr(users_db, "get_user_context_by_phone", lambda phone: None)


@pytest.fixture
def harness(clock):
    return Harness(clock, FakeModelService())


class TestSuccessfulChat:
    def test_reply_history_and_quota_headers(self, harness):
        response = harness.post({"message": QUESTION})

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["data"]["response"].startswith("Spray neem oil")
        assert body["data"]["cached"] is False
        history = body["data"]["conversation_history"]
        assert [turn["role"] for turn in history] == ["user", "model"]
        assert history[0]["parts"][0]["text"] == QUESTION

        assert response.headers["X-RateLimit-Remaining-Hourly"] == "49"
        assert response.headers["X-RateLimit-Limit-Hourly"] == "50"
        assert harness.recorder.pending() == 1

    def test_model_is_primed_with_seasonal_system_prompt(self, harness):
        harness.post({"message": QUESTION})

        history, message = harness.model.calls[0]
        assert message == QUESTION
        assert history[0]["role"] == "user"
        assert "Rabi" in history[0]["parts"][0]["text"]
        assert history[1]["role"] == "model"
        assert "Namaste" in history[1]["parts"][0]["text"]

    def test_repeat_question_is_served_from_cache(self, harness):
        harness.post({"message": QUESTION})
        second = harness.post({"message": "how to control APHIDS on mustard"})

        assert second.status_code == 200
        assert second.json()["data"]["cached"] is True
        assert len(harness.model.calls) == 1
        assert harness.hourly_remaining() == 48

    def test_follow_up_turns_bypass_the_cache(self, harness):
        first = harness.post({"message": QUESTION}).json()
        history = first["data"]["conversation_history"]

        harness.post({"message": QUESTION, "conversationHistory": history})
        assert len(harness.model.calls) == 2
        primed, _ = harness.model.calls[1]
        assert len(primed) == 4

    def test_profile_is_woven_into_the_prompt(self, harness, monkeypatch):
        monkeypatch.setattr(
            users_db,
            "get_user_context_by_phone",
            lambda phone: UserContext(name="Ramesh", state="Punjab", crops=["wheat"]),
        )
        harness.post({"message": QUESTION, "cropsContext": ["mustard"]})

        system_prompt = harness.model.calls[0][0][0]["parts"][0]["text"]
        assert "Ramesh" in system_prompt
        assert "wheat, mustard" in system_prompt

    def test_profile_lookup_failure_is_not_fatal(self, harness, monkeypatch):
        def broken(phone):
            raise RuntimeError("db down")

        monkeypatch.setattr(users_db, "get_user_context_by_phone", broken)
        assert harness.post({"message": QUESTION}).status_code == 200


class TestRejectedRequests:
    @pytest.mark.parametrize(
        "body, code",
        [
            ({"message": "x" * 2001}, "MESSAGE_TOO_LONG"),
            ({}, "MISSING_MESSAGE"),
            ({"message": "   "}, "MISSING_MESSAGE"),
            ([1, 2, 3], "INVALID_REQUEST"),
        ],
    )
    def test_validation_errors_do_not_consume_quota(self, harness, body, code):
        response = harness.post(body)

        assert response.status_code == 400
        assert response.json()["error_code"] == code
        assert response.json()["success"] is False
        assert harness.hourly_remaining() == 50
        assert harness.recorder.pending() == 0

    def test_non_json_body(self, harness):
        response = harness.client.post(
            CHAT_URL, content=b"not json", headers={**PHONE, "content-type": "application/json"}
        )
        assert response.status_code == 400
        assert response.json()["error_code"] == "INVALID_REQUEST"

    def test_rate_limited_caller_gets_retry_after(self, clock):
        harness = Harness(clock, FakeModelService(), requests_per_hour=2)
        harness.post({"message": QUESTION})
        harness.post({"message": "Best fertilizer schedule for wheat"})

        response = harness.post({"message": "When should I sow chickpea seeds"})
        assert response.status_code == 429
        body = response.json()
        assert body["error_code"] == "RATE_LIMIT_EXCEEDED"
        assert body["limit_type"] == "hourly"
        assert body["retryable"] is True
        assert body["retry_after"] > 0
        assert response.headers["Retry-After"] == str(body["retry_after"])
        assert len(harness.model.calls) == 2

    def test_anonymous_callers_are_limited_by_address(self, clock):
        harness = Harness(clock, FakeModelService(), requests_per_hour=1)
        forwarded = {"x-forwarded-for": "10.0.0.7, 172.16.0.1"}
        assert harness.post({"message": QUESTION}, headers=forwarded).status_code == 200
        assert harness.post({"message": QUESTION}, headers=forwarded).status_code == 429
        assert harness.hourly_remaining("ip:10.0.0.7") == 0


class TestModelFailures:
    @pytest.mark.parametrize(
        "reply, status, code",
        [
            ({"error": "Response was blocked by safety settings (SAFETY)"}, 422, "AI_BLOCKED"),
            ({"text": "   "}, 422, "AI_BLOCKED"),
            ({"error": "Gemini request failed with status 503"}, 500, "AI_ERROR"),
        ],
    )
    def test_failures_are_classified_and_release_the_slot(self, clock, reply, status, code):
        harness = Harness(clock, FakeModelService(replies=[reply]))
        response = harness.post({"message": QUESTION})

        assert response.status_code == status
        body = response.json()
        assert body["error_code"] == code
        assert body["retryable"] is True
        assert harness.hourly_remaining() == 50
        assert harness.recorder.pending() == 1

    def test_failed_replies_are_not_cached(self, clock):
        harness = Harness(clock, FakeModelService(replies=[{"error": "upstream timeout"}]))
        assert harness.post({"message": QUESTION}).status_code == 500

        retry = harness.post({"message": QUESTION})
        assert retry.status_code == 200
        assert retry.json()["data"]["cached"] is False

    def test_missing_model_reports_missing_api_key(self, clock):
        harness = Harness(clock, FakeModelService(available=False))
        response = harness.post({"message": QUESTION})

        assert response.status_code == 500
        assert response.json()["error_code"] == "MISSING_API_KEY"
        assert harness.hourly_remaining() == 50
        assert harness.model.calls == []


class TestCacheAdmin:
    def test_stats_and_invalidate(self, harness):
        harness.post({"message": QUESTION})
        stats = harness.client.get("/api/v1/crop-ai/cache/stats").json()["data"]
        assert stats["size"] == 1

        removed = harness.client.delete("/api/v1/crop-ai/cache", params={"pattern": "^chat:"})
        assert removed.json()["data"]["removed"] == 1
        assert len(harness.cache) == 0

    def test_bad_pattern_is_rejected(self, harness):
        response = harness.client.delete("/api/v1/crop-ai/cache", params={"pattern": "("})
        assert response.status_code == 400

    def test_quota_status(self, harness):
        harness.post({"message": QUESTION})
        response = harness.client.get("/api/v1/crop-ai/rate-limit", headers=PHONE)
        assert response.json()["data"]["hourly_remaining"] == 49
