from typing import Any, Dict, List, Optional

from agrigrow.app.core.rate_limit import RateLimitResult

MAX_MESSAGE_LENGTH = 2000


class ApiError(Exception):
    """An error that maps directly onto a JSON error envelope."""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 400,
        retryable: bool = False,
        details: Optional[Any] = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.retryable = retryable
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "success": False,
            "error": self.message,
            "error_code": self.code,
        }
        if self.retryable:
            body["retryable"] = True
        if self.details is not None:
            body["details"] = self.details
        return body


class RateLimitExceeded(ApiError):
    def __init__(self, result: RateLimitResult):
        super().__init__(
            code="RATE_LIMIT_EXCEEDED",
            message=result.error_message
            or "Rate limit exceeded. Please try again later.",
            status_code=429,
            retryable=True,
        )
        self.result = result

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body["limit_type"] = self.result.limit_exceeded
        body["retry_after"] = self.result.retry_after
        return body


class RequestValidationFailed(ApiError):
    def __init__(self, fields: List[Dict[str, str]], message: str = "Invalid request"):
        super().__init__("VALIDATION_ERROR", message, status_code=400)
        self.fields = fields

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body["fields"] = self.fields
        return body


# Chat error catalogue: code -> (status, user-facing message, retryable)
CHAT_ERRORS: Dict[str, tuple] = {
    "MISSING_API_KEY": (
        500,
        "AI service is temporarily unavailable. Please try again later.",
        False,
    ),
    "MISSING_MESSAGE": (400, "Please enter a message to send.", False),
    "MESSAGE_TOO_LONG": (
        400,
        f"Your message is too long. Please keep it under {MAX_MESSAGE_LENGTH} characters.",
        False,
    ),
    "AI_BLOCKED": (
        422,
        "I couldn't process that request. Please try rephrasing your question.",
        True,
    ),
    "AI_ERROR": (500, "Something went wrong. Please try again.", True),
    "INVALID_REQUEST": (400, "Invalid request. Please try again.", False),
}


def chat_error(code: str) -> ApiError:
    status_code, message, retryable = CHAT_ERRORS.get(code, CHAT_ERRORS["AI_ERROR"])
    return ApiError(code, message, status_code=status_code, retryable=retryable)


def not_found(message: str = "Not found") -> ApiError:
    return ApiError("NOT_FOUND", message, status_code=404)


def forbidden(message: str) -> ApiError:
    return ApiError("FORBIDDEN", message, status_code=403)


def unauthorized(message: str = "Authentication required") -> ApiError:
    return ApiError("UNAUTHORIZED", message, status_code=401)


def bad_request(message: str, code: str = "INVALID_REQUEST") -> ApiError:
    return ApiError(code, message, status_code=400)
