from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger

from agrigrow.app.api.v1.validation import field_errors_from_pydantic
from agrigrow.app.core.errors import ApiError, RateLimitExceeded, RequestValidationFailed
from agrigrow.app.core.rate_limit import rate_limit_headers


async def api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
    method_name = "api_error_handler"
    headers = None
    if isinstance(exc, RateLimitExceeded):
        headers = rate_limit_headers(exc.result)

    log = logger.error if exc.status_code >= 500 else logger.info
    log(
        f"{method_name}: {request.method} {request.url.path} -> {exc.status_code} {exc.code}"
    )
    return JSONResponse(
        status_code=exc.status_code, content=exc.to_dict(), headers=headers
    )


async def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    failed = RequestValidationFailed(field_errors_from_pydantic(exc.errors()))
    logger.info(
        f"request_validation_handler: {request.method} {request.url.path} rejected "
        f"({len(failed.fields)} field errors)"
    )
    return JSONResponse(status_code=failed.status_code, content=failed.to_dict())


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        f"unhandled_error_handler: {request.method} {request.url.path} failed: "
        f"{type(exc).__name__} - {exc}",
        exc_info=True,
    )
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": "Internal server error",
            "error_code": "INTERNAL_ERROR",
        },
    )


def register_exception_handlers(app: FastAPI):
    app.add_exception_handler(ApiError, api_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
