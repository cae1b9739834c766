from __future__ import annotations

import traceback

from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from listeners.logging import get_logger
from listeners.service.errors import RateLimitedError, ServiceError
from listeners.service.runtime import get_runtime

logger = get_logger(__name__)


def _error_response(
    status_code: int,
    message: str,
    code: str | None,
    extra: dict | None = None,
    headers: dict | None = None,
) -> JSONResponse:
    body = {"message": message, "code": code}
    if extra:
        body.update(extra)
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body), headers=headers)


def register_exception_handlers(app: FastAPI) -> None:
    """Install the handlers that turn errors into ``{message, code}`` bodies."""

    @app.exception_handler(RateLimitedError)
    async def handle_rate_limited(request: Request, exc: RateLimitedError):
        headers = dict(exc.detail.get("headers") or {})
        headers["Retry-After"] = str(max(1, exc.retry_after_ms // 1000))
        return JSONResponse(
            status_code=429,
            content={"error": exc.message, "retryAfter": exc.retry_after_ms},
            headers=headers,
        )

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
        )
        return _error_response(exc.status_code, exc.message, exc.error_code, exc.detail)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = [
            {
                "field": ".".join(str(part) for part in err.get("loc", ()) if part != "body"),
                "message": err.get("msg"),
            }
            for err in exc.errors()
        ]
        logger.warning(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            error_count=len(errors),
        )
        return _error_response(400, "Validation failed", "VALIDATION_ERROR", {"errors": errors})

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        return _error_response(exc.status_code, message, None, headers=exc.headers)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        extra = None
        if not get_runtime().settings.is_production:
            extra = {"stack": "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))}
        return _error_response(500, "Internal server error", None, extra)
