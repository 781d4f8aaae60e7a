"""
FastAPI Middleware

Request context (correlation id, actor reset, access log), security headers
and the exception handlers that render every failure as the JSON error
envelope ``{"error": {"code", "message", "details"}}``.
"""
import logging
import time
from typing import Callable

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from splitledger.core.exceptions import AppException, ErrorCode, RateLimitedError
from splitledger.core.logging import get_correlation_id, get_logger, set_actor_id, set_correlation_id

logger = get_logger(__name__)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Binds X-Correlation-ID (taken from the request or generated) to the
    request's log lines and echoes it back, then logs the outcome with its
    duration. 4xx responses log as warnings.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = set_correlation_id(request.headers.get("X-Correlation-ID"))
        set_actor_id(None)
        started = time.perf_counter()
        route = f"{request.method} {request.url.path}"

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                f"Request failed: {route}",
                extra_data={"duration_seconds": round(time.perf_counter() - started, 4), "error": str(e)},
                exc_info=True,
            )
            raise

        logger.log(
            logging.INFO if response.status_code < 400 else logging.WARNING,
            f"Request completed: {route}",
            extra_data={
                "status_code": response.status_code,
                "duration_seconds": round(time.perf_counter() - started, 4),
            },
        )
        response.headers["X-Correlation-ID"] = correlation_id
        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """nosniff always; HSTS and upgrade-insecure-requests outside DEBUG"""

    def __init__(self, app: FastAPI, *, debug: bool = False) -> None:
        super().__init__(app)
        self._debug = debug

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        if not self._debug:
            response.headers["Content-Security-Policy"] = "upgrade-insecure-requests"
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response


def _envelope(status_code: int, code: ErrorCode, message: str, details: dict, headers: dict | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": {"code": code.value, "message": message, "details": details}},
        headers={"X-Correlation-ID": get_correlation_id(), **(headers or {})},
    )


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    logger.warning(
        f"Application exception: {exc.error_code.value}",
        extra_data={"message": exc.message, "details": exc.details, "path": request.url.path},
    )
    headers = {}
    if isinstance(exc, RateLimitedError):
        headers["Retry-After"] = str(exc.retry_after_seconds)
    return _envelope(exc.status_code, exc.error_code, exc.message, exc.details, headers)


async def request_validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Body and query validation failures look like ValidationException"""
    errors = [
        {"field": ".".join(str(p) for p in err.get("loc", ())), "message": err.get("msg")}
        for err in exc.errors()
    ]
    return _envelope(
        400,
        ErrorCode.VALIDATION_ERROR,
        "Invalid request",
        {"errors": errors, "retryable": False, "action": "fix_input"},
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        f"Unhandled exception: {type(exc).__name__}",
        extra_data={"message": str(exc), "path": request.url.path},
        exc_info=True,
    )
    return _envelope(
        500,
        ErrorCode.INTERNAL_ERROR,
        "An unexpected error occurred",
        {"retryable": True, "action": None},
    )


def setup_middleware(app: FastAPI) -> None:
    """The last one added is the outermost"""
    from splitledger.core.config import settings

    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(SecurityHeadersMiddleware, debug=settings.DEBUG)


def setup_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(RequestValidationError, request_validation_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
