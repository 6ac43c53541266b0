"""
Application Middleware for the companion API.

Cross-cutting request handling shared by every router.

Key Components:
- `CorrelationMiddleware`: Assigns a correlation ID to every incoming request
  (honouring `X-Correlation-ID` / `X-Request-ID`) so log lines from one request
  can be grouped, and echoes it back in the response headers.
- `PerformanceMiddleware`: Logs request start and completion, adds an
  `X-Process-Time` header and warns about slow requests.
- `sync_exception_handler`: Turns any `SyncAPIException` escaping a route into
  a standardized JSON error response.

Architectural Design:
- Built on Starlette's `BaseHTTPMiddleware`. The correlation middleware is
  added last so it runs first and the ID is set for everything downstream.
"""

import time
import uuid
from typing import Callable

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from .exceptions import SyncAPIException, to_http_exception
from .logging_config import get_logger, set_correlation_id

logger = get_logger("core.middleware")

SLOW_REQUEST_SECONDS = 1.0


class CorrelationMiddleware(BaseHTTPMiddleware):
    """Middleware to add correlation IDs to requests"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = (
            request.headers.get("X-Correlation-ID")
            or request.headers.get("X-Request-ID")
            or f"req-{uuid.uuid4().hex[:12]}"
        )
        set_correlation_id(correlation_id)
        request.state.correlation_id = correlation_id

        response = await call_next(request)
        response.headers["X-Correlation-ID"] = correlation_id
        return response


class PerformanceMiddleware(BaseHTTPMiddleware):
    """Middleware for request timing and logging"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()
        logger.debug(f"Request started: {request.method} {request.url.path}")

        response = await call_next(request)

        process_time = time.time() - start_time
        response.headers["X-Process-Time"] = str(round(process_time * 1000, 2))
        logger.info(
            f"Request completed: {request.method} {request.url.path} - {response.status_code}",
            extra={
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "process_time_ms": round(process_time * 1000, 2),
            },
        )

        if process_time > SLOW_REQUEST_SECONDS:
            logger.warning(f"Slow request detected: {request.method} {request.url.path}")

        return response


async def sync_exception_handler(request: Request, exc: SyncAPIException) -> JSONResponse:
    """Render a SyncAPIException as a JSON error body"""
    logger.error(
        f"Application error: {exc.message}",
        extra={
            "error_type": type(exc).__name__,
            "error_code": exc.error_code,
            "path": request.url.path,
            "method": request.method,
        },
    )
    http_exc = to_http_exception(exc)
    return JSONResponse(
        status_code=http_exc.status_code,
        content={
            "error": {
                "type": type(exc).__name__,
                "code": exc.error_code,
                "message": exc.message,
                "details": exc.details,
                "correlation_id": getattr(request.state, "correlation_id", None),
            }
        },
    )
