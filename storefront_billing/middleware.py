"""FastAPI middleware for request/response logging and correlation."""

import time
import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from storefront_billing.logging_config import bind_context, clear_context, get_logger

logger = get_logger(__name__)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs every request with a correlation id.

    - Reuses an incoming ``X-Request-ID`` or generates one
    - Logs method, path and client on entry; status and duration on exit
    - Binds ``request_id`` to all logs emitted while handling the request
    """

    def __init__(self, app: ASGIApp, include_request_details: bool = True):
        super().__init__(app)
        self.include_request_details = include_request_details

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        bind_context(request_id=request_id)

        if self.include_request_details:
            logger.info(
                "request_started",
                method=request.method,
                path=request.url.path,
                query_params=str(request.query_params) if request.query_params else None,
                client_host=request.client.host if request.client else "unknown",
                user_agent=request.headers.get("user-agent"),
            )
        else:
            logger.info("request_started", method=request.method, path=request.url.path)

        start_time = time.perf_counter()
        try:
            response = await call_next(request)
            logger.info(
                "request_completed",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round((time.perf_counter() - start_time) * 1000, 2),
            )
            response.headers["X-Request-ID"] = request_id
            return response

        except Exception as exc:
            logger.error(
                "request_failed",
                method=request.method,
                path=request.url.path,
                duration_ms=round((time.perf_counter() - start_time) * 1000, 2),
                error=str(exc),
                error_type=type(exc).__name__,
                exc_info=True,
            )
            raise

        finally:
            clear_context()


# Path segment -> context key bound for the segment that follows it
_PATH_CONTEXT = {
    "stores": "store_id",
    "subscriptions": "subscription_id",
}


class ContextMiddleware(BaseHTTPMiddleware):
    """Binds ``store_id``/``subscription_id`` found in the path to the logging context."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        parts = [part for part in request.url.path.split("/") if part]
        for index, part in enumerate(parts[:-1]):
            key = _PATH_CONTEXT.get(part)
            if key:
                bind_context(**{key: parts[index + 1]})

        return await call_next(request)
