"""FastAPI middleware for request/response logging and correlation."""

import time
import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from membership_subscriptions.logging_config import bind_context, clear_context, get_logger

logger = get_logger(__name__)

# Path segments followed by a profile id
PROFILE_SEGMENTS = ("profile", "resign")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs each request with a request_id bound to the log context.

    The id is echoed back in the X-Request-ID response header.
    """

    def __init__(self, app: ASGIApp, include_request_details: bool = True):
        """Initialize middleware.

        Args:
            app: ASGI application
            include_request_details: If True, log query string, client and user agent
        """
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

        start_time = time.time()
        try:
            response = await call_next(request)

            logger.info(
                "request_completed",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round((time.time() - start_time) * 1000, 2),
            )
            response.headers["X-Request-ID"] = request_id
            return response

        except Exception as exc:
            logger.error(
                "request_failed",
                method=request.method,
                path=request.url.path,
                duration_ms=round((time.time() - start_time) * 1000, 2),
                error=str(exc),
                error_type=type(exc).__name__,
                exc_info=True,
            )
            raise

        finally:
            clear_context()


class ContextMiddleware(BaseHTTPMiddleware):
    """Binds the profile id from /profile/{id}/... and /resign/{id} paths."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        parts = request.url.path.split("/")
        for segment in PROFILE_SEGMENTS:
            if segment in parts:
                index = parts.index(segment)
                if len(parts) > index + 1 and parts[index + 1]:
                    bind_context(profile_id=parts[index + 1])
                break

        return await call_next(request)
