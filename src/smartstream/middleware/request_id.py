"""Request ID middleware for request correlation.

Assigns a UUID4 to each request (or accepts a client-provided X-Request-ID),
stores it in request.state and echoes it in the response. Request and
response lines are logged with timing so an operator can correlate an API
call with the [job-id] lines the supervisor logs for it.

Logging Strategy:
    DEBUG - Incoming requests, client-provided IDs
    INFO  - Successful responses with duration
    WARN  - Client errors (4xx)
    ERROR - Server errors (5xx), unhandled exceptions
"""
from __future__ import annotations

import logging
import time
import uuid
from typing import Awaitable, Callable, Final

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

logger = logging.getLogger(__name__)

QUIET_PATHS: Final[frozenset[str]] = frozenset({"/health", "/health/live", "/metrics"})
"""Probe endpoints logged at DEBUG only."""


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Adds a request ID to every request and logs its outcome.

    Args:
        app: ASGI application
        header_name: HTTP header carrying the request ID
    """

    def __init__(self, app: ASGIApp, header_name: str = "X-Request-ID") -> None:
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        request_id = request.headers.get(self.header_name) or str(uuid.uuid4())
        request.state.request_id = request_id

        start_time = time.monotonic()
        logger.debug(f"→ {request.method} {request.url.path}", extra={"request_id": request_id})

        try:
            response = await call_next(request)
        except Exception as e:
            duration = time.monotonic() - start_time
            logger.error(
                f"Request {request_id} failed after {duration*1000:.2f}ms: "
                f"{type(e).__name__}: {e}",
                exc_info=True,
                extra={"request_id": request_id}
            )
            raise

        response.headers[self.header_name] = request_id
        self._log_response(request, response.status_code, request_id, time.monotonic() - start_time)
        return response

    def _log_response(self, request: Request, status: int, request_id: str, duration: float) -> None:
        if status >= 500:
            log_level = logging.ERROR
        elif status >= 400:
            log_level = logging.WARNING
        elif request.url.path in QUIET_PATHS:
            log_level = logging.DEBUG
        else:
            log_level = logging.INFO

        duration_ms = duration * 1000
        logger.log(
            log_level,
            f"← {request.method} {request.url.path} {status} ({duration_ms:.2f}ms)",
            extra={
                "request_id": request_id,
                "status_code": status,
                "duration_ms": round(duration_ms, 2)
            }
        )


def get_request_id(request: Request) -> str | None:
    """Request ID of the current request (None if the middleware is not active)."""
    return getattr(request.state, "request_id", None)
