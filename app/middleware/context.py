"""
Request context middleware for observability.

Injects request_id into every request for:
- Log correlation (find all logs for one webhook delivery)
- Error tracking (tag Sentry events with the request)

Headers:
- X-Request-ID: Unique ID for this request (generated if not provided)
"""

import re
import time
from typing import Optional

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from app.core.context import (
    clear_context,
    generate_request_id,
    set_client_ip,
    set_request_id,
)
from app.core.rate_limit import get_client_ip

logger = structlog.get_logger(__name__)

# Request ID validation to prevent log injection attacks
MAX_ID_LENGTH = 64
SAFE_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_\-]+$")


def _validate_id(value: Optional[str]) -> Optional[str]:
    """
    Validate a client-provided request ID.

    Returns None if invalid (a generated ID is used instead): too long, or
    containing anything beyond letters, digits, underscore and dash.
    """
    if not value:
        return None
    if len(value) > MAX_ID_LENGTH:
        return None
    if not SAFE_ID_PATTERN.match(value):
        return None
    return value


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Binds request_id, client address, path and method to structlog
    contextvars for the duration of the request, logs request start and
    completion, and echoes X-Request-ID on the response.
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = _validate_id(request.headers.get("X-Request-ID")) or generate_request_id()
        client_ip = get_client_ip(request)
        set_request_id(request_id)
        set_client_ip(client_ip)
        request.state.request_id = request_id

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            path=request.url.path,
            method=request.method,
            client_ip=client_ip,
        )

        if not request.url.path.startswith("/health"):
            logger.info("Incoming request", user_agent=request.headers.get("user-agent"))

        start_time = time.perf_counter()
        status_code = 500  # Default to error in case of exception

        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers["X-Request-ID"] = request_id
            return response
        finally:
            if not request.url.path.startswith("/health"):
                logger.info(
                    "Request completed",
                    status_code=status_code,
                    duration_ms=round((time.perf_counter() - start_time) * 1000, 1),
                )
            clear_context()
            structlog.contextvars.clear_contextvars()
