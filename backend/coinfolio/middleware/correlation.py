# backend/coinfolio/middleware/correlation.py
"""
Request context middleware.

For each request:
1. Correlation id from X-Correlation-ID, else X-Request-ID, else a new uuid4
2. Caller id from X-User-Id (set by the authenticating gateway), if present
3. Both stored in contextvars for logging, cleared when the request ends
4. Correlation id echoed back in the X-Correlation-ID response header

Usage:
    app.add_middleware(CorrelationIdMiddleware)

    curl -H "X-Correlation-ID: trace-123" http://localhost:8000/health
"""

import logging
import uuid
from typing import Awaitable, Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from coinfolio.utils.context import (
    clear_correlation_id,
    clear_user_id,
    set_correlation_id,
    set_user_id,
)

logger = logging.getLogger(__name__)

CORRELATION_ID_HEADER = "X-Correlation-ID"
REQUEST_ID_HEADER = "X-Request-ID"
USER_ID_HEADER = "X-User-Id"


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Tags each request with a correlation id and the caller's user id."""

    async def dispatch(
            self,
            request: Request,
            call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        correlation_id = (
            request.headers.get(CORRELATION_ID_HEADER)
            or request.headers.get(REQUEST_ID_HEADER)
            or str(uuid.uuid4())
        )
        set_correlation_id(correlation_id)
        set_user_id(request.headers.get(USER_ID_HEADER))

        try:
            response = await call_next(request)
            response.headers[CORRELATION_ID_HEADER] = correlation_id
            return response
        finally:
            clear_correlation_id()
            clear_user_id()
