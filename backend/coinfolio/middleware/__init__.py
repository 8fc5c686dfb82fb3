# backend/coinfolio/middleware/__init__.py
"""
ASGI middleware for Coinfolio.

- CorrelationIdMiddleware: correlation id and user id per request
- limiter / SlowAPIMiddleware: per-IP rate limits

Usage:
    from coinfolio.middleware import CorrelationIdMiddleware, limiter

    app.add_middleware(CorrelationIdMiddleware)
    app.state.limiter = limiter
"""

from coinfolio.middleware.correlation import (
    CorrelationIdMiddleware,
    CORRELATION_ID_HEADER,
    USER_ID_HEADER,
)
from coinfolio.middleware.rate_limit import (
    limiter,
    rate_limit_exceeded_handler,
    SlowAPIMiddleware,
)

__all__ = [
    "CorrelationIdMiddleware",
    "CORRELATION_ID_HEADER",
    "USER_ID_HEADER",
    "limiter",
    "rate_limit_exceeded_handler",
    "SlowAPIMiddleware",
]
