# backend/coinfolio/middleware/rate_limit.py
"""
Rate limiting with slowapi.

Protects the CoinGecko quota (quote refresh, catalog passes) and the
ledger write path. Limits live in coinfolio/services/constants.py.

Key by: client IP. X-Forwarded-For / X-Real-IP are honored only when the
direct peer is a trusted proxy.
Storage: in-memory (one limiter per process).

Usage:
    from coinfolio.middleware.rate_limit import limiter, RATE_LIMIT_WRITE

    @router.post("/holdings/trades")
    @limiter.limit(RATE_LIMIT_WRITE)
    def record_trade(request: Request, ...):
        ...
"""

import logging

from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address
from starlette.requests import Request
from starlette.responses import JSONResponse

from coinfolio.config import settings
from coinfolio.services.constants import (
    RATE_LIMIT_DEFAULT,
    RATE_LIMIT_HEALTH,
    RATE_LIMIT_REFRESH,
    RATE_LIMIT_SYNC,
    RATE_LIMIT_WRITE,
)

logger = logging.getLogger(__name__)

# Seconds suggested to clients in Retry-After
DEFAULT_RETRY_AFTER = 60


def _peer_is_trusted_proxy(request: Request) -> bool:
    if settings.trust_proxy_headers:
        return True
    return get_remote_address(request) in settings.trusted_proxy_ips


def client_ip(request: Request) -> str:
    """Rate limit key: original client address, spoof-resistant."""
    if _peer_is_trusted_proxy(request):
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            # First entry is the original client
            return forwarded_for.split(",")[0].strip()
        real_ip = request.headers.get("X-Real-IP")
        if real_ip:
            return real_ip
    return get_remote_address(request)


limiter = Limiter(
    key_func=client_ip,
    default_limits=[RATE_LIMIT_DEFAULT],
)


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """429 in the standard error shape, with Retry-After."""
    limit_info = str(exc.detail) if exc.detail else "Rate limit exceeded"
    logger.warning(f"Rate limit exceeded for {client_ip(request)}: {limit_info}")

    return JSONResponse(
        status_code=429,
        content={
            "error": "RateLimitError",
            "message": f"Too many requests. {limit_info}",
            "details": {"retry_after": DEFAULT_RETRY_AFTER},
        },
        headers={"Retry-After": str(DEFAULT_RETRY_AFTER)},
    )


__all__ = [
    "limiter",
    "client_ip",
    "rate_limit_exceeded_handler",
    "SlowAPIMiddleware",
    "RATE_LIMIT_DEFAULT",
    "RATE_LIMIT_WRITE",
    "RATE_LIMIT_REFRESH",
    "RATE_LIMIT_SYNC",
    "RATE_LIMIT_HEALTH",
]
