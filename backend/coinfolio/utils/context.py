# backend/coinfolio/utils/context.py
"""
Request-scoped context for Coinfolio.

Holds the correlation id and the caller's user id in contextvars, so both
follow a request through async and threadpool code and show up in logs.

Usage:
    from coinfolio.utils.context import get_correlation_id, set_correlation_id

    set_correlation_id("abc-123")     # middleware
    get_correlation_id()              # anywhere downstream
"""

from contextvars import ContextVar

_correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
_user_id_var: ContextVar[str | None] = ContextVar("user_id", default=None)


# =============================================================================
# CORRELATION ID
# =============================================================================

def get_correlation_id() -> str | None:
    return _correlation_id_var.get()


def set_correlation_id(correlation_id: str) -> None:
    _correlation_id_var.set(correlation_id)


def clear_correlation_id() -> None:
    _correlation_id_var.set(None)


# =============================================================================
# USER ID
# =============================================================================

def get_user_id() -> str | None:
    """User id taken from X-User-Id for the current request, if any."""
    return _user_id_var.get()


def set_user_id(user_id: str | None) -> None:
    _user_id_var.set(user_id)


def clear_user_id() -> None:
    _user_id_var.set(None)
