# backend/coinfolio/schemas/__init__.py
"""
Pydantic request/response schemas for the HTTP API.

Service-layer result types are dataclasses; these models only describe
what crosses the wire.
"""

from coinfolio.schemas.errors import ErrorDetail, ValidationErrorDetail

__all__ = [
    "ErrorDetail",
    "ValidationErrorDetail",
]
