# backend/coinfolio/main.py
"""
FastAPI application entry point.

This file:
- Configures application-wide logging
- Creates the FastAPI application
- Registers global exception handlers (domain errors → ErrorDetail)
- Registers all routers
- Defines health endpoints
"""

import logging

from fastapi import FastAPI, Depends, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from coinfolio.config import settings
from coinfolio.database import get_db
from coinfolio.middleware import (
    CorrelationIdMiddleware,
    limiter,
    rate_limit_exceeded_handler,
    SlowAPIMiddleware,
)
from coinfolio.middleware.rate_limit import RATE_LIMIT_HEALTH
from coinfolio.routers import catalog_router, holdings_router, transactions_router
from coinfolio.schemas.errors import ErrorDetail, ValidationErrorDetail
from coinfolio.services.exceptions import (
    ServiceError,
    ValidationError,
    NotFoundError,
    BusinessRuleViolation,
    InsufficientBalanceError,
    CatalogError,
    RateLimitError,
    PersistenceError,
)
from coinfolio.utils.logging import setup_logging

logger = logging.getLogger(__name__)

# =============================================================================
# LOGGING SETUP (must be before app creation)
# =============================================================================

setup_logging()

# =============================================================================
# APPLICATION SETUP
# =============================================================================

app = FastAPI(
    title=settings.app_name,
    description="Crypto holdings ledger and coin catalog API",
    version="0.1.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-User-Id", "X-Correlation-ID"],
)

# Order matters: last added = first executed
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
app.add_middleware(SlowAPIMiddleware)
app.add_middleware(CorrelationIdMiddleware)


# =============================================================================
# GLOBAL EXCEPTION HANDLERS
# =============================================================================
# Starlette picks the handler of the most specific class in the MRO, so the
# ServiceError fallback only catches what the others do not.

def error_response(
        status_code: int,
        error: str,
        message: str,
        details: dict | None = None,
        headers: dict | None = None,
) -> JSONResponse:
    body = ErrorDetail(error=error, message=message, details=details)
    return JSONResponse(status_code=status_code, content=body.model_dump(), headers=headers)


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    """Unknown coin, holding or transaction (404)."""
    logger.info(f"Not found: {exc.resource_type} {exc.resource_id}")
    return error_response(
        404,
        type(exc).__name__,
        str(exc),
        {"resource_type": exc.resource_type, "resource_id": exc.resource_id},
    )


@app.exception_handler(InsufficientBalanceError)
async def insufficient_balance_handler(
        request: Request, exc: InsufficientBalanceError
) -> JSONResponse:
    """Sell above the held quantity (400)."""
    logger.info(f"Rejected oversell of {exc.coin_id}: {exc.requested} > {exc.available}")
    details = {
        "coin_id": exc.coin_id,
        "requested": str(exc.requested),
        "available": str(exc.available),
    }
    return error_response(400, "InsufficientBalanceError", str(exc), details)


@app.exception_handler(BusinessRuleViolation)
async def business_rule_handler(request: Request, exc: BusinessRuleViolation) -> JSONResponse:
    return error_response(400, type(exc).__name__, str(exc))


@app.exception_handler(ValidationError)
async def service_validation_handler(request: Request, exc: ValidationError) -> JSONResponse:
    """Input the service cannot use, e.g. a zero quantity (400)."""
    details = {"field": exc.field} if exc.field else None
    return error_response(400, type(exc).__name__, str(exc), details)


@app.exception_handler(RateLimitError)
async def provider_rate_limit_handler(request: Request, exc: RateLimitError) -> JSONResponse:
    """CoinGecko rate limit still exceeded after retries (429)."""
    logger.warning(f"Provider rate limit: {exc}")
    return error_response(
        429,
        "RateLimitError",
        str(exc),
        {"provider": exc.provider, "retry_after": exc.retry_after},
        headers={"Retry-After": str(exc.retry_after)} if exc.retry_after else None,
    )


@app.exception_handler(CatalogError)
async def catalog_error_handler(request: Request, exc: CatalogError) -> JSONResponse:
    """Remote catalog unavailable after retries (503)."""
    logger.error(f"Remote catalog error: {exc}")
    return error_response(503, type(exc).__name__, str(exc), {"provider": exc.provider})


@app.exception_handler(PersistenceError)
async def persistence_error_handler(request: Request, exc: PersistenceError) -> JSONResponse:
    """Write rolled back by the database (500)."""
    logger.error(f"Persistence error during {exc.operation}: {exc.reason}")
    return error_response(500, "PersistenceError", f"Failed to {exc.operation}")


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    logger.error(f"Unhandled service error: {exc}")
    return error_response(500, type(exc).__name__, str(exc))


HTTP_ERROR_TYPES = {
    400: "BadRequestError",
    401: "UnauthorizedError",
    403: "ForbiddenError",
    404: "NotFoundError",
    405: "MethodNotAllowedError",
    409: "ConflictError",
    422: "ValidationError",
    429: "RateLimitError",
    500: "InternalServerError",
    503: "ServiceUnavailableError",
}


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Convert FastAPI's {"detail": "..."} into ErrorDetail."""
    return error_response(
        exc.status_code,
        HTTP_ERROR_TYPES.get(exc.status_code, "HTTPError"),
        str(exc.detail) if exc.detail else "An error occurred",
        headers=exc.headers,
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
        request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Pydantic request validation failures (422)."""
    errors = [
        {
            "field": ".".join(str(loc) for loc in error["loc"]),
            "message": error["msg"],
            "type": error["type"],
        }
        for error in exc.errors()
    ]
    return JSONResponse(
        status_code=422,
        content=ValidationErrorDetail(details=errors).model_dump(),
    )


# =============================================================================
# ROUTER REGISTRATION
# =============================================================================

app.include_router(holdings_router)  # /holdings/*
app.include_router(transactions_router)  # /transactions/*
app.include_router(catalog_router)  # /catalog/*


# =============================================================================
# HEALTH ENDPOINTS
# =============================================================================

@app.get("/health", tags=["Health"])
@limiter.limit(RATE_LIMIT_HEALTH)
def health_check(request: Request, db: Session = Depends(get_db)):
    """
    Health of the service and its database.

    - 200: database reachable
    - 503: database unreachable, take this instance out of rotation
    """
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.error(f"Database health check failed: {e}")
        return JSONResponse(
            status_code=503,
            content={
                "status": "unhealthy",
                "checks": {"database": {"status": "unhealthy", "error": str(e)}},
            },
        )

    return {
        "status": "healthy",
        "checks": {
            "database": {
                "status": "healthy",
                "dialect": "sqlite" if settings.is_sqlite else "postgresql",
            },
        },
    }


@app.get("/health/live", tags=["Health"])
@limiter.limit(RATE_LIMIT_HEALTH)
def liveness_check(request: Request):
    """Liveness probe: succeeds whenever the process is up."""
    return {"status": "alive"}


@app.get("/health/ready", tags=["Health"])
@limiter.limit(RATE_LIMIT_HEALTH)
def readiness_check(request: Request, db: Session = Depends(get_db)):
    """Readiness probe: 503 while the database is unreachable."""
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ready"}
    except SQLAlchemyError as e:
        logger.error(f"Readiness check failed: {e}")
        return JSONResponse(
            status_code=503,
            content={"status": "not_ready", "reason": "database unavailable"},
        )
