# backend/coinfolio/services/exceptions.py
"""
Service layer exceptions.

These exceptions represent domain-specific errors and contain NO HTTP knowledge.
The exception handlers in main.py map them to HTTP responses.

Exception Hierarchy:
    ServiceError (base)
    ├── ValidationError
    │   └── InvalidQuantityError
    ├── NotFoundError
    │   ├── CoinNotFoundError
    │   ├── HoldingNotFoundError
    │   └── TransactionNotFoundError
    ├── BusinessRuleViolation
    │   └── InsufficientBalanceError
    ├── CatalogError
    │   ├── RemoteUnavailableError
    │   └── RateLimitError
    └── PersistenceError

Empty upstream responses are deliberately NOT an exception: remote clients
return an empty list and the sync engine treats it as a no-op.
"""

from decimal import Decimal


class ServiceError(Exception):
    """
    Base exception for all service layer errors.

    Attributes:
        message: Human-readable error description
    """

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(self.message)

    def __str__(self) -> str:
        return self.message


# =============================================================================
# VALIDATION ERRORS
# =============================================================================


class ValidationError(ServiceError):
    """
    Raised when a service receives structurally valid but unusable input.

    Attributes:
        field: The field that failed validation (optional)
    """

    def __init__(self, message: str, field: str | None = None) -> None:
        self.field = field
        super().__init__(message)


class InvalidQuantityError(ValidationError):
    """Raised for a zero trade quantity (positive buys, negative sells)."""

    def __init__(self, quantity: Decimal) -> None:
        self.quantity = quantity
        super().__init__(
            "Invalid quantity. Use positive for buy, negative for sell",
            field="quantity",
        )


# =============================================================================
# NOT FOUND ERRORS
# =============================================================================


class NotFoundError(ServiceError):
    """
    Base exception for resource not found errors.

    Attributes:
        resource_type: Type of resource (e.g., "Holding", "Coin")
        resource_id: Identifier of the resource
    """

    def __init__(
            self,
            message: str,
            resource_type: str | None = None,
            resource_id: int | str | None = None,
    ) -> None:
        self.resource_type = resource_type
        self.resource_id = resource_id
        super().__init__(message)


class CoinNotFoundError(NotFoundError):
    """Raised when a coin id is not present in the catalog."""

    def __init__(self, coin_id: str) -> None:
        self.coin_id = coin_id
        super().__init__(
            f"Coin '{coin_id}' not found in catalog",
            resource_type="Coin",
            resource_id=coin_id,
        )


class HoldingNotFoundError(NotFoundError):
    """Raised when the user holds no position in the given coin."""

    def __init__(self, user_id: str, coin_id: str) -> None:
        self.user_id = user_id
        self.coin_id = coin_id
        super().__init__(
            f"No holding of '{coin_id}' for user {user_id}",
            resource_type="Holding",
            resource_id=coin_id,
        )


class TransactionNotFoundError(NotFoundError):
    """
    Raised when a transaction does not exist or belongs to another user.

    Both cases produce the same error so that transaction ids of other
    users cannot be probed.
    """

    def __init__(self, transaction_id: int) -> None:
        self.transaction_id = transaction_id
        super().__init__(
            f"Transaction {transaction_id} not found",
            resource_type="Transaction",
            resource_id=transaction_id,
        )


# =============================================================================
# BUSINESS RULES
# =============================================================================


class BusinessRuleViolation(ServiceError):
    """
    Raised when a mutation would break a ledger invariant.

    Never retried; the whole unit of work is rolled back.
    """
    pass


class InsufficientBalanceError(BusinessRuleViolation):
    """
    Raised when a disposal exceeds the quantity held at that point of the ledger.

    Attributes:
        coin_id: The coin being sold
        requested: Quantity the disposal tried to remove (positive)
        available: Quantity held immediately before the disposal
    """

    def __init__(self, coin_id: str, requested: Decimal, available: Decimal) -> None:
        self.coin_id = coin_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient balance: cannot sell {requested} {coin_id}, "
            f"only {available} available"
        )


# =============================================================================
# REMOTE CATALOG ERRORS
# =============================================================================


class CatalogError(ServiceError):
    """
    Base exception for remote catalog provider failures.

    Attributes:
        provider: Name of the provider that failed
    """

    def __init__(self, message: str, provider: str | None = None) -> None:
        self.provider = provider
        super().__init__(message)


class RemoteUnavailableError(CatalogError):
    """
    Raised when the remote catalog is temporarily unavailable.

    Examples:
    - Network timeout
    - Server errors (500, 502, 503)
    - Unparseable response body

    This is a retryable error.
    """

    def __init__(self, provider: str, reason: str) -> None:
        message = f"Provider '{provider}' is unavailable: {reason}"
        super().__init__(message, provider=provider)
        self.reason = reason


class RateLimitError(CatalogError):
    """
    Raised when the provider's rate limit has been exceeded (HTTP 429).

    This is a retryable error (with backoff).

    Attributes:
        retry_after: Seconds to wait before retrying (if provided by API)
    """

    def __init__(self, provider: str, retry_after: int | None = None) -> None:
        message = f"Rate limit exceeded for provider '{provider}'"
        if retry_after:
            message += f" (retry after {retry_after}s)"
        super().__init__(message, provider=provider)
        self.retry_after = retry_after


# =============================================================================
# PERSISTENCE
# =============================================================================


class PersistenceError(ServiceError):
    """
    Raised when a write could not be committed.

    Wraps the underlying SQLAlchemy error so routers never see driver
    exceptions. Catalog sync retries at finer granularity before raising;
    ledger mutations raise immediately after rolling back.
    """

    def __init__(self, operation: str, reason: str) -> None:
        self.operation = operation
        self.reason = reason
        super().__init__(f"Failed to {operation}: {reason}")


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidQuantityError",
    "NotFoundError",
    "CoinNotFoundError",
    "HoldingNotFoundError",
    "TransactionNotFoundError",
    "BusinessRuleViolation",
    "InsufficientBalanceError",
    "CatalogError",
    "RemoteUnavailableError",
    "RateLimitError",
    "PersistenceError",
]
