# backend/coinfolio/services/constants.py
"""
Centralized constants for the Coinfolio services.

Services default to these values when constructed without arguments;
dependencies.py overrides them from Settings for the running application.

Usage:
    from coinfolio.services.constants import (
        DEFAULT_CATALOG_BATCH_SIZE,
        DEFAULT_IMAGE_PAGE_SIZE,
    )
"""

from decimal import Decimal


# =============================================================================
# CATALOG SYNC
# =============================================================================

# Rows per INSERT ... ON CONFLICT / DELETE ... IN statement
DEFAULT_CATALOG_BATCH_SIZE: int = 50

# CoinGecko /coins/markets maximum per_page
DEFAULT_IMAGE_PAGE_SIZE: int = 250

# Attempts per page before it is skipped and reported as the resume cursor
DEFAULT_PAGE_MAX_ATTEMPTS: int = 3

# Linear backoff: attempt N waits N * delay seconds
DEFAULT_PAGE_RETRY_DELAY_SECONDS: float = 2.0

# Upper bound on a provider Retry-After honoured between page attempts
MAX_RETRY_AFTER_SECONDS: float = 60.0

# Courtesy pause between page fetches (free tier allows ~30 calls/minute)
DEFAULT_PAGE_DELAY_SECONDS: float = 1.0

# Pages accumulated before a buffered flush (also flushed on the last page)
DEFAULT_FLUSH_EVERY_PAGES: int = 10

# Statement timeout for one flush transaction
DEFAULT_FLUSH_TIMEOUT_SECONDS: int = 30

# Pause between prune delete batches
DEFAULT_PRUNE_BATCH_PAUSE_SECONDS: float = 0.5


# =============================================================================
# LEDGER
# =============================================================================

# Statement timeout for one position mutation
DEFAULT_LEDGER_TIMEOUT_SECONDS: int = 5

# Scale stored for quantities, costs and prices (matches Numeric(30, 12))
LEDGER_DECIMAL_PLACES: int = 12
LEDGER_QUANTUM: Decimal = Decimal(1).scaleb(-LEDGER_DECIMAL_PLACES)


# =============================================================================
# QUOTES
# =============================================================================

# A held coin's quote older than this is refreshed
DEFAULT_QUOTE_STALE_AFTER_MINUTES: int = 10

# Maximum ids per /coins/markets?ids= call
DEFAULT_QUOTE_REFRESH_LIMIT: int = 50


# =============================================================================
# CATALOG LISTING (API)
# =============================================================================

DEFAULT_PAGE_SIZE: int = 50
MAX_PAGE_SIZE: int = 250


# =============================================================================
# RATE LIMITING
# =============================================================================
# Format: "X/period" where period is second, minute, hour, day

RATE_LIMIT_DEFAULT: str = "100/minute"

# Ledger mutations
RATE_LIMIT_WRITE: str = "30/minute"

# Explicit quote refresh (each call may hit CoinGecko)
RATE_LIMIT_REFRESH: str = "10/minute"

# Scheduler-triggered catalog passes
RATE_LIMIT_SYNC: str = "5/minute"

RATE_LIMIT_HEALTH: str = "60/minute"
