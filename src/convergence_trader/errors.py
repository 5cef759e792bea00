"""Custom exceptions and stable rejection codes for the convergence trader."""

from enum import Enum
from typing import Optional


class TraderError(Exception):
    """Base exception for convergence trader errors."""
    pass


class ConfigurationError(TraderError):
    """Raised when configuration is invalid."""
    pass


class SyncError(TraderError):
    """Raised when account state cannot be obtained from any source."""
    pass


class ExecutionError(TraderError):
    """Raised when an order submission fails for infrastructure reasons."""

    def __init__(self, message: str, idempotency_key: str = ""):
        super().__init__(message)
        self.idempotency_key = idempotency_key


class LedgerError(TraderError):
    """Raised on illegal ledger writes (e.g. backward status transitions)."""
    pass


class ReconciliationError(TraderError):
    """Raised when the ledger cannot be repaired during reconciliation."""
    pass


class DataSourceError(TraderError):
    """Raised when a market data source request fails."""
    pass


class VenueError(TraderError):
    """Raised when the execution venue cannot be reached or errors out."""
    pass


class RejectReason(Enum):
    """
    Stable reason codes for business rejections.

    Callers switch on these values; the human-readable error string on
    the result may change but the code must not.
    """
    REPLAYED = "replayed"
    DUPLICATE_IN_FLIGHT = "duplicate_in_flight"
    EXISTING_POSITION = "existing_position"
    EXISTING_ORDER = "existing_order"
    EXPOSURE_EXCEEDED = "exposure_exceeded"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    STATE_UNAVAILABLE = "state_unavailable"
    VENUE_REJECTED = "venue_rejected"


class VenueErrorCode(Enum):
    """Normalized classification of venue error messages."""
    INSUFFICIENT_BALANCE = "insufficient_balance"
    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    NO_LIQUIDITY = "no_liquidity"
    MIN_SIZE_VIOLATION = "min_size_violation"
    MARKET_CLOSED = "market_closed"
    UNKNOWN = "unknown"


def classify_venue_error(
    error_msg: Optional[str] = None,
    exception_name: Optional[str] = None,
) -> VenueErrorCode:
    """
    Map raw venue error strings to normalized codes.

    Args:
        error_msg: Raw error message from the venue
        exception_name: Exception class name if available

    Returns:
        Normalized VenueErrorCode
    """
    msg = (error_msg or "").lower()
    exc = (exception_name or "").lower()

    if any(kw in msg for kw in ("balance", "insufficient", "not enough")):
        return VenueErrorCode.INSUFFICIENT_BALANCE

    if any(kw in msg for kw in ("rate limit", "429", "throttle", "too many requests")):
        return VenueErrorCode.RATE_LIMIT

    if "timeout" in msg or "timeout" in exc:
        return VenueErrorCode.TIMEOUT

    # FOK orders are killed when the book cannot fill them
    if any(kw in msg for kw in ("no match", "liquidity", "couldn't be fully filled", "fok")):
        return VenueErrorCode.NO_LIQUIDITY

    if any(kw in msg for kw in ("minimum", "min size", "size too small")):
        return VenueErrorCode.MIN_SIZE_VIOLATION

    if any(kw in msg for kw in ("closed", "not trading", "halted", "resolved")):
        return VenueErrorCode.MARKET_CLOSED

    return VenueErrorCode.UNKNOWN
