"""Constants for purchase synchronization."""

from enum import Enum, IntEnum


DEFAULT_BACKEND_URL = "https://api.purchasesync.dev/v1"
DEFAULT_MAX_ATTEMPTS = 4  # total backend attempts per validation
DEFAULT_BACKOFF_BASE_SECS = 0.5
DEFAULT_BACKOFF_MAX_SECS = 8.0
DEFAULT_RESTORE_QUIET_SECS = 5.0  # restore batch closes after this much silence
DEFAULT_REFRESH_INTERVAL_SECS = 300


class TransactionState(IntEnum):
    """Platform purchase-queue transaction states (StoreKit numbering)."""

    PURCHASING = 0
    PURCHASED = 1
    FAILED = 2
    RESTORED = 3
    DEFERRED = 4


class StoreErrorCode(IntEnum):
    """Platform-level failure reasons attached to FAILED transactions."""

    UNKNOWN = 0
    CLIENT_INVALID = 1
    PAYMENT_CANCELLED = 2
    PAYMENT_INVALID = 3
    PAYMENT_NOT_ALLOWED = 4
    PRODUCT_NOT_AVAILABLE = 5
    PAYMENT_DECLINED = 6


class PromotionalResponse(Enum):
    """Host answer to an out-of-app purchase intent."""

    PURCHASE = "purchase"
    DEFER = "defer"
    DECLINE = "decline"
