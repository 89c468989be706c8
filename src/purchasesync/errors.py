"""Exception hierarchy for the purchase synchronization engine."""

from __future__ import annotations

from typing import TYPE_CHECKING

from purchasesync.constants import StoreErrorCode

if TYPE_CHECKING:
    from purchasesync.models import PurchaserInfo


class PurchasesError(Exception):
    """Base exception for all engine errors."""


class ConfigurationError(PurchasesError):
    """Missing or invalid API key / app user id at construction."""


# ---------------------------------------------------------------------------
# Receipt validation
# ---------------------------------------------------------------------------


class ValidationError(PurchasesError):
    """Base for receipt-validation outcomes other than success."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class NetworkError(ValidationError):
    """Transport failure (retryable). Never finalizes the transaction."""


class ServerError(NetworkError):
    """5xx — server-side error (retryable)."""


class BackendError(ValidationError):
    """4xx — receipt rejected for good. The transaction is finalized."""

    @property
    def description(self) -> str:
        return str(self)


# ---------------------------------------------------------------------------
# Platform store
# ---------------------------------------------------------------------------


class StoreError(PurchasesError):
    """Platform-level failure: cancellation, not allowed, declined, ..."""

    def __init__(
        self, message: str, code: StoreErrorCode = StoreErrorCode.UNKNOWN
    ) -> None:
        super().__init__(message)
        self.code = code


class DuplicateTransactionError(PurchasesError):
    """A transaction id re-delivered while already claimed. Never surfaced."""


# ---------------------------------------------------------------------------
# Restore
# ---------------------------------------------------------------------------


class RestoreError(PurchasesError):
    """Aggregated restore failure.

    ``failed_count``/``total_count`` describe the batch; ``purchaser_info``
    is the snapshot left in the cache after best-effort processing.
    """

    def __init__(
        self,
        message: str,
        *,
        failed_count: int = 0,
        total_count: int = 0,
        purchaser_info: PurchaserInfo | None = None,
    ) -> None:
        super().__init__(message)
        self.failed_count = failed_count
        self.total_count = total_count
        self.purchaser_info = purchaser_info


class RestoreEmptyError(RestoreError):
    """The store surfaced no restorable transactions."""
