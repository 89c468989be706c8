"""purchasesync — app-store purchase synchronization.

Observes the platform purchase queue, validates every receipt with the
backend exactly once, and keeps one authoritative purchaser info snapshot.
"""

__version__ = "0.1.0"

from purchasesync.config import PurchasesConfig
from purchasesync.constants import PromotionalResponse, StoreErrorCode, TransactionState
from purchasesync.errors import (
    BackendError,
    ConfigurationError,
    DuplicateTransactionError,
    NetworkError,
    PurchasesError,
    RestoreEmptyError,
    RestoreError,
    StoreError,
    ValidationError,
)
from purchasesync.models import AppUserSession, Entitlement, Product, PurchaserInfo, Transaction
from purchasesync.backend_client import BackendClient
from purchasesync.payment_queue import PaymentQueue, PaymentQueueObserver
from purchasesync.notifier import PurchasesListener
from purchasesync.promotional import DeferredPurchase
from purchasesync.purchases import Purchases
from purchasesync.stores import SandboxPaymentQueue

__all__ = [
    "Purchases",
    "PurchasesConfig",
    "PurchasesListener",
    "PaymentQueue",
    "PaymentQueueObserver",
    "SandboxPaymentQueue",
    "BackendClient",
    "AppUserSession",
    "Entitlement",
    "Product",
    "PurchaserInfo",
    "Transaction",
    "DeferredPurchase",
    "PromotionalResponse",
    "StoreErrorCode",
    "TransactionState",
    "PurchasesError",
    "ConfigurationError",
    "ValidationError",
    "NetworkError",
    "BackendError",
    "StoreError",
    "DuplicateTransactionError",
    "RestoreError",
    "RestoreEmptyError",
]
