"""SandboxPaymentQueue — in-memory PaymentQueue for local development.

Simulates a platform purchase queue without a device or a store account:

- ``add_payment`` walks a transaction through PURCHASING to PURCHASED (or
  FAILED, when a failure was scripted with ``fail_next_payment``).
- Transactions stay queued until ``finish_transaction``; every observer
  added later, and every ``relaunch()``, gets them re-delivered.
- ``restore_completed_transactions`` re-surfaces the purchase history as
  RESTORED transactions, then reports the restore finished.
- ``simulate_promotional_intent`` plays a store-front purchase.
"""

from __future__ import annotations

import itertools
import logging
import threading
from collections import OrderedDict, deque
from collections.abc import Iterable
from datetime import datetime, timezone

from purchasesync.constants import StoreErrorCode, TransactionState
from purchasesync.errors import StoreError
from purchasesync.models import Product, Transaction
from purchasesync.payment_queue import PaymentQueueObserver

logger = logging.getLogger(__name__)


class SandboxPaymentQueue:
    """Implements the purchasesync ``PaymentQueue`` protocol in memory.

    Delivery is synchronous on the caller's thread; the engine marshals
    events onto its own loop.
    """

    def __init__(self, products: Iterable[Product] = ()) -> None:
        self._products: dict[str, Product] = {p.identifier: p for p in products}
        self._observers: list[PaymentQueueObserver] = []
        self._unfinished: OrderedDict[str, Transaction] = OrderedDict()
        self._history: list[Transaction] = []
        self._finish_log: list[str] = []
        self._scripted_failures: deque[tuple[StoreErrorCode, str]] = deque()
        self._pending_intents: list[Product] = []
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        self.restore_error: StoreError | None = None

    # -- inspection -----------------------------------------------------------

    @property
    def unfinished_transactions(self) -> list[Transaction]:
        with self._lock:
            return list(self._unfinished.values())

    @property
    def finish_log(self) -> list[str]:
        """Transaction ids in the order they were finished (repeats kept)."""
        with self._lock:
            return list(self._finish_log)

    def _next_id(self, prefix: str) -> str:
        return f"{prefix}-{next(self._ids):06d}"

    def _deliver(self, transactions: list[Transaction]) -> None:
        for observer in list(self._observers):
            observer.transactions_updated(transactions)

    # -- scripting ------------------------------------------------------------

    def fail_next_payment(
        self,
        code: StoreErrorCode = StoreErrorCode.PAYMENT_CANCELLED,
        reason: str = "User cancelled the payment.",
    ) -> None:
        """Make the next ``add_payment`` end in FAILED."""
        self._scripted_failures.append((code, reason))

    def add_purchase_history(self, product_identifier: str, quantity: int = 1) -> Transaction:
        """Record a past purchase (finished) that a restore will re-surface."""
        transaction = Transaction(
            identifier=self._next_id("sandbox"),
            product_identifier=product_identifier,
            state=TransactionState.PURCHASED,
            quantity=quantity,
            receipt_payload=b"sandbox-receipt",
            transaction_date=datetime.now(timezone.utc),
        )
        with self._lock:
            self._history.append(transaction)
        return transaction

    def relaunch(self) -> None:
        """Re-deliver every unfinished transaction, as on app launch."""
        pending = self.unfinished_transactions
        if pending:
            logger.info("Sandbox relaunch: re-delivering %d transaction(s).", len(pending))
            self._deliver(pending)

    def simulate_promotional_intent(self, product_identifier: str) -> bool:
        """Play a purchase started from the store front.

        Held until an observer is added. Returns the observer's answer.
        """
        product = self._products.get(product_identifier) or Product(product_identifier)
        if not self._observers:
            self._pending_intents.append(product)
            return False
        return any(o.should_add_store_payment(product) for o in list(self._observers))

    # -- PaymentQueue ---------------------------------------------------------

    def add_observer(self, observer: PaymentQueueObserver) -> None:
        if observer in self._observers:
            return
        self._observers.append(observer)
        pending = self.unfinished_transactions
        if pending:
            observer.transactions_updated(pending)
        intents, self._pending_intents = self._pending_intents, []
        for product in intents:
            if observer.should_add_store_payment(product):
                self.add_payment(product.identifier)

    def remove_observer(self, observer: PaymentQueueObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    def add_payment(self, product_identifier: str, quantity: int = 1) -> None:
        if quantity < 1:
            raise ValueError(f"quantity must be at least 1, got {quantity}")
        identifier = self._next_id("sandbox")
        purchasing = Transaction(
            identifier=identifier,
            product_identifier=product_identifier,
            state=TransactionState.PURCHASING,
            quantity=quantity,
        )
        self._deliver([purchasing])

        failure: tuple[StoreErrorCode, str] | None = None
        if self._scripted_failures:
            failure = self._scripted_failures.popleft()
        elif self._products and product_identifier not in self._products:
            failure = (StoreErrorCode.PRODUCT_NOT_AVAILABLE, f"Unknown product {product_identifier}.")

        if failure is not None:
            code, reason = failure
            outcome = Transaction(
                identifier=identifier,
                product_identifier=product_identifier,
                state=TransactionState.FAILED,
                quantity=quantity,
                failure_reason=reason,
                error_code=code,
            )
        else:
            outcome = Transaction(
                identifier=identifier,
                product_identifier=product_identifier,
                state=TransactionState.PURCHASED,
                quantity=quantity,
                receipt_payload=f"sandbox-receipt:{identifier}".encode(),
                transaction_date=datetime.now(timezone.utc),
            )
        with self._lock:
            self._unfinished[identifier] = outcome
            if outcome.state is TransactionState.PURCHASED:
                self._history.append(outcome)
        self._deliver([outcome])

    def finish_transaction(self, transaction: Transaction) -> None:
        with self._lock:
            self._unfinished.pop(transaction.identifier, None)
            self._finish_log.append(transaction.identifier)

    def restore_completed_transactions(self) -> None:
        if self.restore_error is not None:
            error, self.restore_error = self.restore_error, None
            for observer in list(self._observers):
                observer.restore_completed_transactions_failed(error)
            return

        with self._lock:
            restored = [
                Transaction(
                    identifier=self._next_id("restore"),
                    product_identifier=original.product_identifier,
                    state=TransactionState.RESTORED,
                    quantity=original.quantity,
                    receipt_payload=original.receipt_payload,
                    original_identifier=original.identifier,
                    transaction_date=original.transaction_date,
                )
                for original in self._history
            ]
            for transaction in restored:
                self._unfinished[transaction.identifier] = transaction
        if restored:
            self._deliver(restored)
        for observer in list(self._observers):
            observer.restore_completed_transactions_finished()

    async def fetch_products(self, identifiers: Iterable[str]) -> list[Product]:
        return [
            self._products[i] for i in sorted(set(identifiers)) if i in self._products
        ]
