"""Abstract interface to the platform store's purchase queue.

Defines the PaymentQueue Protocol the engine consumes and the
PaymentQueueObserver Protocol the store calls back into. Concrete stores
(e.g. ``SandboxPaymentQueue``) live elsewhere.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import Protocol, runtime_checkable

from purchasesync.errors import StoreError
from purchasesync.models import Product, Transaction


@runtime_checkable
class PaymentQueueObserver(Protocol):
    """Receiver of purchase-queue events.

    A store may call these from any thread.
    """

    def transactions_updated(self, transactions: Sequence[Transaction]) -> None: ...

    def restore_completed_transactions_finished(self) -> None: ...

    def restore_completed_transactions_failed(self, error: StoreError) -> None: ...

    def should_add_store_payment(self, product: Product) -> bool: ...


@runtime_checkable
class PaymentQueue(Protocol):
    """Platform store purchase queue.

    On ``add_observer`` the store re-delivers every transaction that has
    not been finished yet. A transaction leaves the queue only through
    ``finish_transaction``.
    """

    def add_observer(self, observer: PaymentQueueObserver) -> None: ...

    def remove_observer(self, observer: PaymentQueueObserver) -> None: ...

    def add_payment(self, product_identifier: str, quantity: int = 1) -> None: ...

    def finish_transaction(self, transaction: Transaction) -> None: ...

    def restore_completed_transactions(self) -> None: ...

    async def fetch_products(self, identifiers: Iterable[str]) -> list[Product]: ...
