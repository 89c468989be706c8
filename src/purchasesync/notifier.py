"""Host-facing listener interface and the notifier that fans events out to it."""

from __future__ import annotations

import logging
import weakref
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Callable
from typing import TYPE_CHECKING

from purchasesync.constants import PromotionalResponse
from purchasesync.errors import PurchasesError, RestoreError
from purchasesync.models import Product, PurchaserInfo, Transaction

if TYPE_CHECKING:
    from purchasesync.promotional import DeferredPurchase

logger = logging.getLogger(__name__)


class PurchasesListener(ABC):
    """Receives state changes from the engine.

    The three abstract methods are required. Restore and promotional
    callbacks are optional and default to doing nothing / declining.

    Callbacks may fire at any time after the listener is attached, not only
    in response to ``make_purchase``.
    """

    @abstractmethod
    def on_transaction_completed(
        self, transaction: Transaction, purchaser_info: PurchaserInfo
    ) -> None:
        """A transaction was verified by the backend."""

    @abstractmethod
    def on_transaction_failed(
        self, transaction: Transaction, error: PurchasesError
    ) -> None:
        """The store or the backend rejected ``transaction``, or the network gave out."""

    @abstractmethod
    def on_purchaser_info_updated(self, purchaser_info: PurchaserInfo) -> None:
        """A newer purchaser info snapshot was accepted."""

    def on_restore_completed(self, purchaser_info: PurchaserInfo) -> None:
        return None

    def on_restore_failed(self, error: RestoreError) -> None:
        return None

    def on_promotional_purchase_intent(
        self, product: Product, deferred: DeferredPurchase
    ) -> PromotionalResponse:
        """Decide on a purchase started from the store front.

        Return DEFER and keep ``deferred`` to resume later. Promotional
        purchases are opt-in, so the default declines.
        """
        return PromotionalResponse.DECLINE


Delivery = Callable[[PurchasesListener], None]


class DelegateNotifier:
    """Holds a weak reference to one listener and delivers events to it.

    Events raised while no live listener is attached are queued in order
    and flushed when one attaches. Attach/detach hooks let the engine
    start and suspend queue observation.
    """

    def __init__(self) -> None:
        self._listener_ref: weakref.ref[PurchasesListener] | None = None
        self._pending: deque[tuple[str, Delivery]] = deque()
        self._on_attach: list[Callable[[], None]] = []
        self._on_detach: list[Callable[[], None]] = []
        self._delivered: int = 0

    # -- attachment -----------------------------------------------------------

    def add_attach_hook(self, hook: Callable[[], None]) -> None:
        self._on_attach.append(hook)

    def add_detach_hook(self, hook: Callable[[], None]) -> None:
        self._on_detach.append(hook)

    @property
    def listener(self) -> PurchasesListener | None:
        if self._listener_ref is None:
            return None
        return self._listener_ref()

    def attach(self, listener: PurchasesListener) -> None:
        """Attach ``listener``, flush queued events, then run attach hooks."""
        self._listener_ref = weakref.ref(listener)
        self.flush()
        for hook in self._on_attach:
            hook()

    def detach(self) -> None:
        if self._listener_ref is None:
            return
        self._listener_ref = None
        for hook in self._on_detach:
            hook()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def flush(self) -> int:
        """Deliver queued events while a listener is alive. Returns count."""
        flushed = 0
        while self._pending:
            listener = self.listener
            if listener is None:
                break
            name, deliver = self._pending.popleft()
            self._deliver(listener, name, deliver)
            flushed += 1
        return flushed

    # -- delivery -------------------------------------------------------------

    def _deliver(self, listener: PurchasesListener, name: str, deliver: Delivery) -> None:
        try:
            deliver(listener)
        except Exception:
            logger.exception("Listener raised from %s.", name)
        self._delivered += 1

    def _emit(self, name: str, deliver: Delivery) -> None:
        listener = self.listener
        if listener is None or self._pending:
            if listener is None and self._listener_ref is not None:
                logger.info("Listener was garbage-collected; queueing %s.", name)
            self._pending.append((name, deliver))
            self.flush()
            return
        self._deliver(listener, name, deliver)

    def transaction_completed(self, transaction: Transaction, info: PurchaserInfo) -> None:
        self._emit(
            "on_transaction_completed",
            lambda listener: listener.on_transaction_completed(transaction, info),
        )

    def transaction_failed(self, transaction: Transaction, error: PurchasesError) -> None:
        self._emit(
            "on_transaction_failed",
            lambda listener: listener.on_transaction_failed(transaction, error),
        )

    def purchaser_info_updated(self, info: PurchaserInfo) -> None:
        self._emit(
            "on_purchaser_info_updated",
            lambda listener: listener.on_purchaser_info_updated(info),
        )

    def restore_completed(self, info: PurchaserInfo) -> None:
        self._emit("on_restore_completed", lambda listener: listener.on_restore_completed(info))

    def restore_failed(self, error: RestoreError) -> None:
        self._emit("on_restore_failed", lambda listener: listener.on_restore_failed(error))

    def promotional_purchase_intent(
        self,
        product: Product,
        deferred: DeferredPurchase,
        respond: Callable[[PromotionalResponse], None],
    ) -> None:
        """Ask the listener about ``product`` and pass its answer to ``respond``.

        A listener that raises is treated as having declined.
        """

        def _ask(listener: PurchasesListener) -> None:
            try:
                response = listener.on_promotional_purchase_intent(product, deferred)
            except Exception:
                logger.exception(
                    "Listener raised on promotional intent for %s; declining.",
                    product.identifier,
                )
                response = PromotionalResponse.DECLINE
            respond(response)

        self._emit("on_promotional_purchase_intent", _ask)

    def health(self) -> dict[str, object]:
        return {
            "listener_attached": self.listener is not None,
            "pending_events": self.pending_count,
            "delivered_events": self._delivered,
        }
