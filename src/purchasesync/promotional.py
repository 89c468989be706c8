"""Purchases started outside the app (store-front promotions).

Per product the intent moves NoIntent -> Announced -> {authorized now,
deferred} -> Resolved. Only the host may resolve a deferred intent, by
calling the ``DeferredPurchase`` it was handed.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from purchasesync.constants import PromotionalResponse
from purchasesync.models import Product
from purchasesync.notifier import DelegateNotifier

logger = logging.getLogger(__name__)


class IntentState(Enum):
    ANNOUNCED = "announced"
    DEFERRED = "deferred"
    RESOLVED = "resolved"
    DECLINED = "declined"
    SUPERSEDED = "superseded"


class DeferredPurchase:
    """One-shot continuation that resumes a promotional purchase.

    Calling it more than once, or after a newer intent for the same product
    superseded it, is a no-op that returns False.
    """

    def __init__(
        self, coordinator: PromotionalPurchaseCoordinator, product: Product
    ) -> None:
        self._coordinator = coordinator
        self.product = product
        self.state = IntentState.ANNOUNCED

    @property
    def is_pending(self) -> bool:
        return self.state in (IntentState.ANNOUNCED, IntentState.DEFERRED)

    def __call__(self) -> bool:
        return self._coordinator.resume(self)

    def __repr__(self) -> str:
        return f"DeferredPurchase({self.product.identifier!r}, {self.state.value})"


@dataclass
class PendingPromotionalPurchase:
    product_identifier: str
    deferred: DeferredPurchase


class PromotionalPurchaseCoordinator:
    """Asks the host about store-front purchases and keeps deferrals.

    At most one deferred continuation is retained per product. Any newer
    intent for the same product supersedes it, whatever the host answers.
    """

    def __init__(
        self,
        notifier: DelegateNotifier,
        start_purchase: Callable[[str, int], None],
    ) -> None:
        self._notifier = notifier
        self._start_purchase = start_purchase
        self._pending: dict[str, PendingPromotionalPurchase] = {}

    def pending(self, product_identifier: str) -> DeferredPurchase | None:
        entry = self._pending.get(product_identifier)
        return entry.deferred if entry else None

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def handle_intent(self, product: Product) -> None:
        """Announce a store-front purchase intent to the host."""
        deferred = DeferredPurchase(self, product)
        logger.info("Promotional purchase intent for %s.", product.identifier)
        self._notifier.promotional_purchase_intent(
            product,
            deferred,
            lambda response: self._on_response(deferred, response),
        )

    def _on_response(self, deferred: DeferredPurchase, response: PromotionalResponse) -> None:
        product_id = deferred.product.identifier
        previous = self._pending.pop(product_id, None)
        if previous is not None and previous.deferred is not deferred:
            previous.deferred.state = IntentState.SUPERSEDED
            logger.info("Superseding earlier deferred purchase of %s.", product_id)
        if response is PromotionalResponse.PURCHASE:
            deferred.state = IntentState.RESOLVED
            logger.info("Host authorized promotional purchase of %s.", product_id)
            self._start_purchase(product_id, 1)
        elif response is PromotionalResponse.DEFER:
            deferred.state = IntentState.DEFERRED
            self._pending[product_id] = PendingPromotionalPurchase(product_id, deferred)
        else:
            deferred.state = IntentState.DECLINED
            logger.info("Host declined promotional purchase of %s.", product_id)

    def resume(self, deferred: DeferredPurchase) -> bool:
        """Run a deferred purchase. Returns False when it is no longer valid."""
        product_id = deferred.product.identifier
        if deferred.state is not IntentState.DEFERRED:
            logger.warning(
                "Ignoring %s: only a deferred purchase can be resumed.", deferred
            )
            return False
        entry = self._pending.get(product_id)
        if entry is None or entry.deferred is not deferred:
            deferred.state = IntentState.SUPERSEDED
            return False
        del self._pending[product_id]
        deferred.state = IntentState.RESOLVED
        logger.info("Resuming deferred promotional purchase of %s.", product_id)
        self._start_purchase(product_id, 1)
        return True
