"""Tests for SandboxPaymentQueue — the in-memory store used in development."""

import pytest

from purchasesync.constants import StoreErrorCode, TransactionState
from purchasesync.errors import StoreError
from purchasesync.models import Product
from purchasesync.payment_queue import PaymentQueue, PaymentQueueObserver
from purchasesync.stores.sandbox import SandboxPaymentQueue


CATALOG = [Product("gold_100", "100 Gold"), Product("pro_monthly", "Pro")]


class RecordingObserver:
    def __init__(self, accept_promotions: bool = False) -> None:
        self.batches: list[list] = []
        self.restore_finished = 0
        self.restore_errors: list[StoreError] = []
        self.intents: list[Product] = []
        self.accept_promotions = accept_promotions

    def transactions_updated(self, transactions) -> None:
        self.batches.append(list(transactions))

    def restore_completed_transactions_finished(self) -> None:
        self.restore_finished += 1

    def restore_completed_transactions_failed(self, error) -> None:
        self.restore_errors.append(error)

    def should_add_store_payment(self, product) -> bool:
        self.intents.append(product)
        return self.accept_promotions

    @property
    def states(self) -> list[tuple[str, TransactionState]]:
        return [(t.identifier, t.state) for batch in self.batches for t in batch]


def _queue_with_observer(**kwargs):
    queue = SandboxPaymentQueue(CATALOG)
    observer = RecordingObserver(**kwargs)
    queue.add_observer(observer)
    return queue, observer


def test_implements_protocols() -> None:
    assert isinstance(SandboxPaymentQueue(), PaymentQueue)
    assert isinstance(RecordingObserver(), PaymentQueueObserver)


class TestAddPayment:
    def test_walks_through_purchasing_to_purchased(self) -> None:
        queue, observer = _queue_with_observer()
        queue.add_payment("gold_100", quantity=2)
        assert observer.states == [
            ("sandbox-000001", TransactionState.PURCHASING),
            ("sandbox-000001", TransactionState.PURCHASED),
        ]
        purchased = observer.batches[-1][0]
        assert purchased.quantity == 2
        assert purchased.receipt_payload == b"sandbox-receipt:sandbox-000001"

    def test_stays_unfinished_until_finished(self) -> None:
        queue, observer = _queue_with_observer()
        queue.add_payment("gold_100")
        purchased = observer.batches[-1][0]
        assert queue.unfinished_transactions == [purchased]
        queue.finish_transaction(purchased)
        assert queue.unfinished_transactions == []
        assert queue.finish_log == ["sandbox-000001"]

    def test_scripted_failure(self) -> None:
        queue, observer = _queue_with_observer()
        queue.fail_next_payment(StoreErrorCode.PAYMENT_NOT_ALLOWED, "Parental controls")
        queue.add_payment("gold_100")
        queue.add_payment("gold_100")
        failed = observer.batches[1][0]
        assert failed.state is TransactionState.FAILED
        assert failed.error_code is StoreErrorCode.PAYMENT_NOT_ALLOWED
        assert failed.failure_reason == "Parental controls"
        assert observer.batches[3][0].state is TransactionState.PURCHASED

    def test_unknown_product_fails(self) -> None:
        queue, observer = _queue_with_observer()
        queue.add_payment("diamonds")
        failed = observer.batches[-1][0]
        assert failed.state is TransactionState.FAILED
        assert failed.error_code is StoreErrorCode.PRODUCT_NOT_AVAILABLE

    def test_without_catalog_any_product_sells(self) -> None:
        queue = SandboxPaymentQueue()
        observer = RecordingObserver()
        queue.add_observer(observer)
        queue.add_payment("anything")
        assert observer.batches[-1][0].state is TransactionState.PURCHASED

    def test_rejects_zero_quantity(self) -> None:
        queue, _ = _queue_with_observer()
        with pytest.raises(ValueError, match="quantity"):
            queue.add_payment("gold_100", quantity=0)


class TestRedelivery:
    def test_new_observer_receives_unfinished(self) -> None:
        queue, first = _queue_with_observer()
        queue.add_payment("gold_100")
        queue.remove_observer(first)

        second = RecordingObserver()
        queue.add_observer(second)
        assert second.states == [("sandbox-000001", TransactionState.PURCHASED)]

    def test_relaunch_redelivers(self) -> None:
        queue, observer = _queue_with_observer()
        queue.add_payment("gold_100")
        observer.batches.clear()
        queue.relaunch()
        assert observer.states == [("sandbox-000001", TransactionState.PURCHASED)]

    def test_adding_same_observer_twice_is_noop(self) -> None:
        queue, observer = _queue_with_observer()
        queue.add_observer(observer)
        queue.add_payment("gold_100")
        assert len(observer.batches) == 2


class TestRestore:
    def test_resurfaces_history_as_restored(self) -> None:
        queue, observer = _queue_with_observer()
        original = queue.add_purchase_history("pro_monthly")
        queue.restore_completed_transactions()

        restored = observer.batches[-1][0]
        assert restored.state is TransactionState.RESTORED
        assert restored.original_identifier == original.identifier
        assert restored.identifier.startswith("restore-")
        assert observer.restore_finished == 1
        assert restored in queue.unfinished_transactions

    def test_history_is_not_redelivered_as_unfinished(self) -> None:
        queue = SandboxPaymentQueue(CATALOG)
        queue.add_purchase_history("gold_100")
        assert queue.unfinished_transactions == []

    def test_empty_history_still_finishes(self) -> None:
        queue, observer = _queue_with_observer()
        queue.restore_completed_transactions()
        assert observer.batches == []
        assert observer.restore_finished == 1

    def test_scripted_restore_error_fires_once(self) -> None:
        queue, observer = _queue_with_observer()
        error = StoreError("Not signed in", code=StoreErrorCode.CLIENT_INVALID)
        queue.restore_error = error
        queue.restore_completed_transactions()
        assert observer.restore_errors == [error]
        assert observer.restore_finished == 0
        queue.restore_completed_transactions()
        assert observer.restore_finished == 1


class TestPromotionalIntent:
    def test_held_until_observer_added(self) -> None:
        queue = SandboxPaymentQueue(CATALOG)
        assert queue.simulate_promotional_intent("gold_100") is False
        observer = RecordingObserver(accept_promotions=True)
        queue.add_observer(observer)
        assert [p.identifier for p in observer.intents] == ["gold_100"]
        assert observer.states[-1][1] is TransactionState.PURCHASED

    def test_declining_observer_adds_nothing(self) -> None:
        queue, observer = _queue_with_observer()
        assert queue.simulate_promotional_intent("gold_100") is False
        assert observer.intents[0].title == "100 Gold"
        assert observer.batches == []


@pytest.mark.asyncio
async def test_fetch_products_returns_known_only() -> None:
    queue = SandboxPaymentQueue(CATALOG)
    products = await queue.fetch_products(["pro_monthly", "nope", "gold_100"])
    assert [p.identifier for p in products] == ["gold_100", "pro_monthly"]
