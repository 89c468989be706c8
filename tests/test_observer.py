"""Tests for TransactionObserver: state dispatch, finalization, re-delivery."""

import asyncio
import threading
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from purchasesync.constants import StoreErrorCode, TransactionState
from purchasesync.errors import BackendError, NetworkError, StoreError
from purchasesync.models import AppUserSession, Product, PurchaserInfo, Transaction
from purchasesync.notifier import DelegateNotifier
from purchasesync.observer import TransactionObserver
from purchasesync.promotional import PromotionalPurchaseCoordinator
from purchasesync.restore import RestoreCoordinator


SESSION = AppUserSession(api_key="key", app_user_id="user-1")
INFO = PurchaserInfo(
    "user-1",
    datetime(2026, 1, 1, tzinfo=timezone.utc),
    active_product_identifiers=frozenset({"gold_100"}),
)


def _tx(state: TransactionState, identifier: str = "tx-1", **kwargs) -> Transaction:
    return Transaction(identifier, "gold_100", state, receipt_payload=b"r", **kwargs)


class Harness:
    def __init__(self, validate=INFO, restore_accepts: bool = False) -> None:
        self.queue = MagicMock()
        self.validator = MagicMock()
        if isinstance(validate, (Exception, list)):
            self.validator.validate = AsyncMock(side_effect=validate)
        else:
            self.validator.validate = AsyncMock(return_value=validate)
        self.notifier = MagicMock(spec=DelegateNotifier)
        self.restore = MagicMock(spec=RestoreCoordinator)
        self.restore.add.return_value = restore_accepts
        self.promotional = MagicMock(spec=PromotionalPurchaseCoordinator)
        self.observer = TransactionObserver(
            SESSION,
            self.queue,
            self.validator,
            self.notifier,
            self.restore,
            self.promotional,
            asyncio.Lock(),
        )

    async def deliver(self, *transactions: Transaction) -> None:
        self.observer.transactions_updated(list(transactions))
        await self.observer.drain()

    @property
    def finished_ids(self) -> list[str]:
        return [c.args[0].identifier for c in self.queue.finish_transaction.call_args_list]


# ---------------------------------------------------------------------------
# Subscription
# ---------------------------------------------------------------------------


class TestSubscription:
    def test_events_before_observe_are_rejected(self) -> None:
        harness = Harness()
        with pytest.raises(RuntimeError, match="observe"):
            harness.observer.transactions_updated([_tx(TransactionState.PURCHASED)])

    @pytest.mark.asyncio
    async def test_observe_and_suspend_are_idempotent(self) -> None:
        harness = Harness()
        harness.observer.observe()
        harness.observer.observe()
        harness.queue.add_observer.assert_called_once_with(harness.observer)
        assert harness.observer.observing

        harness.observer.suspend()
        harness.observer.suspend()
        harness.queue.remove_observer.assert_called_once_with(harness.observer)
        assert not harness.observer.observing


# ---------------------------------------------------------------------------
# State dispatch
# ---------------------------------------------------------------------------


class TestDispatch:
    @pytest.mark.asyncio
    async def test_purchasing_and_deferred_are_ignored(self) -> None:
        harness = Harness()
        harness.observer.observe()
        await harness.deliver(
            _tx(TransactionState.PURCHASING), _tx(TransactionState.DEFERRED, "tx-2")
        )
        harness.validator.validate.assert_not_called()
        harness.queue.finish_transaction.assert_not_called()
        harness.notifier.transaction_failed.assert_not_called()

    @pytest.mark.asyncio
    async def test_purchased_is_validated_finalized_and_reported(self) -> None:
        harness = Harness()
        harness.observer.observe()
        tx = _tx(TransactionState.PURCHASED)
        await harness.deliver(tx)
        harness.validator.validate.assert_awaited_once_with(SESSION, tx, is_restore=False)
        assert harness.finished_ids == ["tx-1"]
        harness.notifier.transaction_completed.assert_called_once_with(tx, INFO)

    @pytest.mark.asyncio
    async def test_store_failure_finalizes_without_backend(self) -> None:
        harness = Harness()
        harness.observer.observe()
        tx = _tx(
            TransactionState.FAILED,
            error_code=StoreErrorCode.PAYMENT_CANCELLED,
            failure_reason="Cancelled",
        )
        await harness.deliver(tx)
        harness.validator.validate.assert_not_called()
        assert harness.finished_ids == ["tx-1"]
        (failed_tx, error), _ = harness.notifier.transaction_failed.call_args
        assert failed_tx is tx
        assert isinstance(error, StoreError)
        assert error.code is StoreErrorCode.PAYMENT_CANCELLED

    @pytest.mark.asyncio
    async def test_store_failure_without_reason_names_the_code(self) -> None:
        harness = Harness()
        harness.observer.observe()
        await harness.deliver(_tx(TransactionState.FAILED, error_code=StoreErrorCode.PAYMENT_DECLINED))
        (_, error), _ = harness.notifier.transaction_failed.call_args
        assert "PAYMENT_DECLINED" in str(error)

    @pytest.mark.asyncio
    async def test_backend_rejection_is_finalized(self) -> None:
        harness = Harness(validate=BackendError("Invalid receipt", status_code=400))
        harness.observer.observe()
        tx = _tx(TransactionState.PURCHASED)
        await harness.deliver(tx)
        assert harness.finished_ids == ["tx-1"]
        (_, error), _ = harness.notifier.transaction_failed.call_args
        assert isinstance(error, BackendError)
        harness.notifier.transaction_completed.assert_not_called()

    @pytest.mark.asyncio
    async def test_network_failure_stays_in_queue(self) -> None:
        harness = Harness(validate=[NetworkError("offline"), INFO])
        harness.observer.observe()
        tx = _tx(TransactionState.PURCHASED)
        await harness.deliver(tx)
        harness.queue.finish_transaction.assert_not_called()
        harness.notifier.transaction_failed.assert_called_once()
        assert harness.observer.health()["in_flight"] == 0

        # the store re-delivers it later
        await harness.deliver(tx)
        assert harness.finished_ids == ["tx-1"]
        harness.notifier.transaction_completed.assert_called_once_with(tx, INFO)

    @pytest.mark.asyncio
    async def test_restored_joins_running_batch(self) -> None:
        harness = Harness(restore_accepts=True)
        harness.observer.observe()
        tx = _tx(TransactionState.RESTORED)
        await harness.deliver(tx)
        harness.restore.add.assert_called_once_with(tx)
        harness.validator.validate.assert_not_called()

    @pytest.mark.asyncio
    async def test_restored_outside_batch_validates_alone(self) -> None:
        harness = Harness()
        harness.observer.observe()
        tx = _tx(TransactionState.RESTORED)
        await harness.deliver(tx)
        harness.validator.validate.assert_awaited_once_with(SESSION, tx, is_restore=True)
        harness.notifier.transaction_completed.assert_called_once_with(tx, INFO)


# ---------------------------------------------------------------------------
# Re-delivery
# ---------------------------------------------------------------------------


class TestRedelivery:
    @pytest.mark.asyncio
    async def test_in_flight_duplicate_is_dropped(self) -> None:
        gate = asyncio.Event()

        async def slow_validate(*args, **kwargs):
            await gate.wait()
            return INFO

        harness = Harness()
        harness.validator.validate = AsyncMock(side_effect=slow_validate)
        harness.observer.observe()
        tx = _tx(TransactionState.PURCHASED)
        harness.observer.transactions_updated([tx])
        harness.observer.transactions_updated([tx])
        for _ in range(3):
            await asyncio.sleep(0)
        gate.set()
        await harness.observer.drain()

        harness.validator.validate.assert_awaited_once()
        assert harness.finished_ids == ["tx-1"]
        assert harness.observer.health()["duplicates_dropped"] == 1

    @pytest.mark.asyncio
    async def test_finalized_transaction_is_never_finished_twice(self) -> None:
        harness = Harness()
        harness.observer.observe()
        tx = _tx(TransactionState.FAILED, error_code=StoreErrorCode.PAYMENT_CANCELLED)
        await harness.deliver(tx)
        await harness.deliver(tx)
        assert harness.finished_ids == ["tx-1"]
        harness.notifier.transaction_failed.assert_called_once()

    @pytest.mark.asyncio
    async def test_events_from_other_threads_run_on_loop(self) -> None:
        harness = Harness()
        harness.observer.observe()
        worker = threading.Thread(
            target=harness.observer.transactions_updated,
            args=([_tx(TransactionState.PURCHASED)],),
        )
        worker.start()
        worker.join()
        await harness.observer.drain()
        assert harness.finished_ids == ["tx-1"]


class TestStoreCallbacks:
    @pytest.mark.asyncio
    async def test_promotional_intent_is_deferred_to_coordinator(self) -> None:
        harness = Harness()
        harness.observer.observe()
        product = Product("gold_100")
        assert harness.observer.should_add_store_payment(product) is False
        await harness.observer.drain()
        harness.promotional.handle_intent.assert_called_once_with(product)

    @pytest.mark.asyncio
    async def test_restore_signals_reach_coordinator(self) -> None:
        harness = Harness()
        harness.observer.observe()
        error = StoreError("offline")
        harness.observer.restore_completed_transactions_finished()
        harness.observer.restore_completed_transactions_failed(error)
        await harness.observer.drain()
        assert harness.restore.finished.call_args_list[0].args == ()
        assert harness.restore.finished.call_args_list[1].args == (error,)
