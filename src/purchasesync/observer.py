"""Purchase-queue observer: normalizes store events and drives validation.

Store callbacks may arrive on any thread. They are marshalled onto the
engine's event loop, where every state change happens.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Callable, Coroutine, Sequence
from typing import Any

from purchasesync.constants import StoreErrorCode, TransactionState
from purchasesync.errors import (
    BackendError,
    DuplicateTransactionError,
    NetworkError,
    StoreError,
    ValidationError,
)
from purchasesync.models import AppUserSession, Product, PurchaserInfo, Transaction
from purchasesync.notifier import DelegateNotifier
from purchasesync.payment_queue import PaymentQueue
from purchasesync.promotional import PromotionalPurchaseCoordinator
from purchasesync.receipt_validator import ReceiptValidator
from purchasesync.restore import RestoreCoordinator

logger = logging.getLogger(__name__)


class TransactionObserver:
    """Owns in-flight transactions from first sight until finalization.

    - PURCHASED: validated once, finalized after a terminal backend outcome.
    - FAILED: finalized at once and reported; no backend call.
    - RESTORED: joins the running restore batch, else validated alone.
    - PURCHASING / DEFERRED: ignored until they change state.

    A transaction id already in flight (or finalized) is a platform
    re-delivery and is dropped.
    """

    def __init__(
        self,
        session: AppUserSession,
        queue: PaymentQueue,
        validator: ReceiptValidator,
        notifier: DelegateNotifier,
        restore: RestoreCoordinator,
        promotional: PromotionalPurchaseCoordinator,
        serial: asyncio.Lock,
    ) -> None:
        self._session = session
        self._queue = queue
        self._validator = validator
        self._notifier = notifier
        self._restore = restore
        self._promotional = promotional
        self._serial = serial
        self._loop: asyncio.AbstractEventLoop | None = None
        self._observing = False
        self._in_flight: set[str] = set()
        self._finished: set[str] = set()
        self._tasks: set[asyncio.Task[Any]] = set()
        self._scheduled = 0
        self._scheduled_lock = threading.Lock()
        self._duplicates_dropped = 0

    # -- subscription -----------------------------------------------------------

    @property
    def observing(self) -> bool:
        return self._observing

    def observe(self) -> None:
        """Subscribe to the store queue. Must run inside the engine's loop."""
        if self._observing:
            return
        self._loop = asyncio.get_running_loop()
        self._observing = True
        logger.info("Observing purchase queue for %s.", self._session.app_user_id)
        self._queue.add_observer(self)

    def suspend(self) -> None:
        """Unsubscribe; the store keeps unfinished transactions for later."""
        if not self._observing:
            return
        self._observing = False
        logger.info("Suspended purchase queue observation for %s.", self._session.app_user_id)
        self._queue.remove_observer(self)

    # -- PaymentQueueObserver ---------------------------------------------------

    def transactions_updated(self, transactions: Sequence[Transaction]) -> None:
        self._schedule(self._dispatch, list(transactions))

    def restore_completed_transactions_finished(self) -> None:
        self._schedule(self._restore.finished)

    def restore_completed_transactions_failed(self, error: StoreError) -> None:
        self._schedule(self._restore.finished, error)

    def should_add_store_payment(self, product: Product) -> bool:
        # The coordinator adds the payment itself once the host agrees.
        self._schedule(self._promotional.handle_intent, product)
        return False

    def _schedule(self, fn: Callable[..., None], *args: Any) -> None:
        if self._loop is None:
            raise RuntimeError("observe() has not been called")
        with self._scheduled_lock:
            self._scheduled += 1
        self._loop.call_soon_threadsafe(self._run_scheduled, fn, args)

    def _run_scheduled(self, fn: Callable[..., None], args: tuple[Any, ...]) -> None:
        try:
            fn(*args)
        finally:
            with self._scheduled_lock:
                self._scheduled -= 1

    # -- dispatch ---------------------------------------------------------------

    def _dispatch(self, transactions: list[Transaction]) -> None:
        for transaction in transactions:
            self._handle(transaction)

    def _handle(self, transaction: Transaction) -> None:
        state = transaction.state
        if state in (TransactionState.PURCHASING, TransactionState.DEFERRED):
            logger.debug("Transaction %s is %s; waiting.", transaction.identifier, state.name)
            return

        try:
            self._claim(transaction)
        except DuplicateTransactionError as exc:
            self._duplicates_dropped += 1
            logger.debug("Dropping re-delivered transaction: %s", exc)
            return

        if state is TransactionState.FAILED:
            self._fail_on_device(transaction)
        elif state is TransactionState.RESTORED and self._restore.add(transaction):
            return
        else:
            self._spawn(self._process(transaction, state is TransactionState.RESTORED))

    def _claim(self, transaction: Transaction) -> None:
        if transaction.identifier in self._in_flight:
            raise DuplicateTransactionError(
                f"{transaction.identifier} is already being processed"
            )
        if transaction.identifier in self._finished:
            raise DuplicateTransactionError(
                f"{transaction.identifier} was already finalized"
            )
        self._in_flight.add(transaction.identifier)

    def _finalize(self, transaction: Transaction) -> None:
        """Acknowledge ``transaction`` to the store, at most once."""
        if transaction.identifier in self._finished:
            return
        self._queue.finish_transaction(transaction)
        self._finished.add(transaction.identifier)

    def _fail_on_device(self, transaction: Transaction) -> None:
        code = transaction.error_code or StoreErrorCode.UNKNOWN
        error = StoreError(
            transaction.failure_reason or f"Store reported {code.name}", code=code
        )
        try:
            self._finalize(transaction)
        finally:
            self._in_flight.discard(transaction.identifier)
        logger.info(
            "Transaction %s for %s failed in store: %s",
            transaction.identifier, transaction.product_identifier, error,
        )
        self._notifier.transaction_failed(transaction, error)

    # -- validation -------------------------------------------------------------

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def spawn_restored(self, transaction: Transaction) -> asyncio.Task[PurchaserInfo]:
        """Validate a transaction on behalf of the restore batch (no callbacks)."""
        return self._spawn(self.submit(transaction, is_restore=True, report=False))

    async def _process(self, transaction: Transaction, is_restore: bool) -> None:
        try:
            await self.submit(transaction, is_restore=is_restore)
        except ValidationError:
            return  # reported to the listener by submit()

    async def submit(
        self,
        transaction: Transaction,
        *,
        is_restore: bool = False,
        report: bool = True,
    ) -> PurchaserInfo:
        """Validate a claimed transaction and finalize it on a terminal outcome.

        Raises:
            NetworkError: retries exhausted; left in the store queue.
            BackendError: rejected; finalized.
        """
        try:
            info = await self._validator.validate(
                self._session, transaction, is_restore=is_restore
            )
        except BackendError as exc:
            async with self._serial:
                self._finalize(transaction)
            logger.warning(
                "Backend rejected transaction %s: %s", transaction.identifier, exc
            )
            if report:
                self._notifier.transaction_failed(transaction, exc)
            raise
        except NetworkError as exc:
            logger.warning(
                "Transaction %s left unfinished for re-delivery: %s",
                transaction.identifier, exc,
            )
            if report:
                self._notifier.transaction_failed(transaction, exc)
            raise
        else:
            async with self._serial:
                self._finalize(transaction)
            logger.info(
                "Transaction %s for %s completed.",
                transaction.identifier, transaction.product_identifier,
            )
            if report:
                self._notifier.transaction_completed(transaction, info)
            return info
        finally:
            self._in_flight.discard(transaction.identifier)

    async def drain(self) -> None:
        """Wait until scheduled store events and in-flight validations settle."""
        while True:
            await asyncio.sleep(0)
            with self._scheduled_lock:
                scheduled = self._scheduled
            if self._tasks:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)
            elif not scheduled:
                return

    def health(self) -> dict[str, object]:
        return {
            "observing": self._observing,
            "in_flight": len(self._in_flight),
            "finished": len(self._finished),
            "pending_tasks": len(self._tasks),
            "duplicates_dropped": self._duplicates_dropped,
        }
