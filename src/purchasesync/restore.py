"""Restore of every transaction tied to the platform account.

One restore runs as one batch: the store re-surfaces RESTORED
transactions, each goes through the validator, and the batch resolves to a
single outcome once the store says it is done or the arrivals go quiet.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from purchasesync.errors import (
    RestoreEmptyError,
    RestoreError,
    StoreError,
    ValidationError,
)
from purchasesync.models import AppUserSession, PurchaserInfo, Transaction
from purchasesync.notifier import DelegateNotifier
from purchasesync.payment_queue import PaymentQueue
from purchasesync.purchaser_info_cache import PurchaserInfoCache

logger = logging.getLogger(__name__)

Submit = Callable[[Transaction], "asyncio.Task[PurchaserInfo]"]


@dataclass
class _RestoreBatch:
    arrived: asyncio.Event = field(default_factory=asyncio.Event)
    transactions: list[Transaction] = field(default_factory=list)
    tasks: list[asyncio.Task[PurchaserInfo]] = field(default_factory=list)
    finished: bool = False
    store_error: StoreError | None = None
    result: asyncio.Future[PurchaserInfo] | None = None


class RestoreCoordinator:
    """Aggregates a restore into one success or one ``RestoreError``.

    Partial failures are best-effort: every restored transaction is
    submitted, successes stay installed, and any failure turns the outcome
    into a ``RestoreError`` carrying the failure count.
    """

    def __init__(
        self,
        queue: PaymentQueue,
        cache: PurchaserInfoCache,
        notifier: DelegateNotifier,
        quiet_secs: float = 5.0,
    ) -> None:
        self._queue = queue
        self._cache = cache
        self._notifier = notifier
        self._quiet_secs = quiet_secs
        self._submit: Submit | None = None
        self._batch: _RestoreBatch | None = None

    def bind(self, submit: Submit) -> None:
        """Set the callable that starts validating one restored transaction."""
        self._submit = submit

    @property
    def in_progress(self) -> bool:
        return self._batch is not None

    # -- store-side events ------------------------------------------------------

    def add(self, transaction: Transaction) -> bool:
        """Take a RESTORED transaction into the open batch.

        Returns False when no restore is running.
        """
        batch = self._batch
        if batch is None or batch.finished:
            return False
        if self._submit is None:
            raise RuntimeError("RestoreCoordinator.bind() was never called")
        batch.transactions.append(transaction)
        batch.tasks.append(self._submit(transaction))
        batch.arrived.set()
        return True

    def finished(self, error: StoreError | None = None) -> None:
        """The store is done re-surfacing transactions (or gave up)."""
        batch = self._batch
        if batch is None:
            logger.debug("Restore finished signal with no restore running.")
            return
        batch.finished = True
        batch.store_error = error
        batch.arrived.set()

    # -- host-side entry point --------------------------------------------------

    async def restore(self, session: AppUserSession) -> PurchaserInfo:
        """Restore every transaction for the platform account.

        A second caller while a restore is running joins it. The listener
        hears about each batch once, through ``on_restore_completed`` or
        ``on_restore_failed``.

        Raises:
            RestoreEmptyError: nothing to restore.
            RestoreError: the store failed, or some transactions failed.
        """
        if self._batch is not None and self._batch.result is not None:
            return await asyncio.shield(self._batch.result)

        batch = _RestoreBatch()
        batch.result = asyncio.get_running_loop().create_future()
        self._batch = batch
        logger.info("Starting restore for %s.", session.app_user_id)
        try:
            self._queue.restore_completed_transactions()
            await self._collect(batch)
            info = await self._aggregate(session, batch)
        except asyncio.CancelledError:
            batch.result.cancel()
            raise
        except RestoreError as exc:
            batch.result.set_exception(exc)
            # retrieved here; joined callers still see it
            batch.result.exception()
            self._notifier.restore_failed(exc)
            raise
        except Exception as exc:
            batch.result.set_exception(exc)
            batch.result.exception()
            raise
        else:
            batch.result.set_result(info)
            self._notifier.restore_completed(info)
            return info
        finally:
            self._batch = None

    async def _collect(self, batch: _RestoreBatch) -> None:
        while not batch.finished:
            batch.arrived.clear()
            try:
                await asyncio.wait_for(batch.arrived.wait(), timeout=self._quiet_secs)
            except asyncio.TimeoutError:
                logger.info(
                    "No restore activity for %.1fs; closing batch of %d.",
                    self._quiet_secs, len(batch.transactions),
                )
                batch.finished = True

    async def _aggregate(
        self, session: AppUserSession, batch: _RestoreBatch
    ) -> PurchaserInfo:
        if batch.store_error is not None:
            raise RestoreError(
                f"Store failed to restore transactions: {batch.store_error}",
                purchaser_info=self._cache.current(session.app_user_id),
            ) from batch.store_error

        total = len(batch.tasks)
        if total == 0:
            raise RestoreEmptyError(
                "No transactions to restore for this store account.",
                purchaser_info=self._cache.current(session.app_user_id),
            )

        results = await asyncio.gather(*batch.tasks, return_exceptions=True)
        failures = [r for r in results if isinstance(r, BaseException)]
        for failure in failures:
            if not isinstance(failure, ValidationError):
                raise failure
        info = self._cache.current(session.app_user_id)
        if failures:
            logger.warning(
                "Restore for %s: %d of %d transaction(s) failed.",
                session.app_user_id, len(failures), total,
            )
            raise RestoreError(
                f"{len(failures)} of {total} restored transaction(s) failed: {failures[0]}",
                failed_count=len(failures),
                total_count=total,
                purchaser_info=info,
            ) from failures[0]
        if info is None:
            raise RestoreError(
                "Restore completed without purchaser info.", total_count=total
            )
        logger.info("Restored %d transaction(s) for %s.", total, session.app_user_id)
        return info
