"""Purchases — the engine object a host application constructs and owns.

Wires the purchase-queue observer, receipt validator, purchaser info cache,
restore and promotional coordinators and the listener notifier around one
``AppUserSession``. There is no module-level engine: create one per user
session and ``close()`` it when done.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable

from purchasesync import __version__
from purchasesync.backend_client import BackendClient
from purchasesync.config import PurchasesConfig
from purchasesync.errors import ConfigurationError, RestoreError, ValidationError
from purchasesync.models import AppUserSession, Product, PurchaserInfo
from purchasesync.notifier import DelegateNotifier, PurchasesListener
from purchasesync.observer import TransactionObserver
from purchasesync.payment_queue import PaymentQueue
from purchasesync.promotional import PromotionalPurchaseCoordinator
from purchasesync.purchaser_info_cache import PurchaserInfoCache
from purchasesync.receipt_validator import ReceiptValidator
from purchasesync.restore import RestoreCoordinator

logger = logging.getLogger(__name__)


class Purchases:
    """Entry point for purchase synchronization.

    Nothing is read from the store queue until a listener is attached with
    ``set_listener()``, so the host is never asked to react before it is
    ready. Listener callbacks may then fire at any time.

    Args:
        api_key: Backend API key. Must be non-empty.
        app_user_id: Unique id of the app user. Must be non-empty.
        payment_queue: The platform store queue (see ``PaymentQueue``).
        config: Retry, restore and refresh tuning.
        backend: Pre-built backend client (tests, shared connection pools).
            When omitted one is created from ``config.backend_url`` and
            closed by ``close()``.
    """

    def __init__(
        self,
        api_key: str,
        app_user_id: str,
        *,
        payment_queue: PaymentQueue,
        config: PurchasesConfig | None = None,
        backend: BackendClient | None = None,
    ) -> None:
        if not api_key or not api_key.strip():
            raise ConfigurationError("api_key must be a non-empty string.")
        if not app_user_id or not app_user_id.strip():
            raise ConfigurationError("app_user_id must be a non-empty string.")

        self._config = config or PurchasesConfig()
        self._session = AppUserSession(api_key=api_key, app_user_id=app_user_id)
        self._queue = payment_queue
        self._owns_backend = backend is None
        self._backend = backend or BackendClient(
            self._config.backend_url,
            api_key,
            timeout=self._config.request_timeout_secs,
        )
        self._serial = asyncio.Lock()
        self._cache = PurchaserInfoCache()
        self._notifier = DelegateNotifier()
        self._validator = ReceiptValidator(
            self._backend,
            self._cache,
            self._serial,
            max_attempts=self._config.max_attempts,
            backoff_base_secs=self._config.backoff_base_secs,
            backoff_max_secs=self._config.backoff_max_secs,
        )
        self._restore = RestoreCoordinator(
            payment_queue,
            self._cache,
            self._notifier,
            quiet_secs=self._config.restore_quiet_secs,
        )
        self._promotional = PromotionalPurchaseCoordinator(
            self._notifier, self.make_purchase
        )
        self._observer = TransactionObserver(
            self._session,
            payment_queue,
            self._validator,
            self._notifier,
            self._restore,
            self._promotional,
            self._serial,
        )
        self._restore.bind(self._observer.spawn_restored)
        self._cache.add_listener(self._notifier.purchaser_info_updated)
        self._notifier.add_attach_hook(self._observer.observe)
        self._notifier.add_detach_hook(self._observer.suspend)
        self._refresh_task: asyncio.Task[None] | None = None
        self._closed = False
        logger.info("Purchases configured for %s.", app_user_id)

    @staticmethod
    def framework_version() -> str:
        return __version__

    @property
    def app_user_id(self) -> str:
        return self._session.app_user_id

    @property
    def purchaser_info(self) -> PurchaserInfo | None:
        """Latest accepted snapshot, or None before the first backend answer."""
        return self._cache.current(self._session.app_user_id)

    # -- listener ---------------------------------------------------------------

    @property
    def listener(self) -> PurchasesListener | None:
        return self._notifier.listener

    def set_listener(self, listener: PurchasesListener) -> None:
        """Attach ``listener`` (held weakly) and start observing the store.

        Must be called from the engine's running event loop. Events queued
        while no listener was attached are delivered first.
        """
        self._check_open()
        self._notifier.attach(listener)

    def remove_listener(self) -> None:
        """Detach the listener; unfinished transactions stay in the store."""
        self._notifier.detach()

    # -- purchases --------------------------------------------------------------

    def make_purchase(self, product_identifier: str, quantity: int = 1) -> None:
        """Ask the store to buy ``product_identifier``.

        The outcome arrives via ``on_transaction_completed`` or
        ``on_transaction_failed``; the engine finalizes the transaction.
        """
        self._check_open()
        if not product_identifier:
            raise ValueError("product_identifier must be non-empty")
        if quantity < 1:
            raise ValueError(f"quantity must be at least 1, got {quantity}")
        logger.info("Purchasing %s x%d.", product_identifier, quantity)
        self._queue.add_payment(product_identifier, quantity)

    async def restore_transactions(self) -> PurchaserInfo:
        """Restore every purchase tied to the store account.

        Outcome is reported once through ``on_restore_completed`` or
        ``on_restore_failed``, and returned (or raised) here as well.

        Raises:
            RestoreError: no listener is attached, so the store queue is not
                observed and restored transactions could not be collected.
                The store is not asked and no callback fires.
        """
        self._check_open()
        if not self._observer.observing:
            raise RestoreError(
                "restore_transactions() needs an attached listener; call set_listener() first.",
                purchaser_info=self.purchaser_info,
            )
        return await self._restore.restore(self._session)

    async def products(self, identifiers: Iterable[str]) -> list[Product]:
        """Store catalog pass-through. Any store failure yields ``[]``."""
        try:
            return await self._queue.fetch_products(set(identifiers))
        except Exception:
            logger.warning("Product lookup failed.", exc_info=True)
            return []

    # -- purchaser info refresh -------------------------------------------------

    async def refresh_purchaser_info(self) -> PurchaserInfo | None:
        """Fetch purchaser info outside a purchase. None if the fetch failed.

        Accepted snapshots reach the listener via ``on_purchaser_info_updated``.
        """
        try:
            return await self._validator.fetch_purchaser_info(self._session)
        except ValidationError as exc:
            logger.warning(
                "Purchaser info refresh failed for %s: %s", self._session.app_user_id, exc
            )
            return None

    async def start_background_refresh(self) -> None:
        """Start the periodic purchaser info refresh task."""
        if self._refresh_task is not None:
            return
        self._refresh_task = asyncio.create_task(self._background_refresh_loop())

    async def _background_refresh_loop(self) -> None:
        interval = self._config.refresh_interval_secs
        logger.info("Background refresh loop started (interval=%ss).", interval)
        try:
            while True:
                await asyncio.sleep(interval)
                await self.refresh_purchaser_info()
        except asyncio.CancelledError:
            pass

    async def stop(self) -> None:
        """Cancel the background refresh task."""
        if self._refresh_task is not None:
            self._refresh_task.cancel()
            try:
                await self._refresh_task
            except asyncio.CancelledError:
                pass
            self._refresh_task = None

    # -- lifecycle --------------------------------------------------------------

    def _check_open(self) -> None:
        if self._closed:
            raise RuntimeError("Purchases instance is closed")

    async def wait_idle(self) -> None:
        """Wait until queued store events and in-flight validations settle."""
        await self._observer.drain()

    async def close(self) -> None:
        """Stop observing, finish in-flight work and release the backend client.

        Transactions that are still unfinished remain in the store queue.
        """
        if self._closed:
            return
        await self.stop()
        self._observer.suspend()
        await self._observer.drain()
        self._closed = True
        if self._owns_backend:
            await self._backend.close()
        logger.info("Purchases closed for %s.", self._session.app_user_id)

    async def __aenter__(self) -> Purchases:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()

    def health(self) -> dict[str, object]:
        return {
            "app_user_id": self._session.app_user_id,
            "framework_version": __version__,
            "restore_in_progress": self._restore.in_progress,
            "deferred_promotional_purchases": self._promotional.pending_count,
            "background_refresh_running": self._refresh_task is not None
                                          and not self._refresh_task.done(),
            **self._observer.health(),
            **self._notifier.health(),
            **self._cache.health(),
        }
