"""Receipt validation against the backend, with retry and backoff."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any

from purchasesync.backend_client import BackendClient
from purchasesync.errors import NetworkError, ServerError
from purchasesync.models import AppUserSession, PurchaserInfo, Transaction
from purchasesync.purchaser_info_cache import PurchaserInfoCache

logger = logging.getLogger(__name__)


class ReceiptValidator:
    """Posts receipts to the backend and installs the resulting snapshot.

    Transport errors and 5xx responses are retried with capped exponential
    backoff up to ``max_attempts`` total attempts, then surfaced as
    ``NetworkError``. A ``BackendError`` (4xx) is raised on first sight.
    The transaction id is the idempotency key, so resubmitting after an
    exhausted retry budget never double-counts a purchase.
    """

    def __init__(
        self,
        backend: BackendClient,
        cache: PurchaserInfoCache,
        serial: asyncio.Lock,
        max_attempts: int = 4,
        backoff_base_secs: float = 0.5,
        backoff_max_secs: float = 8.0,
    ) -> None:
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {max_attempts}")
        self._backend = backend
        self._cache = cache
        self._serial = serial
        self._max_attempts = max_attempts
        self._backoff_base = backoff_base_secs
        self._backoff_max = backoff_max_secs

    def _backoff(self, attempt: int) -> float:
        """Delay before retry number ``attempt + 1`` (0-based)."""
        return min(self._backoff_base * (2 ** attempt), self._backoff_max)

    async def _with_retry(
        self, label: str, call: Callable[[], Awaitable[dict[str, Any]]]
    ) -> dict[str, Any]:
        last_error: NetworkError | None = None
        for attempt in range(self._max_attempts):
            try:
                data = await call()
                if not isinstance(data, dict):
                    raise ServerError("Backend returned a non-object body.")
                return data
            except NetworkError as exc:
                last_error = exc
            if attempt < self._max_attempts - 1:
                delay = self._backoff(attempt)
                logger.warning(
                    "%s attempt %d/%d failed (%s), retrying in %.1fs...",
                    label, attempt + 1, self._max_attempts, last_error, delay,
                )
                await asyncio.sleep(delay)
        logger.warning(
            "%s failed after %d attempt(s): %s", label, self._max_attempts, last_error
        )
        raise last_error

    async def _install(self, session: AppUserSession, data: dict[str, Any]) -> PurchaserInfo:
        info = PurchaserInfo.from_response(
            session.app_user_id, data, received_at=datetime.now(timezone.utc)
        )
        async with self._serial:
            self._cache.update(session.app_user_id, info)
            current = self._cache.current(session.app_user_id)
        return current if current is not None else info

    async def validate(
        self,
        session: AppUserSession,
        transaction: Transaction,
        *,
        is_restore: bool = False,
    ) -> PurchaserInfo:
        """Validate one transaction's receipt and return the latest snapshot.

        Raises:
            NetworkError: retry budget exhausted; do not finalize.
            BackendError: receipt rejected for good; finalize.
        """
        data = await self._with_retry(
            f"Receipt post for {transaction.identifier}",
            lambda: self._backend.post_receipt(
                app_user_id=session.app_user_id,
                receipt_payload=transaction.receipt_payload,
                product_identifier=transaction.product_identifier,
                quantity=transaction.quantity,
                transaction_id=transaction.identifier,
                is_restore=is_restore,
                api_key=session.api_key,
            ),
        )
        return await self._install(session, data)

    async def fetch_purchaser_info(self, session: AppUserSession) -> PurchaserInfo:
        """Refresh purchaser info outside of any purchase."""
        data = await self._with_retry(
            f"Purchaser info fetch for {session.app_user_id}",
            lambda: self._backend.get_subscriber(session.app_user_id),
        )
        return await self._install(session, data)
