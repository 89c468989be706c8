"""In-memory store of the latest accepted PurchaserInfo per app user id.

The cache is the single authoritative source of entitlement state inside
the process. Writes go through the engine's serialization lock; reads may
come from any thread and always see a complete snapshot.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import datetime, timezone

from purchasesync.models import PurchaserInfo

logger = logging.getLogger(__name__)

PurchaserInfoListener = Callable[[PurchaserInfo], None]


class PurchaserInfoCache:
    """Last-accepted-write-wins store of ``PurchaserInfo`` snapshots.

    - ``update()`` installs a snapshot unless it is older than the cached one.
    - ``current()`` returns the latest accepted snapshot, or None.
    - Every accepted update is fanned out to listeners registered with
      ``add_listener()``, whether or not a purchase caused it.
    """

    def __init__(self) -> None:
        self._entries: dict[str, PurchaserInfo] = {}
        self._lock = threading.Lock()
        self._listeners: list[PurchaserInfoListener] = []
        self._total_updates: int = 0
        self._total_discarded: int = 0
        self._last_update_at: str | None = None

    def add_listener(self, listener: PurchaserInfoListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: PurchaserInfoListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def current(self, app_user_id: str) -> PurchaserInfo | None:
        with self._lock:
            return self._entries.get(app_user_id)

    def update(self, app_user_id: str, info: PurchaserInfo) -> bool:
        """Install ``info`` if it is not older than the cached snapshot.

        Returns True when installed. A stale snapshot is discarded and the
        call still succeeds (returns False, no notification).
        """
        if info.app_user_id != app_user_id:
            raise ValueError(
                f"Snapshot for {info.app_user_id!r} cannot be cached under {app_user_id!r}"
            )

        with self._lock:
            existing = self._entries.get(app_user_id)
            if existing is not None and not info.is_newer_or_same(existing):
                self._total_discarded += 1
                logger.info(
                    "Discarding stale purchaser info for %s (%s older than %s).",
                    app_user_id,
                    info.request_date.isoformat(),
                    existing.request_date.isoformat(),
                )
                return False
            self._entries[app_user_id] = info
            self._total_updates += 1
            self._last_update_at = datetime.now(timezone.utc).isoformat()

        for listener in list(self._listeners):
            try:
                listener(info)
            except Exception:
                logger.exception("Purchaser info listener failed for %s.", app_user_id)
        return True

    def clear(self, app_user_id: str) -> None:
        """Forget the snapshot for one user (e.g. on logout)."""
        with self._lock:
            self._entries.pop(app_user_id, None)

    @property
    def size(self) -> int:
        """Number of users with a cached snapshot."""
        return len(self._entries)

    def health(self) -> dict[str, object]:
        """Return cache metrics for monitoring."""
        return {
            "cache_size": self.size,
            "total_updates": self._total_updates,
            "total_discarded": self._total_discarded,
            "last_update_at": self._last_update_at,
        }
