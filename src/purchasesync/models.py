"""Transactions, entitlements and purchaser info snapshots.

Pure data model — no I/O. Every type here is an immutable value; state
changes produce new instances (``dataclasses.replace``).
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any

from purchasesync.constants import StoreErrorCode, TransactionState

logger = logging.getLogger(__name__)


def _parse_datetime(value: Any) -> datetime | None:
    """Parse an ISO-8601 string (``Z`` suffix accepted). None on garbage."""
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.warning("Unparseable timestamp %r; ignoring.", value)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _format_datetime(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


# ---------------------------------------------------------------------------
# Session / Product
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AppUserSession:
    """Credential/identity pair every validation request is made under."""

    api_key: str
    app_user_id: str


@dataclass(frozen=True)
class Product:
    """Store catalog entry. ``price`` is an opaque display string."""

    identifier: str
    title: str = ""
    description: str = ""
    price: str = ""


# ---------------------------------------------------------------------------
# Transaction
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Transaction:
    """A single purchase or restore unit reported by the platform store."""

    identifier: str
    product_identifier: str
    state: TransactionState
    quantity: int = 1
    receipt_payload: bytes = b""
    failure_reason: str | None = None
    error_code: StoreErrorCode | None = None
    original_identifier: str | None = None
    transaction_date: datetime | None = None


# ---------------------------------------------------------------------------
# Entitlement
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Entitlement:
    """Access to one entitlement, optionally until ``expiration_date``."""

    identifier: str
    expiration_date: datetime | None = None  # None = never expires
    original_transaction_id: str | None = None

    def is_active(self, at: datetime | None = None) -> bool:
        if self.expiration_date is None:
            return True
        return self.expiration_date > (at or datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.identifier,
            "expires_at": _format_datetime(self.expiration_date),
            "original_transaction_id": self.original_transaction_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Entitlement:
        return cls(
            identifier=str(data.get("id", "")),
            expiration_date=_parse_datetime(data.get("expires_at")),
            original_transaction_id=data.get("original_transaction_id"),
        )


# ---------------------------------------------------------------------------
# PurchaserInfo
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PurchaserInfo:
    """The backend's authoritative statement of what a user has access to.

    ``request_date`` is the snapshot's generation: the cache never lets an
    older generation replace a newer one for the same ``app_user_id``.
    ``entitlements`` is a read-only view, so a cached snapshot cannot be
    changed in place.
    """

    app_user_id: str
    request_date: datetime
    entitlements: Mapping[str, Entitlement] = field(default_factory=dict)
    active_product_identifiers: frozenset[str] = frozenset()

    def __post_init__(self) -> None:
        object.__setattr__(self, "entitlements", MappingProxyType(dict(self.entitlements)))
        object.__setattr__(
            self, "active_product_identifiers", frozenset(self.active_product_identifiers)
        )

    def active_entitlements(self, at: datetime | None = None) -> dict[str, Entitlement]:
        """Entitlements not yet expired at ``at`` (default: now)."""
        return {k: e for k, e in self.entitlements.items() if e.is_active(at)}

    def is_newer_or_same(self, other: PurchaserInfo) -> bool:
        return self.request_date >= other.request_date

    # -- serialization --------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return {
            "app_user_id": self.app_user_id,
            "request_date": _format_datetime(self.request_date),
            "entitlements": [e.to_dict() for e in self.entitlements.values()],
            "active_product_identifiers": sorted(self.active_product_identifiers),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PurchaserInfo:
        return cls.from_response(
            str(data.get("app_user_id", "")), data
        )

    @classmethod
    def from_response(
        cls,
        app_user_id: str,
        data: dict[str, Any],
        received_at: datetime | None = None,
    ) -> PurchaserInfo:
        """Build a snapshot from a backend response body.

        Entries that are not dicts or lack an ``id`` are skipped. Missing
        ``request_date`` falls back to ``received_at`` (default: now).
        """
        entitlements: dict[str, Entitlement] = {}
        raw_entitlements = data.get("entitlements", [])
        if isinstance(raw_entitlements, list):
            for raw in raw_entitlements:
                if isinstance(raw, dict) and raw.get("id"):
                    ent = Entitlement.from_dict(raw)
                    entitlements[ent.identifier] = ent

        raw_active = data.get("active_product_identifiers", [])
        active = frozenset(
            str(p) for p in raw_active if p
        ) if isinstance(raw_active, list) else frozenset()

        request_date = (
            _parse_datetime(data.get("request_date"))
            or received_at
            or datetime.now(timezone.utc)
        )
        return cls(
            app_user_id=app_user_id,
            request_date=request_date,
            entitlements=entitlements,
            active_product_identifiers=active,
        )
