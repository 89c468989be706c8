"""Engine configuration — plain frozen dataclass, no pydantic.

The host application constructs this from its own settings (env vars,
pydantic-settings, etc.) and passes it to ``Purchases``.
"""

from dataclasses import dataclass

from purchasesync.constants import (
    DEFAULT_BACKEND_URL,
    DEFAULT_BACKOFF_BASE_SECS,
    DEFAULT_BACKOFF_MAX_SECS,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_REFRESH_INTERVAL_SECS,
    DEFAULT_RESTORE_QUIET_SECS,
)


@dataclass(frozen=True)
class PurchasesConfig:
    backend_url: str = DEFAULT_BACKEND_URL
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff_base_secs: float = DEFAULT_BACKOFF_BASE_SECS
    backoff_max_secs: float = DEFAULT_BACKOFF_MAX_SECS
    restore_quiet_secs: float = DEFAULT_RESTORE_QUIET_SECS
    refresh_interval_secs: float = DEFAULT_REFRESH_INTERVAL_SECS
    request_timeout_secs: float = 15.0
