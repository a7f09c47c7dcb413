"""Channel hub configuration.

Everything is read from the environment once at import time. Defaults are
tuned for a single worker process talking to sandbox OTA endpoints.
"""

from __future__ import annotations

import os


def _env_flag(name: str, default: bool = True) -> bool:
    """Read a boolean-like flag from environment.

    Accepted falsy values: "0", "false", "off", "no" (case-insensitive).
    Anything else (or unset) falls back to `default`.
    """

    raw = os.environ.get(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in {"0", "false", "off", "no"}:
        return False
    if value in {"1", "true", "on", "yes"}:
        return True
    return default


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return float(raw)


# Application constants
API_PREFIX = "/api"
APP_NAME = "Channel Hub API"
APP_VERSION = "1.0.0"

# Connection health
CHANNEL_DEGRADE_THRESHOLD: int = _env_int("CHANNEL_DEGRADE_THRESHOLD", 3)
CHANNEL_PUSH_CONCURRENCY: int = _env_int("CHANNEL_PUSH_CONCURRENCY", 8)
CHANNEL_CALL_TIMEOUT_SECONDS: float = _env_float("CHANNEL_CALL_TIMEOUT_SECONDS", 15.0)

# Pull scheduling
CHANNEL_PULL_INTERVAL_MINUTES: int = _env_int("CHANNEL_PULL_INTERVAL_MINUTES", 15)
CHANNEL_PULL_LOOKBACK_HOURS: int = _env_int("CHANNEL_PULL_LOOKBACK_HOURS", 24)
CHANNEL_PULL_OVERLAP_MINUTES: int = _env_int("CHANNEL_PULL_OVERLAP_MINUTES", 5)
CHANNEL_REVALIDATE_INTERVAL_MINUTES: int = _env_int("CHANNEL_REVALIDATE_INTERVAL_MINUTES", 30)

# Outbox retries (pushes + compensating cancellations)
CHANNEL_RETRY_MAX_ATTEMPTS: int = _env_int("CHANNEL_RETRY_MAX_ATTEMPTS", 5)
CHANNEL_RETRY_BASE_DELAY_SECONDS: float = _env_float("CHANNEL_RETRY_BASE_DELAY_SECONDS", 30.0)
CHANNEL_RETRY_MAX_DELAY_SECONDS: float = _env_float("CHANNEL_RETRY_MAX_DELAY_SECONDS", 3600.0)
CHANNEL_OUTBOX_POLL_SECONDS: float = _env_float("CHANNEL_OUTBOX_POLL_SECONDS", 10.0)
# A claimed outbox item or webhook delivery whose worker died is taken
# over once its lease runs out
CHANNEL_OUTBOX_LEASE_SECONDS: int = _env_int("CHANNEL_OUTBOX_LEASE_SECONDS", 300)
CHANNEL_WEBHOOK_LEASE_SECONDS: int = _env_int("CHANNEL_WEBHOOK_LEASE_SECONDS", 300)

# Committed/cancelled bookings push availability to the hotel's other channels
CHANNEL_PROPAGATE_BOOKINGS: bool = _env_flag("CHANNEL_PROPAGATE_BOOKINGS", default=True)

SCHEDULER_ENABLED: bool = _env_flag("SCHEDULER_ENABLED", default=True)

# External channel configuration
AGODA_API_BASE = os.environ.get("AGODA_API_BASE", "https://sandbox-api.agoda.io/ycs/v2")
AGODA_TIMEOUT_SECONDS = _env_float("AGODA_TIMEOUT_SECONDS", 10.0)
AGODA_DEFAULT_CURRENCY = os.environ.get("AGODA_DEFAULT_CURRENCY", "BDT")
