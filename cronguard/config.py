"""CronGuard configuration.

Environment variables for the coordination service. Values are read once per
process through :func:`get_settings`.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache

from dotenv import load_dotenv


def _truthy(value: str | None) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _strip_quotes(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    if (value.startswith('"') and value.endswith('"')) or (value.startswith("'") and value.endswith("'")):
        value = value[1:-1].strip()
    return value or None


@dataclass(frozen=True)
class CronGuardSettings:
    """Settings for the scheduler process and the operator CLI."""

    # Shared lock store
    database_url: str | None = None

    # Job declarations
    jobs_manifest: str = "manifest.py"
    default_ttl_seconds: float = 300.0
    timezone: str = "UTC"

    # Boot / shutdown
    startup_timeout_seconds: float = 300.0
    shutdown_grace_seconds: float = 60.0
    skip_stale_lock_cleanup: bool = False

    # Monitoring
    status_interval_seconds: float = 300.0
    stuck_lease_multiplier: float = 2.0

    # Log level
    log_level: str = "INFO"


@lru_cache
def get_settings() -> CronGuardSettings:
    """Load settings from environment variables."""
    load_dotenv()
    return CronGuardSettings(
        database_url=_strip_quotes(os.getenv("DATABASE_URL")),
        jobs_manifest=os.getenv("CRONGUARD_JOBS_MANIFEST", "manifest.py"),
        default_ttl_seconds=float(os.getenv("CRONGUARD_DEFAULT_TTL_SECONDS", "300")),
        timezone=os.getenv("CRONGUARD_TIMEZONE", "UTC"),
        startup_timeout_seconds=float(os.getenv("CRONGUARD_STARTUP_TIMEOUT_SECONDS", "300")),
        shutdown_grace_seconds=float(os.getenv("CRONGUARD_SHUTDOWN_GRACE_SECONDS", "60")),
        skip_stale_lock_cleanup=_truthy(os.getenv("CRONGUARD_SKIP_STALE_LOCK_CLEANUP")),
        status_interval_seconds=float(os.getenv("CRONGUARD_STATUS_INTERVAL_SECONDS", "300")),
        stuck_lease_multiplier=float(os.getenv("CRONGUARD_STUCK_LEASE_MULTIPLIER", "2.0")),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )
