"""CronGuard scheduler entrypoint.

Boots one process generation:
- load the jobs manifest
- connect to the shared lock store
- initialize -> clean stale locks -> start -> health check
- serve until SIGINT/SIGTERM, then shut down gracefully
"""

from __future__ import annotations

import asyncio
import logging
import sys

from cronguard.clock import Clock
from cronguard.clock import utc_now
from cronguard.config import CronGuardSettings
from cronguard.config import get_settings
from cronguard.coordinator import MasterCoordinator
from cronguard.errors import ManifestError
from cronguard.errors import StartupError
from cronguard.loader import load_manifest
from cronguard.locks import LockManager
from cronguard.registry import JobRegistry
from cronguard.startup import StartupCoordinator

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    """Configure logging with standard format."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stdout,
    )
    # APScheduler logs every trigger at INFO
    logging.getLogger("apscheduler.executors").setLevel(logging.WARNING)


def load_registry(settings: CronGuardSettings) -> JobRegistry:
    try:
        return load_manifest(settings.jobs_manifest, default_ttl=settings.default_ttl_seconds)
    except ManifestError as e:
        raise StartupError(str(e)) from e


def build_service(
    settings: CronGuardSettings,
    registry: JobRegistry | None = None,
    clock: Clock = utc_now,
) -> StartupCoordinator:
    """Wire lock manager, coordinator and startup sequence from *settings*."""
    if not settings.database_url:
        raise StartupError("DATABASE_URL is required for the lock store")
    if registry is None:
        registry = load_registry(settings)

    try:
        lock_manager = LockManager.from_url(settings.database_url, clock=clock)
    except Exception as e:
        raise StartupError(f"cannot create lock store engine: {e}") from e
    master = MasterCoordinator.from_registry(
        registry,
        lock_manager,
        clock=clock,
        stuck_lease_multiplier=settings.stuck_lease_multiplier,
        timezone=settings.timezone,
    )
    return StartupCoordinator(
        lock_manager,
        master,
        clock=clock,
        skip_stale_lock_cleanup=settings.skip_stale_lock_cleanup,
        shutdown_grace_seconds=settings.shutdown_grace_seconds,
        status_interval_seconds=settings.status_interval_seconds,
    )


async def serve(settings: CronGuardSettings | None = None, registry: JobRegistry | None = None) -> int:
    """Run the scheduler until a termination signal. Returns the process exit code."""
    settings = settings or get_settings()

    logger.info("=" * 60)
    logger.info("Starting CronGuard scheduler")
    logger.info(f"Jobs manifest: {settings.jobs_manifest}")
    logger.info(f"Database: {'configured' if settings.database_url else 'NOT CONFIGURED'}")
    logger.info("=" * 60)

    service: StartupCoordinator | None = None
    try:
        service = build_service(settings, registry=registry)
        return await service.run(startup_timeout=settings.startup_timeout_seconds)
    except StartupError as e:
        logger.error("Startup failed: %s", e)
        return 1
    finally:
        if service is not None:
            service.master.lock_manager.dispose()
        logger.info("Goodbye!")


def main() -> int:
    configure_logging(get_settings().log_level)
    return asyncio.run(serve())


if __name__ == "__main__":
    sys.exit(main())
