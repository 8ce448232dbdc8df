"""Boot and shutdown sequence for a scheduler process.

::

    NotStarted -> InitializingStore -> CleaningStaleLocks -> StartingCoordinator
               -> HealthChecking -> Running -> ShuttingDown -> Stopped

Failures up to and including StartingCoordinator are fatal and move the
coordinator to ``Failed``. Health-check findings are logged as warnings;
individual jobs recover on their next tick.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from enum import Enum

from cronguard.clock import Clock
from cronguard.clock import utc_now
from cronguard.coordinator import HealthReport
from cronguard.coordinator import MasterCoordinator
from cronguard.errors import StartupError
from cronguard.errors import StartupTimeoutError
from cronguard.locks import LockManager
from cronguard.store import Lease

logger = logging.getLogger(__name__)


class StartupState(str, Enum):
    NOT_STARTED = "not_started"
    INITIALIZING_STORE = "initializing_store"
    CLEANING_STALE_LOCKS = "cleaning_stale_locks"
    STARTING_COORDINATOR = "starting_coordinator"
    HEALTH_CHECKING = "health_checking"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"
    FAILED = "failed"


class StartupCoordinator:
    """Drives one process generation from boot to clean exit."""

    def __init__(
        self,
        lock_manager: LockManager,
        master: MasterCoordinator,
        clock: Clock = utc_now,
        skip_stale_lock_cleanup: bool = False,
        shutdown_grace_seconds: float = 60.0,
        status_interval_seconds: float = 300.0,
    ):
        self._locks = lock_manager
        self._master = master
        self._clock = clock
        self._skip_cleanup = skip_stale_lock_cleanup
        self._grace = shutdown_grace_seconds
        self._status_interval = status_interval_seconds

        self.state = StartupState.NOT_STARTED
        self.health: HealthReport | None = None
        self.cleared_leases: list[Lease] = []

        self._cleanup_done = False
        self._stop_event = asyncio.Event()
        self._status_task: asyncio.Task | None = None

    @property
    def master(self) -> MasterCoordinator:
        return self._master

    def _transition(self, state: StartupState) -> None:
        logger.info("Startup state: %s -> %s", self.state.value, state.value)
        self.state = state

    def _fail(self, message: str) -> StartupError:
        failed_at = self.state
        self.state = StartupState.FAILED
        logger.error("Startup failed during %s: %s", failed_at.value, message)
        return StartupError(message, state=failed_at)

    # ------------------------------------------------------------------
    # Boot
    # ------------------------------------------------------------------

    async def cleanup_stale_locks(self) -> list[Lease]:
        """Force-release the lease of every known job, once per boot.

        Any lease found is presumed left over from the previous process
        generation. Unexpired ones are logged as warnings with their holder.
        """
        if self._cleanup_done:
            raise RuntimeError("Stale lock cleanup already ran for this boot")
        if self._master.is_running:
            raise RuntimeError("Stale lock cleanup must run before the coordinator starts")
        self._cleanup_done = True

        now = self._clock()
        cleared: list[Lease] = []
        for name in self._master.job_names():
            evicted = await self._locks.force_release(name)
            if evicted is None:
                continue
            cleared.append(evicted)
            if evicted.is_active(now):
                logger.warning(
                    "Cleared unexpired lease %s held by %s (expires %s); assuming its process is gone",
                    name,
                    evicted.holder_id,
                    evicted.expires_at.isoformat(),
                )
            else:
                logger.info("Cleared expired lease %s (holder=%s)", name, evicted.holder_id)

        logger.info("Stale lock cleanup done (%d of %d jobs had a lease)", len(cleared), len(self._master.job_names()))
        self.cleared_leases = cleared
        return cleared

    async def start(self) -> HealthReport | None:
        """Run the boot sequence up to ``Running``.

        Raises:
            StartupError: if any step before health checking fails.
        """
        if self.state != StartupState.NOT_STARTED:
            raise RuntimeError(f"Cannot start from state {self.state.value}")

        self._transition(StartupState.INITIALIZING_STORE)
        try:
            await self._locks.initialize()
        except Exception as e:
            raise self._fail(f"lock store initialization failed: {e}") from e

        self._transition(StartupState.CLEANING_STALE_LOCKS)
        if self._skip_cleanup:
            logger.warning("Stale lock cleanup disabled; relying on lease expiry to recover orphaned locks")
        else:
            try:
                await self.cleanup_stale_locks()
            except Exception as e:
                raise self._fail(f"stale lock cleanup failed: {e}") from e

        self._transition(StartupState.STARTING_COORDINATOR)
        try:
            await self._master.start()
        except Exception as e:
            error = self._fail(f"coordinator failed to start: {e}")
            await self._master.stop()
            raise error from e

        self._transition(StartupState.HEALTH_CHECKING)
        try:
            report = await self._master.health_check()
        except Exception as e:  # noqa: BLE001
            logger.warning("Startup health check could not run: %s", e)
            report = None
        else:
            for issue in report.issues:
                logger.warning("Startup health issue: %s", issue)
            for warning in report.warnings:
                logger.warning("Startup health warning: %s", warning)
        self.health = report

        self._transition(StartupState.RUNNING)
        logger.info("Coordination running (%d jobs)", len(self._master.job_names()))
        return report

    async def start_with_timeout(self, timeout: float) -> HealthReport | None:
        """Race :meth:`start` against *timeout* seconds; a timeout is fatal."""
        try:
            return await asyncio.wait_for(self.start(), timeout=timeout)
        except asyncio.TimeoutError as e:
            failed_at = self.state
            self.state = StartupState.FAILED
            logger.error("Startup timed out after %ss during %s", timeout, failed_at.value)
            await self._master.stop()
            raise StartupTimeoutError(
                f"startup did not finish within {timeout}s (stuck in {failed_at.value})",
                state=failed_at,
            ) from e

    # ------------------------------------------------------------------
    # Run / shutdown
    # ------------------------------------------------------------------

    def request_shutdown(self, sig: signal.Signals | None = None) -> None:
        if sig is not None:
            logger.info("Received %s, shutting down", sig.name)
        self._stop_event.set()

    async def _status_loop(self) -> None:
        while True:
            await asyncio.sleep(self._status_interval)
            try:
                await self._master.log_system_status()
            except Exception as e:  # noqa: BLE001
                logger.warning("Periodic status log failed: %s", e)

    async def run(self, startup_timeout: float | None = None) -> int:
        """Boot, serve until SIGINT/SIGTERM, then shut down. Returns the exit code."""
        if startup_timeout is None:
            await self.start()
        else:
            await self.start_with_timeout(startup_timeout)

        loop = asyncio.get_running_loop()
        installed: list[signal.Signals] = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_shutdown, sig)
                installed.append(sig)
            except (NotImplementedError, RuntimeError):
                logger.debug("Cannot install handler for %s", sig.name)

        if self._status_interval > 0:
            self._status_task = asyncio.create_task(self._status_loop(), name="cronguard-status")

        try:
            await self._stop_event.wait()
        finally:
            for sig in installed:
                loop.remove_signal_handler(sig)
            await self.shutdown()
        return 0

    async def shutdown(self) -> None:
        """Stop all runners and give in-flight runs the grace period to release their own leases."""
        if self.state in (StartupState.SHUTTING_DOWN, StartupState.STOPPED):
            return
        self._transition(StartupState.SHUTTING_DOWN)

        if self._status_task is not None:
            self._status_task.cancel()
            try:
                await self._status_task
            except asyncio.CancelledError:
                pass
            self._status_task = None

        await self._master.stop()
        if not await self._master.wait_for_inflight(self._grace):
            logger.warning(
                "Shutdown grace period (%ss) elapsed with runs in flight; their leases will expire on their own",
                self._grace,
            )

        self._transition(StartupState.STOPPED)


__all__ = ["StartupCoordinator", "StartupState"]
