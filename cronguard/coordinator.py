"""Master coordinator: owns the scheduler and every job runner in one process.

Jobs are independent. A runner that fails to start, or a job that keeps
failing, never stops the others from acquiring their own leases.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from dataclasses import field
from datetime import datetime
from typing import Any
from typing import Iterable

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from cronguard.clock import Clock
from cronguard.clock import utc_now
from cronguard.errors import LockStoreError
from cronguard.locks import LockManager
from cronguard.registry import JobRegistry
from cronguard.runner import JobRunner
from cronguard.runner import TickOutcome
from cronguard.store import ExecutionRecord
from cronguard.store import Lease

logger = logging.getLogger(__name__)

DEFAULT_STUCK_LEASE_MULTIPLIER = 2.0


@dataclass
class HealthReport:
    healthy: bool
    issues: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    timestamp: datetime | None = None
    status: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "healthy": self.healthy,
            "issues": list(self.issues),
            "warnings": list(self.warnings),
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "status": self.status,
        }


@dataclass
class SystemStatus:
    is_running: bool
    active_leases: list[Lease]
    runners: dict[str, dict[str, Any]]
    timestamp: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_running": self.is_running,
            "active_leases": [lease.to_dict() for lease in self.active_leases],
            "runners": self.runners,
            "timestamp": self.timestamp.isoformat(),
        }


class MasterCoordinator:
    """Starts, stops and inspects a set of :class:`JobRunner` objects."""

    def __init__(
        self,
        lock_manager: LockManager,
        runners: Iterable[JobRunner] = (),
        scheduler: AsyncIOScheduler | None = None,
        clock: Clock = utc_now,
        stuck_lease_multiplier: float = DEFAULT_STUCK_LEASE_MULTIPLIER,
        timezone: str = "UTC",
    ):
        self._locks = lock_manager
        self._scheduler = scheduler if scheduler is not None else AsyncIOScheduler(timezone=timezone)
        self._clock = clock
        self._stuck_multiplier = stuck_lease_multiplier
        self._runners: dict[str, JobRunner] = {}
        self._running = False
        for runner in runners:
            self.register(runner)

    @classmethod
    def from_registry(
        cls,
        registry: JobRegistry,
        lock_manager: LockManager,
        scheduler: AsyncIOScheduler | None = None,
        clock: Clock = utc_now,
        stuck_lease_multiplier: float = DEFAULT_STUCK_LEASE_MULTIPLIER,
        timezone: str = "UTC",
    ) -> "MasterCoordinator":
        """Build one runner per registered descriptor, sharing one scheduler."""
        coordinator = cls(
            lock_manager,
            scheduler=scheduler,
            clock=clock,
            stuck_lease_multiplier=stuck_lease_multiplier,
            timezone=timezone,
        )
        for descriptor in registry.list_jobs():
            coordinator.register(JobRunner(descriptor, lock_manager, clock=clock, timezone=timezone))
        return coordinator

    def register(self, runner: JobRunner) -> bool:
        """Add a runner. Duplicate job names are skipped with a warning."""
        if runner.name in self._runners:
            logger.warning("Runner %s already registered, skipping duplicate", runner.name)
            return False
        runner.attach(self._scheduler)
        self._runners[runner.name] = runner
        return True

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def lock_manager(self) -> LockManager:
        return self._locks

    @property
    def scheduler(self) -> AsyncIOScheduler:
        return self._scheduler

    @property
    def runners(self) -> list[JobRunner]:
        return list(self._runners.values())

    def get_runner(self, job_name: str) -> JobRunner | None:
        return self._runners.get(job_name)

    def job_names(self) -> list[str]:
        return list(self._runners)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> list[str]:
        """Start the scheduler and every runner in registration order.

        Returns:
            Names of runners that failed to start (already logged).
        """
        if self._running:
            return []
        if not self._scheduler.running:
            self._scheduler.start()
        self._running = True

        failed: list[str] = []
        for runner in self._runners.values():
            try:
                await runner.start()
            except Exception:
                logger.exception("Failed to start job %s; other jobs keep running", runner.name)
                failed.append(runner.name)

        logger.info("Coordinator started (%d jobs, %d failed to start)", len(self._runners), len(failed))
        return failed

    async def stop(self) -> None:
        """Stop accepting triggers on every runner. In-flight runs are not aborted."""
        if not self._running:
            return
        self._running = False

        for runner in reversed(list(self._runners.values())):
            try:
                await runner.stop()
            except Exception:
                logger.exception("Failed to stop job %s", runner.name)

        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            await self._wait_for_scheduler_shutdown()
        logger.info("Coordinator stopped")

    async def _wait_for_scheduler_shutdown(self, max_iterations: int = 100) -> None:
        # AsyncIOScheduler.shutdown() runs on the next loop iteration
        for _ in range(max_iterations):
            if not self._scheduler.running:
                return
            await asyncio.sleep(0)
        logger.warning("Scheduler still running after shutdown was requested")

    async def restart(self, pause: float = 1.0) -> list[str]:
        await self.stop()
        await asyncio.sleep(pause)
        return await self.start()

    async def wait_for_inflight(self, timeout: float | None = None) -> bool:
        """Wait for in-flight runs on every runner; True if all finished within *timeout*."""
        results = await asyncio.gather(*(r.wait_for_inflight(timeout) for r in self._runners.values()))
        return all(results)

    async def trigger(self, job_name: str) -> TickOutcome:
        """Run *job_name* now, through the same lease discipline as a scheduled tick."""
        runner = self._runners.get(job_name)
        if runner is None:
            raise KeyError(f"Unknown job: {job_name}")
        logger.info("Manual trigger for %s", job_name)
        return await runner.run_once()

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    async def find_stuck_leases(self) -> list[Lease]:
        """Held leases whose age exceeds the multiplier times their own TTL."""
        now = self._clock()
        leases = await self._locks.list_held_leases()
        return [lease for lease in leases if lease.age(now) > lease.ttl * self._stuck_multiplier]

    async def health_check(self) -> HealthReport:
        """Healthy iff no runner reports an internal error and no lease is stuck.

        A started coordinator whose scheduler is no longer running is unhealthy too.
        """
        issues: list[str] = []
        warnings: list[str] = []
        now = self._clock()

        if not self._running:
            warnings.append("Coordinator is not running")
        elif not self._scheduler.running:
            issues.append("Scheduler is not running; no job will fire")

        runner_status: dict[str, dict[str, Any]] = {}
        for runner in self._runners.values():
            status = runner.status()
            runner_status[runner.name] = status
            if status["error"]:
                issues.append(f"Job {runner.name} reports error: {status['error']}")
            elif status["last_outcome"] == TickOutcome.FAILED.value:
                warnings.append(f"Job {runner.name} last run failed: {status['last_error']}")

        try:
            stuck = await self.find_stuck_leases()
        except LockStoreError as e:
            issues.append(f"Lock store unavailable: {e}")
        else:
            for lease in stuck:
                issues.append(
                    f"Lease {lease.job_name} held by {lease.holder_id} for "
                    f"{lease.age(now).total_seconds():.0f}s "
                    f"(over {self._stuck_multiplier:g}x its {lease.ttl.total_seconds():.0f}s TTL)"
                )

        return HealthReport(
            healthy=not issues,
            issues=issues,
            warnings=warnings,
            timestamp=now,
            status={"is_running": self._running, "runners": runner_status},
        )

    async def get_system_status(self) -> SystemStatus:
        return SystemStatus(
            is_running=self._running,
            active_leases=await self._locks.list_active_leases(),
            runners={name: runner.status() for name, runner in self._runners.items()},
            timestamp=self._clock(),
        )

    async def log_system_status(self) -> None:
        """Log one summary line plus one line per active lease."""
        try:
            status = await self.get_system_status()
        except LockStoreError as e:
            logger.warning("System status unavailable: %s", e)
            return

        runs = sum(s["run_count"] for s in status.runners.values())
        errors = sum(s["error_count"] for s in status.runners.values())
        logger.info(
            "System status: running=%s jobs=%d active_leases=%d runs=%d errors=%d",
            status.is_running,
            len(status.runners),
            len(status.active_leases),
            runs,
            errors,
        )
        for lease in status.active_leases:
            logger.info("  lease %s held by %s until %s", lease.job_name, lease.holder_id, lease.expires_at.isoformat())

    async def get_execution_history(self, limit: int = 10) -> dict[str, list[ExecutionRecord]]:
        return {name: await self._locks.get_execution_history(name, limit=limit) for name in self._runners}

    async def get_performance_metrics(self, window: int = 100) -> dict[str, Any]:
        """Totals across jobs plus per-job success rate and average duration."""
        jobs: dict[str, dict[str, Any]] = {}
        total = completed = failed = 0
        for name in self._runners:
            stats = await self._locks.get_job_stats(name, window=window)
            jobs[name] = stats.to_dict()
            total += stats.total
            completed += stats.completed
            failed += stats.failed

        finished = completed + failed
        return {
            "total_executions": total,
            "successful": completed,
            "failed": failed,
            "success_rate": round(completed / finished, 4) if finished else None,
            "jobs": jobs,
            "timestamp": self._clock().isoformat(),
        }

    async def force_release_all_locks(self) -> dict[str, str]:
        """Operator-only: clear the lease of every registered job regardless of holder."""
        results: dict[str, str] = {}
        for name in self._runners:
            try:
                evicted = await self._locks.force_release(name)
            except LockStoreError as e:
                results[name] = f"error: {e}"
                continue
            results[name] = "released" if evicted else "no_lock_found"

        released = sum(1 for r in results.values() if r == "released")
        logger.warning("Force-released %d of %d job locks", released, len(results))
        return results


__all__ = ["HealthReport", "MasterCoordinator", "SystemStatus"]
