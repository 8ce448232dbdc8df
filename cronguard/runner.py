"""Per-job runner: schedule trigger -> lease -> guarded task -> release.

Each trigger of a :class:`JobRunner` walks the same small state machine::

    Idle -> Acquiring -> Skipped                      -> Idle
                      -> Running -> Completed|Failed  -> Idle

Whether a tick runs is decided only by the shared lock store. The local
counters kept here are for observability and never influence acquisition.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from datetime import datetime
from enum import Enum
from typing import Any
from typing import Awaitable
from typing import Callable

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from cronguard.clock import Clock
from cronguard.clock import utc_now
from cronguard.context import JobContext
from cronguard.errors import LockStoreError
from cronguard.locks import LockManager
from cronguard.registry import JobDescriptor
from cronguard.store import ExecutionStatus

logger = logging.getLogger(__name__)


class RunnerState(str, Enum):
    IDLE = "idle"
    ACQUIRING = "acquiring"
    RUNNING = "running"


class TickOutcome(str, Enum):
    SKIPPED = "skipped"
    COMPLETED = "completed"
    FAILED = "failed"


def retry_delay(attempt: int) -> float:
    """Exponential backoff between attempts: 2, 4, 8, ... capped at 30 seconds."""
    return min(2**attempt, 30)


def _invoke_handler(handler: Callable[..., Awaitable[Any]], ctx: JobContext) -> Awaitable[Any]:
    """Call *handler* with a JobContext if it declares a required positional parameter."""
    try:
        params = inspect.signature(handler).parameters.values()
    except (TypeError, ValueError):
        return handler()
    wants_ctx = any(
        p.kind in (p.POSITIONAL_ONLY, p.POSITIONAL_OR_KEYWORD) and p.default is p.empty for p in params
    )
    return handler(ctx) if wants_ctx else handler()


class JobRunner:
    """Runs one job descriptor under the lease discipline."""

    def __init__(
        self,
        descriptor: JobDescriptor,
        lock_manager: LockManager,
        scheduler: AsyncIOScheduler | None = None,
        clock: Clock = utc_now,
        timezone: str = "UTC",
        retry_backoff: Callable[[int], float] = retry_delay,
    ):
        self.descriptor = descriptor
        self._locks = lock_manager
        self._scheduler = scheduler
        self._clock = clock
        self._timezone = timezone
        self._retry_backoff = retry_backoff

        self._accepting = False
        self._inflight: set[asyncio.Task] = set()
        self._internal_error: str | None = None

        self.state = RunnerState.IDLE
        self.run_count = 0
        self.skip_count = 0
        self.error_count = 0
        self.last_run_at: datetime | None = None
        self.last_outcome: TickOutcome | None = None
        self.last_error: str | None = None

    @property
    def name(self) -> str:
        return self.descriptor.name

    @property
    def scheduler_job_id(self) -> str:
        return f"job_{self.descriptor.name}"

    @property
    def is_running(self) -> bool:
        """True while the runner accepts schedule triggers."""
        return self._accepting

    @property
    def inflight(self) -> int:
        return len(self._inflight)

    def attach(self, scheduler: AsyncIOScheduler) -> None:
        self._scheduler = scheduler

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Register the cron trigger and start accepting triggers."""
        if self._accepting:
            return
        if not self.descriptor.enabled:
            logger.info("Job %s is disabled; not scheduling", self.name)
            return
        if self._scheduler is None:
            raise RuntimeError(f"No scheduler attached to runner {self.name}")

        try:
            self._scheduler.add_job(
                self._on_trigger,
                CronTrigger.from_crontab(self.descriptor.schedule, timezone=self._timezone),
                id=self.scheduler_job_id,
                name=self.name,
                replace_existing=True,
                coalesce=True,
            )
        except Exception as e:
            self._internal_error = f"failed to schedule: {e}"
            raise

        self._accepting = True
        self._internal_error = None
        logger.info(
            "Scheduled job %s with cron: %s (ttl=%ss)",
            self.name,
            self.descriptor.schedule,
            self.descriptor.ttl_delta.total_seconds(),
        )

    async def stop(self) -> None:
        """Stop accepting triggers. In-flight runs are left to finish."""
        if not self._accepting:
            return
        self._accepting = False

        if self._scheduler is not None:
            try:
                self._scheduler.remove_job(self.scheduler_job_id)
            except JobLookupError:
                logger.debug("Job %s not found in scheduler (already removed)", self.name)
        logger.info("Stopped job %s (%d run(s) in flight)", self.name, len(self._inflight))

    async def wait_for_inflight(self, timeout: float | None = None) -> bool:
        """Wait for scheduled runs already in progress.

        Returns:
            True if nothing is left running, False if *timeout* elapsed first.
        """
        tasks = set(self._inflight)
        if not tasks:
            return True
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        if pending:
            logger.warning("Job %s still has %d run(s) in flight after %ss", self.name, len(pending), timeout)
            return False
        return True

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _on_trigger(self) -> None:
        if not self._accepting:
            logger.debug("Trigger for %s ignored (runner stopped)", self.name)
            return
        # Own the task so scheduler shutdown never cancels a guarded run
        task = asyncio.create_task(self._run_scheduled(), name=f"cronguard-{self.name}")
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _run_scheduled(self) -> None:
        try:
            await self.run_once()
        except LockStoreError as e:
            logger.error("Tick for %s aborted by lock store failure; retrying on next trigger: %s", self.name, e)

    async def run_once(self) -> TickOutcome:
        """Run one lease-guarded execution of the job.

        Guarded-task failures are contained here and reported as
        ``TickOutcome.FAILED``. Lock store failures propagate as
        :class:`LockStoreError`; the task is never invoked without a
        confirmed acquisition.
        """
        self.state = RunnerState.ACQUIRING
        try:
            holder_id = await self._locks.acquire(self.name, self.descriptor.ttl_delta)
        except LockStoreError as e:
            self.state = RunnerState.IDLE
            self._internal_error = str(e)
            raise

        if holder_id is None:
            self.state = RunnerState.IDLE
            self.skip_count += 1
            self.last_outcome = TickOutcome.SKIPPED
            self._internal_error = None
            logger.info("Skipping %s: lease held by another instance", self.name)
            return TickOutcome.SKIPPED

        self.state = RunnerState.RUNNING
        self.run_count += 1
        self.last_run_at = self._clock()
        outcome = TickOutcome.COMPLETED
        error_message: str | None = None
        logger.info("Running %s (execution=%s)", self.name, holder_id)

        try:
            await self._execute(holder_id)
        except asyncio.CancelledError:
            outcome = TickOutcome.FAILED
            error_message = "cancelled"
            raise
        except Exception as e:
            outcome = TickOutcome.FAILED
            error_message = f"{type(e).__name__}: {e}"
            logger.exception("Job %s failed: %s", self.name, e)
        finally:
            if outcome is TickOutcome.FAILED:
                self.error_count += 1
                self.last_error = error_message
            self.last_outcome = outcome
            try:
                await self._locks.release(
                    self.name,
                    holder_id,
                    ExecutionStatus.COMPLETED if outcome is TickOutcome.COMPLETED else ExecutionStatus.FAILED,
                    error_message,
                )
                self._internal_error = None
            except LockStoreError as e:
                self._internal_error = str(e)
                logger.error("Could not release %s; lease will expire on its own: %s", self.name, e)
                raise
            finally:
                self.state = RunnerState.IDLE

        if outcome is TickOutcome.COMPLETED:
            logger.info("Completed %s (execution=%s)", self.name, holder_id)
        return outcome

    async def _execute(self, holder_id: str) -> None:
        """Run the handler, retrying up to ``max_attempts`` within the held lease."""
        descriptor = self.descriptor
        attempt = 0
        while True:
            attempt += 1
            ctx = JobContext(job_name=self.name, execution_id=holder_id, attempt=attempt)
            try:
                if descriptor.timeout_seconds is None:
                    await _invoke_handler(descriptor.handler, ctx)
                else:
                    try:
                        await asyncio.wait_for(_invoke_handler(descriptor.handler, ctx), timeout=descriptor.timeout_seconds)
                    except asyncio.TimeoutError:
                        raise TimeoutError(f"Job exceeded {descriptor.timeout_seconds}s timeout") from None
                return
            except Exception as e:
                if attempt >= descriptor.max_attempts:
                    raise
                backoff = self._retry_backoff(attempt)
                logger.warning(
                    "Job %s failed (attempt %d/%d): %s; retrying in %ss",
                    self.name,
                    attempt,
                    descriptor.max_attempts,
                    e,
                    backoff,
                )
                await asyncio.sleep(backoff)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def next_run_at(self) -> datetime | None:
        if self._scheduler is None or not self._accepting:
            return None
        job = self._scheduler.get_job(self.scheduler_job_id)
        return getattr(job, "next_run_time", None) if job else None

    def status(self) -> dict[str, Any]:
        next_run = self.next_run_at()
        return {
            "job_name": self.name,
            "schedule": self.descriptor.schedule,
            "ttl_seconds": self.descriptor.ttl_delta.total_seconds(),
            "enabled": self.descriptor.enabled,
            "is_running": self._accepting,
            "state": self.state.value,
            "inflight": len(self._inflight),
            "run_count": self.run_count,
            "skip_count": self.skip_count,
            "error_count": self.error_count,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_outcome": self.last_outcome.value if self.last_outcome else None,
            "last_error": self.last_error,
            "next_run_at": next_run.isoformat() if isinstance(next_run, datetime) else None,
            "error": self._internal_error,
        }


__all__ = ["JobRunner", "RunnerState", "TickOutcome", "retry_delay"]
