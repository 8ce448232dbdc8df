"""Lease-based lock manager.

Guarantees at most one live holder per job name across every process that
shares the lock store. Leases expire on their own after their TTL, so a
holder that dies without releasing blocks the job for at most one TTL.

Contention is an expected outcome: :meth:`LockManager.acquire` returns
``None``. Datastore failures surface as :class:`LockStoreError` so callers
never run a guarded task without a confirmed acquisition.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from datetime import timedelta
from typing import Any
from typing import Callable
from typing import TypeVar

from sqlalchemy import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool

from cronguard import store
from cronguard.clock import Clock
from cronguard.clock import utc_now
from cronguard.errors import LockStoreError
from cronguard.store import ExecutionRecord
from cronguard.store import ExecutionStatus
from cronguard.store import Lease

logger = logging.getLogger(__name__)

T = TypeVar("T")


def as_timedelta(ttl: timedelta | float | int) -> timedelta:
    """Normalise a TTL given as seconds or timedelta; must be positive."""
    if not isinstance(ttl, timedelta):
        ttl = timedelta(seconds=float(ttl))
    if ttl <= timedelta(0):
        raise ValueError(f"TTL must be positive, got {ttl}")
    return ttl


@dataclass(frozen=True)
class JobStats:
    """Execution statistics for one job, computed from its recent records."""

    job_name: str
    total: int
    completed: int
    failed: int
    running: int
    success_rate: float | None
    last_run_at: datetime | None
    last_status: str | None
    average_duration_ms: int | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_name": self.job_name,
            "total": self.total,
            "completed": self.completed,
            "failed": self.failed,
            "running": self.running,
            "success_rate": self.success_rate,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_status": self.last_status,
            "average_duration_ms": self.average_duration_ms,
        }


class LockManager:
    """Atomic acquire / check / release / force-release over the lock store.

    Each instance wraps one engine and one clock; separate instances pointed
    at the same database behave exactly like separate processes.
    """

    def __init__(self, engine: Engine, clock: Clock = utc_now):
        self._engine = engine
        self._clock = clock
        # In-memory SQLite shares one DBAPI connection between worker threads
        self._connection_lock = threading.Lock() if isinstance(engine.pool, StaticPool) else None

    @classmethod
    def from_url(cls, db_url: str, clock: Clock = utc_now, **engine_kwargs) -> "LockManager":
        return cls(store.make_engine(db_url, **engine_kwargs), clock=clock)

    @property
    def engine(self) -> Engine:
        return self._engine

    def now(self) -> datetime:
        return self._clock()

    def _run(self, func: Callable[..., T], *args) -> T:
        if self._connection_lock is None:
            return func(self._engine, *args)
        with self._connection_lock:
            return func(self._engine, *args)

    async def _call(self, operation: str, func: Callable[..., T], *args) -> T:
        try:
            return await asyncio.to_thread(self._run, func, *args)
        except SQLAlchemyError as e:
            logger.error("Lock store %s failed: %s", operation, e)
            raise LockStoreError(f"lock store {operation} failed: {e}") from e

    async def initialize(self) -> None:
        """Create the lease and execution tables if they do not exist (idempotent)."""
        await self._call("initialize", store.ensure_schema)
        logger.info("Lock store initialized (%s)", self._engine.url.render_as_string(hide_password=True))

    async def acquire(self, job_name: str, ttl: timedelta | float) -> str | None:
        """Try to claim the lease for *job_name* for *ttl*.

        Returns:
            A fresh holder id on success, or None if another holder's lease is live.
        """
        ttl = as_timedelta(ttl)
        holder_id = await self._call("acquire", store.acquire_lease, job_name, ttl, self._clock())
        if holder_id:
            logger.debug("Acquired lease %s (holder=%s, ttl=%ss)", job_name, holder_id, ttl.total_seconds())
        else:
            logger.debug("Lease %s is held by another holder", job_name)
        return holder_id

    async def is_locked(self, job_name: str) -> bool:
        """True iff a held, unexpired lease exists for *job_name*."""
        return await self._call("is_locked", store.is_locked, job_name, self._clock())

    async def release(
        self,
        job_name: str,
        holder_id: str,
        final_status: ExecutionStatus | str = ExecutionStatus.COMPLETED,
        error_message: str | None = None,
    ) -> bool:
        """Release the lease if *holder_id* still owns it, and close its execution record.

        A late release from a holder whose lease expired and was reclaimed is a
        no-op on the lease and returns False.
        """
        final_status = ExecutionStatus(final_status)
        if final_status == ExecutionStatus.RUNNING:
            raise ValueError("final_status must be completed or failed")

        released = await self._call(
            "release",
            store.release_lease,
            job_name,
            holder_id,
            final_status,
            error_message,
            self._clock(),
        )
        if released:
            logger.debug("Released lease %s (holder=%s, status=%s)", job_name, holder_id, final_status.value)
        else:
            logger.warning("Lease %s no longer owned by %s; release was a no-op", job_name, holder_id)
        return released

    async def force_release(self, job_name: str) -> Lease | None:
        """Clear the lease for *job_name* regardless of its holder.

        Recovery/operator primitive only; the normal execution path never calls it.

        Returns:
            The evicted lease, or None if no lease was held.
        """
        evicted = await self._call("force_release", store.force_release_lease, job_name, self._clock())
        if evicted:
            logger.info("Force-released lease %s (was held by %s)", job_name, evicted.holder_id)
        return evicted

    async def get_lease(self, job_name: str) -> Lease | None:
        return await self._call("get_lease", store.get_lease, job_name)

    async def list_active_leases(self) -> list[Lease]:
        """Held leases that have not expired."""
        return await self._call("list_active_leases", store.list_held_leases, self._clock())

    async def list_held_leases(self) -> list[Lease]:
        """Every lease still marked held, including expired ones never released."""
        return await self._call("list_held_leases", store.list_held_leases)

    async def get_execution_record(self, execution_id: str) -> ExecutionRecord | None:
        return await self._call("get_execution_record", store.get_execution_record, execution_id)

    async def get_execution_history(self, job_name: str | None = None, limit: int = 50) -> list[ExecutionRecord]:
        return await self._call("get_execution_history", store.get_execution_history, job_name, limit)

    async def get_job_stats(self, job_name: str, window: int = 100) -> JobStats:
        """Success rate, last run and average duration over the last *window* records."""
        records = await self.get_execution_history(job_name, limit=window)

        completed = [r for r in records if r.status == ExecutionStatus.COMPLETED]
        failed = [r for r in records if r.status == ExecutionStatus.FAILED]
        running = [r for r in records if r.status == ExecutionStatus.RUNNING]

        finished = len(completed) + len(failed)
        success_rate = round(len(completed) / finished, 4) if finished else None

        durations = [r.duration_ms for r in completed if r.duration_ms is not None]
        average = int(sum(durations) / len(durations)) if durations else None

        last = records[0] if records else None
        return JobStats(
            job_name=job_name,
            total=len(records),
            completed=len(completed),
            failed=len(failed),
            running=len(running),
            success_rate=success_rate,
            last_run_at=last.started_at if last else None,
            last_status=ExecutionStatus(last.status).value if last else None,
            average_duration_ms=average,
        )

    def dispose(self) -> None:
        self._engine.dispose()


__all__ = ["JobStats", "LockManager", "as_timedelta"]
