"""Tests for StartupCoordinator: boot sequence, stale lock cleanup, shutdown."""

from __future__ import annotations

import asyncio
import logging
from unittest.mock import AsyncMock
from unittest.mock import MagicMock

import pytest

from cronguard.coordinator import HealthReport
from cronguard.coordinator import MasterCoordinator
from cronguard.errors import LockStoreError
from cronguard.errors import StartupError
from cronguard.errors import StartupTimeoutError
from cronguard.registry import JobDescriptor
from cronguard.registry import JobRegistry
from cronguard.startup import StartupCoordinator
from cronguard.startup import StartupState


def _mock_master(job_names=("a", "b")) -> MagicMock:
    master = MagicMock()
    master.is_running = False
    master.job_names.return_value = list(job_names)
    master.start = AsyncMock(return_value=[])
    master.stop = AsyncMock()
    master.health_check = AsyncMock(return_value=HealthReport(healthy=True))
    master.wait_for_inflight = AsyncMock(return_value=True)
    master.log_system_status = AsyncMock()
    return master


def _mock_locks() -> MagicMock:
    locks = MagicMock()
    locks.initialize = AsyncMock()
    locks.force_release = AsyncMock(return_value=None)
    return locks


def _real_master(lock_manager, clock, *names) -> MasterCoordinator:
    registry = JobRegistry()
    for name in names:
        registry.register(JobDescriptor(name=name, schedule="0 * * * *", handler=AsyncMock(), ttl=60))
    scheduler = MagicMock()
    scheduler.running = False
    return MasterCoordinator.from_registry(registry.freeze(), lock_manager, scheduler=scheduler, clock=clock)


class TestBootSequence:
    @pytest.mark.asyncio
    async def test_walks_states_in_order(self, caplog):
        service = StartupCoordinator(_mock_locks(), _mock_master())

        with caplog.at_level(logging.INFO, logger="cronguard.startup"):
            report = await service.start()

        transitions = [r.getMessage() for r in caplog.records if r.getMessage().startswith("Startup state:")]
        assert transitions == [
            "Startup state: not_started -> initializing_store",
            "Startup state: initializing_store -> cleaning_stale_locks",
            "Startup state: cleaning_stale_locks -> starting_coordinator",
            "Startup state: starting_coordinator -> health_checking",
            "Startup state: health_checking -> running",
        ]
        assert service.state is StartupState.RUNNING
        assert report.healthy is True

    @pytest.mark.asyncio
    async def test_cleanup_clears_leases_before_scheduling(self, lock_manager, clock, caplog):
        """Leases left by a previous generation are cleared before any runner starts."""
        master = _real_master(lock_manager, clock, "a", "b")
        old_holder = await lock_manager.acquire("a", 600)
        service = StartupCoordinator(lock_manager, master, clock=clock)

        with caplog.at_level(logging.WARNING, logger="cronguard.startup"):
            await service.start()

        assert service.state is StartupState.RUNNING
        assert [lease.holder_id for lease in service.cleared_leases] == [old_holder]
        assert await lock_manager.is_locked("a") is False
        assert old_holder in caplog.text
        assert master.is_running is True

    @pytest.mark.asyncio
    async def test_store_init_failure_is_fatal(self):
        locks = _mock_locks()
        locks.initialize.side_effect = LockStoreError("connection refused")
        master = _mock_master()
        service = StartupCoordinator(locks, master)

        with pytest.raises(StartupError) as exc_info:
            await service.start()

        assert exc_info.value.state is StartupState.INITIALIZING_STORE
        assert service.state is StartupState.FAILED
        master.start.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cleanup_failure_is_fatal(self):
        locks = _mock_locks()
        locks.force_release.side_effect = LockStoreError("store down")
        master = _mock_master()
        service = StartupCoordinator(locks, master)

        with pytest.raises(StartupError) as exc_info:
            await service.start()

        assert exc_info.value.state is StartupState.CLEANING_STALE_LOCKS
        master.start.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_coordinator_start_failure_is_fatal(self):
        master = _mock_master()
        master.start.side_effect = RuntimeError("scheduler broken")
        service = StartupCoordinator(_mock_locks(), master)

        with pytest.raises(StartupError) as exc_info:
            await service.start()

        assert exc_info.value.state is StartupState.STARTING_COORDINATOR
        assert service.state is StartupState.FAILED
        master.stop.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unhealthy_report_is_not_fatal(self, caplog):
        master = _mock_master()
        master.health_check.return_value = HealthReport(healthy=False, issues=["Lease a stuck"])
        service = StartupCoordinator(_mock_locks(), master)

        with caplog.at_level(logging.WARNING, logger="cronguard.startup"):
            report = await service.start()

        assert service.state is StartupState.RUNNING
        assert report.healthy is False
        assert "Lease a stuck" in caplog.text

    @pytest.mark.asyncio
    async def test_health_check_error_is_not_fatal(self):
        master = _mock_master()
        master.health_check.side_effect = RuntimeError("boom")
        service = StartupCoordinator(_mock_locks(), master)

        assert await service.start() is None
        assert service.state is StartupState.RUNNING

    @pytest.mark.asyncio
    async def test_cannot_start_twice(self):
        service = StartupCoordinator(_mock_locks(), _mock_master())
        await service.start()

        with pytest.raises(RuntimeError):
            await service.start()

    @pytest.mark.asyncio
    async def test_skip_cleanup(self):
        locks = _mock_locks()
        service = StartupCoordinator(locks, _mock_master(), skip_stale_lock_cleanup=True)

        await service.start()

        locks.force_release.assert_not_awaited()
        assert service.state is StartupState.RUNNING


class TestStaleLockCleanup:
    @pytest.mark.asyncio
    async def test_runs_once_per_boot(self):
        locks = _mock_locks()
        service = StartupCoordinator(locks, _mock_master(("a", "b", "c")))

        await service.cleanup_stale_locks()
        assert locks.force_release.await_count == 3

        with pytest.raises(RuntimeError):
            await service.cleanup_stale_locks()
        assert locks.force_release.await_count == 3

    @pytest.mark.asyncio
    async def test_refuses_after_coordinator_started(self):
        master = _mock_master()
        master.is_running = True
        locks = _mock_locks()
        service = StartupCoordinator(locks, master)

        with pytest.raises(RuntimeError):
            await service.cleanup_stale_locks()
        locks.force_release.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_expired_lease_is_cleared_quietly(self, lock_manager, clock, caplog):
        master = _real_master(lock_manager, clock, "a")
        await lock_manager.acquire("a", 5)
        clock.advance(10)
        service = StartupCoordinator(lock_manager, master, clock=clock)

        with caplog.at_level(logging.WARNING, logger="cronguard.startup"):
            cleared = await service.cleanup_stale_locks()

        assert len(cleared) == 1
        assert "Cleared unexpired lease" not in caplog.text


class TestTimeout:
    @pytest.mark.asyncio
    async def test_start_with_timeout_fails(self):
        async def slow_init():
            await asyncio.sleep(10)

        locks = _mock_locks()
        locks.initialize.side_effect = slow_init
        master = _mock_master()
        service = StartupCoordinator(locks, master)

        with pytest.raises(StartupTimeoutError) as exc_info:
            await service.start_with_timeout(0.05)

        assert exc_info.value.state is StartupState.INITIALIZING_STORE
        assert service.state is StartupState.FAILED
        master.start.assert_not_awaited()
        master.stop.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_start_with_timeout_succeeds(self):
        service = StartupCoordinator(_mock_locks(), _mock_master())
        await service.start_with_timeout(5)
        assert service.state is StartupState.RUNNING


class TestShutdown:
    @pytest.mark.asyncio
    async def test_shutdown_stops_and_waits(self):
        master = _mock_master()
        service = StartupCoordinator(_mock_locks(), master, shutdown_grace_seconds=7)
        await service.start()

        await service.shutdown()
        await service.shutdown()

        assert service.state is StartupState.STOPPED
        master.stop.assert_awaited_once()
        master.wait_for_inflight.assert_awaited_once_with(7)

    @pytest.mark.asyncio
    async def test_shutdown_grace_elapsed_is_logged(self, caplog):
        master = _mock_master()
        master.wait_for_inflight.return_value = False
        service = StartupCoordinator(_mock_locks(), master)
        await service.start()

        with caplog.at_level(logging.WARNING, logger="cronguard.startup"):
            await service.shutdown()

        assert service.state is StartupState.STOPPED
        assert "grace period" in caplog.text

    @pytest.mark.asyncio
    async def test_run_until_shutdown_requested(self):
        master = _mock_master()
        service = StartupCoordinator(_mock_locks(), master, status_interval_seconds=0.01)

        task = asyncio.create_task(service.run())
        while service.state is not StartupState.RUNNING:
            await asyncio.sleep(0.01)
        await asyncio.sleep(0.05)

        service.request_shutdown()
        assert await asyncio.wait_for(task, timeout=5) == 0

        assert service.state is StartupState.STOPPED
        master.stop.assert_awaited_once()
        assert master.log_system_status.await_count >= 1

    @pytest.mark.asyncio
    async def test_run_propagates_startup_error(self):
        locks = _mock_locks()
        locks.initialize.side_effect = LockStoreError("down")
        service = StartupCoordinator(locks, _mock_master())

        with pytest.raises(StartupError):
            await service.run(startup_timeout=5)
