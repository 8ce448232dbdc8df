"""Tests for MasterCoordinator."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock
from unittest.mock import MagicMock

import pytest
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from cronguard.coordinator import MasterCoordinator
from cronguard.errors import LockStoreError
from cronguard.registry import JobDescriptor
from cronguard.registry import JobRegistry
from cronguard.runner import JobRunner
from cronguard.runner import TickOutcome


def _mock_scheduler() -> MagicMock:
    scheduler = MagicMock()
    scheduler.running = False

    def _start():
        scheduler.running = True

    def _shutdown(wait=True):
        scheduler.running = False

    scheduler.start.side_effect = _start
    scheduler.shutdown.side_effect = _shutdown
    return scheduler


def _registry(*names: str, handler=None, ttl: float = 10) -> JobRegistry:
    registry = JobRegistry()
    for name in names:
        registry.register(JobDescriptor(name=name, schedule="0 * * * *", handler=handler or AsyncMock(), ttl=ttl))
    return registry.freeze()


@pytest.fixture
def scheduler() -> MagicMock:
    return _mock_scheduler()


@pytest.fixture
def coordinator(lock_manager, clock, scheduler) -> MasterCoordinator:
    return MasterCoordinator.from_registry(_registry("a", "b", "c"), lock_manager, scheduler=scheduler, clock=clock)


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_in_order_stop_in_reverse(self, coordinator, scheduler):
        await coordinator.start()

        added = [c.kwargs["id"] for c in scheduler.add_job.call_args_list]
        assert added == ["job_a", "job_b", "job_c"]
        assert coordinator.is_running is True

        await coordinator.stop()

        removed = [c.args[0] for c in scheduler.remove_job.call_args_list]
        assert removed == ["job_c", "job_b", "job_a"]
        scheduler.shutdown.assert_called_once_with(wait=False)

    @pytest.mark.asyncio
    async def test_one_runner_failing_to_start_does_not_block_others(self, coordinator, scheduler):
        def _add_job(func, trigger, **kwargs):
            if kwargs["id"] == "job_b":
                raise RuntimeError("bad trigger")

        scheduler.add_job.side_effect = _add_job

        failed = await coordinator.start()

        assert failed == ["b"]
        assert coordinator.get_runner("a").is_running is True
        assert coordinator.get_runner("b").is_running is False
        assert coordinator.get_runner("c").is_running is True

        report = await coordinator.health_check()
        assert report.healthy is False
        assert any("Job b" in issue for issue in report.issues)

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, coordinator, scheduler):
        await coordinator.start()
        await coordinator.stop()
        await coordinator.stop()

        scheduler.shutdown.assert_called_once()
        assert coordinator.is_running is False

    @pytest.mark.asyncio
    async def test_restart(self, coordinator, scheduler):
        await coordinator.start()
        await coordinator.restart(pause=0)

        assert coordinator.is_running is True
        assert scheduler.add_job.call_count == 6

    @pytest.mark.asyncio
    async def test_duplicate_runner_is_skipped(self, coordinator, lock_manager):
        descriptor = JobDescriptor(name="a", schedule="0 * * * *", handler=AsyncMock(), ttl=10)
        assert coordinator.register(JobRunner(descriptor, lock_manager)) is False
        assert coordinator.job_names() == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_real_scheduler_registers_jobs(self, lock_manager, clock):
        coordinator = MasterCoordinator.from_registry(_registry("a"), lock_manager, clock=clock)
        assert isinstance(coordinator.scheduler, AsyncIOScheduler)

        await coordinator.start()
        try:
            assert coordinator.scheduler.get_job("job_a") is not None
            assert coordinator.get_runner("a").status()["next_run_at"] is not None
        finally:
            await coordinator.stop()

        assert coordinator.scheduler.running is False

    @pytest.mark.asyncio
    async def test_real_scheduler_survives_back_to_back_stop_start(self, lock_manager, clock):
        """A start right after stop must leave a live scheduler with the job registered."""
        coordinator = MasterCoordinator.from_registry(_registry("a"), lock_manager, clock=clock)

        await coordinator.start()
        await coordinator.stop()
        await coordinator.start()
        try:
            await asyncio.sleep(0.05)

            assert coordinator.is_running is True
            assert coordinator.scheduler.running is True
            assert coordinator.scheduler.get_job("job_a") is not None
            report = await coordinator.health_check()
            assert report.healthy is True
        finally:
            await coordinator.stop()

    @pytest.mark.asyncio
    async def test_real_scheduler_restart(self, lock_manager, clock):
        coordinator = MasterCoordinator.from_registry(_registry("a"), lock_manager, clock=clock)

        await coordinator.start()
        await coordinator.restart(pause=0)
        try:
            assert coordinator.scheduler.running is True
            assert coordinator.get_runner("a").status()["next_run_at"] is not None
        finally:
            await coordinator.stop()


class TestTrigger:
    @pytest.mark.asyncio
    async def test_trigger_runs_under_lease(self, coordinator, lock_manager):
        assert await coordinator.trigger("a") is TickOutcome.COMPLETED
        assert await lock_manager.is_locked("a") is False

    @pytest.mark.asyncio
    async def test_trigger_unknown_job(self, coordinator):
        with pytest.raises(KeyError):
            await coordinator.trigger("nope")


class TestHealth:
    @pytest.mark.asyncio
    async def test_healthy_when_running_with_no_leases(self, coordinator):
        await coordinator.start()

        report = await coordinator.health_check()

        assert report.healthy is True
        assert report.issues == []
        assert report.warnings == []

    @pytest.mark.asyncio
    async def test_dead_scheduler_is_unhealthy(self, coordinator, scheduler):
        await coordinator.start()
        scheduler.running = False

        report = await coordinator.health_check()

        assert report.healthy is False
        assert any("Scheduler is not running" in issue for issue in report.issues)

    @pytest.mark.asyncio
    async def test_not_running_is_only_a_warning(self, coordinator):
        report = await coordinator.health_check()

        assert report.healthy is True
        assert "Coordinator is not running" in report.warnings

    @pytest.mark.asyncio
    async def test_lease_held_past_twice_its_ttl_is_stuck(self, coordinator, lock_manager, clock):
        holder = await lock_manager.acquire("a", 10)
        clock.advance(25)

        report = await coordinator.health_check()

        assert report.healthy is False
        assert any(holder in issue for issue in report.issues)

    @pytest.mark.asyncio
    async def test_expired_lease_within_multiplier_is_fine(self, coordinator, lock_manager, clock):
        await lock_manager.acquire("a", 10)
        clock.advance(15)

        report = await coordinator.health_check()

        assert report.healthy is True
        assert await coordinator.find_stuck_leases() == []

    @pytest.mark.asyncio
    async def test_store_failure_is_unhealthy(self, coordinator, lock_manager):
        lock_manager.list_held_leases = AsyncMock(side_effect=LockStoreError("store down"))

        report = await coordinator.health_check()

        assert report.healthy is False
        assert any("store down" in issue for issue in report.issues)

    @pytest.mark.asyncio
    async def test_failed_job_is_a_warning(self, lock_manager, clock, scheduler):
        registry = _registry("a", handler=AsyncMock(side_effect=RuntimeError("boom")))
        coordinator = MasterCoordinator.from_registry(registry, lock_manager, scheduler=scheduler, clock=clock)
        await coordinator.start()

        assert await coordinator.trigger("a") is TickOutcome.FAILED
        report = await coordinator.health_check()

        assert report.healthy is True
        assert any("last run failed" in w for w in report.warnings)
        assert report.to_dict()["status"]["runners"]["a"]["error_count"] == 1


class TestInspection:
    @pytest.mark.asyncio
    async def test_system_status(self, coordinator, lock_manager, clock):
        await lock_manager.acquire("a", 60)
        await coordinator.start()

        status = await coordinator.get_system_status()

        assert status.is_running is True
        assert [lease.job_name for lease in status.active_leases] == ["a"]
        assert set(status.runners) == {"a", "b", "c"}
        data = status.to_dict()
        assert data["timestamp"] == clock().isoformat()
        assert data["active_leases"][0]["job_name"] == "a"

    @pytest.mark.asyncio
    async def test_log_system_status(self, coordinator, caplog):
        with caplog.at_level("INFO", logger="cronguard.coordinator"):
            await coordinator.log_system_status()
        assert "System status" in caplog.text

    @pytest.mark.asyncio
    async def test_force_release_all_locks(self, coordinator, lock_manager):
        await lock_manager.acquire("a", 600)

        results = await coordinator.force_release_all_locks()

        assert results == {"a": "released", "b": "no_lock_found", "c": "no_lock_found"}
        assert await lock_manager.is_locked("a") is False

    @pytest.mark.asyncio
    async def test_force_release_all_reports_errors(self, coordinator, lock_manager):
        lock_manager.force_release = AsyncMock(side_effect=[None, LockStoreError("store down"), None])

        results = await coordinator.force_release_all_locks()

        assert results["a"] == "no_lock_found"
        assert results["b"].startswith("error:")

    @pytest.mark.asyncio
    async def test_performance_metrics(self, lock_manager, clock, scheduler):
        registry = JobRegistry()
        registry.register(JobDescriptor(name="ok", schedule="0 * * * *", handler=AsyncMock(), ttl=10))
        registry.register(
            JobDescriptor(name="bad", schedule="0 * * * *", handler=AsyncMock(side_effect=ValueError("x")), ttl=10)
        )
        coordinator = MasterCoordinator.from_registry(registry, lock_manager, scheduler=scheduler, clock=clock)

        await coordinator.trigger("ok")
        await coordinator.trigger("ok")
        await coordinator.trigger("bad")

        metrics = await coordinator.get_performance_metrics()
        assert metrics["total_executions"] == 3
        assert metrics["successful"] == 2
        assert metrics["failed"] == 1
        assert metrics["jobs"]["ok"]["success_rate"] == 1.0
        assert metrics["jobs"]["bad"]["success_rate"] == 0.0

        history = await coordinator.get_execution_history(limit=5)
        assert len(history["ok"]) == 2
        assert len(history["bad"]) == 1
