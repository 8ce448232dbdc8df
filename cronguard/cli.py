"""CronGuard CLI for operators.

Commands:
- serve: Run the scheduler process
- status / health / metrics: Inspect the shared lock store
- locks / release / release-all: View and clear leases
- history: Show execution records
- jobs / next: Show declared jobs and their next runs
- run: Execute one job now under its lease
- version: Show version
"""

from __future__ import annotations

import asyncio
import json
from datetime import datetime
from datetime import timezone
from typing import Any
from typing import Awaitable
from typing import Callable
from typing import Optional
from typing import TypeVar

import typer
from apscheduler.triggers.cron import CronTrigger

from cronguard.config import get_settings
from cronguard.coordinator import MasterCoordinator
from cronguard.errors import LockStoreError
from cronguard.errors import ManifestError
from cronguard.loader import load_manifest
from cronguard.locks import LockManager
from cronguard.main import configure_logging
from cronguard.main import serve as serve_scheduler
from cronguard.registry import JobRegistry
from cronguard.runner import TickOutcome

T = TypeVar("T")

app = typer.Typer(help="CronGuard - distributed cron coordination CLI")


@app.callback()
def _configure() -> None:
    configure_logging(get_settings().log_level)


def _load_jobs() -> JobRegistry:
    settings = get_settings()
    try:
        return load_manifest(settings.jobs_manifest, default_ttl=settings.default_ttl_seconds)
    except ManifestError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(1)


def _with_coordinator(func: Callable[[MasterCoordinator], Awaitable[T]], needs_jobs: bool = True) -> T:
    """Run *func* against a coordinator wired to the configured store (scheduler not started)."""
    settings = get_settings()
    if not settings.database_url:
        typer.echo("DATABASE_URL not configured", err=True)
        raise typer.Exit(1)

    registry = _load_jobs() if needs_jobs else JobRegistry()
    try:
        lock_manager = LockManager.from_url(settings.database_url)
    except ValueError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(1)
    master = MasterCoordinator.from_registry(
        registry,
        lock_manager,
        stuck_lease_multiplier=settings.stuck_lease_multiplier,
        timezone=settings.timezone,
    )

    async def _go() -> T:
        await lock_manager.initialize()
        return await func(master)

    try:
        return asyncio.run(_go())
    except LockStoreError as e:
        typer.echo(f"Lock store error: {e}", err=True)
        raise typer.Exit(1)
    finally:
        lock_manager.dispose()


def _echo_json(data: Any) -> None:
    typer.echo(json.dumps(data, indent=2, default=str))


@app.command()
def serve():
    """Run the scheduler until SIGINT/SIGTERM."""
    code = asyncio.run(serve_scheduler(get_settings()))
    raise typer.Exit(code)


@app.command()
def status(
    as_json: bool = typer.Option(False, "--json", help="Print raw JSON"),
):
    """Show active leases and per-job counters."""

    async def _status(master: MasterCoordinator):
        system = await master.get_system_status()
        metrics = await master.get_performance_metrics()
        return system, metrics

    system, metrics = _with_coordinator(_status)
    if as_json:
        _echo_json({"system": system.to_dict(), "metrics": metrics})
        return

    typer.echo(f"Active leases: {len(system.active_leases)}")
    for lease in system.active_leases:
        typer.echo(f"  {lease.job_name}: {lease.holder_id} (until {lease.expires_at.isoformat()})")
    typer.echo("")
    typer.echo("Jobs:")
    for name, stats in metrics["jobs"].items():
        rate = f"{stats['success_rate']:.0%}" if stats["success_rate"] is not None else "-"
        typer.echo(f"  {name}")
        typer.echo(f"    Last run:     {stats['last_run_at'] or '-'} ({stats['last_status'] or '-'})")
        typer.echo(f"    Success rate: {rate} of {stats['completed'] + stats['failed']}")


@app.command()
def health(
    as_json: bool = typer.Option(False, "--json", help="Print raw JSON"),
):
    """Check for stuck leases. Exits 1 if unhealthy."""
    report = _with_coordinator(lambda master: master.health_check())
    if as_json:
        _echo_json(report.to_dict())
    else:
        typer.echo("Healthy" if report.healthy else "UNHEALTHY")
        for issue in report.issues:
            typer.echo(f"  issue:   {issue}")
        for warning in report.warnings:
            typer.echo(f"  warning: {warning}")
    if not report.healthy:
        raise typer.Exit(1)


@app.command()
def locks():
    """List every lease still marked held."""
    leases = _with_coordinator(lambda master: master.lock_manager.list_held_leases(), needs_jobs=False)
    if not leases:
        typer.echo("No held leases")
        return

    now = datetime.now(timezone.utc)
    for lease in leases:
        state = "active" if lease.is_active(now) else "expired"
        typer.echo(f"  {lease.job_name} [{state}]")
        typer.echo(f"    Holder:   {lease.holder_id}")
        typer.echo(f"    Acquired: {lease.acquired_at.isoformat()}")
        typer.echo(f"    Expires:  {lease.expires_at.isoformat()}")


@app.command()
def release(
    job_name: str = typer.Argument(..., help="Job whose lease to clear"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """Force-release one job lease regardless of holder."""
    if not yes:
        typer.confirm(f"Force-release the lease for {job_name}? A running holder will lose it", abort=True)

    evicted = _with_coordinator(lambda master: master.lock_manager.force_release(job_name), needs_jobs=False)
    if evicted is None:
        typer.echo(f"No lock found for {job_name}")
    else:
        typer.echo(f"Released {job_name} (was held by {evicted.holder_id})")


@app.command("release-all")
def release_all(
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """Force-release the lease of every declared job."""
    if not yes:
        typer.confirm("Force-release every job lease?", abort=True)

    results = _with_coordinator(lambda master: master.force_release_all_locks())
    for name, result in results.items():
        typer.echo(f"  {name}: {result}")
    if any(r.startswith("error") for r in results.values()):
        raise typer.Exit(1)


@app.command()
def history(
    job_name: Optional[str] = typer.Argument(None, help="Only show this job"),
    limit: int = typer.Option(20, "--limit", "-n", help="Number of records to show"),
):
    """Show recent execution records, newest first."""
    records = _with_coordinator(
        lambda master: master.lock_manager.get_execution_history(job_name, limit=limit),
        needs_jobs=False,
    )
    if not records:
        typer.echo("No executions recorded")
        return

    for record in records:
        duration = f"{record.duration_ms}ms" if record.duration_ms is not None else "-"
        line = f"  {record.started_at.strftime('%Y-%m-%d %H:%M:%S')} {record.job_name} {record.status.value} ({duration})"
        if record.error_message:
            line += f" - {record.error_message.splitlines()[0]}"
        typer.echo(line)


@app.command()
def metrics():
    """Show success rate and average duration per job."""
    _echo_json(_with_coordinator(lambda master: master.get_performance_metrics()))


@app.command()
def jobs(
    all_jobs: bool = typer.Option(False, "--all", "-a", help="Include disabled jobs"),
):
    """List declared jobs."""
    registry = _load_jobs()

    typer.echo("Declared jobs:")
    typer.echo("")
    for job in registry.list_jobs(enabled_only=not all_jobs):
        status = "[enabled]" if job.enabled else "[disabled]"
        typer.echo(f"  {job.name}")
        typer.echo(f"    Schedule: {job.schedule}")
        typer.echo(f"    TTL:      {job.ttl_delta.total_seconds():g}s")
        typer.echo(f"    Status:   {status}")
        if job.description:
            typer.echo(f"    About:    {job.description}")
        typer.echo("")


@app.command("next")
def next_runs(
    count: int = typer.Option(10, "--count", "-n", help="Number of runs to show"),
):
    """Show next scheduled runs."""
    registry = _load_jobs()
    tz = get_settings().timezone

    typer.echo("Next scheduled runs:")
    typer.echo("")

    now = datetime.now(timezone.utc)
    runs = []
    for job in registry.list_jobs(enabled_only=True):
        trigger = CronTrigger.from_crontab(job.schedule, timezone=tz)
        next_run = trigger.get_next_fire_time(None, now)
        if next_run:
            runs.append((next_run, job.name))

    runs.sort(key=lambda x: x[0])

    for next_run, name in runs[:count]:
        delta = next_run - now
        hours = int(delta.total_seconds() // 3600)
        minutes = int((delta.total_seconds() % 3600) // 60)
        typer.echo(f"  {next_run.strftime('%Y-%m-%d %H:%M %Z')} (+{hours}h {minutes}m) - {name}")


@app.command()
def run(
    job_name: str = typer.Argument(..., help="Job to run"),
):
    """Run one job now, under its lease."""

    async def _trigger(master: MasterCoordinator):
        if master.get_runner(job_name) is None:
            return None
        return await master.trigger(job_name)

    outcome = _with_coordinator(_trigger)
    if outcome is None:
        typer.echo(f"Unknown job: {job_name}", err=True)
        raise typer.Exit(1)

    typer.echo(f"Outcome: {outcome.value}")
    if outcome is TickOutcome.SKIPPED:
        typer.echo("Lease held by another instance")
    elif outcome is TickOutcome.FAILED:
        raise typer.Exit(1)


@app.command()
def version():
    """Show version."""
    from cronguard import __version__

    typer.echo(f"CronGuard v{__version__}")


if __name__ == "__main__":
    app()
