"""Distributed cron coordination.

Every scheduler process declares the same jobs; a shared lease table makes
sure each tick of a job runs on at most one process. Jobs are declared once
in a manifest file:

    from cronguard import JobDescriptor

    JOBS = [
        JobDescriptor(name="results-fetch", schedule="*/30 * * * *", ttl=300, handler=fetch_results),
    ]

Usage:
    from cronguard import LockManager, MasterCoordinator, StartupCoordinator

    locks = LockManager.from_url("sqlite:///cronguard.db")
    master = MasterCoordinator.from_registry(load_manifest("manifest.py"), locks)
    await StartupCoordinator(locks, master).run()
"""

__version__ = "0.1.0"

from .clock import Clock
from .clock import utc_now
from .context import JobContext
from .coordinator import HealthReport
from .coordinator import MasterCoordinator
from .coordinator import SystemStatus
from .errors import CronGuardError
from .errors import LockStoreError
from .errors import ManifestError
from .errors import StartupError
from .errors import StartupTimeoutError
from .loader import build_registry
from .loader import load_manifest
from .locks import JobStats
from .locks import LockManager
from .registry import JobDescriptor
from .registry import JobRegistry
from .runner import JobRunner
from .runner import RunnerState
from .runner import TickOutcome
from .startup import StartupCoordinator
from .startup import StartupState
from .store import ExecutionRecord
from .store import ExecutionStatus
from .store import Lease
from .store import LeaseStatus

__all__ = [
    "__version__",
    # Clock
    "Clock",
    "utc_now",
    # Store
    "ExecutionRecord",
    "ExecutionStatus",
    "Lease",
    "LeaseStatus",
    # Locks
    "JobStats",
    "LockManager",
    # Jobs
    "JobContext",
    "JobDescriptor",
    "JobRegistry",
    "build_registry",
    "load_manifest",
    # Runtime
    "HealthReport",
    "JobRunner",
    "MasterCoordinator",
    "RunnerState",
    "StartupCoordinator",
    "StartupState",
    "SystemStatus",
    "TickOutcome",
    # Errors
    "CronGuardError",
    "LockStoreError",
    "ManifestError",
    "StartupError",
    "StartupTimeoutError",
]
