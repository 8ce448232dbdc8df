"""Declarative job descriptors and the registry that holds them.

Every coordinated job is declared once as a :class:`JobDescriptor`; the
registry is filled at startup (usually from a manifest, see
:mod:`cronguard.loader`) and frozen before scheduling begins.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from dataclasses import field
from dataclasses import replace
from datetime import timedelta
from typing import Any
from typing import Awaitable
from typing import Callable

from apscheduler.triggers.cron import CronTrigger

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 300.0


@dataclass(frozen=True)
class JobDescriptor:
    """Configuration for one coordinated job."""

    name: str  # Lease key, unique across all processes (e.g., "results-fetch")
    schedule: str  # Crontab expression (e.g., "*/30 * * * *")
    handler: Callable[..., Awaitable[Any]]  # Guarded task
    ttl: float | None = None  # Lease TTL in seconds (None = registry default)
    description: str = ""
    enabled: bool = True
    timeout_seconds: float | None = None  # None = never interrupt; rely on lease expiry
    max_attempts: int = 1
    tags: tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        if not self.name or not self.name.strip():
            raise ValueError("Job name must not be empty")
        if not callable(self.handler):
            raise TypeError(f"Job {self.name}: handler must be callable")
        if self.ttl is not None and self.ttl <= 0:
            raise ValueError(f"Job {self.name}: ttl must be positive")
        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            raise ValueError(f"Job {self.name}: timeout_seconds must be positive")
        if self.max_attempts < 1:
            raise ValueError(f"Job {self.name}: max_attempts must be >= 1")
        try:
            CronTrigger.from_crontab(self.schedule)
        except ValueError as e:
            raise ValueError(f"Job {self.name}: invalid schedule {self.schedule!r}: {e}") from e

    @property
    def ttl_delta(self) -> timedelta:
        return timedelta(seconds=self.ttl if self.ttl is not None else DEFAULT_TTL_SECONDS)


class JobRegistry:
    """Registry of job descriptors, keyed by name, in registration order."""

    def __init__(self, default_ttl: float = DEFAULT_TTL_SECONDS):
        self._jobs: dict[str, JobDescriptor] = {}
        self._default_ttl = default_ttl
        self._frozen = False

    def register(self, descriptor: JobDescriptor) -> bool:
        """Register a job descriptor.

        Duplicate names are skipped with a warning (not fatal).

        Returns:
            True if registered, False if skipped (duplicate).
        """
        if self._frozen:
            raise RuntimeError(f"Registry is frozen; cannot register {descriptor.name}")
        if descriptor.name in self._jobs:
            logger.warning("Job %s already registered, skipping duplicate", descriptor.name)
            return False
        if descriptor.ttl is None:
            descriptor = replace(descriptor, ttl=self._default_ttl)
        self._jobs[descriptor.name] = descriptor
        logger.info(
            "Registered job: %s (schedule=%s, ttl=%ss, enabled=%s)",
            descriptor.name,
            descriptor.schedule,
            descriptor.ttl,
            descriptor.enabled,
        )
        return True

    def freeze(self) -> "JobRegistry":
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def get(self, name: str) -> JobDescriptor | None:
        return self._jobs.get(name)

    def names(self) -> list[str]:
        return list(self._jobs)

    def list_jobs(self, enabled_only: bool = False) -> list[JobDescriptor]:
        jobs = list(self._jobs.values())
        if enabled_only:
            jobs = [j for j in jobs if j.enabled]
        return jobs

    def __len__(self) -> int:
        return len(self._jobs)

    def __contains__(self, name: object) -> bool:
        return name in self._jobs


__all__ = ["DEFAULT_TTL_SECONDS", "JobDescriptor", "JobRegistry"]
