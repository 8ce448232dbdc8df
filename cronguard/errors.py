"""Exception types raised by the coordination core."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from cronguard.startup import StartupState


class CronGuardError(Exception):
    """Base class for coordination errors."""


class LockStoreError(CronGuardError):
    """The shared lock store could not be read or written."""


class ManifestError(CronGuardError):
    """The job manifest is missing or could not be loaded."""


class StartupError(CronGuardError):
    """Boot sequence failed before the coordinator was safely running."""

    def __init__(self, message: str, state: "StartupState | None" = None):
        super().__init__(message)
        self.state = state


class StartupTimeoutError(StartupError):
    """Boot sequence did not finish before its deadline."""


__all__ = [
    "CronGuardError",
    "LockStoreError",
    "ManifestError",
    "StartupError",
    "StartupTimeoutError",
]
