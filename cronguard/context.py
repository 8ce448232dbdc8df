"""Runtime context passed to guarded tasks that declare ``handler(ctx)``.

Handlers with no parameters are called bare; handlers that accept one
receive a :class:`JobContext` describing the lease they run under.
"""

from __future__ import annotations


class JobContext:
    """Runtime context injected into handlers that declare ``handler(ctx: JobContext)``."""

    __slots__ = ("_job_name", "_execution_id", "_attempt")

    def __init__(self, job_name: str, execution_id: str, attempt: int = 1) -> None:
        self._job_name = job_name
        self._execution_id = execution_id  # Same value as the lease holder id
        self._attempt = attempt

    @property
    def job_name(self) -> str:
        return self._job_name

    @property
    def execution_id(self) -> str:
        return self._execution_id

    @property
    def attempt(self) -> int:
        return self._attempt

    def __repr__(self) -> str:
        return f"JobContext(job_name={self._job_name!r}, execution_id={self._execution_id!r}, attempt={self._attempt})"


__all__ = ["JobContext"]
