"""Clock used for every lease and expiry comparison.

Anything that needs "now" takes a ``clock`` callable instead of reading the
wall clock directly, so expiry can be driven deterministically in tests.
"""

from __future__ import annotations

from datetime import datetime
from datetime import timezone
from typing import Callable

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


__all__ = ["Clock", "utc_now"]
