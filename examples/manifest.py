"""Example jobs manifest.

Point CRONGUARD_JOBS_MANIFEST at a file like this one. Every scheduler
process loads the same manifest; the shared lease table decides which
process runs each tick.
"""

from __future__ import annotations

import asyncio
import logging

from cronguard import JobContext
from cronguard import JobDescriptor

logger = logging.getLogger(__name__)


async def fetch_results(ctx: JobContext) -> None:
    """Pretend to pull results from an upstream source."""
    logger.info("Fetching results (execution=%s, attempt=%d)", ctx.execution_id, ctx.attempt)
    await asyncio.sleep(2)


async def hello() -> None:
    logger.info("hello from cronguard")


JOBS = [
    JobDescriptor(
        name="results-fetch",
        schedule="*/30 * * * *",
        ttl=5 * 60,
        handler=fetch_results,
        description="Pull the latest results",
        max_attempts=2,
        tags=("example",),
    ),
    JobDescriptor(
        name="example-hello",
        schedule="0 * * * *",  # Every hour
        handler=hello,
        description="Example job, disabled by default",
        enabled=False,
        tags=("example",),
    ),
]
