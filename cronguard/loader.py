"""Manifest loader for job descriptors.

A manifest is a Python file that declares every coordinated job once, as a
module-level ``JOBS`` list:

    from cronguard import JobDescriptor
    from jobs.results import fetch_results

    JOBS = [
        JobDescriptor(
            name="results-fetch",
            schedule="*/30 * * * *",
            ttl=15 * 60,
            handler=fetch_results,
        ),
    ]

The file is executed with :func:`runpy.run_path` with its directory
temporarily on ``sys.path`` so it can import sibling job modules.
"""

from __future__ import annotations

import logging
import runpy
import sys
from pathlib import Path

from cronguard.errors import ManifestError
from cronguard.registry import DEFAULT_TTL_SECONDS
from cronguard.registry import JobDescriptor
from cronguard.registry import JobRegistry

logger = logging.getLogger(__name__)

MANIFEST_ATTRIBUTE = "JOBS"


def build_registry(descriptors, default_ttl: float = DEFAULT_TTL_SECONDS) -> JobRegistry:
    """Build a frozen registry from an iterable of descriptors."""
    registry = JobRegistry(default_ttl=default_ttl)
    for descriptor in descriptors:
        if not isinstance(descriptor, JobDescriptor):
            raise ManifestError(f"{MANIFEST_ATTRIBUTE} entries must be JobDescriptor, got {type(descriptor).__name__}")
        registry.register(descriptor)
    return registry.freeze()


def load_manifest(manifest_path: str | Path, default_ttl: float = DEFAULT_TTL_SECONDS) -> JobRegistry:
    """Execute *manifest_path* and return a frozen registry of its ``JOBS``.

    Raises:
        ManifestError: if the file cannot be executed or does not define a
            list of descriptors.
    """
    path = Path(manifest_path).expanduser().resolve()
    if not path.is_file():
        raise ManifestError(f"Jobs manifest not found: {path}")

    root = str(path.parent)
    path_added = False
    if root not in sys.path:
        sys.path.insert(0, root)
        path_added = True

    try:
        namespace = runpy.run_path(str(path), run_name="cronguard_jobs_manifest")
    except Exception as e:
        logger.exception("Jobs manifest failed to load: %s", path)
        raise ManifestError(f"Jobs manifest failed to load: {path}: {e}") from e
    finally:
        if path_added and root in sys.path:
            sys.path.remove(root)

    jobs = namespace.get(MANIFEST_ATTRIBUTE)
    if not isinstance(jobs, (list, tuple)):
        raise ManifestError(f"Jobs manifest {path} must define a {MANIFEST_ATTRIBUTE} list")

    registry = build_registry(jobs, default_ttl=default_ttl)
    logger.info("Loaded jobs manifest: %s (jobs=%d)", path, len(registry))
    return registry


__all__ = ["MANIFEST_ATTRIBUTE", "build_registry", "load_manifest"]
