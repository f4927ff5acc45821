"""
Waiting for, loading and merging the coverage snapshot.

The monitored process only writes its snapshot once it has been signalled,
so polling here must start after the caller has requested shutdown.
"""

import asyncio
import os
import sqlite3
from typing import Callable, Optional

import coverage
from coverage import CoverageData
from coverage.exceptions import CoverageException

from .models import Snapshot
from .logging_utils import get_logger, performance_timer
from .error_handling import SnapshotCorrupt, SnapshotTimeout

logger = get_logger(__name__)


class CoverageAggregate:
    """
    Coverage data accumulated over the snapshots of one run.

    Backed by a ``coverage.Coverage`` so reports can be rendered straight
    from it. ``merge`` is the only mutating operation; one aggregate belongs
    to one run.
    """

    def __init__(self, data_file: str, map_path: Optional[Callable[[str], str]] = None):
        """
        Args:
            data_file: Data file backing the aggregate, erased on creation
            map_path: Translates recorded file names to real source paths
        """
        self.data_file = data_file
        self.map_path = map_path
        self.snapshots_merged = 0
        self.coverage = coverage.Coverage(data_file=data_file, config_file=False)
        self.coverage.erase()

    def merge(self, snapshot: Snapshot) -> None:
        """Add a snapshot's measurements to the aggregate."""
        data = self.coverage.get_data()
        try:
            data.update(snapshot.data, map_path=self.map_path)
        except CoverageException as e:
            raise SnapshotCorrupt(snapshot.path, f"cannot be merged: {e}") from e

        self.snapshots_merged += 1
        logger.info("Snapshot merged into aggregate",
                    snapshot_path=snapshot.path,
                    snapshot_files=snapshot.measured_files,
                    aggregate_files=len(data.measured_files()),
                    snapshots_merged=self.snapshots_merged)

    def measured_files(self):
        return sorted(self.coverage.get_data().measured_files())


def read_snapshot(path: str) -> Snapshot:
    """
    Load a snapshot file.

    Raises:
        SnapshotCorrupt: If the file is empty, unreadable or not coverage data
    """
    try:
        size = os.path.getsize(path)
    except OSError as e:
        raise SnapshotCorrupt(path, str(e)) from e

    if size == 0:
        raise SnapshotCorrupt(path, "file is empty")

    data = CoverageData(basename=path)
    try:
        data.read()
        measured = len(data.measured_files())
    except (CoverageException, sqlite3.DatabaseError, OSError) as e:
        raise SnapshotCorrupt(path, str(e)) from e

    return Snapshot(path=path, data=data, size_bytes=size, measured_files=measured)


@performance_timer("snapshot_wait")
async def await_snapshot(path: str,
                         *,
                         timeout: float = 30.0,
                         poll_interval: float = 0.1,
                         max_poll_interval: float = 1.0,
                         backoff: float = 2.0) -> Snapshot:
    """
    Wait for the snapshot file to appear, then load it.

    Existence is checked first and then again after each sleep. Sleeps start
    at ``poll_interval``, grow by ``backoff`` up to ``max_poll_interval`` and
    never run past the deadline. A file that is present but cannot be parsed
    fails at once.

    Args:
        path: Snapshot file the monitored process writes on shutdown
        timeout: Seconds to wait before giving up
        poll_interval: First delay between checks
        max_poll_interval: Largest delay between checks
        backoff: Growth factor of the delay

    Returns:
        Snapshot: The loaded snapshot

    Raises:
        SnapshotTimeout: If the file did not appear within ``timeout``
        SnapshotCorrupt: If the file is not valid coverage data
    """
    if timeout <= 0:
        raise ValueError("timeout must be positive")
    if poll_interval <= 0:
        raise ValueError("poll_interval must be positive")
    if backoff < 1:
        raise ValueError("backoff must be at least 1")

    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    delay = poll_interval
    attempts = 0

    logger.debug("Waiting for coverage snapshot", path=path, timeout_seconds=timeout,
                 poll_interval=poll_interval)

    while True:
        attempts += 1
        if os.path.exists(path):
            snapshot = read_snapshot(path)
            logger.info("Coverage snapshot found", path=path, attempts=attempts,
                        size_bytes=snapshot.size_bytes, measured_files=snapshot.measured_files)
            return snapshot

        remaining = deadline - loop.time()
        if remaining <= 0:
            logger.error("Timed out waiting for coverage snapshot", path=path,
                         timeout_seconds=timeout, attempts=attempts)
            raise SnapshotTimeout(path, timeout, attempts)

        await asyncio.sleep(min(delay, remaining))
        delay = min(delay * backoff, max(max_poll_interval, poll_interval))


async def gather_coverage(aggregate: CoverageAggregate, path: str, **poll_options) -> Snapshot:
    """Wait for the snapshot at ``path`` and merge it into ``aggregate``."""
    snapshot = await await_snapshot(path, **poll_options)
    aggregate.merge(snapshot)
    return snapshot
