"""
Coverage Run Harness

This package collects code coverage from a service that is started by an
external run command. It stages the project into a work directory, injects a
coverage.py bootstrap that saves coverage data when the service receives
SIGINT, waits for the service to report that it is ready, gathers the data
once the service has been stopped, and renders an HTML, lcov or Cobertura
report.
"""

__version__ = "1.0.0"

from .models import HarnessConfig, ReportDescriptor, RunResult, Snapshot

from .error_handling import (
    HarnessError,
    LaunchFailure,
    ProcessExitedBeforeReady,
    SnapshotTimeout,
    SnapshotCorrupt,
    ReportWriteFailure,
    InstrumentationError,
    S3UploadError,
)

from .instrumentation import Instrumenter
from .launcher import ProcessHandle, launch
from .watcher import CoverageAggregate, await_snapshot, gather_coverage, read_snapshot
from .reporting import emit, select_report_format
from .harness import CoverageHarness, run_test_command

__all__ = [
    "HarnessConfig",
    "ReportDescriptor",
    "RunResult",
    "Snapshot",
    "HarnessError",
    "LaunchFailure",
    "ProcessExitedBeforeReady",
    "SnapshotTimeout",
    "SnapshotCorrupt",
    "ReportWriteFailure",
    "InstrumentationError",
    "S3UploadError",
    "Instrumenter",
    "ProcessHandle",
    "launch",
    "CoverageAggregate",
    "await_snapshot",
    "gather_coverage",
    "read_snapshot",
    "emit",
    "select_report_format",
    "CoverageHarness",
    "run_test_command",
]
