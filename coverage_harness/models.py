"""
Data models for the coverage run harness.

This module contains the configuration and value classes shared by the
launcher, watcher and reporting modules.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Dict, Any
import os

from coverage import CoverageData


REPORT_FORMATS = ('html', 'lcov', 'lcovonly', 'cobertura')
DEFAULT_REPORT_FORMAT = 'html'


def _split_patterns(value: Optional[str]) -> Optional[List[str]]:
    if not value:
        return None
    return [p.strip() for p in value.split(',') if p.strip()]


@dataclass
class HarnessConfig:
    """Configuration for a coverage run."""

    work_dir: str = field(default_factory=lambda: os.path.join(os.getcwd(), 'tmp'))
    run_command: str = "{python} app.py"
    pid_file: str = field(default_factory=lambda: os.path.join(os.getcwd(), 'child.pid'))
    report_dir: str = field(default_factory=lambda: os.path.join(os.getcwd(), 'coverage'))
    snapshot_timeout: float = 30.0
    poll_interval: float = 0.1
    max_poll_interval: float = 1.0
    branch_coverage: bool = True
    include_patterns: Optional[List[str]] = None
    exclude_patterns: Optional[List[str]] = None
    s3_bucket: Optional[str] = None
    s3_prefix: str = "coverage/"
    upload_timeout: int = 30

    @classmethod
    def from_environment(cls) -> 'HarnessConfig':
        """Create configuration from environment variables."""
        cwd = os.getcwd()

        return cls(
            work_dir=os.environ.get('COVERAGE_WORK_DIR', os.path.join(cwd, 'tmp')),
            run_command=os.environ.get('COVERAGE_RUN_COMMAND', "{python} app.py"),
            pid_file=os.environ.get('COVERAGE_PID_FILE', os.path.join(cwd, 'child.pid')),
            report_dir=os.environ.get('COVERAGE_REPORT_DIR', os.path.join(cwd, 'coverage')),
            snapshot_timeout=float(os.environ.get('COVERAGE_SNAPSHOT_TIMEOUT', '30')),
            poll_interval=float(os.environ.get('COVERAGE_POLL_INTERVAL', '0.1')),
            max_poll_interval=float(os.environ.get('COVERAGE_MAX_POLL_INTERVAL', '1.0')),
            branch_coverage=os.environ.get('COVERAGE_BRANCH_COVERAGE', 'true').lower() == 'true',
            include_patterns=_split_patterns(os.environ.get('COVERAGE_INCLUDE_PATTERNS')),
            exclude_patterns=_split_patterns(os.environ.get('COVERAGE_EXCLUDE_PATTERNS')),
            s3_bucket=os.environ.get('COVERAGE_S3_BUCKET') or None,
            s3_prefix=os.environ.get('COVERAGE_S3_PREFIX', 'coverage/'),
            upload_timeout=int(os.environ.get('COVERAGE_UPLOAD_TIMEOUT', '30')),
        )

    def validate(self) -> None:
        """Validate configuration parameters."""
        if not self.run_command.strip():
            raise ValueError("run_command cannot be empty")

        if self.snapshot_timeout <= 0:
            raise ValueError("snapshot_timeout must be positive")

        if self.poll_interval <= 0:
            raise ValueError("poll_interval must be positive")

        if self.max_poll_interval < self.poll_interval:
            raise ValueError("max_poll_interval must not be smaller than poll_interval")

        if self.upload_timeout <= 0:
            raise ValueError("upload_timeout must be positive")

        if self.s3_prefix and not self.s3_prefix.endswith('/'):
            self.s3_prefix += '/'

    @property
    def project_dir(self) -> str:
        """Directory the project under test is staged into."""
        return os.path.join(self.work_dir, 'project')

    @property
    def bootstrap_dir(self) -> str:
        """Directory holding the generated capture bootstrap."""
        return os.path.join(self.work_dir, 'bootstrap')

    @property
    def snapshot_path(self) -> str:
        """Where the monitored process writes its coverage data on SIGINT."""
        return os.path.join(self.work_dir, 'coverage.snapshot')

    @property
    def aggregate_path(self) -> str:
        """Data file backing the run's coverage aggregate."""
        return os.path.join(self.work_dir, 'coverage.aggregate')


@dataclass
class Snapshot:
    """Coverage data written by one run of the monitored process."""

    path: str
    data: CoverageData
    size_bytes: int
    measured_files: int


@dataclass(frozen=True)
class ReportDescriptor:
    """Which report to write and where."""

    format: str
    destination: str

    def __post_init__(self):
        if self.format not in REPORT_FORMATS:
            raise ValueError(f"Unknown report format {self.format!r}, expected one of {REPORT_FORMATS}")

    @classmethod
    def from_options(cls, options: Optional[Dict[str, Any]], destination: str) -> 'ReportDescriptor':
        """Build a descriptor from report option flags (see ``select_report_format``)."""
        from .reporting import select_report_format

        return cls(format=select_report_format(options), destination=destination)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            'format': self.format,
            'destination': self.destination
        }


@dataclass
class RunResult:
    """Outcome of a complete coverage run."""

    pid: int
    report: ReportDescriptor
    snapshot_path: str
    measured_files: int
    coverage_percentage: float
    test_exit_code: Optional[int] = None
    published_keys: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            'pid': self.pid,
            'report': self.report.to_dict(),
            'snapshot_path': self.snapshot_path,
            'measured_files': self.measured_files,
            'coverage_percentage': self.coverage_percentage,
            'test_exit_code': self.test_exit_code,
            'published_keys': self.published_keys
        }
