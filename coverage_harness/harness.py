"""
Coverage harness for externally launched services.

This module ties staging, capture injection, process launch, snapshot
gathering and reporting together for one coverage run.
"""

import asyncio
import os
import shlex
import signal
import sys
import uuid
from typing import Any, Callable, Dict, List, Optional, Tuple

from .models import HarnessConfig, ReportDescriptor, RunResult, Snapshot
from .instrumentation import Instrumenter
from .launcher import ProcessHandle, launch
from .watcher import CoverageAggregate, gather_coverage
from .reporting import emit
from .logging_utils import get_logger, performance_timer
from .error_handling import GracefulErrorHandler, LaunchFailure

logger = get_logger(__name__)


@performance_timer("test_command")
async def run_test_command(command: str, cwd: Optional[str] = None) -> int:
    """
    Run the workload that exercises the monitored process.

    Its output goes straight to the harness's own stdout and stderr.

    Returns:
        int: The command's exit code
    """
    argv = shlex.split(command)
    if not argv:
        raise ValueError("test command cannot be empty")

    try:
        process = await asyncio.create_subprocess_exec(*argv, cwd=cwd)
    except OSError as e:
        raise LaunchFailure(argv[0], argv[1:], e) from e

    returncode = await process.wait()
    logger.info("Test command finished", command=command, returncode=returncode)
    return returncode


class CoverageHarness:
    """
    One coverage run of a project served by an external process.

    Example:
        harness = CoverageHarness(HarnessConfig.from_environment())
        result = asyncio.run(harness.run_coverage(
            "path/to/project", "Server started", test_command="pytest tests/integration"))
    """

    def __init__(self, config: Optional[HarnessConfig] = None):
        self.config = config or HarnessConfig.from_environment()
        self.config.validate()

        self.run_id = uuid.uuid4().hex[:8]
        logger.set_run_id(self.run_id)

        os.makedirs(self.config.work_dir, exist_ok=True)
        self.instrumenter = Instrumenter(self.config)
        self.aggregate = CoverageAggregate(self.config.aggregate_path,
                                           map_path=self.instrumenter.map_path)
        self.coverage_percentage: Optional[float] = None

    def stage(self, project_dir: str) -> str:
        """Copy the project into the work directory."""
        return self.instrumenter.stage(project_dir)

    def instrument(self, tmp_src: str, real_src: str) -> str:
        """
        Register a staged file for measurement.

        Args:
            tmp_src: The staged file to instrument
            real_src: The path to the real source, used for generating reports
        """
        return self.instrumenter.instrument(tmp_src, real_src)

    def instrument_project(self) -> List[str]:
        return self.instrumenter.instrument_project()

    def inject_capture(self) -> str:
        """
        Install the SIGINT capture bootstrap.

        Must be called after instrumentation so the bootstrap never measures
        itself and knows every registered file.
        """
        return self.instrumenter.inject_capture()

    def command_line(self) -> Tuple[str, List[str]]:
        """The configured run command, split and with placeholders filled in."""
        argv = [part.format(python=sys.executable, project_dir=self.config.project_dir)
                for part in shlex.split(self.config.run_command)]
        return argv[0], argv[1:]

    async def run(self, ready_pattern: str,
                  on_ready: Optional[Callable[[str], None]] = None) -> ProcessHandle:
        """
        Launch the staged project.

        Args:
            ready_pattern: The log output to watch for before ``on_ready`` is called
            on_ready: Called once that output has been seen
        """
        command, args = self.command_line()
        return await launch(command, args, ready_pattern, on_ready,
                            env=self.instrumenter.capture_environment(),
                            cwd=self.config.project_dir,
                            pid_file=self.config.pid_file)

    async def gather_coverage(self) -> Snapshot:
        """
        Wait for the snapshot written on SIGINT and merge it into the aggregate.

        Only call this once the monitored process has been told to stop.
        """
        return await gather_coverage(self.aggregate, self.config.snapshot_path,
                                     timeout=self.config.snapshot_timeout,
                                     poll_interval=self.config.poll_interval,
                                     max_poll_interval=self.config.max_poll_interval)

    def make_report(self, options: Optional[Dict[str, Any]] = None,
                    dest: Optional[str] = None) -> ReportDescriptor:
        """
        Generate the coverage report.

        HTML is written unless ``options`` selects another format.

        Args:
            options: Report flags, see ``select_report_format``
            dest: The directory to generate the report into
        """
        descriptor = ReportDescriptor.from_options(options, dest or self.config.report_dir)
        self.coverage_percentage = emit(self.aggregate, descriptor)
        return descriptor

    def publish(self, descriptor: ReportDescriptor, run_name: str) -> List[str]:
        """Upload the report to S3 if a bucket is configured. Failures are logged only."""
        if not self.config.s3_bucket:
            return []

        from .s3_uploader import upload_report

        with GracefulErrorHandler("report_publish", critical=False) as handler:
            return upload_report(descriptor.destination, self.config, run_name)

        logger.warning("Coverage report was not published", error_details=handler.error_details)
        return []

    @performance_timer("coverage_run")
    async def run_coverage(self, project_dir: str, ready_pattern: str,
                           test_command: Optional[str] = None,
                           report_options: Optional[Dict[str, Any]] = None,
                           dest: Optional[str] = None,
                           ready_timeout: Optional[float] = None) -> RunResult:
        """
        Perform a complete coverage run.

        With ``test_command`` the command runs once the process is ready and
        the process is sent SIGINT when it finishes. Without one, the harness
        waits for the process to be stopped from outside (``coverage-harness
        stop`` reads the pid file).

        Returns:
            RunResult: Where the report went and what was measured
        """
        self.stage(project_dir)
        self.instrument_project()
        self.inject_capture()

        handle = await self.run(ready_pattern)
        test_exit_code = None
        try:
            await handle.wait_ready(ready_timeout)

            if test_command:
                test_exit_code = await run_test_command(test_command)
                handle.send_signal(signal.SIGINT)
            else:
                logger.info("Waiting for monitored process to be stopped",
                            pid=handle.pid, pid_file=self.config.pid_file)
                await handle.wait()

            snapshot = await self.gather_coverage()
        except BaseException:
            handle.terminate()
            raise
        finally:
            await handle.close()

        descriptor = self.make_report(report_options, dest)
        # boto3 uploads and their retry backoff block, keep them off the loop.
        published = await asyncio.get_running_loop().run_in_executor(
            None, self.publish, descriptor, os.path.basename(os.path.abspath(project_dir)))

        result = RunResult(
            pid=handle.pid,
            report=descriptor,
            snapshot_path=snapshot.path,
            measured_files=len(self.aggregate.measured_files()),
            coverage_percentage=self.coverage_percentage,
            test_exit_code=test_exit_code,
            published_keys=published,
        )
        logger.info("Coverage run completed", **result.to_dict())
        return result
