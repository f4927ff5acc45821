"""
Command line entry point.

    coverage-harness run PROJECT_DIR --ready-pattern "Server started" --test-command "pytest it/"
    coverage-harness stop
"""

import argparse
import asyncio
import os
import signal
import sys
from typing import List, Optional

from .models import HarnessConfig
from .harness import CoverageHarness
from .logging_utils import get_logger
from .error_handling import HarnessError

logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='coverage-harness',
        description='Collect coverage from a service started by an external run command')
    subparsers = parser.add_subparsers(dest='command', required=True)

    run = subparsers.add_parser('run', help='Stage, launch and measure a project, then write a report')
    run.add_argument('project_dir', help='Directory holding the project source')
    run.add_argument('--ready-pattern', required=True,
                     help='Regular expression matched against the service output')
    run.add_argument('--test-command',
                     help='Command run once the service is ready; the service is stopped when it exits')
    run.add_argument('--ready-timeout', type=float,
                     help='Seconds to wait for the ready pattern (default: no limit)')
    run.add_argument('--run-command', help='Command that starts the service')
    run.add_argument('--work-dir', help='Directory the project is staged into')
    run.add_argument('--pid-file', help='Where the service pid is recorded')
    run.add_argument('--snapshot-timeout', type=float,
                     help='Seconds to wait for coverage data after the service is stopped')
    run.add_argument('--dest', help='Directory the report is written into')

    formats = run.add_mutually_exclusive_group()
    formats.add_argument('--html-lcov', action='store_true', help='Write an HTML report plus lcov.info')
    formats.add_argument('--lcov-only', action='store_true', help='Write lcov.info only')
    formats.add_argument('--cobertura', action='store_true', help='Write a Cobertura XML report')

    stop = subparsers.add_parser('stop', help='Stop a running service so it writes its coverage data')
    stop.add_argument('--pid-file', help='Pid file written by "run"')
    stop.add_argument('--signal', default='SIGINT', help='Signal to send (default: SIGINT)')

    return parser


def _config_from_args(args: argparse.Namespace) -> HarnessConfig:
    config = HarnessConfig.from_environment()

    for option in ('run_command', 'work_dir', 'pid_file', 'snapshot_timeout'):
        value = getattr(args, option, None)
        if value is not None:
            setattr(config, option, value)

    return config


def _run(args: argparse.Namespace) -> int:
    harness = CoverageHarness(_config_from_args(args))
    report_options = {
        'html_lcov': args.html_lcov,
        'lcov_only': args.lcov_only,
        'cobertura': args.cobertura,
    }

    result = asyncio.run(harness.run_coverage(
        args.project_dir,
        args.ready_pattern,
        test_command=args.test_command,
        report_options=report_options,
        dest=args.dest,
        ready_timeout=args.ready_timeout,
    ))

    print(f"Coverage report ({result.report.format}) written to {result.report.destination}: "
          f"{result.coverage_percentage:.2f}%")
    return result.test_exit_code or 0


def _stop(args: argparse.Namespace) -> int:
    pid_file = args.pid_file or _config_from_args(args).pid_file
    sig_name = args.signal.upper()
    if not sig_name.startswith('SIG'):
        sig_name = 'SIG' + sig_name

    try:
        sig = signal.Signals[sig_name]
    except KeyError:
        print(f"Unknown signal: {args.signal}", file=sys.stderr)
        return 2

    try:
        with open(pid_file, 'r', encoding='utf-8') as f:
            pid = int(f.readline().strip())
    except (OSError, ValueError) as e:
        print(f"Cannot read pid from {pid_file}: {e}", file=sys.stderr)
        return 1

    try:
        os.kill(pid, sig)
    except ProcessLookupError:
        print(f"No process with pid {pid}", file=sys.stderr)
        return 1

    logger.info("Signal sent to monitored process", pid=pid, signal=sig.name, pid_file=pid_file)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    if args.command == 'stop':
        return _stop(args)

    try:
        return _run(args)
    except HarnessError as e:
        logger.error("Coverage run failed", error=str(e), error_type=type(e).__name__)
        print(f"coverage-harness: {e}", file=sys.stderr)
        return 1
    except ValueError as e:
        print(f"coverage-harness: {e}", file=sys.stderr)
        return 2


if __name__ == '__main__':
    sys.exit(main())
