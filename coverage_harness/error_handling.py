"""
Error handling utilities for the coverage run harness.

This module defines the harness exception taxonomy and the graceful handling
helpers used for operations whose failure must not end a coverage run.
"""

import time
from typing import Callable, Optional, Sequence
from functools import wraps

from .logging_utils import get_logger

logger = get_logger(__name__)


class HarnessError(Exception):
    """Base exception for coverage run errors."""
    pass


class LaunchFailure(HarnessError):
    """Exception raised when the monitored process cannot be started."""

    def __init__(self, command: str, args: Sequence[str], error: OSError):
        self.command = command
        self.args_list = list(args)
        self.os_error = error
        super().__init__(f"Failed to launch {command!r} with arguments {self.args_list}: {error}")


class ProcessExitedBeforeReady(HarnessError):
    """Exception raised when the monitored process exits without printing its ready line."""

    def __init__(self, command: str, returncode: Optional[int], ready_pattern: str):
        self.command = command
        self.returncode = returncode
        self.ready_pattern = ready_pattern
        super().__init__(
            f"Process {command!r} exited with code {returncode} "
            f"before any output matched {ready_pattern!r}"
        )


class SnapshotTimeout(HarnessError):
    """Exception raised when the coverage snapshot does not appear in time."""

    def __init__(self, path: str, timeout: float, attempts: int):
        self.path = path
        self.timeout = timeout
        self.attempts = attempts
        super().__init__(
            f"Coverage snapshot {path!r} did not appear within {timeout}s ({attempts} checks)"
        )


class SnapshotCorrupt(HarnessError):
    """Exception raised when the snapshot exists but is not coverage data."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Coverage snapshot {path!r} is not valid coverage data: {reason}")


class ReportWriteFailure(HarnessError):
    """Exception raised when a coverage report cannot be written."""

    def __init__(self, destination: str, report_format: str, reason: str):
        self.destination = destination
        self.report_format = report_format
        self.reason = reason
        super().__init__(
            f"Failed to write {report_format} report to {destination!r}: {reason}"
        )


class InstrumentationError(HarnessError):
    """Exception raised when staged source cannot be registered for measurement."""
    pass


class S3UploadError(HarnessError):
    """Exception raised when S3 upload operations fail."""
    pass


class GracefulErrorHandler:
    """
    Context manager for graceful error handling.

    Non-critical failures are logged and suppressed, critical ones are logged
    and re-raised. The outcome is kept on the handler for the caller to check.
    """

    def __init__(self, operation_name: str, critical: bool = False):
        """
        Initialize the error handler.

        Args:
            operation_name: Name of the operation being protected
            critical: Whether errors in this operation should propagate
        """
        self.operation_name = operation_name
        self.critical = critical
        self.start_time = None
        self.error_occurred = False
        self.error_details = None

    def __enter__(self):
        self.start_time = time.time()
        logger.debug("Starting protected operation", operation=self.operation_name)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """
        Record the outcome of the protected block.

        Returns:
            bool: True to suppress the exception, False to propagate it
        """
        duration = time.time() - self.start_time if self.start_time else 0

        if exc_type is None:
            logger.debug("Protected operation completed successfully",
                         operation=self.operation_name,
                         duration_ms=duration * 1000)
            return False

        self.error_occurred = True
        self.error_details = {
            'type': exc_type.__name__,
            'message': str(exc_val),
            'operation': self.operation_name,
            'duration_ms': duration * 1000
        }

        if self.critical:
            logger.error("Critical operation failed",
                         operation=self.operation_name,
                         error=str(exc_val),
                         error_type=exc_type.__name__,
                         duration_ms=duration * 1000)
            return False

        logger.warning("Non-critical operation failed gracefully",
                       operation=self.operation_name,
                       error=str(exc_val),
                       error_type=exc_type.__name__,
                       duration_ms=duration * 1000)
        return True


def graceful_operation(operation_name: str, critical: bool = False):
    """
    Decorator for graceful error handling of operations.

    A suppressed failure makes the decorated function return None.

    Args:
        operation_name: Name of the operation being protected
        critical: Whether errors should propagate to the caller

    Returns:
        Decorator function
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            with GracefulErrorHandler(operation_name, critical) as handler:
                return func(*args, **kwargs)

            if handler.error_occurred:
                logger.info("Operation failed but was handled gracefully",
                            operation=operation_name,
                            error_details=handler.error_details)
            return None

        return wrapper
    return decorator
