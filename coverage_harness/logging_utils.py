"""
Logging utilities for the coverage run harness.

This module provides structured logging capabilities with consistent formatting,
configurable log levels, and security-conscious error handling.
"""

import inspect
import json
import logging
import os
import sys
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from functools import wraps

# Run id shared by every HarnessLogger in the process
_run_id: Optional[str] = None


class StructuredFormatter(logging.Formatter):
    """
    Custom formatter that outputs structured JSON logs.

    Each entry carries the harness run id (when one is set) and the pid of
    the harness process, so output from several runs can be told apart.
    """

    def __init__(self):
        super().__init__()
        self.run_id = os.environ.get('COVERAGE_RUN_ID', 'unknown')

    def format(self, record: logging.LogRecord) -> str:
        """
        Format log record as structured JSON.

        Args:
            record: The log record to format

        Returns:
            str: JSON-formatted log entry
        """
        log_entry = {
            'timestamp': datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'run_id': getattr(record, 'run_id', self.run_id),
            'pid': record.process,
        }

        if hasattr(record, 'duration_ms'):
            log_entry['duration_ms'] = record.duration_ms

        # Add custom fields from extra parameter
        if hasattr(record, 'extra_fields'):
            log_entry.update(record.extra_fields)

        if record.exc_info:
            log_entry['exception'] = {
                'type': record.exc_info[0].__name__ if record.exc_info[0] else None,
                'message': str(record.exc_info[1]) if record.exc_info[1] else None,
                'traceback': self.formatException(record.exc_info)
            }

        if record.levelno >= logging.ERROR and record.stack_info:
            log_entry['stack_trace'] = record.stack_info

        return json.dumps(log_entry, default=str, separators=(',', ':'))


class SecurityFilter(logging.Filter):
    """
    Filter that masks credentials in log messages.

    Output of the monitored process is logged verbatim, so anything it prints
    that looks like a secret is masked before it reaches the handler.
    """

    SENSITIVE_PATTERNS = [
        'aws_access_key_id',
        'aws_secret_access_key',
        'aws_session_token',
        'password',
        'secret',
        'token',
        'credential',
    ]

    def filter(self, record: logging.LogRecord) -> bool:
        record.msg = self._sanitize_message(str(record.msg))

        if record.args:
            record.args = tuple(self._sanitize_message(str(arg)) for arg in record.args)

        extra_fields = getattr(record, 'extra_fields', None)
        if extra_fields:
            record.extra_fields = {
                key: self._sanitize_message(value) if isinstance(value, str) else value
                for key, value in extra_fields.items()
            }

        return True

    def _sanitize_message(self, message: str) -> str:
        """
        Mask everything from the first sensitive keyword onwards.

        Args:
            message: The message to sanitize

        Returns:
            str: Sanitized message
        """
        message_lower = message.lower()

        for pattern in self.SENSITIVE_PATTERNS:
            if pattern in message_lower:
                return message[:message_lower.find(pattern)] + f"{pattern}=***MASKED***"

        return message


class HarnessLogger:
    """
    Main logger class for the coverage run harness.

    Wraps a standard library logger so call sites can pass structured fields
    as keyword arguments: ``logger.info("Process started", pid=123)``.
    """

    def __init__(self, name: str):
        """
        Initialize the harness logger.

        Args:
            name: Logger name (typically __name__ from calling module)
        """
        self.logger = logging.getLogger(name)
        self._setup_logger()

    def _setup_logger(self) -> None:
        """Set up logger with structured formatter and security filter."""
        # Don't add handlers if they already exist (avoid duplicate logs)
        if self.logger.handlers:
            return

        log_level = os.environ.get('COVERAGE_LOG_LEVEL', 'INFO').upper()
        self.logger.setLevel(getattr(logging, log_level, logging.INFO))

        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(StructuredFormatter())
        handler.addFilter(SecurityFilter())

        self.logger.addHandler(handler)
        self.logger.propagate = False

    def set_run_id(self, run_id: Optional[str]) -> None:
        """
        Set the run id attached to every entry from every harness logger.

        Args:
            run_id: Identifier of the current coverage run, None to clear it
        """
        set_run_id(run_id)

    def _log_with_context(self, level: int, message: str, extra_fields: Optional[Dict[str, Any]] = None) -> None:
        extra = {}

        if _run_id:
            extra['run_id'] = _run_id

        if extra_fields:
            extra['extra_fields'] = extra_fields

        self.logger.log(level, message, extra=extra)

    def debug(self, message: str, **kwargs) -> None:
        """Log debug message."""
        self._log_with_context(logging.DEBUG, message, kwargs)

    def info(self, message: str, **kwargs) -> None:
        """Log info message."""
        self._log_with_context(logging.INFO, message, kwargs)

    def warning(self, message: str, **kwargs) -> None:
        """Log warning message."""
        self._log_with_context(logging.WARNING, message, kwargs)

    def error(self, message: str, **kwargs) -> None:
        """Log error message."""
        self._log_with_context(logging.ERROR, message, kwargs)

    def critical(self, message: str, **kwargs) -> None:
        """Log critical message."""
        self._log_with_context(logging.CRITICAL, message, kwargs)

    def log_performance(self, operation: str, duration_ms: float, **kwargs) -> None:
        """
        Log performance metrics for an operation.

        Args:
            operation: Name of the operation
            duration_ms: Duration in milliseconds
            **kwargs: Additional metrics to log
        """
        metrics = {
            'operation': operation,
            'duration_ms': duration_ms,
            **kwargs
        }
        self.info(f"Performance: {operation} completed", **metrics)

    def log_report_metrics(self, report_format: str, destination: str,
                           coverage_percentage: float) -> None:
        """
        Log the outcome of a report emission.

        Args:
            report_format: Report format that was written
            destination: Directory the report was written into
            coverage_percentage: Total coverage reported by coverage.py
        """
        self.info("Coverage report metrics",
                  report_format=report_format,
                  report_destination=destination,
                  coverage_percentage=coverage_percentage)


def set_run_id(run_id: Optional[str]) -> None:
    """Tag log entries from all harness loggers with the given run id."""
    global _run_id
    _run_id = run_id


def get_logger(name: str) -> HarnessLogger:
    """
    Get a configured logger instance.

    Args:
        name: Logger name (typically __name__ from calling module)

    Returns:
        HarnessLogger: Configured logger instance
    """
    return HarnessLogger(name)


def performance_timer(operation_name: str):
    """
    Decorator to automatically log performance metrics for functions.

    Coroutine functions are timed across their awaits.

    Args:
        operation_name: Name of the operation being timed

    Returns:
        Decorator function
    """
    def decorator(func):
        if inspect.iscoroutinefunction(func):
            @wraps(func)
            async def async_wrapper(*args, **kwargs):
                logger = get_logger(func.__module__)
                start_time = time.time()

                try:
                    result = await func(*args, **kwargs)
                    duration_ms = (time.time() - start_time) * 1000
                    logger.log_performance(operation_name, duration_ms, success=True)
                    return result
                except Exception as e:
                    duration_ms = (time.time() - start_time) * 1000
                    logger.log_performance(operation_name, duration_ms, success=False, error=str(e))
                    raise

            return async_wrapper

        @wraps(func)
        def wrapper(*args, **kwargs):
            logger = get_logger(func.__module__)
            start_time = time.time()

            try:
                result = func(*args, **kwargs)
                duration_ms = (time.time() - start_time) * 1000
                logger.log_performance(operation_name, duration_ms, success=True)
                return result
            except Exception as e:
                duration_ms = (time.time() - start_time) * 1000
                logger.log_performance(operation_name, duration_ms, success=False, error=str(e))
                raise

        return wrapper
    return decorator
