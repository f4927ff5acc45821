"""
S3 publishing of coverage reports.

This module uploads a written report directory to S3 with proper naming and
error handling. Publishing is optional and only happens when a bucket is
configured.
"""

import os
import re
import time
from datetime import datetime, timezone
from typing import List, Optional

import boto3
from boto3.exceptions import S3UploadFailedError
from botocore.config import Config
from botocore.exceptions import (
    ClientError,
    EndpointConnectionError,
    NoCredentialsError,
    PartialCredentialsError,
)

from .models import HarnessConfig
from .logging_utils import get_logger, performance_timer
from .error_handling import S3UploadError

logger = get_logger(__name__)

NON_RETRYABLE_ERRORS = ('NoSuchBucket', 'AccessDenied', 'InvalidBucketName')

# Message format botocore uses for service errors, kept by S3UploadFailedError
ERROR_CODE_PATTERN = re.compile(r"An error occurred \((\w+)\)")

CONTENT_TYPES = {
    '.html': 'text/html',
    '.css': 'text/css',
    '.js': 'application/javascript',
    '.json': 'application/json',
    '.xml': 'application/xml',
    '.png': 'image/png',
    '.svg': 'image/svg+xml',
    '.info': 'text/plain',
}


def generate_s3_prefix(
    run_name: str,
    prefix: str = "coverage/",
    timestamp: Optional[datetime] = None
) -> str:
    """
    Create a unique S3 key prefix for one published report.

    Args:
        run_name: Name of the coverage run (typically the project name)
        prefix: S3 key prefix (defaults to "coverage/")
        timestamp: Timestamp for the key (defaults to current time)

    Returns:
        str: Prefix in format: {prefix}{run_name}/{timestamp}/
    """
    if timestamp is None:
        timestamp = datetime.now(timezone.utc)

    # Milliseconds, safe for S3 keys
    timestamp_str = timestamp.strftime('%Y%m%d_%H%M%S_%f')[:-3]

    if prefix and not prefix.endswith('/'):
        prefix += '/'

    return f"{prefix}{_sanitize_s3_key_component(run_name)}/{timestamp_str}/"


def _sanitize_s3_key_component(component: str) -> str:
    """
    Sanitize a string component for use in S3 keys.

    Args:
        component: String component to sanitize

    Returns:
        str: Sanitized component safe for S3 keys
    """
    # Keep ASCII alphanumeric, hyphens, dots, and underscores
    sanitized = re.sub(r'[^a-zA-Z0-9\-._]', '_', component or '')
    sanitized = sanitized.strip('_')
    if not sanitized:
        sanitized = 'unknown'

    return sanitized


def _content_type(path: str) -> str:
    return CONTENT_TYPES.get(os.path.splitext(path)[1].lower(), 'application/octet-stream')


def _error_details(error: Exception):
    """
    Return the S3 error code and message behind an upload failure.

    ``upload_file`` wraps the service's ClientError in S3UploadFailedError,
    chaining the original as its context.
    """
    if isinstance(error, S3UploadFailedError):
        original = error.__cause__ or error.__context__
        if isinstance(original, ClientError):
            error = original
        else:
            match = ERROR_CODE_PATTERN.search(str(error))
            return (match.group(1) if match else 'Unknown'), str(error)

    if isinstance(error, ClientError):
        details = error.response.get('Error', {})
        return details.get('Code', 'Unknown'), details.get('Message', str(error))

    return type(error).__name__, str(error)


def _upload_with_retries(s3_client, file_path: str, bucket: str, s3_key: str,
                         max_retries: int = 3, base_delay: float = 1.0) -> None:
    for attempt in range(max_retries):
        try:
            s3_client.upload_file(
                file_path,
                bucket,
                s3_key,
                ExtraArgs={
                    'ServerSideEncryption': 'AES256',
                    'ContentType': _content_type(file_path)
                }
            )
            return

        except (NoCredentialsError, PartialCredentialsError) as e:
            raise S3UploadError(f"AWS credentials not available: {e}") from e

        except (S3UploadFailedError, ClientError, EndpointConnectionError) as e:
            error_code, error_message = _error_details(e)

            logger.warning("S3 upload attempt failed",
                           attempt=attempt + 1,
                           max_attempts=max_retries,
                           error_code=error_code,
                           error_message=error_message,
                           error_type=type(e).__name__,
                           bucket=bucket,
                           key=s3_key)

            if error_code in NON_RETRYABLE_ERRORS:
                raise S3UploadError(f"S3 upload failed: {error_code} - {error_message}") from e

            if attempt == max_retries - 1:
                raise S3UploadError(
                    f"S3 upload failed after {max_retries} attempts: {error_code} - {error_message}"
                ) from e

        # Exponential backoff
        delay = base_delay * (2 ** attempt)
        logger.info("Retrying S3 upload after delay", delay_seconds=delay, next_attempt=attempt + 2)
        time.sleep(delay)


@performance_timer("report_publish")
def upload_report(report_dir: str, config: HarnessConfig, run_name: str,
                  timestamp: Optional[datetime] = None) -> List[str]:
    """
    Upload every file of a written report to S3.

    Args:
        report_dir: Directory the report was written into
        config: Harness configuration holding the bucket and prefix
        run_name: Name used in the key prefix
        timestamp: Timestamp used in the key prefix (defaults to now)

    Returns:
        List[str]: The S3 keys written

    Raises:
        ValueError: If no bucket is configured or the report directory is missing
        S3UploadError: If credentials are missing or an upload fails
    """
    if not config.s3_bucket:
        raise ValueError("s3_bucket must be configured to publish reports")

    if not os.path.isdir(report_dir):
        raise ValueError(f"Report directory not found: {report_dir}")

    key_prefix = generate_s3_prefix(run_name, config.s3_prefix, timestamp)

    try:
        s3_client = boto3.client('s3', config=Config(connect_timeout=config.upload_timeout,
                                                     read_timeout=config.upload_timeout))
    except (NoCredentialsError, PartialCredentialsError) as e:
        logger.error("AWS credentials not available for S3 upload",
                     error=str(e), error_type=type(e).__name__)
        raise S3UploadError(f"AWS credentials not available: {e}") from e

    uploaded = []
    for dirpath, dirnames, filenames in os.walk(report_dir):
        dirnames.sort()
        for filename in sorted(filenames):
            file_path = os.path.join(dirpath, filename)
            rel_path = os.path.relpath(file_path, report_dir).replace(os.sep, '/')
            s3_key = key_prefix + rel_path

            _upload_with_retries(s3_client, file_path, config.s3_bucket, s3_key)
            uploaded.append(s3_key)

    logger.info("Coverage report published to S3",
                bucket=config.s3_bucket,
                key_prefix=key_prefix,
                files_uploaded=len(uploaded))
    return uploaded
