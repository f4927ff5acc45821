"""
Coverage report emission.

Report rendering is coverage.py's; this module picks the format and writes
the report synchronously so it is on disk before the caller moves on.
"""

import os
from typing import Any, Dict, Optional

from coverage.exceptions import CoverageException

from .models import DEFAULT_REPORT_FORMAT, ReportDescriptor
from .watcher import CoverageAggregate
from .logging_utils import get_logger, performance_timer
from .error_handling import ReportWriteFailure

logger = get_logger(__name__)

# Checked in order, the first option that is set wins.
FORMAT_OPTIONS = (
    ('lcov', ('html_lcov', 'htmlLcov')),
    ('lcovonly', ('lcov_only', 'lcovOnly')),
    ('cobertura', ('cobertura',)),
)

LCOV_FILENAME = 'lcov.info'
LCOV_HTML_DIRNAME = 'lcov-report'
COBERTURA_FILENAME = 'cobertura-coverage.xml'


def select_report_format(options: Optional[Dict[str, Any]] = None) -> str:
    """
    Choose the report format from option flags.

    Without options the HTML report is produced. ``html_lcov`` selects HTML
    plus lcov, ``lcov_only`` just the lcov tracefile and ``cobertura`` the
    Cobertura XML report. Only one format is produced per run; when several
    flags are set ``html_lcov`` beats ``lcov_only`` which beats ``cobertura``.
    The camelCase spellings are accepted too.
    """
    if options:
        for report_format, keys in FORMAT_OPTIONS:
            if any(options.get(key) for key in keys):
                return report_format
    return DEFAULT_REPORT_FORMAT


def _write_report(aggregate: CoverageAggregate, descriptor: ReportDescriptor) -> float:
    cov = aggregate.coverage
    destination = descriptor.destination

    if descriptor.format == 'html':
        return cov.html_report(directory=destination)

    if descriptor.format == 'lcov':
        cov.html_report(directory=os.path.join(destination, LCOV_HTML_DIRNAME))
        return cov.lcov_report(outfile=os.path.join(destination, LCOV_FILENAME))

    if descriptor.format == 'lcovonly':
        return cov.lcov_report(outfile=os.path.join(destination, LCOV_FILENAME))

    return cov.xml_report(outfile=os.path.join(destination, COBERTURA_FILENAME))


@performance_timer("report_emission")
def emit(aggregate: CoverageAggregate, descriptor: ReportDescriptor) -> float:
    """
    Write the report described by ``descriptor`` from ``aggregate``.

    Returns:
        float: Total coverage percentage

    Raises:
        ReportWriteFailure: If the destination is not writable or coverage.py
            could not render the report
    """
    logger.info("Writing coverage report", report_format=descriptor.format,
                destination=descriptor.destination)

    try:
        os.makedirs(descriptor.destination, exist_ok=True)
        percentage = _write_report(aggregate, descriptor)
    except (OSError, CoverageException) as e:
        logger.error("Coverage report could not be written",
                     report_format=descriptor.format,
                     destination=descriptor.destination,
                     error=str(e), error_type=type(e).__name__)
        raise ReportWriteFailure(descriptor.destination, descriptor.format, str(e)) from e

    logger.log_report_metrics(descriptor.format, descriptor.destination, percentage)
    return percentage
