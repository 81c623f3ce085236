"""
Logging Utilities for Consistent Structured Logging

Provides helpers for structured logging with context and performance tracking.
"""

import time
import logging
from typing import Dict, Any, Optional
from contextlib import contextmanager

logger = logging.getLogger(__name__)


class Timer:
    """Simple timer context manager for measuring operation duration."""

    def __init__(self, name: str, logger: Optional[logging.Logger] = None):
        self.name = name
        self.logger = logger or logging.getLogger(__name__)
        self.start_time = None
        self.duration = None

    def __enter__(self):
        self.start_time = time.time()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.duration = time.time() - self.start_time
        self.logger.info(f"{self.name} completed in {self.duration:.2f}s")

    @property
    def duration_ms(self) -> int:
        if self.duration is None:
            return 0
        return int(self.duration * 1000)


@contextmanager
def log_operation(operation_name: str, context: Dict[str, Any], logger: Optional[logging.Logger] = None):
    """
    Context manager for logging operation start, end, and duration with context.

    Usage:
        with log_operation("tile_scan", {"job_id": "123", "tiles": 12}):
            # Do operation
            pass
    """
    logger = logger or logging.getLogger(__name__)
    start_time = time.time()

    logger.info(f"Starting {operation_name}", extra={
        'operation': operation_name,
        'context': context,
        'status': 'started'
    })

    try:
        yield
        duration = time.time() - start_time
        logger.info(f"Completed {operation_name} in {duration:.2f}s", extra={
            'operation': operation_name,
            'context': context,
            'status': 'completed',
            'duration_seconds': duration
        })
    except Exception as e:
        duration = time.time() - start_time
        logger.error(f"Failed {operation_name} after {duration:.2f}s: {str(e)}", extra={
            'operation': operation_name,
            'context': context,
            'status': 'failed',
            'duration_seconds': duration,
            'error_type': type(e).__name__,
            'error_message': str(e)
        })
        raise


def log_performance_metric(metric_name: str, value: float, unit: str = "ms",
                           tags: Optional[Dict[str, str]] = None,
                           logger: Optional[logging.Logger] = None):
    """
    Log a performance metric with optional tags.

    Args:
        metric_name: Name of the metric
        value: Metric value
        unit: Unit of measurement
        tags: Optional tags for categorization
        logger: Logger instance
    """
    logger = logger or logging.getLogger(__name__)

    logger.info(f"[METRIC] {metric_name}: {value:.2f} {unit}", extra={
        'metric_type': 'performance',
        'metric_name': metric_name,
        'metric_value': value,
        'metric_unit': unit,
        'tags': tags or {}
    })


def log_data_quality(data_type: str, quality_score: float,
                     issues: Optional[list] = None,
                     logger: Optional[logging.Logger] = None):
    """
    Log data quality information.

    Args:
        data_type: Type of data (boundary, text_regions, takeoff, etc.)
        quality_score: Quality score (0.0-1.0)
        issues: List of quality issues found
        logger: Logger instance
    """
    logger = logger or logging.getLogger(__name__)

    log_func = logger.info if quality_score >= 0.8 else logger.warning
    log_func(f"[DATA_QUALITY] {data_type}: {quality_score:.2f}", extra={
        'context': {
            'data_type': data_type,
            'quality_score': quality_score,
            'issues': issues or [],
            'issues_count': len(issues) if issues else 0
        }
    })
