"""
Custom Error Types for the Plan Takeoff Pipeline

Separates the one critical failure (the plan cannot be rasterized) from the
non-critical conditions every other stage degrades around.
"""

import logging
from typing import Optional, Dict, Any

logger = logging.getLogger(__name__)


class TakeoffError(Exception):
    """Base exception for all takeoff errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self):
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class CriticalError(TakeoffError):
    """
    Errors that abort the job.

    Examples:
    - Source document missing or unreadable
    - Rasterization failed
    """
    pass


class NonCriticalError(TakeoffError):
    """
    Errors that are logged and recorded in the result but never abort the job.

    Examples:
    - VLM answer unparsable
    - Tile request timed out
    - No drawing scale declared
    """
    pass


class ConversionError(CriticalError):
    """Upstream rasterization of the source document failed."""

    def __init__(self, source: str, reason: str, details: Optional[Dict[str, Any]] = None):
        message = f"Could not rasterize {source}: {reason}"
        super().__init__(message, {"source": source, **(details or {})})
        self.source = source
        self.reason = reason


class BoundaryNotFound(NonCriticalError):
    """The building footprint could not be located; a centre crop is used."""
    pass


class TextParseFailure(NonCriticalError):
    """Text-region answer was not valid JSON; regex fallback or no redaction."""
    pass


class TileRequestFailure(NonCriticalError):
    """A single tile × pattern request failed, timed out or was unparsable."""

    def __init__(self, tile_index: int, pattern: str, reason: str):
        super().__init__(
            f"Tile {tile_index} / {pattern}: {reason}",
            {"tile_index": tile_index, "pattern": pattern, "reason": reason}
        )
        self.tile_index = tile_index
        self.pattern = pattern
        self.reason = reason


class AnalysisTimeout(NonCriticalError):
    """The overall wall-clock budget ran out; partial results are returned."""
    pass


class CalibrationMissing(NonCriticalError):
    """No usable drawing scale; quantities use an assumed DPI calibration."""
    pass


class VisionServiceError(TakeoffError):
    """The VLM inference service rejected or failed a request."""
    pass


class VisionTimeoutError(VisionServiceError):
    """A VLM request exceeded its own timeout."""
    pass


def log_error_with_context(error: TakeoffError, context: Dict[str, Any]):
    """
    Log error with additional context information.

    Args:
        error: Error to log
        context: Additional context (job_id, stage, tile, etc.)
    """
    log_data = {
        'error_type': type(error).__name__,
        'error_message': error.message,
        'details': error.details,
        'context': context,
    }

    if isinstance(error, CriticalError):
        logger.error(f"CRITICAL ERROR: {error.message}", extra=log_data)
    else:
        logger.warning(f"Non-critical error: {error.message}", extra=log_data)
