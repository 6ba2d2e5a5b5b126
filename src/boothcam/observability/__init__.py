"""Observability for boothcam: structured logging and capture statistics.

Example:
    from boothcam.observability import LogContext, get_logger

    logger = get_logger(__name__)

    with LogContext(backend="sim"):
        logger.info("Capture complete", size_bytes=20480)
"""

from boothcam.observability.logging import (
    LogContext,
    StructuredLogger,
    configure_logging,
    get_logger,
    reset_logging,
)
from boothcam.observability.stats import (
    CaptureStats,
    StatsSummary,
)

__all__ = [
    # Logging
    "LogContext",
    "StructuredLogger",
    "configure_logging",
    "get_logger",
    "reset_logging",
    # Statistics
    "CaptureStats",
    "StatsSummary",
]
