"""Observability module for cameraunit.

Provides structured logging for device, optimizer and export operations.

Example:
    from cameraunit.observability import get_logger, LogContext

    logger = get_logger(__name__)

    logger.info("Device opened")

    with LogContext(camera_id=0, operation="capture"):
        logger.info("Exposure started", duration_s=2.0, gain=100)
"""

from cameraunit.observability.logging import (
    JSONFormatter,
    LogContext,
    StructuredFormatter,
    StructuredLogger,
    configure_logging,
    get_logger,
    reset_logging,
)

__all__ = [
    "JSONFormatter",
    "LogContext",
    "StructuredFormatter",
    "StructuredLogger",
    "configure_logging",
    "get_logger",
    "reset_logging",
]
