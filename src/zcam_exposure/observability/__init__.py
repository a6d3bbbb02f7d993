"""Observability for zcam-exposure.

Structured logging and per-camera cycle statistics.

Example:
    from zcam_exposure.observability import get_logger, LogContext

    logger = get_logger(__name__)

    with LogContext(camera="cam-left"):
        logger.info("Cycle", status="adjusted", mean=96.4, iso=2500)

Statistics Example:
    from zcam_exposure.observability import CycleStats

    stats = CycleStats()
    stats.record_cycle("cam-left", duration_ms=640, success=True, adjusted=True)
    print(stats.get_summary("cam-left").adjustments)
"""

from zcam_exposure.observability.logging import (
    JSONFormatter,
    LogContext,
    StructuredFormatter,
    StructuredLogger,
    configure_logging,
    get_logger,
    reset_logging,
)
from zcam_exposure.observability.stats import (
    CycleStats,
    StatsSummary,
)

__all__ = [
    # Logging
    "JSONFormatter",
    "LogContext",
    "StructuredFormatter",
    "StructuredLogger",
    "configure_logging",
    "get_logger",
    "reset_logging",
    # Statistics
    "CycleStats",
    "StatsSummary",
]
