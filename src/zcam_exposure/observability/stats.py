"""Per-camera cycle statistics.

Tracks what the controller loop did over a shooting day:
- Cycle outcomes (measured, adjusted, failed, outside schedule)
- Adjustment count (cycles where at least one axis was written)
- Cycle timing statistics (min, max, avg, p95)
- Failure counts by error kind

Thread-safe; one ``CycleStats`` is shared by all camera workers and keeps
a separate collector per camera name.

Example:
    stats = CycleStats()

    stats.record_cycle("cam-left", duration_ms=812.0, success=True,
                       adjusted=True)
    stats.record_cycle("cam-left", duration_ms=10012.0, success=False,
                       error_kind="FrameStarved")

    summary = stats.get_summary("cam-left")
    print(f"Adjustments: {summary.adjustments}")
"""

from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

#: Default number of cycle records kept per camera. At the default 15 s
#: interval this covers a little over four hours of operation.
DEFAULT_STATS_WINDOW_SIZE: int = 1000


def _utc_now() -> datetime:
    """Return the current UTC datetime."""
    return datetime.now(UTC)


@dataclass
class StatsSummary:
    """Summary statistics for one camera's controller loop.

    Attributes:
        camera: Camera identifier from the configuration.
        total_cycles: In-hours cycles attempted.
        successful_cycles: Cycles that produced metrics.
        failed_cycles: Cycles that ended in a transport or control error.
        skipped_cycles: Cycles suppressed by the schedule gate.
        adjustments: Cycles in which at least one setting was applied.
        success_rate: successful / total (0.0 with no cycles).
        min_duration_ms: Fastest measured cycle.
        max_duration_ms: Slowest measured cycle.
        avg_duration_ms: Mean measured cycle duration.
        p95_duration_ms: 95th percentile measured cycle duration.
        error_counts: Failure count by error kind name.
        last_cycle_time: UTC time of the most recent cycle.
        uptime_seconds: Time since the collector was created or reset.
    """

    camera: str
    total_cycles: int = 0
    successful_cycles: int = 0
    failed_cycles: int = 0
    skipped_cycles: int = 0
    adjustments: int = 0
    success_rate: float = 0.0
    min_duration_ms: float = 0.0
    max_duration_ms: float = 0.0
    avg_duration_ms: float = 0.0
    p95_duration_ms: float = 0.0
    error_counts: dict[str, int] = field(default_factory=dict)
    last_cycle_time: datetime | None = None
    uptime_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        """Convert the summary to a JSON-serializable dictionary.

        Used for the end-of-run log line so the whole day's totals land in
        the camera's log file next to the per-cycle lines.

        Returns:
            Dictionary with every summary field. ``last_cycle_time`` is an
            ISO-8601 string or None.

        Example:
            >>> summary = stats.get_summary("cam-left")
            >>> summary.to_dict()["adjustments"]
            12
        """
        return {
            "camera": self.camera,
            "total_cycles": self.total_cycles,
            "successful_cycles": self.successful_cycles,
            "failed_cycles": self.failed_cycles,
            "skipped_cycles": self.skipped_cycles,
            "adjustments": self.adjustments,
            "success_rate": self.success_rate,
            "min_duration_ms": self.min_duration_ms,
            "max_duration_ms": self.max_duration_ms,
            "avg_duration_ms": self.avg_duration_ms,
            "p95_duration_ms": self.p95_duration_ms,
            "error_counts": self.error_counts.copy(),
            "last_cycle_time": (
                self.last_cycle_time.isoformat() if self.last_cycle_time else None
            ),
            "uptime_seconds": self.uptime_seconds,
        }


@dataclass
class CycleRecord:
    """Single cycle record for statistics."""

    timestamp: float  # monotonic time
    duration_ms: float
    success: bool
    adjusted: bool = False
    error_kind: str | None = None


class CycleStatsCollector:
    """Statistics collector for a single camera.

    Keeps cumulative counters plus a rolling window of cycle records for
    duration percentiles.
    """

    def __init__(
        self,
        camera: str,
        window_size: int = DEFAULT_STATS_WINDOW_SIZE,
    ) -> None:
        """Initialize a collector for one camera.

        Args:
            camera: Camera identifier used to label the summary.
            window_size: Maximum cycle records kept for duration statistics.
        """
        self.camera = camera
        self._records: deque[CycleRecord] = deque(maxlen=window_size)
        self._error_counts: dict[str, int] = {}
        self._total_cycles = 0
        self._successful_cycles = 0
        self._skipped_cycles = 0
        self._adjustments = 0
        self._start_time = time.monotonic()
        self._last_cycle_time: datetime | None = None
        self._lock = threading.Lock()

    def record(
        self,
        duration_ms: float,
        success: bool,
        adjusted: bool = False,
        error_kind: str | None = None,
    ) -> None:
        """Record one in-hours cycle.

        Args:
            duration_ms: Wall time of the cycle, acquire through apply.
            success: True when the cycle produced metrics.
            adjusted: True when at least one setting was written.
            error_kind: ``ErrorKind`` value for failed cycles.
        """
        record = CycleRecord(
            timestamp=time.monotonic(),
            duration_ms=duration_ms,
            success=success,
            adjusted=adjusted,
            error_kind=error_kind,
        )

        with self._lock:
            self._records.append(record)
            self._total_cycles += 1
            if success:
                self._successful_cycles += 1
            elif error_kind:
                self._error_counts[error_kind] = (
                    self._error_counts.get(error_kind, 0) + 1
                )
            if adjusted:
                self._adjustments += 1
            self._last_cycle_time = _utc_now()

    def record_skip(self) -> None:
        """Record a cycle suppressed by the schedule gate."""
        with self._lock:
            self._skipped_cycles += 1
            self._last_cycle_time = _utc_now()

    def get_summary(self) -> StatsSummary:
        """Compute a snapshot summary.

        Duration statistics come from successful cycles in the window only.

        Returns:
            StatsSummary for this camera.

        Example:
            >>> collector = CycleStatsCollector("cam-left")
            >>> collector.record(100, True)
            >>> collector.record(200, True, adjusted=True)
            >>> collector.get_summary().avg_duration_ms
            150.0
        """
        # Copy under lock, sort outside it
        with self._lock:
            total = self._total_cycles
            successful = self._successful_cycles
            skipped = self._skipped_cycles
            adjustments = self._adjustments
            error_counts = self._error_counts.copy()
            last_cycle_time = self._last_cycle_time
            start_time = self._start_time
            durations = [
                r.duration_ms for r in self._records if r.success and r.duration_ms > 0
            ]

        if durations:
            min_dur = min(durations)
            max_dur = max(durations)
            avg_dur = sum(durations) / len(durations)
            p95_dur = _percentile(sorted(durations), 95)
        else:
            min_dur = max_dur = avg_dur = p95_dur = 0.0

        return StatsSummary(
            camera=self.camera,
            total_cycles=total,
            successful_cycles=successful,
            failed_cycles=total - successful,
            skipped_cycles=skipped,
            adjustments=adjustments,
            success_rate=successful / total if total > 0 else 0.0,
            min_duration_ms=min_dur,
            max_duration_ms=max_dur,
            avg_duration_ms=avg_dur,
            p95_duration_ms=p95_dur,
            error_counts=error_counts,
            last_cycle_time=last_cycle_time,
            uptime_seconds=time.monotonic() - start_time,
        )

    def reset(self) -> None:
        """Clear all records and counters and restart the uptime timer."""
        with self._lock:
            self._records.clear()
            self._error_counts.clear()
            self._total_cycles = 0
            self._successful_cycles = 0
            self._skipped_cycles = 0
            self._adjustments = 0
            self._start_time = time.monotonic()
            self._last_cycle_time = None


class CycleStats:
    """Statistics manager for multiple cameras.

    Thread-safe container that lazily creates one collector per camera.

    Usage:
        stats = CycleStats()
        stats.record_cycle("cam-left", duration_ms=640, success=True)
        stats.record_skip("cam-right")
        all_stats = stats.to_dict()
    """

    def __init__(self, window_size: int = DEFAULT_STATS_WINDOW_SIZE) -> None:
        """Initialize the manager.

        Args:
            window_size: Passed to each per-camera collector.
        """
        self._window_size = window_size
        self._collectors: dict[str, CycleStatsCollector] = {}
        self._lock = threading.Lock()

    def _get_collector(self, camera: str) -> CycleStatsCollector:
        """Get or create the collector for a camera."""
        with self._lock:
            if camera not in self._collectors:
                self._collectors[camera] = CycleStatsCollector(
                    camera, self._window_size
                )
            return self._collectors[camera]

    def record_cycle(
        self,
        camera: str,
        duration_ms: float,
        success: bool,
        adjusted: bool = False,
        error_kind: str | None = None,
    ) -> None:
        """Record one in-hours cycle for a camera.

        Args:
            camera: Camera identifier.
            duration_ms: Cycle wall time in milliseconds.
            success: True when metrics were produced.
            adjusted: True when at least one setting was applied.
            error_kind: Error kind name for failures, e.g. ``"StreamLost"``.

        Example:
            >>> stats = CycleStats()
            >>> stats.record_cycle("cam-left", 0, False,
            ...                    error_kind="TransportOpenFailed")
        """
        self._get_collector(camera).record(duration_ms, success, adjusted, error_kind)

    def record_skip(self, camera: str) -> None:
        """Record a schedule-gated cycle for a camera."""
        self._get_collector(camera).record_skip()

    def get_summary(self, camera: str) -> StatsSummary:
        """Return the summary for one camera (zeros if never seen)."""
        return self._get_collector(camera).get_summary()

    def get_all_summaries(self) -> dict[str, StatsSummary]:
        """Return summaries for every camera that has a collector."""
        with self._lock:
            collectors = list(self._collectors.items())
        return {camera: collector.get_summary() for camera, collector in collectors}

    def reset(self, camera: str | None = None) -> None:
        """Reset one camera's statistics, or all cameras when None."""
        with self._lock:
            if camera is not None:
                if camera in self._collectors:
                    self._collectors[camera].reset()
            else:
                for collector in self._collectors.values():
                    collector.reset()

    def to_dict(self) -> dict[str, Any]:
        """Export all summaries keyed by camera with a UTC timestamp."""
        summaries = self.get_all_summaries()
        return {
            "cameras": {camera: summary.to_dict() for camera, summary in summaries.items()},
            "timestamp": _utc_now().isoformat(),
        }


def _percentile(sorted_data: list[float], p: float) -> float:
    """Calculate a percentile from pre-sorted data with linear interpolation.

    Args:
        sorted_data: Values sorted ascending. Empty input returns 0.0.
        p: Percentile in [0, 100].

    Returns:
        The interpolated percentile value.

    Raises:
        ValueError: If p is outside [0, 100].

    Example:
        >>> _percentile([100.0, 150.0, 200.0], 95)
        195.0
    """
    if not 0 <= p <= 100:
        raise ValueError(f"Percentile must be between 0 and 100, got {p}")

    if not sorted_data:
        return 0.0

    k = (len(sorted_data) - 1) * (p / 100)
    floor_idx = int(k)
    ceil_idx = min(floor_idx + 1, len(sorted_data) - 1)

    if floor_idx == ceil_idx:
        return sorted_data[floor_idx]

    fraction = k - floor_idx
    return sorted_data[floor_idx] * (1 - fraction) + sorted_data[ceil_idx] * fraction
