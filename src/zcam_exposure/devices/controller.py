"""Per-camera exposure control loop.

One ``ExposureController`` drives one camera. Each cycle:

1. Schedule gate: outside ``[start_hour, end_hour)`` no camera I/O happens
   and the loop sleeps in coarse increments.
2. Read the camera state if it is not known yet.
3. Open a fresh RTSP connection, acquire one frame and close it again.
4. Analyze the frame and ask the policy for a decision.
5. Apply the decision one axis at a time when it is not a no-op and its
   confidence reaches the threshold, then wait for the camera to settle.
6. Write exactly one INFO log line describing the cycle.

Failures never leave a cycle: transport and control errors are caught and
recorded on the returned ``CycleOutcome``, and ``run`` logs anything else as
a crashed cycle before carrying on. Every wait observes the shared
stop event, so shutdown is bounded by the longest single I/O timeout.

States::

    IDLE -> RUNNING <-> SLEEPING -> TERMINATED

Example:
    controller = ExposureController(
        camera,
        settings,
        control=CameraControlClient(camera.ip),
        transport_factory=lambda: RtspTransport.for_camera(camera.ip),
        stop_event=stop,
    )
    controller.run()
"""

from __future__ import annotations

import dataclasses
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from zcam_exposure.config import CameraConfig, ControllerSettings
from zcam_exposure.drivers.control import CameraControlClient
from zcam_exposure.drivers.transport import Frame
from zcam_exposure.errors import (
    ControlError,
    ControlRejected,
    ErrorKind,
    TransportError,
)
from zcam_exposure.exposure.analyzer import (
    ExposureMetrics,
    analyze_frame,
    classify_scene,
    daylight_factor,
)
from zcam_exposure.exposure.policy import ExposurePolicy
from zcam_exposure.exposure.state import Axis, CameraState, Decision
from zcam_exposure.observability import CycleStats, LogContext, get_logger
from zcam_exposure.telemetry import TelemetryReporter
from zcam_exposure.utils.image import SnapshotWriter

__all__ = [
    "Clock",
    "ControllerState",
    "CycleOutcome",
    "CycleStatus",
    "ExposureController",
    "SystemClock",
]

logger = get_logger(__name__)

#: Transport errors that count toward the reopen backoff.
_OPEN_KINDS = frozenset({ErrorKind.TRANSPORT_OPEN_FAILED, ErrorKind.NO_VIDEO_STREAM})


@runtime_checkable
class Clock(Protocol):  # pragma: no cover
    """Time source for the loop (injectable for testing).

    Example:
        class FakeClock:
            def __init__(self, now):
                self._now = now
                self.waits = []

            def now(self):
                return self._now

            def monotonic(self):
                return 0.0

            def wait(self, seconds, stop_event):
                self.waits.append(seconds)
                return stop_event.is_set()
    """

    def now(self) -> datetime:
        """Return local wall-clock time, used for the schedule gate."""
        ...

    def monotonic(self) -> float:
        """Return monotonic seconds, used for cycle durations."""
        ...

    def wait(self, seconds: float, stop_event: threading.Event) -> bool:
        """Wait up to ``seconds``; return True if ``stop_event`` was set."""
        ...


class SystemClock:
    """Clock backed by the time module and ``Event.wait``."""

    def now(self) -> datetime:
        return datetime.now()

    def monotonic(self) -> float:
        return time.monotonic()

    def wait(self, seconds: float, stop_event: threading.Event) -> bool:
        return stop_event.wait(max(seconds, 0.0))


@runtime_checkable
class Transport(Protocol):  # pragma: no cover
    """The part of ``RtspTransport`` the controller uses."""

    @property
    def is_open(self) -> bool:
        """Whether the stream is connected."""
        ...

    def open(self) -> None:
        """Connect and discover the video substream."""
        ...

    def acquire_frame(self) -> Frame:
        """Decode one RGB frame."""
        ...

    def close(self) -> None:
        """Release the stream."""
        ...


class ControllerState(Enum):
    """Lifecycle state of a controller."""

    IDLE = "idle"
    RUNNING = "running"
    SLEEPING = "sleeping"
    TERMINATED = "terminated"


class CycleStatus(Enum):
    """How a cycle ended."""

    OUTSIDE_SCHEDULE = "outside_schedule"
    FAILED = "failed"
    HELD = "held"
    ADJUSTED = "adjusted"


@dataclass(frozen=True)
class CycleOutcome:
    """Result of one ``run_cycle`` call.

    Attributes:
        status: How the cycle ended.
        error_kind: Kind of the error that ended or degraded the cycle.
        error: Error message, if any.
        metrics: Scene metrics when a frame was analysed.
        decision: Policy decision when one was made.
        applied: Axes written successfully.
        failed: Axes whose write failed.
        state: Camera state after the cycle.
        reported: Telemetry result, None when reporting is off.
        duration_ms: Wall time of the cycle.
    """

    status: CycleStatus
    error_kind: ErrorKind | None = None
    error: str | None = None
    metrics: ExposureMetrics | None = None
    decision: Decision | None = None
    applied: tuple[Axis, ...] = ()
    failed: tuple[Axis, ...] = ()
    state: CameraState | None = None
    reported: bool | None = None
    duration_ms: float = 0.0

    @property
    def adjusted(self) -> bool:
        return bool(self.applied)


class ExposureController:
    """Closed-loop exposure control for one camera.

    Owns its camera state and transport. Shares only the stop event (and
    the thread-safe stats collector) with other controllers.
    """

    def __init__(
        self,
        camera: CameraConfig,
        settings: ControllerSettings,
        *,
        control: CameraControlClient,
        transport_factory: Callable[[], Transport],
        policy: ExposurePolicy | None = None,
        clock: Clock | None = None,
        stats: CycleStats | None = None,
        stop_event: threading.Event | None = None,
        snapshot_writer: SnapshotWriter | None = None,
        reporter: TelemetryReporter | None = None,
    ) -> None:
        """Create a controller in the IDLE state.

        Args:
            camera: Camera identity and address.
            settings: Loop settings and policy thresholds.
            control: HTTP control client for this camera.
            transport_factory: Creates a closed transport on demand.
            policy: Exposure policy. Defaults to one built from
                ``settings.policy``.
            clock: Time source. Defaults to ``SystemClock``.
            stats: Cycle statistics sink. Defaults to a private collector.
            stop_event: Shared stop flag. Defaults to a private event.
            snapshot_writer: Writes a JPEG of each analysed frame.
            reporter: Posts camera info after each measured cycle.
        """
        self.camera = camera
        self.settings = settings
        self._control = control
        self._transport_factory = transport_factory
        self._policy = policy or ExposurePolicy(settings.policy)
        self._clock: Clock = clock or SystemClock()
        self._stats = stats if stats is not None else CycleStats()
        self._stop = stop_event if stop_event is not None else threading.Event()
        self._snapshot_writer = snapshot_writer
        self._reporter = reporter

        self._state = ControllerState.IDLE
        self._transport: Transport | None = None
        self._camera_state: CameraState | None = None
        self._open_failures = 0
        self._adjustments = 0

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def state(self) -> ControllerState:
        return self._state

    @property
    def camera_state(self) -> CameraState | None:
        """Last known camera settings, None until first read or after a failed resync."""
        return self._camera_state

    @property
    def adjustments(self) -> int:
        """Cycles in which at least one setting was applied."""
        return self._adjustments

    @property
    def stop_event(self) -> threading.Event:
        return self._stop

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def run(self) -> None:
        """Run cycles until the stop event is set.

        The transport is closed on every exit path. An unexpected exception
        inside a cycle is logged and recorded as a failed cycle; the loop
        carries on with the next one.
        """
        with LogContext(camera=self.camera.name):
            logger.info(
                "Controller started",
                ip=self.camera.ip,
                interval=self.settings.interval_seconds,
                hours=f"{self.settings.start_hour}-{self.settings.end_hour}",
            )
            try:
                while not self._stop.is_set():
                    try:
                        outcome = self.run_cycle()
                    except Exception as e:
                        outcome = self._crashed_cycle(e)
                    if self._clock.wait(self.next_delay(outcome), self._stop):
                        break
            finally:
                self._close_transport()
                self._state = ControllerState.TERMINATED
                summary = self._stats.get_summary(self.camera.name)
                logger.info(
                    "Controller stopped",
                    total_adjustments=self._adjustments,
                    cycles=summary.total_cycles,
                    failed=summary.failed_cycles,
                    errors=summary.error_counts,
                )

    def stop(self) -> None:
        """Ask the loop to stop at the next wait or cycle boundary."""
        self._stop.set()

    def next_delay(self, outcome: CycleOutcome) -> float:
        """Seconds to wait after ``outcome`` before the next cycle."""
        s = self.settings
        if outcome.status is CycleStatus.OUTSIDE_SCHEDULE:
            return s.sleep_seconds
        if self._open_failures:
            return min(s.interval_seconds * 2**self._open_failures, s.max_backoff_seconds)
        return s.interval_seconds

    def run_cycle(self) -> CycleOutcome:
        """Run one cycle and log exactly one INFO line describing it."""
        now = self._clock.now()
        if not self.settings.in_hours(now.hour):
            outcome = self._sleep_cycle()
            self._log_cycle(outcome, now)
            return outcome

        self._state = ControllerState.RUNNING
        start = self._clock.monotonic()
        outcome = self._measure_and_apply()
        outcome = dataclasses.replace(
            outcome, duration_ms=(self._clock.monotonic() - start) * 1000.0
        )

        self._stats.record_cycle(
            self.camera.name,
            duration_ms=outcome.duration_ms,
            success=outcome.metrics is not None,
            adjusted=outcome.adjusted,
            error_kind=outcome.error_kind.value if outcome.error_kind else None,
        )
        self._log_cycle(outcome, now)
        return outcome

    def _crashed_cycle(self, error: Exception) -> CycleOutcome:
        """Record a cycle that raised something other than a camera error.

        Must be called from inside the ``except`` block so the traceback
        lands in the log line.
        """
        self._close_transport()
        self._camera_state = None
        logger.exception("Cycle crashed", status=CycleStatus.FAILED.value, error=str(error))
        self._stats.record_cycle(
            self.camera.name,
            duration_ms=0.0,
            success=False,
            error_kind=type(error).__name__,
        )
        return CycleOutcome(status=CycleStatus.FAILED, error=str(error))

    def _sleep_cycle(self) -> CycleOutcome:
        self._state = ControllerState.SLEEPING
        self._stats.record_skip(self.camera.name)
        return CycleOutcome(
            status=CycleStatus.OUTSIDE_SCHEDULE,
            error_kind=ErrorKind.OUTSIDE_SCHEDULE,
            state=self._camera_state,
        )

    # ------------------------------------------------------------------
    # Cycle steps
    # ------------------------------------------------------------------

    def _measure_and_apply(self) -> CycleOutcome:
        try:
            state = self._ensure_camera_state()
            frame = self._acquire()
        except TransportError as e:
            return self._transport_failure(e)
        except ControlError as e:
            self._camera_state = None
            return CycleOutcome(
                status=CycleStatus.FAILED, error_kind=e.kind, error=str(e)
            )
        finally:
            # One frame per connection: packets left in the buffers would
            # predate the settings applied below.
            self._close_transport()

        s = self.settings
        metrics = analyze_frame(
            frame.pixels,
            target_brightness=state.target_brightness,
            roi=s.roi,
            focus=s.focus,
            calibration=s.focus_calibration,
        )
        self._write_snapshot(frame)

        decision = self._policy.decide(state, metrics)
        if decision.is_noop or decision.confidence < s.confidence_threshold:
            outcome = CycleOutcome(
                status=CycleStatus.HELD, metrics=metrics, decision=decision, state=state
            )
        else:
            outcome = self._apply(decision, metrics)

        if self._reporter is not None and outcome.state is not None:
            reported = self._reporter.report(outcome.state, metrics)
            outcome = dataclasses.replace(outcome, reported=reported)
        return outcome

    def _ensure_camera_state(self) -> CameraState:
        if self._camera_state is None:
            self._camera_state = self._control.read_state(
                target_brightness=self.settings.target_brightness,
                brightness_tolerance=self.settings.brightness_tolerance,
            )
        return self._camera_state

    def _acquire(self) -> Frame:
        if self._transport is None:
            self._transport = self._transport_factory()
        if not self._transport.is_open:
            self._transport.open()
            self._open_failures = 0
        return self._transport.acquire_frame()

    def _transport_failure(self, error: TransportError) -> CycleOutcome:
        if error.kind in _OPEN_KINDS:
            self._open_failures += 1
        return CycleOutcome(
            status=CycleStatus.FAILED,
            error_kind=error.kind,
            error=str(error),
            state=self._camera_state,
        )

    def _apply(self, decision: Decision, metrics: ExposureMetrics) -> CycleOutcome:
        """Write each moved axis once, in order, updating local state."""
        state = decision.current
        applied: list[Axis] = []
        failed: list[Axis] = []
        last_error: ControlError | None = None

        for axis in decision.moves:
            value = decision.proposed.value(axis)
            try:
                self._control.apply(axis, value)
            except ControlError as e:
                failed.append(axis)
                last_error = e
                logger.debug(
                    "Apply failed",
                    axis=axis.value,
                    value=value,
                    kind=e.kind.value,
                    error=str(e),
                )
                if axis is Axis.SHUTTER and isinstance(e, ControlRejected):
                    state = dataclasses.replace(state, shutter_supported=False)
                resynced = self._resync(state, axis)
                if resynced is None:
                    self._camera_state = None
                    return self._apply_outcome(
                        decision, metrics, None, applied, failed, last_error
                    )
                state = resynced
                continue
            state = state.with_value(axis, value)
            applied.append(axis)

        self._camera_state = state
        return self._apply_outcome(decision, metrics, state, applied, failed, last_error)

    def _apply_outcome(
        self,
        decision: Decision,
        metrics: ExposureMetrics,
        state: CameraState | None,
        applied: list[Axis],
        failed: list[Axis],
        error: ControlError | None,
    ) -> CycleOutcome:
        if applied:
            self._adjustments += 1
            self._clock.wait(self.settings.settle_seconds, self._stop)
        return CycleOutcome(
            status=CycleStatus.ADJUSTED if applied else CycleStatus.FAILED,
            error_kind=error.kind if error else None,
            error=str(error) if error else None,
            metrics=metrics,
            decision=decision,
            applied=tuple(applied),
            failed=tuple(failed),
            state=state,
        )

    def _resync(self, state: CameraState, axis: Axis) -> CameraState | None:
        """Re-read one axis after a failed write; None if that fails too."""
        try:
            return self._control.read_axis(state, axis)
        except ControlError as e:
            logger.debug("Resync failed", axis=axis.value, error=str(e))
            return None

    def _write_snapshot(self, frame: Frame) -> None:
        if self._snapshot_writer is None:
            return
        try:
            self._snapshot_writer.write(frame)
        except (OSError, ValueError) as e:
            logger.debug("Snapshot failed", error=str(e))

    def _close_transport(self) -> None:
        if self._transport is not None:
            self._transport.close()
            self._transport = None

    # ------------------------------------------------------------------
    # Logging
    # ------------------------------------------------------------------

    def _log_cycle(self, outcome: CycleOutcome, now: datetime) -> None:
        fields: dict[str, Any] = {
            "status": outcome.status.value,
            "time": now.isoformat(timespec="seconds"),
        }
        if outcome.error_kind is not None:
            fields["error"] = outcome.error_kind.value
        if outcome.error:
            fields["detail"] = outcome.error
        if outcome.metrics is not None:
            fields.update(outcome.metrics.log_fields())
            fields["scene"] = classify_scene(
                outcome.metrics,
                self.settings.target_brightness,
                self.settings.brightness_tolerance,
            )
            fields["daylight"] = round(daylight_factor(now.hour + now.minute / 60.0), 2)
        if outcome.decision is not None:
            fields["confidence"] = round(outcome.decision.confidence, 2)
            fields["moves"] = ",".join(a.value for a in outcome.decision.moves) or "none"
            fields["reasons"] = "; ".join(outcome.decision.reasons)
        if outcome.applied:
            fields["applied"] = ",".join(a.value for a in outcome.applied)
        if outcome.failed:
            fields["failed"] = ",".join(a.value for a in outcome.failed)
            if outcome.state is None:
                fields["resync"] = "failed"
        if outcome.state is not None:
            fields.update(outcome.state.log_fields())
        if outcome.reported is not None:
            fields["reported"] = outcome.reported
        fields["adjustments"] = self._adjustments
        if outcome.duration_ms:
            fields["duration_ms"] = round(outcome.duration_ms, 1)
        logger.info("Cycle", **fields)
