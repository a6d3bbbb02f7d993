"""Per-camera control loop."""

from zcam_exposure.devices.controller import (
    Clock,
    ControllerState,
    CycleOutcome,
    CycleStatus,
    ExposureController,
    SystemClock,
)

__all__ = [
    "Clock",
    "ControllerState",
    "CycleOutcome",
    "CycleStatus",
    "ExposureController",
    "SystemClock",
]
