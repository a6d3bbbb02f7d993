"""Scene measurement and exposure decisions.

The analyzer turns a decoded RGB frame into ``ExposureMetrics``; the policy
turns a ``CameraState`` plus metrics into a ``Decision``. Neither performs
I/O, so both are exercised directly in tests with synthetic frames.

Example:
    from zcam_exposure.exposure import ExposurePolicy, analyze_frame

    metrics = analyze_frame(frame.pixels, focus=True)
    decision = ExposurePolicy().decide(state, metrics)
"""

from zcam_exposure.exposure.analyzer import (
    ExposureMetrics,
    Roi,
    analyze_buffer,
    analyze_frame,
    classify_scene,
    daylight_factor,
    exposure_score,
)
from zcam_exposure.exposure.focus import FocusCalibration, FocusMetrics, measure_focus
from zcam_exposure.exposure.policy import ExposurePolicy, PolicySettings
from zcam_exposure.exposure.state import Axis, CameraState, Decision

__all__ = [
    # Analyzer
    "ExposureMetrics",
    "Roi",
    "analyze_buffer",
    "analyze_frame",
    "classify_scene",
    "daylight_factor",
    "exposure_score",
    # Focus
    "FocusCalibration",
    "FocusMetrics",
    "measure_focus",
    # Policy
    "Axis",
    "CameraState",
    "Decision",
    "ExposurePolicy",
    "PolicySettings",
]
