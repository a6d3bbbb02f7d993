"""Scene analyzer: RGB frame to exposure metrics.

Converts a packed RGB24 frame (optionally cropped to a region of interest)
to BT.601 luma and reduces it to the statistics the exposure policy acts
on: mean brightness, contrast, clipping percentages, dynamic range, a
normalized histogram, tonal shares and an advisory exposure score.

Luma uses ``Y = round(0.299 R + 0.587 G + 0.114 B)`` with halves rounded up,
computed vectorised with numpy. Statistics come from the 256-bin histogram,
so every derived quantity is consistent with it.

Example:
    metrics = analyze_frame(frame.pixels, target_brightness=128, focus=True)
    if metrics.highlights_clipped > 3.0:
        ...
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any

import numpy as np
from numpy.typing import NDArray

from zcam_exposure.exposure.focus import FocusCalibration, FocusMetrics, measure_focus

__all__ = [
    "ExposureMetrics",
    "Roi",
    "analyze_buffer",
    "analyze_frame",
    "classify_scene",
    "daylight_factor",
    "exposure_score",
    "to_luma",
]

#: Luma at or above this counts as a clipped highlight.
HIGHLIGHT_CLIP_LEVEL = 250

#: Luma at or below this counts as a clipped shadow.
SHADOW_CLIP_LEVEL = 5

#: Upper bounds (exclusive) of the shadow and midtone bands.
SHADOW_BAND_END = 85
MIDTONE_BAND_END = 170

HISTOGRAM_BINS = 256

_LUMA_WEIGHTS = np.array([0.299, 0.587, 0.114], dtype=np.float64)


@dataclass(frozen=True, slots=True)
class Roi:
    """Region of interest in pixel coordinates.

    Attributes:
        x: Left edge.
        y: Top edge.
        width: Width in pixels.
        height: Height in pixels.
    """

    x: int
    y: int
    width: int
    height: int

    def clip(self, frame_width: int, frame_height: int) -> tuple[slice, slice]:
        """Return row/column slices of this region clipped to the frame.

        Regions partly outside the frame are trimmed. Regions entirely
        outside produce empty slices.
        """
        x0 = min(max(self.x, 0), frame_width)
        y0 = min(max(self.y, 0), frame_height)
        x1 = min(max(self.x + self.width, x0), frame_width)
        y1 = min(max(self.y + self.height, y0), frame_height)
        return slice(y0, y1), slice(x0, x1)


@dataclass(frozen=True)
class ExposureMetrics:
    """Photometric statistics for one frame.

    Percentages are in [0, 100]. Every field is zero (histogram all zeros)
    when no pixels were available.

    Attributes:
        mean_brightness: Mean luma in [0, 255].
        contrast: Standard deviation of luma.
        highlights_clipped: Percent of pixels with luma >= 250.
        shadows_clipped: Percent of pixels with luma <= 5.
        dynamic_range: Max minus min luma over pixels brighter than 5.
        histogram: 256 normalized bins summing to 1.
        shadows_share: Percent of pixels in 0-84.
        midtones_share: Percent of pixels in 85-169.
        highlights_share: Percent of pixels in 170-255.
        exposure_score: Advisory quality score in [0, 100].
        total_pixels: Pixels analysed.
        focus: Focus metrics when requested.
    """

    mean_brightness: float = 0.0
    contrast: float = 0.0
    highlights_clipped: float = 0.0
    shadows_clipped: float = 0.0
    dynamic_range: int = 0
    histogram: tuple[float, ...] = field(default=(0.0,) * HISTOGRAM_BINS)
    shadows_share: float = 0.0
    midtones_share: float = 0.0
    highlights_share: float = 0.0
    exposure_score: float = 0.0
    total_pixels: int = 0
    focus: FocusMetrics | None = None

    def log_fields(self) -> dict[str, Any]:
        """Return the compact key/value set written to the cycle log line."""
        fields: dict[str, Any] = {
            "mean": round(self.mean_brightness, 1),
            "contrast": round(self.contrast, 1),
            "highlights": round(self.highlights_clipped, 2),
            "shadows": round(self.shadows_clipped, 2),
            "dr": self.dynamic_range,
            "score": round(self.exposure_score, 1),
        }
        if self.focus is not None:
            fields["focus"] = round(self.focus.score, 1)
        return fields


def exposure_score(
    mean_brightness: float,
    contrast: float,
    highlights_clipped: float,
    shadows_clipped: float,
    dynamic_range: float,
    target_brightness: float = 128.0,
) -> float:
    """Score exposure quality with a fixed penalty function.

    Starts from 100 and subtracts penalties for distance from the target,
    clipping, too little or too much contrast and compressed dynamic
    range. The result is clamped to [0, 100].

    Example:
        >>> exposure_score(128, 50, 0, 0, 240)
        100.0
        >>> exposure_score(70, 30, 0, 12, 180)
        22.0
    """
    score = 100.0
    score -= min(abs(mean_brightness - target_brightness) * 2.0, 50.0)
    score -= highlights_clipped * 2.0
    score -= shadows_clipped * 2.0
    if contrast < 30.0:
        score -= 30.0 - contrast
    elif contrast > 80.0:
        score -= (contrast - 80.0) * 0.5
    if dynamic_range < 200:
        score -= (200 - dynamic_range) * 0.2
    return min(max(score, 0.0), 100.0)


def to_luma(pixels: NDArray[np.uint8]) -> NDArray[np.uint8]:
    """Convert an (H, W, 3) RGB array to an (H, W) uint8 luma plane."""
    weighted = pixels.astype(np.float64) @ _LUMA_WEIGHTS
    return np.clip(np.floor(weighted + 0.5), 0, 255).astype(np.uint8)


def analyze_frame(
    pixels: NDArray[np.uint8],
    *,
    target_brightness: float = 128.0,
    roi: Roi | None = None,
    focus: bool = False,
    calibration: FocusCalibration | None = None,
) -> ExposureMetrics:
    """Measure an RGB frame.

    Args:
        pixels: (H, W, 3) uint8 array in RGB order.
        target_brightness: Target used by the exposure score.
        roi: Optional region to crop before measuring.
        focus: Also compute focus metrics.
        calibration: Focus normalization constants.

    Returns:
        ExposureMetrics. Zero metrics for an empty frame or empty crop.

    Raises:
        ValueError: If ``pixels`` is not an (H, W, 3) array.
    """
    if pixels.ndim != 3 or pixels.shape[2] != 3:
        raise ValueError(f"expected an (H, W, 3) RGB array, got shape {pixels.shape}")

    if roi is not None:
        rows, cols = roi.clip(pixels.shape[1], pixels.shape[0])
        pixels = pixels[rows, cols]

    total = pixels.shape[0] * pixels.shape[1]
    if total == 0:
        return ExposureMetrics()

    luma = to_luma(pixels)
    counts = np.bincount(luma.ravel(), minlength=HISTOGRAM_BINS)

    mean = float(luma.mean(dtype=np.float64))
    mean_sq = float(np.square(luma, dtype=np.float64).mean())
    contrast = math.sqrt(max(mean_sq - mean * mean, 0.0))

    highlights = float(counts[HIGHLIGHT_CLIP_LEVEL:].sum()) * 100.0 / total
    shadows = float(counts[: SHADOW_CLIP_LEVEL + 1].sum()) * 100.0 / total

    lit = np.flatnonzero(counts[SHADOW_CLIP_LEVEL + 1 :])
    dynamic_range = int(lit[-1] - lit[0]) if lit.size else 0

    shadows_share = float(counts[:SHADOW_BAND_END].sum()) * 100.0 / total
    midtones_share = (
        float(counts[SHADOW_BAND_END:MIDTONE_BAND_END].sum()) * 100.0 / total
    )
    highlights_share = float(counts[MIDTONE_BAND_END:].sum()) * 100.0 / total

    focus_metrics = measure_focus(luma, calibration) if focus else None

    return ExposureMetrics(
        mean_brightness=mean,
        contrast=contrast,
        highlights_clipped=highlights,
        shadows_clipped=shadows,
        dynamic_range=dynamic_range,
        histogram=tuple((counts / total).tolist()),
        shadows_share=shadows_share,
        midtones_share=midtones_share,
        highlights_share=highlights_share,
        exposure_score=exposure_score(
            mean, contrast, highlights, shadows, dynamic_range, target_brightness
        ),
        total_pixels=total,
        focus=focus_metrics,
    )


def analyze_buffer(
    buffer: bytes | bytearray | memoryview,
    width: int,
    height: int,
    **kwargs: Any,
) -> ExposureMetrics:
    """Measure a packed RGB24 buffer of ``3 * width * height`` bytes.

    Keyword arguments are passed to :func:`analyze_frame`.

    Raises:
        ValueError: If the buffer size does not match the dimensions.
    """
    expected = 3 * width * height
    if width < 0 or height < 0 or len(buffer) != expected:
        raise ValueError(
            f"buffer of {len(buffer)} bytes does not match {width}x{height} RGB24"
        )
    pixels = np.frombuffer(buffer, dtype=np.uint8).reshape(height, width, 3)
    return analyze_frame(pixels, **kwargs)


def classify_scene(
    metrics: ExposureMetrics,
    target_brightness: float = 128.0,
    tolerance: float = 15.0,
) -> str:
    """Coarse scene label for log lines.

    Returns one of ``"dark"``, ``"bright"``, ``"high_contrast"``,
    ``"flat"`` or ``"balanced"``. Never used for decisions.
    """
    error = metrics.mean_brightness - target_brightness
    if error < -tolerance:
        return "dark"
    if error > tolerance:
        return "bright"
    if metrics.contrast > 80.0:
        return "high_contrast"
    if metrics.contrast < 15.0:
        return "flat"
    return "balanced"


def daylight_factor(hour: float) -> float:
    """Rough sun elevation factor in [0, 1] for a local hour of day.

    Assumes solar noon at 13:00 and 12 degrees of elevation per hour.
    Inside 06:00-22:00 the factor drops to 0 once the sun is below the
    horizon; outside that window it is the night floor of 0.1.

    Example:
        >>> daylight_factor(13.0)
        1.0
        >>> daylight_factor(7.0)
        0.2
    """
    if not 6.0 <= hour <= 22.0:
        return 0.1
    elevation = 90.0 - abs(hour - 13.0) * 12.0
    return max(0.0, elevation / 90.0)
