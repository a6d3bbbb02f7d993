"""Focus measurement over a luma plane.

Focus is measured, never actuated. Three OpenCV kernels feed one score:

- sharpness: variance of the 4-neighbour Laplacian
- edge density: mean Sobel gradient magnitude
- high frequency: mean absolute deviation from a 3x3 box mean

Each term is divided by a calibration constant, clamped to 1, weighted
0.5 / 0.3 / 0.2 and scaled to 0-100. The constants depend on the lens and
sensor, so they live in ``FocusCalibration`` and come from configuration.

OpenCV is imported on first measurement, so importing the exposure package
does not load cv2 when focus is disabled.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
from numpy.typing import NDArray

__all__ = ["FocusCalibration", "FocusMetrics", "measure_focus"]

#: Weights of the normalized Laplacian, Sobel and high-frequency terms.
FOCUS_WEIGHTS: tuple[float, float, float] = (0.5, 0.3, 0.2)

#: Smallest plane the 3x3 kernels are evaluated on.
MIN_FOCUS_SIZE = 3


@dataclass(frozen=True, slots=True)
class FocusCalibration:
    """Normalization constants for the focus score.

    Attributes:
        laplacian: Laplacian variance that counts as fully sharp.
        sobel: Mean Sobel magnitude that counts as fully sharp.
        high_frequency: Mean 3x3 deviation that counts as fully sharp.
    """

    laplacian: float = 500.0
    sobel: float = 50.0
    high_frequency: float = 20.0

    def __post_init__(self) -> None:
        for name in ("laplacian", "sobel", "high_frequency"):
            if getattr(self, name) <= 0:
                raise ValueError(f"focus calibration {name} must be positive")


@dataclass(frozen=True, slots=True)
class FocusMetrics:
    """Focus measurements for one frame.

    Attributes:
        sharpness: Variance of the Laplacian response.
        edge_density: Mean Sobel gradient magnitude.
        high_frequency: Mean |Y - mean3x3(Y)|.
        score: Weighted, normalized combination in [0, 100].
    """

    sharpness: float = 0.0
    edge_density: float = 0.0
    high_frequency: float = 0.0
    score: float = 0.0


def measure_focus(
    luma: NDArray[np.uint8],
    calibration: FocusCalibration | None = None,
) -> FocusMetrics:
    """Compute focus metrics for a 2-D luma plane.

    Args:
        luma: 2-D uint8 array of luma values.
        calibration: Normalization constants. Defaults to
            ``FocusCalibration()``.

    Returns:
        FocusMetrics. All zeros when the plane is smaller than 3x3.

    Example:
        >>> flat = np.full((64, 64), 128, dtype=np.uint8)
        >>> measure_focus(flat).score
        0.0
    """
    if calibration is None:
        calibration = FocusCalibration()

    if luma.ndim != 2 or min(luma.shape) < MIN_FOCUS_SIZE:
        return FocusMetrics()

    import cv2

    plane = luma.astype(np.float64)

    # ksize=1 selects the [[0,1,0],[1,-4,1],[0,1,0]] kernel
    laplacian = cv2.Laplacian(plane, cv2.CV_64F, ksize=1)
    sharpness = float(laplacian.var())

    grad_x = cv2.Sobel(plane, cv2.CV_64F, 1, 0, ksize=3)
    grad_y = cv2.Sobel(plane, cv2.CV_64F, 0, 1, ksize=3)
    edge_density = float(cv2.magnitude(grad_x, grad_y).mean())

    local_mean = cv2.blur(plane, (3, 3))
    high_frequency = float(np.abs(plane - local_mean).mean())

    terms = (
        min(sharpness / calibration.laplacian, 1.0),
        min(edge_density / calibration.sobel, 1.0),
        min(high_frequency / calibration.high_frequency, 1.0),
    )
    score = 100.0 * sum(w * t for w, t in zip(FOCUS_WEIGHTS, terms, strict=True))

    return FocusMetrics(
        sharpness=sharpness,
        edge_density=edge_density,
        high_frequency=high_frequency,
        score=score,
    )
