"""Camera state and exposure decisions.

``CameraState`` is what a controller believes the camera is currently set
to, together with the option lists the camera reported. It is immutable:
successful applies produce a new state via :meth:`CameraState.with_value`.

``Decision`` pairs the state a policy started from with the state it
proposes, plus the reasons and a confidence.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from enum import Enum
from typing import Any

__all__ = ["Axis", "CameraState", "Decision", "EV_EPSILON", "fnumber"]

#: EV differences at or below this many stops are not a move.
EV_EPSILON = 0.05


class Axis(Enum):
    """Exposure axes, valued by their control key."""

    ISO = "iso"
    IRIS = "iris"
    SHUTTER = "shutter_angle"
    EV = "ev"


_AXIS_FIELDS = {
    Axis.ISO: "iso",
    Axis.IRIS: "iris",
    Axis.SHUTTER: "shutter_angle",
    Axis.EV: "ev_bias",
}


def fnumber(token: str) -> float | None:
    """Parse an iris token such as ``"5.6"`` to its f-number, None if not numeric."""
    try:
        value = float(token)
    except (TypeError, ValueError):
        return None
    return value if value > 0 else None


@dataclass(frozen=True)
class CameraState:
    """Exposure settings of one camera plus its reported option lists.

    Attributes:
        iso: Current ISO.
        iris: Current iris token, matched literally against ``allowed_iris``.
        shutter_angle: Shutter angle in degrees, 0 means Auto.
        ev_bias: Exposure compensation in stops.
        allowed_iso: ISO options reported by the camera.
        allowed_iris: Iris options reported by the camera.
        allowed_shutter: Shutter angle options reported by the camera.
        ev_min: Lowest EV bias in stops.
        ev_max: Highest EV bias in stops.
        shutter_supported: False when shutter angle cannot be read or written.
        ev_supported: False when EV cannot be read or written.
        target_brightness: Target mean luma.
        brightness_tolerance: Half-width of the tolerance band.
    """

    iso: int
    iris: str
    shutter_angle: int = 180
    ev_bias: float = 0.0
    allowed_iso: tuple[int, ...] = ()
    allowed_iris: tuple[str, ...] = ()
    allowed_shutter: tuple[int, ...] = ()
    ev_min: float = -9.6
    ev_max: float = 9.6
    shutter_supported: bool = True
    ev_supported: bool = True
    target_brightness: float = 128.0
    brightness_tolerance: float = 15.0

    def value(self, axis: Axis) -> Any:
        """Return the current value of an axis."""
        return getattr(self, _AXIS_FIELDS[axis])

    def with_value(self, axis: Axis, value: Any) -> CameraState:
        """Return a copy with one axis changed."""
        return dataclasses.replace(self, **{_AXIS_FIELDS[axis]: value})

    def differs(self, other: CameraState, axis: Axis) -> bool:
        """True when ``other`` holds a different value on ``axis``."""
        if axis is Axis.EV:
            return abs(self.ev_bias - other.ev_bias) > EV_EPSILON
        return self.value(axis) != other.value(axis)

    def log_fields(self) -> dict[str, Any]:
        """Return the settings as key/value pairs for the cycle log line."""
        return {
            "iso": self.iso,
            "iris": self.iris,
            "shutter": self.shutter_angle if self.shutter_supported else "n/a",
            "ev": round(self.ev_bias, 1) if self.ev_supported else "n/a",
        }


@dataclass(frozen=True)
class Decision:
    """Outcome of one policy evaluation.

    Attributes:
        current: State the policy evaluated.
        proposed: State the policy wants the camera in.
        reasons: Up to three short phrases, most important first.
        confidence: Confidence in [0, 1].
    """

    current: CameraState
    proposed: CameraState
    reasons: tuple[str, ...]
    confidence: float

    @property
    def moves(self) -> tuple[Axis, ...]:
        """Axes whose proposed value differs from the current one, in apply order."""
        return tuple(axis for axis in Axis if self.current.differs(self.proposed, axis))

    @property
    def is_noop(self) -> bool:
        return not self.moves
