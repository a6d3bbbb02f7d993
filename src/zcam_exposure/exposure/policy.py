"""Exposure policy: camera state plus scene metrics to a decision.

The policy is a pure function of its inputs. It walks four axes in a fixed
priority so that corrections never fight each other:

1. ISO, first when dark and last when bright. Dark scenes jump to the high
   native rung (2500). Bright scenes fall back to the low native rung (500)
   and then to the configured minimum.
2. Iris, only once ISO has nowhere left to go in the needed direction.
3. Shutter angle, only when the camera supports it and ISO is not moving.
4. EV bias, a small step to protect highlights or recover shadows.

Inside the tolerance band the only permitted move is snapping ISO to the
nearest native rung. Every value proposed is taken from the option lists
the camera reported, and never leaves the configured limits.

Example:
    policy = ExposurePolicy()
    decision = policy.decide(state, metrics)
    if not decision.is_noop and decision.confidence >= 0.6:
        for axis in decision.moves:
            client.apply(axis, decision.proposed.value(axis))
"""

from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import dataclass

from zcam_exposure.exposure.analyzer import ExposureMetrics
from zcam_exposure.exposure.state import EV_EPSILON, Axis, CameraState, Decision, fnumber

__all__ = ["ExposurePolicy", "PolicySettings"]

OPTIMAL_REASON = "Current settings optimal for conditions"
MAX_REASONS = 3
BASE_CONFIDENCE = 0.5
IN_TOLERANCE_CONFIDENCE = 0.8


@dataclass(frozen=True)
class PolicySettings:
    """Tunable thresholds of the exposure policy.

    Attributes:
        native_iso: The camera's native ISO rungs (low, high).
        iso_min: Lowest ISO the policy may select.
        iso_max: Highest ISO the policy may select, None for no limit.
        very_dark_error: Error (in luma) below which ISO may climb past the
            high native rung.
        daylight_iris: Preferred iris band (f-numbers) in daylight.
        low_light_iris: Preferred iris band (f-numbers) in low light.
        iris_min: Smallest f-number the policy may select.
        iris_max: Largest f-number the policy may select.
        extreme_bright_mean: Mean at which the iris closes fully.
        shutter_bright_mean: Mean at which the shutter angle narrows.
        shutter_bright_angles: Narrow angles, preferred first.
        shutter_dim_mean: Mean below which the shutter angle widens. Also
            the mean below which the iris jumps into the low-light band.
        shutter_dim_angle: Wide angle for dim scenes.
        default_shutter_angle: Angle the shutter returns toward.
        highlight_clip_percent: Highlight clipping that triggers an EV cut.
        heavy_highlight_clip_percent: Highlight clipping that doubles the cut.
        shadow_clip_percent: Shadow clipping that triggers an EV raise.
        shadow_mean_limit: The EV raise needs the mean below this.
        ev_step: EV step in stops.
        heavy_ev_step: EV step under heavy highlight clipping.
        ev_limit: Largest EV bias magnitude in stops.
        extreme_contrast: (low, high) contrast outside which confidence
            is scaled by ``extreme_contrast_factor``.
        extreme_contrast_factor: Confidence multiplier for extreme contrast.
    """

    native_iso: tuple[int, int] = (500, 2500)
    iso_min: int = 400
    iso_max: int | None = None
    very_dark_error: float = 30.0
    daylight_iris: tuple[str, str] = ("8", "11")
    low_light_iris: tuple[str, str] = ("2.8", "4")
    iris_min: str | None = None
    iris_max: str | None = None
    extreme_bright_mean: float = 190.0
    shutter_bright_mean: float = 180.0
    shutter_bright_angles: tuple[int, ...] = (120, 90)
    shutter_dim_mean: float = 80.0
    shutter_dim_angle: int = 270
    default_shutter_angle: int = 180
    highlight_clip_percent: float = 3.0
    heavy_highlight_clip_percent: float = 10.0
    shadow_clip_percent: float = 8.0
    shadow_mean_limit: float = 100.0
    ev_step: float = 0.5
    heavy_ev_step: float = 1.0
    ev_limit: float = 2.0
    extreme_contrast: tuple[float, float] = (15.0, 80.0)
    extreme_contrast_factor: float = 0.8

    def __post_init__(self) -> None:
        low, high = self.native_iso
        if not 0 < low < high:
            raise ValueError("native_iso must be two increasing positive rungs")
        if self.iso_min <= 0:
            raise ValueError("iso_min must be positive")
        if self.iso_max is not None and self.iso_max < self.iso_min:
            raise ValueError("iso_max must not be below iso_min")
        for name in ("iris_min", "iris_max"):
            token = getattr(self, name)
            if token is not None and fnumber(token) is None:
                raise ValueError(f"{name} must be an f-number, got {token!r}")
        for band in (self.daylight_iris, self.low_light_iris):
            if any(fnumber(token) is None for token in band):
                raise ValueError(f"iris band must hold f-numbers, got {band!r}")
        if self.ev_step <= 0 or self.heavy_ev_step <= 0 or self.ev_limit < 0:
            raise ValueError("EV step and limit must be positive")


def _stops(a: float, b: float) -> float:
    """Distance between two exposure values in stops (log2 ratio)."""
    return abs(math.log2(a / b))


def _closest(candidates: Iterable[int], target: int) -> int | None:
    """Candidate closest to ``target`` in stops; the lower one wins a tie."""
    best: int | None = None
    for rung in sorted(candidates):
        if best is None or _stops(rung, target) < _stops(best, target):
            best = rung
    return best


@dataclass
class _Plan:
    """Mutable scratch space while one decision is assembled."""

    state: CameraState
    reasons: list[str]
    confidence: float = BASE_CONFIDENCE

    def move(self, axis: Axis, value: object, reason: str, weight: float) -> None:
        self.state = self.state.with_value(axis, value)
        self.reasons.append(reason)
        self.confidence += weight


class ExposurePolicy:
    """Decides the next exposure moves for one camera.

    Stateless apart from its settings, so one instance can be shared.
    """

    def __init__(self, settings: PolicySettings | None = None) -> None:
        """Create a policy.

        Args:
            settings: Thresholds and limits. Defaults to ``PolicySettings()``.
        """
        self.settings = settings or PolicySettings()

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def decide(self, state: CameraState, metrics: ExposureMetrics) -> Decision:
        """Decide the next moves for ``state`` given ``metrics``.

        Args:
            state: What the camera is believed to be set to.
            metrics: Measurements of the latest frame.

        Returns:
            Decision with at most one move per axis. Never raises.

        Example:
            >>> decision = ExposurePolicy().decide(state, metrics)
            >>> decision.proposed.iso, decision.reasons[0]
            (2500, 'Dark scene - jump to native ISO 2500')
        """
        s = self.settings
        error = metrics.mean_brightness - state.target_brightness
        dark = error < -state.brightness_tolerance
        bright = error > state.brightness_tolerance

        highlight_clip = metrics.highlights_clipped > s.highlight_clip_percent
        shadow_clip = (
            metrics.shadows_clipped > s.shadow_clip_percent
            and metrics.mean_brightness < s.shadow_mean_limit
        )
        in_tolerance = not (dark or bright or highlight_clip or shadow_clip)

        plan = _Plan(state=state, reasons=[])

        if in_tolerance:
            self._optimize_iso(plan)
        else:
            iso_moved = self._decide_iso(plan, error, dark, bright)
            if not iso_moved:
                self._decide_iris(plan, metrics, dark, bright)
                self._decide_shutter(plan, metrics, dark, bright)
            self._decide_ev(plan, metrics, dark, bright)

        confidence = plan.confidence
        low, high = s.extreme_contrast
        if metrics.contrast < low or metrics.contrast > high:
            confidence *= s.extreme_contrast_factor
        confidence = min(confidence, 1.0)

        reasons = plan.reasons
        if in_tolerance:
            confidence = max(confidence, IN_TOLERANCE_CONFIDENCE)
            if not reasons:
                reasons = [OPTIMAL_REASON]
        elif not reasons:
            direction = "dark" if dark else "bright" if bright else "clipped"
            reasons = [f"No permitted move for {direction} scene"]

        return Decision(
            current=state,
            proposed=plan.state,
            reasons=tuple(reasons[:MAX_REASONS]),
            confidence=confidence,
        )

    # ------------------------------------------------------------------
    # ISO
    # ------------------------------------------------------------------

    def _iso_rungs(self, state: CameraState) -> list[int]:
        """Allowed ISO rungs inside the configured limits, ascending."""
        s = self.settings
        return sorted(
            {
                rung
                for rung in state.allowed_iso
                if rung > 0
                and rung >= s.iso_min
                and (s.iso_max is None or rung <= s.iso_max)
            }
        )

    def _iso_exhausted(self, state: CameraState, upward: bool) -> bool:
        """True when no allowed rung is left in the given direction."""
        rungs = self._iso_rungs(state)
        if upward:
            return not any(rung > state.iso for rung in rungs)
        return not any(rung < state.iso for rung in rungs)

    def _optimize_iso(self, plan: _Plan) -> None:
        state = plan.state
        if state.iso in self.settings.native_iso:
            return
        natives = [n for n in self.settings.native_iso if n in self._iso_rungs(state)]
        if not natives or state.iso <= 0:
            return
        target = _closest(natives, state.iso)
        if target is not None and target != state.iso:
            plan.move(Axis.ISO, target, f"Optimize to native ISO {target}", 0.1)

    def _decide_iso(
        self, plan: _Plan, error: float, dark: bool, bright: bool
    ) -> bool:
        """Apply the ISO rule. Returns True when ISO moves this cycle."""
        state = plan.state
        rungs = self._iso_rungs(state)
        low_native, high_native = self.settings.native_iso

        if dark:
            above = [rung for rung in rungs if rung > state.iso]
            if not above:
                return False
            if state.iso < high_native:
                target = _closest(above, high_native)
                if target == high_native:
                    reason = f"Dark scene - jump to native ISO {target}"
                else:
                    reason = f"Dark scene - raise ISO to {target}"
                plan.move(Axis.ISO, target, reason, 0.3)
                return True
            if error < -self.settings.very_dark_error:
                target = above[0]
                plan.move(Axis.ISO, target, f"Very dark scene - raise ISO to {target}", 0.2)
                return True
            return False

        if bright:
            below = [rung for rung in rungs if rung < state.iso]
            if not below:
                return False
            if state.iso > low_native:
                target = _closest(below, low_native)
                weight = 0.3 if state.iso >= high_native else 0.2
                if target == low_native:
                    reason = f"Bright scene - drop to native ISO {target}"
                else:
                    reason = f"Bright scene - lower ISO to {target}"
                plan.move(Axis.ISO, target, reason, weight)
                return True
            target = below[0]
            plan.move(Axis.ISO, target, f"Bright scene - lower ISO to minimum {target}", 0.2)
            return True

        return False

    # ------------------------------------------------------------------
    # Iris
    # ------------------------------------------------------------------

    def _iris_options(self, state: CameraState) -> list[tuple[float, str]]:
        """Allowed numeric iris options inside the limits, by f-number."""
        s = self.settings
        low = fnumber(s.iris_min) if s.iris_min is not None else None
        high = fnumber(s.iris_max) if s.iris_max is not None else None
        options = []
        for token in state.allowed_iris:
            f = fnumber(token)
            if f is None:
                continue
            if low is not None and f < low:
                continue
            if high is not None and f > high:
                continue
            options.append((f, token))
        return sorted(options)

    def _decide_iris(
        self, plan: _Plan, metrics: ExposureMetrics, dark: bool, bright: bool
    ) -> None:
        state = plan.state
        current = fnumber(state.iris)
        if current is None:
            return
        options = self._iris_options(state)
        s = self.settings

        if bright and self._iso_exhausted(state, upward=False):
            larger = [opt for opt in options if opt[0] > current]
            if not larger:
                return
            if metrics.mean_brightness >= s.extreme_bright_mean:
                token = larger[-1][1]
                plan.move(Axis.IRIS, token, f"Extreme brightness - close iris to f/{token}", 0.3)
                return
            band_low, band_high = (fnumber(t) for t in s.daylight_iris)
            in_band = [opt for opt in larger if band_low <= opt[0] <= band_high]
            if current < band_low and in_band:
                token = in_band[0][1]
            else:
                token = larger[0][1]
            plan.move(Axis.IRIS, token, f"Bright scene - close iris to f/{token}", 0.2)

        elif dark and self._iso_exhausted(state, upward=True):
            smaller = [opt for opt in options if opt[0] < current]
            if not smaller:
                return
            band_low, band_high = (fnumber(t) for t in s.low_light_iris)
            in_band = [opt for opt in smaller if band_low <= opt[0] <= band_high]
            if (
                metrics.mean_brightness < s.shutter_dim_mean
                and current > band_high
                and in_band
            ):
                token = in_band[-1][1]
                plan.move(Axis.IRIS, token, f"Low light - open iris to f/{token}", 0.3)
                return
            token = smaller[-1][1]
            plan.move(Axis.IRIS, token, f"Dark scene - open iris to f/{token}", 0.2)

    # ------------------------------------------------------------------
    # Shutter
    # ------------------------------------------------------------------

    def _decide_shutter(
        self, plan: _Plan, metrics: ExposureMetrics, dark: bool, bright: bool
    ) -> None:
        state = plan.state
        current = state.shutter_angle
        if not state.shutter_supported or current <= 0:
            return
        allowed = set(state.allowed_shutter)
        s = self.settings
        mean = metrics.mean_brightness

        if bright:
            if mean >= s.shutter_bright_mean and self._iso_exhausted(state, upward=False):
                for angle in s.shutter_bright_angles:
                    if angle in allowed and angle < current:
                        plan.move(Axis.SHUTTER, angle, f"Very bright - shutter angle {angle}", 0.1)
                        return
            default = s.default_shutter_angle
            if current > default and default in allowed:
                plan.move(Axis.SHUTTER, default, f"Restore shutter angle {default}", 0.1)

        elif dark:
            wide = s.shutter_dim_angle
            if (
                mean < s.shutter_dim_mean
                and self._iso_exhausted(state, upward=True)
                and wide in allowed
                and wide > current
            ):
                plan.move(Axis.SHUTTER, wide, f"Very dim - shutter angle {wide}", 0.1)
                return
            default = s.default_shutter_angle
            if current < default and default in allowed:
                plan.move(Axis.SHUTTER, default, f"Restore shutter angle {default}", 0.1)

    # ------------------------------------------------------------------
    # EV
    # ------------------------------------------------------------------

    def _decide_ev(
        self, plan: _Plan, metrics: ExposureMetrics, dark: bool, bright: bool
    ) -> None:
        state = plan.state
        if not state.ev_supported:
            return
        s = self.settings
        lower = max(-s.ev_limit, state.ev_min)
        upper = min(s.ev_limit, state.ev_max)

        if metrics.highlights_clipped > s.highlight_clip_percent and not dark:
            step = (
                s.heavy_ev_step
                if metrics.highlights_clipped > s.heavy_highlight_clip_percent
                else s.ev_step
            )
            target = round(max(state.ev_bias - step, lower), 1)
            if state.ev_bias - target > EV_EPSILON:
                plan.move(
                    Axis.EV,
                    target,
                    f"Highlight clipping {metrics.highlights_clipped:.1f}% - EV {target:+.1f}",
                    0.2,
                )
        elif (
            metrics.shadows_clipped > s.shadow_clip_percent
            and metrics.mean_brightness < s.shadow_mean_limit
            and not bright
        ):
            target = round(min(state.ev_bias + s.ev_step, upper), 1)
            if target - state.ev_bias > EV_EPSILON:
                plan.move(
                    Axis.EV,
                    target,
                    f"Shadow clipping {metrics.shadows_clipped:.1f}% - EV {target:+.1f}",
                    0.2,
                )
