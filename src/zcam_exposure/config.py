"""Site configuration.

A site is described by one JSON file, ``<config-dir>/<site>.json``::

    {
        "ipaddr": ["192.168.150.201", "192.168.150.202"],
        "camera": ["cam-left", "cam-right"],
        "files": "/data/surf/",
        "server": "surf.example.com",
        "service": "zcam",
        "target_brightness": 128,
        "start_hour": 6,
        "end_hour": 22,
        "iris_max": "16"
    }

``ipaddr``, ``camera``, ``files``, ``server`` and ``service`` are required;
everything else has a default. Any missing or ill-typed value raises
``ConfigInvalid``, which is the only error that stops the process.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from zcam_exposure.errors import ConfigInvalid
from zcam_exposure.exposure.analyzer import Roi
from zcam_exposure.exposure.focus import FocusCalibration
from zcam_exposure.exposure.policy import PolicySettings

__all__ = [
    "CameraConfig",
    "ControllerSettings",
    "DEFAULT_CONFIG_DIR",
    "SiteConfig",
    "load_config",
    "parse_config",
]

DEFAULT_CONFIG_DIR = Path("config")

_MISSING = object()


@dataclass(frozen=True)
class ControllerSettings:
    """Per-camera loop settings shared by every camera of a site.

    Attributes:
        target_brightness: Target mean luma.
        brightness_tolerance: Half-width of the tolerance band.
        interval_seconds: Cycle period.
        start_hour: First operating hour (inclusive, local time).
        end_hour: End of the operating window (exclusive).
        confidence_threshold: Decisions below this are not applied.
        settle_seconds: Wait after a successful apply.
        sleep_seconds: Wait between schedule checks outside hours.
        max_backoff_seconds: Cap for the retry delay after open failures.
        focus: Compute focus metrics every cycle.
        roi: Region of the frame to measure, None for the full frame.
        focus_calibration: Focus normalization constants.
        snapshot: Write a JPEG of each analysed frame.
        report_telemetry: Post camera info to the site server.
        policy: Exposure policy thresholds.
    """

    target_brightness: float = 128.0
    brightness_tolerance: float = 15.0
    interval_seconds: float = 15.0
    start_hour: int = 6
    end_hour: int = 22
    confidence_threshold: float = 0.6
    settle_seconds: float = 3.0
    sleep_seconds: float = 1800.0
    max_backoff_seconds: float = 300.0
    focus: bool = False
    roi: Roi | None = None
    focus_calibration: FocusCalibration = field(default_factory=FocusCalibration)
    snapshot: bool = False
    report_telemetry: bool = False
    policy: PolicySettings = field(default_factory=PolicySettings)

    def in_hours(self, hour: int) -> bool:
        """True when ``hour`` falls in ``[start_hour, end_hour)``."""
        return self.start_hour <= hour < self.end_hour


@dataclass(frozen=True)
class CameraConfig:
    """One camera of a site."""

    index: int
    name: str
    ip: str


@dataclass(frozen=True)
class SiteConfig:
    """Parsed site configuration.

    Attributes:
        site: Site name (the config file stem).
        cameras: Cameras in configuration order.
        files: Base directory for logs and snapshots.
        server: Site server for telemetry.
        service: Name of the site's job service.
        controller: Loop settings applied to every camera.
    """

    site: str
    cameras: tuple[CameraConfig, ...]
    files: Path
    server: str
    service: str
    controller: ControllerSettings = field(default_factory=ControllerSettings)

    def camera(self, index: int) -> CameraConfig:
        """Return the camera at ``index``.

        Raises:
            ConfigInvalid: If no camera has that index.
        """
        if not 0 <= index < len(self.cameras):
            raise ConfigInvalid(
                f"camera index {index} out of range, site {self.site!r} "
                f"has {len(self.cameras)} camera(s)"
            )
        return self.cameras[index]

    def log_file(self, index: int) -> Path:
        """Default log file of a camera: ``<files>/logs/zcam<index>.log``."""
        return self.files / "logs" / f"zcam{index}.log"

    @property
    def snapshot_dir(self) -> Path:
        return self.files / "snapshots"


# =============================================================================
# Field readers
# =============================================================================


def _require(raw: Mapping[str, Any], key: str) -> Any:
    value = raw.get(key, _MISSING)
    if value is _MISSING or value is None:
        raise ConfigInvalid(f"missing required key {key!r}")
    return value


def _string(raw: Mapping[str, Any], key: str) -> str:
    value = _require(raw, key)
    if not isinstance(value, str) or not value:
        raise ConfigInvalid(f"{key!r} must be a non-empty string")
    return value


def _string_list(raw: Mapping[str, Any], key: str) -> list[str]:
    value = _require(raw, key)
    if (
        not isinstance(value, list)
        or not value
        or not all(isinstance(item, str) and item for item in value)
    ):
        raise ConfigInvalid(f"{key!r} must be a non-empty list of strings")
    return value


def _is_number(value: Any) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool)


def _number(
    raw: Mapping[str, Any],
    key: str,
    default: float,
    minimum: float | None = None,
    maximum: float | None = None,
) -> float:
    value = raw.get(key, default)
    if not _is_number(value):
        raise ConfigInvalid(f"{key!r} must be a number, got {value!r}")
    if minimum is not None and value < minimum:
        raise ConfigInvalid(f"{key!r} must be >= {minimum}, got {value}")
    if maximum is not None and value > maximum:
        raise ConfigInvalid(f"{key!r} must be <= {maximum}, got {value}")
    return float(value)


def _integer(
    raw: Mapping[str, Any],
    key: str,
    default: int | None,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int | None:
    value = raw.get(key, default)
    if value is None:
        return None
    if not isinstance(value, int) or isinstance(value, bool):
        raise ConfigInvalid(f"{key!r} must be an integer, got {value!r}")
    if minimum is not None and value < minimum:
        raise ConfigInvalid(f"{key!r} must be >= {minimum}, got {value}")
    if maximum is not None and value > maximum:
        raise ConfigInvalid(f"{key!r} must be <= {maximum}, got {value}")
    return value


def _hour(raw: Mapping[str, Any], key: str, default: int) -> int:
    value = _integer(raw, key, default, minimum=0, maximum=24)
    return default if value is None else value


def _flag(raw: Mapping[str, Any], key: str) -> bool:
    value = raw.get(key, False)
    if not isinstance(value, bool):
        raise ConfigInvalid(f"{key!r} must be true or false, got {value!r}")
    return value


def _iris_token(raw: Mapping[str, Any], key: str) -> str | None:
    """Read an iris limit given as ``"16"`` or ``16``."""
    value = raw.get(key)
    if value is None:
        return None
    if _is_number(value):
        return f"{value:g}"
    if isinstance(value, str) and value:
        return value
    raise ConfigInvalid(f"{key!r} must be an f-number, got {value!r}")


def _roi(raw: Mapping[str, Any]) -> Roi | None:
    value = raw.get("roi")
    if value is None:
        return None
    if (
        not isinstance(value, list)
        or len(value) != 4
        or not all(isinstance(v, int) and not isinstance(v, bool) for v in value)
    ):
        raise ConfigInvalid(f"'roi' must be [x, y, width, height], got {value!r}")
    x, y, width, height = value
    if x < 0 or y < 0 or width <= 0 or height <= 0:
        raise ConfigInvalid(f"'roi' must have a positive size inside the frame, got {value!r}")
    return Roi(x, y, width, height)


def _focus_calibration(raw: Mapping[str, Any]) -> FocusCalibration:
    value = raw.get("focus_calibration")
    if value is None:
        return FocusCalibration()
    if not isinstance(value, dict):
        raise ConfigInvalid("'focus_calibration' must be an object")
    defaults = FocusCalibration()
    try:
        return FocusCalibration(
            laplacian=_number(value, "laplacian", defaults.laplacian),
            sobel=_number(value, "sobel", defaults.sobel),
            high_frequency=_number(value, "high_frequency", defaults.high_frequency),
        )
    except ValueError as e:
        raise ConfigInvalid(str(e)) from e


def _policy(raw: Mapping[str, Any]) -> PolicySettings:
    defaults = PolicySettings()
    try:
        return PolicySettings(
            iso_min=_integer(raw, "iso_min", defaults.iso_min, minimum=1)
            or defaults.iso_min,
            iso_max=_integer(raw, "iso_max", None, minimum=1),
            iris_min=_iris_token(raw, "iris_min"),
            iris_max=_iris_token(raw, "iris_max"),
        )
    except ValueError as e:
        raise ConfigInvalid(f"invalid policy settings: {e}") from e


# =============================================================================
# Loading
# =============================================================================


def parse_config(raw: Any, site: str = "") -> SiteConfig:
    """Validate a decoded JSON object and build a ``SiteConfig``.

    Args:
        raw: Decoded JSON document.
        site: Site name, for messages and ``SiteConfig.site``.

    Returns:
        SiteConfig with defaults applied.

    Raises:
        ConfigInvalid: If a required key is missing or any value is
            ill-typed or out of range.

    Example:
        >>> config = parse_config({"ipaddr": ["10.0.0.5"], "camera": ["left"],
        ...                        "files": "/tmp/surf", "server": "s",
        ...                        "service": "zcam"})
        >>> config.controller.interval_seconds
        15.0
    """
    if not isinstance(raw, dict):
        raise ConfigInvalid("configuration must be a JSON object")

    ips = _string_list(raw, "ipaddr")
    names = _string_list(raw, "camera")
    if len(ips) != len(names):
        raise ConfigInvalid(
            f"'ipaddr' has {len(ips)} entries but 'camera' has {len(names)}"
        )

    start_hour = _hour(raw, "start_hour", 6)
    end_hour = _hour(raw, "end_hour", 22)
    if start_hour >= end_hour:
        raise ConfigInvalid(
            f"'start_hour' ({start_hour}) must be before 'end_hour' ({end_hour})"
        )

    controller = ControllerSettings(
        target_brightness=_number(raw, "target_brightness", 128.0, 0.0, 255.0),
        brightness_tolerance=_number(raw, "brightness_tolerance", 15.0, 0.0, 127.0),
        interval_seconds=_number(raw, "interval_seconds", 15.0, minimum=0.1),
        start_hour=start_hour,
        end_hour=end_hour,
        confidence_threshold=_number(raw, "confidence_threshold", 0.6, 0.0, 1.0),
        settle_seconds=_number(raw, "settle_seconds", 3.0, minimum=0.0),
        sleep_seconds=_number(raw, "sleep_seconds", 1800.0, minimum=1.0),
        max_backoff_seconds=_number(raw, "max_backoff_seconds", 300.0, minimum=0.1),
        focus=_flag(raw, "focus"),
        roi=_roi(raw),
        focus_calibration=_focus_calibration(raw),
        snapshot=_flag(raw, "snapshot"),
        report_telemetry=_flag(raw, "report_telemetry"),
        policy=_policy(raw),
    )

    return SiteConfig(
        site=site,
        cameras=tuple(
            CameraConfig(index=i, name=name, ip=ip)
            for i, (ip, name) in enumerate(zip(ips, names, strict=True))
        ),
        files=Path(_string(raw, "files")),
        server=_string(raw, "server"),
        service=_string(raw, "service"),
        controller=controller,
    )


def load_config(site: str, config_dir: Path | str = DEFAULT_CONFIG_DIR) -> SiteConfig:
    """Load ``<config_dir>/<site>.json``.

    Raises:
        ConfigInvalid: If the file is missing, unreadable, not JSON or
            fails validation.
    """
    path = Path(config_dir) / f"{site}.json"
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigInvalid(f"cannot read config {path}: {e}") from e
    try:
        raw = json.loads(text)
    except json.JSONDecodeError as e:
        raise ConfigInvalid(f"config {path} is not valid JSON: {e}") from e
    return parse_config(raw, site=site)
