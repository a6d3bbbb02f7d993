"""Test helpers and in-memory fakes for zcam-exposure.

Nothing here touches a camera or the network. The HTTP control API, the
RTSP container, the H.264 decoder and the clock are replaced by small fakes
injected through the package's Protocol seams.

Example:
    from tests.helpers import FakeCameraSession, make_state

    client = CameraControlClient("10.0.0.5", session=FakeCameraSession())
"""

from __future__ import annotations

import json
import threading
from collections.abc import Iterable, Iterator
from datetime import datetime
from typing import Any, Protocol

import numpy as np

from zcam_exposure.drivers.transport import Frame
from zcam_exposure.errors import TransportError
from zcam_exposure.exposure.state import CameraState


def assert_implements_protocol(instance: object, protocol: type[Protocol]) -> None:
    """Assert that ``instance`` satisfies a ``@runtime_checkable`` Protocol.

    Lists the missing public members in the failure message.

    Example:
        >>> assert_implements_protocol(SystemClock(), Clock)
    """
    if isinstance(instance, protocol):
        return
    expected = {
        name
        for name in set(dir(protocol)) - set(dir(object))
        if not name.startswith("_")
    }
    missing = sorted(name for name in expected if not hasattr(instance, name))
    raise AssertionError(
        f"{type(instance).__name__} does not implement {protocol.__name__}. "
        f"Missing: {', '.join(missing) or 'unknown'}"
    )


# =============================================================================
# Camera option lists as reported by the device
# =============================================================================

ISO_OPTIONS = (
    "400", "500", "640", "800", "1000", "1250", "1600",
    "2000", "2500", "3200", "4000", "5000", "6400",
)  # fmt: skip

IRIS_OPTIONS = (
    "2.8", "3.2", "3.5", "4", "4.5", "5", "5.6", "6.3", "7.1",
    "8", "9", "10", "11", "13", "14", "16", "18", "20", "22",
)  # fmt: skip

SHUTTER_OPTIONS = ("Auto", "45", "90", "120", "180", "270", "360")


def make_state(**overrides: Any) -> CameraState:
    """CameraState with the device's full option lists."""
    fields: dict[str, Any] = {
        "iso": 500,
        "iris": "8",
        "shutter_angle": 180,
        "ev_bias": 0.0,
        "allowed_iso": tuple(int(v) for v in ISO_OPTIONS),
        "allowed_iris": IRIS_OPTIONS,
        "allowed_shutter": (45, 90, 120, 180, 270, 360),
    }
    fields.update(overrides)
    return CameraState(**fields)


def two_tone_frame(
    low: int, high: int, height: int = 40, width: int = 60, high_share: float = 0.5
) -> Frame:
    """Gray frame whose top rows are ``low`` and remaining rows ``high``."""
    pixels = np.full((height, width, 3), high, dtype=np.uint8)
    pixels[: int(round(height * (1 - high_share)))] = low
    return Frame(pixels=pixels, width=width, height=height)


# =============================================================================
# Clock
# =============================================================================


class FakeClock:
    """Clock with a fixed wall time and recorded waits.

    Args:
        now: Wall-clock time returned by ``now()``.
        stop_after: Set the stop event once this many waits happened.
    """

    def __init__(self, now: datetime | None = None, stop_after: int | None = None):
        self.current = now or datetime(2026, 6, 1, 12, 0, 0)
        self.stop_after = stop_after
        self.waits: list[float] = []
        self._ticks = 0.0

    def now(self) -> datetime:
        return self.current

    def monotonic(self) -> float:
        self._ticks += 0.25
        return self._ticks

    def wait(self, seconds: float, stop_event: threading.Event) -> bool:
        self.waits.append(seconds)
        if self.stop_after is not None and len(self.waits) >= self.stop_after:
            stop_event.set()
        return stop_event.is_set()


# =============================================================================
# HTTP
# =============================================================================


class FakeResponse:
    """Minimal stand-in for ``requests.Response``."""

    def __init__(self, status_code: int = 200, payload: Any = None, text: str | None = None):
        self.status_code = status_code
        if text is None:
            text = json.dumps(payload) if payload is not None else ""
        self.text = text

    def json(self) -> Any:
        return json.loads(self.text)


class FakeCameraSession:
    """In-memory emulation of the camera's ``/ctrl`` endpoints.

    Values live in ``self.values`` as ``{key: {"value": ..., "opts": ...}}``.
    Keys listed in ``reject_set`` answer writes with ``code=-1``; keys in
    ``fail_get`` answer reads with HTTP 500. Every request is recorded in
    ``self.calls`` as ``(endpoint, params)``.
    """

    def __init__(self, values: dict[str, dict[str, Any]] | None = None):
        self.values = values if values is not None else default_camera_values()
        self.reject_set: set[str] = set()
        self.fail_get: set[str] = set()
        self.raise_error: Exception | None = None
        self.calls: list[tuple[str, dict[str, str]]] = []
        self.timeouts: list[Any] = []

    def get(self, url: str, params: dict[str, str] | None = None, timeout: Any = None):
        endpoint = url.rsplit("/", 1)[-1]
        params = dict(params or {})
        self.calls.append((endpoint, params))
        self.timeouts.append(timeout)
        if self.raise_error is not None:
            raise self.raise_error

        if endpoint == "get":
            key = params["k"]
            if key in self.fail_get or key not in self.values:
                return FakeResponse(500, text="internal error")
            return FakeResponse(payload={"code": 0, "desc": "", **self.values[key]})

        (key, value), = params.items()
        if key in self.reject_set:
            return FakeResponse(payload={"code": -1, "desc": "not allowed"})
        self.values.setdefault(key, {})["value"] = value
        return FakeResponse(payload={"code": 0, "desc": ""})

    def sets(self) -> list[tuple[str, str]]:
        """Writes in order, as (key, value)."""
        return [
            next(iter(params.items())) for endpoint, params in self.calls if endpoint == "set"
        ]


def default_camera_values() -> dict[str, dict[str, Any]]:
    return {
        "iso": {"value": "500", "opts": list(ISO_OPTIONS)},
        "iris": {"value": "8", "opts": list(IRIS_OPTIONS)},
        "shutter_angle": {"value": "180", "opts": list(SHUTTER_OPTIONS)},
        "ev": {"value": "0", "min": -96, "max": 96},
        "rec": {"value": "off", "opts": ["on", "off"]},
    }


# =============================================================================
# RTSP / decoder
# =============================================================================

NAL_PAYLOAD = b"\x00\x00\x00\x01\x67" + b"\x42" * 1995


class FakePacket:
    """Demuxed packet with ``stream_index``, ``size`` and bytes."""

    def __init__(self, stream_index: int, data: bytes):
        self.stream_index = stream_index
        self._data = data

    @property
    def size(self) -> int:
        return len(self._data)

    def __bytes__(self) -> bytes:
        return self._data

    def __repr__(self) -> str:
        return f"FakePacket(stream={self.stream_index}, size={self.size})"


def video_packet(stream_index: int = 0, size: int = 2000) -> FakePacket:
    return FakePacket(stream_index, (NAL_PAYLOAD * (size // len(NAL_PAYLOAD) + 1))[:size])


class FakeContainer:
    """Input container yielding scripted packets.

    Items that are exceptions are raised from the demux iterator.
    """

    def __init__(self, packets: Iterable[Any]):
        self._packets = packets
        self.close_calls = 0

    def demux(self, *args: Any, **kwargs: Any) -> Iterator[Any]:
        for item in self._packets:
            if isinstance(item, BaseException):
                raise item
            yield item

    def close(self) -> None:
        self.close_calls += 1


class FakeDecoder:
    """Decoder that yields a frame after ``frames_after`` video packets.

    Args:
        frames_after: Packets consumed before the first frame, None for never.
        error: Raised for every decode call when set.
    """

    def __init__(self, frames_after: int | None = 1, error: Exception | None = None):
        self.frames_after = frames_after
        self.error = error
        self.packets: list[Any] = []

    def decode(self, packet: Any = None) -> list[Any]:
        self.packets.append(packet)
        if self.error is not None:
            raise self.error
        if self.frames_after is not None and len(self.packets) >= self.frames_after:
            return [object()]
        return []


def rgb_converter(height: int = 36, width: int = 64):
    """Converter returning a mid-gray RGB array of the given size."""

    def convert(_frame: Any) -> np.ndarray:
        return np.full((height, width, 3), 128, dtype=np.uint8)

    return convert


class FakeTransport:
    """Transport scripted with frames or transport errors.

    Each ``acquire_frame`` pops the next script item; an exception item is
    raised. When the script runs out the last item repeats.
    """

    def __init__(
        self,
        script: list[Frame | TransportError],
        open_error: TransportError | None = None,
    ):
        self.script = list(script)
        self.open_error = open_error
        self.open_calls = 0
        self.close_calls = 0
        self.acquire_calls = 0
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    def open(self) -> None:
        self.open_calls += 1
        if self.open_error is not None:
            raise self.open_error
        self._open = True

    def acquire_frame(self) -> Frame:
        self.acquire_calls += 1
        item = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(item, Exception):
            raise item
        return item

    def close(self) -> None:
        self.close_calls += 1
        self._open = False


