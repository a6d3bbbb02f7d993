"""HTTP control client for the camera's ``/ctrl`` API.

Every request is independent and time-bounded (3 s connect, 5 s read by
default). Responses are JSON envelopes::

    {"code": 0, "desc": "", "value": "2500", "opts": ["400", "500", ...],
     "min": -96, "max": 96}

A request succeeds when the status is 200 and either ``code == 0`` or, for
bodies that are not a JSON envelope, the body is an ``ok`` token.

Unit quirks kept at this boundary so the rest of the package never sees
them:

- ``iso``: decimal integer sent as a string
- ``ev``: integer tenths of a stop on the wire, float stops in Python
- ``iris``: literal token matched against the option list
- ``shutter_angle``: integer degrees, ``"Auto"`` reads as 0

Example:
    client = CameraControlClient("192.168.150.201")
    state = client.read_state(target_brightness=128, brightness_tolerance=15)
    client.set_iso(2500)
"""

from __future__ import annotations

import dataclasses
import re
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

import requests

from zcam_exposure.errors import ControlHttpFailed, ControlRejected
from zcam_exposure.exposure.state import Axis, CameraState
from zcam_exposure.observability import get_logger

__all__ = ["CameraControlClient", "ControlValue", "HttpSession"]

logger = get_logger(__name__)

DEFAULT_CONNECT_TIMEOUT = 3.0
DEFAULT_READ_TIMEOUT = 5.0

#: Response bodies are truncated to this many characters in errors and logs.
MAX_BODY_LOG = 200

AUTO_SHUTTER = "Auto"

_OK_TOKEN = re.compile(r"^\s*\"?ok\"?\s*$", re.IGNORECASE)


@runtime_checkable
class HttpSession(Protocol):  # pragma: no cover
    """The part of ``requests.Session`` the control client uses."""

    def get(self, url: str, **kwargs: Any) -> requests.Response:
        """Issue a GET request."""
        ...


@dataclass(frozen=True, slots=True)
class ControlValue:
    """Value of one control key plus its reported options and range.

    Attributes:
        value: Current value as text.
        options: Allowed values as text, empty when not enumerated.
        min: Lower bound for ranged keys.
        max: Upper bound for ranged keys.
    """

    value: str
    options: tuple[str, ...] = ()
    min: int | None = None
    max: int | None = None


def _int_or_none(raw: Any) -> int | None:
    if raw is None:
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


def _int_options(options: tuple[str, ...]) -> tuple[int, ...]:
    """Numeric entries of an option list, skipping tokens like ``"Auto"``."""
    values = []
    for option in options:
        try:
            values.append(int(float(option)))
        except (ValueError, OverflowError):
            continue
    return tuple(values)


class CameraControlClient:
    """Typed wrapper over one camera's HTTP control endpoints.

    Raises ``ControlHttpFailed`` for transport errors, non-200 responses
    and unparseable bodies, and ``ControlRejected`` when the camera answers
    with a non-zero code. Never retries on its own.
    """

    def __init__(
        self,
        ip: str,
        session: HttpSession | None = None,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        timeout: float = DEFAULT_READ_TIMEOUT,
    ) -> None:
        """Create a client for the camera at ``ip``.

        Args:
            ip: Camera address, host or host:port.
            session: HTTP session. Defaults to a new ``requests.Session``.
            connect_timeout: Connect timeout in seconds.
            timeout: Read timeout in seconds.
        """
        self.ip = ip
        self.base_url = f"http://{ip}/ctrl"
        self._session: HttpSession = session if session is not None else requests.Session()
        self._timeout = (connect_timeout, timeout)

    # ------------------------------------------------------------------
    # Raw requests
    # ------------------------------------------------------------------

    def _request(self, endpoint: str, params: dict[str, str], key: str) -> requests.Response:
        url = f"{self.base_url}/{endpoint}"
        try:
            response = self._session.get(url, params=params, timeout=self._timeout)
        except requests.RequestException as e:
            raise ControlHttpFailed(
                f"{endpoint} {key} failed: {e}", key=key
            ) from e

        if response.status_code != 200:
            raise ControlHttpFailed(
                f"{endpoint} {key} returned HTTP {response.status_code}",
                key=key,
                status_code=response.status_code,
                body=response.text[:MAX_BODY_LOG],
            )
        return response

    @staticmethod
    def _envelope(response: requests.Response) -> dict[str, Any] | None:
        """Parse the JSON envelope, None when the body is not one."""
        try:
            payload = response.json()
        except ValueError:
            return None
        if isinstance(payload, dict) and "code" in payload:
            return payload
        return None

    def get(self, key: str) -> ControlValue:
        """Read a control key with ``GET /ctrl/get?k=<key>``.

        Raises:
            ControlHttpFailed: On transport error, non-200 or a body that
                is not a JSON envelope.
            ControlRejected: When the envelope's code is non-zero.

        Example:
            >>> client.get("iso")
            ControlValue(value='500', options=('400', '500', ...), min=None, max=None)
        """
        response = self._request("get", {"k": key}, key)
        payload = self._envelope(response)
        body = response.text[:MAX_BODY_LOG]
        if payload is None:
            raise ControlHttpFailed(
                f"get {key} returned an unparseable body",
                key=key,
                status_code=response.status_code,
                body=body,
            )
        if payload.get("code") != 0:
            raise ControlRejected(
                f"get {key} rejected: {payload.get('desc', '')}",
                key=key,
                status_code=response.status_code,
                body=body,
            )

        raw_value = payload.get("value")
        options = payload.get("opts") or ()
        value = ControlValue(
            value="" if raw_value is None else str(raw_value),
            options=tuple(str(option) for option in options),
            min=_int_or_none(payload.get("min")),
            max=_int_or_none(payload.get("max")),
        )
        logger.debug("Control read", key=key, value=value.value)
        return value

    def set(self, key: str, value: str) -> None:
        """Write a control key with ``GET /ctrl/set?<key>=<value>``.

        Raises:
            ControlHttpFailed: On transport error, non-200 or an
                unrecognised body.
            ControlRejected: When the envelope's code is non-zero.
        """
        response = self._request("set", {key: value}, key)
        payload = self._envelope(response)
        body = response.text[:MAX_BODY_LOG]

        if payload is not None:
            if payload.get("code") != 0:
                raise ControlRejected(
                    f"set {key}={value} rejected: {payload.get('desc', '')}",
                    key=key,
                    status_code=response.status_code,
                    body=body,
                )
        elif not _OK_TOKEN.match(response.text):
            raise ControlHttpFailed(
                f"set {key}={value} returned an unrecognised body",
                key=key,
                status_code=response.status_code,
                body=body,
            )
        logger.debug("Control write", key=key, value=value)

    def recording_status(self) -> bool:
        """True when the camera reports it is recording (``rec`` is ``on``)."""
        return self.get("rec").value.strip().lower() == "on"

    # ------------------------------------------------------------------
    # Typed helpers
    # ------------------------------------------------------------------

    def _parse_int(self, key: str, raw: str) -> int:
        try:
            return int(float(raw))
        except (ValueError, OverflowError) as e:
            raise ControlHttpFailed(
                f"{key} value {raw!r} is not numeric", key=key, body=raw
            ) from e

    def get_iso(self) -> int:
        return self._parse_int("iso", self.get("iso").value)

    def set_iso(self, iso: int) -> None:
        self.set("iso", str(int(iso)))

    def get_ev(self) -> float:
        """Read EV bias in stops (the camera reports tenths)."""
        return self._parse_int("ev", self.get("ev").value) / 10.0

    def set_ev(self, stops: float) -> None:
        """Write EV bias in stops (sent as integer tenths)."""
        self.set("ev", str(round(stops * 10)))

    def get_iris(self) -> str:
        return self.get("iris").value

    def set_iris(self, token: str) -> None:
        self.set("iris", token)

    def _parse_shutter(self, raw: str) -> int:
        if raw.strip().lower() == AUTO_SHUTTER.lower():
            return 0
        return self._parse_int("shutter_angle", raw)

    def get_shutter_angle(self) -> int:
        """Read the shutter angle in degrees, 0 for Auto."""
        return self._parse_shutter(self.get("shutter_angle").value)

    def set_shutter_angle(self, angle: int) -> None:
        self.set("shutter_angle", AUTO_SHUTTER if angle == 0 else str(int(angle)))

    def apply(self, axis: Axis, value: Any) -> None:
        """Write one axis value using its typed setter."""
        if axis is Axis.ISO:
            self.set_iso(value)
        elif axis is Axis.IRIS:
            self.set_iris(value)
        elif axis is Axis.SHUTTER:
            self.set_shutter_angle(value)
        else:
            self.set_ev(value)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def read_state(
        self,
        target_brightness: float = 128.0,
        brightness_tolerance: float = 15.0,
    ) -> CameraState:
        """Read ISO, iris, shutter angle and EV into a ``CameraState``.

        ISO and iris are required. A shutter angle or EV read that fails
        marks that axis unsupported instead of failing the whole read.

        Raises:
            ControlHttpFailed: If ISO or iris cannot be read.
            ControlRejected: If the camera rejects the ISO or iris read.
        """
        iso = self.get("iso")
        iris = self.get("iris")

        shutter_supported = True
        shutter_angle = 0
        allowed_shutter: tuple[int, ...] = ()
        try:
            shutter = self.get("shutter_angle")
            shutter_angle = self._parse_shutter(shutter.value)
            allowed_shutter = _int_options(shutter.options)
        except (ControlHttpFailed, ControlRejected) as e:
            shutter_supported = False
            logger.debug("Shutter angle unavailable", ip=self.ip, error=str(e))

        ev_supported = True
        ev_bias = 0.0
        ev_min, ev_max = -9.6, 9.6
        try:
            ev = self.get("ev")
            ev_bias = self._parse_int("ev", ev.value) / 10.0
            if ev.min is not None:
                ev_min = ev.min / 10.0
            if ev.max is not None:
                ev_max = ev.max / 10.0
        except (ControlHttpFailed, ControlRejected) as e:
            ev_supported = False
            logger.debug("EV bias unavailable", ip=self.ip, error=str(e))

        return CameraState(
            iso=self._parse_int("iso", iso.value),
            iris=iris.value,
            shutter_angle=shutter_angle,
            ev_bias=ev_bias,
            allowed_iso=_int_options(iso.options),
            allowed_iris=iris.options,
            allowed_shutter=allowed_shutter,
            ev_min=ev_min,
            ev_max=ev_max,
            shutter_supported=shutter_supported,
            ev_supported=ev_supported,
            target_brightness=target_brightness,
            brightness_tolerance=brightness_tolerance,
        )

    def read_axis(self, state: CameraState, axis: Axis) -> CameraState:
        """Re-read one axis from the camera and return the refreshed state.

        Option lists are refreshed too when the camera reports them.

        Raises:
            ControlHttpFailed: If the key cannot be read.
            ControlRejected: If the camera rejects the read.
        """
        current = self.get(axis.value)
        if axis is Axis.ISO:
            return dataclasses.replace(
                state,
                iso=self._parse_int("iso", current.value),
                allowed_iso=_int_options(current.options) or state.allowed_iso,
            )
        if axis is Axis.IRIS:
            return dataclasses.replace(
                state,
                iris=current.value,
                allowed_iris=current.options or state.allowed_iris,
            )
        if axis is Axis.SHUTTER:
            return dataclasses.replace(
                state,
                shutter_angle=self._parse_shutter(current.value),
                allowed_shutter=_int_options(current.options) or state.allowed_shutter,
            )
        return state.with_value(Axis.EV, self._parse_int("ev", current.value) / 10.0)
