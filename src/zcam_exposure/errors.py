"""Error kinds surfaced by the exposure controller.

Every failure the controller can observe maps to an ``ErrorKind``. Transport
and control errors are recoverable: the controller catches them inside a
cycle and records the kind on the cycle outcome. Only ``ConfigInvalid`` is
fatal, and only at startup.

Hierarchy::

    ExposureControlError
    ├── ConfigInvalid
    ├── TransportError
    │   ├── TransportOpenFailed
    │   ├── NoVideoStream
    │   ├── StreamLost
    │   ├── FrameStarved
    │   └── DecodeError
    └── ControlError
        ├── ControlHttpFailed
        └── ControlRejected
"""

from __future__ import annotations

from enum import Enum

__all__ = [
    "ErrorKind",
    "ExposureControlError",
    "ConfigInvalid",
    "TransportError",
    "TransportOpenFailed",
    "NoVideoStream",
    "StreamLost",
    "FrameStarved",
    "DecodeError",
    "ControlError",
    "ControlHttpFailed",
    "ControlRejected",
]


class ErrorKind(Enum):
    """Classification of a cycle failure, used in log lines and stats."""

    CONFIG_INVALID = "ConfigInvalid"
    TRANSPORT_OPEN_FAILED = "TransportOpenFailed"
    NO_VIDEO_STREAM = "NoVideoStream"
    STREAM_LOST = "StreamLost"
    FRAME_STARVED = "FrameStarved"
    DECODE_ERROR = "DecodeError"
    CONTROL_HTTP_FAILED = "ControlHttpFailed"
    CONTROL_REJECTED = "ControlRejected"
    OUTSIDE_SCHEDULE = "OutsideSchedule"


class ExposureControlError(Exception):
    """Base exception for controller failures.

    Attributes:
        kind: The ErrorKind this exception represents. Subclasses set it
            as a class attribute so callers can branch on ``exc.kind``
            without isinstance ladders.
    """

    kind: ErrorKind = ErrorKind.CONFIG_INVALID


class ConfigInvalid(ExposureControlError):
    """Missing or ill-typed configuration. Fatal at startup."""

    kind = ErrorKind.CONFIG_INVALID


class TransportError(ExposureControlError):
    """Base class for RTSP transport failures.

    Attributes:
        url: RTSP URL the transport was talking to, if known.
    """

    kind = ErrorKind.STREAM_LOST

    def __init__(self, message: str, *, url: str | None = None) -> None:
        """Initialize with a message and the offending stream URL.

        Args:
            message: Human-readable description of the failure.
            url: RTSP URL, included in log output for multi-camera setups.

        Example:
            >>> raise StreamLost("read failed", url="rtsp://10.0.0.5/live_stream")
        """
        self.url = url
        super().__init__(message)


class TransportOpenFailed(TransportError):
    """RTSP handshake failed. Retried next cycle with backoff."""

    kind = ErrorKind.TRANSPORT_OPEN_FAILED


class NoVideoStream(TransportError):
    """Packet sniffing found no H.264 substream and no large substream."""

    kind = ErrorKind.NO_VIDEO_STREAM


class StreamLost(TransportError):
    """Read error or end of stream before a frame was decoded."""

    kind = ErrorKind.STREAM_LOST


class FrameStarved(TransportError):
    """Packet cap reached without a decoded frame."""

    kind = ErrorKind.FRAME_STARVED


class DecodeError(TransportError):
    """The H.264 decoder returned a failure."""

    kind = ErrorKind.DECODE_ERROR


class ControlError(ExposureControlError):
    """Base class for HTTP control failures.

    Attributes:
        key: Control key involved (``iso``, ``iris``, ...).
        status_code: HTTP status, or None when no response was received.
        body: Raw response text, truncated by the client for logging.
    """

    kind = ErrorKind.CONTROL_HTTP_FAILED

    def __init__(
        self,
        message: str,
        *,
        key: str | None = None,
        status_code: int | None = None,
        body: str | None = None,
    ) -> None:
        """Initialize with request details.

        Args:
            message: Human-readable description of the failure.
            key: Control key the request targeted.
            status_code: HTTP status code if a response arrived.
            body: Response body text if one arrived.
        """
        self.key = key
        self.status_code = status_code
        self.body = body
        super().__init__(message)


class ControlHttpFailed(ControlError):
    """Connection error, timeout, non-200 status or unparseable body."""

    kind = ErrorKind.CONTROL_HTTP_FAILED


class ControlRejected(ControlError):
    """HTTP 200 but the camera answered with ``code != 0``."""

    kind = ErrorKind.CONTROL_REJECTED
