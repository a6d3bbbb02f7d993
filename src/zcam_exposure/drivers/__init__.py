"""Camera drivers.

Two independent channels talk to each camera:

- RTSP transport: live preview frames (``RtspTransport``)
- HTTP control: reading and writing exposure settings
  (``CameraControlClient``)

Both take their I/O seams as constructor arguments (container opener,
decoder factory, HTTP session) so tests run without a camera.
"""

from zcam_exposure.drivers.control import CameraControlClient, ControlValue, HttpSession
from zcam_exposure.drivers.transport import (
    BilinearRgbConverter,
    Frame,
    RtspTransport,
    TransportOptions,
    rtsp_url,
)

__all__ = [
    # Control
    "CameraControlClient",
    "ControlValue",
    "HttpSession",
    # Transport
    "BilinearRgbConverter",
    "Frame",
    "RtspTransport",
    "TransportOptions",
    "rtsp_url",
]
