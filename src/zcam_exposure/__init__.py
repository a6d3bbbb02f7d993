"""zcam-exposure: closed-loop auto exposure for networked cinema cameras.

Samples the camera's RTSP live preview, measures the scene and drives
ISO, iris, shutter angle and EV bias through the camera's HTTP control API.
"""

__version__ = "0.1.0"
