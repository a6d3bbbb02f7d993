"""Camera info reporting to the site server.

After a measured cycle the controller can post a short summary to
``https://<server>/api/caminfo``::

    {"camera": "cam-left", "iso": 500, "iris": "11",
     "brightness": 131.2, "contrast": 41.0, "exposure": 88.5}

Reporting is best effort: failures are logged and never affect the
exposure loop.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

import requests

from zcam_exposure.exposure.analyzer import ExposureMetrics
from zcam_exposure.exposure.state import CameraState
from zcam_exposure.observability import get_logger

__all__ = ["TelemetryReporter", "caminfo_payload"]

logger = get_logger(__name__)

CAMINFO_PATH = "/api/caminfo"


@runtime_checkable
class PostSession(Protocol):  # pragma: no cover
    """The part of ``requests.Session`` the reporter uses."""

    def post(self, url: str, **kwargs: Any) -> requests.Response:
        """Issue a POST request."""
        ...


def caminfo_payload(
    camera: str, state: CameraState, metrics: ExposureMetrics
) -> dict[str, Any]:
    """Build the ``/api/caminfo`` body for one cycle."""
    return {
        "camera": camera,
        "iso": state.iso,
        "iris": state.iris,
        "brightness": round(metrics.mean_brightness, 1),
        "contrast": round(metrics.contrast, 1),
        "exposure": round(metrics.exposure_score, 1),
    }


class TelemetryReporter:
    """Posts per-cycle camera info to the site server."""

    def __init__(
        self,
        server: str,
        camera: str,
        session: PostSession | None = None,
        timeout: tuple[float, float] = (3.0, 5.0),
    ) -> None:
        """Create a reporter.

        Args:
            server: Server host, or a full base URL including scheme.
            camera: Camera identifier sent with every report.
            session: HTTP session. Defaults to a new ``requests.Session``.
            timeout: (connect, read) timeout in seconds.
        """
        base = server if server.startswith(("http://", "https://")) else f"https://{server}"
        self.url = base.rstrip("/") + CAMINFO_PATH
        self.camera = camera
        self._session: PostSession = session if session is not None else requests.Session()
        self._timeout = timeout

    def report(self, state: CameraState, metrics: ExposureMetrics) -> bool:
        """Post one report. Returns True when the server answered 2xx."""
        payload = caminfo_payload(self.camera, state, metrics)
        try:
            response = self._session.post(self.url, json=payload, timeout=self._timeout)
        except requests.RequestException as e:
            logger.debug("Telemetry post failed", url=self.url, error=str(e))
            return False
        if not 200 <= response.status_code < 300:
            logger.debug(
                "Telemetry rejected", url=self.url, status=response.status_code
            )
            return False
        return True
