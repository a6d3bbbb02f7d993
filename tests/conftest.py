"""Pytest configuration and fixtures for zcam-exposure tests.

Fakes live in ``tests.helpers``; this module only wires them into fixtures
and keeps the package's logging configuration from leaking between tests.
"""

import pytest
import requests

from tests.helpers import FakeCameraSession, FakeClock
from zcam_exposure.observability import reset_logging


@pytest.fixture(autouse=True)
def _clean_logging():
    """Remove handlers a test installed so file handles never leak.

    ``configure_logging(force=True)`` in a test attaches handlers to the
    ``zcam_exposure`` logger that would otherwise outlive the test and keep
    log files in ``tmp_path`` open.
    """
    yield
    reset_logging()


@pytest.fixture
def fake_clock() -> FakeClock:
    """Clock fixed at noon on a summer day, inside the default schedule."""
    return FakeClock()


@pytest.fixture
def camera_session() -> FakeCameraSession:
    """Camera HTTP API at ISO 500, f/8, 180 degrees, EV 0."""
    return FakeCameraSession()


@pytest.fixture
def connection_error() -> requests.ConnectionError:
    return requests.ConnectionError("connection refused")
