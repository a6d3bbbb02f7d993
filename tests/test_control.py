"""Tests for the camera HTTP control client."""

from dataclasses import replace

import pytest
import requests

from tests.helpers import FakeCameraSession, FakeResponse, assert_implements_protocol
from zcam_exposure.drivers.control import CameraControlClient, ControlValue, HttpSession
from zcam_exposure.errors import ControlHttpFailed, ControlRejected, ErrorKind
from zcam_exposure.exposure.state import Axis


class ScriptedSession:
    """Session returning one fixed response (or raising) for every GET."""

    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.requests = []

    def get(self, url, **kwargs):
        self.requests.append((url, kwargs))
        if self.error is not None:
            raise self.error
        return self.response


@pytest.fixture
def client(camera_session) -> CameraControlClient:
    return CameraControlClient("10.0.0.5", session=camera_session)


# =============================================================================
# Raw get / set
# =============================================================================


class TestGet:
    """Tests for CameraControlClient.get."""

    def test_reads_value_and_options(self, client):
        value = client.get("iso")
        assert value.value == "500"
        assert "2500" in value.options
        assert value.min is None

    def test_reads_range(self, client):
        assert client.get("ev") == ControlValue(value="0", options=(), min=-96, max=96)

    def test_request_shape(self):
        """Verifies URL, query and timeouts of a read.

        Arrangement:
        1. Session returning a valid envelope.
        2. Client with default 3 s connect / 5 s read timeouts.

        Assertion Strategy:
        - URL is http://<ip>/ctrl/get.
        - Query is k=<key>.
        - timeout=(3.0, 5.0) is passed on every request.
        """
        session = ScriptedSession(FakeResponse(payload={"code": 0, "value": "11"}))
        CameraControlClient("10.0.0.5", session=session).get("iris")

        url, kwargs = session.requests[0]
        assert url == "http://10.0.0.5/ctrl/get"
        assert kwargs["params"] == {"k": "iris"}
        assert kwargs["timeout"] == (3.0, 5.0)

    def test_non_200_is_http_failure(self, client, camera_session):
        camera_session.fail_get.add("iso")
        with pytest.raises(ControlHttpFailed) as exc_info:
            client.get("iso")
        assert exc_info.value.status_code == 500
        assert exc_info.value.key == "iso"
        assert exc_info.value.kind is ErrorKind.CONTROL_HTTP_FAILED

    def test_connection_error_is_http_failure(self, connection_error):
        session = ScriptedSession(error=connection_error)
        with pytest.raises(ControlHttpFailed, match="connection refused"):
            CameraControlClient("10.0.0.5", session=session).get("iso")

    def test_timeout_is_http_failure(self):
        session = ScriptedSession(error=requests.Timeout("read timed out"))
        with pytest.raises(ControlHttpFailed):
            CameraControlClient("10.0.0.5", session=session).get("iso")

    def test_unparseable_body(self):
        session = ScriptedSession(FakeResponse(text="<html>busy</html>"))
        with pytest.raises(ControlHttpFailed, match="unparseable"):
            CameraControlClient("10.0.0.5", session=session).get("iso")

    def test_non_zero_code_is_rejection(self):
        session = ScriptedSession(FakeResponse(payload={"code": -1, "desc": "busy"}))
        with pytest.raises(ControlRejected, match="busy") as exc_info:
            CameraControlClient("10.0.0.5", session=session).get("iso")
        assert exc_info.value.kind is ErrorKind.CONTROL_REJECTED


class TestSet:
    """Tests for CameraControlClient.set."""

    def test_writes_query_parameter(self, client, camera_session):
        client.set("iso", "2500")
        assert camera_session.calls[-1] == ("set", {"iso": "2500"})

    def test_rejection(self, client, camera_session):
        camera_session.reject_set.add("shutter_angle")
        with pytest.raises(ControlRejected):
            client.set("shutter_angle", "120")

    @pytest.mark.parametrize("body", ["ok", "OK\n", '"ok"', "  Ok  "])
    def test_ok_token_body(self, body):
        session = ScriptedSession(FakeResponse(text=body))
        CameraControlClient("10.0.0.5", session=session).set("iris", "11")

    @pytest.mark.parametrize("body", ["", "error", "not ok", "okay"])
    def test_unrecognised_body(self, body):
        session = ScriptedSession(FakeResponse(text=body))
        with pytest.raises(ControlHttpFailed):
            CameraControlClient("10.0.0.5", session=session).set("iris", "11")

    def test_non_200(self):
        session = ScriptedSession(FakeResponse(status_code=404, text="ok"))
        with pytest.raises(ControlHttpFailed, match="HTTP 404"):
            CameraControlClient("10.0.0.5", session=session).set("iris", "11")

    def test_long_body_is_truncated(self):
        session = ScriptedSession(FakeResponse(status_code=503, text="x" * 5000))
        with pytest.raises(ControlHttpFailed) as exc_info:
            CameraControlClient("10.0.0.5", session=session).set("iris", "11")
        assert len(exc_info.value.body) == 200


# =============================================================================
# Typed helpers
# =============================================================================


class TestTypedHelpers:
    def test_iso_round_trip(self, client, camera_session):
        client.set_iso(2500)
        assert camera_session.sets() == [("iso", "2500")]
        assert client.get_iso() == 2500

    @pytest.mark.parametrize(("stops", "wire"), [(-0.5, "-5"), (1.0, "10"), (0.3, "3")])
    def test_ev_is_sent_in_tenths(self, client, camera_session, stops, wire):
        client.set_ev(stops)
        assert camera_session.sets()[-1] == ("ev", wire)
        assert client.get_ev() == pytest.approx(stops)

    def test_iris_token_is_literal(self, client, camera_session):
        client.set_iris("5.6")
        assert camera_session.sets() == [("iris", "5.6")]
        assert client.get_iris() == "5.6"

    def test_auto_shutter_reads_as_zero(self, client, camera_session):
        camera_session.values["shutter_angle"]["value"] = "Auto"
        assert client.get_shutter_angle() == 0

    def test_zero_shutter_writes_auto(self, client, camera_session):
        client.set_shutter_angle(0)
        client.set_shutter_angle(120)
        assert camera_session.sets() == [("shutter_angle", "Auto"), ("shutter_angle", "120")]

    @pytest.mark.parametrize("raw", ["Auto", "inf", "-inf", "nan"])
    def test_non_numeric_iso(self, client, camera_session, raw):
        camera_session.values["iso"]["value"] = raw
        with pytest.raises(ControlHttpFailed, match="not numeric"):
            client.get_iso()

    @pytest.mark.parametrize(
        ("axis", "value", "expected"),
        [
            (Axis.ISO, 2500, ("iso", "2500")),
            (Axis.IRIS, "11", ("iris", "11")),
            (Axis.SHUTTER, 90, ("shutter_angle", "90")),
            (Axis.EV, -1.0, ("ev", "-10")),
        ],
    )
    def test_apply_dispatches_by_axis(self, client, camera_session, axis, value, expected):
        client.apply(axis, value)
        assert camera_session.sets() == [expected]

    @pytest.mark.parametrize(("raw", "recording"), [("on", True), ("off", False)])
    def test_recording_status(self, client, camera_session, raw, recording):
        camera_session.values["rec"]["value"] = raw
        assert client.recording_status() is recording


# =============================================================================
# State
# =============================================================================


class TestReadState:
    """Tests for read_state and read_axis."""

    def test_full_state(self, client):
        state = client.read_state(target_brightness=120, brightness_tolerance=10)

        assert state.iso == 500
        assert state.iris == "8"
        assert state.shutter_angle == 180
        assert state.ev_bias == 0.0
        assert 2500 in state.allowed_iso
        assert "22" in state.allowed_iris
        assert state.allowed_shutter == (45, 90, 120, 180, 270, 360)
        assert (state.ev_min, state.ev_max) == (-9.6, 9.6)
        assert state.shutter_supported and state.ev_supported
        assert state.target_brightness == 120
        assert state.brightness_tolerance == 10

    def test_unrepresentable_options_are_skipped(self, client, camera_session):
        camera_session.values["iso"]["opts"] = ["Auto", "inf", "500", "nan", "2500"]
        state = client.read_state(target_brightness=128, brightness_tolerance=15)
        assert state.allowed_iso == (500, 2500)

    def test_ev_range_from_tenths(self, client, camera_session):
        camera_session.values["ev"] = {"value": "-5", "min": -30, "max": 30}
        state = client.read_state()
        assert state.ev_bias == pytest.approx(-0.5)
        assert (state.ev_min, state.ev_max) == (-3.0, 3.0)

    def test_missing_shutter_marks_unsupported(self, client, camera_session):
        camera_session.fail_get.add("shutter_angle")
        state = client.read_state()
        assert state.shutter_supported is False
        assert state.ev_supported is True

    def test_missing_ev_marks_unsupported(self, client, camera_session):
        del camera_session.values["ev"]
        state = client.read_state()
        assert state.ev_supported is False
        assert state.ev_bias == 0.0

    @pytest.mark.parametrize("key", ["iso", "iris"])
    def test_iso_and_iris_are_required(self, client, camera_session, key):
        camera_session.fail_get.add(key)
        with pytest.raises(ControlHttpFailed):
            client.read_state()

    def test_read_axis_refreshes_one_key(self, client, camera_session):
        state = client.read_state()
        camera_session.values["iso"]["value"] = "800"
        camera_session.values["iris"]["value"] = "11"

        refreshed = client.read_axis(state, Axis.ISO)

        assert refreshed.iso == 800
        assert refreshed.iris == "8"
        assert refreshed.allowed_iso == state.allowed_iso

    def test_read_axis_ev(self, client, camera_session):
        state = client.read_state()
        camera_session.values["ev"]["value"] = "7"
        assert client.read_axis(state, Axis.EV).ev_bias == pytest.approx(0.7)

    def test_read_axis_shutter_keeps_support_flag(self, client, camera_session):
        state = client.read_state()
        degraded = replace(state, shutter_supported=False)
        camera_session.values["shutter_angle"]["value"] = "90"
        refreshed = client.read_axis(degraded, Axis.SHUTTER)
        assert refreshed.shutter_angle == 90
        assert refreshed.shutter_supported is False


def test_default_session_is_requests():
    client = CameraControlClient("10.0.0.5")
    assert isinstance(client._session, requests.Session)
    assert client.base_url == "http://10.0.0.5/ctrl"


def test_fake_session_implements_protocol():
    assert_implements_protocol(FakeCameraSession(), HttpSession)
