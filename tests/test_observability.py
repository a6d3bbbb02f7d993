"""Tests for the observability module (logging and statistics)."""

import io
import json
import logging
import sys
import threading
from datetime import datetime

import pytest

from zcam_exposure.observability.logging import (
    ROOT_LOGGER_NAME,
    JSONFormatter,
    LogContext,
    StructuredFormatter,
    StructuredLogger,
    _format_value,
    configure_logging,
    get_logger,
    reset_logging,
)
from zcam_exposure.observability.stats import (
    CycleStats,
    CycleStatsCollector,
    StatsSummary,
    _percentile,
)


def make_record(msg="Cycle", structured=None, level=logging.INFO):
    record = logging.LogRecord(
        name="zcam_exposure.devices.controller",
        level=level,
        pathname="controller.py",
        lineno=1,
        msg=msg,
        args=(),
        exc_info=None,
    )
    if structured is not None:
        record.structured_data = structured
    return record


@pytest.fixture
def log_stream() -> io.StringIO:
    stream = io.StringIO()
    configure_logging(level="DEBUG", stream=stream, force=True)
    return stream


# =============================================================================
# Structured Logging Tests
# =============================================================================


class TestFormatValue:
    """Tests for _format_value."""

    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            (None, "null"),
            ("cam-left", "cam-left"),
            ("Dark scene - jump to native ISO 2500", '"Dark scene - jump to native ISO 2500"'),
            (131.23456, "131.235"),
            (2500, "2500"),
            (True, "True"),
            ({"iso": 2500}, '{"iso": 2500}'),
            (["iso", "iris"], '["iso", "iris"]'),
        ],
    )
    def test_formats(self, value, expected):
        assert _format_value(value) == expected


class TestStructuredFormatter:
    def test_appends_pairs(self):
        formatter = StructuredFormatter(fmt="%(levelname)s: %(message)s")
        line = formatter.format(make_record(structured={"camera": "cam-left", "mean": 96.44}))
        assert line == "INFO: Cycle | camera=cam-left mean=96.44"

    def test_no_structured_data(self):
        formatter = StructuredFormatter(fmt="%(message)s")
        assert formatter.format(make_record()) == "Cycle"
        assert formatter.format(make_record(structured={})) == "Cycle"

    def test_structured_data_can_be_disabled(self):
        formatter = StructuredFormatter(fmt="%(message)s", include_structured=False)
        assert formatter.format(make_record(structured={"iso": 500})) == "Cycle"

    def test_default_format(self):
        line = StructuredFormatter().format(make_record())
        assert " - zcam_exposure.devices.controller - INFO - Cycle" in line


class TestJSONFormatter:
    def test_single_json_line(self):
        line = JSONFormatter().format(
            make_record(structured={"camera": "cam-left", "iso": 2500})
        )
        payload = json.loads(line)

        assert "\n" not in line
        assert payload["message"] == "Cycle"
        assert payload["level"] == "INFO"
        assert payload["logger"] == "zcam_exposure.devices.controller"
        assert payload["iso"] == 2500
        datetime.fromisoformat(payload["timestamp"])

    def test_unserializable_values_fall_back_to_str(self):
        payload = json.loads(
            JSONFormatter().format(make_record(structured={"when": datetime(2026, 6, 1)}))
        )
        assert payload["when"] == "2026-06-01 00:00:00"

    def test_exception_included(self):
        try:
            raise RuntimeError("decoder gone")
        except RuntimeError:
            record = make_record()
            record.exc_info = sys.exc_info()
        payload = json.loads(JSONFormatter().format(record))
        assert "RuntimeError: decoder gone" in payload["exception"]


class TestStructuredLogger:
    """Tests for keyword arguments on StructuredLogger."""

    def test_get_logger_returns_structured_logger(self):
        assert isinstance(get_logger("zcam_exposure.tests.any"), StructuredLogger)

    def test_keyword_arguments_become_fields(self, log_stream):
        get_logger("zcam_exposure.tests").info("Applied move", axis="iso", value=2500)
        assert "Applied move | axis=iso value=2500" in log_stream.getvalue()

    @pytest.mark.parametrize("method", ["debug", "info", "warning", "error", "critical"])
    def test_every_level_accepts_fields(self, log_stream, method):
        getattr(get_logger("zcam_exposure.tests"), method)("Event", camera="cam-left")
        assert f"{method.upper()} - Event | camera=cam-left" in log_stream.getvalue()

    def test_level_filtering(self):
        stream = io.StringIO()
        configure_logging(level="WARNING", stream=stream, force=True)
        logger = get_logger("zcam_exposure.tests")
        logger.info("hidden", iso=500)
        logger.warning("shown")
        assert "hidden" not in stream.getvalue()
        assert "shown" in stream.getvalue()

    def test_exception_keeps_fields(self, log_stream):
        logger = get_logger("zcam_exposure.tests")
        try:
            raise ValueError("bad slice")
        except ValueError:
            logger.exception("Controller crashed", camera="cam-left")
        output = log_stream.getvalue()
        assert "ValueError: bad slice" in output
        assert "camera=cam-left" in output


class TestLogContext:
    """Tests for LogContext."""

    def test_context_fields_are_added(self, log_stream):
        logger = get_logger("zcam_exposure.tests")
        with LogContext(camera="cam-left"):
            logger.info("Cycle", iso=500)
        logger.info("Outside")

        lines = log_stream.getvalue().splitlines()
        assert lines[0].endswith("| camera=cam-left iso=500")
        assert lines[1].endswith("Outside")

    def test_explicit_kwargs_override_context(self, log_stream):
        with LogContext(camera="cam-left"):
            get_logger("zcam_exposure.tests").info("Cycle", camera="cam-right")
        assert "camera=cam-right" in log_stream.getvalue()
        assert "camera=cam-left" not in log_stream.getvalue()

    def test_nested_contexts(self, log_stream):
        logger = get_logger("zcam_exposure.tests")
        with LogContext(camera="cam-left"):
            with LogContext(ip="10.0.0.5"):
                logger.info("Inner")
            logger.info("Outer")
        lines = log_stream.getvalue().splitlines()
        assert "camera=cam-left ip=10.0.0.5" in lines[0]
        assert "ip=" not in lines[1]

    def test_context_is_per_thread(self, log_stream):
        """Verifies worker threads do not see each other's context.

        Arrangement:
        1. Two threads, each entering LogContext(camera=<own name>).
        2. A barrier so both contexts are active at the same time.

        Assertion Strategy:
        - Each line carries only its own thread's camera.
        """
        logger = get_logger("zcam_exposure.tests")
        barrier = threading.Barrier(2)

        def worker(name):
            with LogContext(camera=name):
                barrier.wait()
                logger.info("Cycle", worker=name)

        threads = [threading.Thread(target=worker, args=(n,)) for n in ("a", "b")]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        for line in log_stream.getvalue().splitlines():
            worker_name = line.rsplit("worker=", 1)[1]
            assert f"camera={worker_name} " in line


class TestConfigureLogging:
    """Tests for configure_logging and reset_logging."""

    def test_idempotent_without_force(self):
        first = io.StringIO()
        second = io.StringIO()
        configure_logging(stream=first, force=True)
        configure_logging(stream=second)

        get_logger("zcam_exposure.tests").info("once")

        assert "once" in first.getvalue()
        assert second.getvalue() == ""

    def test_json_format(self):
        stream = io.StringIO()
        configure_logging(json_format=True, stream=stream, force=True)
        get_logger("zcam_exposure.tests").info("Cycle", status="held")
        assert json.loads(stream.getvalue())["status"] == "held"

    def test_log_file_appends_and_creates_directories(self, tmp_path):
        log_file = tmp_path / "logs" / "zcam0.log"
        log_file.parent.mkdir()
        log_file.write_text("previous run\n", encoding="utf-8")

        configure_logging(stream=io.StringIO(), log_file=log_file, force=True)
        get_logger("zcam_exposure.tests").info("Controller started")
        reset_logging()

        lines = log_file.read_text(encoding="utf-8").splitlines()
        assert lines[0] == "previous run"
        assert "Controller started" in lines[1]

    def test_log_file_parent_is_created(self, tmp_path):
        log_file = tmp_path / "deep" / "logs" / "zcam1.log"
        configure_logging(stream=io.StringIO(), log_file=log_file, force=True)
        assert log_file.parent.is_dir()

    def test_no_propagation(self):
        configure_logging(stream=io.StringIO(), force=True)
        assert logging.getLogger(ROOT_LOGGER_NAME).propagate is False

    def test_reset_removes_handlers(self):
        configure_logging(stream=io.StringIO(), force=True)
        reset_logging()
        assert logging.getLogger(ROOT_LOGGER_NAME).handlers == []


# =============================================================================
# Statistics Tests
# =============================================================================


class TestPercentile:
    def test_interpolates(self):
        assert _percentile([100.0, 150.0, 200.0], 95) == pytest.approx(195.0)

    def test_edges(self):
        data = [1.0, 2.0, 3.0, 4.0]
        assert _percentile(data, 0) == 1.0
        assert _percentile(data, 100) == 4.0
        assert _percentile([7.0], 50) == 7.0

    def test_empty(self):
        assert _percentile([], 95) == 0.0

    @pytest.mark.parametrize("p", [-1, 101])
    def test_out_of_range(self, p):
        with pytest.raises(ValueError, match="between 0 and 100"):
            _percentile([1.0], p)


class TestCycleStatsCollector:
    """Tests for the per-camera collector."""

    def test_empty_summary(self):
        summary = CycleStatsCollector("cam-left").get_summary()
        assert summary.camera == "cam-left"
        assert summary.total_cycles == 0
        assert summary.success_rate == 0.0
        assert summary.last_cycle_time is None

    def test_counts(self):
        """Verifies counters across measured, failed and skipped cycles.

        Arrangement:
        1. Two successful cycles, one of them adjusting.
        2. Two FrameStarved failures and one StreamLost failure.
        3. Three schedule skips.

        Assertion Strategy:
        - total excludes skips; failed = total - successful.
        - error_counts keyed by kind name.
        - Durations come from successful cycles only.
        """
        collector = CycleStatsCollector("cam-left")
        collector.record(100, True)
        collector.record(300, True, adjusted=True)
        collector.record(10_000, False, error_kind="FrameStarved")
        collector.record(10_000, False, error_kind="FrameStarved")
        collector.record(5, False, error_kind="StreamLost")
        for _ in range(3):
            collector.record_skip()

        summary = collector.get_summary()

        assert summary.total_cycles == 5
        assert summary.successful_cycles == 2
        assert summary.failed_cycles == 3
        assert summary.skipped_cycles == 3
        assert summary.adjustments == 1
        assert summary.success_rate == pytest.approx(0.4)
        assert summary.error_counts == {"FrameStarved": 2, "StreamLost": 1}
        assert (summary.min_duration_ms, summary.max_duration_ms) == (100, 300)
        assert summary.avg_duration_ms == pytest.approx(200.0)
        assert isinstance(summary.last_cycle_time, datetime)

    def test_window_bounds_durations_not_counters(self):
        collector = CycleStatsCollector("cam-left", window_size=2)
        for duration in (1000, 20, 30):
            collector.record(duration, True)
        summary = collector.get_summary()
        assert summary.total_cycles == 3
        assert summary.max_duration_ms == 30

    def test_reset(self):
        collector = CycleStatsCollector("cam-left")
        collector.record(100, True, adjusted=True)
        collector.record_skip()
        collector.reset()
        summary = collector.get_summary()
        assert summary.total_cycles == 0
        assert summary.skipped_cycles == 0
        assert summary.adjustments == 0
        assert summary.last_cycle_time is None

    def test_thread_safety(self):
        collector = CycleStatsCollector("cam-left")

        def hammer():
            for _ in range(500):
                collector.record(10, True, adjusted=True)

        threads = [threading.Thread(target=hammer) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        summary = collector.get_summary()
        assert summary.total_cycles == 2000
        assert summary.adjustments == 2000


class TestCycleStats:
    """Tests for the multi-camera manager."""

    def test_per_camera_summaries(self):
        stats = CycleStats()
        stats.record_cycle("cam-left", 640, True, adjusted=True)
        stats.record_skip("cam-right")

        summaries = stats.get_all_summaries()

        assert set(summaries) == {"cam-left", "cam-right"}
        assert summaries["cam-left"].adjustments == 1
        assert summaries["cam-right"].skipped_cycles == 1

    def test_unknown_camera_summary_is_empty(self):
        summary = CycleStats().get_summary("cam-left")
        assert isinstance(summary, StatsSummary)
        assert summary.total_cycles == 0

    def test_reset_one_camera(self):
        stats = CycleStats()
        stats.record_cycle("cam-left", 640, True)
        stats.record_cycle("cam-right", 640, True)
        stats.reset("cam-left")
        stats.reset("never-seen")
        assert stats.get_summary("cam-left").total_cycles == 0
        assert stats.get_summary("cam-right").total_cycles == 1

    def test_reset_all(self):
        stats = CycleStats()
        stats.record_cycle("cam-left", 640, True)
        stats.record_cycle("cam-right", 640, True)
        stats.reset()
        assert all(s.total_cycles == 0 for s in stats.get_all_summaries().values())

    def test_to_dict_is_json_serializable(self):
        stats = CycleStats()
        stats.record_cycle("cam-left", 640, True)
        stats.record_cycle("cam-left", 0, False, error_kind="TransportOpenFailed")

        exported = json.loads(json.dumps(stats.to_dict()))

        camera = exported["cameras"]["cam-left"]
        assert camera["total_cycles"] == 2
        assert camera["error_counts"] == {"TransportOpenFailed": 1}
        assert isinstance(camera["last_cycle_time"], str)
        datetime.fromisoformat(exported["timestamp"])
