"""CLI entry point for zcam-exposure.

Provides the ``zcam-exposure`` console script::

    # Run the exposure loop for camera 0 of the "pipeline" site
    zcam-exposure pipeline 0

    # Run every camera of the site, one worker thread each
    zcam-exposure pipeline all --config-dir /etc/zcam --json-logs

The site name selects ``<config-dir>/<site>.json``. Logs go to stderr and,
unless ``--log-file -`` is given, to ``<files>/logs/zcam<index>.log``.

Exit codes:
    0: Clean shutdown after SIGINT/SIGTERM
    1: Startup failure (log file, camera setup)
    2: Invalid configuration

Module Structure:
    - ``main()``: Parse arguments, load config, run workers
    - ``build_controller()``: Wire drivers, policy and collaborators
    - ``run_controllers()``: One thread per camera, joined on shutdown
"""

from __future__ import annotations

import argparse
import signal
import sys
import threading
from collections.abc import Sequence
from pathlib import Path

from zcam_exposure import __version__
from zcam_exposure.config import (
    DEFAULT_CONFIG_DIR,
    CameraConfig,
    SiteConfig,
    load_config,
)
from zcam_exposure.devices.controller import ExposureController
from zcam_exposure.drivers.control import CameraControlClient
from zcam_exposure.drivers.transport import RtspTransport
from zcam_exposure.errors import ConfigInvalid
from zcam_exposure.observability import CycleStats, configure_logging, get_logger
from zcam_exposure.telemetry import TelemetryReporter
from zcam_exposure.utils.image import SnapshotWriter

logger = get_logger(__name__)

ALL_CAMERAS = "all"

EXIT_OK = 0
EXIT_STARTUP_FAILED = 1
EXIT_CONFIG_INVALID = 2

#: Join timeout so the main thread keeps servicing signal handlers.
JOIN_POLL_SECONDS = 1.0


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments.

    Args:
        argv: Arguments without the program name. Defaults to sys.argv.

    Returns:
        Namespace with site, camera_index, config_dir, log_level,
        json_logs and log_file.

    Raises:
        SystemExit: On --help or invalid arguments.
    """
    parser = argparse.ArgumentParser(
        prog="zcam-exposure",
        description="Closed-loop auto exposure for Z CAM cameras",
    )
    parser.add_argument("site", help="Site name, selects <config-dir>/<site>.json")
    parser.add_argument(
        "camera_index",
        help="Camera index in the site config, or 'all' for every camera",
    )
    parser.add_argument(
        "--config-dir",
        type=Path,
        default=DEFAULT_CONFIG_DIR,
        help=f"Directory holding site configs (default: {DEFAULT_CONFIG_DIR})",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["critical", "error", "warning", "info", "debug"],
        default="info",
        help="Log level (default: info)",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Write logs as JSON lines instead of key=value text",
    )
    parser.add_argument(
        "--log-file",
        type=str,
        default=None,
        help=(
            "Log file path (default: <files>/logs/zcam<index>.log); "
            "'-' disables the file"
        ),
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser.parse_args(argv)


def select_cameras(config: SiteConfig, selector: str) -> list[CameraConfig]:
    """Resolve the camera_index argument to cameras.

    Raises:
        ConfigInvalid: If the selector is not an index of the site or 'all'.
    """
    if selector.strip().lower() == ALL_CAMERAS:
        return list(config.cameras)
    try:
        index = int(selector)
    except ValueError as e:
        raise ConfigInvalid(
            f"camera index must be an integer or '{ALL_CAMERAS}', got {selector!r}"
        ) from e
    return [config.camera(index)]


def default_log_file(config: SiteConfig, cameras: list[CameraConfig]) -> Path:
    """Log file used when --log-file is not given."""
    if len(cameras) == 1:
        return config.log_file(cameras[0].index)
    return config.files / "logs" / "zcam.log"


def build_controller(
    config: SiteConfig,
    camera: CameraConfig,
    *,
    stats: CycleStats,
    stop_event: threading.Event,
) -> ExposureController:
    """Wire one camera's controller with real drivers and collaborators."""
    settings = config.controller
    snapshot_writer = (
        SnapshotWriter(config.snapshot_dir, camera.name) if settings.snapshot else None
    )
    reporter = (
        TelemetryReporter(config.server, camera.name)
        if settings.report_telemetry
        else None
    )
    return ExposureController(
        camera,
        settings,
        control=CameraControlClient(camera.ip),
        transport_factory=lambda: RtspTransport.for_camera(camera.ip),
        stats=stats,
        stop_event=stop_event,
        snapshot_writer=snapshot_writer,
        reporter=reporter,
    )


def install_signal_handlers(stop_event: threading.Event) -> None:
    """Set ``stop_event`` on SIGINT and SIGTERM."""

    def _handle(signum: int, _frame: object) -> None:
        logger.info("Shutdown requested", signal=signal.Signals(signum).name)
        stop_event.set()

    signal.signal(signal.SIGINT, _handle)
    signal.signal(signal.SIGTERM, _handle)


def _run_worker(controller: ExposureController) -> None:
    try:
        controller.run()
    except Exception:
        logger.exception("Controller crashed", camera=controller.camera.name)


def run_controllers(controllers: list[ExposureController]) -> None:
    """Run each controller on its own thread and wait for all of them."""
    threads = [
        threading.Thread(
            target=_run_worker,
            args=(controller,),
            name=f"zcam-{controller.camera.name}",
        )
        for controller in controllers
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        while thread.is_alive():
            thread.join(JOIN_POLL_SECONDS)


def main(argv: Sequence[str] | None = None) -> int:
    """Main CLI entry point.

    Returns:
        Exit code: 0 clean shutdown, 1 startup failure, 2 invalid config.

    Example:
        >>> # zcam-exposure pipeline 0 --log-level debug
    """
    args = parse_args(argv)

    try:
        config = load_config(args.site, args.config_dir)
        cameras = select_cameras(config, args.camera_index)
    except ConfigInvalid as e:
        configure_logging(level=args.log_level.upper(), json_format=args.json_logs)
        logger.error("Invalid configuration", site=args.site, error=str(e))
        return EXIT_CONFIG_INVALID

    if args.log_file == "-":
        log_file = None
    elif args.log_file:
        log_file = Path(args.log_file)
    else:
        log_file = default_log_file(config, cameras)

    try:
        configure_logging(
            level=args.log_level.upper(),
            json_format=args.json_logs,
            log_file=log_file,
            force=True,
        )
    except OSError as e:
        logger.error("Cannot open log file", path=str(log_file), error=str(e))
        return EXIT_STARTUP_FAILED

    stop_event = threading.Event()
    stats = CycleStats()
    try:
        controllers = [
            build_controller(config, camera, stats=stats, stop_event=stop_event)
            for camera in cameras
        ]
    except (ImportError, OSError, ValueError) as e:
        logger.error("Startup failed", site=config.site, error=str(e))
        return EXIT_STARTUP_FAILED

    install_signal_handlers(stop_event)
    logger.info(
        "Starting exposure control",
        site=config.site,
        cameras=[camera.name for camera in cameras],
        version=__version__,
    )
    run_controllers(controllers)
    logger.info("Exposure control stopped", **stats.to_dict())
    return EXIT_OK


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
