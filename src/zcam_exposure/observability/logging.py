"""Structured logging for zcam-exposure.

Builds on Python's standard logging module with:
- Structured data support (key-value pairs in logs)
- JSON formatting option for log aggregation
- Context management so every line from a camera worker carries its id
- Optional file sink for the per-camera daily log

Design Principles:
- Compatible with standard logging (drop-in replacement)
- Structured data via keyword arguments on the log call
- Thread-safe context management (contextvars, one context per worker)

Security Note:
    Camera responses are untrusted text. Pass them as keyword arguments,
    never interpolate them into the message string:

    # SAFE - structured data is properly escaped
    logger.warning("Control rejected", key="iso", body=response_text)

    # UNSAFE - a body containing CRLF could forge log lines
    logger.warning(f"Control rejected: {response_text}")

Example:
    logger = get_logger(__name__)

    logger.info("Controller started")
    logger.info("Frame acquired", width=1920, height=1080)

    with LogContext(camera="cam-left"):
        logger.info("Applied move", axis="iso", value=2500)

    configure_logging(json_format=True, log_file=Path("logs/zcam0.log"))
"""

from __future__ import annotations

import contextvars
import json
import logging
import sys
import threading
from collections.abc import MutableMapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, cast

#: Root logger name for the package. All module loggers hang below it.
ROOT_LOGGER_NAME = "zcam_exposure"

# Context variable for structured logging context
_log_context: contextvars.ContextVar[dict[str, Any]] = contextvars.ContextVar(
    "log_context", default={}
)


# =============================================================================
# Structured Logger
# =============================================================================


class StructuredLogger(logging.Logger):
    """Logger with structured data support.

    Extends standard Logger to accept keyword arguments that become
    structured data in the log record.

    Usage:
        logger = StructuredLogger("zcam_exposure.devices.controller")
        logger.info("Cycle complete", mean=131.2, iso=500)
    """

    def debug(self, msg: object, *args: Any, **kwargs: Any) -> None:
        """Log debug message with optional structured data kwargs."""
        if self.isEnabledFor(logging.DEBUG):
            self._log_structured(logging.DEBUG, msg, args, **kwargs)

    def info(self, msg: object, *args: Any, **kwargs: Any) -> None:
        """Log info message with optional structured data kwargs."""
        if self.isEnabledFor(logging.INFO):
            self._log_structured(logging.INFO, msg, args, **kwargs)

    def warning(self, msg: object, *args: Any, **kwargs: Any) -> None:
        """Log warning message with optional structured data kwargs."""
        if self.isEnabledFor(logging.WARNING):
            self._log_structured(logging.WARNING, msg, args, **kwargs)

    def error(self, msg: object, *args: Any, **kwargs: Any) -> None:
        """Log error message with optional structured data kwargs."""
        if self.isEnabledFor(logging.ERROR):
            self._log_structured(logging.ERROR, msg, args, **kwargs)

    def critical(self, msg: object, *args: Any, **kwargs: Any) -> None:
        """Log critical message with optional structured data kwargs."""
        if self.isEnabledFor(logging.CRITICAL):
            self._log_structured(logging.CRITICAL, msg, args, **kwargs)

    def _log_structured(
        self,
        level: int,
        msg: object,
        args: tuple[Any, ...] | MutableMapping[str, Any],
        exc_info: Any = None,
        extra: dict[str, Any] | None = None,
        stack_info: bool = False,
        stacklevel: int = 1,
        **kwargs: Any,
    ) -> None:
        """Emit a record whose structured data merges context and kwargs.

        The merge order is: LogContext values < explicit kwargs, so a cycle
        can override an ambient field (for example ``camera``) when it needs
        to.

        Args:
            level: Numeric log level.
            msg: Log message, may contain % placeholders.
            args: Arguments for % formatting.
            exc_info: Exception info, True to capture the current exception.
            extra: Additional LogRecord attributes. ``structured_data`` is
                added or overwritten.
            stack_info: If True, include stack trace in log.
            stacklevel: Stack frames to skip for caller attribution.
            **kwargs: Key-value pairs recorded as structured data.
        """
        context = _log_context.get()
        structured_data = {**context, **kwargs}

        if extra is None:
            extra = {}
        extra["structured_data"] = structured_data

        # +2 skips this helper and the level method for caller attribution
        self._log(
            level,
            msg,
            args,
            exc_info=exc_info,
            extra=extra,
            stack_info=stack_info,
            stacklevel=stacklevel + 2,
        )


# =============================================================================
# Formatters
# =============================================================================


class StructuredFormatter(logging.Formatter):
    """Human-readable formatter with structured data.

    Format: timestamp - name - level - message | key=value key=value
    """

    def __init__(
        self,
        fmt: str | None = None,
        datefmt: str | None = None,
        include_structured: bool = True,
    ) -> None:
        """Initialize the structured formatter.

        Args:
            fmt: Format string using LogRecord attributes. Defaults to
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'.
            datefmt: Date/time format for %(asctime)s.
            include_structured: If True (default), append structured data
                as ' | key=value key=value' after the message.

        Example:
            >>> formatter = StructuredFormatter(fmt="%(levelname)s: %(message)s")
            >>> handler.setFormatter(formatter)
            # Output: "INFO: Cycle complete | camera=cam0 mean=131.2"
        """
        if fmt is None:
            fmt = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        super().__init__(fmt, datefmt)
        self.include_structured = include_structured

    def format(self, record: logging.LogRecord) -> str:
        """Format a record as text, appending structured data if present.

        Args:
            record: The LogRecord to format. A missing or empty
                ``structured_data`` attribute yields the base format only.

        Returns:
            Formatted log line, e.g.
            '2026-06-01 10:30:00 - zcam_exposure.x - INFO - Cycle | mean=131.2'.
        """
        base = super().format(record)

        if not self.include_structured:
            return base

        structured = getattr(record, "structured_data", {})
        if not structured:
            return base

        pairs = " ".join(f"{k}={_format_value(v)}" for k, v in structured.items())
        return f"{base} | {pairs}"


class JSONFormatter(logging.Formatter):
    """JSON formatter for log aggregation systems.

    Outputs each log record as a single JSON line with timestamp (ISO,
    UTC), level, logger name, message, and all structured data as
    top-level keys. Lines from a full shooting day can be replayed with
    ``jq`` to reconstruct every exposure decision.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format a log record as a single-line JSON object.

        Args:
            record: The LogRecord to format.

        Returns:
            Single-line JSON string. Non-serializable values fall back to
            ``str()``.

        Example:
            >>> line = JSONFormatter().format(record)
            >>> json.loads(line)["iso"]
            2500
        """
        log_dict: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        structured = getattr(record, "structured_data", {})
        log_dict.update(structured)

        if record.exc_info:
            log_dict["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_dict, default=str)


def _format_value(value: Any) -> str:
    """Format a value for key=value output.

    Rules:
    - None: 'null'
    - Strings: as-is, quoted when they contain spaces
    - Floats: rounded to three decimals
    - Dicts/lists/tuples: JSON
    - Anything else: str()

    Example:
        >>> _format_value(None)
        'null'
        >>> _format_value("Dark scene - jump to native ISO 2500")
        '"Dark scene - jump to native ISO 2500"'
        >>> _format_value(131.23456)
        '131.235'
    """
    if value is None:
        return "null"
    if isinstance(value, str):
        if " " in value:
            return f'"{value}"'
        return value
    if isinstance(value, float):
        return str(round(value, 3))
    if isinstance(value, dict | list | tuple):
        return json.dumps(value, default=str)
    return str(value)


# =============================================================================
# Context Management
# =============================================================================


@dataclass
class LogContext:
    """Context manager for structured logging context.

    Adds key-value pairs to all log messages within the context.
    Each camera worker thread enters ``LogContext(camera=...)`` once, so
    every line it emits is attributable.

    Usage:
        with LogContext(camera="cam-left", ip="192.168.150.201"):
            logger.info("Stream opened")  # includes camera and ip
    """

    _kwargs: dict[str, Any] = field(default_factory=dict, init=False, repr=True)
    _token: contextvars.Token[dict[str, Any]] | None = field(
        default=None, init=False, repr=False
    )

    def __init__(self, **kwargs: Any) -> None:
        """Initialize a logging context with key-value pairs.

        Args:
            **kwargs: Pairs injected into every record emitted inside
                the ``with`` block. Inner contexts override outer ones.
        """
        self._kwargs = kwargs

    def __enter__(self) -> LogContext:
        """Merge this context's pairs into the current logging context."""
        current = _log_context.get()
        new_context = {**current, **self._kwargs}
        self._token = _log_context.set(new_context)
        return self

    def __exit__(self, *args: Any) -> None:
        """Restore the previous logging context. Never suppresses errors."""
        if self._token is not None:
            _log_context.reset(self._token)


# =============================================================================
# Configuration
# =============================================================================

_configured = False
_config_lock = threading.Lock()


def configure_logging(
    level: int | str = logging.INFO,
    json_format: bool = False,
    stream: Any = None,
    log_file: Path | str | None = None,
    include_structured: bool = True,
    force: bool = False,
) -> None:
    """Configure the zcam-exposure structured logging system.

    Installs a stream handler (stderr by default) and, optionally, an
    appending file handler on the ``zcam_exposure`` root logger. Idempotent:
    later calls are ignored unless ``force=True``. Protected by a lock so
    camera workers racing on ``get_logger`` cannot double-install handlers.

    Args:
        level: Minimum level, int or name ('DEBUG', 'INFO', ...).
        json_format: Use JSONFormatter (NDJSON) instead of key=value text.
        stream: Output stream. Default: sys.stderr.
        log_file: Optional path of a log file. Parent directories are
            created. Lines are appended so restarts keep the day's history.
        include_structured: Append structured data in text mode.
        force: Reconfigure even if already configured.

    Raises:
        OSError: If the log file's directory cannot be created or the file
            cannot be opened.

    Example:
        >>> configure_logging(level="DEBUG")
        >>> configure_logging(json_format=True, log_file="logs/zcam0.log",
        ...                   force=True)
    """
    with _config_lock:
        if force:
            _reset_logging_impl()
        _configure_logging_impl(
            level, json_format, stream, log_file, include_structured
        )


def _configure_logging_impl(
    level: int | str = logging.INFO,
    json_format: bool = False,
    stream: Any = None,
    log_file: Path | str | None = None,
    include_structured: bool = True,
) -> None:
    """Internal implementation of configure_logging (assumes lock is held)."""
    global _configured

    if _configured:
        return

    logging.setLoggerClass(StructuredLogger)

    formatter: logging.Formatter
    if json_format:
        formatter = JSONFormatter()
    else:
        formatter = StructuredFormatter(include_structured=include_structured)

    handlers: list[logging.Handler] = [
        logging.StreamHandler(stream if stream is not None else sys.stderr)
    ]
    if log_file is not None:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, mode="a", encoding="utf-8"))

    root = logging.getLogger(ROOT_LOGGER_NAME)
    root.setLevel(level)
    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)

    # Prevent propagation to root logger (avoid duplicate logs)
    root.propagate = False

    _configured = True


def _reset_logging_impl() -> None:
    """Internal implementation of reset_logging (assumes lock is held)."""
    global _configured

    root = logging.getLogger(ROOT_LOGGER_NAME)
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        handler.close()

    _configured = False


def reset_logging() -> None:
    """Reset the logging system to unconfigured state (for testing).

    Removes and closes all handlers on the ``zcam_exposure`` logger. The
    next ``configure_logging()`` or ``get_logger()`` reinitializes it.
    """
    with _config_lock:
        _reset_logging_impl()


def get_logger(name: str) -> StructuredLogger:
    """Get a structured logger for a module.

    Configures logging with defaults (INFO, text, stderr) on first use if
    ``configure_logging`` has not run yet.

    Args:
        name: Logger name, normally ``__name__``.

    Returns:
        StructuredLogger accepting ``logger.info("msg", key=value)``.

    Example:
        >>> logger = get_logger(__name__)
        >>> logger.info("Camera state read", iso=500, iris="11")
    """
    # Double-checked locking pattern for thread-safe lazy initialization
    if not _configured:
        with _config_lock:
            if not _configured:  # pragma: no branch
                _configure_logging_impl()

    logger = logging.getLogger(name)
    if not isinstance(logger, StructuredLogger):
        # Created before setLoggerClass ran (e.g. by a third-party import);
        # swap the class so keyword arguments are accepted.
        logger.__class__ = StructuredLogger

    return cast(StructuredLogger, logger)
