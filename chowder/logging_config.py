"""
Structured JSON logging configuration.

One JSON object per line on stdout, so request and daemon logs can be
shipped straight to a log aggregator. ``pretty`` mode falls back to a
plain human-readable format for local runs.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict

# Attributes every LogRecord carries; anything else came in through ``extra``
_RESERVED = frozenset(
    [
        "name", "msg", "args", "created", "filename", "funcName",
        "levelname", "levelno", "lineno", "module", "msecs",
        "message", "pathname", "process", "processName", "relativeCreated",
        "thread", "threadName", "exc_info", "exc_text", "stack_info",
        "taskName",
    ]
)

LEVELS = ("debug", "info", "warning", "error", "critical")


class JSONFormatter(logging.Formatter):
    """Formatter that outputs logs as JSON for structured logging."""

    def __init__(self, unix_time: bool = False, float_durations: bool = False):
        super().__init__()
        self.unix_time = unix_time
        self.float_durations = float_durations

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        if self.unix_time:
            timestamp: Any = int(record.created)
        else:
            timestamp = datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat()
        log_data: Dict[str, Any] = {
            "timestamp": timestamp,
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in _RESERVED:
                log_data[key] = value

        if "duration_ms" in log_data and not self.float_durations:
            log_data["duration_ms"] = int(log_data["duration_ms"])

        return json.dumps(log_data, default=str)


def parse_level(log_level: str) -> int:
    """Map a level name to its ``logging`` constant.

    Raises:
        ValueError: for anything outside ``LEVELS``
    """
    name = log_level.strip().lower()
    if name == "warn":
        name = "warning"
    if name not in LEVELS:
        raise ValueError(f"log level must be one of {', '.join(LEVELS)}, got {log_level!r}")
    return getattr(logging, name.upper())


def setup_structured_logging(
    use_json: bool = True,
    log_level: str = "INFO",
    unix_time: bool = False,
    float_durations: bool = False,
):
    """
    Set up structured JSON logging.

    Args:
        use_json: If True, use JSON formatter. If False, use standard formatter.
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        unix_time: Log unix timestamps instead of RFC 3339
        float_durations: Keep fractional milliseconds in ``duration_ms``
    """
    level = parse_level(log_level)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)

    if use_json:
        formatter: logging.Formatter = JSONFormatter(unix_time=unix_time, float_durations=float_durations)
    else:
        stamp = "%(created)d" if unix_time else "%(asctime)s"
        formatter = logging.Formatter(
            stamp + " - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # Request logging is done by our own middleware
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

    return root_logger


def log_with_context(
    logger: logging.Logger,
    level: int,
    message: str,
    **context: Any
) -> None:
    """
    Log a message with additional context fields.

    Example:
        log_with_context(
            logger,
            logging.INFO,
            "scan completed",
            request_id="1a2b3c4d",
            infected=False,
        )
    """
    extra = {k: v for k, v in context.items()}
    logger.log(level, message, extra=extra)


def level_for_status(status: int) -> int:
    """Log level for a response with the given status code."""
    if status < 200:
        return logging.DEBUG
    if status < 300:
        return logging.INFO
    if status < 400:
        return logging.DEBUG
    if status < 500:
        if status == 404:
            return logging.INFO
        return logging.WARNING
    return logging.ERROR
