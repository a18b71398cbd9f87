"""
Structured JSON logging configuration.

Every log line is a single JSON object on stdout, tagged with a channel
(http, db, pins, attempts, scoring, integrity, analytics, sweep) and the
request ID of the HTTP request that produced it. Raw PIN values must never
be passed to these helpers; log pin ids or hints instead.
"""

import logging
import json
import uuid
from datetime import datetime, timezone
from contextvars import ContextVar

from exam_gate.settings import LOG_LEVEL

# Request ID of the HTTP request currently being handled. Set by the
# middleware in main.py, read by the formatter for every entry.
request_id_var: ContextVar[str] = ContextVar("request_id", default="")

CHANNELS = ["http", "db", "pins", "attempts", "scoring", "integrity", "analytics", "sweep"]
LOGGER_PREFIX = "exam_gate"


class StructuredJsonFormatter(logging.Formatter):
    """
    Formats a record as one JSON object:
    timestamp, level, message, channel, context (request_id + business ids),
    extra (latency, counters) and, for errors, the formatted exception.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z",
            "level": record.levelname,
            "message": record.getMessage(),
            "channel": getattr(record, "channel", record.name.split(".")[-1] if "." in record.name else "app"),
            "context": {
                "request_id": request_id_var.get(""),
                **(getattr(record, "context", {}) or {})
            },
            "extra": getattr(record, "extra_data", {}) or {}
        }
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, default=str)


def setup_logging(level: str = LOG_LEVEL):
    """
    Install the JSON formatter on the root logger and set every channel
    logger to the configured level.
    """
    handler = logging.StreamHandler()
    handler.setFormatter(StructuredJsonFormatter())

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level, logging.INFO))
    root_logger.handlers = [handler]

    for channel in CHANNELS:
        logging.getLogger(f"{LOGGER_PREFIX}.{channel}").setLevel(getattr(logging, level, logging.INFO))

    return root_logger


def get_logger(channel: str) -> logging.Logger:
    """Return the logger for a channel (see CHANNELS)."""
    return logging.getLogger(f"{LOGGER_PREFIX}.{channel}")


def log_with_context(logger: logging.Logger, level: str, message: str,
                     context: dict = None, extra_data: dict = None, exc_info: bool = False):
    """
    Emit a structured log entry.

    Args:
        logger: The channel logger to use
        level: Log level string (INFO, WARNING, ERROR, DEBUG)
        message: Human-readable log message
        context: Business identifiers (attempt_id, exam_id, pin_id)
        extra_data: Metrics and details (duration_ms, counts, reasons)
        exc_info: Attach the exception currently being handled
    """
    log_level = getattr(logging, level.upper(), logging.INFO)
    logger.log(
        log_level,
        message,
        exc_info=exc_info,
        extra={"context": context or {}, "extra_data": extra_data or {}, "channel": logger.name.split(".")[-1]}
    )


def generate_request_id() -> str:
    """Generate a new UUID for request tracking."""
    return str(uuid.uuid4())
