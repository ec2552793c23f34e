"""Logging setup for the blobmirror CLI.

This module provides:
- configure_logging: Install a handler on the "blobmirror" logger
- JSONFormatter: One JSON object per log line
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from typing import TextIO

TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

# Third-party loggers that are too chatty at INFO
NOISY_LOGGERS = ("botocore", "boto3", "urllib3", "httpx", "httpcore")


class JSONFormatter(logging.Formatter):
    """Format log records as single-line JSON objects."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "time": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
            "thread": record.threadName,
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload)


def configure_logging(
    level: str = "info",
    fmt: str = "text",
    stream: TextIO | None = None,
) -> logging.Handler:
    """Configure logging for the blobmirror package.

    Replaces any handler previously installed by this function, so it is
    safe to call more than once.

    Args:
        level: Log level name (debug, info, warn/warning, error).
        fmt: "text" or "json".
        stream: Output stream (default: stderr).

    Returns:
        The installed handler.
    """
    level_name = "WARNING" if level.lower() == "warn" else level.upper()

    handler = logging.StreamHandler(stream or sys.stderr)
    if fmt == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT))
    handler.set_name("blobmirror-cli")

    root_logger = logging.getLogger("blobmirror")
    for existing in list(root_logger.handlers):
        if existing.get_name() == "blobmirror-cli":
            root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(level_name)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return handler
