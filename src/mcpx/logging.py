"""
MCPX Structured Logging

Provides a configured logger for the execution engine using stdlib logging
with structured context. Everything goes to stderr so stdout stays free for
command output.

Usage:
    from mcpx.logging import get_logger

    logger = get_logger("mcpx.client")
    logger.info("Server ready", extra={"server": "fs", "duration_ms": 12})

For machine consumption, configure with JSON output:
    from mcpx.logging import configure_logging
    configure_logging(json_output=True, level="DEBUG")

Environment:
    MCPX_LOG_LEVEL  default level applied on import (INFO)
    MCPX_LOG_JSON   "1" switches the import-time handler to JSON lines
"""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

CONTEXT_KEYS = (
    "server",
    "tool",
    "phase",
    "request_id",
    "execution_id",
    "isolation_level",
    "risk_level",
    "duration_ms",
)


class McpxFormatter(logging.Formatter):
    """Structured log formatter.

    Outputs either human-readable or JSON format depending on configuration.
    """

    def __init__(self, json_output: bool = False):
        super().__init__()
        self._json_output = json_output

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key in CONTEXT_KEYS:
            value = getattr(record, key, None)
            if value is not None:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if self._json_output:
            return json.dumps(log_data, default=str)

        extra_keys = {
            k: v
            for k, v in log_data.items()
            if k not in ("timestamp", "level", "logger", "message", "exception")
        }
        extra_str = ""
        if extra_keys:
            extra_str = " | " + " ".join(f"{k}={v}" for k, v in extra_keys.items())

        line = (
            f"[{log_data['timestamp']}] {record.levelname:8s} {record.name}: "
            f"{record.getMessage()}{extra_str}"
        )
        if "exception" in log_data:
            line += "\n" + log_data["exception"]
        return line


def configure_logging(
    level: str = "INFO",
    json_output: bool = False,
) -> None:
    """Configure MCPX logging.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        json_output: If True, emit one JSON object per record.
    """
    root_logger = logging.getLogger("mcpx")
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(McpxFormatter(json_output=json_output))
    root_logger.addHandler(handler)

    root_logger.propagate = False


def get_logger(name: str = "mcpx") -> logging.Logger:
    """Get an MCPX logger instance.

    Args:
        name: Logger name (usually a module path like "mcpx.sandbox").
    """
    return logging.getLogger(name)


configure_logging(
    level=os.environ.get("MCPX_LOG_LEVEL", "INFO"),
    json_output=os.environ.get("MCPX_LOG_JSON") == "1",
)
