"""Tests for MCPX structured logging."""

import json
import logging

from mcpx.logging import McpxFormatter, configure_logging, get_logger


def _record(name="mcpx.engine", level=logging.INFO, msg="Execution succeeded"):
    return logging.LogRecord(
        name=name,
        level=level,
        pathname="test.py",
        lineno=1,
        msg=msg,
        args=(),
        exc_info=None,
    )


class TestMcpxFormatter:
    def test_human_readable_format(self):
        output = McpxFormatter(json_output=False).format(_record())
        assert "mcpx.engine" in output
        assert "Execution succeeded" in output
        assert "INFO" in output

    def test_json_format(self):
        output = McpxFormatter(json_output=True).format(_record(level=logging.WARNING))
        data = json.loads(output)
        assert data["level"] == "WARNING"
        assert data["logger"] == "mcpx.engine"
        assert data["message"] == "Execution succeeded"

    def test_context_keys_included(self):
        record = _record()
        record.server = "fs"
        record.duration_ms = 12
        data = json.loads(McpxFormatter(json_output=True).format(record))
        assert data["server"] == "fs"
        assert data["duration_ms"] == 12

    def test_context_keys_in_human_output(self):
        record = _record()
        record.execution_id = "abc123"
        output = McpxFormatter().format(record)
        assert "execution_id=abc123" in output


class TestConfigureLogging:
    def test_single_stderr_handler(self):
        configure_logging(level="DEBUG")
        configure_logging(level="DEBUG")
        logger = logging.getLogger("mcpx")
        assert len(logger.handlers) == 1
        assert logger.level == logging.DEBUG
        assert logger.propagate is False

    def test_unknown_level_falls_back_to_info(self):
        configure_logging(level="nonsense")
        assert logging.getLogger("mcpx").level == logging.INFO

    def test_get_logger_is_child(self):
        assert get_logger("mcpx.client").name == "mcpx.client"
        assert get_logger().name == "mcpx"
