"""Tests for structlog logging configuration."""

from __future__ import annotations

import json
import logging
import sys
from unittest.mock import patch

import structlog

from custody_gateway.logging import configure_logging


class TestConfigureLogging:
    def test_console_format_default(self) -> None:
        with patch.dict("os.environ", {}, clear=False):
            configure_logging()
        assert structlog.get_logger() is not None

    def test_log_level_debug(self) -> None:
        with patch.dict("os.environ", {"LOG_LEVEL": "DEBUG"}):
            configure_logging()
        assert logging.getLogger().level == logging.DEBUG

    def test_log_level_warning(self) -> None:
        with patch.dict("os.environ", {"LOG_LEVEL": "WARNING"}):
            configure_logging()
        assert logging.getLogger().level == logging.WARNING

    def test_unknown_level_falls_back_to_info(self) -> None:
        with patch.dict("os.environ", {"LOG_LEVEL": "CHATTY"}):
            configure_logging()
        assert logging.getLogger().level == logging.INFO

    def test_noisy_libraries_silenced(self) -> None:
        configure_logging()
        for name in ("uvicorn.access", "httpx", "httpcore", "web3"):
            assert logging.getLogger(name).level == logging.WARNING

    def test_handler_writes_to_stdout(self) -> None:
        configure_logging()
        root = logging.getLogger()
        assert len(root.handlers) >= 1
        handler = root.handlers[0]
        assert isinstance(handler, logging.StreamHandler)
        assert handler.stream is sys.stdout

    def test_json_lines_carry_context(self, capsys) -> None:
        with patch.dict("os.environ", {"LOG_FORMAT": "json", "LOG_LEVEL": "INFO"}):
            configure_logging()
        structlog.contextvars.bind_contextvars(request_id="req-1")
        try:
            structlog.get_logger("test").info("wallet_created", wallet_id="w1")
        finally:
            structlog.contextvars.clear_contextvars()
        line = capsys.readouterr().out.strip().splitlines()[-1]
        record = json.loads(line)
        assert record["event"] == "wallet_created"
        assert record["wallet_id"] == "w1"
        assert record["request_id"] == "req-1"
        assert record["level"] == "info"
