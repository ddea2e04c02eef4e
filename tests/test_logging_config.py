"""structlog setup tests."""

from __future__ import annotations

import json
import logging

from autocsp.logging_config import setup_logging


class TestSetupLogging:
    """Stdlib records render through the structlog chain."""

    def test_json_output_fields(self, capsys):
        setup_logging(log_level="info", json_format=True)
        logging.getLogger("autocsp.test").info("resource_dropped")

        line = capsys.readouterr().out.strip().splitlines()[-1]
        record = json.loads(line)
        assert record["event"] == "resource_dropped"
        assert record["level"] == "info"
        assert record["module"] == "autocsp.test"
        assert record["service"] == "autocsp"
        assert "logger" not in record
        assert "timestamp" in record

    def test_level_filtering(self, capsys):
        setup_logging(log_level="warning", json_format=True)
        logging.getLogger("autocsp.test").info("hidden_event")
        assert "hidden_event" not in capsys.readouterr().out

    def test_noisy_loggers_quieted(self):
        setup_logging(log_level="debug", json_format=False)
        assert logging.getLogger("uvicorn.access").level == logging.WARNING
        assert logging.getLogger("httpx").level == logging.WARNING
        assert logging.getLogger("httpcore").level == logging.WARNING
