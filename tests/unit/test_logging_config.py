"""Tests for testflow/utils/logging_config.py."""

import json

import structlog

from testflow.utils.logging_config import configure_logging


class TestConfigureLogging:
    def teardown_method(self):
        structlog.reset_defaults()

    def test_json_lines_on_stderr(self, capsys):
        configure_logging("INFO")
        structlog.get_logger("testflow.test").info("workflow_started", workflow_id="wf-1")

        captured = capsys.readouterr()
        assert captured.out == ""
        line = json.loads(captured.err.strip().splitlines()[-1])
        assert line["event"] == "workflow_started"
        assert line["workflow_id"] == "wf-1"
        assert line["level"] == "info"

    def test_level_filtering(self, capsys):
        configure_logging("warning")
        logger = structlog.get_logger("testflow.test")
        logger.info("hidden")
        logger.warning("shown")

        err = capsys.readouterr().err
        assert "hidden" not in err
        assert "shown" in err
