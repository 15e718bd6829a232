"""
Tests for structured JSON logging
"""

import json
import logging

from wallet_core.logging_config import (
    JSONFormatter, correlation_context, current_correlation_id, log_action, redact, setup_logging
)


class CapturingHandler(logging.Handler):
    def __init__(self):
        super().__init__()
        self.setFormatter(JSONFormatter())
        self.lines = []

    def emit(self, record):
        self.lines.append(json.loads(self.format(record)))


class TestStructuredLogging:
    """Test JSONFormatter and log_action"""

    def setup_method(self):
        """Set up test fixtures"""
        self.logger = logging.getLogger("banka.test_logging")
        self.logger.setLevel(logging.DEBUG)
        self.logger.propagate = False
        self.handler = CapturingHandler()
        self.logger.addHandler(self.handler)

    def teardown_method(self):
        self.logger.removeHandler(self.handler)

    def test_log_action_fields(self):
        log_action(self.logger, "info", "Transfer completed", user_id="alice",
                   action="internal_transfer", resource="account:a1", correlation_id="TRF_1")

        line = self.handler.lines[0]
        assert line["message"] == "Transfer completed"
        assert line["level"] == "INFO"
        assert line["service"] == "banka-wallet"
        assert line["user_id"] == "alice"
        assert line["action"] == "internal_transfer"
        assert line["resource"] == "account:a1"
        assert line["correlation_id"] == "TRF_1"

    def test_unset_fields_omitted(self):
        self.logger.warning("plain message")
        line = self.handler.lines[0]
        assert "user_id" not in line
        assert "correlation_id" not in line

    def test_correlation_context(self):
        assert current_correlation_id() is None
        with correlation_context("EXT_42"):
            self.logger.info("inside")
            log_action(self.logger, "info", "explicit wins", correlation_id="EXT_99")
        self.logger.info("outside")

        assert self.handler.lines[0]["correlation_id"] == "EXT_42"
        assert self.handler.lines[1]["correlation_id"] == "EXT_99"
        assert "correlation_id" not in self.handler.lines[2]
        assert current_correlation_id() is None

    def test_credentials_redacted(self):
        log_action(self.logger, "info", "PIN changed",
                   extra={"pin": "1234", "nested": {"Authorization": "Bearer x"}, "amount": "10"})
        extra = self.handler.lines[0]["extra"]
        assert extra == {"pin": "***", "nested": {"Authorization": "***"}, "amount": "10"}

    def test_redact_lists(self):
        assert redact([{"new_pin": "9999"}, "x"]) == [{"new_pin": "***"}, "x"]

    def test_level_filtering(self):
        self.logger.setLevel(logging.WARNING)
        log_action(self.logger, "info", "dropped")
        assert self.handler.lines == []

    def test_exception_included(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            self.logger.error("failed", exc_info=True)
        assert self.handler.lines[0]["exception"]["type"] == "RuntimeError"

    def test_setup_logging_replaces_handlers(self, tmp_path):
        log_file = tmp_path / "wallet.log"
        logger = setup_logging("DEBUG", logger_name="banka.test_setup", log_file=str(log_file))
        setup_logging("DEBUG", logger_name="banka.test_setup", log_file=str(log_file))
        assert len(logger.handlers) == 1

        logger.info("written")
        logger.handlers[0].flush()
        assert json.loads(log_file.read_text().strip())["message"] == "written"
        logger.handlers[0].close()
