"""
Tests for configuration and structured logging
"""

import json
import sys
import logging

from takaflow.config import TakaflowConfig
from takaflow.logging_config import JSONFormatter, setup_logging, log_action


class TestConfig:
    """Test environment-driven configuration"""

    def test_defaults(self):
        config = TakaflowConfig()
        assert config.transfer_fee == 5
        assert config.fee_threshold == 100
        assert config.transaction_id_length == 10
        assert config.agent_history_page_size == 10
        assert config.default_history_page_size == 20

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("TAKAFLOW_TRANSFER_FEE", "7")
        monkeypatch.setenv("TAKAFLOW_STORAGE_TYPE", "memory")

        config = TakaflowConfig()
        assert config.transfer_fee == 7
        assert config.storage_type == "memory"


class TestStructuredLogging:
    """Test JSON log output"""

    def test_log_action_fields(self, tmp_path):
        log_file = tmp_path / "takaflow.log"
        logger = setup_logging("INFO", logger_name="takaflow.test", log_file=str(log_file))

        log_action(
            logger, "info", "Transfer completed",
            user_id="acc_1", action="transfer", resource="transaction:0000000001",
            extra={"amount": 150}
        )
        log_action(logger, "debug", "Not emitted")
        for handler in logger.handlers:
            handler.flush()

        lines = log_file.read_text().strip().splitlines()
        assert len(lines) == 1
        entry = json.loads(lines[0])
        assert entry["message"] == "Transfer completed"
        assert entry["level"] == "INFO"
        assert entry["user_id"] == "acc_1"
        assert entry["action"] == "transfer"
        assert entry["extra"] == {"amount": 150}
        assert "correlation_id" not in entry

        for handler in logger.handlers[:]:
            handler.close()
            logger.removeHandler(handler)

    def test_formatter_includes_exception(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = logging.LogRecord("takaflow", logging.ERROR, __file__, 1, "failed", (), sys.exc_info())

        entry = json.loads(JSONFormatter().format(record))
        assert entry["message"] == "failed"
        assert "RuntimeError: boom" in entry["exception"]
