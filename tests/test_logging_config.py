"""
Tests for structured logging and configuration loading
"""

import json
import logging

from scrooge_bank import config as config_module
from scrooge_bank.config import BankConfig, get_config, reload_config
from scrooge_bank.logging_config import get_logger, log_action, setup_logging


class TestStructuredLogging:
    """Test JSON log output"""

    def setup_method(self):
        self.logger_name = "scrooge_bank.test_logging"

    def teardown_method(self):
        logger = logging.getLogger(self.logger_name)
        for handler in logger.handlers[:]:
            logger.removeHandler(handler)

    def test_json_output(self, capsys):
        logger = setup_logging("INFO", "json", logger_name=self.logger_name)

        log_action(
            logger, "info", "Deposit of 100 cents",
            user_id="alice", action="deposit", resource="account:a1",
            extra={"amount_cents": 100}
        )

        line = capsys.readouterr().err.strip()
        entry = json.loads(line)
        assert entry["level"] == "INFO"
        assert entry["logger"] == self.logger_name
        assert entry["message"] == "Deposit of 100 cents"
        assert entry["user_id"] == "alice"
        assert entry["action"] == "deposit"
        assert entry["resource"] == "account:a1"
        assert entry["extra"] == {"amount_cents": 100}
        assert "timestamp" in entry

    def test_missing_fields_omitted(self, capsys):
        logger = setup_logging("INFO", "json", logger_name=self.logger_name)
        log_action(logger, "warning", "Busy")

        entry = json.loads(capsys.readouterr().err.strip())
        assert "user_id" not in entry
        assert "extra" not in entry

    def test_level_filtering(self, capsys):
        logger = setup_logging("INFO", "json", logger_name=self.logger_name)
        log_action(logger, "debug", "Ledger append")
        assert capsys.readouterr().err == ""

    def test_text_format(self, capsys):
        logger = setup_logging("DEBUG", "text", logger_name=self.logger_name)
        log_action(logger, "debug", "Ledger append")
        assert "DEBUG" in capsys.readouterr().err

    def test_setup_replaces_handlers(self):
        setup_logging("INFO", logger_name=self.logger_name)
        logger = setup_logging("INFO", logger_name=self.logger_name)
        assert len(logger.handlers) == 1
        assert get_logger(self.logger_name) is logger


class TestConfiguration:
    """Test environment-based configuration"""

    def test_defaults(self):
        config = BankConfig()
        assert config.loanable_deposit_divisor == 4
        assert config.loan_approval_lock_key == "bank"

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("SCROOGE_DATABASE_URL", "sqlite:///bank.db")
        monkeypatch.setenv("SCROOGE_LOANABLE_DEPOSIT_DIVISOR", "5")
        monkeypatch.setenv("SCROOGE_ZERO_CAPACITY_ON_NEGATIVE_BASE_CASH", "true")
        original = get_config()

        try:
            config = reload_config()
            assert config.database_url == "sqlite:///bank.db"
            assert config.loanable_deposit_divisor == 5
            assert config.zero_capacity_on_negative_base_cash is True
            assert get_config() is config
        finally:
            config_module.config = original
