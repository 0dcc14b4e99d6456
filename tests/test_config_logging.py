"""
Tests for configuration loading and structured logging
"""

import json
import logging
import sys

import pytest

from bank_accounts.config import INT64_MAX, BankAccountsConfig, get_config, reload_config
from bank_accounts.logging_config import (
    JSONFormatter, TEXT_FORMAT, get_logger, log_action, setup_logging
)


class TestConfig:
    """Environment-driven settings"""

    def test_defaults(self, monkeypatch):
        for name in ("BANK_STORAGE_BACKEND", "BANK_API_PORT", "BANK_MAX_BALANCE"):
            monkeypatch.delenv(name, raising=False)

        config = BankAccountsConfig()

        assert config.storage_backend == "sqlite"
        assert config.api_port == 3000
        assert config.account_number_limit == 10_000_000
        assert config.number_generation_attempts == 10
        assert config.max_balance == INT64_MAX

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("BANK_STORAGE_BACKEND", "memory")
        monkeypatch.setenv("BANK_API_PORT", "8080")
        monkeypatch.setenv("bank_log_level", "DEBUG")

        config = BankAccountsConfig()

        assert config.storage_backend == "memory"
        assert config.api_port == 8080
        assert config.log_level == "DEBUG"

    def test_reload_config(self, monkeypatch):
        monkeypatch.setenv("BANK_SQLITE_PATH", "/tmp/other.db")
        try:
            reloaded = reload_config()
            assert reloaded.sqlite_path == "/tmp/other.db"
            assert get_config() is reloaded
        finally:
            monkeypatch.undo()
            reload_config()


class TestJSONFormatter:
    """One JSON object per record"""

    def make_record(self, **attrs):
        record = logging.LogRecord(
            "bank_accounts.balance", logging.INFO, __file__, 1, "Top-up %s", ("applied",), None
        )
        for key, value in attrs.items():
            setattr(record, key, value)
        return record

    def test_structured_fields(self):
        record = self.make_record(
            action="top_up", resource="account:42", extra={"amount": 10}
        )

        entry = json.loads(JSONFormatter().format(record))

        assert entry["level"] == "INFO"
        assert entry["module"] == "bank_accounts.balance"
        assert entry["message"] == "Top-up applied"
        assert entry["action"] == "top_up"
        assert entry["resource"] == "account:42"
        assert entry["extra"] == {"amount": 10}
        assert "timestamp" in entry

    def test_missing_fields_are_dropped(self):
        entry = json.loads(JSONFormatter().format(self.make_record()))

        assert "action" not in entry
        assert "correlation_id" not in entry
        assert "exception" not in entry

    def test_exception_included(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = self.make_record()
            record.exc_info = sys.exc_info()

        entry = json.loads(JSONFormatter().format(record))

        assert "RuntimeError: boom" in entry["exception"]


class TestSetupLogging:
    """Handler installation on the package logger"""

    def test_json_format(self):
        logger = setup_logging("debug", "json")

        assert logger.name == "bank_accounts"
        assert logger.level == logging.DEBUG
        assert logger.propagate is False
        assert len(logger.handlers) == 1
        assert isinstance(logger.handlers[0].formatter, JSONFormatter)

    def test_text_format(self):
        logger = setup_logging("WARNING", "text")

        assert logger.level == logging.WARNING
        assert logger.handlers[0].formatter._fmt == TEXT_FORMAT

    def test_repeated_setup_does_not_duplicate_handlers(self):
        setup_logging()
        logger = setup_logging()

        assert len(logger.handlers) == 1

    def test_unknown_level_falls_back_to_info(self):
        assert setup_logging("chatty").level == logging.INFO


class TestLogAction:
    """Structured records from log_action"""

    def test_record_fields(self, caplog):
        logger = get_logger("bank_accounts.test")

        with caplog.at_level(logging.INFO, logger="bank_accounts"):
            log_action(
                logger, "info", "Account created",
                action="create_account", resource="account:1",
                correlation_id="req-1", extra={"number": 5}
            )

        record = caplog.records[-1]
        assert record.getMessage() == "Account created"
        assert record.levelno == logging.INFO
        assert record.action == "create_account"
        assert record.resource == "account:1"
        assert record.correlation_id == "req-1"
        assert record.extra == {"number": 5}

    def test_disabled_level_is_skipped(self, caplog):
        logger = get_logger("bank_accounts.test")

        with caplog.at_level(logging.WARNING, logger="bank_accounts"):
            log_action(logger, "info", "quiet")

        assert [r for r in caplog.records if r.getMessage() == "quiet"] == []

