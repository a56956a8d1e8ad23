"""Tests for JSON log configuration."""

import json
import logging

import pytest
from pythonjsonlogger.json import JsonFormatter

from app.logging import configure_logging


@pytest.fixture(autouse=True)
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers = handlers
    root.setLevel(level)


class TestConfigureLogging:
    def test_installs_single_json_handler(self) -> None:
        configure_logging("info")

        root = logging.getLogger()
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, JsonFormatter)
        assert root.level == logging.INFO

    def test_unknown_level_falls_back_to_info(self) -> None:
        configure_logging("chatty")

        assert logging.getLogger().level == logging.INFO

    def test_extra_fields_are_emitted(self) -> None:
        configure_logging("debug")
        formatter = logging.getLogger().handlers[0].formatter
        record = logging.LogRecord(
            name="app.services.deletion_worker",
            level=logging.INFO,
            pathname="",
            lineno=0,
            msg="account_deletion.completed",
            args=(),
            exc_info=None,
        )
        record.owner_id = "alice"

        payload = json.loads(formatter.format(record))

        assert payload["message"] == "account_deletion.completed"
        assert payload["owner_id"] == "alice"
        assert payload["levelname"] == "INFO"

    def test_sql_echo_quieted_above_debug(self) -> None:
        configure_logging("info")

        assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING
