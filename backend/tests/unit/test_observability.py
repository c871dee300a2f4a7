"""
Unit tests for logging configuration.
"""

import json
import logging
from unittest.mock import patch

import pytest

from dedup.observability import StructuredJsonFormatter, configure_logging


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)


class TestStructuredJsonFormatter:
    def test_adds_service_and_extra_fields(self):
        formatter = StructuredJsonFormatter(service_name="dedup-test")
        record = logging.LogRecord(
            name="dedup.services.consolidation.merge_service",
            level=logging.INFO,
            pathname=__file__,
            lineno=1,
            msg="Merge completed",
            args=(),
            exc_info=None,
        )
        record.merge_history_id = "4f1c"

        payload = json.loads(formatter.format(record))

        assert payload["message"] == "Merge completed"
        assert payload["level"] == "INFO"
        assert payload["logger"] == "dedup.services.consolidation.merge_service"
        assert payload["service"] == "dedup-test"
        assert payload["merge_history_id"] == "4f1c"
        assert "timestamp" in payload


class TestConfigureLogging:
    def test_text_format_in_test_mode(self, restore_root_logger):
        configure_logging("debug")

        assert restore_root_logger.level == logging.DEBUG
        assert not any(
            isinstance(h.formatter, StructuredJsonFormatter)
            for h in restore_root_logger.handlers
        )

    def test_json_handler_outside_test_mode(self, restore_root_logger):
        with patch("dedup.observability._is_testing", return_value=False), patch(
            "dedup.observability.settings"
        ) as mock_settings:
            mock_settings.LOG_JSON = True
            mock_settings.LOG_LEVEL = "WARNING"
            mock_settings.SERVICE_NAME = "dedup"
            configure_logging()

        assert restore_root_logger.level == logging.WARNING
        assert len(restore_root_logger.handlers) == 1
        assert isinstance(restore_root_logger.handlers[0].formatter, StructuredJsonFormatter)
