"""
Structured logging for the dedup engine.

JSON logs (python-json-logger) in deployments, a plain text format when
TESTING is set or LOG_JSON is disabled so pytest output stays readable.

Usage:
    from dedup.observability import configure_logging

    configure_logging()
"""

import logging
import os
from typing import Any, Optional

from pythonjsonlogger import jsonlogger

from dedup.core.config import settings

# Reserved log record attributes that should not be treated as extra fields
RESERVED_LOG_ATTRS = frozenset({
    "args", "asctime", "created", "exc_info", "exc_text", "filename",
    "funcName", "levelname", "levelno", "lineno", "module", "msecs",
    "message", "msg", "name", "pathname", "process", "processName",
    "relativeCreated", "stack_info", "thread", "threadName", "taskName",
    "service",
})


class StructuredJsonFormatter(jsonlogger.JsonFormatter):
    """
    JSON formatter that adds service name and extra fields.

    Everything passed via ``logger.info("msg", extra={...})`` ends up as a
    top-level key, e.g. ``merge_history_id`` or ``entity_type``.
    """

    def __init__(self, *args: Any, service_name: Optional[str] = None, **kwargs: Any) -> None:
        super().__init__(
            *args,
            **kwargs,
            timestamp=True,
        )
        self.service_name = service_name or settings.SERVICE_NAME

    def add_fields(
        self,
        log_record: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        """Add custom fields to the JSON log record."""
        super().add_fields(log_record, record, message_dict)

        log_record["level"] = record.levelname
        log_record["logger"] = record.name
        log_record["service"] = self.service_name

        for key, value in record.__dict__.items():
            if key not in RESERVED_LOG_ATTRS and not key.startswith("_"):
                if key not in log_record:
                    log_record[key] = value


def _is_testing() -> bool:
    return settings.TESTING or os.getenv("TESTING", "false").lower() == "true"


def configure_logging(level: Optional[str] = None) -> None:
    """
    Configure root logging.

    In test mode (TESTING=true) or with LOG_JSON disabled, uses a simple
    text format. Otherwise installs a single stream handler emitting JSON.

    Example JSON output:
        {"timestamp": "2025-01-15T10:30:00Z", "level": "INFO",
         "logger": "dedup.services.consolidation.merge_service",
         "message": "Merge completed", "service": "dedup",
         "merge_history_id": "uuid-here", "relations_migrated": 2}
    """
    log_level = getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO)

    if _is_testing() or not settings.LOG_JSON:
        log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        logging.basicConfig(level=log_level, format=log_format, force=True)
        return

    handler = logging.StreamHandler()
    handler.setLevel(log_level)
    handler.setFormatter(StructuredJsonFormatter())

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
