"""Structured logging configuration.

Features:
- JSON formatted logs for aggregation
- Publisher and registry diagnostics as structured fields
"""

from __future__ import annotations

import json
import logging
import sys
import traceback
from datetime import datetime, timezone
from typing import Any, Dict, Optional

# Structured fields copied from log records when present
_RECORD_FIELDS = ("flavor", "step_ms", "lines", "dropped", "sink_errors")


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def __init__(
        self,
        service_name: str = "statsd-registry",
        include_stack_trace: bool = True,
    ):
        super().__init__()
        self.service_name = service_name
        self.include_stack_trace = include_stack_trace

    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
            "thread": record.threadName,
        }

        for attr in _RECORD_FIELDS:
            if hasattr(record, attr):
                log_entry[attr] = getattr(record, attr)

        if record.exc_info and self.include_stack_trace:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "stacktrace": traceback.format_exception(*record.exc_info),
            }

        return json.dumps(log_entry, default=str)


def setup_structured_logging(
    service_name: str = "statsd-registry",
    level: int = logging.INFO,
    json_output: bool = True,
    logger_name: Optional[str] = "statsd_registry",
) -> logging.Logger:
    """Attach a stdout handler to the package logger (root if ``logger_name`` is None)."""
    target = logging.getLogger(logger_name)
    target.setLevel(level)

    for handler in target.handlers[:]:
        target.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)

    if json_output:
        formatter: logging.Formatter = StructuredFormatter(service_name=service_name)
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )

    console_handler.setFormatter(formatter)
    target.addHandler(console_handler)
    return target


def configure_from_settings(settings: Any, json_output: bool = True) -> logging.Logger:
    """Configure package logging from ``StatsdSettings.LOG_LEVEL``."""
    level = logging.getLevelName(str(settings.LOG_LEVEL).upper())
    if not isinstance(level, int):
        level = logging.INFO
    return setup_structured_logging(level=level, json_output=json_output)
