"""Structured TSKV logging (key=value, one entry per line)."""
from __future__ import annotations

import logging
import sys
from typing import Any

import structlog

_ESCAPES = (("\\", "\\\\"), ("\n", "\\n"), ("\r", "\\r"), ("\t", "\\t"))


def _escape(value: str) -> str:
    for raw, escaped in _ESCAPES:
        value = value.replace(raw, escaped)
    return value


def _escape_nested(value: Any) -> Any:
    if isinstance(value, str):
        return _escape(value)
    if isinstance(value, (list, tuple)):
        return [_escape(item) if isinstance(item, str) else item for item in value]
    if isinstance(value, dict):
        return {k: _escape(v) if isinstance(v, str) else v for k, v in value.items()}
    return value


def single_line_processor(logger, method_name, event_dict):
    """Escape control characters so tracebacks and response bodies stay on one line.

    Must run after ``format_exc_info`` so the rendered traceback is covered too.
    """
    return {key: _escape_nested(value) for key, value in event_dict.items()}


class SingleLineFormatter(logging.Formatter):
    """stdlib formatter for records that bypass structlog (third-party loggers)."""

    def format(self, record):
        message = super().format(record)
        return message.replace("\n", "\\n").replace("\r", "\\r")


def configure_logging(level: int = logging.INFO) -> None:
    """Route stdlib and structlog output to stdout in TSKV form for Loki/Alloy."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(SingleLineFormatter("%(message)s"))

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(level)

    access_logger = logging.getLogger("aiohttp.access")
    access_logger.setLevel(level)
    access_logger.handlers = []
    access_logger.propagate = True

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            single_line_processor,
            structlog.processors.KeyValueRenderer(
                key_order=["timestamp", "level", "logger", "event"],
                drop_missing=True,
            ),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
