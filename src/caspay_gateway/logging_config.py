"""Structured key=value logging for the gateway."""
from __future__ import annotations

import logging
import sys

import structlog

# Event-dict keys that may carry credentials or webhook secrets.
_REDACTED_KEYS = {"api_key", "secret", "key_hash", "signature"}


def _escape(value: str) -> str:
    """Escape control characters so one log entry stays on one line."""
    return (
        value.replace("\\", "\\\\")
        .replace("\n", "\\n")
        .replace("\r", "\\r")
        .replace("\t", "\\t")
    )


def redact_secrets_processor(logger, method_name, event_dict):
    """Mask values of credential-bearing keys, keeping a short prefix for correlation."""
    for key in _REDACTED_KEYS.intersection(event_dict):
        value = event_dict[key]
        if isinstance(value, str) and value:
            event_dict[key] = f"{value[:8]}***"
    return event_dict


def single_line_processor(logger, method_name, event_dict):
    """Escape newlines in string values, including formatted tracebacks."""
    for key, value in event_dict.items():
        if isinstance(value, str):
            event_dict[key] = _escape(value)
        elif isinstance(value, (list, tuple)):
            event_dict[key] = [_escape(item) if isinstance(item, str) else item for item in value]
        elif isinstance(value, dict):
            event_dict[key] = {
                k: _escape(v) if isinstance(v, str) else v for k, v in value.items()
            }
    return event_dict


class SingleLineFormatter(logging.Formatter):
    """Formatter for stdlib records that never emits a raw newline."""

    def format(self, record):
        message = super().format(record)
        return message.replace("\n", "\\n").replace("\r", "\\r")


def configure_logging(level: int = logging.INFO) -> None:
    """Route stdlib and structlog output through a single key=value stream on stdout."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(SingleLineFormatter("%(message)s"))

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(level)

    access_logger = logging.getLogger("aiohttp.access")
    access_logger.setLevel(level)
    access_logger.propagate = True
    access_logger.handlers = []

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            redact_secrets_processor,
            # must run after format_exc_info so tracebacks are escaped too
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
