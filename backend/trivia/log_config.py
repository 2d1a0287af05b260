"""Structured logging configuration with structlog.

``LOG_FORMAT`` selects "json" for log aggregation or "console" for
human-readable output; ``LOG_LEVEL`` is one of the stdlib level names.
"""

from __future__ import annotations

import logging
import sys
from enum import Enum
from typing import Any, MutableMapping

import structlog

_VALID_LOG_FORMATS = {"json", "console", ""}
_VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def _serialize_enums(
    _logger: object,
    _method_name: str,
    event_dict: MutableMapping[str, Any],
) -> MutableMapping[str, Any]:
    for key, value in event_dict.items():
        if isinstance(value, Enum):
            event_dict[key] = value.value
    return event_dict


def resolve_log_level(value: str) -> int:
    name = (value or "INFO").upper()
    if name not in _VALID_LOG_LEVELS:
        raise ValueError(f"Invalid LOG_LEVEL={value!r}. Must be one of {', '.join(sorted(_VALID_LOG_LEVELS))}.")
    return getattr(logging, name)


def resolve_json_mode(value: str) -> bool:
    fmt = (value or "").lower()
    if fmt not in _VALID_LOG_FORMATS:
        raise ValueError(f"Invalid LOG_FORMAT={value!r}. Must be 'json' or 'console'.")
    return fmt == "json"


def configure_logging(level: str = "INFO", fmt: str = "console") -> None:
    log_level = resolve_log_level(level)
    json_mode = resolve_json_mode(fmt)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            _serialize_enums,
            structlog.processors.StackInfoRenderer(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )

    renderer = structlog.processors.JSONRenderer() if json_mode else structlog.dev.ConsoleRenderer(colors=False)
    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(log_level)

    # httpx logs every request at INFO.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
