"""
Structured logging: JSON when LOG_JSON=1, human-readable otherwise.
Configured lazily on first get_logger() call; thread-safe.
"""
import logging
import os
import sys
import threading
import time
from typing import Any

import structlog

LOG_JSON = os.environ.get("LOG_JSON", "").lower() in ("1", "true", "yes")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

_config_lock = threading.Lock()
_configured = False


def _json_processor(logger: Any, method_name: str, event_dict: dict) -> dict:
    """Add timestamp and level for JSON output."""
    event_dict["timestamp"] = time.time()
    event_dict["level"] = method_name.upper()
    return event_dict


def get_logger(name: str) -> Any:
    """
    Return a structured logger. Use: logger.info("event_name", key=val, ...)
    Never pass QR payloads or instance tokens as values.
    """
    global _configured
    if not _configured:
        with _config_lock:
            if not _configured:
                _configure_structlog()
                _configured = True
    return structlog.get_logger(name)


def bind_context(**kw: Any) -> None:
    """Bind key-values (company_id, connection_id) to every log line of the current task."""
    structlog.contextvars.bind_contextvars(**kw)


def _configure_structlog() -> None:
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if LOG_JSON:
        renderers = [_json_processor, structlog.processors.JSONRenderer()]
    else:
        renderers = [structlog.dev.ConsoleRenderer(colors=False)]
    structlog.configure(
        processors=shared_processors + renderers,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, LOG_LEVEL, logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
    )
