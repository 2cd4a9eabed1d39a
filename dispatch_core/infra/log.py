"""Structured logging for dispatch-core.

structlog renders every event; stdlib logging only owns the stdout handler so
uvicorn and SQLAlchemy output share the same stream. Request context (tenant,
user) is bound through contextvars by the auth dependency and merged into
each line.

    >>> from dispatch_core.infra.log import get_logger
    >>> logger = get_logger(__name__)
    >>> logger.info("allocation_committed", task_id="T-1", worker_id="W-1")
"""

from __future__ import annotations

import logging
import os
import sys
from typing import Any

import structlog

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = os.getenv("LOG_FORMAT", "json").lower()


def setup_logging(level: str | None = None, fmt: str | None = None) -> None:
    """Configure structlog and the root stdlib logger.

    Args:
        level: Log level name, defaults to ``LOG_LEVEL``.
        fmt: ``json`` or ``console``, defaults to ``LOG_FORMAT``.
    """
    log_level = getattr(logging, (level or LOG_LEVEL).upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    root_logger.addHandler(handler)

    if (fmt or LOG_FORMAT) == "console":
        renderer: structlog.types.Processor = structlog.dev.ConsoleRenderer()
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.contextvars.merge_contextvars,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str, **initial_values: Any) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name, **initial_values)
