"""structlog setup for the router process.

Every line carries the process-wide context bound here (service, mode,
token) plus whatever a cycle binds via contextvars (cycle_id).
"""

from __future__ import annotations

import logging
import os
import sys

import structlog

# Stdlib loggers of our dependencies; they only speak up on warnings.
QUIET_LOGGERS = ("httpx", "httpcore", "aiosqlite", "apscheduler")


def _json_enabled() -> bool:
    return os.environ.get("JSON_LOGS", "").strip().lower() in ("1", "true", "yes")


def setup_logging(log_level: str = "INFO", json_logs: bool | None = None, **context) -> None:
    """Configure structlog and the stdlib root logger.

    json_logs=None defers to the JSON_LOGS env var (console renderer otherwise).
    Extra keyword arguments are bound as process-wide log context.
    """
    level = getattr(logging, log_level.upper(), logging.INFO)
    if json_logs is None:
        json_logs = _json_enabled()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.clear_contextvars()
    if context:
        structlog.contextvars.bind_contextvars(**context)

    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
