"""Structured Logging Configuration.

This module configures structlog for JSON output with context binding.
Outputs JSON format for production log aggregation (CloudWatch, Datadog, Splunk).

Configuration:
- JSON output format (for production log aggregation)
- Context binding support (correlation IDs, task IDs, order IDs)
- Log levels: DEBUG, INFO, WARNING, ERROR, CRITICAL (LOG_LEVEL env var)

Never pass API keys, webhook secrets or full signatures as log fields.
"""

import logging
import os
import sys
from typing import Any

import structlog

_configured = False


def configure_logging(level: str | None = None) -> None:
    """Configure structlog and the stdlib root logger once per process.

    Args:
        level: Log level name. Defaults to LOG_LEVEL env var, then INFO.
    """
    global _configured
    if _configured:
        return

    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    log_level = getattr(logging, level_name, logging.INFO)

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=log_level)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
    _configured = True


def get_logger(name: str) -> Any:
    """Get a structured logger instance for the given module.

    Args:
        name: Module name (typically __name__)

    Returns:
        Lazy structlog proxy carrying the module name as ``logger_name``. It
        resolves the configuration on first use, so module-level loggers
        created before configure_logging still render JSON.
    """
    # "logger" is the positional parameter of structlog.wrap_logger
    return structlog.get_logger(logger_name=name)
