"""Logging configuration for gateway-oauth.

Provides structured logging setup with configurable levels
and consistent formatting across the package.
"""

from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING

from gateway_oauth.errors import sanitize_message

if TYPE_CHECKING:
    from gateway_oauth.config import LogLevel, Settings

# Package logger name
LOGGER_NAME = "gateway_oauth"

# Log format
LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"

# Track if logging has been set up to prevent duplicate handlers
_logging_configured = False


class SecretRedactionFilter(logging.Filter):
    """Scrub bearer tokens and credential parameters from log records.

    Applies the same patterns as error messages, so a token that slips
    into a log argument is redacted before any handler formats it.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        cleaned = sanitize_message(message)
        if cleaned != message:
            record.msg = cleaned
            record.args = None
        return True


def setup_logging(settings: Settings, level: LogLevel | None = None) -> None:
    """Configure logging for the package.

    Sets up the package logger with the configured level and format.
    Output goes to stderr so stdout stays free for protocol traffic.
    This function is idempotent - calling it multiple times will not
    create duplicate handlers.

    Args:
        settings: Application settings containing log_level
        level: Optional override of ``settings.log_level``
    """
    global _logging_configured

    effective = level or settings.log_level
    log_level = getattr(logging, effective.value)

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(log_level)

    if _logging_configured:
        for handler in logger.handlers:
            handler.setLevel(log_level)
        return

    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(log_level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    handler.addFilter(SecretRedactionFilter())
    logger.addHandler(handler)

    # Prevent propagation to root logger
    logger.propagate = False

    _logging_configured = True

    logger.debug("Logging configured with level %s", effective.value)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance for a module.

    Returns a child logger of the package logger, ensuring
    consistent formatting and configuration.

    Args:
        name: Logger name, typically __name__ of the calling module

    Returns:
        Configured Logger instance
    """
    if name.startswith(LOGGER_NAME):
        return logging.getLogger(name)

    return logging.getLogger(f"{LOGGER_NAME}.{name}")


def reset_logging() -> None:
    """Reset logging configuration.

    Used primarily for testing to allow re-initialization
    of the logging setup.
    """
    global _logging_configured
    logger = logging.getLogger(LOGGER_NAME)
    logger.handlers.clear()
    logger.propagate = True
    _logging_configured = False
