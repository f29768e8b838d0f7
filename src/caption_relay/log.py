"""Logging configuration shared by the server and the capture client."""

import logging
import os
import sys

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Names accepted in LOG_LEVEL that the logging module spells differently
_ALIASES = {
    "trace": "DEBUG",
    "warn": "WARNING",
    "fatal": "CRITICAL",
}


def resolve_level(level: str | None) -> int:
    """Translate a level name (any case, with aliases) to a logging constant."""
    name = (level or os.getenv("LOG_LEVEL") or "INFO").strip()
    name = _ALIASES.get(name.lower(), name.upper())
    return getattr(logging, name, logging.INFO)


def setup_logging(level: str | None = None, format: str = DEFAULT_FORMAT) -> logging.Logger:
    """Configure the root logger and return the package logger.

    Args:
        level: Log level name. Defaults to the LOG_LEVEL env var or INFO.
        format: Log format string.
    """
    log_level = resolve_level(level)
    logging.basicConfig(level=log_level, format=format, stream=sys.stdout)

    logger = logging.getLogger("caption_relay")
    logger.setLevel(log_level)
    return logger
