from __future__ import annotations

import logging
import os
import sys

LOGGER_NAME = "plan_credits"
_LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def _resolve_level(raw_level: str | None) -> int:
    if not raw_level:
        return logging.INFO
    level = logging.getLevelName(raw_level.strip().upper())
    return level if isinstance(level, int) else logging.INFO


def setup_logger(level: str | None = None) -> logging.Logger:
    """Configure the application logger once and return it.

    The level comes from the argument, then ``LOG_LEVEL``, then INFO.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(_resolve_level(level or os.getenv("LOG_LEVEL")))
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        logger.addHandler(handler)
    return logger


def get_logger(name: str | None = None) -> logging.Logger:
    if name:
        return logging.getLogger(f"{LOGGER_NAME}.{name}")
    return logging.getLogger(LOGGER_NAME)
