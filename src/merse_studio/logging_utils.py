"""Logging setup for the merse_studio service."""

from __future__ import annotations

import logging
from typing import Final

import coloredlogs

DEFAULT_LOGGER_NAME: Final = "merse_studio"
LOG_FORMAT: Final = "%(asctime)s %(levelname)s %(message)s"


def setup_logging(*, verbose: bool = False, quiet: bool = False) -> logging.Logger:
    """Configure the package logger according to verbosity flags."""
    level = logging.INFO
    if quiet:
        level = logging.ERROR
    elif verbose:
        level = logging.DEBUG

    logger = logging.getLogger(DEFAULT_LOGGER_NAME)
    logger.setLevel(level)

    # Avoid double handlers if called multiple times (uvicorn reload, tests).
    if logger.handlers:
        return logger

    coloredlogs.install(level=level, logger=logger, fmt=LOG_FORMAT)
    return logger
