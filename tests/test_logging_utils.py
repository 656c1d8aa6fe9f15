"""Tests for logging utilities."""

from __future__ import annotations

import logging

from merse_studio.logging_utils import DEFAULT_LOGGER_NAME, setup_logging


def _reset() -> None:
    logger = logging.getLogger(DEFAULT_LOGGER_NAME)
    for h in logger.handlers[:]:
        logger.removeHandler(h)


def test_setup_logging_defaults() -> None:
    _reset()
    logger = setup_logging()
    assert logger.name == DEFAULT_LOGGER_NAME
    assert logger.level == logging.INFO


def test_setup_logging_verbose() -> None:
    _reset()
    assert setup_logging(verbose=True).level == logging.DEBUG


def test_setup_logging_quiet() -> None:
    _reset()
    assert setup_logging(quiet=True).level == logging.ERROR


def test_setup_logging_singleton() -> None:
    logger1 = setup_logging()
    logger2 = setup_logging()
    assert logger1 is logger2
    assert len(logger1.handlers) == len(logger2.handlers)
