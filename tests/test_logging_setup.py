"""Tests for logging setup."""

import logging

import pytest

from memoscribe.logging_setup import setup_logging


@pytest.fixture(autouse=True)
def restore_logger():
    logger = logging.getLogger("memoscribe")
    level = logger.level
    handlers = list(logger.handlers)
    yield
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    for handler in handlers:
        logger.addHandler(handler)
    logger.setLevel(level)


def test_setup_logging_writes_file(tmp_path):
    log_file = tmp_path / "logs" / "memoscribe.log"
    setup_logging("debug", log_file, stream=False)

    logging.getLogger("memoscribe.coordinator").debug("hello from the pipeline")
    for handler in logging.getLogger("memoscribe").handlers:
        handler.flush()

    content = log_file.read_text(encoding="utf-8")
    assert "DEBUG [memoscribe.coordinator] hello from the pipeline" in content


def test_setup_logging_replaces_handlers(tmp_path):
    setup_logging("INFO", tmp_path / "a.log")
    setup_logging("INFO", tmp_path / "b.log")

    handlers = logging.getLogger("memoscribe").handlers
    assert len(handlers) == 2
    assert logging.getLogger("memoscribe").level == logging.INFO
