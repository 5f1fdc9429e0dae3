"""Tests for logging configuration."""

import logging

import pytest

from streamscribe.logging_setup import setup_logging


@pytest.fixture
def root_logger():
    """Restore the root logger after each test."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    websockets_level = logging.getLogger("websockets").level
    yield root
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)
    logging.getLogger("websockets").setLevel(websockets_level)


def test_file_and_stream_handlers(root_logger, tmp_path):
    """Test that records reach the log file."""
    log_file = tmp_path / "logs" / "streamscribed.log"

    setup_logging("DEBUG", log_file)
    logging.getLogger("streamscribe.test").info("hello from the daemon")
    for handler in root_logger.handlers:
        handler.flush()

    assert root_logger.level == logging.DEBUG
    assert len(root_logger.handlers) == 2
    assert "hello from the daemon" in log_file.read_text()


def test_websockets_capped_at_info(root_logger):
    """Test that websockets frame logging stays quiet at DEBUG."""
    setup_logging("DEBUG")

    assert logging.getLogger("websockets").level == logging.INFO
    assert len(root_logger.handlers) == 1
