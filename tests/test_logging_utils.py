"""Tests for netepi.logging_utils."""

import logging

import pytest

from netepi.logging_utils import LOG_FORMAT, PACKAGE_LOGGER, resolve_level, setup_logging


@pytest.fixture
def package_logger():
    logger = logging.getLogger(PACKAGE_LOGGER)
    handlers, level, propagate = list(logger.handlers), logger.level, logger.propagate
    yield logger
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    for handler in handlers:
        logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = propagate


def _flush(logger):
    for handler in logger.handlers:
        handler.flush()


class TestResolveLevel:
    def test_names(self):
        assert resolve_level("debug") == logging.DEBUG
        assert resolve_level("WARNING") == logging.WARNING

    def test_int_passthrough(self):
        assert resolve_level(15) == 15

    def test_unknown_name(self):
        with pytest.raises(ValueError, match='chatty'):
            resolve_level("chatty")


class TestSetupLogging:
    def test_package_logger_configured(self, package_logger):
        logger = setup_logging("DEBUG")
        assert logger is package_logger
        assert logger.level == logging.DEBUG
        assert not logger.propagate
        assert len(logger.handlers) == 1
        assert logger.handlers[0].formatter._fmt == LOG_FORMAT

    def test_root_logger_untouched(self, package_logger):
        root = logging.getLogger()
        before = list(root.handlers)
        setup_logging("INFO")
        assert root.handlers == before

    def test_repeated_setup_replaces_handlers(self, package_logger, tmp_path):
        setup_logging("INFO", log_file=tmp_path / "a.log")
        setup_logging("INFO")
        assert len(package_logger.handlers) == 1

    def test_file_output(self, package_logger, tmp_path):
        path = tmp_path / "logs" / "run.log"
        setup_logging("INFO", log_file=path)
        logging.getLogger("netepi.model").info("hello %d", 7)
        _flush(package_logger)
        text = path.read_text(encoding="utf-8")
        assert "| INFO | netepi.model | hello 7" in text

    def test_level_filters(self, package_logger, tmp_path):
        path = tmp_path / "run.log"
        setup_logging("WARNING", log_file=path)
        logging.getLogger("netepi.step").info("quiet")
        logging.getLogger("netepi.step").warning("loud")
        _flush(package_logger)
        text = path.read_text(encoding="utf-8")
        assert "quiet" not in text
        assert "loud" in text
