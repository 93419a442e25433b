"""Tests for genflow.utils.logging_factory module."""

import logging

import pytest

from genflow.utils.logging_factory import ENGINE_LOGGERS, LoggingFactory, get_logger


def _clear_root():
    root = logging.getLogger()
    for handler in root.handlers[:]:
        if isinstance(handler, logging.FileHandler) or type(handler) is logging.StreamHandler:
            handler.close()
            root.removeHandler(handler)
    root.setLevel(logging.WARNING)


class TestLoggingFactoryInitialize:
    """Tests for LoggingFactory.initialize() method."""

    def setup_method(self):
        """Reset LoggingFactory state before each test."""
        LoggingFactory.reset()
        _clear_root()

    def teardown_method(self):
        LoggingFactory.reset()
        _clear_root()
        for name in ENGINE_LOGGERS + ("genflow",):
            logging.getLogger(name).setLevel(logging.NOTSET)

    def test_initialize_without_log_dir(self):
        LoggingFactory.initialize(level=logging.DEBUG)

        root = logging.getLogger()
        assert LoggingFactory._initialized is True
        assert LoggingFactory._log_dir is None
        assert root.level == logging.DEBUG
        assert not any(isinstance(h, logging.FileHandler) for h in root.handlers)

    def test_initialize_writes_log_file(self, tmp_path):
        log_dir = tmp_path / "logs"

        LoggingFactory.initialize(log_dir=log_dir)
        logging.getLogger("genflow.test").warning("written to file")
        for handler in logging.getLogger().handlers:
            handler.flush()

        assert LoggingFactory._log_dir == log_dir
        assert "written to file" in (log_dir / "genflow.log").read_text()

    def test_custom_handlers_replace_default_stream(self):
        handler = logging.NullHandler()

        LoggingFactory.initialize(handlers=[handler])

        assert handler in logging.getLogger().handlers
        logging.getLogger().removeHandler(handler)

    def test_initialize_only_once(self):
        LoggingFactory.initialize(level=logging.ERROR)
        LoggingFactory.initialize(level=logging.DEBUG)

        assert logging.getLogger().level == logging.ERROR

    def test_engine_loggers_follow_level(self):
        LoggingFactory.initialize(level=logging.WARNING)

        for name in ENGINE_LOGGERS:
            assert logging.getLogger(name).level == logging.WARNING


class TestLoggingFactoryHelpers:
    """Tests for get_logger, set_level and configure_verbose."""

    def setup_method(self):
        LoggingFactory.reset()
        _clear_root()

    def teardown_method(self):
        LoggingFactory.reset()
        _clear_root()
        for name in ENGINE_LOGGERS + ("genflow", "genflow.custom"):
            logging.getLogger(name).setLevel(logging.NOTSET)

    def test_get_logger_auto_initializes(self):
        logger = get_logger("genflow.custom")

        assert logger.name == "genflow.custom"
        assert LoggingFactory._initialized is True

    def test_set_level(self):
        LoggingFactory.set_level("genflow.custom", logging.ERROR)

        assert logging.getLogger("genflow.custom").level == logging.ERROR

    @pytest.mark.parametrize("verbose,level", [(True, logging.DEBUG), (False, logging.INFO)])
    def test_configure_verbose(self, verbose, level):
        LoggingFactory.configure_verbose(verbose)

        assert logging.getLogger().level == level
        assert logging.getLogger("genflow").level == level
        assert all(logging.getLogger(name).level == level for name in ENGINE_LOGGERS)
