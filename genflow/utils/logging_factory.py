"""Centralized logging setup for genflow.

Handles one-shot initialization of the logging system, the optional run log
file, and verbosity switching for the engine's loggers.

Usage:
    # Explicit initialization (optional - auto-initializes on first use)
    LoggingFactory.initialize(log_dir=Path("logs"), level=logging.INFO)

    logger = LoggingFactory.get_logger(__name__)
    logger.info("Run started")
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Loggers that get their own level on top of the root level
ENGINE_LOGGERS = (
    "genflow.orchestration.workflow_engine",
    "genflow.orchestration",
    "genflow.utils.retry",
)


class LoggingFactory:
    """Factory for creating and configuring loggers consistently.

    Initialization happens once; later calls to initialize() are ignored
    until reset() is called.

    Class Attributes:
        _initialized: Flag to ensure single initialization
        _log_dir: Directory where genflow.log is written, if file logging is on
    """

    _initialized = False
    _log_dir: Optional[Path] = None

    @classmethod
    def initialize(
        cls,
        log_dir: Optional[Path] = None,
        level: int = logging.INFO,
        format_string: Optional[str] = None,
        handlers: Optional[List[logging.Handler]] = None,
    ) -> None:
        """Initialize the logging system once for the entire application.

        Args:
            log_dir: Directory for genflow.log. No log file when None.
            level: Root logging level
            format_string: Format for the default handlers
            handlers: Console handlers to install instead of a plain
                StreamHandler (the CLI passes a rich handler here)
        """
        if cls._initialized:
            return

        format_string = format_string or DEFAULT_FORMAT
        installed: List[logging.Handler] = list(handlers) if handlers else [logging.StreamHandler()]

        if log_dir:
            cls._log_dir = Path(log_dir)
            cls._log_dir.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(cls._log_dir / "genflow.log")
            file_handler.setFormatter(logging.Formatter(format_string))
            installed.append(file_handler)

        logging.basicConfig(level=level, format=format_string, handlers=installed, force=True)

        for name in ENGINE_LOGGERS:
            logging.getLogger(name).setLevel(level)

        cls._initialized = True

    @classmethod
    def get_logger(cls, name: str) -> logging.Logger:
        """Get a logger, initializing with defaults on first use."""
        if not cls._initialized:
            cls.initialize()
        return logging.getLogger(name)

    @classmethod
    def set_level(cls, name: str, level: int) -> None:
        logging.getLogger(name).setLevel(level)

    @classmethod
    def configure_verbose(cls, verbose: bool = False) -> None:
        """Switch the root and engine loggers between DEBUG and INFO."""
        level = logging.DEBUG if verbose else logging.INFO

        logging.getLogger().setLevel(level)
        logging.getLogger("genflow").setLevel(level)
        for name in ENGINE_LOGGERS:
            logging.getLogger(name).setLevel(level)

    @classmethod
    def reset(cls) -> None:
        """Forget the previous initialization (used by tests)."""
        cls._initialized = False
        cls._log_dir = None


def get_logger(name: str) -> logging.Logger:
    """Shortcut for LoggingFactory.get_logger()."""
    return LoggingFactory.get_logger(name)
