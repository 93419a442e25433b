"""Engine configuration loaded from environment variables."""
import logging
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from ..exceptions import ConfigurationError
from ..utils.retry import RetryPolicy

logger = logging.getLogger(__name__)

_VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _parse_bool(value: str | bool | None) -> bool:
    """Parse boolean value from various formats."""
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    if isinstance(value, str):
        return value.lower() in ("true", "1", "yes", "on", "enabled")
    return bool(value)


def _getenv(key: str, default: str = "") -> str:
    """Get environment variable with default."""
    return os.getenv(key, default)


def _getenv_int(key: str, default: int) -> int:
    """Get integer environment variable with validation.

    Raises:
        ConfigurationError: If value cannot be parsed as integer
    """
    value = os.getenv(key)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError as e:
        raise ConfigurationError(
            f"Invalid integer value for {key}='{value}'. Expected integer, got: {value}"
        ) from e


def _getenv_float(key: str, default: float) -> float:
    """Get float environment variable with validation.

    Raises:
        ConfigurationError: If value cannot be parsed as float
    """
    value = os.getenv(key)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError as e:
        raise ConfigurationError(
            f"Invalid float value for {key}='{value}'. Expected float, got: {value}"
        ) from e


def load_env_file(path: Optional[Path] = None) -> Optional[Path]:
    """Load a .env file without overriding variables already set.

    Searches the current directory and the home directory when ``path`` is
    not given. Returns the file that was loaded, if any.
    """
    candidates = [path] if path else [Path(".env"), Path.home() / ".genflow" / ".env"]
    for env_path in candidates:
        if env_path.exists():
            load_dotenv(env_path, override=False)
            logger.debug(f"Loaded environment from {env_path}")
            return env_path
    return None


@dataclass
class EngineConfig:
    """Engine configuration loaded from environment variables."""

    # ========== Retry Settings ==========
    retry_initial_delay: float = field(default_factory=lambda: _getenv_float("GENFLOW_RETRY_INITIAL_DELAY", 10.0))
    retry_backoff: float = field(default_factory=lambda: _getenv_float("GENFLOW_RETRY_BACKOFF", 2.0))
    retry_max_attempts: int = field(default_factory=lambda: _getenv_int("GENFLOW_RETRY_MAX_ATTEMPTS", 3))
    retry_max_delay: float = field(default_factory=lambda: _getenv_float("GENFLOW_RETRY_MAX_DELAY", 300.0))
    retry_jitter: bool = field(default_factory=lambda: _parse_bool(_getenv("GENFLOW_RETRY_JITTER", "false")))

    # ========== Execution ==========
    step_timeout: float = field(default_factory=lambda: _getenv_float("GENFLOW_STEP_TIMEOUT", 1800.0))

    # ========== State Persistence ==========
    state_db: Path = field(
        default_factory=lambda: Path(
            _getenv("GENFLOW_STATE_DB", str(Path.home() / ".genflow" / "workflows.db"))
        ).expanduser()
    )
    state_retention_days: int = field(default_factory=lambda: _getenv_int("GENFLOW_STATE_RETENTION_DAYS", 30))

    # ========== Logging ==========
    log_level: str = field(default_factory=lambda: _getenv("GENFLOW_LOG_LEVEL", "INFO").upper())

    def __post_init__(self):
        """Validate value ranges."""
        if self.retry_max_attempts < 1:
            raise ConfigurationError("GENFLOW_RETRY_MAX_ATTEMPTS must be at least 1")
        if self.retry_initial_delay < 0:
            raise ConfigurationError("GENFLOW_RETRY_INITIAL_DELAY must be non-negative")
        if self.retry_backoff < 1:
            raise ConfigurationError("GENFLOW_RETRY_BACKOFF must be >= 1")
        if self.retry_max_delay < self.retry_initial_delay:
            raise ConfigurationError("GENFLOW_RETRY_MAX_DELAY must be >= GENFLOW_RETRY_INITIAL_DELAY")
        if self.step_timeout <= 0:
            raise ConfigurationError("GENFLOW_STEP_TIMEOUT must be positive")
        if self.state_retention_days < 0:
            raise ConfigurationError("GENFLOW_STATE_RETENTION_DAYS must be non-negative")
        if self.log_level not in _VALID_LOG_LEVELS:
            raise ConfigurationError(
                f"GENFLOW_LOG_LEVEL must be one of {', '.join(_VALID_LOG_LEVELS)}, got '{self.log_level}'"
            )

    def retry_policy(self) -> RetryPolicy:
        """Build the RetryPolicy described by this configuration."""
        try:
            return RetryPolicy(
                initial_delay=self.retry_initial_delay,
                backoff_coefficient=self.retry_backoff,
                max_attempts=self.retry_max_attempts,
                max_delay=self.retry_max_delay,
                jitter=self.retry_jitter,
            )
        except ValueError as e:
            raise ConfigurationError(str(e)) from e


# Singleton instance with thread-safe initialization
_config_instance: Optional[EngineConfig] = None
_config_lock = threading.Lock()


def get_config() -> EngineConfig:
    """Get global config instance (singleton pattern, thread-safe)."""
    global _config_instance
    if _config_instance is None:
        with _config_lock:
            # Double-check pattern to prevent race conditions
            if _config_instance is None:
                load_env_file()
                _config_instance = EngineConfig()
    return _config_instance


def reset_config() -> None:
    """Drop the cached instance so the next get_config() re-reads the environment."""
    global _config_instance
    with _config_lock:
        _config_instance = None


__all__ = ["EngineConfig", "get_config", "reset_config", "load_env_file"]
