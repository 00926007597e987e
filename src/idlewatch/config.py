# =============================================================================
# Configuration Management
# =============================================================================
# Handles loading, saving, and validating idlewatch configuration.
#
# XDG Base Directory Compliance (https://specifications.freedesktop.org/basedir-spec/):
#   - Config:  $XDG_CONFIG_HOME/idlewatch/  (default: ~/.config/idlewatch/)
#   - Data:    $XDG_DATA_HOME/idlewatch/    (default: ~/.local/share/idlewatch/)
#   - State:   $XDG_STATE_HOME/idlewatch/   (default: ~/.local/state/idlewatch/)
#
# Files:
#   - config.toml: Service configuration (timeouts, intervals, logging)
#   - idlewatch.db: SQLite mailbox store and sync queue (in data directory)
#   - idlewatch.log: Optional log file (in state directory)
# =============================================================================

import os
import tomllib  # Built into Python 3.11+
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import tomli_w  # For writing TOML (tomllib is read-only)


# =============================================================================
# XDG Directory Management
# =============================================================================

# Application identifier used in all XDG paths
APP_NAME = "idlewatch"


def get_xdg_config_home() -> Path:
    """
    Returns the XDG config directory for idlewatch.

    Respects $XDG_CONFIG_HOME if set, otherwise uses ~/.config/idlewatch/
    """
    xdg_config = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config:
        base = Path(xdg_config)
    else:
        base = Path.home() / ".config"
    return base / APP_NAME


def get_xdg_data_home() -> Path:
    """
    Returns the XDG data directory for idlewatch.

    Respects $XDG_DATA_HOME if set, otherwise uses ~/.local/share/idlewatch/
    This is where the SQLite database lives.
    """
    xdg_data = os.environ.get("XDG_DATA_HOME")
    if xdg_data:
        base = Path(xdg_data)
    else:
        base = Path.home() / ".local" / "share"
    return base / APP_NAME


def get_xdg_state_home() -> Path:
    """
    Returns the XDG state directory for idlewatch.

    Respects $XDG_STATE_HOME if set, otherwise uses ~/.local/state/idlewatch/
    Log files go here.
    """
    xdg_state = os.environ.get("XDG_STATE_HOME")
    if xdg_state:
        base = Path(xdg_state)
    else:
        base = Path.home() / ".local" / "state"
    return base / APP_NAME


def ensure_directories() -> dict[str, Path]:
    """
    Creates all required XDG directories if they don't exist.

    Returns:
        Dictionary mapping directory type to path.
    """
    dirs = {
        "config": get_xdg_config_home(),
        "data": get_xdg_data_home(),
        "state": get_xdg_state_home(),
    }

    for dir_path in dirs.values():
        dir_path.mkdir(parents=True, exist_ok=True)

    return dirs


# =============================================================================
# Configuration Data Structures
# =============================================================================

@dataclass
class ListenerConfig:
    """
    Configuration for a single mailbox's IDLE listener.

    Attributes:
        idle_timeout: Seconds to stay in one IDLE command before re-issuing it.
                      Most servers drop idle connections at 30 minutes, so
                      this stays just under that.
        reconnect_delay: Seconds to wait after a lost connection before
                         reconnecting.
        folder: Folder to monitor.
    """
    idle_timeout: float = 29 * 60       # 1740 seconds
    reconnect_delay: float = 5
    folder: str = "INBOX"


@dataclass
class ManagerConfig:
    """
    Configuration for the listener supervisor.

    Attributes:
        reconcile_interval: Seconds between reconciliation passes.
        stop_timeout: Seconds to wait after SIGTERM before killing a worker.
    """
    reconcile_interval: float = 60
    stop_timeout: float = 10


@dataclass
class StorageConfig:
    """
    Configuration for the mailbox store and sync queue.

    Attributes:
        database: Path to the SQLite database. Empty = XDG data location.
    """
    database: str = ""


@dataclass
class LoggingConfig:
    """
    Configuration for log output.

    Attributes:
        level: Log level name ("DEBUG", "INFO", ...).
        file: Log file name or path. Relative names go in the XDG state
              directory. Empty = log to stderr only.
    """
    level: str = "INFO"
    file: str = ""


@dataclass
class Config:
    """
    Main configuration container for idlewatch.

    Usage:
        >>> config = Config.load()
        >>> config.listener.idle_timeout
        1740
    """
    listener: ListenerConfig = field(default_factory=ListenerConfig)
    manager: ManagerConfig = field(default_factory=ManagerConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    # Where this config was loaded from (None = defaults)
    source: Path | None = field(default=None, compare=False)

    # -------------------------------------------------------------------------
    # File Paths
    # -------------------------------------------------------------------------

    @staticmethod
    def config_file_path() -> Path:
        """Returns the path to the main config file."""
        return get_xdg_config_home() / "config.toml"

    @staticmethod
    def default_database_path() -> Path:
        """Returns the default path to the SQLite database."""
        return get_xdg_data_home() / "idlewatch.db"

    def database_path(self) -> Path:
        """Returns the configured database path."""
        if self.storage.database:
            return Path(self.storage.database).expanduser()
        return self.default_database_path()

    def log_file_path(self) -> Path | None:
        """Returns the configured log file path, if file logging is on."""
        if not self.logging.file:
            return None
        path = Path(self.logging.file).expanduser()
        if not path.is_absolute():
            path = get_xdg_state_home() / path
        return path

    # -------------------------------------------------------------------------
    # Loading and Saving
    # -------------------------------------------------------------------------

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """
        Load configuration from a config file.

        If no path is given the XDG location is used. A missing default
        config file yields the default configuration; a missing explicit
        path is an error.

        Raises:
            ConfigError: If the config file is missing (explicit path) or invalid.
        """
        if path is None:
            ensure_directories()
            config_path = cls.config_file_path()
            if not config_path.exists():
                return cls()
        else:
            config_path = path
            if not config_path.exists():
                raise ConfigError(f"Config file not found: {config_path}")

        try:
            with open(config_path, "rb") as f:
                data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"Invalid config file: {e}") from e

        config = cls._from_dict(data)
        config.source = config_path
        return config

    def save(self, path: Path | None = None) -> None:
        """Save configuration to the config file."""
        if path is None:
            ensure_directories()
            path = self.config_file_path()
        else:
            path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, "wb") as f:
            tomli_w.dump(self._to_dict(), f)

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> "Config":
        """
        Create a Config object from a dictionary (parsed TOML).

        Raises:
            ConfigError: If a value has the wrong type or is out of range.
        """
        config = cls()

        try:
            listener = data.get("listener", {})
            config.listener = ListenerConfig(
                idle_timeout=float(listener.get("idle_timeout", 29 * 60)),
                reconnect_delay=float(listener.get("reconnect_delay", 5)),
                folder=str(listener.get("folder", "INBOX")),
            )

            manager = data.get("manager", {})
            config.manager = ManagerConfig(
                reconcile_interval=float(manager.get("reconcile_interval", 60)),
                stop_timeout=float(manager.get("stop_timeout", 10)),
            )

            storage = data.get("storage", {})
            config.storage = StorageConfig(
                database=str(storage.get("database", "")),
            )

            log = data.get("logging", {})
            config.logging = LoggingConfig(
                level=str(log.get("level", "INFO")).upper(),
                file=str(log.get("file", "")),
            )
        except (TypeError, ValueError, AttributeError) as e:
            raise ConfigError(f"Invalid config value: {e}") from e

        if config.listener.idle_timeout <= 0:
            raise ConfigError("listener.idle_timeout must be positive")
        if config.listener.reconnect_delay < 0:
            raise ConfigError("listener.reconnect_delay must not be negative")
        if config.manager.reconcile_interval <= 0:
            raise ConfigError("manager.reconcile_interval must be positive")

        return config

    def _to_dict(self) -> dict[str, Any]:
        """Convert Config to a dictionary for TOML serialization."""
        return {
            "listener": {
                "idle_timeout": self.listener.idle_timeout,
                "reconnect_delay": self.listener.reconnect_delay,
                "folder": self.listener.folder,
            },
            "manager": {
                "reconcile_interval": self.manager.reconcile_interval,
                "stop_timeout": self.manager.stop_timeout,
            },
            "storage": {
                "database": self.storage.database,
            },
            "logging": {
                "level": self.logging.level,
                "file": self.logging.file,
            },
        }


# =============================================================================
# Exceptions
# =============================================================================

class ConfigError(Exception):
    """Raised when there's an error loading or parsing configuration."""
    pass


# =============================================================================
# Utility Functions
# =============================================================================

def print_paths(config: Config | None = None) -> None:
    """
    Print all XDG paths for debugging.
    Useful for operators wondering where config/data is stored.
    """
    config = config or Config()
    print(f"Config:  {get_xdg_config_home()}")
    print(f"Data:    {get_xdg_data_home()}")
    print(f"State:   {get_xdg_state_home()}")
    print()
    print(f"Config file:  {config.source or Config.config_file_path()}")
    print(f"Database:     {config.database_path()}")
    print(f"Log file:     {config.log_file_path() or '(stderr only)'}")
