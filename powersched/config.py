"""
Scheduler configuration management.

Handles loading, saving, and validating the scheduler settings, and reading
the directory of per-command TOML files that registers commands with the
command store.
"""

import json
import logging
import math
import os
import re
import shlex
import tomllib
from dataclasses import dataclass, field, asdict
from datetime import timedelta
from pathlib import Path
from typing import Optional, List, Dict, Any, Union

from dotenv import load_dotenv

from powersched.store import CommandStore, StoreError

load_dotenv()

logger = logging.getLogger(__name__)

ENV_DATA_DIR = "POWERSCHED_DATA_DIR"
ENV_CONFIG_PATH = "POWERSCHED_CONFIG_PATH"
DEFAULT_DATA_DIR = "~/.powersched"


class ConfigError(Exception):
    """Raised for invalid settings or command files."""
    pass


def get_data_dir() -> Path:
    """Get the data directory from environment or default."""
    return Path(os.environ.get(ENV_DATA_DIR) or DEFAULT_DATA_DIR).expanduser()


def _get_default_log_file() -> str:
    """Get default log file path from the data directory."""
    return str(get_data_dir() / "logs" / "powersched.log")


_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h|d)")
_DURATION_UNITS = {
    'ms': 0.001,
    's': 1,
    'm': 60,
    'h': 3600,
    'd': 86400,
}


def parse_duration(value: Union[str, int, float]) -> timedelta:
    """
    Parse a duration such as "24h", "1h30m", "90s" or "250ms".

    Numbers (and numeric strings) are taken as seconds.

    Raises:
        ValueError: If the value is not a valid, non-negative duration
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        text = value.strip().lower()
        try:
            seconds = float(text)
        except ValueError:
            parts = _DURATION_PART.findall(text)
            if not parts or "".join(n + u for n, u in parts) != text:
                raise ValueError(f"Invalid duration: {value!r}")
            seconds = sum(float(n) * _DURATION_UNITS[u] for n, u in parts)

    if not math.isfinite(seconds):
        raise ValueError(f"Duration must be finite: {value!r}")
    if seconds < 0:
        raise ValueError(f"Duration must not be negative: {value!r}")
    try:
        return timedelta(seconds=seconds)
    except OverflowError as e:
        raise ValueError(f"Duration is too large: {value!r}") from e


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"
    file: Optional[str] = None  # Set dynamically in __post_init__
    max_bytes: int = 10 * 1024 * 1024  # 10MB
    backup_count: int = 5

    def __post_init__(self):
        if self.file is None:
            self.file = _get_default_log_file()


@dataclass
class SchedulerConfig:
    """
    Scheduler settings.

    Loaded from a JSON file; missing keys keep their defaults.

    Configuration path priority:
    1. Explicit path argument to load()
    2. POWERSCHED_CONFIG_PATH environment variable
    3. Default: <data dir>/config.json
    """
    store_path: Optional[str] = None  # Set dynamically in __post_init__
    config_dir: Optional[str] = None  # Directory of *.toml command files
    prune_unlisted: bool = True
    power_poll_seconds: float = 2.0
    pass_interval_seconds: float = 5.0
    max_workers: int = 5
    lock_timeout_seconds: Optional[float] = None
    stale_running_seconds: Optional[float] = None
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    config_path: Optional[Path] = field(default=None, compare=False, repr=False)

    def __post_init__(self):
        if self.store_path is None:
            self.store_path = str(get_data_dir() / "commands.json")

    @staticmethod
    def resolve_path(config_path: Optional[str] = None) -> Path:
        """Resolve the settings file path from argument, environment or default."""
        if config_path:
            return Path(config_path).expanduser()
        if os.environ.get(ENV_CONFIG_PATH):
            return Path(os.environ[ENV_CONFIG_PATH]).expanduser()
        return get_data_dir() / "config.json"

    @classmethod
    def load(cls, config_path: Optional[str] = None) -> 'SchedulerConfig':
        """
        Load configuration from a JSON file, or defaults if it does not exist.

        Raises:
            ConfigError: If the file exists but cannot be read or parsed
        """
        path = cls.resolve_path(config_path)
        if not path.exists():
            logger.info(f"No config found at {path}, using defaults")
            config = cls()
            config.config_path = path
            return config

        try:
            with open(path, 'r') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"Failed to load config from {path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigError(f"Config file {path} must contain a JSON object")

        try:
            logging_data = data.pop('logging', None) or {}
            config = cls(**data, logging=LoggingConfig(**logging_data))
        except TypeError as e:
            raise ConfigError(f"Unknown or invalid setting in {path}: {e}") from e

        config.config_path = path
        logger.info(f"Loaded configuration from {path}")
        return config

    def save(self, config_path: Optional[str] = None):
        """Save configuration to a JSON file."""
        path = Path(config_path).expanduser() if config_path else (self.config_path or self.resolve_path())
        path.parent.mkdir(parents=True, exist_ok=True)

        data = asdict(self)
        data.pop('config_path')

        with open(path, 'w') as f:
            json.dump(data, f, indent=2)

        self.config_path = path
        logger.info(f"Saved configuration to {path}")

    def validate(self) -> List[str]:
        """
        Validate configuration.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []

        if not self.store_path:
            errors.append("'store_path' cannot be empty")
        if self.power_poll_seconds <= 0:
            errors.append("'power_poll_seconds' must be positive")
        if self.pass_interval_seconds <= 0:
            errors.append("'pass_interval_seconds' must be positive")
        if self.max_workers < 1:
            errors.append("'max_workers' must be at least 1")
        if self.lock_timeout_seconds is not None and self.lock_timeout_seconds < 0:
            errors.append("'lock_timeout_seconds' must not be negative")
        if self.stale_running_seconds is not None:
            try:
                if parse_duration(self.stale_running_seconds) <= timedelta(0):
                    errors.append("'stale_running_seconds' must be positive")
            except (ValueError, AttributeError) as e:
                errors.append(f"'stale_running_seconds': {e}")
        if self.logging.level.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            errors.append(f"Unknown logging level '{self.logging.level}'")

        return errors

    def create_store(self) -> CommandStore:
        """Create the command store described by this configuration."""
        return CommandStore(self.store_path, lock_timeout=self.lock_timeout_seconds)


@dataclass
class CommandFile:
    """One command as declared in a TOML command file."""
    name: str
    absolute_path: str
    arguments: List[str]
    interval: timedelta

    @classmethod
    def from_toml(cls, path: Path) -> 'CommandFile':
        """
        Read a command file. The command name is the file name without extension.

        Raises:
            ConfigError: If the file cannot be read or is missing keys
        """
        try:
            with open(path, 'rb') as f:
                data: Dict[str, Any] = tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as e:
            raise ConfigError(f"Cannot read command file {path}: {e}") from e

        absolute_path = data.get('absolute_path')
        if not isinstance(absolute_path, str) or not absolute_path:
            raise ConfigError(f"{path}: 'absolute_path' is required")
        if not os.path.isabs(absolute_path):
            logger.warning(f"{path}: 'absolute_path' is not absolute: {absolute_path}")

        arguments = data.get('arguments', [])
        if isinstance(arguments, str):
            arguments = shlex.split(arguments)
        if not isinstance(arguments, list) or not all(isinstance(a, str) for a in arguments):
            raise ConfigError(f"{path}: 'arguments' must be a string or a list of strings")

        if 'interval' not in data:
            raise ConfigError(f"{path}: 'interval' is required")
        try:
            interval = parse_duration(data['interval'])
        except (ValueError, AttributeError) as e:
            raise ConfigError(f"{path}: {e}") from e

        return cls(name=path.stem, absolute_path=absolute_path, arguments=arguments, interval=interval)


def load_command_files(store: CommandStore, directory, prune: bool = True) -> List[str]:
    """
    Register every ``*.toml`` command file in a directory with the store.

    Invalid files are logged and skipped. When ``prune`` is set, commands that
    no longer have a file are removed from the store afterwards; a command
    whose file exists but is invalid is left in place.

    Returns:
        Names of the commands that were loaded

    Raises:
        ConfigError: If the directory cannot be listed
    """
    directory = Path(directory).expanduser()
    logger.info(f"Reading command files from {directory}")

    try:
        paths = sorted(p for p in directory.iterdir() if p.suffix == ".toml" and p.is_file())
    except OSError as e:
        raise ConfigError(f"Could not list command files in {directory}: {e}") from e

    loaded: List[str] = []
    # Broken files keep their command (and its last run) until fixed or deleted
    keep: List[str] = []
    updated = 0
    for path in paths:
        keep.append(path.stem)
        try:
            command_file = CommandFile.from_toml(path)
        except ConfigError as e:
            logger.error(f"Skipping command file: {e}")
            continue

        try:
            if store.upsert(
                command_file.name,
                command_file.absolute_path,
                command_file.arguments,
                command_file.interval
            ):
                updated += 1
        except StoreError as e:
            logger.error(f"Couldn't add command '{command_file.name}' from {path}: {e}")
            continue

        loaded.append(command_file.name)

    logger.info(
        f"Loaded {len(loaded)} command(s) from {directory} "
        f"({len(loaded) - updated} new, {updated} updated)"
    )

    if prune:
        try:
            store.prune_except(keep)
        except StoreError as e:
            logger.error(f"Could not remove commands that have no command file anymore: {e}")

    return loaded
