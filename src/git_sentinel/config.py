import logging
import re
import tomllib
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from .constants import (
    APP_NAME,
    CONFIG_FILE,
    DEFAULT_COMMAND_TIMEOUT,
    DEFAULT_FETCH_INTERVAL,
    DEFAULT_FETCH_TIMEOUT,
    DEFAULT_NOTIFICATION_COOLDOWN,
    DEFAULT_POLL_INTERVAL,
)

logger = logging.getLogger(APP_NAME)

_SIZE_KEYS = {"max_log_size"}
_TIME_KEYS = {"timeout", "fetch_timeout", "fetch_interval", "cooldown", "poll_interval"}
_SIZE_UNITS = {"b": 1, "k": 1024, "m": 1024**2, "g": 1024**3}
_SIZE_PATTERN = re.compile(r"(\d+(?:\.\d+)?)\s*([bkmg])b?")


def parse_size(value: int | str) -> int:
    """Converts a byte count or a size such as '512KB' or '1.5mb' to bytes.

    Raises:
        ValueError: For booleans, unknown units, and sizes below one byte.
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid size format '{value}'")
    if isinstance(value, int):
        size = value
    else:
        match = _SIZE_PATTERN.fullmatch(str(value).strip().lower())
        if not match:
            raise ValueError(f"Invalid size format '{value}'")
        size = int(float(match.group(1)) * _SIZE_UNITS[match.group(2)])
    if size <= 0:
        raise ValueError(f"Size must be positive, got '{value}'")
    return size


def parse_time(value: int | float | str) -> float:
    """Converts human-readable time strings (e.g., '1hr', '30m', '500ms') to seconds."""
    if isinstance(value, bool):
        raise ValueError(f"Invalid time format '{value}'")
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        match = re.match(
            r"^(\d+(?:\.\d+)?)\s*(ms|s|sec|m|min|h|hr)s?$", str(value).strip().lower()
        )
        if not match:
            raise ValueError(f"Invalid time format '{value}'")
        num, unit = float(match.group(1)), match.group(2)
        multiplier = {
            "ms": 0.001,
            "s": 1,
            "sec": 1,
            "m": 60,
            "min": 60,
            "h": 3600,
            "hr": 3600,
        }
        seconds = num * multiplier[unit]
    if seconds <= 0:
        raise ValueError(f"Duration must be positive, got '{value}'")
    return seconds


@dataclass
class ExecutorConfig:
    """Git command execution settings.

    Attributes:
        timeout (float): Seconds allowed for a local git command.
        fetch_timeout (float): Seconds allowed for a fetch or push.
        path_entries (list[str]): Directories searched for git ahead of PATH.
    """

    timeout: float = DEFAULT_COMMAND_TIMEOUT
    fetch_timeout: float = DEFAULT_FETCH_TIMEOUT
    path_entries: list[str] = field(default_factory=list)


@dataclass
class SchedulerConfig:
    """Fetch scheduling settings.

    Attributes:
        fetch_interval (float): Default seconds between fetches of a repository.
        fetch_on_startup (bool): Whether the daemon fetches everything when it starts.
    """

    fetch_interval: float = DEFAULT_FETCH_INTERVAL
    fetch_on_startup: bool = False


@dataclass
class NotificationsConfig:
    enabled: bool = True
    cooldown: float = DEFAULT_NOTIFICATION_COOLDOWN


@dataclass
class StatusConfig:
    poll_interval: float = DEFAULT_POLL_INTERVAL


@dataclass
class LimitsConfig:
    """Resource limitation settings.

    Attributes:
        max_log_size (int): Max bytes for log files before rotation.
    """

    max_log_size: int = 5 * 1024 * 1024


@dataclass
class LoggingConfig:
    debug: bool = False


@dataclass
class Config:
    """Global configuration aggregator.

    Attributes:
        executor (ExecutorConfig): Command execution settings.
        scheduler (SchedulerConfig): Fetch scheduling settings.
        notifications (NotificationsConfig): Alert settings.
        status (StatusConfig): Status polling settings.
        limits (LimitsConfig): Resource limits.
        logging (LoggingConfig): Log verbosity.
    """

    executor: ExecutorConfig = field(default_factory=ExecutorConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    notifications: NotificationsConfig = field(default_factory=NotificationsConfig)
    status: StatusConfig = field(default_factory=StatusConfig)
    limits: LimitsConfig = field(default_factory=LimitsConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """Loads configuration from defaults and the user config file.

        Args:
            path (Path | None): The TOML file to read. Defaults to CONFIG_FILE.

        Returns:
            Config: The merged configuration object.
        """
        instance = cls()
        config_path = path or CONFIG_FILE
        if config_path.exists():
            instance._merge_from_file(config_path)
        return instance

    def _merge_from_file(self, path: Path) -> None:
        """Parses a TOML file and merges each known section into the instance."""
        try:
            with open(path, "rb") as f:
                data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            logger.error(f"Config syntax error in {path}: {e}")
            return
        except OSError as e:
            logger.warning(f"Failed to load config from {path}: {e}")
            return

        sections = self.__dataclass_fields__.keys()
        unknown = set(data) - set(sections)
        if unknown:
            logger.warning(
                f"Unknown config sections in {path}: {', '.join(sorted(unknown))}. Ignoring."
            )

        for name in sections:
            updates = data.get(name)
            if updates is None:
                continue
            if not isinstance(updates, dict):
                logger.warning(f"Config section [{name}] must be a table. Ignoring.")
                continue
            setattr(self, name, self._update_dataclass(name, getattr(self, name), updates))

    @staticmethod
    def _update_dataclass(section_name: str, instance: Any, updates: dict) -> Any:
        """Updates a dataclass, warning on invalid keys and parsing human-readable formats."""
        valid_keys = instance.__dataclass_fields__.keys()
        filtered_updates = {}

        invalid_keys = set(updates.keys()) - set(valid_keys)
        if invalid_keys:
            logger.warning(
                f"Unknown config keys in [{section_name}]: {', '.join(sorted(invalid_keys))}. Ignoring."
            )

        for k, v in updates.items():
            if k not in valid_keys:
                continue

            try:
                if k in _SIZE_KEYS:
                    filtered_updates[k] = parse_size(v)
                elif k in _TIME_KEYS:
                    filtered_updates[k] = parse_time(v)
                elif k == "path_entries":
                    if not isinstance(v, list) or not all(isinstance(p, str) for p in v):
                        raise ValueError("expected a list of directory strings")
                    filtered_updates[k] = list(v)
                elif isinstance(getattr(instance, k), bool):
                    if not isinstance(v, bool):
                        raise ValueError(f"expected true or false, got {v!r}")
                    filtered_updates[k] = v
                else:
                    filtered_updates[k] = v
            except ValueError as e:
                logger.warning(
                    f"Config error in [{section_name}].{k}: {e}. Falling back to default."
                )

        return replace(instance, **filtered_updates)
