import os
from pathlib import Path

"""Global constants and path definitions for Git Sentinel.

This module defines the filesystem layout (adhering to XDG standards where applicable),
application identifiers, the git command allow-list, and the default timing values
used across the application.
"""

# --- Identity ---
APP_NAME = "git-sentinel"
"""str: The human-readable application name."""

# --- Paths ---
_XDG_STATE = os.environ.get("XDG_STATE_HOME")
_BASE_STATE = Path(_XDG_STATE) if _XDG_STATE else Path.home() / ".local/state"

STATE_DIR = _BASE_STATE / "git-sentinel"
"""Path: The directory for runtime state data (logs, registry)."""

REGISTRY_FILE = STATE_DIR / "repositories.json"
"""Path: The file storing the registered repositories and their fetch metadata."""

LOG_FILE = STATE_DIR / "sentinel.log"
"""Path: The file path for the daemon process logs."""

# --- Configuration Paths ---
CONFIG_DIR: Path = Path.home() / ".config/git-sentinel"
"""Path: The directory for user configuration files."""

CONFIG_FILE: Path = CONFIG_DIR / "config.toml"
"""Path: The main configuration file path."""

# --- Command Validation ---
ALLOWED_SUBCOMMANDS = frozenset(
    {
        "add",
        "branch",
        "checkout",
        "commit",
        "config",
        "diff",
        "fetch",
        "log",
        "ls-files",
        "ls-tree",
        "merge",
        "pull",
        "push",
        "rebase",
        "remote",
        "rev-list",
        "rev-parse",
        "show",
        "status",
        "tag",
        "version",
    }
)
"""frozenset[str]: Git subcommands the executor is permitted to run."""

SHELL_METACHARACTERS = ("&&", "||", ";", "|", ">", "<", "`", "$(", "\n", "\r")
"""
tuple[str, ...]: Patterns rejected in any argument, even though no shell
is ever invoked.
"""

# --- Timing Defaults (seconds) ---
DEFAULT_COMMAND_TIMEOUT = 10.0
"""float: Upper bound for a single local git command."""

DEFAULT_FETCH_TIMEOUT = 30.0
"""float: Upper bound for a network-bound fetch or push."""

DEFAULT_FETCH_INTERVAL = 300.0
"""float: Interval between scheduled fetches of one repository (5 minutes)."""

DEFAULT_POLL_INTERVAL = 30.0
"""float: Interval between status cache refreshes while a consumer is active."""

DEFAULT_NOTIFICATION_COOLDOWN = 60.0
"""float: Minimum time before an identical alert may repeat for one repository."""

# --- Daemon ---
PID_FILE = STATE_DIR / "daemon.pid"
"""Path: The file holding the process id of the running daemon."""
