"""Git Sentinel: background fetch scheduling and status monitoring for git repositories.

This package provides the command executor, status computation, fetch
scheduler, notification dispatcher, and status cache behind the
`git-sentinel` command-line interface and daemon.
"""

from . import (
    cache,
    cli,
    config,
    constants,
    daemon,
    errors,
    git_wrapper,
    notify,
    ops,
    registry,
    scheduler,
    status,
    system,
)

__all__ = [
    "cache",
    "cli",
    "config",
    "constants",
    "daemon",
    "errors",
    "git_wrapper",
    "notify",
    "ops",
    "registry",
    "scheduler",
    "status",
    "system",
]
