"""Cooldown-gated user alerts for remote changes and fetch failures."""

import logging
import time
from enum import Enum
from typing import Any, Callable

from .constants import APP_NAME, DEFAULT_NOTIFICATION_COOLDOWN
from .git_wrapper import sanitize
from .system import SystemStrategy, get_system

logger = logging.getLogger(APP_NAME)


class NotificationKind(Enum):
    """Alert categories; each is suppressed independently per repository."""

    REMOTE_CHANGES = "remote-changes"
    FETCH_ERROR = "fetch-error"


def format_notification(kind: NotificationKind, payload: dict[str, Any]) -> tuple[str, str]:
    """Builds the (title, message) pair for an alert.

    Args:
        kind (NotificationKind): The alert category.
        payload (dict[str, Any]): 'name' plus 'commits' or 'error' depending on kind.

    Returns:
        tuple[str, str]: The notification title and body.
    """
    name = payload.get("name", "repository")
    if kind is NotificationKind.REMOTE_CHANGES:
        count = int(payload.get("commits", 0))
        noun = "commit" if count == 1 else "commits"
        return "Remote Changes", f"Repository '{name}' has {count} new {noun} available"

    error = sanitize(str(payload.get("error", "unknown error")))
    return "Fetch Failed", f"Failed to fetch repository '{name}': {error}"


class Notifier:
    """Dispatches alerts, suppressing repeats inside a cooldown window.

    Suppression is tracked per (repository id, kind). The global enable flag
    gates delivery without touching suppression state.

    Attributes:
        cooldown (float): Seconds before an identical alert may repeat.
        enabled (bool): Whether alerts are delivered at all.
    """

    def __init__(
        self,
        sink: SystemStrategy | None = None,
        cooldown: float = DEFAULT_NOTIFICATION_COOLDOWN,
        enabled: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.sink = sink or get_system()
        self.cooldown = cooldown
        self.enabled = enabled
        self._clock = clock
        self._last_shown: dict[tuple[str, NotificationKind], float] = {}

    def set_enabled(self, enabled: bool) -> None:
        self.enabled = enabled

    @property
    def tracked_count(self) -> int:
        return len(self._last_shown)

    def clear_tracking(self) -> None:
        """Forgets every suppression entry."""
        count = len(self._last_shown)
        self._last_shown.clear()
        logger.debug(f"Cleared {count} tracked notifications")

    def _purge(self, now: float) -> None:
        cutoff = now - self.cooldown * 2
        for key in [k for k, shown in self._last_shown.items() if shown < cutoff]:
            del self._last_shown[key]

    def notify(
        self,
        kind: NotificationKind,
        repository_id: str,
        payload: dict[str, Any] | None = None,
    ) -> bool:
        """Shows an alert unless it is disabled or inside its cooldown window.

        Args:
            kind (NotificationKind): The alert category.
            repository_id (str): The repository the alert is about.
            payload (dict[str, Any] | None, optional): Message details.

        Returns:
            bool: True if the alert was delivered, False if suppressed.
        """
        payload = payload or {}
        now = self._clock()
        self._purge(now)

        if not self.enabled:
            logger.debug(
                f"Notification suppressed (disabled): {kind.value} for {repository_id}"
            )
            return False

        key = (repository_id, kind)
        last = self._last_shown.get(key)
        if last is not None and now - last < self.cooldown:
            logger.debug(
                f"Notification suppressed (cooldown): {kind.value} for {repository_id}"
            )
            return False

        title, message = format_notification(kind, payload)
        logger.debug(f"Showing {kind.value} notification for {repository_id}: {message}")
        try:
            self.sink.notify(
                title, message, urgent=kind is NotificationKind.FETCH_ERROR
            )
        except Exception as e:
            logger.warning(f"Notification delivery failed: {e}")

        self._last_shown[key] = now
        return True
