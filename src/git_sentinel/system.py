import logging
import subprocess
import sys

from .constants import APP_NAME

logger = logging.getLogger(APP_NAME)


class SystemStrategy:
    """Base class defining how alerts reach the desktop.

    The base implementation only logs, which is what headless hosts get.
    """

    def notify(self, title: str, message: str, urgent: bool = False) -> None:
        """Sends a desktop notification.

        Args:
            title (str): The notification title.
            message (str): The notification body text.
            urgent (bool, optional): Whether the alert reports a failure.
                Defaults to False.
        """
        logger.info(f"NOTIFY {title}: {message}")


class MacOSStrategy(SystemStrategy):
    """System strategy implementation for macOS."""

    def notify(self, title: str, message: str, urgent: bool = False) -> None:
        """Sends a notification using AppleScript."""
        # Sanitize quotes to prevent AppleScript syntax errors.
        clean_msg = message.replace('"', "'")
        clean_title = title.replace('"', "'")
        script = (
            f'display notification "{clean_msg}" '
            f'with title "{clean_title}" subtitle "{APP_NAME}"'
        )
        try:
            subprocess.run(
                ["osascript", "-e", script], stderr=subprocess.DEVNULL, timeout=5
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.debug(f"osascript notification failed: {e}")


class LinuxStrategy(SystemStrategy):
    """System strategy implementation for Linux."""

    def notify(self, title: str, message: str, urgent: bool = False) -> None:
        """Sends a notification using `notify-send`."""
        cmd = ["notify-send", "--app-name", APP_NAME]
        if urgent:
            cmd.extend(["--urgency", "critical"])
        cmd.extend([title, message])
        try:
            subprocess.run(cmd, stderr=subprocess.DEVNULL, timeout=5)
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.debug(f"notify-send failed: {e}")


def get_system() -> SystemStrategy:
    """Factory function to retrieve the platform-specific system strategy.

    Returns:
        SystemStrategy: An instance of MacOSStrategy, LinuxStrategy, or the base
        SystemStrategy depending on the operating system.
    """
    if sys.platform == "darwin":
        return MacOSStrategy()
    elif sys.platform.startswith("linux"):
        return LinuxStrategy()
    else:
        return SystemStrategy()
