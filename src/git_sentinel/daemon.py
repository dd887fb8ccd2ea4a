import asyncio
import atexit
import contextlib
import logging
import os
import signal
import sys
from logging.handlers import RotatingFileHandler

from .cache import StatusCache
from .config import Config
from .constants import APP_NAME, LOG_FILE, PID_FILE
from .errors import SentinelError
from .git_wrapper import CommandExecutor, sanitize
from .notify import Notifier
from .registry import Registry
from .scheduler import FetchScheduler
from .status import StatusComputer
from .system import SystemStrategy

logger = logging.getLogger(APP_NAME)
logger.setLevel(logging.INFO)


class SanitizingFormatter(logging.Formatter):
    """Masks credentials in every formatted record, tracebacks included."""

    def format(self, record: logging.LogRecord) -> str:
        return sanitize(super().format(record))


def setup_logging(
    interactive: bool, debug: bool = False, max_log_size: int = 5 * 1024 * 1024
) -> None:
    """Configures the logging subsystem.

    Args:
        interactive (bool): If True, logs to stdout. If False, logs to stderr and
            to a rotating log file.
        debug (bool, optional): Whether to log command-level detail. Defaults to False.
        max_log_size (int, optional): Bytes before the log file rotates.
    """
    formatter = SanitizingFormatter(
        "[%(asctime)s] %(levelname)s: %(message)s", "%Y-%m-%d %H:%M:%S"
    )
    logger.setLevel(logging.DEBUG if debug else logging.INFO)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    # Always log to a stream (captured by systemd/launchd in daemon mode).
    stream_handler = logging.StreamHandler(sys.stdout if interactive else sys.stderr)
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    if not interactive:
        LOG_FILE.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            LOG_FILE,
            maxBytes=max_log_size,
            backupCount=5,
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)


class Sentinel:
    """Wires the monitoring components together and runs them until stopped.

    The registry receives every fetch result; the status cache refreshes the
    fetched repository as soon as its result arrives.

    Attributes:
        config (Config): The loaded configuration.
        registry (Registry): The repository store.
        executor (CommandExecutor): The shared git command runner.
        scheduler (FetchScheduler): Owns the fetch timers.
        cache (StatusCache): Holds the latest status of every repository.
    """

    def __init__(
        self,
        config: Config | None = None,
        registry: Registry | None = None,
        sink: SystemStrategy | None = None,
    ):
        self.config = config or Config.load()
        self.registry = registry or Registry.load(
            default_interval=self.config.scheduler.fetch_interval
        )
        self.executor = CommandExecutor(
            timeout=self.config.executor.timeout,
            path_entries=self.config.executor.path_entries,
        )
        self.status = StatusComputer(self.executor)
        self.notifier = Notifier(
            sink,
            cooldown=self.config.notifications.cooldown,
            enabled=self.config.notifications.enabled,
        )
        self.scheduler = FetchScheduler(
            self.registry,
            self.status,
            notifier=self.notifier,
            on_result=self.registry.record_fetch_result,
            fetch_timeout=self.config.executor.fetch_timeout,
            default_interval=self.config.scheduler.fetch_interval,
        )
        self.cache = StatusCache(
            self.registry, self.status, poll_interval=self.config.status.poll_interval
        )
        self.scheduler.subscribe(self.cache.handle_fetch_result)
        self._stop_event: asyncio.Event | None = None
        self._startup_fetch: asyncio.Task | None = None

    async def start(self) -> None:
        """Starts the fetch timers and the status poll loop.

        Raises:
            SentinelError: If git cannot be run.
        """
        version = await self.executor.git_version()
        if version is None:
            raise SentinelError("git executable not found; check executor.path_entries")
        logger.info(f"Using {version}")

        repos = self.registry.get_enabled_repositories()
        logger.info(f"Watching {len(repos)} repositories")
        self.scheduler.start_all()
        self.cache.activate()

        if self.config.scheduler.fetch_on_startup and repos:
            self._startup_fetch = asyncio.create_task(
                self.scheduler.fetch_all_now(), name="startup-fetch"
            )

    def stop(self) -> None:
        """Cancels timers and polling; fetches already running finish on their own."""
        if self._startup_fetch is not None and not self._startup_fetch.done():
            self._startup_fetch.cancel()
        self.scheduler.stop_all()
        self.cache.deactivate()
        self.notifier.clear_tracking()
        logger.info("Sentinel stopped.")

    def reload(self) -> None:
        """Re-reads the registry and reschedules every enabled repository."""
        logger.info("Reloading repository registry...")
        self.registry.reload()
        self.scheduler.stop_all()
        self.scheduler.start_all()
        task = asyncio.create_task(self.cache.refresh_all(), name="reload-refresh")
        task.add_done_callback(self._log_task_failure)

    @staticmethod
    def _log_task_failure(task: asyncio.Task) -> None:
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Background task {task.get_name()} failed: {task.exception()}")

    def request_stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()

    async def run(self) -> None:
        """Runs until SIGINT or SIGTERM; SIGHUP reloads the registry."""
        self._stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        handlers = {
            signal.SIGINT: self.request_stop,
            signal.SIGTERM: self.request_stop,
        }
        if hasattr(signal, "SIGHUP"):
            handlers[signal.SIGHUP] = self.reload

        for sig, handler in handlers.items():
            with contextlib.suppress(NotImplementedError):
                loop.add_signal_handler(sig, handler)

        try:
            await self.start()
            await self._stop_event.wait()
        finally:
            self.stop()
            for sig in handlers:
                with contextlib.suppress(NotImplementedError):
                    loop.remove_signal_handler(sig)


def _write_pid_file() -> None:
    try:
        PID_FILE.parent.mkdir(parents=True, exist_ok=True)
        with open(PID_FILE, "w") as f:
            f.write(str(os.getpid()))

        # Ensure cleanup on exit.
        atexit.register(lambda: PID_FILE.unlink(missing_ok=True))
    except OSError as e:
        logger.warning(f"Could not write PID file: {e}")


def main(interactive: bool = False) -> None:
    """Runs the monitoring daemon in the foreground.

    Args:
        interactive (bool, optional): Whether the daemon was started from a
            terminal. Defaults to False.
    """
    config = Config.load()
    setup_logging(interactive, config.logging.debug, config.limits.max_log_size)

    _write_pid_file()

    try:
        asyncio.run(Sentinel(config).run())
    except SentinelError as e:
        logger.error(f"FATAL: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
