"""Per-repository fetch scheduling with in-flight deduplication."""

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass
from functools import partial
from typing import Any, Callable, Protocol

from .constants import APP_NAME, DEFAULT_FETCH_INTERVAL, DEFAULT_FETCH_TIMEOUT
from .errors import (
    FetchErrorKind,
    RepositoryNotFound,
    classify_fetch_failure,
    describe_fetch_failure,
)
from .git_wrapper import GitRepo, sanitize
from .notify import NotificationKind, Notifier
from .registry import RepositoryHandle
from .status import StatusComputer

logger = logging.getLogger(APP_NAME)


@dataclass(frozen=True)
class BranchStatus:
    """Ahead/behind counts of one local branch against its upstream."""

    name: str
    remote_branch: str
    ahead: int
    behind: int


@dataclass(frozen=True)
class FetchResult:
    """Outcome of a single fetch attempt.

    Attributes:
        repository_id (str): The repository that was fetched.
        timestamp (float): Unix time the attempt started.
        success (bool): Whether the fetch and the follow-up comparison succeeded.
        error (str | None): User-facing failure message.
        error_kind (FetchErrorKind | None): Failure category.
        remote_changes (bool): True if the upstream has commits to pull.
        commits_behind (int): Commits only on the upstream.
        branch_info (tuple[BranchStatus, ...]): Per-branch detail; empty for a
            detached HEAD or an untracked branch.
    """

    repository_id: str
    timestamp: float
    success: bool
    error: str | None = None
    error_kind: FetchErrorKind | None = None
    remote_changes: bool = False
    commits_behind: int = 0
    branch_info: tuple[BranchStatus, ...] = ()

    @classmethod
    def failed(
        cls,
        repository_id: str,
        error: str,
        kind: FetchErrorKind = FetchErrorKind.UNKNOWN,
        timestamp: float | None = None,
    ) -> "FetchResult":
        return cls(
            repository_id=repository_id,
            timestamp=time.time() if timestamp is None else timestamp,
            success=False,
            error=error,
            error_kind=kind,
        )


ResultListener = Callable[[FetchResult], Any]


class RepositorySource(Protocol):
    """The registry operations the scheduler depends on."""

    def get_repository(self, repository_id: str) -> RepositoryHandle | None: ...

    def get_enabled_repositories(self) -> list[RepositoryHandle]: ...


class FetchScheduler:
    """Owns fetch timers and guarantees at most one fetch per repository.

    Concurrent requests for a repository that is already fetching share the
    running attempt. Results go to the persistence callback and to subscribers;
    the scheduler itself stores nothing.

    Attributes:
        registry (RepositorySource): Lookup of repositories and their intervals.
        status (StatusComputer): Used to compare branches after a fetch.
        notifier (Notifier | None): Receives remote-change and failure alerts.
        fetch_timeout (float): Seconds allowed for each fetch command.
        default_interval (float): Interval for repositories without their own.
    """

    def __init__(
        self,
        registry: RepositorySource,
        status: StatusComputer,
        notifier: Notifier | None = None,
        on_result: ResultListener | None = None,
        fetch_timeout: float = DEFAULT_FETCH_TIMEOUT,
        default_interval: float = DEFAULT_FETCH_INTERVAL,
    ):
        self.registry = registry
        self.status = status
        self.notifier = notifier
        self.on_result = on_result
        self.fetch_timeout = fetch_timeout
        self.default_interval = default_interval
        self._timers: dict[str, asyncio.Task] = {}
        self._in_flight: dict[str, asyncio.Task] = {}
        self._listeners: list[ResultListener] = []
        self._background: set[asyncio.Task] = set()

    # --- Subscriptions ---

    def subscribe(self, listener: ResultListener) -> Callable[[], None]:
        """Registers a listener for every fetch result.

        Returns:
            Callable[[], None]: Removes the listener when called.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # --- Timers ---

    def start_all(self) -> None:
        """Schedules every enabled repository with its configured interval."""
        repos = self.registry.get_enabled_repositories()
        logger.debug(f"Starting automated fetch for {len(repos)} enabled repositories")
        for repo in repos:
            self.schedule_repository(repo.id, repo.fetch_interval or self.default_interval)

    def stop_all(self) -> None:
        """Cancels every timer.

        Running fetches are not aborted; they finish, still deliver results,
        and keep their in-flight marker until then so no second fetch of the
        same repository can start.
        """
        logger.debug(
            f"Stopping all automated fetches ({len(self._timers)} timers, "
            f"{len(self._in_flight)} in flight)"
        )
        for task in self._timers.values():
            task.cancel()
        self._timers.clear()

    def schedule_repository(self, repository_id: str, interval: float) -> None:
        """Installs, or replaces, the repeating fetch timer of a repository.

        Raises:
            ValueError: If the interval is not positive.
        """
        if interval <= 0:
            raise ValueError(f"Fetch interval must be positive, got {interval}")
        if repository_id in self._timers:
            logger.debug(f"Re-scheduling repository {repository_id}")
            self.unschedule_repository(repository_id)

        logger.debug(f"Scheduling repository {repository_id} every {interval:g}s")
        self._timers[repository_id] = asyncio.create_task(
            self._timer_loop(repository_id, interval),
            name=f"fetch-timer:{repository_id}",
        )

    def unschedule_repository(self, repository_id: str) -> None:
        """Stops future fetches of a repository; a running fetch completes."""
        task = self._timers.pop(repository_id, None)
        if task is not None:
            logger.debug(f"Unscheduling repository {repository_id}")
            task.cancel()

    def is_scheduled(self, repository_id: str) -> bool:
        return repository_id in self._timers

    def is_fetching(self, repository_id: str) -> bool:
        return repository_id in self._in_flight

    async def _timer_loop(self, repository_id: str, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self._execute_fetch(repository_id)
            except RepositoryNotFound:
                logger.warning(f"Repository {repository_id} vanished; unscheduling.")
                if self._timers.get(repository_id) is asyncio.current_task():
                    del self._timers[repository_id]
                return
            except Exception:
                # Retry on the next interval.
                logger.exception(f"Scheduled fetch failed for {repository_id}")

    # --- Fetching ---

    async def fetch_repository_now(self, repository_id: str) -> FetchResult:
        """Fetches a repository immediately, joining a fetch already in flight.

        Returns:
            FetchResult: The outcome; failures are reported in the result.

        Raises:
            RepositoryNotFound: If no repository has this id.
        """
        return await self._execute_fetch(repository_id)

    async def fetch_all_now(self) -> list[FetchResult]:
        """Fetches every enabled repository, one at a time, in registration order.

        A failing repository never stops the batch.
        """
        repos = self.registry.get_enabled_repositories()
        logger.debug(f"Starting batch fetch for {len(repos)} enabled repositories")
        started = time.monotonic()

        results: list[FetchResult] = []
        for repo in repos:
            try:
                result = await self._execute_fetch(repo.id)
            except Exception as e:
                logger.error(f"BATCH FETCH ERROR {repo.name}: {sanitize(str(e))}")
                result = FetchResult.failed(repo.id, str(e))
            results.append(result)

        elapsed_ms = int((time.monotonic() - started) * 1000)
        ok = sum(1 for r in results if r.success)
        logger.info(f"Batch fetch completed in {elapsed_ms}ms ({ok}/{len(repos)} successful)")
        return results

    async def _execute_fetch(self, repository_id: str) -> FetchResult:
        task = self._in_flight.get(repository_id)
        if task is None:
            repo = self.registry.get_repository(repository_id)
            if repo is None:
                raise RepositoryNotFound(repository_id)

            task = asyncio.create_task(
                self._fetch(repo), name=f"fetch:{repository_id}"
            )
            self._in_flight[repository_id] = task
            task.add_done_callback(partial(self._clear_in_flight, repository_id))
        else:
            logger.debug(f"Fetch already in progress for {repository_id}, joining it")

        # Shielded so a cancelled caller never aborts the shared fetch.
        return await asyncio.shield(task)

    def _clear_in_flight(self, repository_id: str, task: asyncio.Task) -> None:
        if self._in_flight.get(repository_id) is task:
            del self._in_flight[repository_id]

    async def _fetch(self, repo: RepositoryHandle) -> FetchResult:
        """Runs one fetch attempt; never raises."""
        timestamp = time.time()
        started = time.monotonic()
        git = GitRepo(repo.path, self.status.executor)

        try:
            await git.fetch(timeout=self.fetch_timeout)
            remote = await self.status.get_remote_tracking_status(repo.path)
        except Exception as e:
            kind = classify_fetch_failure(e)
            message = describe_fetch_failure(kind, e)
            logger.error(
                f"FETCH ERROR {repo.name} ({kind.value}): {sanitize(str(e))}"
            )
            result = FetchResult.failed(repo.id, message, kind, timestamp)
        else:
            branch_info: tuple[BranchStatus, ...] = ()
            local_branch = await self._current_branch(git)
            if remote.tracking_branch and local_branch:
                branch_info = (
                    BranchStatus(
                        name=local_branch,
                        remote_branch=remote.tracking_branch,
                        ahead=remote.commits_ahead,
                        behind=remote.commits_behind,
                    ),
                )
            result = FetchResult(
                repository_id=repo.id,
                timestamp=timestamp,
                success=True,
                remote_changes=remote.has_changes,
                commits_behind=remote.commits_behind,
                branch_info=branch_info,
            )
            elapsed_ms = int((time.monotonic() - started) * 1000)
            summary = (
                f"{remote.commits_behind} commits behind"
                if remote.has_changes
                else "up to date"
            )
            logger.info(f"FETCHED {repo.name} in {elapsed_ms}ms: {summary}")

        self._publish(repo, result)
        return result

    @staticmethod
    async def _current_branch(git: GitRepo) -> str | None:
        try:
            return await git.current_branch()
        except Exception as e:
            logger.debug(f"Could not resolve branch for {git.path}: {e}")
            return None

    # --- Delivery ---

    def _publish(self, repo: RepositoryHandle, result: FetchResult) -> None:
        if self.notifier is not None:
            if not result.success:
                self.notifier.notify(
                    NotificationKind.FETCH_ERROR,
                    repo.id,
                    {"name": repo.name, "error": result.error},
                )
            elif result.remote_changes:
                self.notifier.notify(
                    NotificationKind.REMOTE_CHANGES,
                    repo.id,
                    {"name": repo.name, "commits": result.commits_behind},
                )

        if self.on_result is not None:
            self._deliver(self.on_result, result)
        for listener in list(self._listeners):
            self._deliver(listener, result)

    def _deliver(self, callback: ResultListener, result: FetchResult) -> None:
        """Hands a result to a callback without awaiting it."""
        try:
            outcome = callback(result)
        except Exception:
            logger.exception(f"Fetch result callback failed for {result.repository_id}")
            return

        if inspect.isawaitable(outcome):
            task = asyncio.ensure_future(outcome)
            self._background.add(task)
            task.add_done_callback(self._background_done)

    def _background_done(self, task: asyncio.Future) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Fetch result callback failed: {task.exception()}")
