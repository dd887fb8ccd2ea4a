"""Debounced status cache and the poll loop that keeps it fresh."""

import asyncio
import logging
import time
from types import MappingProxyType
from typing import Callable, Mapping

from .constants import APP_NAME, DEFAULT_POLL_INTERVAL
from .registry import RepositoryHandle
from .scheduler import FetchResult, RepositorySource
from .status import ExtendedStatus, FetchMetadata, StatusComputer

logger = logging.getLogger(APP_NAME)

ChangeListener = Callable[[list[str]], None]


class StatusCache:
    """Holds the latest ExtendedStatus of every enabled repository.

    Full refreshes are debounced: a request that arrives while a pass is
    running only raises a single pending flag, so at most one further pass
    follows the current one no matter how many requests pile up. Entries are
    replaced whole and never mutated. Only the most recently started
    computation of a key may store its result, so a slow pass never
    overwrites a fresher isolated refresh.

    Attributes:
        registry (RepositorySource): Source of the enabled repositories.
        status (StatusComputer): Computes each entry.
        poll_interval (float): Seconds between poll ticks while active.
        refresh_count (int): Number of completed full passes.
        last_refresh_time (float | None): Unix time the last full pass finished.
    """

    def __init__(
        self,
        registry: RepositorySource,
        status: StatusComputer,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ):
        self.registry = registry
        self.status = status
        self.poll_interval = poll_interval
        self.refresh_count = 0
        self.last_refresh_time: float | None = None
        self._entries: dict[str, ExtendedStatus] = {}
        self._latest: dict[str, int] = {}
        self._next_token = 0
        self._pending = False
        self._drain_task: asyncio.Task | None = None
        self._poll_task: asyncio.Task | None = None
        self._listeners: list[ChangeListener] = []

    # --- Read API ---

    def get(self, repository_id: str) -> ExtendedStatus | None:
        return self._entries.get(repository_id)

    def snapshot(self) -> Mapping[str, ExtendedStatus]:
        """Returns a read-only copy of the current entries."""
        return MappingProxyType(dict(self._entries))

    @property
    def is_refreshing(self) -> bool:
        return self._drain_task is not None and not self._drain_task.done()

    @property
    def is_active(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        """Registers a listener called with the ids of changed entries.

        Returns:
            Callable[[], None]: Removes the listener when called.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, changed: list[str]) -> None:
        for listener in list(self._listeners):
            try:
                listener(changed)
            except Exception:
                logger.exception("Status cache listener failed")

    # --- Refreshing ---

    async def refresh_all(self) -> None:
        """Refreshes every enabled repository, coalescing overlapping requests.

        If a pass is already running, this marks one follow-up pass as pending
        and waits for the running work, follow-up included, to finish.
        """
        task = self._drain_task
        if task is not None and not task.done():
            if not self._pending:
                logger.debug("Refresh in progress; queued one follow-up pass")
            self._pending = True
        else:
            task = asyncio.create_task(self._drain(), name="status-refresh")
            self._drain_task = task
        await asyncio.shield(task)

    async def _drain(self) -> None:
        while True:
            self._pending = False
            await self._refresh_pass()
            if not self._pending:
                return

    async def _refresh_pass(self) -> None:
        repos = self.registry.get_enabled_repositories()
        started = time.monotonic()

        # Computed concurrently; completion order is irrelevant.
        await asyncio.gather(*(self._compute(repo) for repo in repos))

        enabled = {repo.id for repo in repos}
        stale = [key for key in self._entries if key not in enabled]
        for key in stale:
            del self._entries[key]
            self._latest.pop(key, None)

        self.refresh_count += 1
        self.last_refresh_time = time.time()
        elapsed_ms = int((time.monotonic() - started) * 1000)
        logger.debug(
            f"Status refresh #{self.refresh_count} covered {len(repos)} "
            f"repositories in {elapsed_ms}ms"
        )
        self._emit([repo.id for repo in repos] + stale)

    async def _compute(self, repo: RepositoryHandle) -> ExtendedStatus | None:
        """Computes and stores one entry; None means a newer one superseded it."""
        self._next_token += 1
        token = self._next_token
        self._latest[repo.id] = token

        fetch = FetchMetadata(
            last_fetch_time=repo.last_fetch_time,
            last_fetch_status=repo.last_fetch_status,
            last_fetch_error=repo.last_fetch_error,
        )
        try:
            entry = await self.status.get_extended_status(repo, fetch)
        except Exception as e:
            logger.warning(f"Status unavailable for {repo.name}: {e}")
            entry = ExtendedStatus.unavailable(repo, str(e))

        if self._latest.get(repo.id) != token:
            logger.debug(f"Discarding superseded status for {repo.name}")
            return None
        self._entries[repo.id] = entry
        return entry

    async def refresh_repository(self, repository_id: str) -> ExtendedStatus | None:
        """Recomputes one entry without touching any other.

        Unknown or disabled repositories are ignored, and a result superseded
        by a later computation, or by deactivation, is dropped.

        Returns:
            ExtendedStatus | None: The new entry, or None if nothing was stored.
        """
        repo = self.registry.get_repository(repository_id)
        if repo is None or not repo.enabled:
            logger.debug(f"Skipping status refresh for inactive repository {repository_id}")
            return None

        entry = await self._compute(repo)
        if entry is not None:
            self._emit([repository_id])
        return entry

    async def handle_fetch_result(self, result: FetchResult) -> None:
        """Refreshes the fetched repository while the cache is active."""
        if not self.is_active:
            return
        await self.refresh_repository(result.repository_id)

    # --- Poll loop ---

    def activate(self) -> None:
        """Starts polling: one refresh immediately, then every poll_interval."""
        if self.is_active:
            return
        logger.debug(f"Status polling started (every {self.poll_interval:g}s)")
        self._poll_task = asyncio.create_task(self._poll_loop(), name="status-poll")

    def deactivate(self) -> None:
        """Stops polling and any running pass, then drops every entry."""
        for task in (self._poll_task, self._drain_task):
            if task is not None and not task.done():
                task.cancel()
        self._poll_task = None
        self._drain_task = None
        self._pending = False
        self._entries.clear()
        # Computations still running can no longer store their results.
        self._latest.clear()
        logger.debug("Status polling stopped")

    async def _poll_loop(self) -> None:
        while True:
            if self.registry.get_enabled_repositories():
                try:
                    await self.refresh_all()
                except Exception:
                    logger.exception("Status refresh failed")
            else:
                logger.debug("No enabled repositories; skipping status refresh")
            await asyncio.sleep(self.poll_interval)
