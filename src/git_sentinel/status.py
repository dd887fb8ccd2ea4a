"""Local and remote status computation for registered repositories."""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

from .constants import APP_NAME
from .errors import SentinelError, StatusUnavailable
from .git_wrapper import CommandExecutor, GitRepo

if TYPE_CHECKING:
    from .registry import RepositoryHandle

logger = logging.getLogger(APP_NAME)

_UNMERGED_CODES = {"DD", "AU", "UD", "UA", "DU", "AA", "UU"}
_STAGED_CODES = set("MADRCT")
_UNSTAGED_CODES = set("MDT")


class FetchStatus(Enum):
    """Outcome of the most recent fetch, as shown to the user."""

    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"

    @classmethod
    def from_registry(cls, value: str | None) -> "FetchStatus":
        """Maps a stored fetch status ('idle', 'fetching', ...) onto a display status."""
        if value == "success":
            return cls.SUCCESS
        if value == "error":
            return cls.ERROR
        return cls.PENDING


@dataclass(frozen=True)
class LocalStatus:
    """Working-copy status of a repository.

    Attributes:
        current_branch (str | None): The checked-out branch, None when detached.
        staged_files (tuple[str, ...]): Paths with changes in the index.
        unstaged_files (tuple[str, ...]): Paths with changes in the working tree.
        untracked_files (tuple[str, ...]): Paths unknown to git and not ignored.
    """

    current_branch: str | None
    staged_files: tuple[str, ...] = ()
    unstaged_files: tuple[str, ...] = ()
    untracked_files: tuple[str, ...] = ()

    @property
    def has_uncommitted_changes(self) -> bool:
        return bool(self.staged_files or self.unstaged_files or self.untracked_files)


@dataclass(frozen=True)
class RemoteTrackingStatus:
    """Comparison of a local branch against its upstream.

    Only commits behind count as remote changes; a branch that is merely ahead
    has nothing new to pull.

    Attributes:
        tracking_branch (str | None): The upstream reference, None if untracked.
        commits_ahead (int): Commits only on the local branch.
        commits_behind (int): Commits only on the upstream.
    """

    tracking_branch: str | None = None
    commits_ahead: int = 0
    commits_behind: int = 0

    def __post_init__(self) -> None:
        if self.commits_ahead < 0 or self.commits_behind < 0:
            raise ValueError("Commit counts cannot be negative")
        if self.tracking_branch is None and (self.commits_ahead or self.commits_behind):
            raise ValueError("Untracked branches cannot be ahead or behind")

    @property
    def has_changes(self) -> bool:
        return self.commits_behind > 0


@dataclass(frozen=True)
class FetchMetadata:
    """Fetch bookkeeping stored alongside a repository.

    Attributes:
        last_fetch_time (float | None): Unix timestamp of the last fetch attempt.
        last_fetch_status (str): One of 'idle', 'fetching', 'success', 'error'.
        last_fetch_error (str | None): The message of the last failed fetch.
    """

    last_fetch_time: float | None = None
    last_fetch_status: str = "idle"
    last_fetch_error: str | None = None


@dataclass(frozen=True)
class ExtendedStatus:
    """Immutable snapshot combining local status, remote counts, and fetch state.

    Cache entries are replaced by new instances, never modified in place.
    """

    repository_id: str
    name: str
    path: Path
    current_branch: str | None = None
    staged_files: tuple[str, ...] = ()
    unstaged_files: tuple[str, ...] = ()
    untracked_files: tuple[str, ...] = ()
    tracking_branch: str | None = None
    commits_ahead: int = 0
    commits_behind: int = 0
    last_fetch_time: float | None = None
    fetch_status: FetchStatus = FetchStatus.PENDING
    last_fetch_error: str | None = None
    status_error: str | None = None

    @property
    def remote_changes(self) -> bool:
        return self.commits_behind > 0

    @property
    def has_uncommitted_changes(self) -> bool:
        return bool(self.staged_files or self.unstaged_files or self.untracked_files)

    @property
    def is_error(self) -> bool:
        return self.status_error is not None

    @classmethod
    def combine(
        cls,
        repository: "RepositoryHandle",
        local: LocalStatus,
        remote: RemoteTrackingStatus,
        fetch: FetchMetadata | None = None,
    ) -> "ExtendedStatus":
        """Merges the independently computed parts into one snapshot."""
        fetch = fetch or FetchMetadata()
        return cls(
            repository_id=repository.id,
            name=repository.name,
            path=Path(repository.path),
            current_branch=local.current_branch,
            staged_files=local.staged_files,
            unstaged_files=local.unstaged_files,
            untracked_files=local.untracked_files,
            tracking_branch=remote.tracking_branch,
            commits_ahead=remote.commits_ahead,
            commits_behind=remote.commits_behind,
            last_fetch_time=fetch.last_fetch_time,
            fetch_status=FetchStatus.from_registry(fetch.last_fetch_status),
            last_fetch_error=fetch.last_fetch_error,
        )

    @classmethod
    def unavailable(
        cls, repository: "RepositoryHandle", error: str
    ) -> "ExtendedStatus":
        """Builds a flagged entry for a repository whose status could not be read."""
        return cls(
            repository_id=repository.id,
            name=repository.name,
            path=Path(repository.path),
            fetch_status=FetchStatus.from_registry(repository.last_fetch_status),
            last_fetch_time=repository.last_fetch_time,
            last_fetch_error=repository.last_fetch_error,
            status_error=error,
        )


def _unquote(path: str) -> str:
    """Decodes a C-style quoted porcelain path (octal escapes for non-ASCII bytes)."""
    if len(path) >= 2 and path[0] == path[-1] == '"':
        raw = path[1:-1].encode("utf-8").decode("unicode_escape")
        return raw.encode("latin-1").decode("utf-8", errors="replace")
    return path


def _parse_branch_header(header: str) -> str | None:
    """Extracts the branch from a '## ...' porcelain header line."""
    text = header[3:].strip()
    if text.startswith("HEAD (no branch)"):
        return None
    for prefix in ("No commits yet on ", "Initial commit on "):
        if text.startswith(prefix):
            return text[len(prefix):].strip() or None
    # "main...origin/main [ahead 1]" or just "main"
    text = text.split(" [", 1)[0]
    return text.split("...", 1)[0] or None


def parse_porcelain(output: str) -> LocalStatus:
    """Parses `git status --porcelain=v1 --branch` output into a LocalStatus.

    Args:
        output (str): The raw command output, leading spaces intact.

    Returns:
        LocalStatus: Files bucketed by state code, with the branch from the header.
    """
    branch: str | None = None
    staged: list[str] = []
    unstaged: list[str] = []
    untracked: list[str] = []

    for line in output.splitlines():
        if not line:
            continue
        if line.startswith("## "):
            branch = _parse_branch_header(line)
            continue
        if len(line) < 4:
            continue

        code, path = line[:2], line[3:]
        if " -> " in path:
            path = path.split(" -> ", 1)[1]
        path = _unquote(path)

        if code == "??":
            untracked.append(path)
        elif code == "!!":
            continue
        elif code in _UNMERGED_CODES:
            unstaged.append(path)
        else:
            if code[0] in _STAGED_CODES:
                staged.append(path)
            if code[1] in _UNSTAGED_CODES:
                unstaged.append(path)

    return LocalStatus(
        current_branch=branch,
        staged_files=tuple(staged),
        unstaged_files=tuple(unstaged),
        untracked_files=tuple(untracked),
    )


class StatusComputer:
    """Derives working-copy and upstream status through the command executor."""

    def __init__(self, executor: CommandExecutor):
        self.executor = executor

    def _repo(self, path: Path | str) -> GitRepo:
        return GitRepo(path, self.executor)

    async def get_local_status(self, path: Path | str) -> LocalStatus:
        """Reads the staged, unstaged, and untracked files of a working copy.

        Raises:
            StatusUnavailable: If git cannot report the status.
        """
        try:
            output = await self._repo(path).status_porcelain()
        except SentinelError as e:
            raise StatusUnavailable(Path(path), str(e)) from e
        return parse_porcelain(output)

    async def get_remote_tracking_status(
        self, path: Path | str, branch: str | None = None
    ) -> RemoteTrackingStatus:
        """Compares a branch with its upstream.

        A detached HEAD, a branch without an upstream, or a branch with no
        commits yet are expected states and yield zero counts.

        Args:
            path (Path | str): The repository path.
            branch (str | None, optional): The local branch. Defaults to the
                checked-out branch.

        Returns:
            RemoteTrackingStatus: The upstream name and ahead/behind counts.

        Raises:
            SentinelError: For genuine command failures.
        """
        repo = self._repo(path)
        if branch is None:
            try:
                branch = await repo.current_branch()
            except SentinelError as e:
                # An unborn branch has no HEAD commit to resolve.
                if "unknown revision" in str(e).lower() or "ambiguous" in str(e).lower():
                    return RemoteTrackingStatus()
                raise
        if branch is None:
            return RemoteTrackingStatus()

        tracking = await repo.tracking_branch(branch)
        if tracking is None:
            return RemoteTrackingStatus()

        ahead = await repo.count_commits(f"{tracking}..{branch}")
        behind = await repo.count_commits(f"{branch}..{tracking}")
        return RemoteTrackingStatus(
            tracking_branch=tracking, commits_ahead=ahead, commits_behind=behind
        )

    async def get_extended_status(
        self,
        repository: "RepositoryHandle",
        fetch: FetchMetadata | None = None,
    ) -> ExtendedStatus:
        """Computes local and remote status concurrently and merges them.

        Local status is required; the remote comparison is best effort and
        degrades to zero counts on failure.

        Raises:
            StatusUnavailable: If the local status cannot be read.
        """
        local, remote = await asyncio.gather(
            self.get_local_status(repository.path),
            self.get_remote_tracking_status(repository.path),
            return_exceptions=True,
        )

        if isinstance(local, BaseException):
            if isinstance(local, StatusUnavailable):
                raise local
            raise StatusUnavailable(Path(repository.path), str(local)) from local

        if isinstance(remote, BaseException):
            logger.debug(
                f"Remote tracking status unavailable for {repository.name}: {remote}"
            )
            remote = RemoteTrackingStatus()

        return ExtendedStatus.combine(repository, local, remote, fetch)
