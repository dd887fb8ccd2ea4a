import contextlib
import json
import logging
import os
import time
import uuid
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import TYPE_CHECKING, Any

from .constants import APP_NAME, DEFAULT_FETCH_INTERVAL, REGISTRY_FILE
from .status import FetchMetadata

if TYPE_CHECKING:
    from .scheduler import FetchResult

logger = logging.getLogger(APP_NAME)

REGISTRY_VERSION = 1


@dataclass
class RepositoryHandle:
    """A registered repository and its persisted fetch bookkeeping.

    Attributes:
        id (str): Stable unique identifier.
        path (str): Absolute path to the working copy.
        name (str): Human-readable display name.
        enabled (bool): Whether the repository is scheduled and shown.
        fetch_interval (float): Seconds between scheduled fetches.
        created_at (float): Unix timestamp of registration.
        last_fetch_time (float | None): Unix timestamp of the last fetch attempt.
        last_fetch_status (str): 'idle', 'fetching', 'success', or 'error'.
        last_fetch_error (str | None): Message of the last failed fetch.
        remote_changes (bool): Whether the last fetch found commits to pull.
        remote_commit_count (int | None): Commits behind after the last fetch.
    """

    id: str
    path: str
    name: str
    enabled: bool = True
    fetch_interval: float = DEFAULT_FETCH_INTERVAL
    created_at: float = 0.0
    last_fetch_time: float | None = None
    last_fetch_status: str = "idle"
    last_fetch_error: str | None = None
    remote_changes: bool = False
    remote_commit_count: int | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RepositoryHandle":
        """Builds a handle from stored data, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


class Registry:
    """JSON-backed store of registered repositories.

    Getters hand out copies so callers cannot mutate the stored handles.
    Every mutation is persisted with an atomic file swap.

    Attributes:
        path (Path): Location of the registry file.
        default_interval (float): Fetch interval assigned to new repositories.
    """

    def __init__(
        self,
        path: Path = REGISTRY_FILE,
        default_interval: float = DEFAULT_FETCH_INTERVAL,
    ):
        self.path = path
        self.default_interval = default_interval
        self._repositories: list[RepositoryHandle] = []

    @classmethod
    def load(
        cls,
        path: Path = REGISTRY_FILE,
        default_interval: float = DEFAULT_FETCH_INTERVAL,
    ) -> "Registry":
        """Reads the registry from disk; a missing or unreadable file yields an empty one."""
        instance = cls(path, default_interval)
        if not path.exists():
            return instance

        try:
            content = path.read_text().strip()
            data = json.loads(content) if content else {}
        except (OSError, ValueError) as e:
            logger.error(f"Failed to read registry {path}: {e}")
            return instance

        for entry in data.get("repositories", []):
            try:
                instance._repositories.append(RepositoryHandle.from_dict(entry))
            except TypeError as e:
                logger.warning(f"Skipping malformed registry entry {entry!r}: {e}")
        return instance

    def reload(self) -> None:
        """Re-reads the registry file in place, picking up changes made by other processes."""
        self._repositories = type(self).load(self.path, self.default_interval)._repositories
        logger.debug(f"Reloaded registry with {len(self._repositories)} repositories")

    def save(self) -> None:
        """Persists the registry to disk atomically."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_file = self.path.with_suffix(".tmp")
        data = {
            "version": REGISTRY_VERSION,
            "repositories": [asdict(r) for r in self._repositories],
        }

        try:
            with open(tmp_file, "w") as f:
                json.dump(data, f, indent=2)
                f.flush()
                os.fsync(f.fileno())

            os.replace(tmp_file, self.path)
        except OSError as e:
            logger.error(f"Could not write registry {self.path}: {e}")
            if tmp_file.exists():
                with contextlib.suppress(OSError):
                    tmp_file.unlink()
            raise

    def _find(self, repository_id: str) -> RepositoryHandle | None:
        for repo in self._repositories:
            if repo.id == repository_id:
                return repo
        return None

    def _require(self, repository_id: str) -> RepositoryHandle:
        repo = self._find(repository_id)
        if repo is None:
            raise KeyError(f"Repository not found: {repository_id}")
        return repo

    def add_repository(
        self,
        path: Path | str,
        name: str | None = None,
        fetch_interval: float | None = None,
    ) -> RepositoryHandle:
        """Registers a working copy.

        Args:
            path (Path | str): Absolute path to the repository root.
            name (str | None, optional): Display name. Defaults to the directory name.
            fetch_interval (float | None, optional): Seconds between fetches.
                Defaults to the registry default.

        Returns:
            RepositoryHandle: A copy of the new handle.

        Raises:
            ValueError: If the path is relative, missing, not a git repository,
                or already registered.
        """
        repo_path = Path(path).expanduser()
        if not repo_path.is_absolute():
            raise ValueError(f"Path must be absolute: {path}")
        if not repo_path.is_dir():
            raise ValueError(f"Directory does not exist: {path}")
        if not (repo_path / ".git").exists():
            raise ValueError(f"Not a git repository: {path}")

        normalized = str(repo_path.resolve())
        if any(r.path == normalized for r in self._repositories):
            raise ValueError(f"Repository already configured: {normalized}")

        handle = RepositoryHandle(
            id=str(uuid.uuid4()),
            path=normalized,
            name=name or repo_path.resolve().name,
            fetch_interval=fetch_interval or self.default_interval,
            created_at=time.time(),
        )
        self._repositories.append(handle)
        self.save()
        logger.info(f"REGISTERED: {handle.name} ({handle.path})")
        return replace(handle)

    def remove_repository(self, repository_id: str) -> bool:
        """Removes a repository from the registry; the working copy is untouched."""
        repo = self._find(repository_id)
        if repo is None:
            return False
        self._repositories.remove(repo)
        self.save()
        logger.info(f"REMOVED: {repo.name} ({repo.path})")
        return True

    def toggle_repository(self, repository_id: str) -> bool | None:
        """Flips the enabled flag; returns the new state, or None if unknown."""
        repo = self._find(repository_id)
        if repo is None:
            return None
        repo.enabled = not repo.enabled
        self.save()
        return repo.enabled

    def set_fetch_interval(self, repository_id: str, interval: float) -> None:
        """Updates the fetch interval of a repository.

        Raises:
            KeyError: If the repository is unknown.
            ValueError: If the interval is not positive.
        """
        if interval <= 0:
            raise ValueError("Fetch interval must be positive")
        self._require(repository_id).fetch_interval = interval
        self.save()

    def get_repository(self, repository_id: str) -> RepositoryHandle | None:
        repo = self._find(repository_id)
        return replace(repo) if repo else None

    def get_repositories(self) -> list[RepositoryHandle]:
        return [replace(r) for r in self._repositories]

    def get_enabled_repositories(self) -> list[RepositoryHandle]:
        """Returns enabled repositories in registration order."""
        return [replace(r) for r in self._repositories if r.enabled]

    def get_repositories_with_remote_changes(self) -> list[RepositoryHandle]:
        return [replace(r) for r in self._repositories if r.remote_changes]

    def fetch_metadata(self, repository_id: str) -> FetchMetadata:
        """Returns the stored fetch bookkeeping for a repository."""
        repo = self._require(repository_id)
        return FetchMetadata(
            last_fetch_time=repo.last_fetch_time,
            last_fetch_status=repo.last_fetch_status,
            last_fetch_error=repo.last_fetch_error,
        )

    def record_fetch_result(self, result: "FetchResult") -> None:
        """Stores the outcome of a fetch attempt.

        Results for repositories removed while the fetch was running are dropped.
        """
        repo = self._find(result.repository_id)
        if repo is None:
            logger.debug(f"Dropping fetch result for removed repository {result.repository_id}")
            return

        repo.last_fetch_status = "success" if result.success else "error"
        repo.last_fetch_time = result.timestamp
        repo.last_fetch_error = result.error
        repo.remote_changes = result.remote_changes
        if result.success:
            repo.remote_commit_count = result.commits_behind
        elif not result.remote_changes:
            repo.remote_commit_count = None

        try:
            self.save()
        except OSError:
            # Already logged by save(); the in-memory state stays current.
            pass
