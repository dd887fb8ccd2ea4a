"""Error taxonomy for git command execution and fetch scheduling.

Every failure surfaced by the executor, status computer or scheduler is one of
the classes below. Each carries only the fields relevant to its kind, so callers
can branch on the type instead of inspecting message strings.
"""

from enum import Enum
from pathlib import Path
from typing import Sequence


class SentinelError(Exception):
    """Base class for all Git Sentinel errors."""


class CommandRejected(SentinelError):
    """A command failed validation and was never started.

    Attributes:
        command (str): The offending command text.
        reason (str): Why the command was rejected.
    """

    def __init__(self, command: str, reason: str):
        self.command = command
        self.reason = reason
        super().__init__(f"Invalid git command: {reason}")


class CommandTimedOut(SentinelError):
    """A command exceeded its timeout and was killed.

    Attributes:
        command_args (list[str]): The git arguments that were run.
        timeout (float): The timeout, in seconds, that was exceeded.
        cwd (Path | None): The working directory of the command.
    """

    def __init__(self, args: Sequence[str], timeout: float, cwd: Path | None = None):
        self.command_args = list(args)
        self.timeout = timeout
        self.cwd = cwd
        super().__init__(f"Git command timed out after {timeout:g}s")


class CommandFailed(SentinelError):
    """A command exited non-zero, or could not be started at all.

    Attributes:
        command_args (list[str]): The git arguments that were run.
        exit_code (int | None): The exit status, or None if the process never spawned.
        stderr (str): The captured standard error text.
        cwd (Path | None): The working directory of the command.
    """

    def __init__(
        self,
        args: Sequence[str],
        exit_code: int | None,
        stderr: str = "",
        cwd: Path | None = None,
    ):
        self.command_args = list(args)
        self.exit_code = exit_code
        self.stderr = stderr
        self.cwd = cwd
        if exit_code is None:
            message = f"Could not start git: {stderr}"
        else:
            message = f"Git error: {stderr.strip() or f'exit code {exit_code}'}"
        super().__init__(message)


class FetchFailure(SentinelError):
    """Base class for classified fetch failures.

    Attributes:
        path (Path): The repository that failed to fetch.
        cause (Exception | None): The executor error that was classified.
    """

    def __init__(self, message: str, path: Path, cause: Exception | None = None):
        self.path = path
        self.cause = cause
        super().__init__(message)


class NetworkError(FetchFailure):
    """The remote could not be reached."""


class AuthError(FetchFailure):
    """The remote refused the configured credentials."""


class RepositoryInvalid(FetchFailure):
    """The path is not a usable repository or the remote is misconfigured."""


class StatusUnavailable(SentinelError):
    """Local working-copy status could not be computed.

    Attributes:
        path (Path): The repository path.
        reason (str): The underlying failure text.
    """

    def __init__(self, path: Path, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Status unavailable for {path}: {reason}")


class RepositoryNotFound(SentinelError):
    """No registered repository has the requested id.

    Attributes:
        repository_id (str): The id that was looked up.
    """

    def __init__(self, repository_id: str):
        self.repository_id = repository_id
        super().__init__(f"Repository not found: {repository_id}")


class FetchErrorKind(Enum):
    """Categories of fetch failures, used for reporting and notifications."""

    NETWORK = "network"
    AUTH = "auth"
    TIMEOUT = "timeout"
    REPOSITORY_INVALID = "repository_invalid"
    UNKNOWN = "unknown"


_AUTH_PATTERNS = (
    "authentication failed",
    "could not read username",
    "could not read password",
    "permission denied (publickey)",
    "fatal: authentication",
    "terminal prompts disabled",
)

_NETWORK_PATTERNS = (
    "could not resolve host",
    "failed to connect",
    "network is unreachable",
    "connection timed out",
    "temporary failure in name resolution",
    "connection refused",
)

_REPOSITORY_PATTERNS = (
    "not a git repository",
    "does not appear to be",
    "repository not found",
    "remote not found",
    "no such file or directory",
)

_KIND_TO_ERROR: dict[FetchErrorKind, type[FetchFailure]] = {
    FetchErrorKind.NETWORK: NetworkError,
    FetchErrorKind.AUTH: AuthError,
    FetchErrorKind.REPOSITORY_INVALID: RepositoryInvalid,
}


def classify_fetch_failure(error: BaseException) -> FetchErrorKind:
    """Maps an executor failure onto a fetch error category.

    Args:
        error (BaseException): The exception raised while fetching.

    Returns:
        FetchErrorKind: The matching category, UNKNOWN when nothing matches.
    """
    if isinstance(error, CommandTimedOut):
        return FetchErrorKind.TIMEOUT
    if isinstance(error, NetworkError):
        return FetchErrorKind.NETWORK
    if isinstance(error, AuthError):
        return FetchErrorKind.AUTH
    if isinstance(error, RepositoryInvalid):
        return FetchErrorKind.REPOSITORY_INVALID

    text = str(error)
    if isinstance(error, CommandFailed):
        text = f"{text}\n{error.stderr}"
    text = text.lower()

    # Auth is checked before network: ssh reports both for a rejected key.
    if any(p in text for p in _AUTH_PATTERNS):
        return FetchErrorKind.AUTH
    if any(p in text for p in _NETWORK_PATTERNS):
        return FetchErrorKind.NETWORK
    if any(p in text for p in _REPOSITORY_PATTERNS):
        return FetchErrorKind.REPOSITORY_INVALID
    return FetchErrorKind.UNKNOWN


def describe_fetch_failure(kind: FetchErrorKind, error: BaseException) -> str:
    """Builds the user-facing message for a classified fetch failure."""
    if kind is FetchErrorKind.TIMEOUT:
        timeout = getattr(error, "timeout", None)
        if timeout is not None:
            return f"Fetch operation timed out after {timeout:g}s"
        return "Fetch operation timed out"
    if kind is FetchErrorKind.AUTH:
        return "Authentication failed. Please check your git credentials."
    if kind is FetchErrorKind.NETWORK:
        return "Network error: Unable to reach remote repository."
    if kind is FetchErrorKind.REPOSITORY_INVALID:
        return "Repository error: Invalid git repository or remote configuration."
    return f"Fetch failed: {error}"


def as_fetch_failure(error: Exception, path: Path) -> SentinelError:
    """Wraps an executor error in its classified fetch failure type.

    Timeouts stay CommandTimedOut and unclassified errors are returned unchanged.
    """
    kind = classify_fetch_failure(error)
    error_cls = _KIND_TO_ERROR.get(kind)
    if error_cls is None or isinstance(error, FetchFailure):
        return error if isinstance(error, SentinelError) else SentinelError(str(error))
    return error_cls(describe_fetch_failure(kind, error), path, error)
