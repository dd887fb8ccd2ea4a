import asyncio
import contextlib
import logging
import os
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Sequence

from .constants import (
    ALLOWED_SUBCOMMANDS,
    APP_NAME,
    DEFAULT_COMMAND_TIMEOUT,
    DEFAULT_FETCH_TIMEOUT,
    SHELL_METACHARACTERS,
)
from .errors import (
    CommandFailed,
    CommandRejected,
    CommandTimedOut,
    as_fetch_failure,
)

logger = logging.getLogger(APP_NAME)

_SECRET_PATTERNS = [
    (re.compile(r"password[=:]\s*\S+", re.IGNORECASE), "password=***"),
    (re.compile(r"token[=:]\s*\S+", re.IGNORECASE), "token=***"),
    (re.compile(r"Bearer\s+\S+", re.IGNORECASE), "Bearer ***"),
    (re.compile(r"Authorization:\s*\S+", re.IGNORECASE), "Authorization: ***"),
    (re.compile(r"ssh://[^@\s/]+@"), "ssh://***@"),
    (re.compile(r"https?://[^:@\s/]+:[^@\s/]+@"), "https://***:***@"),
]


def sanitize(text: str) -> str:
    """Masks credentials that may appear in command lines, URLs, or git output.

    Args:
        text (str): The raw text destined for a log record or notification.

    Returns:
        str: The text with passwords, tokens, and URL credentials replaced.
    """
    for pattern, replacement in _SECRET_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def _find_metacharacter(text: str) -> str | None:
    for pattern in SHELL_METACHARACTERS:
        if pattern in text:
            return pattern
    return None


def validate_command(command: str | Sequence[str]) -> list[str]:
    """Checks a git command against the subcommand allow-list and metacharacters.

    Commands are always executed without a shell; the metacharacter check is a
    second line of defense against argument smuggling.

    Args:
        command (str | Sequence[str]): The git command without the 'git' prefix,
            either as one whitespace-separated string or as an argument list.

    Returns:
        list[str]: The validated argument list.

    Raises:
        CommandRejected: If the command is empty, uses a subcommand outside the
            allow-list, or contains shell metacharacters.
    """
    raw = command if isinstance(command, str) else " ".join(command)
    args = command.split() if isinstance(command, str) else list(command)

    # Scan the raw text so newlines are caught before split() discards them.
    texts = [command] if isinstance(command, str) else args
    for text in texts:
        if found := _find_metacharacter(text):
            raise CommandRejected(
                raw, f"contains potentially dangerous pattern {found!r}"
            )

    if not args:
        raise CommandRejected(raw, "empty command")

    if args[0] not in ALLOWED_SUBCOMMANDS:
        raise CommandRejected(
            raw, f"{args[0]!r} is not a recognized git subcommand"
        )

    return args


def build_search_path(
    custom_entries: Iterable[str], system_path: str | None = None
) -> str:
    """Builds an executable search path with custom entries ahead of the system PATH.

    Custom entries are tilde-expanded and must be absolute and free of shell
    metacharacters; invalid entries are skipped with a warning. The combined list
    is de-duplicated, keeping the first occurrence of each entry.

    Args:
        custom_entries (Iterable[str]): User-configured directories to prepend.
        system_path (str | None, optional): The inherited search path. Defaults
            to the current PATH environment variable.

    Returns:
        str: The augmented search path joined with the platform list separator.
    """
    if system_path is None:
        system_path = os.environ.get("PATH", "")

    entries: list[str] = []
    for entry in custom_entries:
        expanded = os.path.expanduser(entry.strip())
        if not expanded:
            continue
        if _find_metacharacter(expanded):
            logger.warning(f"Ignoring search path entry with shell characters: {entry}")
            continue
        if not os.path.isabs(expanded):
            logger.warning(f"Ignoring relative search path entry: {entry}")
            continue
        entries.append(expanded)

    entries.extend(p for p in system_path.split(os.pathsep) if p)
    return os.pathsep.join(dict.fromkeys(entries))


@dataclass(frozen=True)
class CommandResult:
    """The captured outcome of a successful git command.

    Attributes:
        stdout (str): Raw standard output (not stripped).
        stderr (str): Raw standard error.
        exit_code (int): The process exit status (always 0 for returned results).
    """

    stdout: str
    stderr: str = ""
    exit_code: int = 0


class CommandExecutor:
    """Runs validated git commands asynchronously with a per-call timeout.

    The executor never retries; retry policy belongs to the scheduler. One
    instance is shared by every component that talks to git.

    Attributes:
        timeout (float): Default timeout in seconds for each call.
        search_path (str): The PATH handed to every git process.
        git_binary (str): The program name or path used to invoke git.
    """

    def __init__(
        self,
        timeout: float = DEFAULT_COMMAND_TIMEOUT,
        path_entries: Iterable[str] = (),
        git_binary: str = "git",
    ):
        self.timeout = timeout
        self.search_path = build_search_path(path_entries)
        self.git_binary = git_binary

    def _env(self) -> dict[str, str]:
        env = os.environ.copy()
        env["PATH"] = self.search_path
        # Credential prompts would block until the timeout; fail fast instead.
        env["GIT_TERMINAL_PROMPT"] = "0"
        env.setdefault("GIT_SSH_COMMAND", "ssh -o BatchMode=yes")
        return env

    async def execute(
        self,
        command: str | Sequence[str],
        cwd: Path | str | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        """Executes one git command.

        Args:
            command (str | Sequence[str]): The git command without the 'git' prefix.
            cwd (Path | str | None, optional): Working directory. Defaults to None.
            timeout (float | None, optional): Seconds before the process is killed.
                Defaults to the executor timeout.

        Returns:
            CommandResult: The captured output of the command.

        Raises:
            CommandRejected: If validation fails; no process is started.
            CommandTimedOut: If the command exceeds its timeout.
            CommandFailed: If git exits non-zero or cannot be started.
        """
        args = validate_command(command)
        limit = self.timeout if timeout is None else timeout
        work_dir = Path(cwd) if cwd is not None else None
        display = sanitize(" ".join(args))

        logger.debug(f"Executing git command in {work_dir}: {display}")
        started = time.monotonic()

        try:
            proc = await asyncio.create_subprocess_exec(
                self.git_binary,
                *args,
                cwd=work_dir,
                env=self._env(),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.debug(f"Git command could not start: {display}: {e}")
            raise CommandFailed(args, None, str(e), work_dir) from e

        try:
            raw_out, raw_err = await asyncio.wait_for(proc.communicate(), limit)
        except asyncio.TimeoutError as e:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()
            logger.debug(f"Git command timed out after {limit:g}s: {display}")
            raise CommandTimedOut(args, limit, work_dir) from e
        except asyncio.CancelledError:
            # The child must not outlive a cancelled caller.
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()
            logger.debug(f"Git command cancelled: {display}")
            raise

        stdout = raw_out.decode("utf-8", errors="replace")
        stderr = raw_err.decode("utf-8", errors="replace")
        elapsed_ms = int((time.monotonic() - started) * 1000)

        if proc.returncode != 0:
            logger.debug(
                f"Git command failed in {elapsed_ms}ms: {display}: "
                f"{sanitize(stderr.strip())}"
            )
            raise CommandFailed(args, proc.returncode, stderr, work_dir)

        logger.debug(f"Git command succeeded in {elapsed_ms}ms: {display}")
        return CommandResult(stdout=stdout, stderr=stderr, exit_code=0)

    async def is_git_installed(self) -> bool:
        """Checks whether git can be run with the configured search path."""
        return await self.git_version() is not None

    async def git_version(self) -> str | None:
        """Returns the 'git version' string, or None if git is unavailable."""
        try:
            result = await self.execute("version", timeout=5.0)
        except (CommandFailed, CommandTimedOut) as e:
            logger.debug(f"git version check failed: {e}")
            return None
        return result.stdout.strip()


class GitRepo:
    """A wrapper around the git command line for a specific repository.

    Every method issues its commands through a shared CommandExecutor, so
    validation, timeouts, and logging apply uniformly.

    Attributes:
        path (Path): The file system path to the repository root.
        executor (CommandExecutor): The executor used to run commands.
    """

    def __init__(self, path: Path | str, executor: CommandExecutor):
        self.path = Path(path)
        self.executor = executor

    async def _run(self, args: Sequence[str], timeout: float | None = None) -> str:
        """Executes a git command in the repository and returns raw stdout."""
        result = await self.executor.execute(args, cwd=self.path, timeout=timeout)
        return result.stdout

    async def is_git_repository(self) -> bool:
        """Returns True if the path is inside a git working copy.

        Raises:
            CommandFailed: For failures other than "not a git repository".
        """
        try:
            await self._run(["rev-parse", "--git-dir"])
            return True
        except CommandFailed as e:
            if "not a git repository" in e.stderr.lower():
                return False
            raise

    async def repository_root(self) -> Path:
        """Resolves the top-level directory of the working copy."""
        return Path((await self._run(["rev-parse", "--show-toplevel"])).strip())

    async def status_porcelain(self) -> str:
        """Returns `git status --porcelain=v1 --branch` output, unmodified.

        Leading spaces are significant in porcelain output, so nothing is stripped.
        """
        return await self._run(
            ["status", "--porcelain=v1", "--branch", "--untracked-files=all"]
        )

    async def current_branch(self) -> str | None:
        """Retrieves the checked-out branch name.

        Returns:
            str | None: The branch name, or None in detached HEAD state.
        """
        branch = (await self._run(["rev-parse", "--abbrev-ref", "HEAD"])).strip()
        return None if branch == "HEAD" else branch

    async def tracking_branch(self, branch: str | None = None) -> str | None:
        """Retrieves the upstream of a local branch.

        Args:
            branch (str | None, optional): The local branch. Defaults to HEAD.

        Returns:
            str | None: The tracking reference (e.g. 'origin/main'), or None when
            no upstream is configured.
        """
        target = branch or "HEAD"
        try:
            output = await self._run(["rev-parse", "--abbrev-ref", f"{target}@{{u}}"])
        except CommandFailed as e:
            stderr = e.stderr.lower()
            if (
                "no upstream" in stderr
                or "does not point to a branch" in stderr
                or "no such branch" in stderr
            ):
                return None
            raise
        return output.strip() or None

    async def count_commits(self, revision_range: str) -> int:
        """Counts the commits in a revision range such as 'origin/main..main'."""
        output = (await self._run(["rev-list", "--count", revision_range])).strip()
        return int(output) if output else 0

    async def fetch(self, timeout: float = DEFAULT_FETCH_TIMEOUT) -> None:
        """Fetches all remotes, tags included, pruning stale references.

        Raises:
            CommandTimedOut: If the fetch exceeds the timeout.
            NetworkError | AuthError | RepositoryInvalid: For classified failures.
            CommandFailed: For unclassified failures.
        """
        try:
            await self._run(["fetch", "--all", "--tags", "--prune"], timeout=timeout)
        except CommandFailed as e:
            raise as_fetch_failure(e, self.path) from e

    async def add_all(self) -> None:
        """Stages all changes, including deletions and untracked files."""
        await self._run(["add", "--all"])

    async def commit(self, message: str) -> None:
        """Creates a new commit from the index with the provided message."""
        await self._run(["commit", "-m", message])

    async def push(self, timeout: float = DEFAULT_FETCH_TIMEOUT) -> None:
        """Pushes the current branch to its configured upstream."""
        try:
            await self._run(["push"], timeout=timeout)
        except CommandFailed as e:
            raise as_fetch_failure(e, self.path) from e
