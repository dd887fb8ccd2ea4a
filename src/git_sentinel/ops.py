import logging
from dataclasses import dataclass, field

from .constants import APP_NAME, DEFAULT_FETCH_TIMEOUT
from .git_wrapper import GitRepo, sanitize

logger = logging.getLogger(APP_NAME)

MAX_SUMMARY_LENGTH = 50
MAX_FILENAME_LENGTH = 30


@dataclass
class FileChanges:
    """Changed paths of a working copy, grouped by the kind of change.

    Attributes:
        added (list[str]): New or untracked paths.
        modified (list[str]): Paths with content or type changes.
        deleted (list[str]): Removed paths.
        renamed (list[str]): Destination paths of renames.
    """

    added: list[str] = field(default_factory=list)
    modified: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    renamed: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.added) + len(self.modified) + len(self.deleted) + len(self.renamed)

    def all_paths(self) -> list[str]:
        """Returns every path, modifications first."""
        return [*self.modified, *self.added, *self.deleted, *self.renamed]

    @classmethod
    def from_porcelain(cls, output: str) -> "FileChanges":
        """Groups `git status --porcelain=v1` entries by change kind.

        A path is counted once; the staged column takes precedence over the
        working-tree column.
        """
        changes = cls()
        seen: set[str] = set()

        for line in output.splitlines():
            if line.startswith("## ") or len(line) < 4:
                continue
            code, path = line[:2], line[3:]
            if code == "!!":
                continue

            renamed = " -> " in path
            if renamed:
                path = path.split(" -> ", 1)[1]
            path = path.strip('"')
            if path in seen:
                continue
            seen.add(path)

            if code == "??" or code[0] == "A":
                changes.added.append(path)
            elif renamed or code[0] in "RC":
                changes.renamed.append(path)
            elif "D" in code and code not in ("DD", "UD", "DU", "AU", "UA", "AA", "UU"):
                changes.deleted.append(path)
            else:
                changes.modified.append(path)

        return changes


def _plural(count: int) -> str:
    return "file" if count == 1 else "files"


def display_filename(path: str, limit: int = MAX_FILENAME_LENGTH) -> str:
    """Returns the basename of a path, shortened with '...' beyond `limit` characters."""
    name = path.rstrip("/").rsplit("/", 1)[-1] or path
    if len(name) > limit:
        return name[: limit - 3] + "..."
    return name


def truncate_summary(summary: str) -> str:
    """Shortens a summary line to MAX_SUMMARY_LENGTH, preferring a word boundary."""
    if len(summary) <= MAX_SUMMARY_LENGTH:
        return summary

    truncated = summary[: MAX_SUMMARY_LENGTH - 3]
    last_space = truncated.rfind(" ")
    if last_space > MAX_SUMMARY_LENGTH * 0.7:
        return truncated[:last_space] + "..."
    return truncated + "..."


def _single_kind_message(verb: str, files: list[str]) -> str:
    if len(files) == 1:
        return truncate_summary(f"{verb} {display_filename(files[0])}")
    return f"{verb} {len(files)} {_plural(len(files))}"


def suggest_commit_message(changes: FileChanges) -> str:
    """Proposes a one-line commit summary for a set of changes.

    Three or more pure additions read as an initial commit. A single kind of
    change names its file or counts its files; mixed changes list up to three
    short file names when they fit on the summary line.

    Args:
        changes (FileChanges): The grouped working-copy changes.

    Returns:
        str: A summary of at most MAX_SUMMARY_LENGTH characters.
    """
    total = changes.total
    if total == 0:
        return "Update files"

    if len(changes.added) == total:
        if total >= 3:
            return "Initial commit"
        return _single_kind_message("Add", changes.added)
    if len(changes.deleted) == total:
        return _single_kind_message("Remove", changes.deleted)
    if len(changes.renamed) == total:
        return _single_kind_message("Rename", changes.renamed)

    paths = changes.all_paths()
    if total == 1:
        return truncate_summary(f"Update {display_filename(paths[0])}")
    if total <= 3:
        summary = "Update " + ", ".join(display_filename(p, 15) for p in paths)
        if len(summary) <= MAX_SUMMARY_LENGTH:
            return summary
    return f"Update {total} {_plural(total)}"


async def pending_changes(repo: GitRepo) -> FileChanges:
    """Reads and groups the uncommitted changes of a working copy."""
    return FileChanges.from_porcelain(await repo.status_porcelain())


async def commit_changes(
    repo: GitRepo, message: str | None = None, stage_all: bool = True
) -> str:
    """Commits the working copy, suggesting a message when none is given.

    Args:
        repo (GitRepo): The repository to commit in.
        message (str | None, optional): The commit message. Defaults to a
            suggestion derived from the changed files.
        stage_all (bool, optional): Whether to stage every change first,
            untracked files included. Defaults to True.

    Returns:
        str: The commit message that was used.

    Raises:
        ValueError: If there is nothing to commit or the message is blank.
        SentinelError: If a git command fails or the message is rejected.
    """
    changes = await pending_changes(repo)
    if changes.total == 0:
        raise ValueError(f"Nothing to commit in {repo.path}")

    if message is None:
        message = suggest_commit_message(changes)
    message = message.strip()
    if not message:
        raise ValueError("Commit message cannot be empty")

    if stage_all:
        await repo.add_all()
    await repo.commit(message)
    logger.info(f"COMMITTED {repo.path.name}: {sanitize(message)} ({changes.total} files)")
    return message


async def push_changes(repo: GitRepo, timeout: float = DEFAULT_FETCH_TIMEOUT) -> None:
    """Pushes the checked-out branch to its upstream.

    Raises:
        CommandTimedOut: If the push exceeds the timeout.
        FetchFailure: For network, authentication, or repository failures.
    """
    await repo.push(timeout=timeout)
    logger.info(f"PUSHED {repo.path.name}")
