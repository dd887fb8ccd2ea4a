"""Shared fixtures: a scripted git executor and a throwaway registry."""

import asyncio
from pathlib import Path
from typing import Any, Sequence

import pytest

from git_sentinel.errors import CommandFailed
from git_sentinel.git_wrapper import CommandResult, validate_command
from git_sentinel.registry import Registry, RepositoryHandle

STATUS_ARGS = ("status", "--porcelain=v1", "--branch", "--untracked-files=all")
FETCH_ARGS = ("fetch", "--all", "--tags", "--prune")
HEAD_ARGS = ("rev-parse", "--abbrev-ref", "HEAD")


class FakeExecutor:
    """Stands in for CommandExecutor, answering commands from a script.

    Responses are keyed by (cwd, args); a key with cwd None matches any
    directory. A response is either stdout text or an exception to raise.
    Commands are still run through the real validator.

    Attributes:
        calls (list[tuple[str | None, tuple[str, ...]]]): Every executed command.
        events (list[tuple[str, str | None, tuple[str, ...]]]): 'start' and
            'end' markers around each command, in order.
        max_active (int): Highest number of commands running at once.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str | None, tuple[str, ...]]] = []
        self.events: list[tuple[str, str | None, tuple[str, ...]]] = []
        self.active = 0
        self.max_active = 0
        self._responses: dict[tuple[str | None, tuple[str, ...]], Any] = {}
        self._gates: dict[tuple[str | None, tuple[str, ...]], asyncio.Event] = {}

    def on(
        self,
        args: Sequence[str],
        response: Any = "",
        path: str | Path | None = None,
        gate: asyncio.Event | None = None,
    ) -> None:
        key = (str(path) if path is not None else None, tuple(args))
        self._responses[key] = response
        if gate is not None:
            self._gates[key] = gate
        else:
            self._gates.pop(key, None)

    def _lookup(self, cwd: str | None, args: tuple[str, ...]) -> tuple[Any, Any]:
        for key in ((cwd, args), (None, args)):
            if key in self._responses:
                return self._responses[key], self._gates.get(key)
        return CommandFailed(args, 128, f"fatal: unscripted command {args}"), None

    def count(self, *args: str, path: str | Path | None = None) -> int:
        return sum(
            1
            for cwd, call in self.calls
            if call == tuple(args) and (path is None or cwd == str(path))
        )

    async def execute(
        self,
        command: str | Sequence[str],
        cwd: Path | str | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        args = tuple(validate_command(command))
        where = str(cwd) if cwd is not None else None
        self.calls.append((where, args))
        self.events.append(("start", where, args))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            response, gate = self._lookup(where, args)
            if gate is not None:
                await gate.wait()
            else:
                await asyncio.sleep(0)
        finally:
            self.active -= 1
            self.events.append(("end", where, args))

        if isinstance(response, BaseException):
            raise response
        return CommandResult(stdout=response)

    async def git_version(self) -> str | None:
        return "git version 2.45.0"


def script_repo(
    fake: FakeExecutor,
    path: str | Path,
    branch: str | None = "main",
    tracking: str | None = "origin/main",
    ahead: int = 0,
    behind: int = 0,
    porcelain: str | None = None,
) -> None:
    """Scripts the commands a status computation or fetch issues for one repository."""
    fake.on(HEAD_ARGS, f"{branch or 'HEAD'}\n", path)
    fake.on(FETCH_ARGS, "", path)

    if porcelain is None:
        if branch is None:
            porcelain = "## HEAD (no branch)\n"
        elif tracking:
            porcelain = f"## {branch}...{tracking}\n"
        else:
            porcelain = f"## {branch}\n"
    fake.on(STATUS_ARGS, porcelain, path)

    if branch is None:
        return
    upstream_args = ("rev-parse", "--abbrev-ref", f"{branch}@{{u}}")
    if tracking is None:
        fake.on(
            upstream_args,
            CommandFailed(
                upstream_args,
                128,
                f"fatal: no upstream configured for branch '{branch}'\n",
            ),
            path,
        )
        return
    fake.on(upstream_args, f"{tracking}\n", path)
    fake.on(("rev-list", "--count", f"{tracking}..{branch}"), f"{ahead}\n", path)
    fake.on(("rev-list", "--count", f"{branch}..{tracking}"), f"{behind}\n", path)


@pytest.fixture
def fake_git() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def registry(tmp_path: Path) -> Registry:
    return Registry(tmp_path / "state" / "repositories.json")


def make_repo(tmp_path: Path, registry: Registry, name: str, /, **kwargs: Any) -> RepositoryHandle:
    """Creates a directory with a .git folder and registers it."""
    path = tmp_path / "repos" / name
    (path / ".git").mkdir(parents=True)
    return registry.add_repository(path, **kwargs)
