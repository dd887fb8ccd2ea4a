import argparse
import asyncio
import logging
import os
import signal
import subprocess
import sys
import time
from pathlib import Path

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from . import daemon, ops
from .cache import StatusCache
from .config import Config, parse_time
from .constants import APP_NAME, CONFIG_FILE, LOG_FILE, PID_FILE, REGISTRY_FILE
from .errors import SentinelError
from .git_wrapper import CommandExecutor, GitRepo
from .registry import Registry, RepositoryHandle
from .scheduler import FetchResult, FetchScheduler
from .status import ExtendedStatus, FetchStatus, StatusComputer

logger = logging.getLogger(APP_NAME)
console = Console()


def _format_age(timestamp: float | None) -> str:
    """Renders a Unix timestamp as a compact relative age (e.g. '5m ago')."""
    if not timestamp:
        return "never"
    delta = max(0, int(time.time() - timestamp))
    if delta < 60:
        return f"{delta}s ago"
    if delta < 3600:
        return f"{delta // 60}m ago"
    if delta < 86400:
        return f"{delta // 3600}h ago"
    return f"{delta // 86400}d ago"


def _display_path(path: str | Path) -> str:
    return str(path).replace(str(Path.home()), "~")


def _daemon_pid() -> int | None:
    """Returns the pid of a running daemon, or None."""
    if not PID_FILE.exists():
        return None
    try:
        pid = int(PID_FILE.read_text().strip())
        os.kill(pid, 0)
    except (ValueError, OSError):
        return None
    return pid


def _signal_daemon() -> None:
    """Asks a running daemon to reload the registry."""
    pid = _daemon_pid()
    if pid is None or not hasattr(signal, "SIGHUP"):
        return
    try:
        os.kill(pid, signal.SIGHUP)
        console.print("[dim]Daemon notified.[/dim]")
    except OSError as e:
        logger.debug(f"Could not signal daemon {pid}: {e}")


def resolve_repository(registry: Registry, key: str) -> RepositoryHandle:
    """Finds a repository by exact id, unique id prefix, or display name.

    Raises:
        SystemExit: If nothing, or more than one repository, matches.
    """
    repos = registry.get_repositories()
    for matcher in (
        lambda r: r.id == key,
        lambda r: r.name == key,
        lambda r: r.id.startswith(key),
    ):
        matches = [r for r in repos if matcher(r)]
        if len(matches) == 1:
            return matches[0]
        if len(matches) > 1:
            console.print(f"[bold red]ERROR:[/bold red] '{key}' is ambiguous.")
            sys.exit(1)

    console.print(f"[bold red]ERROR:[/bold red] No repository matches '{key}'.")
    sys.exit(1)


def _executor(config: Config) -> CommandExecutor:
    return CommandExecutor(
        timeout=config.executor.timeout, path_entries=config.executor.path_entries
    )


# --- Registry Commands ---


def add_repo(
    path_str: str,
    name: str | None = None,
    interval: str | None = None,
    registry_path: Path = REGISTRY_FILE,
) -> None:
    """Registers a working copy for monitoring.

    Args:
        path_str (str): Path to the repository root.
        name (str | None, optional): Display name. Defaults to the directory name.
        interval (str | None, optional): Fetch interval such as '5m'.
        registry_path (Path, optional): The registry file to update.
    """
    config = Config.load()
    registry = Registry.load(registry_path, config.scheduler.fetch_interval)

    try:
        fetch_interval = parse_time(interval) if interval else None
        repo = registry.add_repository(
            Path(path_str).expanduser().absolute(), name, fetch_interval
        )
    except (ValueError, OSError) as e:
        console.print(f"[bold red]ERROR:[/bold red] {e}")
        sys.exit(1)

    console.print(
        f"✔ Registered [cyan]{repo.name}[/cyan] "
        f"([dim]{repo.id[:8]}[/dim], every {repo.fetch_interval:g}s)",
        style="green",
    )
    _signal_daemon()


def remove_repo(key: str, registry_path: Path = REGISTRY_FILE) -> None:
    """Stops monitoring a repository; the working copy is left untouched."""
    registry = Registry.load(registry_path)
    repo = resolve_repository(registry, key)
    registry.remove_repository(repo.id)
    console.print(f"✔ Unregistered: [cyan]{repo.name}[/cyan]", style="green")
    _signal_daemon()


def toggle_repo(key: str, registry_path: Path = REGISTRY_FILE) -> None:
    """Enables a disabled repository or disables an enabled one."""
    registry = Registry.load(registry_path)
    repo = resolve_repository(registry, key)
    enabled = registry.toggle_repository(repo.id)
    state = "[green]enabled[/green]" if enabled else "[yellow]disabled[/yellow]"
    console.print(f"Repository [cyan]{repo.name}[/cyan] {state}.")
    _signal_daemon()


def list_repos(registry_path: Path = REGISTRY_FILE) -> None:
    """Lists every registered repository with its stored fetch state."""
    registry = Registry.load(registry_path)
    repos = registry.get_repositories()
    if not repos:
        console.print("[yellow]Registry is empty.[/yellow]")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("ID", style="dim")
    table.add_column("Name", style="cyan")
    table.add_column("Path")
    table.add_column("State")
    table.add_column("Interval", justify="right")
    table.add_column("Last Fetch", justify="right", style="dim")

    for repo in repos:
        if not Path(repo.path).exists():
            state = "[red]Missing[/red]"
        elif not repo.enabled:
            state = "[yellow]Disabled[/yellow]"
        elif repo.last_fetch_status == "error":
            state = "[bold red]Fetch Error[/bold red]"
        elif repo.remote_changes:
            state = f"[bold blue]{repo.remote_commit_count or 0} to pull[/bold blue]"
        else:
            state = "[green]Active[/green]"

        table.add_row(
            repo.id[:8],
            repo.name,
            _display_path(repo.path),
            state,
            f"{repo.fetch_interval:g}s",
            _format_age(repo.last_fetch_time),
        )

    console.print(table)


# --- Status ---


def _status_row(entry: ExtendedStatus) -> tuple[str, ...]:
    if entry.is_error:
        return (
            entry.name,
            "-",
            "[bold red]Unavailable[/bold red]",
            "-",
            f"[red]{entry.status_error}[/red]",
        )

    branch = entry.current_branch or "[yellow](detached)[/yellow]"
    if entry.has_uncommitted_changes:
        local = (
            f"{len(entry.staged_files)} staged, {len(entry.unstaged_files)} modified, "
            f"{len(entry.untracked_files)} untracked"
        )
    else:
        local = "[green]clean[/green]"

    if entry.tracking_branch is None:
        remote = "[dim]no upstream[/dim]"
    else:
        remote = f"↑{entry.commits_ahead} ↓{entry.commits_behind}"
        if entry.remote_changes:
            remote = f"[bold blue]{remote}[/bold blue]"

    if entry.fetch_status is FetchStatus.ERROR:
        fetch = f"[red]error[/red] ({entry.last_fetch_error})"
    elif entry.fetch_status is FetchStatus.SUCCESS:
        fetch = _format_age(entry.last_fetch_time)
    else:
        fetch = "[dim]pending[/dim]"

    return entry.name, branch, local, remote, fetch


async def _collect_status(config: Config, registry: Registry) -> StatusCache:
    cache = StatusCache(registry, StatusComputer(_executor(config)))
    await cache.refresh_all()
    return cache


def show_status(registry_path: Path = REGISTRY_FILE) -> None:
    """Displays the daemon state and the current status of enabled repositories."""
    config = Config.load()
    registry = Registry.load(registry_path)

    pid = _daemon_pid()
    header = Text()
    header.append("Daemon: ", style="bold")
    if pid is not None:
        header.append(f"Running (pid {pid})", style="bold green")
    else:
        header.append("Stopped", style="bold red")
    console.print(Panel(header, title="System Status", expand=False))

    if not registry.get_enabled_repositories():
        console.print("[yellow]No enabled repositories.[/yellow]")
        return

    with console.status("Reading repository status...", spinner="dots"):
        cache = asyncio.run(_collect_status(config, registry))

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Repository", style="cyan")
    table.add_column("Branch")
    table.add_column("Working Copy")
    table.add_column("Upstream", justify="right")
    table.add_column("Last Fetch", justify="right")

    snapshot = cache.snapshot()
    for repo in registry.get_enabled_repositories():
        entry = snapshot.get(repo.id)
        if entry is not None:
            table.add_row(*_status_row(entry))

    console.print(table)


# --- Git Operations ---


async def _fetch(config: Config, registry: Registry, repo_id: str | None) -> list[FetchResult]:
    scheduler = FetchScheduler(
        registry,
        StatusComputer(_executor(config)),
        on_result=registry.record_fetch_result,
        fetch_timeout=config.executor.fetch_timeout,
    )
    if repo_id is None:
        return await scheduler.fetch_all_now()
    return [await scheduler.fetch_repository_now(repo_id)]


def fetch_repos(key: str | None = None, registry_path: Path = REGISTRY_FILE) -> None:
    """Fetches one repository, or every enabled repository, immediately."""
    config = Config.load()
    registry = Registry.load(registry_path)

    repo_id = resolve_repository(registry, key).id if key else None
    if repo_id is None and not registry.get_enabled_repositories():
        console.print("[yellow]No enabled repositories.[/yellow]")
        return

    with console.status("Fetching...", spinner="dots"):
        results = asyncio.run(_fetch(config, registry, repo_id))

    names = {r.id: r.name for r in registry.get_repositories()}
    failed = 0
    for result in results:
        name = names.get(result.repository_id, result.repository_id)
        if not result.success:
            failed += 1
            console.print(f"[bold red]✘ {name}:[/bold red] {result.error}")
        elif result.remote_changes:
            console.print(
                f"[bold blue]↓ {name}:[/bold blue] {result.commits_behind} new commits available"
            )
        else:
            console.print(f"[green]✔ {name}:[/green] up to date")

    if failed:
        sys.exit(1)


def commit_repo(
    key: str, message: str | None = None, registry_path: Path = REGISTRY_FILE
) -> None:
    """Stages and commits every change, suggesting a message when none is given."""
    config = Config.load()
    registry = Registry.load(registry_path)
    repo = resolve_repository(registry, key)
    git = GitRepo(repo.path, _executor(config))

    try:
        used = asyncio.run(ops.commit_changes(git, message))
    except (ValueError, SentinelError) as e:
        console.print(f"[bold red]ERROR:[/bold red] {e}")
        sys.exit(1)

    console.print(f"[bold green]SUCCESS:[/bold green] Committed '{used}'")


def push_repo(key: str, registry_path: Path = REGISTRY_FILE) -> None:
    """Pushes the checked-out branch of a repository to its upstream."""
    config = Config.load()
    registry = Registry.load(registry_path)
    repo = resolve_repository(registry, key)
    git = GitRepo(repo.path, _executor(config))

    try:
        with console.status(f"Pushing {repo.name}...", spinner="dots"):
            asyncio.run(ops.push_changes(git, config.executor.fetch_timeout))
    except SentinelError as e:
        console.print(f"[bold red]ERROR:[/bold red] {e}")
        sys.exit(1)

    console.print(f"[bold green]SUCCESS:[/bold green] Pushed {repo.name}")


def tail_log() -> None:
    """Follows the daemon log file in real-time."""
    if not LOG_FILE.exists():
        console.print(f"[red]No log file found yet at {LOG_FILE}.[/red]")
        return

    console.print(f"Tailing [bold cyan]{LOG_FILE}[/bold cyan] (Ctrl+C to stop)...")
    try:
        subprocess.run(["tail", "-n", "1000", "-f", str(LOG_FILE)])
    except KeyboardInterrupt:
        console.print("\nStopped.", style="dim")


class SentinelHelpFormatter(argparse.HelpFormatter):
    """Groups subcommands into categories in the help output."""

    def _format_action(self, action: argparse.Action) -> str:
        if isinstance(action, argparse._SubParsersAction):
            parts = []
            groups = {
                "Repositories": ["add", "remove", "toggle", "list"],
                "Monitoring": ["status", "fetch", "run", "log"],
                "Changes": ["commit", "push"],
                "General": ["help"],
            }

            subactions = list(self._iter_indented_subactions(action))
            for group_name, commands in groups.items():
                group_actions = [a for a in subactions if a.dest in commands]
                if not group_actions:
                    continue

                parts.append(f"\n  {group_name}:\n")
                self._indent()
                for subaction in group_actions:
                    parts.append(self._format_action(subaction))
                self._dedent()

            return self._join_parts(parts)

        return super()._format_action(action)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=APP_NAME,
        usage=argparse.SUPPRESS,
        formatter_class=SentinelHelpFormatter,
        add_help=False,
        epilog=f"Configuration: {CONFIG_FILE}",
    )
    parser.add_argument(
        "-h",
        "--help",
        action="help",
        default=argparse.SUPPRESS,
        help=argparse.SUPPRESS,
    )

    subparsers = parser.add_subparsers(dest="command")

    add_parser = subparsers.add_parser("add", help="Register a repository")
    add_parser.add_argument("path", help="Path to the repository root")
    add_parser.add_argument("--name", help="Display name (default: directory name)")
    add_parser.add_argument(
        "--interval", help="Fetch interval, e.g. '90s' or '5m' (default: config)"
    )

    remove_parser = subparsers.add_parser("remove", help="Stop monitoring a repository")
    remove_parser.add_argument("id", help="Repository id, id prefix, or name")

    toggle_parser = subparsers.add_parser("toggle", help="Enable or disable a repository")
    toggle_parser.add_argument("id", help="Repository id, id prefix, or name")

    subparsers.add_parser("list", help="List registered repositories")
    subparsers.add_parser("status", help="Show daemon and repository status")

    fetch_parser = subparsers.add_parser("fetch", help="Fetch now (all if no id)")
    fetch_parser.add_argument("id", nargs="?", help="Repository id, id prefix, or name")

    commit_parser = subparsers.add_parser("commit", help="Stage and commit all changes")
    commit_parser.add_argument("id", help="Repository id, id prefix, or name")
    commit_parser.add_argument("-m", "--message", help="Commit message (default: suggested)")

    push_parser = subparsers.add_parser("push", help="Push the current branch")
    push_parser.add_argument("id", help="Repository id, id prefix, or name")

    subparsers.add_parser("run", help="Run the monitoring daemon in the foreground")
    subparsers.add_parser("log", help="Tail the daemon log file")
    subparsers.add_parser("help", help="Show this help message")
    return parser


def main() -> None:
    """Main entry point for the Git Sentinel CLI."""
    parser = build_parser()
    args = parser.parse_args()

    if args.command == "add":
        add_repo(args.path, args.name, args.interval)
    elif args.command == "remove":
        remove_repo(args.id)
    elif args.command == "toggle":
        toggle_repo(args.id)
    elif args.command == "list":
        list_repos()
    elif args.command == "status":
        show_status()
    elif args.command == "fetch":
        fetch_repos(args.id)
    elif args.command == "commit":
        commit_repo(args.id, args.message)
    elif args.command == "push":
        push_repo(args.id)
    elif args.command == "run":
        daemon.main(interactive=sys.stdout.isatty())
    elif args.command == "log":
        tail_log()
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
