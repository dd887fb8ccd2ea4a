"""Tests for the debounced status cache and its poll loop."""

import asyncio
from pathlib import Path

import pytest

from conftest import STATUS_ARGS, FakeExecutor, make_repo, script_repo
from git_sentinel.cache import StatusCache
from git_sentinel.errors import CommandFailed
from git_sentinel.registry import Registry
from git_sentinel.scheduler import FetchResult
from git_sentinel.status import FetchStatus, StatusComputer


async def _settle(rounds: int = 30) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


def _cache(registry: Registry, fake: FakeExecutor, poll_interval: float = 30.0) -> StatusCache:
    return StatusCache(registry, StatusComputer(fake), poll_interval)  # type: ignore[arg-type]


@pytest.mark.asyncio
async def test_overlapping_refreshes_run_at_most_two_passes(
    tmp_path: Path, registry: Registry, fake_git: FakeExecutor
) -> None:
    """Verifies that requests during a running pass collapse into one follow-up."""
    repo = make_repo(tmp_path, registry, "alpha")
    script_repo(fake_git, repo.path)
    gate = asyncio.Event()
    fake_git.on(STATUS_ARGS, "## main...origin/main\n", repo.path, gate=gate)
    cache = _cache(registry, fake_git)

    first = asyncio.create_task(cache.refresh_all())
    await _settle()
    assert cache.is_refreshing

    followers = [asyncio.create_task(cache.refresh_all()) for _ in range(3)]
    await _settle()
    gate.set()
    await asyncio.gather(first, *followers)

    assert cache.refresh_count == 2
    assert fake_git.count(*STATUS_ARGS) == 2
    assert not cache.is_refreshing


@pytest.mark.asyncio
async def test_failing_repository_is_flagged_in_isolation(
    tmp_path: Path, registry: Registry, fake_git: FakeExecutor
) -> None:
    """Verifies that one broken repository never spoils another's entry."""
    broken = make_repo(tmp_path, registry, "broken")
    healthy = make_repo(tmp_path, registry, "healthy")
    script_repo(fake_git, broken.path)
    fake_git.on(
        STATUS_ARGS,
        CommandFailed(STATUS_ARGS, 128, "fatal: not a git repository"),
        broken.path,
    )
    script_repo(
        fake_git,
        healthy.path,
        ahead=1,
        behind=2,
        porcelain="## main...origin/main\nM  staged.py\n",
    )
    cache = _cache(registry, fake_git)

    await cache.refresh_all()

    flagged = cache.get(broken.id)
    assert flagged is not None and flagged.is_error
    assert "not a git repository" in flagged.status_error

    exact = cache.get(healthy.id)
    assert exact is not None and not exact.is_error
    assert exact.current_branch == "main"
    assert exact.staged_files == ("staged.py",)
    assert (exact.commits_ahead, exact.commits_behind) == (1, 2)
    assert exact.remote_changes
    assert cache.last_refresh_time is not None


@pytest.mark.asyncio
async def test_refresh_repository_touches_only_one_entry(
    tmp_path: Path, registry: Registry, fake_git: FakeExecutor
) -> None:
    first = make_repo(tmp_path, registry, "first")
    second = make_repo(tmp_path, registry, "second")
    script_repo(fake_git, first.path)
    script_repo(fake_git, second.path)
    cache = _cache(registry, fake_git)
    await cache.refresh_all()
    untouched = cache.get(second.id)

    script_repo(fake_git, first.path, behind=5)
    entry = await cache.refresh_repository(first.id)

    assert entry is not None and entry.commits_behind == 5
    assert cache.get(first.id) is entry
    assert cache.get(second.id) is untouched
    assert cache.refresh_count == 1


@pytest.mark.asyncio
async def test_refresh_repository_ignores_unknown_and_disabled(
    tmp_path: Path, registry: Registry, fake_git: FakeExecutor
) -> None:
    repo = make_repo(tmp_path, registry, "alpha")
    registry.toggle_repository(repo.id)
    cache = _cache(registry, fake_git)

    assert await cache.refresh_repository("missing") is None
    assert await cache.refresh_repository(repo.id) is None
    assert fake_git.calls == []


@pytest.mark.asyncio
async def test_disabled_repositories_are_dropped(
    tmp_path: Path, registry: Registry, fake_git: FakeExecutor
) -> None:
    keep = make_repo(tmp_path, registry, "keep")
    drop = make_repo(tmp_path, registry, "drop")
    script_repo(fake_git, keep.path)
    script_repo(fake_git, drop.path)
    cache = _cache(registry, fake_git)
    await cache.refresh_all()
    assert set(cache.snapshot()) == {keep.id, drop.id}

    registry.toggle_repository(drop.id)
    await cache.refresh_all()

    assert set(cache.snapshot()) == {keep.id}


@pytest.mark.asyncio
async def test_snapshot_is_read_only(
    tmp_path: Path, registry: Registry, fake_git: FakeExecutor
) -> None:
    repo = make_repo(tmp_path, registry, "alpha")
    script_repo(fake_git, repo.path)
    cache = _cache(registry, fake_git)
    await cache.refresh_all()

    snapshot = cache.snapshot()

    with pytest.raises(TypeError):
        snapshot[repo.id] = None  # type: ignore[index]


@pytest.mark.asyncio
async def test_listeners_receive_changed_ids(
    tmp_path: Path, registry: Registry, fake_git: FakeExecutor
) -> None:
    repo = make_repo(tmp_path, registry, "alpha")
    script_repo(fake_git, repo.path)
    cache = _cache(registry, fake_git)
    changes: list[list[str]] = []
    unsubscribe = cache.subscribe(changes.append)

    await cache.refresh_all()
    await cache.refresh_repository(repo.id)
    unsubscribe()
    await cache.refresh_all()

    assert changes == [[repo.id], [repo.id]]


# --- Poll loop ---


@pytest.mark.asyncio
async def test_activate_refreshes_immediately(
    tmp_path: Path, registry: Registry, fake_git: FakeExecutor
) -> None:
    repo = make_repo(tmp_path, registry, "alpha")
    script_repo(fake_git, repo.path)
    cache = _cache(registry, fake_git, poll_interval=60.0)

    cache.activate()
    await _settle(50)

    assert cache.is_active
    assert cache.refresh_count == 1
    assert cache.get(repo.id) is not None

    cache.deactivate()
    assert not cache.is_active
    assert cache.snapshot() == {}


@pytest.mark.asyncio
async def test_poll_loop_repeats_every_interval(
    tmp_path: Path, registry: Registry, fake_git: FakeExecutor
) -> None:
    repo = make_repo(tmp_path, registry, "alpha")
    script_repo(fake_git, repo.path)
    cache = _cache(registry, fake_git, poll_interval=0.01)

    cache.activate()
    await asyncio.sleep(0.1)
    cache.deactivate()

    assert fake_git.count(*STATUS_ARGS) >= 2


@pytest.mark.asyncio
async def test_poll_tick_skipped_without_enabled_repositories(
    registry: Registry, fake_git: FakeExecutor
) -> None:
    cache = _cache(registry, fake_git, poll_interval=0.01)

    cache.activate()
    await asyncio.sleep(0.05)
    cache.deactivate()

    assert cache.refresh_count == 0
    assert fake_git.calls == []


@pytest.mark.asyncio
async def test_fetch_results_refresh_only_while_active(
    tmp_path: Path, registry: Registry, fake_git: FakeExecutor
) -> None:
    repo = make_repo(tmp_path, registry, "alpha")
    script_repo(fake_git, repo.path)
    cache = _cache(registry, fake_git, poll_interval=60.0)
    result = FetchResult(repository_id=repo.id, timestamp=0.0, success=True)

    await cache.handle_fetch_result(result)
    assert fake_git.calls == []

    cache.activate()
    await _settle(50)
    before = fake_git.count(*STATUS_ARGS)
    await cache.handle_fetch_result(result)

    assert fake_git.count(*STATUS_ARGS) == before + 1
    cache.deactivate()


@pytest.mark.asyncio
async def test_slow_pass_never_overwrites_newer_refresh(
    tmp_path: Path, registry: Registry, fake_git: FakeExecutor
) -> None:
    """Verifies that an isolated refresh finishing first keeps its entry."""
    repo = make_repo(tmp_path, registry, "alpha")
    script_repo(fake_git, repo.path)
    gate = asyncio.Event()
    fake_git.on(STATUS_ARGS, "## main...origin/main\n", repo.path, gate=gate)
    cache = _cache(registry, fake_git)

    slow_pass = asyncio.create_task(cache.refresh_all())
    await _settle()

    fake_git.on(STATUS_ARGS, "## main...origin/main\n", repo.path)
    registry.record_fetch_result(
        FetchResult(repository_id=repo.id, timestamp=50.0, success=True)
    )
    fresh = await cache.refresh_repository(repo.id)
    assert fresh is not None and fresh.fetch_status is FetchStatus.SUCCESS

    gate.set()
    await slow_pass

    assert cache.get(repo.id) is fresh
    assert cache.refresh_count == 1


@pytest.mark.asyncio
async def test_refresh_finishing_after_deactivate_is_dropped(
    tmp_path: Path, registry: Registry, fake_git: FakeExecutor
) -> None:
    repo = make_repo(tmp_path, registry, "alpha")
    script_repo(fake_git, repo.path)
    cache = _cache(registry, fake_git, poll_interval=60.0)
    cache.activate()
    await _settle(50)

    gate = asyncio.Event()
    fake_git.on(STATUS_ARGS, "## main...origin/main\n", repo.path, gate=gate)
    pending = asyncio.create_task(
        cache.handle_fetch_result(
            FetchResult(repository_id=repo.id, timestamp=0.0, success=True)
        )
    )
    await _settle()

    cache.deactivate()
    gate.set()
    await pending

    assert cache.snapshot() == {}
