from pathlib import Path

import pytest

from git_sentinel.errors import (
    AuthError,
    CommandFailed,
    CommandTimedOut,
    FetchErrorKind,
    NetworkError,
    RepositoryInvalid,
    SentinelError,
    as_fetch_failure,
    classify_fetch_failure,
    describe_fetch_failure,
)

FETCH = ["fetch", "--all", "--tags", "--prune"]


@pytest.mark.parametrize(
    "stderr, expected",
    [
        ("fatal: Authentication failed for 'https://github.com/x'", FetchErrorKind.AUTH),
        ("git@github.com: Permission denied (publickey).", FetchErrorKind.AUTH),
        (
            "fatal: could not read Username for 'https://github.com': "
            "terminal prompts disabled",
            FetchErrorKind.AUTH,
        ),
        ("ssh: Could not resolve host: github.com", FetchErrorKind.NETWORK),
        ("fatal: unable to access: Failed to connect to host", FetchErrorKind.NETWORK),
        ("fatal: 'origin' does not appear to be a git repository", FetchErrorKind.REPOSITORY_INVALID),
        ("ERROR: Repository not found.", FetchErrorKind.REPOSITORY_INVALID),
        ("error: something unexpected happened", FetchErrorKind.UNKNOWN),
    ],
)
def test_classify_fetch_failure_by_stderr(stderr: str, expected: FetchErrorKind) -> None:
    assert classify_fetch_failure(CommandFailed(FETCH, 128, stderr)) is expected


def test_classify_prefers_auth_over_network() -> None:
    """Verifies that a rejected key is not misreported as a network outage."""
    error = CommandFailed(
        FETCH,
        128,
        "Permission denied (publickey).\nfatal: Could not read from remote repository.\n"
        "Connection refused",
    )
    assert classify_fetch_failure(error) is FetchErrorKind.AUTH


def test_classify_timeout_and_typed_errors() -> None:
    path = Path("/repo")
    assert classify_fetch_failure(CommandTimedOut(FETCH, 30.0)) is FetchErrorKind.TIMEOUT
    assert classify_fetch_failure(NetworkError("x", path)) is FetchErrorKind.NETWORK
    assert classify_fetch_failure(AuthError("x", path)) is FetchErrorKind.AUTH
    assert (
        classify_fetch_failure(RepositoryInvalid("x", path))
        is FetchErrorKind.REPOSITORY_INVALID
    )


def test_describe_fetch_failure_messages() -> None:
    timeout = CommandTimedOut(FETCH, 30.0)
    assert (
        describe_fetch_failure(FetchErrorKind.TIMEOUT, timeout)
        == "Fetch operation timed out after 30s"
    )
    assert "credentials" in describe_fetch_failure(FetchErrorKind.AUTH, Exception())
    assert describe_fetch_failure(FetchErrorKind.NETWORK, Exception()).startswith(
        "Network error"
    )
    assert describe_fetch_failure(FetchErrorKind.UNKNOWN, Exception("boom")) == (
        "Fetch failed: boom"
    )


def test_as_fetch_failure_wraps_classified_errors() -> None:
    path = Path("/repo")
    cause = CommandFailed(FETCH, 128, "fatal: Could not resolve host: example.com")

    wrapped = as_fetch_failure(cause, path)

    assert isinstance(wrapped, NetworkError)
    assert wrapped.path == path
    assert wrapped.cause is cause


def test_as_fetch_failure_keeps_unclassified_errors() -> None:
    cause = CommandFailed(FETCH, 1, "error: something odd")
    assert as_fetch_failure(cause, Path("/repo")) is cause

    wrapped = as_fetch_failure(RuntimeError("boom"), Path("/repo"))
    assert type(wrapped) is SentinelError


def test_command_failed_message_variants() -> None:
    assert str(CommandFailed(FETCH, None, "No such file")) == "Could not start git: No such file"
    assert str(CommandFailed(FETCH, 1, "")) == "Git error: exit code 1"
    assert str(CommandFailed(FETCH, 1, "fatal: boom\n")) == "Git error: fatal: boom"
