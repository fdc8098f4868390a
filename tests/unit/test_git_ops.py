"""Unit tests for the git wrapper with subprocesses mocked out."""

from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from wavepilot.utils.git import GitError, GitOps
from wavepilot.utils.subprocess import SubprocessError
from wavepilot.worktree.identity import get_current_user


def result(success=True, output=""):
    return {"success": success, "output": output, "exit_code": 0 if success else 1, "timed_out": False}


@pytest.fixture
def git(tmp_path):
    return GitOps(tmp_path)


@pytest.mark.asyncio
async def test_run_git_raises_on_failure(git):
    git.manager.run = AsyncMock(return_value=result(False, "fatal: bad revision"))

    with pytest.raises(GitError) as exc_info:
        await git.run_git(["rev-parse", "nope"])

    assert exc_info.value.output == "fatal: bad revision"


@pytest.mark.asyncio
async def test_run_git_unchecked_returns_result(git):
    git.manager.run = AsyncMock(return_value=result(False, "error"))

    outcome = await git.run_git(["merge", "x"], check=False)

    assert outcome["success"] is False


@pytest.mark.asyncio
async def test_run_git_wraps_subprocess_error(git):
    git.manager.run = AsyncMock(side_effect=SubprocessError("Command not found: git"))

    with pytest.raises(GitError, match="Command not found"):
        await git.run_git(["status"])


@pytest.mark.asyncio
async def test_run_git_uses_repo_root_by_default(git, tmp_path):
    git.manager.run = AsyncMock(return_value=result())

    await git.run_git(["status"])
    await git.run_git(["status"], cwd=tmp_path / "wt")

    assert git.manager.run.await_args_list[0].kwargs["cwd"] == tmp_path
    assert git.manager.run.await_args_list[1].kwargs["cwd"] == tmp_path / "wt"


@pytest.mark.asyncio
async def test_list_worktrees_parses_porcelain(git):
    porcelain = (
        "worktree /repo\n"
        "HEAD 1111111111111111111111111111111111111111\n"
        "branch refs/heads/main\n"
        "\n"
        "worktree /repo-wt/abcd1234\n"
        "HEAD 2222222222222222222222222222222222222222\n"
        "branch refs/heads/wavepilot/sam/demo-1\n"
        "\n"
        "worktree /repo-wt/detached\n"
        "HEAD 3333333333333333333333333333333333333333\n"
        "detached\n"
    )
    git.manager.run = AsyncMock(return_value=result(output=porcelain))

    entries = await git.list_worktrees()

    assert [entry["path"] for entry in entries] == [
        Path("/repo"),
        Path("/repo-wt/abcd1234"),
        Path("/repo-wt/detached"),
    ]
    assert entries[0]["branch"] == "main"
    assert entries[1]["branch"] == "wavepilot/sam/demo-1"
    assert entries[2]["detached"] is True
    assert entries[2]["branch"] is None


@pytest.mark.asyncio
async def test_add_worktree_arguments(git, tmp_path):
    git.manager.run = AsyncMock(return_value=result())

    await git.add_worktree(tmp_path / "wt", "feature/x", new_branch=True, base_branch="main")
    await git.add_worktree(tmp_path / "wt", "feature/x", new_branch=False)

    first = git.manager.run.await_args_list[0].args[0]
    second = git.manager.run.await_args_list[1].args[0]
    assert first == ["git", "worktree", "add", "-b", "feature/x", str(tmp_path / "wt"), "main"]
    assert second == ["git", "worktree", "add", str(tmp_path / "wt"), "feature/x"]


@pytest.mark.asyncio
async def test_branch_exists(git):
    git.manager.run = AsyncMock(side_effect=[result(True, "abc\n"), result(False, "")])

    assert await git.branch_exists("main") is True
    assert await git.branch_exists("missing") is False


@pytest.mark.asyncio
async def test_get_config_unset(git):
    git.manager.run = AsyncMock(side_effect=[result(True, "Sam\n"), result(False, "")])

    assert await git.get_config("user.name") == "Sam"
    assert await git.get_config("user.email") is None


@pytest.mark.asyncio
async def test_push_auth_failure_is_fatal(git):
    git.manager.run = AsyncMock(return_value=result(False, "fatal: Authentication failed"))

    with pytest.raises(GitError, match="Authentication"):
        await git.push("origin", "main")
    assert git.manager.run.await_count == 1


@pytest.mark.asyncio
async def test_push_retries_network_errors(git):
    git.manager.run = AsyncMock(
        side_effect=[result(False, "Could not resolve host: network unreachable"), result(True)]
    )

    await git.push("origin", "main", retry=2)

    assert git.manager.run.await_count == 2


@pytest.mark.asyncio
async def test_get_current_user_falls_back(git):
    git.manager.run = AsyncMock(return_value=result(False, ""))

    with patch("wavepilot.worktree.identity.getpass.getuser", return_value="builder"):
        user = await get_current_user(git)

    assert user.name == "builder"
    assert user.email == "unknown"
