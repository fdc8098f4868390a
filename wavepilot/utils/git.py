"""Git operations wrapper."""

import logging
from pathlib import Path

from .subprocess import SubprocessError, SubprocessManager

logger = logging.getLogger(__name__)


class GitError(Exception):
    """Git operation error."""

    def __init__(self, message: str, output: str = ""):
        super().__init__(message)
        self.output = output


class GitOps:
    """Git operations wrapper bound to one repository."""

    def __init__(self, repo_root: Path, timeout_sec: int = 60):
        """Initialize Git operations.

        Args:
            repo_root: Repository root directory
            timeout_sec: Default timeout for operations
        """
        self.repo_root = repo_root
        self.timeout_sec = timeout_sec
        self.manager = SubprocessManager(timeout_sec=timeout_sec)

    async def run_git(
        self,
        args: list[str],
        check: bool = True,
        cwd: Path | None = None,
    ) -> dict:
        """Run git command.

        Args:
            args: Git arguments
            check: Whether to check exit code
            cwd: Directory to run in (defaults to the repository root)

        Returns:
            Result dict

        Raises:
            GitError: On failure
        """
        command = ["git"] + args
        try:
            result = await self.manager.run(command, cwd=cwd or self.repo_root)
        except SubprocessError as e:
            raise GitError(f"Git subprocess error: {e}")

        if check and not result["success"]:
            raise GitError(
                f"Git command failed: {' '.join(args)}\n{result['output']}",
                output=result["output"],
            )

        return result

    async def get_head(self, cwd: Path | None = None) -> str:
        """Get the commit id of HEAD."""
        result = await self.run_git(["rev-parse", "HEAD"], cwd=cwd)
        return result["output"].strip()

    async def branch_exists(self, branch: str) -> bool:
        """Check if a local branch exists."""
        result = await self.run_git(
            ["show-ref", "--verify", "--quiet", f"refs/heads/{branch}"],
            check=False,
        )
        return result["success"]

    async def has_uncommitted_changes(self, cwd: Path | None = None) -> bool:
        """Check whether the working tree has staged, unstaged or untracked changes."""
        result = await self.run_git(["status", "--porcelain"], cwd=cwd)
        return bool(result["output"].strip())

    async def add_all(self, cwd: Path | None = None) -> None:
        """Stage every change in the working tree."""
        await self.run_git(["add", "-A"], cwd=cwd)

    async def commit(self, message: str, cwd: Path | None = None) -> str:
        """Commit staged changes.

        Args:
            message: Commit message
            cwd: Working tree to commit in

        Returns:
            Commit hash
        """
        await self.run_git(["commit", "-m", message], cwd=cwd)

        commit_hash = await self.get_head(cwd=cwd)
        logger.info(f"Committed: {commit_hash[:8]} - {message.split(chr(10))[0]}")
        return commit_hash

    async def merge(self, branch: str, message: str | None = None) -> dict:
        """Merge ``branch`` into the branch checked out in the main tree.

        Returns the raw result so callers can classify failures.
        """
        args = ["merge", "--no-ff", "--no-edit"]
        if message:
            args.extend(["-m", message])
        args.append(branch)
        return await self.run_git(args, check=False)

    async def abort_merge(self) -> None:
        """Abort an in-progress merge (no-op when none is in progress)."""
        await self.run_git(["merge", "--abort"], check=False)

    async def push(self, remote: str, branch: str, retry: int = 2) -> None:
        """Push branch to remote.

        Args:
            remote: Remote name
            branch: Branch name
            retry: Number of retries on network failure

        Raises:
            GitError: On unrecoverable failure
        """
        last_error = ""
        for attempt in range(retry + 1):
            result = await self.run_git(["push", remote, branch], check=False)
            if result["success"]:
                logger.info(f"Pushed {branch} to {remote}")
                return

            error_output = result["output"].lower()
            if "auth" in error_output or "credential" in error_output:
                raise GitError("Push failed: Authentication error", output=result["output"])
            if "network" in error_output or "connection" in error_output:
                last_error = "network"
                logger.warning(f"Push failed: network error (retry {attempt + 1}/{retry})")
                continue
            raise GitError(f"Push failed: {result['output']}", output=result["output"])

        raise GitError(f"Push failed after {retry} retries: {last_error}")

    async def add_worktree(
        self,
        worktree_path: Path,
        branch: str,
        new_branch: bool = True,
        base_branch: str | None = None,
    ) -> dict:
        """Run ``git worktree add`` without raising.

        Args:
            worktree_path: Path for the new worktree
            branch: Branch to create or attach
            new_branch: Create ``branch`` (``-b``) instead of attaching to it
            base_branch: Start point for a new branch

        Returns:
            Result dict
        """
        if new_branch:
            args = ["worktree", "add", "-b", branch, str(worktree_path)]
            if base_branch:
                args.append(base_branch)
        else:
            args = ["worktree", "add", str(worktree_path), branch]
        return await self.run_git(args, check=False)

    async def remove_worktree(self, worktree_path: Path) -> dict:
        """Run ``git worktree remove --force`` without raising."""
        return await self.run_git(
            ["worktree", "remove", "--force", str(worktree_path)],
            check=False,
        )

    async def list_worktrees(self) -> list[dict]:
        """List all git worktrees.

        Returns:
            List of dicts with ``path``, ``head``, ``branch``, ``bare`` and
            ``detached`` keys, main worktree first
        """
        result = await self.run_git(["worktree", "list", "--porcelain"])

        worktrees: list[dict] = []
        for line in result["output"].splitlines():
            if line.startswith("worktree "):
                worktrees.append(
                    {
                        "path": Path(line[len("worktree "):]),
                        "head": "",
                        "branch": None,
                        "bare": False,
                        "detached": False,
                    }
                )
            elif not worktrees:
                continue
            elif line.startswith("HEAD "):
                worktrees[-1]["head"] = line[len("HEAD "):]
            elif line.startswith("branch "):
                worktrees[-1]["branch"] = line[len("branch "):].removeprefix("refs/heads/")
            elif line == "bare":
                worktrees[-1]["bare"] = True
            elif line == "detached":
                worktrees[-1]["detached"] = True

        return worktrees

    async def prune_worktrees(self) -> None:
        """Prune working tree files in $GIT_DIR/worktrees."""
        await self.run_git(["worktree", "prune"])
        logger.debug("Pruned worktrees")

    async def get_config(self, key: str) -> str | None:
        """Read a git config value, returning None when unset."""
        result = await self.run_git(["config", key], check=False)
        value = result["output"].strip()
        return value if result["success"] and value else None
