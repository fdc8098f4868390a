"""Git worktree lifecycle for isolated execution attempts.

Worktrees live outside the repository, in
``<parent-of-repo>/.wavepilot-wt/<repo-name>/<session-id>``, so they can
never collide with the main tree or with each other.
"""

import logging
import re
import shutil
from dataclasses import dataclass, field
from pathlib import Path

from ..utils.git import GitError, GitOps
from .session import Session, generate_session_id

logger = logging.getLogger(__name__)

# Paths written by wavepilot itself while a run is in flight.
DEFAULT_IGNORED_DIRTY_PATHS = (".wavepilot/", ".planning/")


class WorktreeError(Exception):
    """A worktree could not be created or removed."""

    pass


class MergeError(Exception):
    """Merging a worktree branch into the target failed.

    ``retryable`` is set when the failure came from a concurrent git process
    holding the index lock rather than from the content being merged.
    """

    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


@dataclass
class Worktree:
    """An isolated working copy owned by one session."""

    path: Path
    branch: str
    base_branch: str | None
    session_id: str


@dataclass
class WorktreeInfo:
    path: Path
    branch: str
    head: str
    is_main: bool


@dataclass
class CleanupResult:
    removed: list[dict] = field(default_factory=list)
    errors: list[dict] = field(default_factory=list)


def sanitize_ref_component(name: str) -> str:
    """Turn free text into something usable inside a branch name."""
    component = name.strip().lower().replace(" ", "-").replace("_", "-")
    component = re.sub(r"[^a-z0-9\-.]", "", component)
    component = re.sub(r"-+", "-", component)
    component = re.sub(r"\.{2,}", ".", component)
    component = component.strip("-.")
    if component.endswith(".lock"):
        component = component[: -len(".lock")]
    return component or "user"


def _is_retryable_git_failure(output: str) -> bool:
    lowered = output.lower()
    return "index.lock" in lowered or ("unable to create" in lowered and ".lock" in lowered)


class WorktreeManager:
    """Create, merge and remove worktrees for one repository."""

    def __init__(
        self,
        repo_root: Path,
        git: GitOps | None = None,
        namespace: str = "wavepilot",
        ignored_dirty_paths: tuple[str, ...] = DEFAULT_IGNORED_DIRTY_PATHS,
    ):
        """Initialize worktree manager.

        Args:
            repo_root: Main repository root
            git: Git wrapper bound to ``repo_root``
            namespace: First component of generated branch names
            ignored_dirty_paths: Path prefixes ignored when checking that the
                main tree is clean before a merge
        """
        self.repo_root = repo_root.resolve()
        self.git = git or GitOps(self.repo_root)
        self.namespace = namespace
        self.ignored_dirty_paths = ignored_dirty_paths

    @property
    def base_dir(self) -> Path:
        return self.repo_root.parent / ".wavepilot-wt" / self.repo_root.name

    def worktree_path_for(self, session_id: str) -> Path:
        return self.base_dir / session_id

    def default_branch_name(self, owner: str, slug: str) -> str:
        return f"{self.namespace}/{sanitize_ref_component(owner)}/{sanitize_ref_component(slug)}"

    async def create_worktree(
        self,
        slug: str,
        owner: str,
        base_branch: str | None = None,
        branch_name: str | None = None,
        session_id: str | None = None,
    ) -> Worktree:
        """Create a worktree on a new (or existing) branch.

        If the branch already exists, the worktree is attached to it instead.
        Only a failure of that second attempt is fatal.

        Args:
            slug: Short name of the work, used in the default branch name
            owner: User the worktree is created for
            base_branch: Start point for a new branch (defaults to HEAD)
            branch_name: Branch name override
            session_id: Session id to key the directory by (generated when omitted)

        Returns:
            The created worktree

        Raises:
            WorktreeError: If the worktree cannot be created
        """
        session_id = session_id or generate_session_id()
        path = self.worktree_path_for(session_id)
        branch = branch_name or self.default_branch_name(owner, slug)

        if path.exists():
            raise WorktreeError(f"Worktree path already exists: {path}")
        path.parent.mkdir(parents=True, exist_ok=True)

        result = await self.git.add_worktree(path, branch, new_branch=True, base_branch=base_branch)
        if not result["success"]:
            if not await self.git.branch_exists(branch):
                raise WorktreeError(
                    f"Failed to create worktree at {path} on branch {branch}: {result['output']}"
                )

            logger.info(f"Branch {branch} already exists, attaching worktree to it")
            retry = await self.git.add_worktree(path, branch, new_branch=False)
            if not retry["success"]:
                raise WorktreeError(
                    f"Failed to create worktree at {path} on branch {branch}: {retry['output']}"
                )

        logger.info(f"Created worktree: {path} (branch: {branch})")
        return Worktree(path=path, branch=branch, base_branch=base_branch, session_id=session_id)

    async def commit_worktree(self, worktree_path: Path, message: str) -> str:
        """Stage and commit everything pending in a worktree.

        Returns:
            Commit id of the worktree's HEAD (unchanged when there was nothing to commit)
        """
        if await self.git.has_uncommitted_changes(cwd=worktree_path):
            await self.git.add_all(cwd=worktree_path)
            return await self.git.commit(message, cwd=worktree_path)
        logger.debug(f"Nothing to commit in {worktree_path}")
        return await self.git.get_head(cwd=worktree_path)

    async def _main_tree_dirty_paths(self) -> list[str]:
        result = await self.git.run_git(["status", "--porcelain"])
        dirty = []
        for line in result["output"].splitlines():
            if len(line) < 4:
                continue
            path = line[3:].strip().strip('"')
            if not path.startswith(self.ignored_dirty_paths):
                dirty.append(path)
        return dirty

    async def merge_worktree(self, branch: str, target_branch: str) -> str:
        """Check out ``target_branch`` in the main tree and merge ``branch`` into it.

        A failed merge is aborted so the target stays at its previous commit.
        Publishing the result is left to the caller.

        Returns:
            Commit id of the target branch after the merge

        Raises:
            MergeError: If the main tree is dirty or the checkout or merge fails
        """
        dirty = await self._main_tree_dirty_paths()
        if dirty:
            raise MergeError(
                f"Main tree has uncommitted changes, refusing to merge {branch}: {', '.join(dirty[:5])}"
            )

        checkout = await self.git.run_git(["checkout", target_branch], check=False)
        if not checkout["success"]:
            raise MergeError(
                f"Cannot check out {target_branch}: {checkout['output']}",
                retryable=_is_retryable_git_failure(checkout["output"]),
            )

        result = await self.git.merge(branch, message=f"Merge {branch} into {target_branch}")
        if not result["success"]:
            await self.git.abort_merge()
            raise MergeError(
                f"Merging {branch} into {target_branch} failed: {result['output']}",
                retryable=_is_retryable_git_failure(result["output"]),
            )

        head = await self.git.get_head()
        logger.info(f"Merged {branch} into {target_branch} ({head[:8]})")
        return head

    async def remove_worktree(self, worktree_path: Path) -> None:
        """Deregister a worktree from git and delete its directory.

        Falls back to deleting the directory directly when ``git worktree
        remove`` leaves it behind. A failed prune is only logged.

        Raises:
            WorktreeError: If the directory still exists afterwards
        """
        result = await self.git.remove_worktree(worktree_path)
        if not result["success"]:
            logger.warning(f"git worktree remove failed for {worktree_path}: {result['output'].strip()}")

        if worktree_path.exists():
            logger.warning(f"Force-deleting worktree directory {worktree_path}")
            try:
                shutil.rmtree(worktree_path)
            except OSError as e:
                raise WorktreeError(f"Failed to remove worktree at {worktree_path}: {e}")
            if worktree_path.exists():
                raise WorktreeError(f"Worktree directory still present after removal: {worktree_path}")

        try:
            await self.git.prune_worktrees()
        except GitError as e:
            logger.warning(f"git worktree prune failed: {e}")

        logger.info(f"Removed worktree: {worktree_path}")

    async def list_worktrees(self) -> list[WorktreeInfo]:
        """Worktrees registered with git, main tree first."""
        entries = await self.git.list_worktrees()
        return [
            WorktreeInfo(
                path=entry["path"],
                branch="(detached)" if entry["detached"] else (entry["branch"] or ""),
                head=entry["head"],
                is_main=index == 0 or entry["bare"],
            )
            for index, entry in enumerate(entries)
        ]

    async def is_worktree_valid(self, worktree_path: Path) -> bool:
        """True if the directory exists and git still has it registered."""
        if not worktree_path.exists():
            return False
        try:
            worktrees = await self.list_worktrees()
        except GitError as e:
            logger.debug(f"Cannot list worktrees: {e}")
            return False
        resolved = worktree_path.resolve()
        return any(info.path.resolve() == resolved for info in worktrees)

    async def cleanup_stale_worktrees(self, sessions: list[Session]) -> CleanupResult:
        """Remove the worktrees of stale sessions.

        Already-missing worktrees count as removed. Errors are collected per
        session instead of raised.
        """
        result = CleanupResult()
        for session in sessions:
            path = Path(session.worktree_path)
            try:
                if path.exists():
                    await self.remove_worktree(path)
                result.removed.append(
                    {"session_id": session.id, "worktree_path": str(path), "branch": session.branch}
                )
            except (WorktreeError, GitError) as e:
                logger.error(f"Cleanup of session {session.id} failed: {e}")
                result.errors.append({"session_id": session.id, "error": str(e)})
        return result
