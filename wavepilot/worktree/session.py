"""Cross-process session registry.

The registry lives at ``<repo>/.wavepilot/sessions.json`` and is shared by
every wavepilot process working on that repository. Each mutation is one
read-modify-write of the whole file under ``sessions.lock``, so concurrent
processes never lose each other's updates.
"""

import logging
import os
import secrets
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from ..scheduler.dag import NodeId
from ..utils.locking import FileLock, atomic_write_json, read_json

logger = logging.getLogger(__name__)


class RegistryError(Exception):
    """Session registry unreadable or asked to break an ownership rule."""

    pass


class NodeClaimedError(RegistryError):
    """Another active session is already working on the node."""

    def __init__(self, node_ref: NodeId, session_id: str):
        super().__init__(f"Node {node_ref} is already claimed by session {session_id}")
        self.node_ref = node_ref
        self.session_id = session_id


class SessionStatus(str, Enum):
    ACTIVE = "active"
    IDLE = "idle"
    DONE = "done"
    STALE = "stale"


class Session(BaseModel):
    """One in-flight execution bound to one worktree."""

    id: str
    owner: str
    email: str = ""
    role: str = "executor"
    node_ref: NodeId | None = None
    branch: str
    worktree_path: str
    status: SessionStatus = SessionStatus.ACTIVE
    started_at: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    pid: int = Field(default_factory=os.getpid)


class RegistryFile(BaseModel):
    sessions: list[Session] = Field(default_factory=list)


def generate_session_id() -> str:
    """Eight hex characters, used for both the session and its worktree directory."""
    return secrets.token_hex(4)


def is_pid_alive(pid: int) -> bool:
    """Check whether a process with ``pid`` is still running."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but belongs to another user.
        return True
    except OSError:
        return False
    return True


class SessionRegistry:
    """Durable record of sessions for one repository."""

    def __init__(self, repo_root: Path):
        """Initialize registry.

        Args:
            repo_root: Repository root; the registry is scoped to it
        """
        self.repo_root = repo_root
        self.path = repo_root / ".wavepilot" / "sessions.json"
        self.lock_path = repo_root / ".wavepilot" / "sessions.lock"

    def _load(self) -> RegistryFile:
        """Read the registry. A missing file is an empty registry.

        Raises:
            RegistryError: If the file exists but cannot be parsed
        """
        if not self.path.exists():
            return RegistryFile()
        try:
            return RegistryFile.model_validate(read_json(self.path))
        except (OSError, ValueError, ValidationError) as e:
            raise RegistryError(f"Session registry {self.path} is unreadable: {e}")

    def _save(self, registry: RegistryFile) -> None:
        atomic_write_json(self.path, registry.model_dump(mode="json"))

    def register_session(
        self,
        owner: str,
        branch: str,
        worktree_path: Path,
        node_ref: NodeId | None = None,
        role: str = "executor",
        email: str = "",
        session_id: str | None = None,
        exclusive_node: bool = False,
    ) -> Session:
        """Persist a new active session owned by the current process.

        Args:
            owner: User the session runs for
            branch: Branch checked out in the worktree
            worktree_path: Worktree owned by the session
            node_ref: Node being executed
            role: Role of the session
            email: Owner email
            session_id: Id to use (generated when omitted)
            exclusive_node: Refuse if another active session has the same ``node_ref``

        Returns:
            The registered session

        Raises:
            NodeClaimedError: If ``exclusive_node`` and the node is already claimed
            RegistryError: If another active session already owns ``worktree_path``
        """
        session = Session(
            id=session_id or generate_session_id(),
            owner=owner,
            email=email,
            role=role,
            node_ref=node_ref,
            branch=branch,
            worktree_path=str(worktree_path),
        )

        with FileLock(self.lock_path):
            registry = self._load()
            for existing in registry.sessions:
                if existing.id == session.id:
                    raise RegistryError(f"Session {session.id} is already registered")
                if existing.status != SessionStatus.ACTIVE:
                    continue
                if exclusive_node and node_ref is not None and existing.node_ref == node_ref:
                    raise NodeClaimedError(node_ref, existing.id)
                if existing.worktree_path == session.worktree_path:
                    raise RegistryError(
                        f"Worktree {session.worktree_path} is already owned by session {existing.id}"
                    )
            registry.sessions.append(session)
            self._save(registry)

        logger.info(f"Registered session {session.id} for node {node_ref} ({branch})")
        return session

    def update_session_status(self, session_id: str, status: SessionStatus) -> Session | None:
        """Update one session's status in place.

        Returns:
            Updated session, or None if no such session is registered
        """
        with FileLock(self.lock_path):
            registry = self._load()
            session = next((s for s in registry.sessions if s.id == session_id), None)
            if session is None:
                logger.warning(f"Cannot update unknown session {session_id}")
                return None
            session.status = status
            self._save(registry)

        logger.debug(f"Session {session_id} -> {status.value}")
        return session

    def deregister_session(self, session_id: str) -> bool:
        """Remove a session record.

        Returns:
            True if a record was removed
        """
        with FileLock(self.lock_path):
            registry = self._load()
            remaining = [s for s in registry.sessions if s.id != session_id]
            removed = len(remaining) != len(registry.sessions)
            if removed:
                registry.sessions = remaining
                self._save(registry)

        if removed:
            logger.info(f"Deregistered session {session_id}")
        return removed

    def list_sessions(self) -> list[Session]:
        return self._load().sessions

    def get_active_sessions(self) -> list[Session]:
        """Sessions currently claiming a worktree."""
        return [s for s in self._load().sessions if s.status == SessionStatus.ACTIVE]

    def get_session(self, session_id: str) -> Session | None:
        return next((s for s in self._load().sessions if s.id == session_id), None)

    def detect_stale_sessions(self) -> list[Session]:
        """Mark active sessions whose process has exited as stale.

        Returns:
            Sessions that became stale during this call
        """
        with FileLock(self.lock_path):
            registry = self._load()
            newly_stale = []
            for session in registry.sessions:
                if session.status == SessionStatus.ACTIVE and not is_pid_alive(session.pid):
                    session.status = SessionStatus.STALE
                    newly_stale.append(session)
            if newly_stale:
                self._save(registry)

        for session in newly_stale:
            logger.warning(
                f"Session {session.id} (pid {session.pid}, node {session.node_ref}) is stale"
            )
        return newly_stale
