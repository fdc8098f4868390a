"""Execution orchestrator: drives one run from nothing started to all complete.

Each selected node goes through::

    SELECT -> DISPATCH -> VERIFY -> (RETRY -> DISPATCH ...) -> COMMIT -> ADVANCE -> SELECT

A process works on exactly one node at a time. Parallelism comes from
running several processes against the same repository; they coordinate only
through the session registry (who is working on what) and the status store
(what is complete). Readiness is recomputed from disk on every selection.
"""

import asyncio
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path

from ..agents.base import AgentError, BaseAgent
from ..agents.claude import ClaudeAgent
from ..config.models import WavepilotConfig
from ..recovery.policies import AttemptDecision, MergeRetryPolicy, RetryPolicy
from ..scheduler.dag import DAG, GraphError, Node, NodeId, NodeStatus, build_dag
from ..scheduler.readiness import get_ready_nodes, is_complete, is_deadlocked, pending_ids
from ..state.machine import OrchestratorMachine
from ..state.persistence import Phase, generate_run_id
from ..state.store import MilestoneStatusStore, NodeRepository, RequirementIndexStore, StoreError
from ..utils.git import GitError, GitOps
from ..utils.locking import FileLock
from ..validation.runner import CommandVerifier, JsonVerifier, VerificationResult, Verifier
from ..worktree.identity import UserIdentity, get_current_user
from ..worktree.manager import MergeError, Worktree, WorktreeError, WorktreeManager
from ..worktree.session import (
    NodeClaimedError,
    RegistryError,
    Session,
    SessionRegistry,
    SessionStatus,
    generate_session_id,
)
from .context import ContextBuilder
from .errors import DeadlockError, MaxIterationsExceededError, OrchestrationError, PhaseError

logger = logging.getLogger(__name__)

COLLABORATOR_ERRORS = (
    AgentError,
    GitError,
    GraphError,
    MergeError,
    RegistryError,
    StoreError,
    WorktreeError,
)


@contextmanager
def phase_errors(phase: Phase, node_id: NodeId | None = None) -> Iterator[None]:
    """Re-raise collaborator failures as :class:`PhaseError` tagged with ``phase``."""
    try:
        yield
    except OrchestrationError:
        raise
    except COLLABORATOR_ERRORS as e:
        raise PhaseError(f"{phase.value} failed: {e}", phase, node_id, cause=e) from e


@dataclass
class RunSummary:
    """Result of a run that completed every node."""

    run_id: str
    completed: list[NodeId] = field(default_factory=list)
    attempts: dict[str, int] = field(default_factory=dict)


def _structure(nodes: list[Node]) -> tuple:
    return tuple((node.id, tuple(node.depends_on)) for node in nodes)


class ExecutionOrchestrator:
    """Select, dispatch, verify and merge nodes until the graph is complete."""

    def __init__(
        self,
        store: NodeRepository,
        agent: BaseAgent,
        verifier: Verifier,
        worktrees: WorktreeManager,
        registry: SessionRegistry,
        machine: OrchestratorMachine,
        context_builder: ContextBuilder,
        retry_policy: RetryPolicy | None = None,
        merge_policy: MergeRetryPolicy | None = None,
        owner: UserIdentity | None = None,
        feature_branch: str | None = None,
        slug: str = "",
        role: str = "executor",
        gate_set: list[str] | None = None,
        claim_poll_interval_sec: float = 30.0,
        cleanup_stale_on_start: bool = True,
        preserve_work_on_abort: bool = True,
        push_remote: str | None = None,
    ):
        """Initialize orchestrator.

        Args:
            store: Durable node status store
            agent: Coding agent collaborator
            verifier: Verifier collaborator
            worktrees: Worktree manager for the repository
            registry: Session registry for the repository
            machine: Run state machine
            context_builder: Builds the agent context per attempt
            retry_policy: Attempts per node (default 3)
            merge_policy: Retry of lock-contended merges
            owner: User sessions run for (read from git config when omitted)
            feature_branch: Merge target (defaults to the branch in the status store)
            slug: Prefix for per-node branch names
            role: Role recorded on sessions
            gate_set: Verifier gates to run (None runs all)
            claim_poll_interval_sec: Wait while every ready node is claimed elsewhere
            cleanup_stale_on_start: Remove dead sessions' worktrees before the first selection
            preserve_work_on_abort: Commit pending work to the node branch when aborting
            push_remote: Remote to push the target branch to after each merge
        """
        self.store = store
        self.agent = agent
        self.verifier = verifier
        self.worktrees = worktrees
        self.registry = registry
        self.machine = machine
        self.context_builder = context_builder
        self.retry_policy = retry_policy or RetryPolicy()
        self.merge_policy = merge_policy or MergeRetryPolicy()
        self.owner = owner
        self.feature_branch = feature_branch
        self.slug = slug
        self.role = role
        self.gate_set = gate_set
        self.claim_poll_interval_sec = claim_poll_interval_sec
        self.cleanup_stale_on_start = cleanup_stale_on_start
        self.preserve_work_on_abort = preserve_work_on_abort
        self.push_remote = push_remote
        self.merge_lock_path = registry.repo_root / ".wavepilot" / "merge.lock"

        self._dag: DAG | None = None
        self._dag_structure: tuple | None = None

    async def run(self) -> RunSummary:
        """Run until every node is complete.

        Returns:
            RunSummary

        Raises:
            OrchestrationError: On deadlock, exhausted attempts, or a
                collaborator failure that prevents further progress
        """
        logger.info(f"Starting run {self.machine.state.run_id}")
        try:
            self.machine.transition(Phase.SELECT)
            if self.owner is None:
                self.owner = await get_current_user(self.worktrees.git)
            if self.cleanup_stale_on_start:
                await self.cleanup_stale_sessions()

            while True:
                selection = await self._select()
                if selection is None:
                    self.machine.transition(Phase.DONE)
                    logger.info(f"All nodes complete ({len(self.machine.state.completed)} this run)")
                    return RunSummary(
                        run_id=self.machine.state.run_id,
                        completed=list(self.machine.state.completed),
                        attempts=dict(self.machine.state.attempts),
                    )
                node, session = selection
                await self._execute_node(node, session)
                self.machine.transition(Phase.SELECT)
        except OrchestrationError as e:
            self._record_failure(e)
            raise

    def _record_failure(self, error: OrchestrationError) -> None:
        if self.machine.is_terminal:
            return
        if isinstance(error, DeadlockError):
            target = Phase.DEADLOCK
        elif isinstance(error, MaxIterationsExceededError):
            target = Phase.MAX_ITER_EXCEEDED
        else:
            target = Phase.FAILED
        if not self.machine.can_transition_to(target):
            target = Phase.FAILED
        logger.error(str(error))
        self.machine.transition(target, error_message=str(error), error_context=error.to_payload())

    async def cleanup_stale_sessions(self) -> None:
        """Remove worktrees and registry records of sessions whose process is gone."""
        with phase_errors(Phase.SELECT):
            self.registry.detect_stale_sessions()
            stale = [s for s in self.registry.list_sessions() if s.status == SessionStatus.STALE]
            if not stale:
                return
            result = await self.worktrees.cleanup_stale_worktrees(stale)
            for removed in result.removed:
                self.registry.deregister_session(removed["session_id"])
        logger.info(f"Cleaned up {len(result.removed)} stale sessions ({len(result.errors)} errors)")

    def _load_graph(self) -> tuple[DAG, dict[NodeId, Node]]:
        """Read nodes from the store, rebuilding the graph only if its structure changed."""
        nodes = self.store.load_nodes()
        structure = _structure(nodes)
        if self._dag is None or structure != self._dag_structure:
            if self._dag is not None:
                logger.info("Node definitions changed, rebuilding dependency graph")
            self._dag = build_dag(nodes)
            self._dag_structure = structure
        return self._dag, {node.id: node for node in nodes}

    def _claim(self, node: Node) -> Session:
        """Register a session for ``node``; raises NodeClaimedError if someone else got it first."""
        session_id = generate_session_id()
        return self.registry.register_session(
            owner=self.owner.name,
            email=self.owner.email,
            role=self.role,
            node_ref=node.id,
            branch=self._branch_for(node),
            worktree_path=self.worktrees.worktree_path_for(session_id),
            session_id=session_id,
            exclusive_node=True,
        )

    def _branch_for(self, node: Node) -> str:
        slug = f"{self.slug}-{node.id}" if self.slug else str(node.id)
        return self.worktrees.default_branch_name(self.owner.name, slug)

    async def _select(self) -> tuple[Node, Session] | None:
        """Pick and claim the next node, or return None when everything is complete.

        Raises:
            DeadlockError: If nothing can ever become ready
        """
        while True:
            with phase_errors(Phase.SELECT):
                if self.registry.detect_stale_sessions():
                    # Frees the branches of dead sessions so their nodes can be re-dispatched
                    await self.cleanup_stale_sessions()
                dag, nodes = self._load_graph()
                completed = {node_id for node_id, node in nodes.items() if node.status == NodeStatus.COMPLETE}

                if is_complete(dag, completed):
                    return None

                ready = get_ready_nodes(dag, completed)
                if is_deadlocked(dag, completed, ready):
                    raise DeadlockError(pending_ids(dag, completed))

                claimed = {s.node_ref for s in self.registry.get_active_sessions()}
                candidates = [
                    node_id
                    for node_id in ready
                    if node_id not in claimed and nodes[node_id].status.dispatchable
                ]

                for node_id in candidates:
                    node = nodes[node_id]
                    try:
                        session = self._claim(node)
                    except NodeClaimedError as e:
                        logger.info(f"{e}, trying the next ready node")
                        continue
                    if node.status == NodeStatus.IN_PROGRESS:
                        logger.warning(
                            f"Node {node_id} is in_progress with no active session; re-dispatching"
                        )
                    logger.info(f"Selected node {node_id} ({node.name})")
                    return node, session

            if not any(node_id in claimed for node_id in ready) and not candidates:
                blocked = {node_id: nodes[node_id].status.value for node_id in ready}
                raise DeadlockError(
                    pending_ids(dag, completed),
                    detail=f"every ready node is failed or awaiting approval: {blocked}",
                )

            logger.info(
                f"All ready nodes are claimed by other sessions; waiting {self.claim_poll_interval_sec}s"
            )
            self.machine.transition(Phase.SELECT)
            await asyncio.sleep(self.claim_poll_interval_sec)

    async def _execute_node(self, node: Node, session: Session) -> None:
        """DISPATCH through ADVANCE for one claimed node; always cleans up."""
        worktree_path = Path(session.worktree_path)
        worktree: Worktree | None = None
        self.machine.start_node(node.id, session.id)
        try:
            self.machine.transition(Phase.DISPATCH)
            with phase_errors(Phase.DISPATCH, node.id):
                self.store.mark(node.id, NodeStatus.IN_PROGRESS)
                # The node branch starts from the branch it is merged back into
                target = self.feature_branch or self.store.feature_branch
                worktree = await self.worktrees.create_worktree(
                    slug=f"{self.slug}-{node.id}" if self.slug else str(node.id),
                    owner=self.owner.name,
                    base_branch=target,
                    branch_name=session.branch,
                    session_id=session.id,
                )

            failures: list[tuple[int, VerificationResult]] = []
            while True:
                attempt = self.machine.record_attempt(node.id)
                logger.info(f"Node {node.id}: attempt {attempt}/{self.retry_policy.max_attempts}")
                prompt = self.context_builder.build(node, worktree, failures)
                with phase_errors(Phase.DISPATCH, node.id):
                    signal = await self.agent.execute(prompt, worktree.path)
                logger.debug(f"Agent signal for node {node.id}: exit_code={signal.exit_code}")

                self.machine.transition(Phase.VERIFY)
                verification = await self._verify(node, worktree)
                outcome = self.retry_policy.evaluate(attempt, verification)

                if outcome.decision == AttemptDecision.COMMIT:
                    break
                if outcome.decision == AttemptDecision.RETRY:
                    logger.warning(
                        f"Node {node.id} failed verification ({len(verification.errors)} errors); retrying"
                    )
                    failures.append((attempt, verification))
                    self.machine.transition(Phase.RETRY)
                    self.machine.transition(Phase.DISPATCH)
                    continue

                preserved = await self._preserve_work(node, worktree, attempt)
                raise MaxIterationsExceededError(node.id, attempt, branch=preserved)

            self.machine.transition(Phase.COMMIT)
            await self._commit(node, worktree, session)
            self.machine.transition(Phase.ADVANCE)
        finally:
            await self._cleanup(session, worktree_path)

    async def _verify(self, node: Node, worktree: Worktree) -> VerificationResult:
        """Run the verifier; any exception counts as a failed verification."""
        try:
            result = await self.verifier.verify(worktree.path, self.gate_set)
        except Exception as e:
            logger.error(f"Verifier raised {type(e).__name__}: {e}", extra={"node_id": node.id})
            return VerificationResult.failure("verify", f"Verifier error: {e}")
        logger.info(f"Verification {'passed' if result.passed else 'failed'}", extra={"node_id": node.id})
        return result

    async def _preserve_work(self, node: Node, worktree: Worktree, attempts: int) -> str | None:
        """Commit whatever the last attempt left so it survives worktree removal."""
        if not self.preserve_work_on_abort:
            return None
        try:
            await self.worktrees.commit_worktree(
                worktree.path,
                f"wavepilot: work in progress on {node.id} after {attempts} failed attempts",
            )
        except GitError as e:
            logger.error(f"Could not preserve work for node {node.id}: {e}")
            return None
        return worktree.branch

    async def _commit(self, node: Node, worktree: Worktree, session: Session) -> None:
        """Commit in the worktree, merge into the target, then mark the node complete."""
        with phase_errors(Phase.COMMIT, node.id):
            commit_ref = await self.worktrees.commit_worktree(
                worktree.path, f"wavepilot: complete {node.id} ({node.name})"
            )
            target = worktree.base_branch
            await self._merge(node, worktree.branch, target)
            self.store.mark(node.id, NodeStatus.COMPLETE)
            self.registry.update_session_status(session.id, SessionStatus.DONE)

        self.machine.record_completed(node.id)
        logger.info(f"Node {node.id} complete ({commit_ref[:8]} merged into {target})")

    async def _merge(self, node: Node, branch: str, target: str) -> None:
        """Merge under the repository-wide merge lock, retrying lock contention."""
        attempt = 0
        while True:
            attempt += 1
            try:
                async with FileLock(self.merge_lock_path):
                    await self.worktrees.merge_worktree(branch, target)
                    if self.push_remote:
                        await self._push(target)
                return
            except MergeError as e:
                if not self.merge_policy.should_retry(attempt, e.retryable):
                    raise
                logger.warning(
                    f"Merge of {branch} hit a lock (attempt {attempt}/{self.merge_policy.max_attempts}); retrying"
                )
                await asyncio.sleep(self.merge_policy.delay_sec)

    async def _push(self, branch: str) -> None:
        try:
            await self.worktrees.git.push(self.push_remote, branch)
        except GitError as e:
            logger.warning(f"Push of {branch} to {self.push_remote} failed: {e}")

    async def _cleanup(self, session: Session, worktree_path: Path) -> None:
        """Deregister the session and remove its worktree. Errors are logged, never raised."""
        try:
            self.registry.deregister_session(session.id)
        except RegistryError as e:
            logger.error(f"Failed to deregister session {session.id}: {e}")

        if not worktree_path.exists():
            return
        try:
            await self.worktrees.remove_worktree(worktree_path)
        except (WorktreeError, GitError) as e:
            logger.error(f"Failed to remove worktree {worktree_path}: {e}")


def build_store(config: WavepilotConfig) -> NodeRepository:
    if config.source.kind == "requirements":
        return RequirementIndexStore(config.resolved_graph_dir())
    return MilestoneStatusStore(config.repo.root, config.source.slug)


def build_verifier(config: WavepilotConfig) -> Verifier:
    log_dir = config.state_dir / "logs" / "verify"
    if config.verifier.mode == "json":
        return JsonVerifier(config.verifier.json_command, config.verifier.timeout_sec, log_dir)
    return CommandVerifier(config.verifier.gates, config.verifier.timeout_sec, log_dir)


def build_orchestrator(config: WavepilotConfig, run_id: str | None = None) -> ExecutionOrchestrator:
    """Wire an orchestrator from configuration."""
    repo_root = config.repo.root
    run_id = run_id or generate_run_id()
    git = GitOps(repo_root)

    project_context_file = config.agent.project_context_file
    if project_context_file is not None and not project_context_file.is_absolute():
        project_context_file = repo_root / project_context_file

    agent = ClaudeAgent(
        {
            "cli_path": config.agent.cli_path,
            "args": config.agent.args,
            "timeout_sec": config.agent.timeout_sec,
            "stream_output": config.agent.stream_output,
            "log_dir": str(config.state_dir / "logs" / "agent"),
        }
    )

    return ExecutionOrchestrator(
        store=build_store(config),
        agent=agent,
        verifier=build_verifier(config),
        worktrees=WorktreeManager(repo_root, git=git, namespace=config.worktree.namespace),
        registry=SessionRegistry(repo_root),
        machine=OrchestratorMachine(config.state_dir / "runs" / f"{run_id}.json", run_id=run_id),
        context_builder=ContextBuilder.from_files(
            config.agent.role_instructions,
            config.loop.max_context_chars,
            project_context_file,
        ),
        retry_policy=RetryPolicy(max_attempts=config.loop.max_attempts),
        merge_policy=MergeRetryPolicy(
            max_attempts=config.merge.max_attempts,
            delay_sec=config.merge.retry_delay_sec,
        ),
        feature_branch=config.repo.feature_branch,
        slug=config.source.slug,
        role=config.agent.role,
        gate_set=config.verifier.gate_set,
        claim_poll_interval_sec=config.loop.claim_poll_interval_sec,
        cleanup_stale_on_start=config.loop.cleanup_stale_on_start,
        preserve_work_on_abort=config.loop.preserve_work_on_abort,
        push_remote=config.repo.remote if config.merge.push else None,
    )
