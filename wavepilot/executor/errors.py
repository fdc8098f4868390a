"""Fatal orchestration errors, tagged with the phase they came from."""

from ..scheduler.dag import NodeId
from ..state.persistence import Phase


class OrchestrationError(Exception):
    """A condition that stops the run."""

    def __init__(self, message: str, phase: Phase, node_id: NodeId | None = None):
        super().__init__(message)
        self.phase = phase
        self.node_id = node_id

    def to_payload(self) -> dict:
        """Structured description for machine-readable output."""
        return {
            "error": type(self).__name__,
            "phase": self.phase.value,
            "node_id": self.node_id,
            "message": str(self),
        }


class PhaseError(OrchestrationError):
    """A collaborator (git, registry, store, agent) failed during a phase."""

    def __init__(
        self,
        message: str,
        phase: Phase,
        node_id: NodeId | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message, phase, node_id)
        self.cause = cause

    def to_payload(self) -> dict:
        payload = super().to_payload()
        if self.cause is not None:
            payload["cause"] = type(self.cause).__name__
        return payload


class DeadlockError(OrchestrationError):
    """Nothing can be dispatched although the graph is not complete."""

    def __init__(self, pending: list[NodeId], detail: str = ""):
        message = f"Deadlock: no node is ready but {len(pending)} remain incomplete ({pending})"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message, Phase.SELECT)
        self.pending = pending

    def to_payload(self) -> dict:
        payload = super().to_payload()
        payload["pending"] = self.pending
        return payload


class MaxIterationsExceededError(OrchestrationError):
    """A node failed verification on every allowed attempt."""

    def __init__(self, node_id: NodeId, attempts: int, branch: str | None = None):
        message = f"Node {node_id} failed verification after {attempts} attempts"
        if branch:
            message = f"{message}; work preserved on branch {branch}"
        super().__init__(message, Phase.VERIFY, node_id)
        self.attempts = attempts
        self.branch = branch

    def to_payload(self) -> dict:
        payload = super().to_payload()
        payload["attempts"] = self.attempts
        payload["branch"] = self.branch
        return payload
