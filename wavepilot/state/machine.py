"""Orchestrator state machine implementation."""

import logging
from pathlib import Path

from ..scheduler.dag import NodeId
from .persistence import (
    TERMINAL_PHASES,
    Phase,
    RunStateModel,
    generate_run_id,
    load_state,
    save_state,
)

logger = logging.getLogger(__name__)


class StateTransitionError(Exception):
    """Invalid state transition."""

    pass


class OrchestratorMachine:
    """Orchestrator state machine persisted after every transition."""

    # Valid phase transitions
    TRANSITIONS = {
        Phase.INIT: [
            Phase.SELECT,
            Phase.FAILED,
        ],
        Phase.SELECT: [
            Phase.SELECT,  # Waiting for nodes claimed by other sessions
            Phase.DISPATCH,
            Phase.DONE,
            Phase.DEADLOCK,
            Phase.FAILED,
        ],
        Phase.DISPATCH: [
            Phase.VERIFY,
            Phase.FAILED,
        ],
        Phase.VERIFY: [
            Phase.COMMIT,
            Phase.RETRY,
            Phase.MAX_ITER_EXCEEDED,
            Phase.FAILED,
        ],
        Phase.RETRY: [
            Phase.DISPATCH,
            Phase.FAILED,
        ],
        Phase.COMMIT: [
            Phase.ADVANCE,
            Phase.FAILED,
        ],
        Phase.ADVANCE: [
            Phase.SELECT,
            Phase.FAILED,
        ],
        Phase.DONE: [],  # Terminal
        Phase.DEADLOCK: [],  # Terminal
        Phase.MAX_ITER_EXCEEDED: [],  # Terminal
        Phase.FAILED: [],  # Terminal
    }

    def __init__(self, state_path: Path, run_id: str | None = None):
        """Initialize state machine.

        Args:
            state_path: Path to state file
            run_id: Id for a new run (generated when omitted)
        """
        self.state_path = state_path
        self.state = self._load_or_create(run_id)

    def _load_or_create(self, run_id: str | None) -> RunStateModel:
        """Load existing state or create new one."""
        existing = load_state(self.state_path)
        if existing:
            logger.info(f"Loaded run {existing.run_id} in phase {existing.phase.value}")
            return existing

        new_state = RunStateModel(run_id=run_id or generate_run_id())
        save_state(new_state, self.state_path)
        return new_state

    @property
    def current_phase(self) -> Phase:
        return self.state.phase

    @property
    def is_terminal(self) -> bool:
        return self.state.phase in TERMINAL_PHASES

    def can_transition_to(self, new_phase: Phase) -> bool:
        """Check if transition is valid.

        Args:
            new_phase: Target phase

        Returns:
            True if transition is valid
        """
        return new_phase in self.TRANSITIONS.get(self.current_phase, [])

    def transition(
        self,
        new_phase: Phase,
        error_message: str | None = None,
        error_context: dict | None = None,
    ) -> RunStateModel:
        """Execute phase transition.

        Args:
            new_phase: Target phase
            error_message: Optional error message (for terminal failure phases)
            error_context: Optional error context dict

        Returns:
            Updated state

        Raises:
            StateTransitionError: If transition is invalid
        """
        if not self.can_transition_to(new_phase):
            raise StateTransitionError(
                f"Invalid transition from {self.current_phase.value} to {new_phase.value}"
            )

        if new_phase != self.current_phase:
            logger.debug(f"Phase: {self.current_phase.value} -> {new_phase.value}")

        self.state.phase = new_phase
        if error_message:
            self.state.error_message = error_message
        if error_context:
            self.state.error_context = error_context

        save_state(self.state, self.state_path)
        return self.state

    def start_node(self, node_id: NodeId, session_id: str | None = None) -> None:
        """Record the node (and session) now being worked on."""
        self.state.current_node = node_id
        self.state.current_session = session_id
        self.state.current_attempt = 0
        save_state(self.state, self.state_path)

    def record_attempt(self, node_id: NodeId) -> int:
        """Count one more attempt for ``node_id``.

        Returns:
            Attempt number within the current dispatch of the node (1-based)
        """
        key = str(node_id)
        self.state.attempts[key] = self.state.attempts.get(key, 0) + 1
        self.state.current_attempt += 1
        save_state(self.state, self.state_path)
        return self.state.current_attempt

    def record_completed(self, node_id: NodeId) -> None:
        self.state.completed.append(node_id)
        self.state.current_node = None
        self.state.current_session = None
        self.state.current_attempt = 0
        save_state(self.state, self.state_path)
