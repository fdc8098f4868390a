"""Base agent interface."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path


class AgentError(Exception):
    """Agent could not be run."""

    pass


@dataclass
class AgentSignal:
    """Completion signal of one agent run.

    The exit code is recorded for diagnostics only; whether the work is good
    is decided by the verifier.
    """

    exit_code: int | None
    output_tail: str = ""
    timed_out: bool = False


class BaseAgent(ABC):
    """Coding agent that works on one node inside a worktree."""

    def __init__(self, config: dict):
        """Initialize agent.

        Args:
            config: Agent configuration dict
        """
        self.config = config

    @abstractmethod
    async def execute(self, prompt: str, work_dir: Path) -> AgentSignal:
        """Run the agent with ``prompt`` in ``work_dir`` and wait for it to finish.

        Args:
            prompt: Bounded execution context
            work_dir: Worktree the agent edits

        Returns:
            AgentSignal

        Raises:
            AgentError: If the agent cannot be started
        """
