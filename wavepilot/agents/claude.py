"""Claude Code CLI agent."""

import logging
import os
from pathlib import Path

from ..utils.subprocess import SubprocessError, SubprocessManager
from .base import AgentError, AgentSignal, BaseAgent

logger = logging.getLogger(__name__)

DEFAULT_ARGS = ["-p", "-", "--dangerously-skip-permissions"]

# Set inside a Claude Code session; a nested CLI refuses to start while it is present.
NESTED_SESSION_ENV = "CLAUDECODE"


class ClaudeAgent(BaseAgent):
    """Run ``claude`` non-interactively with the prompt on stdin."""

    def __init__(self, config: dict):
        """Initialize Claude agent.

        Args:
            config: Agent config with cli_path, args, timeout_sec, log_dir
        """
        super().__init__(config)
        self.cli_path = config.get("cli_path", "claude")
        self.args = list(config.get("args") or DEFAULT_ARGS)
        self.timeout_sec = config.get("timeout_sec")
        self.log_dir = config.get("log_dir")
        self.stream_output = config.get("stream_output", False)

    def _environment(self) -> dict[str, str]:
        env = dict(os.environ)
        env.pop(NESTED_SESSION_ENV, None)
        return env

    async def execute(self, prompt: str, work_dir: Path) -> AgentSignal:
        """Run the CLI in ``work_dir`` and block until it exits.

        Args:
            prompt: Execution context written to stdin
            work_dir: Worktree to run in

        Returns:
            AgentSignal with exit code and output tail

        Raises:
            AgentError: If the CLI cannot be started
        """
        command = [self.cli_path, *self.args]
        manager = SubprocessManager(
            timeout_sec=self.timeout_sec,
            log_dir=Path(self.log_dir) if self.log_dir else None,
        )

        on_line = None
        if self.stream_output:
            def on_line(line: str) -> None:
                logger.info(f"[agent] {line.rstrip()}")

        logger.info(f"Dispatching agent in {work_dir} ({len(prompt)} chars of context)")
        try:
            result = await manager.run(
                command,
                cwd=work_dir,
                env=self._environment(),
                stdin=prompt,
                on_output_line=on_line,
            )
        except SubprocessError as e:
            raise AgentError(f"Failed to start agent {self.cli_path}: {e}")

        if result["timed_out"]:
            logger.warning(f"Agent timed out after {self.timeout_sec}s")
        elif result["exit_code"] != 0:
            logger.warning(f"Agent exited with code {result['exit_code']}")
        else:
            logger.info("Agent finished")

        tail = "\n".join(result["output"].strip().splitlines()[-20:])
        return AgentSignal(
            exit_code=result["exit_code"],
            output_tail=tail,
            timed_out=result["timed_out"],
        )
