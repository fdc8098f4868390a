"""Bounded execution context handed to the agent."""

import logging
from pathlib import Path

from ..scheduler.dag import Node
from ..validation.runner import VerificationResult
from ..worktree.manager import Worktree

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "\n[...truncated]"


def truncate(text: str, limit: int) -> str:
    if limit <= 0:
        return ""
    if len(text) <= limit:
        return text
    if limit <= len(TRUNCATION_MARKER):
        return text[:limit]
    return text[: limit - len(TRUNCATION_MARKER)] + TRUNCATION_MARKER


def format_verification_errors(result: VerificationResult, attempt: int) -> str:
    """Render verifier errors as a fix list, grouped by gate."""
    lines = [f"## Attempt {attempt} failed verification", ""]
    by_gate: dict[str, list] = {}
    for error in result.errors:
        by_gate.setdefault(error.gate, []).append(error)

    for gate, errors in by_gate.items():
        lines.append(f"### {gate} gate failed")
        for error in errors:
            prefix = f"**{error.location}:** " if error.location else ""
            lines.append(f"- {prefix}{error.message}")
            if error.remediation:
                lines.append(f"  > Fix: {error.remediation}")
        lines.append("")

    return "\n".join(lines).rstrip()


class ContextBuilder:
    """Build the agent prompt for one node.

    The context holds role instructions, the node's own description and the
    session rules, then failure detail from earlier attempts on the same node
    (newest first), then the optional project summary. Later parts are dropped
    or truncated first when ``max_chars`` is reached. Nothing about other
    nodes or earlier runs is included.
    """

    def __init__(
        self,
        role_instructions: str,
        max_chars: int = 12000,
        project_context: str = "",
    ):
        self.role_instructions = role_instructions.strip()
        self.max_chars = max_chars
        self.project_context = project_context.strip()

    @classmethod
    def from_files(
        cls,
        role_instructions: str,
        max_chars: int,
        project_context_file: Path | None,
    ) -> "ContextBuilder":
        project_context = ""
        if project_context_file is not None:
            if project_context_file.exists():
                project_context = project_context_file.read_text(encoding="utf-8")
            else:
                logger.warning(f"Project context file not found: {project_context_file}")
        return cls(role_instructions, max_chars=max_chars, project_context=project_context)

    def _core_sections(self, node: Node, worktree: Worktree) -> list[str]:
        description = node.description.strip() or "(no description provided)"
        return [
            f"# Role\n\n{self.role_instructions}",
            f"# Unit of work: {node.id} ({node.name})\n\n{description}",
            (
                "# Session\n\n"
                f"- Worktree: {worktree.path}\n"
                f"- Branch: {worktree.branch}\n"
                "- Work only inside this worktree and stay on this branch.\n"
                "- Do not merge or push; that happens after verification passes."
            ),
        ]

    def build(
        self,
        node: Node,
        worktree: Worktree,
        failures: list[tuple[int, VerificationResult]] | None = None,
    ) -> str:
        """Assemble the context string.

        Args:
            node: Node being executed
            worktree: Worktree the agent works in
            failures: ``(attempt, result)`` pairs of earlier failed attempts on this node

        Returns:
            Context no longer than ``max_chars``
        """
        separator = "\n\n"
        sections = self._core_sections(node, worktree)
        text = separator.join(sections)
        if len(text) > self.max_chars:
            logger.warning(f"Context for node {node.id} exceeds {self.max_chars} chars; truncating")
            return truncate(text, self.max_chars)

        for attempt, result in sorted(failures or [], key=lambda item: item[0], reverse=True):
            remaining = self.max_chars - len(text) - len(separator)
            if remaining <= len(TRUNCATION_MARKER):
                break
            text += separator + truncate(format_verification_errors(result, attempt), remaining)

        remaining = self.max_chars - len(text) - len(separator)
        if self.project_context and remaining > len(TRUNCATION_MARKER) + 20:
            text += separator + truncate(f"# Project context\n\n{self.project_context}", remaining)

        return text
