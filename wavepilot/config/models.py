"""Configuration models for wavepilot."""

from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class RepoConfig(BaseModel):
    """Repository configuration."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    root: Path = Field(description="Root directory of the repository")
    feature_branch: Optional[str] = Field(
        default=None,
        description="Merge target (defaults to the branch recorded in the status file)",
    )
    remote: str = Field(default="origin", description="Remote used when pushing")


class SourceConfig(BaseModel):
    """Where node definitions and statuses are stored."""

    kind: Literal["milestones", "requirements"] = Field(
        default="milestones",
        description="milestones (.planning/status/<slug>.json) or requirements (_index.yaml)",
    )
    slug: str = Field(description="Work graph slug")
    graph_dir: Optional[Path] = Field(
        default=None,
        description="Requirement graph directory (defaults to .planning/graph/<slug>)",
    )


class WorktreeConfig(BaseModel):
    """Worktree naming."""

    namespace: str = Field(default="wavepilot", description="First component of branch names")


class LoopConfig(BaseModel):
    """Orchestration loop configuration."""

    max_attempts: int = Field(default=3, ge=1, description="Attempts per node before aborting")
    claim_poll_interval_sec: float = Field(
        default=30.0,
        description="Wait between selections while every ready node is claimed elsewhere",
    )
    max_context_chars: int = Field(default=12000, description="Bound on the agent context size")
    cleanup_stale_on_start: bool = Field(
        default=True,
        description="Remove worktrees of dead sessions before the first selection",
    )
    preserve_work_on_abort: bool = Field(
        default=True,
        description="Commit pending worktree changes to its branch when aborting",
    )


class AgentConfig(BaseModel):
    """Coding agent configuration."""

    cli_path: str = Field(default="claude", description="Agent CLI path")
    args: list[str] = Field(
        default_factory=lambda: ["-p", "-", "--dangerously-skip-permissions"],
        description="Arguments; the context is written to stdin",
    )
    timeout_sec: Optional[int] = Field(default=None, description="Agent timeout (none by default)")
    stream_output: bool = Field(default=False, description="Log agent output lines as they arrive")
    role: str = Field(default="executor", description="Role recorded on sessions")
    role_instructions: str = Field(
        default=(
            "You are implementing exactly one unit of work in an isolated git worktree. "
            "Make the smallest complete change that satisfies the description, keep the "
            "project's verification gates passing, and commit nothing outside this worktree."
        ),
        description="Role instructions placed at the top of every context",
    )
    project_context_file: Optional[Path] = Field(
        default=None,
        description="Short project summary included in every context (relative to repo root)",
    )


class VerifierConfig(BaseModel):
    """Verifier collaborator configuration."""

    mode: Literal["commands", "json"] = Field(default="commands", description="commands or json")
    gates: dict[str, str] = Field(
        default_factory=dict, description="Gate name -> shell command (commands mode)"
    )
    gate_set: Optional[list[str]] = Field(default=None, description="Gates to run (default all)")
    json_command: Optional[str] = Field(default=None, description="Command printing JSON (json mode)")
    timeout_sec: int = Field(default=600, description="Timeout per verifier command")

    @model_validator(mode="after")
    def _json_mode_needs_command(self) -> "VerifierConfig":
        if self.mode == "json" and not self.json_command:
            raise ValueError("verifier.json_command is required when verifier.mode is json")
        return self


class MergeConfig(BaseModel):
    """Merge and publish configuration."""

    max_attempts: int = Field(default=3, ge=1, description="Attempts for lock-contended merges")
    retry_delay_sec: float = Field(default=2.0, description="Pause between merge attempts")
    push: bool = Field(default=False, description="Push the target branch after each merge")


class LoggingConfig(BaseModel):
    """Logging configuration."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    level: str = Field(default="INFO", description="Log level")
    log_dir: Path = Field(default=Path(".wavepilot/logs"), description="Log directory")
    rotation_mb: int = Field(default=10, description="Log rotation size (MB)")
    retention_days: int = Field(default=7, description="Log retention days")


class WavepilotConfig(BaseModel):
    """Main configuration model."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    repo: RepoConfig
    source: SourceConfig
    worktree: WorktreeConfig = Field(default_factory=WorktreeConfig)
    loop: LoopConfig = Field(default_factory=LoopConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    verifier: VerifierConfig = Field(default_factory=VerifierConfig)
    merge: MergeConfig = Field(default_factory=MergeConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @property
    def state_dir(self) -> Path:
        return self.repo.root / ".wavepilot"

    def resolved_graph_dir(self) -> Path:
        graph_dir = self.source.graph_dir or Path(".planning") / "graph" / self.source.slug
        return graph_dir if graph_dir.is_absolute() else self.repo.root / graph_dir
