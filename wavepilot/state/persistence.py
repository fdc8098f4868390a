"""Run state persistence with atomic writes."""

import json
import os
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

from ..scheduler.dag import NodeId
from ..utils.locking import atomic_write_json


class Phase(str, Enum):
    """Orchestration loop phases."""

    INIT = "INIT"
    SELECT = "SELECT"
    DISPATCH = "DISPATCH"
    VERIFY = "VERIFY"
    RETRY = "RETRY"
    COMMIT = "COMMIT"
    ADVANCE = "ADVANCE"
    DONE = "DONE"
    DEADLOCK = "DEADLOCK"
    MAX_ITER_EXCEEDED = "MAX_ITER_EXCEEDED"
    FAILED = "FAILED"


TERMINAL_PHASES = {Phase.DONE, Phase.DEADLOCK, Phase.MAX_ITER_EXCEEDED, Phase.FAILED}


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


class RunStateModel(BaseModel):
    """State of one orchestrator run (one process)."""

    run_id: str = Field(description="Unique run identifier")
    pid: int = Field(default_factory=os.getpid)
    phase: Phase = Field(default=Phase.INIT)
    created_at: str = Field(default_factory=_now_iso)
    updated_at: str = Field(default_factory=_now_iso)

    current_node: Optional[NodeId] = Field(default=None)
    current_session: Optional[str] = Field(default=None)
    current_attempt: int = Field(default=0)
    # Keyed by str(node_id) so the file round-trips through JSON.
    attempts: dict[str, int] = Field(default_factory=dict)
    completed: list[NodeId] = Field(default_factory=list)

    error_message: Optional[str] = Field(default=None)
    error_context: Optional[dict] = Field(default=None)


def load_state(state_path: Path) -> Optional[RunStateModel]:
    """Load state from file.

    Args:
        state_path: Path to state JSON file

    Returns:
        RunStateModel or None if file doesn't exist
    """
    if not state_path.exists():
        return None

    with open(state_path, "r") as f:
        data = json.load(f)

    return RunStateModel(**data)


def save_state(state: RunStateModel, state_path: Path) -> None:
    """Save state to file with atomic write.

    Args:
        state: State to save
        state_path: Destination path
    """
    state.updated_at = _now_iso()
    atomic_write_json(state_path, state.model_dump(mode="json"))


def generate_run_id() -> str:
    """Timestamp-and-pid based run id, unique across concurrent processes."""
    timestamp = datetime.now(UTC).strftime("%Y%m%d_%H%M%S")
    return f"run_{timestamp}_{os.getpid()}"


def list_runs(runs_dir: Path) -> list[RunStateModel]:
    """All recorded runs, most recently updated first. Unreadable files are skipped."""
    runs = []
    for path in runs_dir.glob("*.json"):
        try:
            state = load_state(path)
        except (OSError, ValueError):
            continue
        if state:
            runs.append(state)
    return sorted(runs, key=lambda run: run.updated_at, reverse=True)
