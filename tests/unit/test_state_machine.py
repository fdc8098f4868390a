"""Unit tests for state machine."""

import json
import os

import pytest

from wavepilot.state.machine import OrchestratorMachine, StateTransitionError
from wavepilot.state.persistence import (
    Phase,
    RunStateModel,
    generate_run_id,
    list_runs,
    load_state,
    save_state,
)


def test_orchestrator_machine_initialization(tmp_path):
    """Test OrchestratorMachine creates new state."""
    state_path = tmp_path / "runs" / "run_1.json"
    machine = OrchestratorMachine(state_path, run_id="run_1")

    assert machine.current_phase == Phase.INIT
    assert machine.state.run_id == "run_1"
    assert state_path.exists()


def test_orchestrator_machine_resume(tmp_path):
    """Test OrchestratorMachine reloads an existing state file."""
    state_path = tmp_path / "state.json"
    machine1 = OrchestratorMachine(state_path)
    machine1.transition(Phase.SELECT)

    machine2 = OrchestratorMachine(state_path)

    assert machine2.state.run_id == machine1.state.run_id
    assert machine2.current_phase == Phase.SELECT


def test_valid_transition_sequence(tmp_path):
    """Test the success path of one node."""
    machine = OrchestratorMachine(tmp_path / "state.json")

    for phase in (
        Phase.SELECT,
        Phase.DISPATCH,
        Phase.VERIFY,
        Phase.COMMIT,
        Phase.ADVANCE,
        Phase.SELECT,
        Phase.DONE,
    ):
        machine.transition(phase)

    assert machine.current_phase == Phase.DONE
    assert machine.is_terminal


def test_retry_path(tmp_path):
    """Test VERIFY -> RETRY -> DISPATCH is allowed."""
    machine = OrchestratorMachine(tmp_path / "state.json")
    machine.transition(Phase.SELECT)
    machine.transition(Phase.DISPATCH)
    machine.transition(Phase.VERIFY)
    machine.transition(Phase.RETRY)
    machine.transition(Phase.DISPATCH)

    assert machine.current_phase == Phase.DISPATCH


def test_select_can_wait_in_place(tmp_path):
    """Test SELECT -> SELECT is allowed while waiting for claimed nodes."""
    machine = OrchestratorMachine(tmp_path / "state.json")
    machine.transition(Phase.SELECT)

    assert machine.can_transition_to(Phase.SELECT)
    machine.transition(Phase.SELECT)


def test_invalid_transition(tmp_path):
    """Test invalid state transition raises error."""
    machine = OrchestratorMachine(tmp_path / "state.json")

    with pytest.raises(StateTransitionError):
        machine.transition(Phase.DONE)


def test_verify_cannot_skip_to_advance(tmp_path):
    """Test a node cannot advance without committing."""
    machine = OrchestratorMachine(tmp_path / "state.json")
    machine.transition(Phase.SELECT)
    machine.transition(Phase.DISPATCH)
    machine.transition(Phase.VERIFY)

    assert not machine.can_transition_to(Phase.ADVANCE)
    assert not machine.can_transition_to(Phase.DEADLOCK)


def test_terminal_phases_have_no_exit(tmp_path):
    """Test nothing follows a terminal phase."""
    for terminal in (Phase.DONE, Phase.DEADLOCK, Phase.MAX_ITER_EXCEEDED, Phase.FAILED):
        assert OrchestratorMachine.TRANSITIONS[terminal] == []


def test_transition_with_error(tmp_path):
    """Test transition to FAILED state with error message."""
    machine = OrchestratorMachine(tmp_path / "state.json")

    new_state = machine.transition(
        Phase.FAILED,
        error_message="Test failure",
        error_context={"phase": "INIT"},
    )

    assert new_state.phase == Phase.FAILED
    assert new_state.error_message == "Test failure"
    assert new_state.error_context == {"phase": "INIT"}


def test_attempt_counting(tmp_path):
    """Test attempts count per dispatch and in total per node."""
    state_path = tmp_path / "state.json"
    machine = OrchestratorMachine(state_path)

    machine.start_node(4, "sess1")
    assert machine.record_attempt(4) == 1
    assert machine.record_attempt(4) == 2
    machine.start_node(4, "sess2")
    assert machine.record_attempt(4) == 1

    state = load_state(state_path)
    assert state.attempts == {"4": 3}
    assert state.current_node == 4
    assert state.current_session == "sess2"


def test_record_completed(tmp_path):
    """Test completing a node clears the current-node fields."""
    machine = OrchestratorMachine(tmp_path / "state.json")
    machine.start_node("auth-login", "s1")
    machine.record_attempt("auth-login")

    machine.record_completed("auth-login")

    assert machine.state.completed == ["auth-login"]
    assert machine.state.current_node is None
    assert machine.state.current_attempt == 0


def test_save_state_is_json(tmp_path):
    """Test state files are plain JSON readable by other tools."""
    state_path = tmp_path / "state.json"
    save_state(RunStateModel(run_id="run_x", completed=[1, 2]), state_path)

    data = json.loads(state_path.read_text())
    assert data["run_id"] == "run_x"
    assert data["phase"] == "INIT"
    assert data["completed"] == [1, 2]


def test_list_runs(tmp_path):
    """Test runs are listed newest first and junk files are skipped."""
    runs_dir = tmp_path / "runs"
    first = RunStateModel(run_id="run_a")
    save_state(first, runs_dir / "run_a.json")
    second = RunStateModel(run_id="run_b")
    save_state(second, runs_dir / "run_b.json")
    (runs_dir / "junk.json").write_text("{nope")

    runs = list_runs(runs_dir)

    assert [run.run_id for run in runs] == ["run_b", "run_a"]


def test_list_runs_missing_dir(tmp_path):
    """Test a missing runs directory has no runs."""
    assert list_runs(tmp_path / "runs") == []


def test_generate_run_id_contains_pid():
    """Test run ids are unique per process."""
    assert generate_run_id().endswith(f"_{os.getpid()}")
