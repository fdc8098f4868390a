"""Unit tests for the cross-process session registry."""

import json
import os
from unittest.mock import patch

import pytest

from wavepilot.worktree.session import (
    NodeClaimedError,
    RegistryError,
    SessionRegistry,
    SessionStatus,
    generate_session_id,
    is_pid_alive,
)


@pytest.fixture
def registry(tmp_path):
    return SessionRegistry(tmp_path)


def test_missing_file_is_empty(registry):
    """Test a registry with no file has no sessions."""
    assert registry.list_sessions() == []
    assert registry.get_active_sessions() == []
    assert not registry.path.exists()


def test_register_session(registry, tmp_path):
    """Test registering persists an active session owned by this process."""
    session = registry.register_session(
        owner="sam",
        branch="wavepilot/sam/demo-1",
        worktree_path=tmp_path / "wt" / "abc",
        node_ref=1,
        email="sam@example.com",
    )

    assert session.status == SessionStatus.ACTIVE
    assert session.pid == os.getpid()
    assert len(session.id) == 8

    on_disk = json.loads(registry.path.read_text())
    assert on_disk["sessions"][0]["id"] == session.id
    assert on_disk["sessions"][0]["node_ref"] == 1
    assert registry.get_session(session.id) == session


def test_register_then_deregister_restores_state(registry, tmp_path):
    """Test a register/deregister pair leaves the registry as it was."""
    existing = registry.register_session(owner="a", branch="b1", worktree_path=tmp_path / "one")
    before = registry.list_sessions()

    session = registry.register_session(owner="a", branch="b2", worktree_path=tmp_path / "two")
    assert registry.deregister_session(session.id) is True

    assert registry.list_sessions() == before
    assert registry.get_session(existing.id) is not None


def test_deregister_unknown(registry):
    """Test removing an unknown session reports False."""
    assert registry.deregister_session("nope") is False


def test_duplicate_id_rejected(registry, tmp_path):
    """Test the same session id cannot be registered twice."""
    registry.register_session(owner="a", branch="b", worktree_path=tmp_path / "x", session_id="s1")
    with pytest.raises(RegistryError):
        registry.register_session(owner="a", branch="c", worktree_path=tmp_path / "y", session_id="s1")


def test_worktree_path_owned_once(registry, tmp_path):
    """Test two active sessions cannot own the same worktree."""
    registry.register_session(owner="a", branch="b", worktree_path=tmp_path / "x")
    with pytest.raises(RegistryError, match="already owned"):
        registry.register_session(owner="b", branch="c", worktree_path=tmp_path / "x")


def test_exclusive_node_claim(registry, tmp_path):
    """Test an exclusive claim fails while another active session holds the node."""
    first = registry.register_session(
        owner="a", branch="b1", worktree_path=tmp_path / "one", node_ref=3, exclusive_node=True
    )

    with pytest.raises(NodeClaimedError) as exc_info:
        registry.register_session(
            owner="b", branch="b2", worktree_path=tmp_path / "two", node_ref=3, exclusive_node=True
        )
    assert exc_info.value.session_id == first.id

    registry.update_session_status(first.id, SessionStatus.DONE)
    second = registry.register_session(
        owner="b", branch="b2", worktree_path=tmp_path / "two", node_ref=3, exclusive_node=True
    )
    assert second.node_ref == 3


def test_non_exclusive_allows_same_node(registry, tmp_path):
    """Test the node check only applies to exclusive claims."""
    registry.register_session(owner="a", branch="b1", worktree_path=tmp_path / "one", node_ref=3)
    registry.register_session(owner="b", branch="b2", worktree_path=tmp_path / "two", node_ref=3)

    assert len(registry.get_active_sessions()) == 2


def test_update_status(registry, tmp_path):
    """Test updating status is persisted and unknown ids return None."""
    session = registry.register_session(owner="a", branch="b", worktree_path=tmp_path / "x")

    updated = registry.update_session_status(session.id, SessionStatus.IDLE)

    assert updated.status == SessionStatus.IDLE
    assert registry.get_session(session.id).status == SessionStatus.IDLE
    assert registry.get_active_sessions() == []
    assert registry.update_session_status("missing", SessionStatus.DONE) is None


def test_corrupt_file_raises(registry):
    """Test an unreadable registry is an error rather than an empty list."""
    registry.path.parent.mkdir(parents=True)
    registry.path.write_text("{broken")

    with pytest.raises(RegistryError):
        registry.list_sessions()


def test_visible_to_other_instances(tmp_path):
    """Test a second registry object on the same repository sees the same sessions."""
    SessionRegistry(tmp_path).register_session(owner="a", branch="b", worktree_path=tmp_path / "x")

    assert len(SessionRegistry(tmp_path).list_sessions()) == 1


def test_detect_stale_sessions(registry, tmp_path):
    """Test active sessions of dead processes are marked stale once."""
    alive = registry.register_session(owner="a", branch="b1", worktree_path=tmp_path / "one")
    dead = registry.register_session(owner="a", branch="b2", worktree_path=tmp_path / "two")

    data = json.loads(registry.path.read_text())
    for entry in data["sessions"]:
        if entry["id"] == dead.id:
            entry["pid"] = 999999
    registry.path.write_text(json.dumps(data))

    with patch(
        "wavepilot.worktree.session.is_pid_alive",
        side_effect=lambda pid: pid != 999999,
    ):
        stale = registry.detect_stale_sessions()
        assert [s.id for s in stale] == [dead.id]
        assert registry.detect_stale_sessions() == []

    assert registry.get_session(dead.id).status == SessionStatus.STALE
    assert registry.get_session(alive.id).status == SessionStatus.ACTIVE


def test_is_pid_alive():
    """Test pid liveness for this process and invalid pids."""
    assert is_pid_alive(os.getpid()) is True
    assert is_pid_alive(0) is False
    assert is_pid_alive(-1) is False


def test_generate_session_id_unique():
    """Test generated ids are short hex strings."""
    ids = {generate_session_id() for _ in range(50)}

    assert len(ids) == 50
    assert all(len(session_id) == 8 for session_id in ids)
    int(next(iter(ids)), 16)
