"""Unit tests for dependency graph construction."""

import random

import pytest

from wavepilot.scheduler.dag import (
    CycleDetectedError,
    DuplicateNodeError,
    GraphError,
    MissingDependencyError,
    Node,
    NodeSpec,
    NodeStatus,
    build_dag,
    node_sort_key,
    sorted_ids,
)


def spec(node_id, depends_on=(), name=None):
    return NodeSpec(id=node_id, name=name or f"node-{node_id}", depends_on=tuple(depends_on))


def test_linear_chain_depths():
    """Test a chain gets increasing depths and both edge directions."""
    dag = build_dag([spec(1), spec(2, [1]), spec(3, [2])])

    assert list(dag) == [1, 2, 3]
    assert [dag[i].depth for i in (1, 2, 3)] == [0, 1, 2]
    assert dag[2].parents == [1]
    assert dag[1].children == [2]
    assert dag[3].children == []


def test_depth_is_longest_chain():
    """Test depth follows the longest path, not the shortest."""
    dag = build_dag([spec(1), spec(2, [1]), spec(3, [2]), spec(4, [1, 3])])

    assert dag[4].depth == 3
    assert dag[4].parents == [1, 3]


def test_empty_graph():
    """Test building from no nodes yields an empty graph."""
    assert build_dag([]) == {}


def test_nodes_sorted_regardless_of_input_order():
    """Test output order and child lists are ascending whatever the input order."""
    dag = build_dag([spec(3, [1]), spec(1), spec(2, [1])])

    assert list(dag) == [1, 2, 3]
    assert dag[1].children == [2, 3]


def test_duplicate_dependencies_collapsed():
    """Test a dependency listed twice yields a single edge."""
    dag = build_dag([spec(1), spec(2, [1, 1])])

    assert dag[2].parents == [1]
    assert dag[1].children == [2]


def test_cycle_detected():
    """Test a two-node cycle names both nodes."""
    with pytest.raises(CycleDetectedError) as exc_info:
        build_dag([spec(1, [2], name="alpha"), spec(2, [1], name="beta")])

    error = exc_info.value
    assert set(error.cycle) == {1, 2}
    assert error.cycle[0] == error.cycle[-1]
    message = str(error)
    assert "1" in message and "2" in message
    assert "alpha" in message and "beta" in message


def test_self_cycle_detected():
    """Test a node depending on itself is a cycle."""
    with pytest.raises(CycleDetectedError) as exc_info:
        build_dag([spec(1), spec(2, [2])])

    assert exc_info.value.cycle == [2, 2]


def test_longer_cycle_reports_only_the_cycle():
    """Test the reported path excludes nodes leading into the cycle."""
    with pytest.raises(CycleDetectedError) as exc_info:
        build_dag([spec(1, [2]), spec(2, [3]), spec(3, [4]), spec(4, [2])])

    cycle = exc_info.value.cycle
    assert 1 not in cycle
    assert set(cycle) == {2, 3, 4}
    assert cycle[0] == cycle[-1]


def test_missing_dependency():
    """Test an unknown dependency names the node and the missing id."""
    with pytest.raises(MissingDependencyError) as exc_info:
        build_dag([spec(1), spec(2, [99])])

    error = exc_info.value
    assert error.node_id == 2
    assert error.missing_id == 99
    assert "2" in str(error)
    assert "99" in str(error)


def test_duplicate_node_rejected():
    """Test declaring the same id twice is an error."""
    with pytest.raises(DuplicateNodeError):
        build_dag([spec(1), spec(1)])


def test_graph_errors_share_base_class():
    """Test every structural error is a GraphError."""
    for error_type in (CycleDetectedError, MissingDependencyError, DuplicateNodeError):
        assert issubclass(error_type, GraphError)


def test_string_ids():
    """Test slug-addressed nodes build like numbered ones."""
    dag = build_dag(
        [
            spec("auth-login"),
            spec("auth-logout", ["auth-login"]),
            spec("api-users", ["auth-login"]),
        ]
    )

    assert list(dag) == ["api-users", "auth-login", "auth-logout"]
    assert dag["auth-login"].children == ["api-users", "auth-logout"]
    assert dag["auth-logout"].depth == 1


def test_node_with_status_accepted():
    """Test nodes carrying status build like bare specs."""
    dag = build_dag(
        [
            Node(id=1, name="a", status=NodeStatus.COMPLETE),
            Node(id=2, name="b", depends_on=(1,)),
        ]
    )

    assert dag[2].depth == 1


def test_sort_key_orders_ints_numerically_before_strings():
    """Test numeric ids sort numerically and before slugs."""
    assert sorted_ids([10, "b", 2, "a"]) == [2, 10, "a", "b"]
    assert node_sort_key(2) < node_sort_key(10)


def test_deep_chain_does_not_recurse():
    """Test a long chain builds without hitting the recursion limit."""
    count = 5000
    nodes = [spec(1)] + [spec(i, [i - 1]) for i in range(2, count + 1)]

    dag = build_dag(nodes)

    assert dag[count].depth == count - 1


@pytest.mark.parametrize("seed", [1, 7, 42, 2024])
def test_random_acyclic_graph_properties(seed):
    """Test depth and edge invariants on random acyclic graphs."""
    rng = random.Random(seed)
    nodes = []
    for node_id in range(1, 41):
        candidates = list(range(1, node_id))
        deps = rng.sample(candidates, k=min(len(candidates), rng.randint(0, 3)))
        nodes.append(spec(node_id, deps))
    rng.shuffle(nodes)

    dag = build_dag(nodes)

    assert set(dag) == set(range(1, 41))
    for node_id, node in dag.items():
        if not node.parents:
            assert node.depth == 0
        else:
            assert node.depth == 1 + max(dag[p].depth for p in node.parents)
        for parent in node.parents:
            assert node_id in dag[parent].children
        for child in node.children:
            assert node_id in dag[child].parents
        assert node.children == sorted(node.children)
