"""Unit tests for execution wave computation."""

import random

from wavepilot.scheduler.dag import NodeSpec, build_dag
from wavepilot.scheduler.waves import compute_execution_waves


def spec(node_id, depends_on=()):
    return NodeSpec(id=node_id, name=f"node-{node_id}", depends_on=tuple(depends_on))


def test_linear_chain_is_sequential():
    """Test a chain yields one node per wave."""
    plan = compute_execution_waves(build_dag([spec(1), spec(2, [1]), spec(3, [2])]))

    assert [wave.node_ids for wave in plan.waves] == [[1], [2], [3]]
    assert [wave.wave_number for wave in plan.waves] == [1, 2, 3]
    assert plan.is_sequential is True
    assert plan.max_parallelism == 1
    assert plan.total_nodes == 3


def test_diamond_groups_independent_nodes():
    """Test independent roots share the first wave."""
    dag = build_dag([spec(1), spec(2), spec(3, [1, 2]), spec(4, [3])])

    plan = compute_execution_waves(dag)

    assert [wave.node_ids for wave in plan.waves] == [[1, 2], [3], [4]]
    assert plan.max_parallelism == 2
    assert plan.is_sequential is False


def test_empty_graph():
    """Test an empty graph has no waves and counts as sequential."""
    plan = compute_execution_waves(build_dag([]))

    assert plan.waves == []
    assert plan.total_nodes == 0
    assert plan.max_parallelism == 0
    assert plan.is_sequential is True


def test_to_dict():
    """Test the plan serializes to plain data."""
    plan = compute_execution_waves(build_dag([spec(1), spec(2)]))

    assert plan.to_dict() == {
        "waves": [{"wave_number": 1, "node_ids": [1, 2]}],
        "total_nodes": 2,
        "max_parallelism": 2,
        "is_sequential": False,
    }


def test_waves_partition_graph_and_respect_dependencies():
    """Test every node lands in exactly one wave after all its dependencies."""
    rng = random.Random(11)
    nodes = []
    for node_id in range(1, 31):
        candidates = list(range(1, node_id))
        nodes.append(spec(node_id, rng.sample(candidates, k=min(len(candidates), rng.randint(0, 2)))))
    dag = build_dag(nodes)

    plan = compute_execution_waves(dag)

    wave_of = {}
    for wave in plan.waves:
        assert wave.node_ids == sorted(wave.node_ids)
        for node_id in wave.node_ids:
            assert node_id not in wave_of
            wave_of[node_id] = wave.wave_number
    assert set(wave_of) == set(dag)

    for node_id, node in dag.items():
        for parent in node.parents:
            assert wave_of[parent] < wave_of[node_id]
        assert wave_of[node_id] == node.depth + 1
