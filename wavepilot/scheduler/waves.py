"""Grouping of graph nodes into waves that may run in parallel."""

from dataclasses import dataclass, field

from .dag import DAG, NodeId, sorted_ids


@dataclass
class ExecutionWave:
    """Nodes sharing one topological depth (``depth == wave_number - 1``)."""

    wave_number: int
    node_ids: list[NodeId] = field(default_factory=list)


@dataclass
class ExecutionPlan:
    """Waves computed for a graph plus summary figures."""

    waves: list[ExecutionWave]
    total_nodes: int
    max_parallelism: int
    is_sequential: bool

    def to_dict(self) -> dict:
        return {
            "waves": [
                {"wave_number": wave.wave_number, "node_ids": wave.node_ids}
                for wave in self.waves
            ],
            "total_nodes": self.total_nodes,
            "max_parallelism": self.max_parallelism,
            "is_sequential": self.is_sequential,
        }


def compute_execution_waves(dag: DAG) -> ExecutionPlan:
    """Group a validated graph into waves by depth.

    Wave ``k`` holds every node of depth ``k - 1``, sorted by id. Because a
    node's depth is strictly greater than each parent's, all dependencies of a
    wave lie in earlier waves and no two nodes of one wave depend on each other.

    Args:
        dag: Graph returned by :func:`~wavepilot.scheduler.dag.build_dag`

    Returns:
        ExecutionPlan (an empty graph yields no waves and is sequential)
    """
    by_depth: dict[int, list[NodeId]] = {}
    for node_id, node in dag.items():
        by_depth.setdefault(node.depth, []).append(node_id)

    waves = [
        ExecutionWave(wave_number=depth + 1, node_ids=sorted_ids(by_depth[depth]))
        for depth in sorted(by_depth)
    ]
    max_parallelism = max((len(wave.node_ids) for wave in waves), default=0)

    return ExecutionPlan(
        waves=waves,
        total_nodes=len(dag),
        max_parallelism=max_parallelism,
        is_sequential=max_parallelism <= 1,
    )
