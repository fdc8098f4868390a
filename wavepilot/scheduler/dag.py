"""Dependency graph construction and validation."""

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)

# Milestones are numbered, requirements are addressed by slug.
NodeId = int | str


def node_sort_key(node_id: NodeId) -> tuple:
    """Sort key giving numeric order for ints, lexical order for strings, ints first."""
    if isinstance(node_id, int):
        return (0, node_id, "")
    return (1, 0, str(node_id))


def sorted_ids(ids: Iterable[NodeId]) -> list[NodeId]:
    return sorted(ids, key=node_sort_key)


class NodeStatus(str, Enum):
    """Durable status of a unit of work."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    FAILED = "failed"
    # Proposed work awaiting approval; blocks completion but is never dispatched
    DISCOVERED = "discovered"

    @property
    def dispatchable(self) -> bool:
        return self in (NodeStatus.PENDING, NodeStatus.IN_PROGRESS)


@dataclass(frozen=True)
class NodeSpec:
    """A unit of work as declared: its id, a display name and what it depends on."""

    id: NodeId
    name: str
    depends_on: tuple[NodeId, ...] = ()
    description: str = ""


@dataclass(frozen=True)
class Node(NodeSpec):
    """A declared unit of work together with its durable status."""

    status: NodeStatus = NodeStatus.PENDING
    completed_at: str | None = None


@dataclass
class DAGNode:
    """Position of one node in the validated graph."""

    id: NodeId
    name: str
    parents: list[NodeId] = field(default_factory=list)
    children: list[NodeId] = field(default_factory=list)
    depth: int = 0


# Ordered by ascending node id.
DAG = dict[NodeId, DAGNode]


class GraphError(Exception):
    """Structural problem in the declared dependencies."""

    pass


class DuplicateNodeError(GraphError):
    """The same id was declared twice."""

    def __init__(self, node_id: NodeId):
        super().__init__(f"Node {node_id} is declared more than once")
        self.node_id = node_id


class MissingDependencyError(GraphError):
    """A node depends on an id that is not declared."""

    def __init__(self, node_id: NodeId, missing_id: NodeId, name: str = ""):
        label = f'{node_id} ("{name}")' if name else f"{node_id}"
        super().__init__(f"Node {label} depends on {missing_id}, which does not exist")
        self.node_id = node_id
        self.missing_id = missing_id


class CycleDetectedError(GraphError):
    """Dependencies form a cycle.

    ``cycle`` is the closed path, e.g. ``[1, 2, 1]``.
    """

    def __init__(self, cycle: list[NodeId], names: dict[NodeId, str] | None = None):
        names = names or {}
        labels = [
            f'{node_id}("{names[node_id]}")' if names.get(node_id) else f"{node_id}"
            for node_id in cycle[:-1]
        ]
        labels.append(f"{cycle[-1]}")
        super().__init__(f"Dependency cycle detected: {' -> '.join(labels)}")
        self.cycle = cycle


def build_dag(nodes: Iterable[NodeSpec]) -> DAG:
    """Build and validate the dependency graph.

    Args:
        nodes: Declared nodes (any :class:`NodeSpec`, including :class:`Node`)

    Returns:
        Mapping of node id to :class:`DAGNode`, ordered by ascending id

    Raises:
        DuplicateNodeError: If an id is declared twice
        MissingDependencyError: If a dependency is not declared
        CycleDetectedError: If the dependencies contain a cycle
    """
    declared: dict[NodeId, NodeSpec] = {}
    for node in nodes:
        if node.id in declared:
            raise DuplicateNodeError(node.id)
        declared[node.id] = node

    ordered = sorted_ids(declared)
    graph: DAG = {node_id: DAGNode(id=node_id, name=declared[node_id].name) for node_id in ordered}

    for node_id in ordered:
        spec = declared[node_id]
        parents = list(dict.fromkeys(spec.depends_on))
        for dep in parents:
            if dep not in declared:
                raise MissingDependencyError(node_id, dep, spec.name)
        graph[node_id].parents = sorted_ids(parents)
        for dep in parents:
            graph[dep].children.append(node_id)

    # Children were appended in ascending id order already.
    _assign_depths(graph)

    logger.debug(f"Built dependency graph with {len(graph)} nodes")
    return graph


def _assign_depths(graph: DAG) -> None:
    """Compute depths by iterative DFS over parents, detecting cycles on the way."""
    depths: dict[NodeId, int] = {}

    for root in graph:
        if root in depths:
            continue

        stack = [(root, iter(graph[root].parents))]
        path = [root]
        on_stack = {root}

        while stack:
            node_id, parents = stack[-1]
            descended = False
            for parent in parents:
                if parent in depths:
                    continue
                if parent in on_stack:
                    start = path.index(parent)
                    raise CycleDetectedError(
                        path[start:] + [parent],
                        names={n: graph[n].name for n in path},
                    )
                stack.append((parent, iter(graph[parent].parents)))
                path.append(parent)
                on_stack.add(parent)
                descended = True
                break

            if descended:
                continue

            stack.pop()
            path.pop()
            on_stack.discard(node_id)
            parent_ids = graph[node_id].parents
            depths[node_id] = 1 + max(depths[p] for p in parent_ids) if parent_ids else 0

    for node_id, depth in depths.items():
        graph[node_id].depth = depth
