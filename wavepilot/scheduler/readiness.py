"""Readiness queries over live completion state.

Nothing here is cached: callers pass the completed set they just read from
the status store, since other processes may have changed it since the last
call.
"""

from collections.abc import Collection

from .dag import DAG, NodeId, sorted_ids


def get_ready_nodes(dag: DAG, completed: Collection[NodeId]) -> list[NodeId]:
    """Return ids, ascending, whose dependencies are all complete and which are not complete.

    Args:
        dag: Validated dependency graph
        completed: Ids currently marked complete

    Returns:
        Sorted list of ready ids
    """
    done = set(completed)
    return sorted_ids(
        node_id
        for node_id, node in dag.items()
        if node_id not in done and all(parent in done for parent in node.parents)
    )


# Name used for milestone-numbered graphs.
get_ready_milestones = get_ready_nodes


def pending_ids(dag: DAG, completed: Collection[NodeId]) -> list[NodeId]:
    """Ids of the graph not yet complete. Completed ids outside the graph are ignored."""
    done = set(completed)
    return sorted_ids(node_id for node_id in dag if node_id not in done)


def is_complete(dag: DAG, completed: Collection[NodeId]) -> bool:
    return not pending_ids(dag, completed)


def is_deadlocked(dag: DAG, completed: Collection[NodeId], ready: list[NodeId] | None = None) -> bool:
    """True when nothing is ready although the graph is not complete."""
    if ready is None:
        ready = get_ready_nodes(dag, completed)
    return not ready and not is_complete(dag, completed)
