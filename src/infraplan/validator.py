"""Graph validation: every edge resolves and there are no cycles."""

from __future__ import annotations

from collections.abc import Iterator
from enum import Enum

from .exceptions import CycleDetectedError, UnresolvedReferenceError
from .graph import ResourceGraph
from .models import ResourceId


class _Mark(Enum):
    UNVISITED = 0
    IN_PROGRESS = 1
    DONE = 2


def validate_graph(graph: ResourceGraph) -> list[ResourceId]:
    """
    Check that the graph is a DAG and return a topological order.

    Iterative depth-first search with three-colour marking, O(V+E).
    Roots are visited in declaration order and dependencies in edge
    order, so the returned order (dependencies first) is deterministic.

    Raises:
        CycleDetectedError: With the ordered cycle, e.g. ``[a, b, a]``
        UnresolvedReferenceError: If an edge points outside the graph
    """
    marks = {rid: _Mark.UNVISITED for rid in graph}
    order: list[ResourceId] = []

    for root in graph:
        if marks[root] is not _Mark.UNVISITED:
            continue

        marks[root] = _Mark.IN_PROGRESS
        path: list[ResourceId] = [root]
        stack: list[Iterator[ResourceId]] = [iter(graph.dependencies(root))]

        while stack:
            for nxt in stack[-1]:
                mark = marks.get(nxt)
                if mark is None:
                    raise UnresolvedReferenceError(path[-1], nxt)
                if mark is _Mark.IN_PROGRESS:
                    raise CycleDetectedError(path[path.index(nxt) :] + [nxt])
                if mark is _Mark.UNVISITED:
                    marks[nxt] = _Mark.IN_PROGRESS
                    path.append(nxt)
                    stack.append(iter(graph.dependencies(nxt)))
                    break
            else:
                node = path.pop()
                stack.pop()
                marks[node] = _Mark.DONE
                order.append(node)

    return order


def find_cycle(graph: ResourceGraph) -> list[ResourceId] | None:
    """Return the first cycle found, or None if the graph is acyclic."""
    try:
        validate_graph(graph)
    except CycleDetectedError as e:
        return e.cycle
    return None
