"""Resource graph construction.

Turns a set of declared resources into a directed graph whose edges point
from a referring resource to the resource it references.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator

from .exceptions import DuplicateResourceError, UnresolvedReferenceError
from .models import Resource, ResourceId


class ResourceGraph:
    """
    Dependency graph over declared resources.

    Nodes keep declaration order, which the planner uses to break ties.
    Edges are deduplicated and kept in first-seen order.
    """

    def __init__(
        self,
        resources: dict[ResourceId, Resource],
        edges: dict[ResourceId, tuple[ResourceId, ...]],
    ) -> None:
        self._resources = resources
        self._edges = edges
        self._index = {rid: i for i, rid in enumerate(resources)}
        reverse: dict[ResourceId, list[ResourceId]] = {rid: [] for rid in resources}
        for rid, targets in edges.items():
            for target in targets:
                reverse.setdefault(target, []).append(rid)
        self._reverse = {rid: tuple(deps) for rid, deps in reverse.items()}

    def __contains__(self, rid: object) -> bool:
        return rid in self._resources

    def __iter__(self) -> Iterator[ResourceId]:
        return iter(self._resources)

    def __len__(self) -> int:
        return len(self._resources)

    def resource(self, rid: ResourceId) -> Resource:
        return self._resources[rid]

    def resources(self) -> list[Resource]:
        return list(self._resources.values())

    def dependencies(self, rid: ResourceId) -> tuple[ResourceId, ...]:
        """Resources that ``rid`` references (outgoing edges)."""
        return self._edges.get(rid, ())

    def dependents(self, rid: ResourceId) -> tuple[ResourceId, ...]:
        """Resources that reference ``rid`` (incoming edges)."""
        return self._reverse.get(rid, ())

    def index(self, rid: ResourceId) -> int:
        """Declaration position of ``rid``."""
        return self._index[rid]

    def edges(self) -> Iterator[tuple[ResourceId, ResourceId]]:
        for rid, targets in self._edges.items():
            for target in targets:
                yield rid, target


def build_graph(resources: Iterable[Resource]) -> ResourceGraph:
    """
    Build the dependency graph of a declaration set.

    Edges come from references held in attributes and from explicit
    ``depends_on`` entries.

    Raises:
        DuplicateResourceError: If two declarations share an id
        UnresolvedReferenceError: If a reference names an undeclared resource
    """
    declared: dict[ResourceId, Resource] = {}
    for resource in resources:
        if resource.id in declared:
            raise DuplicateResourceError(resource.id)
        declared[resource.id] = resource

    edges: dict[ResourceId, tuple[ResourceId, ...]] = {}
    for rid, resource in declared.items():
        targets: dict[ResourceId, None] = {}
        for path, ref in resource.references():
            if ref.resource not in declared:
                raise UnresolvedReferenceError(rid, ref.resource, path)
            targets[ref.resource] = None
        for dep in resource.depends_on:
            if dep not in declared:
                raise UnresolvedReferenceError(rid, dep, "depends_on")
            targets[dep] = None
        edges[rid] = tuple(targets)

    return ResourceGraph(declared, edges)
