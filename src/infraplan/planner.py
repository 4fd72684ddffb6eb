"""Plan compiler.

Compares declared resources against the last-applied state records to
produce create/update/replace/delete steps, then orders them by the
dependency graph: dependencies are applied before their dependents, and
dependents are destroyed before their dependencies.
"""

from __future__ import annotations

import heapq
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

from .exceptions import UnsatisfiableChangeError
from .graph import ResourceGraph
from .models import (
    Action,
    Phase,
    Plan,
    PlanStep,
    Ref,
    ReplacePolicy,
    ResourceId,
    StateRecord,
    substitute_refs,
)
from .validator import validate_graph

logger = logging.getLogger(__name__)


class ReplacementSchema(Protocol):
    """Anything that knows which attributes cannot be changed in place."""

    def requires_replacement(self, kind: str, attribute: str) -> bool: ...


class _Unknown:
    """Value that will only be known once a referenced resource is applied."""

    def __repr__(self) -> str:
        return "<unknown>"


UNKNOWN: Any = _Unknown()


def _contains_unknown(value: Any) -> bool:
    if value is UNKNOWN:
        return True
    if isinstance(value, Mapping):
        return any(_contains_unknown(v) for v in value.values())
    if isinstance(value, (list, tuple)):
        return any(_contains_unknown(v) for v in value)
    return False


def diff_attributes(declared: Mapping[str, Any], recorded: Mapping[str, Any]) -> tuple[str, ...]:
    """
    Names of attributes that differ between declared and recorded values.

    Added and removed attributes count as changed, and so does any value
    that is not known until apply.
    """
    names = list(declared) + [name for name in recorded if name not in declared]
    return tuple(
        name
        for name in names
        if name not in declared
        or name not in recorded
        or _contains_unknown(declared[name])
        or declared[name] != recorded[name]
    )


@dataclass
class _Draft:
    key: str
    action: Action
    phase: Phase
    resource_id: ResourceId
    rank: tuple[int, int, int]
    attributes: dict[str, Any] = field(default_factory=dict)
    prior: StateRecord | None = None
    changed: tuple[str, ...] = ()
    dependencies: tuple[ResourceId, ...] = ()
    deposed: bool = False
    depends_on: dict[str, None] = field(default_factory=dict)

    def after(self, key: str) -> None:
        if key != self.key:
            self.depends_on[key] = None

    def build(self) -> PlanStep:
        return PlanStep(
            key=self.key,
            action=self.action,
            phase=self.phase,
            resource_id=self.resource_id,
            attributes=self.attributes,
            prior=self.prior,
            changed=self.changed,
            dependencies=self.dependencies,
            depends_on=tuple(self.depends_on),
            deposed=self.deposed,
        )


def classify_changes(
    graph: ResourceGraph,
    state: Mapping[ResourceId, StateRecord],
    schema: ReplacementSchema,
    order: list[ResourceId] | None = None,
) -> dict[ResourceId, tuple[Action, tuple[str, ...]]]:
    """
    Decide the action for every declared resource that needs one.

    ``order`` must list dependencies before dependents so that a
    reference to a resource being created or replaced is seen as unknown.

    Returns:
        Mapping of resource id to (action, changed attribute names).
        Unchanged resources are omitted.
    """
    if order is None:
        order = validate_graph(graph)

    result: dict[ResourceId, tuple[Action, tuple[str, ...]]] = {}

    def known(ref: Ref) -> Any:
        pending = result.get(ref.resource)
        if pending is not None and pending[0] in (Action.CREATE, Action.REPLACE):
            return UNKNOWN
        record = state.get(ref.resource)
        if record is None:
            return UNKNOWN
        try:
            return record.value(ref.attribute)
        except KeyError:
            return UNKNOWN

    for rid in order:
        resource = graph.resource(rid)
        record = state.get(rid)
        if record is None:
            result[rid] = (Action.CREATE, tuple(resource.attributes))
            continue

        resolved = substitute_refs(resource.attributes, known)
        changed = diff_attributes(resolved, record.attributes)
        if not changed:
            continue

        if any(schema.requires_replacement(rid.kind, name) for name in changed):
            result[rid] = (Action.REPLACE, changed)
        else:
            result[rid] = (Action.UPDATE, changed)

    return result


def compile_plan(
    graph: ResourceGraph,
    state: Mapping[ResourceId, StateRecord],
    schema: ReplacementSchema,
    policy: ReplacePolicy = ReplacePolicy.CREATE_BEFORE_DESTROY,
) -> Plan:
    """
    Compile the ordered plan reconciling declarations with state.

    Args:
        graph: Resource graph of the current declarations
        state: Last-applied records, in a stable order
        schema: Tells which attribute changes force a replacement
        policy: Ordering of the two halves of a replacement

    Returns:
        Plan whose steps never precede a step they depend on. Ties are
        broken by phase (apply before destroy), then declaration order.
        Resources known only from state sort after declared ones.

    Raises:
        CycleDetectedError: If the graph has a cycle
        UnsatisfiableChangeError: If a protected resource would be
            destroyed, or no safe ordering exists
    """
    order = validate_graph(graph)
    changes = classify_changes(graph, state, schema, order)

    protected = [
        rid
        for rid, (action, _) in changes.items()
        if action is Action.REPLACE and graph.resource(rid).prevent_destroy
    ]
    if protected:
        raise UnsatisfiableChangeError(
            sorted(protected),
            "prevent_destroy is set but the changes require replacement",
        )

    state_pos = {rid: i for i, rid in enumerate(state)}

    def position(rid: ResourceId) -> int:
        if rid in graph:
            return graph.index(rid)
        return len(graph) + state_pos[rid]

    drafts: dict[str, _Draft] = {}
    apply_key: dict[ResourceId, str] = {}
    destroy_key: dict[ResourceId, str] = {}
    deposed_key: dict[ResourceId, str] = {}

    def add(draft_key: str, action: Action, phase: Phase, rid: ResourceId, **kwargs: Any) -> str:
        rank = (0 if phase is Phase.APPLY else 1, position(rid), len(drafts))
        drafts[draft_key] = _Draft(draft_key, action, phase, rid, rank, **kwargs)
        return draft_key

    for rid in graph:
        if rid not in changes:
            continue
        action, changed = changes[rid]
        resource = graph.resource(rid)
        record = state.get(rid)
        deps = graph.dependencies(rid)

        if action is Action.REPLACE and record is not None:
            apply_key[rid] = add(
                f"replace-apply:{rid}",
                action,
                Phase.APPLY,
                rid,
                attributes=resource.attributes,
                prior=record,
                changed=changed,
                dependencies=deps,
            )
            destroy_key[rid] = add(
                f"replace-destroy:{rid}",
                action,
                Phase.DESTROY,
                rid,
                attributes=record.attributes,
                prior=record,
                changed=changed,
                dependencies=record.dependencies,
            )
        else:
            apply_key[rid] = add(
                f"{action.value}:{rid}",
                action,
                Phase.APPLY,
                rid,
                attributes=resource.attributes,
                prior=record,
                changed=changed,
                dependencies=deps,
            )

    for rid, record in state.items():
        if rid not in graph:
            destroy_key[rid] = add(
                f"delete:{rid}",
                Action.DELETE,
                Phase.DESTROY,
                rid,
                attributes=record.attributes,
                prior=record,
                dependencies=record.dependencies,
            )
        if record.deposed is not None:
            deposed_key[rid] = add(
                f"delete-deposed:{rid}",
                Action.DELETE,
                Phase.DESTROY,
                rid,
                attributes=record.deposed.attributes,
                prior=record.deposed,
                dependencies=record.deposed.dependencies,
                deposed=True,
            )

    # Apply steps wait for the apply steps of what they reference
    for rid, key in apply_key.items():
        for dep in graph.dependencies(rid):
            if dep in apply_key:
                drafts[key].after(apply_key[dep])

    # Destroy steps wait for former dependents to be destroyed or rebound
    former_dependents: dict[ResourceId, list[ResourceId]] = {}
    for rid, record in state.items():
        for dep in record.dependencies:
            former_dependents.setdefault(dep, []).append(rid)

    orphaned: list[ResourceId] = []
    for rid, key in destroy_key.items():
        replaced = rid in apply_key
        for dependent in former_dependents.get(rid, []):
            if dependent == rid:
                continue
            if dependent in destroy_key:
                drafts[key].after(destroy_key[dependent])
            if dependent in deposed_key:
                drafts[key].after(deposed_key[dependent])
            if dependent not in graph:
                continue
            # Only the halves of a replacement follow the policy; a plain
            # delete always waits for its former dependents to be rebound.
            if not replaced or policy is ReplacePolicy.CREATE_BEFORE_DESTROY:
                if dependent in apply_key:
                    drafts[key].after(apply_key[dependent])
            elif (
                rid in graph.dependencies(dependent)
                and dependent not in apply_key
                and dependent not in destroy_key
            ):
                orphaned.append(dependent)

    if orphaned:
        raise UnsatisfiableChangeError(
            sorted(set(orphaned)),
            "destroy-before-create would leave these resources depending on a "
            "destroyed object with no change of their own",
        )

    # The two halves of a replacement
    for rid, key in destroy_key.items():
        if rid not in apply_key:
            continue
        if policy is ReplacePolicy.CREATE_BEFORE_DESTROY:
            drafts[key].after(apply_key[rid])
        else:
            drafts[apply_key[rid]].after(key)

    # Clear a deposed object before touching the resource again
    for rid, key in deposed_key.items():
        for other in (apply_key.get(rid), destroy_key.get(rid)):
            if other is not None:
                drafts[other].after(key)

    # A deposed object also outlives its former dependents. When the
    # resource is replaced again, a dependent that waits on the new object
    # cannot also come first; that edge is left out.
    for rid, key in deposed_key.items():
        for dependent in former_dependents.get(rid, []):
            if dependent == rid:
                continue
            candidates = [destroy_key.get(dependent), deposed_key.get(dependent)]
            if policy is ReplacePolicy.CREATE_BEFORE_DESTROY or rid not in apply_key:
                candidates.append(apply_key.get(dependent))
            for other in candidates:
                if other is None:
                    continue
                if _reaches(drafts, other, key):
                    logger.warning(
                        "Deleting deposed %s cannot wait for %s, which needs the new object",
                        rid,
                        other,
                    )
                    continue
                drafts[key].after(other)

    steps = _order(drafts)
    logger.info("Compiled plan with %d step(s)", len(steps))
    for step in steps:
        logger.debug("Planned %s after %s", step.key, list(step.depends_on) or "nothing")
    return Plan(tuple(steps))


def _reaches(drafts: dict[str, _Draft], start: str, target: str) -> bool:
    """Whether ``start`` transitively depends on ``target``."""
    stack = [start]
    seen = {start}
    while stack:
        key = stack.pop()
        if key == target:
            return True
        for dep in drafts[key].depends_on:
            if dep not in seen:
                seen.add(dep)
                stack.append(dep)
    return False


def _order(drafts: dict[str, _Draft]) -> list[PlanStep]:
    """Kahn's algorithm with a priority queue keyed on draft rank."""
    indegree = {key: len(d.depends_on) for key, d in drafts.items()}
    children: dict[str, list[str]] = {key: [] for key in drafts}
    for key, draft in drafts.items():
        for dep in draft.depends_on:
            children[dep].append(key)

    heap = [(d.rank, key) for key, d in drafts.items() if indegree[key] == 0]
    heapq.heapify(heap)

    ordered: list[PlanStep] = []
    while heap:
        _, key = heapq.heappop(heap)
        ordered.append(drafts[key].build())
        for child in children[key]:
            indegree[child] -= 1
            if indegree[child] == 0:
                heapq.heappush(heap, (drafts[child].rank, child))

    if len(ordered) < len(drafts):
        stuck = sorted({d.resource_id for key, d in drafts.items() if indegree[key] > 0})
        raise UnsatisfiableChangeError(stuck, "the required changes cannot be ordered")

    return ordered
