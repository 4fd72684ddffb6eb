"""Core models for infraplan."""

from __future__ import annotations

import re
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ulid import ULID

_IDENTIFIER = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_-]*$")


def validate_identifier(value: str, what: str) -> str:
    """
    Check that a kind, name or attribute is a safe identifier.

    Identifiers must start with a letter or underscore and contain only
    letters, digits, underscores and hyphens. Dots are reserved as the
    separator in ``kind.name.attribute`` notation.

    Raises:
        ValueError: If the identifier is invalid
    """
    if not isinstance(value, str) or not _IDENTIFIER.match(value):
        raise ValueError(f"{what} {value!r} is not a valid identifier")
    return value


@dataclass(frozen=True, order=True)
class ResourceId:
    """Unique (kind, name) identifier of a declared resource."""

    kind: str
    name: str

    def __post_init__(self) -> None:
        validate_identifier(self.kind, "kind")
        validate_identifier(self.name, "name")

    def __str__(self) -> str:
        return f"{self.kind}.{self.name}"

    @classmethod
    def parse(cls, value: str) -> ResourceId:
        """Parse ``"kind.name"``."""
        parts = value.split(".")
        if len(parts) != 2:
            raise ValueError(f"resource id {value!r} must look like 'kind.name'")
        return cls(parts[0], parts[1])


@dataclass(frozen=True)
class Ref:
    """
    Typed reference to an attribute of another resource.

    A Ref is resolved during planning against recorded outputs, and
    substituted with the referenced resource's runtime output when the
    referring step executes.
    """

    resource: ResourceId
    attribute: str

    def __post_init__(self) -> None:
        validate_identifier(self.attribute, "attribute")

    def __str__(self) -> str:
        return f"{self.resource}.{self.attribute}"

    @classmethod
    def parse(cls, value: str) -> Ref:
        """Parse ``"kind.name.attribute"``."""
        parts = value.split(".")
        if len(parts) != 3:
            raise ValueError(f"reference {value!r} must look like 'kind.name.attribute'")
        return cls(ResourceId(parts[0], parts[1]), parts[2])


def walk_refs(value: Any, path: str = "") -> Iterator[tuple[str, Ref]]:
    """Yield ``(path, ref)`` for every Ref nested inside an attribute value."""
    if isinstance(value, Ref):
        yield path, value
    elif isinstance(value, Mapping):
        for key, item in value.items():
            yield from walk_refs(item, f"{path}.{key}" if path else str(key))
    elif isinstance(value, (list, tuple)):
        for i, item in enumerate(value):
            yield from walk_refs(item, f"{path}[{i}]")


def substitute_refs(value: Any, resolve: Callable[[Ref], Any]) -> Any:
    """Return a copy of ``value`` with every Ref replaced by ``resolve(ref)``."""
    if isinstance(value, Ref):
        return resolve(value)
    if isinstance(value, Mapping):
        return {key: substitute_refs(item, resolve) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [substitute_refs(item, resolve) for item in value]
    return value


@dataclass(frozen=True)
class Resource:
    """
    A declared infrastructure resource.

    Attributes:
        id: Unique (kind, name) identifier
        attributes: Attribute name to literal value or Ref (refs may be nested)
        depends_on: Extra ordering dependencies not expressed by refs
        prevent_destroy: Refuse any plan that would destroy this resource
    """

    id: ResourceId
    attributes: dict[str, Any] = field(default_factory=dict)
    depends_on: tuple[ResourceId, ...] = ()
    prevent_destroy: bool = False

    @classmethod
    def declare(
        cls,
        kind: str,
        name: str,
        attributes: dict[str, Any] | None = None,
        depends_on: list[str] | None = None,
        prevent_destroy: bool = False,
    ) -> Resource:
        """Convenience constructor taking plain strings for ids."""
        return cls(
            id=ResourceId(kind, name),
            attributes=dict(attributes or {}),
            depends_on=tuple(ResourceId.parse(d) for d in depends_on or []),
            prevent_destroy=prevent_destroy,
        )

    def references(self) -> list[tuple[str, Ref]]:
        """All references held in this resource's attributes."""
        return list(walk_refs(self.attributes))


@dataclass(frozen=True)
class StateRecord:
    """
    Last-applied attributes and runtime outputs of one resource.

    Attributes:
        attributes: Attribute values as applied (references substituted)
        outputs: Runtime outputs returned by the provider
        dependencies: Resources this object depended on when applied
        serial: Incremented on every commit of this record
        updated_at: ISO timestamp of the last commit
        deposed: Previous object left behind by a create-before-destroy
            replace whose delete has not succeeded yet
    """

    attributes: dict[str, Any] = field(default_factory=dict)
    outputs: dict[str, Any] = field(default_factory=dict)
    dependencies: tuple[ResourceId, ...] = ()
    serial: int = 0
    updated_at: str | None = None
    deposed: StateRecord | None = None

    def value(self, attribute: str) -> Any:
        """Look up an attribute, preferring runtime outputs."""
        if attribute in self.outputs:
            return self.outputs[attribute]
        return self.attributes[attribute]

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for storage."""
        data: dict[str, Any] = {
            "attributes": self.attributes,
            "outputs": self.outputs,
            "dependencies": [str(d) for d in self.dependencies],
            "serial": self.serial,
            "updated_at": self.updated_at,
        }
        if self.deposed is not None:
            data["deposed"] = self.deposed.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StateRecord:
        """Deserialize from dictionary."""
        deposed = data.get("deposed")
        return cls(
            attributes=dict(data.get("attributes", {})),
            outputs=dict(data.get("outputs", {})),
            dependencies=tuple(ResourceId.parse(d) for d in data.get("dependencies", [])),
            serial=int(data.get("serial", 0)),
            updated_at=data.get("updated_at"),
            deposed=cls.from_dict(deposed) if deposed else None,
        )


class Action(Enum):
    """Kind of change a plan step makes."""

    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DELETE = "delete"


class Phase(Enum):
    """Whether a step brings an object up or tears one down."""

    APPLY = "apply"
    DESTROY = "destroy"


class ReplacePolicy(Enum):
    """
    Ordering of the two halves of a replacement.

    This is a planning policy, not a provider requirement.
    """

    CREATE_BEFORE_DESTROY = "create-before-destroy"
    DESTROY_BEFORE_CREATE = "destroy-before-create"


class ErrorKind(Enum):
    """Retry classification of a provider error."""

    TRANSIENT = "transient"
    PERMANENT = "permanent"


@dataclass(frozen=True)
class PlanStep:
    """
    One operation on one resource.

    ``attributes`` holds the declared values with references intact; the
    execution engine hands the provider a copy with references substituted
    by runtime outputs. For destroy-phase steps it holds the attributes of
    the object being destroyed.
    """

    key: str
    action: Action
    phase: Phase
    resource_id: ResourceId
    attributes: dict[str, Any] = field(default_factory=dict)
    prior: StateRecord | None = None
    changed: tuple[str, ...] = ()
    dependencies: tuple[ResourceId, ...] = ()
    depends_on: tuple[str, ...] = ()
    deposed: bool = False

    @property
    def operation(self) -> str:
        """Provider-level operation: ``create``, ``update`` or ``delete``."""
        if self.phase is Phase.DESTROY:
            return "delete"
        if self.action is Action.UPDATE:
            return "update"
        return "create"

    def describe(self) -> str:
        """Short human-readable description, e.g. ``replace (destroy) network.main``."""
        label = self.action.value
        if self.action is Action.REPLACE:
            label = f"replace ({self.phase.value})"
        if self.deposed:
            label = "delete (deposed)"
        return f"{label} {self.resource_id}"


@dataclass(frozen=True)
class Plan:
    """Steps ordered so that no step precedes one it depends on."""

    steps: tuple[PlanStep, ...] = ()

    def __iter__(self) -> Iterator[PlanStep]:
        return iter(self.steps)

    def __len__(self) -> int:
        return len(self.steps)

    def __getitem__(self, key: str) -> PlanStep:
        for step in self.steps:
            if step.key == key:
                return step
        raise KeyError(key)

    @property
    def is_empty(self) -> bool:
        return not self.steps

    @property
    def keys(self) -> list[str]:
        return [step.key for step in self.steps]

    def as_dict(self) -> list[dict[str, Any]]:
        """Serialize for JSON output."""
        return [
            {
                "key": step.key,
                "action": step.action.value,
                "phase": step.phase.value,
                "resource": str(step.resource_id),
                "changed": list(step.changed),
                "depends_on": list(step.depends_on),
            }
            for step in self.steps
        ]


@dataclass(frozen=True)
class EngineOptions:
    """
    Execution engine configuration.

    Attributes:
        concurrency: Maximum provider calls in flight
        max_attempts: Attempts per step for transient errors (1 = no retry)
        backoff_base: Delay in seconds before the first retry
        backoff_max: Upper bound on the retry delay
        dry_run: Report the plan without calling the provider or the store
        replace_policy: Ordering of the halves of a replacement
        classify_error: Transient/permanent classifier (None = default)
    """

    concurrency: int = 4
    max_attempts: int = 3
    backoff_base: float = 0.5
    backoff_max: float = 30.0
    dry_run: bool = False
    replace_policy: ReplacePolicy = ReplacePolicy.CREATE_BEFORE_DESTROY
    classify_error: Callable[[BaseException], ErrorKind] | None = None

    def __post_init__(self) -> None:
        if self.concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.backoff_base < 0:
            raise ValueError("backoff_base must be non-negative")
        if self.backoff_max < self.backoff_base:
            raise ValueError("backoff_max must be >= backoff_base")

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retrying after the given (1-based) failed attempt."""
        return float(min(self.backoff_base * (2 ** (attempt - 1)), self.backoff_max))


@dataclass
class StepFailure:
    """A step that failed after exhausting its attempts."""

    key: str
    resource_id: ResourceId
    error: str
    attempts: int
    transient: bool = False


@dataclass
class ApplyResult:
    """
    Structured report of one run.

    Resource lists are in completion order. ``skipped`` holds the keys of
    steps never dispatched, because a predecessor failed or the run was
    cancelled.
    """

    run_id: str = field(default_factory=lambda: str(ULID()))
    dry_run: bool = False
    cancelled: bool = False
    planned: list[str] = field(default_factory=list)
    created: list[ResourceId] = field(default_factory=list)
    updated: list[ResourceId] = field(default_factory=list)
    replaced: list[ResourceId] = field(default_factory=list)
    deleted: list[ResourceId] = field(default_factory=list)
    failed: list[StepFailure] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        """True if nothing failed, nothing was skipped and the run was not cancelled."""
        return not self.failed and not self.skipped and not self.cancelled

    def as_dict(self) -> dict[str, Any]:
        """Serialize for JSON output."""
        return {
            "run_id": self.run_id,
            "dry_run": self.dry_run,
            "cancelled": self.cancelled,
            "planned": list(self.planned),
            "created": [str(r) for r in self.created],
            "updated": [str(r) for r in self.updated],
            "replaced": [str(r) for r in self.replaced],
            "deleted": [str(r) for r in self.deleted],
            "failed": [
                {
                    "step": f.key,
                    "resource": str(f.resource_id),
                    "error": f.error,
                    "attempts": f.attempts,
                    "transient": f.transient,
                }
                for f in self.failed
            ],
            "skipped": list(self.skipped),
        }
