"""Exceptions for infraplan."""

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .models import ResourceId


# ---------------------------------------------------------------------------
# Base Exception
# ---------------------------------------------------------------------------


class InfraPlanError(Exception):
    """
    Base exception for all infraplan errors.

    All exceptions raised by this library inherit from this class,
    allowing callers to catch all library-specific errors with a single
    except clause.
    """

    pass


# ---------------------------------------------------------------------------
# Category Exceptions
# ---------------------------------------------------------------------------


class DeclarationError(InfraPlanError):
    """
    Base exception for invalid resource declarations.

    Raised while building or validating the resource graph, before any
    plan is compiled. Always fatal: the declarations must be fixed.
    """

    pass


class PlanError(InfraPlanError):
    """
    Base exception for plan compilation errors.

    Raised before any provider call or state mutation happens.
    """

    pass


class ProviderError(InfraPlanError):
    """
    Base exception for errors reported by a provider while applying a step.

    Provider errors are contained to the failing branch of the plan and
    surface in the run report rather than aborting the run.
    """

    pass


class StateError(InfraPlanError):
    """
    Base exception for state store errors.

    This includes unreadable records and conflicting commits.
    """

    pass


# ---------------------------------------------------------------------------
# Declaration Exceptions
# ---------------------------------------------------------------------------


class ManifestError(DeclarationError):
    """Raised when a manifest document cannot be parsed into resources."""

    def __init__(self, message: str, resource_id: "ResourceId | str | None" = None) -> None:
        self.resource_id = resource_id
        if resource_id is not None:
            message = f"{resource_id}: {message}"
        super().__init__(message)


class DuplicateResourceError(DeclarationError):
    """Raised when two declarations share the same (kind, name) identifier."""

    def __init__(self, resource_id: "ResourceId") -> None:
        self.resource_id = resource_id
        super().__init__(f"Resource declared more than once: {resource_id}")


class UnresolvedReferenceError(DeclarationError):
    """
    Raised when a reference names a resource that is not declared.

    Attributes:
        resource_id: The resource holding the dangling reference
        target: The referenced (missing) resource
        path: Attribute path of the reference inside the resource, if any
    """

    def __init__(
        self,
        resource_id: "ResourceId",
        target: "ResourceId",
        path: str | None = None,
    ) -> None:
        self.resource_id = resource_id
        self.target = target
        self.path = path
        where = f" (attribute '{path}')" if path else ""
        super().__init__(f"{resource_id}{where} references undeclared resource {target}")


class CycleDetectedError(DeclarationError):
    """
    Raised when resources (transitively) depend on themselves.

    Attributes:
        cycle: The resources forming the cycle, in dependency order. The
            first resource is repeated at the end, e.g. ``[a, b, a]``.
    """

    def __init__(self, cycle: list["ResourceId"]) -> None:
        self.cycle = cycle
        chain = " -> ".join(str(rid) for rid in cycle)
        super().__init__(f"Dependency cycle detected: {chain}")

    @property
    def resource_ids(self) -> list["ResourceId"]:
        """Distinct resources involved in the cycle."""
        return list(dict.fromkeys(self.cycle))


# ---------------------------------------------------------------------------
# Plan Exceptions
# ---------------------------------------------------------------------------


class UnsatisfiableChangeError(PlanError):
    """
    Raised when no safe ordering exists for the requested changes.

    This requires human resolution: either change the declarations, or
    choose another replace policy.

    Attributes:
        resource_ids: Resources implicated in the conflict
        reason: Human-readable explanation
    """

    def __init__(self, resource_ids: list["ResourceId"], reason: str) -> None:
        self.resource_ids = resource_ids
        self.reason = reason
        names = ", ".join(str(rid) for rid in resource_ids)
        super().__init__(f"Unsatisfiable change for [{names}]: {reason}")


# ---------------------------------------------------------------------------
# Provider Exceptions
# ---------------------------------------------------------------------------


class TransientProviderError(ProviderError):
    """
    Raised by providers for retry-eligible failures.

    Examples are throttling, timeouts and temporary unavailability.
    """

    def __init__(
        self,
        message: str,
        cause: Exception | None = None,
        *,
        resource_id: "ResourceId | None" = None,
    ) -> None:
        self.cause = cause
        self.resource_id = resource_id
        if resource_id is not None:
            message = f"{message} [resource={resource_id}]"
        super().__init__(message)


class PermanentProviderError(ProviderError):
    """Raised by providers for terminal failures that must not be retried."""

    def __init__(
        self,
        message: str,
        cause: Exception | None = None,
        *,
        resource_id: "ResourceId | None" = None,
    ) -> None:
        self.cause = cause
        self.resource_id = resource_id
        if resource_id is not None:
            message = f"{message} [resource={resource_id}]"
        super().__init__(message)


class MissingOutputError(PermanentProviderError):
    """
    Raised when a reference cannot be substituted at apply time.

    The referenced resource was applied, but neither its outputs nor its
    attributes contain the referenced attribute.
    """

    def __init__(self, resource_id: "ResourceId", target: "ResourceId", attribute: str) -> None:
        self.target = target
        self.attribute = attribute
        super().__init__(
            f"{target} has no output '{attribute}' to substitute",
            resource_id=resource_id,
        )


# ---------------------------------------------------------------------------
# State Exceptions
# ---------------------------------------------------------------------------


class StateConflictError(StateError):
    """
    Raised when a commit would overwrite a newer state record.

    Another run committed the same resource with a higher serial.
    """

    def __init__(self, resource_id: "ResourceId", serial: int) -> None:
        self.resource_id = resource_id
        self.serial = serial
        super().__init__(f"State record for {resource_id} is newer than serial {serial}")


class StateCorruptedError(StateError):
    """Raised when a persisted state record cannot be decoded."""

    def __init__(self, location: str, details: Any = None) -> None:
        self.location = location
        self.details = details
        msg = f"Unreadable state record at {location}"
        if details:
            msg += f": {details}"
        super().__init__(msg)
