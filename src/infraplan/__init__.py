"""
infraplan: dependency-ordered planning and apply for infrastructure-as-code.

Resources are declared with typed references between them. infraplan
builds the dependency graph, rejects cycles and dangling references,
compiles an ordered create/update/replace/delete plan against the
last-applied state, and executes it concurrently through a provider,
recording state as each step succeeds.

Example:
    from infraplan import (
        FileStateStore,
        LocalProvider,
        Manifest,
        Provisioner,
    )

    manifest = Manifest.load("infra.yaml")
    provider = LocalProvider(replace_on=manifest.replace_on)

    async with Provisioner(provider, FileStateStore(".infraplan/state")) as p:
        plan = await p.plan(manifest.resources)
        for step in plan:
            print(step.describe())
        result = await p.apply(manifest.resources)
        assert result.ok
"""

# ---------------------------------------------------------------------------
# Lazy imports
# ---------------------------------------------------------------------------
# DynamoDBStateStore is imported lazily via __getattr__ below so that the
# planning core can be imported without loading aioboto3.
# ---------------------------------------------------------------------------
from importlib.metadata import PackageNotFoundError, version
from typing import TYPE_CHECKING

from .engine import Executor
from .exceptions import (
    CycleDetectedError,
    DeclarationError,
    DuplicateResourceError,
    InfraPlanError,
    ManifestError,
    MissingOutputError,
    PermanentProviderError,
    PlanError,
    ProviderError,
    StateConflictError,
    StateCorruptedError,
    StateError,
    TransientProviderError,
    UnresolvedReferenceError,
    UnsatisfiableChangeError,
)
from .graph import ResourceGraph, build_graph
from .manifest import Manifest
from .models import (
    Action,
    ApplyResult,
    EngineOptions,
    ErrorKind,
    Phase,
    Plan,
    PlanStep,
    Ref,
    ReplacePolicy,
    Resource,
    ResourceId,
    StateRecord,
    StepFailure,
)
from .planner import classify_changes, compile_plan
from .provider import LocalProvider, ProviderProtocol, classify_error, load_provider
from .provisioner import Provisioner
from .state import FileStateStore, InMemoryStateStore
from .state_protocol import StateStoreProtocol
from .validator import find_cycle, validate_graph

if TYPE_CHECKING:
    from .repository import DynamoDBStateStore as DynamoDBStateStore

try:
    __version__ = version("infraplan")
except PackageNotFoundError:
    __version__ = "0.0.0+unknown"

__all__ = [
    # Version
    "__version__",
    # Main classes
    "Provisioner",
    "Executor",
    "Manifest",
    "ResourceGraph",
    # Stages
    "build_graph",
    "validate_graph",
    "find_cycle",
    "classify_changes",
    "compile_plan",
    # Models
    "Action",
    "ApplyResult",
    "EngineOptions",
    "ErrorKind",
    "Phase",
    "Plan",
    "PlanStep",
    "Ref",
    "ReplacePolicy",
    "Resource",
    "ResourceId",
    "StateRecord",
    "StepFailure",
    # Providers
    "ProviderProtocol",
    "LocalProvider",
    "classify_error",
    "load_provider",
    # State stores
    "StateStoreProtocol",
    "InMemoryStateStore",
    "FileStateStore",
    "DynamoDBStateStore",
    # Exceptions
    "InfraPlanError",
    "DeclarationError",
    "PlanError",
    "ProviderError",
    "StateError",
    "ManifestError",
    "DuplicateResourceError",
    "UnresolvedReferenceError",
    "CycleDetectedError",
    "UnsatisfiableChangeError",
    "TransientProviderError",
    "PermanentProviderError",
    "MissingOutputError",
    "StateConflictError",
    "StateCorruptedError",
]


def __getattr__(name: str) -> type:
    """Lazy import for classes that depend on aioboto3."""
    if name == "DynamoDBStateStore":
        from .repository import DynamoDBStateStore

        return DynamoDBStateStore
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
